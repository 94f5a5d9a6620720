"""USDC payout verification on EVM chains (Base, Ethereum, etc).

Verifies that a solver's USDC transfer actually occurred on-chain by:
1. Fetching the transaction receipt via JSON-RPC
2. Parsing ERC20 Transfer event logs
3. Validating token contract, recipient and amount
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import httpx

from zeromiles.config import EVM, ChainConfig
from zeromiles.errors import VerificationTransientError
from zeromiles.validation import normalize_tx_reference

from .base import VerificationQuery, VerificationResult, VerificationStatus

logger = logging.getLogger(__name__)

# ERC20 Transfer event signature: Transfer(address indexed from, address indexed to, uint256 value)
TRANSFER_EVENT_SIGNATURE = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


async def _rpc_call(rpc_url: str, method: str, params: list, timeout: float = 30.0):
    """Make a JSON-RPC call to an EVM node."""
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.post(
            rpc_url,
            json={
                "jsonrpc": "2.0",
                "method": method,
                "params": params,
                "id": 1,
            },
            headers={"Content-Type": "application/json"},
        )
        response.raise_for_status()
        result = response.json()

        if "error" in result:
            raise VerificationTransientError(f"RPC error: {result['error']}")

        return result.get("result")


def _normalize_address(address: Optional[str]) -> str:
    """Normalize an Ethereum address to lowercase with 0x prefix."""
    if not address:
        return ""
    address = address.lower()
    if not address.startswith("0x"):
        address = "0x" + address
    # 32-byte padded address from event log topics
    if len(address) == 66:
        address = "0x" + address[-40:]
    return address


def _parse_transfer_log(log: dict, decimals: int) -> Optional[dict]:
    """Parse an ERC20 Transfer event log.

    Transfer event: Transfer(address indexed from, address indexed to, uint256 value)
    - topics[0]: event signature
    - topics[1]: from address (indexed, padded to 32 bytes)
    - topics[2]: to address (indexed, padded to 32 bytes)
    - data: value (uint256)
    """
    topics = log.get("topics", [])

    if len(topics) < 3:
        return None

    if topics[0].lower() != TRANSFER_EVENT_SIGNATURE.lower():
        return None

    data = log.get("data", "0x0")
    amount_raw = int(data, 16)

    return {
        "from_address": _normalize_address(topics[1]),
        "to_address": _normalize_address(topics[2]),
        "amount": Decimal(amount_raw).scaleb(-decimals),
        "amount_raw": amount_raw,
    }


class EvmTransferVerifier:
    """Verify ERC20 payouts through a chain's JSON-RPC endpoint."""

    def __init__(self, chain: ChainConfig, timeout: float = 30.0):
        if chain.family != EVM:
            raise ValueError(f"{chain.name} is not an EVM chain")
        self.chain = chain
        self.timeout = timeout

    async def _call(self, method: str, params: list):
        try:
            return await _rpc_call(self.chain.endpoint, method, params, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise VerificationTransientError(f"Network error calling {method}: {e}") from e
        except ValueError as e:
            # Non-JSON body from the node
            raise VerificationTransientError(f"Malformed RPC response for {method}: {e}") from e

    def _result(self, query: VerificationQuery, status: VerificationStatus, **kwargs):
        return VerificationResult(
            status=status, tx_reference=query.tx_reference, chain=self.chain.name, **kwargs
        )

    async def verify(self, query: VerificationQuery) -> VerificationResult:
        tx_hash = normalize_tx_reference(query.tx_reference, self.chain)
        token_address = _normalize_address(query.token_denom or self.chain.usdc_denom)
        expected_to = _normalize_address(query.recipient_address)
        expected_raw = query.expected_amount.to_base_units(self.chain.usdc_decimals)

        receipt = await self._call("eth_getTransactionReceipt", [tx_hash])
        if not receipt:
            return self._result(
                query,
                VerificationStatus.PENDING,
                error="Transaction not found or not yet mined",
                error_code="TX_NOT_FOUND",
            )

        # Check transaction status (1 = success, 0 = reverted)
        if int(receipt.get("status", "0x0"), 16) != 1:
            return self._result(
                query,
                VerificationStatus.FAILED,
                error="Transaction reverted",
                error_code="TX_REVERTED",
            )

        block_number = int(receipt.get("blockNumber", "0x0"), 16)
        current_block = await self._call("eth_blockNumber", [])
        confirmations = int(current_block, 16) - block_number

        if confirmations < self.chain.min_confirmations:
            return self._result(
                query,
                VerificationStatus.PENDING,
                height=block_number,
                confirmations=confirmations,
                error=f"Insufficient confirmations: {confirmations} < {self.chain.min_confirmations}",
                error_code="INSUFFICIENT_CONFIRMATIONS",
            )

        transfers = []
        for log in receipt.get("logs", []):
            if _normalize_address(log.get("address", "")) != token_address:
                continue
            transfer = _parse_transfer_log(log, self.chain.usdc_decimals)
            if transfer:
                transfers.append(transfer)

        if not transfers:
            return self._result(
                query,
                VerificationStatus.FAILED,
                height=block_number,
                confirmations=confirmations,
                error="No USDC transfer found in transaction",
                error_code="NO_TOKEN_TRANSFER",
            )

        for transfer in transfers:
            if transfer["to_address"] != expected_to:
                continue
            if transfer["amount_raw"] < expected_raw:
                continue

            block_timestamp = await self._block_timestamp(block_number)
            return self._result(
                query,
                VerificationStatus.SUCCESS,
                recipient_address=transfer["to_address"],
                amount=transfer["amount"],
                amount_raw=transfer["amount_raw"],
                height=block_number,
                block_timestamp=block_timestamp,
                confirmations=confirmations,
            )

        found = transfers[0]
        return self._result(
            query,
            VerificationStatus.FAILED,
            recipient_address=found["to_address"],
            amount=found["amount"],
            amount_raw=found["amount_raw"],
            height=block_number,
            confirmations=confirmations,
            error=(
                f"Transfer found but doesn't match: expected {expected_raw} to {expected_to}, "
                f"got {found['amount_raw']} to {found['to_address']}"
            ),
            error_code="TRANSFER_MISMATCH",
        )

    async def _block_timestamp(self, block_number: int) -> Optional[datetime]:
        block = await self._call("eth_getBlockByNumber", [hex(block_number), False])
        if block and "timestamp" in block:
            return datetime.fromtimestamp(int(block["timestamp"], 16), tz=timezone.utc)
        return None
