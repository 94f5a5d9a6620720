"""Bank-transfer payout verification on Cosmos SDK chains (Osmosis by default).

Verifies that a solver's USDC transfer actually occurred on-chain by:
1. Fetching the transaction from the chain's LCD REST endpoint
2. Checking the transaction result code
3. Matching ``transfer`` events against recipient, denom and amount

Tendermint finality is instant, so a committed transaction is final.
"""

import base64
import binascii
import logging
import re
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

import httpx

from zeromiles.config import COSMOS, ChainConfig
from zeromiles.errors import VerificationTransientError
from zeromiles.validation import normalize_tx_reference

from .base import VerificationQuery, VerificationResult, VerificationStatus

logger = logging.getLogger(__name__)

TX_ENDPOINT = "/cosmos/tx/v1beta1/txs/{tx_hash}"

# "1000000ibc/498A...,5uosmo"
COIN_RE = re.compile(r"^(\d+)([a-zA-Z][a-zA-Z0-9/:._-]{1,127})$")

_TRANSFER_KEYS = ("recipient", "sender", "amount")


class TxNotFound(Exception):
    """The LCD does not know the transaction (yet)."""

    pass


async def _lcd_get(base_url: str, path: str, timeout: float = 30.0) -> dict:
    """GET a JSON document from a Cosmos LCD endpoint."""
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.get(base_url.rstrip("/") + path)
        if response.status_code == 404:
            raise TxNotFound(path)
        if response.status_code == 400 and "not found" in response.text.lower():
            # Older gRPC-gateway versions answer unknown hashes with 400 / code 5
            raise TxNotFound(path)
        response.raise_for_status()
        return response.json()


def parse_coins(value: str) -> List[tuple]:
    """Parse a coins string into ``[(amount_raw, denom), ...]``."""
    coins = []
    for part in (value or "").split(","):
        part = part.strip()
        if not part:
            continue
        match = COIN_RE.match(part)
        if match:
            coins.append((int(match.group(1)), match.group(2)))
    return coins


def _decode_attribute(value: Optional[str]) -> str:
    """Attributes were base64 encoded before Cosmos SDK 0.47."""
    if not value:
        return ""
    if value in _TRANSFER_KEYS:
        return value
    try:
        decoded = base64.b64decode(value, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return value
    return decoded if decoded in _TRANSFER_KEYS else value


def _iter_events(tx_response: dict):
    yield from tx_response.get("events") or []
    for log in tx_response.get("logs") or []:
        yield from log.get("events") or []


def extract_transfers(tx_response: dict) -> List[Dict[str, str]]:
    """Collect ``{recipient, sender, amount}`` groups from transfer events."""
    transfers = []
    seen = set()
    for event in _iter_events(tx_response):
        if event.get("type") != "transfer":
            continue
        current: Dict[str, str] = {}
        for attribute in event.get("attributes") or []:
            raw_key = attribute.get("key")
            key = _decode_attribute(raw_key)
            if key not in _TRANSFER_KEYS:
                continue
            value = attribute.get("value") or ""
            if raw_key != key:
                value = _decode_attribute_value(value)
            if key in current:
                transfers.append(current)
                current = {}
            current[key] = value
        if current:
            transfers.append(current)

    unique = []
    for transfer in transfers:
        if "recipient" not in transfer or "amount" not in transfer:
            continue
        # The same event appears in both tx_response.events and logs on some versions
        marker = (transfer.get("recipient"), transfer.get("sender"), transfer.get("amount"))
        if marker in seen:
            continue
        seen.add(marker)
        unique.append(transfer)
    return unique


def _decode_attribute_value(value: str) -> str:
    try:
        return base64.b64decode(value, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return value


class CosmosTransferVerifier:
    """Verify bank transfers through a Cosmos SDK LCD endpoint."""

    def __init__(self, chain: ChainConfig, timeout: float = 30.0):
        if chain.family != COSMOS:
            raise ValueError(f"{chain.name} is not a Cosmos chain")
        self.chain = chain
        self.timeout = timeout

    def _result(self, query: VerificationQuery, status: VerificationStatus, **kwargs):
        return VerificationResult(
            status=status, tx_reference=query.tx_reference, chain=self.chain.name, **kwargs
        )

    async def verify(self, query: VerificationQuery) -> VerificationResult:
        tx_hash = normalize_tx_reference(query.tx_reference, self.chain)
        denom = query.token_denom or self.chain.usdc_denom
        expected_raw = query.expected_amount.to_base_units(self.chain.usdc_decimals)

        try:
            body = await _lcd_get(
                self.chain.endpoint, TX_ENDPOINT.format(tx_hash=tx_hash), timeout=self.timeout
            )
        except TxNotFound:
            return self._result(
                query,
                VerificationStatus.PENDING,
                error="Transaction not found or not yet committed",
                error_code="TX_NOT_FOUND",
            )
        except httpx.HTTPError as e:
            raise VerificationTransientError(f"LCD request failed for {tx_hash}: {e}") from e
        except ValueError as e:
            raise VerificationTransientError(f"Malformed LCD response for {tx_hash}: {e}") from e

        tx_response = body.get("tx_response") or {}
        if not tx_response:
            raise VerificationTransientError(f"LCD response for {tx_hash} has no tx_response")

        height = int(tx_response.get("height") or 0) or None
        block_timestamp = _parse_timestamp(tx_response.get("timestamp"))

        code = int(tx_response.get("code") or 0)
        if code != 0:
            return self._result(
                query,
                VerificationStatus.FAILED,
                height=height,
                block_timestamp=block_timestamp,
                error=f"Transaction failed with code {code}: {tx_response.get('raw_log', '')[:200]}",
                error_code="TX_FAILED",
            )

        transfers = extract_transfers(tx_response)
        recipient = query.recipient_address.lower()
        to_recipient = [t for t in transfers if (t.get("recipient") or "").lower() == recipient]
        if not to_recipient:
            return self._result(
                query,
                VerificationStatus.FAILED,
                height=height,
                block_timestamp=block_timestamp,
                error=f"No transfer to {query.recipient_address} in transaction",
                error_code="NO_TRANSFER_TO_RECIPIENT",
            )

        # Several transfer events may credit the recipient; sum the payout denom
        credited = sum(
            amount
            for transfer in to_recipient
            for amount, coin_denom in parse_coins(transfer["amount"])
            if coin_denom == denom
        )
        if credited < expected_raw:
            return self._result(
                query,
                VerificationStatus.FAILED,
                recipient_address=query.recipient_address,
                amount_raw=credited,
                amount=Decimal(credited).scaleb(-self.chain.usdc_decimals),
                height=height,
                block_timestamp=block_timestamp,
                error=f"Transfer found but doesn't match: expected {expected_raw}{denom}, got {credited}",
                error_code="TRANSFER_MISMATCH",
            )

        return self._result(
            query,
            VerificationStatus.SUCCESS,
            recipient_address=query.recipient_address,
            amount_raw=credited,
            amount=Decimal(credited).scaleb(-self.chain.usdc_decimals),
            height=height,
            block_timestamp=block_timestamp,
            confirmations=1,
        )


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
