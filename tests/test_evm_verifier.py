"""Tests for EVM (ERC20) payout verification."""

from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from zeromiles.config import DEFAULT_CHAINS
from zeromiles.errors import VerificationTransientError
from zeromiles.types import Amount
from zeromiles.verifier.base import VerificationQuery, VerificationResult, VerificationStatus
from zeromiles.verifier.evm import (
    TRANSFER_EVENT_SIGNATURE,
    EvmTransferVerifier,
    _normalize_address,
    _parse_transfer_log,
)

BASE = DEFAULT_CHAINS["base"]
RECIPIENT = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
TX_HASH = "0x" + "12" * 32

FIVE_USDC = "0x00000000000000000000000000000000000000000000000000000000004c4b40"  # 5,000,000


def usdc_log(data=FIVE_USDC, to=RECIPIENT, token=BASE.usdc_denom):
    return {
        "address": token,
        "topics": [
            TRANSFER_EVENT_SIGNATURE,
            "0x000000000000000000000000aaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa",
            "0x000000000000000000000000" + to[2:],
        ],
        "data": data,
    }


def make_query(amount="5"):
    return VerificationQuery(
        tx_reference=TX_HASH,
        expected_amount=Amount(amount, "usdc"),
        recipient_address=RECIPIENT,
        token_denom=BASE.usdc_denom,
        chain="base",
    )


@pytest.fixture
def verifier():
    return EvmTransferVerifier(BASE)


class TestNormalizeAddress:
    """Tests for address normalization."""

    def test_lowercase_with_prefix(self):
        assert _normalize_address("0xAbC123") == "0xabc123"

    def test_adds_prefix(self):
        assert _normalize_address("abc123") == "0xabc123"

    def test_handles_padded_address(self):
        padded = "0x000000000000000000000000833589fcd6edb6e08f4c7c32d4f71b54bda02913"
        assert _normalize_address(padded) == "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"

    def test_none(self):
        assert _normalize_address(None) == ""


class TestParseTransferLog:
    def test_parse_valid_transfer(self):
        result = _parse_transfer_log(usdc_log(), decimals=6)
        assert result["amount"] == Decimal("5")
        assert result["amount_raw"] == 5_000_000
        assert result["to_address"] == RECIPIENT

    def test_wrong_signature(self):
        log = usdc_log()
        log["topics"][0] = "0xwrongsignature"
        assert _parse_transfer_log(log, decimals=6) is None

    def test_insufficient_topics(self):
        log = usdc_log()
        log["topics"] = [TRANSFER_EVENT_SIGNATURE]
        assert _parse_transfer_log(log, decimals=6) is None


class TestVerify:
    @pytest.mark.asyncio
    async def test_tx_not_found_is_pending(self, verifier):
        with patch("zeromiles.verifier.evm._rpc_call", new_callable=AsyncMock) as mock_rpc:
            mock_rpc.return_value = None
            result = await verifier.verify(make_query())
        assert result.status == VerificationStatus.PENDING
        assert result.error_code == "TX_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_tx_reverted(self, verifier):
        with patch("zeromiles.verifier.evm._rpc_call", new_callable=AsyncMock) as mock_rpc:
            mock_rpc.return_value = {"status": "0x0", "blockNumber": "0x100", "logs": []}
            result = await verifier.verify(make_query())
        assert result.status == VerificationStatus.FAILED
        assert result.error_code == "TX_REVERTED"

    @pytest.mark.asyncio
    async def test_insufficient_confirmations_is_pending(self):
        verifier = EvmTransferVerifier(replace(BASE, min_confirmations=5))
        with patch("zeromiles.verifier.evm._rpc_call", new_callable=AsyncMock) as mock_rpc:
            mock_rpc.side_effect = [
                {"status": "0x1", "blockNumber": "0x100", "logs": [usdc_log()]},
                "0x101",
            ]
            result = await verifier.verify(make_query())
        assert result.status == VerificationStatus.PENDING
        assert result.error_code == "INSUFFICIENT_CONFIRMATIONS"
        assert result.confirmations == 1

    @pytest.mark.asyncio
    async def test_no_usdc_transfer(self, verifier):
        other_token = "0x" + "cd" * 20
        with patch("zeromiles.verifier.evm._rpc_call", new_callable=AsyncMock) as mock_rpc:
            mock_rpc.side_effect = [
                {"status": "0x1", "blockNumber": "0x100", "logs": [usdc_log(token=other_token)]},
                "0x110",
            ]
            result = await verifier.verify(make_query())
        assert result.status == VerificationStatus.FAILED
        assert result.error_code == "NO_TOKEN_TRANSFER"

    @pytest.mark.asyncio
    async def test_successful_verification(self, verifier):
        with patch("zeromiles.verifier.evm._rpc_call", new_callable=AsyncMock) as mock_rpc:
            mock_rpc.side_effect = [
                {"status": "0x1", "blockNumber": "0x100", "logs": [usdc_log()]},
                "0x110",
                {"timestamp": "0x65b5e800"},
            ]
            result = await verifier.verify(make_query())

        assert result.status == VerificationStatus.SUCCESS
        assert result.amount == Decimal("5")
        assert result.height == 256
        assert result.confirmations == 16
        assert result.block_timestamp == datetime.fromtimestamp(0x65B5E800, tz=timezone.utc)
        assert mock_rpc.call_args_list[0].args[1:3] == ("eth_getTransactionReceipt", [TX_HASH])

    @pytest.mark.asyncio
    async def test_amount_mismatch(self, verifier):
        with patch("zeromiles.verifier.evm._rpc_call", new_callable=AsyncMock) as mock_rpc:
            mock_rpc.side_effect = [
                {"status": "0x1", "blockNumber": "0x100", "logs": [usdc_log()]},
                "0x110",
            ]
            result = await verifier.verify(make_query(amount="10"))
        assert result.status == VerificationStatus.FAILED
        assert result.error_code == "TRANSFER_MISMATCH"
        assert result.amount_raw == 5_000_000

    @pytest.mark.asyncio
    async def test_wrong_recipient(self, verifier):
        with patch("zeromiles.verifier.evm._rpc_call", new_callable=AsyncMock) as mock_rpc:
            mock_rpc.side_effect = [
                {"status": "0x1", "blockNumber": "0x100", "logs": [usdc_log(to="0x" + "ee" * 20)]},
                "0x110",
            ]
            result = await verifier.verify(make_query())
        assert result.status == VerificationStatus.FAILED
        assert result.error_code == "TRANSFER_MISMATCH"

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self, verifier):
        with patch("zeromiles.verifier.evm._rpc_call", new_callable=AsyncMock) as mock_rpc:
            mock_rpc.side_effect = httpx.ReadTimeout("timed out")
            with pytest.raises(VerificationTransientError, match="eth_getTransactionReceipt"):
                await verifier.verify(make_query())


class TestVerificationResult:
    def test_to_dict_success(self):
        result = VerificationResult(
            status=VerificationStatus.SUCCESS,
            tx_reference="0x123",
            chain="base",
            amount=Decimal("5.00"),
            amount_raw=5_000_000,
            height=100,
            block_timestamp=datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc),
            confirmations=10,
        )
        d = result.to_dict()
        assert d["status"] == "success"
        assert d["amount"] == "5.00"
        assert d["block_timestamp"] == "2026-01-01T12:00:00+00:00"

    def test_to_dict_failure(self):
        result = VerificationResult(
            status=VerificationStatus.FAILED,
            tx_reference="0x123",
            chain="base",
            error="Something went wrong",
            error_code="SOME_ERROR",
        )
        d = result.to_dict()
        assert d["error"] == "Something went wrong"
        assert d["amount"] is None
