"""Tests for claim verification polling."""

import logging
from datetime import timedelta

import pytest

from zeromiles.config import LoanConfig
from zeromiles.errors import VerificationTransientError
from zeromiles.poller import BUDGET_EXHAUSTED
from zeromiles.types import Amount
from zeromiles.verifier.base import VerificationStatus

SUCCESS = VerificationStatus.SUCCESS
FAILED = VerificationStatus.FAILED
PENDING = VerificationStatus.PENDING


async def claimed_loan(engine, ledger, recipient):
    payment = ledger.mint(Amount("1.0", "eth"))
    request_id = await engine.lock(payment, Amount("1000", "usdc"), recipient, depositor="alice")
    await engine.claim(request_id, "0xTX1", "solverA")
    # Drive rounds by hand from here on
    await engine.poller.stop()
    return request_id


class TestPollOnce:
    @pytest.mark.asyncio
    async def test_pending_counts_attempts(self, make_engine, ledger, user_osmo):
        engine = make_engine(PENDING)
        request_id = await claimed_loan(engine, ledger, user_osmo)

        assert await engine.poller.poll_once(request_id) == 1
        assert await engine.poller.poll_once(request_id) == 2

        claim = engine.store.get_claim(request_id)
        assert claim.verification_attempts == 2
        assert claim.last_error is None
        assert engine.store.get_request(request_id).status == "claimed"

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, make_engine, ledger, user_osmo, caplog):
        engine = make_engine(
            VerificationTransientError("LCD timeout"),
            RuntimeError("boom"),
            SUCCESS,
        )
        request_id = await claimed_loan(engine, ledger, user_osmo)

        with caplog.at_level(logging.WARNING, logger="zeromiles.poller"):
            assert await engine.poller.poll_once(request_id) == 1
        assert "Transient verification error" in caplog.text
        assert engine.store.get_claim(request_id).last_error == "LCD timeout"

        assert await engine.poller.poll_once(request_id) == 2
        assert engine.store.get_claim(request_id).last_error == "Unexpected error: boom"
        assert engine.store.get_request(request_id).status == "claimed"

        assert await engine.poller.poll_once(request_id) is None
        assert engine.store.get_request(request_id).status == "completed"

    @pytest.mark.asyncio
    async def test_stops_when_no_longer_claimed(self, make_engine, ledger, user_osmo):
        engine = make_engine(FAILED)
        request_id = await claimed_loan(engine, ledger, user_osmo)

        assert await engine.poller.poll_once(request_id) is None
        assert engine.store.get_request(request_id).status == "failed"

        assert await engine.poller.poll_once(request_id) is None
        assert engine.verifier.calls == 1

    @pytest.mark.asyncio
    async def test_unknown_request(self, engine):
        assert await engine.poller.poll_once("nope") is None

    @pytest.mark.asyncio
    async def test_budget_exhausted_fails_request(self, make_engine, ledger, user_osmo):
        engine = make_engine(PENDING, max_verification_attempts=3)
        request_id = await claimed_loan(engine, ledger, user_osmo)

        assert await engine.poller.poll_once(request_id) == 1
        assert await engine.poller.poll_once(request_id) == 2
        assert await engine.poller.poll_once(request_id) is None

        request = engine.store.get_request(request_id)
        assert request.status == "failed"
        assert request.failure_reason == "verification budget exhausted"
        history = engine.store.get_transitions(request_id)
        assert history[-1].reason == "verification budget exhausted"
        assert BUDGET_EXHAUSTED == "VERIFICATION_BUDGET_EXHAUSTED"
        assert engine.store.get_escrow(request_id) is not None

    @pytest.mark.asyncio
    async def test_failed_apply_is_retried(self, make_engine, ledger, user_osmo, monkeypatch):
        engine = make_engine(SUCCESS)
        request_id = await claimed_loan(engine, ledger, user_osmo)

        calls = []
        original = engine.apply_verification

        async def flaky_apply(rid, result):
            calls.append(rid)
            if len(calls) == 1:
                raise RuntimeError("store unavailable")
            return await original(rid, result)

        monkeypatch.setattr(engine, "apply_verification", flaky_apply)

        assert await engine.poller.poll_once(request_id) == 1
        assert engine.store.get_request(request_id).status == "claimed"
        assert await engine.poller.poll_once(request_id) is None
        assert engine.store.get_request(request_id).status == "completed"


class TestStaleness:
    @pytest.mark.asyncio
    async def test_alarm_logged_once(self, make_engine, ledger, clock, user_osmo, caplog):
        engine = make_engine(PENDING)
        request_id = await claimed_loan(engine, ledger, user_osmo)

        with caplog.at_level(logging.WARNING, logger="zeromiles.poller"):
            await engine.poller.poll_once(request_id)
            assert "Stale claim" not in caplog.text

            clock.advance(minutes=45)
            await engine.poller.poll_once(request_id)
            await engine.poller.poll_once(request_id)

        alarms = [r for r in caplog.records if "Stale claim" in r.getMessage()]
        assert len(alarms) == 1
        assert request_id in alarms[0].getMessage()
        # Stale claims keep polling
        assert engine.store.get_request(request_id).status == "claimed"


class TestWatch:
    @pytest.mark.asyncio
    async def test_watch_is_idempotent(self, make_engine, ledger, user_osmo):
        engine = make_engine(PENDING)
        request_id = await claimed_loan(engine, ledger, user_osmo)
        try:
            first = engine.poller.watch(request_id)
            assert engine.poller.watch(request_id) is first
            assert engine.poller.active_count == 1
        finally:
            await engine.stop()
        assert engine.poller.active_count == 0
        assert not engine.poller.is_watching(request_id)

    @pytest.mark.asyncio
    async def test_task_ends_when_settled(self, make_engine, ledger, user_osmo):
        engine = make_engine(PENDING, PENDING, SUCCESS)
        request_id = await claimed_loan(engine, ledger, user_osmo)

        engine.poller.watch(request_id)
        await engine.poller.join(request_id)

        assert not engine.poller.is_watching(request_id)
        assert engine.store.get_request(request_id).status == "completed"


class TestBackoff:
    def test_fixed_interval(self):
        config = LoanConfig(poll_interval=10.0)
        assert [config.next_poll_delay(n) for n in (1, 2, 5)] == [10.0, 10.0, 10.0]

    def test_exponential_capped(self):
        config = LoanConfig(poll_interval=10.0, backoff_multiplier=2.0, max_poll_interval=60.0)
        assert [config.next_poll_delay(n) for n in (1, 2, 3, 4, 5)] == [10.0, 20.0, 40.0, 60.0, 60.0]

    def test_invalid_policy(self):
        with pytest.raises(ValueError):
            LoanConfig(backoff_multiplier=0.5)
        with pytest.raises(ValueError):
            LoanConfig(max_verification_attempts=0)
        with pytest.raises(ValueError):
            LoanConfig(max_claim_age=timedelta(minutes=5), default_chain="nowhere")
