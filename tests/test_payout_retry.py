"""
Tests for automatic payout retries.
"""
from datetime import timedelta

import pytest

from ride_payments.core.clock import utcnow
from ride_payments.core.enums import Provider, TransactionStatus
from ride_payments.integrations.base import ProviderTransportError

from conftest import DRIVER_PHONE, rejected

TEMPORARY = "Service temporarily unavailable"


async def _failed_payout(orchestrator, adapters, db, message: str = TEMPORARY):
    adapters[Provider.MTN].payout_results.append(rejected(message, "FAILED"))
    result = await orchestrator.initiate_payout(
        db,
        driver_id="D1",
        booking_id="B1",
        amount=4000,
        phone_number=DRIVER_PHONE,
        reason="Trip earnings",
    )
    assert result.status_code == 402
    return await orchestrator.store.get_payout(db, result.response["payoutId"])


class TestPayoutRetry:
    """Test suite for PayoutRetryEngine."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retries_until_exhausted(self, orchestrator, adapters, test_db) -> None:
        """Test a payout that keeps failing is retried three times, then stops."""
        payout = await _failed_payout(orchestrator, adapters, test_db)
        engine = orchestrator.retry_engine
        start = utcnow()

        for i in range(1, 4):
            adapters[Provider.MTN].payout_results.append(rejected(TEMPORARY, "FAILED"))
            result = await engine.retry_payout(test_db, payout, start + timedelta(minutes=6 * i))
            assert result.outcome == "failed"
            payout = result.payout
            assert payout.retry_count == i

        assert payout.status == TransactionStatus.FAILED.value
        assert payout.max_retries_reached is True
        assert len(payout.retry_history) == 3
        assert payout.retry_history[0]["attempt"] == 1
        assert payout.retry_history[0]["reason"] == f"Retry due to: FAILED - {TEMPORARY}"

        final = await engine.retry_payout(test_db, payout, start + timedelta(minutes=30))
        assert final.outcome == "exhausted"
        # First submission plus three retries
        assert len(adapters[Provider.MTN].calls["payout"]) == 4

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cooldown_between_attempts(self, orchestrator, adapters, test_db) -> None:
        """Test no retry happens before the cooldown has elapsed."""
        payout = await _failed_payout(orchestrator, adapters, test_db)
        engine = orchestrator.retry_engine

        early = await engine.retry_payout(test_db, payout, utcnow() + timedelta(minutes=2))

        assert early.outcome == "cooldown"
        assert early.payout.retry_count == 0
        assert len(adapters[Provider.MTN].calls["payout"]) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self, orchestrator, adapters, test_db) -> None:
        """Test refusals such as an invalid payee are never retried."""
        payout = await _failed_payout(
            orchestrator, adapters, test_db, message="PAYEE_NOT_ALLOWED_TO_RECEIVE"
        )

        result = await orchestrator.retry_engine.retry_payout(
            test_db, payout, utcnow() + timedelta(hours=1)
        )

        assert result.outcome == "not_retryable"
        assert result.payout.retry_count == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_successful_retry_replaces_token(self, orchestrator, adapters, test_db) -> None:
        """Test a successful resubmission reopens the payout under a new token."""
        payout = await _failed_payout(orchestrator, adapters, test_db)

        result = await orchestrator.retry_engine.retry_payout(
            test_db, payout, utcnow() + timedelta(minutes=6)
        )

        assert result.outcome == "submitted"
        assert result.payout.status == TransactionStatus.PROCESSING.value
        assert result.payout.transaction_id == "mtn-payout-1"
        entry = result.payout.retry_history[-1]
        assert entry["previous_transaction_id"] is None
        assert entry["new_transaction_id"] == "mtn-payout-1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transport_error_counts_as_failed_attempt(
        self, orchestrator, adapters, test_db
    ) -> None:
        """Test an unreachable provider uses up the retry slot."""
        payout = await _failed_payout(orchestrator, adapters, test_db)
        adapters[Provider.MTN].payout_results.append(
            ProviderTransportError("mtn payout failed: ConnectError", Provider.MTN, "payout")
        )

        result = await orchestrator.retry_engine.retry_payout(
            test_db, payout, utcnow() + timedelta(minutes=6)
        )

        assert result.outcome == "failed"
        assert result.payout.retry_count == 1
        assert result.payout.status == TransactionStatus.FAILED.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_not_failed_payout(self, orchestrator, test_db) -> None:
        """Test processing payouts are left alone."""
        result = await orchestrator.initiate_payout(
            test_db,
            driver_id="D1",
            booking_id="B1",
            amount=4000,
            phone_number=DRIVER_PHONE,
            reason="Trip earnings",
        )
        payout = await orchestrator.store.get_payout(test_db, result.response["payoutId"])

        retry = await orchestrator.retry_engine.retry_payout(test_db, payout)

        assert retry.outcome == "not_failed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sweep_counts_outcomes(self, orchestrator, adapters, test_db) -> None:
        """Test the scheduled pass retries every eligible payout."""
        await _failed_payout(orchestrator, adapters, test_db)
        await _failed_payout(orchestrator, adapters, test_db, message="NOT_ENOUGH_FUNDS")

        counts = await orchestrator.retry_engine.retry_eligible_payouts(
            test_db, utcnow() + timedelta(minutes=6)
        )

        assert counts == {"submitted": 1, "not_retryable": 1}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_callback_after_last_retry_marks_exhausted(
        self, orchestrator, callback_handler, adapters, test_db, notifier
    ) -> None:
        """Test a provider failure after the final retry flags the payout."""
        from ride_payments.core.enums import TransactionKind
        from ride_payments.core.notifications import drain_background_notifications

        orchestrator.retry_engine.max_retries = 1
        payout = await _failed_payout(orchestrator, adapters, test_db)
        retried = await orchestrator.retry_engine.retry_payout(
            test_db, payout, utcnow() + timedelta(minutes=6)
        )
        assert retried.outcome == "submitted"

        ack = await callback_handler.handle(
            Provider.MTN,
            {
                "externalId": retried.payout.transaction_id,
                "status": "FAILED",
                "reason": "INTERNAL_PROCESSING_ERROR",
            },
            test_db,
            kind=TransactionKind.PAYOUT,
        )

        assert ack["status"] == "failed"
        refreshed = await orchestrator.store.get_payout(test_db, payout.id)
        assert refreshed.max_retries_reached is True

        await drain_background_notifications()
        sent = notifier.of_type("payout_failed")
        assert len(sent) == 1
        assert sent[0]["data"]["maxRetriesReached"] is True
        assert sent[0]["data"]["retryable"] is False
