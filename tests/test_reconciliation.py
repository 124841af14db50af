"""
Tests for the reconciliation sweep.
"""
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from ride_payments.core.clock import utcnow
from ride_payments.core.enums import Provider, TransactionStatus
from ride_payments.core.reconciliation import UNSUBMITTED_PAYMENT_MESSAGE, ReconciliationEngine
from ride_payments.database.models import ReconciliationRun
from ride_payments.integrations.base import ProviderStatus, ProviderTransportError

from conftest import DRIVER_PHONE, MTN_PHONE, rejected


async def _payin(orchestrator, db, booking_id: str) -> dict:
    result = await orchestrator.initiate_payin(
        db, booking_id=booking_id, amount=5000, phone_number=MTN_PHONE, user_id="U1"
    )
    return result.response


class TestReconciliationEngine:
    """Test suite for ReconciliationEngine."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_sweep_converges_stale_records(
        self, orchestrator, adapters, session_factory, test_db
    ) -> None:
        """Test stale payins are refreshed and failed payouts retried."""
        mtn = adapters[Provider.MTN]
        settled = await _payin(orchestrator, test_db, "B1")
        unknown = await _payin(orchestrator, test_db, "B2")
        unreachable = await _payin(orchestrator, test_db, "B3")
        mtn.statuses[settled["transactionToken"]] = ProviderStatus(provider_status="SUCCESSFUL")
        mtn.statuses[unreachable["transactionToken"]] = ProviderTransportError(
            "mtn payin_status failed: ReadTimeout", Provider.MTN, "payin_status"
        )

        mtn.payout_results.append(rejected("Service temporarily unavailable", "FAILED"))
        payout = await orchestrator.initiate_payout(
            test_db,
            driver_id="D1",
            booking_id="B1",
            amount=4000,
            phone_number=DRIVER_PHONE,
            reason="Trip earnings",
        )

        engine = ReconciliationEngine(orchestrator, session_factory=session_factory)
        summary = await engine.run_sweep(now=utcnow() + timedelta(minutes=10))

        assert summary["status"] == "completed"
        assert summary["checked"] == 3
        assert summary["updated"] == 1
        assert summary["errors"] == 1
        assert summary["retried"] == 1
        assert summary["retryOutcomes"] == {"submitted": 1}

        async with session_factory() as db:
            store = orchestrator.store
            assert (await store.get_payment(db, settled["paymentId"])).status == "completed"
            assert (await store.get_payment(db, unknown["paymentId"])).status == "processing"
            assert (await store.get_payment(db, unreachable["paymentId"])).status == "processing"
            retried = await store.get_payout(db, payout.response["payoutId"])
            assert retried.status == TransactionStatus.PROCESSING.value
            assert retried.retry_count == 1

            run = (await db.execute(select(ReconciliationRun))).scalar_one()
            assert run.status == "completed"
            assert run.checked_count == 3
            assert run.error_count == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_fresh_records_are_left_alone(
        self, orchestrator, adapters, session_factory, test_db
    ) -> None:
        """Test records younger than the stale window are not re-checked."""
        await _payin(orchestrator, test_db, "B1")

        engine = ReconciliationEngine(orchestrator, session_factory=session_factory)
        summary = await engine.run_sweep()

        assert summary["checked"] == 0
        assert not adapters[Provider.MTN].calls["check_status"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_zero_stale_window(self, orchestrator, adapters, session_factory, test_db) -> None:
        """Test a zero window re-checks every in-flight record."""
        await _payin(orchestrator, test_db, "B1")

        engine = ReconciliationEngine(
            orchestrator, session_factory=session_factory, stale_after_seconds=0
        )
        summary = await engine.run_sweep(now=utcnow() + timedelta(seconds=1))

        assert summary["checked"] == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_payout_failure_found_by_sweep(
        self, orchestrator, adapters, session_factory, test_db, notifier
    ) -> None:
        """Test a payout that failed silently is picked up and reported."""
        from ride_payments.core.notifications import drain_background_notifications

        created = await orchestrator.initiate_payout(
            test_db,
            driver_id="D1",
            booking_id="B1",
            amount=4000,
            phone_number=DRIVER_PHONE,
            reason="Trip earnings",
        )
        adapters[Provider.MTN].statuses[created.response["transactionToken"]] = ProviderStatus(
            provider_status="FAILED", reason="NOT_ENOUGH_FUNDS"
        )

        engine = ReconciliationEngine(orchestrator, session_factory=session_factory)
        summary = await engine.run_sweep(now=utcnow() + timedelta(minutes=10))

        assert summary["updated"] == 1
        # Insufficient funds on the disbursement account is not retried
        assert summary["retryOutcomes"] == {"not_retryable": 1}

        await drain_background_notifications()
        sent = notifier.of_type("payout_failed")
        assert len(sent) == 1
        assert sent[0]["data"]["retryable"] is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_records_without_token_are_settled(
        self, orchestrator, adapters, session_factory, test_db
    ) -> None:
        """Test payments never handed to a provider fail and stranded retries are flagged."""
        store = orchestrator.store
        # Process died between writing the row and hearing back from MTN
        stranded, _ = await store.create_payment(
            test_db,
            booking_id="B7",
            idempotency_key="payment_B7_U1",
            amount=Decimal("5000"),
            currency="XAF",
            provider="mtn",
            phone_number="237677123456",
            user_id="U1",
        )
        adapters[Provider.MTN].payout_results.append(
            rejected("Service temporarily unavailable", "FAILED")
        )
        created = await orchestrator.initiate_payout(
            test_db,
            driver_id="D1",
            booking_id="B7",
            amount=4000,
            phone_number=DRIVER_PHONE,
            reason="Trip earnings",
        )
        payout = await store.get_payout(test_db, created.response["payoutId"])
        # Retry claimed but its outcome never written
        assert await store.claim_payout_retry(test_db, payout, 0, utcnow())

        engine = ReconciliationEngine(orchestrator, session_factory=session_factory)
        early = await engine.run_sweep()
        assert early["abandoned"] == 0
        assert early["flagged"] == 0

        summary = await engine.run_sweep(now=utcnow() + timedelta(minutes=10))

        assert summary["abandoned"] == 1
        assert summary["flagged"] == 1
        assert not adapters[Provider.MTN].calls["check_status"]
        async with session_factory() as db:
            payment = await store.get_payment(db, stranded.id)
            assert payment.status == TransactionStatus.FAILED.value
            assert payment.error_message == UNSUBMITTED_PAYMENT_MESSAGE
            flagged = await store.get_payout(db, payout.id)
            assert flagged.status == TransactionStatus.PROCESSING.value
            runs = (
                await db.execute(select(ReconciliationRun).order_by(ReconciliationRun.id))
            ).scalars().all()
            assert runs[-1].details["abandoned"] == 1
