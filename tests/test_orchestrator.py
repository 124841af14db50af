"""
Unit tests for the payment orchestrator.
"""
import uuid
from decimal import Decimal

import pytest

from ride_payments.core.enums import Provider, TransactionKind, TransactionStatus
from ride_payments.core.errors import PhoneNumberError, RecordNotFoundError
from ride_payments.core.fees import FeeCalculator
from ride_payments.core.notifications import drain_background_notifications
from ride_payments.core.orchestrator import TEMPORARY_PAYOUT_FAILURE
from ride_payments.core.store import TransitionSource
from ride_payments.integrations.base import ProviderStatus, ProviderTransportError

from conftest import DRIVER_PHONE, MTN_PHONE, ORANGE_PHONE, rejected


async def _completed_payment(orchestrator, db, booking_id: str = "B1", amount: str = "5000"):
    result = await orchestrator.initiate_payin(
        db,
        booking_id=booking_id,
        amount=amount,
        phone_number=MTN_PHONE,
        idempotency_key=f"payment_{booking_id}_U1",
        user_id="U1",
    )
    payment = await orchestrator.store.get_payment(db, result.response["paymentId"])
    await orchestrator.apply_provider_status(
        db, payment, "SUCCESSFUL", source=TransitionSource.CALLBACK
    )
    return payment


class TestProviderSelection:
    """Test suite for provider routing."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_prefix_detection(self, orchestrator) -> None:
        """Test the operator is inferred from the number."""
        assert orchestrator.select_provider("237677123456") is Provider.MTN
        assert orchestrator.select_provider("237699123456") is Provider.ORANGE

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_explicit_provider_must_match_prefix(self, orchestrator) -> None:
        """Test an explicit provider is checked against its prefix set."""
        assert orchestrator.select_provider("237677123456", "mtn") is Provider.MTN
        assert orchestrator.select_provider("237677123456", Provider.PAWAPAY) is Provider.PAWAPAY
        with pytest.raises(PhoneNumberError):
            orchestrator.select_provider("237677123456", Provider.ORANGE)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_aggregator_flag_wins(self, orchestrator) -> None:
        """Test the aggregator flag routes everything through pawaPay."""
        orchestrator.use_aggregator = True
        assert orchestrator.select_provider("237677123456", Provider.MTN) is Provider.PAWAPAY
        with pytest.raises(PhoneNumberError):
            orchestrator.select_provider("237620123456")


class TestPayins:
    """Test suite for payins."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payin_success_then_callback(
        self, orchestrator, callback_handler, test_db, notifier
    ) -> None:
        """Test a booking payment from submission to completion."""
        result = await orchestrator.initiate_payin(
            test_db,
            booking_id="B1",
            amount=5000,
            phone_number=MTN_PHONE,
            idempotency_key="payment_B1_U1",
            user_id="U1",
        )

        assert result.status_code == 200
        assert result.success
        assert result.response["status"] == "processing"
        assert result.response["provider"] == "mtn"
        token = result.response["transactionToken"]
        assert token

        ack = await callback_handler.handle(
            Provider.MTN,
            {"externalId": token, "status": "SUCCESSFUL", "financialTransactionId": "987"},
            test_db,
        )
        assert ack["status"] == "completed"

        payment = await orchestrator.store.get_payment(test_db, result.response["paymentId"])
        assert payment.status == TransactionStatus.COMPLETED.value
        assert payment.amount == Decimal("5000")
        assert payment.phone_number == "237677123456"

        await drain_background_notifications()
        sent = notifier.of_type("payin_completed")
        assert len(sent) == 1
        assert sent[0]["user_id"] == "U1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payin_idempotent_replay(self, orchestrator, adapters, test_db) -> None:
        """Test the same (booking, key) never reaches the provider twice."""
        kwargs = dict(
            booking_id="B1",
            amount="5000",
            phone_number=MTN_PHONE,
            idempotency_key="payment_B1_U1",
            user_id="U1",
        )
        first = await orchestrator.initiate_payin(test_db, **kwargs)
        second = await orchestrator.initiate_payin(test_db, **kwargs)

        assert second.status_code == 200
        assert second.response["paymentId"] == first.response["paymentId"]
        assert second.response["transactionToken"] == first.response["transactionToken"]
        assert len(adapters[Provider.MTN].calls["payin"]) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "amount, phone, provider",
        [
            (0, MTN_PHONE, None),
            ("-5", MTN_PHONE, None),
            ("abc", MTN_PHONE, None),
            (5000, "620123456", None),
            (5000, "12345", None),
            (5000, MTN_PHONE, Provider.ORANGE),
        ],
    )
    async def test_payin_validation(
        self, orchestrator, adapters, test_db, amount, phone, provider
    ) -> None:
        """Test invalid requests are refused before reaching a provider."""
        result = await orchestrator.initiate_payin(
            test_db, booking_id="B1", amount=amount, phone_number=phone, provider=provider
        )

        assert result.status_code == 400
        assert result.response["success"] is False
        assert all(not adapter.calls["payin"] for adapter in adapters.values())

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payin_transport_error_frees_key(self, orchestrator, adapters, test_db) -> None:
        """Test an unreachable provider leaves no record and the key reusable."""
        adapters[Provider.MTN].payin_results.append(
            ProviderTransportError("mtn payin failed: ConnectTimeout", Provider.MTN, "payin")
        )
        kwargs = dict(
            booking_id="B1", amount=5000, phone_number=MTN_PHONE, idempotency_key="k1"
        )

        failed = await orchestrator.initiate_payin(test_db, **kwargs)
        assert failed.status_code == 502
        assert await orchestrator.store.get_payment_by_idempotency_key(test_db, "B1", "k1") is None

        retried = await orchestrator.initiate_payin(test_db, **kwargs)
        assert retried.status_code == 200

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payin_rejected_by_provider(self, orchestrator, adapters, test_db) -> None:
        """Test a provider refusal fails the payment."""
        adapters[Provider.ORANGE].payin_results.append(rejected("Solde insuffisant"))

        result = await orchestrator.initiate_payin(
            test_db, booking_id="B2", amount=1500, phone_number=ORANGE_PHONE
        )

        assert result.status_code == 402
        assert result.response["status"] == "failed"
        payment = await orchestrator.store.get_payment(test_db, result.response["paymentId"])
        assert payment.status == TransactionStatus.FAILED.value
        assert payment.provider == "orange"
        assert payment.error_message == "Solde insuffisant"


class TestPayouts:
    """Test suite for payouts."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payout_success(self, orchestrator, callback_handler, test_db, notifier) -> None:
        """Test a driver payout from submission to completion."""
        result = await orchestrator.initiate_payout(
            test_db,
            driver_id="D1",
            booking_id="B1",
            amount="4000",
            phone_number=DRIVER_PHONE,
            reason="Trip earnings",
        )
        assert result.status_code == 200
        assert result.response["status"] == "processing"

        ack = await callback_handler.handle(
            Provider.MTN,
            {"externalId": result.response["transactionToken"], "status": "SUCCESSFUL"},
            test_db,
            kind=TransactionKind.PAYOUT,
        )
        assert ack["status"] == "completed"

        await drain_background_notifications()
        sent = notifier.of_type("payout_completed")
        assert len(sent) == 1
        assert sent[0]["user_id"] == "D1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payout_unknown_payment(self, orchestrator, adapters, test_db) -> None:
        """Test a payout tied to an unknown payment is refused."""
        result = await orchestrator.initiate_payout(
            test_db,
            driver_id="D1",
            booking_id="B1",
            amount=4000,
            phone_number=DRIVER_PHONE,
            reason="Trip earnings",
            payment_id=str(uuid.uuid4()),
        )

        assert result.status_code == 404
        assert not adapters[Provider.MTN].calls["payout"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payout_transport_error_leaves_no_row(
        self, orchestrator, adapters, test_db
    ) -> None:
        """Test nothing is written when the provider cannot be reached."""
        adapters[Provider.MTN].payout_results.append(
            ProviderTransportError("mtn payout failed: ReadTimeout", Provider.MTN, "payout")
        )

        result = await orchestrator.initiate_payout(
            test_db,
            driver_id="D1",
            booking_id="B1",
            amount=4000,
            phone_number=DRIVER_PHONE,
            reason="Trip earnings",
        )

        assert result.status_code == 502
        assert "payoutId" not in result.response

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payout_temporary_failure(self, orchestrator, adapters, test_db) -> None:
        """Test a transient refusal is recorded as a retryable failure."""
        adapters[Provider.MTN].payout_results.append(
            rejected("Service temporarily unavailable", "FAILED")
        )

        result = await orchestrator.initiate_payout(
            test_db,
            driver_id="D1",
            booking_id="B1",
            amount=4000,
            phone_number=DRIVER_PHONE,
            reason="Trip earnings",
        )

        assert result.status_code == 402
        assert result.response["retryable"] is True
        assert result.response["message"] == TEMPORARY_PAYOUT_FAILURE
        payout = await orchestrator.store.get_payout(test_db, result.response["payoutId"])
        assert payout.status == TransactionStatus.FAILED.value
        assert payout.last_provider_status == "FAILED"


    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_booking_payout_deducts_fees(self, orchestrator, adapters, test_db) -> None:
        """Test a booking pays the driver its net fare less fees, once."""
        orchestrator.fee_calculator = FeeCalculator(
            transaction_fee_rate="1.5", transaction_fee_fixed="100", commission_rate="5"
        )
        first = await _completed_payment(orchestrator, test_db, booking_id="B5")
        second = await orchestrator.initiate_payin(
            test_db,
            booking_id="B5",
            amount=5000,
            phone_number=MTN_PHONE,
            idempotency_key="payment_B5_U2",
            user_id="U2",
        )
        await orchestrator.apply_provider_status(
            test_db,
            await orchestrator.store.get_payment(test_db, second.response["paymentId"]),
            "SUCCESSFUL",
            source=TransitionSource.CALLBACK,
        )
        refund = await orchestrator.initiate_refund(
            test_db, payment_id=first.id, booking_id="B5", amount=2000, reason="Seat given up"
        )
        assert refund.status_code == 200

        result = await orchestrator.initiate_booking_payout(
            test_db, booking_id="B5", driver_id="D1", phone_number=DRIVER_PHONE
        )

        # 8000 collected: 120 + 100 fee, 400 commission
        assert result.status_code == 200
        assert Decimal(result.response["fees"]["originalAmount"]) == Decimal("8000")
        assert Decimal(result.response["fees"]["driverEarnings"]) == Decimal("7380")
        _, amount, reason, currency = adapters[Provider.MTN].calls["payout"][0]
        assert amount == Decimal("7380")
        assert reason == "Ride payment - Booking B5 (2 payments)"
        assert currency == "XAF"

        payout = await orchestrator.store.get_payout(test_db, result.response["payoutId"])
        assert payout.amount == Decimal("7380")
        assert payout.original_amount == Decimal("8000")
        assert payout.transaction_fee == Decimal("220")
        assert payout.commission == Decimal("400")
        assert payout.payment_id in {first.id, uuid.UUID(second.response["paymentId"])}

        again = await orchestrator.initiate_booking_payout(
            test_db, booking_id="B5", driver_id="D1", phone_number=DRIVER_PHONE
        )
        assert again.status_code == 409
        assert again.response["payoutId"] == result.response["payoutId"]
        assert len(adapters[Provider.MTN].calls["payout"]) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_booking_payout_needs_collected_fare(
        self, orchestrator, adapters, test_db
    ) -> None:
        """Test bookings without a collected payment, or eaten by fees, are not paid out."""
        unpaid = await orchestrator.initiate_booking_payout(
            test_db, booking_id="B6", driver_id="D1", phone_number=DRIVER_PHONE
        )
        assert unpaid.status_code == 400

        await _completed_payment(orchestrator, test_db, booking_id="B6", amount="300")
        orchestrator.fee_calculator = FeeCalculator(transaction_fee_fixed="500")
        eaten = await orchestrator.initiate_booking_payout(
            test_db, booking_id="B6", driver_id="D1", phone_number=DRIVER_PHONE
        )
        assert eaten.status_code == 400
        assert not adapters[Provider.MTN].calls["payout"]


class TestRefunds:
    """Test suite for refunds."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_refund(self, orchestrator, adapters, test_db) -> None:
        """Test a partial refund moves the payment to partial_refund."""
        payment = await _completed_payment(orchestrator, test_db)

        result = await orchestrator.initiate_refund(
            test_db,
            payment_id=str(payment.id),
            booking_id="B1",
            amount=2000,
            reason="Trip shortened",
        )

        assert result.status_code == 200
        assert result.response["refundType"] == "partial"
        assert result.response["status"] == "processing"
        assert result.response["refundToken"]

        refreshed = await orchestrator.store.get_payment(test_db, payment.id)
        assert refreshed.status == TransactionStatus.PARTIAL_REFUND.value

        original_token, amount, _, phone, _ = adapters[Provider.MTN].calls["refund"][0]
        assert original_token == payment.transaction_id
        assert amount == Decimal("2000")
        assert phone == "237677123456"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refunds_cannot_exceed_payment(self, orchestrator, test_db) -> None:
        """Test the sum of refunds is capped at the payment amount."""
        payment = await _completed_payment(orchestrator, test_db)

        first = await orchestrator.initiate_refund(
            test_db, payment_id=payment.id, booking_id="B1", amount=2000, reason="r1"
        )
        second = await orchestrator.initiate_refund(
            test_db, payment_id=payment.id, booking_id="B1", amount=3500, reason="r2"
        )
        third = await orchestrator.initiate_refund(
            test_db, payment_id=payment.id, booking_id="B1", amount=3000, reason="r3"
        )

        assert first.status_code == 200
        assert second.status_code == 400
        assert "exceeds" in second.response["message"]
        assert third.status_code == 200
        assert third.response["refundType"] == "partial"
        refreshed = await orchestrator.store.get_payment(test_db, payment.id)
        assert refreshed.refunded_amount == Decimal("5000")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_validation(self, orchestrator, test_db) -> None:
        """Test refunds against unknown, foreign or unpaid payments."""
        unknown = await orchestrator.initiate_refund(
            test_db, payment_id=str(uuid.uuid4()), booking_id="B1", amount=100, reason="r"
        )
        assert unknown.status_code == 404

        pending = await orchestrator.initiate_payin(
            test_db, booking_id="B9", amount=5000, phone_number=MTN_PHONE
        )
        not_completed = await orchestrator.initiate_refund(
            test_db,
            payment_id=pending.response["paymentId"],
            booking_id="B9",
            amount=100,
            reason="r",
        )
        assert not_completed.status_code == 400

        payment = await _completed_payment(orchestrator, test_db)
        wrong_booking = await orchestrator.initiate_refund(
            test_db, payment_id=payment.id, booking_id="B2", amount=100, reason="r"
        )
        assert wrong_booking.status_code == 400

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_rejected_keeps_payment(self, orchestrator, adapters, test_db) -> None:
        """Test a refused refund is kept as failed and the payment is untouched."""
        payment = await _completed_payment(orchestrator, test_db)
        adapters[Provider.MTN].refund_results.append(rejected("Refund not allowed"))

        result = await orchestrator.initiate_refund(
            test_db, payment_id=payment.id, booking_id="B1", amount=5000, reason="Cancelled"
        )

        assert result.status_code == 402
        assert result.response["status"] == "failed"
        refund = await orchestrator.store.get_refund(test_db, result.response["refundId"])
        assert refund.status == TransactionStatus.FAILED.value
        assert refund.refund_type == "full"
        refreshed = await orchestrator.store.get_payment(test_db, payment.id)
        assert refreshed.status == TransactionStatus.COMPLETED.value
        assert refreshed.refunded_amount == Decimal("0")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_seat_reduction_refund(self, orchestrator, test_db) -> None:
        """Test three seats at 1000 reduced to one refunds 2000."""
        payment = await _completed_payment(orchestrator, test_db, amount="3000")

        result = await orchestrator.refund_seat_reduction(
            test_db,
            payment_id=payment.id,
            booking_id="B1",
            seats_before=3,
            seats_after=1,
            price_per_seat=1000,
        )

        assert result.status_code == 200
        assert result.response["amount"] == "2000"
        refund = await orchestrator.store.get_refund(test_db, result.response["refundId"])
        assert refund.reason == "Reduced from 3 to 1 seats"

        invalid = await orchestrator.refund_seat_reduction(
            test_db,
            payment_id=payment.id,
            booking_id="B1",
            seats_before=1,
            seats_after=1,
            price_per_seat=1000,
        )
        assert invalid.status_code == 400

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_callback_notifies_payer(
        self, orchestrator, callback_handler, test_db, notifier
    ) -> None:
        """Test a completed refund notifies the original payer."""
        payment = await _completed_payment(orchestrator, test_db)
        result = await orchestrator.initiate_refund(
            test_db, payment_id=payment.id, booking_id="B1", amount=1000, reason="r"
        )

        ack = await callback_handler.handle(
            Provider.MTN,
            {"externalId": result.response["refundToken"], "status": "SUCCESSFUL"},
            test_db,
        )

        assert ack["status"] == "completed"
        await drain_background_notifications()
        sent = notifier.of_type("refund_completed")
        assert len(sent) == 1
        assert sent[0]["user_id"] == "U1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_refund_frees_balance(
        self, orchestrator, callback_handler, test_db
    ) -> None:
        """Test a refund that later fails can be requested again."""
        payment = await _completed_payment(orchestrator, test_db)
        first = await orchestrator.initiate_refund(
            test_db, payment_id=payment.id, booking_id="B1", amount=5000, reason="Cancelled"
        )
        blocked = await orchestrator.initiate_refund(
            test_db, payment_id=payment.id, booking_id="B1", amount=5000, reason="Cancelled"
        )
        assert first.status_code == 200
        assert blocked.status_code == 400

        ack = await callback_handler.handle(
            Provider.MTN,
            {"externalId": first.response["refundToken"], "status": "FAILED"},
            test_db,
        )
        assert ack["status"] == "failed"
        refreshed = await orchestrator.store.get_payment(test_db, payment.id)
        assert refreshed.refunded_amount == Decimal("0")

        again = await orchestrator.initiate_refund(
            test_db, payment_id=payment.id, booking_id="B1", amount=5000, reason="Cancelled"
        )
        assert again.status_code == 200
        assert again.response["refundType"] == "full"


class TestCheckStatus:
    """Test suite for on-demand status checks."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_check_status_refreshes_in_flight(self, orchestrator, adapters, test_db) -> None:
        """Test an in-flight payin is refreshed from the provider."""
        result = await orchestrator.initiate_payin(
            test_db, booking_id="B1", amount=5000, phone_number=MTN_PHONE, user_id="U1"
        )
        token = result.response["transactionToken"]

        unchanged = await orchestrator.check_status(test_db, token)
        assert unchanged["status"] == "processing"
        assert unchanged["updated"] is False

        adapters[Provider.MTN].statuses[token] = ProviderStatus(provider_status="SUCCESSFUL")
        status = await orchestrator.check_status(test_db, result.response["paymentId"])

        assert status["status"] == "completed"
        assert status["updated"] is True
        assert status["kind"] == "payin"
        assert status["transactionToken"] == token

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_check_status_failed_payin_message(
        self, orchestrator, adapters, test_db
    ) -> None:
        """Test failed payments carry a user-facing reason."""
        result = await orchestrator.initiate_payin(
            test_db, booking_id="B1", amount=5000, phone_number=MTN_PHONE
        )
        token = result.response["transactionToken"]
        adapters[Provider.MTN].statuses[token] = ProviderStatus(
            provider_status="FAILED", reason="NOT_ENOUGH_FUNDS"
        )

        status = await orchestrator.check_status(test_db, token)

        assert status["status"] == "failed"
        assert "insuffisant" in status["message"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_check_status_unknown_reference(self, orchestrator, test_db) -> None:
        """Test unknown references raise RecordNotFoundError."""
        with pytest.raises(RecordNotFoundError):
            await orchestrator.check_status(test_db, "nope")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_check_status_failed_payout_in_cooldown(
        self, orchestrator, adapters, test_db
    ) -> None:
        """Test a failed payout inside its cooldown is not resubmitted."""
        adapters[Provider.MTN].payout_results.append(
            rejected("Service temporarily unavailable", "FAILED")
        )
        result = await orchestrator.initiate_payout(
            test_db,
            driver_id="D1",
            booking_id="B1",
            amount=4000,
            phone_number=DRIVER_PHONE,
            reason="Trip earnings",
        )

        status = await orchestrator.check_status(test_db, result.response["payoutId"])

        assert status["status"] == "failed"
        assert status["updated"] is False
        assert status["message"] == TEMPORARY_PAYOUT_FAILURE
        assert len(adapters[Provider.MTN].calls["payout"]) == 1
