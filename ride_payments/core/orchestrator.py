"""
Payment orchestrator.

Single entry point for the booking application:
1. Validate the request (amount, phone number, provider)
2. Pick the provider (aggregator flag, explicit choice, or phone prefix)
3. Claim idempotency / create the owning record
4. Submit through the provider adapter
5. Persist the provider token together with the outcome
6. Answer with a uniform {status_code, response} envelope

It also applies provider-reported statuses (from callbacks, polls and the
reconciliation sweep) through the guarded state machine, and fires the
resulting notifications.
"""
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from ride_payments.config import Settings, get_settings
from ride_payments.core.enums import Provider, TransactionKind, TransactionStatus
from ride_payments.core.errors import (
    PaymentValidationError,
    PhoneNumberError,
    ReconciliationRiskError,
    RecordNotFoundError,
)
from ride_payments.core.fees import FeeBreakdown, FeeCalculator
from ride_payments.core.idempotency import IdempotencyManager
from ride_payments.core.notifications import (
    HttpNotificationDispatcher,
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    dispatch_in_background,
    user_failure_message,
)
from ride_payments.core.phone import (
    detect_operator,
    is_mtn_number,
    is_orange_number,
    normalize_phone,
)
from ride_payments.core.refunds import (
    calculate_seat_reduction_refund,
    seat_reduction_reason,
    validate_refund_amount,
)
from ride_payments.core.retry import PayoutRetryEngine
from ride_payments.core.status import build_vocabularies, map_provider_status
from ride_payments.core.store import (
    TransactionStore,
    TransitionResult,
    TransitionSource,
    kind_of,
)
from ride_payments.database.models import Payment, Payout, Refund
from ride_payments.integrations import build_adapters
from ride_payments.integrations.base import (
    ProviderAdapter,
    ProviderResult,
    ProviderTransportError,
)
from ride_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

STATUS_MESSAGES = {
    TransactionStatus.PENDING: "Transaction created, waiting for submission",
    TransactionStatus.PROCESSING: "Transaction in progress, waiting for provider confirmation",
    TransactionStatus.COMPLETED: "Transaction completed",
    TransactionStatus.FAILED: "Transaction failed",
    TransactionStatus.PARTIAL_REFUND: "Payment partially refunded",
}

TEMPORARY_PAYOUT_FAILURE = "Temporary failure, the payout will be retried automatically"
FINAL_PAYOUT_FAILURE = "Payout failed permanently, support has been notified"


@dataclass
class OrchestratorResponse:
    """Uniform result envelope returned to callers whatever the provider."""

    status_code: int
    response: Dict[str, Any]

    @property
    def success(self) -> bool:
        """Check if the request was accepted."""
        return bool(self.response.get("success"))


def _failure(status_code: int, message: str, **extra: Any) -> OrchestratorResponse:
    return OrchestratorResponse(status_code, {"success": False, "message": message, **extra})


def _parse_amount(amount: Any) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise PaymentValidationError(f"Invalid amount: {amount!r}")
    if not value.is_finite() or value <= 0:
        raise PaymentValidationError("Amount must be positive")
    return value


class PaymentOrchestrator:
    """
    Routes payins, payouts and refunds to providers and converges their status.

    Provider routing, credentials and the aggregator flag are fixed at
    construction time.
    """

    def __init__(
        self,
        adapters: Mapping[Provider, ProviderAdapter],
        store: Optional[TransactionStore] = None,
        settings: Optional[Settings] = None,
        use_aggregator: Optional[bool] = None,
        notifier: Optional[NotificationDispatcher] = None,
        idempotency_manager: Optional[IdempotencyManager] = None,
        fee_calculator: Optional[FeeCalculator] = None,
    ):
        """
        Initialize payment orchestrator.

        Args:
            adapters: Adapter per provider
            store: Transaction store
            settings: Application settings
            use_aggregator: Force every transaction through pawaPay
                (defaults to the ``use_aggregator`` setting)
            notifier: Notification dispatcher (defaults to logging only)
            idempotency_manager: Optional idempotency manager
            fee_calculator: Fee schedule for booking payouts (defaults to settings)
        """
        self.settings = settings or get_settings()
        self.adapters = dict(adapters)
        self.store = store or TransactionStore()
        self.use_aggregator = (
            self.settings.use_aggregator if use_aggregator is None else use_aggregator
        )
        self.notifier = notifier or LoggingNotificationDispatcher()
        self.idempotency_manager = idempotency_manager or IdempotencyManager(
            store=self.store, settings=self.settings
        )
        self.vocabularies = build_vocabularies(self.settings.status_vocabulary_overrides)
        self.fee_calculator = fee_calculator or FeeCalculator.from_settings(self.settings)
        self.retry_engine = PayoutRetryEngine(
            self,
            self.store,
            max_retries=self.settings.payout_max_retries,
            cooldown_seconds=self.settings.payout_retry_cooldown_seconds,
        )

        logger.info(
            "payment_orchestrator_initialized",
            providers=sorted(p.value for p in self.adapters),
            use_aggregator=self.use_aggregator,
        )

    # ------------------------------------------------------------------
    # Provider selection
    # ------------------------------------------------------------------

    def select_provider(self, phone: str, requested: Optional[Provider | str] = None) -> Provider:
        """
        Decide which provider handles a transaction.

        Priority: aggregator flag, then an explicit provider (whose prefix set
        the number must match), then the operator inferred from the prefix.

        Args:
            phone: Normalised phone number
            requested: Provider named by the caller, if any

        Returns:
            Provider: Selected provider

        Raises:
            PhoneNumberError: If the number does not fit the requested or any provider
        """
        if self.use_aggregator:
            if detect_operator(phone) is None:
                raise PhoneNumberError("Phone number does not belong to MTN or Orange")
            return Provider.PAWAPAY

        if requested:
            try:
                requested = Provider(str(getattr(requested, "value", requested)).lower())
            except ValueError:
                raise PaymentValidationError(f"Unsupported provider: {requested}")
            if requested is Provider.MTN and not is_mtn_number(phone):
                raise PhoneNumberError("Phone number is not an MTN Mobile Money number")
            if requested is Provider.ORANGE and not is_orange_number(phone):
                raise PhoneNumberError("Phone number is not an Orange Money number")
            if requested is Provider.PAWAPAY and detect_operator(phone) is None:
                raise PhoneNumberError("Phone number does not belong to MTN or Orange")
            return requested

        operator = detect_operator(phone)
        if operator is None:
            raise PhoneNumberError("Phone number does not belong to MTN or Orange")
        return operator

    def _adapter(self, provider: Provider | str) -> ProviderAdapter:
        provider = Provider(provider)
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise PaymentValidationError(f"Provider {provider.value} is not configured")
        return adapter

    def reconciliation_risk(
        self, kind: TransactionKind, provider: Provider, token: Optional[str], error: Exception
    ) -> ReconciliationRiskError:
        metrics.record_reconciliation_risk(provider.value, kind.value)
        logger.critical(
            "reconciliation_risk",
            kind=kind.value,
            provider=provider.value,
            transaction_token=token,
            error=str(error),
            error_type=type(error).__name__,
        )
        return ReconciliationRiskError(
            f"{provider.value} accepted {kind.value} {token} but it could not be recorded",
            provider=provider.value,
            transaction_token=token,
        )

    # ------------------------------------------------------------------
    # Payins
    # ------------------------------------------------------------------

    async def initiate_payin(
        self,
        db: AsyncSession,
        *,
        booking_id: str,
        amount: Any,
        phone_number: str,
        idempotency_key: Optional[str] = None,
        provider: Optional[Provider | str] = None,
        user_id: Optional[str] = None,
        currency: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> OrchestratorResponse:
        """
        Collect a booking payment from a passenger.

        Args:
            db: Database session
            booking_id: Booking reference
            amount: Amount to collect
            phone_number: Payer number in any common notation
            idempotency_key: Caller key; one payment per (booking, key)
            provider: Optional explicit provider
            user_id: Optional payer id, used for notifications
            currency: ISO currency code (defaults to the configured one)
            reason: Text shown to the payer

        Returns:
            OrchestratorResponse: ``{success, paymentId, transactionToken, status}``

        Raises:
            ReconciliationRiskError: If the provider accepted but the write failed
        """
        start_time = time.time()
        try:
            value = _parse_amount(amount)
            phone = normalize_phone(phone_number)
            selected = self.select_provider(phone, provider)
        except PaymentValidationError as e:
            logger.warning("payin_validation_failed", booking_id=booking_id, error=str(e))
            metrics.record_transaction_request(
                "payin", getattr(provider, "value", provider) or "auto", "invalid"
            )
            return _failure(400, str(e))

        key = idempotency_key or IdempotencyManager.generate_key(booking_id, user_id or "anonymous")

        cached = await self.idempotency_manager.check_idempotency(booking_id, key, db)
        if cached is not None:
            existing = await self.store.get_payment(db, cached.get("paymentId"))
            if existing is not None:
                return self._payin_replay(existing)

        payment, created = await self.store.create_payment(
            db,
            booking_id=booking_id,
            idempotency_key=key,
            amount=value,
            currency=(currency or self.settings.default_currency).upper(),
            provider=selected.value,
            phone_number=phone,
            user_id=user_id,
        )
        if not created:
            return self._payin_replay(payment)

        adapter = self._adapter(selected)
        try:
            result = await adapter.payin(
                phone, value, reason or f"Payment for booking {booking_id}"
            )
        except ProviderTransportError as e:
            await self.store.discard_unsubmitted_payment(db, payment)
            metrics.record_transaction_request("payin", selected.value, "transport_error")
            return _failure(502, str(e), provider=selected.value)

        if not result.success:
            await self.store.transition(
                db,
                payment,
                TransactionStatus.FAILED,
                source=TransitionSource.SUBMISSION,
                raw=result.raw,
                error_message=result.message,
                transaction_id=result.verification_token,
            )
            metrics.record_transaction_request("payin", selected.value, "rejected")
            response = _failure(
                402,
                result.message,
                paymentId=str(payment.id),
                transactionToken=result.verification_token,
                status=TransactionStatus.FAILED.value,
                provider=selected.value,
            )
            await self.idempotency_manager.store_response(booking_id, key, response.response)
            return response

        try:
            await self.store.transition(
                db,
                payment,
                TransactionStatus.PROCESSING,
                source=TransitionSource.SUBMISSION,
                raw=result.raw,
                transaction_id=result.verification_token,
            )
        except Exception as e:
            raise self.reconciliation_risk(
                TransactionKind.PAYIN, selected, result.verification_token, e
            ) from e

        duration = time.time() - start_time
        metrics.record_transaction_request("payin", selected.value, "submitted", duration)
        logger.info(
            "payin_submitted",
            payment_id=str(payment.id),
            booking_id=booking_id,
            provider=selected.value,
            transaction_token=result.verification_token,
            duration_seconds=duration,
        )
        response = OrchestratorResponse(
            200,
            {
                "success": True,
                "paymentId": str(payment.id),
                "transactionToken": result.verification_token,
                "status": payment.status,
                "provider": selected.value,
                "message": result.message,
            },
        )
        await self.idempotency_manager.store_response(booking_id, key, response.response)
        return response

    def _payin_replay(self, payment: Payment) -> OrchestratorResponse:
        logger.info(
            "payin_idempotent_replay",
            payment_id=str(payment.id),
            booking_id=payment.booking_id,
            status=payment.status,
        )
        metrics.record_transaction_request("payin", payment.provider, "replayed")
        body = IdempotencyManager.payment_response(payment)
        body["message"] = body["message"] or STATUS_MESSAGES[TransactionStatus(payment.status)]
        return OrchestratorResponse(200, body)

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    async def submit_payout(
        self,
        provider: Provider | str,
        phone: str,
        amount: Decimal,
        reason: str,
        currency: Optional[str] = None,
    ) -> ProviderResult:
        """
        Send a payout to the provider without touching the store.

        Used for first submissions and by the retry engine.

        Raises:
            ProviderTransportError: If the provider cannot be reached
        """
        return await self._adapter(provider).payout(phone, amount, reason, currency)

    async def initiate_payout(
        self,
        db: AsyncSession,
        *,
        driver_id: str,
        booking_id: str,
        amount: Any,
        phone_number: str,
        reason: str,
        payment_id: Optional[str] = None,
        provider: Optional[Provider | str] = None,
        currency: Optional[str] = None,
        fees: Optional[FeeBreakdown] = None,
    ) -> OrchestratorResponse:
        """
        Disburse a driver's earnings.

        The payout row is only written once the provider has answered, so a
        transport failure leaves nothing behind. ``fees`` is kept on the row
        when the amount was derived from a fare.

        Returns:
            OrchestratorResponse: ``{success, payoutId, transactionToken, status}``

        Raises:
            ReconciliationRiskError: If the provider accepted but the write failed
        """
        start_time = time.time()
        try:
            value = _parse_amount(amount)
            phone = normalize_phone(phone_number)
            selected = self.select_provider(phone, provider)
        except PaymentValidationError as e:
            logger.warning("payout_validation_failed", driver_id=driver_id, error=str(e))
            metrics.record_transaction_request(
                "payout", getattr(provider, "value", provider) or "auto", "invalid"
            )
            return _failure(400, str(e))

        related_payment = None
        if payment_id is not None:
            related_payment = await self.store.get_payment(db, payment_id)
            if related_payment is None:
                return _failure(404, f"Payment {payment_id} not found")

        currency = (currency or self.settings.default_currency).upper()
        try:
            result = await self.submit_payout(selected, phone, value, reason, currency)
        except ProviderTransportError as e:
            metrics.record_transaction_request("payout", selected.value, "transport_error")
            return _failure(502, str(e), provider=selected.value)

        status = TransactionStatus.PROCESSING if result.success else TransactionStatus.FAILED
        try:
            payout = await self.store.create_payout(
                db,
                payment_id=related_payment.id if related_payment else None,
                booking_id=booking_id,
                driver_id=driver_id,
                amount=value,
                currency=currency,
                provider=selected.value,
                phone_number=phone,
                reason=reason,
                transaction_id=result.verification_token,
                status=status.value,
                last_provider_status=result.provider_status,
                error_message=None if result.success else result.message,
                provider_response={
                    TransitionSource.SUBMISSION.value: result.raw,
                    "last_source": TransitionSource.SUBMISSION.value,
                },
                original_amount=fees.original_amount if fees else None,
                transaction_fee=fees.transaction_fee if fees else None,
                commission=fees.commission if fees else None,
            )
        except Exception as e:
            if result.success:
                raise self.reconciliation_risk(
                    TransactionKind.PAYOUT, selected, result.verification_token, e
                ) from e
            raise

        duration = time.time() - start_time
        metrics.record_transaction_request(
            "payout", selected.value, "submitted" if result.success else "rejected", duration
        )

        if not result.success:
            retryable = self.retry_engine.evaluate(payout).retryable
            logger.warning(
                "payout_rejected",
                payout_id=str(payout.id),
                provider=selected.value,
                reason=result.message,
                retryable=retryable,
            )
            return _failure(
                402,
                TEMPORARY_PAYOUT_FAILURE if retryable else result.message,
                payoutId=str(payout.id),
                transactionToken=result.verification_token,
                status=payout.status,
                retryable=retryable,
                provider=selected.value,
            )

        logger.info(
            "payout_submitted",
            payout_id=str(payout.id),
            driver_id=driver_id,
            provider=selected.value,
            transaction_token=result.verification_token,
        )
        return OrchestratorResponse(
            200,
            {
                "success": True,
                "payoutId": str(payout.id),
                "transactionToken": result.verification_token,
                "status": payout.status,
                "provider": selected.value,
                "message": result.message,
            },
        )

    async def initiate_booking_payout(
        self,
        db: AsyncSession,
        *,
        booking_id: str,
        driver_id: str,
        phone_number: str,
        provider: Optional[Provider | str] = None,
    ) -> OrchestratorResponse:
        """
        Pay a driver for a completed booking.

        The fare is what the booking's payments collected, net of refunds.
        Fees and commission from the configured schedule are deducted and
        the remainder is disbursed. A booking is paid out once; a repeated
        request answers 409 with the existing payout.

        Returns:
            OrchestratorResponse: Same envelope as ``initiate_payout`` plus ``fees``
        """
        existing = await self.store.get_booking_payout(db, booking_id)
        if existing is not None:
            return _failure(
                409,
                f"Booking {booking_id} has already been paid out",
                payoutId=str(existing.id),
                status=existing.status,
            )

        payments = await self.store.list_booking_payments(db, booking_id)
        fare = sum(
            (p.amount - (p.refunded_amount or Decimal("0")) for p in payments), Decimal("0")
        )
        if fare <= 0:
            return _failure(400, f"Booking {booking_id} has no collected payment to pay out")

        currencies = {p.currency for p in payments}
        if len(currencies) > 1:
            return _failure(400, f"Booking {booking_id} was paid in several currencies")

        fees = self.fee_calculator.calculate(fare)
        if fees.driver_earnings <= 0:
            return _failure(400, "Fees exceed the fare, nothing to pay out")

        primary = payments[0]
        reason = f"Ride payment - Booking {booking_id}"
        if len(payments) > 1:
            reason += f" ({len(payments)} payments)"
        logger.info(
            "booking_payout_calculated",
            booking_id=booking_id,
            driver_id=driver_id,
            payment_count=len(payments),
            fare=str(fees.original_amount),
            transaction_fee=str(fees.transaction_fee),
            commission=str(fees.commission),
            driver_earnings=str(fees.driver_earnings),
        )

        result = await self.initiate_payout(
            db,
            driver_id=driver_id,
            booking_id=booking_id,
            amount=fees.driver_earnings,
            phone_number=phone_number,
            reason=reason,
            payment_id=str(primary.id),
            provider=provider,
            currency=primary.currency,
            fees=fees,
        )
        result.response["fees"] = fees.to_dict()
        return result

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def initiate_refund(
        self,
        db: AsyncSession,
        *,
        payment_id: str,
        booking_id: str,
        amount: Any,
        reason: str,
        phone_number: Optional[str] = None,
    ) -> OrchestratorResponse:
        """
        Refund part or all of a completed payment.

        The amount is reserved against the payment first, so concurrent
        refunds cannot exceed what was collected; a refund that fails gives
        its reservation back. The refund row is written before the provider
        call and kept whatever the outcome; an accepted refund moves the
        payment to partial_refund.
        Refunds always go back through the provider that collected the
        payment, since only it knows the original token.

        Returns:
            OrchestratorResponse: ``{success, refundId, refundToken, status}``
        """
        payment = await self.store.get_payment(db, payment_id)
        if payment is None:
            return _failure(404, f"Payment {payment_id} not found")

        try:
            if payment.booking_id != booking_id:
                raise PaymentValidationError("Payment does not belong to this booking")
            if payment.status not in (
                TransactionStatus.COMPLETED.value,
                TransactionStatus.PARTIAL_REFUND.value,
            ):
                raise PaymentValidationError(
                    f"Only completed payments can be refunded (status: {payment.status})"
                )
            value, refund_type = validate_refund_amount(
                _parse_amount(amount), payment.amount, payment.refunded_amount or Decimal("0")
            )
            phone = normalize_phone(phone_number or payment.phone_number)
            if not await self.store.reserve_refund(db, payment, value):
                # Another refund took the balance between the read and the reservation
                raise PaymentValidationError(
                    f"Refund amount {value} exceeds refundable amount "
                    f"{payment.amount - payment.refunded_amount}"
                )
        except PaymentValidationError as e:
            logger.warning("refund_validation_failed", payment_id=str(payment_id), error=str(e))
            metrics.record_transaction_request("refund", payment.provider, "invalid")
            return _failure(400, str(e))

        provider = Provider(payment.provider)
        try:
            refund = await self.store.create_refund(
                db,
                payment_id=payment.id,
                booking_id=booking_id,
                amount=value,
                currency=payment.currency,
                provider=provider.value,
                phone_number=phone,
                status=TransactionStatus.PROCESSING.value,
                refund_type=refund_type,
                reason=reason,
            )
        except Exception:
            await db.rollback()
            await self.store.release_refund(db, payment.id, value)
            raise

        try:
            result = await self._adapter(provider).refund(
                payment.transaction_id or "",
                value,
                reason,
                phone=phone,
                currency=payment.currency,
            )
        except ProviderTransportError as e:
            await self.store.transition(
                db,
                refund,
                TransactionStatus.FAILED,
                source=TransitionSource.REFUND,
                error_message=str(e),
            )
            await self.store.release_refund(db, payment.id, value)
            metrics.record_transaction_request("refund", provider.value, "transport_error")
            return _failure(
                502, str(e), refundId=str(refund.id), status=refund.status, provider=provider.value
            )

        if not result.success:
            await self.store.transition(
                db,
                refund,
                TransactionStatus.FAILED,
                source=TransitionSource.REFUND,
                raw=result.raw,
                error_message=result.message,
                transaction_id=result.verification_token,
            )
            await self.store.release_refund(db, payment.id, value)
            metrics.record_transaction_request("refund", provider.value, "rejected")
            return _failure(
                402,
                result.message,
                refundId=str(refund.id),
                refundToken=result.verification_token,
                status=refund.status,
                provider=provider.value,
            )

        try:
            await self.store.attach_token(
                db,
                refund,
                result.verification_token,
                raw=result.raw,
                source=TransitionSource.REFUND,
            )
            await self.store.transition(
                db,
                payment,
                TransactionStatus.PARTIAL_REFUND,
                source=TransitionSource.REFUND,
                raw={"refund_id": str(refund.id), "amount": str(value), "reason": reason},
            )
        except Exception as e:
            raise self.reconciliation_risk(
                TransactionKind.REFUND, provider, result.verification_token, e
            ) from e

        metrics.record_transaction_request("refund", provider.value, "submitted")
        logger.info(
            "refund_submitted",
            refund_id=str(refund.id),
            payment_id=str(payment.id),
            amount=str(value),
            refund_type=refund_type,
        )
        return OrchestratorResponse(
            200,
            {
                "success": True,
                "refundId": str(refund.id),
                "refundToken": result.verification_token,
                "status": refund.status,
                "refundType": refund_type,
                "amount": str(value),
                "message": result.message,
            },
        )

    async def refund_seat_reduction(
        self,
        db: AsyncSession,
        *,
        payment_id: str,
        booking_id: str,
        seats_before: int,
        seats_after: int,
        price_per_seat: Any,
        phone_number: Optional[str] = None,
    ) -> OrchestratorResponse:
        """
        Refund the seats a passenger gave up.

        Returns:
            OrchestratorResponse: Same envelope as ``initiate_refund``
        """
        try:
            amount = calculate_seat_reduction_refund(seats_before, seats_after, price_per_seat)
        except PaymentValidationError as e:
            return _failure(400, str(e))

        return await self.initiate_refund(
            db,
            payment_id=payment_id,
            booking_id=booking_id,
            amount=amount,
            reason=seat_reduction_reason(seats_before, seats_after),
            phone_number=phone_number,
        )

    # ------------------------------------------------------------------
    # Status convergence
    # ------------------------------------------------------------------

    async def apply_provider_status(
        self,
        db: AsyncSession,
        record: Payment | Payout | Refund,
        provider_status: Optional[str],
        *,
        source: TransitionSource,
        reason: Optional[str] = None,
        raw: Optional[Mapping[str, Any]] = None,
    ) -> TransitionResult:
        """
        Map a provider-native status and apply it through the state machine.

        Args:
            db: Database session
            record: Payment, payout or refund the status belongs to
            provider_status: Provider-native status
            source: Callback, poll or reconciliation
            reason: Provider failure reason
            raw: Raw provider payload for the audit blob

        Returns:
            TransitionResult: Outcome of the guarded transition
        """
        kind = kind_of(record)
        target = map_provider_status(record.provider, provider_status, self.vocabularies)
        values: Dict[str, Any] = {}
        if kind is TransactionKind.PAYOUT and provider_status:
            values["last_provider_status"] = str(provider_status)[:64]

        result = await self.store.transition(
            db,
            record,
            target,
            source=source,
            raw=raw,
            error_message=reason if target is TransactionStatus.FAILED else None,
            values=values,
        )
        if result.applied:
            await self._after_transition(db, kind, result.record, target, reason)
        return result

    async def _after_transition(
        self,
        db: AsyncSession,
        kind: TransactionKind,
        record: Any,
        status: TransactionStatus,
        reason: Optional[str],
    ) -> None:
        amount = str(record.amount)
        data = {"type": f"{kind.value}_{status.value}", "id": str(record.id), "amount": amount}

        if kind is TransactionKind.PAYIN:
            if status is TransactionStatus.COMPLETED:
                dispatch_in_background(
                    self.notifier,
                    record.user_id,
                    "Paiement confirme",
                    f"Votre paiement de {amount} {record.currency} a ete confirme.",
                    {**data, "bookingId": record.booking_id},
                )
            elif status is TransactionStatus.FAILED:
                dispatch_in_background(
                    self.notifier,
                    record.user_id,
                    "Paiement echoue",
                    user_failure_message(reason),
                    {**data, "bookingId": record.booking_id},
                )

        elif kind is TransactionKind.PAYOUT:
            if status is TransactionStatus.COMPLETED:
                dispatch_in_background(
                    self.notifier,
                    record.driver_id,
                    "Paiement recu",
                    f"Vous avez recu {amount} {record.currency}.",
                    {**data, "bookingId": record.booking_id},
                )
            elif status is TransactionStatus.FAILED:
                decision = await self.retry_engine.on_payout_failed(db, record)
                dispatch_in_background(
                    self.notifier,
                    record.driver_id,
                    "Paiement en attente" if decision.will_retry else "Paiement echoue",
                    TEMPORARY_PAYOUT_FAILURE if decision.will_retry else FINAL_PAYOUT_FAILURE,
                    {
                        **data,
                        "bookingId": record.booking_id,
                        "retryable": decision.will_retry,
                        "maxRetriesReached": decision.exhausted,
                    },
                )

        elif kind is TransactionKind.REFUND and status is TransactionStatus.COMPLETED:
            payment = await self.store.get_payment(db, record.payment_id)
            if payment is not None:
                dispatch_in_background(
                    self.notifier,
                    payment.user_id,
                    "Remboursement effectue",
                    f"Un remboursement de {amount} {record.currency} a ete effectue.",
                    {**data, "bookingId": record.booking_id, "paymentId": str(payment.id)},
                )

        elif kind is TransactionKind.REFUND and status is TransactionStatus.FAILED:
            await self.store.release_refund(db, record.payment_id, record.amount)

    async def refresh_record(
        self,
        db: AsyncSession,
        kind: TransactionKind,
        record: Any,
        source: TransitionSource = TransitionSource.POLL,
    ) -> Optional[TransitionResult]:
        """
        Ask the provider for a record's status and apply it.

        Returns:
            Optional[TransitionResult]: None when the provider does not know the token

        Raises:
            ProviderTransportError: If the provider cannot be reached
        """
        adapter = self._adapter(record.provider)
        provider_status = await adapter.check_status(record.transaction_id, kind)
        if not provider_status.found:
            logger.info(
                "provider_status_unavailable",
                kind=kind.value,
                record_id=str(record.id),
                reason=provider_status.reason,
            )
            return None

        return await self.apply_provider_status(
            db,
            record,
            provider_status.provider_status,
            source=source,
            reason=provider_status.reason,
            raw={
                **provider_status.raw,
                "financialTransactionId": provider_status.financial_transaction_id,
            },
        )

    async def check_status(self, db: AsyncSession, reference: str) -> Dict[str, Any]:
        """
        Return the current status of a transaction, refreshing it if in flight.

        Args:
            db: Database session
            reference: Provider transaction token or record id

        Returns:
            Dict[str, Any]: ``{status, message, updated, kind, id}``

        Raises:
            RecordNotFoundError: If nothing matches the reference
            ProviderTransportError: If the provider cannot be reached
        """
        resolved = await self.store.resolve(db, reference)
        if resolved is None:
            raise RecordNotFoundError(f"No transaction matches {reference}")
        kind, record = resolved

        updated = False
        stored = TransactionStatus(record.status)
        if not stored.is_terminal and record.transaction_id:
            result = await self.refresh_record(db, kind, record, TransitionSource.POLL)
            updated = bool(result and result.applied)
        elif kind is TransactionKind.PAYOUT and stored is TransactionStatus.FAILED:
            retry = await self.retry_engine.retry_payout(db, record)
            updated = retry.outcome == "submitted"

        status = TransactionStatus(record.status)
        message = STATUS_MESSAGES[status]
        if status is TransactionStatus.FAILED:
            if kind is TransactionKind.PAYOUT:
                will_retry = self.retry_engine.evaluate(record).will_retry
                message = TEMPORARY_PAYOUT_FAILURE if will_retry else FINAL_PAYOUT_FAILURE
            else:
                message = user_failure_message(record.error_message)

        return {
            "status": status.value,
            "message": message,
            "updated": updated,
            "kind": kind.value,
            "id": str(record.id),
            "transactionToken": record.transaction_id,
        }


def build_orchestrator(
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    notifier: Optional[NotificationDispatcher] = None,
) -> PaymentOrchestrator:
    """
    Wire adapters, store, idempotency and notifications from settings.

    Args:
        settings: Application settings
        http_client: Optional HTTP client shared by adapters and notifications
        notifier: Optional notification dispatcher

    Returns:
        PaymentOrchestrator: Ready-to-use orchestrator
    """
    settings = settings or get_settings()
    if notifier is None and settings.notification_url:
        notifier = HttpNotificationDispatcher(settings.notification_url, http_client)
    store = TransactionStore()
    return PaymentOrchestrator(
        build_adapters(settings, http_client),
        store=store,
        settings=settings,
        notifier=notifier,
        idempotency_manager=IdempotencyManager(store=store, settings=settings),
    )
