"""
Provider callback (webhook) handling.

Implements:
- Parsing of each provider's callback shape into one payload type, with field fallbacks
- Token lookup with fallback to record ids
- Guarded transitions through the orchestrator (duplicates are no-ops)
- MTN signature verification
- Acknowledgement of everything except structurally invalid payloads
"""
import hashlib
import hmac
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from ride_payments.core.enums import Provider, TransactionKind, TransactionStatus
from ride_payments.core.status import map_provider_status, sanitize_reason
from ride_payments.core.store import TransactionStore, TransitionSource
from ride_payments.monitoring.metrics import metrics

if TYPE_CHECKING:
    from ride_payments.core.orchestrator import PaymentOrchestrator

logger = structlog.get_logger(__name__)

DEFAULT_KIND_ORDER = (TransactionKind.PAYIN, TransactionKind.PAYOUT, TransactionKind.REFUND)


class CallbackValidationError(Exception):
    """Raised when a callback payload cannot be interpreted at all."""

    pass


@dataclass(frozen=True)
class CallbackPayload:
    """Canonical view of a provider callback."""

    provider: Provider
    reference: str
    status: str
    reason: Optional[str] = None
    financial_transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    kind: Optional[TransactionKind] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def _lookup(payload: Mapping[str, Any], path: str) -> Any:
    value: Any = payload
    for part in path.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value


def first_present(payload: Mapping[str, Any], paths: Iterable[str]) -> Optional[str]:
    """
    Return the first non-empty value among ``paths``.

    Paths may be dotted to reach nested objects (``reason.message``).
    Non-string scalars are converted to strings; nested objects are skipped.
    """
    for path in paths:
        value = _lookup(payload, path)
        if value is None or isinstance(value, (Mapping, list)):
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def _amount(value: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(value)
    except InvalidOperation:
        return None


def _require(payload: Any, provider: Provider) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise CallbackValidationError(f"{provider.value} callback body must be a JSON object")
    return payload


def _build(
    provider: Provider,
    payload: Mapping[str, Any],
    reference_fields: Tuple[str, ...],
    status_fields: Tuple[str, ...],
    reason_fields: Tuple[str, ...],
    financial_fields: Tuple[str, ...],
    kind: Optional[TransactionKind] = None,
) -> CallbackPayload:
    reference = first_present(payload, reference_fields)
    if reference is None:
        raise CallbackValidationError(f"{provider.value} callback has no transaction reference")
    status = first_present(payload, status_fields)
    if status is None:
        raise CallbackValidationError(f"{provider.value} callback has no status")

    return CallbackPayload(
        provider=provider,
        reference=reference,
        status=status,
        reason=sanitize_reason(first_present(payload, reason_fields)),
        financial_transaction_id=first_present(payload, financial_fields),
        amount=_amount(first_present(payload, ("amount", "data.amount"))),
        currency=first_present(payload, ("currency", "data.currency")),
        kind=kind,
        raw=dict(payload),
    )


def parse_mtn_callback(payload: Any) -> CallbackPayload:
    """
    Parse an MTN MoMo collection or disbursement callback.

    Our ``X-Reference-Id`` comes back as ``externalId`` (it is sent as both).
    """
    payload = _require(payload, Provider.MTN)
    return _build(
        Provider.MTN,
        payload,
        reference_fields=("externalId", "referenceId", "reference_id", "transactionId"),
        status_fields=("status", "transactionStatus"),
        reason_fields=("reason.message", "reason.code", "reason", "errorReason", "message"),
        financial_fields=("financialTransactionId", "financial_transaction_id"),
    )


def parse_orange_callback(payload: Any) -> CallbackPayload:
    """
    Parse an Orange Money notification.

    Orange posts either a flat body or one wrapped in ``data``; the pay token
    is the reference.
    """
    payload = _require(payload, Provider.ORANGE)
    return _build(
        Provider.ORANGE,
        payload,
        reference_fields=(
            "payToken",
            "pay_token",
            "data.payToken",
            "externalId",
            "transactionId",
        ),
        status_fields=("status", "data.status", "transactionStatus"),
        reason_fields=(
            "failureReason",
            "data.confirmtxnmessage",
            "data.inittxnmessage",
            "message",
        ),
        financial_fields=("txnid", "data.txnid"),
    )


PAWAPAY_KIND_FIELDS = (
    ("depositId", TransactionKind.PAYIN),
    ("payoutId", TransactionKind.PAYOUT),
    ("refundId", TransactionKind.REFUND),
)

PAWAPAY_TYPES = {
    "DEPOSIT": TransactionKind.PAYIN,
    "PAYOUT": TransactionKind.PAYOUT,
    "REFUND": TransactionKind.REFUND,
}


def parse_pawapay_callback(payload: Any) -> CallbackPayload:
    """
    Parse a pawaPay deposit, payout or refund callback.

    The id field present tells which kind of transaction it is.
    """
    payload = _require(payload, Provider.PAWAPAY)
    kind = next((k for name, k in PAWAPAY_KIND_FIELDS if payload.get(name)), None)
    if kind is None:
        kind = PAWAPAY_TYPES.get(str(payload.get("type", "")).upper())

    return _build(
        Provider.PAWAPAY,
        payload,
        reference_fields=("depositId", "payoutId", "refundId", "externalId", "transactionId"),
        status_fields=("status",),
        reason_fields=(
            "failureReason.failureMessage",
            "failureReason.failureCode",
            "failureReason",
        ),
        financial_fields=("providerTransactionId",),
        kind=kind,
    )


PARSERS: Dict[Provider, Callable[[Any], CallbackPayload]] = {
    Provider.MTN: parse_mtn_callback,
    Provider.ORANGE: parse_orange_callback,
    Provider.PAWAPAY: parse_pawapay_callback,
}


def verify_mtn_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Verify an ``X-MTN-Signature`` header (hex HMAC-SHA256 of the raw body).

    Returns:
        bool: True if the signature matches
    """
    if not signature:
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


class CallbackHandler:
    """
    Applies provider callbacks to stored transactions.

    Every callback that parses is acknowledged, whatever happens next:
    providers treat non-2xx answers as "retry later", and retries of a
    callback we cannot use only add noise.
    """

    def __init__(
        self,
        orchestrator: "PaymentOrchestrator",
        store: Optional[TransactionStore] = None,
    ):
        """
        Initialize callback handler.

        Args:
            orchestrator: Orchestrator applying provider statuses
            store: Transaction store (defaults to the orchestrator's)
        """
        self.orchestrator = orchestrator
        self.store = store or orchestrator.store

    @staticmethod
    def parse(provider: Provider | str, payload: Any) -> CallbackPayload:
        """
        Parse a callback body for ``provider``.

        Raises:
            CallbackValidationError: If the payload is structurally invalid
        """
        return PARSERS[Provider(provider)](payload)

    async def handle(
        self,
        provider: Provider | str,
        payload: Any,
        db: AsyncSession,
        kind: Optional[TransactionKind] = None,
    ) -> Dict[str, Any]:
        """
        Process one provider callback.

        Args:
            provider: Provider that sent the callback
            payload: Decoded JSON body
            db: Database session
            kind: Transaction kind when the endpoint implies it

        Returns:
            Dict[str, Any]: Acknowledgement body

        Raises:
            CallbackValidationError: If the payload is structurally invalid
        """
        provider = Provider(provider)
        start_time = time.time()

        try:
            callback = self.parse(provider, payload)
        except CallbackValidationError as e:
            metrics.record_callback(provider.value, "invalid", time.time() - start_time)
            logger.warning("callback_invalid", provider=provider.value, error=str(e))
            raise

        kinds = (kind,) if kind else (callback.kind,) if callback.kind else DEFAULT_KIND_ORDER
        log = logger.bind(
            provider=provider.value,
            reference=callback.reference,
            provider_status=callback.status,
        )
        log.info("callback_received")

        try:
            resolved = await self.store.resolve(db, callback.reference, kinds)
            if resolved is None and TransactionKind.PAYOUT in kinds:
                superseded = await self.store.get_payout_by_previous_token(
                    db, callback.reference
                )
                if superseded is not None:
                    return await self._superseded_attempt(db, superseded, callback, start_time)
            if resolved is None:
                metrics.record_callback(provider.value, "not_found", time.time() - start_time)
                log.warning("callback_ignored_not_found")
                return {
                    "message": "Callback received, transaction not found",
                    "outcome": "not_found",
                }

            record_kind, record = resolved
            if record.provider != provider.value:
                metrics.record_consistency_anomaly(record_kind.value, "provider_mismatch")
                metrics.record_callback(
                    provider.value, "provider_mismatch", time.time() - start_time
                )
                log.warning(
                    "callback_provider_mismatch",
                    record_id=str(record.id),
                    record_provider=record.provider,
                )
                return {"message": "Callback received", "outcome": "ignored"}

            raw = dict(callback.raw)
            if callback.financial_transaction_id:
                raw.setdefault("financialTransactionId", callback.financial_transaction_id)
            result = await self.orchestrator.apply_provider_status(
                db,
                record,
                callback.status,
                source=TransitionSource.CALLBACK,
                reason=callback.reason,
                raw=raw,
            )
        except Exception as e:
            metrics.record_callback(provider.value, "error", time.time() - start_time)
            log.error("callback_processing_error", error=str(e), error_type=type(e).__name__)
            return {"message": "Callback received", "outcome": "error"}

        duration = time.time() - start_time
        metrics.record_callback(provider.value, result.outcome.value, duration)
        log.info(
            "callback_processed",
            kind=record_kind.value,
            record_id=str(record.id),
            outcome=result.outcome.value,
            status=result.status.value,
            duration_seconds=duration,
        )
        return {
            "message": "Callback processed",
            "outcome": result.outcome.value,
            "status": result.status.value,
        }

    async def _superseded_attempt(
        self,
        db: AsyncSession,
        payout: Any,
        callback: CallbackPayload,
        start_time: float,
    ) -> Dict[str, Any]:
        """
        Acknowledge a callback for a payout attempt that a retry replaced.

        The payout is never moved. A success reported for the replaced
        attempt means the driver may be paid twice, so it is flagged.
        """
        target = map_provider_status(
            payout.provider, callback.status, self.orchestrator.vocabularies
        )
        log = logger.bind(
            provider=callback.provider.value,
            payout_id=str(payout.id),
            superseded_transaction_id=callback.reference,
            current_transaction_id=payout.transaction_id,
            provider_status=callback.status,
        )
        if target is TransactionStatus.COMPLETED:
            metrics.record_consistency_anomaly(
                TransactionKind.PAYOUT.value, "superseded_attempt_completed"
            )
            log.critical("superseded_payout_attempt_completed", payout_status=payout.status)
        else:
            log.info("callback_for_superseded_attempt")

        await self.store.record_event(
            db,
            payout,
            event_type="superseded_attempt_callback",
            source=TransitionSource.CALLBACK,
            from_status=payout.status,
            to_status=payout.status,
            event_data={
                "transaction_id": callback.reference,
                "provider_status": callback.status,
                "reason": callback.reason,
            },
        )
        await db.commit()
        metrics.record_callback(callback.provider.value, "superseded", time.time() - start_time)
        return {"message": "Callback received, attempt superseded", "outcome": "superseded"}
