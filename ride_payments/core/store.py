"""
Transaction store and state machine.

All status writes go through ``TransactionStore.transition``, which issues a
conditional ``UPDATE ... WHERE status = :expected``. There is no lock:
callbacks, pollers and retries for the same record may race, and the
conditional update decides which one wins.

Outcomes of a transition attempt:
- APPLIED: the row moved to the target status
- NOOP: the row already had the target status (duplicate callback, lost race)
- REJECTED: the move is not allowed from the stored status; conflicting
  terminal statuses are additionally logged as consistency anomalies
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple, Type

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ride_payments.core.clock import utcnow
from ride_payments.core.enums import TransactionKind, TransactionStatus
from ride_payments.database.models import Payment, Payout, Refund, TransactionEvent
from ride_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

S = TransactionStatus

PAYMENT_TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    S.PENDING: frozenset({S.PROCESSING, S.COMPLETED, S.FAILED}),
    S.PROCESSING: frozenset({S.COMPLETED, S.FAILED, S.PARTIAL_REFUND}),
    S.COMPLETED: frozenset({S.PARTIAL_REFUND}),
    S.FAILED: frozenset(),
    S.PARTIAL_REFUND: frozenset(),
}

PAYOUT_TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    S.PENDING: frozenset({S.PROCESSING, S.COMPLETED, S.FAILED}),
    S.PROCESSING: frozenset({S.COMPLETED, S.FAILED}),
    S.COMPLETED: frozenset(),
    S.FAILED: frozenset(),
}

REFUND_TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = PAYOUT_TRANSITIONS

# Payment -> partial_refund is only legal when a refund drives it
REFUND_ONLY_TARGETS = frozenset({S.PARTIAL_REFUND})

MODELS: Dict[TransactionKind, Type[Any]] = {
    TransactionKind.PAYIN: Payment,
    TransactionKind.PAYOUT: Payout,
    TransactionKind.REFUND: Refund,
}

TRANSITIONS = {
    TransactionKind.PAYIN: PAYMENT_TRANSITIONS,
    TransactionKind.PAYOUT: PAYOUT_TRANSITIONS,
    TransactionKind.REFUND: REFUND_TRANSITIONS,
}

ENTITY_NAMES = {
    TransactionKind.PAYIN: "payment",
    TransactionKind.PAYOUT: "payout",
    TransactionKind.REFUND: "refund",
}


class TransitionOutcome(str, Enum):
    """Result of a guarded transition attempt."""

    APPLIED = "applied"
    NOOP = "noop"
    REJECTED = "rejected"


class TransitionSource(str, Enum):
    """What drove a transition; recorded in the audit trail."""

    SUBMISSION = "submission"
    CALLBACK = "callback"
    POLL = "poll"
    RETRY = "retry"
    REFUND = "refund"
    RECONCILIATION = "reconciliation"


@dataclass
class TransitionResult:
    """Outcome of ``TransactionStore.transition``."""

    outcome: TransitionOutcome
    previous_status: TransactionStatus
    status: TransactionStatus
    record: Any

    @property
    def applied(self) -> bool:
        """Check if the row was actually written."""
        return self.outcome is TransitionOutcome.APPLIED


def kind_of(record: Any) -> TransactionKind:
    """Return the transaction kind of a Payment, Payout or Refund row."""
    for kind, model in MODELS.items():
        if isinstance(record, model):
            return kind
    raise TypeError(f"Not a transaction record: {record!r}")


def is_transition_allowed(
    kind: TransactionKind,
    current: TransactionStatus,
    target: TransactionStatus,
    source: TransitionSource,
) -> bool:
    """
    Check a move against the state machine of the given entity.

    Args:
        kind: Entity kind
        current: Stored status
        target: Requested status
        source: What drives the move

    Returns:
        bool: True if the move is allowed
    """
    if kind is TransactionKind.PAYIN and target in REFUND_ONLY_TARGETS:
        return source is TransitionSource.REFUND and current in (S.PROCESSING, S.COMPLETED)
    if kind is TransactionKind.PAYOUT and current is S.FAILED and target is S.PROCESSING:
        return source is TransitionSource.RETRY
    return target in TRANSITIONS[kind].get(current, frozenset())


def _parse_uuid(value: Any) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


class TransactionStore:
    """
    Durable storage for payments, payouts and refunds.

    Every write commits immediately so that concurrent reconciliation paths
    observe each other's results.
    """

    def __init__(self, max_contention_retries: int = 3):
        """
        Initialize transaction store.

        Args:
            max_contention_retries: Re-reads allowed when a conditional
                update loses a race before giving up
        """
        self.max_contention_retries = max_contention_retries

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_payment(
        self,
        db: AsyncSession,
        *,
        booking_id: str,
        idempotency_key: str,
        amount: Decimal,
        currency: str,
        provider: str,
        phone_number: str,
        user_id: Optional[str] = None,
    ) -> Tuple[Payment, bool]:
        """
        Claim the (booking, idempotency key) pair with a pending payment.

        Args:
            db: Database session
            booking_id: Booking reference
            idempotency_key: Caller-supplied idempotency key
            amount: Amount to collect
            currency: ISO currency code
            provider: Provider the payin will be routed through
            phone_number: Normalised payer number
            user_id: Optional payer id for notifications

        Returns:
            Tuple[Payment, bool]: The payment and whether this call created it
        """
        existing = await self.get_payment_by_idempotency_key(db, booking_id, idempotency_key)
        if existing is not None:
            return existing, False

        payment = Payment(
            booking_id=booking_id,
            user_id=user_id,
            idempotency_key=idempotency_key,
            amount=amount,
            currency=currency,
            provider=provider,
            phone_number=phone_number,
            status=S.PENDING.value,
        )
        db.add(payment)
        try:
            await db.commit()
        except IntegrityError:
            # A concurrent request claimed the same key first
            await db.rollback()
            existing = await self.get_payment_by_idempotency_key(
                db, booking_id, idempotency_key
            )
            if existing is None:
                raise
            logger.info(
                "payment_idempotency_race_resolved",
                booking_id=booking_id,
                idempotency_key=idempotency_key,
                payment_id=str(existing.id),
            )
            return existing, False

        await db.refresh(payment)
        logger.info(
            "payment_created",
            payment_id=str(payment.id),
            booking_id=booking_id,
            provider=provider,
            amount=str(amount),
        )
        return payment, True

    async def create_payout(self, db: AsyncSession, **fields: Any) -> Payout:
        """
        Insert a payout row.

        Args:
            db: Database session
            **fields: Payout column values

        Returns:
            Payout: Persisted payout
        """
        payout = Payout(**fields)
        db.add(payout)
        await db.flush()
        await self.record_event(
            db,
            payout,
            event_type=f"payout_{payout.status}",
            source=TransitionSource.SUBMISSION,
            to_status=payout.status,
            event_data={"transaction_id": payout.transaction_id},
        )
        await db.commit()
        await db.refresh(payout)
        logger.info(
            "payout_created",
            payout_id=str(payout.id),
            driver_id=payout.driver_id,
            provider=payout.provider,
            status=payout.status,
        )
        return payout

    async def create_refund(self, db: AsyncSession, **fields: Any) -> Refund:
        """
        Insert a refund row.

        Args:
            db: Database session
            **fields: Refund column values

        Returns:
            Refund: Persisted refund
        """
        refund = Refund(**fields)
        db.add(refund)
        await db.flush()
        await self.record_event(
            db,
            refund,
            event_type=f"refund_{refund.status}",
            source=TransitionSource.REFUND,
            to_status=refund.status,
            event_data={"reason": refund.reason, "refund_type": refund.refund_type},
        )
        await db.commit()
        await db.refresh(refund)
        logger.info(
            "refund_created",
            refund_id=str(refund.id),
            payment_id=str(refund.payment_id),
            amount=str(refund.amount),
        )
        return refund

    async def discard_unsubmitted_payment(self, db: AsyncSession, payment: Payment) -> bool:
        """
        Delete a pending payment that never reached a provider.

        Frees the idempotency key so the caller can resubmit after a
        transport failure.

        Returns:
            bool: True if the row was deleted
        """
        result = await db.execute(
            delete(Payment).where(
                Payment.id == payment.id,
                Payment.status == S.PENDING.value,
                Payment.transaction_id.is_(None),
            )
        )
        await db.commit()
        return result.rowcount == 1

    async def attach_token(
        self,
        db: AsyncSession,
        record: Any,
        transaction_id: Optional[str],
        *,
        source: TransitionSource,
        raw: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """
        Store the provider token on an in-flight record without changing its status.

        Only fills an empty token, so a token written by another path is kept.

        Returns:
            bool: True if the token was written
        """
        if not transaction_id:
            return False
        model = MODELS[kind_of(record)]
        changes: Dict[str, Any] = {"transaction_id": transaction_id}
        if raw is not None:
            changes["provider_response"] = self._merge_audit(record, source, raw)
        result = await db.execute(
            update(model)
            .where(model.id == record.id, model.transaction_id.is_(None))
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        await db.refresh(record)
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get(
        self, db: AsyncSession, kind: TransactionKind, record_id: Any
    ) -> Optional[Any]:
        """Load a record by primary key, returning None for unknown or malformed ids."""
        parsed = _parse_uuid(record_id)
        if parsed is None:
            return None
        model = MODELS[kind]
        result = await db.execute(
            select(model).where(model.id == parsed).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_payment(self, db: AsyncSession, payment_id: Any) -> Optional[Payment]:
        """Load a payment by id."""
        return await self.get(db, TransactionKind.PAYIN, payment_id)

    async def get_payout(self, db: AsyncSession, payout_id: Any) -> Optional[Payout]:
        """Load a payout by id."""
        return await self.get(db, TransactionKind.PAYOUT, payout_id)

    async def get_refund(self, db: AsyncSession, refund_id: Any) -> Optional[Refund]:
        """Load a refund by id."""
        return await self.get(db, TransactionKind.REFUND, refund_id)

    async def get_by_token(
        self, db: AsyncSession, kind: TransactionKind, token: str
    ) -> Optional[Any]:
        """Load a record by provider transaction token."""
        if not token:
            return None
        model = MODELS[kind]
        result = await db.execute(
            select(model)
            .where(model.transaction_id == str(token))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_payout_by_previous_token(
        self, db: AsyncSession, token: str
    ) -> Optional[Payout]:
        """Load the payout whose last superseded attempt carried ``token``."""
        if not token:
            return None
        result = await db.execute(
            select(Payout)
            .where(Payout.previous_transaction_id == str(token))
            .order_by(Payout.updated_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def list_booking_payments(self, db: AsyncSession, booking_id: str) -> list:
        """Collected payments of a booking, newest first."""
        result = await db.execute(
            select(Payment)
            .where(
                Payment.booking_id == booking_id,
                Payment.status.in_([S.COMPLETED.value, S.PARTIAL_REFUND.value]),
            )
            .order_by(Payment.created_at.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_booking_payout(self, db: AsyncSession, booking_id: str) -> Optional[Payout]:
        """Load the fare payout of a booking, if one was made."""
        result = await db.execute(
            select(Payout)
            .where(Payout.booking_id == booking_id, Payout.original_amount.is_not(None))
            .order_by(Payout.created_at)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def get_payment_by_idempotency_key(
        self, db: AsyncSession, booking_id: str, idempotency_key: str
    ) -> Optional[Payment]:
        """Load the payment that owns a (booking, idempotency key) pair."""
        result = await db.execute(
            select(Payment)
            .where(
                Payment.booking_id == booking_id,
                Payment.idempotency_key == idempotency_key,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def resolve(
        self,
        db: AsyncSession,
        reference: str,
        kinds: Iterable[TransactionKind] = tuple(TransactionKind),
    ) -> Optional[Tuple[TransactionKind, Any]]:
        """
        Resolve a provider token or record id to a record.

        Token lookup is tried across all requested kinds before falling back
        to a lookup by id.

        Args:
            db: Database session
            reference: Provider transaction token or record id
            kinds: Kinds to search, in priority order

        Returns:
            Optional[Tuple[TransactionKind, Any]]: Kind and record, None if unknown
        """
        kinds = tuple(kinds)
        for kind in kinds:
            record = await self.get_by_token(db, kind, reference)
            if record is not None:
                return kind, record
        for kind in kinds:
            record = await self.get(db, kind, reference)
            if record is not None:
                return kind, record
        return None

    async def reserve_refund(self, db: AsyncSession, payment: Payment, amount: Decimal) -> bool:
        """
        Atomically count ``amount`` against a payment's refundable balance.

        The update only matches while the payment is still refundable and the
        new total stays within the collected amount, so concurrent refunds
        cannot together exceed it.

        Returns:
            bool: True if the amount was reserved; ``payment`` is refreshed either way
        """
        result = await db.execute(
            update(Payment)
            .where(
                Payment.id == payment.id,
                Payment.status.in_([S.COMPLETED.value, S.PARTIAL_REFUND.value]),
                Payment.refunded_amount + amount <= Payment.amount,
            )
            .values(refunded_amount=Payment.refunded_amount + amount)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        await db.refresh(payment)
        return result.rowcount == 1

    async def release_refund(self, db: AsyncSession, payment_id: Any, amount: Decimal) -> bool:
        """
        Give a failed refund's amount back to the payment's refundable balance.

        Returns:
            bool: True if the balance was released
        """
        result = await db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.refunded_amount >= amount)
            .values(refunded_amount=Payment.refunded_amount - amount)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount != 1:
            metrics.record_consistency_anomaly("payment", "refund_release_mismatch")
            logger.error(
                "refund_release_mismatch", payment_id=str(payment_id), amount=str(amount)
            )
        return result.rowcount == 1

    async def list_stale(
        self,
        db: AsyncSession,
        kind: TransactionKind,
        older_than: datetime,
        limit: int,
    ) -> list:
        """In-flight records with a provider token created before ``older_than``."""
        model = MODELS[kind]
        result = await db.execute(
            select(model)
            .where(
                model.status.in_([S.PENDING.value, S.PROCESSING.value]),
                model.transaction_id.is_not(None),
                model.created_at < older_than,
            )
            .order_by(model.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_unsubmitted(
        self,
        db: AsyncSession,
        kind: TransactionKind,
        older_than: datetime,
        limit: int,
    ) -> list:
        """
        In-flight records that never got a provider token.

        These cannot be polled. Payouts are aged from their last retry claim,
        everything else from creation.
        """
        model = MODELS[kind]
        anchor = (
            func.coalesce(Payout.last_retry_at, Payout.created_at)
            if kind is TransactionKind.PAYOUT
            else model.created_at
        )
        result = await db.execute(
            select(model)
            .where(
                model.status.in_([S.PENDING.value, S.PROCESSING.value]),
                model.transaction_id.is_(None),
                anchor < older_than,
            )
            .order_by(model.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _read_status(
        self, db: AsyncSession, model: Type[Any], record_id: uuid.UUID
    ) -> Optional[TransactionStatus]:
        result = await db.execute(select(model.status).where(model.id == record_id))
        value = result.scalar_one_or_none()
        return TransactionStatus(value) if value is not None else None

    async def transition(
        self,
        db: AsyncSession,
        record: Any,
        target: TransactionStatus | str,
        *,
        source: TransitionSource,
        raw: Optional[Mapping[str, Any]] = None,
        error_message: Optional[str] = None,
        transaction_id: Optional[str] = None,
        values: Optional[Dict[str, Any]] = None,
    ) -> TransitionResult:
        """
        Move a record to ``target`` if the state machine allows it.

        Args:
            db: Database session
            record: Payment, Payout or Refund row
            target: Requested canonical status
            source: What drives the move
            raw: Raw provider payload to keep in the audit blob
            error_message: Failure reason to store
            transaction_id: Provider token to store alongside the move
            values: Extra column values to write with the move

        Returns:
            TransitionResult: Applied, no-op or rejected outcome
        """
        kind = kind_of(record)
        model = MODELS[kind]
        entity = ENTITY_NAMES[kind]
        target = TransactionStatus(target)
        current = TransactionStatus(record.status)

        changes: Dict[str, Any] = dict(values or {})
        changes["status"] = target.value
        if raw is not None:
            changes["provider_response"] = self._merge_audit(record, source, raw)
        if error_message is not None:
            changes["error_message"] = error_message
        if transaction_id is not None:
            changes["transaction_id"] = transaction_id

        for _ in range(self.max_contention_retries):
            if current == target:
                metrics.record_transition(entity, TransitionOutcome.NOOP.value)
                logger.info(
                    "transition_noop",
                    entity=entity,
                    record_id=str(record.id),
                    status=current.value,
                    source=source.value,
                )
                await db.commit()
                await db.refresh(record)
                return TransitionResult(TransitionOutcome.NOOP, current, current, record)

            if not is_transition_allowed(kind, current, target, source):
                return await self._reject(db, record, kind, current, target, source, raw)

            result = await db.execute(
                update(model)
                .where(model.id == record.id, model.status == current.value)
                .values(**changes)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                await self.record_event(
                    db,
                    record,
                    event_type=f"{entity}_{target.value}",
                    source=source,
                    from_status=current.value,
                    to_status=target.value,
                    event_data={"error_message": error_message, "transaction_id": transaction_id},
                )
                await db.commit()
                await db.refresh(record)
                metrics.record_transition(entity, TransitionOutcome.APPLIED.value)
                logger.info(
                    "transition_applied",
                    entity=entity,
                    record_id=str(record.id),
                    from_status=current.value,
                    to_status=target.value,
                    source=source.value,
                )
                return TransitionResult(TransitionOutcome.APPLIED, current, target, record)

            # Another path moved the row first; decide again from what it wrote
            latest = await self._read_status(db, model, record.id)
            if latest is None:
                await db.rollback()
                raise LookupError(f"{entity} {record.id} disappeared during transition")
            logger.info(
                "transition_lost_race",
                entity=entity,
                record_id=str(record.id),
                expected=current.value,
                actual=latest.value,
            )
            current = latest

        await db.commit()
        metrics.record_consistency_anomaly(entity, "contention")
        logger.warning(
            "transition_contention_exhausted",
            entity=entity,
            record_id=str(record.id),
            target=target.value,
        )
        await db.refresh(record)
        return TransitionResult(TransitionOutcome.REJECTED, current, current, record)

    async def _reject(
        self,
        db: AsyncSession,
        record: Any,
        kind: TransactionKind,
        current: TransactionStatus,
        target: TransactionStatus,
        source: TransitionSource,
        raw: Optional[Mapping[str, Any]],
    ) -> TransitionResult:
        entity = ENTITY_NAMES[kind]
        metrics.record_transition(entity, TransitionOutcome.REJECTED.value)

        if current.is_terminal and target.is_terminal:
            metrics.record_consistency_anomaly(entity, "conflicting_terminal")
            logger.warning(
                "consistency_anomaly",
                entity=entity,
                record_id=str(record.id),
                stored_status=current.value,
                attempted_status=target.value,
                source=source.value,
            )
            await self.record_event(
                db,
                record,
                event_type="consistency_anomaly",
                source=source,
                from_status=current.value,
                to_status=target.value,
                event_data={"payload": dict(raw) if raw is not None else None},
            )
            await db.commit()
        else:
            logger.info(
                "transition_rejected",
                entity=entity,
                record_id=str(record.id),
                stored_status=current.value,
                attempted_status=target.value,
                source=source.value,
            )
            # Close the transaction the conditional update may have opened
            await db.commit()

        await db.refresh(record)
        return TransitionResult(TransitionOutcome.REJECTED, current, current, record)

    @staticmethod
    def _merge_audit(
        record: Any, source: TransitionSource, raw: Mapping[str, Any]
    ) -> Dict[str, Any]:
        audit = dict(record.provider_response or {})
        audit[source.value] = dict(raw)
        audit["last_source"] = source.value
        audit["last_updated_at"] = utcnow().isoformat()
        return audit

    async def record_event(
        self,
        db: AsyncSession,
        record: Any,
        *,
        event_type: str,
        source: TransitionSource,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        event_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Record a transaction event for the audit trail.

        The event is added to the session; the caller commits.

        Args:
            db: Database session
            record: Payment, Payout or Refund row
            event_type: Event type
            source: What produced the event
            from_status: Status before the event
            to_status: Status after the event
            event_data: Event data
        """
        db.add(
            TransactionEvent(
                entity_type=ENTITY_NAMES[kind_of(record)],
                entity_id=record.id,
                event_type=event_type,
                source=source.value,
                from_status=from_status,
                to_status=to_status,
                event_data=event_data,
            )
        )

    # ------------------------------------------------------------------
    # Payout retry bookkeeping
    # ------------------------------------------------------------------

    async def claim_payout_retry(
        self, db: AsyncSession, payout: Payout, expected_retry_count: int, now: datetime
    ) -> bool:
        """
        Atomically take the next retry slot of a failed payout.

        The update only matches while the payout is still failed and its
        retry count is still the one the caller evaluated, so two triggers
        racing for the same payout cannot both resubmit. The current token is
        moved to ``previous_transaction_id`` so late signals for the failed
        attempt cannot move the row while the resubmission is in flight.

        Returns:
            bool: True if this caller owns the retry
        """
        changes: Dict[str, Any] = {
            "status": S.PROCESSING.value,
            "retry_count": expected_retry_count + 1,
            "last_retry_at": now,
            "transaction_id": None,
        }
        if payout.transaction_id:
            changes["previous_transaction_id"] = payout.transaction_id
        result = await db.execute(
            update(Payout)
            .where(
                Payout.id == payout.id,
                Payout.status == S.FAILED.value,
                Payout.retry_count == expected_retry_count,
                Payout.max_retries_reached.is_(False),
            )
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.commit()
            await db.refresh(payout)
            return False

        await self.record_event(
            db,
            payout,
            event_type="payout_retry_claimed",
            source=TransitionSource.RETRY,
            from_status=S.FAILED.value,
            to_status=S.PROCESSING.value,
            event_data={
                "attempt": expected_retry_count + 1,
                "superseded_transaction_id": payout.transaction_id,
            },
        )
        await db.commit()
        await db.refresh(payout)
        return True

    async def finish_payout_retry(
        self,
        db: AsyncSession,
        payout: Payout,
        *,
        history_entry: Dict[str, Any],
        transaction_id: Optional[str],
        failed: bool,
        error_message: Optional[str] = None,
        raw: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """
        Record the outcome of a claimed retry.

        The write only matches while the payout is still processing under this
        retry slot. If anything moved it in the meantime nothing is written
        and the caller must treat a newly issued token as unrecorded.

        Args:
            db: Database session
            payout: Payout whose retry slot this caller holds
            history_entry: Entry appended to ``retry_history``
            transaction_id: New provider token, if the provider issued one
            failed: Whether the resubmission was refused
            error_message: Failure reason when refused
            raw: Provider response to keep in the audit blob

        Returns:
            bool: True if the outcome was written; ``payout`` is refreshed either way
        """
        changes: Dict[str, Any] = {
            "retry_history": list(payout.retry_history or []) + [history_entry],
        }
        if transaction_id is not None:
            changes["transaction_id"] = transaction_id
        if raw is not None:
            changes["provider_response"] = self._merge_audit(payout, TransitionSource.RETRY, raw)
        if failed:
            changes["status"] = S.FAILED.value
            changes["error_message"] = error_message

        result = await db.execute(
            update(Payout)
            .where(
                Payout.id == payout.id,
                Payout.status == S.PROCESSING.value,
                Payout.retry_count == history_entry["attempt"],
            )
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.commit()
            await db.refresh(payout)
            logger.error(
                "payout_retry_outcome_not_recorded",
                payout_id=str(payout.id),
                attempt=history_entry["attempt"],
                status=payout.status,
                retry_count=payout.retry_count,
                new_transaction_id=transaction_id,
            )
            return False

        await self.record_event(
            db,
            payout,
            event_type="payout_retry_failed" if failed else "payout_retry_submitted",
            source=TransitionSource.RETRY,
            from_status=S.PROCESSING.value,
            to_status=S.FAILED.value if failed else S.PROCESSING.value,
            event_data=history_entry,
        )
        await db.commit()
        await db.refresh(payout)
        return True

    async def mark_max_retries_reached(self, db: AsyncSession, payout: Payout) -> bool:
        """
        Flag a failed payout as permanently failed.

        Returns:
            bool: True if this call set the flag
        """
        result = await db.execute(
            update(Payout)
            .where(
                Payout.id == payout.id,
                Payout.status == S.FAILED.value,
                Payout.max_retries_reached.is_(False),
            )
            .values(max_retries_reached=True)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await self.record_event(
                db,
                payout,
                event_type="payout_max_retries_reached",
                source=TransitionSource.RETRY,
                from_status=S.FAILED.value,
                to_status=S.FAILED.value,
                event_data={"retry_count": payout.retry_count},
            )
        await db.commit()
        await db.refresh(payout)
        return result.rowcount == 1
