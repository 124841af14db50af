"""
Automatic retry of failed driver payouts.

A failed payout is resubmitted when:
1. The failure looks transient (timeout, service unavailable, ...)
2. Fewer than ``max_retries`` retries have been made
3. The cooldown since creation or the last retry has elapsed

Each retry takes its slot with a conditional update on ``retry_count``, so
concurrent triggers (scheduled sweep, status check, callback) resubmit a
payout at most once per slot.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ride_payments.core.clock import ensure_utc, utcnow
from ride_payments.core.enums import Provider, TransactionKind, TransactionStatus
from ride_payments.core.errors import ReconciliationRiskError
from ride_payments.core.status import is_retryable_failure
from ride_payments.core.store import TransactionStore
from ride_payments.database.models import Payout
from ride_payments.integrations.base import ProviderTransportError
from ride_payments.monitoring.metrics import metrics

if TYPE_CHECKING:
    from ride_payments.core.orchestrator import PaymentOrchestrator

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RetryDecision:
    """Evaluation of a payout against the retry conditions."""

    failed: bool
    retryable: bool
    exhausted: bool
    seconds_until_retry: float

    @property
    def will_retry(self) -> bool:
        """Whether the payout will eventually be resubmitted."""
        return self.failed and self.retryable and not self.exhausted

    @property
    def can_retry_now(self) -> bool:
        """Whether the payout may be resubmitted immediately."""
        return self.will_retry and self.seconds_until_retry <= 0


@dataclass
class RetryResult:
    """Outcome of ``PayoutRetryEngine.retry_payout``."""

    outcome: str  # submitted, failed, cooldown, not_retryable, exhausted, conflict, not_failed
    payout: Payout
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome,
            "payoutId": str(self.payout.id),
            "status": self.payout.status,
            "retryCount": self.payout.retry_count,
            "maxRetriesReached": self.payout.max_retries_reached,
            "message": self.message,
        }


class PayoutRetryEngine:
    """Resubmits failed payouts with a bounded number of attempts."""

    def __init__(
        self,
        orchestrator: "PaymentOrchestrator",
        store: TransactionStore,
        max_retries: int = 3,
        cooldown_seconds: int = 300,
    ):
        """
        Initialize retry engine.

        Args:
            orchestrator: Orchestrator used to resubmit payouts
            store: Transaction store
            max_retries: Retries allowed per payout
            cooldown_seconds: Minimum delay between attempts
        """
        self.orchestrator = orchestrator
        self.store = store
        self.max_retries = max_retries
        self.cooldown = timedelta(seconds=cooldown_seconds)

    def evaluate(self, payout: Payout, now: Optional[datetime] = None) -> RetryDecision:
        """
        Check a payout against the retry conditions without side effects.

        Args:
            payout: Payout to evaluate
            now: Current time (defaults to now)

        Returns:
            RetryDecision: Evaluation result
        """
        now = ensure_utc(now) if now else utcnow()
        anchor = ensure_utc(payout.created_at) if payout.created_at else now
        if payout.last_retry_at is not None:
            anchor = max(anchor, ensure_utc(payout.last_retry_at))

        return RetryDecision(
            failed=payout.status == TransactionStatus.FAILED.value,
            retryable=is_retryable_failure(payout.last_provider_status, payout.error_message),
            exhausted=payout.max_retries_reached or payout.retry_count >= self.max_retries,
            seconds_until_retry=(anchor + self.cooldown - now).total_seconds(),
        )

    async def on_payout_failed(self, db: AsyncSession, payout: Payout) -> RetryDecision:
        """
        Bookkeeping right after a payout moved to failed.

        Marks the payout as permanently failed once its retries are used up;
        resubmission itself is left to the sweep once the cooldown elapses.

        Returns:
            RetryDecision: Evaluation used to word the driver notification
        """
        decision = self.evaluate(payout)
        if decision.failed and decision.exhausted and not payout.max_retries_reached:
            if await self.store.mark_max_retries_reached(db, payout):
                metrics.record_payout_retry("exhausted")
                logger.warning(
                    "payout_max_retries_reached",
                    payout_id=str(payout.id),
                    retry_count=payout.retry_count,
                )
        return decision

    async def retry_payout(
        self, db: AsyncSession, payout: Payout, now: Optional[datetime] = None
    ) -> RetryResult:
        """
        Resubmit a failed payout if the retry conditions hold.

        Args:
            db: Database session
            payout: Failed payout
            now: Current time (defaults to now)

        Returns:
            RetryResult: What happened to the payout
        """
        now = ensure_utc(now) if now else utcnow()
        payout = await self.store.get_payout(db, payout.id) or payout
        decision = self.evaluate(payout, now)

        if not decision.failed:
            return RetryResult("not_failed", payout)

        if not decision.retryable:
            metrics.record_payout_retry("not_retryable")
            logger.info(
                "payout_not_retryable",
                payout_id=str(payout.id),
                provider_status=payout.last_provider_status,
                reason=payout.error_message,
            )
            return RetryResult("not_retryable", payout, "Failure is not retryable")

        if decision.exhausted:
            await self.on_payout_failed(db, payout)
            return RetryResult("exhausted", payout, "Maximum retries reached")

        if decision.seconds_until_retry > 0:
            metrics.record_payout_retry("cooldown")
            return RetryResult(
                "cooldown",
                payout,
                f"Next retry in {int(decision.seconds_until_retry)} seconds",
            )

        expected = payout.retry_count
        previous_transaction_id = payout.transaction_id
        previous_reason = (
            f"{payout.last_provider_status or 'FAILED'} - {payout.error_message or 'unknown'}"
        )

        if not await self.store.claim_payout_retry(db, payout, expected, now):
            metrics.record_payout_retry("conflict")
            logger.info("payout_retry_conflict", payout_id=str(payout.id), retry_count=expected)
            return RetryResult("conflict", payout, "Retry already taken by another worker")

        attempt = expected + 1
        logger.info(
            "payout_retry_started",
            payout_id=str(payout.id),
            attempt=attempt,
            max_retries=self.max_retries,
        )

        try:
            result = await self.orchestrator.submit_payout(
                Provider(payout.provider),
                payout.phone_number,
                payout.amount,
                payout.reason or f"Payout for booking {payout.booking_id}",
                payout.currency,
            )
        except ProviderTransportError as e:
            result = None
            error = str(e)
        else:
            error = None if result.success else result.message

        succeeded = result is not None and result.success
        new_transaction_id = result.verification_token if result is not None else None
        history_entry = {
            "attempt": attempt,
            "timestamp": now.isoformat(),
            "previous_transaction_id": previous_transaction_id,
            "new_transaction_id": new_transaction_id,
            "reason": f"Retry due to: {previous_reason}",
        }

        recorded = await self.store.finish_payout_retry(
            db,
            payout,
            history_entry=history_entry,
            transaction_id=new_transaction_id,
            failed=not succeeded,
            error_message=error,
            raw=result.raw if result is not None else {"error": error},
        )
        if not recorded:
            if succeeded:
                metrics.record_payout_retry("reconciliation_risk")
                raise self.orchestrator.reconciliation_risk(
                    TransactionKind.PAYOUT,
                    Provider(payout.provider),
                    new_transaction_id,
                    RuntimeError(
                        f"payout {payout.id} moved to {payout.status} during retry {attempt}"
                    ),
                )
            metrics.record_payout_retry("conflict")
            return RetryResult("conflict", payout, "Payout changed while the retry was in flight")

        if succeeded:
            metrics.record_payout_retry("submitted")
            logger.info(
                "payout_retry_submitted",
                payout_id=str(payout.id),
                attempt=attempt,
                transaction_token=new_transaction_id,
            )
            return RetryResult("submitted", payout, "Payout resubmitted")

        metrics.record_payout_retry("failed")
        logger.warning(
            "payout_retry_failed",
            payout_id=str(payout.id),
            attempt=attempt,
            error=error,
        )
        await self.on_payout_failed(db, payout)
        return RetryResult("failed", payout, error or "Retry failed")

    async def retry_eligible_payouts(
        self, db: AsyncSession, now: Optional[datetime] = None, limit: int = 100
    ) -> Dict[str, int]:
        """
        Scheduled pass over failed payouts that still have retries left.

        Args:
            db: Database session
            now: Current time (defaults to now)
            limit: Maximum payouts examined

        Returns:
            Dict[str, int]: Count per retry outcome
        """
        result = await db.execute(
            select(Payout)
            .where(
                Payout.status == TransactionStatus.FAILED.value,
                Payout.max_retries_reached.is_(False),
            )
            .order_by(Payout.updated_at)
            .limit(limit)
        )
        counts: Dict[str, int] = {}
        for payout in list(result.scalars().all()):
            try:
                outcome = (await self.retry_payout(db, payout, now)).outcome
            except ReconciliationRiskError:
                # Already logged as critical; keep retrying the other payouts
                outcome = "reconciliation_risk"
            counts[outcome] = counts.get(outcome, 0) + 1
        return counts
