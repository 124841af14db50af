"""
Background reconciliation of in-flight transactions.

Runs on a schedule to converge records whose callbacks never arrived:
- Payments, payouts and refunds stuck in pending/processing are re-checked
  with their provider
- Failed, retryable payouts past their cooldown are resubmitted
- Payouts out of retries are flagged with ``max_retries_reached``
- Records that never got a provider token are failed (payments) or
  flagged for an operator (payouts and refunds, where money may have moved)
"""
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from ride_payments.core.clock import utcnow
from ride_payments.core.enums import TransactionKind, TransactionStatus
from ride_payments.core.orchestrator import PaymentOrchestrator
from ride_payments.core.store import TransitionSource
from ride_payments.database.connection import get_session_factory
from ride_payments.database.models import ReconciliationRun
from ride_payments.integrations.base import ProviderTransportError
from ride_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

UNSUBMITTED_PAYMENT_MESSAGE = "Submission was never confirmed by the provider"


class ReconciliationError(Exception):
    """Raised when a reconciliation sweep fails."""

    pass


class ReconciliationEngine:
    """
    Sweeps stale in-flight transactions and failed payouts.

    One record failing to refresh (provider down, unknown token) never
    stops the sweep; it is counted as an error and retried next run.
    """

    def __init__(
        self,
        orchestrator: PaymentOrchestrator,
        session_factory: Optional[Callable[[], Any]] = None,
        stale_after_seconds: Optional[int] = None,
        batch_size: Optional[int] = None,
    ):
        """
        Initialize reconciliation engine.

        Args:
            orchestrator: Orchestrator used to refresh statuses and retry payouts
            session_factory: Session factory (defaults to the application one)
            stale_after_seconds: Age after which an in-flight record is re-checked
            batch_size: Maximum records per kind and sweep
        """
        settings = orchestrator.settings
        self.orchestrator = orchestrator
        self.session_factory = session_factory or get_session_factory()
        if stale_after_seconds is None:
            stale_after_seconds = settings.reconciliation_stale_after_seconds
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.batch_size = batch_size or settings.reconciliation_batch_size
        logger.info("reconciliation_engine_initialized", batch_size=self.batch_size)

    async def _refresh_stale(
        self, db: AsyncSession, kind: TransactionKind, now: datetime, counts: Dict[str, int]
    ) -> None:
        store = self.orchestrator.store
        stale = await store.list_stale(db, kind, now - self.stale_after, self.batch_size)
        # Reload one by one: a rollback after a failed record expires the whole batch
        for record_id in [record.id for record in stale]:
            record = await store.get(db, kind, record_id)
            if record is None:
                continue
            counts["checked"] += 1
            try:
                result = await self.orchestrator.refresh_record(
                    db, kind, record, TransitionSource.RECONCILIATION
                )
            except ProviderTransportError as e:
                counts["errors"] += 1
                logger.warning(
                    "reconciliation_provider_unreachable",
                    kind=kind.value,
                    record_id=str(record_id),
                    error=str(e),
                )
                continue
            except Exception as e:
                counts["errors"] += 1
                await db.rollback()
                logger.error(
                    "reconciliation_record_failed",
                    kind=kind.value,
                    record_id=str(record_id),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue
            if result is not None and result.applied:
                counts["updated"] += 1

    async def _settle_unsubmitted(
        self, db: AsyncSession, kind: TransactionKind, now: datetime, counts: Dict[str, int]
    ) -> None:
        store = self.orchestrator.store
        stranded = await store.list_unsubmitted(db, kind, now - self.stale_after, self.batch_size)
        for record_id in [record.id for record in stranded]:
            record = await store.get(db, kind, record_id)
            if record is None:
                continue
            metrics.record_consistency_anomaly(kind.value, "unsubmitted")
            log = logger.bind(
                kind=kind.value,
                record_id=str(record_id),
                provider=record.provider,
                status=record.status,
            )

            if kind is not TransactionKind.PAYIN:
                # A provider may hold the money under a token we never stored
                counts["flagged"] += 1
                log.critical("reconciliation_unsubmitted_transfer")
                continue

            result = await store.transition(
                db,
                record,
                TransactionStatus.FAILED,
                source=TransitionSource.RECONCILIATION,
                error_message=UNSUBMITTED_PAYMENT_MESSAGE,
            )
            if result.applied:
                counts["abandoned"] += 1
                log.error("reconciliation_unsubmitted_payment_failed")

    async def run_sweep(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Run one reconciliation sweep.

        Args:
            now: Current time (defaults to now)

        Returns:
            Dict[str, Any]: Sweep results

        Raises:
            ReconciliationError: If the sweep itself cannot run
        """
        now = now or utcnow()
        start_time = time.time()
        counts = {
            "checked": 0,
            "updated": 0,
            "retried": 0,
            "errors": 0,
            "abandoned": 0,
            "flagged": 0,
        }
        retry_outcomes: Dict[str, int] = {}

        logger.info("reconciliation_started")

        async with self.session_factory() as db:
            run = ReconciliationRun(status="in_progress", started_at=now)
            db.add(run)
            await db.commit()

            try:
                for kind in TransactionKind:
                    await self._refresh_stale(db, kind, now, counts)
                    await self._settle_unsubmitted(db, kind, now, counts)

                retry_outcomes = await self.orchestrator.retry_engine.retry_eligible_payouts(
                    db, now=now, limit=self.batch_size
                )
                counts["retried"] = retry_outcomes.get("submitted", 0) + retry_outcomes.get(
                    "failed", 0
                )

                run.status = "completed"
                run.checked_count = counts["checked"]
                run.updated_count = counts["updated"]
                run.retried_count = counts["retried"]
                run.error_count = counts["errors"]
                run.completed_at = utcnow()
                run.details = {
                    "retry_outcomes": retry_outcomes,
                    "abandoned": counts["abandoned"],
                    "flagged": counts["flagged"],
                }
                db.add(run)
                await db.commit()
                await db.refresh(run)

            except Exception as e:
                logger.error("reconciliation_failed", error=str(e), error_type=type(e).__name__)
                await db.rollback()
                run.status = "failed"
                run.completed_at = utcnow()
                run.details = {"error": str(e)}
                db.add(run)
                await db.commit()
                raise ReconciliationError(f"Reconciliation failed: {str(e)}") from e

        duration = time.time() - start_time
        metrics.set_reconciliation_metrics(counts["checked"], counts["updated"], duration)
        logger.info(
            "reconciliation_completed",
            duration_seconds=duration,
            retry_outcomes=retry_outcomes,
            **counts,
        )
        return {
            "runId": str(run.id),
            "status": run.status,
            "durationSeconds": round(duration, 3),
            "retryOutcomes": retry_outcomes,
            **counts,
        }
