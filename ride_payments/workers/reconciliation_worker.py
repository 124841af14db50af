"""
Reconciliation background worker.

Runs a reconciliation sweep every few minutes so that payments, payouts and
refunds whose callbacks never arrived still converge, and failed payouts are
retried once their cooldown has passed.
"""
import asyncio
import signal
from typing import Any, Optional

import httpx
import structlog

from ride_payments.config import get_settings
from ride_payments.core.notifications import drain_background_notifications
from ride_payments.core.orchestrator import build_orchestrator
from ride_payments.core.reconciliation import ReconciliationEngine
from ride_payments.database.connection import close_db, init_db
from ride_payments.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_reconciliation(engine: ReconciliationEngine) -> None:
    """
    Run one sweep and report what it found.

    Args:
        engine: Reconciliation engine
    """
    result = await engine.run_sweep()

    if result["errors"]:
        logger.warning(
            "reconciliation_errors_detected",
            run_id=result["runId"],
            errors=result["errors"],
            checked=result["checked"],
        )


async def start_reconciliation_worker(interval_seconds: Optional[int] = None) -> None:
    """
    Start the reconciliation worker.

    Args:
        interval_seconds: Pause between sweeps (defaults to the
            ``reconciliation_interval_seconds`` setting)
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.reconciliation_interval_seconds

    logger.info("reconciliation_worker_starting", interval_seconds=interval)

    stop = asyncio.Event()

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        stop.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    await init_db()
    http_client = httpx.AsyncClient(timeout=settings.provider_request_timeout)
    orchestrator = build_orchestrator(settings, http_client=http_client)
    engine = ReconciliationEngine(orchestrator)

    try:
        while not stop.is_set():
            try:
                await run_reconciliation(engine)
            except Exception as e:
                logger.error("reconciliation_execution_error", error=str(e))
                # Continue running even if one sweep fails

            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    finally:
        await drain_background_notifications()
        await orchestrator.idempotency_manager.close()
        await http_client.aclose()
        await close_db()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    """Command-line entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Reconciliation worker")
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Seconds between reconciliation sweeps",
    )
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
