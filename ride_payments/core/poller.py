"""
Client-side status poller.

Fallback for providers whose callbacks are missing or late. The poller asks
for a transaction's status on a provider-aware schedule, yields every change
it observes, stops as soon as a terminal status shows up, and hands over to
background reconciliation once the wall-clock ceiling is reached.
"""
import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

import httpx
import structlog

from ride_payments.core.enums import TransactionStatus

logger = structlog.get_logger(__name__)

# (elapsed upper bound, interval) once past the initial band
INTERVAL_BANDS = ((60.0, 10.0), (120.0, 20.0))
INITIAL_BAND_SECONDS = 30.0
LATE_INTERVAL_SECONDS = 30.0
RELIABLE_INITIAL_INTERVAL = 3.0
UNRELIABLE_INITIAL_INTERVAL = 2.0
MAX_ERROR_DELAY_SECONDS = 60.0

StatusFetcher = Callable[[], Awaitable[Dict[str, Any]]]


class PollerState(str, Enum):
    """Poller lifecycle."""

    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    BACKGROUND_CHECK_ONLY = "background_check_only"


@dataclass(frozen=True)
class PollUpdate:
    """One observation yielded to the caller."""

    state: PollerState
    status: Optional[TransactionStatus]
    message: str
    elapsed: float
    attempt: int


def base_interval(elapsed: float, reliable_callbacks: bool) -> float:
    """
    Polling interval for the elapsed-time band.

    Args:
        elapsed: Seconds since polling started
        reliable_callbacks: Whether the provider delivers callbacks reliably

    Returns:
        float: Seconds to wait before the next check
    """
    if elapsed < INITIAL_BAND_SECONDS:
        return RELIABLE_INITIAL_INTERVAL if reliable_callbacks else UNRELIABLE_INITIAL_INTERVAL
    for upper_bound, interval in INTERVAL_BANDS:
        if elapsed < upper_bound:
            return interval
    return LATE_INTERVAL_SECONDS


def error_delay(base: float, consecutive_errors: int) -> float:
    """Back-off delay after ``consecutive_errors`` failed checks in a row."""
    return min(base * (2 ** consecutive_errors), MAX_ERROR_DELAY_SECONDS)


class StatusPoller:
    """
    Polls a status source until the transaction settles or the ceiling hits.

    Usage:
        poller = StatusPoller(fetch, reliable_callbacks=False)
        async for update in poller:
            render(update)
    """

    def __init__(
        self,
        fetch_status: StatusFetcher,
        reliable_callbacks: bool = True,
        ceiling_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        """
        Initialize status poller.

        Args:
            fetch_status: Coroutine returning ``{"status": ..., "message": ...}``
            reliable_callbacks: Provider delivers callbacks reliably (slower schedule)
            ceiling_seconds: Wall-clock limit before handing over to background checks
            clock: Monotonic clock, injectable for tests
            sleep: Optional sleep coroutine replacing the wake-aware wait
        """
        self.fetch_status = fetch_status
        self.reliable_callbacks = reliable_callbacks
        self.ceiling_seconds = ceiling_seconds
        self.clock = clock
        self._sleep_fn = sleep
        self.state = PollerState.POLLING
        self.consecutive_errors = 0
        self._wake_event = asyncio.Event()

    def wake(self) -> None:
        """Cut the current wait short and check again immediately."""
        self._wake_event.set()

    async def _sleep(self, seconds: float) -> None:
        if self._sleep_fn is not None:
            await self._sleep_fn(seconds)
            return
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        finally:
            self._wake_event.clear()

    def __aiter__(self) -> AsyncIterator[PollUpdate]:
        return self.poll()

    async def poll(self) -> AsyncIterator[PollUpdate]:
        """
        Run the poll loop.

        Yields:
            PollUpdate: On every status change and on the final state
        """
        started = self.clock()
        attempt = 0
        last_status: Optional[TransactionStatus] = None

        while True:
            elapsed = self.clock() - started
            if elapsed >= self.ceiling_seconds:
                self.state = PollerState.BACKGROUND_CHECK_ONLY
                logger.info("poller_ceiling_reached", elapsed_seconds=elapsed, attempts=attempt)
                yield PollUpdate(
                    self.state,
                    last_status,
                    "Payment is still processing and will be updated in the background",
                    elapsed,
                    attempt,
                )
                return

            attempt += 1
            base = base_interval(elapsed, self.reliable_callbacks)
            try:
                result = await self.fetch_status()
            except Exception as e:
                self.consecutive_errors += 1
                delay = error_delay(base, self.consecutive_errors)
                logger.warning(
                    "poller_status_check_failed",
                    attempt=attempt,
                    consecutive_errors=self.consecutive_errors,
                    retry_in_seconds=delay,
                    error=str(e),
                )
                await self._sleep(min(delay, max(self.ceiling_seconds - elapsed, 0)))
                continue

            self.consecutive_errors = 0
            status = TransactionStatus(result.get("status", TransactionStatus.PROCESSING.value))
            message = result.get("message") or ""
            elapsed = self.clock() - started

            if status in (TransactionStatus.COMPLETED, TransactionStatus.PARTIAL_REFUND):
                self.state = PollerState.COMPLETED
            elif status is TransactionStatus.FAILED:
                self.state = PollerState.FAILED

            if self.state is not PollerState.POLLING:
                yield PollUpdate(self.state, status, message, elapsed, attempt)
                return

            if status != last_status:
                last_status = status
                yield PollUpdate(self.state, status, message, elapsed, attempt)

            await self._sleep(min(base, max(self.ceiling_seconds - elapsed, 0)))


class HttpStatusFetcher:
    """Status source backed by the service's own check-status endpoint."""

    def __init__(
        self,
        base_url: str,
        reference: str,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize HTTP status fetcher.

        Args:
            base_url: Service base URL
            reference: Transaction token or record id to check
            http_client: Optional shared HTTP client
        """
        self.url = f"{base_url.rstrip('/')}/transactions/check-status"
        self.reference = reference
        self.http_client = http_client or httpx.AsyncClient(timeout=10.0)

    async def __call__(self) -> Dict[str, Any]:
        response = await self.http_client.post(self.url, json={"reference": self.reference})
        response.raise_for_status()
        return response.json()


class OrchestratorStatusFetcher:
    """Status source calling the orchestrator in-process, one session per check."""

    def __init__(self, orchestrator: Any, session_factory: Callable[[], Any], reference: str):
        self.orchestrator = orchestrator
        self.session_factory = session_factory
        self.reference = reference

    async def __call__(self) -> Dict[str, Any]:
        async with self.session_factory() as db:
            return await self.orchestrator.check_status(db, self.reference)
