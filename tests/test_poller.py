"""
Tests for the client-side status poller.
"""
from typing import Any, Dict, List

import pytest

from ride_payments.core.enums import TransactionStatus
from ride_payments.core.poller import (
    PollerState,
    StatusPoller,
    base_interval,
    error_delay,
)


class FakeClock:
    """Monotonic clock advanced only by the fake sleep."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def scripted(*outcomes: Any):
    """Status source returning (or raising) each outcome in turn, then the last forever."""
    remaining = list(outcomes)

    async def fetch() -> Dict[str, Any]:
        outcome = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        if isinstance(outcome, Exception):
            raise outcome
        return {"status": outcome, "message": f"status {outcome}"}

    return fetch


async def _collect(poller: StatusPoller) -> list:
    return [update async for update in poller]


class TestIntervals:
    """Test suite for the polling schedule."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "elapsed, reliable, expected",
        [
            (0, True, 3.0),
            (29.9, True, 3.0),
            (0, False, 2.0),
            (30, False, 10.0),
            (59, True, 10.0),
            (60, True, 20.0),
            (119, False, 20.0),
            (120, True, 30.0),
            (600, False, 30.0),
        ],
    )
    def test_base_interval(self, elapsed: float, reliable: bool, expected: float) -> None:
        """Test the interval widens as time goes on."""
        assert base_interval(elapsed, reliable) == expected

    @pytest.mark.unit
    def test_error_delay_is_capped(self) -> None:
        """Test consecutive errors back off exponentially up to a minute."""
        assert error_delay(3.0, 1) == 6.0
        assert error_delay(3.0, 2) == 12.0
        assert error_delay(10.0, 5) == 60.0


class TestStatusPoller:
    """Test suite for StatusPoller."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stops_on_completion(self) -> None:
        """Test polling ends as soon as a terminal status shows up."""
        clock = FakeClock()
        poller = StatusPoller(
            scripted("processing", "processing", "completed"),
            reliable_callbacks=False,
            clock=clock,
            sleep=clock.sleep,
        )

        updates = await _collect(poller)

        assert [u.state for u in updates] == [PollerState.POLLING, PollerState.COMPLETED]
        assert updates[-1].status is TransactionStatus.COMPLETED
        assert updates[-1].attempt == 3
        assert clock.sleeps == [2.0, 2.0]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_status(self) -> None:
        """Test a failed transaction ends polling with its message."""
        clock = FakeClock()
        poller = StatusPoller(scripted("failed"), clock=clock, sleep=clock.sleep)

        updates = await _collect(poller)

        assert len(updates) == 1
        assert updates[0].state is PollerState.FAILED
        assert updates[0].message == "status failed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_refund_counts_as_completed(self) -> None:
        """Test a partially refunded payment was paid."""
        clock = FakeClock()
        poller = StatusPoller(scripted("partial_refund"), clock=clock, sleep=clock.sleep)

        updates = await _collect(poller)

        assert updates[-1].state is PollerState.COMPLETED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ceiling_hands_over_to_background(self) -> None:
        """Test the schedule bands and the hand-over at the ceiling."""
        clock = FakeClock()
        poller = StatusPoller(
            scripted("processing"),
            reliable_callbacks=True,
            ceiling_seconds=150,
            clock=clock,
            sleep=clock.sleep,
        )

        updates = await _collect(poller)

        # Unchanged statuses are not repeated
        assert [u.state for u in updates] == [
            PollerState.POLLING,
            PollerState.BACKGROUND_CHECK_ONLY,
        ]
        assert updates[-1].status is TransactionStatus.PROCESSING
        assert clock.sleeps == [3.0] * 10 + [10.0] * 3 + [20.0] * 3 + [30.0]
        assert poller.state is PollerState.BACKGROUND_CHECK_ONLY

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_errors_back_off_then_reset(self) -> None:
        """Test failed checks back off and a good answer resets the counter."""
        clock = FakeClock()
        poller = StatusPoller(
            scripted(ConnectionError("down"), ConnectionError("down"), "completed"),
            clock=clock,
            sleep=clock.sleep,
        )

        updates = await _collect(poller)

        assert clock.sleeps == [6.0, 12.0]
        assert poller.consecutive_errors == 0
        assert updates[-1].state is PollerState.COMPLETED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_wake_skips_the_wait(self) -> None:
        """Test wake() triggers the next check immediately."""
        poller = StatusPoller(scripted("processing", "completed"), reliable_callbacks=True)

        updates = []
        async for update in poller:
            updates.append(update)
            poller.wake()

        assert [u.state for u in updates] == [PollerState.POLLING, PollerState.COMPLETED]
        # Would be at least 3 seconds without the wake-up
        assert updates[-1].elapsed < 3.0
