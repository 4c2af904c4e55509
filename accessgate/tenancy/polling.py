"""
Bounded polling state machine.

Re-runs a fetch on a fixed interval until it yields a value or a
maximum wait elapses:

    IDLE → POLLING → {RESOLVED | TIMED_OUT | CANCELLED}

Guarantees:
- At most one loop per poller. start() cancels any running loop first.
- Every attempt carries an epoch. A tick or fetch result belonging to a
  superseded epoch is dropped, so a slow response can never resurrect a
  cancelled loop or count toward the wait window of a newer one.
- Ticks are scheduled from the start of the window (tick k is due at
  started + k * interval), so a slow fetch never delays later ticks.
  A tick that is already overdue runs at once; ticks a fetch overran
  are skipped, never run back to back.
- Fetch errors (and fetches slower than fetch_timeout) are swallowed
  and retried on the next tick. The wait window is measured on the
  clock, so failures never shorten it.
- A terminal state is reached no later than max_wait + interval: each
  fetch is cut off at that deadline.

The clock and sleep callables are injectable so tests can drive the
loop without wall-clock waits.

Usage:
    poller = BoundedPoller(fetch_memberships, interval_ms=1000)
    poller.start(max_wait_ms=8000, on_finish=handle_result)
    ...
    poller.cancel()  # view torn down
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PollState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    RESOLVED = "resolved"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (PollState.RESOLVED, PollState.TIMED_OUT, PollState.CANCELLED)


@dataclass
class PollResult(Generic[T]):
    """Outcome of one polling attempt."""

    state: PollState
    epoch: int
    value: Optional[T] = None
    attempts: int = 0
    failures: int = 0
    elapsed_ms: int = 0


class BoundedPoller(Generic[T]):
    """
    Cancellable fixed-interval poller with a hard deadline.

    `fetch` returns a value when the awaited condition holds, None when
    it does not hold yet, and raises on transient failure.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[Optional[T]]],
        *,
        interval_ms: int = 1000,
        fetch_timeout_ms: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        name: str = "poll",
    ):
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self._fetch = fetch
        self.interval_ms = interval_ms
        self.fetch_timeout_ms = fetch_timeout_ms or interval_ms
        self._clock = clock
        self._sleep = sleep
        self.name = name

        self._epoch = 0
        self._state = PollState.IDLE
        self._task: Optional[asyncio.Task] = None
        self._outcome: Optional[asyncio.Future] = None
        self._on_finish: Optional[Callable[[PollResult[T]], None]] = None
        self._last_result: Optional[PollResult[T]] = None

    # ── Introspection ────────────────────────────────────────

    @property
    def state(self) -> PollState:
        return self._state

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def is_active(self) -> bool:
        """True while a loop task is scheduled and not finished."""
        return self._task is not None and not self._task.done()

    @property
    def last_result(self) -> Optional[PollResult[T]]:
        return self._last_result

    # ── Control ──────────────────────────────────────────────

    def start(
        self,
        max_wait_ms: int,
        on_finish: Optional[Callable[[PollResult[T]], None]] = None,
        started: Optional[float] = None,
    ) -> int:
        """
        Start a new polling attempt, cancelling any running one.

        Must be called from inside a running event loop. `started` is the
        clock reading the wait window opens at (default: now), for callers
        that already spent part of the window on an immediate fetch.

        Returns:
            The epoch of the new attempt.
        """
        self.cancel()

        loop = asyncio.get_running_loop()
        self._epoch += 1
        epoch = self._epoch
        self._state = PollState.POLLING
        self._on_finish = on_finish
        self._outcome = loop.create_future()
        self._last_result = None

        if started is None:
            started = self._clock()
        self._task = loop.create_task(
            self._run(epoch, started, max_wait_ms),
            name=f"{self.name}-{epoch}",
        )

        logger.debug(
            "poll_started",
            extra={"poller": self.name, "epoch": epoch, "max_wait_ms": max_wait_ms},
        )
        return epoch

    def cancel(self) -> None:
        """
        Cancel the running attempt, if any.

        Safe to call at any time, including from inside on_finish.
        """
        was_polling = self._state == PollState.POLLING
        cancelled_epoch = self._epoch
        # Bumping the epoch invalidates any in-flight tick immediately,
        # even before the task observes its cancellation.
        self._epoch += 1
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()

        if was_polling:
            self._state = PollState.CANCELLED
            result = PollResult(state=PollState.CANCELLED, epoch=cancelled_epoch)
            self._last_result = result
            if self._outcome is not None and not self._outcome.done():
                self._outcome.set_result(result)
            logger.debug("poll_cancelled", extra={"poller": self.name})

    async def wait(self) -> Optional[PollResult[T]]:
        """
        Wait for the current attempt to reach a terminal state.

        Returns the last result immediately when no attempt is running.
        """
        if self._outcome is None:
            return self._last_result
        return await asyncio.shield(self._outcome)

    # ── Loop ─────────────────────────────────────────────────

    def _elapsed_ms(self, started: float) -> int:
        return int(round((self._clock() - started) * 1000))

    async def _run(self, epoch: int, started: float, max_wait_ms: int) -> None:
        attempts = 0
        failures = 0
        tick = 0
        deadline = started + (max_wait_ms + self.interval_ms) / 1000
        while True:
            # Next tick on the fixed schedule; ticks a slow fetch overran are skipped.
            overdue = -(-self._elapsed_ms(started) // self.interval_ms)
            tick = max(tick + 1, overdue)
            due = started + tick * self.interval_ms / 1000
            await self._sleep(max(0.0, due - self._clock()))
            if epoch != self._epoch:
                return

            attempts += 1
            value: Optional[T] = None
            budget = min(self.fetch_timeout_ms / 1000, deadline - self._clock())
            try:
                value = await asyncio.wait_for(self._fetch(), timeout=max(0.0, budget))
            except Exception as e:
                failures += 1
                logger.warning(
                    "poll_fetch_failed",
                    extra={
                        "poller": self.name,
                        "epoch": epoch,
                        "attempt": attempts,
                        "error": str(e) or type(e).__name__,
                    },
                )

            if epoch != self._epoch:
                return

            elapsed_ms = self._elapsed_ms(started)
            if value is not None:
                self._finish(epoch, PollState.RESOLVED, value, attempts, failures, elapsed_ms)
                return
            if elapsed_ms >= max_wait_ms:
                self._finish(epoch, PollState.TIMED_OUT, None, attempts, failures, elapsed_ms)
                return

    def _finish(
        self,
        epoch: int,
        state: PollState,
        value: Optional[T],
        attempts: int,
        failures: int,
        elapsed_ms: int,
    ) -> None:
        if epoch != self._epoch:
            return

        self._state = state
        self._task = None
        result = PollResult(
            state=state,
            epoch=epoch,
            value=value,
            attempts=attempts,
            failures=failures,
            elapsed_ms=elapsed_ms,
        )
        self._last_result = result

        logger.debug(
            "poll_finished",
            extra={
                "poller": self.name,
                "epoch": epoch,
                "outcome": state.value,
                "attempts": attempts,
                "elapsed_ms": elapsed_ms,
            },
        )

        on_finish = self._on_finish
        outcome = self._outcome
        if on_finish is not None:
            on_finish(result)
        if outcome is not None and not outcome.done():
            outcome.set_result(result)


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
