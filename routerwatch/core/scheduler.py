"""Periodic poll cycles with per-cycle back-off and re-entrancy guards.

Each :class:`PollCycle` is a small state machine::

    stopped -> scheduled -> running -> scheduled            (success)
                            running -> backoff_scheduled    (failure)

A failed run schedules the next one at ``interval * backoff_factor``; the
first successful run reverts to the normal interval. A cycle never has more
than one run in flight.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_FACTOR = 5.0

Job = Callable[[], Awaitable[Any]]


class CycleState(str, Enum):
    STOPPED = "stopped"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    BACKOFF_SCHEDULED = "backoff_scheduled"


class PollCycle:
    """One periodically refreshed category of one owner."""

    def __init__(
        self,
        owner: str,
        name: str,
        interval: float,
        job: Job,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"Interval for {name} must be positive, got {interval}")
        self.owner = owner
        self.name = name
        self.interval = interval
        self.job = job
        self.backoff_factor = backoff_factor
        self.state = CycleState.STOPPED
        self.failures = 0
        self.runs = 0
        self._handle: asyncio.TimerHandle | None = None
        self._task: asyncio.Task[bool] | None = None
        self._stopped = True

    def __repr__(self) -> str:
        return f"<PollCycle {self.owner}/{self.name} {self.state.value} every {self.interval}s>"

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def scheduled(self) -> bool:
        return self._handle is not None

    @property
    def next_delay(self) -> float:
        """Delay applied after the latest run."""
        if self.failures:
            return self.interval * self.backoff_factor
        return self.interval

    def start(self, delay: float | None = None) -> None:
        self._stopped = False
        self._schedule(self.interval if delay is None else delay)

    def _schedule(self, delay: float, backoff: bool = False) -> None:
        loop = asyncio.get_running_loop()
        if self._handle is not None:
            self._handle.cancel()
        self._handle = loop.call_later(delay, self._fire)
        self.state = CycleState.BACKOFF_SCHEDULED if backoff else CycleState.SCHEDULED

    def _fire(self) -> None:
        self._handle = None
        if self._stopped:
            return
        if self.in_flight:
            logger.debug("%r still running, postponing", self)
            self._schedule(self.interval)
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> bool:
        self.state = CycleState.RUNNING
        ok = True
        try:
            await self.job()
        except Exception as exc:
            ok = False
            self.failures += 1
            logger.info(
                "%s/%s failed (%d in a row): %s; next run in %.0fs",
                self.owner,
                self.name,
                self.failures,
                exc,
                self.next_delay,
            )
        else:
            if self.failures:
                logger.info("%s/%s recovered, back to every %.0fs", self.owner, self.name, self.interval)
            self.failures = 0
        finally:
            self.runs += 1

        if self._stopped:
            self.state = CycleState.STOPPED
        else:
            self._schedule(self.next_delay, backoff=not ok)
        return ok

    async def run_now(self) -> bool:
        """Run immediately unless a run is already in flight.

        Returns False when skipped. The periodic schedule continues from the
        end of this run.
        """
        if self.in_flight:
            return False
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._task = asyncio.get_running_loop().create_task(self._run())
        await asyncio.shield(self._task)
        return True

    def cancel(self) -> bool:
        """Stop future runs. Returns True if a pending timer was cancelled."""
        self._stopped = True
        cancelled = False
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
            cancelled = True
        if not self.in_flight:
            self.state = CycleState.STOPPED
        return cancelled

    async def drain(self) -> None:
        """Wait for an in-flight run to finish."""
        if self._task is not None and not self._task.done():
            await asyncio.wait([self._task])


class PollScheduler:
    """Registry of poll cycles keyed by (owner, category)."""

    def __init__(self, backoff_factor: float = DEFAULT_BACKOFF_FACTOR) -> None:
        self.backoff_factor = backoff_factor
        self._cycles: dict[tuple[str, str], PollCycle] = {}
        self._draining: list[PollCycle] = []

    def register(
        self,
        owner: str,
        name: str,
        interval: float,
        job: Job,
        start_delay: float | None = None,
    ) -> PollCycle:
        """Create and start a cycle, replacing any existing one with the same key."""
        key = (owner, name)
        previous = self._cycles.get(key)
        cycle = PollCycle(owner, name, interval, job, self.backoff_factor)
        if previous is not None:
            previous.cancel()
            # The replacement must not overlap a run that is still going
            cycle._task = previous._task
        self._cycles[key] = cycle
        cycle.start(start_delay)
        logger.debug("Registered %r", cycle)
        return cycle

    def get(self, owner: str, name: str) -> PollCycle | None:
        return self._cycles.get((owner, name))

    def cycles(self, owner: str | None = None) -> list[PollCycle]:
        return [c for (o, _), c in self._cycles.items() if owner is None or o == owner]

    async def run_now(self, owner: str, name: str) -> bool:
        cycle = self._cycles.get((owner, name))
        if cycle is None:
            raise KeyError(f"No poll cycle {owner}/{name}")
        return await cycle.run_now()

    def cancel(self, owner: str | None = None) -> int:
        """Cancel and forget the cycles of ``owner`` (all when None).

        Returns the number of pending timers that were cancelled.
        """
        cancelled = 0
        for key in [k for k in self._cycles if owner is None or k[0] == owner]:
            cycle = self._cycles.pop(key)
            cancelled += int(cycle.cancel())
            self._draining.append(cycle)
        self._draining = [c for c in self._draining if c.in_flight]
        return cancelled

    async def drain(self) -> None:
        """Wait for runs of cancelled cycles that were still in flight."""
        draining, self._draining = self._draining, []
        for cycle in draining:
            await cycle.drain()

    async def stop(self, owner: str | None = None) -> None:
        self.cancel(owner)
        await self.drain()

    def reschedule(
        self,
        owner: str,
        intervals: Mapping[str, float],
        start_delay: float | None = None,
    ) -> int:
        """Replace every cycle of ``owner`` with fresh timers at new intervals.

        Runs synchronously, so no run can be scheduled in between. Cycles
        without an entry in ``intervals`` keep their current interval. Returns
        the number of pending timers that were cancelled.
        """
        existing = self.cycles(owner)
        for interval in intervals.values():
            if interval <= 0:
                raise ValueError(f"Intervals must be positive, got {interval}")
        cancelled = 0
        for cycle in existing:
            cancelled += int(cycle.cancel())
            replacement = PollCycle(
                owner,
                cycle.name,
                intervals.get(cycle.name, cycle.interval),
                cycle.job,
                self.backoff_factor,
            )
            replacement._task = cycle._task
            self._cycles[(owner, cycle.name)] = replacement
            replacement.start(start_delay)
        logger.info("Rescheduled %d poll cycles for %s", len(existing), owner)
        return cancelled
