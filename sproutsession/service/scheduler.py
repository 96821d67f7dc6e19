from __future__ import annotations

import asyncio
import inspect
import itertools
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Set, Union

from sproutsession.logging import get_logger

logger = get_logger(__name__)

JobCallback = Callable[[], Union[None, Awaitable[None]]]


class Clock(Protocol):
    def now_ms(self) -> int: ...


class SystemClock:
    """Wall clock in epoch milliseconds."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self._now = int(start_ms)

    def now_ms(self) -> int:
        return self._now

    def advance(self, ms: int) -> int:
        if ms < 0:
            raise ValueError("clock cannot move backwards")
        self._now += int(ms)
        return self._now

    def set(self, now_ms: int) -> None:
        self._now = int(now_ms)


@dataclass
class ScheduledJob:
    name: str
    callback: JobCallback
    due_ms: int
    interval_ms: Optional[int] = None
    seq: int = 0
    runs: int = 0
    skipped: int = 0
    cancelled: bool = field(default=False)
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def in_flight(self) -> bool:
        return self.task is not None and not self.task.done()


class TickScheduler:
    """Single owner of every recurring and one-shot timer in a session.

    Each due job runs as its own asyncio task, so a job waiting on the network
    never delays the others. A job still running from its previous tick is
    skipped rather than stacked. A failing job is logged and keeps its
    schedule. ``advance`` drives the schedule deterministically against a
    ``ManualClock`` and waits for the jobs it started; ``run`` drives it from
    asyncio in production.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self.clock: Clock = clock or SystemClock()
        self.jobs: Dict[str, ScheduledJob] = {}
        self._seq = itertools.count()
        self._tasks: Set[asyncio.Task] = set()
        self.running = False
        self._wakeup: Optional[asyncio.Event] = None

    def every(self, name: str, interval_ms: int, callback: JobCallback) -> ScheduledJob:
        """Register (or replace) a recurring job first due one interval from now."""
        if interval_ms <= 0:
            raise ValueError("interval must be positive")
        job = ScheduledJob(
            name=name,
            callback=callback,
            due_ms=self.clock.now_ms() + interval_ms,
            interval_ms=interval_ms,
            seq=next(self._seq),
        )
        self._replace(job)
        return job

    def call_later(self, name: str, delay_ms: int, callback: JobCallback) -> ScheduledJob:
        """Register (or restart) a one-shot job."""
        job = ScheduledJob(
            name=name,
            callback=callback,
            due_ms=self.clock.now_ms() + max(0, delay_ms),
            seq=next(self._seq),
        )
        self._replace(job)
        return job

    def cancel(self, name: str) -> bool:
        job = self.jobs.pop(name, None)
        if job is None:
            return False
        job.cancelled = True
        return True

    def has_job(self, name: str) -> bool:
        return name in self.jobs

    def _replace(self, job: ScheduledJob) -> None:
        previous = self.jobs.get(job.name)
        if previous is not None:
            previous.cancelled = True
        self.jobs[job.name] = job
        if self._wakeup is not None:
            self._wakeup.set()

    def start(self) -> None:
        self.running = True
        logger.debug("scheduler_started", jobs=sorted(self.jobs))

    def stop(self) -> None:
        self.running = False
        if self._wakeup is not None:
            self._wakeup.set()
        logger.debug("scheduler_stopped")

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def next_due_ms(self) -> Optional[int]:
        if not self.jobs:
            return None
        return min(job.due_ms for job in self.jobs.values())

    def _pop_due(self, now_ms: int) -> Optional[ScheduledJob]:
        due = [job for job in self.jobs.values() if job.due_ms <= now_ms]
        if not due:
            return None
        return min(due, key=lambda j: (j.due_ms, j.seq))

    async def _invoke(self, job: ScheduledJob) -> None:
        try:
            result: Any = job.callback()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.error(
                "scheduled_job_failed",
                job=job.name,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def _collect(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "scheduled_task_crashed",
                task=task.get_name(),
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def _launch(self, job: ScheduledJob) -> bool:
        if job.in_flight:
            job.skipped += 1
            logger.debug("scheduled_job_still_running", job=job.name, skipped=job.skipped)
            return False
        job.runs += 1
        task = asyncio.get_running_loop().create_task(
            self._invoke(job), name=f"tick:{job.name}"
        )
        job.task = task
        self._tasks.add(task)
        task.add_done_callback(self._collect)
        return True

    def run_pending(self) -> int:
        """Start every job due at the current clock time; return how many started.

        Must be called from a running event loop. Jobs are not awaited here;
        see ``settle``.
        """
        if not self.running:
            return 0
        started = 0
        now = self.clock.now_ms()
        while self.running:
            job = self._pop_due(now)
            if job is None:
                break
            if job.interval_ms is None:
                self.jobs.pop(job.name, None)
            else:
                # Skip missed intervals rather than replaying a burst
                while job.due_ms <= now:
                    job.due_ms += job.interval_ms
            if self._launch(job):
                started += 1
        return started

    async def settle(self) -> None:
        """Wait until every job started so far has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_in_flight(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.debug("scheduled_jobs_cancelled", count=len(tasks))

    async def advance(self, ms: int) -> int:
        """Move a ``ManualClock`` forward, firing jobs at their due times.

        Jobs started at one due time finish before the clock moves on.
        """
        clock = self.clock
        if not isinstance(clock, ManualClock):
            raise TypeError("advance() requires a ManualClock")
        target = clock.now_ms() + ms
        fired = self.run_pending()
        await self.settle()
        while self.running:
            next_due = self.next_due_ms()
            if next_due is None or next_due > target:
                break
            clock.set(max(next_due, clock.now_ms()))
            fired += self.run_pending()
            await self.settle()
        clock.set(target)
        return fired

    async def run(self) -> None:
        """Drive the schedule from the event loop until ``stop`` is called."""
        self.start()
        self._wakeup = asyncio.Event()
        try:
            while self.running:
                self.run_pending()
                next_due = self.next_due_ms()
                timeout = None
                if next_due is not None:
                    timeout = max(0, next_due - self.clock.now_ms()) / 1000
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._wakeup = None
