"""Periodic job scheduling for the watcher.

Each job runs on its own asyncio loop. Before every invocation the job
sleeps a random jitter so workers sharing a cadence do not hit the store at
the same instant.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


async def random_delay(max_jitter: float) -> None:
    if max_jitter > 0:
        await asyncio.sleep(random.uniform(0, max_jitter))


class PeriodicJob:
    """One named job. Never runs two invocations at once."""

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[None]],
        max_jitter: float = 10.0,
    ):
        self.name = name
        self.interval = interval
        self.func = func
        self.max_jitter = max_jitter
        self.runs = 0
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def run_once(self) -> bool:
        """Jitter, then invoke. Returns False if an invocation was already in flight."""
        if self._lock.locked():
            logger.warning("Job %s still running, skipping this tick", self.name)
            return False
        async with self._lock:
            await random_delay(self.max_jitter)
            try:
                await self.func()
            except Exception:
                logger.exception("Error in job %s", self.name)
            self.runs += 1
        return True

    async def loop(self, stopped: asyncio.Event) -> None:
        logger.info("%s loop started (every %ss)", self.name, self.interval)
        while not stopped.is_set():
            await self.run_once()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stopped.wait(), timeout=self.interval)
        logger.info("%s loop ended", self.name)


class Scheduler:
    """Owns the periodic jobs of one worker process."""

    def __init__(self) -> None:
        self.jobs: dict[str, PeriodicJob] = {}
        self._stopped = asyncio.Event()
        self._loops: list[asyncio.Task[None]] = []

    def add_job(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[None]],
        max_jitter: float = 10.0,
    ) -> PeriodicJob:
        job = PeriodicJob(name, interval, func, max_jitter=max_jitter)
        self.jobs[name] = job
        return job

    @property
    def started(self) -> bool:
        return bool(self._loops)

    def start(self) -> None:
        if self._loops:
            return
        self._stopped.clear()
        for job in self.jobs.values():
            self._loops.append(asyncio.create_task(job.loop(self._stopped), name=job.name))

    async def stop(self) -> None:
        """Stop every loop, letting in-flight invocations be cancelled."""
        self._stopped.set()
        for loop in self._loops:
            loop.cancel()
        if self._loops:
            await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops.clear()
