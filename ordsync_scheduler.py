from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator

import structlog

logger = structlog.get_logger()


class CycleGuard:
    """Non-blocking "one cycle at a time" flag.

    `acquire()` yields False when a cycle is already running, so an overlapping
    tick is dropped instead of queued.
    """

    def __init__(self, name: str):
        self.name = name
        self.running = False

    @contextmanager
    def acquire(self) -> Iterator[bool]:
        if self.running:
            logger.debug("Cycle already running, skipping tick", cycle=self.name)
            yield False
            return
        self.running = True
        try:
            yield True
        finally:
            self.running = False


@dataclass
class Job:
    name: str
    interval: float
    fn: Callable[[], Awaitable[Any]]
    run_on_start: bool = True
    runs: int = 0
    failures: int = 0
    _tasks: set[asyncio.Task[Any]] = field(default_factory=set)


class Scheduler:
    """Fires each job every `interval` seconds.

    Ticks are spawned as tasks so a slow cycle never delays the timer; the
    job's own CycleGuard decides whether an overlapping tick does any work.
    """

    def __init__(self) -> None:
        self.jobs: list[Job] = []
        self._stop = asyncio.Event()

    def add_job(self, name: str, interval: float, fn: Callable[[], Awaitable[Any]], run_on_start: bool = True) -> Job:
        job = Job(name=name, interval=interval, fn=fn, run_on_start=run_on_start)
        self.jobs.append(job)
        return job

    async def _tick(self, job: Job) -> None:
        job.runs += 1
        try:
            result = await job.fn()
            if result is not None:
                logger.info("Job finished", job=job.name, result=_summary(result))
        except Exception:
            job.failures += 1
            logger.exception("Job failed", job=job.name)

    async def _loop(self, job: Job) -> None:
        if not job.run_on_start:
            if await self._wait(job.interval):
                return
        while not self._stop.is_set():
            task = asyncio.ensure_future(self._tick(job))
            job._tasks.add(task)
            task.add_done_callback(job._tasks.discard)
            if await self._wait(job.interval):
                break

    async def _wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def run_forever(self) -> None:
        logger.info("Scheduler started", jobs=[(j.name, j.interval) for j in self.jobs])
        await asyncio.gather(*(self._loop(j) for j in self.jobs))
        pending = [t for j in self.jobs for t in j._tasks]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Scheduler stopped")

    def stop(self) -> None:
        self._stop.set()


def _summary(result: Any) -> Any:
    dump = getattr(result, "model_dump", None)
    return dump() if callable(dump) else result
