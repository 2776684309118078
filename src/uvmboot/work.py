"""Bounded fan-out of boot jobs over a fixed pool of workers.

One producer hands jobs to ``parallel`` worker tasks through an unbuffered
queue: a send completes only when a worker has taken the job. When the
producer closes the queue, each worker sees the drain signal, reports to the
completion barrier, and exits.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Job:
    index: int

    @property
    def vm_id(self) -> str:
        return f"uvmboot-{self.index}"


BootFn = Callable[[Job], Awaitable[None]]


class QueueClosedError(RuntimeError):
    """A job was sent after the queue was closed."""


class WorkQueue:
    """Unbuffered FIFO hand-off from a single producer to many consumers."""

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._slot: Job | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def put(self, job: Job) -> None:
        """Offer ``job`` and wait until a consumer has taken it."""
        async with self._cond:
            if self._closed:
                raise QueueClosedError(f"queue closed, cannot send job {job.index}")
            await self._cond.wait_for(lambda: self._slot is None)
            self._slot = job
            self._cond.notify_all()
            await self._cond.wait_for(lambda: self._slot is not job)

    async def get(self) -> Job | None:
        """Take the next job. Returns None once the queue is closed and empty."""
        async with self._cond:
            await self._cond.wait_for(lambda: self._slot is not None or self._closed)
            job = self._slot
            if job is None:
                return None
            self._slot = None
            self._cond.notify_all()
            return job

    async def close(self) -> None:
        async with self._cond:
            self._closed = True
            self._cond.notify_all()


class CompletionBarrier:
    """Counts worker exits; wait() returns once ``expected`` have been seen."""

    def __init__(self, expected: int) -> None:
        if expected < 0:
            raise ValueError("expected must not be negative")
        self._expected = expected
        self._done = 0
        self._cond = asyncio.Condition()

    @property
    def remaining(self) -> int:
        return self._expected - self._done

    async def done(self) -> None:
        async with self._cond:
            if self._done >= self._expected:
                raise RuntimeError("completion barrier signalled more times than expected")
            self._done += 1
            self._cond.notify_all()

    async def wait(self) -> None:
        async with self._cond:
            await self._cond.wait_for(lambda: self._done >= self._expected)


async def distribute(count: int, queue: WorkQueue) -> None:
    """Send jobs 0..count-1 in ascending order, then close the queue."""
    try:
        for i in range(count):
            await queue.put(Job(i))
    finally:
        await queue.close()


async def _worker(
    worker_id: int,
    queue: WorkQueue,
    boot_fn: BootFn,
    barrier: CompletionBarrier,
    log: logging.Logger,
    on_error: Callable[[Job, Exception], None] | None,
) -> None:
    try:
        while True:
            job = await queue.get()
            if job is None:
                log.debug("Worker %d drained", worker_id)
                return
            try:
                await boot_fn(job)
            except Exception as exc:
                job_log = logging.LoggerAdapter(log, {"uvm_id": job.vm_id})
                job_log.error("uvm-id=%s: %s", job.vm_id, exc)
                if on_error is not None:
                    on_error(job, exc)
    finally:
        await barrier.done()


def spawn_workers(
    n: int,
    queue: WorkQueue,
    boot_fn: BootFn,
    barrier: CompletionBarrier,
    log: logging.Logger | None = None,
    on_error: Callable[[Job, Exception], None] | None = None,
) -> list[asyncio.Task]:
    """Start ``n`` workers draining ``queue``.

    A job that raises is logged with its VM ID and the worker moves on to the
    next job; nothing a job does stops its siblings.
    """
    log = log or logger
    return [
        asyncio.create_task(_worker(i, queue, boot_fn, barrier, log, on_error), name=f"uvmboot-worker-{i}")
        for i in range(n)
    ]
