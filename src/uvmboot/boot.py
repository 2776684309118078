"""Boot orchestrator: run ``count`` VM boot trials on ``parallel`` workers.

Flow for one run:
    1. Start ``parallel`` workers on a shared work queue
    2. Start the stopwatch (if measuring) and send job indices 0..count-1
    3. Each worker runs the boot sequence for every job it receives
    4. Close the queue and wait for every worker to drain
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from uvmboot.config import BootConfiguration, validate_run
from uvmboot.vm.runtime import TerminationSignal, VMRuntime
from uvmboot.work import CompletionBarrier, Job, WorkQueue, distribute, spawn_workers

logger = logging.getLogger(__name__)

# A boot trial is over when the guest shuts itself down.
EXPECTED_TERMINATION = TerminationSignal.GUEST_EXIT


@dataclass
class RunResult:
    attempted: int = 0
    failed: list[tuple[str, Exception]] = field(default_factory=list)
    elapsed: float | None = None  # seconds; None unless measured

    @property
    def succeeded(self) -> int:
        return self.attempted - len(self.failed)


class Stopwatch:
    def __init__(self) -> None:
        self._start: float | None = None
        self._stop: float | None = None

    def start(self) -> None:
        self._start = time.monotonic()
        self._stop = None

    def stop(self) -> float:
        if self._start is None:
            raise RuntimeError("stopwatch was never started")
        self._stop = time.monotonic()
        return self.elapsed

    @property
    def elapsed(self) -> float:
        if self._start is None:
            return 0.0
        end = self._stop if self._stop is not None else time.monotonic()
        return end - self._start


class BootOrchestrator:
    """Drives boot trials against a VM runtime with a fixed concurrency cap."""

    def __init__(
        self,
        runtime: VMRuntime,
        template: BootConfiguration,
        parallel: int = 1,
        measure: bool = False,
        log: logging.Logger | None = None,
        signal: TerminationSignal = EXPECTED_TERMINATION,
    ) -> None:
        self.runtime = runtime
        self.template = template
        self.parallel = parallel
        self.measure = measure
        self.signal = signal
        self.log = log or logger

    async def boot(self, job: Job) -> None:
        """Create, start and wait for one VM; the handle is closed on every path."""
        config = self.template.for_vm(job.vm_id)
        handle = await self.runtime.create(config)
        async with handle:
            await handle.start()
            await handle.wait_for_expected_termination(self.signal)
        self.log.debug("VM %s terminated as expected", job.vm_id)

    async def run(self, count: int) -> RunResult:
        """Boot ``count`` VMs, at most ``parallel`` at a time.

        Per-job failures are logged and collected in the result; they never
        abort the run.
        """
        validate_run(count, self.parallel)

        result = RunResult()
        queue = WorkQueue()
        barrier = CompletionBarrier(self.parallel)

        async def boot_counted(job: Job) -> None:
            result.attempted += 1
            await self.boot(job)

        def record_failure(job: Job, exc: Exception) -> None:
            result.failed.append((job.vm_id, exc))

        workers = spawn_workers(
            self.parallel,
            queue,
            boot_counted,
            barrier,
            log=self.log,
            on_error=record_failure,
        )

        stopwatch = Stopwatch()
        if self.measure:
            stopwatch.start()

        await distribute(count, queue)
        await barrier.wait()
        await asyncio.gather(*workers)

        if self.measure:
            result.elapsed = stopwatch.stop()

        if result.failed:
            self.log.warning("%d of %d boots failed", len(result.failed), result.attempted)
        else:
            self.log.info("%d boots completed", result.attempted)
        return result
