"""IntervalBatchRunner: run a batch coroutine on a fixed interval.

One run happens immediately on start(), then one per interval. At most one
batch is ever in flight; a tick that arrives while a batch is still running
is skipped. Batch exceptions are logged and counted but never propagate,
so a failing batch cannot kill the background loop.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

import structlog

from src.crm.core.monitoring import record_batch

logger = structlog.get_logger(__name__)

BatchFn = Callable[[], Awaitable[int]]


class IntervalBatchRunner:
    """Drive ``run_batch`` every ``interval_seconds`` without overlapping runs.

    Args:
        name: Runner name used in logs and metric labels.
        run_batch: Coroutine function returning the number of items processed.
        interval_seconds: Delay between the end of one tick and the next.
    """

    def __init__(self, name: str, run_batch: BatchFn, interval_seconds: float) -> None:
        self.name = name
        self._run_batch = run_batch
        self._interval = interval_seconds
        self._loop_task: asyncio.Task | None = None
        self._in_flight: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None

    def start(self) -> None:
        """Start the background loop. No-op when already running."""
        if self.running:
            return
        self._loop_task = asyncio.get_running_loop().create_task(
            self._loop(), name=f"batch_runner_{self.name}"
        )
        logger.info("batch_runner.started", runner=self.name, interval_seconds=self._interval)

    def stop(self) -> None:
        """Cancel the timer. A batch already in flight is left to finish."""
        if self._loop_task is None:
            return
        self._loop_task.cancel()
        self._loop_task = None
        logger.info("batch_runner.stopped", runner=self.name)

    async def wait_idle(self) -> None:
        """Wait for the in-flight batch, if any, to finish."""
        task = self._in_flight
        if task is not None:
            await asyncio.wait({task})

    async def tick(self) -> int:
        """Run one batch unless one is already in flight.

        Returns the number of items processed; 0 when skipped or failed.
        """
        if self._in_flight is not None:
            record_batch(self.name, "skipped")
            logger.debug("batch_runner.tick_skipped", runner=self.name)
            return 0

        task = asyncio.get_running_loop().create_task(self._run_once())
        self._in_flight = task
        task.add_done_callback(self._clear_in_flight)
        # Shielded so cancelling the timer never interrupts a running batch
        return await asyncio.shield(task)

    def _clear_in_flight(self, task: asyncio.Task) -> None:
        if self._in_flight is task:
            self._in_flight = None

    async def _run_once(self) -> int:
        started = time.perf_counter()
        try:
            processed = await self._run_batch()
        except Exception:
            duration = time.perf_counter() - started
            record_batch(self.name, "error", duration=duration)
            logger.error("batch_runner.batch_failed", runner=self.name, exc_info=True)
            return 0

        duration = time.perf_counter() - started
        processed = processed or 0
        record_batch(self.name, "ok", processed=processed, duration=duration)
        if processed:
            logger.info(
                "batch_runner.batch_completed",
                runner=self.name,
                processed=processed,
                duration_ms=round(duration * 1000, 2),
            )
        return processed

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick()
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                logger.debug("batch_runner.loop_cancelled", runner=self.name)
                break
