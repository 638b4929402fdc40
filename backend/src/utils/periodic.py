"""
Periodic job runner.

Runs one job on a fixed cadence inside the asyncio loop until shutdown is
requested. A job is a plain function or a coroutine function; coroutine
jobs are awaited, so their waits yield to the rest of the loop.

A failing run is logged and counted; it never stops the loop. The job
functions (sweeps, reconciliation, escrow settlement) catch their own
per-aggregate errors and return a summary, so an exception reaching the
runner means something unexpected went wrong.
"""

import asyncio
import inspect
from datetime import datetime
from typing import Any, Callable, Optional

from backend.src.utils.logging_config import get_logger


logger = get_logger("jobs")


class PeriodicJobRunner:
    """
    Cron-style loop for one job.

    Attributes:
        name: Job name used in logs
        interval: Seconds between runs
        run_immediately: Run once on start instead of waiting a full interval
        runs: Completed runs
        failures: Runs that raised
        last_result: Return value of the last successful run
    """

    def __init__(
        self,
        name: str,
        job: Callable[[], Any],
        interval: float,
        run_immediately: bool = False,
    ):
        self.name = name
        self._job = job
        self.interval = interval
        self.run_immediately = run_immediately
        self._shutdown_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.runs = 0
        self.failures = 0
        self.last_result: Any = None
        self.last_run_at: Optional[datetime] = None

    async def run(self) -> None:
        """Run the job every ``interval`` seconds until shutdown."""
        logger.info(f"Starting periodic job {self.name} (interval: {self.interval}s)")

        try:
            if not self.run_immediately:
                await self._wait_for_next_run()

            while not self._shutdown_event.is_set():
                await self.run_once()
                await self._wait_for_next_run()

        except asyncio.CancelledError:
            logger.info(f"Periodic job {self.name} cancelled")
            raise

        logger.info(f"Periodic job {self.name} stopped")

    async def run_once(self) -> Any:
        """Run the job a single time, logging instead of raising on failure."""
        self.last_run_at = datetime.utcnow()
        try:
            result = self._job()
            if inspect.isawaitable(result):
                result = await result
            self.runs += 1
            self.last_result = result
            return result
        except Exception as e:
            self.failures += 1
            logger.error(
                f"Periodic job {self.name} failed: {e} "
                f"({self.failures} failure(s) so far)",
                exc_info=True
            )
            return None

    async def _wait_for_next_run(self) -> None:
        """Wait for the next interval or the shutdown signal."""
        try:
            await asyncio.wait_for(
                self._shutdown_event.wait(),
                timeout=self.interval,
            )
        except asyncio.TimeoutError:
            pass

    def start(self) -> asyncio.Task:
        """Start the loop as a task on the running event loop."""
        if self._task is None or self._task.done():
            self._shutdown_event.clear()
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def stop(self) -> None:
        """Request shutdown and wait for the loop to exit."""
        self._shutdown_event.set()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()
