"""
Periodic trigger for sync runs.

Fires SyncOrchestrator.run_once on a fixed period. Tick times are anchored
to the scheduler's start so slow runs do not make the cadence drift; a tick
that arrives while the previous run is still going is skipped and logged,
never queued behind it.
"""

import asyncio
from typing import Any, Dict, Optional

import structlog

from ledgersync.sync.orchestrator import SyncOrchestrator

logger = structlog.get_logger()


class SyncScheduler:
    """Repeating timer task around a SyncOrchestrator."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        interval_seconds: float = 60,
        run_on_startup: bool = False,
    ):
        """
        Args:
            orchestrator: Orchestrator to trigger
            interval_seconds: Period between ticks
            run_on_startup: Fire the first tick immediately instead of after one period
        """
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self.run_on_startup = run_on_startup

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._current_run: Optional[asyncio.Task] = None

        self.ticks = 0
        self.skipped_ticks = 0
        self.missed_ticks = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the timer loop in the background."""
        if self._running:
            logger.warning("scheduler.already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._timer_loop())
        logger.info(
            "scheduler.started",
            interval_seconds=self.interval_seconds,
            run_on_startup=self.run_on_startup,
        )

    async def stop(self) -> None:
        """Stop ticking and wait for an in-progress run to finish."""
        if not self._running:
            logger.debug("scheduler.not_running")
            return

        self._running = False
        logger.info("scheduler.stopping")

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._current_run and not self._current_run.done():
            # No mid-run cancellation: a run either finishes or leaves the watermark alone
            await asyncio.gather(self._current_run, return_exceptions=True)

        logger.info("scheduler.stopped", ticks=self.ticks, skipped=self.skipped_ticks)

    def tick(self) -> bool:
        """
        Fire one tick.

        Returns:
            True if a run was started, False if the tick was skipped
        """
        self.ticks += 1
        if self._current_run is not None and not self._current_run.done():
            self.skipped_ticks += 1
            logger.info("scheduler.tick_skipped", reason="previous_run_in_progress", tick=self.ticks)
            return False

        self._current_run = asyncio.create_task(self._run_guarded())
        return True

    async def _run_guarded(self) -> Optional[Dict[str, Any]]:
        try:
            return await self.orchestrator.run_once()
        except Exception as e:
            logger.error(
                "scheduler.run_error",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return None

    async def _timer_loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time() if self.run_on_startup else loop.time() + self.interval_seconds

        while self._running:
            try:
                await asyncio.sleep(max(0.0, next_tick - loop.time()))
                self.tick()

                next_tick += self.interval_seconds
                now = loop.time()
                if next_tick <= now:
                    # The loop was blocked past one or more ticks; drop them
                    missed = int((now - next_tick) // self.interval_seconds) + 1
                    self.missed_ticks += missed
                    next_tick += missed * self.interval_seconds
                    logger.warning("scheduler.ticks_missed", missed=missed)
            except asyncio.CancelledError:
                break

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "interval_seconds": self.interval_seconds,
            "run_in_progress": self._current_run is not None and not self._current_run.done(),
            "ticks": self.ticks,
            "skipped_ticks": self.skipped_ticks,
            "missed_ticks": self.missed_ticks,
        }
