"""Background loop that runs the update cycle on a fixed interval."""

from __future__ import annotations

import asyncio
import logging

from chapterwatch.services.updater import ChapterUpdater

__all__ = ["CheckScheduler"]

logger = logging.getLogger(__name__)


class CheckScheduler:
    """Run a cycle immediately, then every ``check_interval_seconds``."""

    def __init__(self, updater: ChapterUpdater) -> None:
        self.updater = updater
        self.config = updater.config
        self.task: asyncio.Task | None = None
        self._stopping: asyncio.Event | None = None

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    def start(self) -> None:
        if self.running:
            logger.warning("Scheduler already running")
            return

        logger.info(
            "Chapter update scheduler starting (interval %.0fs, batch size %d, "
            "request gap %.1fs, stale after %.0fh)",
            self.config.check_interval_seconds,
            self.config.batch_size,
            self.config.min_request_gap_seconds,
            self.config.stale_threshold_hours,
        )
        self.updater.clear_stop()
        self._stopping = asyncio.Event()
        self.task = asyncio.create_task(self._run_loop())

    async def _run_loop(self) -> None:
        assert self._stopping is not None
        while not self._stopping.is_set():
            try:
                await self.updater.run_cycle()
            except Exception:  # noqa: BLE001 - keep the loop alive; the cycle records its own failure
                logger.exception("Update cycle crashed")

            try:
                await asyncio.wait_for(
                    self._stopping.wait(), timeout=self.config.check_interval_seconds
                )
            except TimeoutError:
                continue

    async def stop(self) -> None:
        """Ask the in-flight cycle to wind down, wait a bounded time, then cancel."""

        if self._stopping is not None:
            self._stopping.set()
        self.updater.request_stop()

        pending = [task for task in (self.task, self.updater.current_task) if task and not task.done()]
        if pending:
            wait = self.config.graceful_shutdown_wait_seconds
            _, still_running = await asyncio.wait(pending, timeout=wait)
            for task in still_running:
                logger.warning("Update cycle did not stop within %.0fs; cancelling", wait)
                task.cancel()
            for task in still_running:
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        await self.updater.close()
        self.task = None
        logger.info("Chapter update scheduler stopped")
