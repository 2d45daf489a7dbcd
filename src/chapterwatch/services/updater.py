"""The chapter update cycle.

One cycle selects the stale sources, walks them in fixed-size batches and,
per source, reserves a throttle slot, fetches the novel page, extracts its
facts and applies the update policy. Failures of a single source are
recorded and skipped; an origin block aborts the rest of the cycle; anything
escaping the per-source boundary fails the cycle. Whatever happens, the
cycle guard is cleared and the fetch engine released on the way out.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Callable, Iterator, List, Optional, Protocol, Sequence, TypeVar

from chapterwatch.config import CheckerConfig
from chapterwatch.errors import (
    ChapterWatchError,
    CycleInProgress,
    OriginBlocked,
    ParseFailure,
    SourceNotFound,
)
from chapterwatch.models import (
    CycleOutcome,
    CycleStatus,
    ErrorKind,
    PageFacts,
    Source,
    SourceCheckResult,
    UpdateDecision,
)
from chapterwatch.services.engines import build_launcher
from chapterwatch.services.extractor import PageFactExtractor
from chapterwatch.services.fetcher import PageFetcher
from chapterwatch.services.notifier import SubscriberNotifier
from chapterwatch.services.resources import FetchResourceManager
from chapterwatch.services.telemetry import ErrorLog
from chapterwatch.services.throttle import RequestThrottle
from chapterwatch.storage import SourceStore

__all__ = ["ChapterUpdater", "chunked", "decide_update"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PageSource(Protocol):
    async def fetch(self, url: str) -> str: ...


class Notifier(Protocol):
    def notify(
        self,
        source_id: str,
        old_chapter: Optional[int],
        new_chapter: int,
        chapter_title: Optional[str],
    ) -> int: ...


def decide_update(previous: Optional[int], facts: PageFacts) -> UpdateDecision:
    """Classify an extracted chapter number against the stored one.

    A number lower than or equal to the stored one never advances the source.
    """

    if facts.chapter_num is None:
        return UpdateDecision.PARSE_FAILED
    if previous is not None and facts.chapter_num <= previous:
        return UpdateDecision.NO_CHANGE
    return UpdateDecision.ADVANCED


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


class ChapterUpdater:
    """Single-flight update cycle and the manual triggers around it."""

    def __init__(
        self,
        store: SourceStore,
        fetcher: PageSource,
        *,
        throttle: RequestThrottle,
        resources: FetchResourceManager,
        config: CheckerConfig | None = None,
        notifier: Notifier | None = None,
        extractor: PageFactExtractor | None = None,
        errors: ErrorLog | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or CheckerConfig()
        self._store = store
        self._fetcher = fetcher
        self._throttle = throttle
        self._resources = resources
        self._notifier = notifier or SubscriberNotifier(store)
        self._extractor = extractor or PageFactExtractor()
        self.errors = errors or ErrorLog(self.config.max_errors, self.config.retain_errors)
        self._clock = clock or (lambda: datetime.now(UTC))

        self._status = CycleStatus()
        self._busy = False
        self._stop_requested = False
        self._wake: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

    @classmethod
    def from_config(cls, config: CheckerConfig, store: SourceStore) -> "ChapterUpdater":
        """Wire the throttle, fetch engine and fetcher described by ``config``."""

        throttle = RequestThrottle.from_config(config)
        resources = FetchResourceManager(build_launcher(config))
        fetcher = PageFetcher(resources, throttle, timeout=config.fetch_timeout_seconds)
        return cls(store, fetcher, throttle=throttle, resources=resources, config=config)

    # --- status ---

    @property
    def running(self) -> bool:
        return self._status.running

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    @property
    def current_task(self) -> asyncio.Task | None:
        """The task started by the most recent :meth:`trigger_cycle`, if any."""

        return self._task

    def get_status(self) -> CycleStatus:
        """Return a snapshot of the cycle status."""

        status = self._status.model_copy()
        status.errors = self.errors.entries()
        status.stop_requested = self._stop_requested
        remaining = self._throttle.seconds_remaining()
        status.blocked_until = (
            self._clock() + timedelta(seconds=remaining) if remaining > 0 else None
        )
        return status

    # --- cycle ---

    async def run_cycle(self) -> bool:
        """Run one full cycle. Returns ``False`` when another cycle holds the guard."""

        if self._busy:
            logger.info("Update cycle already in progress; trigger ignored")
            return False

        self._busy = True
        self._wake = asyncio.Event()
        if self._stop_requested:
            self._wake.set()

        status = self._status
        status.running = True
        status.last_run_started_at = self._clock()
        status.checked = 0
        status.updated = 0

        outcome = CycleOutcome.FAILED
        succeeded = False
        logger.info("Starting chapter update cycle")
        try:
            outcome = await self._run_batches()
            succeeded = True
        except Exception as exc:
            logger.exception("Error in update cycle")
            self.errors.record(ErrorKind.FATAL, str(exc) or exc.__class__.__name__)
        finally:
            await self._resources.release()
            finished = self._clock()
            status.running = False
            status.last_run_succeeded = succeeded
            status.last_run_outcome = outcome
            status.last_run_finished_at = finished
            status.next_run_at = finished + timedelta(seconds=self.config.check_interval_seconds)
            self._wake = None
            self._busy = False

        logger.info(
            "Update cycle %s: %d checked, %d updated",
            outcome.value,
            status.checked,
            status.updated,
        )
        return True

    async def _run_batches(self) -> CycleOutcome:
        sources = self._store.list_stale_sources(
            self.config.stale_threshold_hours, self.config.max_sources_per_cycle
        )
        if not sources:
            logger.info("All sources up to date")
            return CycleOutcome.COMPLETED

        logger.info("Found %d sources needing a check", len(sources))
        for index, batch in enumerate(chunked(sources, self.config.batch_size)):
            if index > 0:
                await self._pause(self.config.batch_interval_seconds)

            for source in batch:
                if self._stop_requested:
                    logger.info("Stop requested; ending cycle early")
                    return CycleOutcome.STOPPED

                self._status.checked += 1
                try:
                    result = await self._check(source)
                except OriginBlocked as exc:
                    self.errors.record(exc.kind, str(exc), source_id=source.id)
                    logger.warning("Origin is blocking requests; aborting cycle: %s", exc)
                    return CycleOutcome.BLOCKED
                except ChapterWatchError as exc:
                    self.errors.record(exc.kind, str(exc), source_id=source.id)
                    logger.warning("Skipping %s: %s", source.id, exc)
                    continue
                except Exception as exc:  # noqa: BLE001 - one source must not sink the cycle
                    self.errors.record(ErrorKind.INTERNAL, repr(exc), source_id=source.id)
                    logger.exception("Unexpected error while checking %s", source.id)
                    continue

                if result.is_new:
                    self._status.updated += 1

        return CycleOutcome.COMPLETED

    async def _pause(self, seconds: float) -> None:
        """Sleep between batches; returns early when a stop is requested."""

        if seconds <= 0 or self._wake is None:
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except TimeoutError:
            pass

    # --- per source ---

    async def _check(self, source: Source) -> SourceCheckResult:
        logger.info(
            "Checking %s (Ch.%s, %d readers, last check %s)",
            source.id,
            source.latest_chapter_num if source.latest_chapter_num is not None else "?",
            source.active_reader_count,
            source.last_checked_at.isoformat() if source.last_checked_at else "never",
        )
        await self._throttle.reserve_slot()
        html = await self._fetcher.fetch(source.url)
        facts = self._extractor.extract(html)
        return self._apply(source, facts)

    def _apply(self, source: Source, facts: PageFacts) -> SourceCheckResult:
        previous = source.latest_chapter_num
        decision = decide_update(previous, facts)

        if decision is UpdateDecision.PARSE_FAILED:
            raise ParseFailure(f"Could not parse chapter from {source.url}")

        if decision is UpdateDecision.NO_CHANGE:
            self._store.refresh_metadata(
                source.id, facts.genre, facts.author, facts.update_time_raw, facts.update_time
            )
            logger.info("%s: no new chapters (still at Ch.%d)", source.id, previous)
            return SourceCheckResult(
                source_id=source.id,
                decision=decision,
                previous=previous,
                current=previous,
                title=source.latest_chapter_title,
                genres=facts.genres,
                author=facts.author or source.author,
            )

        updated = self._store.advance_chapter(
            source.id,
            facts.chapter_num,
            facts.chapter_title,
            facts.genre,
            facts.author,
            facts.update_time_raw,
            facts.update_time,
        )
        logger.info(
            "%s: updated Ch.%s -> Ch.%s",
            source.id,
            previous if previous is not None else "?",
            updated.latest_chapter_num,
        )

        notified = 0
        try:
            notified = self._notifier.notify(
                source.id, previous, updated.latest_chapter_num, updated.latest_chapter_title
            )
        except ChapterWatchError as exc:
            self.errors.record(exc.kind, f"Notification failed: {exc}", source_id=source.id)
            logger.warning("Could not notify readers of %s: %s", source.id, exc)

        return SourceCheckResult(
            source_id=source.id,
            decision=decision,
            previous=previous,
            current=updated.latest_chapter_num,
            title=updated.latest_chapter_title,
            genres=facts.genres,
            author=updated.author,
            notified=notified,
        )

    # --- triggers ---

    def trigger_cycle(self) -> bool:
        """Start a cycle in the background. Returns ``False`` when one is already running."""

        if self._busy or (self._task is not None and not self._task.done()):
            logger.info("Update cycle already in progress; trigger ignored")
            return False
        self._task = asyncio.get_running_loop().create_task(self.run_cycle())
        return True

    async def check_source(self, source_id: str) -> SourceCheckResult:
        """Check one source now, skipping the staleness filter and batching.

        Raises :class:`CycleInProgress` while a cycle holds the guard and
        :class:`SourceNotFound` for unknown ids; check failures are recorded
        in the error log and re-raised.
        """

        if self._busy:
            raise CycleInProgress("An update cycle is in progress; try again when it finishes")

        source = self._store.get_source(source_id)
        if source is None:
            raise SourceNotFound(f"Unknown source: {source_id}")

        self._busy = True
        try:
            result = await self._check(source)
        except ChapterWatchError as exc:
            self.errors.record(exc.kind, str(exc), source_id=source_id)
            raise
        finally:
            await self._resources.release()
            self._busy = False
        return result

    def force_stale_all(self) -> tuple[int, bool]:
        """Mark every source stale and trigger a cycle.

        Returns the number of sources reset and whether a cycle was started.
        """

        count = self._store.clear_last_checked()
        logger.info("Marked %d sources stale", count)
        return count, self.trigger_cycle()

    # --- shutdown ---

    def request_stop(self) -> None:
        """Ask the running cycle to finish its current source and return."""

        self._stop_requested = True
        if self._wake is not None:
            self._wake.set()

    def clear_stop(self) -> None:
        self._stop_requested = False

    async def close(self) -> None:
        """Release the fetch engine."""

        await self._resources.release()
