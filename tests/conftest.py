from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Dict, List, Optional

import pytest

from chapterwatch.config import CheckerConfig
from chapterwatch.errors import StorageFailure
from chapterwatch.models import Source
from chapterwatch.services.fetcher import PageFetcher
from chapterwatch.services.resources import FetchedPage, FetchResourceManager
from chapterwatch.services.throttle import RequestThrottle
from chapterwatch.services.updater import ChapterUpdater


class FakeClock:
    """Epoch clock for the throttle; ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeHandle:
    def __init__(self, engine: "FakeEngine") -> None:
        self.engine = engine
        self.alive = True
        self.closed = False

    def is_alive(self) -> bool:
        return self.alive and not self.closed

    async def fetch(self, url: str, timeout: float) -> FetchedPage:
        self.engine.requests.append(url)
        if self.engine.gate is not None:
            await self.engine.gate.wait()

        page = self.engine.pages.get(url)
        if isinstance(page, BaseException):
            raise page
        if page is None:
            return FetchedPage(url=url, status=404)
        if isinstance(page, int):
            return FetchedPage(url=url, status=page)
        return FetchedPage(url=url, status=200, html=page)

    async def close(self) -> None:
        self.closed = True


class FakeEngine:
    """Serves canned pages by URL: HTML strings, status codes or exceptions."""

    def __init__(self) -> None:
        self.pages: Dict[str, object] = {}
        self.requests: List[str] = []
        self.handles: List[FakeHandle] = []
        self.gate: Optional[asyncio.Event] = None

    async def launch(self) -> FakeHandle:
        handle = FakeHandle(self)
        self.handles.append(handle)
        return handle


class FakeStore:
    """In-memory store with the same merge rules as the SQLite one."""

    def __init__(self, sources=()) -> None:
        self.sources: Dict[str, Source] = {source.id: source for source in sources}
        self.fail_on: set[str] = set()
        self.notifications: List[tuple] = []

    def add(self, source: Source) -> None:
        self.sources[source.id] = source

    def list_stale_sources(self, stale_threshold_hours, limit=None):
        stale = [
            source
            for source in self.sources.values()
            if source.last_checked_at is None and source.active_reader_count > 0
        ]
        stale.sort(key=lambda source: -source.active_reader_count)
        return [source.model_copy() for source in stale[:limit]]

    def get_source(self, source_id):
        source = self.sources.get(source_id)
        return source.model_copy() if source else None

    def advance_chapter(
        self,
        source_id,
        chapter_num,
        chapter_title,
        genre=None,
        author=None,
        update_time_raw=None,
        update_time=None,
    ):
        source = self._writable(source_id)
        if source.latest_chapter_num is None or chapter_num > source.latest_chapter_num:
            source.latest_chapter_num = chapter_num
            source.latest_chapter_title = chapter_title
        self._merge(source, genre, author, update_time_raw, update_time)
        return source.model_copy()

    def refresh_metadata(
        self, source_id, genre=None, author=None, update_time_raw=None, update_time=None
    ):
        source = self._writable(source_id)
        self._merge(source, genre, author, update_time_raw, update_time)
        return source.model_copy()

    def notify_subscribers(self, source_id, old_chapter, new_chapter, chapter_title):
        self.notifications.append((source_id, old_chapter, new_chapter, chapter_title))
        return self.sources[source_id].active_reader_count

    def clear_last_checked(self):
        count = 0
        for source in self.sources.values():
            if source.last_checked_at is not None:
                source.last_checked_at = None
                count += 1
        return count

    def _writable(self, source_id) -> Source:
        if source_id in self.fail_on:
            raise StorageFailure(f"Failed to update {source_id}: database is locked")
        return self.sources[source_id]

    @staticmethod
    def _merge(source, genre, author, update_time_raw, update_time) -> None:
        source.genre = genre or source.genre
        source.author = author or source.author
        source.origin_update_time_raw = update_time_raw or source.origin_update_time_raw
        source.origin_update_time = update_time or source.origin_update_time
        source.last_checked_at = datetime.now(UTC)


def make_source(source_id: str, chapter: Optional[int] = None, readers: int = 1, **fields) -> Source:
    return Source(
        id=source_id,
        url=f"https://novels.example/{source_id}",
        latest_chapter_num=chapter,
        active_reader_count=readers,
        **fields,
    )


def novel_page(
    chapter: Optional[int],
    title: str = "",
    *,
    author: Optional[str] = None,
    genres: str = "",
    updated: str = "2 hours ago",
) -> str:
    head = ""
    if author:
        head += f'<meta property="og:novel:author" content="{author}"/>'
    if genres:
        head += f'<meta property="og:novel:genre" content="{genres}"/>'
    body = "<p>No chapters yet.</p>"
    if chapter is not None:
        heading = f"Chapter {chapter}: {title}" if title else f"Chapter {chapter}"
        body = (
            '<div class="l-chapter">'
            f'<a href="/novel/chapter-{chapter}">{heading}</a>'
            f'<span class="item-time">{updated}</span>'
            "</div>"
        )
    return f"<html><head>{head}</head><body>{body}</body></html>"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def make_updater(store, engine, clock):
    """Build an updater over the fakes; keyword arguments override config fields."""

    def factory(*, source_store=None, **overrides) -> ChapterUpdater:
        settings = {"min_request_gap_seconds": 0, "batch_interval_seconds": 0, **overrides}
        config = CheckerConfig(**settings)
        throttle = RequestThrottle.from_config(config, clock=clock, sleep=clock.sleep)
        resources = FetchResourceManager(engine.launch)
        fetcher = PageFetcher(resources, throttle, timeout=config.fetch_timeout_seconds)
        return ChapterUpdater(
            source_store if source_store is not None else store,
            fetcher,
            throttle=throttle,
            resources=resources,
            config=config,
        )

    return factory


@pytest.fixture
def source_factory():
    return make_source


@pytest.fixture
def page_html():
    return novel_page
