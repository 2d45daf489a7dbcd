"""Turn a novel's index page into :class:`PageFacts`.

Each field has its own extractor holding an ordered list of strategies; the
first strategy that yields a value wins. Strategies are independent, so a
page without an author still yields its chapter, and new site layouts can be
supported by adding a strategy without touching the update cycle.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, List, Optional, Sequence

from bs4 import BeautifulSoup

from chapterwatch.models import PageFacts

__all__ = [
    "FieldExtractor",
    "PageFactExtractor",
    "extract_page_facts",
    "parse_time_ago",
]

logger = logging.getLogger(__name__)

MAX_GENRE_LENGTH = 50

_CHAPTER_HEADING = re.compile(r"Chapter\s+(\d+)\s*[:\-–]?\s*(.*)", re.IGNORECASE)
_CHAPTER_LINK = re.compile(r"c*chapter-(\d+)", re.IGNORECASE)
_FIRST_NUMBER = re.compile(r"(\d+)")
_AUTHOR_TEXT = re.compile(r"Author:\s*([^<,\n]+)", re.IGNORECASE)
_TIME_AGO = re.compile(r"(\d+)\s*(second|minute|hour|day|week|month|year)s?\s*ago", re.IGNORECASE)

_UNIT_SECONDS = {
    "second": 1,
    "minute": 60,
    "hour": 3600,
    "day": 86400,
    "week": 7 * 86400,
    "month": 30 * 86400,
    "year": 365 * 86400,
}

Strategy = Callable[[BeautifulSoup, datetime], Any]


def parse_time_ago(raw: str | None, now: datetime | None = None) -> datetime | None:
    """Convert strings like ``"3 days ago"`` into an absolute timestamp."""

    if not raw:
        return None
    match = _TIME_AGO.search(raw)
    if not match:
        return None
    value = int(match.group(1))
    unit = match.group(2).lower()
    reference = now or datetime.now(UTC)
    return reference - timedelta(seconds=value * _UNIT_SECONDS[unit])


def _meta_content(soup: BeautifulSoup, prop: str) -> str | None:
    tag = soup.find("meta", attrs={"property": prop}) or soup.find("meta", attrs={"name": prop})
    if tag is None:
        return None
    content = (tag.get("content") or "").strip()
    return content or None


def _definition(soup: BeautifulSoup, label: str) -> str | None:
    """Return the ``<dd>`` text following a ``<dt>`` whose text starts with ``label``."""

    for term in soup.find_all("dt"):
        if term.get_text(strip=True).lower().rstrip(":").startswith(label.lower()):
            value = term.find_next_sibling("dd")
            if value is not None:
                text = value.get_text(" ", strip=True)
                return text or None
    return None


def _split_genres(raw: str | None) -> List[str]:
    if not raw:
        return []
    return [
        genre
        for genre in (part.strip() for part in raw.split(","))
        if genre and len(genre) < MAX_GENRE_LENGTH
    ]


# --- chapter ---------------------------------------------------------------


def _chapter_from_latest_block(soup: BeautifulSoup, now: datetime):
    block = soup.select_one(".l-chapter")
    if block is None:
        return None
    for text in block.stripped_strings:
        match = _CHAPTER_HEADING.search(text)
        if match:
            return int(match.group(1)), match.group(2).strip() or None
    return None


def _chapter_from_meta(soup: BeautifulSoup, now: datetime):
    content = _meta_content(soup, "og:novel:latest_chapter_name")
    if not content:
        return None
    match = _FIRST_NUMBER.search(content)
    if not match:
        return None
    return int(match.group(1)), None


def _chapter_from_links(soup: BeautifulSoup, now: datetime):
    numbers = [
        int(match.group(1))
        for anchor in soup.find_all("a", href=True)
        for match in [_CHAPTER_LINK.search(anchor["href"])]
        if match
    ]
    if not numbers:
        return None
    highest = max(numbers)
    title_match = re.search(
        rf"Chapter\s+{highest}\s*:\s*([^\n]+)", soup.get_text("\n", strip=True), re.IGNORECASE
    )
    return highest, title_match.group(1).strip() if title_match else None


# --- genres / author ---------------------------------------------------------


def _genres_from_meta(soup: BeautifulSoup, now: datetime):
    return _split_genres(_meta_content(soup, "og:novel:genre")) or None


def _genres_from_definition(soup: BeautifulSoup, now: datetime):
    return _split_genres(_definition(soup, "genre")) or None


def _author_from_meta(soup: BeautifulSoup, now: datetime):
    return _meta_content(soup, "og:novel:author")


def _author_from_definition(soup: BeautifulSoup, now: datetime):
    return _definition(soup, "author")


def _author_from_text(soup: BeautifulSoup, now: datetime):
    match = _AUTHOR_TEXT.search(soup.get_text("\n", strip=True))
    if not match:
        return None
    return match.group(1).strip() or None


# --- update time -------------------------------------------------------------


def _update_time_from_item(soup: BeautifulSoup, now: datetime):
    node = soup.select_one(".item-time")
    if node is None:
        return None
    raw = node.get_text(" ", strip=True)
    if not raw:
        return None
    return raw, parse_time_ago(raw, now)


def _update_time_from_meta(soup: BeautifulSoup, now: datetime):
    raw = _meta_content(soup, "og:novel:update_time")
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
    if parsed is not None and parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return raw, parsed


class FieldExtractor:
    """Try ``strategies`` in order and return the first non-empty result."""

    def __init__(self, name: str, strategies: Sequence[Strategy]) -> None:
        self.name = name
        self.strategies = list(strategies)

    def add_strategy(self, strategy: Strategy, *, first: bool = False) -> None:
        if first:
            self.strategies.insert(0, strategy)
        else:
            self.strategies.append(strategy)

    def extract(self, soup: BeautifulSoup, now: datetime) -> Any:
        for strategy in self.strategies:
            try:
                value = strategy(soup, now)
            except Exception as exc:  # noqa: BLE001 - a broken strategy falls through
                logger.debug("%s strategy %s failed: %s", self.name, strategy.__name__, exc)
                continue
            if value:
                return value
        return None


def default_extractors() -> dict[str, FieldExtractor]:
    return {
        "chapter": FieldExtractor(
            "chapter", [_chapter_from_latest_block, _chapter_from_meta, _chapter_from_links]
        ),
        "genres": FieldExtractor("genres", [_genres_from_meta, _genres_from_definition]),
        "author": FieldExtractor(
            "author", [_author_from_meta, _author_from_definition, _author_from_text]
        ),
        "update_time": FieldExtractor(
            "update_time", [_update_time_from_item, _update_time_from_meta]
        ),
    }


class PageFactExtractor:
    """Compose the field extractors into one :class:`PageFacts`."""

    def __init__(self, extractors: Optional[dict[str, FieldExtractor]] = None) -> None:
        self.extractors = extractors if extractors is not None else default_extractors()

    def extract(self, html: str, *, now: datetime | None = None) -> PageFacts:
        """Parse ``html``; never raises, returns empty facts on failure."""

        try:
            return self._extract(html, now or datetime.now(UTC))
        except Exception as exc:  # noqa: BLE001 - extraction must not break the cycle
            logger.warning("Page extraction failed: %s", exc)
            return PageFacts()

    def _extract(self, html: str, now: datetime) -> PageFacts:
        soup = BeautifulSoup(html or "", "lxml")
        facts = PageFacts()

        chapter = self._field("chapter", soup, now)
        if chapter:
            facts.chapter_num, facts.chapter_title = chapter

        facts.genres = list(self._field("genres", soup, now) or [])
        facts.author = self._field("author", soup, now)

        update_time = self._field("update_time", soup, now)
        if update_time:
            facts.update_time_raw, facts.update_time = update_time

        return facts

    def _field(self, name: str, soup: BeautifulSoup, now: datetime) -> Any:
        extractor = self.extractors.get(name)
        return extractor.extract(soup, now) if extractor is not None else None


_default_extractor = PageFactExtractor()


def extract_page_facts(html: str, *, now: datetime | None = None) -> PageFacts:
    """Extract facts with the default strategies."""

    return _default_extractor.extract(html, now=now)
