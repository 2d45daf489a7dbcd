"""Service layer entry points for the chapter update checker."""

from __future__ import annotations

from .extractor import PageFactExtractor, extract_page_facts  # noqa: F401
from .scheduler import CheckScheduler  # noqa: F401
from .throttle import RequestThrottle  # noqa: F401
from .updater import ChapterUpdater  # noqa: F401

__all__ = [
    "ChapterUpdater",
    "CheckScheduler",
    "PageFactExtractor",
    "RequestThrottle",
    "extract_page_facts",
]
