"""Persistence contract consumed by the update cycle."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from chapterwatch.models import Source

from .sqlite_store import SqliteSourceStore  # noqa: F401


class SourceStore(Protocol):
    """Queries and updates the update cycle needs from storage."""

    def list_stale_sources(
        self, stale_threshold_hours: float, limit: Optional[int] = None
    ) -> List[Source]:
        """Sources with at least one reader, unchecked for ``stale_threshold_hours``.

        Ordered by reader count descending, then oldest check first (never
        checked sorts first).
        """

    def get_source(self, source_id: str) -> Optional[Source]: ...

    def advance_chapter(
        self,
        source_id: str,
        chapter_num: int,
        chapter_title: Optional[str],
        genre: Optional[str] = None,
        author: Optional[str] = None,
        update_time_raw: Optional[str] = None,
        update_time: Optional[datetime] = None,
    ) -> Source:
        """Record a newer chapter plus metadata and refresh the check time."""

    def refresh_metadata(
        self,
        source_id: str,
        genre: Optional[str] = None,
        author: Optional[str] = None,
        update_time_raw: Optional[str] = None,
        update_time: Optional[datetime] = None,
    ) -> Source:
        """Refresh the check time and merge newly discovered metadata only."""

    def notify_subscribers(
        self,
        source_id: str,
        old_chapter: Optional[int],
        new_chapter: int,
        chapter_title: Optional[str],
    ) -> int:
        """Insert one notification per reader of the source; return how many."""

    def clear_last_checked(self) -> int:
        """Mark every source stale; return the number of rows touched."""


__all__ = ["SourceStore", "SqliteSourceStore"]
