"""Bounded record of recent check failures."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Iterable, List

from chapterwatch.models import ErrorEntry, ErrorKind

__all__ = ["ErrorLog"]

logger = logging.getLogger(__name__)


class ErrorLog:
    """Error ring capped at ``max_errors``.

    Once the cap is exceeded the log is cut back to the ``retain_errors``
    most recent entries. Truncation runs after every :meth:`record` and once
    per :meth:`extend`, so only a bulk insert past the cap leaves exactly
    ``retain_errors`` entries. The update cycle records one entry at a time,
    so its log holds between ``retain_errors`` and ``max_errors`` entries.
    """

    def __init__(self, max_errors: int = 100, retain_errors: int = 50) -> None:
        if retain_errors > max_errors:
            raise ValueError("retain_errors must not exceed max_errors")
        self.max_errors = max_errors
        self.retain_errors = retain_errors
        self._entries: List[ErrorEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def record(
        self,
        kind: ErrorKind,
        message: str,
        *,
        source_id: str | None = None,
        timestamp: datetime | None = None,
    ) -> ErrorEntry:
        entry = ErrorEntry(
            timestamp=timestamp or datetime.now(UTC),
            source_id=source_id,
            kind=kind,
            message=message,
        )
        self._entries.append(entry)
        self._truncate()
        return entry

    def extend(self, entries: Iterable[ErrorEntry]) -> None:
        self._entries.extend(entries)
        self._truncate()

    def entries(self) -> List[ErrorEntry]:
        return [entry.model_copy() for entry in self._entries]

    def clear(self) -> None:
        self._entries.clear()

    def _truncate(self) -> None:
        if len(self._entries) > self.max_errors:
            dropped = len(self._entries) - self.retain_errors
            del self._entries[:dropped]
            logger.debug("Error log overflowed; dropped %d oldest entries", dropped)
