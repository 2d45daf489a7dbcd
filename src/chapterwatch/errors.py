"""Exception types raised while checking sources."""

from __future__ import annotations

from chapterwatch.models import ErrorKind

__all__ = [
    "ChapterWatchError",
    "CycleInProgress",
    "NetworkFailure",
    "OriginBlocked",
    "ParseFailure",
    "ResourceFailure",
    "SourceNotFound",
    "StorageFailure",
]


class ChapterWatchError(Exception):
    """Base class for errors raised by the checker."""

    kind: ErrorKind = ErrorKind.FATAL


class NetworkFailure(ChapterWatchError):
    """The page could not be fetched (HTTP error, timeout, DNS...)."""

    kind = ErrorKind.NETWORK


class OriginBlocked(ChapterWatchError):
    """The origin is throttling or banning us; no request may be sent for a while."""

    kind = ErrorKind.ORIGIN_BLOCKED

    def __init__(self, retry_after: float, status: int | None = None) -> None:
        self.retry_after = max(0.0, retry_after)
        self.status = status
        if status is not None:
            message = f"Origin answered HTTP {status}; cooling down for {self.retry_after:.0f}s"
        else:
            message = f"Origin blocked for another {self.retry_after:.0f}s"
        super().__init__(message)


class ParseFailure(ChapterWatchError):
    """No chapter number could be extracted from the page."""

    kind = ErrorKind.PARSE


class StorageFailure(ChapterWatchError):
    """A persistence call failed."""

    kind = ErrorKind.STORAGE


class ResourceFailure(ChapterWatchError):
    """The fetch engine crashed, closed or failed to launch."""

    kind = ErrorKind.RESOURCE


class SourceNotFound(ChapterWatchError, LookupError):
    kind = ErrorKind.STORAGE


class CycleInProgress(ChapterWatchError):
    """A manual check was refused because an update cycle holds the guard."""
