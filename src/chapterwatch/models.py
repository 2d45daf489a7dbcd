"""Domain models used across the application."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, computed_field


class ErrorKind(str, Enum):
    """Failure classes recorded in the error ring."""

    NETWORK = "network"
    ORIGIN_BLOCKED = "origin_blocked"
    PARSE = "parse"
    STORAGE = "storage"
    RESOURCE = "resource"
    FATAL = "fatal"
    INTERNAL = "internal"


class CycleOutcome(str, Enum):
    """Terminal state of the most recent cycle."""

    COMPLETED = "completed"
    BLOCKED = "blocked"
    STOPPED = "stopped"
    FAILED = "failed"


class UpdateDecision(str, Enum):
    """What a single check did with the extracted chapter number."""

    PARSE_FAILED = "parse_failed"
    NO_CHANGE = "no_change"
    ADVANCED = "advanced"


class Source(BaseModel):
    """A tracked novel page and its last known state."""

    id: str
    url: str
    title: Optional[str] = None
    latest_chapter_num: Optional[int] = None
    latest_chapter_title: Optional[str] = None
    last_checked_at: Optional[datetime] = None
    genre: Optional[str] = None
    author: Optional[str] = None
    origin_update_time_raw: Optional[str] = None
    origin_update_time: Optional[datetime] = None
    active_reader_count: int = 0
    last_read_at: Optional[datetime] = None


class PageFacts(BaseModel):
    """Facts parsed from one fetched novel page."""

    chapter_num: Optional[int] = None
    chapter_title: Optional[str] = None
    genres: List[str] = Field(default_factory=list)
    author: Optional[str] = None
    update_time_raw: Optional[str] = None
    update_time: Optional[datetime] = None

    @property
    def genre(self) -> Optional[str]:
        """Genres in their stored form: comma separated, ``None`` when empty."""

        return ", ".join(self.genres) or None


class ErrorEntry(BaseModel):
    timestamp: datetime
    source_id: Optional[str] = None
    kind: ErrorKind
    message: str


class ThrottleState(BaseModel):
    """Snapshot of the origin throttle; timestamps are epoch seconds."""

    last_request_at: float = 0.0
    blocked_until: float = 0.0


class CycleStatus(BaseModel):
    """Operator-facing view of the update cycle."""

    running: bool = False
    last_run_started_at: Optional[datetime] = None
    last_run_finished_at: Optional[datetime] = None
    last_run_succeeded: bool = False
    last_run_outcome: Optional[CycleOutcome] = None
    checked: int = 0
    updated: int = 0
    next_run_at: Optional[datetime] = None
    blocked_until: Optional[datetime] = None
    stop_requested: bool = False
    errors: List[ErrorEntry] = Field(default_factory=list)


class SourceCheckResult(BaseModel):
    """Result of checking a single source."""

    source_id: str
    decision: UpdateDecision
    previous: Optional[int] = None
    current: Optional[int] = None
    title: Optional[str] = None
    genres: List[str] = Field(default_factory=list)
    author: Optional[str] = None
    notified: int = 0

    @computed_field
    @property
    def is_new(self) -> bool:
        return self.decision is UpdateDecision.ADVANCED
