"""SQLite implementation of the source store."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from typing import Callable, Iterator, List, Optional

from chapterwatch.errors import SourceNotFound, StorageFailure
from chapterwatch.models import Source

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS novels (
    id TEXT PRIMARY KEY,
    title TEXT,
    primary_url TEXT,
    latest_chapter_num INTEGER,
    latest_chapter_title TEXT,
    genre TEXT,
    author TEXT,
    site_latest_chapter_time_raw TEXT,
    site_latest_chapter_time TEXT,
    chapters_updated_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS progress_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    novel_id TEXT NOT NULL REFERENCES novels(id) ON DELETE CASCADE,
    chapter_num INTEGER,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS novel_notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    novel_id TEXT NOT NULL REFERENCES novels(id) ON DELETE CASCADE,
    previous_chapter INTEGER,
    new_chapter INTEGER,
    chapter_title TEXT,
    read INTEGER DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_progress_novel ON progress_snapshots(novel_id, created_at);
CREATE INDEX IF NOT EXISTS idx_notifications_user
    ON novel_notifications(user_id, read, created_at DESC);
"""

_SOURCE_COLUMNS = """
    n.id, n.title, n.primary_url, n.latest_chapter_num, n.latest_chapter_title,
    n.genre, n.author, n.site_latest_chapter_time_raw, n.site_latest_chapter_time,
    n.chapters_updated_at,
    COUNT(DISTINCT p.user_id) AS active_readers,
    MAX(p.created_at) AS last_read_at
"""


class SqliteSourceStore:
    """SQLite database manager for novels, reader activity and notifications."""

    def __init__(self, db_path: str, *, clock: Callable[[], datetime] | None = None) -> None:
        self.db_path = db_path
        self._clock = clock or (lambda: datetime.now(UTC))
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Open database connection and initialize schema."""
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA_SQL)
        self._conn.commit()
        logger.info("Opened database %s", self.db_path)

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageFailure("Database not connected. Call connect() first.")
        return self._conn

    @contextmanager
    def _guard(self, action: str) -> Iterator[sqlite3.Connection]:
        """Commit on success; roll back and raise :class:`StorageFailure` on sqlite errors."""
        conn = self.conn
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StorageFailure(f"Failed to {action}: {exc}") from exc

    # --- Update cycle contract ---

    def list_stale_sources(
        self, stale_threshold_hours: float, limit: Optional[int] = None
    ) -> List[Source]:
        """Return stale sources with readers, most popular and least recently checked first."""
        cutoff = self._clock() - timedelta(hours=stale_threshold_hours)
        query = f"""
            SELECT {_SOURCE_COLUMNS}
            FROM novels n
            JOIN progress_snapshots p ON p.novel_id = n.id
            WHERE n.primary_url IS NOT NULL
              AND (n.chapters_updated_at IS NULL OR n.chapters_updated_at < ?)
            GROUP BY n.id
            ORDER BY active_readers DESC, n.chapters_updated_at ASC, n.id
        """
        params: list = [_dt_to_str(cutoff)]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._guard("list stale sources") as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_source(r) for r in rows]

    def get_source(self, source_id: str) -> Optional[Source]:
        """Look up a source by id, with its reader statistics."""
        with self._guard("load source") as conn:
            row = conn.execute(
                f"""SELECT {_SOURCE_COLUMNS}
                    FROM novels n
                    LEFT JOIN progress_snapshots p ON p.novel_id = n.id
                    WHERE n.id = ?
                    GROUP BY n.id""",
                (source_id,),
            ).fetchone()
        return _row_to_source(row) if row else None

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
        """Store a newer chapter. The stored number is never lowered."""
        with self._guard("advance chapter") as conn:
            cursor = conn.execute(
                """UPDATE novels SET
                       latest_chapter_title = CASE
                           WHEN latest_chapter_num IS NULL OR :num > latest_chapter_num
                           THEN :title ELSE latest_chapter_title END,
                       latest_chapter_num = CASE
                           WHEN latest_chapter_num IS NULL OR :num > latest_chapter_num
                           THEN :num ELSE latest_chapter_num END,
                       genre = COALESCE(:genre, genre),
                       author = COALESCE(:author, author),
                       site_latest_chapter_time_raw = COALESCE(:time_raw, site_latest_chapter_time_raw),
                       site_latest_chapter_time = COALESCE(:time, site_latest_chapter_time),
                       chapters_updated_at = :now
                   WHERE id = :id""",
                {
                    "id": source_id,
                    "num": chapter_num,
                    "title": chapter_title,
                    "genre": genre,
                    "author": author,
                    "time_raw": update_time_raw,
                    "time": _dt_to_str(update_time),
                    "now": _dt_to_str(self._clock()),
                },
            )
        return self._updated_source(source_id, cursor.rowcount)

    def refresh_metadata(
        self,
        source_id: str,
        genre: Optional[str] = None,
        author: Optional[str] = None,
        update_time_raw: Optional[str] = None,
        update_time: Optional[datetime] = None,
    ) -> Source:
        """Refresh the check time; known metadata is only replaced, never cleared."""
        with self._guard("refresh source metadata") as conn:
            cursor = conn.execute(
                """UPDATE novels SET
                       genre = COALESCE(:genre, genre),
                       author = COALESCE(:author, author),
                       site_latest_chapter_time_raw = COALESCE(:time_raw, site_latest_chapter_time_raw),
                       site_latest_chapter_time = COALESCE(:time, site_latest_chapter_time),
                       chapters_updated_at = :now
                   WHERE id = :id""",
                {
                    "id": source_id,
                    "genre": genre,
                    "author": author,
                    "time_raw": update_time_raw,
                    "time": _dt_to_str(update_time),
                    "now": _dt_to_str(self._clock()),
                },
            )
        return self._updated_source(source_id, cursor.rowcount)

    def notify_subscribers(
        self,
        source_id: str,
        old_chapter: Optional[int],
        new_chapter: int,
        chapter_title: Optional[str],
    ) -> int:
        """Insert one notification per distinct reader of the source."""
        now = _dt_to_str(self._clock())
        with self._guard("create notifications") as conn:
            readers = conn.execute(
                "SELECT DISTINCT user_id FROM progress_snapshots WHERE novel_id = ?",
                (source_id,),
            ).fetchall()
            conn.executemany(
                """INSERT INTO novel_notifications
                       (user_id, novel_id, previous_chapter, new_chapter, chapter_title, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                [
                    (r["user_id"], source_id, old_chapter, new_chapter, chapter_title, now)
                    for r in readers
                ],
            )
        return len(readers)

    def clear_last_checked(self) -> int:
        """Forget every check time so the next cycle considers all sources stale."""
        with self._guard("reset check times") as conn:
            cursor = conn.execute(
                "UPDATE novels SET chapters_updated_at = NULL WHERE chapters_updated_at IS NOT NULL"
            )
        return cursor.rowcount

    # --- Seeding and inspection ---

    def add_source(
        self,
        source_id: str,
        url: str,
        *,
        title: Optional[str] = None,
        latest_chapter_num: Optional[int] = None,
        latest_chapter_title: Optional[str] = None,
        author: Optional[str] = None,
        genre: Optional[str] = None,
        last_checked_at: Optional[datetime] = None,
    ) -> Source:
        """Insert a novel and return it."""
        with self._guard("add source") as conn:
            conn.execute(
                """INSERT INTO novels (id, title, primary_url, latest_chapter_num,
                       latest_chapter_title, author, genre, chapters_updated_at, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    source_id,
                    title,
                    url,
                    latest_chapter_num,
                    latest_chapter_title,
                    author,
                    genre,
                    _dt_to_str(last_checked_at),
                    _dt_to_str(self._clock()),
                ),
            )
        return self._updated_source(source_id, 1)

    def record_reading(
        self,
        user_id: str,
        source_id: str,
        chapter_num: Optional[int] = None,
        *,
        at: Optional[datetime] = None,
    ) -> None:
        """Record reader activity on a source (one progress snapshot)."""
        with self._guard("record reading") as conn:
            conn.execute(
                """INSERT INTO progress_snapshots (user_id, novel_id, chapter_num, created_at)
                   VALUES (?, ?, ?, ?)""",
                (user_id, source_id, chapter_num, _dt_to_str(at or self._clock())),
            )

    def list_notifications(self, user_id: Optional[str] = None) -> List[dict]:
        """Return notifications, newest first, optionally for one user."""
        query = "SELECT * FROM novel_notifications"
        params: list = []
        if user_id is not None:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " ORDER BY created_at DESC, id DESC"

        with self._guard("list notifications") as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            {
                "id": r["id"],
                "user_id": r["user_id"],
                "novel_id": r["novel_id"],
                "previous_chapter": r["previous_chapter"],
                "new_chapter": r["new_chapter"],
                "chapter_title": r["chapter_title"],
                "read": bool(r["read"]),
                "created_at": r["created_at"],
            }
            for r in rows
        ]

    def _updated_source(self, source_id: str, rowcount: int) -> Source:
        if rowcount == 0:
            raise SourceNotFound(f"Unknown source: {source_id}")
        source = self.get_source(source_id)
        if source is None:
            raise SourceNotFound(f"Unknown source: {source_id}")
        return source


# --- Helper functions ---


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to a UTC ISO string for storage."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Convert stored ISO string back to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def _row_to_source(row: sqlite3.Row) -> Source:
    """Convert a database row to a Source model."""
    return Source(
        id=row["id"],
        url=row["primary_url"] or "",
        title=row["title"],
        latest_chapter_num=row["latest_chapter_num"],
        latest_chapter_title=row["latest_chapter_title"],
        last_checked_at=_str_to_dt(row["chapters_updated_at"]),
        genre=row["genre"],
        author=row["author"],
        origin_update_time_raw=row["site_latest_chapter_time_raw"],
        origin_update_time=_str_to_dt(row["site_latest_chapter_time"]),
        active_reader_count=row["active_readers"] or 0,
        last_read_at=_str_to_dt(row["last_read_at"]),
    )
