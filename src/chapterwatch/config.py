"""Configuration model and helpers for the chapter update checker."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ValidationError, model_validator

__all__ = [
    "CheckerConfig",
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_DATABASE_PATH",
    "DEFAULT_USER_AGENT",
    "DB_PATH_ENV",
]

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[2] / "data" / "checker.json"
DEFAULT_DATABASE_PATH = "chapterwatch.db"
DB_PATH_ENV = "CHAPTERWATCH_DB_PATH"

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/129.0.0.0 Safari/537.36"
)


class CheckerConfig(BaseModel):
    """Tunable constants for the update cycle, throttle and fetch engine."""

    check_interval_seconds: float = Field(
        default=30 * 60, gt=0, description="Wall-clock gap between automatic cycles"
    )
    batch_size: int = Field(default=5, ge=1, description="Sources processed per batch")
    batch_interval_seconds: float = Field(
        default=60, ge=0, description="Pause between consecutive batches (not after the last)"
    )
    max_sources_per_cycle: int | None = Field(
        default=50,
        ge=1,
        description="Upper bound on stale sources selected per cycle; null for no limit",
    )
    stale_threshold_hours: float = Field(
        default=24, gt=0, description="A source is stale when unchecked for this long"
    )
    min_request_gap_seconds: float = Field(
        default=5, ge=0, description="Minimum gap between the start of two origin fetches"
    )
    long_cooldown_seconds: float = Field(
        default=6 * 60 * 60, ge=0, description="Breaker window after a 403 (forbidden) response"
    )
    short_cooldown_seconds: float = Field(
        default=30 * 60, ge=0, description="Breaker window after a 429 (too many requests) response"
    )
    fetch_timeout_seconds: float = Field(default=30, gt=0, description="Hard timeout for one page fetch")
    max_errors: int = Field(default=100, ge=1, description="Error ring capacity before truncation")
    retain_errors: int = Field(
        default=50, ge=0, description="Most recent errors kept when the ring overflows"
    )
    graceful_shutdown_wait_seconds: float = Field(
        default=10, ge=0, description="How long shutdown waits for the in-flight source"
    )
    use_playwright: bool = Field(
        default=True,
        description=(
            "Fetch pages with a headless Playwright browser instead of plain HTTP requests. "
            "This helps when the origin relies on client-side rendering or bot protection."
        ),
    )
    browser: Literal["chromium", "firefox", "webkit"] = Field(
        default="chromium", description="Playwright browser engine to launch"
    )
    headless: bool = Field(default=True)
    user_agent: str = Field(default=DEFAULT_USER_AGENT)
    database_path: str = Field(default=DEFAULT_DATABASE_PATH, description="SQLite database file")

    @model_validator(mode="after")
    def _check_error_ring(self) -> "CheckerConfig":
        if self.retain_errors > self.max_errors:
            raise ValueError("retain_errors must not exceed max_errors")
        return self

    @classmethod
    def from_file(cls, path: Path | str | None = None) -> "CheckerConfig":
        """Load configuration data from a JSON file."""

        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise FileNotFoundError(f"Configuration file not found: {config_path}") from exc
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON in configuration file: {config_path}") from exc

        try:
            config = cls.model_validate(data)
        except ValidationError as exc:
            raise ValueError(f"Configuration file is invalid: {config_path}\n{exc}") from exc
        return config.with_env_overrides()

    @classmethod
    def load(cls, path: Path | str | None = None) -> "CheckerConfig":
        """Like :meth:`from_file` but fall back to defaults when the file is missing."""

        try:
            return cls.from_file(path)
        except FileNotFoundError:
            return cls().with_env_overrides()

    def with_env_overrides(self) -> "CheckerConfig":
        """Return a copy with environment overrides applied."""

        db_path = os.environ.get(DB_PATH_ENV)
        if db_path:
            return self.model_copy(update={"database_path": db_path})
        return self

    def dump(self, path: Path | str | None = None) -> None:
        """Persist the configuration back to disk as JSON."""

        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(self.model_dump_json(indent=2), encoding="utf-8")
