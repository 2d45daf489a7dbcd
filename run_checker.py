"""Convenience script for running one chapter update cycle locally."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

# Ensure the src directory is on the Python path so the chapterwatch package can be imported
SRC_PATH = Path(__file__).resolve().parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from chapterwatch.config import CheckerConfig  # noqa: E402  (import after path setup)
from chapterwatch.errors import StorageFailure  # noqa: E402
from chapterwatch.services.updater import ChapterUpdater  # noqa: E402
from chapterwatch.storage import SqliteSourceStore  # noqa: E402


async def run_once(config: CheckerConfig) -> dict:
    store = SqliteSourceStore(config.database_path)
    store.connect()
    updater = ChapterUpdater.from_config(config, store)
    try:
        await updater.run_cycle()
    finally:
        await updater.close()
        store.close()
    return updater.get_status().model_dump(mode="json")


def main() -> None:
    """Load the checker configuration and run a single update cycle."""

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    path = sys.argv[1] if len(sys.argv) > 1 else None
    try:
        config = CheckerConfig.from_file(path) if path else CheckerConfig.load()
    except (FileNotFoundError, ValueError) as exc:
        logging.error("Could not load checker configuration: %s", exc)
        sys.exit(1)

    try:
        status = asyncio.run(run_once(config))
    except StorageFailure as exc:
        logging.error("Database unavailable: %s", exc)
        sys.exit(1)

    print(json.dumps(status, indent=2))
    if not status["last_run_succeeded"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
