"""Reader notifications for newly published chapters."""

from __future__ import annotations

import logging
from typing import Optional

from chapterwatch.storage import SourceStore

__all__ = ["SubscriberNotifier"]

logger = logging.getLogger(__name__)


class SubscriberNotifier:
    """Fan a chapter delta out to every reader of the source."""

    def __init__(self, store: SourceStore) -> None:
        self._store = store

    def notify(
        self,
        source_id: str,
        old_chapter: Optional[int],
        new_chapter: int,
        chapter_title: Optional[str],
    ) -> int:
        count = self._store.notify_subscribers(source_id, old_chapter, new_chapter, chapter_title)
        logger.info(
            "Created notifications for %d readers of %s (Ch.%s -> Ch.%d)",
            count,
            source_id,
            old_chapter if old_chapter is not None else "?",
            new_chapter,
        )
        return count
