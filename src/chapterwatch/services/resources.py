"""Lifecycle management for the single reusable fetch engine."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Protocol

from pydantic import BaseModel

from chapterwatch.errors import ResourceFailure

__all__ = ["FetchHandle", "FetchResourceManager", "FetchedPage", "ResourceState"]

logger = logging.getLogger(__name__)


class FetchedPage(BaseModel):
    """Raw result of one page fetch."""

    url: str
    status: int
    html: str = ""


class FetchHandle(Protocol):
    """A launched fetch engine (browser session or HTTP session)."""

    def is_alive(self) -> bool: ...

    async def fetch(self, url: str, timeout: float) -> FetchedPage: ...

    async def close(self) -> None: ...


class ResourceState(str, Enum):
    ABSENT = "absent"
    LAUNCHING = "launching"
    READY = "ready"


class FetchResourceManager:
    """Owns one fetch handle, launched lazily and reused until released.

    At most one launch is in flight at a time: concurrent :meth:`acquire`
    callers all await the same future instead of launching again.
    """

    def __init__(self, launcher: Callable[[], Awaitable[FetchHandle]]) -> None:
        self._launcher = launcher
        self._handle: FetchHandle | None = None
        self._launching: asyncio.Future | None = None
        self.launch_count = 0

    @property
    def state(self) -> ResourceState:
        if self._launching is not None:
            return ResourceState.LAUNCHING
        if self._handle is not None:
            return ResourceState.READY
        return ResourceState.ABSENT

    async def acquire(self) -> FetchHandle:
        """Return the live handle, launching a new one when needed."""

        if self._launching is not None:
            return await asyncio.shield(self._launching)

        if self._handle is not None and self._handle.is_alive():
            return self._handle

        # Published before the first await so later callers join this launch.
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._launching = future
        try:
            if self._handle is not None:
                logger.warning("Fetch engine is no longer alive; relaunching")
                await self.release()
            handle = await self._launcher()
            self._handle = handle
            self.launch_count += 1
            future.set_result(handle)
        except Exception as exc:
            error = ResourceFailure(f"Failed to launch fetch engine: {exc}")
            future.set_exception(error)
            # Waiters receive the error; mark it retrieved for the lone-caller case.
            future.exception()
            raise error from exc
        finally:
            self._launching = None
            if not future.done():
                future.cancel()

        logger.info("Fetch engine launched")
        return handle

    async def release(self) -> None:
        """Tear the handle down; the next :meth:`acquire` relaunches."""

        handle, self._handle = self._handle, None
        if handle is None:
            return

        try:
            await handle.close()
        except Exception as exc:  # noqa: BLE001 - a dead engine may fail to close cleanly
            logger.warning("Error while closing fetch engine: %s", exc)
        else:
            logger.info("Fetch engine released")
