"""Fetch a novel's main page through the shared engine, classifying failures."""

from __future__ import annotations

import asyncio
import logging
import re

import requests
from playwright.async_api import Error as PlaywrightError

from chapterwatch.errors import NetworkFailure, OriginBlocked, ResourceFailure
from chapterwatch.services.resources import FetchResourceManager
from chapterwatch.services.throttle import FORBIDDEN, TOO_MANY_REQUESTS, RequestThrottle

__all__ = ["PageFetcher", "novel_page_url"]

logger = logging.getLogger(__name__)

_CHAPTER_SUFFIX = re.compile(r"/c*chapter-?\d+.*$", re.IGNORECASE)

_CLOSED_MARKERS = (
    "target closed",
    "has been closed",
    "connection closed",
    "browser closed",
    "session closed",
)


def novel_page_url(url: str) -> str:
    """Strip a trailing ``/chapter-N...`` segment so the novel's index page is fetched."""

    return _CHAPTER_SUFFIX.sub("", url.strip())


def _is_closed_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _CLOSED_MARKERS)


class PageFetcher:
    """Runs one fetch on the managed engine with a hard timeout."""

    def __init__(
        self,
        resources: FetchResourceManager,
        throttle: RequestThrottle,
        timeout: float = 30,
    ) -> None:
        self._resources = resources
        self._throttle = throttle
        self.timeout = timeout

    async def fetch(self, url: str) -> str:
        """Return the HTML of ``url``'s novel page.

        Raises :class:`OriginBlocked` on 403/429 (after tripping the throttle),
        :class:`NetworkFailure` on other HTTP errors and timeouts and
        :class:`ResourceFailure` when the engine died mid-fetch.
        """

        target = novel_page_url(url)
        logger.info("Fetching novel page: %s", target)

        handle = await self._resources.acquire()
        try:
            page = await asyncio.wait_for(handle.fetch(target, self.timeout), timeout=self.timeout)
        except TimeoutError as exc:
            # The engine may still be busy with the abandoned request.
            await self._resources.release()
            raise NetworkFailure(f"Timed out after {self.timeout:.0f}s fetching {target}") from exc
        except requests.RequestException as exc:
            raise NetworkFailure(f"Request for {target} failed: {exc}") from exc
        except PlaywrightError as exc:
            if _is_closed_error(exc) or not handle.is_alive():
                await self._resources.release()
                raise ResourceFailure(f"Fetch engine closed while loading {target}: {exc}") from exc
            raise NetworkFailure(f"Browser failed to load {target}: {exc}") from exc

        if page.status in (FORBIDDEN, TOO_MANY_REQUESTS):
            cooldown = self._throttle.record_status(page.status)
            raise OriginBlocked(cooldown, status=page.status)
        if page.status >= 400:
            raise NetworkFailure(f"HTTP {page.status} from {target}")

        return page.html
