"""Fetch engines: a headless Playwright browser or a plain requests session."""

from __future__ import annotations

import asyncio
import logging

import requests
from playwright.async_api import Browser, BrowserContext, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from chapterwatch.config import CheckerConfig
from chapterwatch.services.resources import FetchedPage, FetchHandle

__all__ = [
    "DEFAULT_HEADERS",
    "PlaywrightHandle",
    "SessionHandle",
    "build_launcher",
    "launch_playwright",
    "launch_session",
]

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "Accept": (
        "text/html,application/xhtml+xml,application/xml;q=0.9,"
        "image/avif,image/webp,*/*;q=0.8"
    ),
    "Accept-Language": "en-US,en;q=0.9",
}


class PlaywrightHandle:
    """A launched browser; every fetch runs on its own short-lived page."""

    def __init__(self, playwright: Playwright, browser: Browser, context: BrowserContext) -> None:
        self._playwright = playwright
        self._browser = browser
        self._context = context

    def is_alive(self) -> bool:
        return self._browser.is_connected()

    async def fetch(self, url: str, timeout: float) -> FetchedPage:
        page = await self._context.new_page()
        try:
            response = await page.goto(url, wait_until="domcontentloaded", timeout=timeout * 1000)
            html = await page.content()
        finally:
            try:
                await page.close()
            except PlaywrightError as exc:
                logger.debug("Could not close page for %s: %s", url, exc)

        # ``goto`` returns None for same-document navigations.
        status = response.status if response is not None else 200
        return FetchedPage(url=url, status=status, html=html)

    async def close(self) -> None:
        try:
            await self._context.close()
            await self._browser.close()
        finally:
            await self._playwright.stop()


class SessionHandle:
    """A requests session; calls run in a worker thread."""

    def __init__(self, session: requests.Session) -> None:
        self._session = session
        self._closed = False
        self._pending: asyncio.Future | None = None

    def is_alive(self) -> bool:
        return not self._closed

    async def fetch(self, url: str, timeout: float) -> FetchedPage:
        self._pending = asyncio.ensure_future(
            asyncio.to_thread(self._session.get, url, timeout=(min(10, timeout), timeout))
        )
        # Cancelling the caller does not stop the worker thread; close() waits for it.
        response = await asyncio.shield(self._pending)
        return FetchedPage(url=url, status=response.status_code, html=response.text)

    async def close(self) -> None:
        self._closed = True
        pending, self._pending = self._pending, None
        if pending is not None:
            if not pending.done():
                await asyncio.wait([pending])
            if not pending.cancelled() and pending.exception() is not None:
                logger.debug("Abandoned request ended with %r", pending.exception())
        self._session.close()


async def launch_playwright(config: CheckerConfig) -> PlaywrightHandle:
    """Start Playwright and launch the configured browser."""

    playwright = await async_playwright().start()
    try:
        browser_type = getattr(playwright, config.browser)
        browser = await browser_type.launch(headless=config.headless)
        context = await browser.new_context(
            user_agent=config.user_agent, extra_http_headers=DEFAULT_HEADERS
        )
    except BaseException:
        await playwright.stop()
        raise

    logger.info("Launched %s (headless=%s)", config.browser, config.headless)
    return PlaywrightHandle(playwright, browser, context)


async def launch_session(config: CheckerConfig) -> SessionHandle:
    session = requests.Session()
    session.headers.update(DEFAULT_HEADERS)
    session.headers["User-Agent"] = config.user_agent
    return SessionHandle(session)


def build_launcher(config: CheckerConfig):
    """Return the launcher coroutine function selected by ``config.use_playwright``."""

    async def launch() -> FetchHandle:
        if config.use_playwright:
            return await launch_playwright(config)
        return await launch_session(config)

    return launch
