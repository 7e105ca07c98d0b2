"""Browser session provider: one remote (or local) page per scrape attempt."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Optional

from playwright.async_api import Browser, Page, Playwright, Route, async_playwright

from ..errors import ConfigurationError, TransportError
from .proxy import BrowserEndpoint

LOGGER = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36"
BLOCKED_RESOURCE_TYPES = frozenset({"image", "font", "media", "stylesheet"})
LOCAL_LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
]


def should_block(resource_type: str) -> bool:
    """Images, fonts, media and stylesheets never reach the network."""
    return resource_type in BLOCKED_RESOURCE_TYPES


async def block_non_essential(route: Route) -> None:
    if should_block(route.request.resource_type):
        await route.abort()
    else:
        await route.continue_()


@dataclass
class BrowserSessionConfig:
    """How to reach a browser.

    ``endpoint`` is the remote CDP websocket; ``local`` launches a headful
    Chromium on this machine instead (development only).
    """

    endpoint: Optional[BrowserEndpoint] = None
    local: bool = False
    connect_timeout: float = 120.0
    user_agent: str = USER_AGENT

    def validate(self) -> None:
        if not self.local and self.endpoint is None:
            raise ConfigurationError("BRD_WSENDPOINT is not set (or set LOCAL_PLAYWRIGHT=true)")


class BrowserSessionProvider:
    """Opens a browser, installs the resource-blocking route and yields a page."""

    def __init__(
        self,
        config: BrowserSessionConfig,
        playwright_factory: Callable[[], Any] = async_playwright,
    ) -> None:
        config.validate()
        self.config = config
        self._playwright_factory = playwright_factory
        self.sessions_opened = 0

    async def _open_browser(self, playwright: Playwright) -> Browser:
        timeout_ms = self.config.connect_timeout * 1000
        try:
            if self.config.local:
                LOGGER.info("Launching local headful Chromium")
                return await playwright.chromium.launch(headless=False, args=LOCAL_LAUNCH_ARGS)

            assert self.config.endpoint is not None
            LOGGER.debug("Connecting to remote browser %s", self.config.endpoint.redacted)
            return await playwright.chromium.connect_over_cdp(
                self.config.endpoint.ws_url,
                timeout=timeout_ms,
                headers={"User-Agent": self.config.user_agent},
            )
        except Exception as exc:
            raise TransportError(f"Failed to create browser: {exc}") from exc

    @asynccontextmanager
    async def session(self) -> AsyncIterator[Page]:
        """Yield a single page; page and browser are closed on every exit path."""
        async with self._playwright_factory() as playwright:
            browser = await self._open_browser(playwright)
            self.sessions_opened += 1
            try:
                page = await browser.new_page()
                try:
                    await page.route("**/*", block_non_essential)
                    yield page
                finally:
                    await _close_quietly(page, "page")
            finally:
                await _close_quietly(browser, "browser")


async def _close_quietly(resource: Any, label: str) -> None:
    try:
        await resource.close()
    except Exception as exc:
        LOGGER.warning("Failed to close %s: %s", label, exc)
