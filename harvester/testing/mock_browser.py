"""
Mock browser for testing without Chromium or Playwright.

Provides MockBrowser / MockBrowserContext / MockPage, which satisfy the
subset of the Playwright async API the harvester uses, plus a factory
that returns a SessionManager already "launched" on a MockBrowser.

Each URL is scripted with a MockSite: the page title, the cookies it
sets, an optional navigation or script error, and an optional delay.

Usage:
    from harvester.testing.mock_browser import MockSite, create_mock_session_manager, make_cookies

    sessions = create_mock_session_manager({
        "https://animepahe.com": MockSite(cookies=make_cookies(3)),
        "https://pahe.win": MockSite(goto_error=TimeoutError("Navigation timeout")),
    })
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, TYPE_CHECKING, Union
from urllib.parse import urlsplit

if TYPE_CHECKING:
    from harvester.browser.session_manager import SessionManager

logger = logging.getLogger(__name__)


class MockBrowserError(Exception):
    """Stands in for playwright's Error in protocol-level failures."""


@dataclass
class MockSite:
    """Scripted behaviour of one URL."""

    title: str = "Example Domain"
    cookies: list[dict[str, Any]] = field(default_factory=list)
    goto_error: Optional[BaseException] = None
    script_error: Optional[BaseException] = None
    delay: float = 0.0


def make_cookies(count: int, prefix: str = "c", domain: str = "example.com") -> list[dict[str, Any]]:
    """Build `count` Playwright-shaped cookie dicts: c0=v0, c1=v1, ..."""
    return [
        {"name": f"{prefix}{i}", "value": f"v{i}", "domain": domain, "path": "/"}
        for i in range(count)
    ]


class MockPage:
    def __init__(self, context: "MockBrowserContext") -> None:
        self._context = context
        self._site: Optional[MockSite] = None
        self.url = "about:blank"
        self.extra_headers: dict[str, str] = {}
        self.viewport: Optional[dict[str, int]] = None
        self.goto_calls: list[dict[str, Any]] = []
        self.evaluated: list[str] = []

    async def set_extra_http_headers(self, headers: dict[str, str]) -> None:
        self.extra_headers = dict(headers)

    async def set_viewport_size(self, viewport_size: dict[str, int]) -> None:
        self.viewport = dict(viewport_size)

    async def goto(self, url: str, *, wait_until: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self.goto_calls.append({"url": url, "wait_until": wait_until, "timeout": timeout})
        site = self._context.browser.site_for(url)
        if site.delay:
            await asyncio.sleep(site.delay)
        self._context.check_alive()
        if site.goto_error is not None:
            raise site.goto_error
        self._site = site
        self.url = url
        self._context.add_cookies_for(url, site.cookies)

    async def title(self) -> str:
        self._context.check_alive()
        return self._site.title if self._site else ""

    async def evaluate(self, expression: str) -> Any:
        self._context.check_alive()
        self.evaluated.append(expression)
        if self._site is not None and self._site.script_error is not None:
            raise self._site.script_error
        return None


class MockBrowserContext:
    def __init__(self, browser: "MockBrowser", **kwargs: Any) -> None:
        self.browser = browser
        self.kwargs = kwargs
        self.pages: list[MockPage] = []
        self.closed = False
        self._cookies: dict[str, list[dict[str, Any]]] = {}

    async def new_page(self) -> MockPage:
        self.check_alive()
        page = MockPage(self)
        self.pages.append(page)
        return page

    async def cookies(self, urls: Union[str, list[str], None] = None) -> list[dict[str, Any]]:
        self.check_alive()
        if urls is None:
            return [c for jar in self._cookies.values() for c in jar]
        if isinstance(urls, str):
            urls = [urls]
        return [c for url in urls for c in self._cookies.get(url, [])]

    def add_cookies_for(self, url: str, cookies: list[dict[str, Any]]) -> None:
        self._cookies.setdefault(url, []).extend(dict(c) for c in cookies)

    async def close(self) -> None:
        if not self.browser.connected:
            raise MockBrowserError("Browser has been closed")
        self.closed = True

    def check_alive(self) -> None:
        if self.closed or not self.browser.connected:
            raise MockBrowserError("Target page, context or browser has been closed")


class MockBrowser:
    """
    Mock for playwright's Browser.

    Args:
        sites: URL (or hostname) → MockSite. Unknown URLs get `default`.
        default: Behaviour for unscripted URLs.
    """

    def __init__(
        self,
        sites: Optional[dict[str, MockSite]] = None,
        default: Optional[MockSite] = None,
    ) -> None:
        self.sites = dict(sites or {})
        self.default = default or MockSite()
        self.contexts: list[MockBrowserContext] = []
        self.connected = True
        self.close_calls = 0
        logger.info("MockBrowser initialized (test mode)")

    async def new_context(self, **kwargs: Any) -> MockBrowserContext:
        if not self.connected:
            raise MockBrowserError("Browser has been closed")
        context = MockBrowserContext(self, **kwargs)
        self.contexts.append(context)
        return context

    def is_connected(self) -> bool:
        return self.connected

    async def close(self) -> None:
        self.close_calls += 1
        self.connected = False

    def site_for(self, url: str) -> MockSite:
        if url in self.sites:
            return self.sites[url]
        host = urlsplit(url).hostname or ""
        return self.sites.get(host, self.default)

    @property
    def open_contexts(self) -> list[MockBrowserContext]:
        return [c for c in self.contexts if not c.closed]


# ─── Factory ─────────────────────────────────────────────────────────


def create_mock_session_manager(
    sites: Optional[dict[str, MockSite]] = None,
    *,
    default: Optional[MockSite] = None,
    config: Optional[Any] = None,
) -> "SessionManager":
    """
    Create a SessionManager running on a MockBrowser.

    The returned manager:
    - Will NOT launch a real browser (init() is never needed)
    - Hands out MockBrowserContexts from acquire_page()
    - Exposes the MockBrowser as `manager.mock_browser`

    Args:
        sites: URL/hostname → MockSite scripting.
        default: Behaviour for unscripted URLs.
        config: Optional HarvesterConfig (defaults otherwise).
    """
    from harvester.browser.config import HarvesterConfig
    from harvester.browser.session_manager import SessionManager

    manager = SessionManager(config=config or HarvesterConfig())
    browser = MockBrowser(sites, default=default)
    manager._browser = browser  # type: ignore[assignment]
    manager.mock_browser = browser  # type: ignore[attr-defined]
    return manager
