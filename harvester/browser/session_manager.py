"""
SessionManager — owner of the shared browser process.

One Chromium process is launched per service lifetime. Every visit
borrows an isolated PageContext (its own BrowserContext, and so its own
cookie jar) and returns it on exit, whatever happens inside.

Architecture:
    SessionManager
    +-- Playwright driver
    +-- Browser (one Chromium process)
        +-- PageContext (BrowserContext + Page), one per in-flight visit

Usage:
    manager = SessionManager(HarvesterConfig())
    await manager.init()            # LaunchError if Chromium won't start

    async with manager.acquire_page() as ctx:
        await ctx.page.goto("https://example.com")
        cookies = await ctx.context.cookies()

    await manager.shutdown()        # safe to call more than once
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional, TYPE_CHECKING

from harvester.browser.config import HarvesterConfig
from harvester.exceptions import BrowserSessionError, LaunchError

if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext, Page, Playwright

logger = logging.getLogger(__name__)

TeardownHook = Callable[[], Awaitable[None]]


@dataclass
class PageContext:
    """An isolated browser context with one page, owned by a single visit."""

    context: "BrowserContext"
    page: "Page"


class SessionManager:
    """
    Lifecycle owner of the single browser process.

    Args:
        config: HarvesterConfig instance. If None, uses defaults.
        log: Logger for lifecycle events (defaults to the module logger).
    """

    def __init__(
        self,
        config: Optional[HarvesterConfig] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config or HarvesterConfig()
        self._log = log or logger
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._closed = False
        self._open_contexts = 0
        self._teardown_hooks: list[TeardownHook] = []

    # ─── Lifecycle ───────────────────────────────────────────────────

    async def init(self) -> None:
        """
        Launch the browser process.

        Raises:
            LaunchError: If the executable is missing or the process
                cannot start. Fatal for service startup.
            BrowserSessionError: If the manager was already shut down.
        """
        if self._browser is not None:
            self._log.warning("browser_already_launched")
            return

        if self._closed:
            raise BrowserSessionError(
                "Session manager has been shut down and cannot be restarted"
            )

        executable = self.config.executable_path
        if executable is not None and not executable.exists():
            raise LaunchError(
                f"Browser executable not found: {executable}",
                executable_path=str(executable),
            )

        try:
            from playwright.async_api import async_playwright
        except ImportError as e:
            raise LaunchError(
                "playwright is not installed. "
                "Run: pip install playwright && playwright install chromium"
            ) from e

        start_time = time.monotonic()
        try:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                **self.config.to_launch_kwargs()
            )
        except Exception as e:
            self._browser = None
            await self._stop_driver()
            self._log.error(
                "browser_launch_failed",
                extra={
                    "executable_path": str(executable) if executable else None,
                    "error": str(e),
                },
            )
            raise LaunchError(
                f"Failed to launch browser: {e}",
                executable_path=str(executable) if executable else None,
            ) from e

        self._log.info(
            "browser_launched",
            extra={
                "headless": self.config.headless,
                "executable_path": str(executable) if executable else "bundled",
                "duration_ms": int((time.monotonic() - start_time) * 1000),
            },
        )

    async def shutdown(self) -> None:
        """
        Run teardown hooks, then close the browser best-effort.

        Does not wait for in-flight visits: their pages die with the
        browser and they fail with a VisitError. Safe to call multiple times.
        """
        if self._closed:
            return
        self._closed = True

        for hook in reversed(self._teardown_hooks):
            try:
                await hook()
            except Exception as e:
                self._log.warning(
                    "teardown_hook_failed",
                    extra={"hook": getattr(hook, "__qualname__", repr(hook)), "error": str(e)},
                )

        browser, self._browser = self._browser, None
        if browser is not None:
            try:
                await browser.close()
            except Exception as e:
                self._log.warning("browser_close_warning", extra={"error": str(e)})

        await self._stop_driver()

        self._log.info(
            "browser_session_closed",
            extra={"open_contexts": self._open_contexts},
        )

    def register_teardown(self, hook: TeardownHook) -> None:
        """Register an async callable run by shutdown(), last registered first."""
        self._teardown_hooks.append(hook)

    # ─── Page Contexts ───────────────────────────────────────────────

    @asynccontextmanager
    async def acquire_page(
        self,
        *,
        user_agent: Optional[str] = None,
    ) -> AsyncIterator[PageContext]:
        """
        Yield a fresh, isolated PageContext.

        Each call creates its own BrowserContext, so concurrent callers
        never share cookies or navigation state. The context is closed on
        every exit path, including cancellation.

        Raises:
            BrowserSessionError: If the browser is not running.
        """
        browser = self._ensure_running()
        context = await browser.new_context(
            user_agent=user_agent or self.config.user_agent,
        )
        self._open_contexts += 1
        try:
            page = await context.new_page()
            yield PageContext(context=context, page=page)
        finally:
            self._open_contexts -= 1
            try:
                await context.close()
            except Exception as e:
                # Expected once the browser itself is gone
                self._log.debug("page_context_close_failed", extra={"error": str(e)})

    # ─── Properties ──────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        """Whether the browser is launched and still connected."""
        if self._browser is None or self._closed:
            return False
        return bool(self._browser.is_connected())

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def open_contexts(self) -> int:
        """Number of PageContexts currently checked out."""
        return self._open_contexts

    # ─── Private Helpers ─────────────────────────────────────────────

    def _ensure_running(self) -> "Browser":
        if self._browser is None or self._closed:
            raise BrowserSessionError(
                "Browser is not active. Call init() before acquiring pages."
            )
        return self._browser

    async def _stop_driver(self) -> None:
        driver, self._playwright = self._playwright, None
        if driver is None:
            return
        try:
            await driver.stop()
        except Exception as e:
            self._log.warning("playwright_stop_warning", extra={"error": str(e)})

    def __repr__(self) -> str:
        status = "running" if self.is_running else ("closed" if self._closed else "idle")
        return (
            f"SessionManager(status={status!r}, "
            f"headless={self.config.headless}, "
            f"open_contexts={self._open_contexts})"
        )
