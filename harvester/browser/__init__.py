"""
Browser module for the cookie harvester.

Owns the single long-lived Chromium process (via Playwright) and hands
out isolated page contexts, one per visit.

Components:
- SessionManager: browser lifecycle and per-visit PageContext factory
- HarvesterConfig: Pydantic configuration model
- SiteTarget: a built-in collection target

Usage:
    from harvester.browser import SessionManager, HarvesterConfig

    manager = SessionManager(HarvesterConfig())
    await manager.init()
    async with manager.acquire_page() as ctx:
        await ctx.page.goto("https://example.com")
    await manager.shutdown()
"""

from harvester.browser.config import HarvesterConfig, SiteTarget
from harvester.browser.session_manager import PageContext, SessionManager

__all__ = ["HarvesterConfig", "SiteTarget", "PageContext", "SessionManager"]
