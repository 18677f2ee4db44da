"""
VisitJob — one navigation against one target, yielding its cookies.

A visit is a pure function of (target, config): it borrows a PageContext
from the SessionManager, navigates, waits out a possible challenge page,
optionally runs a script, and reads the cookies. It never touches the
CookieStore; the scheduler decides what to do with the outcome.

Steps:
    1. acquire an isolated PageContext (fixed User-Agent)
    2. apply extra headers / viewport
    3. goto(target) with the configured timeout and wait_until
    4. initial settle delay
    5. title check → fixed challenge pause if needed
    6. additional delay
    7. post-load script
    8. read cookies for the page URL, build the Cookie header
    9. release the PageContext (always)
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, TYPE_CHECKING
from urllib.parse import urlsplit

from harvester.collection.challenge import ChallengeDetector, ChallengeState
from harvester.collection.job_config import JobConfig
from harvester.collection.models import Clock, CookieRecord, utcnow
from harvester.exceptions import VisitError

if TYPE_CHECKING:
    from harvester.browser.session_manager import PageContext, SessionManager

logger = logging.getLogger(__name__)


def build_cookie_header(cookies: list[dict[str, Any]]) -> str:
    """Join cookies as a Cookie request header value."""
    return "; ".join(f"{c['name']}={c['value']}" for c in cookies)


class VisitJob:
    """
    Executes single visits against the shared browser.

    Holds no per-visit state, so one instance serves any number of
    concurrent execute() calls.

    Args:
        sessions: SessionManager handing out PageContexts.
        detector: ChallengeDetector (default: title patterns).
        clock: Returns the current aware datetime.
        sleep: Awaitable sleep taking seconds (injectable for tests).
        log: Logger for visit events.
    """

    def __init__(
        self,
        sessions: "SessionManager",
        detector: Optional[ChallengeDetector] = None,
        *,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._sessions = sessions
        self._log = log or logger
        self._detector = detector or ChallengeDetector(sleep=sleep, log=self._log)
        self._clock = clock
        self._sleep = sleep

    async def execute(
        self,
        target_url: str,
        config: JobConfig,
        *,
        site_key: Optional[str] = None,
    ) -> CookieRecord:
        """
        Visit `target_url` and return the cookies it set.

        Args:
            target_url: Page to visit.
            config: Timing, identity and script options.
            site_key: Store key for the record (default: the URL's host).

        Returns:
            A CookieRecord stamped with the extraction time.

        Raises:
            VisitError: On any navigation, script or protocol failure. No
                partial record is ever returned.
        """
        site_key = site_key or urlsplit(target_url).hostname or target_url
        start_time = time.monotonic()

        self._log.info("visit_started", extra={"site_key": site_key, "url": target_url})

        try:
            async with self._sessions.acquire_page() as ctx:
                record = await self._visit(ctx, target_url, config, site_key)
        except VisitError as e:
            self._log_failure(e, start_time)
            raise
        except Exception as e:
            error = VisitError(
                f"Error visiting {target_url}: {e}",
                target=target_url,
                cause=e,
                site_key=site_key,
            )
            self._log_failure(error, start_time)
            raise error from e

        self._log.info(
            "visit_completed",
            extra={
                "site_key": site_key,
                "url": target_url,
                "cookie_count": record.cookie_count,
                "duration_ms": int((time.monotonic() - start_time) * 1000),
            },
        )
        return record

    # ─── Private Helpers ─────────────────────────────────────────────

    async def _visit(
        self,
        ctx: "PageContext",
        target_url: str,
        config: JobConfig,
        site_key: str,
    ) -> CookieRecord:
        page = ctx.page

        if config.extra_headers:
            await page.set_extra_http_headers(config.extra_headers)
        if config.viewport is not None:
            await page.set_viewport_size(
                {"width": config.viewport.width, "height": config.viewport.height}
            )

        await page.goto(
            target_url,
            wait_until=config.playwright_wait_until,
            timeout=config.timeout_ms,
        )

        await self._wait_ms(config.initial_wait_ms)

        title = await page.title()
        if self._detector.classify(title) is ChallengeState.PENDING:
            await self._detector.await_challenge(config.challenge_wait_ms, url=target_url)

        await self._wait_ms(config.additional_wait_ms)

        if config.post_load_script:
            try:
                await page.evaluate(config.post_load_script)
            except Exception as e:
                raise VisitError(
                    f"Post-load script failed on {target_url}: {e}",
                    target=target_url,
                    cause=e,
                    site_key=site_key,
                ) from e

        cookies = await ctx.context.cookies(page.url or target_url)

        return CookieRecord(
            site_key=site_key,
            cookie_header=build_cookie_header(cookies),
            cookie_count=len(cookies),
            collected_at=self._clock(),
            url=target_url,
        )

    async def _wait_ms(self, duration_ms: float) -> None:
        if duration_ms > 0:
            await self._sleep(duration_ms / 1000)

    def _log_failure(self, error: VisitError, start_time: float) -> None:
        self._log.warning(
            "visit_failed",
            extra={
                "site_key": error.site_key,
                "url": error.target,
                "error": str(error.cause or error),
                "duration_ms": int((time.monotonic() - start_time) * 1000),
            },
        )
