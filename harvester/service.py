"""
CookieHarvester — the service object exposed to the transport layer.

Constructed once at startup and passed by reference to whatever serves
requests. Wires the SessionManager, CookieStore and CollectionScheduler
together and owns the init/shutdown lifecycle.

Lifecycle:
    init()      launch browser (LaunchError is fatal) → startup cycle → periodic timer
    shutdown()  stop timer → close browser (idempotent)

Usage:
    harvester = CookieHarvester(HarvesterConfig.from_env())
    await harvester.init()

    snapshot = harvester.get_snapshot()
    harvester.request_refresh()                      # BusyError if a cycle is running
    result = await harvester.request_custom_job("https://example.com", {})
    status = harvester.status()

    await harvester.shutdown()

    # Or as an async context manager:
    async with CookieHarvester() as harvester:
        ...
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional

from harvester.browser.config import HarvesterConfig
from harvester.browser.session_manager import SessionManager
from harvester.collection.cookie_store import CookieStore
from harvester.collection.models import (
    Clock,
    CollectionTrigger,
    RefreshAccepted,
    StoreSnapshot,
    VisitResult,
    utcnow,
)
from harvester.collection.scheduler import CollectionScheduler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HarvesterStatus:
    """Collection status as reported to callers."""

    busy: bool
    last_updated: Optional[datetime]
    per_site_has_data: dict[str, bool]
    next_collection: Optional[datetime]
    browser_running: bool
    open_contexts: int
    uptime_seconds: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "isCollecting": self.busy,
            "lastUpdated": self.last_updated.isoformat() if self.last_updated else None,
            "hasCookies": dict(self.per_site_has_data),
            "nextCollection": (
                self.next_collection.isoformat() if self.next_collection else "unknown"
            ),
            "browserRunning": self.browser_running,
            "openContexts": self.open_contexts,
            "uptimeSeconds": round(self.uptime_seconds, 1),
        }


class CookieHarvester:
    """
    Scheduled cookie harvester with an explicit lifecycle.

    Args:
        config: HarvesterConfig instance. If None, uses defaults.
        sessions: Pre-built SessionManager (default: built from config).
        clock: Returns the current aware datetime.
        log: Logger passed to every component.
    """

    def __init__(
        self,
        config: Optional[HarvesterConfig] = None,
        *,
        sessions: Optional[SessionManager] = None,
        clock: Clock = utcnow,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config or (sessions.config if sessions else HarvesterConfig())
        self._log = log or logger
        self._clock = clock
        self.sessions = sessions or SessionManager(self.config, log=self._log)
        self.store = CookieStore(log=self._log)
        self.scheduler = CollectionScheduler(
            self.sessions,
            self.store,
            targets=self.config.targets,
            interval_seconds=self.config.collection_interval_seconds,
            clock=clock,
            log=self._log,
        )
        self._started_at: Optional[float] = None

    # ─── Lifecycle ───────────────────────────────────────────────────

    async def init(self) -> None:
        """
        Launch the browser, run the startup cycle, then start the timer.

        Raises:
            LaunchError: If the browser cannot start. Startup must abort.
        """
        await self.sessions.init()
        self._started_at = time.monotonic()
        self._log.info(
            "harvester_started",
            extra={"targets": self.config.site_keys},
        )

        await self.scheduler.trigger_immediate()
        if self.sessions.is_closed:
            # shutdown() ran during the startup cycle
            self._log.warning("harvester_shutdown_during_startup")
            return
        self.scheduler.start_periodic()

    async def shutdown(self) -> None:
        """
        Stop the periodic timer and close the browser.

        With shutdown_grace_seconds > 0, first waits that long for a
        running cycle; otherwise in-flight visits fail as the browser
        closes under them. Safe to call multiple times.
        """
        if self.sessions.is_closed:
            return

        grace = self.config.shutdown_grace_seconds
        if grace > 0 and self.scheduler.is_running:
            drained = await self.scheduler.wait_idle(grace)
            if not drained:
                self._log.warning(
                    "shutdown_grace_expired",
                    extra={"active_trigger": self.scheduler.active_trigger},
                )

        await self.sessions.shutdown()
        self._log.info("harvester_stopped")

    async def __aenter__(self) -> "CookieHarvester":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    # ─── Caller-facing Operations ────────────────────────────────────

    def get_snapshot(self) -> StoreSnapshot:
        return self.store.snapshot()

    def request_refresh(self) -> RefreshAccepted:
        """
        Start a manual cycle in the background and return immediately.

        Raises:
            BusyError: If a guarded cycle is already running.
        """
        self.scheduler.start_cycle(CollectionTrigger.MANUAL)
        return RefreshAccepted(trigger=CollectionTrigger.MANUAL, accepted_at=self._clock())

    async def request_custom_job(
        self,
        url: str,
        raw_config: Optional[Mapping[str, Any]] = None,
    ) -> VisitResult:
        """
        Harvest cookies from a caller-supplied https URL.

        Raises:
            InvalidTargetURLError: Before any browser work, for a non-https
                or malformed URL.
            ValidationRejected: If raw_config is not an object.
            BusyError: If a guarded cycle is running.
        """
        self._log.info("custom_job_requested", extra={"url": url})
        return await self.scheduler.trigger_custom(url, raw_config)

    def status(self) -> HarvesterStatus:
        uptime = time.monotonic() - self._started_at if self._started_at else 0.0
        return HarvesterStatus(
            busy=self.scheduler.is_running,
            last_updated=self.store.last_updated,
            per_site_has_data={
                key: self.store.has_data(key) for key in self.config.site_keys
            },
            next_collection=self.scheduler.next_collection_at,
            browser_running=self.sessions.is_running,
            open_contexts=self.sessions.open_contexts,
            uptime_seconds=uptime,
        )

    def __repr__(self) -> str:
        return (
            f"CookieHarvester(targets={self.config.site_keys!r}, "
            f"busy={self.scheduler.is_running})"
        )
