"""
CollectionScheduler — single-flight, fan-out/fan-in cookie collection.

States:
    IDLE ──run_cycle()──► RUNNING ──all visits settled──► IDLE

Guarded triggers (startup, periodic, manual) share one flag: while a cycle
is RUNNING every other guarded trigger gets BusyError immediately, with
no queueing. The check and the set happen in the same synchronous step
on the event loop, so two triggers can never both observe IDLE.

A cycle launches one VisitJob per built-in target concurrently, merges
each success into the CookieStore as it settles, and stamps last_updated
once every visit has settled, even if all of them failed.

Ad-hoc visits (trigger_custom) never take the flag and never touch the
store; they are only refused while a guarded cycle is running.

Usage:
    scheduler = CollectionScheduler(sessions, store)
    run = await scheduler.trigger_immediate()   # startup cycle
    scheduler.start_periodic()                  # every collection_interval_seconds
    result = await scheduler.trigger_custom("https://example.com", {"timeout": 30000})
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, TYPE_CHECKING

from harvester.browser.config import SiteTarget
from harvester.collection.cookie_store import CookieStore
from harvester.collection.job_config import JobConfigValidator, validate_target_url
from harvester.collection.models import (
    Clock,
    CollectionRun,
    CollectionTrigger,
    CookieRecord,
    SchedulerState,
    VisitOutcome,
    VisitResult,
    utcnow,
)
from harvester.collection.visit_job import VisitJob
from harvester.exceptions import BusyError, VisitError
from harvester.observability.logging_config import reset_run_id, set_run_id

if TYPE_CHECKING:
    from harvester.browser.session_manager import SessionManager

logger = logging.getLogger(__name__)


class CollectionScheduler:
    """
    Coordinates guarded collection cycles, the periodic timer and ad-hoc visits.

    Registers stop_periodic() as a SessionManager teardown hook, so the
    timer dies with the browser.

    Args:
        sessions: SessionManager owning the browser.
        store: CookieStore receiving successful records.
        targets: Built-in targets (default: sessions.config.targets).
        visit_job: VisitJob to run visits with.
        validator: JobConfigValidator for ad-hoc options.
        interval_seconds: Periodic interval (default: from config).
        clock: Returns the current aware datetime.
        sleep: Sleep for the default VisitJob's fixed waits (injectable for tests).
        log: Logger for cycle events.
    """

    def __init__(
        self,
        sessions: "SessionManager",
        store: CookieStore,
        *,
        targets: Optional[Sequence[SiteTarget]] = None,
        visit_job: Optional[VisitJob] = None,
        validator: Optional[JobConfigValidator] = None,
        interval_seconds: Optional[float] = None,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._sessions = sessions
        self._store = store
        self._log = log or logger
        self._clock = clock
        self._targets: list[SiteTarget] = list(
            targets if targets is not None else sessions.config.targets
        )
        self._visit_job = visit_job or VisitJob(
            sessions, clock=clock, sleep=sleep, log=self._log
        )
        self._validator = validator or JobConfigValidator(log=self._log)
        self._interval = (
            interval_seconds
            if interval_seconds is not None
            else sessions.config.collection_interval_seconds
        )

        self._state = SchedulerState.IDLE
        self._active: Optional[CollectionRun] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._periodic_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()

        sessions.register_teardown(self.stop_periodic)

    # ─── Guarded Triggers ────────────────────────────────────────────

    async def trigger_immediate(self) -> CollectionRun:
        """Run the startup cycle."""
        return await self.run_cycle(CollectionTrigger.STARTUP)

    async def trigger_periodic(self) -> CollectionRun:
        return await self.run_cycle(CollectionTrigger.PERIODIC)

    async def trigger_manual(self) -> CollectionRun:
        return await self.run_cycle(CollectionTrigger.MANUAL)

    async def run_cycle(self, trigger: CollectionTrigger) -> CollectionRun:
        """
        Collect every built-in target once.

        Returns:
            The finished CollectionRun (for reporting; the scheduler keeps
            no reference to it).

        Raises:
            BusyError: If a guarded cycle is already running.
        """
        run = self._begin(trigger)
        return await self._execute(run)

    def start_cycle(self, trigger: CollectionTrigger) -> asyncio.Task:
        """
        Claim the guard now and run the cycle in a background task.

        Raises:
            BusyError: If a guarded cycle is already running.
        """
        run = self._begin(trigger)
        task = asyncio.create_task(self._execute(run), name=f"collection-{run.run_id}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        # Covers a task cancelled before its first step, when _execute's
        # finally never runs.
        task.add_done_callback(lambda _task: self._finish(run))
        task.add_done_callback(self._report_background_failure)
        return task

    # ─── Ad-hoc ──────────────────────────────────────────────────────

    async def trigger_custom(
        self,
        target_url: str,
        raw_config: Optional[Mapping[str, Any]] = None,
    ) -> VisitResult:
        """
        Run one visit against a caller-supplied https URL.

        The outcome is returned as data and never stored. Ad-hoc visits
        can interleave with each other freely.

        Raises:
            InvalidTargetURLError: If the URL is not absolute https (before
                any browser work).
            ValidationRejected: If raw_config is not a mapping.
            BusyError: If a guarded cycle is running.
        """
        url = validate_target_url(target_url)
        config = self._validator.validate(raw_config, target_url=url)

        if self._state is SchedulerState.RUNNING:
            raise BusyError(
                "Service is busy, please try again later",
                active_trigger=self.active_trigger,
            )

        token = set_run_id(f"adhoc-{uuid.uuid4().hex[:12]}")
        try:
            record = await self._visit_job.execute(url, config)
        except VisitError as e:
            return VisitResult.failed(e, self._clock())
        finally:
            reset_run_id(token)
        return VisitResult.ok(record)

    # ─── Periodic Timer ──────────────────────────────────────────────

    def start_periodic(self) -> None:
        """
        Start the recurring timer.

        No-op if the timer is already running or the SessionManager is
        closed, since a closed session has already run its teardown hooks.
        """
        if self._periodic_task is not None and not self._periodic_task.done():
            return
        if self._sessions.is_closed:
            self._log.info("periodic_collection_not_started", extra={"reason": "session_closed"})
            return
        self._periodic_task = asyncio.create_task(
            self._periodic_loop(), name="collection-periodic"
        )
        self._log.info(
            "periodic_collection_scheduled",
            extra={"interval_seconds": self._interval},
        )

    async def stop_periodic(self) -> None:
        """Cancel the recurring timer. A cycle already started keeps running."""
        task, self._periodic_task = self._periodic_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self._log.info("periodic_collection_stopped")

    async def wait_idle(self, timeout: float) -> bool:
        """Wait up to `timeout` seconds for a running cycle. True if idle."""
        if self._state is SchedulerState.IDLE:
            return True
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # ─── Properties ──────────────────────────────────────────────────

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is SchedulerState.RUNNING

    @property
    def active_trigger(self) -> Optional[str]:
        return self._active.trigger.value if self._active else None

    @property
    def periodic_active(self) -> bool:
        return self._periodic_task is not None and not self._periodic_task.done()

    @property
    def targets(self) -> list[SiteTarget]:
        return list(self._targets)

    @property
    def interval_seconds(self) -> float:
        return self._interval

    @property
    def next_collection_at(self) -> Optional[datetime]:
        """Expected start of the next periodic cycle, if one has completed."""
        last = self._store.last_updated
        if last is None:
            return None
        return last + timedelta(seconds=self._interval)

    # ─── Private Helpers ─────────────────────────────────────────────

    def _begin(self, trigger: CollectionTrigger) -> CollectionRun:
        # No await in here: check-and-set is atomic on the event loop.
        if not trigger.is_guarded:
            raise ValueError(f"{trigger.value} is not a guarded trigger")

        if self._state is SchedulerState.RUNNING:
            self._log.info(
                "collection_skipped_busy",
                extra={"trigger": trigger.value, "active_trigger": self.active_trigger},
            )
            raise BusyError(active_trigger=self.active_trigger)

        run = CollectionRun(
            trigger=trigger,
            started_at=self._clock(),
            run_id=f"run-{uuid.uuid4().hex[:12]}",
        )
        self._state = SchedulerState.RUNNING
        self._active = run
        self._idle.clear()
        return run

    def _report_background_failure(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        self._log.error(
            "collection_cycle_failed",
            extra={"task": task.get_name(), "error": str(error)},
            exc_info=error,
        )

    def _finish(self, run: CollectionRun) -> None:
        if self._active is not run:
            return
        self._active = None
        self._state = SchedulerState.IDLE
        self._idle.set()

    async def _execute(self, run: CollectionRun) -> CollectionRun:
        token = set_run_id(run.run_id)
        start_time = time.monotonic()
        try:
            self._log.info(
                "collection_cycle_started",
                extra={"trigger": run.trigger.value, "targets": len(self._targets)},
            )

            tasks = [
                asyncio.create_task(self._visit_target(target))
                for target in self._targets
            ]
            try:
                for settled in asyncio.as_completed(tasks):
                    site_key, outcome = await settled
                    run.outcomes[site_key] = outcome
                    if isinstance(outcome, CookieRecord):
                        self._store.merge(site_key, outcome)
            finally:
                for task in tasks:
                    if not task.done():
                        task.cancel()

            run.finished_at = self._clock()
            self._store.stamp(run.finished_at)

            self._log.info(
                "collection_cycle_completed",
                extra={
                    "trigger": run.trigger.value,
                    "succeeded": len(run.succeeded),
                    "failed": len(run.failed),
                    "duration_ms": int((time.monotonic() - start_time) * 1000),
                },
            )
            return run
        finally:
            reset_run_id(token)
            self._finish(run)

    async def _visit_target(self, target: SiteTarget) -> tuple[str, VisitOutcome]:
        try:
            record = await self._visit_job.execute(
                target.url, target.config, site_key=target.site_key
            )
        except VisitError as e:
            return target.site_key, e
        return target.site_key, record

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                self.start_cycle(CollectionTrigger.PERIODIC)
            except BusyError:
                continue

    def __repr__(self) -> str:
        return (
            f"CollectionScheduler(state={self._state.value!r}, "
            f"targets={len(self._targets)}, interval={self._interval}s)"
        )
