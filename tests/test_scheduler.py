"""
Tests for the CollectionScheduler.

Validates:
- Fan-out/fan-in over the built-in targets with per-site merging
- Failed visits leave the previous record in place
- Single-flight guard: concurrent guarded triggers get BusyError
- Ad-hoc visits: URL validation, busy refusal, never stored
- Periodic timer start/stop and teardown through the SessionManager
- run_id propagation into visit tasks
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from harvester.collection.cookie_store import CookieStore
from harvester.collection.models import (
    CollectionRun,
    CollectionTrigger,
    CookieRecord,
    SchedulerState,
)
from harvester.collection.scheduler import CollectionScheduler
from harvester.exceptions import (
    BusyError,
    InvalidTargetURLError,
    ValidationRejected,
    VisitError,
)
from harvester.observability.logging_config import get_run_id
from harvester.testing.mock_browser import MockSite, create_mock_session_manager, make_cookies

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

ANIMEPAHE = "https://animepahe.com"
PAHEWIN = "https://pahe.win"
KWIK = "https://kwik.si"


def _scheduler(sites=None, *, default=None, **kwargs):
    sessions = create_mock_session_manager(sites, default=default)
    store = CookieStore()
    ticks = itertools.count(1)
    scheduler = CollectionScheduler(
        sessions,
        store,
        clock=lambda: T0 + timedelta(seconds=next(ticks)),
        sleep=AsyncMock(),
        **kwargs,
    )
    return scheduler, sessions, store


class _RecordingJob:
    """VisitJob stand-in that records the run_id each visit sees."""

    def __init__(self):
        self.seen: list = []

    async def execute(self, target_url, config, *, site_key=None):
        self.seen.append(get_run_id())
        await asyncio.sleep(0)
        return CookieRecord(
            site_key=site_key or target_url,
            cookie_header="a=1",
            cookie_count=1,
            collected_at=T0,
            url=target_url,
        )


# ─── Collection Cycle Tests ──────────────────────────────────────────


class TestCollectionCycle:
    """Tests for a guarded cycle over the built-in targets."""

    @pytest.mark.asyncio
    async def test_mixed_outcomes(self):
        """Three sites: 3 cookies, a timeout, 5 cookies."""
        scheduler, sessions, store = _scheduler({
            ANIMEPAHE: MockSite(cookies=make_cookies(3)),
            PAHEWIN: MockSite(goto_error=TimeoutError("Navigation timeout")),
            KWIK: MockSite(cookies=make_cookies(5)),
        })

        run = await scheduler.trigger_immediate()

        assert sorted(run.succeeded) == ["animepahe", "kwik"]
        assert run.failed == ["pahewin"]
        assert isinstance(run.outcomes["pahewin"], VisitError)

        snapshot = store.snapshot()
        assert snapshot.cookie_header("animepahe") == "c0=v0; c1=v1; c2=v2"
        assert snapshot.records["kwik"].cookie_count == 5
        assert "pahewin" not in snapshot.records
        assert snapshot.last_updated == run.finished_at
        assert sessions.open_contexts == 0

    @pytest.mark.asyncio
    async def test_failed_visit_keeps_previous_record(self):
        scheduler, sessions, store = _scheduler(default=MockSite(cookies=make_cookies(2)))
        await scheduler.trigger_immediate()
        previous = store.get("pahewin")
        first_stamp = store.last_updated

        sessions.mock_browser.sites[PAHEWIN] = MockSite(goto_error=TimeoutError("slow"))
        run = await scheduler.trigger_periodic()

        assert run.failed == ["pahewin"]
        assert store.get("pahewin") is previous
        assert store.get("animepahe").collected_at > previous.collected_at
        assert store.last_updated > first_stamp

    @pytest.mark.asyncio
    async def test_all_failed_still_stamps(self):
        scheduler, _, store = _scheduler(default=MockSite(goto_error=TimeoutError("down")))

        run = await scheduler.trigger_manual()

        assert len(run.failed) == 3
        assert len(store) == 0
        assert store.last_updated == run.finished_at

    @pytest.mark.asyncio
    async def test_returns_to_idle(self):
        scheduler, _, _ = _scheduler()
        await scheduler.trigger_immediate()

        assert scheduler.state is SchedulerState.IDLE
        assert scheduler.active_trigger is None

    @pytest.mark.asyncio
    async def test_custom_targets(self):
        from harvester.browser.config import SiteTarget

        scheduler, _, store = _scheduler(
            targets=[SiteTarget(site_key="only", url="https://only.example")]
        )
        run = await scheduler.trigger_manual()

        assert list(run.outcomes) == ["only"]
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_adhoc_is_not_a_guarded_trigger(self):
        scheduler, _, _ = _scheduler()
        with pytest.raises(ValueError):
            await scheduler.run_cycle(CollectionTrigger.ADHOC)

    @pytest.mark.asyncio
    async def test_run_id_propagates_to_visits(self):
        job = _RecordingJob()
        scheduler, _, _ = _scheduler(visit_job=job)
        before = get_run_id()

        run = await scheduler.trigger_manual()

        assert run.run_id.startswith("run-")
        assert job.seen == [run.run_id] * 3
        assert get_run_id() == before

    @pytest.mark.asyncio
    async def test_next_collection_at(self):
        scheduler, _, store = _scheduler(interval_seconds=600)
        assert scheduler.next_collection_at is None

        await scheduler.trigger_immediate()
        assert scheduler.next_collection_at == store.last_updated + timedelta(seconds=600)


# ─── Single-flight Tests ─────────────────────────────────────────────


class TestSingleFlight:
    """Tests for the guarded-trigger busy flag."""

    @pytest.mark.asyncio
    async def test_concurrent_triggers_one_wins(self):
        scheduler, _, store = _scheduler(default=MockSite(delay=0.05))

        results = await asyncio.gather(
            *(scheduler.trigger_manual() for _ in range(5)),
            return_exceptions=True,
        )

        runs = [r for r in results if isinstance(r, CollectionRun)]
        busy = [r for r in results if isinstance(r, BusyError)]
        assert len(runs) == 1
        assert len(busy) == 4
        assert store.last_updated == runs[0].finished_at

    @pytest.mark.asyncio
    async def test_trigger_while_running_raises(self):
        scheduler, _, _ = _scheduler(default=MockSite(delay=0.05))

        task = scheduler.start_cycle(CollectionTrigger.STARTUP)
        assert scheduler.is_running is True
        assert scheduler.active_trigger == "startup"

        with pytest.raises(BusyError) as exc_info:
            await scheduler.trigger_periodic()
        assert exc_info.value.active_trigger == "startup"

        await task
        assert scheduler.is_running is False

    @pytest.mark.asyncio
    async def test_busy_does_not_merge_twice(self):
        scheduler, _, store = _scheduler(default=MockSite(delay=0.05))

        task = scheduler.start_cycle(CollectionTrigger.MANUAL)
        with pytest.raises(BusyError):
            scheduler.start_cycle(CollectionTrigger.MANUAL)
        run = await task

        assert store.last_updated == run.finished_at
        assert len(store) == 3

    @pytest.mark.asyncio
    async def test_cancelled_cycle_releases_guard(self):
        scheduler, sessions, _ = _scheduler(default=MockSite(delay=1.0))

        task = scheduler.start_cycle(CollectionTrigger.MANUAL)
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert scheduler.is_running is False
        assert sessions.open_contexts == 0

    @pytest.mark.asyncio
    async def test_background_cycle_failure_is_logged(self, caplog):
        job = AsyncMock()
        job.execute.side_effect = RuntimeError("driver protocol error")
        scheduler, _, store = _scheduler(visit_job=job)

        with caplog.at_level(logging.ERROR, logger="harvester.collection.scheduler"):
            task = scheduler.start_cycle(CollectionTrigger.PERIODIC)
            with pytest.raises(RuntimeError):
                await task

        failures = [r for r in caplog.records if r.getMessage() == "collection_cycle_failed"]
        assert len(failures) == 1
        assert "driver protocol error" in failures[0].error
        assert scheduler.is_running is False
        assert store.last_updated is None

    @pytest.mark.asyncio
    async def test_wait_idle(self):
        scheduler, _, _ = _scheduler(default=MockSite(delay=0.2))
        assert await scheduler.wait_idle(0.01) is True

        task = scheduler.start_cycle(CollectionTrigger.MANUAL)
        assert await scheduler.wait_idle(0.01) is False
        assert await scheduler.wait_idle(2.0) is True
        await task


# ─── Ad-hoc Tests ────────────────────────────────────────────────────


class TestCustomJob:
    """Tests for trigger_custom()."""

    @pytest.mark.asyncio
    async def test_success_returns_data_and_is_not_stored(self):
        scheduler, _, store = _scheduler({
            "https://example.com": MockSite(cookies=make_cookies(2)),
        })

        result = await scheduler.trigger_custom("https://example.com", {"timeout": 30000})

        assert result.success is True
        assert result.record.cookie_header == "c0=v0; c1=v1"
        assert result.to_dict()["cookieCount"] == 2
        assert len(store) == 0
        assert store.last_updated is None

    @pytest.mark.asyncio
    async def test_failure_returns_data(self):
        scheduler, _, _ = _scheduler({
            "https://example.com": MockSite(goto_error=TimeoutError("Navigation timeout")),
        })

        result = await scheduler.trigger_custom("https://example.com")

        assert result.success is False
        payload = result.to_dict()
        assert payload["success"] is False
        assert "Navigation timeout" in payload["error"]
        assert payload["url"] == "https://example.com"

    @pytest.mark.asyncio
    async def test_non_https_rejected_before_browser_work(self):
        scheduler, sessions, _ = _scheduler()

        with pytest.raises(InvalidTargetURLError, match="Only HTTPS"):
            await scheduler.trigger_custom("http://example.com")

        assert sessions.mock_browser.contexts == []

    @pytest.mark.asyncio
    async def test_non_mapping_options_rejected(self):
        scheduler, sessions, _ = _scheduler()

        with pytest.raises(ValidationRejected):
            await scheduler.trigger_custom("https://example.com", "timeout=1")  # type: ignore[arg-type]

        assert sessions.mock_browser.contexts == []

    @pytest.mark.asyncio
    async def test_rejected_while_cycle_running(self):
        scheduler, sessions, _ = _scheduler(default=MockSite(delay=0.05))

        task = scheduler.start_cycle(CollectionTrigger.PERIODIC)
        with pytest.raises(BusyError, match="busy"):
            await scheduler.trigger_custom("https://example.com")
        await task

        assert len(sessions.mock_browser.contexts) == 3

    @pytest.mark.asyncio
    async def test_custom_jobs_interleave(self):
        scheduler, _, _ = _scheduler(default=MockSite(delay=0.02, cookies=make_cookies(1)))

        results = await asyncio.gather(
            scheduler.trigger_custom("https://a.example"),
            scheduler.trigger_custom("https://b.example"),
        )

        assert all(r.success for r in results)
        assert scheduler.state is SchedulerState.IDLE

    @pytest.mark.asyncio
    async def test_custom_job_does_not_block_cycles(self):
        scheduler, _, _ = _scheduler(default=MockSite(delay=0.05))

        custom = asyncio.create_task(scheduler.trigger_custom("https://example.com"))
        await asyncio.sleep(0.01)
        run = await scheduler.trigger_manual()
        result = await custom

        assert len(run.succeeded) == 3
        assert result.success is True

    @pytest.mark.asyncio
    async def test_adhoc_run_id(self):
        job = _RecordingJob()
        scheduler, _, _ = _scheduler(visit_job=job)

        await scheduler.trigger_custom("https://example.com")

        assert job.seen[0].startswith("adhoc-")


# ─── Periodic Timer Tests ────────────────────────────────────────────


class TestPeriodic:
    """Tests for the recurring timer."""

    @pytest.mark.asyncio
    async def test_periodic_cycle_runs(self):
        scheduler, _, store = _scheduler(interval_seconds=0.01)

        scheduler.start_periodic()
        for _ in range(100):
            if store.last_updated is not None:
                break
            await asyncio.sleep(0.01)

        await scheduler.stop_periodic()
        await scheduler.wait_idle(1.0)

        assert store.last_updated is not None
        assert scheduler.periodic_active is False

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        scheduler, _, _ = _scheduler(interval_seconds=60)

        scheduler.start_periodic()
        first = scheduler._periodic_task
        scheduler.start_periodic()

        assert scheduler._periodic_task is first
        await scheduler.stop_periodic()

    @pytest.mark.asyncio
    async def test_busy_tick_is_skipped(self):
        scheduler, _, _ = _scheduler(default=MockSite(delay=0.1), interval_seconds=0.01)

        task = scheduler.start_cycle(CollectionTrigger.MANUAL)
        scheduler.start_periodic()
        await asyncio.sleep(0.05)

        assert scheduler.periodic_active is True
        assert scheduler.active_trigger == "manual"

        await scheduler.stop_periodic()
        await task
        await scheduler.wait_idle(1.0)

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        scheduler, _, _ = _scheduler()
        await scheduler.stop_periodic()
        assert scheduler.periodic_active is False

    @pytest.mark.asyncio
    async def test_no_start_after_session_shutdown(self):
        scheduler, sessions, _ = _scheduler(interval_seconds=60)
        await sessions.shutdown()

        scheduler.start_periodic()

        assert scheduler.periodic_active is False

    @pytest.mark.asyncio
    async def test_session_shutdown_stops_timer(self):
        scheduler, sessions, _ = _scheduler(interval_seconds=60)
        scheduler.start_periodic()

        await sessions.shutdown()

        assert scheduler.periodic_active is False
