"""
Test cases for the scheduler service.
Covers cadence bookkeeping, the driver tick, single-flight cycles and sweeps.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from conftest import make_release
from scheduler.errors import CycleInProgressError
from scheduler.models import CycleSummary, RelationResolution, ScheduleEntry
from scheduler.scheduler_service import SchedulerService
from tracker.models import Cadence, RelationAction


def summary_for(account_id, **overrides):
    return CycleSummary(cycle_id=f"check_{account_id}", account_id=account_id, **overrides)


def entry_for(account_id, next_check, cadence=Cadence.HOURLY):
    return ScheduleEntry(account_id=account_id, cadence=cadence, next_check=next_check)


@pytest.fixture
def service(scheduler_config, store, mock_listing_client):
    """Scheduler service over the in-memory store."""
    return SchedulerService(scheduler_config, store, mock_listing_client)


class TestLifecycle:
    """Test cases for start and stop."""

    def test_not_started_on_construction(self, service):
        assert service.running is False
        assert service.scheduler.running is False
        assert service.schedule == {}

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, service, store):
        await store.insert_release(make_release("Hollow Knight"))

        with patch.object(service.scheduler, 'start') as mock_start:
            await service.start()
            await service.start()

        mock_start.assert_called_once()
        assert service.running is True
        assert "acct-1" in service.schedule
        job_ids = {job.id for job in service.scheduler.get_jobs()}
        assert job_ids == {"schedule_tick", "cache_refresh", "title_normalization"}

    @pytest.mark.asyncio
    async def test_first_cache_refresh_uses_scheduler_timezone(self, service, scheduler_config):
        """The delayed first refresh is computed in the scheduler's timezone, not host local time."""
        before = datetime.now(timezone.utc)

        with patch.object(service.scheduler, 'start'):
            await service.start()

        first_run = service.scheduler.get_job("cache_refresh").next_run_time
        delay = timedelta(seconds=scheduler_config.cache_refresh_initial_delay_seconds)
        assert first_run.tzinfo is not None
        assert before + delay <= first_run <= datetime.now(timezone.utc) + delay

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, service):
        with patch.object(service.scheduler, 'start'):
            await service.start()

        service.stop()
        service.stop()

        assert service.running is False
        assert service.is_cancelled() is True

    def test_stop_when_not_running(self, service):
        service.stop()
        assert service.running is False
        assert service.is_cancelled() is False


class TestSchedule:
    """Test cases for per-account cadence bookkeeping."""

    @pytest.mark.asyncio
    async def test_load_schedule(self, service, store, now):
        last = now - timedelta(hours=2)
        await store.insert_release(make_release("Hollow Knight", check_frequency=Cadence.DAILY, last_checked=last))
        await store.insert_release(make_release("Celeste", check_frequency=Cadence.HOURLY))
        await store.insert_release(make_release("Stardew Valley", account_id="acct-2",
                                                check_frequency=Cadence.WEEKLY))
        await store.insert_release(make_release("Terraria", account_id="acct-3",
                                                check_frequency=Cadence.MANUAL))

        schedule = await service.load_schedule(now=now)

        assert set(schedule) == {"acct-1", "acct-2"}
        assert schedule["acct-1"].cadence == Cadence.HOURLY
        assert schedule["acct-1"].next_check == last + timedelta(hours=1)
        assert schedule["acct-2"].cadence == Cadence.WEEKLY
        assert schedule["acct-2"].next_check == now + timedelta(weeks=1)

    @pytest.mark.asyncio
    async def test_refresh_schedule_follows_cadence_changes(self, service, store, now):
        release = make_release("Hollow Knight", check_frequency=Cadence.DAILY)
        await store.insert_release(release)

        entry = await service.refresh_schedule("acct-1", now=now)
        assert entry.cadence == Cadence.DAILY
        assert entry.next_check == now + timedelta(days=1)

        await store.update_release_fields(release.release_id, {"check_frequency": Cadence.HOURLY})
        entry = await service.refresh_schedule("acct-1", now=now)
        assert entry.cadence == Cadence.HOURLY
        assert service.schedule["acct-1"].next_check == now + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_refresh_schedule_removes_manual_accounts(self, service, store, now):
        release = make_release("Hollow Knight", check_frequency=Cadence.DAILY)
        await store.insert_release(release)
        await service.refresh_schedule("acct-1", now=now)

        await store.update_release_fields(release.release_id, {"check_frequency": Cadence.MANUAL})
        entry = await service.refresh_schedule("acct-1", now=now)

        assert entry is None
        assert "acct-1" not in service.schedule

    def test_status_is_sorted_and_limited(self, service, now):
        service.schedule = {
            "late": entry_for("late", now + timedelta(hours=3)),
            "soon": entry_for("soon", now + timedelta(minutes=5)),
            "mid": entry_for("mid", now + timedelta(hours=1)),
        }

        status = service.status()

        assert status["running"] is False
        assert status["scheduled_accounts"] == 3
        assert [e["account_id"] for e in status["next_checks"]] == ["soon", "mid"]


class TestTick:
    """Test cases for the driver tick."""

    @pytest.mark.asyncio
    async def test_never_runs_before_next_check(self, service, now):
        service.schedule = {"acct-1": entry_for("acct-1", now + timedelta(hours=1))}

        with patch.object(service.checker, 'check_account', AsyncMock(return_value=summary_for("acct-1"))) as check:
            assert await service.tick(now) == []
            check.assert_not_awaited()

            summaries = await service.tick(now + timedelta(hours=1))

        assert len(summaries) == 1
        check.assert_awaited_once()
        assert service.schedule["acct-1"].last_check == now + timedelta(hours=1)
        assert service.schedule["acct-1"].next_check == now + timedelta(hours=2)

    @pytest.mark.asyncio
    async def test_failing_account_does_not_block_others(self, service, now):
        service.schedule = {
            "acct-1": entry_for("acct-1", now - timedelta(minutes=2)),
            "acct-2": entry_for("acct-2", now - timedelta(minutes=1)),
        }

        async def check(account_id, is_cancelled=None):
            if account_id == "acct-1":
                raise RuntimeError("Database unavailable")
            return summary_for(account_id)

        with patch.object(service.checker, 'check_account', side_effect=check):
            summaries = await service.tick(now)

        assert [s.account_id for s in summaries] == ["acct-2"]
        assert service.schedule["acct-1"].next_check == now + timedelta(hours=1)
        assert service.schedule["acct-2"].next_check == now + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_force_check_all_ignores_next_check(self, service, now):
        service.schedule = {
            "acct-1": entry_for("acct-1", now + timedelta(hours=1)),
            "acct-2": entry_for("acct-2", now + timedelta(days=1), Cadence.DAILY),
        }

        with patch.object(service.checker, 'check_account',
                          AsyncMock(side_effect=lambda account_id, is_cancelled=None: summary_for(account_id))):
            summaries = await service.force_check_all(now)

        assert [s.account_id for s in summaries] == ["acct-1", "acct-2"]

    @pytest.mark.asyncio
    async def test_stop_ends_the_tick(self, service, now):
        with patch.object(service.scheduler, 'start'):
            await service.start()
        service.schedule = {
            "acct-1": entry_for("acct-1", now - timedelta(minutes=2)),
            "acct-2": entry_for("acct-2", now - timedelta(minutes=1)),
        }

        async def check(account_id, is_cancelled=None):
            service.stop()
            return summary_for(account_id, discarded=is_cancelled())

        with patch.object(service.checker, 'check_account', side_effect=check) as mock_check:
            summaries = await service.tick(now)

        assert mock_check.await_count == 1
        assert summaries[0].discarded is True
        assert service.schedule["acct-1"].last_check is None


class TestSingleFlight:
    """Test cases for concurrent cycles on one account."""

    @pytest.mark.asyncio
    async def test_second_cycle_is_rejected(self, service, now):
        service.schedule = {"acct-1": entry_for("acct-1", now - timedelta(minutes=1))}
        release_cycle = asyncio.Event()
        started = asyncio.Event()

        async def slow_check(account_id, is_cancelled=None):
            started.set()
            await release_cycle.wait()
            return summary_for(account_id)

        with patch.object(service.checker, 'check_account', side_effect=slow_check) as mock_check:
            first = asyncio.create_task(service.check_now("acct-1"))
            await started.wait()

            with pytest.raises(CycleInProgressError):
                await service.check_now("acct-1")
            assert await service.tick(now) == []

            release_cycle.set()
            summary = await first

        assert summary.account_id == "acct-1"
        assert mock_check.await_count == 1
        assert service.schedule["acct-1"].last_check is not None

    @pytest.mark.asyncio
    async def test_flight_is_released_after_failure(self, service):
        with patch.object(service.checker, 'check_account', AsyncMock(side_effect=RuntimeError("boom"))):
            with pytest.raises(RuntimeError):
                await service.check_now("acct-1")

        assert "acct-1" not in service._in_flight


class TestSweeps:
    """Test cases for the auxiliary jobs."""

    @pytest.mark.asyncio
    async def test_normalize_titles(self, service, store):
        noisy = make_release("Hollow Knight v1.5.78 [FitGirl Repack]")
        missing = make_release("Celeste", original_title=None)
        clean = make_release("Stardew Valley", cleaned_title="stardew valley")
        for release in (noisy, missing, clean):
            await store.insert_release(release)

        counts = await service.normalize_titles()

        assert counts == {"processed": 3, "updated": 2, "skipped": 1}
        stored = await store.get_release(noisy.release_id)
        assert stored.cleaned_title == "hollow knight"
        assert stored.original_title == "Hollow Knight v1.5.78 [FitGirl Repack]"
        assert stored.title == "Hollow Knight v1.5.78 [FitGirl Repack]"
        assert (await store.get_release(missing.release_id)).original_title == "Celeste"

        again = await service.normalize_titles()
        assert again == {"processed": 3, "updated": 0, "skipped": 3}

    @pytest.mark.asyncio
    async def test_title_normalization_job(self, service, store):
        await store.insert_release(make_release("Celeste"))

        result = await service._title_normalization_job()

        assert result["job_id"].startswith("title_normalization_")
        assert result["updated"] == 1
        assert "duration" in result

    @pytest.mark.asyncio
    async def test_cache_refresh_job(self, service, mock_listing_client):
        mock_listing_client.refresh_cache.return_value = {"steamrip": 12, "fitgirl": -1}

        result = await service._cache_refresh_job()

        assert result["sources"] == 2
        assert result["failed_sources"] == 1


class TestConsumerSurface:
    """Test cases for actions that change the schedule."""

    @pytest.mark.asyncio
    async def test_track_separate_refreshes_schedule(self, service, store):
        created = make_release("Risk of Rain 2", account_id="acct-2")
        await store.insert_release(created)
        resolution = RelationResolution(
            candidate_id="c1", action=RelationAction.TRACK_SEPARATE,
            release_id="r1", new_release_id=created.release_id
        )

        with patch.object(service.matcher, 'resolve', AsyncMock(return_value=resolution)):
            result = await service.resolve_relation("c1", RelationAction.TRACK_SEPARATE)

        assert result == resolution
        assert service.schedule["acct-2"].cadence == Cadence.DAILY
