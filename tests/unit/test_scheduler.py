"""Tests for APScheduler job configuration and job bodies."""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from acusync.engine import Failure, JobHandle
from acusync.scheduler.jobs import _expire_stale_jobs, _incremental_sync, build_scheduler
from acusync.sync_service import SyncResult


class TestBuildScheduler:
    def test_returns_scheduler(self):
        scheduler = build_scheduler(MagicMock())
        assert isinstance(scheduler, AsyncIOScheduler)

    def test_jobs_registered(self):
        scheduler = build_scheduler(MagicMock())
        job_ids = {job.id for job in scheduler.get_jobs()}
        assert job_ids == {"incremental_sync", "expire_stale_jobs"}

    def test_incremental_sync_is_cron(self):
        scheduler = build_scheduler(MagicMock())
        job = next(j for j in scheduler.get_jobs() if j.id == "incremental_sync")
        assert job.trigger.__class__.__name__ == "CronTrigger"
        assert job.max_instances == 1

    def test_interval_from_settings(self):
        """Scheduler respects the SCHEDULED_SYNC_MINUTES setting."""
        with patch("acusync.scheduler.jobs.get_settings") as mock_settings:
            mock_settings.return_value.scheduled_sync_minutes = 10
            mock_settings.return_value.job_expiry_minutes = 30
            scheduler = build_scheduler(MagicMock())

        job = next(j for j in scheduler.get_jobs() if j.id == "incremental_sync")
        fields = {f.name: f for f in job.trigger.fields}
        assert str(fields["minute"]) == "*/10"

    def test_scheduler_not_running_on_creation(self):
        """build_scheduler should not auto-start."""
        scheduler = build_scheduler(MagicMock())
        assert not scheduler.running


# ─── Job bodies ───────────────────────────────────────────────────────────────

class TestIncrementalSync:
    @pytest.fixture
    def settings(self):
        with patch("acusync.scheduler.jobs.get_settings") as mock_settings:
            mock_settings.return_value.scheduled_lookback_hours = 2
            mock_settings.return_value.job_expiry_minutes = 30
            yield mock_settings.return_value

    @pytest.mark.asyncio
    async def test_syncs_every_entity_by_last_modified(self, settings):
        engine = MagicMock()
        engine.sync_window = AsyncMock(return_value=SyncResult(job_id=1, entity="payment", status="completed"))

        await _incremental_sync(engine)

        entities = [c.args[0] for c in engine.sync_window.await_args_list]
        assert entities == ["payment", "invoice"]
        for call in engine.sync_window.await_args_list:
            assert call.kwargs["date_field"] == "LastModifiedDateTime"
            assert call.kwargs["source"] == "scheduled_sync"
            start, end = call.args[1], call.args[2]
            assert (end - start).total_seconds() == 2 * 3600

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_other_entities(self, settings):
        engine = MagicMock()
        engine.sync_window = AsyncMock(side_effect=[
            Failure(code="login_limit_reached", message="limit"),
            JobHandle(job_id=7, status="running"),
        ])
        await _incremental_sync(engine)
        assert engine.sync_window.await_count == 2


class TestExpireStaleJobs:
    @pytest.mark.asyncio
    async def test_calls_tracker(self):
        engine = MagicMock()
        await _expire_stale_jobs(engine)
        engine.tracker.expire_stale.assert_called_once()

    @pytest.mark.asyncio
    async def test_errors_logged_not_raised(self):
        engine = MagicMock()
        engine.tracker.expire_stale.side_effect = RuntimeError("db locked")
        await _expire_stale_jobs(engine)
