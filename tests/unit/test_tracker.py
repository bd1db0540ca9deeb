"""Tests for durable sync job tracking."""
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlmodel import Session

from acusync.jobs.tracker import JobNotFound, JobNotResumable, JobTracker, job_errors
from acusync.models.sync import SyncJob

FEB_START = datetime(2025, 2, 1)
FEB_END = datetime(2025, 2, 28, 23, 59, 59)


@pytest.fixture
def tracker(engine):
    return JobTracker(engine, expiry_minutes=30, max_errors=3)


def _age(engine, job_id, minutes):
    with Session(engine) as s:
        job = s.get(SyncJob, job_id)
        job.created_at = datetime.utcnow() - timedelta(minutes=minutes)
        s.add(job)
        s.commit()


class TestSubmit:
    def test_new_job_pending(self, tracker):
        job, reused = tracker.submit("payment", FEB_START, FEB_END, source="manual_sync")
        assert reused is False
        assert job.status == "pending"
        assert job.kind == "payment"

    def test_overlapping_active_job_reused(self, tracker):
        first, _ = tracker.submit("payment", FEB_START, FEB_END)
        second, reused = tracker.submit("payment", datetime(2025, 2, 15), datetime(2025, 3, 15))
        assert reused is True
        assert second.id == first.id

    def test_other_entity_not_reused(self, tracker):
        first, _ = tracker.submit("payment", FEB_START, FEB_END)
        second, reused = tracker.submit("invoice", FEB_START, FEB_END)
        assert reused is False
        assert second.id != first.id

    def test_disjoint_window_not_reused(self, tracker):
        tracker.submit("payment", FEB_START, FEB_END)
        _, reused = tracker.submit("payment", datetime(2025, 3, 1), datetime(2025, 3, 31))
        assert reused is False

    def test_date_field_stored(self, tracker):
        job, _ = tracker.submit("payment", FEB_START, FEB_END)
        assert job.date_field == "ApplicationDate"

    def test_other_date_field_not_reused(self, tracker):
        incremental, _ = tracker.submit(
            "payment", FEB_START, FEB_END, source="scheduled_sync", date_field="LastModifiedDateTime"
        )
        job, reused = tracker.submit("payment", FEB_START, FEB_END)
        assert reused is False
        assert job.id != incremental.id

        _, reused = tracker.submit("payment", FEB_START, FEB_END, date_field="LastModifiedDateTime")
        assert reused is True

    def test_finished_job_not_reused(self, tracker):
        first, _ = tracker.submit("payment", FEB_START, FEB_END)
        tracker.complete(first.id)
        _, reused = tracker.submit("payment", FEB_START, FEB_END)
        assert reused is False

    def test_stale_job_expired_then_replaced(self, tracker, engine):
        first, _ = tracker.submit("payment", FEB_START, FEB_END)
        tracker.start(first.id)
        _age(engine, first.id, 45)

        second, reused = tracker.submit("payment", FEB_START, FEB_END)
        assert reused is False
        old = tracker.poll(first.id)
        assert old.status == "failed"
        assert old.error_message == "Auto-expired: still running after 30 minutes; replaced by new job"
        assert second.status == "pending"


class TestProgress:
    def test_start_marks_running(self, tracker):
        job, _ = tracker.submit("payment", FEB_START, FEB_END)
        job = tracker.start(job.id, total=12)
        assert job.status == "running"
        assert job.started_at is not None
        assert job.total == 12

    def test_counters_never_decrease(self, tracker):
        job, _ = tracker.submit("payment", FEB_START, FEB_END)
        tracker.advance(job.id, created=5, current=5)
        job = tracker.advance(job.id, created=3, current=7, current_item="payment 000007")
        assert job.created == 5
        assert job.current == 7
        assert job.current_item == "payment 000007"

    def test_unknown_counter_rejected(self, tracker):
        job, _ = tracker.submit("payment", FEB_START, FEB_END)
        with pytest.raises(TypeError):
            tracker.advance(job.id, deleted=1)

    def test_errors_capped(self, tracker):
        job, _ = tracker.submit("payment", FEB_START, FEB_END)
        tracker.advance(job.id, errors=["e1", "e2"])
        job = tracker.advance(job.id, errors=["e3", "e4"])
        assert job_errors(job) == ["e1", "e2", "e3"]

    def test_missing_job(self, tracker):
        with pytest.raises(JobNotFound):
            tracker.advance(999, created=1)


class TestFinish:
    def test_complete(self, tracker):
        job, _ = tracker.submit("payment", FEB_START, FEB_END)
        tracker.start(job.id)
        job = tracker.complete(job.id, created=12)
        assert job.status == "completed"
        assert job.created == 12
        assert job.finished_at is not None

    def test_fail_keeps_message(self, tracker):
        job, _ = tracker.submit("payment", FEB_START, FEB_END)
        job = tracker.fail(job.id, "Acumatica API login limit reached")
        assert job.status == "failed"
        assert job.error_message == "Acumatica API login limit reached"

    def test_expired_job_stays_failed(self, tracker, engine):
        job, _ = tracker.submit("payment", FEB_START, FEB_END)
        _age(engine, job.id, 45)
        tracker.expire_stale()
        job = tracker.complete(job.id, created=4)
        assert job.status == "failed"
        assert job.error_message.startswith("Auto-expired")
        assert job.created == 4


class TestCancel:
    def test_pending_job_fails_immediately(self, tracker):
        job, _ = tracker.submit("payment", FEB_START, FEB_END)
        job = tracker.cancel(job.id)
        assert job.status == "failed"
        assert job.error_message == "Cancelled before start"
        assert tracker.is_cancelled(job.id)

    def test_running_job_flagged(self, tracker):
        job, _ = tracker.submit("payment", FEB_START, FEB_END)
        tracker.start(job.id)
        assert not tracker.is_cancelled(job.id)
        job = tracker.cancel(job.id)
        assert job.status == "running"
        assert job.cancel_requested is True
        assert tracker.is_cancelled(job.id)

    def test_finished_job_untouched(self, tracker):
        job, _ = tracker.submit("payment", FEB_START, FEB_END)
        tracker.complete(job.id)
        job = tracker.cancel(job.id)
        assert job.status == "completed"
        assert job.cancel_requested is False


class TestPolling:
    def test_recent_newest_first(self, tracker, engine):
        first, _ = tracker.submit("payment", FEB_START, FEB_END)
        _age(engine, first.id, 1)
        second, _ = tracker.submit("invoice", FEB_START, FEB_END)
        assert [j.id for j in tracker.recent(limit=1)] == [second.id]
        assert {j.id for j in tracker.recent()} == {first.id, second.id}

    @pytest.mark.asyncio
    async def test_wait_returns_terminal_job(self, tracker):
        job, _ = tracker.submit("payment", FEB_START, FEB_END)
        tracker.complete(job.id)
        result = await tracker.wait_for_completion(job.id)
        assert result.status == "completed"

    @pytest.mark.asyncio
    async def test_wait_backs_off_and_gives_up(self, tracker):
        job, _ = tracker.submit("payment", FEB_START, FEB_END)
        with patch("acusync.jobs.tracker.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await tracker.wait_for_completion(job.id, initial_delay=1.0, max_delay=4.0, max_attempts=4)
        assert result.status == "pending"
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 4.0, 4.0]

    @pytest.mark.asyncio
    async def test_wait_for_missing_job(self, tracker):
        with pytest.raises(JobNotFound):
            await tracker.wait_for_completion(12345)


class TestResume:
    def test_cancelled_job_back_to_pending_with_progress(self, tracker):
        job, _ = tracker.submit("payment", FEB_START, FEB_END)
        tracker.start(job.id)
        tracker.advance(job.id, created=5, current=5, resume_offset=5, errors=["e1"])
        tracker.cancel(job.id)
        tracker.fail(job.id, "Cancelled by user")

        job, reused = tracker.resume(job.id)
        assert reused is False
        assert job.status == "pending"
        assert job.cancel_requested is False
        assert job.error_message is None
        assert job.finished_at is None
        assert job.resumed_at is not None
        assert (job.created, job.resume_offset) == (5, 5)
        assert job_errors(job) == ["e1"]
        assert not tracker.is_cancelled(job.id)

    def test_expired_job_resumable_without_expiring_again(self, tracker, engine):
        job, _ = tracker.submit("payment", FEB_START, FEB_END)
        tracker.start(job.id)
        _age(engine, job.id, 45)
        tracker.expire_stale()

        job, reused = tracker.resume(job.id)
        assert reused is False
        assert tracker.expire_stale() == 0
        assert tracker.poll(job.id).status == "pending"

    def test_completed_job_not_resumable(self, tracker):
        job, _ = tracker.submit("payment", FEB_START, FEB_END)
        tracker.complete(job.id)
        with pytest.raises(JobNotResumable):
            tracker.resume(job.id)

    def test_active_job_returned_as_is(self, tracker):
        job, _ = tracker.submit("payment", FEB_START, FEB_END)
        tracker.start(job.id)
        again, reused = tracker.resume(job.id)
        assert reused is True
        assert again.status == "running"

    def test_window_taken_by_newer_job(self, tracker):
        old, _ = tracker.submit("payment", FEB_START, FEB_END)
        tracker.fail(old.id, "boom")
        newer, _ = tracker.submit("payment", FEB_START, FEB_END)

        job, reused = tracker.resume(old.id)
        assert reused is True
        assert job.id == newer.id
        assert tracker.poll(old.id).status == "failed"

    def test_missing_job(self, tracker):
        with pytest.raises(JobNotFound):
            tracker.resume(404)
