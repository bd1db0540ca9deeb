"""
Durable state of long-running sync jobs.

States: pending -> running -> completed | failed. A pending or running job
older than the expiry ceiling is failed with an "Auto-expired" message
before any new job is accepted, so a worker that died mid-run never blocks
its window forever.

A failed job (cancelled, expired, or stopped by an error) can be resumed:
it goes back to pending with its counters and ``resume_offset`` intact and
the worker continues from the first page it had not finished.

Counters only ever increase: advance() takes the max of the stored and the
reported value. Cancellation is cooperative; the worker checks
is_cancelled() at page boundaries.
"""
import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlmodel import Session, select

from acusync.acumatica.kinds import get_entity
from acusync.models.sync import SyncJob

logger = logging.getLogger(__name__)

ACTIVE_STATES = ("pending", "running")
TERMINAL_STATES = ("completed", "failed")
COUNTERS = ("created", "updated", "applications_synced", "files_synced", "current", "total", "resume_offset")


def job_errors(job: SyncJob) -> List[str]:
    return json.loads(job.errors_json or "[]")


class JobNotFound(LookupError):
    pass


class JobNotResumable(ValueError):
    pass


class JobTracker:
    def __init__(self, engine, *, expiry_minutes: int = 30, max_errors: int = 50):
        self.engine = engine
        self.expiry = timedelta(minutes=expiry_minutes)
        self.max_errors = max_errors

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def submit(
        self,
        entity: str,
        start: datetime,
        end: datetime,
        *,
        source: str = "manual_sync",
        date_field: Optional[str] = None,
    ) -> Tuple[SyncJob, bool]:
        """
        Create a pending job, or return the active one whose window overlaps.

        Only a job reading the same ``date_field`` counts as overlapping: an
        incremental sync over LastModifiedDateTime says nothing about the
        documents dated in a window.

        Returns:
            (job, reused). reused is True when an existing job was returned.
        """
        date_field = date_field or get_entity(entity).date_field
        self.expire_stale()
        with Session(self.engine) as s:
            existing = self._overlapping(s, entity, date_field, start, end)
            if existing:
                logger.info("Reusing job %s for %s %s..%s", existing.id, entity, start, end)
                return existing, True

            job = SyncJob(
                kind=entity, window_start=start, window_end=end, date_field=date_field, source=source
            )
            s.add(job)
            s.commit()
            s.refresh(job)
        logger.info("Submitted job %s for %s %s %s..%s", job.id, entity, date_field, start, end)
        return job, False

    def resume(self, job_id: int) -> Tuple[SyncJob, bool]:
        """
        Put a failed job back in the queue, keeping its progress.

        Returns:
            (job, reused) like submit(). An active job is returned as is, and
            so is another active job that took over the window meanwhile.

        Raises:
            JobNotFound: no such job.
            JobNotResumable: the job already completed.
        """
        self.expire_stale()
        with Session(self.engine) as s:
            job = self._get(s, job_id)
            if job.status in ACTIVE_STATES:
                return job, True
            if job.status == "completed":
                raise JobNotResumable(f"Job {job_id} already completed")
            existing = self._overlapping(s, job.kind, job.date_field, job.window_start, job.window_end)
            if existing:
                logger.info("Job %s window is taken by job %s", job_id, existing.id)
                return existing, True

            job.status = "pending"
            job.cancel_requested = False
            job.error_message = None
            job.finished_at = None
            job.resumed_at = datetime.utcnow()
            s.add(job)
            s.commit()
            s.refresh(job)
        logger.info("Resuming job %s from offset %d", job_id, job.resume_offset)
        return job, False

    def start(self, job_id: int, total: int = 0) -> SyncJob:
        with Session(self.engine) as s:
            job = self._get(s, job_id)
            if job.status == "pending":
                job.status = "running"
                job.started_at = job.started_at or datetime.utcnow()
            job.total = max(job.total, total)
            s.add(job)
            s.commit()
            s.refresh(job)
            return job

    def advance(self, job_id: int, *, current_item: Optional[str] = None, errors: Iterable[str] = (), **counters: int) -> SyncJob:
        """Raise progress counters (never lowers them) and append errors."""
        unknown = set(counters) - set(COUNTERS)
        if unknown:
            raise TypeError(f"Unknown job counters: {sorted(unknown)}")
        with Session(self.engine) as s:
            job = self._get(s, job_id)
            self._apply(job, counters, current_item, errors)
            s.add(job)
            s.commit()
            s.refresh(job)
            return job

    def complete(self, job_id: int, **counters: int) -> SyncJob:
        return self._finish(job_id, "completed", None, counters)

    def fail(self, job_id: int, message: str, **counters: int) -> SyncJob:
        return self._finish(job_id, "failed", message, counters)

    def cancel(self, job_id: int) -> SyncJob:
        """Ask the worker to stop. A job nobody has started fails immediately."""
        with Session(self.engine) as s:
            job = self._get(s, job_id)
            if job.status in ACTIVE_STATES:
                job.cancel_requested = True
                if job.status == "pending":
                    job.status = "failed"
                    job.error_message = "Cancelled before start"
                    job.finished_at = datetime.utcnow()
                s.add(job)
                s.commit()
                s.refresh(job)
            return job

    def is_cancelled(self, job_id: int) -> bool:
        """True when the worker should stop: cancel requested or job no longer active."""
        with Session(self.engine) as s:
            job = s.get(SyncJob, job_id)
            return job is None or job.cancel_requested or job.status not in ACTIVE_STATES

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Fail active jobs queued longer ago than the expiry ceiling."""
        now = now or datetime.utcnow()
        cutoff = now - self.expiry
        minutes = int(self.expiry.total_seconds() // 60)
        with Session(self.engine) as s:
            stale = s.exec(
                select(SyncJob)
                .where(SyncJob.status.in_(ACTIVE_STATES))
                .where(func.coalesce(SyncJob.resumed_at, SyncJob.created_at) < cutoff)
            ).all()
            for job in stale:
                job.error_message = (
                    f"Auto-expired: still {job.status} after {minutes} minutes; replaced by new job"
                )
                job.status = "failed"
                job.finished_at = now
                s.add(job)
            s.commit()
        if stale:
            logger.warning("Expired %d stale jobs", len(stale))
        return len(stale)

    # ── Polling ───────────────────────────────────────────────────────────────

    def poll(self, job_id: int) -> Optional[SyncJob]:
        with Session(self.engine) as s:
            return s.get(SyncJob, job_id)

    def recent(self, limit: int = 20) -> List[SyncJob]:
        with Session(self.engine) as s:
            return list(s.exec(select(SyncJob).order_by(SyncJob.created_at.desc()).limit(limit)).all())

    async def wait_for_completion(
        self,
        job_id: int,
        *,
        initial_delay: float = 0.5,
        max_delay: float = 10.0,
        max_attempts: int = 60,
    ) -> SyncJob:
        """
        Poll until the job is terminal, backing off exponentially.

        Returns the last polled state, which may still be active when
        ``max_attempts`` polls were not enough.
        """
        delay = initial_delay
        job = None
        for _ in range(max_attempts):
            job = self.poll(job_id)
            if job is None:
                raise JobNotFound(f"Job {job_id} not found")
            if job.status in TERMINAL_STATES:
                return job
            await asyncio.sleep(delay)
            delay = min(delay * 2, max_delay)
        logger.warning("Job %s still %s after %d polls", job_id, job.status, max_attempts)
        return job

    # ── Internal helpers ──────────────────────────────────────────────────────

    @staticmethod
    def _get(s: Session, job_id: int) -> SyncJob:
        job = s.get(SyncJob, job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    @staticmethod
    def _overlapping(
        s: Session, entity: str, date_field: Optional[str], start: datetime, end: datetime
    ) -> Optional[SyncJob]:
        return s.exec(
            select(SyncJob)
            .where(SyncJob.kind == entity)
            .where(SyncJob.date_field == date_field)
            .where(SyncJob.status.in_(ACTIVE_STATES))
            .where(SyncJob.window_start <= end)
            .where(SyncJob.window_end >= start)
            .order_by(SyncJob.created_at.desc())
        ).first()

    def _apply(self, job: SyncJob, counters: dict, current_item: Optional[str], errors: Iterable[str]) -> None:
        for name, value in counters.items():
            if value is not None:
                setattr(job, name, max(getattr(job, name), value))
        if current_item is not None:
            job.current_item = current_item
        new_errors = list(errors)
        if new_errors:
            stored = job_errors(job)
            stored.extend(new_errors)
            job.errors_json = json.dumps(stored[: self.max_errors])

    def _finish(self, job_id: int, status: str, message: Optional[str], counters: dict) -> SyncJob:
        with Session(self.engine) as s:
            job = self._get(s, job_id)
            self._apply(job, counters, None, ())
            # A job that already failed (expired or cancelled) keeps its state and message
            if job.status in ACTIVE_STATES:
                job.status = status
                job.error_message = message
                job.finished_at = datetime.utcnow()
            s.add(job)
            s.commit()
            s.refresh(job)
            return job
