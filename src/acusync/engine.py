"""
SyncEngine: the one object outside callers (API, scheduler, CLI) talk to.

Builds every component from Settings and exposes the engine's operations.
Public coroutines never raise: a failure comes back as a Failure value
carrying a machine-readable code and, for the login limit, remediation
guidance.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional, Set, Tuple, Union

import httpx

from acusync.acumatica.attachments import AttachmentFetcher, FileStorage
from acusync.acumatica.client import AcumaticaClient
from acusync.acumatica.kinds import UnknownEntityError, get_entity
from acusync.acumatica.reader import RemoteReader
from acusync.acumatica.retry import RetryPolicy
from acusync.acumatica.session import Credentials, LogoutReport, SessionManager
from acusync.config import Settings, get_settings
from acusync.db.engine import get_engine
from acusync.errors import LoginLimitReached, RemoteTimeout, SyncError
from acusync.jobs.tracker import JobNotFound, JobNotResumable, JobTracker
from acusync.models.sync import SyncJob
from acusync.reconcile.compare import ComparisonResult, Reconciler
from acusync.reconcile.verify import DriftVerifier, VerificationResult
from acusync.store import LocalStore, UpsertOutcome
from acusync.sync_service import SyncResult, SyncService

logger = logging.getLogger(__name__)


@dataclass
class Failure:
    code: str
    message: str
    guidance: Optional[str] = None

    @classmethod
    def from_exception(cls, exc: Exception) -> "Failure":
        if isinstance(exc, LoginLimitReached):
            return cls(code=exc.code, message=str(exc), guidance=exc.guidance)
        if isinstance(exc, SyncError):
            return cls(code=exc.code, message=str(exc))
        if isinstance(exc, UnknownEntityError):
            return cls(code="unknown_entity", message=str(exc))
        if isinstance(exc, JobNotFound):
            return cls(code="job_not_found", message=str(exc))
        if isinstance(exc, JobNotResumable):
            return cls(code="job_not_resumable", message=str(exc))
        return cls(code="internal_error", message=f"{type(exc).__name__}: {exc}")


@dataclass
class JobHandle:
    """A job still running in the background; poll it by id."""

    job_id: int
    status: str
    reused: bool = False


def day_window(start: Union[date, datetime], end: Union[date, datetime]) -> Tuple[datetime, datetime]:
    """Widen calendar dates to a window covering both days in full."""
    if not isinstance(start, datetime):
        start = datetime.combine(start, time.min)
    if not isinstance(end, datetime):
        end = datetime.combine(end, time(23, 59, 59))
    return start, end


class SyncEngine:
    """
    Usage:
        engine = SyncEngine()
        result = await engine.sync_window("payment", start, end)
        if isinstance(result, JobHandle):
            job = engine.poll(result.job_id)
        await engine.aclose()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        db_engine=None,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        s = self.settings
        self.db = db_engine if db_engine is not None else get_engine()
        self.http = http or httpx.AsyncClient(timeout=s.request_timeout_seconds)
        self.credentials = Credentials.from_settings(s)

        self.sessions = SessionManager(
            self.db,
            self.http,
            ttl_minutes=s.session_ttl_minutes,
            retry_policy=RetryPolicy(max_attempts=s.retry_attempts, base_delay=s.retry_base_delay_seconds),
        )
        self.client = AcumaticaClient(
            self.credentials,
            self.sessions,
            self.http,
            api_version=s.acumatica_api_version,
            retry_policy=RetryPolicy(
                max_attempts=s.retry_attempts,
                base_delay=s.retry_base_delay_seconds,
                give_up_on=(RemoteTimeout,),
            ),
        )
        self.store = LocalStore(self.db)
        self.reader = RemoteReader(
            self.client,
            page_size=s.page_size,
            prefetch_depth=s.prefetch_depth,
            exists=self.store.exists,
        )
        self.attachments = AttachmentFetcher(self.client, self.reader, self.store, FileStorage(s.attachments_dir))
        self.tracker = JobTracker(self.db, expiry_minutes=s.job_expiry_minutes, max_errors=s.max_job_errors)
        self.sync = SyncService(
            self.reader, self.store, self.attachments, self.tracker,
            progress_batch_size=s.progress_batch_size,
        )
        self.reconciler = Reconciler(self.reader, self.store)
        self.verifier = DriftVerifier(self.reader, self.store)
        self._tasks: Set[asyncio.Task] = set()

    # ── Sync ──────────────────────────────────────────────────────────────────

    async def sync_window(
        self,
        entity: str,
        start: datetime,
        end: datetime,
        *,
        force_new_session: bool = False,
        wait_seconds: Optional[float] = None,
        source: str = "manual_sync",
        date_field: Optional[str] = None,
    ) -> Union[SyncResult, JobHandle, Failure]:
        """
        Submit a window sync and wait up to ``wait_seconds`` for it.

        Returns SyncResult when the job finished in time, JobHandle when it
        is still running (or an overlapping job was already running), and
        Failure when it could not be started. ``force_new_session`` replaces
        the cached sessions only when a new job is actually started, so a
        running job that gets reused keeps its session.
        """
        try:
            get_entity(entity)
            if start > end:
                return Failure(code="invalid_window", message=f"Window start {start} is after end {end}")
            job, reused = self.tracker.submit(entity, start, end, source=source, date_field=date_field)
        except Exception as exc:
            return self._failure("sync", exc)

        if reused:
            return JobHandle(job_id=job.id, status=job.status, reused=True)

        if force_new_session:
            try:
                await self.sessions.acquire(self.credentials, force_new=True)
            except Exception as exc:
                failure = self._failure("sync", exc)
                self.tracker.fail(job.id, f"Could not open a new session: {failure.message}")
                return failure

        return await self._run(job.id, wait_seconds)

    async def resume(
        self, job_id: int, *, wait_seconds: Optional[float] = None
    ) -> Union[SyncResult, JobHandle, Failure]:
        """
        Restart a failed job from its last finished page.

        Same return contract as sync_window(); JobHandle(reused=True) when
        the job (or another one covering its window) is already active.
        """
        try:
            job, reused = self.tracker.resume(job_id)
        except Exception as exc:
            return self._failure("resume", exc)
        if reused:
            return JobHandle(job_id=job.id, status=job.status, reused=True)
        return await self._run(job.id, wait_seconds)

    async def _run(self, job_id: int, wait_seconds: Optional[float]) -> Union[SyncResult, JobHandle, Failure]:
        task = asyncio.create_task(self.sync.run_job(job_id))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

        if wait_seconds is None:
            wait_seconds = self.settings.sync_time_budget_seconds
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=wait_seconds)
        except asyncio.TimeoutError:
            job = self.tracker.poll(job_id)
            return JobHandle(job_id=job.id, status=job.status)
        except Exception as exc:
            return self._failure("sync", exc)

    async def sync_record(
        self, kind: str, reference_number: str, *, source: str = "webhook"
    ) -> Union[UpsertOutcome, Failure]:
        try:
            return await self.sync.sync_record(kind, reference_number, source=source)
        except Exception as exc:
            return self._failure("record sync", exc)

    def poll(self, job_id: int) -> Optional[SyncJob]:
        return self.tracker.poll(job_id)

    def cancel(self, job_id: int) -> Union[SyncJob, Failure]:
        try:
            return self.tracker.cancel(job_id)
        except Exception as exc:
            return self._failure("cancel", exc)

    async def wait_for_completion(self, job_id: int, **kwargs) -> Union[SyncJob, Failure]:
        try:
            return await self.tracker.wait_for_completion(job_id, **kwargs)
        except Exception as exc:
            return self._failure("wait", exc)

    # ── Reconciliation ────────────────────────────────────────────────────────

    async def compare(self, entity: str, start: datetime, end: datetime) -> Union[ComparisonResult, Failure]:
        try:
            return await self.reconciler.compare(entity, start, end)
        except Exception as exc:
            return self._failure("compare", exc)

    async def verify(
        self, entity: str, start: datetime, end: datetime, fix: bool = False
    ) -> Union[VerificationResult, Failure]:
        try:
            return await self.verifier.verify(entity, start, end, fix=fix)
        except Exception as exc:
            return self._failure("verify", exc)

    # ── Sessions ──────────────────────────────────────────────────────────────

    async def force_logout(self) -> Union[LogoutReport, Failure]:
        """Log out and invalidate every cached Acumatica session."""
        try:
            return await self.sessions.invalidate_all(self.credentials, reason="forced logout")
        except Exception as exc:
            return self._failure("logout", exc)

    async def check_credentials(self) -> Union[LogoutReport, Failure]:
        """Log in with a fresh session, then release it."""
        try:
            await self.sessions.acquire(self.credentials, force_new=True)
            return await self.sessions.invalidate_all(self.credentials, reason="credential check")
        except Exception as exc:
            return self._failure("credential check", exc)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.http.aclose()

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background sync task failed: %s", task.exception())

    @staticmethod
    def _failure(operation: str, exc: Exception) -> Failure:
        failure = Failure.from_exception(exc)
        if failure.code == "internal_error":
            logger.exception("%s failed unexpectedly", operation)
        else:
            logger.warning("%s failed: %s", operation, failure.message)
        return failure


_sync_engine: Optional[SyncEngine] = None


def get_sync_engine() -> SyncEngine:
    """Return the process-wide SyncEngine, creating it on first call."""
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = SyncEngine()
    return _sync_engine


async def close_sync_engine() -> None:
    global _sync_engine
    if _sync_engine is not None:
        await _sync_engine.aclose()
        _sync_engine = None
