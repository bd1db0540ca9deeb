"""
SyncService: pulls one window of Acumatica documents into the replica.

Flow for one job:
  1. Job goes pending -> running
  2. For each page of the window (prefetched by the reader):
       - stop if the job was cancelled
       - for each record: upsert it; for payments fetch the detail once
         (ApplicationHistory + files), replace its applications, fetch any
         invoice they reference that we don't hold; store new attachments;
         fetch the voided counterpart when the status calls for one
       - flush progress to the job every ``progress_batch_size`` records,
         and the page boundary (``resume_offset``) once the page is done
  3. Job completed, with per-record errors attached

A per-record failure, including a row the mapping cannot read, is recorded
on the job and the loop moves on. Session-level errors (bad credentials,
login limit, rejected session) and failures fetching a page end the job as
failed; so does a request that timed out again on a fresh session. A failed
job can be resumed from its last page boundary.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from acusync.acumatica.kinds import entity_for_kind, kind_for_doc_type
from acusync.acumatica.mapping import MappingError, normalize_application
from acusync.errors import (
    JOB_FATAL_ERRORS,
    LoginLimitReached,
    RecordNotFound,
    RemoteRequestError,
    SyncError,
    TransientRemoteError,
)
from acusync.jobs.tracker import job_errors
from acusync.models.record import CanonicalRecord
from acusync.models.sync import SyncJob
from acusync.store import UpsertOutcome

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    job_id: int
    entity: str
    status: str
    created: int = 0
    updated: int = 0
    applications_synced: int = 0
    files_synced: int = 0
    errors: List[str] = field(default_factory=list)
    error_message: Optional[str] = None

    @classmethod
    def from_job(cls, job: SyncJob) -> "SyncResult":
        return cls(
            job_id=job.id,
            entity=job.kind,
            status=job.status,
            created=job.created,
            updated=job.updated,
            applications_synced=job.applications_synced,
            files_synced=job.files_synced,
            errors=job_errors(job),
            error_message=job.error_message,
        )


@dataclass
class _Progress:
    created: int = 0
    updated: int = 0
    applications_synced: int = 0
    files_synced: int = 0
    current: int = 0
    total: int = 0

    @classmethod
    def from_job(cls, job: SyncJob) -> "_Progress":
        """Counters a resumed job continues from; the partial page is redone."""
        return cls(
            created=job.created,
            updated=job.updated,
            applications_synced=job.applications_synced,
            files_synced=job.files_synced,
            current=job.resume_offset,
            total=job.total,
        )

    def counters(self) -> Dict[str, int]:
        return dict(self.__dict__)


class SyncService:
    """Orchestrates Acumatica -> replica sync for windows and single records."""

    def __init__(
        self,
        reader,
        store,
        attachments,
        tracker,
        *,
        progress_batch_size: int = 5,
    ):
        """
        Args:
            reader: RemoteReader (or AsyncMock in tests).
            store: LocalStore.
            attachments: AttachmentFetcher.
            tracker: JobTracker.
            progress_batch_size: Records between progress writes.
        """
        self.reader = reader
        self.store = store
        self.attachments = attachments
        self.tracker = tracker
        self.progress_batch_size = max(1, progress_batch_size)

    async def run_job(self, job_id: int) -> SyncResult:
        """
        Work one submitted job to a terminal state.

        A resumed job restarts from the last page it finished (``resume_offset``)
        with its counters carried over. The window is read on the job's
        ``date_field``: the entity's document date, or the last-modified field
        for incremental syncs.

        Args:
            job_id: A pending SyncJob id from JobTracker.submit() or resume().

        Returns:
            SyncResult built from the job's final state.
        """
        job = self.tracker.start(job_id)
        source = job.source
        progress = _Progress.from_job(job)
        pending_errors: List[str] = []
        logger.info(
            "Job %s started: %s %s..%s from offset %d",
            job_id, job.kind, job.window_start, job.window_end, job.resume_offset,
        )

        pages = self.reader.fetch_window(
            job.kind, job.window_start, job.window_end,
            offset=job.resume_offset, date_field=job.date_field,
        )
        try:
            async for page in pages:
                if self.tracker.is_cancelled(job_id):
                    logger.info("Job %s cancelled at offset %d", job_id, page.offset)
                    self.tracker.advance(job_id, errors=pending_errors, **progress.counters())
                    return SyncResult.from_job(
                        self.tracker.fail(job_id, "Cancelled by user", **progress.counters())
                    )

                progress.total = max(progress.total, page.offset + page.raw_count)
                pending_errors.extend(page.skipped)
                for record in page.records:
                    try:
                        await self._sync_record(record, source, progress, pending_errors)
                    except JOB_FATAL_ERRORS:
                        raise
                    except (SyncError, MappingError) as exc:
                        message = f"{record.doc_type} {record.reference_number}: {exc}"
                        logger.warning("Job %s: %s", job_id, message)
                        pending_errors.append(message)
                    progress.current += 1
                    if progress.current % self.progress_batch_size == 0:
                        self.tracker.advance(
                            job_id,
                            current_item=record.reference_number,
                            errors=pending_errors,
                            **progress.counters(),
                        )
                        pending_errors = []

                # every row up to here is stored; a resume starts at the next page
                self.tracker.advance(
                    job_id,
                    errors=pending_errors,
                    resume_offset=page.offset + page.raw_count,
                    **progress.counters(),
                )
                pending_errors = []

        except SyncError as exc:
            message = str(exc)
            if isinstance(exc, LoginLimitReached):
                message = f"{message}. {exc.guidance}"
            logger.error("Job %s failed: %s", job_id, message)
            self.tracker.advance(job_id, errors=pending_errors, **progress.counters())
            return SyncResult.from_job(self.tracker.fail(job_id, message, **progress.counters()))

        except Exception as exc:
            logger.exception("Job %s crashed", job_id)
            self.tracker.fail(job_id, f"Unexpected error: {exc}", **progress.counters())
            raise

        finally:
            # stops the prefetch task when the loop exits early
            await pages.aclose()

        self.tracker.advance(job_id, errors=pending_errors, **progress.counters())
        job = self.tracker.complete(job_id, **progress.counters())
        logger.info(
            "Job %s %s: %d created, %d updated, %d applications, %d files, %d errors",
            job_id, job.status, job.created, job.updated,
            job.applications_synced, job.files_synced, len(job_errors(job)),
        )
        return SyncResult.from_job(job)

    async def sync_record(self, kind: str, reference_number: str, *, source: str = "webhook") -> UpsertOutcome:
        """
        Fetch one document by identity and sync it with everything hanging off it.

        Raises:
            RecordNotFound: Acumatica does not have the document.
        """
        record = await self.reader.fetch_one(kind, reference_number)
        if record is None:
            raise RecordNotFound(kind, reference_number)
        errors: List[str] = []
        outcome = await self._sync_record(record, source, _Progress(), errors)
        for message in errors:
            logger.warning("%s %s: %s", kind, reference_number, message)
        return outcome

    # ── Internal helpers ──────────────────────────────────────────────────────

    async def _sync_record(
        self,
        record: CanonicalRecord,
        source: str,
        progress: _Progress,
        errors: List[str],
    ) -> UpsertOutcome:
        outcome = self.store.upsert(record, source)
        if outcome.created:
            progress.created += 1
        else:
            progress.updated += 1

        files = None
        if record.entity == "payment":
            detail = await self.reader.fetch_detail(record.kind, record.reference_number)
            if detail is None:
                raise RecordNotFound(record.kind, record.reference_number)
            applications = [
                app
                for app in (normalize_application(raw) for raw in detail.get("ApplicationHistory") or [])
                if app is not None
            ]
            progress.applications_synced += self.store.upsert_applications(
                (record.kind, record.reference_number), applications
            )
            errors.extend(await self._fetch_missing_invoices(applications, source))
            files = detail.get("files") or []

        progress.files_synced += await self.attachments.fetch_attachments(record, files)

        counterpart = await self.reader.fetch_counterpart(record)
        if counterpart is not None:
            counterpart_outcome = self.store.upsert(counterpart, source)
            if counterpart_outcome.created:
                progress.created += 1
            logger.info(
                "Stored %s %s alongside %s",
                counterpart.doc_type, counterpart.reference_number, record.kind,
            )
        return outcome

    async def _fetch_missing_invoices(self, applications: List[dict], source: str) -> List[str]:
        """Fetch invoices referenced by applications that the replica doesn't hold yet."""
        errors = []
        seen = set()
        for app in applications:
            kind = kind_for_doc_type(app["doc_type"])
            ref = app["invoice_reference_number"]
            if entity_for_kind(kind) != "invoice" or (kind, ref) in seen:
                continue
            seen.add((kind, ref))
            if self.store.exists(kind, ref):
                continue
            try:
                invoice = await self.reader.fetch_one(kind, ref)
            except JOB_FATAL_ERRORS:
                raise
            except (TransientRemoteError, RemoteRequestError) as exc:
                errors.append(f"{app['doc_type']} {ref}: {exc}")
                continue
            if invoice is None:
                logger.warning("Applied %s %s not found in Acumatica", app["doc_type"], ref)
                continue
            self.store.upsert(invoice, source)
            logger.info("Fetched missing %s %s", invoice.doc_type, ref)
        return errors

