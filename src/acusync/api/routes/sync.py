"""Sync, job, reconciliation and session routes."""
from datetime import date
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from acusync.acumatica.mapping import pad_reference
from acusync.engine import Failure, JobHandle, SyncEngine, day_window, get_sync_engine
from acusync.jobs.tracker import job_errors
from acusync.models.sync import SyncJob
from acusync.sync_service import SyncResult

router = APIRouter()

_FAILURE_STATUS = {
    "unknown_entity": 400,
    "invalid_window": 400,
    "job_not_found": 404,
    "job_not_resumable": 409,
    "record_not_found": 404,
    "login_limit_reached": 503,
    "internal_error": 500,
}


class WindowRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: str
    start_date: date = Field(alias="startDate")
    end_date: date = Field(alias="endDate")


class SyncRequest(WindowRequest):
    force_new_session: bool = Field(default=False, alias="forceNewSession")


class VerifyRequest(WindowRequest):
    fix: bool = False


def raise_failure(failure: Failure) -> None:
    detail: Dict[str, Any] = {"code": failure.code, "message": failure.message}
    if failure.guidance:
        detail["guidance"] = failure.guidance
    raise HTTPException(status_code=_FAILURE_STATUS.get(failure.code, 502), detail=detail)


def job_payload(job: SyncJob) -> Dict[str, Any]:
    return {
        "jobId": job.id,
        "kind": job.kind,
        "status": job.status,
        "windowStart": job.window_start,
        "windowEnd": job.window_end,
        "dateField": job.date_field,
        "progress": {
            "current": job.current,
            "total": job.total,
            "created": job.created,
            "updated": job.updated,
            "applicationsSynced": job.applications_synced,
            "filesSynced": job.files_synced,
        },
        "resumeOffset": job.resume_offset,
        "currentItem": job.current_item,
        "errorMessage": job.error_message,
        "errors": job_errors(job),
        "cancelRequested": job.cancel_requested,
        "createdAt": job.created_at,
        "finishedAt": job.finished_at,
    }


def sync_payload(result: Union[SyncResult, JobHandle]) -> Dict[str, Any]:
    if isinstance(result, JobHandle):
        return {"async": True, "jobId": result.job_id, "status": result.status, "reused": result.reused}
    return {
        "async": False,
        "jobId": result.job_id,
        "status": result.status,
        "created": result.created,
        "updated": result.updated,
        "applicationsSynced": result.applications_synced,
        "filesSynced": result.files_synced,
        "errors": result.errors,
        "errorMessage": result.error_message,
    }


@router.post("/sync")
async def trigger_sync(request: SyncRequest, engine: SyncEngine = Depends(get_sync_engine)):
    """
    Sync one window. Answers with the result when the job finishes within
    the time budget, otherwise with the job id to poll.
    """
    start, end = day_window(request.start_date, request.end_date)
    result = await engine.sync_window(
        request.kind, start, end, force_new_session=request.force_new_session
    )
    if isinstance(result, Failure):
        raise_failure(result)
    return sync_payload(result)


@router.get("/jobs")
def list_jobs(limit: int = 20, engine: SyncEngine = Depends(get_sync_engine)) -> List[Dict[str, Any]]:
    return [job_payload(job) for job in engine.tracker.recent(limit)]


@router.get("/jobs/{job_id}")
def get_job(job_id: int, engine: SyncEngine = Depends(get_sync_engine)):
    job = engine.poll(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job_payload(job)


@router.post("/jobs/{job_id}/cancel")
def cancel_job(job_id: int, engine: SyncEngine = Depends(get_sync_engine)):
    result = engine.cancel(job_id)
    if isinstance(result, Failure):
        raise_failure(result)
    return job_payload(result)


@router.post("/jobs/{job_id}/resume")
async def resume_job(job_id: int, engine: SyncEngine = Depends(get_sync_engine)):
    """Restart a job that stopped before completing, from its last finished page."""
    result = await engine.resume(job_id)
    if isinstance(result, Failure):
        raise_failure(result)
    return sync_payload(result)


@router.post("/compare")
async def compare(request: WindowRequest, engine: SyncEngine = Depends(get_sync_engine)):
    start, end = day_window(request.start_date, request.end_date)
    result = await engine.compare(request.kind, start, end)
    if isinstance(result, Failure):
        raise_failure(result)
    return {
        "kind": result.entity,
        "remoteCount": result.remote_count,
        "localCount": result.local_count,
        "difference": result.difference,
    }


@router.post("/verify")
async def verify(request: VerifyRequest, engine: SyncEngine = Depends(get_sync_engine)):
    """Report records whose date moved out of the window; repair them with fix=true."""
    start, end = day_window(request.start_date, request.end_date)
    result = await engine.verify(request.kind, start, end, fix=request.fix)
    if isinstance(result, Failure):
        raise_failure(result)
    return {
        "kind": result.entity,
        "stalePayments": [
            {
                "kind": s.kind,
                "reference_number": s.reference_number,
                "type": s.type,
                "customer_name": s.customer_name,
                "db_date": s.db_date,
                "acumatica_date": s.acumatica_date,
                "acumatica_status": s.acumatica_status,
                "amount": s.amount,
            }
            for s in result.stale_payments
        ],
        "fixedPayments": [
            {
                "kind": f.kind,
                "reference_number": f.reference_number,
                "type": f.type,
                "old_date": f.old_date,
                "new_date": f.new_date,
            }
            for f in result.fixed_payments
        ],
        "inRemoteNotLocal": result.in_remote_not_local,
        "inLocalNotRemote": result.in_local_not_remote,
        "remoteCount": result.remote_count,
        "localCount": result.local_count,
        "errors": result.errors,
    }


@router.post("/sessions/logout")
async def force_logout(engine: SyncEngine = Depends(get_sync_engine)):
    """Log out every cached Acumatica session (frees API login slots)."""
    report = await engine.force_logout()
    if isinstance(report, Failure):
        raise_failure(report)
    return {
        "totalSessions": report.total_sessions,
        "loggedOut": report.logged_out,
        "failed": report.failed,
        "invalidated": report.invalidated,
    }


@router.post("/records/{kind}/{reference_number}/refresh")
async def refresh_record(
    kind: str,
    reference_number: str,
    engine: SyncEngine = Depends(get_sync_engine),
    source: Optional[str] = "manual_sync",
):
    """Re-sync one document by identity."""
    outcome = await engine.sync_record(kind, pad_reference(reference_number), source=source or "manual_sync")
    if isinstance(outcome, Failure):
        raise_failure(outcome)
    return {
        "kind": outcome.record.kind,
        "referenceNumber": outcome.record.reference_number,
        "action": outcome.action,
        "changeAction": outcome.change_action,
        "changedFields": outcome.changed_fields,
    }
