"""Sync bookkeeping models: jobs, the change log and the session cache."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class SyncJob(SQLModel, table=True):
    """One long-running window sync. Mutated only by its worker and the tracker."""

    id: Optional[int] = Field(default=None, primary_key=True)
    kind: str = Field(index=True)  # entity being synced: "payment" or "invoice"
    window_start: datetime
    window_end: datetime
    date_field: Optional[str] = None  # remote field the window applies to
    status: str = Field(default="pending", index=True)  # "pending", "running", "completed", "failed"

    # Progress counters; only ever increase
    created: int = 0
    updated: int = 0
    applications_synced: int = 0
    files_synced: int = 0
    current: int = 0
    total: int = 0
    resume_offset: int = 0  # $skip of the first page not yet fully stored
    current_item: Optional[str] = None

    errors_json: str = "[]"  # bounded list of per-record error strings
    error_message: Optional[str] = None
    cancel_requested: bool = False
    source: str = "manual_sync"

    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    resumed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class ChangeLogEntry(SQLModel, table=True):
    """Append-only audit row for every observable change to the replica."""

    id: Optional[int] = Field(default=None, primary_key=True)
    entity_kind: str = Field(index=True)
    entity_reference: str = Field(index=True)
    action: str = Field(index=True)  # "created", "updated", "status_changed"
    summary: str = ""
    before_json: Optional[str] = None
    after_json: Optional[str] = None
    source: str = Field(index=True)  # "scheduled_sync", "manual_sync", "backfill", "verification", "webhook"
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)


class RemoteSession(SQLModel, table=True):
    """Cached Acumatica API session cookie. Invalidated, never deleted."""

    id: Optional[int] = Field(default=None, primary_key=True)
    cookie: str
    expires_at: datetime
    is_valid: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    last_used_at: datetime = Field(default_factory=datetime.utcnow)
    invalidated_at: Optional[datetime] = None
    invalidation_reason: Optional[str] = None
