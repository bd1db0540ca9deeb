"""
Local replica persistence: canonical records, applications, attachments.

Every write that changes what a reader of the replica would see also
appends a ChangeLogEntry in the same transaction. Idempotency is by
identity: (kind, reference_number) for records, (payment, invoice) for
applications, (reference_number, file_id) for attachments.

SQLAlchemy errors never leave this module raw; they become PersistenceError.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from acusync.errors import PersistenceError
from acusync.models.record import Application, Attachment, CanonicalRecord
from acusync.models.sync import ChangeLogEntry

logger = logging.getLogger(__name__)

# Fields whose change is observable to replica readers
TRACKED_FIELDS: Tuple[str, ...] = (
    "doc_type",
    "status",
    "hold",
    "primary_date",
    "amount",
    "balance",
    "party_id",
    "party_name",
    "description",
    "currency_id",
)

# Written on every upsert but never a reason for a change-log entry
_REFRESHED_FIELDS: Tuple[str, ...] = ("entity", "note_id", "last_modified_remote", "raw_payload_json")


@dataclass
class UpsertOutcome:
    record: CanonicalRecord
    created: bool
    change_action: Optional[str] = None  # None when nothing observable changed
    changed_fields: List[str] = field(default_factory=list)

    @property
    def action(self) -> str:
        return "created" if self.created else "updated"


def _snapshot(record: CanonicalRecord, names: Iterable[str] = TRACKED_FIELDS) -> Dict[str, Any]:
    return {name: getattr(record, name) for name in names}


def _dumps(data: Dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, default=str)


def _summarize(before: Dict[str, Any], after: Dict[str, Any], changed: List[str]) -> str:
    return "; ".join(f"{name}: {before[name]} -> {after[name]}" for name in changed)


def _window(query, entity: str, start: datetime, end: datetime, exclude_doc_types: Iterable[str]):
    query = (
        query.where(CanonicalRecord.entity == entity)
        .where(CanonicalRecord.primary_date >= start)
        .where(CanonicalRecord.primary_date <= end)
    )
    excluded = list(exclude_doc_types)
    if excluded:
        query = query.where(CanonicalRecord.doc_type.not_in(excluded))
    return query


class LocalStore:
    """Reads and writes the replica. Each public method is one transaction."""

    def __init__(self, engine):
        self.engine = engine

    # ── Canonical records ─────────────────────────────────────────────────────

    def upsert(self, record: CanonicalRecord, source: str) -> UpsertOutcome:
        """
        Insert or update one record by identity.

        Args:
            record: Normalized record (unsaved; its id is ignored).
            source: Change-log source tag, e.g. "manual_sync".

        Returns:
            UpsertOutcome. change_action is "created", "status_changed",
            "updated" or None when no tracked field differed.

        Raises:
            PersistenceError: on any database error.
        """
        try:
            return self._upsert(record, source)
        except IntegrityError:
            # Another worker inserted the same identity first; retry as an update
            logger.info("Concurrent insert of %s %s, retrying as update", record.kind, record.reference_number)
            try:
                return self._upsert(record, source)
            except SQLAlchemyError as exc:
                raise PersistenceError(f"Upsert of {record.kind} {record.reference_number} failed: {exc}") from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Upsert of {record.kind} {record.reference_number} failed: {exc}") from exc

    def _upsert(self, record: CanonicalRecord, source: str) -> UpsertOutcome:
        now = datetime.utcnow()
        with Session(self.engine) as s:
            existing = s.exec(
                select(CanonicalRecord)
                .where(CanonicalRecord.kind == record.kind)
                .where(CanonicalRecord.reference_number == record.reference_number)
            ).first()

            if existing is None:
                row = CanonicalRecord(**record.model_dump(exclude={"id"}))
                row.last_sync_timestamp = now
                s.add(row)
                s.add(ChangeLogEntry(
                    entity_kind=row.kind,
                    entity_reference=row.reference_number,
                    action="created",
                    summary=f"{row.doc_type} {row.reference_number} created",
                    after_json=_dumps(_snapshot(row)),
                    source=source,
                    created_at=now,
                ))
                s.commit()
                s.refresh(row)
                return UpsertOutcome(record=row, created=True, change_action="created")

            before = _snapshot(existing)
            for name in TRACKED_FIELDS + _REFRESHED_FIELDS:
                setattr(existing, name, getattr(record, name))
            existing.last_sync_timestamp = now
            after = _snapshot(existing)
            changed = [name for name in TRACKED_FIELDS if before[name] != after[name]]

            action = None
            if "status" in changed:
                action = "status_changed"
            elif changed:
                action = "updated"
            if action:
                s.add(ChangeLogEntry(
                    entity_kind=existing.kind,
                    entity_reference=existing.reference_number,
                    action=action,
                    summary=_summarize(before, after, changed),
                    before_json=_dumps({k: before[k] for k in changed}),
                    after_json=_dumps({k: after[k] for k in changed}),
                    source=source,
                    created_at=now,
                ))
            s.add(existing)
            s.commit()
            s.refresh(existing)
            return UpsertOutcome(record=existing, created=False, change_action=action, changed_fields=changed)

    def get(self, kind: str, reference_number: str) -> Optional[CanonicalRecord]:
        with Session(self.engine) as s:
            return s.exec(
                select(CanonicalRecord)
                .where(CanonicalRecord.kind == kind)
                .where(CanonicalRecord.reference_number == reference_number)
            ).first()

    def exists(self, kind: str, reference_number: str) -> bool:
        return self.get(kind, reference_number) is not None

    def window_records(
        self, entity: str, start: datetime, end: datetime, *, exclude_doc_types: Iterable[str] = ()
    ) -> List[CanonicalRecord]:
        """Records of ``entity`` whose primary date lies in [start, end]."""
        with Session(self.engine) as s:
            return list(s.exec(
                _window(select(CanonicalRecord), entity, start, end, exclude_doc_types)
                .order_by(CanonicalRecord.primary_date, CanonicalRecord.reference_number)
            ).all())

    def count_window(
        self, entity: str, start: datetime, end: datetime, *, exclude_doc_types: Iterable[str] = ()
    ) -> int:
        query = select(func.count()).select_from(CanonicalRecord)
        with Session(self.engine) as s:
            return s.exec(_window(query, entity, start, end, exclude_doc_types)).one()

    def apply_date_fix(
        self,
        kind: str,
        reference_number: str,
        new_date: datetime,
        new_status: Optional[str] = None,
        *,
        source: str = "verification",
    ) -> Optional[datetime]:
        """
        Overwrite a stale record's date (and status, when given) with the remote values.

        Returns:
            The previous primary_date, or None if the record no longer exists.
        """
        try:
            with Session(self.engine) as s:
                row = s.exec(
                    select(CanonicalRecord)
                    .where(CanonicalRecord.kind == kind)
                    .where(CanonicalRecord.reference_number == reference_number)
                ).first()
                if row is None:
                    return None
                before = _snapshot(row, ("primary_date", "status"))
                row.primary_date = new_date
                if new_status:
                    row.status = new_status
                row.last_sync_timestamp = datetime.utcnow()
                after = _snapshot(row, ("primary_date", "status"))
                changed = [k for k in before if before[k] != after[k]]
                s.add(row)
                s.add(ChangeLogEntry(
                    entity_kind=kind,
                    entity_reference=reference_number,
                    action="status_changed" if "status" in changed else "updated",
                    summary=_summarize(before, after, changed) or "date verified",
                    before_json=_dumps(before),
                    after_json=_dumps(after),
                    source=source,
                ))
                s.commit()
                return before["primary_date"]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Date fix of {kind} {reference_number} failed: {exc}") from exc

    # ── Applications ──────────────────────────────────────────────────────────

    def upsert_applications(self, payment_key: Tuple[str, str], applications: List[Dict[str, Any]]) -> int:
        """
        Replace every application row of one payment with ``applications``.

        Args:
            payment_key: (kind, reference_number) of the payment.
            applications: Normalized rows from mapping.normalize_application.

        Returns:
            Number of rows written.
        """
        payment_kind, payment_ref = payment_key
        merged: Dict[str, Dict[str, Any]] = {}
        for app in applications:
            ref = app["invoice_reference_number"]
            if ref in merged:
                # Several adjustments against one invoice collapse into one row
                merged[ref]["amount_paid"] = (merged[ref]["amount_paid"] or 0.0) + (app["amount_paid"] or 0.0)
                for name, value in app.items():
                    if name != "amount_paid" and value is not None:
                        merged[ref][name] = value
            else:
                merged[ref] = dict(app)

        now = datetime.utcnow()
        try:
            with Session(self.engine) as s:
                existing = s.exec(
                    select(Application)
                    .where(Application.payment_kind == payment_kind)
                    .where(Application.payment_reference_number == payment_ref)
                ).all()
                for row in existing:
                    s.delete(row)
                s.flush()

                for fields in merged.values():
                    s.add(Application(
                        payment_kind=payment_kind,
                        payment_reference_number=payment_ref,
                        synced_at=now,
                        **fields,
                    ))
                s.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Applications of {payment_kind} {payment_ref} failed: {exc}") from exc
        return len(merged)

    def applications_for(self, payment_kind: str, payment_ref: str) -> List[Application]:
        with Session(self.engine) as s:
            return list(s.exec(
                select(Application)
                .where(Application.payment_kind == payment_kind)
                .where(Application.payment_reference_number == payment_ref)
                .order_by(Application.invoice_reference_number)
            ).all())

    # ── Attachments ───────────────────────────────────────────────────────────

    def attachment_exists(self, reference_number: str, file_id: str) -> bool:
        with Session(self.engine) as s:
            return s.exec(
                select(Attachment.id)
                .where(Attachment.reference_number == reference_number)
                .where(Attachment.file_id == file_id)
            ).first() is not None

    def upsert_attachment(self, attachment: Attachment, content: bytes, storage) -> int:
        """
        Store one attachment unless (reference_number, file_id) already exists.

        The row is inserted with ON CONFLICT DO NOTHING; bytes are written to
        ``storage`` only when the insert took effect, inside the same
        transaction, so a failed write leaves no row behind.

        Returns:
            1 if stored, 0 if it already existed.
        """
        values = attachment.model_dump(exclude={"id"})
        stmt = self._insert(Attachment).values(**values).on_conflict_do_nothing(
            index_elements=["reference_number", "file_id"]
        )
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
                if result.rowcount == 0:
                    return 0
                try:
                    storage.write(attachment.storage_path, content)
                except OSError as exc:
                    raise PersistenceError(f"Could not write {attachment.storage_path}: {exc}") from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Attachment {attachment.file_id} of {attachment.reference_number} failed: {exc}"
            ) from exc
        return 1

    def attachments_for(self, reference_number: str) -> List[Attachment]:
        with Session(self.engine) as s:
            return list(s.exec(
                select(Attachment)
                .where(Attachment.reference_number == reference_number)
                .order_by(Attachment.created_at)
            ).all())

    def _insert(self, model):
        if self.engine.dialect.name == "postgresql":
            return postgresql.insert(model)
        return sqlite.insert(model)
