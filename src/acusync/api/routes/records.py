"""Read access to the replica and its change log."""
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from acusync.acumatica.mapping import pad_reference
from acusync.db.engine import get_session
from acusync.engine import day_window
from acusync.models.record import Application, Attachment, CanonicalRecord
from acusync.models.sync import ChangeLogEntry

router = APIRouter()


@router.get("/records", response_model=List[CanonicalRecord])
def list_records(
    entity: Optional[str] = None,
    kind: Optional[str] = None,
    status: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    limit: int = 100,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    """List replica records, newest document date first."""
    query = select(CanonicalRecord)
    if entity:
        query = query.where(CanonicalRecord.entity == entity)
    if kind:
        query = query.where(CanonicalRecord.kind == kind)
    if status:
        query = query.where(CanonicalRecord.status == status)
    if start_date:
        query = query.where(CanonicalRecord.primary_date >= day_window(start_date, start_date)[0])
    if end_date:
        query = query.where(CanonicalRecord.primary_date <= day_window(end_date, end_date)[1])
    return session.exec(
        query.order_by(CanonicalRecord.primary_date.desc()).offset(offset).limit(limit)
    ).all()


@router.get("/records/{kind}/{reference_number}")
def get_record(kind: str, reference_number: str, session: Session = Depends(get_session)):
    """One record with its applications and stored files."""
    reference_number = pad_reference(reference_number)
    record = session.exec(
        select(CanonicalRecord)
        .where(CanonicalRecord.kind == kind)
        .where(CanonicalRecord.reference_number == reference_number)
    ).first()
    if not record:
        raise HTTPException(status_code=404, detail="Record not found")
    applications = session.exec(
        select(Application)
        .where(Application.payment_kind == kind)
        .where(Application.payment_reference_number == reference_number)
        .order_by(Application.invoice_reference_number)
    ).all()
    attachments = session.exec(
        select(Attachment)
        .where(Attachment.reference_number == reference_number)
        .order_by(Attachment.created_at)
    ).all()
    return {"record": record, "applications": applications, "attachments": attachments}


@router.get("/changes", response_model=List[ChangeLogEntry])
def list_changes(
    kind: Optional[str] = None,
    reference_number: Optional[str] = None,
    source: Optional[str] = None,
    limit: int = 100,
    session: Session = Depends(get_session),
):
    """Change log, newest first."""
    query = select(ChangeLogEntry)
    if kind:
        query = query.where(ChangeLogEntry.entity_kind == kind)
    if reference_number:
        query = query.where(ChangeLogEntry.entity_reference == pad_reference(reference_number))
    if source:
        query = query.where(ChangeLogEntry.source == source)
    return session.exec(
        query.order_by(ChangeLogEntry.created_at.desc(), ChangeLogEntry.id.desc()).limit(limit)
    ).all()
