"""Replica models: canonical documents, payment applications, attachments."""
from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class CanonicalRecord(SQLModel, table=True):
    """One row per Acumatica financial document, keyed by (kind, reference_number)."""

    __table_args__ = (UniqueConstraint("kind", "reference_number", name="uq_record_identity"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    entity: str = Field(index=True)  # "payment" or "invoice": which endpoint it came from
    kind: str = Field(index=True)  # "payment", "voided_payment", "prepayment", "invoice", ...
    reference_number: str = Field(index=True)  # zero-padded, see mapping.pad_reference
    doc_type: str  # Acumatica Type value verbatim, e.g. "Voided Payment"

    status: Optional[str] = None
    hold: Optional[bool] = None
    primary_date: Optional[datetime] = Field(default=None, index=True)
    amount: float = 0.0
    balance: Optional[float] = None
    party_id: Optional[str] = Field(default=None, index=True)  # Acumatica CustomerID
    party_name: Optional[str] = None
    description: Optional[str] = None
    currency_id: Optional[str] = None
    note_id: Optional[str] = None  # links the document to its files
    last_modified_remote: Optional[datetime] = None

    # Full Acumatica response, kept opaque
    raw_payload_json: Optional[str] = None

    last_sync_timestamp: datetime = Field(default_factory=datetime.utcnow)


class Application(SQLModel, table=True):
    """How much of a payment was applied to one invoice."""

    __table_args__ = (
        UniqueConstraint(
            "payment_kind",
            "payment_reference_number",
            "invoice_reference_number",
            name="uq_application_identity",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    payment_kind: str = Field(index=True)
    payment_reference_number: str = Field(index=True)
    invoice_reference_number: str = Field(index=True)

    doc_type: str = "Invoice"
    amount_paid: float = 0.0
    application_date: Optional[datetime] = None
    balance: Optional[float] = None
    cash_discount_taken: Optional[float] = None
    post_period: Optional[str] = None
    customer_id: Optional[str] = None
    invoice_date: Optional[datetime] = None
    due_date: Optional[datetime] = None

    synced_at: datetime = Field(default_factory=datetime.utcnow)


class Attachment(SQLModel, table=True):
    """A file stored from Acumatica. Identity is (reference_number, file_id)."""

    __table_args__ = (UniqueConstraint("reference_number", "file_id", name="uq_attachment_identity"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    kind: str
    reference_number: str = Field(index=True)
    file_id: str
    file_name: str
    content_type: str = "application/octet-stream"
    file_size: int = 0
    storage_path: str
    is_check_image: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
