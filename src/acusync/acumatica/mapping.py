"""
Acumatica contract API response normalizer.

Converts raw entity dicts into clean field dicts that map directly onto
SQLModel columns. No DB access here: callers (reader, sync_service) handle
persistence.

The contract API wraps every scalar as ``{"value": x}``; linked collections
(ApplicationHistory, files) are lists of such objects, and file items are
the one place plain values appear (``{"id": "...", "filename": "..."}``).
Both shapes are unwrapped by ``field_value()``.

Each entity has one mapping table. A FieldSpec names the canonical column,
the remote field names to try in order, and the coercion applied to the
value. The tables are the only place remote field names appear.
"""
import json
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from acusync.acumatica.kinds import kind_for_doc_type

REFERENCE_WIDTH = 6

_NUMERIC = re.compile(r"^\s*[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?\s*$")
_FRACTION = re.compile(r"(T\d{2}:\d{2}:\d{2})\.\d+")


class MappingError(ValueError):
    """Raised when a remote payload lacks its identity fields or carries an unreadable value."""


# ── Coercions ─────────────────────────────────────────────────────────────────

def to_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string into a naive datetime.

    Acumatica document dates are calendar dates serialized with the tenant's
    offset ("2025-02-02T00:00:00-05:00"). The offset is dropped without
    conversion so the stored date is the date the accountant entered.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    s = str(value).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    s = _FRACTION.sub(r"\1", s)
    return datetime.fromisoformat(s).replace(tzinfo=None)


def to_number(value: Any) -> Optional[float]:
    """Numbers pass through; numeric-looking strings become floats; anything else is None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and _NUMERIC.match(value):
        return float(value)
    return None


def to_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    return bool(value)


def to_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def pad_reference(ref: Optional[str]) -> str:
    """Zero-pad purely numeric reference numbers so "1234" and "001234" compare equal."""
    ref = (ref or "").strip()
    if ref.isdigit() and len(ref) < REFERENCE_WIDTH:
        return ref.zfill(REFERENCE_WIDTH)
    return ref


def to_reference(value: Any) -> Optional[str]:
    s = to_str(value)
    return pad_reference(s) if s else None


# ── Mapping tables ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FieldSpec:
    canonical: str
    remote: Tuple[str, ...]
    coerce: Callable[[Any], Any] = to_str
    default: Any = None


PAYMENT_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("reference_number", ("ReferenceNbr",), to_reference),
    FieldSpec("doc_type", ("Type",)),
    FieldSpec("status", ("Status",)),
    FieldSpec("hold", ("Hold",), to_bool),
    FieldSpec("primary_date", ("ApplicationDate", "PaymentDate"), to_datetime),
    FieldSpec("amount", ("PaymentAmount",), to_number, 0.0),
    FieldSpec("balance", ("UnappliedBalance",), to_number),
    FieldSpec("party_id", ("CustomerID",)),
    FieldSpec("party_name", ("CustomerName",)),
    FieldSpec("description", ("Description",)),
    FieldSpec("currency_id", ("CurrencyID",)),
    FieldSpec("note_id", ("NoteID",)),
    FieldSpec("last_modified_remote", ("LastModifiedDateTime",), to_datetime),
)

INVOICE_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("reference_number", ("ReferenceNbr",), to_reference),
    FieldSpec("doc_type", ("Type",), to_str, "Invoice"),
    FieldSpec("status", ("Status",)),
    FieldSpec("hold", ("Hold",), to_bool),
    FieldSpec("primary_date", ("Date",), to_datetime),
    FieldSpec("amount", ("Amount",), to_number, 0.0),
    FieldSpec("balance", ("Balance",), to_number),
    FieldSpec("party_id", ("CustomerID", "Customer")),
    FieldSpec("party_name", ("CustomerName",)),
    FieldSpec("description", ("Description",)),
    FieldSpec("currency_id", ("CurrencyID",)),
    FieldSpec("note_id", ("NoteID",)),
    FieldSpec("last_modified_remote", ("LastModifiedDateTime",), to_datetime),
)

APPLICATION_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("invoice_reference_number", ("DisplayRefNbr", "ReferenceNbr", "AdjustedRefNbr"), to_reference),
    FieldSpec("doc_type", ("DisplayDocType", "DocType", "AdjustedDocType"), to_str, "Invoice"),
    FieldSpec("amount_paid", ("AmountPaid",), to_number, 0.0),
    FieldSpec("application_date", ("ApplicationDate", "Date"), to_datetime),
    FieldSpec("balance", ("Balance",), to_number),
    FieldSpec("cash_discount_taken", ("CashDiscountTaken",), to_number),
    FieldSpec("post_period", ("PostPeriod",)),
    FieldSpec("customer_id", ("Customer", "CustomerID")),
    FieldSpec("invoice_date", ("Date",), to_datetime),
    FieldSpec("due_date", ("DueDate",), to_datetime),
)

FILE_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("file_id", ("id",)),
    FieldSpec("file_name", ("filename", "name")),
)

RECORD_FIELDS: Dict[str, Tuple[FieldSpec, ...]] = {
    "payment": PAYMENT_FIELDS,
    "invoice": INVOICE_FIELDS,
}


# ── Normalizers ───────────────────────────────────────────────────────────────

def field_value(raw: Dict[str, Any], name: str) -> Any:
    """Return raw[name], unwrapping the contract API's {"value": x} envelope."""
    value = raw.get(name)
    if isinstance(value, dict) and "value" in value:
        return value["value"]
    return value


def apply_fields(raw: Dict[str, Any], specs: Tuple[FieldSpec, ...]) -> Dict[str, Any]:
    """Run one mapping table over a raw dict."""
    out: Dict[str, Any] = {}
    for spec in specs:
        value = None
        for name in spec.remote:
            try:
                value = spec.coerce(field_value(raw, name))
            except (TypeError, ValueError) as exc:
                raise MappingError(f"{name}: {exc}") from exc
            if value is not None:
                break
        out[spec.canonical] = value if value is not None else spec.default
    return out


def normalize_record(entity: str, raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize an Acumatica Payment or Invoice into CanonicalRecord fields.

    Args:
        entity: "payment" or "invoice".
        raw: One entity dict from the contract API.

    Returns:
        Dict with keys matching CanonicalRecord columns.

    Raises:
        MappingError: if ReferenceNbr or Type is missing, or a field
            cannot be coerced (e.g. a malformed date).
    """
    fields = apply_fields(raw, RECORD_FIELDS[entity])
    if not fields["reference_number"] or not fields["doc_type"]:
        raise MappingError(
            f"{entity} payload has no ReferenceNbr/Type. Keys present: {sorted(raw.keys())}"
        )
    fields["entity"] = entity
    fields["kind"] = kind_for_doc_type(fields["doc_type"])
    fields["raw_payload_json"] = json.dumps(raw, sort_keys=True, default=str)
    return fields


def normalize_application(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Normalize one ApplicationHistory row. Returns None for rows with no target document."""
    fields = apply_fields(raw, APPLICATION_FIELDS)
    if not fields["invoice_reference_number"]:
        return None
    return fields


def normalize_file(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Normalize one item of an entity's ``files`` collection."""
    fields = apply_fields(raw, FILE_FIELDS)
    if not fields["file_id"] or not fields["file_name"]:
        return None
    return fields
