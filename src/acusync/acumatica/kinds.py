"""
Entity and document-kind configuration for the Acumatica contract API.

An *entity* is an endpoint we sync by window ("payment", "invoice"). A *kind*
is the canonical name of one Acumatica document Type inside that entity
("Voided Payment" -> "voided_payment"). Identity in the replica is
(kind, reference_number): Acumatica reuses a reference number across types,
most visibly when a payment is voided and a separate "Voided Payment"
document appears under the same number.
"""
import re
from dataclasses import dataclass
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class EntityConfig:
    name: str
    endpoint: str  # contract API entity, e.g. "Payment"
    date_field: str  # remote field the window filter applies to
    modified_field: str = "LastModifiedDateTime"
    excluded_types: Tuple[str, ...] = ()
    detail_expand: Tuple[str, ...] = ("files",)
    # whether the contract API keys this entity by Type/ReferenceNbr or ReferenceNbr alone
    keyed_by_type: bool = True


@dataclass(frozen=True)
class CounterpartRule:
    """A status that Acumatica represents as a separate parallel document.

    When a record of ``kind`` carries ``status``, the same reference number
    also exists under ``counterpart_doc_type`` and must be fetched on its own;
    a status-only update would never create it.
    """

    kind: str
    status: str
    counterpart_doc_type: str


ENTITIES: Dict[str, EntityConfig] = {
    "payment": EntityConfig(
        name="payment",
        endpoint="Payment",
        date_field="ApplicationDate",
        excluded_types=("Credit Memo",),
        detail_expand=("ApplicationHistory", "files"),
    ),
    "invoice": EntityConfig(
        name="invoice",
        endpoint="Invoice",
        date_field="Date",
        detail_expand=("files",),
    ),
}

# Only "Voided" is known to behave this way. Add rules here, not in code paths.
COUNTERPART_RULES: Tuple[CounterpartRule, ...] = (
    CounterpartRule(kind="payment", status="Voided", counterpart_doc_type="Voided Payment"),
)

_DOC_TYPE_KINDS: Dict[str, str] = {
    "Payment": "payment",
    "Prepayment": "prepayment",
    "Voided Payment": "voided_payment",
    "Refund": "refund",
    "Voided Refund": "voided_refund",
    "Credit Memo": "credit_memo",
    "Invoice": "invoice",
    "Debit Memo": "debit_memo",
    "Credit WO": "credit_write_off",
    "Small Credit WO": "small_credit_write_off",
}

# kind -> entity for every known document kind
_KIND_ENTITIES: Dict[str, str] = {
    "payment": "payment",
    "prepayment": "payment",
    "voided_payment": "payment",
    "refund": "payment",
    "voided_refund": "payment",
    "credit_memo": "payment",
    "invoice": "invoice",
    "debit_memo": "invoice",
    "credit_write_off": "invoice",
    "small_credit_write_off": "invoice",
}


class UnknownEntityError(ValueError):
    """Raised for an entity name not in ENTITIES."""


def get_entity(name: str) -> EntityConfig:
    try:
        return ENTITIES[name]
    except KeyError:
        raise UnknownEntityError(
            f"Unknown entity {name!r}; expected one of {sorted(ENTITIES)}"
        ) from None


def kind_for_doc_type(doc_type: str) -> str:
    """Map an Acumatica Type value to its canonical kind."""
    if doc_type in _DOC_TYPE_KINDS:
        return _DOC_TYPE_KINDS[doc_type]
    return re.sub(r"[^a-z0-9]+", "_", doc_type.strip().lower()).strip("_")


def doc_type_for_kind(kind: str) -> str:
    for doc_type, mapped in _DOC_TYPE_KINDS.items():
        if mapped == kind:
            return doc_type
    return kind.replace("_", " ").title()


def entity_for_kind(kind: str, default: Optional[str] = None) -> str:
    return _KIND_ENTITIES.get(kind, default or kind)


def counterpart_rule_for(kind: str, status: Optional[str]) -> Optional[CounterpartRule]:
    if not status:
        return None
    for rule in COUNTERPART_RULES:
        if rule.kind == kind and rule.status == status:
            return rule
    return None
