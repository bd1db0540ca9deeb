"""
Date-drift detection and repair.

A record is stale when the replica places it in a window but Acumatica's
current date for it falls outside. Acumatica never tells us a document's
date moved; the only trace is a local record the window listing no longer
returns. Each of those is looked up by identity:

    found, date outside window   stale, fixable
    found, date inside window    not stale (listing lagged)
    found, no date               stale, not fixable
    not found                    stale with acumatica_status NOT_FOUND_STATUS,
                                 not fixable

Records the listing still returns are in the window by definition and are
never looked up.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from acusync.acumatica.kinds import get_entity
from acusync.errors import PersistenceError, RemoteRequestError, TransientRemoteError

logger = logging.getLogger(__name__)

NOT_FOUND_STATUS = "NOT FOUND IN ACUMATICA"


@dataclass
class StaleRecord:
    kind: str
    reference_number: str
    type: str
    customer_name: Optional[str]
    db_date: Optional[datetime]
    acumatica_date: Optional[datetime]
    acumatica_status: Optional[str]
    amount: float = 0.0

    @property
    def fixable(self) -> bool:
        return self.acumatica_date is not None


@dataclass
class FixedRecord:
    kind: str
    reference_number: str
    type: str
    old_date: Optional[datetime]
    new_date: datetime


@dataclass
class VerificationResult:
    entity: str
    start: datetime
    end: datetime
    remote_count: int = 0
    local_count: int = 0
    in_remote_not_local: int = 0
    in_local_not_remote: int = 0
    stale_payments: List[StaleRecord] = field(default_factory=list)
    fixed_payments: List[FixedRecord] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class DriftVerifier:
    def __init__(self, reader, store):
        self.reader = reader
        self.store = store

    async def verify(
        self, entity: str, start: datetime, end: datetime, fix: bool = False
    ) -> VerificationResult:
        """
        Report (and with ``fix`` repair) records whose date moved out of the window.

        With fix=False nothing local is written. With fix=True only stale
        records that have a remote date are updated, each with a change-log
        entry tagged "verification".
        """
        config = get_entity(entity)
        remote = await self.reader.list_identities(entity, start, end)
        local = {
            (row.kind, row.reference_number): row
            for row in self.store.window_records(
                entity, start, end, exclude_doc_types=config.excluded_types
            )
        }
        result = VerificationResult(
            entity=entity,
            start=start,
            end=end,
            remote_count=len(remote),
            local_count=len(local),
            in_remote_not_local=len(remote.keys() - local.keys()),
        )

        missing_remotely = [row for key, row in local.items() if key not in remote]
        result.in_local_not_remote = len(missing_remotely)

        for row in missing_remotely:
            try:
                current = await self.reader.fetch_one(row.kind, row.reference_number)
            except (TransientRemoteError, RemoteRequestError) as exc:
                result.errors.append(f"{row.kind} {row.reference_number}: {exc}")
                continue

            if current is None:
                result.stale_payments.append(self._stale(row, None, NOT_FOUND_STATUS))
                continue
            if current.primary_date is not None and start <= current.primary_date <= end:
                logger.info(
                    "%s %s is in the window but was not listed; not stale",
                    row.kind, row.reference_number,
                )
                continue
            result.stale_payments.append(self._stale(row, current.primary_date, current.status))

        if fix:
            for stale in result.stale_payments:
                if not stale.fixable:
                    continue
                try:
                    old_date = self.store.apply_date_fix(
                        stale.kind,
                        stale.reference_number,
                        stale.acumatica_date,
                        stale.acumatica_status,
                    )
                except PersistenceError as exc:
                    result.errors.append(f"{stale.kind} {stale.reference_number}: {exc}")
                    continue
                result.fixed_payments.append(FixedRecord(
                    kind=stale.kind,
                    reference_number=stale.reference_number,
                    type=stale.type,
                    old_date=old_date,
                    new_date=stale.acumatica_date,
                ))

        logger.info(
            "Verified %s %s..%s: %d stale, %d fixed, %d errors",
            entity, start.isoformat(), end.isoformat(),
            len(result.stale_payments), len(result.fixed_payments), len(result.errors),
        )
        return result

    @staticmethod
    def _stale(row, remote_date: Optional[datetime], remote_status: Optional[str]) -> StaleRecord:
        return StaleRecord(
            kind=row.kind,
            reference_number=row.reference_number,
            type=row.doc_type,
            customer_name=row.party_name,
            db_date=row.primary_date,
            acumatica_date=remote_date,
            acumatica_status=remote_status,
            amount=row.amount,
        )
