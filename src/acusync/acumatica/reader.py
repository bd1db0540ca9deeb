"""
Windowed, paginated reads from Acumatica, normalized into CanonicalRecords.

A window read is a sequence of pages fetched with $top/$skip. Pagination
state is only the offset, so a read can be restarted from any page
boundary (``offset=``) without holding anything open across calls.

While the caller processes one page, the next ``prefetch_depth`` pages are
fetched in a background task feeding a bounded asyncio.Queue.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

from acusync.acumatica.kinds import (
    EntityConfig,
    counterpart_rule_for,
    doc_type_for_kind,
    entity_for_kind,
    get_entity,
    kind_for_doc_type,
)
from acusync.acumatica.mapping import MappingError, field_value, normalize_record
from acusync.models.record import CanonicalRecord

logger = logging.getLogger(__name__)

Identity = Tuple[str, str]

_FILTER_FORMAT = "%Y-%m-%dT%H:%M:%S"


@dataclass
class Page:
    offset: int
    records: List[CanonicalRecord] = field(default_factory=list)
    raw_count: int = 0
    skipped: List[str] = field(default_factory=list)  # rows that could not be normalized


_END = object()


def build_window_filter(
    config: EntityConfig,
    start: datetime,
    end: datetime,
    *,
    date_field: Optional[str] = None,
) -> str:
    """OData $filter restricting ``date_field`` to [start, end] inclusive."""
    date_field = date_field or config.date_field
    clauses = [
        f"{date_field} ge datetimeoffset'{start.strftime(_FILTER_FORMAT)}'",
        f"{date_field} le datetimeoffset'{end.strftime(_FILTER_FORMAT)}'",
    ]
    for doc_type in config.excluded_types:
        clauses.append(f"Type ne '{doc_type}'")
    return " and ".join(clauses)


class RemoteReader:
    """Reads Acumatica documents by window or identity."""

    def __init__(
        self,
        client,
        *,
        page_size: int = 500,
        prefetch_depth: int = 2,
        exists: Optional[Callable[[str, str], bool]] = None,
    ):
        """
        Args:
            client: AcumaticaClient instance (or AsyncMock in tests).
            page_size: $top for each page.
            prefetch_depth: Pages fetched ahead of the consumer.
            exists: Local existence check (kind, reference) -> bool, used to
                skip counterpart documents we already hold.
        """
        self.client = client
        self.page_size = page_size
        self.prefetch_depth = max(1, prefetch_depth)
        self._exists = exists or (lambda kind, ref: False)

    # ── Window reads ──────────────────────────────────────────────────────────

    async def fetch_window(
        self,
        entity: str,
        start: datetime,
        end: datetime,
        *,
        offset: int = 0,
        select: Optional[Sequence[str]] = None,
        date_field: Optional[str] = None,
    ) -> AsyncIterator[Page]:
        """Yield pages of records whose date field falls in [start, end]."""
        config = get_entity(entity)
        filter_expr = build_window_filter(config, start, end, date_field=date_field)
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.prefetch_depth)

        async def produce() -> None:
            skip = offset
            try:
                while True:
                    raw_items = await self.client.list_entities(
                        config.endpoint,
                        filter=filter_expr,
                        select=select,
                        top=self.page_size,
                        skip=skip,
                    )
                    records, skipped = self._normalize(entity, raw_items)
                    await queue.put(
                        Page(offset=skip, records=records, raw_count=len(raw_items), skipped=skipped)
                    )
                    if len(raw_items) < self.page_size:
                        break
                    skip += self.page_size
            except Exception as exc:
                await queue.put(exc)
                return
            await queue.put(_END)

        producer = asyncio.create_task(produce())
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    break
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            if not producer.done():
                producer.cancel()
                try:
                    await producer
                except asyncio.CancelledError:
                    pass

    async def iter_window(
        self, entity: str, start: datetime, end: datetime, **kwargs
    ) -> AsyncIterator[CanonicalRecord]:
        """Yield every record in the window, page by page."""
        async for page in self.fetch_window(entity, start, end, **kwargs):
            for record in page.records:
                yield record

    async def list_identities(
        self, entity: str, start: datetime, end: datetime
    ) -> Dict[Identity, CanonicalRecord]:
        """Remote records in the window keyed by (kind, reference_number).

        Requests only the fields the comparison needs.
        """
        config = get_entity(entity)
        select = ["ReferenceNbr", "Type", "Status", config.date_field, "LastModifiedDateTime"]
        found: Dict[Identity, CanonicalRecord] = {}
        async for record in self.iter_window(entity, start, end, select=select):
            found[(record.kind, record.reference_number)] = record
        return found

    # ── Identity reads ────────────────────────────────────────────────────────

    async def fetch_raw(
        self,
        kind: str,
        reference_number: str,
        *,
        expand: Optional[Sequence[str]] = None,
        select: Optional[Sequence[str]] = None,
    ) -> Optional[dict]:
        config = get_entity(entity_for_kind(kind))
        key_parts = [reference_number]
        if config.keyed_by_type:
            key_parts = [doc_type_for_kind(kind), reference_number]
        return await self.client.get_entity(config.endpoint, key_parts, expand=expand, select=select)

    async def fetch_one(self, kind: str, reference_number: str) -> Optional[CanonicalRecord]:
        """Current remote state of one identity, independent of any window."""
        raw = await self.fetch_raw(kind, reference_number)
        if raw is None:
            return None
        try:
            return self._to_record(entity_for_kind(kind), raw)
        except MappingError as exc:
            logger.warning("Unreadable %s %s: %s", kind, reference_number, exc)
            return None

    async def fetch_detail(
        self, kind: str, reference_number: str, expand: Optional[Sequence[str]] = None
    ) -> Optional[dict]:
        """Raw entity with its linked collections (ApplicationHistory, files) expanded."""
        if expand is None:
            expand = get_entity(entity_for_kind(kind)).detail_expand
        return await self.fetch_raw(kind, reference_number, expand=expand)

    async def fetch_counterpart(self, record: CanonicalRecord) -> Optional[CanonicalRecord]:
        """
        Fetch the parallel document a status stands for, if we don't hold it yet.

        A voided payment is a second document ("Voided Payment", same
        reference number) rather than a status flip on the original, so the
        status-only update of the original would never create it.
        """
        rule = counterpart_rule_for(record.kind, record.status)
        if rule is None:
            return None
        counterpart_kind = kind_for_doc_type(rule.counterpart_doc_type)
        if self._exists(counterpart_kind, record.reference_number):
            return None
        logger.info(
            "%s %s is %s; fetching its %s document",
            record.kind, record.reference_number, record.status, rule.counterpart_doc_type,
        )
        return await self.fetch_one(counterpart_kind, record.reference_number)

    # ── Internal helpers ──────────────────────────────────────────────────────

    def _normalize(self, entity: str, raw_items: List[dict]) -> Tuple[List[CanonicalRecord], List[str]]:
        records, skipped = [], []
        for raw in raw_items:
            try:
                records.append(self._to_record(entity, raw))
            except MappingError as exc:
                ref = field_value(raw, "ReferenceNbr") or "(no reference)"
                logger.warning("Skipping %s %s: %s", entity, ref, exc)
                skipped.append(f"{entity} {ref}: {exc}")
        return records, skipped

    @staticmethod
    def _to_record(entity: str, raw: dict) -> CanonicalRecord:
        return CanonicalRecord(**normalize_record(entity, raw))
