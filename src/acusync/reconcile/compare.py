"""Window count comparison between Acumatica and the replica. Read-only."""
import logging
from dataclasses import dataclass
from datetime import datetime

from acusync.acumatica.kinds import get_entity

logger = logging.getLogger(__name__)


@dataclass
class ComparisonResult:
    entity: str
    start: datetime
    end: datetime
    remote_count: int
    local_count: int

    @property
    def difference(self) -> int:
        """Positive: missing locally. Negative: extra locally (usually a date moved)."""
        return self.remote_count - self.local_count


class Reconciler:
    def __init__(self, reader, store):
        self.reader = reader
        self.store = store

    async def compare(self, entity: str, start: datetime, end: datetime) -> ComparisonResult:
        config = get_entity(entity)
        remote = await self.reader.list_identities(entity, start, end)
        local_count = self.store.count_window(
            entity, start, end, exclude_doc_types=config.excluded_types
        )
        result = ComparisonResult(
            entity=entity, start=start, end=end, remote_count=len(remote), local_count=local_count
        )
        logger.info(
            "Compared %s %s..%s: remote=%d local=%d difference=%d",
            entity, start.isoformat(), end.isoformat(),
            result.remote_count, result.local_count, result.difference,
        )
        return result
