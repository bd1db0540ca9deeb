"""
Backfill script: sync historical Acumatica documents in 30-day chunks.

Usage:
    python -m acusync.scripts.backfill --kind payment --days 90

Walks the window in reverse-chronological chunks. Each chunk is one job in
the job tracker, waited on until it finishes, so a chunk already being
synced by the API or scheduler is joined rather than duplicated.
"""
import argparse
import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Tuple

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)

CHUNK_DAYS = 30
SLEEP_BETWEEN_CHUNKS = 5.0


def chunk_windows(start: datetime, end: datetime, days: int = CHUNK_DAYS) -> List[Tuple[datetime, datetime]]:
    """Split [start, end] into consecutive windows, newest first."""
    windows = []
    current_end = end
    while current_end > start:
        current_start = max(current_end - timedelta(days=days), start)
        windows.append((current_start, current_end))
        current_end = current_start - timedelta(seconds=1)
    return windows


async def _backfill(kind: str, days: int, sync_engine=None) -> dict:
    from acusync.engine import Failure, JobHandle, SyncEngine
    from acusync.sync_service import SyncResult

    owned = sync_engine is None
    if owned:
        sync_engine = SyncEngine()

    end = datetime.utcnow().replace(microsecond=0)
    start = end - timedelta(days=days)
    totals = {"created": 0, "updated": 0, "errors": 0, "failed_chunks": 0}

    try:
        windows = chunk_windows(start, end)
        for i, (chunk_start, chunk_end) in enumerate(windows):
            logger.info(
                "Syncing %s %s -> %s",
                kind, chunk_start.strftime("%Y-%m-%d"), chunk_end.strftime("%Y-%m-%d"),
            )
            result = await sync_engine.sync_window(kind, chunk_start, chunk_end, source="backfill")
            if isinstance(result, JobHandle):
                job = await sync_engine.wait_for_completion(result.job_id)
                if isinstance(job, Failure):
                    result = job
                else:
                    result = SyncResult.from_job(job)

            if isinstance(result, Failure):
                logger.warning("Chunk failed: %s", result.message)
                totals["failed_chunks"] += 1
                if result.code in ("authentication_failed", "login_limit_reached"):
                    if result.guidance:
                        logger.error(result.guidance)
                    break
            else:
                totals["created"] += result.created
                totals["updated"] += result.updated
                totals["errors"] += len(result.errors)
                if result.status != "completed":
                    totals["failed_chunks"] += 1
                    logger.warning("Chunk ended %s: %s", result.status, result.error_message)

            if i < len(windows) - 1:
                await asyncio.sleep(SLEEP_BETWEEN_CHUNKS)
    finally:
        if owned:
            await sync_engine.aclose()

    logger.info(
        "Backfill complete. Created: %d, Updated: %d, Record errors: %d, Failed chunks: %d",
        totals["created"], totals["updated"], totals["errors"], totals["failed_chunks"],
    )
    return totals


def main() -> None:
    parser = argparse.ArgumentParser(description="Backfill Acumatica documents")
    parser.add_argument(
        "--kind",
        default="payment",
        choices=["payment", "invoice"],
        help="Entity to backfill (default: payment)",
    )
    parser.add_argument(
        "--days",
        type=int,
        default=90,
        help="Number of days to backfill (default: 90)",
    )
    args = parser.parse_args()
    asyncio.run(_backfill(args.kind, args.days))


if __name__ == "__main__":
    main()
