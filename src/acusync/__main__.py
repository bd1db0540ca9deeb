"""
Main entrypoint: runs the incremental-sync scheduler.

FastAPI runs separately under uvicorn.

Usage:
    python -m acusync               # starts the scheduler
    python -m acusync logout        # logs out every cached Acumatica session
    python -m acusync check         # verifies the configured credentials
    uvicorn acusync.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


async def _run_logout() -> int:
    from acusync.engine import Failure, SyncEngine

    engine = SyncEngine()
    try:
        report = await engine.force_logout()
    finally:
        await engine.aclose()
    if isinstance(report, Failure):
        logger.error("Logout failed: %s", report.message)
        return 1
    logger.info(
        "Sessions: %d total, %d logged out, %d logout failures, %d invalidated",
        report.total_sessions, report.logged_out, report.failed, report.invalidated,
    )
    return 0


async def _run_check() -> int:
    from acusync.engine import Failure, SyncEngine

    engine = SyncEngine()
    try:
        result = await engine.check_credentials()
    finally:
        await engine.aclose()
    if isinstance(result, Failure):
        logger.error("Credential check failed: %s", result.message)
        if result.guidance:
            logger.error(result.guidance)
        return 1
    logger.info("Credentials OK for %s", engine.credentials.url)
    return 0


async def _run_scheduler() -> None:
    from acusync.config import get_settings
    from acusync.engine import SyncEngine
    from acusync.scheduler.jobs import build_scheduler

    settings = get_settings()
    if not settings.acumatica_url or not settings.acumatica_username:
        logger.error("ACUMATICA_URL and ACUMATICA_USERNAME must be set (env or .env).")
        sys.exit(1)

    engine = SyncEngine(settings)
    scheduler = build_scheduler(engine)
    scheduler.start()
    logger.info(
        "Scheduler started (incremental sync every %d minutes, %dh lookback)",
        settings.scheduled_sync_minutes, settings.scheduled_lookback_hours,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        await engine.aclose()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: `python -m acusync logout|check` or just `python -m acusync`
    command = sys.argv[1] if len(sys.argv) > 1 else ""
    if command == "logout":
        sys.exit(asyncio.run(_run_logout()))
    elif command == "check":
        sys.exit(asyncio.run(_run_check()))
    else:
        asyncio.run(_run_scheduler())
