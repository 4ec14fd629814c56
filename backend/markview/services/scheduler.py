"""Background job scheduler for the realtime channel and tombstone retention.

Runs periodic jobs for:
- Heartbeats on every open event stream
- Cleanup of connections that stopped receiving heartbeats
- Daily purge of old soft-delete tombstones (3:00 AM)
"""

import logging
from datetime import UTC, datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from markview.config import settings
from markview.sse.connection_manager import get_connection_manager

logger = logging.getLogger(__name__)

# Global scheduler instance
_scheduler: AsyncIOScheduler | None = None


# ---------------------------------------------------------------------------
# Job 1: Heartbeats (every sse_heartbeat_seconds)
# ---------------------------------------------------------------------------


async def send_heartbeats_job() -> None:
    """Queue a heartbeat event on every live connection."""
    sent = get_connection_manager().send_heartbeats()
    logger.debug("Heartbeat sent to %d connection(s)", sent)


# ---------------------------------------------------------------------------
# Job 2: Stale connection cleanup (every sse_cleanup_seconds)
# ---------------------------------------------------------------------------


async def cleanup_stale_connections_job() -> None:
    """Drop connections that have not taken a heartbeat within the stale window."""
    removed = get_connection_manager().cleanup_stale(settings.sse_stale_seconds)
    if removed:
        logger.info("Stale connection cleanup removed %d connection(s)", removed)


# ---------------------------------------------------------------------------
# Job 3: Tombstone retention (Daily 3:00 AM)
# ---------------------------------------------------------------------------


async def purge_tombstones_job() -> None:
    """Daily job: hard-delete documents and folders soft-deleted long ago.

    Clients that have not synced for longer than the retention window will
    no longer learn about these deletions through incremental listings.
    """
    if not settings.retention_cleanup_enabled:
        logger.info("Tombstone cleanup is disabled, skipping")
        return

    logger.info("Running tombstone cleanup (retention=%d days)", settings.tombstone_retention_days)

    from markview.db.database import async_session_factory
    from markview.db.repositories import document_repo, folder_repo

    cutoff = (datetime.now(UTC) - timedelta(days=settings.tombstone_retention_days)).replace(
        tzinfo=None
    )
    try:
        async with async_session_factory() as session:
            documents = await document_repo.purge_tombstones_before(session, cutoff)
            folders = await folder_repo.purge_tombstones_before(session, cutoff)
            await session.commit()
        logger.info(
            "Tombstone cleanup completed: %d documents, %d folders purged",
            documents, folders,
        )
    except Exception:
        logger.error("Failed to run tombstone cleanup", exc_info=True)


# ---------------------------------------------------------------------------
# Scheduler lifecycle
# ---------------------------------------------------------------------------


def start_scheduler() -> AsyncIOScheduler:
    """Start the background job scheduler.

    Configures and starts APScheduler with all periodic jobs.
    """
    global _scheduler

    if _scheduler is not None:
        logger.warning("Scheduler already running")
        return _scheduler

    _scheduler = AsyncIOScheduler()

    _scheduler.add_job(
        send_heartbeats_job,
        IntervalTrigger(seconds=settings.sse_heartbeat_seconds),
        id="send_heartbeats",
        name="Send realtime heartbeats",
        replace_existing=True,
    )

    _scheduler.add_job(
        cleanup_stale_connections_job,
        IntervalTrigger(seconds=settings.sse_cleanup_seconds),
        id="cleanup_stale_connections",
        name="Cleanup stale realtime connections",
        replace_existing=True,
    )

    # Daily job at 3 AM: tombstone retention
    _scheduler.add_job(
        purge_tombstones_job,
        CronTrigger(hour=3, minute=0),
        id="purge_tombstones",
        name="Purge old tombstones (retention)",
        replace_existing=True,
    )

    _scheduler.start()
    logger.info("Background scheduler started with %d jobs", len(_scheduler.get_jobs()))

    return _scheduler


def stop_scheduler() -> None:
    """Stop the background job scheduler."""
    global _scheduler

    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Background scheduler stopped")


def get_scheduler() -> AsyncIOScheduler | None:
    """Get the current scheduler instance."""
    return _scheduler
