"""
APScheduler jobs for background maintenance.

The session sweep marks sync sessions expired once they have gone quiet for
longer than the inactivity window. Lookups already expire sessions lazily;
the sweep keeps monitoring counts and the sessions table honest for clients
that simply disappear.
"""
import logging
from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from attendsync.config import get_settings

logger = logging.getLogger(__name__)


def build_scheduler(engine) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine passed through to the jobs.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _expire_sync_sessions,
        trigger="interval",
        minutes=settings.session_sweep_minutes,
        id="expire_sync_sessions",
        replace_existing=True,
        kwargs={"engine": engine},
    )

    return scheduler


async def _expire_sync_sessions(engine) -> None:
    """Sweep job: expire stale sync sessions. Errors are logged, never raised."""
    from attendsync.timesync.registry import SyncSessionRegistry

    settings = get_settings()
    try:
        registry = SyncSessionRegistry(
            engine, inactivity_window=timedelta(hours=settings.session_inactivity_hours)
        )
        expired = registry.expire_stale()
        if expired:
            logger.info("Expired %d stale sync session(s)", expired)
    except Exception as exc:
        logger.error("Sync session sweep failed: %s", exc)
