import logging
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()
_session_factory: Any = None
_adapter: Any = None


async def _end_overdue_meetings() -> None:
    """Job: end active meetings whose time limit has passed."""
    try:
        async with _session_factory() as db:
            count = await _adapter.end_overdue_meetings(db)
            if count > 0:
                logger.info("Ended %d meetings at their time limit", count)
    except Exception:
        logger.exception("Error ending overdue meetings")


async def _sweep_orphaned_rooms() -> None:
    """Job: retry deletion of provider rooms whose meeting was never saved."""
    try:
        async with _session_factory() as db:
            count = await _adapter.sweep_orphaned_rooms(db)
            if count > 0:
                logger.info("Deleted %d orphaned provider rooms", count)
    except Exception:
        logger.exception("Error sweeping orphaned rooms")


def setup_scheduler(session_factory: Any, adapter: Any, settings: Any) -> None:
    """Register all periodic jobs and start the scheduler."""
    global _session_factory, _adapter
    _session_factory = session_factory
    _adapter = adapter

    scheduler.add_job(
        _end_overdue_meetings,
        IntervalTrigger(seconds=settings.meeting_sweep_interval_seconds),
        id="end_overdue_meetings",
        replace_existing=True,
    )

    scheduler.add_job(
        _sweep_orphaned_rooms,
        IntervalTrigger(minutes=settings.orphan_sweep_interval_minutes),
        id="sweep_orphaned_rooms",
        replace_existing=True,
    )

    scheduler.start()
    logger.info("Background scheduler started with %d jobs", len(scheduler.get_jobs()))


def shutdown_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background scheduler stopped")
