"""
Background scheduler for request tracking jobs
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
import asyncio
import logging
from typing import Callable

from api.jobs.retention import purge_expired_requests
from lib.request_tracer.storage import StorageAdapter

logger = logging.getLogger(__name__)


def create_scheduler():
    """
    Create and configure the background scheduler
    """
    scheduler = AsyncIOScheduler()
    return scheduler


def setup_retention_job(
    scheduler: AsyncIOScheduler,
    storage_factory: Callable[[], StorageAdapter],
    retention_days: int
):
    """
    Set up the request retention job

    Args:
        scheduler: The APScheduler instance
        storage_factory: Returns the storage adapter to purge
        retention_days: Records older than this many days are deleted
    """
    # Daily retention job - runs at 2 AM every day
    scheduler.add_job(
        func=run_retention_job,
        args=[storage_factory, retention_days],
        trigger=CronTrigger(hour=2, minute=0),
        id='daily_request_retention',
        name='Purge expired request records',
        replace_existing=True
    )

    logger.info(f"Request retention job scheduled daily at 2:00 AM, keeping {retention_days} days")


async def run_retention_job(storage_factory: Callable[[], StorageAdapter], retention_days: int):
    """
    Wrapper that runs the purge off the event loop and logs failures
    """
    try:
        storage = storage_factory()
        await asyncio.to_thread(purge_expired_requests, storage, retention_days)
    except Exception as e:
        logger.error(f"Error in request retention job: {e}")
