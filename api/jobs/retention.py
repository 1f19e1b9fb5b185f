"""
Retention job that purges old request records
"""

import logging
from datetime import timedelta

from lib.request_tracer.models import utc_now
from lib.request_tracer.storage import StorageAdapter

logger = logging.getLogger(__name__)


def purge_expired_requests(storage: StorageAdapter, retention_days: int) -> int:
    """
    Delete records requested more than retention_days ago.
    This should be run as a daily scheduled job.
    """
    cutoff = utc_now() - timedelta(days=retention_days)
    deleted = storage.delete_older_than(cutoff)
    logger.info(f"Retention purge removed {deleted} request records older than {cutoff.isoformat()}")
    return deleted
