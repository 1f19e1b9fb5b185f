from typing import Optional

from fastapi import HTTPException, status

from lib.request_tracer.storage import StorageAdapter
from lib.request_tracer.tracker import Tracker

# Export all public functions
__all__ = [
    'set_storage', 'get_storage', 'get_tracker'
]

_storage: Optional[StorageAdapter] = None


def set_storage(storage: Optional[StorageAdapter]) -> None:
    """Install the storage adapter the API reads from (None to clear)."""
    global _storage
    _storage = storage


def get_storage() -> StorageAdapter:
    if _storage is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Request storage has not been initialized"
        )
    return _storage


def get_tracker() -> Tracker:
    """FastAPI dependency returning a Tracker over the configured storage."""
    return Tracker(get_storage())
