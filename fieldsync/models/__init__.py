"""Models package for the field sync client."""

from .cache_entry import CacheEntry, PendingRequest
from .local_record import LOCAL_ID_PREFIX, LocalRecord, generate_local_id, is_local_id

__all__ = [
    'CacheEntry', 'PendingRequest', 'LocalRecord',
    'LOCAL_ID_PREFIX', 'generate_local_id', 'is_local_id',
]
