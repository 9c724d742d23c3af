"""Offline sync package."""

from .sync_types import (
    MutationType,
    PendingMutation,
    SyncExhaustedError,
    SyncHandlerFailure,
    SyncResult,
)
from .storage import JsonFileStore, KeyValueStore, MemoryStore
from .offline_store import OfflineWeatherStore
from .handlers import MutationHandlerRegistry, UpstreamSyncHandlers
from .offline_sync_queue import (
    BACKGROUND_SYNC_TAG,
    MAX_RETRY_COUNT,
    RETRY_DELAY_MS,
    OfflineSyncQueue,
)

__all__ = [
    'MutationType',
    'PendingMutation',
    'SyncExhaustedError',
    'SyncHandlerFailure',
    'SyncResult',
    'JsonFileStore',
    'KeyValueStore',
    'MemoryStore',
    'OfflineWeatherStore',
    'MutationHandlerRegistry',
    'UpstreamSyncHandlers',
    'BACKGROUND_SYNC_TAG',
    'MAX_RETRY_COUNT',
    'RETRY_DELAY_MS',
    'OfflineSyncQueue',
]
