"""Record types shared across the sync engine."""

from .records import (
    EntitySyncStatus,
    SyncOperation,
    LocalEntityRecord,
    SyncQueueEntry,
    dumps,
)

__all__ = [
    'EntitySyncStatus',
    'SyncOperation',
    'LocalEntityRecord',
    'SyncQueueEntry',
    'dumps',
]
