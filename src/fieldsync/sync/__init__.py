"""
Synchronization components for fieldsync.

This package provides:
- Field-level conflict detection and resolution
- The ordered sync queue
- The network sync orchestrator and its status events
- Remote, background and connectivity adapters
"""

from .background import BackgroundFacility, BackgroundTrigger, PollingFacility, select_facility
from .conflict import (
    AutoResolution,
    ConflictDetector,
    ConflictRecord,
    FieldConflict,
    ResolutionStrategy,
    auto_resolve_conflict,
    build_merge_payload,
    detect_conflict,
    resolve_conflict,
)
from .connectivity import ConnectivityMonitor
from .events import EventRegistry, Subscription, SyncEvent, SyncEventKind, SyncStatus
from .orchestrator import ItemOutcome, SyncOrchestrator, SyncResult
from .queue import SyncQueueManager
from .remote import HttpRemoteClient, RemoteCollaborator, SyncRequest, SyncResponse

__all__ = [
    'BackgroundFacility',
    'BackgroundTrigger',
    'PollingFacility',
    'select_facility',
    'AutoResolution',
    'ConflictDetector',
    'ConflictRecord',
    'FieldConflict',
    'ResolutionStrategy',
    'auto_resolve_conflict',
    'build_merge_payload',
    'detect_conflict',
    'resolve_conflict',
    'ConnectivityMonitor',
    'EventRegistry',
    'Subscription',
    'SyncEvent',
    'SyncEventKind',
    'SyncStatus',
    'ItemOutcome',
    'SyncOrchestrator',
    'SyncResult',
    'SyncQueueManager',
    'HttpRemoteClient',
    'RemoteCollaborator',
    'SyncRequest',
    'SyncResponse',
]
