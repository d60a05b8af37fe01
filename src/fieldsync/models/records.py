"""
Persistent record types owned by the local store.

LocalEntityRecord is a cached entity snapshot; SyncQueueEntry is one
pending mutation awaiting confirmation from the remote collaborator.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from ..utils.timestamps import to_iso, utc_now


class EntitySyncStatus(str, Enum):
    """Sync status of a cached entity."""
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class SyncOperation(str, Enum):
    """Mutation kinds carried by queue entries."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dumps(data: Any) -> str:
    """Serialize snapshot data; datetimes become fixed-width ISO strings."""
    return json.dumps(data, default=_json_default, sort_keys=True)


@dataclass
class LocalEntityRecord:
    """A cached entity snapshot."""
    id: str
    type: str
    fields: Dict[str, Any] = field(default_factory=dict)
    sync_status: EntitySyncStatus = EntitySyncStatus.PENDING
    sync_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def snapshot(self) -> Dict[str, Any]:
        """Flat wire-format view: entity fields plus id and timestamps."""
        data = dict(self.fields)
        data["id"] = self.id
        data["syncStatus"] = self.sync_status.value
        if self.created_at is not None:
            data["createdAt"] = to_iso(self.created_at)
        if self.updated_at is not None:
            data["updatedAt"] = to_iso(self.updated_at)
        return data

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "fields": self.fields,
            "syncStatus": self.sync_status.value,
            "syncError": self.sync_error,
            "createdAt": to_iso(self.created_at) if self.created_at else None,
            "updatedAt": to_iso(self.updated_at) if self.updated_at else None,
        }


@dataclass
class SyncQueueEntry:
    """A single pending mutation."""
    id: str
    entity_type: str
    entity_id: str
    operation: SyncOperation
    payload: Dict[str, Any]
    attempts: int = 0
    priority: int = 0
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    @property
    def label(self) -> str:
        return f"{self.entity_type}:{self.entity_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "operation": self.operation.value,
            "payload": json.loads(dumps(self.payload)),
            "attempts": self.attempts,
            "priority": self.priority,
            "lastError": self.last_error,
            "createdAt": to_iso(self.created_at),
        }


__all__ = [
    "EntitySyncStatus",
    "SyncOperation",
    "LocalEntityRecord",
    "SyncQueueEntry",
    "dumps",
]
