"""
Durable local store for cached entity snapshots and the sync queue.

Schema: one table per entity type (``entity_<type>``) plus a single
``sync_queue`` table indexed on ``(priority DESC, created_at ASC)``.
Every mutation is a single statement, so record updates are atomic.
"""

import json
import re
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite

from ..models.records import (
    EntitySyncStatus,
    LocalEntityRecord,
    SyncOperation,
    SyncQueueEntry,
    dumps,
)
from ..utils.errors import StorageUnavailable, ValidationError
from ..utils.logging import get_logger
from ..utils.timestamps import from_iso, parse_timestamp, to_iso, utc_now
from .database import Database


logger = get_logger("fieldsync.storage.local_store")

_TYPE_NAME = re.compile(r"^[a-z][a-z0-9_]{0,62}$")

QUEUE_SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_queue (
    id TEXT PRIMARY KEY,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    payload TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    priority INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sync_queue_order
    ON sync_queue(priority DESC, created_at ASC);
CREATE INDEX IF NOT EXISTS idx_sync_queue_entity
    ON sync_queue(entity_type, entity_id);
"""

ENTITY_SCHEMA = """
CREATE TABLE IF NOT EXISTS {table} (
    id TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    sync_status TEXT NOT NULL DEFAULT 'pending',
    sync_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_{table}_status ON {table}(sync_status);
"""

# Rowid breaks ties between entries sharing priority and created_at
QUEUE_ORDER = "ORDER BY priority DESC, created_at ASC, rowid ASC"

_TIMESTAMP_KEYS = {
    "createdAt": "created_at",
    "created_at": "created_at",
    "updatedAt": "updated_at",
    "updated_at": "updated_at",
}
_RESERVED_KEYS = {"id", "type", "syncStatus", "sync_status", "syncError", "sync_error"}


def validate_entity_type(entity_type: str) -> str:
    if not isinstance(entity_type, str) or not _TYPE_NAME.match(entity_type):
        raise ValidationError(
            "entity_type", entity_type,
            "must be a lowercase identifier (letters, digits, underscore)"
        )
    return entity_type


class LocalStore:
    """
    Keyed storage for entity snapshots (by type) and the pending-operation queue.

    Usage:
        store = LocalStore(Database(path), ["case", "person", "evidence"])
        await store.initialize()

        await store.put("case", {"id": "c1", "title": "Burglary"})
        await store.enqueue(entry)
        for entry in await store.dequeue_ordered():
            ...
    """

    def __init__(self, db: Database, entity_types: Iterable[str]):
        self.db = db
        self.entity_types = [validate_entity_type(t) for t in entity_types]
        self._initialized = False

    async def initialize(self) -> None:
        """Create tables and indexes if they do not exist."""
        await self.db.connect()
        await self.db.executescript(QUEUE_SCHEMA)
        for entity_type in self.entity_types:
            await self.db.executescript(ENTITY_SCHEMA.format(table=self._table(entity_type)))
        self._initialized = True
        logger.info("local_store_initialized", entity_types=self.entity_types)

    async def close(self) -> None:
        await self.db.close()
        self._initialized = False

    def _table(self, entity_type: str) -> str:
        if entity_type not in self.entity_types:
            raise ValidationError(
                "entity_type", entity_type,
                f"unknown entity type, expected one of {self.entity_types}"
            )
        return f"entity_{entity_type}"

    # ------------------------------------------------------------------
    # Entity snapshots
    # ------------------------------------------------------------------

    async def get(self, entity_type: str, entity_id: str) -> Optional[LocalEntityRecord]:
        row = await self.db.fetchone(
            f"SELECT * FROM {self._table(entity_type)} WHERE id = ?",
            (entity_id,)
        )
        return self._row_to_record(entity_type, row) if row else None

    async def put(self, entity_type: str, record: Any) -> LocalEntityRecord:
        """
        Insert or replace an entity snapshot.

        Accepts a LocalEntityRecord or a flat dict carrying ``id``.
        ``createdAt`` is preserved from an existing row and otherwise
        defaults to now; ``updatedAt`` defaults to now when absent.
        """
        if isinstance(record, LocalEntityRecord):
            entity = record
        elif isinstance(record, dict):
            entity = self._dict_to_record(entity_type, record)
        else:
            raise ValidationError("record", type(record).__name__, "must be a dict or LocalEntityRecord")

        if not entity.id:
            raise ValidationError("id", entity.id, "must be a non-empty string")

        existing = await self.get(entity_type, entity.id)
        now = utc_now()
        if entity.created_at is None:
            entity.created_at = existing.created_at if existing else now
        if entity.updated_at is None:
            entity.updated_at = now
        entity.type = entity_type

        await self.db.execute(
            f"""
            INSERT OR REPLACE INTO {self._table(entity_type)}
            (id, data, sync_status, sync_error, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                entity.id,
                dumps(entity.fields),
                entity.sync_status.value,
                entity.sync_error,
                to_iso(entity.created_at),
                to_iso(entity.updated_at),
            )
        )
        return entity

    async def delete(self, entity_type: str, entity_id: str) -> bool:
        """Remove a cached entity. Only called for explicit user cleanup."""
        changed = await self.db.execute(
            f"DELETE FROM {self._table(entity_type)} WHERE id = ?",
            (entity_id,)
        )
        return changed > 0

    async def set_sync_status(
        self,
        entity_type: str,
        entity_id: str,
        status: EntitySyncStatus,
        error: Optional[str] = None,
    ) -> bool:
        """
        Transition an entity's sync status.

        Leaves ``updated_at`` alone: it records user edits, not sync
        bookkeeping. Returns False when the entity is not cached.
        """
        status = EntitySyncStatus(status)
        changed = await self.db.execute(
            f"UPDATE {self._table(entity_type)} SET sync_status = ?, sync_error = ? WHERE id = ?",
            (status.value, error if status == EntitySyncStatus.FAILED else None, entity_id)
        )
        return changed > 0

    async def list_records(
        self,
        entity_type: str,
        status: Optional[EntitySyncStatus] = None,
    ) -> List[LocalEntityRecord]:
        table = self._table(entity_type)
        if status is None:
            rows = await self.db.fetchall(f"SELECT * FROM {table} ORDER BY created_at ASC")
        else:
            rows = await self.db.fetchall(
                f"SELECT * FROM {table} WHERE sync_status = ? ORDER BY created_at ASC",
                (EntitySyncStatus(status).value,)
            )
        return [self._row_to_record(entity_type, row) for row in rows]

    async def count_by_status(self, entity_type: str, status: EntitySyncStatus) -> int:
        row = await self.db.fetchone(
            f"SELECT COUNT(*) FROM {self._table(entity_type)} WHERE sync_status = ?",
            (EntitySyncStatus(status).value,)
        )
        return row[0] if row else 0

    # ------------------------------------------------------------------
    # Sync queue
    # ------------------------------------------------------------------

    async def enqueue(self, entry: SyncQueueEntry) -> SyncQueueEntry:
        await self.db.execute(
            """
            INSERT INTO sync_queue
            (id, entity_type, entity_id, operation, payload, attempts, priority, last_error, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                entry.entity_type,
                entry.entity_id,
                SyncOperation(entry.operation).value,
                dumps(entry.payload),
                entry.attempts,
                entry.priority or 0,
                entry.last_error,
                to_iso(entry.created_at or utc_now()),
            )
        )
        return entry

    async def dequeue_ordered(self) -> List[SyncQueueEntry]:
        """All queue entries, most urgent first, oldest first within a priority."""
        rows = await self.db.fetchall(f"SELECT * FROM sync_queue {QUEUE_ORDER}")
        return [self._row_to_entry(row) for row in rows]

    async def get_entry(self, entry_id: str) -> Optional[SyncQueueEntry]:
        row = await self.db.fetchone("SELECT * FROM sync_queue WHERE id = ?", (entry_id,))
        return self._row_to_entry(row) if row else None

    async def exhausted_entries(self, max_retries: int) -> List[SyncQueueEntry]:
        rows = await self.db.fetchall(
            f"SELECT * FROM sync_queue WHERE attempts >= ? {QUEUE_ORDER}",
            (max_retries,)
        )
        return [self._row_to_entry(row) for row in rows]

    async def update_entry(
        self,
        entry_id: str,
        attempts: int,
        last_error: Optional[str],
    ) -> bool:
        changed = await self.db.execute(
            "UPDATE sync_queue SET attempts = ?, last_error = ? WHERE id = ?",
            (attempts, last_error, entry_id)
        )
        return changed > 0

    async def delete_entry(self, entry_id: str) -> bool:
        changed = await self.db.execute("DELETE FROM sync_queue WHERE id = ?", (entry_id,))
        return changed > 0

    async def delete_exhausted(
        self,
        max_retries: int,
        older_than: Optional[timedelta] = None,
    ) -> int:
        if older_than is None:
            return await self.db.execute(
                "DELETE FROM sync_queue WHERE attempts >= ?",
                (max_retries,)
            )
        cutoff = to_iso(utc_now() - older_than)
        return await self.db.execute(
            "DELETE FROM sync_queue WHERE attempts >= ? AND created_at < ?",
            (max_retries, cutoff)
        )

    async def count_live_entries(self, entity_type: str, entity_id: str, max_retries: int) -> int:
        """Queued entries for one entity that a drain would still attempt."""
        row = await self.db.fetchone(
            "SELECT COUNT(*) FROM sync_queue WHERE entity_type = ? AND entity_id = ? AND attempts < ?",
            (entity_type, entity_id, max_retries)
        )
        return row[0] if row else 0

    async def count_queue(self) -> int:
        row = await self.db.fetchone("SELECT COUNT(*) FROM sync_queue")
        return row[0] if row else 0

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def get_stats(self, max_retries: int) -> Dict[str, Any]:
        pending = {
            entity_type: await self.count_by_status(entity_type, EntitySyncStatus.PENDING)
            for entity_type in self.entity_types
        }
        failed_row = await self.db.fetchone(
            "SELECT COUNT(*) FROM sync_queue WHERE attempts >= ?",
            (max_retries,)
        )
        return {
            "pending": pending,
            "queue_length": await self.count_queue(),
            "failed_items": failed_row[0] if failed_row else 0,
            "total_pending": sum(pending.values()),
        }

    async def export_data(self) -> Dict[str, Any]:
        """JSON-safe dump of every table, for debugging and backup."""
        data: Dict[str, Any] = {}
        for entity_type in self.entity_types:
            data[entity_type] = [r.to_dict() for r in await self.list_records(entity_type)]
        data["sync_queue"] = [e.to_dict() for e in await self.dequeue_ordered()]
        return {
            "exported_at": to_iso(utc_now()),
            "version": 1,
            "data": data,
        }

    async def clear_all(self) -> None:
        """Drop every cached entity and queue entry. User-triggered cleanup only."""
        for entity_type in self.entity_types:
            await self.db.execute(f"DELETE FROM {self._table(entity_type)}")
        await self.db.execute("DELETE FROM sync_queue")
        logger.warning("local_store_cleared", entity_types=self.entity_types)

    async def is_available(self) -> bool:
        try:
            await self.count_queue()
            return True
        except StorageUnavailable as e:
            logger.error("local_store_unavailable", error=str(e))
            return False

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _dict_to_record(self, entity_type: str, data: Dict[str, Any]) -> LocalEntityRecord:
        fields: Dict[str, Any] = {}
        stamps: Dict[str, Optional[datetime]] = {"created_at": None, "updated_at": None}

        for key, value in data.items():
            if key in _TIMESTAMP_KEYS:
                stamps[_TIMESTAMP_KEYS[key]] = parse_timestamp(value)
            elif key not in _RESERVED_KEYS:
                fields[key] = value

        status = data.get("syncStatus", data.get("sync_status", EntitySyncStatus.PENDING))
        return LocalEntityRecord(
            id=str(data.get("id", "")),
            type=entity_type,
            fields=fields,
            sync_status=EntitySyncStatus(status),
            sync_error=data.get("syncError", data.get("sync_error")),
            created_at=stamps["created_at"],
            updated_at=stamps["updated_at"],
        )

    def _row_to_record(self, entity_type: str, row: aiosqlite.Row) -> LocalEntityRecord:
        return LocalEntityRecord(
            id=row["id"],
            type=entity_type,
            fields=json.loads(row["data"]),
            sync_status=EntitySyncStatus(row["sync_status"]),
            sync_error=row["sync_error"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )

    def _row_to_entry(self, row: aiosqlite.Row) -> SyncQueueEntry:
        return SyncQueueEntry(
            id=row["id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            operation=SyncOperation(row["operation"]),
            payload=json.loads(row["payload"]),
            attempts=row["attempts"],
            priority=row["priority"],
            last_error=row["last_error"],
            created_at=from_iso(row["created_at"]),
        )


__all__ = ["LocalStore", "validate_entity_type", "QUEUE_ORDER"]
