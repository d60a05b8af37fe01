"""
Sync queue manager: bookkeeping for pending operations.

Entries are appended without de-duplication, drained in
``(priority desc, created_at asc)`` order and carry an attempt counter
bounded by ``max_retries``.
"""

import uuid
from collections.abc import Mapping
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

from ..models.records import EntitySyncStatus, SyncOperation, SyncQueueEntry
from ..storage.local_store import LocalStore, validate_entity_type
from ..utils.errors import ValidationError
from ..utils.logging import get_logger
from ..utils.timestamps import utc_now


logger = get_logger("fieldsync.sync.queue")


class SyncQueueManager:
    """Enqueue, order and track attempts of pending operations."""

    def __init__(self, store: LocalStore, max_retries: int = 5):
        self.store = store
        self.max_retries = max_retries

    async def enqueue(
        self,
        entity_type: str,
        entity_id: str,
        operation: Union[str, SyncOperation],
        payload: Dict[str, Any],
        priority: int = 0,
    ) -> SyncQueueEntry:
        """
        Append a new entry.

        Raises:
            ValidationError: unknown operation or entity type, or a
                payload that is not a mapping
        """
        try:
            operation = SyncOperation(operation)
        except ValueError:
            raise ValidationError(
                "operation", operation,
                f"must be one of {[op.value for op in SyncOperation]}"
            ) from None

        validate_entity_type(entity_type)
        if entity_type not in self.store.entity_types:
            raise ValidationError(
                "entity_type", entity_type,
                f"unknown entity type, expected one of {self.store.entity_types}"
            )
        if not entity_id:
            raise ValidationError("entity_id", entity_id, "must be a non-empty string")
        if not isinstance(payload, Mapping):
            raise ValidationError("payload", type(payload).__name__, "must be a mapping")
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ValidationError("priority", priority, "must be an integer")

        entry = SyncQueueEntry(
            id=str(uuid.uuid4()),
            entity_type=entity_type,
            entity_id=str(entity_id),
            operation=operation,
            payload=dict(payload),
            attempts=0,
            priority=priority,
            created_at=utc_now(),
        )
        await self.store.enqueue(entry)

        logger.info(
            "entry_enqueued",
            entry_id=entry.id,
            entity=entry.label,
            operation=operation.value,
            priority=priority,
        )
        return entry

    async def ordered_entries(self) -> List[SyncQueueEntry]:
        return await self.store.dequeue_ordered()

    async def get(self, entry_id: str) -> Optional[SyncQueueEntry]:
        return await self.store.get_entry(entry_id)

    async def get_queue_count(self) -> int:
        return await self.store.count_queue()

    async def get_pending_count(self) -> Dict[str, int]:
        """Locally pending records per entity type, plus ``total``."""
        counts = {
            entity_type: await self.store.count_by_status(entity_type, EntitySyncStatus.PENDING)
            for entity_type in self.store.entity_types
        }
        counts["total"] = sum(counts.values())
        return counts

    async def has_live_entries(self, entity_type: str, entity_id: str) -> bool:
        """True while another attempt for the entity is still queued."""
        return await self.store.count_live_entries(entity_type, entity_id, self.max_retries) > 0

    def is_exhausted(self, entry: SyncQueueEntry) -> bool:
        return entry.attempts >= self.max_retries

    async def record_failure(self, entry: SyncQueueEntry, error: str) -> int:
        """Increment attempts and store the error. Returns the new attempt count."""
        entry.attempts += 1
        entry.last_error = error
        await self.store.update_entry(entry.id, entry.attempts, entry.last_error)
        return entry.attempts

    async def mark_exhausted(self, entry: SyncQueueEntry, error: str) -> None:
        """Force the entry to the retry bound so no drain picks it up again."""
        entry.attempts = max(entry.attempts, self.max_retries)
        entry.last_error = error
        await self.store.update_entry(entry.id, entry.attempts, entry.last_error)

    async def complete(self, entry: SyncQueueEntry) -> bool:
        return await self.store.delete_entry(entry.id)

    async def failed_entries(self) -> List[SyncQueueEntry]:
        return await self.store.exhausted_entries(self.max_retries)

    async def retry_failed(self, limit: Optional[int] = None) -> int:
        """
        Make exhausted entries eligible again.

        Attempts go back to 0 and the entities back to ``pending``; the
        last error is kept for reference. Returns the number of entries
        reset.
        """
        entries = await self.failed_entries()
        if limit is not None:
            entries = entries[:limit]

        for entry in entries:
            await self.store.update_entry(entry.id, 0, entry.last_error)
            await self.store.set_sync_status(
                entry.entity_type, entry.entity_id, EntitySyncStatus.PENDING
            )

        if entries:
            logger.info("failed_entries_requeued", count=len(entries))
        return len(entries)

    async def purge_failed(self, older_than_days: Optional[float] = None) -> int:
        """Delete exhausted entries, optionally only those older than N days."""
        older_than = timedelta(days=older_than_days) if older_than_days is not None else None
        removed = await self.store.delete_exhausted(self.max_retries, older_than)
        logger.warning(
            "failed_entries_purged",
            count=removed,
            older_than_days=older_than_days,
        )
        return removed


__all__ = ["SyncQueueManager"]
