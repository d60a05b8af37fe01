"""
Unit tests for the sync queue manager.
"""

import pytest
from datetime import timedelta

from fieldsync.models.records import EntitySyncStatus, SyncOperation, SyncQueueEntry
from fieldsync.sync.queue import SyncQueueManager
from fieldsync.utils.errors import ValidationError
from fieldsync.utils.timestamps import utc_now


@pytest.fixture
def queue(store):
    return SyncQueueManager(store, max_retries=5)


class TestEnqueue:
    """Test entry creation and validation."""

    @pytest.mark.asyncio
    async def test_enqueue_defaults(self, queue):
        entry = await queue.enqueue("case", "c1", "create", {"id": "c1", "title": "A"})

        assert entry.id
        assert entry.operation == SyncOperation.CREATE
        assert entry.attempts == 0
        assert entry.priority == 0
        assert entry.last_error is None
        assert await queue.get_queue_count() == 1
        assert (await queue.get(entry.id)).payload == {"id": "c1", "title": "A"}

    @pytest.mark.asyncio
    async def test_no_deduplication(self, queue):
        await queue.enqueue("case", "c1", "update", {"title": "A"})
        await queue.enqueue("case", "c1", "update", {"title": "B"})

        assert await queue.get_queue_count() == 2

    @pytest.mark.asyncio
    async def test_priority_then_creation_order(self, queue):
        """Priorities [0, 1, 0] drain as the priority-1 item, then the others in order."""
        first = await queue.enqueue("case", "c1", "create", {"n": 1}, priority=0)
        urgent = await queue.enqueue("case", "c2", "create", {"n": 2}, priority=1)
        third = await queue.enqueue("case", "c3", "create", {"n": 3}, priority=0)

        ordered = await queue.ordered_entries()

        assert [e.id for e in ordered] == [urgent.id, first.id, third.id]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"operation": "upsert"},
        {"entity_type": "vehicle"},
        {"entity_type": "Case"},
        {"payload": "not a mapping"},
        {"payload": None},
        {"entity_id": ""},
        {"priority": "high"},
    ])
    async def test_validation(self, queue, kwargs):
        args = {
            "entity_type": "case",
            "entity_id": "c1",
            "operation": "update",
            "payload": {"title": "A"},
        }
        args.update(kwargs)

        with pytest.raises(ValidationError):
            await queue.enqueue(**args)

        assert await queue.get_queue_count() == 0


class TestAttempts:
    """Test failure bookkeeping."""

    @pytest.mark.asyncio
    async def test_record_failure(self, queue):
        entry = await queue.enqueue("case", "c1", "create", {})

        assert await queue.record_failure(entry, "timeout") == 1
        assert await queue.record_failure(entry, "503") == 2

        stored = await queue.get(entry.id)
        assert stored.attempts == 2
        assert stored.last_error == "503"
        assert not queue.is_exhausted(stored)

    @pytest.mark.asyncio
    async def test_mark_exhausted(self, queue):
        entry = await queue.enqueue("case", "c1", "create", {})

        await queue.mark_exhausted(entry, "rejected")

        stored = await queue.get(entry.id)
        assert stored.attempts == 5
        assert queue.is_exhausted(stored)
        assert [e.id for e in await queue.failed_entries()] == [entry.id]

    @pytest.mark.asyncio
    async def test_live_entries_ignore_exhausted(self, queue):
        first = await queue.enqueue("case", "c1", "update", {"title": "A"})
        await queue.enqueue("case", "c2", "update", {"title": "B"})
        assert await queue.has_live_entries("case", "c1") is True

        await queue.mark_exhausted(first, "rejected")

        assert await queue.has_live_entries("case", "c1") is False
        assert await queue.has_live_entries("case", "c2") is True
        assert await queue.has_live_entries("person", "c2") is False

    @pytest.mark.asyncio
    async def test_complete(self, queue):
        entry = await queue.enqueue("case", "c1", "create", {})

        assert await queue.complete(entry) is True
        assert await queue.get_queue_count() == 0


class TestOperatorActions:
    """Test retry and purge of exhausted entries."""

    @pytest.mark.asyncio
    async def test_retry_failed(self, queue, store):
        await store.put("case", {"id": "c1"})
        await store.set_sync_status("case", "c1", EntitySyncStatus.FAILED, "boom")
        entry = await queue.enqueue("case", "c1", "update", {"title": "A"})
        await queue.mark_exhausted(entry, "boom")
        healthy = await queue.enqueue("case", "c2", "create", {})

        assert await queue.retry_failed() == 1

        stored = await queue.get(entry.id)
        assert stored.attempts == 0
        assert stored.last_error == "boom"
        assert (await store.get("case", "c1")).sync_status == EntitySyncStatus.PENDING
        assert (await queue.get(healthy.id)).attempts == 0
        assert await queue.failed_entries() == []

    @pytest.mark.asyncio
    async def test_retry_failed_limit(self, queue):
        for i in range(3):
            entry = await queue.enqueue("case", f"c{i}", "create", {})
            await queue.mark_exhausted(entry, "boom")

        assert await queue.retry_failed(limit=2) == 2
        assert len(await queue.failed_entries()) == 1

    @pytest.mark.asyncio
    async def test_purge_failed(self, queue):
        exhausted = await queue.enqueue("case", "c1", "create", {})
        await queue.mark_exhausted(exhausted, "boom")
        pending = await queue.enqueue("case", "c2", "create", {})

        assert await queue.purge_failed() == 1

        assert await queue.get(exhausted.id) is None
        assert await queue.get(pending.id) is not None

    @pytest.mark.asyncio
    async def test_purge_failed_older_than(self, queue, store):
        await store.enqueue(SyncQueueEntry(
            id="old",
            entity_type="case",
            entity_id="c1",
            operation=SyncOperation.CREATE,
            payload={},
            attempts=5,
            created_at=utc_now() - timedelta(days=10),
        ))
        recent = await queue.enqueue("case", "c2", "create", {})
        await queue.mark_exhausted(recent, "boom")

        assert await queue.purge_failed(older_than_days=7) == 1

        assert await queue.get("old") is None
        assert await queue.get(recent.id) is not None


class TestCounts:
    """Test pending counts."""

    @pytest.mark.asyncio
    async def test_pending_count(self, queue, store):
        await store.put("case", {"id": "c1"})
        await store.put("case", {"id": "c2"})
        await store.put("evidence", {"id": "e1"})
        await store.put("person", {"id": "p1", "syncStatus": "synced"})

        assert await queue.get_pending_count() == {
            "case": 2,
            "person": 0,
            "evidence": 1,
            "total": 3,
        }
