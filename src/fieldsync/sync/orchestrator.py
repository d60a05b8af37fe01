"""
Network sync orchestrator.

Drains the sync queue against the remote collaborator: pre-flight
conflict checks for updates, automatic or manual conflict resolution,
bounded retries, and status events for observers. Connectivity and
foreground signals come in through handle_online/handle_offline/
handle_foreground; an interval timer keeps draining while online.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Union

from ..models.records import EntitySyncStatus, SyncOperation, SyncQueueEntry
from ..storage.local_store import LocalStore
from ..utils.config import BackgroundConfig, SyncConfig
from ..utils.errors import (
    ConflictDetected,
    FieldSyncError,
    RemoteValidationError,
    RetriesExhausted,
)
from ..utils.logging import get_logger
from ..utils.timestamps import utc_now
from .background import BackgroundTrigger
from .conflict import (
    ConflictDetector,
    ConflictRecord,
    ResolutionStrategy,
    auto_resolve_conflict,
    resolve_conflict,
    validate_merge_data,
)
from .events import EventRegistry, Listener, Subscription, SyncEvent, SyncEventKind, SyncStatus
from .queue import SyncQueueManager
from .remote import RemoteCollaborator, SyncRequest


logger = get_logger("fieldsync.sync.orchestrator")


class ItemOutcome(str, Enum):
    """Result of one sync attempt."""
    SYNCED = "synced"
    FAILED = "failed"
    EXHAUSTED = "exhausted"
    REJECTED = "rejected"
    UNRESOLVED = "unresolved"


@dataclass
class SyncResult:
    """Counts reported by a full drain."""
    success: bool
    synced: int = 0
    failed: int = 0
    skipped: int = 0
    unresolved: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "synced": self.synced,
            "failed": self.failed,
            "skipped": self.skipped,
            "unresolved": self.unresolved,
            "errors": list(self.errors),
        }


class SyncOrchestrator:
    """
    Drives synchronization of queued local changes.

    Usage:
        orchestrator = SyncOrchestrator(store, remote, config.sync)
        await orchestrator.start()

        await orchestrator.record_change("case", "c1", "update", {"title": "..."})
        result = await orchestrator.sync_all()

        await orchestrator.stop()
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteCollaborator,
        config: Optional[SyncConfig] = None,
        queue: Optional[SyncQueueManager] = None,
        detector: Optional[ConflictDetector] = None,
        events: Optional[EventRegistry] = None,
        background: Optional[BackgroundTrigger] = None,
        online: bool = True,
        background_config: Optional[BackgroundConfig] = None,
    ):
        self.store = store
        self.remote = remote
        self.config = config or SyncConfig()
        self.queue = queue or SyncQueueManager(store, self.config.max_retries)
        self.detector = detector or ConflictDetector(self.config.auto_resolve_threshold_ms)
        self.events = events or EventRegistry()
        self.background = background
        self.background_config = background_config or BackgroundConfig()

        self._online = online
        self._status = SyncStatus.IDLE
        self._is_syncing = False
        self._last_sync: Optional[datetime] = None
        self._queue_count = 0

        # Conflicts awaiting a manual decision, keyed by "type:id"
        self._pending_conflicts: Dict[str, ConflictRecord] = {}
        self._waiters: Dict[str, asyncio.Future] = {}
        self._in_flight: Set[str] = set()

        self._auto_sync_task: Optional[asyncio.Task] = None
        self._auto_sync_interval = self.config.auto_sync_interval
        self._backoff_level = 0
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def last_sync(self) -> Optional[datetime]:
        return self._last_sync

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    @property
    def auto_sync_running(self) -> bool:
        return self._auto_sync_task is not None and not self._auto_sync_task.done()

    def current_auto_sync_interval(self) -> float:
        """Timer interval including failure backoff."""
        interval = self._auto_sync_interval * (2 ** self._backoff_level)
        return min(interval, max(self.config.auto_sync_max_interval, self._auto_sync_interval))

    def subscribe(
        self,
        listener: Listener,
        kinds: Optional[Union[SyncEventKind, List[SyncEventKind]]] = None,
    ) -> Subscription:
        return self.events.subscribe(listener, kinds)

    def _emit_now(self, kind: SyncEventKind, **details: Any) -> None:
        self.events.emit(SyncEvent(
            kind=kind,
            status=self._status,
            queue_count=self._queue_count,
            is_online=self._online,
            last_sync=self._last_sync,
            **details,
        ))

    async def _emit(self, kind: SyncEventKind, **details: Any) -> None:
        try:
            self._queue_count = await self.queue.get_queue_count()
        except FieldSyncError as e:
            logger.warning("queue_count_unavailable", error=str(e))
        self._emit_now(kind, **details)

    async def _set_status(self, status: SyncStatus, error: Optional[str] = None) -> None:
        self._status = status
        await self._emit(SyncEventKind.STATUS_CHANGED, error=error)

    # ------------------------------------------------------------------
    # Lifecycle and connectivity
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._queue_count = await self.queue.get_queue_count()
        if self._online:
            self.start_auto_sync()
        if self.background is not None and self.background_config.enabled:
            await self.background.register_periodic_sync(
                self.background_config.periodic_tag,
                self._background_drain,
                self.background_config.periodic_min_interval,
            )
        logger.info("orchestrator_started", online=self._online, queue_count=self._queue_count)

    async def stop(self) -> None:
        """Cancel timers, drains and conflict waits, and drop all listeners."""
        timer = self._auto_sync_task
        self.stop_auto_sync()

        for future in list(self._waiters.values()):
            future.cancel()
        self._waiters.clear()
        self._pending_conflicts.clear()

        tasks = [t for t in self._tasks if not t.done()]
        if timer is not None and not timer.done():
            tasks.append(timer)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        if self.background is not None and self.background_config.enabled:
            await self.background.unregister_periodic_sync(self.background_config.periodic_tag)

        self.events.clear()
        logger.info("orchestrator_stopped")

    def handle_online(self) -> asyncio.Task:
        """Connectivity restored: start the timer and drain immediately."""
        logger.info("connection_restored")
        self._online = True
        self._emit_now(SyncEventKind.CONNECTIVITY_CHANGED)
        self.start_auto_sync()
        return self._schedule_drain()

    def handle_offline(self) -> None:
        logger.warning("connection_lost")
        self._online = False
        self._emit_now(SyncEventKind.CONNECTIVITY_CHANGED)
        self.stop_auto_sync()
        if self.background is not None and self.background_config.enabled:
            self._track(asyncio.ensure_future(self.background.register_sync(
                self.background_config.sync_tag, self._background_drain
            )))

    def handle_foreground(self) -> Optional[asyncio.Task]:
        """App returned to the foreground; drain if online."""
        if not self._online:
            return None
        return self._schedule_drain()

    async def force_sync_now(self) -> SyncResult:
        logger.info("manual_sync_triggered")
        return await self.sync_all()

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _schedule_drain(self) -> asyncio.Task:
        return self._track(asyncio.create_task(self._drain_quietly()))

    async def _drain_quietly(self) -> Optional[SyncResult]:
        try:
            return await self.sync_all()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("background_drain_failed", error=str(e))
            return None

    async def _background_drain(self) -> None:
        # A background facility firing means connectivity is back
        if not self._online:
            await self.handle_online()
        else:
            await self._drain_quietly()

    # ------------------------------------------------------------------
    # Auto-sync timer
    # ------------------------------------------------------------------

    def start_auto_sync(self, interval: Optional[float] = None) -> None:
        if self.auto_sync_running:
            logger.debug("auto_sync_already_running")
            return
        if interval is not None:
            self._auto_sync_interval = interval
        self._backoff_level = 0
        self._auto_sync_task = asyncio.create_task(self._auto_sync_loop())
        logger.info("auto_sync_started", interval=self._auto_sync_interval)

    def stop_auto_sync(self) -> None:
        if self._auto_sync_task is not None:
            if self._auto_sync_task is not asyncio.current_task():
                self._auto_sync_task.cancel()
            self._auto_sync_task = None
            logger.info("auto_sync_stopped")

    async def _auto_sync_loop(self) -> None:
        while self._online:
            await asyncio.sleep(self.current_auto_sync_interval())
            if not self._online:
                break

            # Cancelling the timer must not cut a drain short
            drain = self._schedule_drain()
            result = await asyncio.shield(drain)

            # Exhausted entries are skipped, not attempted
            if result is None or result.failed > result.skipped or self._status == SyncStatus.ERROR:
                self._backoff_level += 1
            else:
                self._backoff_level = 0
            logger.debug(
                "auto_sync_tick",
                backoff_level=self._backoff_level,
                next_interval=self.current_auto_sync_interval(),
            )

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    async def add_to_queue(
        self,
        entity_type: str,
        entity_id: str,
        operation: Union[str, SyncOperation],
        payload: Dict[str, Any],
        priority: int = 0,
    ) -> SyncQueueEntry:
        """Enqueue a change; if online and no drain is running, try it right away."""
        entry = await self.queue.enqueue(entity_type, entity_id, operation, payload, priority)
        await self._emit(SyncEventKind.QUEUE_CHANGED, entity_type=entity_type, entity_id=entry.entity_id)

        if self._online and not self._is_syncing:
            await self.sync_single_item(entry)
        return entry

    async def record_change(
        self,
        entity_type: str,
        entity_id: str,
        operation: Union[str, SyncOperation],
        fields: Mapping[str, Any],
        priority: int = 0,
    ) -> SyncQueueEntry:
        """
        Write a local edit and queue it in one call.

        Creates and updates store the record as ``pending`` with a fresh
        ``updatedAt``; the queued payload is the resulting snapshot.
        Deletes queue the id only and leave the cached record in place.
        """
        operation = SyncOperation(operation)

        if operation == SyncOperation.DELETE:
            await self.store.set_sync_status(entity_type, entity_id, EntitySyncStatus.PENDING)
            payload: Dict[str, Any] = {"id": entity_id}
        else:
            data = dict(fields)
            data["id"] = entity_id
            data["syncStatus"] = EntitySyncStatus.PENDING.value
            data.pop("updated_at", None)
            data["updatedAt"] = utc_now()
            record = await self.store.put(entity_type, data)
            payload = record.snapshot()
            payload.pop("syncStatus", None)

        return await self.add_to_queue(entity_type, entity_id, operation, payload, priority)

    async def get_queue_count(self) -> int:
        return await self.queue.get_queue_count()

    async def get_pending_count(self) -> Dict[str, int]:
        return await self.queue.get_pending_count()

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------

    async def sync_all(self) -> SyncResult:
        if not self._online:
            logger.info("sync_skipped_offline")
            return SyncResult(success=False, errors=["Device is offline"])

        if self._is_syncing:
            logger.info("sync_skipped_in_progress")
            return SyncResult(success=False, errors=["Sync already in progress"])

        self._is_syncing = True
        result = SyncResult(success=False)
        try:
            await self._set_status(SyncStatus.SYNCING)
            entries = await self.queue.ordered_entries()
            logger.info("sync_started", count=len(entries))

            for index, snapshot in enumerate(entries):
                if snapshot.id in self._in_flight:
                    continue
                # Re-read: the entry may have completed or changed since the snapshot
                entry = await self.queue.get(snapshot.id)
                if entry is None:
                    continue

                if self.queue.is_exhausted(entry):
                    result.failed += 1
                    result.skipped += 1
                    result.errors.append(f"Max retries for {entry.label}")
                    continue

                outcome = await self.sync_single_item(entry)
                if outcome == ItemOutcome.SYNCED:
                    result.synced += 1
                elif outcome == ItemOutcome.UNRESOLVED:
                    result.unresolved += 1
                    result.errors.append(f"Unresolved conflict for {entry.label}")
                else:
                    result.failed += 1
                    result.errors.append(f"Failed to sync {entry.label}")

                if self.config.item_delay and index < len(entries) - 1:
                    await asyncio.sleep(self.config.item_delay)

            self._last_sync = utc_now()
            result.success = result.failed == 0
            await self._set_status(SyncStatus.IDLE)

            logger.info(
                "sync_complete",
                synced=result.synced,
                failed=result.failed,
                skipped=result.skipped,
                unresolved=result.unresolved,
            )
            return result

        except Exception as e:
            logger.error("sync_error", error=str(e), error_type=type(e).__name__)
            result.success = False
            result.errors.append(str(e))
            await self._set_status(SyncStatus.ERROR, error=str(e))
            return result

        except asyncio.CancelledError:
            logger.warning("sync_cancelled", synced=result.synced, failed=result.failed)
            self._status = SyncStatus.IDLE
            self._emit_now(SyncEventKind.STATUS_CHANGED)
            raise

        finally:
            self._is_syncing = False

    async def sync_single_item(self, entry: SyncQueueEntry) -> ItemOutcome:
        self._in_flight.add(entry.id)
        try:
            payload: Optional[Dict[str, Any]] = entry.payload

            if entry.operation == SyncOperation.UPDATE:
                server = await self._fetch_server_snapshot(entry)
                if server is not None:
                    _, payload = await self._settle(entry, payload, server)
                    if payload is None:
                        return ItemOutcome.UNRESOLVED

            return await self._send(entry, payload, retry_on_conflict=True)
        finally:
            self._in_flight.discard(entry.id)

    async def _fetch_server_snapshot(self, entry: SyncQueueEntry) -> Optional[Dict[str, Any]]:
        try:
            return await self.remote.fetch_snapshot(entry.entity_type, entry.entity_id)
        except Exception as e:
            # Fail open: the server's own conflict response still guards the write
            logger.warning("conflict_check_failed", entity=entry.label, error=str(e))
            return None

    async def _send(
        self,
        entry: SyncQueueEntry,
        payload: Dict[str, Any],
        retry_on_conflict: bool,
    ) -> ItemOutcome:
        request = SyncRequest(entry.entity_type, entry.entity_id, entry.operation, payload)
        try:
            await self.remote.send(request)

        except ConflictDetected as e:
            if not retry_on_conflict:
                return await self._fail(entry, str(e))

            server = e.server_data
            if server is None:
                server = await self._fetch_server_snapshot(entry)
            if server is None:
                return await self._fail(entry, str(e))

            conflict, resolved = await self._settle(entry, payload, server)
            if conflict is None:
                logger.info("conflict_already_applied", entity=entry.label)
                return await self._succeed(entry)
            if resolved is None:
                return ItemOutcome.UNRESOLVED
            return await self._send(entry, resolved, retry_on_conflict=False)

        except RemoteValidationError as e:
            return await self._reject(entry, str(e))

        except asyncio.CancelledError:
            raise

        except Exception as e:
            return await self._fail(entry, str(e))

        return await self._succeed(entry)

    async def _succeed(self, entry: SyncQueueEntry) -> ItemOutcome:
        await self.queue.complete(entry)
        # A later edit still queued keeps the entity pending
        if not await self.queue.has_live_entries(entry.entity_type, entry.entity_id):
            await self.store.set_sync_status(entry.entity_type, entry.entity_id, EntitySyncStatus.SYNCED)
        logger.info("item_synced", entity=entry.label, operation=entry.operation.value)
        await self._emit(SyncEventKind.ITEM_SYNCED, entity_type=entry.entity_type, entity_id=entry.entity_id)
        return ItemOutcome.SYNCED

    async def _fail(self, entry: SyncQueueEntry, error: str) -> ItemOutcome:
        attempts = await self.queue.record_failure(entry, error)
        details = dict(entity_type=entry.entity_type, entity_id=entry.entity_id, error=error)

        if attempts >= self.queue.max_retries:
            exhausted = RetriesExhausted(attempts, error)
            await self.store.set_sync_status(
                entry.entity_type, entry.entity_id, EntitySyncStatus.FAILED, exhausted.message
            )
            logger.error("retries_exhausted", entity=entry.label, attempts=attempts, error=error)
            details["error"] = exhausted.message
            await self._emit(SyncEventKind.RETRIES_EXHAUSTED, **details)
            return ItemOutcome.EXHAUSTED

        logger.warning("item_sync_failed", entity=entry.label, attempts=attempts, error=error)
        await self._emit(SyncEventKind.ITEM_FAILED, **details)
        return ItemOutcome.FAILED

    async def _reject(self, entry: SyncQueueEntry, error: str) -> ItemOutcome:
        await self.queue.mark_exhausted(entry, error)
        await self.store.set_sync_status(
            entry.entity_type, entry.entity_id, EntitySyncStatus.FAILED, error
        )
        logger.error("item_rejected", entity=entry.label, error=error)
        await self._emit(
            SyncEventKind.ITEM_REJECTED,
            entity_type=entry.entity_type, entity_id=entry.entity_id, error=error,
        )
        return ItemOutcome.REJECTED

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    async def _settle(
        self,
        entry: SyncQueueEntry,
        payload: Dict[str, Any],
        server: Dict[str, Any],
    ) -> Tuple[Optional[ConflictRecord], Optional[Dict[str, Any]]]:
        """
        Compare the payload with the server snapshot.

        Returns ``(conflict, payload_to_send)``. The conflict is None when
        the snapshots agree; the payload is None when a manual decision
        did not arrive in time.
        """
        conflict = self.detector.detect(payload, server, entry.entity_type, entry.entity_id)
        if conflict is None:
            return None, payload

        if conflict.auto_resolvable:
            resolution = auto_resolve_conflict(conflict)
            logger.info(
                "conflict_auto_resolved",
                entity=entry.label,
                strategy=resolution.strategy.value,
                reason=resolution.reason,
            )
            await self._emit(
                SyncEventKind.CONFLICT_RESOLVED,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                conflict=conflict.to_dict(),
            )
            return conflict, resolution.data

        resolved = await self._await_resolution(conflict)
        return conflict, resolved

    async def _await_resolution(self, conflict: ConflictRecord) -> Optional[Dict[str, Any]]:
        key = conflict.key
        if key in self._waiters:
            logger.warning("conflict_already_pending", key=key)
            return None

        future = asyncio.get_running_loop().create_future()
        self._pending_conflicts[key] = conflict
        self._waiters[key] = future

        logger.info("conflict_pending", key=key, fields=conflict.conflicting_fields, reason=conflict.reason)
        await self._emit(
            SyncEventKind.CONFLICT_DETECTED,
            entity_type=conflict.entity_type,
            entity_id=conflict.entity_id,
            conflict=conflict.to_dict(),
        )

        try:
            done, _ = await asyncio.wait({future}, timeout=self.config.conflict_timeout)
            if future in done:
                if future.cancelled():
                    return None
                return future.result()

            future.cancel()
            logger.warning("conflict_timeout", key=key, timeout=self.config.conflict_timeout)
            await self._emit(
                SyncEventKind.CONFLICT_TIMEOUT,
                entity_type=conflict.entity_type,
                entity_id=conflict.entity_id,
                conflict=conflict.to_dict(),
            )
            return None
        finally:
            if self._waiters.get(key) is future:
                del self._waiters[key]
                self._pending_conflicts.pop(key, None)

    def _deliver(self, key: str, data: Dict[str, Any]) -> bool:
        future = self._waiters.get(key)
        conflict = self._pending_conflicts.get(key)
        if future is None or future.done() or conflict is None:
            return False

        future.set_result(data)
        logger.info("conflict_resolved", key=key)
        self._emit_now(
            SyncEventKind.CONFLICT_RESOLVED,
            entity_type=conflict.entity_type,
            entity_id=conflict.entity_id,
            conflict=conflict.to_dict(),
        )
        return True

    def resolve_conflict(self, key: str, data: Mapping[str, Any]) -> bool:
        """
        Deliver merged data for a waiting conflict.

        The data must decide every conflicting field; other fields fall
        back to the local snapshot. Returns False if nothing is waiting
        on ``key``.

        Raises:
            IncompleteMergeError: a conflicting field is missing from ``data``
        """
        conflict = self._pending_conflicts.get(key)
        if conflict is None or key not in self._waiters:
            return False
        merged = validate_merge_data(conflict, data)
        return self._deliver(key, {**conflict.local_data, **merged})

    def resolve_conflict_with(
        self,
        key: str,
        strategy: Union[str, ResolutionStrategy],
        manual_merge_data: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Resolve a waiting conflict with ``local``, ``server`` or ``merge``."""
        conflict = self._pending_conflicts.get(key)
        if conflict is None or key not in self._waiters:
            return False
        data = resolve_conflict(conflict, strategy, manual_merge_data)
        if ResolutionStrategy(strategy) == ResolutionStrategy.MERGE:
            data = {**conflict.local_data, **data}
        return self._deliver(key, data)

    def get_pending_conflicts(self) -> List[ConflictRecord]:
        return list(self._pending_conflicts.values())


__all__ = ["SyncOrchestrator", "SyncResult", "ItemOutcome"]
