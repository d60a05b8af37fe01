"""
Status events for sync observers.

Events are delivered synchronously to every current subscriber right
after the state change that produced them. A failing listener is logged
and skipped; it never breaks the sync run.
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union

from ..utils.logging import get_logger
from ..utils.timestamps import to_iso, utc_now


logger = get_logger("fieldsync.sync.events")


class SyncStatus(str, Enum):
    """Orchestrator state."""
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class SyncEventKind(str, Enum):
    """What happened."""
    STATUS_CHANGED = "status_changed"
    QUEUE_CHANGED = "queue_changed"
    ITEM_SYNCED = "item_synced"
    ITEM_FAILED = "item_failed"
    ITEM_REJECTED = "item_rejected"
    RETRIES_EXHAUSTED = "retries_exhausted"
    CONFLICT_DETECTED = "conflict_detected"
    CONFLICT_RESOLVED = "conflict_resolved"
    CONFLICT_TIMEOUT = "conflict_timeout"
    CONNECTIVITY_CHANGED = "connectivity_changed"


@dataclass
class SyncEvent:
    """Snapshot of sync state delivered to subscribers."""
    kind: SyncEventKind
    status: SyncStatus
    queue_count: int
    is_online: bool
    last_sync: Optional[datetime] = None
    error: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    conflict: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "status": self.status.value,
            "queueCount": self.queue_count,
            "isOnline": self.is_online,
            "lastSync": to_iso(self.last_sync) if self.last_sync else None,
            "error": self.error,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "conflict": self.conflict,
            "timestamp": to_iso(self.timestamp),
        }


Listener = Callable[[SyncEvent], Any]


class Subscription:
    """Handle returned by subscribe(); call unsubscribe() to stop delivery."""

    def __init__(
        self,
        registry: "EventRegistry",
        listener: Listener,
        kinds: Optional[Set[SyncEventKind]] = None,
    ):
        self._registry = registry
        self.listener = listener
        self.kinds = kinds

    @property
    def active(self) -> bool:
        return self in self._registry._subscriptions

    def matches(self, event: SyncEvent) -> bool:
        return self.kinds is None or event.kind in self.kinds

    def unsubscribe(self) -> None:
        self._registry.unsubscribe(self)

    # Allow `dispose = orchestrator.subscribe(fn); dispose()`
    __call__ = unsubscribe


class EventRegistry:
    """Ordered set of listeners with synchronous fan-out."""

    def __init__(self):
        self._subscriptions: List[Subscription] = []
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(
        self,
        listener: Listener,
        kinds: Optional[Union[SyncEventKind, Iterable[SyncEventKind]]] = None,
    ) -> Subscription:
        if isinstance(kinds, SyncEventKind):
            kinds = {kinds}
        elif kinds is not None:
            kinds = {SyncEventKind(k) for k in kinds}

        subscription = Subscription(self, listener, kinds)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def emit(self, event: SyncEvent) -> None:
        # Copy so listeners may unsubscribe while being notified
        for subscription in list(self._subscriptions):
            if not subscription.matches(event):
                continue
            try:
                result = subscription.listener(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._on_task_done)
            except Exception as e:
                logger.error(
                    "listener_error",
                    kind=event.kind.value,
                    listener=getattr(subscription.listener, "__name__", repr(subscription.listener)),
                    error=str(e),
                )

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("listener_error", error=str(task.exception()))

    def clear(self) -> None:
        self._subscriptions.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def __len__(self) -> int:
        return len(self._subscriptions)


__all__ = [
    "SyncStatus",
    "SyncEventKind",
    "SyncEvent",
    "Subscription",
    "EventRegistry",
]
