"""
Background trigger adapter.

Registers drain callbacks with whatever background-execution facility
the host offers. Hosts without one get PollingFacility, a plain asyncio
fallback. Nothing here raises because a facility is missing, refuses
permission or misbehaves; those cases are logged and reported as False.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, runtime_checkable

from ..utils.logging import get_logger
from ..utils.timestamps import utc_now


logger = get_logger("fieldsync.sync.background")

SyncCallback = Callable[[], Awaitable[Any]]
Probe = Callable[[], Awaitable[bool]]

DEFAULT_PERIODIC_INTERVAL = 24 * 60 * 60  # seconds


@runtime_checkable
class BackgroundFacility(Protocol):
    """Host-provided background execution."""

    def supports_one_shot(self) -> bool: ...

    def supports_periodic(self) -> bool: ...

    def permission_state(self) -> str:
        """``granted``, ``prompt`` or ``denied``."""
        ...

    async def register(self, tag: str, callback: SyncCallback) -> None: ...

    async def register_periodic(self, tag: str, callback: SyncCallback, min_interval: float) -> None: ...

    async def unregister(self, tag: str) -> bool: ...

    async def unregister_periodic(self, tag: str) -> bool: ...

    async def tags(self) -> List[str]: ...

    async def periodic_tags(self) -> List[str]: ...


@dataclass
class BackgroundSyncStatus:
    supported: bool
    registered: bool = False
    last_sync: Optional[datetime] = None


@dataclass
class RegisteredTags:
    sync: List[str] = field(default_factory=list)
    periodic_sync: List[str] = field(default_factory=list)


class BackgroundTrigger:
    """Thin, failure-tolerant wrapper around a BackgroundFacility."""

    def __init__(self, facility: Optional[BackgroundFacility]):
        self.facility = facility
        self._registrations: Dict[str, datetime] = {}

    def is_supported(self) -> bool:
        if self.facility is None:
            return False
        try:
            return bool(self.facility.supports_one_shot())
        except Exception as e:
            logger.error("background_probe_failed", error=str(e))
            return False

    def is_periodic_supported(self) -> bool:
        if self.facility is None:
            return False
        try:
            return bool(self.facility.supports_periodic())
        except Exception as e:
            logger.error("background_probe_failed", error=str(e))
            return False

    async def register_sync(self, tag: str, callback: SyncCallback) -> bool:
        """One-shot registration, fired once connectivity is back."""
        if not self.is_supported():
            logger.info("background_sync_unsupported", tag=tag)
            return False
        try:
            await self.facility.register(tag, callback)
        except Exception as e:
            logger.error("background_sync_register_failed", tag=tag, error=str(e))
            return False

        self._registrations[tag] = utc_now()
        logger.info("background_sync_registered", tag=tag)
        return True

    async def register_periodic_sync(
        self,
        tag: str,
        callback: SyncCallback,
        min_interval: float = DEFAULT_PERIODIC_INTERVAL,
    ) -> bool:
        if not self.is_periodic_supported():
            logger.info("periodic_sync_unsupported", tag=tag)
            return False
        try:
            if self.facility.permission_state() == "denied":
                logger.info("periodic_sync_permission_denied", tag=tag)
                return False
            await self.facility.register_periodic(tag, callback, min_interval)
        except Exception as e:
            logger.error("periodic_sync_register_failed", tag=tag, error=str(e))
            return False

        logger.info("periodic_sync_registered", tag=tag, min_interval=min_interval)
        return True

    async def unregister_sync(self, tag: str) -> bool:
        if not self.is_supported():
            return False
        try:
            if tag not in await self.facility.tags():
                return False
            removed = await self.facility.unregister(tag)
        except Exception as e:
            logger.error("background_sync_unregister_failed", tag=tag, error=str(e))
            return False

        self._registrations.pop(tag, None)
        logger.info("background_sync_unregistered", tag=tag)
        return bool(removed)

    async def unregister_periodic_sync(self, tag: str) -> bool:
        if not self.is_periodic_supported():
            return False
        try:
            removed = await self.facility.unregister_periodic(tag)
        except Exception as e:
            logger.error("periodic_sync_unregister_failed", tag=tag, error=str(e))
            return False

        logger.info("periodic_sync_unregistered", tag=tag)
        return bool(removed)

    async def get_status(self, tag: str) -> BackgroundSyncStatus:
        status = BackgroundSyncStatus(supported=self.is_supported())
        if not status.supported:
            return status

        try:
            status.registered = tag in await self.facility.tags()
            if status.registered:
                status.last_sync = self._registrations.get(tag)
            if self.is_periodic_supported() and tag in await self.facility.periodic_tags():
                status.registered = True
        except Exception as e:
            logger.error("background_status_failed", tag=tag, error=str(e))
        return status

    async def get_all_tags(self) -> RegisteredTags:
        result = RegisteredTags()
        if not self.is_supported():
            return result
        try:
            result.sync = list(await self.facility.tags())
            if self.is_periodic_supported():
                result.periodic_sync = list(await self.facility.periodic_tags())
        except Exception as e:
            logger.error("background_tags_failed", error=str(e))
        return result

    async def trigger_sync(self, tag: str, callback: SyncCallback) -> None:
        """Run the callback now, outside any facility. Its errors propagate."""
        logger.info("background_sync_triggered", tag=tag)
        try:
            await callback()
        except Exception as e:
            logger.error("background_sync_manual_failed", tag=tag, error=str(e))
            raise
        self._registrations[tag] = utc_now()


class PollingFacility:
    """
    asyncio fallback for hosts without background execution.

    One-shot registrations poll the probe every ``poll_interval`` seconds
    and fire their callback once it reports online, then drop the tag.
    Periodic registrations fire every ``min_interval`` seconds.
    """

    def __init__(self, probe: Optional[Probe] = None, poll_interval: float = 30.0):
        self.probe = probe
        self.poll_interval = poll_interval
        self._one_shot: Dict[str, asyncio.Task] = {}
        self._periodic: Dict[str, asyncio.Task] = {}

    def supports_one_shot(self) -> bool:
        # Without a probe there is no way to tell when connectivity returns
        return self.probe is not None

    def supports_periodic(self) -> bool:
        return True

    def permission_state(self) -> str:
        return "granted"

    async def register(self, tag: str, callback: SyncCallback) -> None:
        await self.unregister(tag)
        self._one_shot[tag] = asyncio.create_task(self._run_once(tag, callback))

    async def register_periodic(self, tag: str, callback: SyncCallback, min_interval: float) -> None:
        await self.unregister_periodic(tag)
        self._periodic[tag] = asyncio.create_task(self._run_periodic(tag, callback, min_interval))

    async def unregister(self, tag: str) -> bool:
        return await self._cancel(self._one_shot.pop(tag, None))

    async def unregister_periodic(self, tag: str) -> bool:
        return await self._cancel(self._periodic.pop(tag, None))

    async def tags(self) -> List[str]:
        return list(self._one_shot)

    async def periodic_tags(self) -> List[str]:
        return list(self._periodic)

    async def close(self) -> None:
        for tag in list(self._one_shot):
            await self.unregister(tag)
        for tag in list(self._periodic):
            await self.unregister_periodic(tag)

    async def _is_online(self) -> bool:
        try:
            return bool(await self.probe())
        except Exception as e:
            logger.debug("polling_probe_failed", error=str(e))
            return False

    async def _run_once(self, tag: str, callback: SyncCallback) -> None:
        try:
            while not await self._is_online():
                await asyncio.sleep(self.poll_interval)
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("polling_sync_failed", tag=tag, error=str(e))
        finally:
            if self._one_shot.get(tag) is asyncio.current_task():
                del self._one_shot[tag]

    async def _run_periodic(self, tag: str, callback: SyncCallback, min_interval: float) -> None:
        while True:
            await asyncio.sleep(min_interval)
            try:
                await callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("periodic_sync_failed", tag=tag, error=str(e))

    @staticmethod
    async def _cancel(task: Optional[asyncio.Task]) -> bool:
        if task is None:
            return False
        if task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        return True


def select_facility(
    host: Optional[BackgroundFacility],
    probe: Optional[Probe] = None,
    poll_interval: float = 30.0,
) -> BackgroundFacility:
    """Use the host facility if it offers one-shot sync, else poll."""
    if host is not None:
        try:
            if host.supports_one_shot():
                logger.info("background_facility_selected", facility=type(host).__name__)
                return host
        except Exception as e:
            logger.error("background_probe_failed", error=str(e))

    logger.info("background_facility_selected", facility="PollingFacility")
    return PollingFacility(probe=probe, poll_interval=poll_interval)


__all__ = [
    "BackgroundFacility",
    "BackgroundSyncStatus",
    "RegisteredTags",
    "BackgroundTrigger",
    "PollingFacility",
    "select_facility",
]
