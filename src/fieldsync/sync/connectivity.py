"""Connectivity monitor for hosts without native online/offline signals."""

import asyncio
from typing import Awaitable, Callable, Optional

from ..utils.logging import get_logger
from .orchestrator import SyncOrchestrator


logger = get_logger("fieldsync.sync.connectivity")


class ConnectivityMonitor:
    """
    Polls a reachability probe and forwards transitions to the orchestrator.

    Only changes are forwarded: a probe that keeps reporting online does
    not trigger repeated drains.
    """

    def __init__(
        self,
        probe: Callable[[], Awaitable[bool]],
        orchestrator: SyncOrchestrator,
        interval: float = 30.0,
    ):
        self.probe = probe
        self.orchestrator = orchestrator
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def check(self) -> bool:
        """Probe once and apply any transition. Returns the probed state."""
        try:
            online = bool(await self.probe())
        except Exception as e:
            logger.debug("connectivity_probe_failed", error=str(e))
            online = False

        if online and not self.orchestrator.is_online:
            self.orchestrator.handle_online()
        elif not online and self.orchestrator.is_online:
            self.orchestrator.handle_offline()
        return online

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("connectivity_monitor_started", interval=self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("connectivity_monitor_stopped")

    async def _run(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self.interval)


__all__ = ["ConnectivityMonitor"]
