"""
Engine assembly.

Wires storage, queue, orchestrator, remote client and background
adapters from one FieldSyncConfig. Nothing is a module-level singleton;
create as many engines as needed (one per database).
"""

from typing import Optional

from .storage.database import Database
from .storage.local_store import LocalStore
from .sync.background import BackgroundFacility, BackgroundTrigger, PollingFacility, select_facility
from .sync.connectivity import ConnectivityMonitor
from .sync.orchestrator import SyncOrchestrator
from .sync.queue import SyncQueueManager
from .sync.remote import HttpRemoteClient, RemoteCollaborator
from .utils.config import FieldSyncConfig
from .utils.logging import get_logger


logger = get_logger("fieldsync.engine")


class SyncEngine:
    """
    A fully wired sync engine.

    Usage:
        async with create_engine(config) as engine:
            await engine.orchestrator.record_change("case", "c1", "create", {...})
            result = await engine.orchestrator.sync_all()
    """

    def __init__(
        self,
        config: FieldSyncConfig,
        remote: Optional[RemoteCollaborator] = None,
        facility: Optional[BackgroundFacility] = None,
        online: bool = True,
        monitor_connectivity: bool = True,
    ):
        self.config = config
        self.database = Database(
            config.storage.path,
            journal_mode=config.storage.journal_mode,
            synchronous=config.storage.synchronous,
        )
        self.store = LocalStore(self.database, config.storage.entity_types)
        self.queue = SyncQueueManager(self.store, config.sync.max_retries)

        self._owns_remote = remote is None
        self.remote = remote if remote is not None else HttpRemoteClient(config.remote)

        probe = getattr(self.remote, "probe", None)
        self.facility = select_facility(
            facility, probe=probe, poll_interval=config.background.poll_interval
        )
        self.background = BackgroundTrigger(self.facility) if config.background.enabled else None

        self.orchestrator = SyncOrchestrator(
            self.store,
            self.remote,
            config.sync,
            queue=self.queue,
            background=self.background,
            online=online,
            background_config=config.background,
        )

        self.monitor: Optional[ConnectivityMonitor] = None
        if monitor_connectivity and probe is not None:
            self.monitor = ConnectivityMonitor(
                probe, self.orchestrator, config.background.connectivity_check_interval
            )

        self._started = False

    async def initialize(self) -> None:
        """Open storage without starting timers. Enough for one-off commands."""
        await self.store.initialize()

    async def start(self) -> None:
        if self._started:
            return
        await self.initialize()
        await self.orchestrator.start()
        if self.monitor is not None:
            await self.monitor.start()
        self._started = True
        logger.info(
            "engine_started",
            database=str(self.config.storage.path),
            remote=type(self.remote).__name__,
            facility=type(self.facility).__name__,
        )

    async def stop(self) -> None:
        if self.monitor is not None:
            await self.monitor.stop()
        if self._started:
            await self.orchestrator.stop()
        if isinstance(self.facility, PollingFacility):
            await self.facility.close()
        if self._owns_remote and isinstance(self.remote, HttpRemoteClient):
            await self.remote.close()
        await self.store.close()
        self._started = False
        logger.info("engine_stopped")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()


def create_engine(
    config: Optional[FieldSyncConfig] = None,
    remote: Optional[RemoteCollaborator] = None,
    facility: Optional[BackgroundFacility] = None,
    **kwargs,
) -> SyncEngine:
    """Build an engine; an HttpRemoteClient is created when no remote is given."""
    return SyncEngine(config or FieldSyncConfig(), remote=remote, facility=facility, **kwargs)


__all__ = ["SyncEngine", "create_engine"]
