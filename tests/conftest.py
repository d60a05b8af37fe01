"""
Pytest configuration and shared fixtures for fieldsync tests.
"""

import pytest
from pathlib import Path
from datetime import datetime, timezone, timedelta
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

# Add src to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from fieldsync.storage.database import Database
from fieldsync.storage.local_store import LocalStore
from fieldsync.sync.orchestrator import SyncOrchestrator
from fieldsync.sync.remote import SyncRequest, SyncResponse
from fieldsync.utils.config import FieldSyncConfig, SyncConfig


ENTITY_TYPES = ["case", "person", "evidence"]

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeRemote:
    """
    In-memory remote collaborator.

    ``failures`` are raised by successive send() calls, then
    ``always_fail`` (if set) by every call after that.
    """

    def __init__(self):
        self.snapshots: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.sent: List[SyncRequest] = []
        self.fetches: List[Tuple[str, str]] = []
        self.failures: List[Exception] = []
        self.always_fail: Optional[Exception] = None
        self.fetch_error: Optional[Exception] = None
        self.gate = None  # asyncio.Event holding send() until set

    async def send(self, request: SyncRequest) -> SyncResponse:
        self.sent.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            raise self.failures.pop(0)
        if self.always_fail is not None:
            raise self.always_fail
        return SyncResponse(status=200, body={"success": True})

    async def fetch_snapshot(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        self.fetches.append((entity_type, entity_id))
        if self.fetch_error is not None:
            raise self.fetch_error
        snapshot = self.snapshots.get((entity_type, entity_id))
        return dict(snapshot) if snapshot else None

    def sent_ids(self) -> List[str]:
        return [r.entity_id for r in self.sent]


class FakeFacility:
    """Host background facility with switchable capabilities."""

    def __init__(self, one_shot: bool = True, periodic: bool = True, permission: str = "granted"):
        self.one_shot = one_shot
        self.periodic = periodic
        self.permission = permission
        self.registered: Dict[str, Any] = {}
        self.registered_periodic: Dict[str, Tuple[Any, float]] = {}
        self.fail_with: Optional[Exception] = None

    def supports_one_shot(self) -> bool:
        return self.one_shot

    def supports_periodic(self) -> bool:
        return self.periodic

    def permission_state(self) -> str:
        return self.permission

    async def register(self, tag, callback) -> None:
        if self.fail_with:
            raise self.fail_with
        self.registered[tag] = callback

    async def register_periodic(self, tag, callback, min_interval) -> None:
        if self.fail_with:
            raise self.fail_with
        self.registered_periodic[tag] = (callback, min_interval)

    async def unregister(self, tag) -> bool:
        return self.registered.pop(tag, None) is not None

    async def unregister_periodic(self, tag) -> bool:
        return self.registered_periodic.pop(tag, None) is not None

    async def tags(self) -> List[str]:
        if self.fail_with:
            raise self.fail_with
        return list(self.registered)

    async def periodic_tags(self) -> List[str]:
        return list(self.registered_periodic)


@pytest.fixture
async def database(tmp_path: Path) -> AsyncGenerator[Database, None]:
    """Create a test database."""
    db = Database(tmp_path / "fieldsync.db")
    await db.connect()
    yield db
    await db.close()


@pytest.fixture
async def store(database: Database) -> LocalStore:
    """Initialized local store over the test database."""
    local_store = LocalStore(database, ENTITY_TYPES)
    await local_store.initialize()
    return local_store


@pytest.fixture
def sync_config() -> SyncConfig:
    """Fast orchestrator settings: no inter-item pause, short conflict wait."""
    return SyncConfig(
        max_retries=5,
        auto_sync_interval=60.0,
        conflict_timeout=0.2,
        item_delay=0,
    )


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def facility() -> FakeFacility:
    return FakeFacility()


@pytest.fixture
def make_facility():
    """Build facilities with specific capabilities."""
    return FakeFacility


@pytest.fixture
async def orchestrator(store, remote, sync_config) -> AsyncGenerator[SyncOrchestrator, None]:
    """Online orchestrator with no timers running."""
    orch = SyncOrchestrator(store, remote, sync_config, online=True)
    yield orch
    await orch.stop()


@pytest.fixture
def app_config(tmp_path: Path) -> FieldSyncConfig:
    """Full configuration rooted in the test directory."""
    return FieldSyncConfig(
        storage={"path": tmp_path / "engine.db"},
        sync={"item_delay": 0, "conflict_timeout": 0.2, "auto_sync_interval": 60.0},
        background={"enabled": True, "poll_interval": 0.01},
        logging={"directory": tmp_path / "logs"},
    )


@pytest.fixture
def t0() -> datetime:
    return T0


@pytest.fixture
def later():
    """Build offsets from the reference time."""
    def _later(seconds: float) -> datetime:
        return T0 + timedelta(seconds=seconds)
    return _later
