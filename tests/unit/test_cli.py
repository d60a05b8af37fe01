"""
Unit tests for the operator CLI.
"""

import asyncio
import json
import pytest
from datetime import timedelta

from fieldsync.cli import build_parser, main
from fieldsync.models.records import SyncOperation, SyncQueueEntry
from fieldsync.storage.database import Database
from fieldsync.storage.local_store import LocalStore
from fieldsync.utils.timestamps import utc_now


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    """Isolated database, log directory and working directory."""
    import os
    for key in list(os.environ):
        if key.startswith("FIELDSYNC_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("FIELDSYNC_LOGGING__DIRECTORY", str(tmp_path / "logs"))
    monkeypatch.setenv("FIELDSYNC_LOGGING__LEVEL", "WARNING")
    return tmp_path / "cli.db"


def seed(path):
    """One pending case and one exhausted queue entry, ten days old."""
    async def _seed():
        store = LocalStore(Database(path), ["case", "person", "evidence"])
        await store.initialize()
        await store.put("case", {"id": "c1", "title": "Burglary"})
        await store.put("case", {"id": "c2", "title": "Arson"})
        await store.enqueue(SyncQueueEntry(
            id="q-old",
            entity_type="case",
            entity_id="c1",
            operation=SyncOperation.UPDATE,
            payload={"id": "c1", "title": "Burglary"},
            attempts=5,
            last_error="Sync failed with status 503: unavailable",
            created_at=utc_now() - timedelta(days=10),
        ))
        await store.enqueue(SyncQueueEntry(
            id="q-new",
            entity_type="case",
            entity_id="c2",
            operation=SyncOperation.CREATE,
            payload={"id": "c2", "title": "Arson"},
            attempts=5,
        ))
        await store.close()

    asyncio.run(_seed())


def queue_attempts(path):
    async def _read():
        store = LocalStore(Database(path), ["case", "person", "evidence"])
        await store.initialize()
        try:
            return {e.id: e.attempts for e in await store.dequeue_ordered()}
        finally:
            await store.close()

    return asyncio.run(_read())


class TestParser:
    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_repeatable_config(self):
        args = build_parser().parse_args(["-c", "a.yaml", "-c", "b.toml", "status"])
        assert args.config == ["a.yaml", "b.toml"]


class TestCommands:
    """Test each command against a seeded database."""

    def test_status(self, db_path, capsys):
        seed(db_path)

        assert main(["--db", str(db_path), "status"]) == 0

        out = capsys.readouterr().out
        assert "Queue length" in out
        assert "Exhausted entries" in out

    def test_failed(self, db_path, capsys):
        seed(db_path)

        assert main(["--db", str(db_path), "failed"]) == 0

        out = capsys.readouterr().out
        assert "q-old" in out
        assert "case:c1" in out

    def test_failed_empty(self, db_path, capsys):
        assert main(["--db", str(db_path), "failed"]) == 0
        assert "No exhausted entries" in capsys.readouterr().out

    def test_retry_failed(self, db_path, capsys):
        seed(db_path)

        assert main(["--db", str(db_path), "retry-failed", "--limit", "1"]) == 0

        assert "Re-queued 1 entry" in capsys.readouterr().out
        assert sorted(queue_attempts(db_path).values()) == [0, 5]

    def test_purge_failed_older_than(self, db_path, capsys):
        seed(db_path)

        assert main(["--db", str(db_path), "purge-failed", "--older-than-days", "7"]) == 0

        assert "Purged 1 entry" in capsys.readouterr().out
        assert list(queue_attempts(db_path)) == ["q-new"]

    def test_export_to_file(self, db_path, tmp_path):
        seed(db_path)
        output = tmp_path / "export.json"

        assert main(["--db", str(db_path), "export", "-o", str(output)]) == 0

        data = json.loads(output.read_text())
        assert data["version"] == 1
        assert sorted(r["id"] for r in data["data"]["case"]) == ["c1", "c2"]
        assert len(data["data"]["sync_queue"]) == 2

    def test_drain_empty_queue(self, db_path, capsys):
        assert main(["--db", str(db_path), "drain"]) == 0
        assert "Drain result" in capsys.readouterr().out

    def test_drain_reports_exhausted_entries(self, db_path, capsys):
        seed(db_path)

        assert main(["--db", str(db_path), "drain"]) == 1

        out = capsys.readouterr().out
        assert "Max retries for case:c1" in out

    def test_configuration_error(self, db_path, capsys):
        assert main(["--db", str(db_path), "--log-level", "LOUD", "status"]) == 2
        assert "Error:" in capsys.readouterr().out

    def test_db_flag_beats_environment(self, db_path, tmp_path, monkeypatch, capsys):
        seed(db_path)
        monkeypatch.setenv("FIELDSYNC_STORAGE__PATH", str(tmp_path / "other.db"))

        assert main(["--db", str(db_path), "failed"]) == 0

        assert "q-old" in capsys.readouterr().out
        assert not (tmp_path / "other.db").exists()
