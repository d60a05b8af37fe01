"""
Unit tests for conflict resolution.
"""

import pytest
from datetime import datetime, timedelta, timezone

from fieldsync.sync.conflict import (
    ResolutionStrategy,
    auto_resolve_conflict,
    build_merge_payload,
    detect_conflict,
    resolve_conflict,
)
from fieldsync.utils.errors import (
    IncompleteMergeError,
    MissingMergeData,
    ValidationError,
)


T = datetime(2024, 3, 1, 8, 30, 0, tzinfo=timezone.utc)


@pytest.fixture
def close_conflict():
    """Two edits 2s apart: needs a manual merge."""
    local = {"id": "c1", "title": "A", "status": "open", "notes": "x", "updatedAt": T}
    server = {"id": "c1", "title": "B", "status": "open", "updatedAt": T + timedelta(seconds=2)}
    return detect_conflict(local, server, "case", "c1")


@pytest.fixture
def clear_conflict():
    """Server edit 10s later: server wins automatically."""
    local = {"id": "c1", "title": "A", "updatedAt": T}
    server = {"id": "c1", "title": "B", "updatedAt": T + timedelta(seconds=10)}
    return detect_conflict(local, server, "case", "c1")


class TestResolveConflict:
    """Test explicit strategies."""

    def test_local_and_server_return_sides_verbatim(self, close_conflict):
        assert resolve_conflict(close_conflict, "local") is close_conflict.local_data
        assert resolve_conflict(close_conflict, ResolutionStrategy.SERVER) is close_conflict.server_data

    def test_merge_without_data(self, close_conflict):
        with pytest.raises(MissingMergeData):
            resolve_conflict(close_conflict, "merge")

    def test_missing_merge_data_is_a_value_error(self, close_conflict):
        with pytest.raises(ValueError):
            resolve_conflict(close_conflict, ResolutionStrategy.MERGE, None)

    def test_merge_must_cover_conflicting_fields(self, close_conflict):
        with pytest.raises(IncompleteMergeError) as exc_info:
            resolve_conflict(close_conflict, "merge", {"title": "C"})

        assert exc_info.value.missing_fields == ["notes"]
        assert isinstance(exc_info.value, ValidationError)

    def test_merge_rejects_non_mapping(self, close_conflict):
        with pytest.raises(ValidationError):
            resolve_conflict(close_conflict, "merge", ["title", "notes"])

    def test_merge_returns_data(self, close_conflict):
        merged = {"title": "C", "notes": None, "status": "open"}
        assert resolve_conflict(close_conflict, "merge", merged) == merged

    def test_unknown_strategy(self, close_conflict):
        with pytest.raises(ValueError, match="Unknown resolution strategy"):
            resolve_conflict(close_conflict, "newest")


class TestAutoResolve:
    """Test automatic resolution."""

    def test_not_auto_resolvable(self, close_conflict):
        result = auto_resolve_conflict(close_conflict)

        assert result.resolved is False
        assert result.data is None
        assert result.reason == "cannot auto-resolve"

    def test_applies_recommendation(self, clear_conflict):
        result = auto_resolve_conflict(clear_conflict)

        assert result.resolved is True
        assert result.strategy == ResolutionStrategy.SERVER
        assert result.data is clear_conflict.server_data
        assert result.reason == clear_conflict.reason


class TestBuildMergePayload:
    """Test per-field merge selections."""

    def test_selections_and_defaults(self):
        local = {"id": "c1", "title": "A", "notes": "x", "createdAt": T, "updatedAt": T}
        server = {"id": "c1", "title": "B", "status": "open", "updatedAt": T + timedelta(seconds=1)}
        conflict = detect_conflict(local, server, "case", "c1")

        merged = build_merge_payload(conflict, {
            "title": "local",
            "notes": "local",
            "status": ResolutionStrategy.SERVER,
        })

        assert merged == {
            "id": "c1",
            "title": "A",
            "notes": "x",
            "status": "open",
            "createdAt": T,
            "updatedAt": T + timedelta(seconds=1),
        }

    def test_selection_required_for_every_conflict(self, close_conflict):
        with pytest.raises(IncompleteMergeError) as exc_info:
            build_merge_payload(close_conflict, {"title": "server"})

        assert exc_info.value.missing_fields == ["notes"]

    def test_merge_is_not_a_field_selection(self, close_conflict):
        with pytest.raises(ValidationError):
            build_merge_payload(close_conflict, {"title": "merge", "notes": "local"})
