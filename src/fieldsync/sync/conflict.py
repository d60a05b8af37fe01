"""
Conflict detection and resolution between local and server snapshots.

Detection is field-level: both snapshots are compared key by key (minus
bookkeeping fields) and the update timestamps decide whether the newer
side can win automatically or a person has to merge.
"""

import json
import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Union

from ..models.records import dumps
from ..utils.errors import IncompleteMergeError, MissingMergeData, ValidationError
from ..utils.logging import get_logger
from ..utils.timestamps import parse_timestamp, to_iso


logger = get_logger("fieldsync.sync.conflict")


DEFAULT_THRESHOLD_MS = 5000

# Identity and bookkeeping fields. The update timestamps drive the
# decision itself, so they are not compared as data.
IGNORED_FIELDS: FrozenSet[str] = frozenset({
    "id",
    "createdAt", "created_at",
    "updatedAt", "updated_at",
    "syncStatus", "sync_status",
    "version",
})

_ISO_DATETIME = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}")

# A key absent from one side. Absent and explicit None are different values.
_MISSING = object()


class ResolutionStrategy(str, Enum):
    """How a conflict is settled."""
    LOCAL = "local"
    SERVER = "server"
    MERGE = "merge"


def format_time_diff(ms: float) -> str:
    """Human-readable duration: ms, s, m, h or d, rounded half-up."""
    def half_up(value: float) -> int:
        return int(math.floor(value + 0.5))

    if ms < 1000:
        return f"{half_up(ms)}ms"
    if ms < 60_000:
        return f"{half_up(ms / 1000)}s"
    if ms < 3_600_000:
        return f"{half_up(ms / 60_000)}m"
    if ms < 86_400_000:
        return f"{half_up(ms / 3_600_000)}h"
    return f"{half_up(ms / 86_400_000)}d"


def _as_instant(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return parse_timestamp(value)
    if isinstance(value, str) and _ISO_DATETIME.match(value):
        return parse_timestamp(value)
    return None


def values_equal(a: Any, b: Any) -> bool:
    """
    Deep structural equality used for field comparison.

    Booleans never equal numbers and datetimes (or ISO datetime strings)
    compare by instant. Sequences compare element-wise in order.
    Mappings need the same keys, so a missing key never equals None.
    """
    if a is _MISSING or b is _MISSING:
        return a is b

    if a is None or b is None:
        return a is None and b is None

    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b

    if isinstance(a, datetime) or isinstance(b, datetime):
        left, right = _as_instant(a), _as_instant(b)
        return left is not None and right is not None and left == right

    if isinstance(a, str) and isinstance(b, str):
        if a == b:
            return True
        left, right = _as_instant(a), _as_instant(b)
        return left is not None and right is not None and left == right

    if isinstance(a, Mapping) and isinstance(b, Mapping):
        if set(a) != set(b):
            return False
        return all(values_equal(a[k], b[k]) for k in a)

    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        if len(a) != len(b):
            return False
        return all(values_equal(x, y) for x, y in zip(a, b))

    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return a == b

    if type(a) is not type(b):
        return False
    return a == b


def _display(value: Any) -> str:
    if value is None:
        return "(empty)"
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, (list, tuple)):
        return f"[{len(value)} items]"
    if isinstance(value, Mapping):
        return json.dumps(json.loads(dumps(value)), indent=2)
    return str(value)


def _json_safe(value: Any) -> Any:
    return json.loads(dumps(value))


@dataclass
class FieldDiff:
    """Display form of one differing field."""
    field: str
    kind: str  # added, removed or modified
    local_display: str
    server_display: str


@dataclass
class FieldConflict:
    """A single field whose local and server values differ."""
    field: str
    local_value: Any
    server_value: Any

    def diff(self) -> FieldDiff:
        if self.local_value is None and self.server_value is not None:
            kind = "added"
        elif self.local_value is not None and self.server_value is None:
            kind = "removed"
        else:
            kind = "modified"
        return FieldDiff(
            field=self.field,
            kind=kind,
            local_display=_display(self.local_value),
            server_display=_display(self.server_value),
        )


@dataclass
class ConflictRecord:
    """Outcome of comparing a local snapshot against the server's."""
    entity_type: Optional[str]
    entity_id: Optional[str]
    local_data: Dict[str, Any]
    server_data: Dict[str, Any]
    local_timestamp: Optional[datetime]
    server_timestamp: Optional[datetime]
    conflicts: List[FieldConflict] = field(default_factory=list)
    auto_resolvable: bool = False
    recommended_strategy: ResolutionStrategy = ResolutionStrategy.MERGE
    reason: str = ""

    @property
    def key(self) -> str:
        return f"{self.entity_type}:{self.entity_id}"

    @property
    def conflicting_fields(self) -> List[str]:
        return [c.field for c in self.conflicts]

    def summary(self) -> str:
        count = len(self.conflicts)
        plural = "" if count == 1 else "s"
        return f"{count} field{plural} changed: {', '.join(self.conflicting_fields)}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "localData": _json_safe(self.local_data),
            "serverData": _json_safe(self.server_data),
            "localTimestamp": to_iso(self.local_timestamp) if self.local_timestamp else None,
            "serverTimestamp": to_iso(self.server_timestamp) if self.server_timestamp else None,
            "conflicts": [
                {
                    "field": c.field,
                    "localValue": _json_safe(c.local_value),
                    "serverValue": _json_safe(c.server_value),
                }
                for c in self.conflicts
            ],
            "autoResolvable": self.auto_resolvable,
            "recommendedStrategy": self.recommended_strategy.value,
            "reason": self.reason,
            "summary": self.summary(),
        }


class ConflictDetector:
    """
    Compares local and server snapshots of one entity.

    A time gap above ``threshold_ms`` between the two update timestamps
    makes the conflict auto-resolvable in favour of the newer side.
    """

    def __init__(
        self,
        threshold_ms: int = DEFAULT_THRESHOLD_MS,
        ignored_fields: Iterable[str] = IGNORED_FIELDS,
    ):
        self.threshold_ms = threshold_ms
        self.ignored_fields = frozenset(ignored_fields)

    @staticmethod
    def extract_timestamp(data: Mapping[str, Any]) -> Optional[datetime]:
        for key in ("updatedAt", "updated_at", "createdAt", "created_at"):
            value = data.get(key)
            if value is not None:
                return parse_timestamp(value)
        return None

    def field_conflicts(
        self,
        local: Mapping[str, Any],
        server: Mapping[str, Any],
    ) -> List[FieldConflict]:
        conflicts = []
        # Preserve first-seen order: local keys, then server-only keys
        names = list(local) + [k for k in server if k not in local]
        for name in names:
            if name in self.ignored_fields:
                continue
            local_value = local.get(name, _MISSING)
            server_value = server.get(name, _MISSING)
            if not values_equal(local_value, server_value):
                conflicts.append(FieldConflict(
                    name,
                    None if local_value is _MISSING else local_value,
                    None if server_value is _MISSING else server_value,
                ))
        return conflicts

    def detect(
        self,
        local: Optional[Mapping[str, Any]],
        server: Optional[Mapping[str, Any]],
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> Optional[ConflictRecord]:
        if not local or not server:
            return None

        conflicts = self.field_conflicts(local, server)
        if not conflicts:
            return None

        local_ts = self.extract_timestamp(local)
        server_ts = self.extract_timestamp(server)

        if local_ts is None or server_ts is None:
            auto_resolvable = False
            strategy = ResolutionStrategy.MERGE
            missing = "local" if local_ts is None else "server"
            reason = f"Cannot compare versions ({missing} timestamp unavailable) - manual review required"
        else:
            time_diff = abs((server_ts - local_ts).total_seconds() * 1000)
            auto_resolvable = time_diff > self.threshold_ms
            if auto_resolvable and local_ts > server_ts:
                strategy = ResolutionStrategy.LOCAL
                reason = f"Local version is newer (updated {format_time_diff(time_diff)} after server)"
            elif auto_resolvable:
                strategy = ResolutionStrategy.SERVER
                reason = f"Server version is newer (updated {format_time_diff(time_diff)} after local)"
            else:
                strategy = ResolutionStrategy.MERGE
                reason = f"Both versions updated within {format_time_diff(time_diff)} - manual review required"

        record = ConflictRecord(
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            local_data=dict(local),
            server_data=dict(server),
            local_timestamp=local_ts,
            server_timestamp=server_ts,
            conflicts=conflicts,
            auto_resolvable=auto_resolvable,
            recommended_strategy=strategy,
            reason=reason,
        )

        logger.debug(
            "conflict_detected",
            key=record.key,
            fields=record.conflicting_fields,
            auto_resolvable=auto_resolvable,
            strategy=strategy.value,
        )
        return record


_default_detector = ConflictDetector()


def detect_conflict(
    local: Optional[Mapping[str, Any]],
    server: Optional[Mapping[str, Any]],
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
) -> Optional[ConflictRecord]:
    """Compare two snapshots with the default threshold."""
    return _default_detector.detect(local, server, entity_type, entity_id)


# ----------------------------------------------------------------------
# Resolution
# ----------------------------------------------------------------------

@dataclass
class AutoResolution:
    """Result of attempting automatic resolution."""
    resolved: bool
    data: Optional[Dict[str, Any]] = None
    strategy: Optional[ResolutionStrategy] = None
    reason: str = ""


def _coerce_strategy(strategy: Union[str, ResolutionStrategy]) -> ResolutionStrategy:
    try:
        return ResolutionStrategy(strategy)
    except ValueError:
        raise ValueError(f"Unknown resolution strategy: {strategy}") from None


def validate_merge_data(conflict: ConflictRecord, data: Any) -> Dict[str, Any]:
    """Merge data must be a mapping with a key for every conflicting field."""
    if not isinstance(data, Mapping):
        raise ValidationError("manual_merge_data", type(data).__name__, "must be a mapping")
    missing = [name for name in conflict.conflicting_fields if name not in data]
    if missing:
        raise IncompleteMergeError(missing)
    return dict(data)


def resolve_conflict(
    conflict: ConflictRecord,
    strategy: Union[str, ResolutionStrategy],
    manual_merge_data: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Produce the payload to send for a conflict.

    Raises:
        MissingMergeData: merge requested without data
        IncompleteMergeError: merge data leaves a conflicting field undecided
        ValueError: unknown strategy
    """
    strategy = _coerce_strategy(strategy)
    if strategy == ResolutionStrategy.LOCAL:
        return conflict.local_data
    if strategy == ResolutionStrategy.SERVER:
        return conflict.server_data
    if manual_merge_data is None:
        raise MissingMergeData()
    return validate_merge_data(conflict, manual_merge_data)


def auto_resolve_conflict(conflict: ConflictRecord) -> AutoResolution:
    if not conflict.auto_resolvable:
        return AutoResolution(resolved=False, reason="cannot auto-resolve")

    strategy = conflict.recommended_strategy
    return AutoResolution(
        resolved=True,
        data=resolve_conflict(conflict, strategy),
        strategy=strategy,
        reason=conflict.reason,
    )


def build_merge_payload(
    conflict: ConflictRecord,
    selections: Mapping[str, Union[str, ResolutionStrategy]],
) -> Dict[str, Any]:
    """
    Merge both snapshots using per-field ``local``/``server`` selections.

    Every conflicting field needs a selection. Other fields present on
    one side only come from that side; shared fields default to the
    server value.
    """
    missing = [name for name in conflict.conflicting_fields if name not in selections]
    if missing:
        raise IncompleteMergeError(missing)

    local, server = conflict.local_data, conflict.server_data
    result: Dict[str, Any] = {}
    for name in list(local) + [k for k in server if k not in local]:
        if name in selections:
            choice = _coerce_strategy(selections[name])
            if choice == ResolutionStrategy.MERGE:
                raise ValidationError(name, choice.value, "field selection must be 'local' or 'server'")
            result[name] = local.get(name) if choice == ResolutionStrategy.LOCAL else server.get(name)
        elif name in server:
            result[name] = server[name]
        else:
            result[name] = local[name]
    return result


__all__ = [
    "ResolutionStrategy",
    "FieldConflict",
    "FieldDiff",
    "ConflictRecord",
    "ConflictDetector",
    "AutoResolution",
    "IGNORED_FIELDS",
    "detect_conflict",
    "resolve_conflict",
    "auto_resolve_conflict",
    "build_merge_payload",
    "validate_merge_data",
    "values_equal",
    "format_time_diff",
]
