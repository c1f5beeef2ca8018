"""
Sync Data Models.

Change events, queued operations, conflict candidates and resolutions
exchanged between the sync engine components.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_utc(value: Any) -> Optional[datetime]:
    """
    Normalize a store timestamp to an aware UTC datetime.

    Naive values are taken to be UTC already. ISO strings (with or without
    a trailing ``Z``) are parsed. Anything else yields None.
    """
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def values_equal(left: Any, right: Any) -> bool:
    """
    Compare two column values coming from different drivers.

    Timestamps are compared as UTC instants; numbers are compared
    numerically so ``Decimal('1.0')`` equals ``1``.
    """
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, datetime) or isinstance(right, datetime):
        left_ts, right_ts = to_utc(left), to_utc(right)
        if left_ts is not None and right_ts is not None:
            return left_ts == right_ts
    if isinstance(left, (int, float, Decimal)) and isinstance(right, (int, float, Decimal)):
        if isinstance(left, bool) or isinstance(right, bool):
            return left == right
        return Decimal(str(left)) == Decimal(str(right))
    if type(left) is not type(right) and isinstance(left, (str, date, time)) and isinstance(right, (str, date, time)):
        return _jsonable(left) == _jsonable(right)
    return left == right


class StoreSide(str, Enum):
    """The two replicas kept in sync."""
    LEGACY = "legacy"
    CLOUD = "cloud"

    @property
    def opposite(self) -> "StoreSide":
        return StoreSide.CLOUD if self is StoreSide.LEGACY else StoreSide.LEGACY


class ChangeKind(str, Enum):
    """Kind of change observed on a record."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationState(str, Enum):
    """Lifecycle of a queued sync operation."""
    PENDING = "pending"
    PROCESSING = "processing"
    APPLIED = "applied"
    FAILED = "failed"
    PARKED = "parked"


ALLOWED_TRANSITIONS = {
    OperationState.PENDING: {OperationState.PROCESSING},
    OperationState.PROCESSING: {OperationState.APPLIED, OperationState.FAILED},
    OperationState.FAILED: {OperationState.PENDING, OperationState.PARKED},
    OperationState.APPLIED: set(),
    OperationState.PARKED: set(),
}


class InvalidTransitionError(Exception):
    """Raised when an operation is moved to a state it cannot reach."""
    pass


@dataclass(frozen=True)
class ChangeEvent:
    """A single observed change on one store."""
    record_id: Any
    table: str
    kind: ChangeKind
    payload: Dict[str, Any]
    source_store: StoreSide
    origin_timestamp: Optional[datetime] = None
    detected_at: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def key(self) -> Tuple[str, str]:
        return (self.table, str(self.record_id))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "record_id": self.record_id,
            "table": self.table,
            "kind": self.kind.value,
            "source_store": self.source_store.value,
            "origin_timestamp": self.origin_timestamp.isoformat() if self.origin_timestamp else None,
            "detected_at": self.detected_at.isoformat(),
            "payload": {k: _jsonable(v) for k, v in self.payload.items()},
        }


@dataclass
class SyncOperation:
    """
    A change event travelling through the sync queue.

    Operations that carry a ``resolution`` write an operator-confirmed
    conflict resolution to both stores instead of moving ``event``.
    """
    event: ChangeEvent
    resolution: Optional["ConflictResolution"] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: OperationState = OperationState.PENDING
    attempt_count: int = 0
    last_error: Optional[str] = None
    enqueued_at: datetime = field(default_factory=utc_now)
    not_before: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def key(self) -> Tuple[str, str]:
        return self.event.key

    def transition(self, new_state: OperationState) -> None:
        """
        Move the operation to a new state.

        Raises:
            InvalidTransitionError: If the lifecycle does not allow the move
        """
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Operation {self.id}: {self.state.value} -> {new_state.value} not allowed"
            )
        self.state = new_state
        if new_state in (OperationState.APPLIED, OperationState.PARKED):
            self.completed_at = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "state": self.state.value,
            "attempt_count": self.attempt_count,
            "last_error": self.last_error,
            "enqueued_at": self.enqueued_at.isoformat(),
            "not_before": self.not_before.isoformat() if self.not_before else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "resolution_id": self.resolution.id if self.resolution else None,
            "event": self.event.to_dict(),
        }


@dataclass
class FieldDiff:
    """Values of one divergent field on both stores."""
    legacy_value: Any
    cloud_value: Any
    legacy_timestamp: Optional[datetime] = None
    cloud_timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "legacy_value": _jsonable(self.legacy_value),
            "cloud_value": _jsonable(self.cloud_value),
            "legacy_timestamp": self.legacy_timestamp.isoformat() if self.legacy_timestamp else None,
            "cloud_timestamp": self.cloud_timestamp.isoformat() if self.cloud_timestamp else None,
        }


class ConflictComplexity(str, Enum):
    """How tangled a conflict is."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class ConflictCandidate:
    """Two versions of a record that were edited concurrently."""
    record_id: Any
    table: str
    legacy_version: Optional[Dict[str, Any]]
    cloud_version: Optional[Dict[str, Any]]
    per_field_diffs: Dict[str, FieldDiff] = field(default_factory=dict)
    source_event: Optional[ChangeEvent] = None
    deleted_side: Optional[StoreSide] = None
    legacy_timestamp: Optional[datetime] = None
    cloud_timestamp: Optional[datetime] = None
    detected_at: datetime = field(default_factory=utc_now)

    @property
    def fields(self) -> List[str]:
        return list(self.per_field_diffs.keys())

    @property
    def conflict_count(self) -> int:
        """One conflict event per side for every divergent field."""
        return 2 * len(self.per_field_diffs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "table": self.table,
            "fields": self.fields,
            "conflict_count": self.conflict_count,
            "deleted_side": self.deleted_side.value if self.deleted_side else None,
            "per_field_diffs": {name: diff.to_dict() for name, diff in self.per_field_diffs.items()},
            "detected_at": self.detected_at.isoformat(),
        }


class StrategyName(str, Enum):
    """Conflict resolution strategies."""
    LAST_WRITE_WINS = "last_write_wins"
    FIELD_LEVEL_MERGE = "field_level_merge"
    PRIORITY_SOURCE = "priority_source"
    MANUAL_REVIEW = "manual_review"


@dataclass
class ResolutionStrategy:
    """
    A strategy plus its parameters.

    ``config`` keys: ``priority`` (a StoreSide value) for PrioritySource,
    ``fields`` mapping field name to ``legacy``/``cloud``/``newest``/``manual``
    for FieldLevelMerge.
    """
    name: StrategyName
    config: Dict[str, Any] = field(default_factory=dict)

    @property
    def priority(self) -> StoreSide:
        return StoreSide(self.config.get("priority", StoreSide.CLOUD.value))

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name.value, "config": dict(self.config)}


@dataclass
class ConflictResolution:
    """The outcome of resolving one conflict candidate."""
    table: str
    record_id: Any
    candidate: ConflictCandidate
    strategy_used: StrategyName
    confidence: int
    complexity: ConflictComplexity
    resolved_payload: Optional[Dict[str, Any]] = None
    verified: bool = False
    field_strategies: Dict[str, str] = field(default_factory=dict)
    delete_record: bool = False
    applied_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "table": self.table,
            "record_id": self.record_id,
            "strategy_used": self.strategy_used.value,
            "confidence": self.confidence,
            "complexity": self.complexity.value,
            "verified": self.verified,
            "delete_record": self.delete_record,
            "field_strategies": dict(self.field_strategies),
            "resolved_payload": (
                {k: _jsonable(v) for k, v in self.resolved_payload.items()}
                if self.resolved_payload is not None else None
            ),
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
            "created_at": self.created_at.isoformat(),
            "candidate": self.candidate.to_dict(),
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, bytes):
        return value.hex()
    return value
