"""
Conflict Resolver.

Resolves conflict candidates with per-field strategies looked up in a
pattern table, scores each resolution, applies only high-confidence ones
automatically and learns from them.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Tuple

from clinisync.sync.conflict.detector import assess_complexity
from clinisync.sync.models import (
    ConflictCandidate,
    ConflictComplexity,
    ConflictResolution,
    FieldDiff,
    ResolutionStrategy,
    StoreSide,
    StrategyName,
    to_utc,
    utc_now,
)

logger = logging.getLogger(__name__)

MANUAL = "manual"

# Seed patterns for the clinic schema
DEFAULT_PATTERNS: Dict[str, ResolutionStrategy] = {
    "citas.estado": ResolutionStrategy(StrategyName.PRIORITY_SOURCE, {"priority": StoreSide.CLOUD.value}),
    "pacientes.nombre": ResolutionStrategy(StrategyName.PRIORITY_SOURCE, {"priority": StoreSide.LEGACY.value}),
}


def calculate_confidence(complexity: ConflictComplexity, conflict_count: int) -> int:
    """
    Confidence score of an automatic resolution, from 0 to 100.

    Starts at 100; medium complexity costs 20 and high 50; more than five
    conflict events cost 30 and more than ten another 50.
    """
    score = 100
    if complexity == ConflictComplexity.MEDIUM:
        score -= 20
    elif complexity == ConflictComplexity.HIGH:
        score -= 50
    if conflict_count > 5:
        score -= 30
    if conflict_count > 10:
        score -= 50
    return max(0, min(100, score))


@dataclass
class PatternEntry:
    """One pattern table row."""
    strategy: ResolutionStrategy
    origin: str  # default, learned or operator
    updated_at: datetime = field(default_factory=utc_now)
    uses: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.strategy.to_dict(),
            "origin": self.origin,
            "updated_at": self.updated_at.isoformat(),
            "uses": self.uses,
        }


class ResolutionPatternTable:
    """
    Mapping from ``table.field`` (or ``table.*``) to a resolution strategy.

    Lookup order: exact field, table wildcard, then the table-semantic
    default (identity fields favour legacy, workflow fields favour cloud,
    anything else last-write-wins). Guarded by a lock so that operator
    overrides from request threads and learning from the engine never race.
    """

    def __init__(
        self,
        identity_fields: Optional[Dict[str, List[str]]] = None,
        workflow_fields: Optional[Dict[str, List[str]]] = None,
        seed: Optional[Dict[str, ResolutionStrategy]] = None
    ):
        self.identity_fields = identity_fields or {}
        self.workflow_fields = workflow_fields or {}
        self._entries: Dict[str, PatternEntry] = {}
        self._lock = threading.Lock()
        for pattern, strategy in (DEFAULT_PATTERNS if seed is None else seed).items():
            self._entries[pattern] = PatternEntry(strategy=strategy, origin="default")

    @staticmethod
    def _validate(pattern: str) -> Tuple[str, str]:
        table, sep, field_name = pattern.partition(".")
        if not sep or not table or not field_name:
            raise ValueError(f"Pattern must look like 'table.field' or 'table.*': {pattern!r}")
        return table, field_name

    def default_for(self, table: str, field_name: str) -> ResolutionStrategy:
        """Strategy used when no pattern matches."""
        if field_name in self.identity_fields.get(table, []):
            return ResolutionStrategy(StrategyName.PRIORITY_SOURCE, {"priority": StoreSide.LEGACY.value})
        if field_name in self.workflow_fields.get(table, []):
            return ResolutionStrategy(StrategyName.PRIORITY_SOURCE, {"priority": StoreSide.CLOUD.value})
        return ResolutionStrategy(StrategyName.LAST_WRITE_WINS)

    def lookup(self, table: str, field_name: str) -> Tuple[ResolutionStrategy, str]:
        """
        Strategy for one field.

        Returns:
            The strategy and the pattern it came from (``default`` when none)
        """
        with self._lock:
            for pattern in (f"{table}.{field_name}", f"{table}.*"):
                entry = self._entries.get(pattern)
                if entry is not None:
                    entry.uses += 1
                    return entry.strategy, pattern
        return self.default_for(table, field_name), "default"

    def set(self, pattern: str, strategy: ResolutionStrategy, origin: str = "operator") -> None:
        """
        Install a pattern.

        An operator override of ``table.*`` drops the learned exact entries
        of that table so the override takes effect for every field.
        """
        table, field_name = self._validate(pattern)
        with self._lock:
            if origin == "operator" and field_name == "*":
                prefix = f"{table}."
                for key in [k for k, e in self._entries.items() if k.startswith(prefix) and e.origin == "learned"]:
                    del self._entries[key]
            self._entries[pattern] = PatternEntry(strategy=strategy, origin=origin)
        logger.info(f"Resolution pattern {pattern} -> {strategy.name.value} ({origin})")

    def learn(self, table: str, field_name: str, strategy: ResolutionStrategy) -> bool:
        """
        Record a successful strategy for a field.

        Operator entries are never overwritten by learning.

        Returns:
            True if the table changed
        """
        pattern = f"{table}.{field_name}"
        with self._lock:
            existing = self._entries.get(pattern)
            if existing is not None and existing.origin == "operator":
                return False
            if existing is not None and existing.strategy == strategy:
                return False
            self._entries[pattern] = PatternEntry(strategy=strategy, origin="learned")
        logger.debug(f"Learned resolution pattern {pattern} -> {strategy.name.value}")
        return True

    def remove(self, pattern: str) -> bool:
        with self._lock:
            return self._entries.pop(pattern, None) is not None

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {pattern: entry.to_dict() for pattern, entry in sorted(self._entries.items())}


class ConflictResolver:
    """
    Conflict resolution engine.

    Features:
    - LastWriteWins, FieldLevelMerge, PrioritySource and ManualReview
    - Confidence scoring from complexity and conflict count
    - Auto-application above the threshold, pending review below it
    - Learning from verified resolutions
    - Bounded resolution history
    """

    def __init__(
        self,
        patterns: Optional[ResolutionPatternTable] = None,
        auto_resolution_threshold: int = 95,
        learning_enabled: bool = True,
        history_size: int = 1000,
        updated_at_column: str = "updated_at"
    ):
        self.patterns = patterns or ResolutionPatternTable()
        self.auto_resolution_threshold = auto_resolution_threshold
        self.learning_enabled = learning_enabled
        self.updated_at_column = updated_at_column
        self._pending: Dict[str, ConflictResolution] = {}
        self._history: Deque[ConflictResolution] = deque(maxlen=history_size)
        self._stats = {
            "total": 0,
            "auto_resolved": 0,
            "pending": 0,
            "confirmed": 0,
            "superseded": 0,
            "discarded": 0,
            "learned_patterns": 0,
            "by_strategy": {name.value: 0 for name in StrategyName},
        }

    def enable_learning(self, enabled: bool) -> None:
        self.learning_enabled = enabled
        logger.info(f"Resolution learning {'enabled' if enabled else 'disabled'}")

    def resolve(self, candidate: ConflictCandidate) -> ConflictResolution:
        """
        Resolve a conflict candidate.

        The returned resolution is verified only when every field resolved
        automatically and the confidence reaches the threshold; otherwise
        it carries no payload and waits in the pending list.
        """
        complexity = assess_complexity(len(candidate.per_field_diffs), candidate.conflict_count)
        confidence = calculate_confidence(complexity, candidate.conflict_count)

        winners: Dict[str, str] = {}
        field_strategies: Dict[str, str] = {}
        used: Dict[str, ResolutionStrategy] = {}

        for field_name, diff in candidate.per_field_diffs.items():
            strategy, _ = self.patterns.lookup(candidate.table, field_name)
            used[field_name] = strategy
            field_strategies[field_name] = strategy.name.value
            winners[field_name] = self._pick_side(strategy, field_name, diff, candidate)

        needs_review = candidate.deleted_side is not None or MANUAL in winners.values()
        if needs_review:
            strategy_used = StrategyName.MANUAL_REVIEW
        elif len({s.name for s in used.values()}) == 1:
            strategy_used = next(iter(used.values())).name
        else:
            strategy_used = StrategyName.FIELD_LEVEL_MERGE

        resolution = ConflictResolution(
            table=candidate.table,
            record_id=candidate.record_id,
            candidate=candidate,
            strategy_used=strategy_used,
            confidence=confidence,
            complexity=complexity,
            field_strategies=field_strategies,
        )

        self._stats["total"] += 1
        self._stats["by_strategy"][strategy_used.value] += 1
        self._supersede(candidate.table, candidate.record_id)

        if not needs_review and confidence >= self.auto_resolution_threshold:
            resolution.resolved_payload = self.merge(candidate, winners)
            resolution.verified = True
            self._stats["auto_resolved"] += 1
            if self.learning_enabled:
                for field_name, strategy in used.items():
                    if self.patterns.learn(candidate.table, field_name, strategy):
                        self._stats["learned_patterns"] += 1
            logger.info(
                f"Auto-resolved {candidate.table}/{candidate.record_id} with "
                f"{strategy_used.value} (confidence {confidence})"
            )
        else:
            self._pending[resolution.id] = resolution
            self._stats["pending"] = len(self._pending)
            logger.info(
                f"Resolution for {candidate.table}/{candidate.record_id} needs review "
                f"({strategy_used.value}, confidence {confidence})"
            )

        self._history.append(resolution)
        return resolution

    def _supersede(self, table: str, record_id: Any) -> None:
        """Drop pending resolutions of a record that a newer conflict replaces."""
        key = (table, str(record_id))
        for stale in [r for r in self._pending.values() if (r.table, str(r.record_id)) == key]:
            del self._pending[stale.id]
            self._stats["superseded"] += 1
            logger.info(f"Pending resolution {stale.id} for {table}/{record_id} superseded by a newer conflict")
        self._stats["pending"] = len(self._pending)

    def _pick_side(
        self,
        strategy: ResolutionStrategy,
        field_name: str,
        diff: FieldDiff,
        candidate: ConflictCandidate
    ) -> str:
        if strategy.name == StrategyName.MANUAL_REVIEW:
            return MANUAL
        if strategy.name == StrategyName.PRIORITY_SOURCE:
            return strategy.priority.value
        if strategy.name == StrategyName.FIELD_LEVEL_MERGE:
            rule = strategy.config.get("fields", {}).get(field_name, "newest")
            if rule in (StoreSide.LEGACY.value, StoreSide.CLOUD.value, MANUAL):
                return rule
        # newest field wins; diff timestamps fall back to the record's
        return _newer(diff.legacy_timestamp, diff.cloud_timestamp)

    def merge(self, candidate: ConflictCandidate, winners: Dict[str, str]) -> Dict[str, Any]:
        """
        Build the resolved record.

        Starts from the newer version, takes each divergent field from its
        winning side and stamps the newest of the two modification times.
        """
        legacy = candidate.legacy_version or {}
        cloud = candidate.cloud_version or {}
        newer_side = _newer(candidate.legacy_timestamp, candidate.cloud_timestamp)
        base, other = (legacy, cloud) if newer_side == StoreSide.LEGACY.value else (cloud, legacy)

        payload = {**other, **base}
        for field_name, side in winners.items():
            source = legacy if side == StoreSide.LEGACY.value else cloud
            if field_name in source:
                payload[field_name] = source[field_name]

        stamp = base.get(self.updated_at_column)
        if stamp is not None or self.updated_at_column in other:
            payload[self.updated_at_column] = stamp if stamp is not None else other.get(self.updated_at_column)
        return payload

    def get_pending(self) -> List[ConflictResolution]:
        return sorted(self._pending.values(), key=lambda r: r.created_at)

    def get_resolution(self, resolution_id: str) -> Optional[ConflictResolution]:
        return self._pending.get(resolution_id) or next(
            (r for r in self._history if r.id == resolution_id), None
        )

    def confirm(
        self,
        resolution_id: str,
        prefer: Optional[StoreSide] = None,
        payload: Optional[Dict[str, Any]] = None
    ) -> ConflictResolution:
        """
        Build the verified version of a pending resolution chosen by an operator.

        The pending entry is left in place; ``complete`` retires it once the
        returned resolution has been written to both stores.

        Args:
            resolution_id: Pending resolution
            prefer: Take the whole record from this side
            payload: Explicit field values laid over the newer version

        Raises:
            KeyError: If no such pending resolution exists
            ValueError: If neither ``prefer`` nor ``payload`` is given
        """
        if prefer is None and payload is None:
            raise ValueError("Either prefer or payload is required")

        pending = self._pending[resolution_id]
        candidate = pending.candidate
        delete_record = False

        if prefer is not None and candidate.deleted_side == prefer:
            delete_record = True
            resolved_payload = None
        elif prefer is not None and candidate.deleted_side is not None:
            # the surviving version is restored on both sides
            survivor = candidate.legacy_version if prefer == StoreSide.LEGACY else candidate.cloud_version
            resolved_payload = dict(survivor or {})
        elif prefer is not None:
            resolved_payload = self.merge(
                candidate, {name: prefer.value for name in candidate.per_field_diffs}
            )
        else:
            resolved_payload = self.merge(candidate, {})
            resolved_payload.update(payload)

        logger.info(f"Resolution {resolution_id} confirmed by operator")
        return replace(
            pending,
            resolved_payload=resolved_payload,
            delete_record=delete_record,
            verified=True,
            confidence=100,
        )

    def is_pending(self, resolution_id: str) -> bool:
        return resolution_id in self._pending

    def complete(self, resolution: ConflictResolution) -> ConflictResolution:
        """
        Retire a pending resolution whose confirmed version has been applied.

        The history entry takes over the confirmed outcome.

        Raises:
            KeyError: If the resolution is no longer pending
        """
        pending = self._pending.pop(resolution.id)
        pending.resolved_payload = resolution.resolved_payload
        pending.delete_record = resolution.delete_record
        pending.verified = True
        pending.confidence = resolution.confidence
        pending.applied_at = resolution.applied_at
        self._stats["confirmed"] += 1
        self._stats["pending"] = len(self._pending)
        return pending

    def discard(self, resolution_id: str) -> bool:
        """Drop a pending resolution that no longer matches the stores."""
        if self._pending.pop(resolution_id, None) is None:
            return False
        self._stats["discarded"] += 1
        self._stats["pending"] = len(self._pending)
        logger.info(f"Pending resolution {resolution_id} discarded")
        return True

    def get_history(self, table: Optional[str] = None, limit: int = 100) -> List[ConflictResolution]:
        history = [r for r in self._history if table is None or r.table == table]
        return history[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        history = list(self._history)
        avg_confidence = sum(r.confidence for r in history) / len(history) if history else 0
        return {
            **self._stats,
            "by_strategy": dict(self._stats["by_strategy"]),
            "pending": len(self._pending),
            "average_confidence": round(avg_confidence, 1),
            "learning_enabled": self.learning_enabled,
            "threshold": self.auto_resolution_threshold,
        }


def _newer(legacy_ts: Optional[datetime], cloud_ts: Optional[datetime]) -> str:
    """Side with the strictly later timestamp; ties and unknowns go to cloud."""
    legacy_ts, cloud_ts = to_utc(legacy_ts), to_utc(cloud_ts)
    if legacy_ts is not None and (cloud_ts is None or legacy_ts > cloud_ts):
        return StoreSide.LEGACY.value
    return StoreSide.CLOUD.value
