"""
Conflict Detector.

Decides, before a change is applied to the opposite store, whether it can
be applied directly, is stale, or collides with a concurrent edit.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from clinisync.sync.models import (
    ChangeEvent,
    ChangeKind,
    ConflictCandidate,
    ConflictComplexity,
    FieldDiff,
    StoreSide,
    to_utc,
    values_equal,
)

logger = logging.getLogger(__name__)


class DetectionOutcome(str, Enum):
    """What to do with a change event."""
    APPLY = "apply"          # one-directional apply, resolver bypassed
    STALE = "stale"          # opposite already holds an equal or newer version
    CONFLICT = "conflict"    # concurrent divergent edit
    NOTHING = "nothing"      # delete of a record the opposite never had


@dataclass
class DetectionResult:
    outcome: DetectionOutcome
    candidate: Optional[ConflictCandidate] = None
    reason: str = ""


def assess_complexity(field_count: int, conflict_count: int) -> ConflictComplexity:
    """
    Classify a conflict.

    Low when at most two fields and two conflict events are involved, high
    when more than five fields or ten events are, medium otherwise.
    """
    if field_count > 5 or conflict_count > 10:
        return ConflictComplexity.HIGH
    if field_count <= 2 and conflict_count <= 2:
        return ConflictComplexity.LOW
    return ConflictComplexity.MEDIUM


class ConflictDetector:
    """
    Compares a change event with the current record on the opposite store.

    The opposite version counts as concurrent when its timestamp is at or
    after the event's origin timestamp; equal timestamps are an ambiguous
    ordering and are treated as concurrent.
    """

    def __init__(
        self,
        tracked_fields: Optional[Dict[str, List[str]]] = None,
        id_column: str = "id",
        updated_at_column: str = "updated_at",
        created_at_column: str = "created_at",
        field_timestamp_suffix: str = "_updated_at"
    ):
        self.tracked_fields = tracked_fields or {}
        self.id_column = id_column
        self.updated_at_column = updated_at_column
        self.created_at_column = created_at_column
        self.field_timestamp_suffix = field_timestamp_suffix
        self._stats = {
            "checked": 0,
            "applied_directly": 0,
            "stale": 0,
            "conflicts": 0,
        }

    @property
    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    def _bookkeeping(self, column: str) -> bool:
        return (
            column in (self.id_column, self.updated_at_column, self.created_at_column)
            or column.endswith(self.field_timestamp_suffix)
        )

    def fields_for(self, table: str, *records: Optional[Dict[str, Any]]) -> List[str]:
        """Columns compared for ``table``."""
        configured = self.tracked_fields.get(table)
        if configured:
            return list(configured)

        columns: List[str] = []
        for record in records:
            for column in (record or {}):
                if column not in columns and not self._bookkeeping(column):
                    columns.append(column)
        return columns

    def record_timestamp(self, record: Optional[Dict[str, Any]]) -> Optional[datetime]:
        """Last modification time of a record."""
        if not record:
            return None
        return to_utc(record.get(self.updated_at_column)) or to_utc(record.get(self.created_at_column))

    def field_timestamp(self, record: Optional[Dict[str, Any]], field_name: str) -> Optional[datetime]:
        """Per-field modification time, falling back to the record's."""
        if not record:
            return None
        value = to_utc(record.get(f"{field_name}{self.field_timestamp_suffix}"))
        return value or self.record_timestamp(record)

    def diff(
        self,
        table: str,
        legacy: Optional[Dict[str, Any]],
        cloud: Optional[Dict[str, Any]]
    ) -> Dict[str, FieldDiff]:
        """Tracked fields whose values differ between the two versions."""
        diffs: Dict[str, FieldDiff] = {}
        if legacy is None or cloud is None:
            return diffs

        for field_name in self.fields_for(table, legacy, cloud):
            if field_name not in legacy and field_name not in cloud:
                continue
            legacy_value = legacy.get(field_name)
            cloud_value = cloud.get(field_name)
            if values_equal(legacy_value, cloud_value):
                continue
            diffs[field_name] = FieldDiff(
                legacy_value=legacy_value,
                cloud_value=cloud_value,
                legacy_timestamp=self.field_timestamp(legacy, field_name),
                cloud_timestamp=self.field_timestamp(cloud, field_name),
            )
        return diffs

    def build_candidate(
        self,
        table: str,
        record_id: Any,
        legacy: Optional[Dict[str, Any]],
        cloud: Optional[Dict[str, Any]],
        source_event: Optional[ChangeEvent] = None,
        deleted_side: Optional[StoreSide] = None
    ) -> ConflictCandidate:
        return ConflictCandidate(
            record_id=record_id,
            table=table,
            legacy_version=legacy,
            cloud_version=cloud,
            per_field_diffs=self.diff(table, legacy, cloud),
            source_event=source_event,
            deleted_side=deleted_side,
            legacy_timestamp=self.record_timestamp(legacy),
            cloud_timestamp=self.record_timestamp(cloud),
        )

    def check(self, event: ChangeEvent, opposite: Optional[Dict[str, Any]]) -> DetectionResult:
        """
        Classify a change event against the opposite store's current record.

        Args:
            event: The captured change
            opposite: The record as it is now on the target store, or None
        """
        self._stats["checked"] += 1

        if opposite is None:
            if event.kind == ChangeKind.DELETE:
                return DetectionResult(DetectionOutcome.NOTHING, reason="already absent on target")
            self._stats["applied_directly"] += 1
            return DetectionResult(DetectionOutcome.APPLY, reason="absent on target")

        origin = event.origin_timestamp
        opposite_ts = self.record_timestamp(opposite)
        concurrent = origin is not None and opposite_ts is not None and opposite_ts >= origin

        if event.source_store == StoreSide.LEGACY:
            legacy, cloud = event.payload, opposite
        else:
            legacy, cloud = opposite, event.payload

        if not concurrent:
            self._stats["applied_directly"] += 1
            return DetectionResult(DetectionOutcome.APPLY, reason="target version is older")

        candidate = self.build_candidate(
            event.table,
            event.record_id,
            legacy,
            cloud,
            source_event=event,
            deleted_side=event.source_store if event.kind == ChangeKind.DELETE else None,
        )

        if not candidate.per_field_diffs:
            if event.kind == ChangeKind.DELETE:
                self._stats["applied_directly"] += 1
                return DetectionResult(DetectionOutcome.APPLY, reason="target unchanged since deleted version")
            self._stats["stale"] += 1
            return DetectionResult(DetectionOutcome.STALE, reason="target already holds these values")

        self._stats["conflicts"] += 1
        logger.info(
            f"Conflict on {event.table}/{event.record_id}: fields {', '.join(candidate.fields)}"
        )
        return DetectionResult(DetectionOutcome.CONFLICT, candidate=candidate, reason="concurrent edit")
