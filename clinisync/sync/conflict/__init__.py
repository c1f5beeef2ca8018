"""
Conflict Handling Module.

Detection of concurrent edits and their resolution.
"""

from clinisync.sync.conflict.detector import (
    ConflictDetector,
    DetectionOutcome,
    DetectionResult,
    assess_complexity,
)
from clinisync.sync.conflict.resolver import (
    ConflictResolver,
    ResolutionPatternTable,
    calculate_confidence,
)

__all__ = [
    "ConflictDetector",
    "DetectionOutcome",
    "DetectionResult",
    "assess_complexity",
    "ConflictResolver",
    "ResolutionPatternTable",
    "calculate_confidence",
]
