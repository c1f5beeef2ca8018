"""
clinisync Data Sync System.

Bidirectional synchronization between the legacy practice-management
database and the cloud store:
- Native or polling change capture on both stores
- Per-record ordered sync queue with retry and parking
- Conflict detection and confidence-gated resolution
- Startup and on-demand reconciliation
"""

from clinisync.sync.models import (
    # Enumerations
    ChangeKind,
    ConflictComplexity,
    OperationState,
    StoreSide,
    StrategyName,
    # Models
    ChangeEvent,
    ConflictCandidate,
    ConflictResolution,
    FieldDiff,
    ResolutionStrategy,
    SyncOperation,
    # Errors
    InvalidTransitionError,
)

__all__ = [
    "ChangeKind",
    "ConflictComplexity",
    "OperationState",
    "StoreSide",
    "StrategyName",
    "ChangeEvent",
    "ConflictCandidate",
    "ConflictResolution",
    "FieldDiff",
    "ResolutionStrategy",
    "SyncOperation",
    "InvalidTransitionError",
]
