"""
Sync Orchestrator Module.

Engine lifecycle, control API and the typed event stream.
"""

from clinisync.sync.orchestrator.event_manager import (
    DeadLetter,
    EventManager,
    EventPriority,
    EventStore,
    EventType,
    Subscription,
    SyncEvent,
)
from clinisync.sync.orchestrator.sync_orchestrator import (
    EngineState,
    InitializationError,
    InitializationReport,
    ResolutionOutdated,
    SyncOrchestrator,
)

__all__ = [
    # Orchestrator
    "EngineState",
    "InitializationError",
    "InitializationReport",
    "ResolutionOutdated",
    "SyncOrchestrator",
    # Events
    "DeadLetter",
    "EventManager",
    "EventPriority",
    "EventStore",
    "EventType",
    "Subscription",
    "SyncEvent",
]
