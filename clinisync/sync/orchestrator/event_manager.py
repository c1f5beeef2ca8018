"""
Event Manager Module.

Typed event channel of the sync engine. Components publish operation,
conflict, alert and lifecycle events; subscribers (the HTTP layer, the
health monitor, tests) register per event type. Recent events are kept
for query and failed deliveries are dead-lettered.
"""

import inspect
import logging
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, FrozenSet, List, Optional

from clinisync.sync.models import utc_now

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Sync engine event types."""
    OPERATION = "operation"
    CONFLICT = "conflict"
    RESOLUTION_PENDING = "resolution_pending"
    ERROR = "error"
    CRITICAL_ERROR = "critical_error"
    ALERT_CREATED = "alert_created"
    STATS_UPDATED = "stats_updated"
    INITIALIZED = "initialized"
    INITIALIZATION_FAILED = "initialization_failed"
    STOPPED = "stopped"


class EventPriority(str, Enum):
    """Event priority levels."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


# Event types not listed here are NORMAL
DEFAULT_PRIORITIES: Dict[EventType, EventPriority] = {
    EventType.STATS_UPDATED: EventPriority.LOW,
    EventType.CONFLICT: EventPriority.HIGH,
    EventType.RESOLUTION_PENDING: EventPriority.HIGH,
    EventType.ERROR: EventPriority.HIGH,
    EventType.INITIALIZATION_FAILED: EventPriority.CRITICAL,
    EventType.CRITICAL_ERROR: EventPriority.CRITICAL,
}

EventHandler = Callable[["SyncEvent"], Any]


@dataclass
class SyncEvent:
    """One event published by an engine component."""
    type: EventType
    source: str
    data: Dict[str, Any] = field(default_factory=dict)
    priority: EventPriority = EventPriority.NORMAL
    id: str = field(default_factory=lambda: f"evt_{uuid.uuid4().hex}")
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def table(self) -> Optional[str]:
        return self.data.get("table")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
            "priority": self.priority.value,
        }


@dataclass
class Subscription:
    """A handler registered for a set of event types."""
    id: str
    event_types: FrozenSet[EventType]
    handler: EventHandler
    priority: int = 0  # higher runs first
    delivered: int = 0
    failed: int = 0

    async def deliver(self, event: SyncEvent) -> None:
        result = self.handler(event)
        if inspect.isawaitable(result):
            await result
        self.delivered += 1


@dataclass
class DeadLetter:
    """A delivery that raised inside its handler."""
    event: SyncEvent
    subscription_id: str
    error: str
    failed_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event.to_dict(),
            "subscription_id": self.subscription_id,
            "error": self.error,
            "failed_at": self.failed_at.isoformat(),
        }


class EventStore:
    """Bounded store of recent events plus lifetime counts per type."""

    def __init__(self, max_events: int = 1000):
        self._events: Deque[SyncEvent] = deque(maxlen=max_events)
        self.published: Counter = Counter()

    def store(self, event: SyncEvent) -> None:
        self._events.append(event)
        self.published[event.type.value] += 1

    def __len__(self) -> int:
        return len(self._events)

    def query(
        self,
        event_types: Optional[List[EventType]] = None,
        source: Optional[str] = None,
        table: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100
    ) -> List[SyncEvent]:
        """Matching events, newest first."""
        matches: List[SyncEvent] = []
        for event in reversed(self._events):
            if len(matches) >= limit:
                break
            if event_types and event.type not in event_types:
                continue
            if source and event.source != source:
                continue
            if table and event.table != table:
                continue
            if since and event.timestamp < since:
                continue
            matches.append(event)
        return matches


class EventManager:
    """
    Publish/subscribe hub for engine events.

    Features:
    - Subscriptions per event type, sync or async handlers
    - Handlers run in priority order and are awaited inline by ``publish``
    - A failing handler is logged and dead-lettered; the publisher and the
      remaining handlers are unaffected
    """

    def __init__(self, store: Optional[EventStore] = None, dead_letter_size: int = 500):
        self._store = store or EventStore()
        self._subscriptions: Dict[str, Subscription] = {}
        self._dead_letters: Deque[DeadLetter] = deque(maxlen=dead_letter_size)

    def subscribe(
        self,
        event_types: List[EventType],
        handler: EventHandler,
        priority: int = 0,
        subscription_id: Optional[str] = None
    ) -> str:
        """
        Register a handler.

        Args:
            event_types: Event types the handler receives
            handler: Callable taking a SyncEvent, may be a coroutine function
            priority: Higher priorities are called first
            subscription_id: Explicit id, generated when omitted

        Returns:
            Subscription id for ``unsubscribe``
        """
        sub_id = subscription_id or f"sub_{uuid.uuid4().hex[:8]}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=frozenset(event_types),
            handler=handler,
            priority=priority,
        )
        logger.debug(f"Subscribed {sub_id} to {sorted(t.value for t in event_types)}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        if self._subscriptions.pop(subscription_id, None) is None:
            return False
        logger.debug(f"Unsubscribed {subscription_id}")
        return True

    async def publish(
        self,
        event_type: EventType,
        source: str,
        data: Optional[Dict[str, Any]] = None,
        priority: Optional[EventPriority] = None
    ) -> SyncEvent:
        """
        Store an event and deliver it to its subscribers.

        Args:
            event_type: Type of event
            source: Publishing component
            data: Event payload
            priority: Overrides the default priority of the event type

        Returns:
            The published event
        """
        event = SyncEvent(
            type=event_type,
            source=source,
            data=data or {},
            priority=priority or DEFAULT_PRIORITIES.get(event_type, EventPriority.NORMAL),
        )
        self._store.store(event)

        for subscription in self._subscribers_of(event_type):
            try:
                await subscription.deliver(event)
            except Exception as e:
                subscription.failed += 1
                logger.error(f"Handler {subscription.id} failed on {event_type.value} from {source}: {e}")
                self._dead_letters.append(DeadLetter(event, subscription.id, str(e)))

        return event

    def _subscribers_of(self, event_type: EventType) -> List[Subscription]:
        subscribers = [s for s in self._subscriptions.values() if event_type in s.event_types]
        subscribers.sort(key=lambda s: s.priority, reverse=True)
        return subscribers

    def query_events(
        self,
        event_types: Optional[List[EventType]] = None,
        source: Optional[str] = None,
        table: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100
    ) -> List[SyncEvent]:
        """Recent events matching the filters, newest first."""
        return self._store.query(event_types=event_types, source=source, table=table, since=since, limit=limit)

    def get_dead_letter_events(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Failed deliveries, oldest first."""
        return [letter.to_dict() for letter in list(self._dead_letters)[-limit:]]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "subscriptions": len(self._subscriptions),
            "stored": len(self._store),
            "published": dict(self._store.published),
            "dead_letters": len(self._dead_letters),
        }


__all__ = [
    "DeadLetter",
    "EventManager",
    "EventPriority",
    "EventStore",
    "EventType",
    "Subscription",
    "SyncEvent",
]
