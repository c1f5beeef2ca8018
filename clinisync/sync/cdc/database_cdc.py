"""
Database CDC (Change Data Capture) Module.

Detects changes on both stores and hands them to the sync queue. Each store
gets one change feed, chosen once at startup: native push capture when the
store supports it, timestamp polling otherwise.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from clinisync.monitoring.alert_manager import AlertManager, AlertSeverity, AlertStatus, AlertType
from clinisync.sync.connectors.base import AdapterSubscription, StoreAdapter, StoreError
from clinisync.sync.models import ChangeEvent, StoreSide, utc_now

logger = logging.getLogger(__name__)

ChangeSink = Callable[[ChangeEvent], Awaitable[Any]]
ErrorSink = Callable[[StoreSide, Exception], Awaitable[None]]

# Seconds between checks that native subscriptions are still alive
SUBSCRIPTION_CHECK_INTERVAL = 5.0


class CaptureMode(str, Enum):
    """CDC capture modes."""
    NATIVE = "native"
    POLLING = "polling"


class ChangeFeed(ABC):
    """
    Abstract change feed for one store.

    Events are delivered to ``sink`` in the order the store reports them.
    """

    mode: CaptureMode

    def __init__(self, adapter: StoreAdapter, tables: List[str], sink: ChangeSink):
        self.adapter = adapter
        self.tables = list(tables)
        self.sink = sink
        self._on_error: Optional[ErrorSink] = None
        self._stats = {
            "events_captured": 0,
            "errors": 0,
            "started_at": None,
            "last_event_at": None,
        }

    @property
    def side(self) -> StoreSide:
        return self.adapter.side

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "mode": self.mode.value,
            "started_at": self._stats["started_at"].isoformat() if self._stats["started_at"] else None,
            "last_event_at": self._stats["last_event_at"].isoformat() if self._stats["last_event_at"] else None,
        }

    def on_error(self, handler: ErrorSink) -> None:
        """Register the coroutine told about capture failures."""
        self._on_error = handler

    @abstractmethod
    async def prepare(self) -> None:
        """Set up positions before the feed starts running."""
        pass

    @abstractmethod
    async def run(self, stop_event: asyncio.Event) -> None:
        """Capture changes until ``stop_event`` is set."""
        pass

    async def reset_table(self, table: str) -> None:
        """Move the feed position of ``table`` to the current end of the table."""
        pass

    async def emit_event(self, event: ChangeEvent) -> None:
        """Hand one event to the sink."""
        self._stats["events_captured"] += 1
        self._stats["last_event_at"] = utc_now()
        await self.sink(event)

    async def _handle_error(self, error: Exception) -> None:
        self._stats["errors"] += 1
        logger.error(f"Change capture on {self.adapter.name} failed: {error}")
        if self._on_error is not None:
            try:
                await self._on_error(self.side, error)
            except Exception as e:
                logger.error(f"Capture error handler failed: {e}")


class PollingChangeFeed(ChangeFeed):
    """
    Polling-based change feed.

    Keeps one cursor per table: the newest ``updated_at``/``created_at`` seen.
    The cursor is inclusive, so rows sharing the cursor timestamp are not
    lost when they commit after a poll; the ids already emitted at that
    timestamp are remembered and skipped. Works with any store but cannot
    observe deletes.
    """

    mode = CaptureMode.POLLING

    def __init__(self, adapter: StoreAdapter, tables: List[str], sink: ChangeSink, interval: float):
        super().__init__(adapter, tables, sink)
        self.interval = interval
        self._cursors: Dict[str, Optional[datetime]] = {}
        # ids already emitted at the cursor timestamp of each table
        self._seen_at_cursor: Dict[str, Set[str]] = {}

    @property
    def cursors(self) -> Dict[str, Optional[datetime]]:
        return dict(self._cursors)

    def cursor(self, table: str) -> Optional[datetime]:
        return self._cursors.get(table)

    def set_cursor(self, table: str, value: Optional[datetime]) -> None:
        self._cursors[table] = value
        self._seen_at_cursor[table] = set()

    async def _position_at_end(self, table: str) -> None:
        latest = await self.adapter.latest_timestamp(table)
        self._cursors[table] = latest
        seen = set()
        if latest is not None:
            for event in await self.adapter.change_feed_since(table, latest):
                if event.origin_timestamp == latest:
                    seen.add(str(event.record_id))
        self._seen_at_cursor[table] = seen

    async def prepare(self) -> None:
        """Start every cursor at the current newest timestamp of its table."""
        for table in self.tables:
            if table not in self._cursors:
                await self._position_at_end(table)

    async def reset_table(self, table: str) -> None:
        await self._position_at_end(table)
        logger.info(f"{self.adapter.name}: cursor for {table} reset to {self._cursors[table]}")

    async def poll_once(self) -> int:
        """
        Poll every table once.

        Returns:
            Number of events emitted
        """
        emitted = 0
        for table in self.tables:
            events = await self.adapter.change_feed_since(table, self._cursors.get(table))
            for event in events:
                current = self._cursors.get(table)
                stamp = event.origin_timestamp
                seen = self._seen_at_cursor.setdefault(table, set())
                if current is not None and stamp is not None:
                    if stamp < current or (stamp == current and str(event.record_id) in seen):
                        continue

                await self.emit_event(event)
                emitted += 1
                if stamp is None:
                    continue
                if current is None or stamp > current:
                    self._cursors[table] = stamp
                    self._seen_at_cursor[table] = {str(event.record_id)}
                elif stamp == current:
                    seen.add(str(event.record_id))
        return emitted

    async def run(self, stop_event: asyncio.Event) -> None:
        self._stats["started_at"] = utc_now()
        logger.info(f"Polling {self.adapter.name} every {self.interval}s")

        while not stop_event.is_set():
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self._handle_error(e)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass


class NativeChangeFeed(ChangeFeed):
    """
    Change feed driven by the store's own push subscription.

    Subscriptions are checked every ``check_interval`` seconds; one that has
    ended (listener connection lost, driver error) is reported and opened
    again. A failed resubscription is retried on the next check.
    """

    mode = CaptureMode.NATIVE

    def __init__(
        self,
        adapter: StoreAdapter,
        tables: List[str],
        sink: ChangeSink,
        check_interval: float = SUBSCRIPTION_CHECK_INTERVAL
    ):
        super().__init__(adapter, tables, sink)
        self.check_interval = check_interval
        self._subscriptions: Dict[str, AdapterSubscription] = {}
        self._stats["resubscribes"] = 0

    @property
    def subscribed_tables(self) -> List[str]:
        return [table for table, sub in self._subscriptions.items() if sub.active]

    async def prepare(self) -> None:
        pass

    async def _ensure_subscribed(self) -> None:
        for table in self.tables:
            subscription = self._subscriptions.get(table)
            if subscription is not None and subscription.active:
                continue
            if subscription is not None:
                await subscription.close()
                del self._subscriptions[table]
                self._stats["resubscribes"] += 1
                await self._handle_error(StoreError(f"{self.adapter.name}: subscription on {table} ended"))
            try:
                self._subscriptions[table] = await self.adapter.subscribe(table, self._deliver)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self._handle_error(e)

    async def run(self, stop_event: asyncio.Event) -> None:
        self._stats["started_at"] = utc_now()
        logger.info(f"Native capture on {self.adapter.name} for {len(self.tables)} tables")
        try:
            while not stop_event.is_set():
                await self._ensure_subscribed()
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.check_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            for subscription in self._subscriptions.values():
                await subscription.close()
            self._subscriptions.clear()

    async def _deliver(self, event: ChangeEvent) -> None:
        try:
            await self.emit_event(event)
        except Exception as e:
            await self._handle_error(e)


async def select_change_feed(
    adapter: StoreAdapter,
    tables: List[str],
    sink: ChangeSink,
    poll_interval: float,
    prefer_native: bool = True,
    alert_manager: Optional[AlertManager] = None
) -> ChangeFeed:
    """
    Pick the change feed for a store by probing its capabilities once.

    Falling back to polling raises an informational alert, since deletes
    are then only picked up by reconciliation. The alert is not repeated
    while an earlier one for the same store is still active.
    """
    if prefer_native and await adapter.supports_native_capture():
        logger.info(f"{adapter.name}: using native change capture")
        return NativeChangeFeed(adapter, tables, sink)

    source = f"capture.{adapter.side.value}"
    if prefer_native and alert_manager is not None and not alert_manager.get_alerts(
        status=AlertStatus.ACTIVE,
        severity=AlertSeverity.INFO,
        alert_type=AlertType.SYNC,
        source=source,
    ):
        await alert_manager.create_alert(
            alert_type=AlertType.SYNC,
            severity=AlertSeverity.INFO,
            source=source,
            message=f"{adapter.name}: native change capture unavailable, running in degraded polling mode",
            context={"poll_interval": poll_interval},
        )
    logger.info(f"{adapter.name}: using polling change capture")
    return PollingChangeFeed(adapter, tables, sink, poll_interval)


class ChangeCapture:
    """
    Runs the change feeds of both stores.

    The two feeds are independent tasks; a failure in one never stops the
    other.
    """

    def __init__(
        self,
        legacy: StoreAdapter,
        cloud: StoreAdapter,
        tables: List[str],
        sink: ChangeSink,
        legacy_interval: float = 10.0,
        cloud_interval: float = 5.0,
        prefer_native: bool = True,
        alert_manager: Optional[AlertManager] = None,
        on_error: Optional[ErrorSink] = None
    ):
        self._adapters = {StoreSide.LEGACY: legacy, StoreSide.CLOUD: cloud}
        self._intervals = {StoreSide.LEGACY: legacy_interval, StoreSide.CLOUD: cloud_interval}
        self.tables = list(tables)
        self.sink = sink
        self.prefer_native = prefer_native
        self.alert_manager = alert_manager
        self.on_error = on_error
        self._feeds: Dict[StoreSide, ChangeFeed] = {}
        self._tasks: Dict[StoreSide, asyncio.Task] = {}

    @property
    def feeds(self) -> Dict[StoreSide, ChangeFeed]:
        return dict(self._feeds)

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    async def start(self, stop_event: asyncio.Event) -> None:
        """Select a feed per store, position it, and start both capture loops."""
        for side, adapter in self._adapters.items():
            if side not in self._feeds:
                feed = await select_change_feed(
                    adapter,
                    self.tables,
                    self.sink,
                    self._intervals[side],
                    prefer_native=self.prefer_native,
                    alert_manager=self.alert_manager,
                )
                if self.on_error is not None:
                    feed.on_error(self.on_error)
                self._feeds[side] = feed
            await self._feeds[side].prepare()

        for side, feed in self._feeds.items():
            self._tasks[side] = asyncio.create_task(feed.run(stop_event), name=f"capture-{side.value}")
            logger.info(f"Started {feed.mode.value} capture for {side.value}")

    async def stop(self, timeout: float = 5.0) -> None:
        """Wait for the loops to notice the stop signal, then cancel stragglers."""
        tasks = list(self._tasks.values())
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            for task in pending:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._tasks.clear()
        logger.info("Stopped change capture")

    def reset(self) -> None:
        """Forget the selected feeds so the next start probes again."""
        self._feeds.clear()

    def cursor(self, side: StoreSide, table: str) -> Optional[datetime]:
        feed = self._feeds.get(side)
        if isinstance(feed, PollingChangeFeed):
            return feed.cursor(table)
        return None

    def set_cursor(self, side: StoreSide, table: str, value: Optional[datetime]) -> None:
        feed = self._feeds.get(side)
        if isinstance(feed, PollingChangeFeed):
            feed.set_cursor(table, value)

    async def reset_cursors(self, table: str) -> None:
        """Move both feeds of ``table`` to the current end of the table."""
        for feed in self._feeds.values():
            await feed.reset_table(table)

    def get_stats(self) -> Dict[str, Any]:
        """Get stats for both feeds."""
        stats = {}
        for side, feed in self._feeds.items():
            entry = feed.stats
            if isinstance(feed, PollingChangeFeed):
                entry["cursors"] = {
                    table: value.isoformat() if value else None
                    for table, value in feed.cursors.items()
                }
            stats[side.value] = entry
        return stats
