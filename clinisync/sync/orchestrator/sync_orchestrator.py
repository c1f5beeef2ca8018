"""
Sync Orchestrator Module.

Owns the lifecycle of the sync engine: wires change capture, the sync
queue, conflict handling and health monitoring together, performs the
startup reconciliation and exposes the control API.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union

from clinisync.config.settings import Settings
from clinisync.monitoring.alert_manager import (
    Alert,
    AlertManager,
    AlertSeverity,
    AlertStatus,
    AlertType,
)
from clinisync.sync.cdc.database_cdc import ChangeCapture
from clinisync.sync.conflict.detector import ConflictDetector, DetectionOutcome
from clinisync.sync.conflict.resolver import ConflictResolver, ResolutionPatternTable
from clinisync.sync.connectors.base import StoreAdapter
from clinisync.sync.models import (
    ChangeEvent,
    ChangeKind,
    ConflictCandidate,
    ConflictResolution,
    ResolutionStrategy,
    StoreSide,
    StrategyName,
    SyncOperation,
    utc_now,
)
from clinisync.sync.orchestrator.event_manager import (
    EventManager,
    EventStore,
    EventType,
)
from clinisync.sync.queue.sync_queue import SyncQueue
from clinisync.system.logging_config import log_sync_event
from clinisync.utils.retry import (
    RetryConfig,
    RetryExecutor,
    RetryExhaustedError,
    RetryStrategy,
)

logger = logging.getLogger(__name__)


class EngineState(str, Enum):
    """Sync engine lifecycle."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class ResolutionOutdated(Exception):
    """Raised when a confirmed resolution no longer matches what the stores hold."""
    pass


class InitializationError(Exception):
    """Raised when the engine could not be brought up."""

    def __init__(self, message: str, report: Optional["InitializationReport"] = None):
        super().__init__(message)
        self.report = report


@dataclass
class InitializationReport:
    """Outcome of each startup step, per attempt."""
    attempts: int = 0
    steps: Dict[str, str] = field(default_factory=dict)
    reconciled: Dict[str, Dict[str, int]] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempts": self.attempts,
            "steps": dict(self.steps),
            "reconciled": self.reconciled,
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class SyncOrchestrator:
    """
    Bidirectional sync engine between the legacy and the cloud store.

    Features:
    - Ordered startup with retried initialization
    - Full reconciliation pass at startup and on demand
    - Conflict detection and confidence-gated resolution
    - Health monitoring, alerting and a typed event stream
    - Graceful shutdown through one shared stop signal
    """

    def __init__(
        self,
        legacy: StoreAdapter,
        cloud: StoreAdapter,
        settings: Optional[Settings] = None,
        event_manager: Optional[EventManager] = None,
        alert_manager: Optional[AlertManager] = None
    ):
        if legacy.side != StoreSide.LEGACY or cloud.side != StoreSide.CLOUD:
            raise ValueError("Expected a legacy and a cloud store adapter")

        # imported here, the health monitor publishes through this package
        from clinisync.system.health_monitor import HealthMonitor

        self.settings = settings or Settings()
        self.legacy = legacy
        self.cloud = cloud
        self._adapters = {StoreSide.LEGACY: legacy, StoreSide.CLOUD: cloud}
        self.tables = list(self.settings.capture.tables)

        self.events = event_manager or EventManager(EventStore(self.settings.orchestrator.event_store_size))
        self.alerts = alert_manager or AlertManager(
            retention=self.settings.health.alert_retention,
            cleanup_interval=self.settings.health.alert_cleanup_interval,
        )
        self.alerts.on_alert(self._on_alert_created)

        resolver_settings = self.settings.resolver
        capture_settings = self.settings.capture
        self.detector = ConflictDetector(
            tracked_fields=resolver_settings.tracked_fields,
            id_column=capture_settings.id_column,
            updated_at_column=capture_settings.updated_at_column,
            created_at_column=capture_settings.created_at_column,
        )
        self.resolver = ConflictResolver(
            patterns=ResolutionPatternTable(
                identity_fields=resolver_settings.identity_fields,
                workflow_fields=resolver_settings.workflow_fields,
            ),
            auto_resolution_threshold=resolver_settings.auto_resolution_threshold,
            learning_enabled=resolver_settings.learning_enabled,
            history_size=resolver_settings.history_size,
            updated_at_column=capture_settings.updated_at_column,
        )

        queue_settings = self.settings.queue
        self.queue = SyncQueue(
            self._apply_operation,
            workers=queue_settings.workers,
            max_attempts=queue_settings.max_attempts,
            base_delay=queue_settings.base_delay,
            history_size=queue_settings.history_size,
            on_applied=self._on_operation_applied,
            on_failed=self._on_operation_failed,
            on_parked=self._on_operation_parked,
        )

        self.capture = ChangeCapture(
            legacy,
            cloud,
            self.tables,
            sink=self._on_change,
            legacy_interval=capture_settings.legacy_poll_interval,
            cloud_interval=capture_settings.cloud_poll_interval,
            prefer_native=capture_settings.prefer_native,
            alert_manager=self.alerts,
            on_error=self._on_capture_error,
        )

        self.health = HealthMonitor(
            legacy,
            cloud,
            self.alerts,
            event_manager=self.events,
            queue=self.queue,
            resolver=self.resolver,
            check_interval=self.settings.health.check_interval,
            disconnect_threshold=self.settings.health.disconnect_threshold,
        )

        self._state = EngineState.UNINITIALIZED
        self._stop_event = asyncio.Event()
        self._abort_init = asyncio.Event()
        self._started_at: Optional[datetime] = None
        self._init_report: Optional[InitializationReport] = None
        self._confirmations: Dict[str, asyncio.Future] = {}
        self._consistency_task: Optional[asyncio.Task] = None
        self._last_operation_at: Optional[datetime] = None
        self._stats = {
            "events_captured": 0,
            "applied_directly": 0,
            "stale": 0,
            "conflicts": 0,
            "resolutions_applied": 0,
            "resolutions_pending": 0,
            "reconciliations": 0,
            "consistency_checks": 0,
            "inconsistencies": 0,
            "capture_errors": 0,
        }
        # ids seen on both stores, so a record missing on one side can be
        # told apart as deleted rather than not yet copied
        self._synced_ids: Dict[str, Set[str]] = {table: set() for table in self.tables}

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def degraded(self) -> bool:
        """Running, but with health in the warning or critical band."""
        return self._state == EngineState.RUNNING and self.health.degraded

    @property
    def stop_event(self) -> asyncio.Event:
        return self._stop_event

    def adapter_for(self, side: StoreSide) -> StoreAdapter:
        return self._adapters[side]

    # Lifecycle

    async def initialize(self) -> InitializationReport:
        """
        Bring the engine up.

        Steps, in order: connect both stores, start change capture, start
        the queue workers, start health monitoring and alert maintenance,
        reconcile both stores. A failing step tears down what was started
        and the whole sequence is retried.

        Raises:
            InitializationError: If every attempt failed or stop was requested
        """
        if self._state == EngineState.RUNNING:
            return self._init_report
        if self._state in (EngineState.INITIALIZING, EngineState.STOPPING):
            raise InitializationError(f"Cannot initialize while {self._state.value}")

        self._state = EngineState.INITIALIZING
        self._abort_init = asyncio.Event()
        for adapter in self._adapters.values():
            adapter.reset_closing()

        orchestrator_settings = self.settings.orchestrator
        report = InitializationReport()
        executor = RetryExecutor(RetryConfig(
            max_attempts=orchestrator_settings.init_retries + 1,
            base_delay=orchestrator_settings.init_retry_delay,
            strategy=RetryStrategy.LINEAR,
            retryable_exceptions=[Exception],
            non_retryable_exceptions=[InitializationError],
            label="engine initialization",
        ))

        logger.info(f"Initializing sync engine (retry pauses {executor.schedule()})")
        try:
            await executor.async_execute(
                self._initialize_once,
                report,
                on_retry=self._before_init_retry,
                sleep=self._sleep_unless_aborted,
            )
        except (RetryExhaustedError, InitializationError) as e:
            self._state = EngineState.UNINITIALIZED
            report.completed_at = utc_now()
            self._init_report = report
            await self.health.record_critical(f"initialization failed: {e}")
            await self.events.publish(
                EventType.INITIALIZATION_FAILED,
                source="orchestrator",
                data=report.to_dict(),
            )
            logger.error(f"Sync engine initialization failed after {report.attempts} attempts: {e}")
            if isinstance(e, InitializationError):
                e.report = report
                raise
            raise InitializationError(str(e), report) from e.last_error

        report.completed_at = utc_now()
        self._init_report = report
        self._started_at = utc_now()
        self._state = EngineState.RUNNING
        self.health.engine_running = True
        await self.events.publish(EventType.INITIALIZED, source="orchestrator", data=report.to_dict())
        logger.info(f"Sync engine running after {report.attempts} attempt(s)")
        return report

    async def _initialize_once(self, report: InitializationReport) -> None:
        report.attempts += 1
        self._stop_event = asyncio.Event()

        steps = [
            ("connect_stores", self._connect_stores),
            ("start_capture", self._start_capture),
            ("start_queue", self.queue.start),
            ("start_monitoring", self._start_monitoring),
            ("reconcile", self._initial_reconcile),
        ]
        for name, step in steps:
            if self._abort_init.is_set():
                await self._teardown()
                raise InitializationError("Initialization cancelled by stop request")
            try:
                result = await step()
            except Exception as e:
                report.steps[name] = f"failed: {e}"
                report.errors.append(f"attempt {report.attempts}, {name}: {e}")
                logger.warning(f"Initialization step {name} failed: {e}")
                await self._teardown()
                raise
            report.steps[name] = "ok"
            if name == "reconcile" and result:
                report.reconciled = result

    async def _before_init_retry(self, attempt: int, error: Exception) -> None:
        if self._abort_init.is_set():
            raise InitializationError("Initialization cancelled by stop request")
        logger.info(f"Retrying sync engine initialization (attempt {attempt + 1})")

    async def _sleep_unless_aborted(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._abort_init.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _connect_stores(self) -> None:
        for adapter in self._adapters.values():
            if not adapter.is_connected:
                await adapter.connect()

    async def _start_capture(self) -> None:
        self.capture.reset()
        await self.capture.start(self._stop_event)

    async def _start_monitoring(self) -> None:
        await self.health.start(self._stop_event)
        await self.alerts.start(self._stop_event)
        interval = self.settings.orchestrator.consistency_interval
        if interval > 0:
            self._consistency_task = asyncio.create_task(
                self._consistency_loop(self._stop_event, interval), name="consistency-check"
            )

    async def _stop_consistency_check(self) -> None:
        if self._consistency_task is None:
            return
        self._consistency_task.cancel()
        try:
            await self._consistency_task
        except asyncio.CancelledError:
            pass
        self._consistency_task = None

    async def _initial_reconcile(self) -> Dict[str, Dict[str, int]]:
        if not self.settings.orchestrator.reconcile_on_start:
            return {}
        return await self.reconcile()

    async def _teardown(self) -> None:
        """Release whatever a partial startup left running."""
        self._stop_event.set()
        await self.capture.stop()
        await self.health.stop()
        await self.alerts.stop()
        await self._stop_consistency_check()
        await self.queue.stop(grace_period=0)
        self._fail_confirmations("Sync engine initialization failed")
        for adapter in self._adapters.values():
            try:
                await adapter.disconnect()
            except Exception as e:
                logger.warning(f"Failed to disconnect {adapter.name}: {e}")

    async def start(self) -> InitializationReport:
        """Start a stopped or never started engine."""
        return await self.initialize()

    async def stop(self, grace_period: Optional[float] = None) -> None:
        """
        Stop the engine.

        Signals every background task, stops capture and monitoring, lets
        in-flight operations finish within the grace period and releases
        both stores.
        """
        if self._state == EngineState.INITIALIZING:
            self._abort_init.set()
            return
        if self._state != EngineState.RUNNING:
            return

        if grace_period is None:
            grace_period = self.settings.queue.stop_grace_period

        logger.info("Stopping sync engine")
        self._state = EngineState.STOPPING
        self._stop_event.set()

        await self.capture.stop()
        await self.health.stop()
        await self.alerts.stop()
        await self._stop_consistency_check()
        await self.queue.stop(grace_period=grace_period)
        self._fail_confirmations("Sync engine stopped before the resolution was applied")
        for adapter in self._adapters.values():
            try:
                await adapter.close()
            except Exception as e:
                logger.warning(f"Failed to close {adapter.name}: {e}")

        self.health.engine_running = False
        self._state = EngineState.STOPPED
        await self.events.publish(
            EventType.STOPPED,
            source="orchestrator",
            data={"pending_operations": self.queue.pending_count},
        )
        logger.info("Sync engine stopped")

    async def restart(self) -> InitializationReport:
        await self.stop()
        return await self.initialize()

    # Reconciliation

    async def reconcile(self, tables: Optional[List[str]] = None) -> Dict[str, Dict[str, int]]:
        """
        Compare full snapshots of both stores and queue what differs.

        Records missing on one side are created from the other, except
        records the engine has already seen on both stores: those were
        deleted on the side missing them and the delete is propagated.
        Records whose tracked fields differ are updated from the side with
        the newer timestamp, legacy on a tie.

        Returns:
            Per table counts of queued creates, updates and deletes
        """
        results: Dict[str, Dict[str, int]] = {}
        for table in tables or self.tables:
            legacy_rows = await self.legacy.fetch_all(table)
            cloud_rows = await self.cloud.fetch_all(table)
            legacy_by_id = {str(self.legacy.record_id_of(row)): row for row in legacy_rows}
            cloud_by_id = {str(self.cloud.record_id_of(row)): row for row in cloud_rows}
            synced = self._synced_ids.setdefault(table, set())

            counts = {"created": 0, "updated": 0, "deleted": 0}
            for present, rows, other in (
                (StoreSide.LEGACY, legacy_by_id, cloud_by_id),
                (StoreSide.CLOUD, cloud_by_id, legacy_by_id),
            ):
                for key, row in rows.items():
                    if key in other:
                        continue
                    if key in synced:
                        # the delete happened on the opposite side of ``present``
                        self.queue.enqueue(self._snapshot_event(table, row, present.opposite, ChangeKind.DELETE))
                        counts["deleted"] += 1
                    else:
                        self.queue.enqueue(self._snapshot_event(table, row, present, ChangeKind.CREATE))
                        counts["created"] += 1

            for key in legacy_by_id.keys() & cloud_by_id.keys():
                synced.add(key)
                legacy_row, cloud_row = legacy_by_id[key], cloud_by_id[key]
                if not self.detector.diff(table, legacy_row, cloud_row):
                    continue
                legacy_ts = self.detector.record_timestamp(legacy_row)
                cloud_ts = self.detector.record_timestamp(cloud_row)
                if cloud_ts is not None and (legacy_ts is None or cloud_ts > legacy_ts):
                    event = self._snapshot_event(table, cloud_row, StoreSide.CLOUD, ChangeKind.UPDATE)
                else:
                    event = self._snapshot_event(table, legacy_row, StoreSide.LEGACY, ChangeKind.UPDATE)
                self.queue.enqueue(event)
                counts["updated"] += 1

            results[table] = counts
            logger.info(
                f"Reconciled {table}: {len(legacy_rows)} legacy / {len(cloud_rows)} cloud rows, "
                f"{counts['created']} creates, {counts['updated']} updates and {counts['deleted']} deletes queued"
            )

        self._stats["reconciliations"] += 1
        return results

    def _snapshot_event(
        self,
        table: str,
        row: Dict[str, Any],
        side: StoreSide,
        kind: ChangeKind
    ) -> ChangeEvent:
        return ChangeEvent(
            record_id=self._adapters[side].record_id_of(row),
            table=table,
            kind=kind,
            payload=row,
            source_store=side,
            origin_timestamp=self.detector.record_timestamp(row),
        )

    async def force_sync(self, table: Optional[str] = None) -> Dict[str, Dict[str, int]]:
        """
        Reconcile one table (or all) right now.

        Only the capture positions of the reconciled tables are moved.

        Raises:
            RuntimeError: If the engine is not running
            ValueError: If the table is not synchronized
        """
        if self._state != EngineState.RUNNING:
            raise RuntimeError(f"Sync engine is {self._state.value}")
        if table is not None and table not in self.tables:
            raise ValueError(f"Table {table!r} is not synchronized")

        tables = [table] if table else list(self.tables)
        logger.info(f"Forced sync of {', '.join(tables)}")
        result = await self.reconcile(tables)
        for name in tables:
            await self.capture.reset_cursors(name)
        return result

    async def verify_consistency(self, tables: Optional[List[str]] = None) -> Dict[str, Dict[str, int]]:
        """
        Compare record counts of both stores and reconcile tables that differ.

        Catches what the change feeds cannot see, such as deletes on a
        polled store.

        Returns:
            Reconciliation counts of the tables found inconsistent
        """
        self._stats["consistency_checks"] += 1
        results: Dict[str, Dict[str, int]] = {}
        for table in tables or self.tables:
            legacy_count = await self.legacy.count(table)
            cloud_count = await self.cloud.count(table)
            if legacy_count == cloud_count:
                continue
            self._stats["inconsistencies"] += 1
            logger.warning(
                f"Inconsistent {table}: {legacy_count} legacy / {cloud_count} cloud records, reconciling"
            )
            results.update(await self.reconcile([table]))
        return results

    async def _consistency_loop(self, stop_event: asyncio.Event, interval: float) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass

            try:
                await self.verify_consistency()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Consistency check failed: {e}")
                await self.health.record_error(f"consistency check: {e}")

    def _remember(self, table: str, record_id: Any, present: bool) -> None:
        synced = self._synced_ids.setdefault(table, set())
        if present:
            synced.add(str(record_id))
        else:
            synced.discard(str(record_id))

    # Change processing

    async def _on_change(self, event: ChangeEvent) -> None:
        self._stats["events_captured"] += 1
        self.queue.enqueue(event)

    async def _apply_operation(self, operation: SyncOperation) -> None:
        """Queue handler: move one change to the opposite store."""
        if operation.resolution is not None:
            await self._apply_confirmed(operation)
            return

        event = operation.event
        target = self._adapters[event.source_store.opposite]

        current = await target.get(event.table, event.record_id)
        result = self.detector.check(event, current)

        if result.outcome == DetectionOutcome.APPLY:
            if event.kind == ChangeKind.DELETE:
                await target.delete(event.table, event.record_id)
            else:
                await target.upsert(event.table, event.payload)
            self._remember(event.table, event.record_id, present=event.kind != ChangeKind.DELETE)
            self._stats["applied_directly"] += 1
            log_sync_event(event.kind.value, event.table, event.record_id, target.side.value)
            await self.events.publish(
                EventType.OPERATION,
                source="orchestrator",
                data={
                    "operation_id": operation.id,
                    "table": event.table,
                    "record_id": event.record_id,
                    "kind": event.kind.value,
                    "target": target.side.value,
                },
            )
        elif result.outcome == DetectionOutcome.CONFLICT:
            await self._handle_conflict(result.candidate)
        else:
            if result.outcome == DetectionOutcome.STALE:
                self._remember(event.table, event.record_id, present=True)
            elif result.outcome == DetectionOutcome.NOTHING:
                self._remember(event.table, event.record_id, present=False)
            self._stats["stale"] += 1
            logger.debug(f"Skipped {event.table}/{event.record_id}: {result.reason}")

    async def _handle_conflict(self, candidate: ConflictCandidate) -> ConflictResolution:
        self._stats["conflicts"] += 1
        await self.health.record_conflict()
        await self.events.publish(EventType.CONFLICT, source="orchestrator", data=candidate.to_dict())

        resolution = self.resolver.resolve(candidate)
        if resolution.verified:
            await self._apply_resolution(resolution)
        else:
            self._stats["resolutions_pending"] += 1
            await self.events.publish(
                EventType.RESOLUTION_PENDING,
                source="orchestrator",
                data=resolution.to_dict(),
            )
        return resolution

    async def _apply_resolution(self, resolution: ConflictResolution) -> None:
        """Write a verified resolution to both stores."""
        if not resolution.verified:
            raise ValueError(f"Resolution {resolution.id} is not verified")

        for adapter in self._adapters.values():
            if resolution.delete_record:
                await adapter.delete(resolution.table, resolution.record_id)
            else:
                await adapter.upsert(resolution.table, resolution.resolved_payload)

        self._remember(resolution.table, resolution.record_id, present=not resolution.delete_record)
        resolution.applied_at = utc_now()
        self._stats["resolutions_applied"] += 1
        log_sync_event(
            "delete" if resolution.delete_record else "resolve",
            resolution.table,
            resolution.record_id,
            "both",
            {"strategy": resolution.strategy_used.value, "confidence": resolution.confidence},
        )
        await self.events.publish(
            EventType.OPERATION,
            source="orchestrator",
            data={
                "resolution_id": resolution.id,
                "table": resolution.table,
                "record_id": resolution.record_id,
                "strategy": resolution.strategy_used.value,
                "target": "both",
            },
        )

    async def _apply_confirmed(self, operation: SyncOperation) -> None:
        """
        Queue handler for an operator-confirmed resolution.

        The first attempt reports its outcome to the waiting confirmation
        call; later attempts are ordinary queue retries.
        """
        waiter = self._confirmations.pop(operation.id, None)
        try:
            resolution = await self._write_confirmed(operation.resolution)
        except ResolutionOutdated as e:
            logger.warning(str(e))
            _settle(waiter, error=e)
            return
        except Exception as e:
            _settle(waiter, error=e)
            raise
        _settle(waiter, result=resolution)

    async def _write_confirmed(self, resolution: ConflictResolution) -> ConflictResolution:
        """
        Check both stores against the versions the operator decided on, then write.

        A store counts as unchanged when it still holds the version seen at
        detection time or already holds the resolved version (an earlier
        attempt got that far).
        """
        if not self.resolver.is_pending(resolution.id):
            raise ResolutionOutdated(
                f"Resolution {resolution.id} for {resolution.table}/{resolution.record_id} "
                f"was superseded before it could be applied"
            )

        candidate = resolution.candidate
        target = None if resolution.delete_record else resolution.resolved_payload
        for side, adapter in self._adapters.items():
            current = await adapter.get(resolution.table, resolution.record_id)
            if side == candidate.deleted_side:
                seen = None
            else:
                seen = candidate.legacy_version if side == StoreSide.LEGACY else candidate.cloud_version
            if not (self._same_version(resolution.table, current, seen)
                    or self._same_version(resolution.table, current, target)):
                self.resolver.discard(resolution.id)
                raise ResolutionOutdated(
                    f"{resolution.table}/{resolution.record_id} changed on the {side.value} store "
                    f"after the conflict was detected; resolution {resolution.id} discarded"
                )

        await self._apply_resolution(resolution)
        return self.resolver.complete(resolution)

    def _same_version(
        self,
        table: str,
        current: Optional[Dict[str, Any]],
        expected: Optional[Dict[str, Any]]
    ) -> bool:
        if current is None or expected is None:
            return current is None and expected is None
        if self.detector.diff(table, current, expected):
            return False
        return self.detector.record_timestamp(current) == self.detector.record_timestamp(expected)

    def _resolution_event(self, resolution: ConflictResolution) -> ChangeEvent:
        source = resolution.candidate.source_event
        return ChangeEvent(
            record_id=resolution.record_id,
            table=resolution.table,
            kind=ChangeKind.DELETE if resolution.delete_record else ChangeKind.UPDATE,
            payload=dict(resolution.resolved_payload or {}),
            source_store=source.source_store if source else StoreSide.LEGACY,
            origin_timestamp=self.detector.record_timestamp(resolution.resolved_payload),
        )

    def _fail_confirmations(self, reason: str) -> None:
        for waiter in self._confirmations.values():
            _settle(waiter, error=RuntimeError(reason))
        self._confirmations.clear()

    async def _on_operation_applied(self, operation: SyncOperation) -> None:
        self._last_operation_at = utc_now()
        await self.health.record_success()

    async def _on_operation_failed(self, operation: SyncOperation) -> None:
        self._last_operation_at = utc_now()
        await self.events.publish(
            EventType.ERROR,
            source="sync_queue",
            data={"operation": operation.to_dict(), "retrying": True},
        )

    async def _on_operation_parked(self, operation: SyncOperation) -> None:
        self._last_operation_at = utc_now()
        await self.health.record_error(f"operation {operation.id} parked")
        await self.alerts.create_alert(
            alert_type=AlertType.SYNC,
            severity=AlertSeverity.ERROR,
            source="sync_queue",
            message=(
                f"Operation on {operation.key[0]}/{operation.key[1]} parked after "
                f"{operation.attempt_count} attempts: {operation.last_error}"
            ),
            context={"operation_id": operation.id},
        )
        await self.events.publish(
            EventType.ERROR,
            source="sync_queue",
            data={"operation": operation.to_dict(), "retrying": False},
        )

    async def _on_capture_error(self, side: StoreSide, error: Exception) -> None:
        self._stats["capture_errors"] += 1
        await self.health.record_error(f"{side.value} capture: {error}")
        await self.events.publish(
            EventType.ERROR,
            source=f"capture.{side.value}",
            data={"error": str(error)},
        )

    async def _on_alert_created(self, alert: Alert) -> None:
        await self.events.publish(EventType.ALERT_CREATED, source=alert.source, data=alert.to_dict())

    # Control API

    def get_stats(self) -> Dict[str, Any]:
        uptime = (utc_now() - self._started_at).total_seconds() if self._started_at and self._state == EngineState.RUNNING else 0
        queue_stats = self.queue.get_stats()
        return {
            "state": self._state.value,
            "degraded": self.degraded,
            "uptime_seconds": round(uptime, 1),
            "total_operations": queue_stats["total"],
            "successful": queue_stats["applied"],
            "failed": queue_stats["failed"],
            "last_operation_at": self._last_operation_at.isoformat() if self._last_operation_at else None,
            **self._stats,
            "queue": queue_stats,
            "capture": self.capture.get_stats(),
            "detector": self.detector.stats,
            "resolver": self.resolver.get_stats(),
            "health": self.health.get_stats(),
            "stores": {side.value: adapter.stats for side, adapter in self._adapters.items()},
            "alerts": self.alerts.active_counts(),
            "events": self.events.get_stats(),
        }

    def get_health_report(self):
        return self.health.get_report()

    def get_initialization_report(self) -> Optional[InitializationReport]:
        return self._init_report

    async def acknowledge_alert(self, alert_id: str) -> bool:
        return await self.alerts.acknowledge_alert(alert_id)

    async def resolve_alert(self, alert_id: str, notes: Optional[str] = None) -> bool:
        return await self.alerts.resolve_alert(alert_id, notes=notes)

    def get_alerts(
        self,
        status: Optional[AlertStatus] = None,
        severity: Optional[AlertSeverity] = None,
        limit: int = 100
    ) -> List[Alert]:
        return self.alerts.get_alerts(status=status, severity=severity, limit=limit)

    def update_resolution_pattern(
        self,
        pattern: str,
        strategy: Union[ResolutionStrategy, StrategyName, str],
        config: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Override the strategy for ``table.field`` or ``table.*``.

        Raises:
            ValueError: If the pattern or strategy name is invalid
        """
        if not isinstance(strategy, ResolutionStrategy):
            strategy = ResolutionStrategy(StrategyName(strategy), dict(config or {}))
        self.resolver.patterns.set(pattern, strategy, origin="operator")

    def get_resolution_patterns(self) -> Dict[str, Dict[str, Any]]:
        return self.resolver.patterns.snapshot()

    def get_pending_resolutions(self) -> List[ConflictResolution]:
        return self.resolver.get_pending()

    async def confirm_resolution(
        self,
        resolution_id: str,
        prefer: Optional[StoreSide] = None,
        payload: Optional[Dict[str, Any]] = None
    ) -> ConflictResolution:
        """
        Apply an operator's decision on a pending resolution.

        The decision is queued on the record's key, so it never runs next
        to a captured change of the same record, and waits for its first
        attempt. The resolution stays pending until both stores hold the
        resolved version; a failed attempt is retried by the queue.

        Raises:
            KeyError: If no such pending resolution exists
            ValueError: If neither ``prefer`` nor ``payload`` is given
            RuntimeError: If the engine is not running
            ResolutionOutdated: If a store changed after the conflict was detected
            StoreError: If the first attempt failed; the queue keeps retrying
        """
        resolution = self.resolver.confirm(resolution_id, prefer=prefer, payload=payload)
        if self._state != EngineState.RUNNING:
            raise RuntimeError(f"Sync engine is {self._state.value}")

        waiter = asyncio.get_running_loop().create_future()
        operation = self.queue.enqueue(self._resolution_event(resolution), resolution=resolution)
        self._confirmations[operation.id] = waiter
        return await waiter

    def get_conflict_history(self, table: Optional[str] = None, limit: int = 100) -> List[ConflictResolution]:
        return self.resolver.get_history(table=table, limit=limit)

    def get_parked_operations(self) -> List[SyncOperation]:
        return self.queue.get_parked()

    def requeue_parked(self, operation_id: str) -> Optional[SyncOperation]:
        return self.queue.requeue_parked(operation_id)


def _settle(waiter: Optional[asyncio.Future], result: Any = None, error: Optional[BaseException] = None) -> None:
    if waiter is None or waiter.done():
        return
    if error is not None:
        waiter.set_exception(error)
    else:
        waiter.set_result(result)
