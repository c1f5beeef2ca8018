"""
Sync Engine Health Monitoring.

Probes both stores on a fixed interval, keeps an incrementally adjusted
health score and raises, tracks and retires alerts when the engine's
condition changes.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from clinisync.monitoring.alert_manager import AlertManager, AlertSeverity, AlertType
from clinisync.sync.connectors.base import StoreAdapter
from clinisync.sync.models import StoreSide, utc_now
from clinisync.sync.orchestrator.event_manager import EventManager, EventType

logger = logging.getLogger(__name__)


class ComponentStatus(str, Enum):
    """Status of one monitored component."""
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


class HealthStatus(str, Enum):
    """Overall engine health."""
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    OFFLINE = "offline"


# Score adjustments per observed event
SUCCESS_BONUS = 1
CONFLICT_PENALTY = 2
ERROR_PENALTY = 10
CRITICAL_PENALTY = 20


@dataclass
class ComponentHealth:
    """Health of one component, updated only by the probe cycle."""
    name: str
    status: ComponentStatus = ComponentStatus.DISCONNECTED
    latency_ms: Optional[float] = None
    last_success_at: Optional[datetime] = None
    last_check_at: Optional[datetime] = None
    error_count: int = 0
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2) if self.latency_ms is not None else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_check_at": self.last_check_at.isoformat() if self.last_check_at else None,
            "error_count": self.error_count,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "details": self.details,
        }


@dataclass
class SystemHealthReport:
    """Read-only snapshot of the engine's health."""
    status: HealthStatus
    score: int
    components: Dict[str, ComponentHealth]
    active_alerts: Dict[str, int]
    performance: str
    success_rate: float
    recommendations: List[str]
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def degraded(self) -> bool:
        return self.status in (HealthStatus.WARNING, HealthStatus.CRITICAL)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "score": self.score,
            "degraded": self.degraded,
            "components": {name: c.to_dict() for name, c in self.components.items()},
            "active_alerts": dict(self.active_alerts),
            "performance": self.performance,
            "success_rate": round(self.success_rate, 1),
            "recommendations": list(self.recommendations),
            "timestamp": self.timestamp.isoformat(),
        }


def performance_band(success_rate: float) -> str:
    if success_rate >= 80:
        return "excellent"
    if success_rate >= 60:
        return "good"
    if success_rate >= 30:
        return "fair"
    return "poor"


class HealthMonitor:
    """
    Sync engine health monitor.

    Features:
    - Genuine round-trip probes of both stores with latency tracking
    - Connected/reconnecting/disconnected tracking per store
    - Incremental 0-100 health score fed by operation outcomes
    - One alert per transition into the warning or critical band
    - Critical status and alert while both stores are unreachable at once
    """

    def __init__(
        self,
        legacy: StoreAdapter,
        cloud: StoreAdapter,
        alert_manager: AlertManager,
        event_manager: Optional[EventManager] = None,
        queue: Any = None,
        resolver: Any = None,
        check_interval: float = 30.0,
        disconnect_threshold: int = 3
    ):
        self.alert_manager = alert_manager
        self.event_manager = event_manager
        self.queue = queue
        self.resolver = resolver
        self.check_interval = check_interval
        self.disconnect_threshold = disconnect_threshold

        self._stores = {
            "legacy_store": legacy,
            "cloud_store": cloud,
        }
        self.components: Dict[str, ComponentHealth] = {
            name: ComponentHealth(name=name)
            for name in ("legacy_store", "cloud_store", "sync_queue", "conflict_resolver")
        }

        self._score = 100
        self._band = HealthStatus.HEALTHY
        self._band_alerts: List[str] = []
        self._connection_alerts: Dict[str, str] = {}
        self._outage_alert: Optional[str] = None
        self.engine_running = False
        self._task: Optional[asyncio.Task] = None
        self._stats = {
            "checks": 0,
            "successes": 0,
            "conflicts": 0,
            "errors": 0,
            "criticals": 0,
        }

    @property
    def score(self) -> int:
        return self._score

    @property
    def status(self) -> HealthStatus:
        if not self.engine_running:
            return HealthStatus.OFFLINE
        if self._outage_alert is not None:
            return HealthStatus.CRITICAL
        return self._score_band()

    @property
    def degraded(self) -> bool:
        return self.status in (HealthStatus.WARNING, HealthStatus.CRITICAL)

    def _score_band(self) -> HealthStatus:
        if self._score < 20:
            return HealthStatus.CRITICAL
        if self._score < 50:
            return HealthStatus.WARNING
        return HealthStatus.HEALTHY

    def _adjust(self, delta: int) -> None:
        self._score = max(0, min(100, self._score + delta))

    async def record_success(self) -> None:
        self._stats["successes"] += 1
        self._adjust(SUCCESS_BONUS)
        await self._evaluate_band()

    async def record_conflict(self) -> None:
        self._stats["conflicts"] += 1
        self._adjust(-CONFLICT_PENALTY)
        await self._evaluate_band()

    async def record_error(self, reason: str = "") -> None:
        self._stats["errors"] += 1
        self._adjust(-ERROR_PENALTY)
        if reason:
            logger.warning(f"Health error recorded: {reason}")
        await self._evaluate_band()

    async def record_critical(self, reason: str = "") -> None:
        self._stats["criticals"] += 1
        self._adjust(-CRITICAL_PENALTY)
        if reason:
            logger.error(f"Health critical event recorded: {reason}")
        await self._evaluate_band()

    async def _evaluate_band(self) -> None:
        band = self._score_band()
        if band == self._band:
            return

        previous, self._band = self._band, band
        logger.info(f"Health band changed: {previous.value} -> {band.value} (score {self._score})")

        if band == HealthStatus.HEALTHY:
            for alert_id in self._band_alerts:
                await self.alert_manager.resolve_alert(alert_id, notes="health recovered")
            self._band_alerts.clear()
            return

        severity = AlertSeverity.CRITICAL if band == HealthStatus.CRITICAL else AlertSeverity.WARNING
        alert = await self.alert_manager.create_alert(
            alert_type=AlertType.PERFORMANCE,
            severity=severity,
            source="health_monitor",
            message=f"Sync engine health is {band.value} (score {self._score})",
            context={"score": self._score, "previous": previous.value},
        )
        self._band_alerts.append(alert.id)

    async def _probe_store(self, name: str, adapter: StoreAdapter) -> bool:
        component = self.components[name]
        component.last_check_at = utc_now()
        try:
            if not adapter.is_connected:
                await adapter.connect()
            component.latency_ms = await adapter.ping()
        except Exception as e:
            component.error_count += 1
            component.consecutive_failures += 1
            component.last_error = str(e)
            component.latency_ms = None
            if component.consecutive_failures >= self.disconnect_threshold:
                component.status = ComponentStatus.DISCONNECTED
            else:
                component.status = ComponentStatus.RECONNECTING
            await self.record_critical(f"{name} unreachable: {e}")
            if (
                component.status == ComponentStatus.DISCONNECTED
                and name not in self._connection_alerts
            ):
                alert = await self.alert_manager.create_alert(
                    alert_type=AlertType.CONNECTION,
                    severity=AlertSeverity.ERROR,
                    source=name,
                    message=f"{adapter.name} disconnected after {component.consecutive_failures} failed probes",
                    context={"last_error": component.last_error},
                )
                self._connection_alerts[name] = alert.id
            return False

        if component.consecutive_failures:
            logger.info(f"{name} reachable again after {component.consecutive_failures} failed probes")
        component.status = ComponentStatus.CONNECTED
        component.consecutive_failures = 0
        component.last_success_at = utc_now()
        alert_id = self._connection_alerts.pop(name, None)
        if alert_id:
            await self.alert_manager.resolve_alert(alert_id, notes="connection restored")
        return True

    async def _probe_internal(self, name: str, target: Any) -> None:
        component = self.components[name]
        component.last_check_at = utc_now()
        if target is None:
            component.status = ComponentStatus.DISCONNECTED
            return
        try:
            component.details = target.get_stats()
        except Exception as e:
            component.status = ComponentStatus.ERROR
            component.error_count += 1
            component.last_error = str(e)
            await self.record_error(f"{name} stats unavailable: {e}")
            return

        running = getattr(target, "running", True)
        component.status = ComponentStatus.CONNECTED if running else ComponentStatus.DISCONNECTED
        component.last_success_at = utc_now()

    async def check_health(self) -> SystemHealthReport:
        """Run one probe cycle and return the resulting report."""
        self._stats["checks"] += 1

        reachable = {}
        for name, adapter in self._stores.items():
            reachable[name] = await self._probe_store(name, adapter)

        await self._probe_internal("sync_queue", self.queue)
        await self._probe_internal("conflict_resolver", self.resolver)

        if not any(reachable.values()):
            if self._outage_alert is None:
                alert = await self.alert_manager.create_alert(
                    alert_type=AlertType.CONNECTION,
                    severity=AlertSeverity.CRITICAL,
                    source="health_monitor",
                    message="Both stores are unreachable, synchronization is halted",
                    context={name: self.components[name].last_error for name in self._stores},
                )
                self._outage_alert = alert.id
                if self.event_manager is not None:
                    await self.event_manager.publish(
                        EventType.CRITICAL_ERROR,
                        source="health_monitor",
                        data={"reason": "both_stores_unreachable", "alert_id": alert.id},
                    )
        elif self._outage_alert is not None:
            await self.alert_manager.resolve_alert(self._outage_alert, notes="a store is reachable again")
            self._outage_alert = None

        report = self.get_report()
        if self.event_manager is not None:
            await self.event_manager.publish(
                EventType.STATS_UPDATED,
                source="health_monitor",
                data={"status": report.status.value, "score": report.score},
            )
        return report

    def get_report(self) -> SystemHealthReport:
        """Build a report from the latest probe results."""
        queue_stats = self.components["sync_queue"].details
        applied = queue_stats.get("applied", 0)
        failed = queue_stats.get("failed", 0)
        success_rate = (applied / (applied + failed) * 100) if (applied + failed) else 100.0

        return SystemHealthReport(
            status=self.status,
            score=self._score,
            components=dict(self.components),
            active_alerts=self.alert_manager.active_counts(),
            performance=performance_band(success_rate),
            success_rate=success_rate,
            recommendations=self._recommendations(queue_stats),
        )

    def _recommendations(self, queue_stats: Dict[str, Any]) -> List[str]:
        recommendations = []
        for name, side in (("legacy_store", StoreSide.LEGACY), ("cloud_store", StoreSide.CLOUD)):
            component = self.components[name]
            if component.status in (ComponentStatus.DISCONNECTED, ComponentStatus.RECONNECTING):
                recommendations.append(f"Check connectivity to the {side.value} store")
            elif component.latency_ms is not None and component.latency_ms > 1000:
                recommendations.append(f"The {side.value} store is responding slowly ({component.latency_ms:.0f} ms)")
        if queue_stats.get("parked_now"):
            recommendations.append(f"Review {queue_stats['parked_now']} parked sync operations")
        if queue_stats.get("pending", 0) > 1000:
            recommendations.append("Sync backlog is large, consider adding queue workers")
        resolver_stats = self.components["conflict_resolver"].details
        if resolver_stats.get("pending"):
            recommendations.append(f"Confirm {resolver_stats['pending']} pending conflict resolutions")
        if self._score < 50:
            recommendations.append("Investigate recent sync errors")
        return recommendations

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "score": self._score,
            "status": self.status.value,
        }

    async def start(self, stop_event: asyncio.Event) -> None:
        """Start the probe loop."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._monitor_loop(stop_event), name="health-monitor")
        logger.info(f"Health monitoring started (every {self.check_interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Health monitoring stopped")

    async def _monitor_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.check_health()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Health check cycle failed: {e}")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.check_interval)
            except asyncio.TimeoutError:
                pass
