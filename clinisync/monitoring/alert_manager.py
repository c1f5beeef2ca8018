"""
Alert management for clinisync.

Provides:
- Alert creation and tracking
- Acknowledge / resolve lifecycle
- Escalation of unacknowledged alerts
- Retention cleanup and alert statistics
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

from clinisync.sync.models import utc_now

logger = logging.getLogger(__name__)


class AlertSeverity(str, Enum):
    """Alert severity levels."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_ORDER.index(self)


SEVERITY_ORDER = [AlertSeverity.INFO, AlertSeverity.WARNING, AlertSeverity.ERROR, AlertSeverity.CRITICAL]


class AlertStatus(str, Enum):
    """Alert status."""
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class AlertType(str, Enum):
    """What the alert is about."""
    CONNECTION = "connection"
    SYNC = "sync"
    CONFLICT = "conflict"
    PERFORMANCE = "performance"
    ERROR = "error"


@dataclass
class Alert:
    """Alert record."""
    alert_type: AlertType
    severity: AlertSeverity
    source: str  # Component that generated the alert
    message: str
    id: str = field(default_factory=lambda: str(uuid4()))
    context: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    escalated_from: Optional[AlertSeverity] = None

    @property
    def status(self) -> AlertStatus:
        if self.resolved:
            return AlertStatus.RESOLVED
        if self.acknowledged:
            return AlertStatus.ACKNOWLEDGED
        return AlertStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "alert_type": self.alert_type.value,
            "severity": self.severity.value,
            "source": self.source,
            "message": self.message,
            "status": self.status.value,
            "acknowledged": self.acknowledged,
            "resolved": self.resolved,
            "context": self.context,
            "created_at": self.created_at.isoformat(),
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "escalated_from": self.escalated_from.value if self.escalated_from else None,
        }


AlertCallback = Callable[[Alert], Awaitable[None]]


class AlertManager:
    """
    Alert management engine.

    Alerts move active -> acknowledged -> resolved and are never reopened.
    Severity can only go up.
    """

    # Minutes an unacknowledged alert may wait before it is raised one level
    ESCALATION_CONFIG = {
        AlertSeverity.CRITICAL: 0,   # Already at the top
        AlertSeverity.ERROR: 15,
        AlertSeverity.WARNING: 60,
        AlertSeverity.INFO: 0        # Never escalate
    }

    def __init__(self, retention: int = 1000, cleanup_interval: float = 3600.0):
        """
        Initialize the alert manager.

        Args:
            retention: Maximum number of alerts kept; oldest resolved go first
            cleanup_interval: Seconds between maintenance passes
        """
        self.retention = retention
        self.cleanup_interval = cleanup_interval
        self._alerts: Dict[str, Alert] = {}
        self._callbacks: List[AlertCallback] = []
        self._maintenance_task: Optional[asyncio.Task] = None

    def on_alert(self, callback: AlertCallback) -> None:
        """Register a coroutine called for every new alert."""
        self._callbacks.append(callback)

    async def create_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        source: str,
        message: str,
        context: Optional[Dict[str, Any]] = None
    ) -> Alert:
        """
        Create a new alert.

        Args:
            alert_type: Type of alert
            severity: Alert severity
            source: Source component
            message: Alert message
            context: Additional context

        Returns:
            Created alert
        """
        alert = Alert(
            alert_type=alert_type,
            severity=severity,
            source=source,
            message=message,
            context=context or {},
        )
        self._alerts[alert.id] = alert

        log = logger.warning if alert.severity.rank >= AlertSeverity.WARNING.rank else logger.info
        log(f"[ALERT-{severity.value.upper()}] {source}: {message}")

        await self._dispatch(alert)
        return alert

    async def _dispatch(self, alert: Alert) -> None:
        for callback in self._callbacks:
            try:
                await callback(alert)
            except Exception as e:
                logger.error(f"Alert callback failed for {alert.id}: {e}")

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        return self._alerts.get(alert_id)

    async def acknowledge_alert(self, alert_id: str) -> bool:
        """
        Acknowledge an alert.

        Returns:
            True if the alert moved to acknowledged
        """
        alert = self._alerts.get(alert_id)
        if not alert or alert.status != AlertStatus.ACTIVE:
            return False

        alert.acknowledged = True
        alert.acknowledged_at = utc_now()
        logger.info(f"Alert acknowledged: {alert_id}")
        return True

    async def resolve_alert(self, alert_id: str, notes: Optional[str] = None) -> bool:
        """
        Resolve an alert, acknowledging it first when needed.

        Returns:
            True if the alert moved to resolved
        """
        alert = self._alerts.get(alert_id)
        if not alert or alert.resolved:
            return False

        now = utc_now()
        if not alert.acknowledged:
            alert.acknowledged = True
            alert.acknowledged_at = now
        alert.resolved = True
        alert.resolved_at = now
        if notes:
            alert.context["resolution_notes"] = notes

        logger.info(f"Alert resolved: {alert_id}")
        return True

    def escalate(self, alert_id: str, severity: AlertSeverity) -> Alert:
        """
        Raise the severity of an unresolved alert.

        Raises:
            KeyError: Unknown alert
            ValueError: If ``severity`` is lower than the current one
        """
        alert = self._alerts[alert_id]
        if severity.rank < alert.severity.rank:
            raise ValueError(
                f"Alert {alert_id} cannot go from {alert.severity.value} down to {severity.value}"
            )
        if severity != alert.severity:
            alert.escalated_from = alert.severity
            alert.severity = severity
            logger.warning(f"Alert escalated: {alert_id} -> {severity.value}")
        return alert

    def get_alerts(
        self,
        status: Optional[AlertStatus] = None,
        severity: Optional[AlertSeverity] = None,
        alert_type: Optional[AlertType] = None,
        source: Optional[str] = None,
        limit: int = 100
    ) -> List[Alert]:
        """Alerts matching the filters, most severe and newest first."""
        alerts = list(self._alerts.values())

        if status:
            alerts = [a for a in alerts if a.status == status]
        if severity:
            alerts = [a for a in alerts if a.severity == severity]
        if alert_type:
            alerts = [a for a in alerts if a.alert_type == alert_type]
        if source:
            alerts = [a for a in alerts if a.source == source]

        alerts.sort(key=lambda a: (-a.severity.rank, -a.created_at.timestamp()))
        return alerts[:limit]

    def active_counts(self) -> Dict[str, int]:
        """Unresolved alerts per severity."""
        counts = {severity.value: 0 for severity in AlertSeverity}
        for alert in self._alerts.values():
            if not alert.resolved:
                counts[alert.severity.value] += 1
        return counts

    def get_alert_statistics(self, hours: int = 24) -> Dict[str, Any]:
        """Alert statistics over the last ``hours``."""
        cutoff = utc_now() - timedelta(hours=hours)
        alerts = [a for a in self._alerts.values() if a.created_at >= cutoff]

        by_severity = {s.value: len([a for a in alerts if a.severity == s]) for s in AlertSeverity}
        by_status = {s.value: len([a for a in alerts if a.status == s]) for s in AlertStatus}
        by_type: Dict[str, int] = {}
        for alert in alerts:
            by_type[alert.alert_type.value] = by_type.get(alert.alert_type.value, 0) + 1

        resolution_times = [
            (a.resolved_at - a.created_at).total_seconds()
            for a in alerts if a.resolved and a.resolved_at
        ]
        avg_resolution_time = sum(resolution_times) / len(resolution_times) if resolution_times else 0

        return {
            "period_hours": hours,
            "total_alerts": len(alerts),
            "by_severity": by_severity,
            "by_status": by_status,
            "by_type": by_type,
            "avg_resolution_time_seconds": round(avg_resolution_time, 2),
            "generated_at": utc_now().isoformat(),
        }

    def escalate_stale(self, now: Optional[datetime] = None) -> List[Alert]:
        """Raise unacknowledged alerts that waited past their escalation window."""
        now = now or utc_now()
        escalated = []
        for alert in self._alerts.values():
            if alert.acknowledged or alert.resolved:
                continue
            minutes = self.ESCALATION_CONFIG.get(alert.severity, 0)
            if not minutes:
                continue
            reference = alert.context.get("escalated_at") or alert.created_at
            if now - reference >= timedelta(minutes=minutes):
                self.escalate(alert.id, SEVERITY_ORDER[alert.severity.rank + 1])
                alert.context["escalated_at"] = now
                escalated.append(alert)
        return escalated

    def cleanup(self) -> int:
        """
        Enforce the retention limit.

        Only resolved alerts are dropped, oldest first.

        Returns:
            Number of alerts removed
        """
        excess = len(self._alerts) - self.retention
        if excess <= 0:
            return 0

        resolved = sorted(
            (a for a in self._alerts.values() if a.resolved),
            key=lambda a: a.created_at
        )
        removed = 0
        for alert in resolved[:excess]:
            del self._alerts[alert.id]
            removed += 1

        if removed:
            logger.info(f"Alert cleanup removed {removed} resolved alerts")
        return removed

    async def start(self, stop_event: asyncio.Event) -> None:
        """Start the periodic maintenance task."""
        if self._maintenance_task and not self._maintenance_task.done():
            return
        self._maintenance_task = asyncio.create_task(
            self._maintenance_loop(stop_event), name="alert-maintenance"
        )

    async def stop(self) -> None:
        """Stop the maintenance task."""
        if self._maintenance_task is None:
            return
        self._maintenance_task.cancel()
        try:
            await self._maintenance_task
        except asyncio.CancelledError:
            pass
        self._maintenance_task = None

    async def _maintenance_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.cleanup_interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                self.escalate_stale()
                self.cleanup()
            except Exception as e:
                logger.error(f"Alert maintenance failed: {e}")
