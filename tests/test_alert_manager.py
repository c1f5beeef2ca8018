"""
Unit tests for the alert manager.
"""

import asyncio
from datetime import timedelta

import pytest

from clinisync.monitoring import AlertManager, AlertSeverity, AlertStatus, AlertType
from clinisync.sync.models import utc_now


async def raise_alert(manager, severity=AlertSeverity.WARNING, alert_type=AlertType.SYNC, source="sync_queue"):
    return await manager.create_alert(
        alert_type=alert_type,
        severity=severity,
        source=source,
        message=f"{severity.value} from {source}",
    )


@pytest.fixture
def manager():
    return AlertManager(retention=5)


class TestLifecycle:
    """Tests for the acknowledge/resolve lifecycle."""

    @pytest.mark.asyncio
    async def test_create_notifies_callbacks(self, manager):
        seen = []

        async def callback(alert):
            seen.append(alert.id)

        manager.on_alert(callback)
        alert = await raise_alert(manager)
        assert seen == [alert.id]
        assert alert.status == AlertStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_block_creation(self, manager):
        async def callback(alert):
            raise RuntimeError("notifier offline")

        manager.on_alert(callback)
        alert = await raise_alert(manager)
        assert manager.get_alert(alert.id) is alert

    @pytest.mark.asyncio
    async def test_acknowledge_then_resolve(self, manager):
        alert = await raise_alert(manager)
        assert await manager.acknowledge_alert(alert.id)
        assert alert.status == AlertStatus.ACKNOWLEDGED
        assert await manager.resolve_alert(alert.id, notes="restarted VPN")
        assert alert.status == AlertStatus.RESOLVED
        assert alert.context["resolution_notes"] == "restarted VPN"

    @pytest.mark.asyncio
    async def test_acknowledge_only_active(self, manager):
        alert = await raise_alert(manager)
        await manager.acknowledge_alert(alert.id)
        assert not await manager.acknowledge_alert(alert.id)
        await manager.resolve_alert(alert.id)
        assert not await manager.acknowledge_alert(alert.id)
        assert not await manager.acknowledge_alert("unknown")

    @pytest.mark.asyncio
    async def test_resolve_is_final(self, manager):
        alert = await raise_alert(manager)
        assert await manager.resolve_alert(alert.id)
        assert alert.acknowledged
        assert not await manager.resolve_alert(alert.id)


class TestEscalation:
    """Tests for severity escalation."""

    @pytest.mark.asyncio
    async def test_escalate_up(self, manager):
        alert = await raise_alert(manager, AlertSeverity.WARNING)
        manager.escalate(alert.id, AlertSeverity.CRITICAL)
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.escalated_from == AlertSeverity.WARNING

    @pytest.mark.asyncio
    async def test_never_downgrades(self, manager):
        alert = await raise_alert(manager, AlertSeverity.ERROR)
        with pytest.raises(ValueError):
            manager.escalate(alert.id, AlertSeverity.INFO)
        assert alert.severity == AlertSeverity.ERROR

    @pytest.mark.asyncio
    async def test_stale_unacknowledged_alerts_escalate(self, manager):
        error = await raise_alert(manager, AlertSeverity.ERROR)
        info = await raise_alert(manager, AlertSeverity.INFO)
        acknowledged = await raise_alert(manager, AlertSeverity.WARNING)
        await manager.acknowledge_alert(acknowledged.id)

        escalated = manager.escalate_stale(now=utc_now() + timedelta(minutes=16))

        assert escalated == [error]
        assert error.severity == AlertSeverity.CRITICAL
        assert info.severity == AlertSeverity.INFO
        assert acknowledged.severity == AlertSeverity.WARNING


class TestQueries:
    """Tests for filtering, counts and cleanup."""

    @pytest.mark.asyncio
    async def test_filters_and_ordering(self, manager):
        await raise_alert(manager, AlertSeverity.WARNING)
        critical = await raise_alert(manager, AlertSeverity.CRITICAL, AlertType.CONNECTION, "health_monitor")
        await raise_alert(manager, AlertSeverity.INFO)

        assert manager.get_alerts()[0] is critical
        assert manager.get_alerts(alert_type=AlertType.CONNECTION) == [critical]
        assert manager.get_alerts(source="health_monitor") == [critical]
        assert len(manager.get_alerts(severity=AlertSeverity.INFO)) == 1
        assert len(manager.get_alerts(limit=2)) == 2

        await manager.resolve_alert(critical.id)
        assert critical not in manager.get_alerts(status=AlertStatus.ACTIVE)
        assert manager.active_counts() == {"info": 1, "warning": 1, "error": 0, "critical": 0}

    @pytest.mark.asyncio
    async def test_cleanup_drops_only_resolved(self, manager):
        alerts = [await raise_alert(manager) for _ in range(7)]
        await manager.resolve_alert(alerts[0].id)

        assert manager.cleanup() == 1
        assert manager.get_alert(alerts[0].id) is None
        assert len(manager.get_alerts()) == 6

    @pytest.mark.asyncio
    async def test_statistics(self, manager):
        first = await raise_alert(manager, AlertSeverity.ERROR, AlertType.CONNECTION)
        await raise_alert(manager, AlertSeverity.WARNING)
        await manager.resolve_alert(first.id)

        stats = manager.get_alert_statistics()
        assert stats["total_alerts"] == 2
        assert stats["by_severity"]["error"] == 1
        assert stats["by_status"]["resolved"] == 1
        assert stats["by_type"] == {"connection": 1, "sync": 1}

    @pytest.mark.asyncio
    async def test_maintenance_task_stops(self, manager):
        stop = asyncio.Event()
        await manager.start(stop)
        stop.set()
        await manager.stop()
        assert manager._maintenance_task is None
