"""
Integration tests for the sync orchestrator against in-memory stores.
"""

import asyncio

import pytest

from clinisync.monitoring import AlertSeverity, AlertType
from clinisync.sync.connectors.base import StoreUnavailable
from clinisync.sync.models import ChangeEvent, ChangeKind, StoreSide, StrategyName
from clinisync.sync.orchestrator import (
    EngineState,
    EventType,
    InitializationError,
    ResolutionOutdated,
    SyncOrchestrator,
)
from clinisync.system.health_monitor import HealthStatus

from tests.conftest import FakeStoreAdapter, ts


def patient(record_id, minute=0, **fields):
    record = {
        "id": record_id,
        "nombre": "Ana",
        "telefono": "600000000",
        "email": "ana@clinica.es",
        "created_at": ts(0),
        "updated_at": ts(minute),
    }
    record.update(fields)
    return record


def appointment(record_id, minute=0, **fields):
    record = {
        "id": record_id,
        "fecha_hora": "2026-03-10T10:00:00",
        "motivo": "revisión",
        "estado": "pendiente",
        "created_at": ts(0),
        "updated_at": ts(minute),
    }
    record.update(fields)
    return record


def legacy_change(record, table="pacientes", kind=ChangeKind.UPDATE):
    return ChangeEvent(
        record_id=record["id"],
        table=table,
        kind=kind,
        payload=dict(record),
        source_store=StoreSide.LEGACY,
        origin_timestamp=record["updated_at"],
    )


@pytest.fixture
def quiet_settings(engine_settings):
    """Settings whose polling loops run once and then stay idle."""
    engine_settings.capture.legacy_poll_interval = 3600
    engine_settings.capture.cloud_poll_interval = 3600
    return engine_settings


@pytest.fixture
async def engine(legacy_store, cloud_store, quiet_settings):
    orchestrator = SyncOrchestrator(legacy_store, cloud_store, quiet_settings)
    yield orchestrator
    await orchestrator.stop(grace_period=0)


async def start_quiet(orchestrator):
    await orchestrator.initialize()
    assert await orchestrator.queue.wait_idle(timeout=2)
    # let the capture loops take their first poll
    await asyncio.sleep(0.02)


def event_types(orchestrator, *types):
    return orchestrator.events.query_events(event_types=list(types))


async def pending_phone_conflict(orchestrator, legacy_store, cloud_store):
    """Start the engine and leave one pending resolution on pacientes/2."""
    legacy_store.put("pacientes", patient(2))
    cloud_store.put("pacientes", patient(2))
    await start_quiet(orchestrator)

    legacy_version = patient(2, minute=5, telefono="611", email="ana@gesden.es")
    legacy_store.put("pacientes", legacy_version)
    cloud_store.put("pacientes", patient(2, minute=7, telefono="622", email="ana@web.es"))
    orchestrator.queue.enqueue(legacy_change(legacy_version))
    assert await orchestrator.queue.wait_idle(timeout=2)

    pending = orchestrator.get_pending_resolutions()
    assert len(pending) == 1
    return pending[0]


class TestInitialization:
    """Tests for engine startup."""

    def test_adapters_must_match_sides(self, legacy_store, cloud_store):
        with pytest.raises(ValueError):
            SyncOrchestrator(cloud_store, legacy_store)

    @pytest.mark.asyncio
    async def test_startup_reconciles_missing_records(self, engine, legacy_store, cloud_store):
        legacy_store.put("pacientes", patient(1))
        cloud_store.put("pacientes", patient(2, minute=1, nombre="Luis"))

        report = await engine.initialize()
        assert await engine.queue.wait_idle(timeout=2)

        assert engine.state == EngineState.RUNNING
        assert report.attempts == 1
        assert list(report.steps) == [
            "connect_stores", "start_capture", "start_queue", "start_monitoring", "reconcile"
        ]
        assert report.reconciled["pacientes"] == {"created": 2, "updated": 0, "deleted": 0}
        assert cloud_store.row("pacientes", 1)["nombre"] == "Ana"
        assert legacy_store.row("pacientes", 2)["nombre"] == "Luis"
        assert event_types(engine, EventType.INITIALIZED)
        assert engine.health.status == HealthStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_reconcile_updates_from_newer_side(self, engine, legacy_store, cloud_store):
        legacy_store.put("pacientes", patient(1, minute=2, telefono="611"))
        cloud_store.put("pacientes", patient(1, minute=9, telefono="622"))

        report = await engine.initialize()
        assert await engine.queue.wait_idle(timeout=2)

        assert report.reconciled["pacientes"] == {"created": 0, "updated": 1, "deleted": 0}
        assert legacy_store.row("pacientes", 1)["telefono"] == "622"

    @pytest.mark.asyncio
    async def test_initialization_retried_until_store_answers(self, engine, legacy_store):
        async def flaky_connect():
            legacy_store.fail_connect = legacy_store.connect_calls == 0
            return await FakeStoreAdapter.connect(legacy_store)

        legacy_store.connect = flaky_connect
        report = await engine.initialize()

        assert engine.state == EngineState.RUNNING
        assert report.attempts == 2
        assert len(report.errors) == 1
        assert "connect_stores" in report.errors[0]

    @pytest.mark.asyncio
    async def test_initialization_failure_after_all_retries(self, engine, legacy_store):
        legacy_store.fail_connect = True

        with pytest.raises(InitializationError) as exc_info:
            await engine.initialize()

        assert engine.state == EngineState.UNINITIALIZED
        assert exc_info.value.report.attempts == 4
        assert engine.get_initialization_report() is exc_info.value.report
        failed = event_types(engine, EventType.INITIALIZATION_FAILED)
        assert len(failed) == 1
        assert failed[0].data["attempts"] == 4
        assert engine.health.score == 80
        assert not engine.capture.running

    @pytest.mark.asyncio
    async def test_stop_during_initialization_aborts(self, engine, legacy_store, quiet_settings):
        quiet_settings.orchestrator.init_retry_delay = 5
        legacy_store.fail_connect = True

        task = asyncio.create_task(engine.initialize())
        await asyncio.sleep(0.05)
        await engine.stop()

        with pytest.raises(InitializationError):
            await asyncio.wait_for(task, timeout=1)
        assert engine.state == EngineState.UNINITIALIZED
        assert engine.get_initialization_report().attempts == 1


class TestChangeApplication:
    """Tests for moving changes between stores."""

    @pytest.mark.asyncio
    async def test_captured_change_reaches_other_store(self, legacy_store, cloud_store, engine_settings):
        orchestrator = SyncOrchestrator(legacy_store, cloud_store, engine_settings)
        await orchestrator.initialize()
        try:
            legacy_store.put("citas", appointment(7, minute=3))
            for _ in range(40):
                if cloud_store.row("citas", 7):
                    break
                await asyncio.sleep(0.05)
            assert cloud_store.row("citas", 7)["estado"] == "pendiente"
            assert orchestrator.get_stats()["events_captured"] >= 1
        finally:
            await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_replayed_change_is_applied_once(self, engine, cloud_store):
        await start_quiet(engine)
        event = legacy_change(patient(3, minute=4), kind=ChangeKind.CREATE)

        engine.queue.enqueue(event)
        engine.queue.enqueue(event)
        assert await engine.queue.wait_idle(timeout=2)

        assert len([w for w in cloud_store.writes if w[1]["id"] == 3]) == 1
        stats = engine.get_stats()
        assert stats["applied_directly"] == 1
        assert stats["stale"] == 1
        assert len(event_types(engine, EventType.OPERATION)) == 1

    @pytest.mark.asyncio
    async def test_delete_propagates(self, engine, legacy_store, cloud_store):
        legacy_store.put("pacientes", patient(4))
        cloud_store.put("pacientes", patient(4))
        await start_quiet(engine)

        del legacy_store.records["pacientes"]["4"]
        engine.queue.enqueue(legacy_change(patient(4, minute=6), kind=ChangeKind.DELETE))
        assert await engine.queue.wait_idle(timeout=2)

        assert cloud_store.row("pacientes", 4) is None

    @pytest.mark.asyncio
    async def test_parked_operation_raises_alert(self, engine, cloud_store):
        await start_quiet(engine)
        cloud_store.fail_ops = True

        engine.queue.enqueue(legacy_change(patient(5, minute=2), kind=ChangeKind.CREATE))
        assert await engine.queue.wait_idle(timeout=3)

        parked = engine.get_parked_operations()
        assert len(parked) == 1
        alerts = engine.get_alerts(severity=AlertSeverity.ERROR)
        assert any(a.alert_type == AlertType.SYNC and a.source == "sync_queue" for a in alerts)
        errors = event_types(engine, EventType.ERROR)
        assert [e.data["retrying"] for e in reversed(errors)] == [True, True, False]
        assert event_types(engine, EventType.ALERT_CREATED)

        cloud_store.fail_ops = False
        assert engine.requeue_parked(parked[0].id) is not None
        assert await engine.queue.wait_idle(timeout=2)
        assert cloud_store.row("pacientes", 5) is not None


class TestConflicts:
    """Tests for conflict handling end to end."""

    @pytest.mark.asyncio
    async def test_concurrent_phone_edit_last_write_wins(self, engine, legacy_store, cloud_store):
        legacy_store.put("pacientes", patient(1))
        cloud_store.put("pacientes", patient(1))
        await start_quiet(engine)

        legacy_store.put("pacientes", patient(1, minute=5, telefono="611"))
        cloud_store.put("pacientes", patient(1, minute=7, telefono="622"))
        engine.queue.enqueue(legacy_change(patient(1, minute=5, telefono="611")))
        assert await engine.queue.wait_idle(timeout=2)

        assert legacy_store.row("pacientes", 1)["telefono"] == "622"
        assert cloud_store.row("pacientes", 1)["telefono"] == "622"
        assert legacy_store.row("pacientes", 1)["updated_at"] == ts(7)
        assert len(event_types(engine, EventType.CONFLICT)) == 1
        history = engine.get_conflict_history()
        assert history[0].strategy_used == StrategyName.LAST_WRITE_WINS
        assert history[0].applied_at is not None
        assert engine.health.score == 99

    @pytest.mark.asyncio
    async def test_appointment_status_tie_goes_to_cloud(self, engine, legacy_store, cloud_store):
        legacy_store.put("citas", appointment(8))
        cloud_store.put("citas", appointment(8))
        await start_quiet(engine)

        legacy_store.put("citas", appointment(8, minute=5, estado="cancelada"))
        cloud_store.put("citas", appointment(8, minute=5, estado="confirmada"))
        engine.queue.enqueue(legacy_change(appointment(8, minute=5, estado="cancelada"), table="citas"))
        assert await engine.queue.wait_idle(timeout=2)

        assert legacy_store.row("citas", 8)["estado"] == "confirmada"
        assert cloud_store.row("citas", 8)["estado"] == "confirmada"

    @pytest.mark.asyncio
    async def test_low_confidence_waits_for_operator(self, engine, legacy_store, cloud_store):
        legacy_store.put("pacientes", patient(2))
        cloud_store.put("pacientes", patient(2))
        await start_quiet(engine)

        legacy_version = patient(2, minute=5, telefono="611", email="ana@gesden.es")
        legacy_store.put("pacientes", legacy_version)
        cloud_store.put("pacientes", patient(2, minute=7, telefono="622", email="ana@web.es"))
        engine.queue.enqueue(legacy_change(legacy_version))
        assert await engine.queue.wait_idle(timeout=2)

        pending = engine.get_pending_resolutions()
        assert len(pending) == 1
        assert pending[0].confidence == 80
        assert cloud_store.row("pacientes", 2)["telefono"] == "622"
        assert event_types(engine, EventType.RESOLUTION_PENDING)

        confirmed = await engine.confirm_resolution(pending[0].id, prefer=StoreSide.LEGACY)
        assert confirmed.applied_at is not None
        for store in (legacy_store, cloud_store):
            assert store.row("pacientes", 2)["telefono"] == "611"
            assert store.row("pacientes", 2)["email"] == "ana@gesden.es"
        assert engine.get_pending_resolutions() == []

    @pytest.mark.asyncio
    async def test_confirmation_runs_through_the_queue(self, engine, legacy_store, cloud_store):
        pending = await pending_phone_conflict(engine, legacy_store, cloud_store)

        await engine.confirm_resolution(pending.id, prefer=StoreSide.CLOUD)

        carried = [op.resolution.id for op in engine.queue.get_history() if op.resolution is not None]
        assert carried == [pending.id]
        assert legacy_store.row("pacientes", 2)["telefono"] == "622"
        assert engine.get_conflict_history()[-1].verified

    @pytest.mark.asyncio
    async def test_failed_confirmation_keeps_resolution_pending(self, engine, legacy_store, cloud_store):
        """Test that a store outage during confirmation neither loses nor half-applies the decision."""
        pending = await pending_phone_conflict(engine, legacy_store, cloud_store)
        legacy_store.fail_ops = True

        with pytest.raises(StoreUnavailable):
            await engine.confirm_resolution(pending.id, prefer=StoreSide.LEGACY)

        assert engine.get_pending_resolutions() == [pending]
        assert not pending.verified
        assert cloud_store.row("pacientes", 2)["telefono"] == "622"

        legacy_store.fail_ops = False
        assert await engine.queue.wait_idle(timeout=2)

        for store in (legacy_store, cloud_store):
            assert store.row("pacientes", 2)["telefono"] == "611"
        assert engine.get_pending_resolutions() == []
        assert pending.verified
        assert pending.applied_at is not None

    @pytest.mark.asyncio
    async def test_confirmation_rejected_when_store_changed_since_detection(
        self, engine, legacy_store, cloud_store
    ):
        pending = await pending_phone_conflict(engine, legacy_store, cloud_store)
        cloud_store.put("pacientes", patient(2, minute=9, telefono="699", email="ana@web.es"))

        with pytest.raises(ResolutionOutdated):
            await engine.confirm_resolution(pending.id, prefer=StoreSide.LEGACY)

        assert cloud_store.row("pacientes", 2)["telefono"] == "699"
        assert legacy_store.row("pacientes", 2)["telefono"] == "611"
        assert engine.get_pending_resolutions() == []
        assert engine.resolver.get_stats()["discarded"] == 1

    @pytest.mark.asyncio
    async def test_confirmation_requires_running_engine(self, engine):
        legacy = patient(2, minute=5, telefono="611", email="ana@gesden.es")
        cloud = patient(2, minute=7, telefono="622", email="ana@web.es")
        pending = engine.resolver.resolve(engine.detector.build_candidate("pacientes", 2, legacy, cloud))
        assert not pending.verified

        with pytest.raises(RuntimeError):
            await engine.confirm_resolution(pending.id, prefer=StoreSide.CLOUD)
        assert engine.get_pending_resolutions() == [pending]

    @pytest.mark.asyncio
    async def test_operator_pattern_applies_to_next_conflict(self, engine, legacy_store, cloud_store):
        legacy_store.put("pacientes", patient(1))
        cloud_store.put("pacientes", patient(1))
        await start_quiet(engine)

        engine.update_resolution_pattern("pacientes.*", "priority_source", {"priority": "legacy"})
        assert engine.get_resolution_patterns()["pacientes.*"]["origin"] == "operator"

        legacy_store.put("pacientes", patient(1, minute=5, telefono="611"))
        cloud_store.put("pacientes", patient(1, minute=7, telefono="622"))
        engine.queue.enqueue(legacy_change(patient(1, minute=5, telefono="611")))
        assert await engine.queue.wait_idle(timeout=2)

        assert cloud_store.row("pacientes", 1)["telefono"] == "611"

    def test_invalid_pattern_strategy(self, legacy_store, cloud_store, quiet_settings):
        orchestrator = SyncOrchestrator(legacy_store, cloud_store, quiet_settings)
        with pytest.raises(ValueError):
            orchestrator.update_resolution_pattern("pacientes.telefono", "coin_flip")


class TestControl:
    """Tests for the control operations."""

    @pytest.mark.asyncio
    async def test_force_sync_resets_only_that_table(self, engine, legacy_store):
        await start_quiet(engine)
        pacientes_before = engine.capture.cursor(StoreSide.LEGACY, "pacientes")

        legacy_store.put("pacientes", patient(9, minute=40))
        legacy_store.put("citas", appointment(9, minute=30))
        result = await engine.force_sync("citas")
        assert await engine.queue.wait_idle(timeout=2)

        assert result == {"citas": {"created": 1, "updated": 0, "deleted": 0}}
        assert engine.capture.cursor(StoreSide.LEGACY, "citas") == ts(30)
        assert engine.capture.cursor(StoreSide.LEGACY, "pacientes") == pacientes_before

    @pytest.mark.asyncio
    async def test_force_sync_validation(self, engine):
        with pytest.raises(RuntimeError):
            await engine.force_sync()
        await start_quiet(engine)
        with pytest.raises(ValueError):
            await engine.force_sync("facturas")

    @pytest.mark.asyncio
    async def test_stop_and_restart(self, engine):
        await start_quiet(engine)
        await engine.stop()

        assert engine.state == EngineState.STOPPED
        assert engine.stop_event.is_set()
        assert engine.health.status == HealthStatus.OFFLINE
        assert event_types(engine, EventType.STOPPED)

        await engine.restart()
        assert engine.state == EngineState.RUNNING
        assert not engine.stop_event.is_set()

    @pytest.mark.asyncio
    async def test_stats_shape(self, engine):
        await start_quiet(engine)
        stats = engine.get_stats()
        assert stats["state"] == "running"
        assert not stats["degraded"]
        for key in ("queue", "capture", "detector", "resolver", "health", "stores", "alerts", "events"):
            assert key in stats
        assert stats["capture"]["legacy"]["mode"] == "polling"
        assert stats["total_operations"] == 0
        assert stats["successful"] == 0
        assert stats["failed"] == 0
        assert stats["conflicts"] == 0
        assert stats["last_operation_at"] is None

        engine.queue.enqueue(legacy_change(patient(6, minute=2), kind=ChangeKind.CREATE))
        assert await engine.queue.wait_idle(timeout=2)

        stats = engine.get_stats()
        assert stats["total_operations"] == 1
        assert stats["successful"] == 1
        assert stats["last_operation_at"] is not None


class TestConsistency:
    """Tests for the record count consistency check."""

    @pytest.mark.asyncio
    async def test_missing_record_is_created(self, engine, legacy_store, cloud_store):
        await start_quiet(engine)
        legacy_store.put("pacientes", patient(11))

        result = await engine.verify_consistency()
        assert await engine.queue.wait_idle(timeout=2)

        assert result == {"pacientes": {"created": 1, "updated": 0, "deleted": 0}}
        assert cloud_store.row("pacientes", 11)["nombre"] == "Ana"
        stats = engine.get_stats()
        assert stats["consistency_checks"] == 1
        assert stats["inconsistencies"] == 1

    @pytest.mark.asyncio
    async def test_delete_on_polled_store_is_propagated(self, engine, legacy_store, cloud_store):
        legacy_store.put("pacientes", patient(4))
        cloud_store.put("pacientes", patient(4))
        await start_quiet(engine)

        del legacy_store.records["pacientes"]["4"]
        result = await engine.verify_consistency(["pacientes"])
        assert await engine.queue.wait_idle(timeout=2)

        assert result["pacientes"]["deleted"] == 1
        assert cloud_store.row("pacientes", 4) is None
        assert legacy_store.row("pacientes", 4) is None

    @pytest.mark.asyncio
    async def test_equal_counts_leave_stores_alone(self, engine, legacy_store, cloud_store):
        legacy_store.put("pacientes", patient(4))
        cloud_store.put("pacientes", patient(4))
        await start_quiet(engine)

        assert await engine.verify_consistency() == {}
        assert engine.get_stats()["inconsistencies"] == 0

    @pytest.mark.asyncio
    async def test_runs_periodically(self, legacy_store, cloud_store, quiet_settings):
        quiet_settings.orchestrator.consistency_interval = 0.02
        orchestrator = SyncOrchestrator(legacy_store, cloud_store, quiet_settings)
        await start_quiet(orchestrator)
        try:
            legacy_store.put("citas", appointment(12, minute=1))
            for _ in range(40):
                if cloud_store.row("citas", 12):
                    break
                await asyncio.sleep(0.02)
            assert cloud_store.row("citas", 12) is not None
            assert orchestrator.get_stats()["consistency_checks"] >= 1
        finally:
            await orchestrator.stop(grace_period=0)
