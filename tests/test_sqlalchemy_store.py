"""
Unit tests for the SQLAlchemy-backed store adapters.

Run against an in-memory SQLite engine shared across threads.
"""

from datetime import datetime

import pytest
from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, create_engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.pool import StaticPool

from clinisync.sync.connectors.base import (
    AdapterConfig,
    AdapterFactory,
    StoreError,
    StoreUnavailable,
    WriteRejected,
)
from clinisync.sync.connectors.database import (
    CloudStoreAdapter,
    LegacyStoreAdapter,
    SQLAlchemyStoreAdapter,
)
from clinisync.sync.connectors.database.postgresql import notify_trigger_sql
from clinisync.sync.connectors.database.sqlalchemy_store import map_sqlalchemy_error
from clinisync.sync.models import ChangeKind, StoreSide


def make_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    metadata = MetaData()
    Table(
        "pacientes", metadata,
        Column("id", Integer, primary_key=True),
        Column("nombre", String(80), nullable=False),
        Column("telefono", String(20)),
        Column("created_at", DateTime),
        Column("updated_at", DateTime),
    )
    metadata.create_all(engine)
    return engine


def make_config(side=StoreSide.LEGACY, tables=("pacientes",)):
    return AdapterConfig(
        name=f"sqlite-{side.value}",
        side=side,
        database_url="sqlite://",
        tables=list(tables),
        reconnect_attempts=1,
        reconnect_base_delay=0,
    )


@pytest.fixture
async def adapter():
    store = SQLAlchemyStoreAdapter(make_config(), engine=make_engine())
    await store.connect()
    yield store
    await store.disconnect()


def patient(record_id, nombre, minute, created_minute=None, telefono=None):
    created = datetime(2026, 3, 1, 9, created_minute if created_minute is not None else minute)
    return {
        "id": record_id,
        "nombre": nombre,
        "telefono": telefono,
        "created_at": created,
        "updated_at": datetime(2026, 3, 1, 9, minute),
    }


class TestConnection:
    """Tests for connecting and probing."""

    @pytest.mark.asyncio
    async def test_connect_reflects_tables(self, adapter):
        assert adapter.is_connected
        assert adapter.table("pacientes").name == "pacientes"

    @pytest.mark.asyncio
    async def test_missing_table_is_not_synchronized(self):
        store = SQLAlchemyStoreAdapter(make_config(tables=("pacientes", "facturas")), engine=make_engine())
        await store.connect()
        with pytest.raises(StoreError):
            store.table("facturas")

    @pytest.mark.asyncio
    async def test_ping_reports_latency(self, adapter):
        latency = await adapter.ping()
        assert latency >= 0

    @pytest.mark.asyncio
    async def test_disconnect_keeps_injected_engine(self, adapter):
        await adapter.disconnect()
        assert adapter.engine is not None
        assert not adapter.is_connected


class TestRecordOperations:
    """Tests for get/upsert/delete."""

    @pytest.mark.asyncio
    async def test_upsert_inserts_then_updates(self, adapter):
        assert await adapter.upsert("pacientes", patient(1, "Ana", 0))
        assert (await adapter.get("pacientes", 1))["nombre"] == "Ana"

        assert await adapter.upsert("pacientes", patient(1, "Ana María", 5, created_minute=0))
        row = await adapter.get("pacientes", 1)
        assert row["nombre"] == "Ana María"
        assert await adapter.count("pacientes") == 1

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, adapter):
        record = patient(2, "Luis", 1)
        assert await adapter.upsert("pacientes", record)
        assert not await adapter.upsert("pacientes", record)
        assert adapter.stats["skipped_writes"] == 1

    @pytest.mark.asyncio
    async def test_upsert_ignores_unknown_columns(self, adapter):
        record = {**patient(3, "Eva", 2), "columna_nube": "x"}
        await adapter.upsert("pacientes", record)
        assert "columna_nube" not in await adapter.get("pacientes", 3)

    @pytest.mark.asyncio
    async def test_constraint_violation_is_rejected(self, adapter):
        with pytest.raises(WriteRejected):
            await adapter.upsert("pacientes", {"id": 4, "nombre": None})

    @pytest.mark.asyncio
    async def test_record_without_id_rejected(self, adapter):
        with pytest.raises(WriteRejected):
            await adapter.upsert("pacientes", {"nombre": "Sin id"})

    @pytest.mark.asyncio
    async def test_delete(self, adapter):
        await adapter.upsert("pacientes", patient(5, "Rosa", 3))
        assert await adapter.delete("pacientes", 5)
        assert not await adapter.delete("pacientes", 5)
        assert await adapter.get("pacientes", 5) is None

    @pytest.mark.asyncio
    async def test_fetch_all_ordered_by_id(self, adapter):
        for record_id in (3, 1, 2):
            await adapter.upsert("pacientes", patient(record_id, f"P{record_id}", record_id))
        rows = await adapter.fetch_all("pacientes")
        assert [r["id"] for r in rows] == [1, 2, 3]


class TestChangeFeed:
    """Tests for the timestamp cursor feed."""

    @pytest.mark.asyncio
    async def test_changes_since_cursor(self, adapter):
        await adapter.upsert("pacientes", patient(1, "Ana", 0))
        await adapter.upsert("pacientes", patient(2, "Luis", 10, created_minute=5))

        everything = await adapter.change_feed_since("pacientes", None)
        assert [e.record_id for e in everything] == [1, 2]
        assert everything[0].kind == ChangeKind.CREATE
        assert everything[1].kind == ChangeKind.UPDATE
        assert everything[0].source_store == StoreSide.LEGACY

        from_first = await adapter.change_feed_since("pacientes", everything[0].origin_timestamp)
        assert [e.record_id for e in from_first] == [1, 2]

        from_second = await adapter.change_feed_since("pacientes", everything[1].origin_timestamp)
        assert [e.record_id for e in from_second] == [2]

    @pytest.mark.asyncio
    async def test_latest_timestamp(self, adapter):
        assert await adapter.latest_timestamp("pacientes") is None
        await adapter.upsert("pacientes", patient(1, "Ana", 7))
        latest = await adapter.latest_timestamp("pacientes")
        assert latest.minute == 7
        assert latest.tzinfo is not None


class TestErrorMapping:
    """Tests for the driver error taxonomy."""

    def test_operational_is_unavailable(self):
        error = OperationalError("SELECT 1", {}, Exception("connection refused"))
        assert isinstance(map_sqlalchemy_error(error, "legacy"), StoreUnavailable)

    def test_integrity_is_rejected(self):
        error = IntegrityError("INSERT", {}, Exception("duplicate key"))
        assert isinstance(map_sqlalchemy_error(error, "cloud"), WriteRejected)

    def test_other_is_store_error(self):
        mapped = map_sqlalchemy_error(RuntimeError("odd"), "cloud")
        assert type(mapped) is StoreError


class TestNativeAdapters:
    """Tests for the SQL Server and PostgreSQL adapters."""

    def test_sides_enforced(self):
        with pytest.raises(ValueError):
            LegacyStoreAdapter(make_config(side=StoreSide.CLOUD))
        with pytest.raises(ValueError):
            CloudStoreAdapter(make_config(side=StoreSide.LEGACY))

    @pytest.mark.asyncio
    async def test_native_capture_falls_back_without_catalogs(self):
        legacy = LegacyStoreAdapter(make_config(StoreSide.LEGACY), engine=make_engine())
        cloud = CloudStoreAdapter(make_config(StoreSide.CLOUD), engine=make_engine())
        await legacy.connect()
        await cloud.connect()
        assert not await legacy.supports_native_capture()
        assert not await cloud.supports_native_capture()

    def test_cdc_row_to_event(self):
        legacy = LegacyStoreAdapter(make_config(StoreSide.LEGACY))
        row = {
            "__$start_lsn": b"\x00\x01",
            "__$operation": 1,
            "id": 9,
            "nombre": "Baja",
            "created_at": datetime(2026, 3, 1, 9, 0),
            "updated_at": datetime(2026, 3, 1, 9, 30),
        }
        event = legacy._event_from_cdc_row("pacientes", row)
        assert event.kind == ChangeKind.DELETE
        assert event.record_id == 9
        assert "__$operation" not in event.payload
        assert event.origin_timestamp.minute == 30

    def test_cloud_channel_from_config(self):
        config = make_config(StoreSide.CLOUD)
        config.extra["notify_channel"] = "clinica_cambios"
        assert CloudStoreAdapter(config).channel == "clinica_cambios"

    def test_notify_trigger_sql(self):
        statements = notify_trigger_sql("citas", "clinica_cambios")
        assert len(statements) == 3
        assert "pg_notify" in statements[0]
        assert "ON citas" in statements[2]
        assert "'clinica_cambios'" in statements[2]

    def test_factory_registrations(self):
        assert {"sqlalchemy", "sqlserver", "postgresql"} <= set(AdapterFactory.list_types())
        adapter = AdapterFactory.create("sqlserver", make_config().model_dump())
        assert isinstance(adapter, LegacyStoreAdapter)
        with pytest.raises(ValueError):
            AdapterFactory.create("oracle", make_config())
