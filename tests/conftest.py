"""
Shared fixtures for clinisync tests.

Provides an in-memory store adapter with switches for simulating outages,
plus engine settings tuned for fast tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from clinisync.config.settings import Settings
from clinisync.sync.connectors.base import (
    AdapterConfig,
    ConnectionStatus,
    StoreAdapter,
    StoreUnavailable,
)
from clinisync.sync.models import ChangeEvent, ChangeKind, StoreSide, to_utc

TABLES = ["pacientes", "citas", "doctores"]
BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def ts(minutes: float = 0) -> datetime:
    """A fixed instant plus ``minutes``."""
    return BASE_TIME + timedelta(minutes=minutes)


class FakeStoreAdapter(StoreAdapter):
    """In-memory store keyed by table and stringified id."""

    def __init__(self, side: StoreSide, tables: Optional[List[str]] = None, name: Optional[str] = None):
        super().__init__(AdapterConfig(
            name=name or f"fake-{side.value}",
            side=side,
            database_url="memory://",
            tables=list(tables or TABLES),
            reconnect_attempts=1,
            reconnect_base_delay=0,
        ))
        self.records: Dict[str, Dict[str, Dict[str, Any]]] = {t: {} for t in self.config.tables}
        self.fail_connect = False
        self.fail_ops = False
        self.connect_calls = 0
        self.writes: List[tuple] = []
        self.deletes: List[tuple] = []

    def put(self, table: str, record: Dict[str, Any]) -> None:
        """Seed a record without going through the adapter API."""
        self.records[table][str(record["id"])] = dict(record)

    def row(self, table: str, record_id: Any) -> Optional[Dict[str, Any]]:
        return self.records[table].get(str(record_id))

    def _check(self) -> None:
        if self.fail_ops:
            raise StoreUnavailable(f"{self.name} is down")

    async def connect(self) -> bool:
        self.connect_calls += 1
        if self.fail_connect:
            self._set_status(ConnectionStatus.ERROR)
            raise StoreUnavailable(f"{self.name} refused connection")
        self._set_status(ConnectionStatus.CONNECTED)
        return True

    async def disconnect(self) -> None:
        self._set_status(ConnectionStatus.DISCONNECTED)

    async def ping(self) -> float:
        if self.fail_connect or self.fail_ops or not self.is_connected:
            raise StoreUnavailable(f"{self.name} did not answer")
        return 1.5

    async def _get(self, table, record_id):
        self._check()
        record = self.records[table].get(str(record_id))
        return dict(record) if record is not None else None

    async def _write(self, table, record, exists):
        self._check()
        key = str(record["id"])
        self.records[table][key] = {**self.records[table].get(key, {}), **record}
        self.writes.append((table, dict(record)))

    async def _delete(self, table, record_id):
        self._check()
        self.deletes.append((table, record_id))
        return self.records[table].pop(str(record_id), None) is not None

    async def _count(self, table):
        self._check()
        return len(self.records[table])

    async def _fetch_all(self, table):
        self._check()
        return [dict(r) for _, r in sorted(self.records[table].items())]

    def _stamp(self, record):
        return to_utc(record.get("updated_at")) or to_utc(record.get("created_at"))

    async def _changes_since(self, table, cursor):
        self._check()
        rows = [r for r in self.records[table].values() if cursor is None or self._stamp(r) >= cursor]
        rows.sort(key=lambda r: (self._stamp(r), str(r["id"])))
        return [
            ChangeEvent(
                record_id=r["id"],
                table=table,
                kind=ChangeKind.UPDATE if r.get("created_at") != r.get("updated_at") else ChangeKind.CREATE,
                payload=dict(r),
                source_store=self.side,
                origin_timestamp=self._stamp(r),
            )
            for r in rows
        ]

    async def _latest_timestamp(self, table):
        self._check()
        stamps = [self._stamp(r) for r in self.records[table].values()]
        return max(stamps) if stamps else None


@pytest.fixture
def legacy_store():
    return FakeStoreAdapter(StoreSide.LEGACY)


@pytest.fixture
def cloud_store():
    return FakeStoreAdapter(StoreSide.CLOUD)


@pytest.fixture
def engine_settings():
    """Settings with short delays so lifecycle tests finish quickly."""
    config = Settings()
    config.capture.tables = list(TABLES)
    config.capture.prefer_native = False
    config.capture.legacy_poll_interval = 0.05
    config.capture.cloud_poll_interval = 0.05
    config.queue.workers = 2
    config.queue.max_attempts = 3
    config.queue.base_delay = 0.01
    config.queue.stop_grace_period = 1.0
    config.orchestrator.init_retries = 3
    config.orchestrator.init_retry_delay = 0.01
    config.orchestrator.reconcile_on_start = True
    config.orchestrator.consistency_interval = 3600
    config.health.check_interval = 3600
    config.health.alert_cleanup_interval = 3600
    config.resolver.learning_enabled = True
    return config
