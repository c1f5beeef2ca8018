"""
SQL Server Store Adapter.

Adapter for the on-premise practice-management database. Uses SQL Server
Change Data Capture when the database and tables are enabled for it.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from sqlalchemy import text

from clinisync.sync.connectors.base import (
    AdapterConfig,
    AdapterFactory,
    AdapterSubscription,
    ChangeHandler,
    StoreError,
)
from clinisync.sync.connectors.database.sqlalchemy_store import SQLAlchemyStoreAdapter
from clinisync.sync.models import ChangeKind, StoreSide

logger = logging.getLogger(__name__)

# __$operation values returned by cdc.fn_cdc_get_all_changes_*
CDC_OPERATION_KINDS = {
    1: ChangeKind.DELETE,
    2: ChangeKind.CREATE,
    4: ChangeKind.UPDATE,
}


class LegacyStoreAdapter(SQLAlchemyStoreAdapter):
    """
    Legacy SQL Server adapter.

    Features:
    - Native capture through ``cdc.fn_cdc_get_all_changes_<schema>_<table>``
    - Per-table LSN positions kept by each subscription
    - Deletes are captured natively (polling cannot see them)
    """

    def __init__(self, config: AdapterConfig, engine=None):
        if config.side != StoreSide.LEGACY:
            raise ValueError("LegacyStoreAdapter must be configured for the legacy side")
        super().__init__(config, engine=engine)
        self._capture_instances: Dict[str, str] = {}

    @property
    def cdc_schema(self) -> str:
        return self.config.schema_name or "dbo"

    def capture_instance(self, table: str) -> str:
        return self._capture_instances.get(table, f"{self.cdc_schema}_{table}")

    async def supports_native_capture(self) -> bool:
        """True when CDC is enabled on the database and on every synchronized table."""
        try:
            enabled, instances = await self._run(self._probe_cdc_sync)
        except StoreError as e:
            logger.info(f"{self.name}: CDC probe failed, using polling: {e}")
            return False

        if not enabled:
            logger.info(f"{self.name}: CDC is not enabled on the database")
            return False

        self._capture_instances = instances
        missing = [t for t in self.config.tables if t not in instances]
        if missing:
            logger.info(f"{self.name}: CDC not enabled for tables: {', '.join(missing)}")
            return False
        return True

    def _probe_cdc_sync(self):
        with self._engine.connect() as conn:
            enabled = conn.execute(
                text("SELECT is_cdc_enabled FROM sys.databases WHERE name = DB_NAME()")
            ).scalar()
            if not enabled:
                return False, {}
            rows = conn.execute(text(
                "SELECT OBJECT_NAME(source_object_id) AS source_table, capture_instance "
                "FROM cdc.change_tables"
            )).all()
        return True, {row.source_table: row.capture_instance for row in rows}

    async def subscribe(self, table: str, handler: ChangeHandler) -> AdapterSubscription:
        """Follow the CDC change table of ``table`` from the current max LSN."""
        self.table(table)
        start_lsn = await self._run(self._max_lsn_sync)
        task = asyncio.create_task(
            self._follow_changes(table, start_lsn, handler),
            name=f"cdc-{self.name}-{table}",
        )
        logger.info(f"{self.name}: following CDC changes for {table}")
        return AdapterSubscription(table, task)

    async def _follow_changes(self, table: str, from_lsn: Optional[bytes], handler: ChangeHandler) -> None:
        last_lsn = from_lsn
        while True:
            try:
                rows, last_lsn = await self._run(self._read_changes_sync, table, last_lsn)
                for row in rows:
                    await handler(self._event_from_cdc_row(table, row))
            except asyncio.CancelledError:
                raise
            except StoreError as e:
                self._record_error(e)
                logger.warning(f"{self.name}: CDC read for {table} failed: {e}")
            except Exception as e:
                logger.error(f"{self.name}: CDC handler for {table} failed: {e}")
            await asyncio.sleep(self.config.native_poll_interval)

    def _max_lsn_sync(self) -> Optional[bytes]:
        with self._engine.connect() as conn:
            return conn.execute(text("SELECT sys.fn_cdc_get_max_lsn()")).scalar()

    def _read_changes_sync(self, table: str, last_lsn: Optional[bytes]):
        instance = self.capture_instance(table)
        with self._engine.connect() as conn:
            to_lsn = conn.execute(text("SELECT sys.fn_cdc_get_max_lsn()")).scalar()
            if to_lsn is None or (last_lsn is not None and to_lsn <= last_lsn):
                return [], last_lsn

            if last_lsn is None:
                from_lsn = conn.execute(
                    text("SELECT sys.fn_cdc_get_min_lsn(:instance)"),
                    {"instance": instance},
                ).scalar()
            else:
                from_lsn = conn.execute(
                    text("SELECT sys.fn_cdc_increment_lsn(:lsn)"),
                    {"lsn": last_lsn},
                ).scalar()

            rows = conn.execute(
                text(
                    f"SELECT * FROM cdc.fn_cdc_get_all_changes_{instance}(:from_lsn, :to_lsn, N'all') "
                    "ORDER BY __$start_lsn, __$seqval"
                ),
                {"from_lsn": from_lsn, "to_lsn": to_lsn},
            ).all()

        return [dict(row._mapping) for row in rows], to_lsn

    def _event_from_cdc_row(self, table: str, row: Dict[str, Any]):
        kind = CDC_OPERATION_KINDS.get(row.get("__$operation"), ChangeKind.UPDATE)
        payload = {k: v for k, v in row.items() if not k.startswith("__$")}
        return self.event_from_row(table, payload, kind=kind)


# Register adapter
AdapterFactory.register("sqlserver", LegacyStoreAdapter)
