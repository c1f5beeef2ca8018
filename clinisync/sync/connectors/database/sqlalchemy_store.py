"""
SQLAlchemy Store Adapter.

Store adapter over a pooled SQLAlchemy engine. Works with any dialect that
SQLAlchemy can reflect; the SQL Server and PostgreSQL adapters add native
change capture on top of it.
"""

import asyncio
import functools
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import MetaData, Table, create_engine, func, inspect, select, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import (
    DataError,
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    ProgrammingError,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.pool import QueuePool

from clinisync.sync.connectors.base import (
    AdapterConfig,
    AdapterFactory,
    ConnectionStatus,
    StoreAdapter,
    StoreError,
    StoreUnavailable,
    WriteRejected,
)
from clinisync.sync.models import ChangeEvent, ChangeKind, to_utc, values_equal

logger = logging.getLogger(__name__)

UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)
REJECTED_ERRORS = (IntegrityError, DataError, ProgrammingError)


def map_sqlalchemy_error(error: Exception, store: str) -> StoreError:
    """Translate a SQLAlchemy exception into the adapter error taxonomy."""
    if isinstance(error, UNAVAILABLE_ERRORS):
        return StoreUnavailable(f"{store}: {error}")
    if isinstance(error, REJECTED_ERRORS):
        return WriteRejected(f"{store}: {error}")
    return StoreError(f"{store}: {error}")


class SQLAlchemyStoreAdapter(StoreAdapter):
    """
    Store adapter backed by SQLAlchemy Core.

    Features:
    - QueuePool with pre-ping, sized independently per store
    - Table reflection of the synchronized tables
    - Timestamp-cursor change feed (``coalesce(updated_at, created_at)``)
    - Blocking driver calls offloaded to the default executor
    """

    def __init__(self, config: AdapterConfig, engine: Optional[Engine] = None):
        super().__init__(config)
        self._engine = engine
        self._owns_engine = engine is None
        self._metadata = MetaData(schema=config.schema_name)
        self._tables: Dict[str, Table] = {}

    @property
    def engine(self) -> Optional[Engine]:
        return self._engine

    def _create_engine(self) -> Engine:
        url = make_url(self.config.database_url)
        if url.get_backend_name() == "sqlite":
            return create_engine(url, connect_args={"check_same_thread": False})

        return create_engine(
            url,
            poolclass=QueuePool,
            pool_size=self.config.pool_size,
            max_overflow=self.config.max_overflow,
            pool_timeout=self.config.pool_timeout,
            pool_pre_ping=True,
        )

    async def _run(self, fn: Callable, *args, **kwargs) -> Any:
        """Run a blocking engine call in the executor, mapping driver errors."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))
        except SQLAlchemyError as e:
            raise map_sqlalchemy_error(e, self.name) from e

    async def connect(self) -> bool:
        """Create the engine if needed, verify it and reflect the tables."""
        self._set_status(ConnectionStatus.CONNECTING)
        try:
            if self._engine is None:
                self._engine = self._create_engine()
            await self._run(self._connect_sync)
        except StoreError as e:
            self._record_error(e)
            self._set_status(ConnectionStatus.ERROR)
            raise StoreUnavailable(str(e)) from e

        self._set_status(ConnectionStatus.CONNECTED)
        logger.info(f"Connected to {self.name} ({len(self._tables)} tables reflected)")
        return True

    def _connect_sync(self) -> None:
        with self._engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            existing = set(inspect(conn).get_table_names(schema=self.config.schema_name))
            wanted = [t for t in self.config.tables if t in existing]
            missing = [t for t in self.config.tables if t not in existing]
            if missing:
                logger.warning(f"{self.name}: tables not found: {', '.join(missing)}")
            if wanted:
                self._metadata.reflect(bind=conn, only=wanted, views=False)

        for name in self.config.tables:
            key = f"{self.config.schema_name}.{name}" if self.config.schema_name else name
            table = self._metadata.tables.get(key)
            if table is not None:
                self._tables[name] = table

    async def disconnect(self) -> None:
        """Dispose of the connection pool."""
        if self._engine is not None and self._owns_engine:
            engine, self._engine = self._engine, None
            await asyncio.get_running_loop().run_in_executor(None, engine.dispose)
        self._set_status(ConnectionStatus.DISCONNECTED)
        logger.info(f"Disconnected from {self.name}")

    async def ping(self) -> float:
        """SELECT 1 round trip; latency in milliseconds."""
        if self._engine is None:
            raise StoreUnavailable(f"{self.name}: not connected")
        start = time.perf_counter()
        await self._run(self._ping_sync)
        return (time.perf_counter() - start) * 1000

    def _ping_sync(self) -> None:
        with self._engine.connect() as conn:
            conn.execute(text("SELECT 1")).scalar()

    def table(self, name: str) -> Table:
        """Reflected table object."""
        table = self._tables.get(name)
        if table is None:
            raise StoreError(f"{self.name}: table {name} is not synchronized or does not exist")
        return table

    def _timestamp_expr(self, table: Table):
        columns = [
            table.c[name]
            for name in (self.config.updated_at_column, self.config.created_at_column)
            if name in table.c
        ]
        if not columns:
            raise StoreError(f"{self.name}: {table.name} has no timestamp column")
        if len(columns) == 1:
            return columns[0]
        return func.coalesce(*columns)

    def _bind_timestamp(self, table: Table, value: datetime) -> datetime:
        """Strip the zone when the column stores naive UTC timestamps."""
        column = table.c.get(self.config.updated_at_column)
        if column is None:
            column = table.c.get(self.config.created_at_column)
        if column is not None and getattr(column.type, "timezone", False):
            return value
        return value.replace(tzinfo=None) if value.tzinfo else value

    def _row_to_dict(self, row) -> Dict[str, Any]:
        return dict(row._mapping)

    async def _get(self, table: str, record_id: Any) -> Optional[Dict[str, Any]]:
        return await self._run(self._get_sync, table, record_id)

    def _get_sync(self, table_name: str, record_id: Any) -> Optional[Dict[str, Any]]:
        table = self.table(table_name)
        stmt = select(table).where(table.c[self.config.id_column] == record_id)
        with self._engine.connect() as conn:
            row = conn.execute(stmt).first()
        return self._row_to_dict(row) if row is not None else None

    async def _write(self, table: str, record: Dict[str, Any], exists: bool) -> None:
        await self._run(self._write_sync, table, record, exists)

    def _write_sync(self, table_name: str, record: Dict[str, Any], exists: bool) -> None:
        table = self.table(table_name)
        values = {k: v for k, v in record.items() if k in table.c}
        id_column = self.config.id_column
        with self._engine.begin() as conn:
            if exists:
                changes = {k: v for k, v in values.items() if k != id_column}
                conn.execute(
                    table.update().where(table.c[id_column] == record[id_column]).values(**changes)
                )
            else:
                conn.execute(table.insert().values(**values))

    async def _delete(self, table: str, record_id: Any) -> bool:
        return await self._run(self._delete_sync, table, record_id)

    def _delete_sync(self, table_name: str, record_id: Any) -> bool:
        table = self.table(table_name)
        with self._engine.begin() as conn:
            result = conn.execute(table.delete().where(table.c[self.config.id_column] == record_id))
        return result.rowcount > 0

    async def _count(self, table: str) -> int:
        return await self._run(self._count_sync, table)

    def _count_sync(self, table_name: str) -> int:
        table = self.table(table_name)
        with self._engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(table)).scalar() or 0

    async def _fetch_all(self, table: str) -> List[Dict[str, Any]]:
        return await self._run(self._fetch_all_sync, table)

    def _fetch_all_sync(self, table_name: str) -> List[Dict[str, Any]]:
        table = self.table(table_name)
        stmt = select(table).order_by(table.c[self.config.id_column])
        with self._engine.connect() as conn:
            return [self._row_to_dict(row) for row in conn.execute(stmt)]

    async def _changes_since(self, table: str, cursor: Optional[datetime]) -> List[ChangeEvent]:
        return await self._run(self._changes_since_sync, table, cursor)

    def _changes_since_sync(self, table_name: str, cursor: Optional[datetime]) -> List[ChangeEvent]:
        table = self.table(table_name)
        ts = self._timestamp_expr(table)
        stmt = select(table)
        if cursor is not None:
            stmt = stmt.where(ts >= self._bind_timestamp(table, cursor))
        stmt = stmt.order_by(ts, table.c[self.config.id_column])

        with self._engine.connect() as conn:
            rows = [self._row_to_dict(row) for row in conn.execute(stmt)]

        return [self.event_from_row(table_name, row) for row in rows]

    def event_from_row(self, table: str, row: Dict[str, Any], kind: Optional[ChangeKind] = None) -> ChangeEvent:
        """Build a change event from a polled row, keeping its own timestamps."""
        updated = row.get(self.config.updated_at_column)
        created = row.get(self.config.created_at_column)
        if kind is None:
            if updated is None or (created is not None and values_equal(created, updated)):
                kind = ChangeKind.CREATE
            else:
                kind = ChangeKind.UPDATE
        return ChangeEvent(
            record_id=row.get(self.config.id_column),
            table=table,
            kind=kind,
            payload=row,
            source_store=self.side,
            origin_timestamp=to_utc(updated if updated is not None else created),
        )

    async def _latest_timestamp(self, table: str) -> Optional[datetime]:
        return await self._run(self._latest_timestamp_sync, table)

    def _latest_timestamp_sync(self, table_name: str) -> Optional[datetime]:
        table = self.table(table_name)
        with self._engine.connect() as conn:
            value = conn.execute(select(func.max(self._timestamp_expr(table)))).scalar()
        return to_utc(value)


# Register adapter
AdapterFactory.register("sqlalchemy", SQLAlchemyStoreAdapter)
