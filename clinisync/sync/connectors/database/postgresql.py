"""
PostgreSQL Store Adapter.

Adapter for the cloud PostgreSQL database behind the clinic web
application, with push capture through LISTEN/NOTIFY.
"""

import asyncio
import json
import logging
import select as io_select
from typing import Dict, List, Optional

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

NOTIFY_FUNCTION = "clinisync_notify_change"

NOTIFY_OPERATION_KINDS = {
    "INSERT": ChangeKind.CREATE,
    "UPDATE": ChangeKind.UPDATE,
    "DELETE": ChangeKind.DELETE,
}


class CloudStoreAdapter(SQLAlchemyStoreAdapter):
    """
    Cloud PostgreSQL adapter.

    Native capture relies on a row trigger calling ``clinisync_notify_change``,
    which sends ``{"table": ..., "op": ..., "record": {...}}`` on the
    configured channel. One listener connection serves every subscribed table.
    """

    def __init__(self, config: AdapterConfig, engine=None):
        if config.side != StoreSide.CLOUD:
            raise ValueError("CloudStoreAdapter must be configured for the cloud side")
        super().__init__(config, engine=engine)
        self._handlers: Dict[str, ChangeHandler] = {}
        self._listener_task: Optional[asyncio.Task] = None
        self._listener_connection = None

    @property
    def channel(self) -> str:
        return self.config.extra.get("notify_channel", "clinisync_changes")

    async def supports_native_capture(self) -> bool:
        """True when the notify trigger function is installed."""
        try:
            installed = await self._run(self._probe_notify_sync)
        except StoreError as e:
            logger.info(f"{self.name}: notify probe failed, using polling: {e}")
            return False
        if not installed:
            logger.info(f"{self.name}: {NOTIFY_FUNCTION}() not installed")
        return bool(installed)

    def _probe_notify_sync(self) -> bool:
        with self._engine.connect() as conn:
            return conn.execute(
                text("SELECT EXISTS (SELECT 1 FROM pg_proc WHERE proname = :name)"),
                {"name": NOTIFY_FUNCTION},
            ).scalar()

    async def subscribe(self, table: str, handler: ChangeHandler) -> AdapterSubscription:
        """Route notifications for ``table`` to ``handler``."""
        self.table(table)
        self._handlers[table] = handler
        if self._listener_task is None or self._listener_task.done():
            await self._run(self._open_listener_sync)
            self._listener_task = asyncio.create_task(self._listen(), name=f"notify-{self.name}")
            logger.info(f"{self.name}: listening on channel {self.channel}")

        waiter = asyncio.create_task(self._wait_unsubscribed(table), name=f"notify-{self.name}-{table}")
        return AdapterSubscription(table, waiter, on_close=lambda: self._unsubscribe(table))

    async def _wait_unsubscribed(self, table: str) -> None:
        while table in self._handlers and self._listener_task and not self._listener_task.done():
            await asyncio.sleep(self.config.native_poll_interval)

    def _unsubscribe(self, table: str) -> None:
        self._handlers.pop(table, None)
        if not self._handlers and self._listener_task is not None:
            self._listener_task.cancel()

    def _open_listener_sync(self) -> None:
        raw = self._engine.raw_connection()
        connection = raw.driver_connection
        connection.autocommit = True
        with connection.cursor() as cursor:
            cursor.execute(f"LISTEN {self.channel}")
        self._listener_connection = raw

    def _drain_notifications_sync(self, timeout: float) -> List[str]:
        connection = self._listener_connection.driver_connection
        ready, _, _ = io_select.select([connection], [], [], timeout)
        if not ready:
            return []
        connection.poll()
        payloads = [notify.payload for notify in connection.notifies]
        connection.notifies.clear()
        return payloads

    def _drop_listener_sync(self) -> None:
        try:
            self._close_listener_sync()
        except Exception as e:
            logger.warning(f"{self.name}: closing broken listener connection failed: {e}")
            self._listener_connection = None

    def _close_listener_sync(self) -> None:
        if self._listener_connection is not None:
            self._listener_connection.close()
            self._listener_connection = None

    async def _listen(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            while self._handlers:
                try:
                    if self._listener_connection is None:
                        await self._run(self._open_listener_sync)
                        logger.info(f"{self.name}: listener reconnected on channel {self.channel}")
                    payloads = await self._run(
                        self._drain_notifications_sync, self.config.native_poll_interval
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    # driver and socket errors from the raw connection are not mapped by _run
                    self._record_error(e)
                    await loop.run_in_executor(None, self._drop_listener_sync)
                    await asyncio.sleep(self.config.native_poll_interval)
                    continue

                for payload in payloads:
                    await self._dispatch(payload)
        finally:
            await loop.run_in_executor(None, self._close_listener_sync)

    async def _dispatch(self, payload: str) -> None:
        try:
            message = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning(f"{self.name}: ignoring malformed notification: {payload[:200]}")
            return

        table = message.get("table")
        handler = self._handlers.get(table)
        record = message.get("record") or {}
        if handler is None or not record:
            return

        kind = NOTIFY_OPERATION_KINDS.get(str(message.get("op", "")).upper(), ChangeKind.UPDATE)
        try:
            if kind != ChangeKind.DELETE:
                # JSON loses column types; read the typed row back
                record = await self._get(table, record.get(self.config.id_column))
                if record is None:
                    return
            await handler(self.event_from_row(table, record, kind=kind))
        except Exception as e:
            logger.error(f"{self.name}: notification handler for {table} failed: {e}")

    async def disconnect(self) -> None:
        """Stop the listener and dispose of the pool."""
        self._handlers.clear()
        if self._listener_task is not None:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None
        await super().disconnect()

    async def install_notify_triggers(self) -> None:
        """Install the notify function and one trigger per synchronized table."""
        await self._run(self._install_triggers_sync)

    def _install_triggers_sync(self) -> None:
        with self._engine.begin() as conn:
            for table in self.config.tables:
                for statement in notify_trigger_sql(table, self.channel):
                    conn.execute(text(statement))
        logger.info(f"{self.name}: notify triggers installed on {len(self.config.tables)} tables")


def notify_trigger_sql(table: str, channel: str = "clinisync_changes") -> List[str]:
    """DDL installing the notify trigger for one table."""
    return [
        f"""
        CREATE OR REPLACE FUNCTION {NOTIFY_FUNCTION}() RETURNS trigger AS $$
        BEGIN
            PERFORM pg_notify(
                TG_ARGV[0],
                json_build_object(
                    'table', TG_TABLE_NAME,
                    'op', TG_OP,
                    'record', CASE WHEN TG_OP = 'DELETE' THEN row_to_json(OLD) ELSE row_to_json(NEW) END
                )::text
            );
            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql
        """,
        f"DROP TRIGGER IF EXISTS {table}_clinisync_notify ON {table}",
        f"""
        CREATE TRIGGER {table}_clinisync_notify
        AFTER INSERT OR UPDATE OR DELETE ON {table}
        FOR EACH ROW EXECUTE FUNCTION {NOTIFY_FUNCTION}('{channel}')
        """,
    ]


# Register adapter
AdapterFactory.register("postgresql", CloudStoreAdapter)
