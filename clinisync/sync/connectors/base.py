"""
Base Store Adapter Module.

Abstract interface shared by the legacy and cloud store adapters, with
connection status tracking, statistics and reconnection with backoff.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from clinisync.sync.models import ChangeEvent, StoreSide, utc_now, values_equal
from clinisync.utils.retry import RetryConfig, RetryExecutor, RetryStrategy

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base error raised by store adapters."""
    pass


class StoreUnavailable(StoreError):
    """The store cannot be reached (network, pool exhaustion, server down)."""
    pass


class WriteRejected(StoreError):
    """The store refused a write (constraint or validation failure)."""
    pass


class ConnectionStatus(str, Enum):
    """Connection status enumeration."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    RECONNECTING = "reconnecting"


class AdapterConfig(BaseModel):
    """Configuration shared by store adapters."""
    name: str
    side: StoreSide
    database_url: str
    schema_name: Optional[str] = None
    tables: List[str] = Field(default_factory=list)

    # Bookkeeping columns
    id_column: str = "id"
    updated_at_column: str = "updated_at"
    created_at_column: str = "created_at"

    # Pool settings
    pool_size: int = Field(default=5, ge=1)
    max_overflow: int = Field(default=5, ge=0)
    pool_timeout: int = Field(default=30, ge=1)

    # Reconnection backoff
    reconnect_attempts: int = Field(default=3, ge=1)
    reconnect_base_delay: float = Field(default=5.0, ge=0)
    reconnect_multiplier: float = Field(default=2.0, ge=1)

    # Native capture
    native_poll_interval: float = Field(default=2.0, gt=0)

    extra: Dict[str, Any] = Field(default_factory=dict)


ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]


class AdapterSubscription:
    """Handle for a running push subscription on one table."""

    def __init__(self, table: str, task: asyncio.Task, on_close: Optional[Callable[[], None]] = None):
        self.table = table
        self._task = task
        self._on_close = on_close

    @property
    def active(self) -> bool:
        return not self._task.done()

    async def close(self) -> None:
        """Cancel the subscription and wait for it to wind down."""
        if self._on_close is not None:
            self._on_close()
        if not self._task.done():
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning(f"Subscription on {self.table} ended with error: {e}")


class StoreAdapter(ABC):
    """
    Abstract base class for store adapters.

    Public data operations run through ``_with_reconnect``: a
    ``StoreUnavailable`` from the underlying call triggers reconnection with
    exponential backoff, after which the call is tried once more. When the
    reconnection budget is spent the caller receives ``StoreUnavailable``.
    ``WriteRejected`` is never retried here.
    """

    def __init__(self, config: AdapterConfig):
        """
        Initialize adapter.

        Args:
            config: Adapter configuration
        """
        self.config = config
        self._status = ConnectionStatus.DISCONNECTED
        self._last_error: Optional[Exception] = None
        self._connected_at: Optional[datetime] = None
        self._closing = asyncio.Event()
        self._reconnect_lock: Optional[asyncio.Lock] = None
        self._backoff = RetryExecutor(RetryConfig(
            max_attempts=config.reconnect_attempts,
            base_delay=config.reconnect_base_delay,
            strategy=RetryStrategy.EXPONENTIAL,
            backoff_multiplier=config.reconnect_multiplier,
            retryable_exceptions=[StoreUnavailable],
            label=f"{config.name} reconnect",
        ))
        self._stats = {
            "total_reads": 0,
            "total_writes": 0,
            "skipped_writes": 0,
            "total_errors": 0,
            "reconnects": 0,
        }

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def side(self) -> StoreSide:
        return self.config.side

    @property
    def status(self) -> ConnectionStatus:
        """Get current connection status."""
        return self._status

    @property
    def is_connected(self) -> bool:
        """Check if adapter is connected."""
        return self._status == ConnectionStatus.CONNECTED

    @property
    def last_error(self) -> Optional[Exception]:
        """Get last error."""
        return self._last_error

    @property
    def stats(self) -> Dict[str, Any]:
        """Get adapter statistics."""
        return {
            **self._stats,
            "status": self._status.value,
            "connected_at": self._connected_at.isoformat() if self._connected_at else None,
            "uptime_seconds": (
                (utc_now() - self._connected_at).total_seconds()
                if self._connected_at and self.is_connected else 0
            ),
        }

    @abstractmethod
    async def connect(self) -> bool:
        """
        Establish connection to the store.

        Returns:
            True if connection successful

        Raises:
            StoreUnavailable: If the store cannot be reached
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Release the connection pool."""
        pass

    @abstractmethod
    async def ping(self) -> float:
        """
        One round trip to the store, without retry.

        Returns:
            Latency in milliseconds

        Raises:
            StoreUnavailable: If the round trip fails
        """
        pass

    @abstractmethod
    async def _get(self, table: str, record_id: Any) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def _write(self, table: str, record: Dict[str, Any], exists: bool) -> None:
        pass

    @abstractmethod
    async def _delete(self, table: str, record_id: Any) -> bool:
        pass

    @abstractmethod
    async def _count(self, table: str) -> int:
        pass

    @abstractmethod
    async def _fetch_all(self, table: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def _changes_since(self, table: str, cursor: Optional[datetime]) -> List[ChangeEvent]:
        pass

    @abstractmethod
    async def _latest_timestamp(self, table: str) -> Optional[datetime]:
        pass

    async def get(self, table: str, record_id: Any) -> Optional[Dict[str, Any]]:
        """Fetch one record by id, or None when it does not exist."""
        record = await self._with_reconnect("get", self._get, table, record_id)
        self._stats["total_reads"] += 1
        return record

    async def upsert(self, table: str, record: Dict[str, Any]) -> bool:
        """
        Insert or update a record keyed by its id.

        Idempotent: when the stored row already holds the same values no
        write is issued.

        Returns:
            True if a write was performed
        """
        return await self._with_reconnect("upsert", self._upsert_once, table, record)

    async def delete(self, table: str, record_id: Any) -> bool:
        """Delete a record. Returns False when it was already gone."""
        deleted = await self._with_reconnect("delete", self._delete, table, record_id)
        if deleted:
            self._stats["total_writes"] += 1
        return deleted

    async def count(self, table: str) -> int:
        """Number of records in a table."""
        return await self._with_reconnect("count", self._count, table)

    async def fetch_all(self, table: str) -> List[Dict[str, Any]]:
        """Every record of a table, ordered by id."""
        records = await self._with_reconnect("fetch_all", self._fetch_all, table)
        self._stats["total_reads"] += len(records)
        return records

    async def change_feed_since(self, table: str, cursor: Optional[datetime]) -> List[ChangeEvent]:
        """
        Records created or modified at or after the cursor, oldest first.

        Args:
            table: Table to scan
            cursor: Inclusive lower bound; None returns every record
        """
        return await self._with_reconnect("change_feed_since", self._changes_since, table, cursor)

    async def latest_timestamp(self, table: str) -> Optional[datetime]:
        """Newest modification timestamp in a table."""
        return await self._with_reconnect("latest_timestamp", self._latest_timestamp, table)

    async def supports_native_capture(self) -> bool:
        """Whether the store can push changes itself."""
        return False

    async def subscribe(self, table: str, handler: ChangeHandler) -> AdapterSubscription:
        """
        Push changes of a table to ``handler`` as they happen.

        Only valid when ``supports_native_capture`` returned True.
        """
        raise NotImplementedError(f"{self.name} has no native change capture")

    def record_id_of(self, record: Dict[str, Any]) -> Any:
        return record.get(self.config.id_column)

    async def reconnect(self) -> bool:
        """
        Re-establish the connection with exponential backoff.

        Raises:
            StoreUnavailable: If every attempt failed
        """
        if self._reconnect_lock is None:
            self._reconnect_lock = asyncio.Lock()

        async with self._reconnect_lock:
            if self.is_connected:
                return True

            attempts = self.config.reconnect_attempts
            for attempt in range(1, attempts + 1):
                delay = self._backoff.calculate_delay(attempt)
                self._set_status(ConnectionStatus.RECONNECTING)
                logger.warning(
                    f"{self.name}: reconnect attempt {attempt}/{attempts} in {delay:.1f}s"
                )
                if await self._wait_closing(delay):
                    break
                try:
                    self._stats["reconnects"] += 1
                    await self.connect()
                    logger.info(f"{self.name}: reconnected on attempt {attempt}")
                    return True
                except StoreUnavailable as e:
                    self._record_error(e)

            self._set_status(ConnectionStatus.ERROR)
            raise StoreUnavailable(f"{self.name} unreachable after {attempts} reconnection attempts")

    async def close(self) -> None:
        """Stop pending reconnection waits and disconnect."""
        self._closing.set()
        await self.disconnect()

    def reset_closing(self) -> None:
        self._closing = asyncio.Event()

    async def _upsert_once(self, table: str, record: Dict[str, Any]) -> bool:
        record_id = self.record_id_of(record)
        if record_id is None:
            raise WriteRejected(f"{self.name}: record for {table} has no {self.config.id_column}")

        existing = await self._get(table, record_id)
        if existing is not None and _same_values(existing, record):
            self._stats["skipped_writes"] += 1
            return False

        await self._write(table, record, exists=existing is not None)
        self._stats["total_writes"] += 1
        return True

    async def _with_reconnect(self, operation: str, func: Callable[..., Awaitable[Any]], *args) -> Any:
        if not self.is_connected:
            await self.reconnect()

        try:
            return await func(*args)
        except StoreUnavailable as e:
            self._record_error(e)
            logger.warning(f"{self.name}: {operation} failed, store unavailable: {e}")
            self._set_status(ConnectionStatus.RECONNECTING)

        await self.reconnect()
        try:
            return await func(*args)
        except StoreError as e:
            self._record_error(e)
            raise

    async def _wait_closing(self, delay: float) -> bool:
        """Sleep for ``delay`` unless the adapter is closed first."""
        if self._closing.is_set():
            return True
        try:
            await asyncio.wait_for(self._closing.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    def _set_status(self, status: ConnectionStatus) -> None:
        """Update connection status."""
        if status == self._status:
            return
        self._status = status
        if status == ConnectionStatus.CONNECTED:
            self._connected_at = utc_now()
        logger.debug(f"{self.name} status changed to: {status.value}")

    def _record_error(self, error: Exception) -> None:
        """Record an error."""
        self._last_error = error
        self._stats["total_errors"] += 1
        logger.error(f"{self.name} error: {error}")

    async def __aenter__(self):
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.disconnect()


def _same_values(existing: Dict[str, Any], record: Dict[str, Any]) -> bool:
    """True when every column of ``record`` known to ``existing`` already matches."""
    for column, value in record.items():
        if column not in existing:
            continue
        if not values_equal(existing[column], value):
            return False
    return True


class AdapterFactory:
    """Factory for creating store adapter instances."""

    _adapters: Dict[str, type] = {}

    @classmethod
    def register(cls, adapter_type: str, adapter_class: type) -> None:
        """Register an adapter type."""
        cls._adapters[adapter_type] = adapter_class
        logger.debug(f"Registered adapter type: {adapter_type}")

    @classmethod
    def create(
        cls,
        adapter_type: str,
        config: Union[AdapterConfig, Dict[str, Any]],
        **kwargs
    ) -> StoreAdapter:
        """
        Create an adapter instance.

        Args:
            adapter_type: Registered adapter type
            config: Adapter configuration

        Returns:
            Adapter instance

        Raises:
            ValueError: If adapter type not registered
        """
        if adapter_type not in cls._adapters:
            raise ValueError(f"Unknown adapter type: {adapter_type}")

        if isinstance(config, dict):
            config = AdapterConfig(**config)

        return cls._adapters[adapter_type](config, **kwargs)

    @classmethod
    def list_types(cls) -> List[str]:
        """List registered adapter types."""
        return list(cls._adapters.keys())
