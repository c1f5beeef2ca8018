"""
Store Adapters Module.

Adapters for the legacy on-premise store and the cloud store.
"""

from clinisync.sync.connectors.base import (
    AdapterConfig,
    AdapterFactory,
    AdapterSubscription,
    ConnectionStatus,
    StoreAdapter,
    StoreError,
    StoreUnavailable,
    WriteRejected,
)

__all__ = [
    "AdapterConfig",
    "AdapterFactory",
    "AdapterSubscription",
    "ConnectionStatus",
    "StoreAdapter",
    "StoreError",
    "StoreUnavailable",
    "WriteRejected",
]
