"""
Monitoring Module.

Alert tracking for the sync engine.
"""

from clinisync.monitoring.alert_manager import (
    Alert,
    AlertManager,
    AlertSeverity,
    AlertStatus,
    AlertType,
)

__all__ = [
    "Alert",
    "AlertManager",
    "AlertSeverity",
    "AlertStatus",
    "AlertType",
]
