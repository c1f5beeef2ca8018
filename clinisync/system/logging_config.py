"""
Centralized Logging Configuration for clinisync.

Console output plus rotating application, error and sync audit logs.
"""

import logging
import logging.handlers
import os
import sys
from datetime import datetime
from typing import Any, Dict, Optional

from clinisync.config.settings import AppSettings

AUDIT_LOGGER = "clinisync.audit"

# Record attributes the file formats reference, with their fallback
SYNC_CONTEXT_DEFAULTS = {
    "service_name": "clinisync",
    "component": "-",
    "table": "-",
    "record_id": "-",
    "action": "-",
    "target": "-",
    "details": "-",
}

APP_FORMAT = "%(timestamp)s - %(name)s - %(levelname)s - %(component)s - %(message)s"
ERROR_FORMAT = "%(timestamp)s - %(name)s - %(levelname)s - %(component)s - %(table)s/%(record_id)s - %(message)s"
AUDIT_FORMAT = "%(timestamp)s - %(action)s - %(table)s/%(record_id)s -> %(target)s - %(details)s"


class StructuredFormatter(logging.Formatter):
    """Formatter that fills in the sync context fields when a record lacks them."""

    def format(self, record):
        for name, default in SYNC_CONTEXT_DEFAULTS.items():
            if not hasattr(record, name):
                setattr(record, name, default)
        record.timestamp = datetime.fromtimestamp(record.created).isoformat()
        return super().format(record)


def _rotating_file(log_dir: str, filename: str, level: int, fmt: str, max_mb: int, backups: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        filename=os.path.join(log_dir, filename),
        maxBytes=max_mb * 1024 * 1024,
        backupCount=backups,
    )
    handler.setLevel(level)
    handler.setFormatter(StructuredFormatter(fmt))
    return handler


def setup_logging(app_settings: Optional[AppSettings] = None) -> None:
    """
    Configure the root logger for the engine process.

    Console at INFO (DEBUG with source locations when ``debug`` is set),
    ``app.log`` for INFO and above, ``errors.log`` for errors with the
    table and record involved, and ``sync_audit.log`` fed only by
    ``log_sync_event``.
    """
    app_settings = app_settings or AppSettings()
    os.makedirs(app_settings.log_dir, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, app_settings.log_level.upper(), logging.INFO))
    root_logger.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    if app_settings.debug:
        console.setLevel(logging.DEBUG)
        console.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
        ))
    else:
        console.setLevel(logging.INFO)
        console.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    root_logger.addHandler(console)

    root_logger.addHandler(_rotating_file(app_settings.log_dir, "app.log", logging.INFO, APP_FORMAT, 10, 5))
    root_logger.addHandler(_rotating_file(app_settings.log_dir, "errors.log", logging.ERROR, ERROR_FORMAT, 10, 10))

    audit_logger = logging.getLogger(AUDIT_LOGGER)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False
    audit_logger.handlers.clear()
    audit_logger.addHandler(_rotating_file(app_settings.log_dir, "sync_audit.log", logging.INFO, AUDIT_FORMAT, 50, 20))

    for noisy in ("sqlalchemy.engine", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.info(f"Logging initialized (level {app_settings.log_level}, directory {app_settings.log_dir})")


class LoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that merges bound sync context into every record."""

    def __init__(self, logger, extra=None):
        super().__init__(logger, extra or {})

    def bind(self, **context) -> "LoggerAdapter":
        """A new adapter carrying this context plus ``context``."""
        return LoggerAdapter(self.logger, {**self.extra, **context})

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(name: str, **context) -> LoggerAdapter:
    """Get a logger with optional context such as ``component`` or ``table``."""
    return LoggerAdapter(logging.getLogger(name), context)


def log_sync_event(
    action: str,
    table: str,
    record_id: Any,
    target: str,
    details: Optional[Dict[str, Any]] = None
) -> None:
    """Write one entry to the sync audit log."""
    logging.getLogger(AUDIT_LOGGER).info(
        f"{action} {table}/{record_id} -> {target}",
        extra={
            "action": action,
            "table": table,
            "record_id": record_id,
            "target": target,
            "details": details or {},
        }
    )
