"""
clinisync Main Application Entry Point
"""
import sys

# Initialize logging first
from clinisync.system.logging_config import setup_logging, get_logger

from clinisync.config.settings import Settings, settings
from clinisync.sync.connectors import AdapterConfig, AdapterFactory
from clinisync.sync.connectors.database import CloudStoreAdapter, LegacyStoreAdapter  # noqa: F401 - registers adapter types
from clinisync.sync.models import StoreSide
from clinisync.sync.orchestrator import SyncOrchestrator

logger = get_logger(__name__, service_name="main")


def build_orchestrator(config: Settings) -> SyncOrchestrator:
    """Create both store adapters from settings and wire the engine around them."""
    capture = config.capture

    legacy = AdapterFactory.create("sqlserver", AdapterConfig(
        name="legacy",
        side=StoreSide.LEGACY,
        database_url=config.legacy.database_url,
        schema_name=config.legacy.schema,
        tables=capture.tables,
        id_column=capture.id_column,
        updated_at_column=capture.updated_at_column,
        created_at_column=capture.created_at_column,
        pool_size=config.legacy.pool_size,
        max_overflow=config.legacy.max_overflow,
        pool_timeout=config.legacy.pool_timeout,
        reconnect_attempts=config.legacy.reconnect_attempts,
        reconnect_base_delay=config.legacy.reconnect_base_delay,
        reconnect_multiplier=config.legacy.reconnect_multiplier,
    ))

    cloud = AdapterFactory.create("postgresql", AdapterConfig(
        name="cloud",
        side=StoreSide.CLOUD,
        database_url=config.cloud.database_url,
        schema_name=config.cloud.schema,
        tables=capture.tables,
        id_column=capture.id_column,
        updated_at_column=capture.updated_at_column,
        created_at_column=capture.created_at_column,
        pool_size=config.cloud.pool_size,
        max_overflow=config.cloud.max_overflow,
        pool_timeout=config.cloud.pool_timeout,
        reconnect_attempts=config.cloud.reconnect_attempts,
        reconnect_base_delay=config.cloud.reconnect_base_delay,
        reconnect_multiplier=config.cloud.reconnect_multiplier,
        extra={"notify_channel": config.cloud.notify_channel},
    ))

    return SyncOrchestrator(legacy, cloud, settings=config)


def main():
    """Main application entry point"""
    import uvicorn

    from clinisync.app import create_app

    setup_logging(settings.app)
    logger.info(f"Starting {settings.app.app_name} v{settings.app.app_version}")

    try:
        orchestrator = build_orchestrator(settings)
    except Exception as e:
        logger.error(f"Failed to build sync engine: {e}")
        return False

    app = create_app(orchestrator)
    uvicorn.run(app, host=settings.app.host, port=settings.app.port, log_level=settings.app.log_level.lower())
    return True


if __name__ == "__main__":
    success = main()
    if not success:
        sys.exit(1)
