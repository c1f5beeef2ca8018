"""
Database Store Adapters Module.

SQLAlchemy-backed adapters for SQL Server and PostgreSQL.
"""

from clinisync.sync.connectors.database.sqlalchemy_store import SQLAlchemyStoreAdapter
from clinisync.sync.connectors.database.sqlserver import LegacyStoreAdapter
from clinisync.sync.connectors.database.postgresql import CloudStoreAdapter

__all__ = [
    "SQLAlchemyStoreAdapter",
    "LegacyStoreAdapter",
    "CloudStoreAdapter",
]
