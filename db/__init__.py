"""
Database package for the dispatch service.
Provides SQLAlchemy engine, session management, table reflection, repository
functions and the SQL-backed repository implementations.
"""

from db.engine import dispose_engine, get_engine, is_database_configured
from db.session import SessionLocal, get_db, transaction
from db.stores import (
    SqlCatalogRepository,
    SqlChainRepository,
    SqlCredentialStore,
    SqlGenerationLogRepository,
    SqlLedgerRepository,
    SqlOwnProviderRepository,
)
from db.tables import TABLE_NAMES, get_table, metadata, preload_tables

__all__ = [
    "SessionLocal",
    "SqlCatalogRepository",
    "SqlChainRepository",
    "SqlCredentialStore",
    "SqlGenerationLogRepository",
    "SqlLedgerRepository",
    "SqlOwnProviderRepository",
    "TABLE_NAMES",
    "dispose_engine",
    "get_db",
    "get_engine",
    "get_table",
    "is_database_configured",
    "metadata",
    "preload_tables",
    "transaction",
]
