"""
SQLAlchemy table reflection for the dispatch schema.

CRITICAL: This module does NOT create tables. Apply db/schema.sql first.
It only reflects the schema into SQLAlchemy Table objects for querying.
"""

import os

from sqlalchemy import MetaData, Table

from db.engine import get_engine
from utils.logger import get_logger

logger = get_logger(__name__)


# Schema name from environment (default: public)
DB_SCHEMA = os.getenv("DB_SCHEMA", "public")

# Metadata container for reflected tables
metadata = MetaData()

# Table cache for lazy loading
_tables_cache: dict[str, Table] = {}

TABLE_NAMES = [
    "ai_models",
    "ai_fallback_configs",
    "credit_balances",
    "credit_transactions",
    "platform_api_keys",
    "user_api_keys",
    "ai_generation_logs",
]


def reflect_table(table_name: str) -> Table:
    """
    Reflect a single table from the database.

    Raises:
        sqlalchemy.exc.NoSuchTableError: If table doesn't exist in database
    """
    logger.debug(f"Reflecting table: {table_name} from schema: {DB_SCHEMA}")
    return Table(
        table_name,
        metadata,
        autoload_with=get_engine(),
        schema=DB_SCHEMA,
    )


def get_table(name: str) -> Table:
    """
    Get a reflected table (lazy loading with caching).

    Raises:
        ValueError: If table name is not recognized
        Exception: If table doesn't exist in database
    """
    if name not in TABLE_NAMES:
        raise ValueError(f"Unknown table name: {name}. Available tables: {', '.join(TABLE_NAMES)}")

    if name not in _tables_cache:
        try:
            _tables_cache[name] = reflect_table(name)
        except Exception:
            logger.error(
                f"Failed to reflect table {name}. "
                f"Ensure DATABASE_URL is correct and db/schema.sql has been applied."
            )
            raise

    return _tables_cache[name]


def preload_tables() -> int:
    """
    Reflect every dispatch table up front so a broken schema fails at startup
    instead of on the first generation request.
    """
    for table_name in TABLE_NAMES:
        get_table(table_name)
    logger.info(f"Successfully reflected {len(TABLE_NAMES)} dispatch tables")
    return len(TABLE_NAMES)


# Allows: from db.tables import ai_models
def __getattr__(name: str):
    if name in TABLE_NAMES:
        return get_table(name)
    raise AttributeError(f"module 'db.tables' has no attribute '{name}'")
