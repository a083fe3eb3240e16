"""
Database base configuration and utilities.

This module provides the foundation for the SQLite-backed resource store
using Peewee ORM.

Components:
    - db: Global SQLite database instance
    - BaseModel: Base class for all database models
    - initialize_database: Database setup function
    - run_in_executor: Async wrapper for blocking DB operations
"""

import asyncio
import os

import peewee

from staticip.utils.logger import get_logger

logger = get_logger(__name__)


# =============================================================================
# Database Instance
# =============================================================================

# Global database instance - path set via initialize_database()
db = peewee.SqliteDatabase(None)


# =============================================================================
# Base Model
# =============================================================================


class BaseModel(peewee.Model):
    """
    Base model for all database models.

    All models inherit from this class to share the database connection.
    """

    class Meta:
        database = db


# =============================================================================
# Database Lifecycle
# =============================================================================


def initialize_database(db_path: str) -> None:
    """
    Connect to the database and create tables.

    Args:
        db_path: Path to the SQLite database file.

    Raises:
        peewee.OperationalError: If database connection fails.
    """
    # Import models here to avoid circular imports
    from staticip.db.resource import StoredResource

    logger.debug(f"Initializing database at: {db_path}")

    parent = os.path.dirname(os.path.abspath(db_path))
    try:
        os.makedirs(parent, exist_ok=True)
    except OSError as e:
        raise peewee.OperationalError(f"cannot create '{parent}': {e}") from e

    try:
        if not db.is_closed():
            db.close()
        # Connections are per thread (executor threads autoconnect), so
        # the path must be a real file for all of them to share state
        db.init(db_path, pragmas={"journal_mode": "wal", "busy_timeout": 5000})
        db.connect()
        db.create_tables([StoredResource], safe=True)

        logger.info(f"Database initialized: {db_path}")

        count = StoredResource.select().count()
        logger.debug(f"Database contains {count} resources")

    except peewee.OperationalError as e:
        logger.error(f"Failed to initialize database '{db_path}': {e}")
        raise


def close_database() -> None:
    """Close the database connection if open."""
    if not db.is_closed():
        db.close()
        logger.debug("Database connection closed")


# =============================================================================
# Async Utilities
# =============================================================================


async def run_in_executor(func, *args, **kwargs):
    """
    Run a blocking database function in a thread pool executor.

    Use this in async contexts to avoid blocking the event loop.

    Example:
        row = await run_in_executor(StoredResource.get_or_none, query)
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))
