"""
Database connection module.

Provides connect/disconnect lifecycle plus get_database() and get_store()
accessors. The API routers reach the conversation store through
get_store(); the store sits on one SQLite file.

Typical usage:
    from chatkeep.database import get_store
    store = get_store()
    chats = await store.list_conversations(user_id, "neural_text")
"""

import logging
from pathlib import Path
from typing import Optional, Union

from chatkeep.config import get_settings
from chatkeep.sqlite_db import SQLiteDatabase
from chatkeep.store import ConversationStore

logger = logging.getLogger(__name__)

# ============================================================
# Global database instance
# ============================================================
_database: Optional[SQLiteDatabase] = None
_store: Optional[ConversationStore] = None


async def connect_db(
    db_path: Optional[Union[str, Path]] = None,
    encryption_key: Optional[str] = None,
) -> ConversationStore:
    """Open the SQLite database and build the conversation store.

    Called once during application startup (main.py lifespan). Creates the
    database file if it doesn't exist and applies pending migrations.
    """
    global _database, _store

    settings = get_settings()
    path = str(db_path or settings.sqlite_path)
    logger.info(f"Connecting to SQLite database: {path}")

    _database = SQLiteDatabase(path)
    await _database.connect()
    _store = ConversationStore(_database, encryption_key or settings.encryption_key)

    logger.info(f"Conversation store ready (schema v{await _database.schema_version()})")
    return _store


async def close_db() -> None:
    """Close the database connection gracefully.

    Called during application shutdown.
    """
    global _database, _store
    if _database:
        await _database.close()
        logger.info("Database connection closed")
    _database = None
    _store = None


def get_database() -> SQLiteDatabase:
    """Get the database instance.

    Raises:
        RuntimeError: If connect_db() hasn't been called yet.
    """
    if _database is None:
        raise RuntimeError("Database not initialized. Call connect_db() first.")
    return _database


def get_store() -> ConversationStore:
    """Get the conversation store built by connect_db()."""
    if _store is None:
        raise RuntimeError("Database not initialized. Call connect_db() first.")
    return _store
