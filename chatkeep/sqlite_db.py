"""
SQLite document store with indexed, versioned collections.

Each collection is a SQLite table holding one JSON document per row. The
store keeps a small collection-style async API (find, insert_one,
update_one, delete_many, ...) so the conversation store above it reads like
ordinary document-database code.

Architecture:
  - Each collection is a table with:
    - _id TEXT PRIMARY KEY (UUID generated when not provided)
    - data TEXT (the full document as JSON)
    - Expression indexes over json_extract() for the lookup paths
  - Tables and indexes are created by ordered, additive migrations. The
    applied version lives in PRAGMA user_version and is checked on open.
  - One shared aiosqlite connection guarded by an asyncio.Lock, so every
    read-modify-write runs without interleaving, and transaction() gives
    multi-statement units of work with commit/rollback.
  - Rows sort by their requested fields, then by rowid, so insertion order
    breaks timestamp ties.

Usage:
    db = SQLiteDatabase("data/chatkeep.db")
    await db.connect()
    doc = await db.conversations.find_one({"_id": chat_id})
    await db.messages.insert_one({"content": "hello", "conversationId": chat_id})
"""

import asyncio
import json
import logging
import re
import sqlite3
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aiosqlite

from chatkeep.errors import StorageError

logger = logging.getLogger(__name__)


def new_id() -> str:
    """Generate an opaque, globally unique document id."""
    return str(uuid.uuid4())


# ============================================================
# Schema: additive migrations keyed by version
# ============================================================
# Never edit a released version; add a new one. Every statement must be
# idempotent so a migration can be replayed against a migrated store.

SCHEMA_VERSION = 2

MIGRATIONS: Dict[int, List[str]] = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS [conversations] (
            _id TEXT PRIMARY KEY,
            data TEXT NOT NULL
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_conversations_by_user_app
        ON [conversations] (
            json_extract(data, '$.userId'),
            json_extract(data, '$.appScope')
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_conversations_by_timestamp
        ON [conversations] (json_extract(data, '$.timestamp'))
        """,
        """
        CREATE TABLE IF NOT EXISTS [messages] (
            _id TEXT PRIMARY KEY,
            data TEXT NOT NULL
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_messages_by_conversation
        ON [messages] (json_extract(data, '$.conversationId'))
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_messages_by_timestamp
        ON [messages] (json_extract(data, '$.timestamp'))
        """,
    ],
    2: [
        """
        CREATE TABLE IF NOT EXISTS [provider_settings] (
            _id TEXT PRIMARY KEY,
            data TEXT NOT NULL
        )
        """,
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_provider_settings_by_user
        ON [provider_settings] (json_extract(data, '$.userId'))
        """,
    ],
}


# ============================================================
# Query translator: collection query dicts → SQL
# ============================================================

_DATE_FIELDS = ("timestamp", "createdAt", "updatedAt")


def _serialize_value(val: Any) -> Any:
    """Serialize a Python value for JSON storage."""
    if isinstance(val, datetime):
        return val.isoformat(timespec="microseconds")
    if isinstance(val, list):
        return [_serialize_value(v) for v in val]
    if isinstance(val, dict):
        return {k: _serialize_value(v) for k, v in val.items()}
    return val


def _deserialize_doc(doc_json: str) -> Dict[str, Any]:
    """Deserialize a JSON document, converting ISO dates back to datetime."""
    doc = json.loads(doc_json)
    for key in _DATE_FIELDS:
        if key in doc and doc[key] and isinstance(doc[key], str):
            try:
                doc[key] = datetime.fromisoformat(doc[key])
            except (ValueError, TypeError):
                pass
    return doc


def _json_extract(field: str) -> str:
    """Build a SQLite json_extract expression for a field path.

    Handles dot notation: 'metadata.summary' → json_extract(data, '$.metadata.summary')
    Sanitizes field name to prevent SQL injection via crafted field paths.
    """
    sanitized = re.sub(r"[^a-zA-Z0-9._\-]", "", field)
    return f"json_extract(data, '$.{sanitized}')"


def _build_where(query: Dict[str, Any]) -> Tuple[str, List[Any]]:
    """Translate a query dict to a SQL WHERE clause + params.

    Every key is an equality test: on _id, on a JSON field, or IS NULL for
    None. Operator dicts ({"$gt": ...} and friends) are rejected.

    Returns:
        (where_clause, params): clause does NOT include 'WHERE' keyword.
    """
    if not query:
        return "1=1", []

    conditions = []
    params: List[Any] = []

    for key, value in query.items():
        if isinstance(value, dict):
            raise ValueError(f"Unsupported query on {key}: {value}")

        if key == "_id":
            conditions.append("_id = ?")
            params.append(str(value))

        elif value is None:
            conditions.append(f"{_json_extract(key)} IS NULL")

        elif isinstance(value, bool):
            # json_extract returns 1/0 for JSON true/false
            conditions.append(f"{_json_extract(key)} = ?")
            params.append(1 if value else 0)

        else:
            conditions.append(f"{_json_extract(key)} = ?")
            params.append(_serialize_value(value))

    return " AND ".join(conditions), params


def _build_sort(sort_spec: Optional[List[Tuple[str, int]]]) -> str:
    """Translate a sort spec to SQL ORDER BY.

    Accepts a list of (field, direction) tuples, direction 1 or -1. Rows
    with equal keys fall back to insertion order (rowid), following the
    direction of the last key.
    """
    if not sort_spec:
        return ""

    parts = []
    direction = "ASC"
    for field, d in sort_spec:
        direction = "DESC" if d == -1 else "ASC"
        parts.append(f"{_json_extract(field)} {direction}")
    parts.append(f"rowid {direction}")
    return "ORDER BY " + ", ".join(parts)


def _apply_update(doc: Dict, update: Dict) -> Dict:
    """Apply update operators to a document in-memory.

    Supports: $set, $unset. If no operators are present, treats the update
    as a replacement.
    """
    has_operators = any(k.startswith("$") for k in update)

    if not has_operators:
        # Full replacement (preserve _id)
        _id = doc.get("_id")
        doc = dict(update)
        if _id:
            doc["_id"] = _id
        return doc

    for op, fields in update.items():
        if op == "$set":
            for k, v in fields.items():
                _set_nested(doc, k, _serialize_value(v))
        elif op == "$unset":
            for k in fields:
                parts = k.split(".")
                target = doc
                for p in parts[:-1]:
                    target = target.get(p, {})
                target.pop(parts[-1], None)
        else:
            raise ValueError(f"Unsupported update operator: {op}")

    return doc


def _set_nested(doc: Dict, key: str, value: Any) -> None:
    """Set a nested field using dot notation: 'a.b.c' → doc['a']['b']['c'] = value."""
    parts = key.split(".")
    target = doc
    for p in parts[:-1]:
        if p not in target or not isinstance(target[p], dict):
            target[p] = {}
        target = target[p]
    target[parts[-1]] = value


def _dump(doc: Dict) -> str:
    return json.dumps(_serialize_value(doc), default=str)


# ============================================================
# Cursor: async iterator over query results
# ============================================================

class SQLiteCursor:
    """Sortable async iterator; the query runs on first iteration."""

    def __init__(self, collection: "SQLiteCollection", query: Dict):
        self._collection = collection
        self._query = query
        self._sort_spec: Optional[List[Tuple[str, int]]] = None
        self._results: Optional[List[Dict]] = None

    def sort(self, key_or_list, direction=None) -> "SQLiteCursor":
        """Set sort order: sort("field", -1) or sort([("a", 1), ("b", -1)])."""
        if direction is not None:
            self._sort_spec = [(key_or_list, direction)]
        elif isinstance(key_or_list, str):
            self._sort_spec = [(key_or_list, 1)]
        elif isinstance(key_or_list, list):
            self._sort_spec = key_or_list
        return self

    async def _execute(self) -> List[Dict]:
        if self._results is not None:
            return self._results

        where, params = _build_where(self._query)
        order = _build_sort(self._sort_spec)
        sql = f"SELECT _id, data FROM [{self._collection.name}] WHERE {where} {order}"

        results = []
        async with self._collection._db._get_conn() as conn:
            async with conn.execute(sql, params) as cursor:
                async for row in cursor:
                    doc = _deserialize_doc(row[1])
                    doc["_id"] = row[0]
                    results.append(doc)

        self._results = results
        return results

    def __aiter__(self):
        self._iter_index = 0
        self._results = None  # Reset for re-iteration
        return self

    async def __anext__(self) -> Dict:
        results = await self._execute()
        if self._iter_index >= len(results):
            raise StopAsyncIteration
        doc = results[self._iter_index]
        self._iter_index += 1
        return doc


# ============================================================
# Collection: one table of JSON documents
# ============================================================

class SQLiteCollection:
    """Async collection backed by one SQLite table.

    Each table has columns:
      - _id TEXT PRIMARY KEY
      - data TEXT (JSON document)
    """

    def __init__(self, db: "SQLiteDatabase", name: str):
        self._db = db
        self.name = name

    async def insert_one(self, document: Dict,
                         session: Optional[aiosqlite.Connection] = None) -> "InsertOneResult":
        """Insert a single document.

        With a session from SQLiteDatabase.transaction() the insert joins
        that unit of work and is committed with it.
        """
        doc = dict(document)
        _id = str(doc.pop("_id", None) or new_id())
        sql = f"INSERT INTO [{self.name}] (_id, data) VALUES (?, ?)"

        if session is not None:
            await session.execute(sql, (_id, _dump(doc)))
            return InsertOneResult(_id)

        async with self._db._get_conn() as conn:
            await conn.execute(sql, (_id, _dump(doc)))
            await conn.commit()

        return InsertOneResult(_id)

    async def find_one(self, query: Optional[Dict] = None,
                       sort: Optional[List[Tuple[str, int]]] = None,
                       session: Optional[aiosqlite.Connection] = None) -> Optional[Dict]:
        """Find a single document matching the query.

        Args:
            query: Query dict.
            sort: Optional sort spec for picking which doc to return.
            session: Read inside an open transaction instead of taking the lock.
        """
        where, params = _build_where(query or {})
        order = _build_sort(sort)
        sql = f"SELECT _id, data FROM [{self.name}] WHERE {where} {order} LIMIT 1"

        if session is not None:
            async with session.execute(sql, params) as cursor:
                row = await cursor.fetchone()
        else:
            async with self._db._get_conn() as conn:
                async with conn.execute(sql, params) as cursor:
                    row = await cursor.fetchone()
        if row is None:
            return None
        doc = _deserialize_doc(row[1])
        doc["_id"] = row[0]
        return doc

    def find(self, query: Optional[Dict] = None) -> SQLiteCursor:
        """Return a cursor for documents matching the query."""
        return SQLiteCursor(self, query or {})

    async def update_one(self, query: Dict, update: Dict) -> "UpdateResult":
        """Update a single document.

        The read and the write happen under one lock hold, so concurrent
        writers cannot interleave between them.
        """
        where, params = _build_where(query)

        async with self._db._get_conn() as conn:
            async with conn.execute(
                f"SELECT _id, data FROM [{self.name}] WHERE {where} LIMIT 1", params
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return UpdateResult(0, 0)

            _id = row[0]
            updated = _apply_update(json.loads(row[1]), update)
            updated.pop("_id", None)
            await conn.execute(
                f"UPDATE [{self.name}] SET data = ? WHERE _id = ?",
                (_dump(updated), _id),
            )
            await conn.commit()

        return UpdateResult(1, 1)

    async def find_one_and_update(self, query: Dict, update: Dict) -> Optional[Dict]:
        """Update a single document and return it as stored, or None."""
        where, params = _build_where(query)

        async with self._db._get_conn() as conn:
            async with conn.execute(
                f"SELECT _id, data FROM [{self.name}] WHERE {where} LIMIT 1", params
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return None

            _id = row[0]
            updated = _apply_update(json.loads(row[1]), update)
            updated.pop("_id", None)
            serialized = _dump(updated)
            await conn.execute(
                f"UPDATE [{self.name}] SET data = ? WHERE _id = ?",
                (serialized, _id),
            )
            await conn.commit()

        doc = _deserialize_doc(serialized)
        doc["_id"] = _id
        return doc

    async def delete_many(self, query: Dict,
                          session: Optional[aiosqlite.Connection] = None) -> "DeleteResult":
        """Delete all documents matching the query.

        Args:
            query: Query dict.
            session: Connection yielded by SQLiteDatabase.transaction(); the
                delete then joins that unit of work instead of committing.
        """
        where, params = _build_where(query)
        sql = f"DELETE FROM [{self.name}] WHERE {where}"

        if session is not None:
            cursor = await session.execute(sql, params)
            return DeleteResult(cursor.rowcount)

        async with self._db._get_conn() as conn:
            cursor = await conn.execute(sql, params)
            await conn.commit()
            return DeleteResult(cursor.rowcount)

    async def count_documents(self, query: Optional[Dict] = None) -> int:
        """Count documents matching the query."""
        where, params = _build_where(query or {})
        sql = f"SELECT COUNT(*) FROM [{self.name}] WHERE {where}"

        async with self._db._get_conn() as conn:
            async with conn.execute(sql, params) as cursor:
                row = await cursor.fetchone()
                return row[0] if row else 0


# ============================================================
# Result types
# ============================================================

class InsertOneResult:
    def __init__(self, inserted_id: str):
        self.inserted_id = inserted_id


class UpdateResult:
    def __init__(self, matched_count: int, modified_count: int):
        self.matched_count = matched_count
        self.modified_count = modified_count


class DeleteResult:
    def __init__(self, deleted_count: int):
        self.deleted_count = deleted_count


# ============================================================
# Database: connection, migrations, transactions
# ============================================================

class SQLiteDatabase:
    """Async SQLite database with collection-style access.

    Collections are accessed as attributes: db.conversations, db.messages,
    db.provider_settings. Each collection is a table created by MIGRATIONS.
    """

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._collections: Dict[str, SQLiteCollection] = {}

    @property
    def path(self) -> str:
        return self._db_path

    async def connect(self) -> None:
        """Open the SQLite connection and bring the schema up to date."""
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = await aiosqlite.connect(self._db_path, timeout=30.0)
            # WAL mode for better concurrent read/write performance
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA busy_timeout=5000")
        except sqlite3.Error as e:
            logger.error(f"Failed to open SQLite database {self._db_path}: {e}")
            raise StorageError(f"Could not open database: {e}") from e
        logger.info(f"SQLite database connected: {self._db_path}")

        await self.migrate()

    async def close(self) -> None:
        """Close the SQLite connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("SQLite database closed")

    async def schema_version(self) -> int:
        """Return the schema version recorded in the database file."""
        async with self._get_conn() as conn:
            async with conn.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def migrate(self, start_version: Optional[int] = None) -> int:
        """Apply every migration newer than the stored schema version.

        Args:
            start_version: Replay migrations newer than this version instead
                of the stored one. Migrations are idempotent, so replaying
                them over a migrated store leaves existing records untouched.

        Returns:
            The schema version after migrating.
        """
        current = await self.schema_version() if start_version is None else start_version

        if current > SCHEMA_VERSION:
            raise StorageError(
                f"Database schema v{current} is newer than supported v{SCHEMA_VERSION}"
            )

        for version in sorted(MIGRATIONS):
            if version <= current:
                continue
            async with self.transaction() as conn:
                for statement in MIGRATIONS[version]:
                    await conn.execute(statement)
                # PRAGMA does not accept bound parameters
                await conn.execute(f"PRAGMA user_version = {int(version)}")
            logger.info(f"Applied schema migration v{version}")
            current = version

        return current

    @asynccontextmanager
    async def _get_conn(self) -> AsyncIterator[aiosqlite.Connection]:
        """Hold the shared connection exclusively for one unit of work.

        sqlite errors are rolled back, logged and re-raised as StorageError.
        """
        if self._conn is None:
            raise StorageError("Database not connected. Call connect() first.")
        async with self._lock:
            try:
                yield self._conn
            except sqlite3.Error as e:
                logger.error(f"SQLite error on {self._db_path}: {e}")
                await self._conn.rollback()
                raise StorageError(str(e)) from e

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run several statements as one atomic unit of work.

        Commits when the block exits normally; rolls back on any exception,
        including cancellation.
        """
        async with self._get_conn() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()

    async def command(self, cmd: str) -> Dict:
        """Run a liveness command (ping)."""
        if cmd == "ping":
            async with self._get_conn() as conn:
                await conn.execute("SELECT 1")
        return {"ok": 1}

    def __getattr__(self, name: str) -> SQLiteCollection:
        """Access collections as attributes: db.conversations, db.messages, etc."""
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def __getitem__(self, name: str) -> SQLiteCollection:
        """Access collections as items: db['messages']."""
        if name not in self._collections:
            self._collections[name] = SQLiteCollection(self, name)
        return self._collections[name]
