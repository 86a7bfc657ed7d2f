"""
Versioned object store on SQLite.

Each named collection is one table of JSON documents keyed by a primary key
field taken from the document itself. The schema version lives in
``PRAGMA user_version``; opening a database whose version is behind the
code's creates any missing collections.
"""

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite

from ..errors import BackendUnavailable

logger = logging.getLogger(__name__)


class ObjectStore:
    """
    Transactional store of JSON documents grouped into named collections.

    Args:
        path: SQLite database file
        collections: Mapping of collection name to its primary key field
        version: Schema version the calling code expects
    """

    def __init__(self, path: Path, collections: Dict[str, str], version: int = 1):
        self._db_path = Path(path)
        self._collections = dict(collections)
        self._version = version
        self._conn: Optional[aiosqlite.Connection] = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def open(self) -> "ObjectStore":
        """
        Open the database and bring its schema up to date.

        Raises:
            BackendUnavailable: If the file cannot be opened or migrated
        """
        if self._conn is not None:
            return self
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(str(self._db_path))
        except (OSError, sqlite3.Error) as e:
            raise BackendUnavailable(f"Cannot open {self._db_path}: {e}") from e

        try:
            conn.row_factory = aiosqlite.Row
            await conn.execute("SELECT 1")
            await self._upgrade(conn)
        except (OSError, sqlite3.Error) as e:
            await conn.close()
            raise BackendUnavailable(f"Cannot initialize {self._db_path}: {e}") from e

        self._conn = conn
        return self

    async def _upgrade(self, conn: aiosqlite.Connection) -> None:
        async with conn.execute("PRAGMA user_version") as cursor:
            row = await cursor.fetchone()
        current = row[0] if row else 0
        if current > self._version:
            raise sqlite3.DatabaseError(
                f"Database version {current} is newer than supported ({self._version})"
            )
        if current == self._version:
            # Fast path, but still make sure every collection exists
            for name in self._collections:
                await conn.execute(self._create_sql(name))
            await conn.commit()
            return

        logger.info("Upgrading %s from schema v%d to v%d", self._db_path.name, current, self._version)
        for name in self._collections:
            await conn.execute(self._create_sql(name))
        await conn.execute(f"PRAGMA user_version = {int(self._version)}")
        await conn.commit()

    @staticmethod
    def _create_sql(name: str) -> str:
        return f'CREATE TABLE IF NOT EXISTS "{name}" (key TEXT PRIMARY KEY, data TEXT NOT NULL)'

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    def _table(self, collection: str) -> str:
        if collection not in self._collections:
            raise KeyError(f"Unknown collection: {collection!r}")
        return f'"{collection}"'

    def _conn_or_raise(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise BackendUnavailable("Object store is not open")
        return self._conn

    def _key_of(self, collection: str, obj: Dict[str, Any]) -> str:
        key_path = self._collections[collection]
        if key_path not in obj:
            raise ValueError(f"Document for {collection!r} is missing key field {key_path!r}")
        return str(obj[key_path])

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        conn = self._conn_or_raise()
        async with conn.execute(
            f"SELECT data FROM {self._table(collection)} WHERE key = ?", (key,)
        ) as cursor:
            row = await cursor.fetchone()
        return json.loads(row["data"]) if row else None

    async def get_all(self, collection: str) -> List[Dict[str, Any]]:
        conn = self._conn_or_raise()
        async with conn.execute(
            f"SELECT data FROM {self._table(collection)} ORDER BY rowid"
        ) as cursor:
            rows = await cursor.fetchall()
        return [json.loads(row["data"]) for row in rows]

    async def count(self, collection: str) -> int:
        conn = self._conn_or_raise()
        async with conn.execute(f"SELECT COUNT(*) FROM {self._table(collection)}") as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    async def put(self, collection: str, obj: Dict[str, Any]) -> None:
        """Insert or replace one document."""
        conn = self._conn_or_raise()
        table = self._table(collection)
        key = self._key_of(collection, obj)
        try:
            await conn.execute(
                f"INSERT OR REPLACE INTO {table} (key, data) VALUES (?, ?)",
                (key, json.dumps(obj, ensure_ascii=False)),
            )
            await conn.commit()
        except sqlite3.Error:
            await conn.rollback()
            raise

    async def delete(self, collection: str, key: str) -> bool:
        conn = self._conn_or_raise()
        try:
            cursor = await conn.execute(f"DELETE FROM {self._table(collection)} WHERE key = ?", (key,))
            await conn.commit()
        except sqlite3.Error:
            await conn.rollback()
            raise
        return cursor.rowcount > 0

    async def clear(self, collection: str) -> None:
        conn = self._conn_or_raise()
        try:
            await conn.execute(f"DELETE FROM {self._table(collection)}")
            await conn.commit()
        except sqlite3.Error:
            await conn.rollback()
            raise

    async def replace_all(self, collection: str, objs: Iterable[Dict[str, Any]]) -> None:
        """Clear the collection and insert ``objs`` as one transaction."""
        conn = self._conn_or_raise()
        table = self._table(collection)
        rows = [(self._key_of(collection, o), json.dumps(o, ensure_ascii=False)) for o in objs]
        try:
            await conn.execute(f"DELETE FROM {table}")
            await conn.executemany(f"INSERT OR REPLACE INTO {table} (key, data) VALUES (?, ?)", rows)
            await conn.commit()
        except sqlite3.Error:
            await conn.rollback()
            raise
