"""
Database Connection Manager - SQLite Async
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, UTC
from pathlib import Path
from typing import AsyncGenerator

import aiosqlite

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "migrations" / "init_schema.sql"

# Columns added to queue_items after the first schema, with their DDL type
QUEUE_ITEM_COLUMNS = {
    "description": "TEXT",
    "requested_by_id": "INTEGER",
    "source": "TEXT",
}


class DatabaseManager:
    """Shared aiosqlite connection for the queue and search cache tables."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._connection: aiosqlite.Connection | None = None

    @classmethod
    async def create(cls, db_path: Path) -> "DatabaseManager":
        """Open the database file, applying the schema and column migrations."""
        manager = cls(db_path)
        await manager._init_db()
        return manager

    async def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("PRAGMA synchronous=NORMAL")

            if not SCHEMA_PATH.exists():
                logger.warning(f"Schema file not found: {SCHEMA_PATH}")
                return

            await db.executescript(SCHEMA_PATH.read_text())
            await self._migrate_queue_items(db)
            await db.commit()
            logger.info(f"Database ready at {self.db_path}")

    @staticmethod
    async def _migrate_queue_items(db: aiosqlite.Connection) -> None:
        """Add queue_items columns missing from databases created by older versions."""
        cursor = await db.execute("PRAGMA table_info(queue_items)")
        existing = {row[1] for row in await cursor.fetchall()}
        for column, ddl_type in QUEUE_ITEM_COLUMNS.items():
            if column in existing:
                continue
            logger.info(f"Migrating: adding {column} column to queue_items")
            try:
                await db.execute(f"ALTER TABLE queue_items ADD COLUMN {column} {ddl_type}")
            except aiosqlite.Error as e:
                logger.error(f"Migration of queue_items.{column} failed: {e}")

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[aiosqlite.Connection, None]:
        """Yield the shared connection, opening it on first use."""
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.db_path)
            self._connection.row_factory = aiosqlite.Row
            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA busy_timeout=5000")

        try:
            yield self._connection
        except Exception:
            await self._connection.rollback()
            raise

    async def execute(self, query: str, params: tuple = ()) -> aiosqlite.Cursor:
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor

    async def fetch_one(self, query: str, params: tuple = ()) -> dict | None:
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            row = await cursor.fetchone()
            return dict(row) if row else None

    async def fetch_all(self, query: str, params: tuple = ()) -> list[dict]:
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            return [dict(row) for row in await cursor.fetchall()]

    async def prune_search_cache(self, now: datetime | None = None) -> int:
        """Delete expired search cache rows. Returns how many went."""
        cutoff = (now or datetime.now(UTC)).isoformat()
        cursor = await self.execute("DELETE FROM search_cache WHERE expires_at <= ?", (cutoff,))
        removed = cursor.rowcount or 0
        if removed:
            logger.info(f"Pruned {removed} expired search cache entries")
        return removed

    async def close(self) -> None:
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("Database connection closed")
