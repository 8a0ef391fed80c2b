"""
SQLite database management for accounts, domains and notifications.

Provides async database operations using aiosqlite for
storing ACME accounts, custom domain SSL state and notifications.
"""

import logging
from pathlib import Path
from typing import Any
from contextlib import asynccontextmanager
import json

import aiosqlite

from config import settings

logger = logging.getLogger(__name__)

# Database schema
SCHEMA = """
-- ACME accounts table (one account per CA environment)
CREATE TABLE IF NOT EXISTS acme_accounts (
    id TEXT PRIMARY KEY,
    environment TEXT NOT NULL UNIQUE,
    email TEXT,
    account_url TEXT NOT NULL,
    private_key_pem TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);

-- Custom domains table
CREATE TABLE IF NOT EXISTS domains (
    id TEXT PRIMARY KEY,
    domain TEXT NOT NULL UNIQUE,
    user_id TEXT,
    project_id TEXT,
    project_name TEXT,
    site_slug TEXT,

    verified BOOLEAN DEFAULT FALSE,
    ssl_status TEXT NOT NULL DEFAULT 'pending',
    ssl_cert_path TEXT,
    ssl_key_path TEXT,
    ssl_expires_at TIMESTAMP,
    ssl_last_error TEXT,

    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_domains_ssl_status ON domains(ssl_status);
CREATE INDEX IF NOT EXISTS idx_domains_verified ON domains(verified);

-- Notifications table
CREATE TABLE IF NOT EXISTS notifications (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    project_id TEXT,
    project_name TEXT,
    metadata_json TEXT,
    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_notifications_user_id ON notifications(user_id);
CREATE INDEX IF NOT EXISTS idx_notifications_created_at ON notifications(created_at);
"""


class Database:
    """Async SQLite store; one short-lived connection per call."""

    def __init__(self, db_path: str | None = None):
        self.db_path = db_path or settings.database_path

    async def initialize(self) -> None:
        """Create the database file and tables."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        async with self.connection() as db:
            await db.executescript(SCHEMA)
            await db.commit()

        logger.info(f"Database initialized at {self.db_path}")

    @asynccontextmanager
    async def connection(self):
        conn = await aiosqlite.connect(self.db_path)
        conn.row_factory = aiosqlite.Row
        try:
            yield conn
        finally:
            await conn.close()

    async def _write(self, query: str, params: tuple = ()) -> int:
        """Run a statement in its own transaction; returns affected rows."""
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount

    async def fetch_one(self, query: str, params: tuple = ()) -> dict[str, Any] | None:
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            row = await cursor.fetchone()
            return dict(row) if row else None

    async def fetch_all(self, query: str, params: tuple = ()) -> list[dict[str, Any]]:
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            return [dict(row) for row in await cursor.fetchall()]

    async def insert(self, table: str, data: dict[str, Any]) -> str:
        """Insert a row and return its id."""
        columns = ", ".join(data)
        placeholders = ", ".join("?" for _ in data)
        await self._write(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", tuple(data.values()))
        return data.get("id", "")

    async def upsert(self, table: str, data: dict[str, Any], conflict_column: str, keep: tuple[str, ...] = ()) -> None:
        """
        Insert a row, or update it in place when `conflict_column` already exists.

        Columns named in `keep` retain their stored values on update.
        """
        columns = ", ".join(data)
        placeholders = ", ".join("?" for _ in data)
        assignments = ", ".join(
            f"{column} = excluded.{column}" for column in data if column != conflict_column and column not in keep
        )
        await self._write(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) "
            f"ON CONFLICT({conflict_column}) DO UPDATE SET {assignments}",
            tuple(data.values()),
        )

    async def update(self, table: str, id_value: str, data: dict[str, Any]) -> bool:
        """Update a row by id; False when no row matched."""
        set_clause = ", ".join(f"{column} = ?" for column in data)
        rowcount = await self._write(
            f"UPDATE {table} SET {set_clause} WHERE id = ?", tuple(data.values()) + (id_value,)
        )
        return rowcount > 0

    async def count(self, table: str, where_clause: str = "", params: tuple = ()) -> int:
        query = f"SELECT COUNT(*) AS total FROM {table}"
        if where_clause:
            query += f" WHERE {where_clause}"
        row = await self.fetch_one(query, params)
        return row["total"] if row else 0


def serialize_json(data: dict[str, Any] | None) -> str | None:
    return None if data is None else json.dumps(data)


def deserialize_json(data: str | None) -> dict[str, Any] | None:
    return None if data is None else json.loads(data)


_db_instance: Database | None = None


def get_database() -> Database:
    """Get the global database instance."""
    global _db_instance
    if _db_instance is None:
        _db_instance = Database()
    return _db_instance


async def initialize_database() -> Database:
    db = get_database()
    await db.initialize()
    return db
