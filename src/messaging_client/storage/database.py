"""SQLite connection manager with versioned schema migrations."""

from __future__ import annotations

from pathlib import Path

import aiosqlite

from messaging_client.log import get_logger

logger = get_logger(__name__)

IN_MEMORY = ":memory:"

# Index i upgrades the schema from version i to i + 1.
MIGRATIONS: list[str] = [
    """
    CREATE TABLE IF NOT EXISTS session_data (
        key         TEXT PRIMARY KEY,
        value       TEXT NOT NULL,
        updated_at  TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now'))
    );
    """,
]


class Database:
    """Async SQLite database holding the resumable session data."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    @property
    def path(self) -> str:
        return self._db_path

    async def initialize(self) -> None:
        """Open the connection and bring the schema up to date."""
        if self._db_path != IN_MEMORY:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        if self._db_path != IN_MEMORY:
            await self._conn.execute("PRAGMA journal_mode=WAL")
        version = await self._migrate()
        logger.info("database_initialized", path=self._db_path, schema_version=version)

    async def _migrate(self) -> int:
        cursor = await self.conn.execute("PRAGMA user_version")
        row = await cursor.fetchone()
        version = row[0] if row else 0
        for target, script in enumerate(MIGRATIONS[version:], start=version + 1):
            await self.conn.executescript(script)
            await self.conn.execute(f"PRAGMA user_version = {target}")
            logger.debug("database_migrated", schema_version=target)
        await self.conn.commit()
        return max(version, len(MIGRATIONS))

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed")
