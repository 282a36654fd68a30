"""Persisted session data: access token, stream cursor and conversation id."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from messaging_client.log import get_logger
from messaging_client.storage.database import Database

logger = get_logger(__name__)

KEY_ACCESS_TOKEN = "access_token"
KEY_LAST_EVENT_ID = "last_event_id"
KEY_CONVERSATION_ID = "conversation_id"


@dataclass
class PersistedSession:
    access_token: Optional[str] = None
    last_event_id: Optional[str] = None
    conversation_id: Optional[str] = None


class SessionStore:
    """Key/value persistence of the data needed to resume a conversation."""

    def __init__(self, db: Database):
        self._db = db

    async def set(self, key: str, value: Optional[str]) -> None:
        """Store *value* under *key*; None deletes the key."""
        if value is None:
            await self._db.conn.execute("DELETE FROM session_data WHERE key = ?", (key,))
        else:
            await self._db.conn.execute(
                """INSERT INTO session_data (key, value)
                   VALUES (?, ?)
                   ON CONFLICT(key)
                   DO UPDATE SET value = excluded.value,
                                 updated_at = strftime('%Y-%m-%dT%H:%M:%f','now')""",
                (key, value),
            )
        await self._db.conn.commit()

    async def get(self, key: str) -> Optional[str]:
        cursor = await self._db.conn.execute("SELECT value FROM session_data WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return row["value"] if row else None

    async def load(self) -> PersistedSession:
        cursor = await self._db.conn.execute("SELECT key, value FROM session_data")
        rows = await cursor.fetchall()
        values = {row["key"]: row["value"] for row in rows}
        return PersistedSession(
            access_token=values.get(KEY_ACCESS_TOKEN),
            last_event_id=values.get(KEY_LAST_EVENT_ID),
            conversation_id=values.get(KEY_CONVERSATION_ID),
        )

    async def has_access_token(self) -> bool:
        return await self.get(KEY_ACCESS_TOKEN) is not None

    async def clear(self) -> int:
        """Delete all persisted session data. Returns number of deleted rows."""
        cursor = await self._db.conn.execute("DELETE FROM session_data")
        await self._db.conn.commit()
        logger.debug("session_store_cleared", rows=cursor.rowcount)
        return cursor.rowcount
