"""Tests for the aiosqlite-backed session store."""

from pathlib import Path

import pytest

from messaging_client.core.conversation import ConversationSession
from messaging_client.messaging.base import OpenConversation
from messaging_client.storage.database import MIGRATIONS, Database
from messaging_client.storage.session_store import (
    KEY_ACCESS_TOKEN,
    KEY_CONVERSATION_ID,
    KEY_LAST_EVENT_ID,
    PersistedSession,
    SessionStore,
)

from conftest import FakeAccess, FakeStream, FakeTransport, message_event


@pytest.mark.asyncio
async def test_set_get_and_clear(tmp_path: Path) -> None:
    db = Database(str(tmp_path / "data" / "store.db"))
    await db.initialize()
    store = SessionStore(db)
    try:
        await store.set(KEY_ACCESS_TOKEN, "t1")
        await store.set(KEY_ACCESS_TOKEN, "t2")
        await store.set(KEY_LAST_EVENT_ID, "5")

        assert await store.get(KEY_ACCESS_TOKEN) == "t2"
        assert await store.has_access_token()
        persisted = await store.load()
        assert persisted.access_token == "t2"
        assert persisted.last_event_id == "5"
        assert persisted.conversation_id is None

        await store.set(KEY_LAST_EVENT_ID, None)
        assert await store.get(KEY_LAST_EVENT_ID) is None

        assert await store.clear() == 1
        assert not await store.has_access_token()
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_session_persists_and_cleanup_clears(tmp_path: Path) -> None:
    db = Database(str(tmp_path / "store.db"))
    await db.initialize()
    store = SessionStore(db)
    stream = FakeStream()
    session = ConversationSession(FakeAccess(), FakeTransport(), stream, store=store)
    try:
        assert await session.start(resume=False)
        await stream.emit(message_event(session.conversation_id, event_id="20"))

        persisted = await store.load()
        assert persisted.access_token == "fresh-token"
        assert persisted.conversation_id == session.conversation_id
        assert persisted.last_event_id == "20"

        await session.cleanup()

        assert await store.load() == PersistedSession()
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_new_start_with_stored_token_resumes(tmp_path: Path) -> None:
    db = Database(str(tmp_path / "store.db"))
    await db.initialize()
    store = SessionStore(db)
    await store.set(KEY_ACCESS_TOKEN, "old-token")
    await store.set(KEY_LAST_EVENT_ID, "33")
    access = FakeAccess()
    transport = FakeTransport()
    transport.open_conversations = [OpenConversation(conversation_id="c-old", start_timestamp=1)]
    session = ConversationSession(access, transport, FakeStream(), store=store)
    try:
        assert await session.start(resume=False)

        assert access.fresh_calls == 0
        assert access.continuation_calls == 1
        assert session.conversation_id == "c-old"
        assert session.context.last_event_id == "33"
        assert transport.created == []
        assert await store.get(KEY_CONVERSATION_ID) == "c-old"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_database_migrations_run_once(tmp_path: Path) -> None:
    path = str(tmp_path / "store.db")
    for _ in range(2):
        db = Database(path)
        await db.initialize()
        cursor = await db.conn.execute("PRAGMA user_version")
        row = await cursor.fetchone()
        assert row[0] == len(MIGRATIONS)
        await db.close()


@pytest.mark.asyncio
async def test_in_memory_database() -> None:
    db = Database(":memory:")
    await db.initialize()
    store = SessionStore(db)
    try:
        await store.set(KEY_CONVERSATION_ID, "c1")
        assert (await store.load()).conversation_id == "c1"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_cursor_is_not_persisted_after_cleanup(tmp_path: Path) -> None:
    db = Database(str(tmp_path / "store.db"))
    await db.initialize()
    store = SessionStore(db)
    stream = FakeStream()
    session = ConversationSession(FakeAccess(), FakeTransport(), stream, store=store)
    try:
        assert await session.start(resume=False)
        handler = stream.handlers["CONVERSATION_MESSAGE"]
        await session.cleanup()

        await handler(message_event(session.conversation_id, event_id="99"))

        assert await store.load() == PersistedSession()
        assert session.context.last_event_id is None
    finally:
        await db.close()
