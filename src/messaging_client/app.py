"""Application orchestrator - wires all components and manages lifecycle."""

from __future__ import annotations

import asyncio
from typing import Optional

from messaging_client.config import AppConfig
from messaging_client.core.conversation import ConversationSession
from messaging_client.core.types import ConversationStatus
from messaging_client.log import get_logger
from messaging_client.messaging.events import SseEventStream
from messaging_client.messaging.http import MessagingApiClient
from messaging_client.storage.database import Database
from messaging_client.storage.session_store import SessionStore
from messaging_client.ui.terminal import TerminalView

logger = get_logger(__name__)


class MessagingApp:
    """Top-level application orchestrator."""

    def __init__(
        self,
        config: AppConfig,
        view: Optional[TerminalView] = None,
        api: Optional[MessagingApiClient] = None,
        stream: Optional[SseEventStream] = None,
    ):
        self.config = config
        self.db = Database(config.storage.db_path)
        self.store = SessionStore(self.db)
        self.api = api or MessagingApiClient(config.messaging)
        self.stream = stream or SseEventStream(config.messaging)
        self.view = view or TerminalView()
        self.session: Optional[ConversationSession] = None
        self.window_closed = asyncio.Event()
        self._cleanup_task: Optional[asyncio.Task[None]] = None

    async def start(self, force_new: bool = False) -> bool:
        """Initialize storage and bootstrap the conversation.

        A persisted access token means a conversation may still be open, so
        the session resumes it unless *force_new* discards the stored data.
        """
        # 1. Database
        await self.db.initialize()

        # 2. Resume or start fresh
        if force_new:
            await self.store.clear()
        resume = await self.store.has_access_token()

        # 3. Session
        messaging = self.config.messaging
        self.session = ConversationSession(
            access=self.api,
            transport=self.api,
            stream=self.stream,
            store=self.store,
            routing_attributes=messaging.routing_attributes,
            language=messaging.language,
        )
        self.session.on_visibility_change(self._on_visibility_change)
        self.session.on_status_change(self._on_status_change)
        self.session.on_entries_changed(self.view.render_entries)
        self.session.on_ready(self.view.ready)

        started = await self.session.start(resume=resume)
        logger.info("messaging_app_started", resume=resume, started=started, status=self.session.status)
        return started

    def _on_visibility_change(self, visible: bool) -> None:
        self.view.show(visible)
        if not visible:
            self.window_closed.set()

    def _on_status_change(self, status: ConversationStatus) -> None:
        self.view.render_status(status)
        # A close event only flips the status; the cleanup runs outside the stream handler.
        if status == ConversationStatus.CLOSED and self.session and not self.session.is_cleaned_up:
            self._cleanup_task = asyncio.create_task(self.session.cleanup())

    async def stop(self, keep_conversation: bool = False) -> None:
        """Shut down all components.

        With *keep_conversation* the persisted session data is left in place so
        the next start resumes the conversation; otherwise the session is
        cleaned up first.
        """
        if self._cleanup_task is not None:
            await self._cleanup_task
            self._cleanup_task = None

        if self.session is not None and not keep_conversation and not self.session.is_cleaned_up:
            await self.session.aclose()

        await self.stream.aclose()
        await self.api.close()
        await self.db.close()
        logger.info("messaging_app_stopped", kept_conversation=keep_conversation)
