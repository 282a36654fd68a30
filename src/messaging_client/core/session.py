"""Explicit per-conversation context shared with every collaborator call."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from messaging_client.core.errors import SessionStateError
from messaging_client.core.types import ConversationStatus
from messaging_client.log import get_logger

logger = get_logger(__name__)


@dataclass
class SessionContext:
    """Identity, status, credentials and stream cursor of one conversation.

    A context lives exactly as long as its conversation: once reset it stays
    CLOSED, and a new conversation needs a new context.
    """

    conversation_id: Optional[str] = None
    status: ConversationStatus = ConversationStatus.NOT_STARTED
    last_event_id: Optional[str] = None
    access_token: Optional[str] = None
    deployment_configuration: dict[str, Any] = field(default_factory=dict)

    def adopt(self, conversation_id: str) -> None:
        """Bind the context to *conversation_id*; the id cannot change afterwards."""
        if self.conversation_id is not None and self.conversation_id != conversation_id:
            raise SessionStateError(
                f"Conversation id already set to {self.conversation_id}, refusing {conversation_id}"
            )
        self.conversation_id = conversation_id

    def advance_cursor(self, event_id: Optional[str]) -> None:
        """Move the stream cursor forward; numeric ids never move it backwards."""
        if not event_id:
            return
        current = self.last_event_id
        if current and current.isdigit() and event_id.isdigit() and int(event_id) <= int(current):
            return
        self.last_event_id = event_id

    def transition(self, status: ConversationStatus) -> bool:
        """Move to *status* if allowed. Returns True if the status changed."""
        if self.status == status:
            return False
        if self.status == ConversationStatus.CLOSED:
            logger.warning("status_transition_refused", current=self.status, requested=status)
            return False
        if status == ConversationStatus.NOT_STARTED:
            logger.warning("status_transition_refused", current=self.status, requested=status)
            return False
        self.status = status
        return True

    def reset(self) -> None:
        self.access_token = None
        self.last_event_id = None
        self.deployment_configuration = {}
        self.status = ConversationStatus.CLOSED

    @property
    def is_open(self) -> bool:
        return self.status == ConversationStatus.OPENED

    @property
    def auth_headers(self) -> dict[str, str]:
        if not self.access_token:
            return {}
        return {"Authorization": f"Bearer {self.access_token}"}
