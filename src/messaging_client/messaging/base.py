"""Abstract collaborator interfaces driven by the conversation session."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional

from messaging_client.core.session import SessionContext
from messaging_client.messaging.models import OutboundMessage, ServerSentEvent

EventHandler = Callable[[ServerSentEvent], Awaitable[None]]
StreamErrorHandler = Callable[[BaseException], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class AccessGrant:
    token: str
    last_event_id: Optional[str] = None
    configuration: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class OpenConversation:
    conversation_id: str
    start_timestamp: int = 0


@dataclass(frozen=True, slots=True)
class ConversationListing:
    count: int
    conversations: list[OpenConversation] = field(default_factory=list)


class AccessProvider(ABC):
    """Obtains access tokens for new and continuing conversations.

    Failures are raised as AuthError.
    """

    @abstractmethod
    async def fetch_fresh_token(self, ctx: SessionContext) -> AccessGrant:
        ...

    @abstractmethod
    async def fetch_continuation_token(self, ctx: SessionContext) -> AccessGrant:
        ...


class ConversationTransport(ABC):
    """Conversation lifecycle and entry retrieval calls.

    Failures are raised as TransportError carrying the HTTP status code.
    """

    @abstractmethod
    async def create_conversation(self, ctx: SessionContext) -> None:
        ...

    @abstractmethod
    async def list_open_conversations(self, ctx: SessionContext) -> ConversationListing:
        ...

    @abstractmethod
    async def list_entries(self, ctx: SessionContext) -> list[dict[str, Any]]:
        """Return the entries of the context's conversation, most recent first."""
        ...

    @abstractmethod
    async def close_conversation(self, ctx: SessionContext) -> None:
        ...

    @abstractmethod
    async def send_message(self, ctx: SessionContext, message: OutboundMessage) -> None:
        ...


class EventStream(ABC):
    """Live, ordered delivery of named server-sent events."""

    @abstractmethod
    async def subscribe(
        self,
        ctx: SessionContext,
        handlers: Mapping[str, EventHandler],
        on_error: Optional[StreamErrorHandler] = None,
    ) -> None:
        """Open the stream and dispatch each event to the handler for its name.

        The stream reconnects from ``ctx.last_event_id`` after it drops. A
        rejected reconnect is reported to *on_error* rather than raised.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the stream. Safe to call when not subscribed."""
        ...
