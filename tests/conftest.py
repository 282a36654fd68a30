"""Shared fakes and event builders for the messaging client tests."""

import json
from typing import Any, Mapping

import pytest

from messaging_client.core.conversation import ConversationSession
from messaging_client.core.session import SessionContext
from messaging_client.messaging.base import (
    AccessGrant,
    AccessProvider,
    ConversationListing,
    ConversationTransport,
    EventHandler,
    EventStream,
    OpenConversation,
    StreamErrorHandler,
)
from messaging_client.messaging.models import OutboundMessage, ServerSentEvent


class FakeAccess(AccessProvider):
    def __init__(self) -> None:
        self.fresh_calls = 0
        self.continuation_calls = 0
        self.error: Exception | None = None

    async def fetch_fresh_token(self, ctx: SessionContext) -> AccessGrant:
        self.fresh_calls += 1
        if self.error:
            raise self.error
        return AccessGrant(token="fresh-token", last_event_id="10", configuration={"name": "deployment"})

    async def fetch_continuation_token(self, ctx: SessionContext) -> AccessGrant:
        self.continuation_calls += 1
        if self.error:
            raise self.error
        return AccessGrant(token="continuation-token")


class FakeTransport(ConversationTransport):
    def __init__(self) -> None:
        self.created: list[str] = []
        self.closed: list[str] = []
        self.sent: list[OutboundMessage] = []
        self.open_conversations: list[OpenConversation] = []
        self.history: list[dict[str, Any]] = []
        self.create_error: Exception | None = None
        self.close_error: Exception | None = None
        self.send_error: Exception | None = None
        self.list_error: Exception | None = None

    async def create_conversation(self, ctx: SessionContext) -> None:
        if self.create_error:
            raise self.create_error
        self.created.append(ctx.conversation_id)

    async def list_open_conversations(self, ctx: SessionContext) -> ConversationListing:
        if self.list_error:
            raise self.list_error
        return ConversationListing(count=len(self.open_conversations), conversations=list(self.open_conversations))

    async def list_entries(self, ctx: SessionContext) -> list[dict[str, Any]]:
        return list(self.history)

    async def close_conversation(self, ctx: SessionContext) -> None:
        self.closed.append(ctx.conversation_id)
        if self.close_error:
            raise self.close_error

    async def send_message(self, ctx: SessionContext, message: OutboundMessage) -> None:
        if self.send_error:
            raise self.send_error
        self.sent.append(message)


class FakeStream(EventStream):
    def __init__(self) -> None:
        self.handlers: dict[str, EventHandler] = {}
        self.subscribed = False
        self.close_calls = 0
        self.subscribe_error: Exception | None = None
        self.on_error: StreamErrorHandler | None = None
        self.close_error: Exception | None = None

    async def subscribe(
        self,
        ctx: SessionContext,
        handlers: Mapping[str, EventHandler],
        on_error: StreamErrorHandler | None = None,
    ) -> None:
        if self.subscribe_error:
            raise self.subscribe_error
        self.handlers = dict(handlers)
        self.on_error = on_error
        self.subscribed = True

    async def close(self) -> None:
        self.close_calls += 1
        self.subscribed = False
        if self.close_error:
            raise self.close_error

    async def emit(self, event: ServerSentEvent) -> None:
        await self.handlers[event.event](event)


class Recorder:
    """Collects what the session reports to the presentation layer."""

    def __init__(self, session: ConversationSession) -> None:
        self.visibility: list[bool] = []
        self.statuses: list[str] = []
        self.snapshots: list[tuple] = []
        self.ready = 0
        session.on_visibility_change(self.visibility.append)
        session.on_status_change(self.statuses.append)
        session.on_entries_changed(self.snapshots.append)
        session.on_ready(self._on_ready)

    def _on_ready(self) -> None:
        self.ready += 1


def entry_payload(
    conversation_id: str,
    entry_type: str,
    payload: dict[str, Any],
    *,
    identifier: str = "entry-1",
    role: str = "Agent",
    display_name: str = "Agent Smith",
    timestamp: int = 1_700_000_000_000,
) -> dict[str, Any]:
    """Live event data: the entry payload is a JSON string, as the stream sends it."""
    return {
        "conversationId": conversation_id,
        "conversationEntry": {
            "identifier": identifier,
            "entryType": entry_type,
            "entryPayload": json.dumps({"entryType": entry_type, **payload}),
            "sender": {"role": role, "subject": "subject-1"},
            "senderDisplayName": display_name,
            "transcriptedTimestamp": timestamp,
        },
    }


def message_event(
    conversation_id: str,
    text: str = "Hello",
    *,
    identifier: str = "entry-1",
    message_id: str = "message-1",
    role: str = "Agent",
    event_id: str | None = None,
) -> ServerSentEvent:
    data = entry_payload(
        conversation_id,
        "Message",
        {
            "abstractMessage": {
                "messageType": "StaticContentMessage",
                "id": message_id,
                "staticContent": {"formatType": "Text", "text": text},
            }
        },
        identifier=identifier,
        role=role,
    )
    return ServerSentEvent(event="CONVERSATION_MESSAGE", data=json.dumps(data), id=event_id)


def routing_event(
    conversation_id: str,
    routing_type: str,
    failure_type: str,
    *,
    identifier: str = "routing-1",
    event_id: str | None = None,
) -> ServerSentEvent:
    data = entry_payload(
        conversation_id,
        "RoutingResult",
        {"routingType": routing_type, "failureType": failure_type, "id": identifier},
        identifier=identifier,
        role="System",
    )
    return ServerSentEvent(event="CONVERSATION_ROUTING_RESULT", data=json.dumps(data), id=event_id)


def participant_event(conversation_id: str, *, identifier: str = "participant-1") -> ServerSentEvent:
    data = entry_payload(
        conversation_id,
        "ParticipantChanged",
        {"entries": [{"operation": "add", "displayName": "Agent Smith", "participant": {"role": "Agent"}}]},
        identifier=identifier,
        role="System",
    )
    return ServerSentEvent(event="CONVERSATION_PARTICIPANT_CHANGED", data=json.dumps(data))


def close_event(conversation_id: str, event_id: str | None = None) -> ServerSentEvent:
    return ServerSentEvent(
        event="CONVERSATION_CLOSE_CONVERSATION",
        data=json.dumps({"conversationId": conversation_id}),
        id=event_id,
    )


def acknowledgement_event(
    conversation_id: str,
    kind: str,
    acknowledged_identifier: str,
    timestamp: int,
    *,
    identifier: str = "ack-1",
) -> ServerSentEvent:
    entry_type = "DeliveryAcknowledgement" if kind == "delivery" else "ReadAcknowledgement"
    event_name = (
        "CONVERSATION_DELIVERY_ACKNOWLEDGEMENT" if kind == "delivery" else "CONVERSATION_READ_ACKNOWLEDGEMENT"
    )
    data = entry_payload(
        conversation_id,
        entry_type,
        {
            "acknowledgedConversationEntryIdentifier": acknowledged_identifier,
            "acknowledgementTimestamp": timestamp,
        },
        identifier=identifier,
        role="Agent",
    )
    return ServerSentEvent(event=event_name, data=json.dumps(data))


def history_entry(
    text: str,
    *,
    identifier: str,
    role: str = "Agent",
    timestamp: int = 1_700_000_000_000,
) -> dict[str, Any]:
    """History entries carry the entry payload already decoded."""
    return {
        "identifier": identifier,
        "entryType": "Message",
        "entryPayload": {
            "entryType": "Message",
            "abstractMessage": {
                "messageType": "StaticContentMessage",
                "id": f"message-{identifier}",
                "staticContent": {"formatType": "Text", "text": text},
            },
        },
        "sender": {"role": role},
        "senderDisplayName": "Agent Smith" if role == "Agent" else "Guest",
        "transcriptedTimestamp": timestamp,
    }


@pytest.fixture
def access() -> FakeAccess:
    return FakeAccess()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def stream() -> FakeStream:
    return FakeStream()


@pytest.fixture
def session(access: FakeAccess, transport: FakeTransport, stream: FakeStream) -> ConversationSession:
    return ConversationSession(access, transport, stream)


@pytest.fixture
def recorder(session: ConversationSession) -> Recorder:
    return Recorder(session)
