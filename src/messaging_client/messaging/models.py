"""Conversation entry models and server-sent event payload parsing."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional

from messaging_client.core.errors import EventParseError
from messaging_client.core.types import AcknowledgementState, EntryType, ParticipantRole


@dataclass(frozen=True, slots=True)
class ServerSentEvent:
    """One named event delivered by the event stream."""

    event: str
    data: str = ""
    id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class Acknowledgement:
    state: AcknowledgementState
    timestamp: Optional[int] = None  # epoch milliseconds


@dataclass(frozen=True, slots=True)
class OutboundMessage:
    message_id: str
    text: str
    in_reply_to_message_id: Optional[str] = None
    is_new_messaging_session: bool = False
    routing_attributes: dict[str, str] = field(default_factory=dict)
    language: Optional[str] = None


@dataclass
class ConversationEntry:
    conversation_id: str
    entry_type: str
    content: dict[str, Any] = field(default_factory=dict)
    identifier: Optional[str] = None
    message_id: Optional[str] = None
    message_type: Optional[str] = None
    actor_type: Optional[str] = None
    actor_name: Optional[str] = None
    transcripted_timestamp: Optional[int] = None
    is_end_user_message: bool = False
    acknowledgement: Optional[Acknowledgement] = None

    def acknowledge(self, state: AcknowledgementState, timestamp: Optional[int] = None) -> bool:
        """Upgrade the acknowledgement to *state*. Never moves backwards.

        Returns True if the acknowledgement changed.
        """
        current = self.acknowledgement
        if current is not None and state <= current.state:
            return False
        self.acknowledgement = Acknowledgement(state=state, timestamp=timestamp)
        return True

    @property
    def text(self) -> str:
        static = self.content.get("staticContent")
        if isinstance(static, dict):
            return static.get("text", "")
        return self.choices_title

    @property
    def choices_title(self) -> str:
        choices = self.content.get("choices")
        if isinstance(choices, dict):
            return choices.get("text", "")
        return ""

    @property
    def choice_option_titles(self) -> list[str]:
        choices = self.content.get("choices")
        if not isinstance(choices, dict):
            return []
        titles = []
        for item in choices.get("optionItems") or []:
            title = (item.get("titleItem") or {}).get("title")
            if title:
                titles.append(title)
        return titles

    @property
    def failure_type(self) -> Optional[str]:
        return self.content.get("failureType")

    @property
    def acknowledged_identifier(self) -> Optional[str]:
        return self.content.get("acknowledgedConversationEntryIdentifier")

    @property
    def acknowledgement_timestamp(self) -> Optional[int]:
        return self.content.get("acknowledgementTimestamp")


def parse_server_sent_event_data(event: ServerSentEvent) -> dict[str, Any]:
    """Decode the JSON data of a server-sent event."""
    if not event.data:
        raise EventParseError(f"Event {event.event} carries no data")
    try:
        data = json.loads(event.data)
    except json.JSONDecodeError as e:
        raise EventParseError(f"Event {event.event} data is not valid JSON: {e}", details=event.data) from e
    if not isinstance(data, dict):
        raise EventParseError(f"Event {event.event} data is not an object", details=data)
    return data


def create_conversation_entry(
    data: dict[str, Any], conversation_id: Optional[str] = None
) -> ConversationEntry:
    """Build a ConversationEntry from a live event payload or a history entry.

    Live events wrap the entry in ``conversationEntry`` and carry the
    ``entryPayload`` as a JSON string. History entries are the entry object
    itself, with ``entryPayload`` already decoded; *conversation_id* is used
    when the entry does not name its conversation.
    """
    if "conversationEntry" in data:
        raw = data["conversationEntry"]
        entry_conversation_id = data.get("conversationId")
    else:
        raw = data
        entry_conversation_id = data.get("conversationId", conversation_id)

    if not isinstance(raw, dict):
        raise EventParseError("Conversation entry is not an object", details=raw)
    if not entry_conversation_id:
        raise EventParseError("Conversation entry has no conversationId", details=data)

    payload = raw.get("entryPayload")
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            raise EventParseError(f"entryPayload is not valid JSON: {e}", details=raw) from e
    if not isinstance(payload, dict):
        raise EventParseError("entryPayload is missing or not an object", details=raw)

    entry_type = payload.get("entryType") or raw.get("entryType")
    if not entry_type:
        raise EventParseError("Conversation entry has no entryType", details=raw)

    abstract_message = payload.get("abstractMessage")
    if isinstance(abstract_message, dict):
        content = abstract_message
        message_type = abstract_message.get("messageType")
        message_id = abstract_message.get("id")
    else:
        content = payload
        message_type = payload.get("routingType") or payload.get("messageType")
        message_id = payload.get("id")

    sender = raw.get("sender") or {}
    actor_type = sender.get("role")

    return ConversationEntry(
        conversation_id=entry_conversation_id,
        entry_type=entry_type,
        content=content,
        identifier=raw.get("identifier"),
        message_id=message_id,
        message_type=message_type,
        actor_type=actor_type,
        actor_name=raw.get("senderDisplayName") or actor_type,
        transcripted_timestamp=raw.get("transcriptedTimestamp"),
    )


def is_message_from_end_user(entry: ConversationEntry) -> bool:
    return entry.entry_type == EntryType.MESSAGE and entry.actor_type == ParticipantRole.END_USER
