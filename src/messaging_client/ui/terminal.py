"""Plain-text presentation of a conversation for the terminal."""

from __future__ import annotations

import sys
from datetime import datetime
from typing import Optional, TextIO

from messaging_client.core.conversation import ConversationSession
from messaging_client.core.errors import MessagingError
from messaging_client.core.types import (
    AcknowledgementState,
    ConversationStatus,
    EntryType,
    RoutingFailureType,
    RoutingType,
)
from messaging_client.messaging.models import ConversationEntry

HELP_TEXT = "Type a message and press Enter. /<n> picks choice n, /end ends the conversation, /quit closes the window."


def format_time(timestamp: Optional[int]) -> str:
    """Format epoch milliseconds as local HH:MM."""
    if timestamp is None:
        return ""
    return datetime.fromtimestamp(timestamp / 1000).strftime("%H:%M")


def acknowledgement_text(entry: ConversationEntry) -> str:
    """Delivery status prefix shown on the end user's own messages."""
    ack = entry.acknowledgement
    if not entry.is_end_user_message or ack is None:
        return ""
    match ack.state:
        case AcknowledgementState.READ:
            return f"Read at {format_time(ack.timestamp)} • "
        case AcknowledgementState.DELIVERED:
            return f"Delivered at {format_time(ack.timestamp)} • "
        case _:
            return "Sent • "


def sender_text(entry: ConversationEntry) -> str:
    sender = "You" if entry.is_end_user_message else (entry.actor_name or "Agent")
    return f"{sender} at {format_time(entry.transcripted_timestamp)}"


def format_entry(entry: ConversationEntry) -> str:
    match entry.entry_type:
        case EntryType.MESSAGE:
            lines = [f"{acknowledgement_text(entry)}{sender_text(entry)}", f"  {entry.text}"]
            for number, title in enumerate(entry.choice_option_titles, start=1):
                lines.append(f"    [{number}] {title}")
            return "\n".join(lines)
        case EntryType.PARTICIPANT_CHANGED:
            changes = []
            for change in entry.content.get("entries") or []:
                name = change.get("displayName") or (change.get("participant") or {}).get("role", "Someone")
                verb = "joined" if change.get("operation") == "add" else "left"
                changes.append(f"-- {name} {verb} the conversation --")
            return "\n".join(changes) or "-- Participants changed --"
        case EntryType.ROUTING_RESULT:
            at = format_time(entry.transcripted_timestamp)
            if entry.message_type == RoutingType.TRANSFER:
                return f"-- Transfer requested at {at} --"
            if entry.failure_type == RoutingFailureType.NO_ERROR:
                return f"-- Conversation routed at {at} --"
            reason = entry.content.get("reasonForNotRouting") or entry.failure_type
            return f"-- Routing failed: {reason} --"
        case _:
            return f"-- {entry.entry_type} --"


class TerminalView:
    """Writes conversation changes to a text stream as they happen."""

    def __init__(self, out: TextIO | None = None):
        self._out = out or sys.stdout
        self._rendered = 0
        self._acknowledged: dict[str, AcknowledgementState] = {}
        self.visible = False

    def _write(self, text: str) -> None:
        self._out.write(text + "\n")
        self._out.flush()

    def show(self, visible: bool) -> None:
        if visible == self.visible:
            return
        self.visible = visible
        self._write("=== Messaging window opened ===" if visible else "=== Messaging window closed ===")

    def ready(self) -> None:
        self._write(HELP_TEXT)

    def notice(self, text: str) -> None:
        self._write(f"! {text}")

    def render_status(self, status: ConversationStatus) -> None:
        if status == ConversationStatus.CLOSED:
            self._write("-- Conversation ended --")

    def render_entries(self, entries: tuple[ConversationEntry, ...]) -> None:
        """Print entries added since the last call and acknowledgement upgrades."""
        if len(entries) < self._rendered:
            self._rendered = 0
            self._acknowledged.clear()

        for entry in entries[: self._rendered]:
            ack = entry.acknowledgement
            key = entry.identifier or entry.message_id
            if not entry.is_end_user_message or ack is None or key is None:
                continue
            if self._acknowledged.get(key) != ack.state:
                self._acknowledged[key] = ack.state
                self._write(f"  {acknowledgement_text(entry).rstrip(' •')}: {entry.text}")

        for entry in entries[self._rendered:]:
            self._write(format_entry(entry))
            key = entry.identifier or entry.message_id
            if entry.acknowledgement is not None and key is not None:
                self._acknowledged[key] = entry.acknowledgement.state
        self._rendered = len(entries)


def last_choices_entry(entries: tuple[ConversationEntry, ...]) -> Optional[ConversationEntry]:
    for entry in reversed(entries):
        if entry.choice_option_titles:
            return entry
    return None


async def dispatch_input(session: ConversationSession, view: TerminalView, line: str) -> None:
    """Apply one line of user input to the session."""
    text = line.strip()
    if not text:
        return

    if text == "/end":
        if not await session.end_session():
            view.notice("There is no open conversation to end.")
        return

    if text == "/quit":
        if not session.dismiss():
            view.notice("End the conversation with /end before closing the window.")
        return

    if text.startswith("/") and text[1:].isdigit():
        entry = last_choices_entry(session.entries)
        if entry is None:
            view.notice("There are no choices to pick from.")
            return
        try:
            await session.send_choice(entry, int(text[1:]) - 1)
        except ValueError as e:
            view.notice(str(e))
        except MessagingError as e:
            view.notice(f"Choice not sent: {e.message}")
        return

    try:
        await session.send_message(text)
    except MessagingError as e:
        view.notice(f"Message not sent: {e.message}")
