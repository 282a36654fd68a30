"""Conversation session: lifecycle, event reconciliation and cleanup."""

from __future__ import annotations

import copy
import uuid
from dataclasses import replace
from typing import Any, Callable, Optional, Sequence

from messaging_client.core.errors import (
    ErrorSeverity,
    EventParseError,
    SessionStateError,
    classify,
)
from messaging_client.core.session import SessionContext
from messaging_client.core.types import (
    AcknowledgementState,
    ConversationStatus,
    EntryType,
    EventType,
    RoutingFailureType,
    RoutingType,
)
from messaging_client.log import bind_conversation, get_logger
from messaging_client.messaging.base import (
    AccessGrant,
    AccessProvider,
    ConversationTransport,
    EventHandler,
    EventStream,
    OpenConversation,
)
from messaging_client.messaging.models import (
    ConversationEntry,
    OutboundMessage,
    ServerSentEvent,
    create_conversation_entry,
    is_message_from_end_user,
    parse_server_sent_event_data,
)
from messaging_client.storage.session_store import (
    KEY_ACCESS_TOKEN,
    KEY_CONVERSATION_ID,
    KEY_LAST_EVENT_ID,
    SessionStore,
)

logger = get_logger(__name__)

RECOGNIZED_ROUTING_FAILURES = frozenset(failure.value for failure in RoutingFailureType)

_ACKNOWLEDGEMENT_STATES = {
    EntryType.DELIVERY_ACKNOWLEDGEMENT: AcknowledgementState.DELIVERED,
    EntryType.READ_ACKNOWLEDGEMENT: AcknowledgementState.READ,
}


def select_latest_conversation(conversations: Sequence[OpenConversation]) -> OpenConversation:
    """Pick the conversation with the latest start; the first one wins ties."""
    selected = conversations[0]
    for candidate in conversations[1:]:
        if candidate.start_timestamp > selected.start_timestamp:
            selected = candidate
    return selected


class ConversationSession:
    """Owns one conversation from bootstrap to cleanup.

    The session drives three collaborators (access tokens, conversation
    transport, event stream) and keeps the ordered list of entries for the
    current conversation. The presentation layer observes it through the
    ``on_*`` callbacks and only ever receives snapshots of the entries.
    """

    def __init__(
        self,
        access: AccessProvider,
        transport: ConversationTransport,
        stream: EventStream,
        store: Optional[SessionStore] = None,
        ctx: Optional[SessionContext] = None,
        routing_attributes: Optional[dict[str, str]] = None,
        language: Optional[str] = None,
    ):
        self._access = access
        self._transport = transport
        self._stream = stream
        self._store = store
        self._ctx = ctx or SessionContext()
        self._routing_attributes = routing_attributes or {}
        self._language = language
        self._entries: list[ConversationEntry] = []
        self._identifiers: set[str] = set()
        self._cleaned_up = False

        self._visibility_callback: Callable[[bool], None] | None = None
        self._ready_callback: Callable[[], None] | None = None
        self._entries_callback: Callable[[tuple[ConversationEntry, ...]], None] | None = None
        self._status_callback: Callable[[ConversationStatus], None] | None = None

    # Observers
    def on_visibility_change(self, callback: Callable[[bool], None]) -> None:
        """Register the callback that shows (True) or hides (False) the messaging window."""
        self._visibility_callback = callback

    def on_ready(self, callback: Callable[[], None]) -> None:
        self._ready_callback = callback

    def on_entries_changed(self, callback: Callable[[tuple[ConversationEntry, ...]], None]) -> None:
        self._entries_callback = callback

    def on_status_change(self, callback: Callable[[ConversationStatus], None]) -> None:
        self._status_callback = callback

    # State
    @property
    def context(self) -> SessionContext:
        return self._ctx

    @property
    def status(self) -> ConversationStatus:
        return self._ctx.status

    @property
    def conversation_id(self) -> Optional[str]:
        return self._ctx.conversation_id

    @property
    def entries(self) -> tuple[ConversationEntry, ...]:
        return tuple(replace(entry, content=copy.deepcopy(entry.content)) for entry in self._entries)

    @property
    def is_cleaned_up(self) -> bool:
        return self._cleaned_up

    # Bootstrap
    async def start(self, resume: bool) -> bool:
        """Resume or create the conversation, subscribe to events, signal readiness.

        Returns True if the conversation is open and the stream subscribed.
        Any failure runs cleanup and hides the window; nothing is retried.
        """
        try:
            opened = await (self._resume_conversation() if resume else self._start_new_conversation())
            if not opened:
                return False
            if self._ctx.status != ConversationStatus.OPENED:
                logger.info("bootstrap_result_discarded", status=self._ctx.status)
                return False
            await self._stream.subscribe(self._ctx, self._event_handlers(), on_error=self.handle_messaging_error)
            logger.info("subscribed_to_event_stream", conversation_id=self._ctx.conversation_id)
        except Exception as e:
            logger.error("bootstrap_failed", resume=resume, error=str(e))
            self._log_error(e)
            await self._terminate()
            return False

        if self._ready_callback:
            self._ready_callback()
        return True

    async def _start_new_conversation(self) -> bool:
        """Fetch a fresh access token, then create a new conversation."""
        if self._store is not None and await self._store.has_access_token():
            logger.warning(
                "access_token_exists",
                hint="Resuming the existing conversation instead of creating a new one",
            )
            return await self._resume_conversation()

        grant = await self._access.fetch_fresh_token(self._ctx)
        await self._apply_grant(grant)
        logger.info("fresh_token_applied")

        await self.create_conversation()
        logger.info("new_conversation_initialized", conversation_id=self._ctx.conversation_id)
        return True

    async def _resume_conversation(self) -> bool:
        """Resume the most recent open conversation.

        1. Fetch a continuation access token.
        2. List open conversations and adopt the one that started last.
        3. Replay its entries oldest first through the reconciliation path.
        """
        await self._restore_persisted()
        grant = await self._access.fetch_continuation_token(self._ctx)
        await self._apply_grant(grant)

        listing = await self._transport.list_open_conversations(self._ctx)
        if listing.count <= 0 or not listing.conversations:
            logger.info("no_open_conversations")
            await self._terminate()
            return False

        if len(listing.conversations) > 1:
            logger.warning(
                "multiple_open_conversations",
                count=len(listing.conversations),
                hint="Loading the conversation with the latest startTimestamp",
            )
        selected = select_latest_conversation(listing.conversations)

        self._ctx.adopt(selected.conversation_id)
        bind_conversation(selected.conversation_id)
        await self._persist(KEY_CONVERSATION_ID, selected.conversation_id)
        self._set_status(ConversationStatus.OPENED)
        self._show(True)

        history = await self._transport.list_entries(self._ctx)
        for raw in reversed(history):
            self._replay_entry(raw)
        logger.info("conversation_resumed", conversation_id=selected.conversation_id, entries=len(self._entries))
        return True

    async def create_conversation(self) -> str:
        """Create a new conversation under a locally generated id."""
        if self._ctx.status == ConversationStatus.OPENED:
            raise SessionStateError("Cannot create a new conversation while a conversation is currently open.")
        if self._ctx.status == ConversationStatus.CLOSED:
            raise SessionStateError("Conversation session is closed; start a new session instead.")

        conversation_id = str(uuid.uuid4())
        self._ctx.adopt(conversation_id)
        bind_conversation(conversation_id)
        await self._persist(KEY_CONVERSATION_ID, conversation_id)

        await self._transport.create_conversation(self._ctx)
        logger.info("conversation_created", conversation_id=conversation_id)
        self._set_status(ConversationStatus.OPENED)
        self._show(True)
        return conversation_id

    async def _restore_persisted(self) -> None:
        if self._store is None:
            return
        persisted = await self._store.load()
        if not self._ctx.access_token:
            self._ctx.access_token = persisted.access_token
        self._ctx.advance_cursor(persisted.last_event_id)

    async def _apply_grant(self, grant: AccessGrant) -> None:
        self._ctx.access_token = grant.token
        if grant.configuration:
            self._ctx.deployment_configuration = grant.configuration
        await self._persist(KEY_ACCESS_TOKEN, grant.token)
        await self._advance_cursor(grant.last_event_id)

    # Event reconciliation
    def _event_handlers(self) -> dict[str, EventHandler]:
        return {event_type.value: self.handle_event for event_type in EventType}

    async def handle_event(self, event: ServerSentEvent) -> None:
        """Reconcile one stream event. Never raises."""
        try:
            await self._advance_cursor(event.id)

            try:
                event_type = EventType(event.event)
            except ValueError:
                logger.info("unrecognized_event_type", event_name=event.event)
                return

            match event_type:
                case EventType.CONVERSATION_MESSAGE:
                    self._on_message(event)
                case EventType.CONVERSATION_ROUTING_RESULT:
                    self._on_routing_result(event)
                case EventType.CONVERSATION_PARTICIPANT_CHANGED:
                    self._on_participant_changed(event)
                case EventType.CONVERSATION_CLOSE_CONVERSATION:
                    self._on_close_conversation(event)
                case (
                    EventType.CONVERSATION_DELIVERY_ACKNOWLEDGEMENT
                    | EventType.CONVERSATION_READ_ACKNOWLEDGEMENT
                ):
                    self._on_acknowledgement(event)
        except EventParseError as e:
            logger.warning("event_parse_failed", event_name=event.event, error=e.message)
        except Exception as e:
            logger.error("event_handling_failed", event_name=event.event, error=str(e))

    def _entry_for_current_conversation(self, data: dict[str, Any]) -> Optional[ConversationEntry]:
        entry = create_conversation_entry(data, conversation_id=self._ctx.conversation_id)
        if self._ctx.conversation_id is None or entry.conversation_id != self._ctx.conversation_id:
            logger.info(
                "entry_for_other_conversation_ignored",
                current=self._ctx.conversation_id,
                received=entry.conversation_id,
            )
            return None
        return entry

    def _on_message(self, event: ServerSentEvent) -> None:
        entry = self._entry_for_current_conversation(parse_server_sent_event_data(event))
        if entry is not None:
            self._reconcile_message(entry)

    def _on_routing_result(self, event: ServerSentEvent) -> None:
        entry = self._entry_for_current_conversation(parse_server_sent_event_data(event))
        if entry is not None:
            self._reconcile_routing_result(entry)

    def _on_participant_changed(self, event: ServerSentEvent) -> None:
        entry = self._entry_for_current_conversation(parse_server_sent_event_data(event))
        if entry is not None:
            self._add_entry(entry)

    def _on_close_conversation(self, event: ServerSentEvent) -> None:
        data = parse_server_sent_event_data(event)
        if self._ctx.conversation_id is not None and data.get("conversationId") == self._ctx.conversation_id:
            self._set_status(ConversationStatus.CLOSED)
        else:
            logger.info(
                "close_for_other_conversation_ignored",
                current=self._ctx.conversation_id,
                received=data.get("conversationId"),
            )

    def _on_acknowledgement(self, event: ServerSentEvent) -> None:
        entry = self._entry_for_current_conversation(parse_server_sent_event_data(event))
        if entry is not None:
            self._reconcile_acknowledgement(entry)

    def _replay_entry(self, raw: dict[str, Any]) -> None:
        """Feed one history entry through the same path as live events."""
        try:
            entry = self._entry_for_current_conversation(raw)
        except EventParseError as e:
            logger.warning("history_entry_parse_failed", error=e.message)
            return
        if entry is None:
            return

        match entry.entry_type:
            case EntryType.MESSAGE:
                self._reconcile_message(entry)
            case EntryType.ROUTING_RESULT:
                self._reconcile_routing_result(entry)
            case EntryType.PARTICIPANT_CHANGED:
                self._add_entry(entry)
            case EntryType.DELIVERY_ACKNOWLEDGEMENT | EntryType.READ_ACKNOWLEDGEMENT:
                self._reconcile_acknowledgement(entry)
            case _:
                logger.info("unrecognized_entry_type", entry_type=entry.entry_type)

    def _reconcile_message(self, entry: ConversationEntry) -> None:
        entry.is_end_user_message = is_message_from_end_user(entry)
        if entry.is_end_user_message:
            entry.acknowledge(AcknowledgementState.SENT, entry.transcripted_timestamp)
            logger.debug("end_user_message_received")
        else:
            logger.debug("message_received", actor_type=entry.actor_type)
        self._add_entry(entry)

    def _reconcile_routing_result(self, entry: ConversationEntry) -> None:
        failure_type = entry.failure_type
        match entry.message_type:
            case RoutingType.INITIAL:
                if failure_type in RECOGNIZED_ROUTING_FAILURES:
                    self._add_entry(entry)
                else:
                    logger.error("unrecognized_initial_routing_failure_type", failure_type=failure_type)
            case RoutingType.TRANSFER:
                # Only a successful transfer has anything to show.
                if failure_type == RoutingFailureType.NO_ERROR:
                    self._add_entry(entry)
                elif failure_type not in RECOGNIZED_ROUTING_FAILURES:
                    logger.error("unrecognized_transfer_routing_failure_type", failure_type=failure_type)
            case _:
                logger.error("unrecognized_routing_type", routing_type=entry.message_type)

    def _reconcile_acknowledgement(self, entry: ConversationEntry) -> None:
        if self._ctx.status == ConversationStatus.CLOSED:
            logger.debug("acknowledgement_after_close_discarded")
            return
        state = _ACKNOWLEDGEMENT_STATES[EntryType(entry.entry_type)]
        target = entry.acknowledged_identifier
        for existing in reversed(self._entries):
            if target and target in (existing.identifier, existing.message_id):
                if existing.acknowledge(state, entry.acknowledgement_timestamp):
                    self._publish()
                return
        logger.debug("acknowledged_entry_not_found", identifier=target)

    def _add_entry(self, entry: ConversationEntry) -> bool:
        if self._cleaned_up or self._ctx.status == ConversationStatus.CLOSED:
            logger.debug("entry_after_close_discarded", entry_type=entry.entry_type)
            return False
        if entry.identifier:
            if entry.identifier in self._identifiers:
                logger.debug("duplicate_entry_ignored", identifier=entry.identifier)
                return False
            self._identifiers.add(entry.identifier)
        self._entries.append(entry)
        self._publish()
        return True

    async def _advance_cursor(self, event_id: Optional[str]) -> None:
        if self._cleaned_up:
            return
        previous = self._ctx.last_event_id
        self._ctx.advance_cursor(event_id)
        if self._ctx.last_event_id != previous:
            await self._persist(KEY_LAST_EVENT_ID, self._ctx.last_event_id)

    # Commands
    async def end_session(self) -> bool:
        """Close the open conversation. Cleanup runs whether or not the call succeeds."""
        if self._ctx.status != ConversationStatus.OPENED:
            logger.warning("end_session_ignored", status=self._ctx.status)
            return False

        severity = ErrorSeverity.NON_FATAL
        try:
            await self._transport.close_conversation(self._ctx)
            logger.info("conversation_ended", conversation_id=self._ctx.conversation_id)
        except Exception as e:
            logger.error("end_session_failed", conversation_id=self._ctx.conversation_id, error=str(e))
            severity = self._log_error(e)
        finally:
            await self.cleanup()

        if severity == ErrorSeverity.FATAL:
            self._show(False)
        return True

    def dismiss(self) -> bool:
        """Hide the messaging window; only allowed once closed or before start."""
        if self._ctx.status in (ConversationStatus.CLOSED, ConversationStatus.NOT_STARTED):
            self._show(False)
            return True
        logger.warning("dismiss_refused", status=self._ctx.status)
        return False

    async def send_message(self, text: str, in_reply_to_message_id: Optional[str] = None) -> OutboundMessage:
        """Send a text message. The message is not added to the entries here."""
        if self._ctx.status != ConversationStatus.OPENED:
            raise SessionStateError(f"Cannot send a message while the conversation is {self._ctx.status}")

        message = OutboundMessage(
            message_id=str(uuid.uuid4()),
            text=text,
            in_reply_to_message_id=in_reply_to_message_id,
            routing_attributes=self._routing_attributes,
            language=self._language,
        )
        try:
            await self._transport.send_message(self._ctx, message)
        except Exception as e:
            await self.handle_messaging_error(e)
            raise
        logger.info("message_sent", conversation_id=self._ctx.conversation_id, message_id=message.message_id)
        return message

    async def send_choice(self, entry: ConversationEntry, index: int) -> OutboundMessage:
        """Answer a choices message with the title of option *index*."""
        titles = entry.choice_option_titles
        if not 0 <= index < len(titles):
            raise ValueError(f"Choice {index} out of range, message has {len(titles)} options")
        return await self.send_message(titles[index], in_reply_to_message_id=entry.message_id)

    # Errors and cleanup
    async def handle_messaging_error(self, error: BaseException) -> ErrorSeverity:
        """Log a failed call; fatal errors end the session and hide the window."""
        severity = self._log_error(error)
        if severity == ErrorSeverity.FATAL:
            await self._terminate()
        return severity

    def _log_error(self, error: BaseException) -> ErrorSeverity:
        message = getattr(error, "message", None) or str(error)
        match getattr(error, "status_code", None):
            case 401:
                logger.error("unauthenticated_request", error=message)
            case 400:
                logger.error("invalid_request_parameters", error=message)
            case 429:
                logger.warning("too_many_requests", error=message)
            case 500:
                logger.error("server_error", error=message)
            case None:
                logger.error("messaging_error", error_type=type(error).__name__, error=message)
            case status_code:
                logger.error("unknown_http_error", status_code=status_code, error=message)
        return classify(error)

    async def cleanup(self) -> None:
        """Close the stream, drop persisted and in-memory data, force CLOSED.

        Safe to call any number of times; never raises.
        """
        try:
            await self._stream.close()
            logger.debug("event_stream_closed")
        except Exception as e:
            logger.error("event_stream_close_failed", error=str(e))

        if self._store is not None:
            try:
                await self._store.clear()
            except Exception as e:
                logger.error("session_store_clear_failed", error=str(e))

        self._entries.clear()
        self._identifiers.clear()
        previous = self._ctx.status
        self._ctx.reset()
        self._cleaned_up = True

        if previous != ConversationStatus.CLOSED:
            logger.info("conversation_status_changed", status=ConversationStatus.CLOSED)
            self._notify_status(ConversationStatus.CLOSED)
        self._publish()
        logger.info("messaging_data_cleaned_up", conversation_id=self._ctx.conversation_id)

    async def aclose(self) -> None:
        """Deactivate the session."""
        await self.cleanup()

    async def _terminate(self) -> None:
        await self.cleanup()
        self._show(False)

    # Helpers
    def _set_status(self, status: ConversationStatus) -> None:
        if self._ctx.transition(status):
            logger.info("conversation_status_changed", status=status, conversation_id=self._ctx.conversation_id)
            self._notify_status(status)

    def _notify_status(self, status: ConversationStatus) -> None:
        if self._status_callback:
            self._status_callback(status)

    def _show(self, visible: bool) -> None:
        if self._visibility_callback:
            self._visibility_callback(visible)

    def _publish(self) -> None:
        if self._entries_callback:
            self._entries_callback(self.entries)

    async def _persist(self, key: str, value: Optional[str]) -> None:
        if self._store is not None:
            await self._store.set(key, value)
