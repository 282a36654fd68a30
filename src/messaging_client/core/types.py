"""Shared types and enumerations."""

from __future__ import annotations

from enum import IntEnum, StrEnum


class ConversationStatus(StrEnum):
    NOT_STARTED = "NOT_STARTED"
    OPENED = "OPENED"
    CLOSED = "CLOSED"


class EntryType(StrEnum):
    MESSAGE = "Message"
    PARTICIPANT_CHANGED = "ParticipantChanged"
    ROUTING_RESULT = "RoutingResult"
    DELIVERY_ACKNOWLEDGEMENT = "DeliveryAcknowledgement"
    READ_ACKNOWLEDGEMENT = "ReadAcknowledgement"


class EventType(StrEnum):
    """Server-sent event names the client subscribes to."""

    CONVERSATION_MESSAGE = "CONVERSATION_MESSAGE"
    CONVERSATION_ROUTING_RESULT = "CONVERSATION_ROUTING_RESULT"
    CONVERSATION_PARTICIPANT_CHANGED = "CONVERSATION_PARTICIPANT_CHANGED"
    CONVERSATION_CLOSE_CONVERSATION = "CONVERSATION_CLOSE_CONVERSATION"
    CONVERSATION_DELIVERY_ACKNOWLEDGEMENT = "CONVERSATION_DELIVERY_ACKNOWLEDGEMENT"
    CONVERSATION_READ_ACKNOWLEDGEMENT = "CONVERSATION_READ_ACKNOWLEDGEMENT"


class RoutingType(StrEnum):
    INITIAL = "Initial"
    TRANSFER = "Transfer"


class RoutingFailureType(StrEnum):
    NO_ERROR = "None"
    SUBMISSION_ERROR = "SubmissionError"
    ROUTING_ERROR = "RoutingError"
    UNKNOWN_ERROR = "UnknownError"


class ParticipantRole(StrEnum):
    END_USER = "EndUser"
    AGENT = "Agent"
    CHATBOT = "Chatbot"
    SYSTEM = "System"


class AcknowledgementState(IntEnum):
    """Ordered so that a later state compares greater than an earlier one."""

    SENT = 1
    DELIVERED = 2
    READ = 3
