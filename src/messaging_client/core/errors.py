"""Error taxonomy for messaging calls and stream handling."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

# Status codes a caller may recover from; anything else is fatal to the session.
NON_FATAL_STATUS_CODES = frozenset({400, 429, 500})


class ErrorSeverity(StrEnum):
    FATAL = "fatal"
    NON_FATAL = "non_fatal"


class MessagingError(Exception):
    """Base exception for messaging client errors."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details


class AuthError(MessagingError):
    """An access token could not be obtained."""

    def __init__(self, message: str, status_code: int | None = None, details: Any = None):
        super().__init__(message, details)
        self.status_code = status_code


class SessionStateError(MessagingError):
    """An operation is not valid in the current conversation status."""


class TransportError(MessagingError):
    """A messaging API call answered with an HTTP error status."""

    def __init__(self, message: str, status_code: int, details: Any = None):
        super().__init__(message, details)
        self.status_code = status_code

    @property
    def is_fatal(self) -> bool:
        return self.status_code not in NON_FATAL_STATUS_CODES


class EventParseError(MessagingError):
    """A server-sent event payload could not be parsed."""


def classify(error: BaseException) -> ErrorSeverity:
    """Return whether *error* must end the session."""
    if isinstance(error, AuthError):
        return ErrorSeverity.FATAL
    if isinstance(error, TransportError):
        return ErrorSeverity.FATAL if error.is_fatal else ErrorSeverity.NON_FATAL
    return ErrorSeverity.NON_FATAL
