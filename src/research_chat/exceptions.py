"""Domain exception hierarchy for the research chat client."""

from __future__ import annotations


class ResearchChatError(RuntimeError):
    """Base class for all domain-level chat errors."""


class ChatConnectionError(ResearchChatError):
    """Raised when the research agent backend cannot be reached."""


class BackendHTTPError(ResearchChatError):
    """Raised when the backend answers with a non-success status code."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SessionCreationError(ResearchChatError):
    """Raised when a chat session could not be created remotely."""


class MissingStreamBodyError(ResearchChatError):
    """Raised when a streaming response carries no readable body."""


class ChatStreamingError(ResearchChatError):
    """Raised when reading the response body fails mid-stream."""


class ExchangeCancelledError(ResearchChatError):
    """Raised when the in-flight exchange was stopped by the user."""


class StreamConsumedError(ResearchChatError):
    """Raised when a stream reader is iterated a second time."""


class InvalidStateTransition(ResearchChatError):
    """Raised when the session state machine rejects a transition."""


class ConfigValidationError(ResearchChatError):
    """Raised when configuration cannot be validated safely."""
