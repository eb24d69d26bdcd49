"""chatsync exception hierarchy.

Base exceptions for all application layers with correlation ID support.

Usage:
    from src.exceptions import StreamError, TransportError

    result = await engine.send_and_wait(conversation_id, query)
    try:
        result.raise_for_error()
    except TransportError as e:
        logger.error("Stream failed (%s): %s", e.correlation_id, e)
"""

import uuid


class ChatSyncError(Exception):
    """Base exception for all chatsync errors.

    Carries a correlation_id for tracing errors across layers.
    """

    def __init__(self, message: str, *, correlation_id: str | None = None):
        self.correlation_id = correlation_id or str(uuid.uuid4())
        super().__init__(message)


class TransportError(ChatSyncError):
    """The response stream could not be opened, or broke mid-flight."""

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs):
        self.status_code = status_code
        super().__init__(message, **kwargs)


class StreamError(ChatSyncError):
    """The server reported an error inside the stream."""

    pass


class ConversationFetchError(ChatSyncError):
    """The authoritative conversation fetch failed."""

    def __init__(self, message: str, *, conversation_id: str | None = None, **kwargs):
        self.conversation_id = conversation_id
        super().__init__(message, **kwargs)


class SessionSupersededError(ChatSyncError):
    """A session was abandoned before it settled."""

    pass


class CacheOwnershipError(ChatSyncError):
    """A session tried to mutate an in-progress entry it does not own."""

    pass


class ValidationError(ChatSyncError):
    """Errors from input validation (beyond Pydantic)."""

    pass


class ConfigurationError(ChatSyncError):
    """Errors from application configuration."""

    pass
