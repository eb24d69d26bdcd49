"""HTTP clients for external collaborators."""

from src.clients.chat_api import (
    ChatAPIClient,
    ChatBackend,
    ConversationFetcher,
    QuerySubmitter,
)

__all__ = [
    "ChatAPIClient",
    "ChatBackend",
    "ConversationFetcher",
    "QuerySubmitter",
]
