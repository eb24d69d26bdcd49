"""Conversation and message models.

Pydantic models shared by the cache, the reconciler and the chat API
client. Field names are snake_case; the camelCase names used on the wire
are accepted as validation aliases.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(UTC)


class MessageRole(str, Enum):
    """Author of a message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Message(BaseModel):
    """A single message within a conversation."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=False)

    id: str = Field(description="Message identifier")
    role: MessageRole = Field(description="Message author: user, assistant, system")
    content: str = Field(default="", description="Message text")
    created_at: datetime = Field(
        default_factory=_utcnow,
        validation_alias=AliasChoices("created_at", "createdAt"),
        description="Creation timestamp",
    )
    conversation_id: str = Field(
        default="",
        validation_alias=AliasChoices("conversation_id", "conversationId"),
        description="Parent conversation ID",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional message metadata",
    )

    @property
    def is_recovered(self) -> bool:
        """Whether this entry was synthesized locally after a missing row."""
        return bool(self.metadata.get("recovered"))


class Conversation(BaseModel):
    """A conversation header (the messages are held separately)."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str = ""
    owner_id: str = Field(
        default="",
        validation_alias=AliasChoices("owner_id", "ownerId", "userId", "user_id"),
    )
    created_at: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("created_at", "createdAt"),
    )
    updated_at: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("updated_at", "updatedAt"),
    )


class ConversationSnapshot(BaseModel):
    """The authoritative state of a conversation as returned by the backend."""

    conversation: Conversation
    messages: list[Message] = Field(default_factory=list)
