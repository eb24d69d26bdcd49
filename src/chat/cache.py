"""In-memory conversation cache.

The cache is the view callers render: an ordered message list per
conversation. It is shared across sessions, but only the session that
has claimed a conversation may touch that conversation's in-progress
assistant entry.

Entries inserted locally (optimistic user messages, the in-progress
assistant entry, recovery entries) are tracked as local-only until an
authoritative snapshot replaces them.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from src.chat.models import Message, MessageRole
from src.exceptions import CacheOwnershipError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from src.chat.models import Conversation, ConversationSnapshot

logger = logging.getLogger(__name__)


@dataclass
class _CachedConversation:
    conversation: Conversation | None = None
    messages: list[Message] = field(default_factory=list)
    local_ids: set[str] = field(default_factory=set)
    in_progress_id: str | None = None
    owner: object | None = None
    recovery_signatures: set[tuple[str, str]] = field(default_factory=set)

    def index_of(self, message_id: str) -> int | None:
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                return index
        return None


class ConversationCache:
    """Ordered message lists keyed by conversation id.

    Reads return copies, so callers cannot mutate cached state.
    """

    def __init__(self) -> None:
        self._conversations: dict[str, _CachedConversation] = {}

    def _entry(self, conversation_id: str) -> _CachedConversation:
        entry = self._conversations.get(conversation_id)
        if entry is None:
            entry = _CachedConversation()
            self._conversations[conversation_id] = entry
        return entry

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def messages(self, conversation_id: str) -> list[Message]:
        """Return the ordered message list for a conversation."""
        entry = self._conversations.get(conversation_id)
        if entry is None:
            return []
        return [message.model_copy(deep=True) for message in entry.messages]

    def get_message(self, conversation_id: str, message_id: str) -> Message | None:
        entry = self._conversations.get(conversation_id)
        if entry is None:
            return None
        index = entry.index_of(message_id)
        return None if index is None else entry.messages[index].model_copy(deep=True)

    def message_ids(self, conversation_id: str) -> frozenset[str]:
        entry = self._conversations.get(conversation_id)
        if entry is None:
            return frozenset()
        return frozenset(message.id for message in entry.messages)

    def conversation(self, conversation_id: str) -> Conversation | None:
        entry = self._conversations.get(conversation_id)
        return None if entry is None else entry.conversation

    def in_progress_id(self, conversation_id: str) -> str | None:
        entry = self._conversations.get(conversation_id)
        return None if entry is None else entry.in_progress_id

    def is_local(self, conversation_id: str, message_id: str) -> bool:
        """Whether a message exists only locally (not yet confirmed)."""
        entry = self._conversations.get(conversation_id)
        return entry is not None and message_id in entry.local_ids

    # -------------------------------------------------------------------------
    # Ownership
    # -------------------------------------------------------------------------

    def claim(self, conversation_id: str, owner: object) -> None:
        """Make ``owner`` the only writer of the conversation's in-progress entry.

        An entry left in progress by a previous owner is frozen and
        marked as interrupted.
        """
        entry = self._entry(conversation_id)
        if entry.owner is not None and entry.owner is not owner and entry.in_progress_id:
            index = entry.index_of(entry.in_progress_id)
            if index is not None:
                previous = entry.messages[index]
                previous.metadata = {**previous.metadata, "streaming": False, "interrupted": True}
                logger.info(
                    "Conversation %s: in-progress message %s interrupted by a new session",
                    conversation_id,
                    previous.id,
                )
        entry.owner = owner
        entry.in_progress_id = None

    def release(self, conversation_id: str, owner: object) -> None:
        """Give up ownership. A no-op if ``owner`` is not the current owner."""
        entry = self._conversations.get(conversation_id)
        if entry is not None and entry.owner is owner:
            entry.owner = None
            entry.in_progress_id = None

    def is_owner(self, conversation_id: str, owner: object) -> bool:
        entry = self._conversations.get(conversation_id)
        return entry is not None and entry.owner is owner

    def _require_owner(self, conversation_id: str, owner: object) -> _CachedConversation:
        entry = self._conversations.get(conversation_id)
        if entry is None or entry.owner is not owner:
            raise CacheOwnershipError(
                f"Session does not own the in-progress message of conversation {conversation_id}"
            )
        return entry

    # -------------------------------------------------------------------------
    # Local mutations
    # -------------------------------------------------------------------------

    def apply_optimistic_user_message(
        self,
        conversation_id: str,
        content: str,
        *,
        message_id: str | None = None,
    ) -> Message:
        """Append the user's message immediately, before any confirmation."""
        entry = self._entry(conversation_id)
        message = Message(
            id=message_id or f"local-{uuid4()}",
            role=MessageRole.USER,
            content=content,
            conversation_id=conversation_id,
            metadata={"optimistic": True},
        )
        entry.messages.append(message)
        entry.local_ids.add(message.id)
        return message.model_copy(deep=True)

    def start_assistant_message(
        self,
        conversation_id: str,
        message_id: str,
        *,
        owner: object,
    ) -> Message:
        """Insert the empty in-progress assistant placeholder."""
        entry = self._require_owner(conversation_id, owner)
        index = entry.index_of(message_id)
        if index is None:
            message = Message(
                id=message_id,
                role=MessageRole.ASSISTANT,
                content="",
                conversation_id=conversation_id,
                metadata={"streaming": True},
            )
            entry.messages.append(message)
            entry.local_ids.add(message_id)
        else:
            message = entry.messages[index]
        entry.in_progress_id = message_id
        return message.model_copy(deep=True)

    def rekey_in_progress(self, conversation_id: str, new_id: str, *, owner: object) -> None:
        """Move the in-progress entry to ``new_id`` without duplicating it."""
        entry = self._require_owner(conversation_id, owner)
        old_id = entry.in_progress_id
        if old_id is None or old_id == new_id:
            return

        index = entry.index_of(old_id)
        clash = entry.index_of(new_id)
        if clash is not None and clash != index:
            # Ids are unique per conversation: the existing entry is the same message
            logger.warning(
                "Conversation %s: dropping stale entry %s while re-keying %s",
                conversation_id,
                new_id,
                old_id,
            )
            del entry.messages[clash]
            entry.local_ids.discard(new_id)
            index = entry.index_of(old_id)

        if index is not None:
            entry.messages[index].id = new_id
        entry.local_ids.discard(old_id)
        entry.local_ids.add(new_id)
        entry.in_progress_id = new_id

    def apply_content_delta(
        self,
        conversation_id: str,
        effective_id: str,
        content: str,
        *,
        owner: object,
    ) -> Message:
        """Append ``content`` to the in-progress assistant entry.

        The entry is keyed by ``effective_id``. If the effective id has
        changed since the entry was created it is re-keyed in place.
        """
        entry = self._require_owner(conversation_id, owner)
        if entry.in_progress_id != effective_id:
            if entry.in_progress_id is None:
                self.start_assistant_message(conversation_id, effective_id, owner=owner)
            else:
                self.rekey_in_progress(conversation_id, effective_id, owner=owner)

        index = entry.index_of(effective_id)
        if index is None:
            self.start_assistant_message(conversation_id, effective_id, owner=owner)
            index = entry.index_of(effective_id)
        assert index is not None

        message = entry.messages[index]
        message.content += content
        return message.model_copy(deep=True)

    def finalize_in_progress(
        self,
        conversation_id: str,
        *,
        owner: object,
        metadata: dict[str, Any] | None = None,
    ) -> Message | None:
        """Stop streaming the in-progress entry and merge ``metadata`` into it."""
        entry = self._require_owner(conversation_id, owner)
        if entry.in_progress_id is None:
            return None
        index = entry.index_of(entry.in_progress_id)
        entry.in_progress_id = None
        if index is None:
            return None
        message = entry.messages[index]
        message.metadata = {**message.metadata, "streaming": False, **(metadata or {})}
        return message.model_copy(deep=True)

    def discard_in_progress(self, conversation_id: str, *, owner: object) -> None:
        """Remove the in-progress entry entirely."""
        entry = self._require_owner(conversation_id, owner)
        if entry.in_progress_id is None:
            return
        index = entry.index_of(entry.in_progress_id)
        if index is not None:
            del entry.messages[index]
        entry.local_ids.discard(entry.in_progress_id)
        entry.in_progress_id = None

    # -------------------------------------------------------------------------
    # Authoritative merge
    # -------------------------------------------------------------------------

    def adopt_snapshot(
        self,
        conversation_id: str,
        snapshot: ConversationSnapshot,
        *,
        known_ids: frozenset[str] = frozenset(),
    ) -> None:
        """Replace the conversation with the authoritative snapshot.

        Local-only entries survive, after the snapshot's messages and in
        their original order, unless the snapshot holds a message with the
        same id, or a message with the same role and content whose id is
        not in ``known_ids``. Each snapshot message confirms at most one
        local entry. An in-progress entry always survives.
        """
        entry = self._entry(conversation_id)
        adopted: list[Message] = []
        seen_ids: set[str] = set()
        for message in snapshot.messages:
            if message.id in seen_ids:
                logger.warning(
                    "Conversation %s: duplicate message id %s in snapshot",
                    conversation_id,
                    message.id,
                )
                continue
            seen_ids.add(message.id)
            adopted.append(message.model_copy(deep=True))

        # Messages that existed before the exchange cannot confirm a local entry
        unclaimed = Counter(
            (message.role, message.content) for message in adopted if message.id not in known_ids
        )
        survivors: list[Message] = []
        for message in entry.messages:
            if message.id not in entry.local_ids or message.id in seen_ids:
                continue
            pair = (message.role, message.content)
            if message.id != entry.in_progress_id and unclaimed[pair] > 0:
                unclaimed[pair] -= 1
                continue
            survivors.append(message)

        entry.conversation = snapshot.conversation
        entry.messages = adopted + survivors
        entry.local_ids = {message.id for message in survivors}
        if entry.in_progress_id is not None and entry.in_progress_id not in entry.local_ids:
            entry.in_progress_id = None

    def has_recovery(self, conversation_id: str, signature: tuple[str, str]) -> bool:
        entry = self._conversations.get(conversation_id)
        return entry is not None and signature in entry.recovery_signatures

    def append_recovery(
        self,
        conversation_id: str,
        message: Message,
        *,
        signature: tuple[str, str],
    ) -> bool:
        """Append a recovery entry unless one with its id is already present.

        A signature that was recorded before but whose entry has since been
        merged away is restored, so the conversation never ends up without
        the recovered message.

        Returns:
            True if the entry was appended, False if it was already present.
        """
        entry = self._entry(conversation_id)
        if entry.index_of(message.id) is not None:
            logger.debug(
                "Conversation %s: %s already present, not appending recovery entry",
                conversation_id,
                message.id,
            )
            entry.recovery_signatures.add(signature)
            return False
        if signature in entry.recovery_signatures:
            logger.info(
                "Conversation %s: recovery entry %s was merged away, restoring it",
                conversation_id,
                message.id,
            )
        entry.messages.append(message.model_copy(deep=True))
        entry.local_ids.add(message.id)
        entry.recovery_signatures.add(signature)
        return True

    def load(self, conversation_id: str, messages: Iterable[Message]) -> None:
        """Seed a conversation with already-confirmed messages."""
        entry = self._entry(conversation_id)
        entry.messages = [message.model_copy(deep=True) for message in messages]
        entry.local_ids = set()
        entry.in_progress_id = None
