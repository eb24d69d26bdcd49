"""Terminal reconciliation against the authoritative conversation store.

After a stream ends, the conversation is fetched from the backend and the
cache adopts it. The streamed message is looked up by id (persisted id
first), then by exact assistant content. If the store does not have it
yet, one recovery entry carrying the streamed content is appended so the
answer is never lost.

Polling uses a short bounded backoff. When the stream already confirmed
the write (``savedMessageId``) the first fetch is immediate.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from src.chat.models import Message, MessageRole
from src.exceptions import ConversationFetchError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Sequence

    from src.chat.cache import ConversationCache
    from src.chat.models import ConversationSnapshot
    from src.clients.chat_api import ConversationFetcher
    from src.settings import Settings

logger = logging.getLogger(__name__)


class ReconcileOutcome(StrEnum):
    """How the terminal pass settled."""

    MATCHED = "matched"
    RECOVERED = "recovered"
    LOCAL_FALLBACK = "local_fallback"
    EMPTY = "empty"


def recovery_signature(expected_id: str, content: str) -> tuple[str, str]:
    """Signature that makes recovery idempotent for one exchange."""
    return expected_id, hashlib.sha256(content.encode("utf-8")).hexdigest()


def find_match(
    messages: Sequence[Message],
    lookup_ids: Iterable[str],
    expected_content: str,
    *,
    known_ids: frozenset[str] = frozenset(),
) -> Message | None:
    """Find the streamed assistant message in an authoritative list.

    Ids are tried in the given order. The content fallback only considers
    messages that were not already present before the exchange started.
    """
    assistants = [message for message in messages if message.role == MessageRole.ASSISTANT]
    by_id = {message.id: message for message in assistants}
    for key in lookup_ids:
        if key in by_id:
            return by_id[key]

    if expected_content:
        for message in assistants:
            if message.content == expected_content and message.id not in known_ids:
                return message
    return None


class TerminalReconciler:
    """Merge-or-recover pass for a finished stream.

    Args:
        cache: Conversation cache to update.
        fetcher: Source of authoritative conversation snapshots.
        settings: Poll schedule and retry delay.
        sleep: Awaitable sleep, replaceable in tests.
    """

    def __init__(
        self,
        cache: ConversationCache,
        fetcher: ConversationFetcher,
        settings: Settings,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.cache = cache
        self.fetcher = fetcher
        self.settings = settings
        self._sleep = sleep

    async def terminal_reconcile(
        self,
        conversation_id: str,
        expected_id: str,
        expected_content: str,
        *,
        owner: object | None = None,
        alternate_ids: Sequence[str] = (),
        original_streaming_id: str | None = None,
        persisted_id: str | None = None,
        acknowledged: bool = False,
        known_ids: frozenset[str] = frozenset(),
    ) -> ReconcileOutcome:
        """Reconcile the streamed message with the authoritative store.

        Args:
            conversation_id: Conversation to fetch.
            expected_id: Record key of the streamed message.
            expected_content: Full accumulated streamed content.
            owner: Session owning the in-progress entry, if it is still live.
            alternate_ids: Other ids the message may be stored under.
            original_streaming_id: Server streaming id, for recovery metadata.
            persisted_id: Confirmed row id, for recovery metadata.
            acknowledged: Whether the stream confirmed the write.
            known_ids: Message ids present before the exchange started.

        Returns:
            The outcome. Fetch failures and missing rows are absorbed here.
        """
        lookup_ids = [expected_id, *(key for key in alternate_ids if key != expected_id)]
        delays = list(self.settings.reconcile_poll_delays_seconds)
        schedule = [0.0, *delays] if acknowledged else delays

        snapshot: ConversationSnapshot | None = None
        for attempt, delay in enumerate(schedule, start=1):
            if delay > 0:
                await self._sleep(delay)
            try:
                snapshot = await self._fetch_with_retry(conversation_id)
            except ConversationFetchError as e:
                logger.warning(
                    "Conversation %s: authoritative fetch failed after retry (%s)",
                    conversation_id,
                    e,
                )
                if snapshot is None:
                    return self._fall_back_to_local(conversation_id, expected_content, owner)
                break

            match = find_match(snapshot.messages, lookup_ids, expected_content, known_ids=known_ids)
            if match is not None:
                logger.debug(
                    "Conversation %s: streamed message found as %s (attempt %d)",
                    conversation_id,
                    match.id,
                    attempt,
                )
                self._discard_in_progress(conversation_id, owner)
                self.cache.adopt_snapshot(conversation_id, snapshot, known_ids=known_ids)
                return ReconcileOutcome.MATCHED

            logger.debug(
                "Conversation %s: streamed message %s not in store yet (attempt %d/%d)",
                conversation_id,
                expected_id,
                attempt,
                len(schedule),
            )

        assert snapshot is not None
        self._discard_in_progress(conversation_id, owner)
        self.cache.adopt_snapshot(conversation_id, snapshot, known_ids=known_ids)

        if not expected_content:
            return ReconcileOutcome.EMPTY

        signature = recovery_signature(expected_id, expected_content)
        recovery = Message(
            id=expected_id,
            role=MessageRole.ASSISTANT,
            content=expected_content,
            conversation_id=conversation_id,
            metadata={
                "recovered": True,
                "originalStreamingId": original_streaming_id,
                "persistedId": persisted_id,
                "recoveryTimestamp": datetime.now(UTC).isoformat(),
            },
        )
        if self.cache.append_recovery(conversation_id, recovery, signature=signature):
            logger.warning(
                "Conversation %s: store has no row for %s; appended recovery entry",
                conversation_id,
                expected_id,
            )
        return ReconcileOutcome.RECOVERED

    async def _fetch_with_retry(self, conversation_id: str) -> ConversationSnapshot:
        try:
            return await self.fetcher.fetch_conversation(conversation_id)
        except ConversationFetchError as e:
            delay = self.settings.reconcile_fetch_retry_delay_seconds
            logger.info(
                "Conversation %s: fetch failed (%s), retrying in %.1fs",
                conversation_id,
                e,
                delay,
            )
        await self._sleep(self.settings.reconcile_fetch_retry_delay_seconds)
        return await self.fetcher.fetch_conversation(conversation_id)

    def _owns(self, conversation_id: str, owner: object | None) -> bool:
        return owner is not None and self.cache.is_owner(conversation_id, owner)

    def _discard_in_progress(self, conversation_id: str, owner: object | None) -> None:
        if self._owns(conversation_id, owner):
            self.cache.discard_in_progress(conversation_id, owner=owner)

    def _fall_back_to_local(
        self,
        conversation_id: str,
        expected_content: str,
        owner: object | None,
    ) -> ReconcileOutcome:
        logger.warning(
            "Conversation %s: keeping locally streamed content as the visible state",
            conversation_id,
        )
        if self._owns(conversation_id, owner):
            if expected_content:
                self.cache.finalize_in_progress(
                    conversation_id,
                    owner=owner,
                    metadata={"unreconciled": True},
                )
            else:
                self.cache.discard_in_progress(conversation_id, owner=owner)
        return ReconcileOutcome.LOCAL_FALLBACK
