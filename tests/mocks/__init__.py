"""Chat backend fakes and stream fixtures.

Provides an in-memory backend implementing both query submission and
conversation fetch, plus helpers to build event-stream records.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any

from src.chat.models import Conversation, ConversationSnapshot, Message, MessageRole

DONE = "data: [DONE]\n\n"
ERROR = "data: [ERROR]\n\n"


def record(payload: dict[str, Any] | str) -> str:
    """Build one event-stream record from a payload dict or raw value."""
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n"


def snapshot(conversation_id: str, *messages: tuple[str, str, str]) -> ConversationSnapshot:
    """Build a snapshot from ``(id, role, content)`` tuples."""
    return ConversationSnapshot(
        conversation=Conversation(id=conversation_id, title="Test conversation"),
        messages=[
            Message(
                id=message_id,
                role=MessageRole(role),
                content=content,
                conversation_id=conversation_id,
            )
            for message_id, role, content in messages
        ],
    )


class FakeBackend:
    """In-memory chat backend.

    ``fragments`` may contain strings or bytes (yielded as-is), exceptions
    (raised mid-stream) and ``asyncio.Event`` objects (awaited, to hold the
    stream open). Every submission streams ``fragments`` unless ``streams``
    is given, in which case each submission takes the next list from it.
    ``snapshots`` are returned by successive fetches; the last one repeats.
    Exceptions in ``snapshots`` are raised.
    """

    def __init__(
        self,
        fragments: list[Any] | None = None,
        snapshots: list[ConversationSnapshot | Exception] | None = None,
        *,
        streams: list[list[Any]] | None = None,
        submit_error: Exception | None = None,
    ) -> None:
        self.fragments = list(fragments or [])
        self.streams = [list(stream) for stream in streams] if streams is not None else None
        self.snapshots = list(snapshots or [])
        self.submit_error = submit_error
        self.submissions: list[dict[str, Any]] = []
        self.fetch_calls = 0
        self.stream_closed = False
        self.fragments_read = 0

    @asynccontextmanager
    async def stream_query(
        self,
        conversation_id: str,
        query: str,
        streaming_id: str,
        *,
        use_rag_path: bool,
    ):
        self.submissions.append(
            {
                "conversation_id": conversation_id,
                "query": query,
                "streaming_id": streaming_id,
                "use_rag_path": use_rag_path,
            }
        )
        if self.submit_error is not None:
            raise self.submit_error
        fragments = self.streams.pop(0) if self.streams is not None else self.fragments
        try:
            yield self._iter_fragments(fragments)
        finally:
            self.stream_closed = True

    async def _iter_fragments(self, fragments: list[Any]):
        for fragment in fragments:
            if isinstance(fragment, asyncio.Event):
                await fragment.wait()
                continue
            if isinstance(fragment, Exception):
                raise fragment
            self.fragments_read += 1
            yield fragment

    async def fetch_conversation(self, conversation_id: str) -> ConversationSnapshot:
        self.fetch_calls += 1
        if not self.snapshots:
            return snapshot(conversation_id)
        item = self.snapshots[min(self.fetch_calls - 1, len(self.snapshots) - 1)]
        if isinstance(item, Exception):
            raise item
        return item
