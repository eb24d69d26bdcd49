"""HTTP client for the chat backend.

Two collaborators are used by the streaming engine:

- query submission, which answers with a ``text/event-stream`` body, and
- conversation fetch, the authoritative message list.

``ChatAPIClient`` implements both over a shared ``httpx.AsyncClient``.
The protocols below let the engine run against in-memory fakes.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Protocol
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError as PydanticValidationError

from src.chat.models import Conversation, ConversationSnapshot, Message
from src.exceptions import ConfigurationError, ConversationFetchError, TransportError
from src.settings import get_settings

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator
    from contextlib import AbstractAsyncContextManager

    from src.settings import Settings

logger = logging.getLogger(__name__)

RAG_QUERY_PATH = "/api/rag/query-two-llm"
COMPLETIONS_PATH = "/api/chat/completions"
CONVERSATION_PATH = "/api/chat/conversations/{conversation_id}"

_NO_CACHE_HEADERS = {
    "Accept": "text/event-stream",
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}
_ERROR_BODY_CHARS = 200


class ConversationFetcher(Protocol):
    """Returns the authoritative state of a conversation."""

    async def fetch_conversation(self, conversation_id: str) -> ConversationSnapshot: ...


class QuerySubmitter(Protocol):
    """Submits a query and exposes the response body as text fragments."""

    def stream_query(
        self,
        conversation_id: str,
        query: str,
        streaming_id: str,
        *,
        use_rag_path: bool,
    ) -> AbstractAsyncContextManager[AsyncIterator[str]]: ...


class ChatBackend(ConversationFetcher, QuerySubmitter, Protocol):
    """Both collaborators behind one object."""


def build_query_payload(
    conversation_id: str,
    query: str,
    streaming_id: str,
    *,
    use_rag_path: bool,
) -> tuple[str, dict[str, Any]]:
    """Return ``(path, json_body)`` for a query submission.

    The RAG endpoint takes ``query``; the plain completions endpoint takes
    ``message`` and must be told not to use the context-aware prompt.
    """
    if use_rag_path:
        return RAG_QUERY_PATH, {
            "conversationId": conversation_id,
            "query": query,
            "streamingId": streaming_id,
        }
    return COMPLETIONS_PATH, {
        "conversationId": conversation_id,
        "message": query,
        "streamingId": streaming_id,
        "useContextAwarePrompt": False,
    }


def _parse_messages(raw_messages: list[Any], conversation_id: str) -> list[Message]:
    messages: list[Message] = []
    for raw in raw_messages:
        message = Message.model_validate(raw)
        if not message.conversation_id:
            message.conversation_id = conversation_id
        messages.append(message)
    return messages


def parse_conversation_payload(data: Any, conversation_id: str) -> ConversationSnapshot:
    """Normalise the shapes the conversation endpoint is known to return.

    Accepted shapes:
    - ``{"conversation": {...}, "messages": [...]}``
    - a bare conversation object (no messages yet)
    - a list of conversations, searched for ``conversation_id``

    Raises:
        ConversationFetchError: For any other shape or invalid fields.
    """
    try:
        if isinstance(data, dict) and isinstance(data.get("conversation"), dict):
            raw_messages = data.get("messages")
            if not isinstance(raw_messages, list):
                raw_messages = []
            return ConversationSnapshot(
                conversation=Conversation.model_validate(data["conversation"]),
                messages=_parse_messages(raw_messages, conversation_id),
            )

        if isinstance(data, dict) and data.get("id"):
            return ConversationSnapshot(conversation=Conversation.model_validate(data))

        if isinstance(data, list):
            for item in data:
                if isinstance(item, dict) and item.get("id") == conversation_id:
                    return ConversationSnapshot(conversation=Conversation.model_validate(item))
            raise ConversationFetchError(
                f"Conversation {conversation_id} not present in conversation list",
                conversation_id=conversation_id,
            )
    except PydanticValidationError as e:
        raise ConversationFetchError(
            f"Invalid conversation payload: {e}",
            conversation_id=conversation_id,
        ) from e

    raise ConversationFetchError(
        f"Unrecognised conversation payload: {type(data).__name__}",
        conversation_id=conversation_id,
    )


class ChatAPIClient:
    """Async client for the chat backend.

    Usage::

        async with ChatAPIClient("http://localhost:5000") as client:
            async with client.stream_query(cid, "What is ROAS?", "pending-1",
                                           use_rag_path=True) as fragments:
                async for fragment in fragments:
                    ...
            snapshot = await client.fetch_conversation(cid)
    """

    _ALLOWED_SCHEMES = {"http", "https"}

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        *,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = settings or get_settings()
        base_url = base_url or settings.chat_api_url
        parsed = urlparse(base_url)
        if parsed.scheme not in self._ALLOWED_SCHEMES:
            msg = f"Invalid URL scheme '{parsed.scheme}'. Only {self._ALLOWED_SCHEMES} allowed."
            raise ConfigurationError(msg)

        self.base_url = base_url.rstrip("/")
        self.token = token if token is not None else settings.chat_api_token.get_secret_value()
        self.settings = settings
        self._http_client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self) -> ChatAPIClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
        return self._http_client

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = dict(extra or {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    @asynccontextmanager
    async def stream_query(
        self,
        conversation_id: str,
        query: str,
        streaming_id: str,
        *,
        use_rag_path: bool,
    ) -> AsyncGenerator[AsyncIterator[str], None]:
        """Submit a query and yield the response body as text fragments.

        The response is closed when the context exits, including on
        cancellation.

        Raises:
            TransportError: If the stream cannot be opened, the server
                answers with an error status, or reading fails mid-flight.
        """
        path, payload = build_query_payload(
            conversation_id, query, streaming_id, use_rag_path=use_rag_path
        )
        request = self._client().build_request(
            "POST",
            f"{self.base_url}{path}",
            json=payload,
            headers=self._headers(_NO_CACHE_HEADERS),
            timeout=httpx.Timeout(
                self.settings.stream_timeout_seconds,
                connect=self.settings.connect_timeout_seconds,
            ),
        )

        try:
            response = await self._client().send(request, stream=True)
        except httpx.TimeoutException as e:
            raise TransportError(f"Timed out opening stream: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Could not open stream: {e}") from e

        try:
            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise TransportError(
                    f"HTTP {response.status_code}: {body[:_ERROR_BODY_CHARS]}",
                    status_code=response.status_code,
                )
            logger.debug(
                "Stream opened for conversation %s (%s)",
                conversation_id,
                path,
            )
            yield _iter_fragments(response)
        finally:
            await response.aclose()

    async def fetch_conversation(self, conversation_id: str) -> ConversationSnapshot:
        """Fetch the authoritative message list of a conversation.

        Raises:
            ConversationFetchError: On transport failure, error status or
                an unrecognised payload.
        """
        url = f"{self.base_url}{CONVERSATION_PATH.format(conversation_id=conversation_id)}"
        try:
            response = await self._client().get(
                url,
                headers=self._headers({"Cache-Control": "no-cache"}),
                timeout=self.settings.request_timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise ConversationFetchError(
                f"Conversation fetch failed: {e}",
                conversation_id=conversation_id,
            ) from e

        if response.status_code >= 400:
            raise ConversationFetchError(
                f"HTTP {response.status_code}: {response.text[:_ERROR_BODY_CHARS]}",
                conversation_id=conversation_id,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ConversationFetchError(
                f"Invalid JSON response: {e}",
                conversation_id=conversation_id,
            ) from e

        return parse_conversation_payload(data, conversation_id)


async def _iter_fragments(response: httpx.Response) -> AsyncGenerator[str, None]:
    try:
        async for fragment in response.aiter_text():
            yield fragment
    except httpx.TimeoutException as e:
        raise TransportError(f"Stream read timed out: {e}") from e
    except (httpx.HTTPError, httpx.StreamError) as e:
        raise TransportError(f"Stream aborted: {e}") from e
