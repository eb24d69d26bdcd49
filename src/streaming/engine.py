"""Streaming chat engine: one query/response exchange per ``send``.

Drives the full sequence for an exchange:

1. Mint a provisional id and show the user's message optimistically.
2. Submit the query and open the response stream.
3. Decode records, interpret effects, update identity and the cache,
   notifying subscribers on every content delta.
4. On completion, reconcile against the authoritative conversation.

A second ``send`` on the same conversation cancels and replaces the
first. Sessions on different conversations are independent; all
identifier bookkeeping lives on the session, never in module state.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import TYPE_CHECKING
from uuid import uuid4

from src.chat.cache import ConversationCache
from src.chat.reconciler import ReconcileOutcome, TerminalReconciler
from src.exceptions import (
    ChatSyncError,
    SessionSupersededError,
    StreamError,
    TransportError,
    ValidationError,
)
from src.settings import get_settings
from src.streaming.events import (
    ContentDelta,
    IdentifierReassigned,
    MessagePersisted,
    StreamDone,
    StreamEffect,
    StreamErrored,
)
from src.streaming.frames import decode_frames
from src.streaming.identity import IdentityReconciler
from src.streaming.interpreter import EventInterpreter, interpret_stream
from src.streaming.session import StreamSession, StreamState

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from src.chat.models import Message
    from src.clients.chat_api import ChatBackend
    from src.settings import Settings

logger = logging.getLogger(__name__)


def _default_id_factory() -> str:
    return f"pending-{uuid4()}"


def format_stream_error(accumulated: str, message: str) -> str:
    """Text appended to the visible content when the server reports an error."""
    prefix = "\n\n" if accumulated else ""
    return f"{prefix}Error: {message}"


@dataclass
class ExchangeResult:
    """Final state of an exchange.

    Attributes:
        conversation_id: Conversation the exchange belongs to.
        state: ``SETTLED`` or ``ERRORED``.
        content: Visible assistant content (streamed text plus any error text).
        effective_id: Most authoritative id known for the assistant message.
        outcome: How terminal reconciliation settled, if it ran.
        error: Transport, stream or supersession error, if any.
        messages: Conversation messages after the exchange.
        skipped_records: Malformed records skipped while streaming.
    """

    conversation_id: str
    state: StreamState
    content: str
    effective_id: str
    outcome: ReconcileOutcome | None = None
    error: ChatSyncError | None = None
    messages: list[Message] = field(default_factory=list)
    skipped_records: int = 0

    @property
    def ok(self) -> bool:
        return self.state == StreamState.SETTLED and self.error is None

    def raise_for_error(self) -> None:
        """Raise the exchange's error, if it has one."""
        if self.error is not None:
            raise self.error


class ChatExchange:
    """Handle for one in-flight exchange returned by ``StreamingChatEngine.send``.

    Subscribers receive ``(content, effective_id)`` once for the empty
    placeholder and then once per content delta.
    """

    def __init__(self, session: StreamSession) -> None:
        self.session = session
        self._callbacks: list[Callable[[str, str], Awaitable[None] | None]] = []
        self._placeholder_sent = False
        self._callback_tasks: set[asyncio.Future[None]] = set()
        self._task: asyncio.Task[ExchangeResult] | None = None
        self._result: ExchangeResult | None = None
        self._engine: StreamingChatEngine | None = None

    @property
    def conversation_id(self) -> str:
        return self.session.conversation_id

    @property
    def state(self) -> StreamState:
        return self.session.state

    @property
    def content(self) -> str:
        return self.session.accumulated_content

    @property
    def effective_id(self) -> str:
        return self.session.display_id

    def done(self) -> bool:
        return self._result is not None or self.session.state.is_terminal

    def subscribe(
        self,
        callback: Callable[[str, str], Awaitable[None] | None],
    ) -> Callable[[], None]:
        """Register a content-update callback.

        If the placeholder was already announced, the callback fires right
        away with the current content.

        Returns:
            A function that unsubscribes the callback.
        """
        self._callbacks.append(callback)
        if self._placeholder_sent and not self.session.superseded:
            result = _invoke(callback, self.content, self.effective_id)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._callback_tasks.add(task)
                task.add_done_callback(self._on_callback_done)
        return lambda: self.unsubscribe(callback)

    def _on_callback_done(self, task: asyncio.Future[None]) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Content update callback failed", exc_info=error)

    def unsubscribe(self, callback: Callable[[str, str], Awaitable[None] | None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    async def _notify(self) -> None:
        if self.session.superseded:
            return
        self._placeholder_sent = True
        content, effective_id = self.content, self.effective_id
        for callback in list(self._callbacks):
            result = _invoke(callback, content, effective_id)
            if inspect.isawaitable(result):
                try:
                    await result
                except Exception:
                    logger.exception("Content update callback failed")

    async def wait(self) -> ExchangeResult:
        """Wait for the exchange to settle and return its result.

        Cancelling the caller's wait does not cancel the exchange.
        """
        if self._task is not None:
            try:
                return await asyncio.shield(self._task)
            except asyncio.CancelledError:
                if not (self._task.cancelled() and self.session.superseded):
                    raise
        assert self._result is not None
        return self._result

    def cancel(self) -> None:
        """Abandon the exchange. The stream is released and the cache is left alone."""
        if self._engine is not None:
            self._engine.supersede(self, reason="cancelled by caller")


def _invoke(
    callback: Callable[[str, str], Awaitable[None] | None],
    content: str,
    effective_id: str,
) -> Awaitable[None] | None:
    try:
        return callback(content, effective_id)
    except Exception:
        logger.exception("Content update callback failed")
        return None


class StreamingChatEngine:
    """Sends queries and keeps the conversation cache in sync with the stream.

    Args:
        backend: Query submission and conversation fetch collaborator.
        cache: Shared conversation cache (a new one if omitted).
        settings: Application settings (``get_settings()`` if omitted).
        id_factory: Mints provisional message ids.
        sleep: Awaitable sleep used by reconciliation backoff.
        use_rag_path: Default endpoint choice; falls back to settings.

    Usage::

        engine = StreamingChatEngine(ChatAPIClient())
        exchange = engine.send(conversation_id, "What is ROAS?")
        exchange.subscribe(lambda content, message_id: render(content))
        result = await exchange.wait()
    """

    def __init__(
        self,
        backend: ChatBackend,
        *,
        cache: ConversationCache | None = None,
        settings: Settings | None = None,
        id_factory: Callable[[], str] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        use_rag_path: bool | None = None,
    ) -> None:
        self.backend = backend
        self.cache = cache if cache is not None else ConversationCache()
        self.settings = settings or get_settings()
        self.reconciler = TerminalReconciler(self.cache, backend, self.settings, sleep=sleep)
        self.use_rag_path = self.settings.use_rag_path if use_rag_path is None else use_rag_path
        self._id_factory = id_factory or _default_id_factory
        self._active: dict[str, ChatExchange] = {}

    def messages(self, conversation_id: str) -> list[Message]:
        """Current message list for a conversation."""
        return self.cache.messages(conversation_id)

    def active_exchange(self, conversation_id: str) -> ChatExchange | None:
        return self._active.get(conversation_id)

    def send(
        self,
        conversation_id: str,
        query: str,
        *,
        use_rag_path: bool | None = None,
    ) -> ChatExchange:
        """Start an exchange. Must be called from a running event loop.

        The user's message is in the cache when this returns.

        Raises:
            ValidationError: If the conversation id or query is blank.
        """
        if not conversation_id or not conversation_id.strip():
            raise ValidationError("conversation_id must not be empty")
        if not query or not query.strip():
            raise ValidationError("query must not be empty")

        previous = self._active.get(conversation_id)
        if previous is not None and not previous.done():
            self.supersede(previous, reason="superseded by a new query")

        session = StreamSession(
            conversation_id=conversation_id,
            query=query,
            identity=IdentityReconciler(provisional_id=self._id_factory()),
            known_message_ids=self.cache.message_ids(conversation_id),
        )
        exchange = ChatExchange(session)
        exchange._engine = self

        session.transition(StreamState.SUBMITTING)
        self.cache.claim(conversation_id, session)
        user_message = self.cache.apply_optimistic_user_message(conversation_id, query)
        session.user_message_id = user_message.id
        logger.debug(
            "Conversation %s: submitting query (provisional id %s)",
            conversation_id,
            session.provisional_id,
        )

        rag = self.use_rag_path if use_rag_path is None else use_rag_path
        exchange._task = asyncio.get_running_loop().create_task(self._run(exchange, rag))
        self._active[conversation_id] = exchange
        return exchange

    async def send_and_wait(
        self,
        conversation_id: str,
        query: str,
        on_content_update: Callable[[str, str], Awaitable[None] | None] | None = None,
        *,
        use_rag_path: bool | None = None,
    ) -> ExchangeResult:
        """Send a query and wait for the exchange to settle."""
        exchange = self.send(conversation_id, query, use_rag_path=use_rag_path)
        if on_content_update is not None:
            exchange.subscribe(on_content_update)
        return await exchange.wait()

    def supersede(self, exchange: ChatExchange, *, reason: str) -> None:
        """Abandon an exchange as if it had errored, without error text."""
        session = exchange.session
        if session.superseded or session.state.is_terminal:
            return

        conversation_id = session.conversation_id
        session.superseded = True
        session.transition(StreamState.ERRORED)
        logger.info("Conversation %s: session %s %s", conversation_id, session.provisional_id, reason)

        if self.cache.is_owner(conversation_id, session):
            if session.accumulated_content:
                self.cache.finalize_in_progress(
                    conversation_id,
                    owner=session,
                    metadata={"interrupted": True},
                )
            else:
                self.cache.discard_in_progress(conversation_id, owner=session)
            self.cache.release(conversation_id, session)

        exchange._result = self._build_result(exchange, error=SessionSupersededError(reason))
        if self._active.get(conversation_id) is exchange:
            del self._active[conversation_id]
        if exchange._task is not None and not exchange._task.done():
            exchange._task.cancel()

    async def aclose(self) -> None:
        """Cancel every active exchange and wait for their tasks to finish."""
        exchanges = list(self._active.values())
        for exchange in exchanges:
            self.supersede(exchange, reason="engine closed")
        tasks = [exchange._task for exchange in exchanges if exchange._task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Session task
    # -------------------------------------------------------------------------

    async def _run(self, exchange: ChatExchange, use_rag_path: bool) -> ExchangeResult:
        session = exchange.session
        conversation_id = session.conversation_id
        try:
            result = await self._drive(exchange, use_rag_path)
        except asyncio.CancelledError:
            logger.debug("Conversation %s: session task cancelled", conversation_id)
            raise
        except Exception:
            if not session.state.is_terminal:
                session.transition(StreamState.ERRORED)
            raise
        finally:
            self.cache.release(conversation_id, session)
            if self._active.get(conversation_id) is exchange:
                del self._active[conversation_id]

        exchange._result = result
        return result

    async def _drive(self, exchange: ChatExchange, use_rag_path: bool) -> ExchangeResult:
        session = exchange.session
        conversation_id = session.conversation_id
        interpreter = EventInterpreter()
        terminal: StreamEffect | None = None

        try:
            async with self.backend.stream_query(
                conversation_id,
                session.query,
                session.provisional_id,
                use_rag_path=use_rag_path,
            ) as fragments:
                session.transition(StreamState.STREAMING)
                self.cache.start_assistant_message(conversation_id, session.display_id, owner=session)
                await exchange._notify()

                effects = interpret_stream(decode_frames(fragments), interpreter)
                async with aclosing(effects):
                    async for effect in effects:
                        if session.superseded:
                            break
                        if isinstance(effect, (StreamDone, StreamErrored)):
                            terminal = effect
                            break
                        await self._apply_effect(exchange, effect)
        except TransportError as e:
            if session.superseded:
                return self._superseded_result(exchange)
            return self._fail_transport(exchange, e, interpreter)

        if session.superseded:
            return self._superseded_result(exchange)

        if isinstance(terminal, StreamErrored):
            return await self._fail_stream(exchange, terminal, interpreter)

        if terminal is None:
            logger.warning(
                "Conversation %s: stream ended without a completion sentinel; treating as done",
                conversation_id,
            )

        session.transition(StreamState.RECONCILING)
        identity = session.identity
        outcome = await self.reconciler.terminal_reconcile(
            conversation_id,
            identity.record_key,
            session.accumulated_content,
            owner=session,
            alternate_ids=identity.lookup_keys(),
            original_streaming_id=identity.reassigned_id,
            persisted_id=identity.persisted_id,
            acknowledged=identity.acknowledged,
            known_ids=session.known_message_ids,
        )
        session.transition(StreamState.SETTLED)
        logger.info(
            "Conversation %s: exchange settled (%s, id %s)",
            conversation_id,
            outcome,
            identity.record_key,
        )
        return self._build_result(
            exchange,
            outcome=outcome,
            skipped_records=interpreter.skipped_records,
        )

    async def _apply_effect(self, exchange: ChatExchange, effect: StreamEffect) -> None:
        session = exchange.session
        conversation_id = session.conversation_id

        if isinstance(effect, IdentifierReassigned):
            if session.identity.reassign(effect.streaming_id) is not None:
                self.cache.rekey_in_progress(conversation_id, session.display_id, owner=session)
        elif isinstance(effect, ContentDelta):
            session.accumulated_content += effect.content
            self.cache.apply_content_delta(
                conversation_id,
                session.display_id,
                effect.content,
                owner=session,
            )
            await exchange._notify()
        elif isinstance(effect, MessagePersisted):
            session.identity.mark_persisted(effect.message_id)

    async def _fail_stream(
        self,
        exchange: ChatExchange,
        effect: StreamErrored,
        interpreter: EventInterpreter,
    ) -> ExchangeResult:
        session = exchange.session
        conversation_id = session.conversation_id
        logger.warning("Conversation %s: server reported error: %s", conversation_id, effect.message)

        error_text = format_stream_error(session.accumulated_content, effect.message)
        session.accumulated_content += error_text
        self.cache.apply_content_delta(conversation_id, session.display_id, error_text, owner=session)
        await exchange._notify()
        self.cache.finalize_in_progress(conversation_id, owner=session, metadata={"error": True})

        session.transition(StreamState.ERRORED)
        return self._build_result(
            exchange,
            error=StreamError(effect.message),
            skipped_records=interpreter.skipped_records,
        )

    def _fail_transport(
        self,
        exchange: ChatExchange,
        error: TransportError,
        interpreter: EventInterpreter,
    ) -> ExchangeResult:
        session = exchange.session
        conversation_id = session.conversation_id
        logger.error(
            "Conversation %s: transport failure while %s: %s",
            conversation_id,
            session.state,
            error,
        )

        if session.state == StreamState.STREAMING and self.cache.is_owner(conversation_id, session):
            if session.accumulated_content:
                self.cache.finalize_in_progress(
                    conversation_id,
                    owner=session,
                    metadata={"interrupted": True},
                )
            else:
                self.cache.discard_in_progress(conversation_id, owner=session)

        session.transition(StreamState.ERRORED)
        return self._build_result(
            exchange,
            error=error,
            skipped_records=interpreter.skipped_records,
        )

    def _superseded_result(self, exchange: ChatExchange) -> ExchangeResult:
        assert exchange._result is not None
        return exchange._result

    def _build_result(
        self,
        exchange: ChatExchange,
        *,
        outcome: ReconcileOutcome | None = None,
        error: ChatSyncError | None = None,
        skipped_records: int = 0,
    ) -> ExchangeResult:
        session = exchange.session
        return ExchangeResult(
            conversation_id=session.conversation_id,
            state=session.state,
            content=session.accumulated_content,
            effective_id=session.identity.record_key,
            outcome=outcome,
            error=error,
            messages=self.cache.messages(session.conversation_id),
            skipped_records=skipped_records,
        )
