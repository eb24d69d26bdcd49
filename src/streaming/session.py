"""Stream session state for a single query/response exchange."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from src.streaming.identity import IdentityReconciler


class StreamState(StrEnum):
    """Lifecycle of one exchange."""

    IDLE = "idle"
    SUBMITTING = "submitting"
    STREAMING = "streaming"
    RECONCILING = "reconciling"
    SETTLED = "settled"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (StreamState.SETTLED, StreamState.ERRORED)


# Allowed transitions; anything else is a programming error
_TRANSITIONS: dict[StreamState, frozenset[StreamState]] = {
    StreamState.IDLE: frozenset({StreamState.SUBMITTING, StreamState.ERRORED}),
    StreamState.SUBMITTING: frozenset({StreamState.STREAMING, StreamState.ERRORED}),
    StreamState.STREAMING: frozenset({StreamState.RECONCILING, StreamState.ERRORED}),
    StreamState.RECONCILING: frozenset({StreamState.SETTLED, StreamState.ERRORED}),
    StreamState.SETTLED: frozenset(),
    StreamState.ERRORED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """Raised on a state change the lifecycle does not allow."""


@dataclass
class StreamSession:
    """Ephemeral state owned by the engine for one exchange.

    Attributes:
        conversation_id: Conversation the exchange belongs to.
        query: User query text.
        identity: Identifier bookkeeping for the assistant message.
        user_message_id: Id of the optimistic user message.
        known_message_ids: Message ids present before the exchange started.
        accumulated_content: Concatenated content deltas (plus error text).
        state: Current lifecycle state.
        superseded: Set when the session was abandoned; no further cache
            mutations are allowed once this is True.
    """

    conversation_id: str
    query: str
    identity: IdentityReconciler
    user_message_id: str | None = None
    known_message_ids: frozenset[str] = frozenset()
    accumulated_content: str = ""
    state: StreamState = StreamState.IDLE
    superseded: bool = False
    history: list[StreamState] = field(default_factory=list)

    @property
    def provisional_id(self) -> str:
        return self.identity.provisional_id

    @property
    def display_id(self) -> str:
        return self.identity.display_id

    @property
    def is_active(self) -> bool:
        """Whether this session may still mutate the cache."""
        return not self.superseded and not self.state.is_terminal

    def transition(self, new_state: StreamState) -> None:
        """Move to ``new_state``.

        Raises:
            InvalidTransitionError: If the lifecycle does not allow the move.
        """
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"Cannot move from {self.state} to {new_state}")
        self.history.append(self.state)
        self.state = new_state
