"""Typed effects produced by the event interpreter.

Each decoded record yields zero or more effects. ``StreamDone`` and
``StreamErrored`` are terminal: nothing is interpreted after them.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ContentDelta:
    """Text to append to the in-progress assistant message."""

    content: str


@dataclass(frozen=True)
class IdentifierReassigned:
    """The server assigned its own streaming id to the assistant message."""

    streaming_id: str


@dataclass(frozen=True)
class MessagePersisted:
    """The backing store confirmed the row id of the assistant message."""

    message_id: str


@dataclass(frozen=True)
class StreamDone:
    """Normal completion."""


@dataclass(frozen=True)
class StreamErrored:
    """Server-reported failure.

    Attributes:
        message: Error text to show to the user.
    """

    message: str


StreamEffect = ContentDelta | IdentifierReassigned | MessagePersisted | StreamDone | StreamErrored

TERMINAL_EFFECTS = (StreamDone, StreamErrored)


def is_terminal(effect: StreamEffect) -> bool:
    """Return True if the effect ends the stream."""
    return isinstance(effect, TERMINAL_EFFECTS)
