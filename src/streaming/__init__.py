"""Streaming response synchronization.

Decodes the response stream of a submitted query into typed effects and
drives the conversation cache from them, ending with a reconciliation
pass against the authoritative conversation.
"""

from src.streaming.engine import ChatExchange, ExchangeResult, StreamingChatEngine
from src.streaming.events import (
    ContentDelta,
    IdentifierReassigned,
    MessagePersisted,
    StreamDone,
    StreamEffect,
    StreamErrored,
)
from src.streaming.frames import FrameDecoder, decode_frames
from src.streaming.identity import IdentityReconciler
from src.streaming.interpreter import EventInterpreter, interpret_stream
from src.streaming.session import StreamSession, StreamState

__all__ = [
    "ChatExchange",
    "ContentDelta",
    "EventInterpreter",
    "ExchangeResult",
    "FrameDecoder",
    "IdentifierReassigned",
    "IdentityReconciler",
    "MessagePersisted",
    "StreamDone",
    "StreamEffect",
    "StreamErrored",
    "StreamSession",
    "StreamState",
    "StreamingChatEngine",
    "decode_frames",
    "interpret_stream",
]
