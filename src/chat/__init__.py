"""Conversation models, cache and terminal reconciliation."""

from src.chat.cache import ConversationCache
from src.chat.models import Conversation, ConversationSnapshot, Message, MessageRole
from src.chat.reconciler import ReconcileOutcome, TerminalReconciler

__all__ = [
    "Conversation",
    "ConversationCache",
    "ConversationSnapshot",
    "Message",
    "MessageRole",
    "ReconcileOutcome",
    "TerminalReconciler",
]
