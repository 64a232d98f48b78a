"""Chat history persistence."""

from .chat_store import CHAT_HISTORY_PATH, ChatHistoryStore

__all__ = ["CHAT_HISTORY_PATH", "ChatHistoryStore"]
