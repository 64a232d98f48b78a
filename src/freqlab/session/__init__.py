"""Session management across projects."""

from .manager import EventSink, NullEventSink, ProjectSlot, SessionManager

__all__ = ["EventSink", "NullEventSink", "ProjectSlot", "SessionManager"]
