"""Agent CLI integration."""

from .controller import AgentSessionController, TurnHandle
from .prompts import build_attachment_context, build_fix_prompt, compose_prompt
from .protocol import StreamJsonParser
from .usage import parse_session_log, project_usage, session_usage

__all__ = [
    "AgentSessionController",
    "TurnHandle",
    "StreamJsonParser",
    "build_attachment_context",
    "build_fix_prompt",
    "compose_prompt",
    "parse_session_log",
    "project_usage",
    "session_usage",
]
