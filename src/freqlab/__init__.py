"""
Freqlab session and build orchestrator.

Drives an external coding agent over a project, checkpoints the project
after every turn, and runs cancellable, streamed framework builds.
"""

from .agent import AgentSessionController, TurnHandle
from .build import BuildHandle, BuildPipelineRunner
from .checkpoints import CheckpointStore
from .config import OrchestratorConfig, load_config
from .history import ChatHistoryStore
from .session import EventSink, SessionManager

__version__ = "0.1.0"

__all__ = [
    "AgentSessionController",
    "TurnHandle",
    "BuildHandle",
    "BuildPipelineRunner",
    "CheckpointStore",
    "ChatHistoryStore",
    "OrchestratorConfig",
    "load_config",
    "EventSink",
    "SessionManager",
]
