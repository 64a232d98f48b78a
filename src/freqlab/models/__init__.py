"""Models package for the freqlab orchestrator."""

from .chat_models import ChatRole, Attachment, ChatMessage, ChatHistory
from .event_models import (
    TurnStatus,
    TokenUsage,
    TextDelta,
    ToolUse,
    ToolResult,
    Done,
    Error,
    Cancelled,
    CheckpointError,
    AgentEvent,
    Turn,
    is_terminal_event,
)
from .build_models import (
    BuildStatus,
    LogSource,
    BuildLogLine,
    BuildResult,
    BuildEvent,
    BuildRun,
    BuildStep,
    FrameworkBuildConfig,
)
from .checkpoint_models import Version
from .stream_models import StreamLine
from .project_models import Project
from .publish_models import InstalledArtifact, PublishResult, PackageResult, UsageSummary

__all__ = [
    # Chat models
    "ChatRole",
    "Attachment",
    "ChatMessage",
    "ChatHistory",
    # Turn and agent events
    "TurnStatus",
    "TokenUsage",
    "TextDelta",
    "ToolUse",
    "ToolResult",
    "Done",
    "Error",
    "Cancelled",
    "CheckpointError",
    "AgentEvent",
    "Turn",
    "is_terminal_event",
    # Build models
    "BuildStatus",
    "LogSource",
    "BuildLogLine",
    "BuildResult",
    "BuildEvent",
    "BuildRun",
    "BuildStep",
    "FrameworkBuildConfig",
    # Checkpoint models
    "Version",
    # Stream models
    "StreamLine",
    # Project models
    "Project",
    # Distribution models
    "InstalledArtifact",
    "PublishResult",
    "PackageResult",
    "UsageSummary",
]
