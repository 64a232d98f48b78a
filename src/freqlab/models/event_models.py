"""Agent turn and event data models."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .chat_models import Attachment


class TurnStatus(str, Enum):
    """Agent turn status."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TokenUsage(BaseModel):
    """Token usage reported by the agent for one turn."""

    input_tokens: int = Field(default=0)
    output_tokens: int = Field(default=0)
    cache_creation_tokens: int = Field(default=0)
    cache_read_tokens: int = Field(default=0)
    total_cost_usd: Optional[float] = Field(default=None)

    @property
    def total_tokens(self) -> int:
        """Sum of all token counters."""
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )


class TextDelta(BaseModel):
    """Incremental assistant text."""

    type: Literal["text_delta"] = "text_delta"
    text: str


class ToolUse(BaseModel):
    """Agent invoked a tool."""

    type: Literal["tool_use"] = "tool_use"
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    """Result of a tool invocation fed back to the agent."""

    type: Literal["tool_result"] = "tool_result"
    name: str
    payload: Any = None
    is_error: bool = False


class Done(BaseModel):
    """Agent finished the turn."""

    type: Literal["done"] = "done"
    summary: str = ""
    files_modified: List[str] = Field(default_factory=list)
    usage: Optional[TokenUsage] = None


class Error(BaseModel):
    """Agent turn failed."""

    type: Literal["error"] = "error"
    message: str


class Cancelled(BaseModel):
    """Agent turn was cancelled before finishing."""

    type: Literal["cancelled"] = "cancelled"
    reason: str = "Cancelled by user"


class CheckpointError(BaseModel):
    """Non-fatal warning: the turn finished but its checkpoint failed."""

    type: Literal["checkpoint_error"] = "checkpoint_error"
    message: str


AgentEvent = Annotated[
    Union[TextDelta, ToolUse, ToolResult, Done, Error, Cancelled, CheckpointError],
    Field(discriminator="type"),
]

TERMINAL_EVENTS = (Done, Error, Cancelled)


def is_terminal_event(event: BaseModel) -> bool:
    """
    Check whether an event ends a turn.

    Args:
        event: Agent event

    Returns:
        True for Done, Error and Cancelled
    """
    return isinstance(event, TERMINAL_EVENTS)


def is_droppable_event(event: BaseModel) -> bool:
    """Streaming events that a slow subscriber may lose under backpressure."""
    return isinstance(event, (TextDelta, ToolUse, ToolResult))


class Turn(BaseModel):
    """One prompt/response cycle with the agent."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    project_id: str
    message_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Id of the assistant chat message this turn produces",
    )
    user_message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    prompt: str
    attachments: List[Attachment] = Field(default_factory=list)
    status: TurnStatus = Field(default=TurnStatus.RUNNING)
    output: str = Field(default="", description="Accumulated assistant text")
    files_modified: List[str] = Field(default_factory=list)
    version: Optional[int] = Field(default=None)
    commit_hash: Optional[str] = Field(default=None)
    session_id: Optional[str] = Field(default=None)
    usage: Optional[TokenUsage] = Field(default=None)
    error: Optional[str] = Field(default=None)
    started_at: datetime = Field(default_factory=datetime.now)
    finished_at: Optional[datetime] = Field(default=None)

    @property
    def is_finished(self) -> bool:
        """True once the turn reached a terminal status."""
        return self.status != TurnStatus.RUNNING
