"""Build pipeline data models."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class BuildStatus(str, Enum):
    """Build run status."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class LogSource(str, Enum):
    """Origin of a build log line."""

    STDOUT = "stdout"
    STDERR = "stderr"
    SYSTEM = "system"  # Banners emitted by the runner itself


class BuildLogLine(BaseModel):
    """One line of build output."""

    type: Literal["log"] = "log"
    seq: int = Field(description="Monotonic sequence number within the run")
    source: LogSource
    text: str
    timestamp: datetime = Field(default_factory=datetime.now)


class BuildResult(BaseModel):
    """Terminal result of a build run."""

    type: Literal["result"] = "result"
    build_id: str
    status: BuildStatus
    exit_code: Optional[int] = None
    message: str = ""
    error_excerpt: Optional[str] = None
    artifact_paths: List[str] = Field(default_factory=list)
    output_dir: Optional[str] = None


BuildEvent = Annotated[
    Union[BuildLogLine, BuildResult],
    Field(discriminator="type"),
]


class BuildRun(BaseModel):
    """A single invocation of a project's build."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    project_id: str
    formats: List[str] = Field(default_factory=list)
    status: BuildStatus = Field(default=BuildStatus.RUNNING)
    log_lines: List[BuildLogLine] = Field(default_factory=list)
    exit_code: Optional[int] = Field(default=None)
    error_excerpt: Optional[str] = Field(default=None)
    artifact_paths: List[str] = Field(default_factory=list)
    output_dir: Optional[str] = Field(default=None)
    version: Optional[int] = Field(default=None, description="Checkpoint being built")
    started_at: datetime = Field(default_factory=datetime.now)
    finished_at: Optional[datetime] = Field(default=None)

    def to_result(self, message: str = "") -> BuildResult:
        """
        Build the terminal result event for this run.

        Args:
            message: Human-readable outcome

        Returns:
            BuildResult
        """
        return BuildResult(
            build_id=self.id,
            status=self.status,
            exit_code=self.exit_code,
            message=message,
            error_excerpt=self.error_excerpt,
            artifact_paths=list(self.artifact_paths),
            output_dir=self.output_dir,
        )


class BuildStep(BaseModel):
    """One external command in a framework's build plan."""

    label: str = Field(description="Banner shown before the step runs")
    command: str
    arguments: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)


class FrameworkBuildConfig(BaseModel):
    """
    Build plan for one plugin framework.

    Command arguments, environment values and artifact patterns may use the
    placeholders {project}, {package}, {build_suffix} and {config}.
    """

    id: str
    name: str = ""
    build_system: str = Field(default="cargo", description="cargo, cmake or custom")
    steps: List[BuildStep] = Field(default_factory=list)
    clean_files: List[str] = Field(
        default_factory=list,
        description="Files removed from the build workspace before building",
    )
    preserve_dirs: List[str] = Field(
        default_factory=list,
        description="Build caches kept when the workspace is refreshed",
    )
    artifact_patterns: Dict[str, List[str]] = Field(
        default_factory=dict,
        description="Glob patterns per output format, relative to the workspace",
    )
    default_formats: List[str] = Field(default_factory=list)

    def patterns_for(self, formats: List[str]) -> List[str]:
        """
        Collect artifact patterns for the requested formats.

        Unknown formats contribute nothing; an empty request means the
        framework's default formats.

        Args:
            formats: Requested output formats

        Returns:
            Glob patterns
        """
        requested = formats or self.default_formats or list(self.artifact_patterns)
        patterns: List[str] = []
        for fmt in requested:
            patterns.extend(self.artifact_patterns.get(fmt.lower(), []))
        return patterns
