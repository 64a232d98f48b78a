"""Artifact distribution and usage data models."""

from typing import List

from pydantic import BaseModel, Field


class InstalledArtifact(BaseModel):
    """One artifact copied into a plugin folder."""

    format: str = Field(description="Format id, e.g. vst3")
    target: str = Field(description="Plugin folder target name, e.g. reaper")
    path: str = Field(description="Installed location")


class PublishResult(BaseModel):
    """
    Outcome of installing a version into plugin folders.

    Failures are collected per artifact and target rather than raised, so
    one unwritable folder does not stop the others.
    """

    version: int
    copied: List[InstalledArtifact] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.copied) and not self.errors


class PackageResult(BaseModel):
    """Zip archive built from a version's artifacts."""

    version: int
    zip_path: str
    included: List[str] = Field(default_factory=list)


class UsageSummary(BaseModel):
    """Token usage read from the agent's session logs."""

    input_tokens: int = Field(default=0)
    output_tokens: int = Field(default=0)
    cache_creation_tokens: int = Field(default=0)
    cache_read_tokens: int = Field(default=0)
    context_tokens: int = Field(
        default=0,
        description="Tokens in the context window (latest request, or total for projects)",
    )
    context_percent: float = Field(default=0.0, ge=0.0, le=100.0)
    message_count: int = Field(default=0)
    session_count: int = Field(default=0)
