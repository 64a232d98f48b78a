"""Checkpoint data models for project versioning."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class Version(BaseModel):
    """Checkpoint of the project tree taken after a turn that changed files."""

    version: int = Field(ge=0, description="0 is the baseline snapshot")
    commit_hash: str
    message_id: Optional[str] = None
    summary: str = ""
    files_modified: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    active: bool = False
