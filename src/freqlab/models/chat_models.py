"""Chat history data models."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Collection, List, Optional

from pydantic import BaseModel, Field


class ChatRole(str, Enum):
    """Chat message roles."""

    USER = "user"
    ASSISTANT = "assistant"


class Attachment(BaseModel):
    """File attached to a user message."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    original_name: str = Field(description="File name as the user provided it")
    path: str = Field(description="Location the agent can read the file from")
    mime_type: str = Field(default="application/octet-stream")
    size: int = Field(default=0, ge=0)


class ChatMessage(BaseModel):
    """
    Chat message with checkpoint annotations.

    Assistant messages that produced a checkpoint carry the commit hash and
    version. Messages whose version is ahead of the active version are
    marked reverted but never deleted.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: ChatRole
    content: str = Field(default="")
    timestamp: datetime = Field(default_factory=datetime.now)
    files_modified: Optional[List[str]] = Field(default=None)
    commit_hash: Optional[str] = Field(default=None)
    version: Optional[int] = Field(default=None)
    reverted: bool = Field(default=False)
    attachments: Optional[List[Attachment]] = Field(default=None)


class ChatHistory(BaseModel):
    """
    Per-project chat document.

    CRITICAL: Must stay JSON-serializable, it is persisted as-is.
    """

    messages: List[ChatMessage] = Field(default_factory=list)
    active_version: Optional[int] = Field(default=None)

    def add_message(self, message: ChatMessage) -> None:
        """
        Append a message, replacing any message with the same id.

        Args:
            message: Message to store
        """
        for index, existing in enumerate(self.messages):
            if existing.id == message.id:
                self.messages[index] = message
                return
        self.messages.append(message)

    def get_message(self, message_id: str) -> Optional[ChatMessage]:
        """
        Find a message by id.

        Args:
            message_id: Message identifier

        Returns:
            The message if present
        """
        return next((m for m in self.messages if m.id == message_id), None)

    def mark_reverted(
        self,
        active_version: int,
        lineage: Optional[Collection[int]] = None,
    ) -> List[str]:
        """
        Flag messages whose changes are not in the working tree as reverted.

        Without a lineage, versions ahead of the active version are reverted.
        With one, every version outside it is reverted, which also covers a
        version abandoned by reverting and then continuing. Other messages
        are un-flagged so that reverting forward restores them.

        Args:
            active_version: Version the working tree now reflects
            lineage: Versions whose changes the active version contains

        Returns:
            Ids of messages whose flag changed
        """
        changed = []
        for message in self.versioned_messages():
            if lineage is None:
                reverted = message.version > active_version
            else:
                reverted = message.version not in lineage
            if message.reverted != reverted:
                message.reverted = reverted
                changed.append(message.id)
        self.active_version = active_version
        return changed

    def versioned_messages(self) -> List[ChatMessage]:
        """Return messages that carry a checkpoint version."""
        return [m for m in self.messages if m.version is not None]
