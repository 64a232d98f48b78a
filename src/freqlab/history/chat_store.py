"""JSON persistence for per-project chat history."""

import json
import logging
import os
import uuid
from pathlib import Path
from typing import Collection, Optional

from ..models.chat_models import ChatHistory, ChatMessage

logger = logging.getLogger(__name__)

CHAT_HISTORY_PATH = ".freqlab/chat_history.json"


class ChatHistoryStore:
    """
    Reads and writes <project>/.freqlab/chat_history.json.

    Every save writes a temp file next to the target and renames it into
    place, so readers never see a half-written document.
    """

    def __init__(self, project_root: Path):
        self.project_root = Path(project_root)
        self.path = self.project_root / CHAT_HISTORY_PATH

    def load(self) -> ChatHistory:
        """
        Load the history, starting fresh if there is none.

        GOTCHA: An unreadable document is moved aside rather than silently
        overwritten by the next save.

        Returns:
            ChatHistory
        """
        if not self.path.exists():
            return ChatHistory()

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return ChatHistory.model_validate(data)
        except (OSError, ValueError) as e:
            backup = self.path.with_name(self.path.name + ".corrupt")
            logger.warning(f"Unreadable chat history {self.path} ({e}), moving to {backup}")
            try:
                os.replace(self.path, backup)
            except OSError as move_error:
                logger.error(f"Failed to move aside {self.path}: {move_error}")
            return ChatHistory()

    def save(self, history: ChatHistory) -> None:
        """
        Atomically persist the history.

        Args:
            history: Document to write
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f".{self.path.name}.{uuid.uuid4().hex}.tmp")

        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(history.model_dump_json(indent=2, exclude_none=True))
            os.replace(tmp_path, self.path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    def append_message(self, message: ChatMessage) -> ChatHistory:
        """
        Add (or replace by id) one message.

        Args:
            message: Message to store

        Returns:
            Updated history
        """
        history = self.load()
        history.add_message(message)
        self.save(history)
        return history

    def mark_reverted(
        self,
        active_version: int,
        lineage: Optional[Collection[int]] = None,
    ) -> ChatHistory:
        """
        Record a new active version and update reverted flags.

        Args:
            active_version: Version the working tree now reflects
            lineage: Versions contained in the active version

        Returns:
            Updated history
        """
        history = self.load()
        changed = history.mark_reverted(active_version, lineage)
        self.save(history)
        logger.debug(
            f"Active version {active_version}: {len(changed)} message flag(s) changed"
        )
        return history
