"""Translate the agent CLI's stream-json output into typed events."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..errors import AgentProtocolError
from ..models.event_models import (
    AgentEvent,
    Done,
    Error,
    TextDelta,
    TokenUsage,
    ToolResult,
    ToolUse,
)

logger = logging.getLogger(__name__)

# Tool name -> input keys holding the path of a file the tool writes
FILE_EDIT_TOOLS: Dict[str, tuple] = {
    "Write": ("file_path",),
    "Edit": ("file_path",),
    "MultiEdit": ("file_path",),
    "NotebookEdit": ("notebook_path",),
}


class StreamJsonParser:
    """
    Stateful parser for one turn's stream-json output.

    Record mapping:
    - system: remembers the session id
    - assistant: text blocks -> TextDelta, tool_use blocks -> ToolUse
    - user: tool_result blocks -> ToolResult
    - result: Done, or Error when the agent reports is_error

    GOTCHA: tool_result blocks only carry the tool_use id, so tool names are
    remembered from the preceding tool_use blocks.
    """

    def __init__(self, project_root: Optional[Path] = None):
        """
        Initialize parser.

        Args:
            project_root: Root used to relativize modified file paths
        """
        self.project_root = Path(project_root) if project_root else None
        self.session_id: Optional[str] = None
        self.usage: Optional[TokenUsage] = None
        self.malformed_lines = 0
        self._tool_names: Dict[str, str] = {}
        self._files_modified: List[str] = []

    @property
    def files_modified(self) -> List[str]:
        """Files written by edit tools so far, in first-touch order."""
        return list(self._files_modified)

    def feed(self, line: str) -> List[AgentEvent]:
        """
        Parse one line, logging and skipping it when malformed.

        Args:
            line: One line of agent stdout

        Returns:
            Events produced by the line (possibly none)
        """
        try:
            return self.parse_line(line)
        except AgentProtocolError as e:
            self.malformed_lines += 1
            logger.warning(f"Skipping malformed agent output: {e} ({line[:200]!r})")
            return []

    def parse_line(self, line: str) -> List[AgentEvent]:
        """
        Parse one line.

        Args:
            line: One line of agent stdout

        Returns:
            Events produced by the line

        Raises:
            AgentProtocolError: If the line is not a JSON object
        """
        line = line.strip()
        if not line:
            return []

        try:
            record = json.loads(line)
        except json.JSONDecodeError as e:
            raise AgentProtocolError(f"Invalid JSON: {e}") from e

        if not isinstance(record, dict):
            raise AgentProtocolError(f"Expected a JSON object, got {type(record).__name__}")

        session_id = record.get("session_id")
        if isinstance(session_id, str) and session_id:
            self.session_id = session_id

        record_type = record.get("type")
        if record_type == "system":
            return []
        if record_type == "assistant":
            return self._parse_assistant(record)
        if record_type == "user":
            return self._parse_user(record)
        if record_type == "result":
            return [self._parse_result(record)]

        logger.debug(f"Ignoring agent record of type {record_type!r}")
        return []

    def _content_blocks(self, record: Dict[str, Any]) -> List[Dict[str, Any]]:
        message = record.get("message")
        if not isinstance(message, dict):
            raise AgentProtocolError(f"{record.get('type')} record without message")

        content = message.get("content")
        if isinstance(content, str):
            return [{"type": "text", "text": content}]
        if not isinstance(content, list):
            return []
        return [block for block in content if isinstance(block, dict)]

    def _parse_assistant(self, record: Dict[str, Any]) -> List[AgentEvent]:
        events: List[AgentEvent] = []

        for block in self._content_blocks(record):
            block_type = block.get("type")

            if block_type == "text":
                text = block.get("text") or ""
                if text:
                    events.append(TextDelta(text=text))

            elif block_type == "tool_use":
                name = block.get("name") or "unknown"
                args = block.get("input") if isinstance(block.get("input"), dict) else {}
                if block.get("id"):
                    self._tool_names[block["id"]] = name
                self._record_file_edit(name, args)
                events.append(ToolUse(name=name, args=args))

        return events

    def _parse_user(self, record: Dict[str, Any]) -> List[AgentEvent]:
        events: List[AgentEvent] = []

        for block in self._content_blocks(record):
            if block.get("type") != "tool_result":
                continue
            name = self._tool_names.get(block.get("tool_use_id", ""), "unknown")
            events.append(
                ToolResult(
                    name=name,
                    payload=_result_payload(block.get("content")),
                    is_error=bool(block.get("is_error", False)),
                )
            )

        return events

    def _parse_result(self, record: Dict[str, Any]) -> AgentEvent:
        self.usage = _parse_usage(record)
        subtype = record.get("subtype") or ""
        result_text = record.get("result") if isinstance(record.get("result"), str) else ""

        if record.get("is_error") or subtype.startswith("error"):
            return Error(message=result_text or f"Agent run ended with {subtype or 'an error'}")

        return Done(
            summary=result_text,
            files_modified=self.files_modified,
            usage=self.usage,
        )

    def _record_file_edit(self, tool_name: str, args: Dict[str, Any]) -> None:
        for key in FILE_EDIT_TOOLS.get(tool_name, ()):
            path = args.get(key)
            if isinstance(path, str) and path:
                relative = self._relativize(path)
                if relative not in self._files_modified:
                    self._files_modified.append(relative)

    def _relativize(self, path: str) -> str:
        candidate = Path(path)
        if not candidate.is_absolute() or self.project_root is None:
            return candidate.as_posix()

        # Resolved form handles symlinked roots such as /tmp on macOS
        for root in (self.project_root, self.project_root.resolve()):
            try:
                return candidate.relative_to(root).as_posix()
            except ValueError:
                continue
        return candidate.as_posix()


def _result_payload(content: Any) -> Any:
    """Flatten tool_result content into text where possible."""
    if isinstance(content, list):
        texts = [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        if len(texts) == len(content):
            return "\n".join(texts)
    return content


def _parse_usage(record: Dict[str, Any]) -> Optional[TokenUsage]:
    usage = record.get("usage")
    cost = record.get("total_cost_usd")
    if not isinstance(usage, dict) and cost is None:
        return None

    usage = usage if isinstance(usage, dict) else {}
    return TokenUsage(
        input_tokens=int(usage.get("input_tokens") or 0),
        output_tokens=int(usage.get("output_tokens") or 0),
        cache_creation_tokens=int(usage.get("cache_creation_input_tokens") or 0),
        cache_read_tokens=int(usage.get("cache_read_input_tokens") or 0),
        total_cost_usd=float(cost) if cost is not None else None,
    )
