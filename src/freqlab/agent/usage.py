"""Token usage totals read from the agent CLI's session logs.

The agent keeps one JSONL log per session under
<logs>/<project path with "/" replaced by "-">/<session id>.jsonl.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from ..errors import UsageLogNotFoundError
from ..models.publish_models import UsageSummary

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_WINDOW = 200_000


def log_folder_name(project_root: Path) -> str:
    """Folder name the agent uses for a project path."""
    return str(project_root).replace("/", "-")


def find_log_folder(logs_path: Path, project_root: Path) -> Optional[Path]:
    """Session log folder of a project, if the agent has written one."""
    folder = Path(logs_path) / log_folder_name(Path(project_root).resolve())
    return folder if folder.is_dir() else None


def parse_session_log(path: Path, context_window: int = DEFAULT_CONTEXT_WINDOW) -> UsageSummary:
    """
    Sum the usage records of one session log.

    GOTCHA: The context size is that of the most recent request, not a sum,
    since cached input is re-read on every request.

    Args:
        path: Session .jsonl file
        context_window: Model context size for the percentage

    Returns:
        UsageSummary (empty if the file cannot be read)
    """
    usage = UsageSummary(session_count=1)
    last_context = 0

    try:
        lines = Path(path).read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError as e:
        logger.warning(f"Cannot read session log {path}: {e}")
        return usage

    for line in lines:
        try:
            entry = json.loads(line)
        except ValueError:
            continue
        if not isinstance(entry, dict):
            continue

        if entry.get("type") in ("user", "assistant"):
            usage.message_count += 1

        message = entry.get("message")
        record = message.get("usage") if isinstance(message, dict) else None
        if not isinstance(record, dict):
            continue

        input_tokens = int(record.get("input_tokens") or 0)
        cache_creation = int(record.get("cache_creation_input_tokens") or 0)
        cache_read = int(record.get("cache_read_input_tokens") or 0)
        usage.input_tokens += input_tokens
        usage.output_tokens += int(record.get("output_tokens") or 0)
        usage.cache_creation_tokens += cache_creation
        usage.cache_read_tokens += cache_read

        context = input_tokens + cache_creation + cache_read
        if context > 0:
            last_context = context

    usage.context_tokens = last_context
    usage.context_percent = min(last_context / context_window * 100.0, 100.0)
    return usage


def session_usage(
    logs_path: Path,
    project_root: Path,
    session_id: str,
    context_window: int = DEFAULT_CONTEXT_WINDOW,
) -> UsageSummary:
    """
    Usage of one agent session.

    Raises:
        UsageLogNotFoundError: If the project or session has no log
    """
    folder = find_log_folder(logs_path, project_root)
    log = folder / f"{session_id}.jsonl" if folder is not None else None
    if log is None or not log.is_file():
        raise UsageLogNotFoundError(f"Session log not found: {session_id}")
    return parse_session_log(log, context_window)


def project_usage(
    logs_path: Path,
    project_root: Path,
    context_window: int = DEFAULT_CONTEXT_WINDOW,
) -> UsageSummary:
    """
    Usage summed over every agent session of a project.

    Args:
        logs_path: Agent log root
        project_root: Project directory
        context_window: Model context size for the percentage

    Returns:
        UsageSummary

    Raises:
        UsageLogNotFoundError: If the agent never ran in this project
    """
    folder = find_log_folder(logs_path, project_root)
    if folder is None:
        raise UsageLogNotFoundError(f"No agent logs for {project_root}")

    total = UsageSummary()
    for log in sorted(folder.glob("*.jsonl")):
        session = parse_session_log(log, context_window)
        total.input_tokens += session.input_tokens
        total.output_tokens += session.output_tokens
        total.cache_creation_tokens += session.cache_creation_tokens
        total.cache_read_tokens += session.cache_read_tokens
        total.message_count += session.message_count
        total.session_count += 1

    total.context_tokens = total.input_tokens + total.cache_read_tokens
    total.context_percent = min(total.context_tokens / context_window * 100.0, 100.0)
    return total
