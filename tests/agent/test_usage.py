"""Tests for token usage read from agent session logs."""

import json

import pytest

from freqlab.agent.usage import (
    log_folder_name,
    parse_session_log,
    project_usage,
    session_usage,
)
from freqlab.errors import UsageLogNotFoundError


def _usage_entry(kind, input_tokens=0, output_tokens=0, cache_creation=0, cache_read=0):
    return {
        "type": kind,
        "message": {
            "usage": {
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "cache_creation_input_tokens": cache_creation,
                "cache_read_input_tokens": cache_read,
            }
        },
    }


def _write_log(path, entries):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(e if isinstance(e, str) else json.dumps(e) for e in entries) + "\n")
    return path


@pytest.fixture
def logs(tmp_path):
    return tmp_path / "logs"


@pytest.fixture
def project_root(tmp_path):
    root = tmp_path / "projects" / "my-synth"
    root.mkdir(parents=True)
    return root


def test_log_folder_name(tmp_path):
    """Test path separators become dashes."""
    assert log_folder_name(tmp_path / "a" / "b") == str(tmp_path / "a" / "b").replace("/", "-")


def test_parse_session_log_sums_and_keeps_latest_context(tmp_path):
    """Test totals are summed while context is the last request's size."""
    log = _write_log(
        tmp_path / "s.jsonl",
        [
            {"type": "user", "message": {"content": "hi"}},
            _usage_entry("assistant", input_tokens=100, output_tokens=20, cache_creation=1000),
            _usage_entry("assistant", input_tokens=10, output_tokens=30, cache_read=1000),
            {"type": "system", "subtype": "init"},
        ],
    )

    usage = parse_session_log(log, context_window=2000)

    assert usage.message_count == 3
    assert usage.input_tokens == 110
    assert usage.output_tokens == 50
    assert usage.cache_creation_tokens == 1000
    assert usage.cache_read_tokens == 1000
    assert usage.context_tokens == 1010
    assert usage.context_percent == pytest.approx(50.5)
    assert usage.session_count == 1


def test_parse_session_log_skips_malformed_lines(tmp_path):
    """Test garbage and non-object lines are ignored."""
    log = _write_log(
        tmp_path / "s.jsonl",
        [
            "{not json",
            "[1, 2]",
            {"type": "assistant", "message": "plain"},
            _usage_entry("assistant", input_tokens=5, output_tokens=1),
        ],
    )

    usage = parse_session_log(log)

    assert usage.message_count == 2
    assert usage.input_tokens == 5
    assert usage.context_tokens == 5


def test_context_percent_is_capped(tmp_path):
    """Test context beyond the window reports 100 percent."""
    log = _write_log(tmp_path / "s.jsonl", [_usage_entry("assistant", input_tokens=500)])

    assert parse_session_log(log, context_window=100).context_percent == 100.0


def test_unreadable_log_is_empty(tmp_path):
    """Test a missing file yields an empty summary."""
    usage = parse_session_log(tmp_path / "missing.jsonl")

    assert usage.input_tokens == 0
    assert usage.message_count == 0


def test_project_usage_totals_every_session(logs, project_root):
    """Test every session log of the project is summed."""
    folder = logs / log_folder_name(project_root.resolve())
    _write_log(folder / "a.jsonl", [_usage_entry("assistant", input_tokens=100, output_tokens=10, cache_read=50)])
    _write_log(folder / "b.jsonl", [_usage_entry("assistant", input_tokens=200, output_tokens=20, cache_read=150)])
    (folder / "notes.txt").write_text("ignored")

    usage = project_usage(logs, project_root, context_window=1000)

    assert usage.session_count == 2
    assert usage.message_count == 2
    assert usage.input_tokens == 300
    assert usage.output_tokens == 30
    assert usage.context_tokens == 500
    assert usage.context_percent == pytest.approx(50.0)


def test_project_usage_without_logs(logs, project_root):
    """Test a project the agent never ran in raises."""
    with pytest.raises(UsageLogNotFoundError):
        project_usage(logs, project_root)


def test_session_usage(logs, project_root):
    """Test one session's log is read by id."""
    folder = logs / log_folder_name(project_root.resolve())
    _write_log(folder / "session-1.jsonl", [_usage_entry("assistant", output_tokens=7)])

    assert session_usage(logs, project_root, "session-1").output_tokens == 7
    with pytest.raises(UsageLogNotFoundError, match="session-2"):
        session_usage(logs, project_root, "session-2")
