"""Tests for the command-line interface."""

import json
import os
import sys
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from freqlab.cli.app import cli
from freqlab.config import settings

FIXTURES = Path(__file__).parent.parent / "fixtures"
FAKE_AGENT = FIXTURES / "fake_agent.py"
FAKE_BUILD = FIXTURES / "fake_build.py"

pytestmark = pytest.mark.usefixtures("require_git")


@pytest.fixture
def cli_project(tmp_path):
    root = tmp_path / "my-synth"
    (root / "src").mkdir(parents=True)
    (root / "src" / "lib.rs").write_text("// plugin\n")
    (root / ".freqlab").mkdir()
    (root / ".freqlab" / "metadata.json").write_text(json.dumps({"name": "my-synth", "frameworkId": "fake"}))
    return root


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    for key in list(os.environ):
        if key.startswith("FREQLAB_"):
            monkeypatch.delenv(key)
    monkeypatch.setattr(settings, "get_config_paths", lambda: [])

    path = tmp_path / "freqlab.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "workspace_path": str(tmp_path / "workspace"),
                "agent_command": [sys.executable, str(FAKE_AGENT)],
                "grace_period_seconds": 2.0,
                "plugin_folders": {"default": {"vst3": str(tmp_path / "plugins" / "VST3")}},
                "agent_logs_path": str(tmp_path / "agent-logs"),
                "frameworks": {
                    "fake": {
                        "steps": [
                            {"label": "Compile", "command": sys.executable, "arguments": [str(FAKE_BUILD), "{package}"]}
                        ],
                        "artifact_patterns": {"vst3": ["out/{package}.vst3"]},
                        "default_formats": ["vst3"],
                    }
                },
            }
        )
    )
    return path


def _invoke(config_file, *args):
    return CliRunner().invoke(cli, ["--config", str(config_file), *args])


def test_versions_of_new_project_is_read_only(config_file, cli_project):
    """Test listing versions of a fresh project creates no repository."""
    result = _invoke(config_file, "versions", "-p", str(cli_project))

    assert result.exit_code == 0, result.output
    assert "Versions" in result.output
    assert not (cli_project / ".git").exists()

    _invoke(config_file, "revert", "0", "-p", str(cli_project))
    assert (cli_project / ".git").exists()


def test_chat_then_revert(config_file, cli_project, monkeypatch):
    """Test a chat turn checkpoints and revert restores the baseline."""
    monkeypatch.setenv("FAKE_AGENT_MODE", "edit")

    result = _invoke(config_file, "chat", "Add a gain knob", "-p", str(cli_project))
    assert result.exit_code == 0, result.output
    assert "Saved version 1" in result.output
    assert (cli_project / "src" / "lib.rs").read_text() == "// Add a gain knob\n"

    result = _invoke(config_file, "revert", "0", "-p", str(cli_project))
    assert result.exit_code == 0, result.output
    assert "Restored version 0" in result.output
    assert (cli_project / "src" / "lib.rs").read_text() == "// plugin\n"


def test_failed_chat_exits_nonzero(config_file, cli_project, monkeypatch):
    """Test an agent error is reported with a failing exit code."""
    monkeypatch.setenv("FAKE_AGENT_MODE", "error")

    result = _invoke(config_file, "chat", "hello", "-p", str(cli_project))

    assert result.exit_code == 1
    assert "error_max_turns" in result.output


def test_build_success_and_failure(config_file, cli_project, monkeypatch):
    """Test build exit codes follow the build status."""
    monkeypatch.setenv("FAKE_BUILD_MODE", "succeed")
    result = _invoke(config_file, "build", "-p", str(cli_project))
    assert result.exit_code == 0, result.output
    assert "Build succeeded" in result.output

    monkeypatch.setenv("FAKE_BUILD_MODE", "fail")
    result = _invoke(config_file, "build", "-q", "-p", str(cli_project))
    assert result.exit_code == 1
    assert "mismatched types" in result.output


def test_revert_to_unknown_version_fails(config_file, cli_project):
    """Test errors are printed and exit with status 1."""
    result = _invoke(config_file, "revert", "9", "-p", str(cli_project))

    assert result.exit_code == 1
    assert "Version 9 does not exist" in result.output


def test_missing_config_file(tmp_path, cli_project):
    """Test an explicit config path must exist."""
    result = CliRunner().invoke(cli, ["--config", str(tmp_path / "nope.yaml"), "versions"])

    assert result.exit_code != 0
    assert "Config file not found" in result.output


def test_build_then_publish_and_package(config_file, cli_project, tmp_path, monkeypatch):
    """Test a built version can be listed, installed and zipped."""
    monkeypatch.setenv("FAKE_BUILD_MODE", "succeed")
    result = _invoke(config_file, "build", "-q", "-p", str(cli_project))
    assert result.exit_code == 0, result.output

    result = _invoke(config_file, "formats", "-p", str(cli_project))
    assert result.exit_code == 0, result.output
    assert "vst3" in result.output

    result = _invoke(config_file, "publish", "-p", str(cli_project))
    assert result.exit_code == 0, result.output
    assert "Installed vst3" in result.output
    assert (tmp_path / "plugins" / "VST3" / "my_synth.vst3").is_dir()

    result = _invoke(config_file, "publish", "-t", "bitwig", "-p", str(cli_project))
    assert result.exit_code == 1
    assert "Unknown plugin folder target" in result.output

    result = _invoke(config_file, "package", str(tmp_path / "dist"), "-p", str(cli_project))
    assert result.exit_code == 0, result.output
    assert (tmp_path / "dist" / "my-synth_v0.zip").is_file()


def test_publish_before_build_fails(config_file, cli_project):
    """Test publishing a project with no version exits with status 1."""
    result = _invoke(config_file, "publish", "-p", str(cli_project))

    assert result.exit_code == 1
    assert "no checkpointed version" in result.output
    assert not (cli_project / ".git").exists()


def test_usage_without_agent_logs(config_file, cli_project):
    """Test usage of a project the agent never ran in is an error."""
    result = _invoke(config_file, "usage", "-p", str(cli_project))

    assert result.exit_code == 1
    assert "No agent logs" in result.output


def test_usage_totals(config_file, cli_project, tmp_path):
    """Test usage sums the project's session logs."""
    folder = tmp_path / "agent-logs" / str(cli_project.resolve()).replace("/", "-")
    folder.mkdir(parents=True)
    entry = {"type": "assistant", "message": {"usage": {"input_tokens": 1200, "output_tokens": 34}}}
    (folder / "s1.jsonl").write_text(json.dumps(entry) + "\n")

    result = _invoke(config_file, "usage", "-p", str(cli_project))

    assert result.exit_code == 0, result.output
    assert "1,200" in result.output
    assert "34" in result.output


def test_config_show_and_save(config_file, tmp_path):
    """Test the merged config is shown and can be written out."""
    target = tmp_path / "saved" / "config.yaml"

    result = _invoke(config_file, "config", "--save", "--path", str(target))

    assert result.exit_code == 0, result.output
    assert "workspace_path" in result.output
    assert "Configuration saved" in result.output
    saved = yaml.safe_load(target.read_text())
    assert saved["orchestrator"]["grace_period_seconds"] == 2.0
    assert saved["orchestrator"]["workspace_path"] == str(tmp_path / "workspace")
