"""Shared fixtures for orchestrator tests."""

import shutil
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import pytest

from freqlab.config.settings import OrchestratorConfig
from freqlab.models.build_models import BuildStep, FrameworkBuildConfig
from freqlab.models.project_models import Project

FIXTURES = Path(__file__).parent / "fixtures"
FAKE_AGENT = FIXTURES / "fake_agent.py"
FAKE_BUILD = FIXTURES / "fake_build.py"


class RecordingSink:
    """EventSink that keeps everything it receives, in arrival order."""

    def __init__(self):
        self.turn_events = []
        self.checkpoints = []
        self.build_events = []
        self.order = []

    def turn_event(self, project_id, event):
        self.turn_events.append((project_id, event))
        self.order.append(("turn", event))

    def checkpoint_created(self, project_id, version):
        self.checkpoints.append((project_id, version))
        self.order.append(("checkpoint", version))

    def build_event(self, project_id, event):
        self.build_events.append((project_id, event))
        self.order.append(("build", event))


@pytest.fixture
def require_git():
    """Skip tests that need a git executable."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")


@pytest.fixture
def workspace(tmp_path) -> Path:
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def project(tmp_path) -> Project:
    """A small project with one source file."""
    root = tmp_path / "projects" / "my-synth"
    (root / "src").mkdir(parents=True)
    (root / "src" / "lib.rs").write_text("// plugin\n")
    return Project(id="my-synth", name="my-synth", root=root, framework_id="fake")


@pytest.fixture
def fake_framework() -> FrameworkBuildConfig:
    return FrameworkBuildConfig(
        id="fake",
        name="Fake",
        build_system="custom",
        steps=[
            BuildStep(
                label="Compile",
                command=sys.executable,
                arguments=[str(FAKE_BUILD), "{package}"],
                env={"FAKE_BUILD_SUFFIX": "{build_suffix}"},
            ),
        ],
        preserve_dirs=["cache"],
        artifact_patterns={"vst3": ["out/{package}.vst3"]},
        default_formats=["vst3"],
    )


@pytest.fixture
def config(workspace, fake_framework) -> OrchestratorConfig:
    return OrchestratorConfig(
        workspace_path=workspace,
        output_path=workspace / "output",
        agent_command=[sys.executable, str(FAKE_AGENT)],
        agent_model=None,
        turn_idle_timeout=None,
        build_timeout=None,
        grace_period_seconds=2.0,
        checkpoint_lock_timeout=2.0,
        default_framework="fake",
        frameworks={"fake": fake_framework},
    )


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()
