"""End-to-end tests for the session manager."""

import asyncio
import json

import pytest

from freqlab.agent.usage import log_folder_name
from freqlab.errors import (
    NoFailedBuildError,
    ProjectNotFoundError,
    PublishError,
    TurnAlreadyRunningError,
    UsageLogNotFoundError,
)
from freqlab.models.build_models import BuildResult, BuildStatus
from freqlab.models.event_models import Done, TurnStatus
from freqlab.session.manager import SessionManager

pytestmark = pytest.mark.usefixtures("require_git")

TIMEOUT = 30


@pytest.fixture
def manager(config, sink):
    return SessionManager(config, sink=sink)


async def _turn(manager, project_id, prompt):
    turn = await asyncio.wait_for(manager.start_turn(project_id, prompt).wait(), timeout=TIMEOUT)
    await manager.flush_events()
    return turn


async def _build(manager, project_id):
    result = await asyncio.wait_for(manager.start_build(project_id).wait(), timeout=TIMEOUT)
    await manager.flush_events()
    return result


@pytest.mark.asyncio
async def test_revert_then_continue_never_reuses_versions(project, manager, monkeypatch):
    """Test edit, revert to baseline, idle turn, edit again."""
    await manager.register_project(project)

    monkeypatch.setenv("FAKE_AGENT_MODE", "edit")
    first = await _turn(manager, project.id, "Add a filter")
    assert first.version == 1
    message1 = manager.chat_history(project.id).get_message(first.message_id)
    assert message1.version == 1
    assert not message1.reverted

    restored = await manager.revert(project.id, 0)
    assert restored.version == 0
    assert manager.chat_history(project.id).get_message(first.message_id).reverted
    assert (project.root / "src" / "lib.rs").read_text() == "// plugin\n"

    monkeypatch.setenv("FAKE_AGENT_MODE", "noop")
    second = await _turn(manager, project.id, "Explain the code")
    assert second.status == TurnStatus.COMPLETED
    assert second.version is None
    assert [v.version for v in await manager.list_versions(project.id)] == [0, 1]

    monkeypatch.setenv("FAKE_AGENT_MODE", "edit")
    third = await _turn(manager, project.id, "Add a filter again")
    assert third.version == 2

    versions = await manager.list_versions(project.id)
    assert [v.version for v in versions] == [0, 1, 2]
    assert [v.active for v in versions] == [False, False, True]
    history = manager.chat_history(project.id)
    assert history.get_message(first.message_id).reverted
    assert not history.get_message(third.message_id).reverted


@pytest.mark.asyncio
async def test_broken_build_then_fix(project, manager, sink, tmp_path, monkeypatch):
    """Test a compiler error fails the build and feeds the fix turn."""
    monkeypatch.setenv("FAKE_BUILD_MODE", "check")
    monkeypatch.setenv("FAKE_AGENT_MODE", "edit")
    argv_file = tmp_path / "argv.json"
    monkeypatch.setenv("FAKE_AGENT_ARGV_FILE", str(argv_file))
    slot = await manager.register_project(project)

    (project.root / "src" / "lib.rs").write_text('compile_error!("injected failure");\n')
    await slot.checkpoints.commit_turn("m-broken", "Break the build")

    failed = await _build(manager, project.id)

    assert failed.status == BuildStatus.FAILED
    assert 'compile_error!("injected failure")' in failed.error_excerpt
    assert not (manager.config.resolved_output_path / project.name).exists()
    assert isinstance(sink.build_events[-1][1], BuildResult)

    fix_turn = await asyncio.wait_for(manager.fix_build(project.id).wait(), timeout=TIMEOUT)
    argv = json.loads(argv_file.read_text())
    assert "injected failure" in argv[argv.index("-p") + 1]
    assert fix_turn.version == 2

    fixed = await _build(manager, project.id)

    assert fixed.status == BuildStatus.SUCCEEDED
    assert fixed.output_dir == str(manager.config.resolved_output_path / project.name / "v2")


@pytest.mark.asyncio
async def test_sink_sees_checkpoint_before_done(project, manager, sink, monkeypatch):
    """Test the UI learns about a new version before the turn's Done."""
    monkeypatch.setenv("FAKE_AGENT_MODE", "edit")
    await manager.register_project(project)

    await _turn(manager, project.id, "Edit")

    kinds = [kind for kind, _ in sink.order]
    done_index = next(i for i, (kind, event) in enumerate(sink.order) if isinstance(event, Done))
    assert kinds.index("checkpoint") < done_index
    assert sink.checkpoints[0][0] == project.id
    assert sink.checkpoints[0][1].version == 1
    assert all(project_id == project.id for project_id, _ in sink.turn_events)


@pytest.mark.asyncio
async def test_revert_rejected_while_turn_runs(project, manager, monkeypatch):
    """Test the working tree cannot be reverted under a running agent."""
    monkeypatch.setenv("FAKE_AGENT_MODE", "hang")
    await manager.register_project(project)

    manager.start_turn(project.id, "Loop")
    with pytest.raises(TurnAlreadyRunningError):
        await manager.revert(project.id, 0)

    cancelled = await asyncio.wait_for(manager.cancel_turn(project.id), timeout=TIMEOUT)
    assert cancelled.status == TurnStatus.CANCELLED
    assert (await manager.revert(project.id, 0)).version == 0


@pytest.mark.asyncio
async def test_turn_and_build_may_overlap(project, manager, monkeypatch):
    """Test a build of the last checkpoint runs while a turn is active."""
    monkeypatch.setenv("FAKE_AGENT_MODE", "hang")
    monkeypatch.setenv("FAKE_BUILD_MODE", "succeed")
    await manager.register_project(project)

    turn_handle = manager.start_turn(project.id, "Loop")
    result = await _build(manager, project.id)

    assert result.status == BuildStatus.SUCCEEDED
    assert turn_handle.status == TurnStatus.RUNNING
    await asyncio.wait_for(manager.shutdown(), timeout=TIMEOUT)
    assert turn_handle.status == TurnStatus.CANCELLED


@pytest.mark.asyncio
async def test_shutdown_cancels_running_build(project, manager, monkeypatch):
    """Test shutdown stops builds that are still running."""
    monkeypatch.setenv("FAKE_BUILD_MODE", "hang")
    await manager.register_project(project)

    handle = manager.start_build(project.id)
    await asyncio.sleep(0.5)
    await asyncio.wait_for(manager.shutdown(), timeout=TIMEOUT)

    assert handle.status == BuildStatus.CANCELLED


@pytest.mark.asyncio
async def test_sink_failure_does_not_break_turn(project, config, monkeypatch):
    """Test an exception in the sink is logged and ignored."""
    monkeypatch.setenv("FAKE_AGENT_MODE", "edit")

    class BrokenSink:
        def turn_event(self, project_id, event):
            raise RuntimeError("ui gone")

        def checkpoint_created(self, project_id, version):
            raise RuntimeError("ui gone")

        def build_event(self, project_id, event):
            raise RuntimeError("ui gone")

    manager = SessionManager(config, sink=BrokenSink())
    await manager.register_project(project)

    turn = await _turn(manager, project.id, "Edit")

    assert turn.status == TurnStatus.COMPLETED
    assert turn.version == 1


@pytest.mark.asyncio
async def test_register_project_is_idempotent(project, manager):
    """Test registering the same project twice reuses its slot."""
    first = await manager.register_project(project)
    second = await manager.register_project(project)

    assert first is second
    assert manager.project_ids == [project.id]
    assert [v.version for v in await manager.list_versions(project.id)] == [0]


@pytest.mark.asyncio
async def test_unknown_project_is_rejected(manager):
    """Test operations on an unregistered project raise."""
    with pytest.raises(ProjectNotFoundError):
        manager.start_turn("nope", "hello")
    with pytest.raises(ProjectNotFoundError):
        manager.start_build("nope")
    with pytest.raises(ProjectNotFoundError):
        await manager.revert("nope", 0)
    with pytest.raises(ProjectNotFoundError):
        manager.chat_history("nope")


@pytest.mark.asyncio
async def test_cancel_without_activity_is_a_no_op(project, manager):
    """Test cancelling when nothing ran returns None."""
    await manager.register_project(project)

    assert await manager.cancel_turn(project.id) is None
    assert await manager.cancel_build(project.id) is None


@pytest.mark.asyncio
async def test_read_only_registration_leaves_directory_untouched(project, manager):
    """Test registering without initializing creates no repository."""
    await manager.register_project(project, initialize=False)

    assert not (project.root / ".git").exists()
    assert await manager.list_versions(project.id) == []


@pytest.mark.asyncio
async def test_fix_build_requires_a_failed_build(project, manager, monkeypatch):
    """Test fixing is rejected before any build and after a passing one."""
    await manager.register_project(project)

    with pytest.raises(NoFailedBuildError):
        manager.fix_build(project.id)

    monkeypatch.setenv("FAKE_BUILD_MODE", "succeed")
    result = await _build(manager, project.id)
    assert result.status == BuildStatus.SUCCEEDED

    with pytest.raises(NoFailedBuildError):
        manager.fix_build(project.id)
    with pytest.raises(NoFailedBuildError):
        manager.fix_build(project.id, result)
    assert manager.get_slot(project.id).turn is None


@pytest.fixture
def publishing_manager(config, sink, tmp_path):
    config = config.model_copy(
        update={
            "plugin_folders": {
                "default": {"vst3": str(tmp_path / "plugins" / "VST3")},
                "reaper": {"vst3": str(tmp_path / "reaper")},
            },
            "agent_logs_path": tmp_path / "logs",
        }
    )
    return SessionManager(config, sink=sink)


@pytest.mark.asyncio
async def test_publish_and_package_active_version(project, publishing_manager, tmp_path, monkeypatch):
    """Test the built active version is installed and zipped."""
    manager = publishing_manager
    monkeypatch.setenv("FAKE_BUILD_MODE", "succeed")
    await manager.register_project(project)

    with pytest.raises(PublishError, match="Build the project first"):
        await manager.publish(project.id)

    await _build(manager, project.id)

    formats = await manager.available_formats(project.id)
    assert formats["vst3"] is True
    assert formats["clap"] is False

    result = await manager.publish(project.id, targets=["reaper"])
    assert result.success
    assert result.version == 0
    assert [item.target for item in result.copied] == ["reaper"]
    assert (tmp_path / "reaper" / "my_synth.vst3" / "Contents" / "plugin.so").exists()
    assert not (tmp_path / "plugins").exists()

    with pytest.raises(PublishError, match="Unknown plugin folder"):
        await manager.publish(project.id, targets=["bitwig"])

    packaged = await manager.package(project.id, tmp_path / "dist")
    assert packaged.zip_path == str(tmp_path / "dist" / "my-synth_v0.zip")
    assert packaged.included == ["my_synth.vst3"]


@pytest.mark.asyncio
async def test_publish_without_versions_fails(project, publishing_manager):
    """Test publishing an uninitialized project raises."""
    await publishing_manager.register_project(project, initialize=False)

    with pytest.raises(PublishError, match="no checkpointed version"):
        await publishing_manager.publish(project.id)


@pytest.mark.asyncio
async def test_usage_reads_agent_logs(project, publishing_manager, tmp_path, monkeypatch):
    """Test project and session usage come from the agent's log folder."""
    manager = publishing_manager
    await manager.register_project(project)

    with pytest.raises(UsageLogNotFoundError):
        manager.usage(project.id)
    assert manager.session_usage(project.id) is None

    folder = tmp_path / "logs" / log_folder_name(project.root.resolve())
    folder.mkdir(parents=True)
    entry = {"type": "assistant", "message": {"usage": {"input_tokens": 40, "output_tokens": 2}}}
    (folder / "session-1.jsonl").write_text(json.dumps(entry) + "\n")
    (folder / "older.jsonl").write_text(json.dumps(entry) + "\n")

    monkeypatch.setenv("FAKE_AGENT_MODE", "noop")
    await _turn(manager, project.id, "Explain the code")

    assert manager.session_usage(project.id).input_tokens == 40
    total = manager.usage(project.id)
    assert total.session_count == 2
    assert total.input_tokens == 80
