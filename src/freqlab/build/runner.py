"""Build pipeline runner: cancellable, streamed framework builds."""

import asyncio
import itertools
import logging
import os
import shutil
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Deque, Dict, List, Optional

from ..checkpoints.store import CheckpointStore
from ..config.settings import OrchestratorConfig
from ..errors import (
    ArtifactCopyError,
    BuildAlreadyRunningError,
    BuildArtifactMissing,
    BuildFailure,
    CheckpointWriteError,
    ProcessSpawnError,
    WorkspaceUnavailableError,
)
from ..models.build_models import (
    BuildEvent,
    BuildLogLine,
    BuildResult,
    BuildRun,
    BuildStatus,
    BuildStep,
    LogSource,
)
from ..models.project_models import Project
from ..process.supervisor import ManagedProcess, build_env
from ..streams.channel import EventChannel, Subscription
from ..streams.multiplexer import LogStreamMultiplexer
from .artifacts import publish_artifacts, version_output_dir
from .excerpt import extract_error_excerpt
from .frameworks import BuildPlan

logger = logging.getLogger(__name__)


class BuildHandle:
    """
    Caller's handle on a running build.

    Subscribers receive BuildLogLine events followed by exactly one
    BuildResult. The result is retained for late subscribers.
    """

    def __init__(self, run: BuildRun, capacity: int = 1000, max_log_lines: int = 5000):
        self.run = run
        self.result: Optional[BuildResult] = None
        self._channel: EventChannel[BuildEvent] = EventChannel(
            capacity,
            name=f"build:{run.id[:8]}",
            is_terminal=lambda event: isinstance(event, BuildResult),
        )
        self._log: Deque[BuildLogLine] = deque(maxlen=max_log_lines)
        self._seq = itertools.count(1)
        self._task: Optional[asyncio.Task] = None
        self._process: Optional[ManagedProcess] = None
        self._cancel_requested = False
        self._timed_out = False
        self._deadline: Optional[float] = None

    @property
    def id(self) -> str:
        return self.run.id

    @property
    def project_id(self) -> str:
        return self.run.project_id

    @property
    def status(self) -> BuildStatus:
        return self.run.status

    @property
    def log_lines(self) -> List[BuildLogLine]:
        """Most recent log lines (bounded)."""
        return list(self._log)

    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def subscribe(self, capacity: Optional[int] = None) -> Subscription[BuildEvent]:
        """Subscribe to log lines and the final result."""
        return self._channel.subscribe(capacity)

    async def wait(self) -> BuildResult:
        """Wait for the build to finish and return its result."""
        if self._task is not None:
            await asyncio.shield(self._task)
        return self.result

    def _log_line(self, source: LogSource, text: str) -> None:
        line = BuildLogLine(seq=next(self._seq), source=source, text=text)
        self._log.append(line)
        self._channel.publish(line)


class BuildPipelineRunner:
    """
    Runs framework build plans against each project's last checkpoint.

    The build works in <workspace>/.build/<project_id>, refreshed from the
    active checkpoint before each build, so uncommitted edits of a running
    agent turn never leak into a build.
    """

    def __init__(self, config: OrchestratorConfig):
        self.config = config
        self._running: Dict[str, BuildHandle] = {}

    def is_running(self, project_id: str) -> bool:
        handle = self._running.get(project_id)
        return handle is not None and handle.run.status == BuildStatus.RUNNING

    def run_build(
        self,
        project: Project,
        checkpoints: CheckpointStore,
        formats: Optional[List[str]] = None,
    ) -> BuildHandle:
        """
        Start a build in the background.

        Args:
            project: Project to build
            checkpoints: Store providing the tree to build
            formats: Output formats (default: the framework's defaults)

        Returns:
            BuildHandle

        Raises:
            BuildAlreadyRunningError: If the project already has a running build
            WorkspaceUnavailableError: If the workspace root is not usable
        """
        if self.is_running(project.id):
            raise BuildAlreadyRunningError(f"A build is already running for {project.id}")

        self._check_workspace()

        framework = self.config.get_framework(project.framework_id)
        plan = BuildPlan(
            framework,
            project,
            formats=formats,
            configuration=self.config.build_configuration,
        )
        run = BuildRun(project_id=project.id, formats=plan.formats or framework.default_formats)
        handle = BuildHandle(
            run,
            capacity=self.config.channel_capacity,
            max_log_lines=self.config.build_log_max_lines,
        )
        if self.config.build_timeout:
            handle._deadline = asyncio.get_running_loop().time() + self.config.build_timeout

        logger.info(
            f"Starting {framework.name or framework.id} build {run.id[:8]} for {project.id} "
            f"(formats: {', '.join(run.formats) or 'default'})"
        )
        handle._task = asyncio.create_task(self._run(handle, project, plan, checkpoints))
        self._running[project.id] = handle
        return handle

    async def cancel_build(self, handle: BuildHandle) -> BuildResult:
        """
        Stop a build. Cancelled builds never publish artifacts.

        Idempotent: cancelling a finished build is a no-op.

        Args:
            handle: Build to cancel

        Returns:
            The build result
        """
        if handle.run.status == BuildStatus.RUNNING and not handle._cancel_requested:
            logger.info(f"Cancelling build {handle.id[:8]}")
            handle._cancel_requested = True
            if handle._process is not None:
                await handle._process.terminate(self.config.grace_period_seconds)
        return await handle.wait()

    def _check_workspace(self) -> None:
        workspace = self.config.workspace_path
        try:
            self.config.build_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorkspaceUnavailableError(f"Workspace {workspace} is not usable: {e}") from e
        if not os.access(self.config.build_root, os.W_OK):
            raise WorkspaceUnavailableError(f"Workspace {workspace} is not writable")

    async def _run(
        self,
        handle: BuildHandle,
        project: Project,
        plan: BuildPlan,
        checkpoints: CheckpointStore,
    ) -> None:
        run = handle.run
        build_dir = self.config.build_root / project.id

        try:
            try:
                run.version = await self._prepare_workspace(build_dir, plan, checkpoints)
            except (CheckpointWriteError, OSError) as e:
                raise BuildFailure(f"Failed to prepare build workspace: {e}") from e

            for step in plan.steps:
                if handle._cancel_requested or handle._timed_out:
                    break
                handle._log_line(LogSource.SYSTEM, f"=== {step.label} ===")
                exit_code = await self._run_step(handle, step, build_dir)
                run.exit_code = exit_code
                if handle._cancel_requested or handle._timed_out:
                    break
                if exit_code != 0:
                    raise BuildFailure(f"{step.label} failed with exit code {exit_code}", exit_code)

            if handle._cancel_requested:
                self._finish(handle, BuildStatus.CANCELLED, "Build cancelled")
                return
            if handle._timed_out:
                raise BuildFailure(f"Build timed out after {self.config.build_timeout}s", run.exit_code)

            artifacts = plan.find_artifacts(build_dir)
            if not artifacts:
                raise BuildArtifactMissing(
                    f"Build finished but produced no artifact matching {plan.artifact_patterns}",
                    exit_code=run.exit_code,
                )

            output_dir = version_output_dir(
                self.config.resolved_output_path, project.name, run.version or 0
            )
            published = await asyncio.to_thread(publish_artifacts, artifacts, output_dir)
            run.artifact_paths = [str(path) for path in published]
            run.output_dir = str(output_dir)
            self._finish(handle, BuildStatus.SUCCEEDED, f"Build succeeded: {len(published)} artifact(s)")

        except BuildFailure as e:
            if e.exit_code is not None:
                run.exit_code = e.exit_code
            run.error_excerpt = self._excerpt(handle) or str(e)
            logger.warning(f"Build {run.id[:8]} failed: {e}")
            self._finish(handle, BuildStatus.FAILED, str(e))

        except (ArtifactCopyError, ProcessSpawnError) as e:
            run.error_excerpt = str(e)
            logger.error(f"Build {run.id[:8]} failed: {e}")
            self._finish(handle, BuildStatus.FAILED, str(e))

        except asyncio.CancelledError:
            self._finish(handle, BuildStatus.CANCELLED, "Build interrupted")
            raise

        except Exception as e:
            logger.error(f"Build {run.id[:8]} crashed: {e}", exc_info=True)
            run.error_excerpt = str(e)
            self._finish(handle, BuildStatus.FAILED, f"Internal error: {e}")

    async def _prepare_workspace(
        self,
        build_dir: Path,
        plan: BuildPlan,
        checkpoints: CheckpointStore,
    ) -> Optional[int]:
        build_dir.mkdir(parents=True, exist_ok=True)
        preserved = set(plan.preserve_dirs)

        stale = [entry for entry in build_dir.iterdir() if entry.name not in preserved]
        await asyncio.to_thread(_remove_entries, stale)

        version = await checkpoints.export_snapshot(build_dir)

        for relative in plan.clean_files:
            path = build_dir / relative
            if path.is_file():
                path.unlink()
                logger.debug(f"Removed {path} before build")
        return version

    async def _run_step(self, handle: BuildHandle, step: BuildStep, build_dir: Path) -> int:
        process = await ManagedProcess.spawn(
            [step.command, *step.arguments],
            cwd=build_dir,
            env=build_env(self.config.extra_path_dirs, step.env),
            name=step.command,
        )
        handle._process = process

        mux = LogStreamMultiplexer(
            capacity=self.config.channel_capacity,
            on_line=lambda line: handle._log_line(LogSource(line.source), line.text),
            name=f"build:{handle.project_id}",
        )
        mux.attach(LogSource.STDOUT.value, process.stdout)
        mux.attach(LogSource.STDERR.value, process.stderr)

        try:
            if handle._cancel_requested:
                await process.terminate(self.config.grace_period_seconds)
            exit_code = await self._wait_for_exit(handle, process)
            await mux.drain(timeout=self.config.grace_period_seconds)
        except asyncio.CancelledError:
            await process.terminate(self.config.grace_period_seconds)
            raise
        finally:
            await mux.close()
            handle._process = None
        return exit_code

    async def _wait_for_exit(self, handle: BuildHandle, process: ManagedProcess) -> int:
        if handle._deadline is None:
            return await process.wait()

        remaining = handle._deadline - asyncio.get_running_loop().time()
        try:
            return await asyncio.wait_for(process.wait(), timeout=max(remaining, 0))
        except asyncio.TimeoutError:
            logger.warning(f"Build {handle.id[:8]} exceeded {self.config.build_timeout}s")
            handle._timed_out = True
            return await process.terminate(self.config.grace_period_seconds)

    def _excerpt(self, handle: BuildHandle) -> Optional[str]:
        lines = [line.text for line in handle.log_lines if line.source != LogSource.SYSTEM]
        return extract_error_excerpt(lines, max_lines=self.config.excerpt_max_lines)

    def _finish(self, handle: BuildHandle, status: BuildStatus, message: str) -> None:
        run = handle.run
        if run.status != BuildStatus.RUNNING:
            return

        run.status = status
        run.finished_at = datetime.now()
        run.log_lines = handle.log_lines
        if status != BuildStatus.FAILED:
            run.error_excerpt = None

        handle.result = run.to_result(message)
        logger.info(f"Build {run.id[:8]} {status.value}: {message}")

        handle._channel.publish(handle.result)
        handle._channel.close()
        if self._running.get(run.project_id) is handle:
            del self._running[run.project_id]


def _remove_entries(paths: List[Path]) -> None:
    for path in paths:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
