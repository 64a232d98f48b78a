"""Per-project registry of turns, builds and checkpoint stores."""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Union

from ..agent.controller import AgentSessionController, TurnHandle
from ..agent.prompts import build_fix_prompt
from ..agent.usage import project_usage, session_usage
from ..build.runner import BuildHandle, BuildPipelineRunner
from ..checkpoints.store import CheckpointStore
from ..config.settings import OrchestratorConfig, load_config
from ..errors import (
    CheckpointLockTimeout,
    NoFailedBuildError,
    ProjectNotFoundError,
    PublishError,
    TurnAlreadyRunningError,
)
from ..history.chat_store import ChatHistoryStore
from ..models.build_models import BuildEvent, BuildResult, BuildStatus
from ..models.chat_models import Attachment, ChatHistory
from ..models.checkpoint_models import Version
from ..models.event_models import AgentEvent, Turn
from ..models.project_models import Project
from ..models.publish_models import PackageResult, PublishResult, UsageSummary
from ..publish.distribution import available_formats, package_plugins, publish_to_plugin_folders
from ..streams.channel import Subscription
from ..utils.retry import RetryManager

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    """Receiver of everything the orchestrator reports to the UI."""

    def turn_event(self, project_id: str, event: AgentEvent) -> None:
        ...

    def checkpoint_created(self, project_id: str, version: Version) -> None:
        ...

    def build_event(self, project_id: str, event: BuildEvent) -> None:
        ...


class NullEventSink:
    """Sink that discards every event."""

    def turn_event(self, project_id: str, event: AgentEvent) -> None:
        pass

    def checkpoint_created(self, project_id: str, version: Version) -> None:
        pass

    def build_event(self, project_id: str, event: BuildEvent) -> None:
        pass


@dataclass
class ProjectSlot:
    """Registered project with its stores and its latest turn and build."""

    project: Project
    checkpoints: CheckpointStore
    chat: ChatHistoryStore
    turn: Optional[TurnHandle] = None
    build: Optional[BuildHandle] = None


class SessionManager:
    """
    Entry point for a UI: owns one controller, one build runner and a slot per
    project, and forwards every handle's events to the EventSink.

    Per project at most one turn and one build run at a time; they may
    overlap because builds use the last checkpoint, not the live tree.
    """

    def __init__(
        self,
        config: Optional[OrchestratorConfig] = None,
        sink: Optional[EventSink] = None,
    ):
        """
        Initialize session manager.

        Args:
            config: Orchestrator configuration (default: load_config())
            sink: Event receiver (default: discard)
        """
        self.config = config or load_config()
        self.sink = sink or NullEventSink()
        self.controller = AgentSessionController(self.config, on_checkpoint=self._on_checkpoint)
        self.runner = BuildPipelineRunner(self.config)
        self._projects: Dict[str, ProjectSlot] = {}
        self._forwarders: Dict[asyncio.Task, Union[TurnHandle, BuildHandle]] = {}
        self._retry = RetryManager(
            max_retries=self.config.checkpoint_retries,
            base_delay=0.5,
            max_delay=5.0,
        )

    async def register_project(self, project: Project, initialize: bool = True) -> ProjectSlot:
        """
        Register a project and make sure its checkpoint repository exists.

        Registering an already known id returns the existing slot.

        Args:
            project: Project to register
            initialize: Create the repository and baseline version if missing.
                Read-only callers pass False and leave the directory untouched.

        Returns:
            ProjectSlot
        """
        existing = self._projects.get(project.id)
        if existing is not None:
            return existing

        chat = ChatHistoryStore(project.root)
        checkpoints = CheckpointStore(
            project.root,
            chat_store=chat,
            lock_timeout=self.config.checkpoint_lock_timeout,
            author_name=self.config.git_author_name,
            author_email=self.config.git_author_email,
        )
        if initialize:
            await checkpoints.ensure_initialized()

        slot = ProjectSlot(project=project, checkpoints=checkpoints, chat=chat)
        self._projects[project.id] = slot
        logger.info(f"Registered project {project.id} ({project.framework_id}) at {project.root}")
        return slot

    def get_slot(self, project_id: str) -> ProjectSlot:
        """
        Look up a registered project.

        Raises:
            ProjectNotFoundError: If the id is unknown
        """
        slot = self._projects.get(project_id)
        if slot is None:
            raise ProjectNotFoundError(f"Project '{project_id}' is not registered")
        return slot

    @property
    def project_ids(self) -> List[str]:
        return list(self._projects)

    # Turns

    def start_turn(
        self,
        project_id: str,
        prompt: str,
        attachments: Optional[List[Attachment]] = None,
        allowed_tools: Optional[List[str]] = None,
        max_turns: Optional[int] = None,
    ) -> TurnHandle:
        """
        Start an agent turn for a project.

        Raises:
            ProjectNotFoundError: If the project is not registered
            TurnAlreadyRunningError: If the project has a running turn
        """
        slot = self.get_slot(project_id)
        handle = self.controller.start_turn(
            slot.project,
            prompt,
            attachments=attachments,
            allowed_tools=allowed_tools,
            max_turns=max_turns,
            checkpoints=slot.checkpoints,
            chat=slot.chat,
        )
        slot.turn = handle
        self._forward(
            handle,
            handle.subscribe(),
            lambda event: self.sink.turn_event(project_id, event),
        )
        return handle

    async def cancel_turn(self, project_id: str) -> Optional[Turn]:
        """Cancel the project's turn, if any. Returns the finished turn."""
        slot = self.get_slot(project_id)
        if slot.turn is None:
            return None
        return await self.controller.cancel_turn(slot.turn)

    def clear_agent_session(self, project_id: str) -> None:
        """Make the project's next turn start a new agent conversation."""
        self.get_slot(project_id)
        self.controller.clear_session(project_id)

    def fix_build(
        self,
        project_id: str,
        result: Optional[BuildResult] = None,
    ) -> TurnHandle:
        """
        Ask the agent to fix a failed build.

        Args:
            project_id: Project whose build failed
            result: Failed build result (default: the project's last build)

        Returns:
            TurnHandle of the fix turn

        Raises:
            NoFailedBuildError: If there is no finished, failed build to fix
        """
        slot = self.get_slot(project_id)
        if result is None and slot.build is not None:
            result = slot.build.result
        if result is None or result.status != BuildStatus.FAILED:
            raise NoFailedBuildError(f"Project '{project_id}' has no failed build to fix")
        return self.start_turn(project_id, build_fix_prompt(result.error_excerpt))

    # Builds

    def start_build(self, project_id: str, formats: Optional[List[str]] = None) -> BuildHandle:
        """
        Build the project's active checkpoint.

        Raises:
            ProjectNotFoundError: If the project is not registered
            BuildAlreadyRunningError: If the project has a running build
            WorkspaceUnavailableError: If the workspace root is not usable
        """
        slot = self.get_slot(project_id)
        handle = self.runner.run_build(slot.project, slot.checkpoints, formats)
        slot.build = handle
        self._forward(
            handle,
            handle.subscribe(),
            lambda event: self.sink.build_event(project_id, event),
        )
        return handle

    async def cancel_build(self, project_id: str) -> Optional[BuildResult]:
        """Cancel the project's build, if any. Returns its result."""
        slot = self.get_slot(project_id)
        if slot.build is None:
            return None
        return await self.runner.cancel_build(slot.build)

    # Checkpoints

    async def revert(self, project_id: str, version: int) -> Version:
        """
        Restore the project to a version.

        Raises:
            TurnAlreadyRunningError: If a turn is editing the tree right now
            VersionNotFoundError: If the version does not exist
            CheckpointLockTimeout: If the lock stays contended after retries
        """
        slot = self.get_slot(project_id)
        if self.controller.is_running(project_id):
            raise TurnAlreadyRunningError(
                f"Cannot revert {project_id} while a turn is running"
            )

        restored = await self._retry.execute_with_retry(
            slot.checkpoints.revert_to,
            version,
            retry_on=(CheckpointLockTimeout,),
        )
        return restored

    async def list_versions(self, project_id: str) -> List[Version]:
        """All versions of the project, oldest first."""
        return await self.get_slot(project_id).checkpoints.list_versions()

    def chat_history(self, project_id: str) -> ChatHistory:
        """The project's persisted chat history."""
        return self.get_slot(project_id).chat.load()

    # Distribution

    async def available_formats(
        self, project_id: str, version: Optional[int] = None
    ) -> Dict[str, bool]:
        """Formats a version (default: the active one) has artifacts for."""
        slot = self.get_slot(project_id)
        version = await self._version_or_active(slot, version)
        return available_formats(self.config.resolved_output_path, slot.project.name, version)

    async def publish(
        self,
        project_id: str,
        version: Optional[int] = None,
        formats: Optional[List[str]] = None,
        targets: Optional[List[str]] = None,
    ) -> PublishResult:
        """
        Install a built version into the configured plugin folders.

        Args:
            project_id: Project to install
            version: Built version (default: the active one)
            formats: Only these format ids (default: all built)
            targets: Only these plugin folder targets (default: all configured)

        Returns:
            PublishResult

        Raises:
            PublishError: If a target is unknown or the version has no artifacts
        """
        slot = self.get_slot(project_id)
        version = await self._version_or_active(slot, version)

        folders = self.config.plugin_folders
        if targets:
            unknown = [name for name in targets if name not in folders]
            if unknown:
                raise PublishError(f"Unknown plugin folder target(s): {', '.join(unknown)}")
            folders = {name: folders[name] for name in targets}

        return await asyncio.to_thread(
            publish_to_plugin_folders,
            self.config.resolved_output_path,
            slot.project.name,
            version,
            folders,
            formats,
        )

    async def package(
        self,
        project_id: str,
        destination: Path,
        version: Optional[int] = None,
        formats: Optional[List[str]] = None,
    ) -> PackageResult:
        """Zip a built version (default: the active one) for distribution."""
        slot = self.get_slot(project_id)
        version = await self._version_or_active(slot, version)
        return await asyncio.to_thread(
            package_plugins,
            self.config.resolved_output_path,
            slot.project.name,
            version,
            destination,
            formats,
        )

    def usage(self, project_id: str) -> UsageSummary:
        """
        Token usage over every agent session of the project.

        Raises:
            UsageLogNotFoundError: If the agent never ran in this project
        """
        slot = self.get_slot(project_id)
        return project_usage(
            self.config.agent_logs_path, slot.project.root, self.config.context_window
        )

    def session_usage(self, project_id: str) -> Optional[UsageSummary]:
        """Token usage of the agent session the next turn resumes, if any."""
        slot = self.get_slot(project_id)
        session_id = self.controller.session_id(project_id)
        if session_id is None:
            return None
        return session_usage(
            self.config.agent_logs_path,
            slot.project.root,
            session_id,
            self.config.context_window,
        )

    async def _version_or_active(self, slot: ProjectSlot, version: Optional[int]) -> int:
        if version is not None:
            return version
        active = await slot.checkpoints.active_version()
        if active is None:
            raise PublishError(f"Project '{slot.project.id}' has no checkpointed version")
        return active

    # Lifecycle

    async def shutdown(self) -> None:
        """Cancel every turn and build, then stop event forwarding."""
        for project_id, slot in self._projects.items():
            if slot.turn is not None and not slot.turn.turn.is_finished:
                await self.controller.cancel_turn(slot.turn)
            if slot.build is not None and not slot.build.done():
                await self.runner.cancel_build(slot.build)
            logger.debug(f"Project {project_id} stopped")

        if self._forwarders:
            await asyncio.gather(*list(self._forwarders), return_exceptions=True)

    async def flush_events(self) -> None:
        """Wait until every event of finished turns and builds reached the sink."""
        pending = [task for task, handle in self._forwarders.items() if handle.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _on_checkpoint(self, project_id: str, version: Version) -> None:
        try:
            self.sink.checkpoint_created(project_id, version)
        except Exception as e:
            logger.error(f"Event sink failed on checkpoint for {project_id}: {e}", exc_info=True)

    def _forward(
        self,
        handle: Union[TurnHandle, BuildHandle],
        subscription: Subscription,
        deliver: Callable[[object], None],
    ) -> None:
        task = asyncio.create_task(self._pump(subscription, deliver))
        self._forwarders[task] = handle
        task.add_done_callback(lambda done: self._forwarders.pop(done, None))

    async def _pump(self, subscription: Subscription, deliver: Callable[[object], None]) -> None:
        async for event in subscription:
            try:
                deliver(event)
            except Exception as e:
                logger.error(f"Event sink failed on {type(event).__name__}: {e}", exc_info=True)
