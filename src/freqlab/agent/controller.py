"""Agent session controller: one supervised agent subprocess per turn."""

import asyncio
import logging
from collections import deque
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional

from ..checkpoints.store import CheckpointStore
from ..config.settings import OrchestratorConfig
from ..errors import (
    AgentCrashError,
    AgentSpawnError,
    CheckpointLockTimeout,
    CheckpointWriteError,
    ProcessSpawnError,
    TurnAlreadyRunningError,
)
from ..history.chat_store import ChatHistoryStore
from ..models.chat_models import Attachment, ChatMessage, ChatRole
from ..models.checkpoint_models import Version
from ..models.event_models import (
    AgentEvent,
    Cancelled,
    CheckpointError,
    Done,
    Error,
    TextDelta,
    Turn,
    TurnStatus,
    is_droppable_event,
    is_terminal_event,
)
from ..models.project_models import Project
from ..models.stream_models import StreamLine
from ..process.supervisor import ManagedProcess, build_env
from ..streams.channel import EventChannel, Subscription
from ..streams.multiplexer import LogStreamMultiplexer
from ..utils.retry import RetryManager
from .prompts import compose_prompt
from .protocol import StreamJsonParser

logger = logging.getLogger(__name__)

CheckpointCallback = Callable[[str, Version], None]

STDERR_TAIL_LINES = 20


class TurnHandle:
    """
    Caller's handle on a running turn.

    Events are pushed to subscribers in production order; exactly one
    terminal event (Done, Error or Cancelled) ends the stream.
    """

    def __init__(self, turn: Turn, capacity: int = 1000):
        self.turn = turn
        self._channel: EventChannel[AgentEvent] = EventChannel(
            capacity,
            name=f"turn:{turn.id[:8]}",
            is_terminal=lambda event: not is_droppable_event(event),
        )
        self._task: Optional[asyncio.Task] = None
        self._process: Optional[ManagedProcess] = None
        self._cancel_requested = False
        self._timed_out = False
        self._last_activity = 0.0

    @property
    def id(self) -> str:
        return self.turn.id

    @property
    def project_id(self) -> str:
        return self.turn.project_id

    @property
    def status(self) -> TurnStatus:
        return self.turn.status

    def done(self) -> bool:
        """True once the turn task has finished."""
        return self._task is not None and self._task.done()

    def subscribe(self, capacity: Optional[int] = None) -> Subscription[AgentEvent]:
        """
        Subscribe to the turn's events.

        A subscriber that joins after the turn ended still receives the
        terminal event and any checkpoint warning.
        """
        return self._channel.subscribe(capacity)

    async def wait(self) -> Turn:
        """Wait for the turn to finish and return it."""
        if self._task is not None:
            await asyncio.shield(self._task)
        return self.turn

    def _publish(self, event: AgentEvent) -> None:
        self._channel.publish(event)


class AgentSessionController:
    """
    Drives the agent CLI, one subprocess per turn.

    PATTERN: The turn task owns the subprocess; callers observe it through
    the TurnHandle and stop it with cancel_turn().
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        on_checkpoint: Optional[CheckpointCallback] = None,
    ):
        """
        Initialize controller.

        Args:
            config: Orchestrator configuration
            on_checkpoint: Called with (project_id, version) when a turn
                creates a checkpoint, before its Done event is published
        """
        self.config = config
        self.on_checkpoint = on_checkpoint
        self._sessions: Dict[str, str] = {}
        self._running: Dict[str, TurnHandle] = {}
        self._retry = RetryManager(
            max_retries=config.checkpoint_retries,
            base_delay=0.5,
            max_delay=5.0,
        )

    def build_command(
        self,
        prompt: str,
        allowed_tools: Optional[List[str]] = None,
        max_turns: Optional[int] = None,
        session_id: Optional[str] = None,
    ) -> List[str]:
        """
        Assemble the agent command line.

        Args:
            prompt: Prompt including attachment context
            allowed_tools: Tools the agent may use
            max_turns: Agent-internal turn limit
            session_id: Agent conversation to resume

        Returns:
            argv list
        """
        tools = allowed_tools if allowed_tools is not None else self.config.allowed_tools
        argv = list(self.config.agent_command) + [
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--allowedTools",
            ",".join(tools),
            "--max-turns",
            str(max_turns or self.config.max_turns),
        ]
        if self.config.system_prompt_append:
            argv += ["--append-system-prompt", self.config.system_prompt_append]
        if self.config.agent_model:
            argv += ["--model", self.config.agent_model]
        if session_id:
            argv += ["--resume", session_id]
        return argv

    def is_running(self, project_id: str) -> bool:
        handle = self._running.get(project_id)
        return handle is not None and not handle.turn.is_finished

    def session_id(self, project_id: str) -> Optional[str]:
        """Agent conversation the next turn of this project resumes."""
        return self._sessions.get(project_id)

    def clear_session(self, project_id: str) -> None:
        """Start the next turn of this project in a fresh agent conversation."""
        if self._sessions.pop(project_id, None):
            logger.info(f"Cleared agent session for {project_id}")

    def start_turn(
        self,
        project: Project,
        prompt: str,
        attachments: Optional[List[Attachment]] = None,
        allowed_tools: Optional[List[str]] = None,
        max_turns: Optional[int] = None,
        checkpoints: Optional[CheckpointStore] = None,
        chat: Optional[ChatHistoryStore] = None,
    ) -> TurnHandle:
        """
        Start a turn in the background.

        CRITICAL: Must be called from a running event loop. The turn task
        first runs at the caller's next await, so subscribing right after this
        call never misses an event.

        Args:
            project: Project to work in
            prompt: User prompt
            attachments: Files attached to the prompt
            allowed_tools: Override of the configured tool allowlist
            max_turns: Override of the configured agent turn limit
            checkpoints: Store that checkpoints the turn on success
            chat: Chat history receiving the user and assistant messages

        Returns:
            TurnHandle

        Raises:
            TurnAlreadyRunningError: If the project already has a running turn
        """
        if self.is_running(project.id):
            raise TurnAlreadyRunningError(f"A turn is already running for {project.id}")

        attachments = attachments or []
        turn = Turn(project_id=project.id, prompt=prompt, attachments=attachments)
        handle = TurnHandle(turn, capacity=self.config.channel_capacity)

        if chat is not None:
            self._save_message(
                chat,
                ChatMessage(
                    id=turn.user_message_id,
                    role=ChatRole.USER,
                    content=prompt,
                    attachments=attachments or None,
                ),
            )

        session_id = self._sessions.get(project.id)
        argv = self.build_command(
            compose_prompt(prompt, attachments), allowed_tools, max_turns, session_id
        )
        logger.info(
            f"Starting turn {turn.id[:8]} for {project.id}"
            + (f" (resuming {session_id})" if session_id else "")
        )

        handle._task = asyncio.create_task(
            self._run_turn(handle, project, argv, checkpoints, chat)
        )
        self._running[project.id] = handle
        return handle

    async def cancel_turn(self, handle: TurnHandle) -> Turn:
        """
        Stop a turn. No checkpoint is created for a cancelled turn.

        Idempotent: cancelling a finished turn is a no-op.

        Args:
            handle: Turn to cancel

        Returns:
            The finished turn
        """
        if not handle.turn.is_finished and not handle._cancel_requested:
            logger.info(f"Cancelling turn {handle.id[:8]}")
            handle._cancel_requested = True
            if handle._process is not None:
                await handle._process.terminate(self.config.grace_period_seconds)
        return await handle.wait()

    async def _run_turn(
        self,
        handle: TurnHandle,
        project: Project,
        argv: List[str],
        checkpoints: Optional[CheckpointStore],
        chat: Optional[ChatHistoryStore],
    ) -> None:
        try:
            await self._drive_turn(handle, project, argv, checkpoints, chat)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Turn {handle.id[:8]} crashed: {e}", exc_info=True)
            if handle._process is not None:
                await handle._process.terminate(self.config.grace_period_seconds)
            self._finish(handle, TurnStatus.FAILED, Error(message=f"Internal error: {e}"), chat)

    async def _drive_turn(
        self,
        handle: TurnHandle,
        project: Project,
        argv: List[str],
        checkpoints: Optional[CheckpointStore],
        chat: Optional[ChatHistoryStore],
    ) -> None:
        turn = handle.turn
        parser = StreamJsonParser(project.root)
        stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        outcome: List[AgentEvent] = []
        loop = asyncio.get_running_loop()

        def on_line(line: StreamLine) -> None:
            handle._last_activity = loop.time()
            if line.source == "stderr":
                stderr_tail.append(line.text)
                logger.debug(f"agent stderr: {line.text}")
                return

            for event in parser.feed(line.text):
                if is_terminal_event(event):
                    # Held back until the process exit code is known
                    if not outcome:
                        outcome.append(event)
                    continue
                if isinstance(event, TextDelta):
                    turn.output = f"{turn.output}\n\n{event.text}" if turn.output else event.text
                handle._publish(event)

            if parser.session_id:
                turn.session_id = parser.session_id

        if handle._cancel_requested:
            self._finish(handle, TurnStatus.CANCELLED, Cancelled(), chat)
            return

        try:
            process = await ManagedProcess.spawn(
                argv,
                cwd=project.root,
                env=build_env(self.config.extra_path_dirs),
                name="agent",
            )
        except ProcessSpawnError as e:
            error = AgentSpawnError(str(e))
            logger.error(f"Turn {turn.id[:8]} failed to start: {error}")
            self._finish(handle, TurnStatus.FAILED, Error(message=str(error)), chat)
            return

        handle._process = process
        handle._last_activity = loop.time()
        mux = LogStreamMultiplexer(
            capacity=self.config.channel_capacity,
            on_line=on_line,
            name=f"agent:{project.id}",
        )
        mux.attach("stdout", process.stdout)
        mux.attach("stderr", process.stderr)

        try:
            if handle._cancel_requested:
                await process.terminate(self.config.grace_period_seconds)
            exit_code = await self._wait_for_exit(handle, process)
            await mux.drain(timeout=self.config.grace_period_seconds)
        except asyncio.CancelledError:
            await process.terminate(self.config.grace_period_seconds)
            self._finish(handle, TurnStatus.CANCELLED, Cancelled(reason="Shut down"), chat)
            raise
        finally:
            await mux.close()

        if parser.malformed_lines:
            logger.warning(f"Turn {turn.id[:8]}: skipped {parser.malformed_lines} malformed line(s)")

        result = outcome[0] if outcome else None

        if handle._cancel_requested:
            self._finish(handle, TurnStatus.CANCELLED, Cancelled(), chat)
        elif handle._timed_out:
            message = f"Agent produced no output for {self.config.turn_idle_timeout}s"
            self._finish(handle, TurnStatus.FAILED, Error(message=message), chat)
        elif isinstance(result, Done) and exit_code == 0:
            await self._complete(handle, result, checkpoints, chat)
        elif isinstance(result, Error):
            self._finish(handle, TurnStatus.FAILED, result, chat)
        else:
            crash = AgentCrashError(exit_code, "\n".join(stderr_tail))
            logger.error(f"Turn {turn.id[:8]}: {crash}")
            self._finish(handle, TurnStatus.FAILED, Error(message=str(crash)), chat)

    async def _wait_for_exit(self, handle: TurnHandle, process: ManagedProcess) -> int:
        timeout = self.config.turn_idle_timeout
        if not timeout:
            return await process.wait()

        loop = asyncio.get_running_loop()
        waiter = asyncio.ensure_future(process.wait())
        try:
            while True:
                remaining = handle._last_activity + timeout - loop.time()
                if remaining <= 0:
                    logger.warning(
                        f"Turn {handle.id[:8]} idle for {timeout}s, stopping agent"
                    )
                    handle._timed_out = True
                    await process.terminate(self.config.grace_period_seconds)
                    return await waiter
                done, _ = await asyncio.wait({waiter}, timeout=remaining)
                if done:
                    return waiter.result()
        finally:
            if not waiter.done():
                waiter.cancel()

    async def _complete(
        self,
        handle: TurnHandle,
        done: Done,
        checkpoints: Optional[CheckpointStore],
        chat: Optional[ChatHistoryStore],
    ) -> None:
        turn = handle.turn
        turn.usage = done.usage
        turn.files_modified = list(done.files_modified)
        if not turn.output and done.summary:
            turn.output = done.summary

        if checkpoints is not None:
            try:
                version = await self._retry.execute_with_retry(
                    checkpoints.commit_turn,
                    turn.message_id,
                    done.summary,
                    done.files_modified,
                    retry_on=(CheckpointLockTimeout,),
                )
            except (CheckpointLockTimeout, CheckpointWriteError) as e:
                logger.error(f"Checkpoint for turn {turn.id[:8]} failed: {e}")
                handle._publish(CheckpointError(message=str(e)))
                version = None

            if version is not None:
                turn.version = version.version
                turn.commit_hash = version.commit_hash
                turn.files_modified = list(version.files_modified)
                if self.on_checkpoint is not None:
                    self.on_checkpoint(turn.project_id, version)

        final = done.model_copy(update={"files_modified": list(turn.files_modified)})
        self._finish(handle, TurnStatus.COMPLETED, final, chat)

    def _finish(
        self,
        handle: TurnHandle,
        status: TurnStatus,
        event: AgentEvent,
        chat: Optional[ChatHistoryStore],
    ) -> None:
        turn = handle.turn
        if turn.is_finished:
            return

        turn.status = status
        turn.finished_at = datetime.now()
        if isinstance(event, Error):
            turn.error = event.message

        if status == TurnStatus.COMPLETED and turn.session_id:
            self._sessions[turn.project_id] = turn.session_id
        elif status == TurnStatus.FAILED:
            # A failed resume must not poison the next turn
            self._sessions.pop(turn.project_id, None)

        if chat is not None and (turn.output or status == TurnStatus.FAILED):
            self._save_message(
                chat,
                ChatMessage(
                    id=turn.message_id,
                    role=ChatRole.ASSISTANT,
                    content=turn.output or f"Error: {turn.error}",
                    files_modified=turn.files_modified or None,
                    commit_hash=turn.commit_hash,
                    version=turn.version,
                ),
            )

        logger.info(f"Turn {turn.id[:8]} {status.value}")
        handle._publish(event)
        handle._channel.close()
        if self._running.get(turn.project_id) is handle:
            del self._running[turn.project_id]

    def _save_message(self, chat: ChatHistoryStore, message: ChatMessage) -> None:
        try:
            chat.append_message(message)
        except OSError as e:
            logger.error(f"Failed to save chat message {message.id}: {e}")
