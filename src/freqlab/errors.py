"""Exception taxonomy for the session and build orchestrator."""

from typing import Optional


class FreqlabError(Exception):
    """Base class for all orchestrator errors."""

    pass


class ConfigError(FreqlabError):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


class ProjectNotFoundError(FreqlabError):
    """Raised when a project id is not registered with the session manager."""

    pass


class WorkspaceUnavailableError(FreqlabError):
    """Raised when the workspace root cannot be accessed."""

    pass


class ProcessSpawnError(FreqlabError):
    """Raised when a subprocess cannot be started."""

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to spawn '{command}': {reason}")


# Agent errors


class AgentSpawnError(FreqlabError):
    """Raised when the agent CLI cannot be started."""

    pass


class AgentCrashError(FreqlabError):
    """Raised when the agent exits without a terminal done event."""

    def __init__(self, exit_code: Optional[int], stderr_tail: str = ""):
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        message = f"Agent exited with code {exit_code} before finishing"
        if stderr_tail:
            message += f": {stderr_tail}"
        super().__init__(message)


class AgentProtocolError(FreqlabError):
    """Raised for a malformed line in the agent output stream."""

    pass


class TurnAlreadyRunningError(FreqlabError):
    """Raised when a project already has an in-flight turn."""

    pass


# Checkpoint errors


class CheckpointLockTimeout(FreqlabError):
    """Raised when the per-project checkpoint lock cannot be acquired."""

    pass


class CheckpointWriteError(FreqlabError):
    """Raised when a checkpoint commit or revert fails."""

    pass


class VersionNotFoundError(FreqlabError):
    """Raised when reverting to a version that does not exist."""

    pass


# Build errors


class BuildAlreadyRunningError(FreqlabError):
    """Raised when a project already has a running build."""

    pass


class BuildFailure(FreqlabError):
    """Raised when a build step fails."""

    def __init__(self, message: str, exit_code: Optional[int] = None):
        self.exit_code = exit_code
        super().__init__(message)


class BuildArtifactMissing(BuildFailure):
    """Raised when a build exits cleanly but produced no expected artifact."""

    pass


class ArtifactCopyError(FreqlabError):
    """Raised when publishing build artifacts fails."""

    pass


class NoFailedBuildError(FreqlabError):
    """Raised when a fix is requested but the last build did not fail."""

    pass


# Distribution errors


class PublishError(FreqlabError):
    """Raised when a version has nothing to install or package."""

    pass


class UsageLogNotFoundError(FreqlabError):
    """Raised when the agent's session logs for a project cannot be found."""

    pass
