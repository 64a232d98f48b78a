"""Supervised subprocesses with process-tree termination."""

import asyncio
import functools
import logging
import os
import signal
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import psutil

from ..errors import ProcessSpawnError

logger = logging.getLogger(__name__)

IS_POSIX = os.name == "posix"


def _common_tool_dirs() -> List[Path]:
    home = Path.home()
    if IS_POSIX:
        return [
            home / ".claude" / "bin",
            home / ".cargo" / "bin",
            home / ".local" / "bin",
            Path("/opt/homebrew/bin"),
            Path("/usr/local/bin"),
            Path("/opt/local/bin"),
            Path("/Applications/CMake.app/Contents/bin"),
            Path("/usr/bin"),
            Path("/bin"),
        ]
    return [
        home / ".cargo" / "bin",
        home / ".local" / "bin",
        Path(r"C:\Program Files\CMake\bin"),
        Path(r"C:\Program Files\Git\cmd"),
    ]


def extended_path(
    extra_dirs: Optional[Sequence[str]] = None,
    base_path: Optional[str] = None,
) -> str:
    """
    Build a PATH that also finds tools installed in common user locations.

    GUI-launched processes often inherit a minimal PATH, so cargo, cmake and
    the agent CLI would not be found without this.

    Args:
        extra_dirs: Configured directories, searched first
        base_path: PATH to extend (default: the current environment's)

    Returns:
        PATH string without duplicate entries
    """
    if base_path is None:
        base_path = os.environ.get("PATH", "")

    entries = [str(d) for d in (extra_dirs or [])]
    entries.extend(str(d) for d in _common_tool_dirs())
    entries.extend(p for p in base_path.split(os.pathsep) if p)

    seen = set()
    unique = []
    for entry in entries:
        if entry not in seen:
            seen.add(entry)
            unique.append(entry)
    return os.pathsep.join(unique)


def build_env(
    extra_path_dirs: Optional[Sequence[str]] = None,
    overrides: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    """
    Environment for a supervised child process.

    Args:
        extra_path_dirs: Additional PATH directories
        overrides: Variables set on top of the inherited environment

    Returns:
        Environment mapping
    """
    env = dict(os.environ)
    env["PATH"] = extended_path(extra_path_dirs, env.get("PATH", ""))
    env.update(overrides or {})
    return env


class ManagedProcess:
    """
    Owned handle around one spawned subprocess.

    The child runs in its own process group so that termination reaches every
    descendant (cargo spawns rustc, cmake spawns compilers, the agent spawns
    tool shells).

    CRITICAL: terminate() is idempotent and safe to call concurrently; every
    caller awaits the same termination.
    """

    def __init__(self, process: asyncio.subprocess.Process, argv: List[str], name: str):
        self.process = process
        self.argv = argv
        self.name = name
        self.terminate_requested = False
        self._termination: Optional[asyncio.Future] = None

    @classmethod
    async def spawn(
        cls,
        argv: Sequence[str],
        cwd: Path,
        env: Optional[Dict[str, str]] = None,
        name: Optional[str] = None,
    ) -> "ManagedProcess":
        """
        Start a subprocess with piped stdout/stderr and no stdin.

        Args:
            argv: Program and arguments
            cwd: Working directory
            env: Environment (default: inherited)
            name: Label for log messages

        Returns:
            ManagedProcess

        Raises:
            ProcessSpawnError: If the program cannot be started
        """
        argv = list(argv)
        if not argv:
            raise ProcessSpawnError("", "empty command")

        kwargs = {}
        if IS_POSIX:
            kwargs["start_new_session"] = True
        else:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs,
            )
        except OSError as e:
            raise ProcessSpawnError(argv[0], str(e)) from e

        label = name or Path(argv[0]).name
        logger.info(f"Spawned {label} (pid {process.pid}) in {cwd}")
        return cls(process, argv, label)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    @property
    def stdout(self) -> asyncio.StreamReader:
        return self.process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader:
        return self.process.stderr

    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""
        return await self.process.wait()

    async def terminate(self, grace_period: float = 5.0) -> int:
        """
        Stop the process tree: polite signal, grace period, then force-kill.

        Args:
            grace_period: Seconds to wait after the polite signal

        Returns:
            Exit code of the direct child
        """
        self.terminate_requested = True
        if self._termination is None:
            if self.process.returncode is not None:
                return self.process.returncode
            self._termination = asyncio.ensure_future(self._terminate(grace_period))
        return await asyncio.shield(self._termination)

    async def _terminate(self, grace_period: float) -> int:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + grace_period
        descendants = self._descendants()

        logger.info(f"Stopping {self.name} (pid {self.pid}, {len(descendants)} descendant(s))")
        self._request_stop()

        try:
            await asyncio.wait_for(self.process.wait(), timeout=grace_period)
        except asyncio.TimeoutError:
            logger.warning(f"{self.name} did not exit within {grace_period}s, killing")

        survivors = [p for p in descendants if _is_running(p)]
        remaining = deadline - loop.time()
        if survivors and remaining > 0:
            _, survivors = await loop.run_in_executor(
                None, functools.partial(psutil.wait_procs, survivors, timeout=remaining)
            )

        if self.process.returncode is None or survivors:
            self._force_kill(survivors)

        return await self.process.wait()

    def _descendants(self) -> List[psutil.Process]:
        try:
            return psutil.Process(self.pid).children(recursive=True)
        except psutil.Error:
            return []

    def _request_stop(self) -> None:
        try:
            if IS_POSIX:
                os.killpg(self.pid, signal.SIGTERM)
            else:
                self.process.terminate()
        except ProcessLookupError:
            pass
        except PermissionError as e:
            logger.warning(f"Cannot signal process group of {self.name}: {e}")
            self.process.terminate()

    def _force_kill(self, survivors: List[psutil.Process]) -> None:
        try:
            if IS_POSIX:
                os.killpg(self.pid, signal.SIGKILL)
            else:
                self.process.kill()
        except (ProcessLookupError, PermissionError):
            pass

        # Descendants that moved to their own session escape the group signal
        for proc in survivors:
            try:
                proc.kill()
            except psutil.Error:
                pass


def _is_running(proc: psutil.Process) -> bool:
    try:
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.Error:
        return False
