"""Async git command runner for checkpoint repositories."""

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..errors import CheckpointWriteError

logger = logging.getLogger(__name__)

# Applied to every invocation; keeps output stable and commits non-interactive
GIT_OPTIONS = [
    "-c", "core.quotepath=false",
    "-c", "commit.gpgsign=false",
    "-c", "core.autocrlf=false",
]


@dataclass
class GitResult:
    """Outcome of one git invocation."""

    returncode: int
    stdout: bytes
    stderr: bytes

    @property
    def text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def error_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace").strip()


class GitRunner:
    """Runs git in one repository with a fixed committer identity."""

    def __init__(
        self,
        repo_path: Path,
        author_name: str = "freqlab",
        author_email: str = "freqlab@localhost",
    ):
        self.repo_path = Path(repo_path)
        self.author_name = author_name
        self.author_email = author_email

    def _env(self) -> dict:
        env = dict(os.environ)
        env.update(
            {
                "GIT_AUTHOR_NAME": self.author_name,
                "GIT_AUTHOR_EMAIL": self.author_email,
                "GIT_COMMITTER_NAME": self.author_name,
                "GIT_COMMITTER_EMAIL": self.author_email,
                "GIT_TERMINAL_PROMPT": "0",
            }
        )
        return env

    async def run(self, *args: str, check: bool = True) -> GitResult:
        """
        Run a git subcommand.

        Args:
            *args: Subcommand and arguments
            check: Raise on a non-zero exit code

        Returns:
            GitResult

        Raises:
            CheckpointWriteError: If git cannot be started, or fails with check
        """
        try:
            process = await asyncio.create_subprocess_exec(
                "git",
                *GIT_OPTIONS,
                *args,
                cwd=str(self.repo_path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env(),
            )
        except OSError as e:
            raise CheckpointWriteError(f"Cannot run git: {e}") from e

        stdout, stderr = await process.communicate()
        result = GitResult(process.returncode, stdout, stderr)

        if check and result.returncode != 0:
            raise CheckpointWriteError(
                f"git {args[0]} failed with code {result.returncode}: {result.error_text}"
            )
        return result

    async def has_commits(self) -> bool:
        """True if HEAD points at a commit."""
        result = await self.run("rev-parse", "--verify", "--quiet", "HEAD", check=False)
        return result.returncode == 0

    async def head(self) -> str:
        """Hash of the current HEAD commit."""
        result = await self.run("rev-parse", "HEAD")
        return result.text.strip()

    async def changed_paths(self) -> List[str]:
        """
        Paths that differ from HEAD, including untracked files.

        Returns:
            Sorted repository-relative paths
        """
        result = await self.run("status", "--porcelain=v1", "-z", "--untracked-files=all")
        return parse_porcelain(result.stdout)

    async def commit_all(self, message: str, allow_empty: bool = False) -> str:
        """
        Stage everything and commit.

        Args:
            message: Full commit message
            allow_empty: Commit even if the tree did not change

        Returns:
            New commit hash
        """
        await self.run("add", "-A")
        args = ["commit", "--quiet", "--no-verify", "-m", message]
        if allow_empty:
            args.append("--allow-empty")
        await self.run(*args)
        return await self.head()

    async def archive(self, revision: str = "HEAD") -> bytes:
        """Tar archive of a revision's tree."""
        result = await self.run("archive", "--format=tar", revision)
        return result.stdout


def parse_porcelain(output: bytes) -> List[str]:
    """
    Parse `git status --porcelain=v1 -z` output.

    Args:
        output: Raw NUL-separated status output

    Returns:
        Sorted unique paths
    """
    entries = output.decode("utf-8", errors="replace").split("\0")
    paths = set()
    index = 0

    while index < len(entries):
        entry = entries[index]
        index += 1
        if len(entry) < 4:
            continue
        status, path = entry[:2], entry[3:]
        paths.add(path)
        # Renames and copies are followed by their source path
        if status[0] in ("R", "C"):
            source: Optional[str] = entries[index] if index < len(entries) else None
            if source:
                paths.add(source)
            index += 1

    return sorted(paths)
