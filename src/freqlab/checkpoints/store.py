"""Git-backed checkpoint store with forward-only revert."""

import asyncio
import io
import logging
import re
import tarfile
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional

from ..errors import CheckpointLockTimeout, CheckpointWriteError, VersionNotFoundError
from ..history.chat_store import CHAT_HISTORY_PATH, ChatHistoryStore
from ..models.checkpoint_models import Version
from .git import GitRunner

logger = logging.getLogger(__name__)

VERSION_TRAILER = "Freqlab-Version"
MESSAGE_TRAILER = "Freqlab-Message-Id"
ACTIVE_TRAILER = "Freqlab-Active-Version"

TRAILER_PATTERN = re.compile(r"^(Freqlab-[A-Za-z-]+):\s*(.+?)\s*$")

DEFAULT_GITIGNORE = """\
# Build output
target/
build/
*.o
*.obj

# Editor and OS files
.DS_Store
.idea/
.vscode/

# Freqlab state
.freqlab/chat_history.json
"""

# Always excluded, even when the project brings its own .gitignore
LOCAL_EXCLUDES = [CHAT_HISTORY_PATH, ".freqlab/*.tmp", ".freqlab/*.corrupt"]

LOG_FORMAT = "%x1e%H%x1f%ct%x1f%B%x1f"


@dataclass
class _Commit:
    commit_hash: str
    created_at: datetime
    body: str
    files: List[str]
    trailers: Dict[str, str]

    @property
    def version(self) -> Optional[int]:
        return _int_or_none(self.trailers.get(VERSION_TRAILER))

    @property
    def active_target(self) -> Optional[int]:
        return _int_or_none(self.trailers.get(ACTIVE_TRAILER))

    @property
    def summary(self) -> str:
        lines = [line for line in self.body.splitlines() if not TRAILER_PATTERN.match(line)]
        return "\n".join(lines).strip()


@dataclass
class _History:
    """Versions reconstructed from the commit log."""

    versions: Dict[int, Version] = field(default_factory=dict)
    lineages: Dict[int, List[int]] = field(default_factory=dict)
    active: Optional[int] = None

    @property
    def next_version(self) -> int:
        return max(self.versions) + 1 if self.versions else 1


class CheckpointStore:
    """
    Versioned snapshots of one project's working tree.

    Every checkpoint and every revert is an ordinary commit. Checkpoint
    commits carry Freqlab-Version and Freqlab-Message-Id trailers; revert
    commits carry Freqlab-Active-Version. The active version is the target of
    the newest commit carrying either, so the whole state can be rebuilt from
    `git log`.

    CRITICAL: Writes are serialized by a per-project lock with a bounded
    wait. Reads (list_versions) take no lock.
    """

    def __init__(
        self,
        project_root: Path,
        chat_store: Optional[ChatHistoryStore] = None,
        lock_timeout: float = 10.0,
        author_name: str = "freqlab",
        author_email: str = "freqlab@localhost",
    ):
        """
        Initialize checkpoint store.

        Args:
            project_root: Project working tree
            chat_store: Chat history updated on revert
            lock_timeout: Seconds to wait for the write lock
            author_name: Committer name for checkpoint commits
            author_email: Committer email for checkpoint commits
        """
        self.project_root = Path(project_root)
        self.chat_store = chat_store
        self.lock_timeout = lock_timeout
        self.git = GitRunner(self.project_root, author_name, author_email)
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def _locked(self) -> AsyncIterator[None]:
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self.lock_timeout)
        except asyncio.TimeoutError as e:
            raise CheckpointLockTimeout(
                f"Checkpoint lock for {self.project_root} not acquired "
                f"within {self.lock_timeout}s"
            ) from e
        try:
            yield
        finally:
            self._lock.release()

    async def ensure_initialized(self) -> None:
        """
        Make sure the project is a repository with a baseline version 0.

        Safe to call repeatedly. An existing repository without checkpoints
        gets a baseline commit on top of its history.
        """
        async with self._locked():
            if not (self.project_root / ".git").exists():
                self.project_root.mkdir(parents=True, exist_ok=True)
                await self.git.run("init", "--quiet")
                logger.info(f"Initialized checkpoint repository in {self.project_root}")

            gitignore = self.project_root / ".gitignore"
            if not gitignore.exists():
                gitignore.write_text(DEFAULT_GITIGNORE, encoding="utf-8")
            self._write_local_excludes()

            history = await self._read_history()
            if 0 in history.versions:
                return

            message = _format_message("Initial checkpoint", {VERSION_TRAILER: "0"})
            commit_hash = await self.git.commit_all(message, allow_empty=True)
            logger.info(f"Created baseline version 0 ({commit_hash[:8]})")

    def _write_local_excludes(self) -> None:
        exclude = self.project_root / ".git" / "info" / "exclude"
        exclude.parent.mkdir(parents=True, exist_ok=True)
        existing = exclude.read_text(encoding="utf-8") if exclude.exists() else ""
        missing = [entry for entry in LOCAL_EXCLUDES if entry not in existing.splitlines()]
        if missing:
            with open(exclude, "a", encoding="utf-8") as f:
                if existing and not existing.endswith("\n"):
                    f.write("\n")
                f.write("\n".join(missing) + "\n")

    async def commit_turn(
        self,
        message_id: str,
        summary: str,
        files_modified: Optional[List[str]] = None,
    ) -> Optional[Version]:
        """
        Checkpoint the working tree after a turn.

        Args:
            message_id: Assistant chat message the checkpoint belongs to
            summary: Turn summary, used as the commit body
            files_modified: Files the agent reported editing

        Returns:
            The new Version, or None if nothing changed

        Raises:
            CheckpointLockTimeout: If the lock cannot be acquired in time
            CheckpointWriteError: If git fails
        """
        async with self._locked():
            changed = await self.git.changed_paths()
            if not changed:
                logger.info(f"No changes after turn {message_id}, skipping checkpoint")
                return None

            reported = set(files_modified or [])
            unreported = [path for path in changed if path not in reported]
            if reported and unreported:
                logger.debug(f"Checkpoint includes unreported changes: {unreported}")

            history = await self._read_history()
            number = history.next_version
            message = _format_message(
                summary or f"Version {number}",
                {VERSION_TRAILER: str(number), MESSAGE_TRAILER: message_id},
            )
            commit_hash = await self.git.commit_all(message)

            lineage = history.lineages.get(history.active, []) + [number]
            if self.chat_store is not None:
                self.chat_store.mark_reverted(number, lineage)

            logger.info(f"Checkpoint v{number} ({commit_hash[:8]}): {len(changed)} file(s)")
            return Version(
                version=number,
                commit_hash=commit_hash,
                message_id=message_id,
                summary=summary,
                files_modified=changed,
                active=True,
            )

    async def revert_to(self, version: int) -> Version:
        """
        Restore the working tree to a version without deleting later ones.

        GOTCHA: Uncommitted changes in the working tree are discarded.

        Args:
            version: Target version (older or newer than the active one)

        Returns:
            The target Version, now active

        Raises:
            VersionNotFoundError: If the version does not exist
            CheckpointLockTimeout: If the lock cannot be acquired in time
            CheckpointWriteError: If git fails
        """
        async with self._locked():
            history = await self._read_history()
            target = history.versions.get(version)
            if target is None:
                raise VersionNotFoundError(
                    f"Version {version} does not exist in {self.project_root}"
                )

            uncommitted = await self.git.changed_paths()
            if uncommitted:
                logger.warning(
                    f"Discarding {len(uncommitted)} uncommitted change(s) "
                    f"while reverting to v{version}"
                )

            await self.git.run("read-tree", "--reset", "-u", target.commit_hash)
            await self.git.run("clean", "-f", "-d", "--quiet")

            message = _format_message(
                f"Revert to version {version}", {ACTIVE_TRAILER: str(version)}
            )
            await self.git.commit_all(message, allow_empty=True)

            if self.chat_store is not None:
                self.chat_store.mark_reverted(version, history.lineages.get(version))

            logger.info(f"Reverted {self.project_root.name} to v{version}")
            return target.model_copy(update={"active": True})

    async def list_versions(self) -> List[Version]:
        """
        List every version, oldest first, flagging the active one.

        Returns:
            Versions (empty if the project has no repository yet)
        """
        if not (self.project_root / ".git").exists():
            return []
        history = await self._read_history()
        return [
            version.model_copy(update={"active": number == history.active})
            for number, version in sorted(history.versions.items())
        ]

    async def active_version(self) -> Optional[int]:
        """Version the working tree was last checkpointed or reverted to."""
        if not (self.project_root / ".git").exists():
            return None
        return (await self._read_history()).active

    async def export_snapshot(self, dest: Path) -> Optional[int]:
        """
        Write the active version's tree into a directory.

        Untracked and ignored files are not part of the snapshot.

        Args:
            dest: Target directory (created if missing)

        Returns:
            The exported version

        Raises:
            CheckpointWriteError: If the repository has no checkpoint to export
        """
        history = await self._read_history()
        if history.active is None:
            raise CheckpointWriteError(f"{self.project_root} has no checkpoint to build")

        # The version's own commit, not HEAD, which a concurrent turn may move
        data = await self.git.archive(history.versions[history.active].commit_hash)

        dest = Path(dest)
        dest.mkdir(parents=True, exist_ok=True)
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:") as archive:
            archive.extractall(dest, filter="data")

        logger.debug(f"Exported v{history.active} of {self.project_root.name} to {dest}")
        return history.active

    async def _read_history(self) -> _History:
        history = _History()
        if not await self.git.has_commits():
            return history

        result = await self.git.run("log", f"--format={LOG_FORMAT}", "--name-only")
        commits = _parse_log(result.text)

        for commit in reversed(commits):
            number = commit.version
            if number is not None:
                base = history.lineages.get(history.active, [])
                history.lineages[number] = base + [number]
                history.versions[number] = Version(
                    version=number,
                    commit_hash=commit.commit_hash,
                    message_id=commit.trailers.get(MESSAGE_TRAILER),
                    summary=commit.summary,
                    files_modified=commit.files if number else [],
                    created_at=commit.created_at,
                )
                history.active = number
            elif commit.active_target is not None and commit.active_target in history.versions:
                history.active = commit.active_target

        return history


def _format_message(summary: str, trailers: Dict[str, str]) -> str:
    trailer_block = "\n".join(f"{key}: {value}" for key, value in trailers.items())
    return f"{summary.strip() or 'Checkpoint'}\n\n{trailer_block}"


def _parse_log(output: str) -> List[_Commit]:
    commits: List[_Commit] = []
    for record in output.split("\x1e"):
        if not record.strip():
            continue
        fields = record.split("\x1f")
        if len(fields) < 4:
            logger.warning(f"Skipping unparseable log record: {record[:80]!r}")
            continue

        commit_hash, timestamp, body, files = fields[0], fields[1], fields[2], fields[3]
        trailers = {}
        for line in body.splitlines():
            match = TRAILER_PATTERN.match(line)
            if match:
                trailers[match.group(1)] = match.group(2)

        commits.append(
            _Commit(
                commit_hash=commit_hash.strip(),
                created_at=datetime.fromtimestamp(int(timestamp)),
                body=body,
                files=[line for line in files.splitlines() if line.strip()],
                trailers=trailers,
            )
        )
    return commits


def _int_or_none(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None
