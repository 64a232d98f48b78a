"""Git-backed project checkpoints."""

from .git import GitRunner, parse_porcelain
from .store import CheckpointStore

__all__ = ["CheckpointStore", "GitRunner", "parse_porcelain"]
