"""Subprocess supervision."""

from .supervisor import ManagedProcess, build_env, extended_path

__all__ = ["ManagedProcess", "build_env", "extended_path"]
