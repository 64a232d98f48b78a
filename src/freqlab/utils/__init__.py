"""Shared utilities."""

from .retry import RetryManager

__all__ = ["RetryManager"]
