"""Command-line interface."""

from .app import cli, main
from .renderer import EventRenderer

__all__ = ["cli", "main", "EventRenderer"]
