"""Rich rendering of turn and build events."""

import logging
from typing import Dict, List, Optional

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from ..config.settings import OrchestratorConfig
from ..models.build_models import BuildEvent, BuildLogLine, BuildResult, BuildStatus, LogSource
from ..models.checkpoint_models import Version
from ..models.event_models import (
    AgentEvent,
    Cancelled,
    CheckpointError,
    Done,
    Error,
    TextDelta,
    ToolResult,
    ToolUse,
)
from ..models.publish_models import PublishResult, UsageSummary

logger = logging.getLogger(__name__)

# Tool input keys worth showing next to the tool name
TOOL_SUMMARY_KEYS = ("file_path", "notebook_path", "pattern", "command", "path")


class EventRenderer:
    """
    Console renderer implementing the EventSink interface.

    Assistant text is rendered as markdown, tool activity as dim one-liners,
    build output verbatim.
    """

    def __init__(self, console: Optional[Console] = None, show_build_log: bool = True):
        """
        Initialize renderer.

        Args:
            console: Rich console (creates new if not provided)
            show_build_log: Print build log lines as they arrive
        """
        self.console = console or Console()
        self.show_build_log = show_build_log

    def turn_event(self, project_id: str, event: AgentEvent) -> None:
        if isinstance(event, TextDelta):
            self.console.print(Markdown(event.text))
        elif isinstance(event, ToolUse):
            self.console.print(f"[dim]→ {event.name}{_tool_summary(event.args)}[/dim]")
        elif isinstance(event, ToolResult):
            if event.is_error:
                self.console.print(f"[red]✗ {event.name} failed[/red]")
        elif isinstance(event, Done):
            self._render_done(event)
        elif isinstance(event, Error):
            self.console.print(Panel(event.message, title="Agent error", border_style="red"))
        elif isinstance(event, Cancelled):
            self.console.print(f"[yellow]Turn cancelled: {event.reason}[/yellow]")
        elif isinstance(event, CheckpointError):
            self.console.print(f"[yellow]Warning: checkpoint not saved: {event.message}[/yellow]")
        else:
            raise TypeError(f"Unknown agent event {type(event).__name__}")

    def checkpoint_created(self, project_id: str, version: Version) -> None:
        self.console.print(
            f"[green]Saved version {version.version}[/green] "
            f"[dim]({version.commit_hash[:8]}, {len(version.files_modified)} file(s))[/dim]"
        )

    def build_event(self, project_id: str, event: BuildEvent) -> None:
        if isinstance(event, BuildLogLine):
            if self.show_build_log:
                self._render_log_line(event)
        elif isinstance(event, BuildResult):
            self.render_build_result(event)
        else:
            raise TypeError(f"Unknown build event {type(event).__name__}")

    def _render_done(self, event: Done) -> None:
        lines = [event.summary or "Done."]
        if event.files_modified:
            lines.append("")
            lines.append("Files modified:")
            lines.extend(f"  {path}" for path in event.files_modified)
        if event.usage is not None:
            usage = f"{event.usage.total_tokens} tokens"
            if event.usage.total_cost_usd is not None:
                usage += f", ${event.usage.total_cost_usd:.4f}"
            lines.append("")
            lines.append(usage)
        self.console.print(Panel("\n".join(lines), title="Turn complete", border_style="green"))

    def _render_log_line(self, line: BuildLogLine) -> None:
        if line.source == LogSource.SYSTEM:
            self.console.print(line.text, style="bold cyan", markup=False, highlight=False)
        else:
            self.console.print(line.text, markup=False, highlight=False)

    def render_build_result(self, result: BuildResult) -> None:
        """
        Render the outcome of a build.

        Args:
            result: Terminal build result
        """
        if result.status == BuildStatus.SUCCEEDED:
            body = result.message
            if result.artifact_paths:
                body += "\n\n" + "\n".join(result.artifact_paths)
            self.console.print(Panel(body, title="Build succeeded", border_style="green"))
        elif result.status == BuildStatus.CANCELLED:
            self.console.print(f"[yellow]{result.message}[/yellow]")
        else:
            body = result.message
            if result.error_excerpt:
                body += "\n\n" + result.error_excerpt
            self.console.print(Panel(body, title="Build failed", border_style="red"))

    def render_versions(self, versions: List[Version]) -> None:
        """
        Render a table of versions.

        Args:
            versions: Versions to show, oldest first
        """
        table = Table(title="Versions")
        table.add_column("", width=1)
        table.add_column("Version", justify="right")
        table.add_column("Commit")
        table.add_column("Created")
        table.add_column("Files", justify="right")
        table.add_column("Summary")

        for version in versions:
            summary = version.summary.splitlines()[0] if version.summary else ""
            table.add_row(
                "*" if version.active else "",
                str(version.version),
                version.commit_hash[:8],
                version.created_at.strftime("%Y-%m-%d %H:%M"),
                str(len(version.files_modified)),
                summary[:60],
            )
        self.console.print(table)

    def render_formats(self, available: Dict[str, bool]) -> None:
        """Render which formats a version was built for."""
        table = Table(title="Formats")
        table.add_column("Format")
        table.add_column("Built")
        for format_id, built in available.items():
            table.add_row(format_id, "[green]yes[/green]" if built else "[dim]no[/dim]")
        self.console.print(table)

    def render_publish_result(self, result: PublishResult) -> None:
        """
        Render the outcome of installing into plugin folders.

        Args:
            result: Publish result
        """
        for item in result.copied:
            self.console.print(f"[green]Installed {item.format}[/green] ({item.target}) {item.path}")
        for error in result.errors:
            self.console.print(f"[red]{error}[/red]")
        if not result.copied and not result.errors:
            self.console.print("[yellow]No plugin folder accepts the built formats[/yellow]")

    def render_usage(self, usage: UsageSummary) -> None:
        """Render token usage totals."""
        table = Table(title="Token usage", show_header=False)
        table.add_column("", style="cyan")
        table.add_column("", justify="right")
        table.add_row("Sessions", str(usage.session_count))
        table.add_row("Messages", str(usage.message_count))
        table.add_row("Input", f"{usage.input_tokens:,}")
        table.add_row("Output", f"{usage.output_tokens:,}")
        table.add_row("Cache write", f"{usage.cache_creation_tokens:,}")
        table.add_row("Cache read", f"{usage.cache_read_tokens:,}")
        table.add_row("Context", f"{usage.context_tokens:,} ({usage.context_percent:.1f}%)")
        self.console.print(table)

    def render_config(self, config: OrchestratorConfig) -> None:
        """Render the merged settings, one row per field."""
        table = Table(title="Configuration")
        table.add_column("Setting", style="cyan", no_wrap=True)
        table.add_column("Value")

        for key, value in config.model_dump(mode="json").items():
            if isinstance(value, dict):
                value = ", ".join(value) or "-"
            elif isinstance(value, list):
                value = " ".join(str(item) for item in value)
            table.add_row(key, "-" if value is None else str(value))
        self.console.print(table)


def _tool_summary(args: dict) -> str:
    for key in TOOL_SUMMARY_KEYS:
        value = args.get(key)
        if isinstance(value, str) and value:
            return f" {value[:80]}"
    return ""
