"""Command-line front end for the session and build orchestrator."""

import asyncio
import logging
import mimetypes
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, List, Optional, Sequence

import click
import yaml

from ..config.settings import OrchestratorConfig, load_config, save_config
from ..errors import ConfigError
from ..models.build_models import BuildStatus
from ..models.chat_models import Attachment
from ..models.event_models import TurnStatus
from ..models.project_models import Project
from ..session.manager import SessionManager
from .renderer import EventRenderer

logger = logging.getLogger(__name__)


@dataclass
class CLIContext:
    config: OrchestratorConfig
    verbose: bool = False


def configure_logging(verbose: bool) -> None:
    """Log to stderr; DEBUG when verbose, WARNING otherwise."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def make_attachment(path: str) -> Attachment:
    """
    Describe a local file as a chat attachment.

    Args:
        path: File to attach

    Returns:
        Attachment pointing at the absolute path
    """
    file_path = Path(path).resolve()
    mime_type, _ = mimetypes.guess_type(file_path.name)
    return Attachment(
        original_name=file_path.name,
        path=str(file_path),
        mime_type=mime_type or "application/octet-stream",
        size=file_path.stat().st_size,
    )


project_option = click.option(
    "--project", "-p", "project_dir",
    default=".",
    show_default=True,
    type=click.Path(exists=True, file_okay=False),
    help="Project directory",
)


@click.group()
@click.option(
    "--config", "config_path",
    type=click.Path(),
    help="Config file path",
)
@click.option(
    "--verbose", "-v",
    is_flag=True,
    help="Enable verbose logging",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], verbose: bool) -> None:
    """
    Freqlab - iterate on plugin projects with a coding agent.

    Ask the agent for a change:
        freqlab chat "add a low-pass filter"

    Build the current version:
        freqlab build --format vst3

    Go back to an earlier version:
        freqlab versions
        freqlab revert 2

    Install or ship a build:
        freqlab publish
        freqlab package dist/
    """
    configure_logging(verbose)
    try:
        ctx.obj = CLIContext(config=load_config(config_path), verbose=verbose)
    except ConfigError as e:
        raise click.ClickException(str(e))


@cli.command()
@click.argument("message")
@project_option
@click.option(
    "--attach", "-a",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False),
    help="File to attach (repeatable)",
)
@click.option("--max-turns", type=int, help="Override the agent turn limit")
@click.pass_obj
def chat(
    obj: CLIContext,
    message: str,
    project_dir: str,
    attach: Sequence[str],
    max_turns: Optional[int],
) -> None:
    """Send MESSAGE to the agent and checkpoint the result."""
    attachments = [make_attachment(path) for path in attach]
    _run(obj, _chat(obj, project_dir, message, attachments, max_turns))


@cli.command()
@project_option
@click.option(
    "--format", "-f", "formats",
    multiple=True,
    help="Output format, e.g. vst3, clap, au (repeatable)",
)
@click.option("--quiet", "-q", is_flag=True, help="Hide build output")
@click.pass_obj
def build(obj: CLIContext, project_dir: str, formats: Sequence[str], quiet: bool) -> None:
    """Build the active version and copy artifacts to the output folder."""
    _run(obj, _build(obj, project_dir, list(formats), show_log=not quiet))


@cli.command()
@project_option
@click.option(
    "--format", "-f", "formats",
    multiple=True,
    help="Output format (repeatable)",
)
@click.option(
    "--attempts",
    default=1,
    show_default=True,
    type=click.IntRange(1, 10),
    help="Fix-and-rebuild rounds",
)
@click.pass_obj
def fix(obj: CLIContext, project_dir: str, formats: Sequence[str], attempts: int) -> None:
    """Build, and on failure ask the agent to fix the errors."""
    _run(obj, _fix(obj, project_dir, list(formats), attempts))


@cli.command()
@project_option
@click.pass_obj
def versions(obj: CLIContext, project_dir: str) -> None:
    """List checkpointed versions."""
    _run(obj, _versions(obj, project_dir))


@cli.command()
@click.argument("version", type=int)
@project_option
@click.pass_obj
def revert(obj: CLIContext, version: int, project_dir: str) -> None:
    """Restore the project to VERSION (later versions are kept)."""
    _run(obj, _revert(obj, project_dir, version))


version_option = click.option(
    "--version", "version",
    type=int,
    help="Built version (default: the active one)",
)


@cli.command()
@project_option
@version_option
@click.pass_obj
def formats(obj: CLIContext, project_dir: str, version: Optional[int]) -> None:
    """Show which plugin formats a built version has."""
    _run(obj, _formats(obj, project_dir, version))


@cli.command()
@project_option
@version_option
@click.option(
    "--format", "-f", "formats",
    multiple=True,
    help="Only install this format (repeatable)",
)
@click.option(
    "--target", "-t", "targets",
    multiple=True,
    help="Plugin folder target from the config (repeatable)",
)
@click.pass_obj
def publish(
    obj: CLIContext,
    project_dir: str,
    version: Optional[int],
    formats: Sequence[str],
    targets: Sequence[str],
) -> None:
    """Install a built version into the plugin folders."""
    _run(obj, _publish(obj, project_dir, version, list(formats), list(targets)))


@cli.command()
@click.argument("destination", type=click.Path())
@project_option
@version_option
@click.option(
    "--format", "-f", "formats",
    multiple=True,
    help="Only include this format (repeatable)",
)
@click.pass_obj
def package(
    obj: CLIContext,
    destination: str,
    project_dir: str,
    version: Optional[int],
    formats: Sequence[str],
) -> None:
    """Zip a built version into DESTINATION (a .zip file or a folder)."""
    _run(obj, _package(obj, project_dir, Path(destination), version, list(formats)))


@cli.command()
@project_option
@click.pass_obj
def usage(obj: CLIContext, project_dir: str) -> None:
    """Show agent token usage summed over the project's sessions."""
    _run(obj, _usage(obj, project_dir))


@cli.command("config")
@click.option("--save", is_flag=True, help="Write the merged settings to a config file")
@click.option(
    "--path", "save_path",
    type=click.Path(dir_okay=False),
    help="File to save to (default: ./.freqlab/config.yaml)",
)
@click.pass_obj
def config_cmd(obj: CLIContext, save: bool, save_path: Optional[str]) -> None:
    """Show the merged configuration."""
    renderer = EventRenderer()
    renderer.render_config(obj.config)
    if not save:
        return
    try:
        save_config(obj.config, Path(save_path) if save_path else None)
    except (OSError, yaml.YAMLError) as e:
        raise click.ClickException(f"Failed to save config: {e}")
    renderer.console.print("[green]Configuration saved[/green]")


def _run(obj: CLIContext, coro: Awaitable[bool]) -> None:
    try:
        ok = asyncio.run(coro)
    except KeyboardInterrupt:
        sys.exit(130)
    except Exception as e:
        if obj.verbose:
            logger.exception("CLI error")
        else:
            click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    if not ok:
        sys.exit(1)


async def _open(
    obj: CLIContext,
    project_dir: str,
    renderer: EventRenderer,
    initialize: bool = True,
) -> tuple:
    manager = SessionManager(obj.config, sink=renderer)
    project = Project.from_directory(Path(project_dir))
    await manager.register_project(project, initialize=initialize)
    return manager, project


async def _chat(
    obj: CLIContext,
    project_dir: str,
    message: str,
    attachments: List[Attachment],
    max_turns: Optional[int],
) -> bool:
    manager, project = await _open(obj, project_dir, EventRenderer())
    try:
        handle = manager.start_turn(
            project.id, message, attachments=attachments, max_turns=max_turns
        )
        turn = await handle.wait()
    finally:
        await manager.shutdown()
    return turn.status == TurnStatus.COMPLETED


async def _build(obj: CLIContext, project_dir: str, formats: List[str], show_log: bool) -> bool:
    manager, project = await _open(obj, project_dir, EventRenderer(show_build_log=show_log))
    try:
        result = await manager.start_build(project.id, formats).wait()
    finally:
        await manager.shutdown()
    return result.status == BuildStatus.SUCCEEDED


async def _fix(obj: CLIContext, project_dir: str, formats: List[str], attempts: int) -> bool:
    renderer = EventRenderer()
    manager, project = await _open(obj, project_dir, renderer)
    try:
        for attempt in range(attempts + 1):
            result = await manager.start_build(project.id, formats).wait()
            await manager.flush_events()
            if result.status != BuildStatus.FAILED or attempt == attempts:
                return result.status == BuildStatus.SUCCEEDED

            renderer.console.print(f"[bold]Asking the agent to fix the build ({attempt + 1}/{attempts})[/bold]")
            turn = await manager.fix_build(project.id, result).wait()
            if turn.status != TurnStatus.COMPLETED:
                return False
        return False
    finally:
        await manager.shutdown()


async def _versions(obj: CLIContext, project_dir: str) -> bool:
    renderer = EventRenderer()
    manager, project = await _open(obj, project_dir, renderer, initialize=False)
    renderer.render_versions(await manager.list_versions(project.id))
    return True


async def _revert(obj: CLIContext, project_dir: str, version: int) -> bool:
    renderer = EventRenderer()
    manager, project = await _open(obj, project_dir, renderer)
    restored = await manager.revert(project.id, version)
    renderer.console.print(
        f"[green]Restored version {restored.version}[/green] [dim]({restored.commit_hash[:8]})[/dim]"
    )
    return True


async def _formats(obj: CLIContext, project_dir: str, version: Optional[int]) -> bool:
    renderer = EventRenderer()
    manager, project = await _open(obj, project_dir, renderer, initialize=False)
    renderer.render_formats(await manager.available_formats(project.id, version))
    return True


async def _publish(
    obj: CLIContext,
    project_dir: str,
    version: Optional[int],
    formats: List[str],
    targets: List[str],
) -> bool:
    renderer = EventRenderer()
    manager, project = await _open(obj, project_dir, renderer, initialize=False)
    result = await manager.publish(project.id, version, formats or None, targets or None)
    renderer.render_publish_result(result)
    return result.success


async def _package(
    obj: CLIContext,
    project_dir: str,
    destination: Path,
    version: Optional[int],
    formats: List[str],
) -> bool:
    renderer = EventRenderer()
    manager, project = await _open(obj, project_dir, renderer, initialize=False)
    result = await manager.package(project.id, destination, version, formats or None)
    renderer.console.print(
        f"[green]Packaged v{result.version}[/green] {', '.join(result.included)} -> {result.zip_path}"
    )
    return True


async def _usage(obj: CLIContext, project_dir: str) -> bool:
    renderer = EventRenderer()
    manager, project = await _open(obj, project_dir, renderer, initialize=False)
    renderer.render_usage(manager.usage(project.id))
    return True


def main() -> None:
    """Console script entry point."""
    cli()


if __name__ == "__main__":
    main()
