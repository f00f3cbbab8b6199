"""Command-line interface for ReconFlow."""

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .app import ReconFlowApp, DEFAULT_SESSION_FILE
from .errors import ValidationError
from .models import Scene, WorkflowPhase
from .monitor import WorkflowMonitor
from .utils.auth import AuthManager, UserProfile
from .utils.session import SessionStore

console = Console()
logger = logging.getLogger(__name__)


class ConfigManager:
    """Locates and merges YAML configuration files."""

    CONFIG_DIR_NAME = "recon-flow"

    @staticmethod
    def get_xdg_config_home() -> Path:
        xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
        if xdg_config_home:
            return Path(xdg_config_home)
        return Path.home() / ".config"

    @staticmethod
    def get_xdg_config_dirs() -> List[Path]:
        xdg_config_dirs = os.environ.get("XDG_CONFIG_DIRS", "/etc/xdg")
        return [Path(d) for d in xdg_config_dirs.split(":") if d]

    @classmethod
    def find_config(
        cls, component: str = "client", explicit_path: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Find and load configuration for a component.

        Search order: explicit path, $XDG_CONFIG_HOME/recon-flow/, each
        $XDG_CONFIG_DIRS entry, ./recon-flow.yaml, ~/.recon-flow/.
        """
        if explicit_path:
            path = Path(explicit_path)
            if path.exists():
                return cls.load_yaml(path)
            logger.error(f"Config file not found: {explicit_path}")
            return None

        filename = f"{component}.yaml"
        search_paths = [cls.get_xdg_config_home() / cls.CONFIG_DIR_NAME / filename]
        search_paths.extend(d / cls.CONFIG_DIR_NAME / filename for d in cls.get_xdg_config_dirs())
        search_paths.append(Path.cwd() / f"{cls.CONFIG_DIR_NAME}.yaml")
        search_paths.append(Path.home() / f".{cls.CONFIG_DIR_NAME}" / filename)

        for path in search_paths:
            if path.exists():
                config = cls.load_yaml(path)
                if config is not None:
                    logger.info(f"Loaded config from {path}")
                    return config

        return None

    @staticmethod
    def load_yaml(path: Path) -> Optional[Dict[str, Any]]:
        """Load a YAML file; None when it cannot be read or parsed."""
        try:
            with open(path) as f:
                config = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error loading config from {path}: {e}")
            return None
        return config or {}

    @staticmethod
    def merge_configs(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep-merge override into a copy of base."""
        result = dict(base)
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = ConfigManager.merge_configs(result[key], value)
            else:
                result[key] = value
        return result


def setup_logging(verbose: bool = False):
    """Configure logging with rich handler."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[
            RichHandler(console=console, rich_tracebacks=True, show_path=False, show_time=False)
        ],
    )


def apply_cli_overrides(config: Dict[str, Any], **kwargs) -> Dict[str, Any]:
    """Overlay CLI arguments that were actually given onto a config."""
    overrides = {key: value for key, value in kwargs.items() if value is not None}
    return ConfigManager.merge_configs(config, overrides)


def load_client_config(ctx: click.Context, **overrides) -> Dict[str, Any]:
    config = ConfigManager.find_config("client", ctx.obj.get("config_path")) or {}
    # accept both a bare client config and one nested under "client:"
    config = config.get("client", config)
    return apply_cli_overrides(config, **overrides)


def run_async(coro):
    """Run a coroutine, mapping local input errors and Ctrl+C to exit codes."""
    try:
        return asyncio.run(coro)
    except ValidationError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(2)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)


def print_scene(scene: Scene):
    console.print(f"[green]ID:[/green] {scene.id}")
    console.print(f"[green]Name:[/green] {scene.name}")
    if scene.description:
        console.print(f"[green]Description:[/green] {scene.description}")
    console.print(f"[green]Status:[/green] {scene.status.value}")
    console.print(f"[green]Progress:[/green] {scene.progress}% {scene.progress_message}")
    console.print(f"[green]Images:[/green] {scene.image_count}")
    if scene.ply_file_path:
        console.print(f"[green]Point cloud:[/green] {scene.ply_file_path}")


async def watch_with_monitor(app: ReconFlowApp, coro):
    """Run an engine coroutine while the live monitor renders the store."""
    task = asyncio.create_task(coro)
    await WorkflowMonitor(app.store, console).watch(task)
    return await task


@click.group()
@click.option("--config", type=click.Path(exists=True), help="Configuration file")
@click.option("--verbose", is_flag=True, help="Enable verbose logging")
@click.pass_context
def main(ctx, config: Optional[str], verbose: bool):
    """ReconFlow - scene reconstruction workflow client."""
    setup_logging(verbose)
    ctx.obj = {"config_path": config}


@main.command()
@click.option("--token", required=True, help="Bearer token for the API")
@click.option("--username", help="Display name stored with the session")
@click.option("--user-id", help="User id stored with the session")
@click.pass_context
def login(ctx, token: str, username: Optional[str], user_id: Optional[str]):
    """Store a session token for later requests."""
    config = load_client_config(ctx)
    auth = AuthManager(SessionStore(Path(config.get("session_file", DEFAULT_SESSION_FILE))))
    user = None
    if username or user_id:
        user = UserProfile(id=user_id or "", username=username or "")
    auth.login(token, user)
    console.print("[green]✓ Session token saved[/green]")


@main.command()
@click.pass_context
def logout(ctx):
    """Forget the stored session."""
    config = load_client_config(ctx)
    auth = AuthManager(SessionStore(Path(config.get("session_file", DEFAULT_SESSION_FILE))))
    auth.logout()
    console.print("[green]✓ Logged out[/green]")


@main.command(name="list")
@click.option("--api-url", help="API base URL")
@click.pass_context
def list_scenes(ctx, api_url: Optional[str]):
    """List the scenes of the current user."""
    config = load_client_config(ctx, api_url=api_url)

    async def fetch():
        async with ReconFlowApp(config) as app:
            scenes = await app.engine.fetch_scenes()
            return scenes, app.store.error

    scenes, error = run_async(fetch())
    if scenes is None:
        console.print(f"[red]Failed to fetch scenes: {error}[/red]")
        sys.exit(1)

    table = Table(title=f"{len(scenes)} scenes")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Status", style="yellow")
    table.add_column("Images", justify="right")
    table.add_column("Progress", justify="right")
    for scene in scenes:
        table.add_row(
            scene.id, scene.name, scene.status.value, str(scene.image_count), f"{scene.progress}%"
        )
    console.print(table)


@main.command()
@click.argument("scene_id")
@click.option("--api-url", help="API base URL")
@click.pass_context
def status(ctx, scene_id: str, api_url: Optional[str]):
    """Show the current status of one scene."""
    config = load_client_config(ctx, api_url=api_url)

    async def fetch():
        async with ReconFlowApp(config) as app:
            scene = await app.engine.fetch_scene_by_id(scene_id)
            return scene, app.store.error

    scene, error = run_async(fetch())
    if scene is None:
        console.print(f"[red]Failed to fetch scene {scene_id}: {error}[/red]")
        sys.exit(1)
    print_scene(scene)


@main.command()
@click.argument("name")
@click.option("--description", help="Scene description")
@click.option("--api-url", help="API base URL")
@click.pass_context
def create(ctx, name: str, description: Optional[str], api_url: Optional[str]):
    """Create an empty scene."""
    config = load_client_config(ctx, api_url=api_url)

    async def create_scene():
        async with ReconFlowApp(config) as app:
            scene = await app.engine.create_scene(name, description)
            return scene, app.store.error

    scene, error = run_async(create_scene())
    if scene is None:
        console.print(f"[red]Failed to create scene: {error}[/red]")
        sys.exit(1)
    console.print(f"[green]✓ Scene created:[/green] {scene.name} (ID: {scene.id})")


@main.command()
@click.argument("scene_id")
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--api-url", help="API base URL")
@click.pass_context
def upload(ctx, scene_id: str, files: List[str], api_url: Optional[str]):
    """Upload images into an existing scene."""
    config = load_client_config(ctx, api_url=api_url)

    async def upload_images():
        async with ReconFlowApp(config) as app:
            app.store.add_pending_files(files)
            scene = await app.engine.upload_images(scene_id)
            return scene, app.store.error

    scene, error = run_async(upload_images())
    if scene is None:
        console.print(f"[red]Upload failed: {error}[/red]")
        sys.exit(1)
    console.print(f"[green]✓ Uploaded {len(files)} images[/green] ({scene.image_count} in scene)")


@main.command()
@click.argument("scene_id")
@click.option("--poll-interval", type=float, help="Seconds between status checks")
@click.option("--max-poll-errors", type=int, help="Consecutive failed status checks tolerated")
@click.option("--api-url", help="API base URL")
@click.pass_context
def reconstruct(
    ctx,
    scene_id: str,
    poll_interval: Optional[float],
    max_poll_errors: Optional[int],
    api_url: Optional[str],
):
    """Run reconstruction on a scene and wait for it to finish."""
    config = load_client_config(
        ctx, poll_interval=poll_interval, max_poll_errors=max_poll_errors, api_url=api_url
    )

    async def reconstruct_scene():
        async with ReconFlowApp(config) as app:
            scene = await watch_with_monitor(app, app.engine.run_reconstruction(scene_id))
            return scene, app.store.error

    scene, error = run_async(reconstruct_scene())
    if scene is None:
        console.print(f"[red]Reconstruction failed: {error}[/red]")
        sys.exit(1)
    console.print("[green]✓ Reconstruction completed[/green]")
    print_scene(scene)


@main.command()
@click.argument("name")
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--description", help="Scene description")
@click.option("--poll-interval", type=float, help="Seconds between status checks")
@click.option("--max-poll-errors", type=int, help="Consecutive failed status checks tolerated")
@click.option("--api-url", help="API base URL")
@click.pass_context
def run(
    ctx,
    name: str,
    files: List[str],
    description: Optional[str],
    poll_interval: Optional[float],
    max_poll_errors: Optional[int],
    api_url: Optional[str],
):
    """Create a scene, upload images and reconstruct it in one go."""
    config = load_client_config(
        ctx, poll_interval=poll_interval, max_poll_errors=max_poll_errors, api_url=api_url
    )

    async def full_workflow():
        async with ReconFlowApp(config) as app:
            app.store.add_pending_files(files)
            workflow_run = await watch_with_monitor(
                app, app.engine.start_full_workflow(name, description)
            )
            return workflow_run, app.store.current_scene

    workflow_run, scene = run_async(full_workflow())

    if workflow_run.phase is WorkflowPhase.DONE:
        console.print("[green]✓ Full workflow completed![/green]")
        print_scene(scene)
    elif workflow_run.phase is WorkflowPhase.CANCELLED:
        console.print("[yellow]Workflow cancelled[/yellow]")
        sys.exit(130)
    else:
        failed_at = workflow_run.failed_phase.value if workflow_run.failed_phase else "unknown"
        console.print(f"[red]Workflow failed at {failed_at}: {workflow_run.error}[/red]")
        if scene:
            console.print(f"[yellow]Scene {scene.id} was kept ({scene.status.value})[/yellow]")
        sys.exit(1)


if __name__ == "__main__":
    main()
