"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import logging
import os
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from model_depot import __version__
from model_depot.core.store import ArtifactStore
from model_depot.exceptions import ModelDepotError
from model_depot.models.artifact import DownloadStatus, ErrorKind
from model_depot.models.config import StoreConfig
from model_depot.network.policy import NetworkClass
from model_depot.storage.config_manager import ConfigManager
from model_depot.utils.formatting import format_size

from .formatters import (
    print_artifact_error,
    print_catalog_table,
    print_config,
    print_diagnostics_table,
)
from .progress_manager import ProgressManager

console = Console()

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            show_level=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("model_depot")

app = typer.Typer(
    name="model-depot",
    help=(
        "Download, select and manage on-device model files. Use 'model-depot"
        " <command> --help' for more info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)


def get_config_dir() -> Path:
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / "model-depot"


def get_config_file() -> Path:
    return get_config_dir() / "config.ini"


def _load_config() -> StoreConfig:
    try:
        return ConfigManager(get_config_file()).load_config()
    except ModelDepotError as e:
        console.print(f"[red]✗ Configuration is invalid: {e}[/red]")
        raise typer.Exit(code=1) from e


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-vv for debug).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
    show_config: bool = typer.Option(
        False, "--show-config", help="Display the effective configuration."
    ),
):
    """Model Depot CLI"""
    if version:
        console.print(f"[bold]model-depot[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    log_level = "INFO"
    if verbose >= 2:
        log_level = "DEBUG"
    logging.getLogger("model_depot").setLevel(log_level)

    if show_config:
        config = _load_config()
        print_config(get_config_file(), config.model_dump())
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def init(
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing file without asking."
    ),
):
    """Write a configuration file with default settings."""
    config_file = get_config_file()
    if (
        config_file.exists()
        and not force
        and not typer.confirm("Configuration file already exists. Overwrite it?")
    ):
        raise typer.Abort()

    try:
        ConfigManager(config_file).save_new_config()
    except ModelDepotError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1) from e
    console.print(f"[bold green]✓ Configuration saved to '{config_file}'[/bold green]")
    console.print("Try: [cyan]model-depot list[/cyan]")


@app.command(name="list")
def list_command(
    family: str | None = typer.Option(
        None, "--family", help="Only show one family (speech or language)."
    ),
):
    """List known artifacts with their install state."""
    config = _load_config()

    async def _list_async():
        async with ArtifactStore(config) as store:
            families = [family] if family else store.families
            print_catalog_table(console, [store.manager(name) for name in families])

    asyncio.run(_list_async())


@app.command(name="download")
def download_command(
    key: str = typer.Argument(..., help="Artifact key, e.g. 'tiny'."),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Download large artifacts on metered networks without asking.",
    ),
):
    """Download and install an artifact. Ctrl+C cancels and removes partial data."""
    config = _load_config()

    async def _download_async():
        async with (
            ArtifactStore(config) as store,
            ProgressManager(console=console) as progress_manager,
        ):
            manager = store.manager_for(key)
            descriptor = manager.catalog.get(key)
            if manager.state(key).status is DownloadStatus.INSTALLED:
                console.print(f"[green]✓ '{key}' is already installed.[/green]")
                return

            unsubscribe = store.subscribe(progress_manager.on_state_change)
            progress_manager.add_artifact_task(descriptor)
            try:
                state = await manager.download(key, override_network_policy=yes)
                error = state.last_error
                if (
                    state.status is not DownloadStatus.INSTALLED
                    and error is not None
                    and error.kind is ErrorKind.POLICY_BLOCKED
                ):
                    progress_manager.progress.stop()
                    confirmed = typer.confirm(
                        f"{descriptor.display_name} is "
                        f"{format_size(descriptor.expected_size_bytes)} and you are on "
                        "a metered network. Download anyway?"
                    )
                    if not confirmed:
                        raise typer.Abort()
                    progress_manager.progress.start()
                    state = await manager.download(key, override_network_policy=True)
            except asyncio.CancelledError:
                await manager.cancel(key)
                console.print(f"\n[yellow]Cancelled '{key}'; partial data removed.[/yellow]")
                raise
            finally:
                unsubscribe()

        if state.status is DownloadStatus.INSTALLED:
            console.print(
                f"[bold green]✓ Installed '{key}'[/bold green] -> "
                f"[dim]{manager.destination_for(key)}[/dim]"
            )
            if state.last_error is not None:
                print_artifact_error(console, key, state.last_error)
            if manager.current_key == key:
                console.print(f"[cyan]'{key}' is now the current {manager.family} model.[/cyan]")
            return
        if state.last_error is not None:
            print_artifact_error(console, key, state.last_error)
        raise typer.Exit(code=1)

    asyncio.run(_download_async())


@app.command()
def delete(key: str = typer.Argument(..., help="Installed artifact key.")):
    """Delete an installed artifact."""
    config = _load_config()

    async def _delete_async():
        async with ArtifactStore(config) as store:
            manager = store.manager_for(key)
            if manager.state(key).status is not DownloadStatus.INSTALLED:
                console.print(f"[yellow]'{key}' is not installed.[/yellow]")
                raise typer.Exit(code=1)
            state = await manager.delete(key)
            if state.status is DownloadStatus.INSTALLED:
                print_artifact_error(console, key, state.last_error)
                raise typer.Exit(code=1)
            console.print(f"[green]✓ Deleted '{key}'.[/green]")
            current = manager.current_key
            console.print(
                f"Current {manager.family} model: "
                + (f"[cyan]{current}[/cyan]" if current else "[dim]none[/dim]")
            )

    asyncio.run(_delete_async())


@app.command()
def use(key: str = typer.Argument(..., help="Installed artifact key.")):
    """Select an installed artifact as the current one of its family."""
    config = _load_config()

    async def _use_async():
        async with ArtifactStore(config) as store:
            manager = store.manager_for(key)
            if not await manager.select_current(key):
                console.print(
                    f"[red]✗ '{key}' is not installed.[/red] "
                    f"Run [cyan]model-depot download {key}[/cyan] first."
                )
                raise typer.Exit(code=1)
            console.print(f"[green]✓ '{key}' is now the current {manager.family} model.[/green]")

    asyncio.run(_use_async())


@app.command()
def current(family: str = typer.Argument(..., help="Family name (speech or language).")):
    """Print the path of a family's current artifact."""
    config = _load_config()

    async def _current_async():
        async with ArtifactStore(config) as store:
            path = store.get_current_artifact_path(family)
            if path is None:
                console.print(f"[yellow]No current {family} model.[/yellow]")
                raise typer.Exit(code=1)
            console.print(str(path), soft_wrap=True)

    asyncio.run(_current_async())


@app.command()
def diagnose():
    """Diagnose configuration, storage and connectivity issues."""
    console.print("\n[bold cyan]Running diagnostics...[/bold cyan]\n")
    config_file = get_config_file()
    checks: list[tuple[str, bool, str]] = []
    if config_file.is_file():
        checks.append(("Config File", True, str(config_file)))
    else:
        checks.append(("Config File", False, "not found, using defaults"))
    config = _load_config()

    async def _diagnose_async():
        async with ArtifactStore(config) as store:
            root_ok = os.access(config.root_path, os.W_OK)
            checks.append(
                ("Storage", root_ok, "writable" if root_ok else "not writable")
            )
            classification = await store.policy.classify()
            checks.append(
                (
                    "Network",
                    classification is not NetworkClass.UNREACHABLE,
                    classification.value,
                )
            )
            for name in store.families:
                path = store.get_current_artifact_path(name)
                checks.append(
                    (f"Current {name}", path is not None, str(path) if path else "none")
                )

    asyncio.run(_diagnose_async())
    print_diagnostics_table(console, config, checks)
    if all(ok for label, ok, _ in checks if label in ("Storage", "Network")):
        console.print("[bold green]✓ All checks passed![/bold green]\n")
    else:
        console.print(
            "[bold red]✗ Some issues were found. "
            "Please review the messages above.[/bold red]\n"
        )
