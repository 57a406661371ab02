"""
Functions for formatting and displaying data in the console using Rich.
"""

from pathlib import Path
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from model_depot.core.lifecycle import ArtifactLifecycleManager
from model_depot.models.artifact import ArtifactError, ErrorKind
from model_depot.models.config import StoreConfig
from model_depot.utils.formatting import format_error, format_size, format_status


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions_map = {
        "ConfigurationError": [
            "• Check the values in your configuration file.",
            "• Run `model-depot init --force` to write a fresh default file.",
        ],
        "UnknownArtifactError": [
            "• Run `model-depot list` to see the available artifact keys.",
        ],
        "PersistenceCorruptError": [
            "• The installed-artifacts record is damaged and will be rebuilt.",
            "• Re-download any artifact that no longer shows as installed.",
        ],
        "ClientResponseError": [
            "• A network connection issue occurred.",
            "• The model host might be temporarily unavailable.",
            "• Please try again in a few minutes.",
        ],
        "TimeoutError": [
            "• The network is too slow or unavailable.",
            "• Check your internet connection.",
        ],
    }

    suggestions = suggestions_map.get(
        error_type, ["• Run the command with -vv for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(Text("\n".join(suggestions)))

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


_ARTIFACT_ERROR_HINTS = {
    ErrorKind.NO_CONNECTIVITY: "Connect to a network and run the command again.",
    ErrorKind.POLICY_BLOCKED: "Re-run with --yes, or switch to an unmetered network.",
    ErrorKind.TRANSFER_FAILED: "Run the same command again to retry.",
    ErrorKind.STORAGE_FULL: "Free some disk space, then retry.",
    ErrorKind.WRITE_FAILED: "Check permissions on the storage directory.",
    ErrorKind.PERSISTENCE_CORRUPT: "The record was rebuilt; re-download if needed.",
}


def print_artifact_error(console: Console, key: str, error: ArtifactError):
    """Prints a classified lifecycle error with a one-line hint."""
    console.print(
        Panel(
            f"{format_error(error)}\n\n[yellow]{_ARTIFACT_ERROR_HINTS[error.kind]}[/yellow]",
            title=f"[bold red]{key}[/bold red]",
            border_style="red",
            expand=False,
        )
    )


def print_config(config_path: Path, config_data: dict[str, Any]):
    """Displays the current configuration."""
    console = Console()
    content = ""
    for key, value in sorted(config_data.items()):
        content += f"{key} = {value}\n"

    console.print(
        Panel(
            content.strip(),
            title=f"Configuration ([dim]{config_path}[/dim])",
            border_style="cyan",
        )
    )


def print_catalog_table(console: Console, managers: list[ArtifactLifecycleManager]):
    """Lists every artifact with its install state and the current marker."""
    table = Table(box=box.ROUNDED, header_style="bold cyan")
    table.add_column("", width=1)
    table.add_column("Key", style="bold")
    table.add_column("Family")
    table.add_column("Name")
    table.add_column("Size", justify="right")
    table.add_column("Status")

    for manager in managers:
        states = manager.states()
        for descriptor in manager.catalog:
            state = states[descriptor.key]
            marker = "[green]*[/green]" if manager.current_key == descriptor.key else ""
            table.add_row(
                marker,
                descriptor.key,
                manager.family,
                descriptor.display_name,
                format_size(descriptor.expected_size_bytes),
                format_status(state),
            )

    console.print(table)
    console.print("[dim]* current artifact of its family[/dim]")


def print_diagnostics_table(console: Console, config: StoreConfig, checks: list[tuple[str, bool, str]]):
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()

    table.add_row("Storage Root:", f"[dim]{config.storage_root}[/dim]")
    table.add_row("Network Mode:", config.network_mode)
    threshold = config.metered_threshold_mb
    table.add_row(
        "Metered Threshold:", "per family" if threshold is None else f"{threshold} MB"
    )
    table.add_row("Max Transfers:", str(config.max_concurrent_transfers))
    for label, ok, detail in checks:
        mark = "[green]✓[/green]" if ok else "[red]✗[/red]"
        table.add_row(f"{label}:", f"{mark} {detail}")

    console.print(
        Panel(table, title="[bold]Diagnostics[/bold]", border_style="cyan", expand=False)
    )
