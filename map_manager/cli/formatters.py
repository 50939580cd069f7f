"""
Functions for formatting and displaying data in the console using Rich.
"""

import json
from pathlib import Path
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from map_manager.models.config import ManagerConfig
from map_manager.utils.formatting import format_size


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions_map = {
        "ConfigurationError": [
            "• Run `map-manager init <STORAGE_ROOT>` to create a configuration.",
            "• Check the values in the configuration file with `--show-config`.",
        ],
        "StorageUnavailableError": [
            "• Make sure the storage device is mounted.",
            "• Check that the storage root is writable by the current user.",
        ],
        "TransferError": [
            "• Check your internet connection.",
            "• The data server might be temporarily unavailable.",
            "• Run `map-manager sync` again, interrupted files are fetched again.",
        ],
        "ManifestParseError": [
            "• The downloaded list may be damaged. Run `map-manager refresh`.",
            "• Remove the broken manifest from the storage root to start over.",
        ],
        "ClientResponseError": [
            "• A network connection issue occurred.",
            "• Verify the `server_url` in the configuration file.",
        ],
        "TimeoutError": [
            "• A download timed out, which may indicate network throttling.",
            "• Increase `max_attempts` or `retry_delay` in the configuration.",
        ],
    }

    suggestions = suggestions_map.get(
        error_type, ["• Run the command with -vv for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    suggestion_text = Text("\n".join(suggestions))

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(suggestion_text)

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def print_config(config_path: Path, config_data: dict[str, Any]):
    """Displays the current configuration."""
    console = Console()
    content = ""
    for key, value in config_data.items():
        if isinstance(value, dict):
            value = ", ".join(f"{k}>={v}" for k, v in value.items()) or "-"
        content += f"{key} = {value}\n"

    console.print(
        Panel(
            content.strip(),
            title=f"Configuration ([dim]{config_path}[/dim])",
            border_style="cyan",
        )
    )


def print_validation_table(config: ManagerConfig):
    """Displays a summary of the current settings."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()

    table.add_row("Storage Root:", f"[dim]{config.storage_root}[/dim]")
    table.add_row("Server URL:", config.server_url or "[yellow]not set[/yellow]")
    table.add_row("Max Attempts:", str(config.max_attempts))
    table.add_row("Retry Delay:", f"{config.retry_delay:.1f}s")
    table.add_row("Progress Step:", format_size(config.progress_step))
    for feature_type, version in sorted(config.required_versions.items()):
        table.add_row(f"Min. {feature_type}:", version)

    console.print(
        Panel(
            table,
            title="[bold green]✓ Validated Settings[/bold green]",
            border_style="green",
        )
    )


def _flag(value: bool) -> str:
    return "[green]✓[/green]" if value else "[dim]✗[/dim]"


def print_countries_table(title: str, countries_json: str):
    """Displays a flat list of countries as returned by the manager."""
    console = Console()
    countries = json.loads(countries_json)
    if not countries:
        console.print(f"[dim]No countries in the {title.lower()} list.[/dim]")
        return

    table = Table(title=title, box=box.ROUNDED)
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Size", justify="right", style="green")
    table.add_column("Requested", justify="center")
    table.add_column("Available", justify="center")
    for country in countries:
        table.add_row(
            country["id"],
            country["name"],
            format_size(country["size"]),
            _flag(country["requested"]),
            _flag(country["available"]),
        )
    console.print(table)


def print_countries_tree(title: str, countries_json: str):
    """Displays countries nested by the segments of their display names."""
    console = Console()
    nodes = json.loads(countries_json)
    if not nodes:
        console.print(f"[dim]No countries in the {title.lower()} list.[/dim]")
        return

    def add(branch: Tree, items: list[dict[str, Any]]):
        for item in items:
            if "children" in item:
                add(branch.add(f"[bold]{item['name']}[/bold]"), item["children"])
            else:
                branch.add(
                    f"[cyan]{item['name']}[/cyan] [dim]({item['id']}, "
                    f"{format_size(item['size'])})[/dim]"
                    + (" [green]✓[/green]" if item["available"] else "")
                )

    tree = Tree(f"[bold]{title}[/bold]")
    add(tree, nodes)
    console.print(tree)


def print_country_details(details: dict[str, Any]):
    """Displays a country and the features it needs."""
    console = Console()
    summary = Table(show_header=False, box=None, padding=(0, 2))
    summary.add_column(style="bold cyan")
    summary.add_column()
    summary.add_row("ID:", details["id"])
    provided = f"{details['version']} ({details['datetime']})"
    summary.add_row("Provided Version:", provided)
    summary.add_row("Installed Version:", details["installedVersion"] or "-")
    summary.add_row("Total Size:", format_size(details["size"]))
    summary.add_row("Requested:", _flag(details["requested"]))
    summary.add_row("Available:", _flag(details["available"]))
    summary.add_row("Compatible:", _flag(details["compatible"]))

    console.print(
        Panel(summary, title=f"[bold]{details['name']}[/bold]", border_style="cyan")
    )

    if features := details.get("features"):
        table = Table(title="Features", box=box.SIMPLE)
        table.add_column("Type", style="magenta")
        table.add_column("Name", style="cyan")
        table.add_column("Path", style="dim")
        table.add_column("Version")
        table.add_column("Installed")
        table.add_column("Size", justify="right", style="green")
        for feature in features:
            table.add_row(
                feature["type"],
                feature["name"],
                feature["path"],
                feature["version"],
                feature["installedVersion"] or "-",
                format_size(feature["size"]),
            )
        console.print(table)


def print_updates_table(updates_json: str):
    """Displays updates found for installed data."""
    console = Console()
    updates = json.loads(updates_json)
    if not updates:
        console.print("[green]✓ All installed data is up to date.[/green]")
        return

    table = Table(title="Updates Available", box=box.ROUNDED)
    table.add_column("Feature", style="cyan")
    table.add_column("Installed", style="yellow")
    table.add_column("Provided", style="green")
    for update in updates:
        table.add_row(update["id"], update["oldVersion"], update["newVersion"])
    console.print(table)
    console.print("Run [cyan]map-manager sync --updates[/cyan] to install them.")


def print_status_panel(
    storage_root: Path,
    storage_available: bool,
    missing: bool,
    missing_info: str,
    data_paths: dict[str, list[str]],
):
    """Displays the overall state of the installed data."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan", justify="right", width=18)
    table.add_column()

    table.add_row("Storage:", f"[dim]{storage_root}[/dim]")
    table.add_row(
        "Available:",
        "[green]✓ yes[/green]" if storage_available else "[red]✗ no[/red]",
    )
    table.add_row(
        "Data:",
        "[yellow]incomplete[/yellow]" if missing else "[green]complete[/green]",
    )
    for feature_type, paths in data_paths.items():
        table.add_row(f"{feature_type}:", f"{len(paths)} installed")

    border_color = "yellow" if missing or not storage_available else "green"
    console.print(
        Panel(
            table,
            title="🗺  [bold]Map Data Status[/bold]",
            border_style=border_color,
            box=box.DOUBLE,
            expand=False,
            padding=(1, 2),
        )
    )
    if missing_info:
        console.print(Panel(missing_info, border_style="dim", expand=False))
