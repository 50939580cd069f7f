"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import json
import logging
import os
from collections.abc import Callable
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from map_manager import __version__
from map_manager.core.events import ManagerEvent
from map_manager.core.manager import Manager
from map_manager.exceptions import (
    MapManagerError,
    StorageUnavailableError,
    TransferError,
)
from map_manager.storage.config_manager import ConfigManager
from map_manager.utils.formatting import format_size

from .formatters import (
    print_config,
    print_countries_table,
    print_countries_tree,
    print_country_details,
    print_status_panel,
    print_updates_table,
    print_validation_table,
)

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
log = logging.getLogger("map_manager")

app = typer.Typer(
    name="map-manager",
    help=(
        "Keeps offline map, geocoder and postal data in sync with your"
        " subscription. Use 'map-manager <command> --help' for more info."
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
    return base_dir.expanduser() / "map-manager"


CONFIG_DIR = get_config_dir()
CONFIG_FILE = CONFIG_DIR / "config.ini"


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
        False, "--show-config", help="Display the current configuration."
    ),
):
    """Offline Map Data Manager CLI"""
    if version:
        console.print(f"[bold]map-manager[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    log_level = "WARNING"
    if verbose >= 2:
        log_level = "DEBUG"
    elif verbose == 1:
        log_level = "INFO"
    logging.getLogger("map_manager").setLevel(log_level)

    if show_config:
        if not CONFIG_FILE.is_file():
            console.print(
                "[red]✗ Config file not found.[/] Run [cyan]map-manager init[/cyan]"
                " first."
            )
            raise typer.Exit(code=1)
        config_manager = ConfigManager(CONFIG_FILE)
        config = config_manager.load_config()
        print_config(CONFIG_FILE, config.model_dump(exclude={"config_path"}))
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


def _parse_required_versions(values: list[str]) -> dict[str, str]:
    """Parses repeated TYPE=VERSION options."""
    required: dict[str, str] = {}
    for value in values:
        feature_type, sep, version = value.partition("=")
        if not sep or not feature_type.strip() or not version.strip():
            console.print(
                f"[red]✗ Invalid minimum version '{value}'.[/red] "
                "Use [cyan]TYPE=VERSION[/cyan], e.g. [cyan]postal=3[/cyan]."
            )
            raise typer.Exit(code=1)
        required[feature_type.strip()] = version.strip()
    return required


@app.command()
def init(
    storage_root: Path = typer.Argument(  # noqa: B008
        ..., help="Directory that holds the installed map data."
    ),
    server_url: str = typer.Option(
        "", "--server-url", "-s", help="URL of the server descriptor (url.json)."
    ),
    require: list[str] = typer.Option(  # noqa: B008
        [],
        "--require",
        "-r",
        help="Minimum readable data version per type, as TYPE=VERSION.",
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing configuration."
    ),
):
    """Initialize the configuration."""
    if (
        CONFIG_FILE.exists()
        and not force
        and not typer.confirm("Configuration file already exists. Overwrite it?")
    ):
        raise typer.Abort()

    settings = {
        "storage_root": storage_root.expanduser().resolve(),
        "server_url": server_url,
        "required_versions": _parse_required_versions(require),
    }
    config_manager = ConfigManager(CONFIG_FILE)
    config_manager.save_new_config(settings)
    console.print(
        f"\n[bold green]✓ Configuration saved to '{CONFIG_FILE}'[/bold green]"
    )
    console.print("Get the list of countries with: [cyan]map-manager refresh[/cyan]")


def _load_manager() -> Manager:
    """Builds a manager from the saved configuration, requiring usable storage."""
    config = ConfigManager(CONFIG_FILE).load_config()
    manager = Manager(config)
    if not manager.storage_available:
        raise StorageUnavailableError(
            f"Storage root '{config.storage_root}' is not available."
        )
    return manager


def _run_downloads(start: Callable[[Manager], bool]) -> Manager:
    """
    Runs a chain of downloads to completion, showing progress in a spinner.

    Raises:
        TransferError: If any step of the chain reported an error.
    """

    async def _run() -> tuple[Manager, list[str]]:
        manager = _load_manager()
        errors: list[str] = []
        manager.subscribe(ManagerEvent.ERROR_MESSAGE, errors.append)
        try:
            with console.status("[cyan]Starting...[/cyan]") as spinner:
                manager.subscribe(
                    ManagerEvent.DOWNLOAD_PROGRESS,
                    lambda text: spinner.update(f"[cyan]{text}[/cyan]"),
                )
                if start(manager):
                    await manager.wait_until_idle()
        finally:
            await manager.aclose()
        return manager, errors

    manager, errors = asyncio.run(_run())
    if errors:
        raise TransferError("; ".join(errors))
    return manager


@app.command()
def status():
    """Show the state of the installed data."""
    manager = _load_manager()
    print_status_panel(
        manager.root,
        manager.storage_available,
        manager.missing,
        manager.missing_info,
        manager.data_paths(),
    )


@app.command(name="list")
def list_countries(
    kind: str = typer.Argument(
        "requested", help="Which list to show: available, requested or provided."
    ),
    tree: bool = typer.Option(
        False, "--tree", "-t", help="Group countries by region."
    ),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON."),
):
    """List available, requested or provided countries."""
    getters = {
        "available": Manager.get_available_countries,
        "requested": Manager.get_requested_countries,
        "provided": Manager.get_provided_countries,
    }
    if kind not in getters:
        console.print(
            f"[red]✗ Unknown list '{kind}'.[/red] "
            "Use available, requested or provided."
        )
        raise typer.Exit(code=1)

    manager = _load_manager()
    if kind == "provided" and not manager.check_provided_available():
        console.print(
            "[yellow]⚠️  No list of provided countries yet.[/yellow] "
            "Run [cyan]map-manager refresh[/cyan] first."
        )
        raise typer.Exit(code=1)

    result = getters[kind](manager, tree)
    title = f"{kind.capitalize()} Countries"
    if as_json:
        console.print_json(result)
    elif tree:
        print_countries_tree(title, result)
    else:
        print_countries_table(title, result)


@app.command()
def details(country: str = typer.Argument(..., help="Country ID.")):
    """Show a country and the data it needs."""
    manager = _load_manager()
    info = json.loads(manager.get_country_details(country))
    if not info:
        console.print(f"[red]✗ Unknown country '{country}'.[/red]")
        raise typer.Exit(code=1)
    print_country_details(info)


@app.command()
def add(
    countries: list[str] = typer.Argument(..., help="Country IDs."),  # noqa: B008
):
    """Subscribe to one or more provided countries."""
    manager = _load_manager()
    failed = False
    for country in countries:
        if manager.add_country(country):
            console.print(f"[green]✓ Added '{country}'.[/green]")
        else:
            failed = True
    if failed:
        raise typer.Exit(code=1)
    console.print("Download the data with: [cyan]map-manager sync[/cyan]")


@app.command()
def remove(
    countries: list[str] = typer.Argument(..., help="Country IDs."),  # noqa: B008
):
    """Unsubscribe from one or more countries."""
    manager = _load_manager()
    for country in countries:
        if manager.remove_country(country):
            console.print(f"[green]✓ Removed '{country}'.[/green]")
        else:
            console.print(f"[yellow]'{country}' is not subscribed.[/yellow]")
    console.print(
        "Reclaim storage of removed data with: [cyan]map-manager clean[/cyan]"
    )


@app.command()
def sync(
    updates: bool = typer.Option(
        False, "--updates", "-u", help="Also replace outdated data."
    ),
):
    """Download missing data of subscribed countries."""
    manager = _run_downloads(
        Manager.get_updates if updates else Manager.get_countries
    )
    if manager.missing:
        console.print(f"[yellow]{manager.missing_info}[/yellow]")
        raise typer.Exit(code=1)
    console.print("[bold green]✓ All subscribed data is installed.[/bold green]")


@app.command()
def refresh():
    """Refresh the list of provided countries and check for updates."""
    manager = _run_downloads(Manager.update_provided)
    print_updates_table(manager.updates_found())


@app.command()
def clean(
    force: bool = typer.Option(
        False, "--force", "-f", help="Bypass the confirmation prompt."
    ),
):
    """Delete data files that no subscribed country needs."""
    manager = _load_manager()
    files = manager.get_non_needed_files_list()
    size = manager.get_non_needed_files_size()
    generation = manager.get_non_needed_files_generation()
    if size < 0:
        console.print("[yellow]Cannot scan storage while downloading.[/yellow]")
        raise typer.Exit(code=1)
    if not files:
        console.print("[green]✓ No unneeded files found.[/green]")
        return

    for path in files:
        console.print(f"  [dim]{path}[/dim]")
    if not force and not typer.confirm(
        f"Delete {len(files)} file(s), {format_size(size)}?"
    ):
        console.print("[yellow]Operation cancelled.[/yellow]")
        raise typer.Abort()

    if manager.delete_non_needed_files(files, generation):
        console.print(f"[green]✓ Freed {format_size(size)}.[/green]")
    else:
        console.print("[red]✗ Some files could not be deleted.[/red]")
        raise typer.Exit(code=1)


@app.command()
def validate():
    """Validate the current configuration."""
    try:
        config_manager = ConfigManager(CONFIG_FILE)
        config = config_manager.load_config()
        print_validation_table(config)
    except MapManagerError as e:
        console.print(f"[red]✗ Configuration is invalid: {e}[/red]")
        raise typer.Exit(code=1) from e


@app.command()
def vacuum():
    """Optimize the catalog database."""
    manager = _load_manager()
    console.print("[cyan]Optimizing catalog database...[/cyan]")
    if manager.catalog is not None and manager.catalog.vacuum():
        console.print("[green]✓ Database optimized.[/green]")
    else:
        console.print("[red]✗ Optimization failed.[/red]")
