"""Console output helpers shared by CLI commands."""

import json

import yaml
from rich.console import Console

console = Console()
err_console = Console(stderr=True)


def print_error(message: str) -> None:
    err_console.print(f"[bold red]Error:[/bold red] {message}")


def print_warning(message: str) -> None:
    err_console.print(f"[yellow]Warning:[/yellow] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]{message}[/green]")


def print_data(data, output_format: str) -> None:
    """Print plain data as json or yaml."""
    if output_format == "yaml":
        console.print(yaml.safe_dump(data, sort_keys=False), end="", markup=False)
    else:
        console.print_json(json.dumps(data))
