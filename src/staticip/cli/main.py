"""
staticip CLI entry point.

Usage:
    staticip [OPTIONS] COMMAND [ARGS]...

Commands:
    run       Run the controller manager
    apply     Create or update resources from YAML
    delete    Delete a resource
    get       List pools, claims, machines or clusters
    version   Show version information
"""

from typing import Annotated

import typer

from staticip.cli.commands import get, manage
from staticip.cli.commands import run as run_cmd
from staticip.cli.output import console
from staticip.config import config

app = typer.Typer(
    name="staticip",
    help="Static IP allocation controller",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

# Register commands
app.command("run")(run_cmd.run)
app.command("apply")(manage.apply)
app.command("delete")(manage.delete)
app.add_typer(get.app, name="get", help="List stored resources")


@app.callback()
def main(
    db_file: Annotated[
        str | None,
        typer.Option(
            "--db-file",
            "-d",
            help="SQLite database backing the resource store",
            envvar="STATICIP_DB_FILE",
        ),
    ] = None,
):
    """
    Static IP allocation controller.

    Assigns addresses from IP pools to machine network devices and cluster
    control-plane endpoints.
    """
    if db_file:
        config.DB_FILE = db_file


@app.command("version")
def version():
    """Show version information."""
    from staticip import __version__

    console.print(f"staticip v{__version__}")


def run():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    run()
