"""Resource listing commands."""

from typing import Annotated

import typer

from staticip.cli import client
from staticip.cli.formatters.resources import (
    format_claim_table,
    format_cluster_table,
    format_machine_table,
    format_pool_table,
)
from staticip.cli.output import console, print_data, print_error
from staticip.ipam.exceptions import IPAMError
from staticip.models.enums import ResourceKind

app = typer.Typer(help="List stored resources")

NamespaceOption = Annotated[
    str,
    typer.Option("--namespace", "-n", help="Namespace (default: all namespaces)"),
]
OutputOption = Annotated[
    str,
    typer.Option("--output", "-o", help="Output format: table|json|yaml"),
]


def _show(kind: ResourceKind, namespace: str, output: str, formatter) -> None:
    try:
        objs = client.list_resources(kind, namespace)
    except IPAMError as e:
        print_error(str(e))
        raise typer.Exit(1)

    if output in ("json", "yaml"):
        print_data([obj.to_dict() for obj in objs], output)
        return

    if not objs:
        console.print(f"[yellow]No {kind.value} resources found.[/yellow]")
        return

    console.print(formatter(objs))


@app.command("pools")
def get_pools(namespace: NamespaceOption = "", output: OutputOption = "table"):
    """List IP pools with their capacity."""
    _show(ResourceKind.POOL, namespace, output, format_pool_table)


@app.command("claims")
def get_claims(namespace: NamespaceOption = "", output: OutputOption = "table"):
    """List IP claims and their fulfillment."""
    _show(ResourceKind.CLAIM, namespace, output, format_claim_table)


@app.command("machines")
def get_machines(namespace: NamespaceOption = "", output: OutputOption = "table"):
    """List machines and their device configuration."""
    _show(ResourceKind.MACHINE, namespace, output, format_machine_table)


@app.command("clusters")
def get_clusters(namespace: NamespaceOption = "", output: OutputOption = "table"):
    """List clusters and their control-plane endpoint."""
    _show(ResourceKind.CLUSTER, namespace, output, format_cluster_table)
