"""Resource management commands: apply and delete."""

from pathlib import Path
from typing import Annotated

import pydantic
import typer
import yaml

from staticip.cli import client
from staticip.cli.output import console, print_error, print_success
from staticip.ipam.exceptions import IPAMError, NotFound
from staticip.models.resources import DEFAULT_NAMESPACE, object_key, parse_resource


def load_manifests(path: Path) -> list:
    """
    Parse every YAML document of a file into resources.

    Raises:
        ValueError: Unknown kind, malformed YAML or an invalid document.
    """
    try:
        documents = list(yaml.safe_load_all(path.read_text()))
    except yaml.YAMLError as e:
        raise ValueError(f"{path}: invalid YAML: {e}") from e

    resources = []
    for index, document in enumerate(documents):
        if document is None:
            continue
        if not isinstance(document, dict):
            raise ValueError(f"{path}: document {index} is not a mapping")
        try:
            resources.append(parse_resource(document))
        except pydantic.ValidationError as e:
            raise ValueError(f"{path}: document {index}: {e}") from e
    return resources


def apply(
    filename: Annotated[
        Path,
        typer.Option(
            "--filename",
            "-f",
            help="YAML file with one or more resources",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ],
):
    """Create or update resources from a YAML file."""
    try:
        resources = load_manifests(filename)
    except (OSError, ValueError) as e:
        print_error(str(e))
        raise typer.Exit(1)

    if not resources:
        console.print("[yellow]No resources found in file.[/yellow]")
        return

    try:
        results = client.apply_resources(resources)
    except IPAMError as e:
        print_error(str(e))
        raise typer.Exit(1)

    for obj, action in results:
        message = f"{obj.KIND.value.lower()}/{obj.key} {action}"
        if action == "unchanged":
            console.print(f"[dim]{message}[/dim]")
        else:
            print_success(message)


def delete(
    kind: Annotated[str, typer.Argument(help="machine | cluster | pool | claim")],
    name: Annotated[str, typer.Argument(help="Resource name")],
    namespace: Annotated[
        str, typer.Option("--namespace", "-n", help="Namespace")
    ] = DEFAULT_NAMESPACE,
):
    """Delete a resource (owners keep existing until their claims are released)."""
    try:
        resource_kind = client.resolve_kind(kind)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)

    key = object_key(namespace, name)
    try:
        result = client.delete_resource(resource_kind, key)
    except NotFound:
        print_error(f"{resource_kind.value} {key} not found.")
        raise typer.Exit(1)
    except IPAMError as e:
        print_error(str(e))
        raise typer.Exit(1)

    print_success(f"{resource_kind.value.lower()}/{key} {result}")
