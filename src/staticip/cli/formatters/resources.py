"""Rich table formatters for stored resources."""

from rich.table import Table
from rich.text import Text

from staticip.ipam.exceptions import ValidationError
from staticip.ipam.pool import AddressPool
from staticip.models.enums import ConditionType
from staticip.models.resources import (
    Cluster,
    IPClaim,
    IPPool,
    Machine,
    Resource,
    get_condition,
)

# Condition colors
CONDITION_COLORS = {
    ConditionType.IP_ALLOCATED: ("green", "yellow"),
    ConditionType.POOL_EXHAUSTED: ("red", "dim"),
    ConditionType.VALIDATION_FAILED: ("red", "dim"),
    ConditionType.RETRIES_EXHAUSTED: ("red", "dim"),
}


def _age(obj: Resource) -> str:
    ts = obj.metadata.creation_timestamp
    return ts.strftime("%Y-%m-%d %H:%M:%S") if ts else "-"


def format_conditions(obj: Resource) -> Text:
    """One colored token per condition that is currently true."""
    text = Text()
    for cond in obj.status.conditions:
        if not cond.status and cond.type != ConditionType.IP_ALLOCATED:
            continue
        on, off = CONDITION_COLORS.get(cond.type, ("white", "dim"))
        if text:
            text.append(" ")
        label = cond.type.value if cond.status else (cond.reason or "Pending")
        text.append(label, style=on if cond.status else off)
    if obj.is_deleting():
        if text:
            text.append(" ")
        text.append("Deleting", style="magenta")
    return text or Text("-", style="dim")


def format_pool_table(pools: list[IPPool]) -> Table:
    table = Table(title="IP Pools")
    table.add_column("Namespace", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Range")
    table.add_column("Gateway")
    table.add_column("Prefix", justify="right")
    table.add_column("Allocated", justify="right")
    table.add_column("Free", justify="right")

    for pool in pools:
        spec = pool.spec
        ranges = [f"{spec.start}-{spec.end}"] if spec.start else []
        ranges.extend(spec.addresses)
        try:
            stats = AddressPool(pool).get_stats()
            allocated, free = str(stats["allocated"]), str(stats["free"])
        except (ValidationError, ValueError):
            allocated, free = "?", "?"
        table.add_row(
            pool.namespace,
            pool.name,
            ", ".join(ranges) or "-",
            spec.gateway or "-",
            str(spec.prefix),
            allocated,
            Text(free, style="red" if free == "0" else "green"),
        )
    return table


def format_claim_table(claims: list[IPClaim]) -> Table:
    table = Table(title="IP Claims")
    table.add_column("Namespace", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Pool")
    table.add_column("Owner")
    table.add_column("Phase")
    table.add_column("Address")
    table.add_column("Conditions")

    for claim in claims:
        owner = claim.owner()
        fulfilled = claim.is_fulfilled()
        table.add_row(
            claim.namespace,
            claim.name,
            claim.spec.pool_name,
            f"{owner.kind.value}/{owner.name}" if owner else "-",
            Text(claim.status.phase.value, style="green" if fulfilled else "yellow"),
            claim.status.address.cidr if fulfilled else "-",
            format_conditions(claim),
        )
    return table


def format_machine_table(machines: list[Machine]) -> Table:
    table = Table(title="Machines")
    table.add_column("Namespace", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Cluster")
    table.add_column("Devices")
    table.add_column("Conditions")
    table.add_column("Created", style="dim")

    for machine in machines:
        devices = []
        for index, device in enumerate(machine.spec.devices):
            if device.dhcp4 or device.dhcp6:
                devices.append(f"{index}: dhcp")
            else:
                devices.append(f"{index}: {', '.join(device.ip_addrs) or 'pending'}")
        table.add_row(
            machine.namespace,
            machine.name,
            machine.spec.cluster_name or "-",
            "\n".join(devices) or "-",
            format_conditions(machine),
            _age(machine),
        )
    return table


def format_cluster_table(clusters: list[Cluster]) -> Table:
    table = Table(title="Clusters")
    table.add_column("Namespace", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Endpoint Mode")
    table.add_column("Endpoint")
    table.add_column("Conditions")
    table.add_column("Created", style="dim")

    for cluster in clusters:
        endpoint = cluster.spec.control_plane_endpoint
        allocated = get_condition(cluster.status.conditions, ConditionType.IP_ALLOCATED)
        host = endpoint.host or ("pending" if allocated else "-")
        table.add_row(
            cluster.namespace,
            cluster.name,
            cluster.spec.endpoint_mode.value,
            f"{host}:{endpoint.port}" if endpoint.host else host,
            format_conditions(cluster),
            _age(cluster),
        )
    return table
