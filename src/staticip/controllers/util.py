"""
Shared helpers for the device and endpoint configurers.

DHCP classification, fulfilled-address validation, device write-back,
pool selection and claim bookkeeping.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass, field

from staticip.ipam.engine import ClaimFulfillmentEngine
from staticip.ipam.exceptions import AlreadyExists, NotFound, ValidationError
from staticip.ipam.naming import LABEL_CLUSTER_NAME, RELEASE_FINALIZER, owner_labels
from staticip.models.enums import (
    ConditionReason,
    ConditionType,
    OutcomeKind,
    ResourceKind,
)
from staticip.models.resources import (
    Condition,
    FulfilledAddress,
    IPClaim,
    IPClaimSpec,
    NetworkDeviceSpec,
    ObjectMeta,
    Resource,
    get_condition,
)
from staticip.store.base import ResourceStore, Selector, retry_on_conflict
from staticip.utils.logger import get_logger

logger = get_logger(__name__)


# =============================================================================
# DHCP Classification
# =============================================================================


def is_device_dhcp(device: NetworkDeviceSpec) -> bool:
    """A device is DHCP-mode if either DHCP flag is set."""
    return device.dhcp4 or device.dhcp6


def is_machine_dhcp(devices: list[NetworkDeviceSpec]) -> bool:
    """
    An owner is DHCP only if every device is DHCP-mode.

    A single static device makes the owner mixed-mode. An owner without
    devices counts as DHCP (nothing to allocate).
    """
    return functools.reduce(
        lambda all_dhcp, device: all_dhcp and is_device_dhcp(device), devices, True
    )


# =============================================================================
# Fulfilled Address Handling
# =============================================================================


def validate_fulfilled(address: FulfilledAddress) -> None:
    """
    Raises:
        ValidationError: The address or the gateway is empty.
    """
    if not address.address:
        raise ValidationError("invalid 'address' in fulfilled claim")
    if not address.gateway:
        raise ValidationError("invalid 'gateway' in fulfilled claim")


def device_configured(device: NetworkDeviceSpec) -> bool:
    """True once a static configuration has been written to the device."""
    return bool(device.ip_addrs)


def apply_to_device(device: NetworkDeviceSpec, address: FulfilledAddress) -> None:
    """Copy a fulfilled address onto a device's static configuration."""
    device.ip_addrs = [address.cidr]
    device.gateway4 = address.gateway
    device.nameservers = list(address.dns_servers)
    device.search_domains = list(address.search_domains)


# =============================================================================
# Pool Selection
# =============================================================================


async def resolve_pool(
    store: ResourceStore, namespace: str, pool_name: str, cluster_name: str
) -> str:
    """
    Pick the pool an owner allocates from.

    Order: explicit pool name, then the pool labelled with the owner's
    cluster name.

    Raises:
        ValidationError: No pool can be selected.
    """
    if pool_name:
        return pool_name

    if cluster_name:
        selector = Selector(
            namespace=namespace, labels={LABEL_CLUSTER_NAME: cluster_name}
        )
        pools = await store.list(ResourceKind.POOL, selector)
        if len(pools) > 1:
            logger.warning(
                f"{len(pools)} pools labelled for cluster {cluster_name}, "
                f"using {pools[0].name}"
            )
        if pools:
            return pools[0].name

    raise ValidationError(
        f"no pool configured and none labelled "
        f"{LABEL_CLUSTER_NAME}={cluster_name!r} in namespace {namespace}",
        ConditionReason.NO_POOL,
    )


# =============================================================================
# Claim Bookkeeping
# =============================================================================


async def ensure_claim(
    store: ResourceStore, owner: Resource, claim_name: str, pool_name: str
) -> IPClaim:
    """
    Get or create the claim with a derived name.

    Idempotent on the name; a lost create race returns the winner's claim.

    Raises:
        ValidationError: A claim with this name belongs to another owner.
    """
    key = f"{owner.namespace}/{claim_name}"
    try:
        claim = await store.get(ResourceKind.CLAIM, key)
    except NotFound:
        claim = IPClaim(
            metadata=ObjectMeta(
                name=claim_name,
                namespace=owner.namespace,
                labels=owner_labels(owner.KIND.value, owner.name),
                owner_references=[owner.owner_reference()],
                finalizers=[RELEASE_FINALIZER],
            ),
            spec=IPClaimSpec(pool_name=pool_name),
        )
        try:
            claim = await store.create(claim)
            logger.info(f"Created claim {key} against pool {pool_name}")
        except AlreadyExists:
            claim = await store.get(ResourceKind.CLAIM, key)

    ref = claim.owner()
    if ref is None or ref.kind != owner.KIND or ref.name != owner.name:
        raise ValidationError(
            f"claim {key} already exists for another owner "
            f"({ref.kind.value + '/' + ref.name if ref else 'none'})",
            ConditionReason.OWNER_MISMATCH,
        )
    return claim


async def delete_claim(
    store: ResourceStore, engine: ClaimFulfillmentEngine, claim: IPClaim
) -> list[str]:
    """
    Release a claim's address, then delete the claim.

    The claim is marked for deletion first so a concurrent fulfillment backs
    off, and the address goes back to the pool before the claim record
    disappears. Safe to call repeatedly.
    """
    try:
        await store.delete(ResourceKind.CLAIM, claim.key)
    except NotFound:
        pass

    released = await engine.release_claim(claim)

    async def drop_finalizer() -> None:
        current = await store.get(ResourceKind.CLAIM, claim.key)
        if current.remove_finalizer(RELEASE_FINALIZER):
            await store.update(current)

    try:
        await retry_on_conflict(drop_finalizer, engine.config.CONFLICT_RETRIES)
    except NotFound:
        pass
    return released


async def list_owned_claims(store: ResourceStore, owner: Resource) -> list[IPClaim]:
    """Claims created for an owner, found by owner labels."""
    selector = Selector(
        namespace=owner.namespace, labels=owner_labels(owner.KIND.value, owner.name)
    )
    return await store.list(ResourceKind.CLAIM, selector)


def claim_failure(claim: IPClaim) -> Condition | None:
    """The claim's ValidationFailed condition, if it is set."""
    failed = get_condition(claim.status.conditions, ConditionType.VALIDATION_FAILED)
    if failed is None or not failed.status:
        return None
    return failed


# =============================================================================
# Configurer Outcome
# =============================================================================


@dataclass
class ConfigureOutcome:
    """
    Result of one configurer pass.

    Attributes:
        kind: Aggregate outcome.
        owner: The owner as last read or written by the pass.
        pending: Device indices whose claims are not fulfilled yet.
        written: Device indices configured during this pass.
        reason: Failure description (FAILED only).
        condition_reason: ConditionReason recorded on the owner (FAILED only).
        exhausted: A pending claim is starved by its pool.
    """

    kind: OutcomeKind
    owner: Resource
    pending: list[int] = field(default_factory=list)
    written: list[int] = field(default_factory=list)
    reason: str = ""
    condition_reason: str = ConditionReason.INVALID_ADDRESS
    exhausted: bool = False

    @property
    def is_done(self) -> bool:
        return self.kind == OutcomeKind.ALL_CONFIGURED
