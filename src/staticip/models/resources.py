"""
Pydantic models for the objects held by the resource store.

Every stored object is a Resource: an ObjectMeta header (identity, version,
labels, finalizers, owner references) plus a kind-specific spec and status.

Model Categories:
    - Metadata: ObjectMeta, OwnerReference, Condition
    - Owners: Machine (ordered network devices), Cluster (control-plane endpoint)
    - IPAM: IPPool (address range + allocations), IPClaim, FulfilledAddress
    - Coordination: Lease (leader election)
"""

import datetime
import uuid
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field

from staticip.models.enums import (
    ClaimPhase,
    ConditionType,
    EndpointMode,
    ResourceKind,
)

DEFAULT_NAMESPACE = "default"


def object_key(namespace: str, name: str) -> str:
    """Build the "namespace/name" key used by the store and work queues."""
    return f"{namespace}/{name}"


def split_key(key: str) -> tuple[str, str]:
    """Split a "namespace/name" key; a bare name lands in the default namespace."""
    namespace, sep, name = key.partition("/")
    if not sep:
        return DEFAULT_NAMESPACE, namespace
    return namespace, name


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# =============================================================================
# Metadata
# =============================================================================


class OwnerReference(BaseModel):
    """Back-reference from a dependent object (claim) to its owner."""

    kind: ResourceKind
    name: str
    uid: str = ""


class ObjectMeta(BaseModel):
    """
    Common object header.

    resource_version is bumped by the store on every write and is the token
    for optimistic concurrency (update fails with Conflict on mismatch).
    """

    name: str
    namespace: str = DEFAULT_NAMESPACE
    uid: str = Field(default_factory=lambda: uuid.uuid4().hex)
    resource_version: int = 0
    labels: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    owner_references: list[OwnerReference] = Field(default_factory=list)
    creation_timestamp: datetime.datetime | None = None
    deletion_timestamp: datetime.datetime | None = None


class Condition(BaseModel):
    """Status condition, one per type."""

    type: ConditionType
    status: bool
    reason: str = ""
    message: str = ""
    last_transition_time: datetime.datetime = Field(default_factory=_now)


def set_condition(
    conditions: list[Condition],
    cond_type: ConditionType,
    status: bool,
    reason: str = "",
    message: str = "",
) -> bool:
    """
    Insert or update a condition in place.

    Returns:
        True if anything changed. An identical condition is left untouched,
        so converged owners produce no store writes.
    """
    reason = getattr(reason, "value", reason)
    for cond in conditions:
        if cond.type != cond_type:
            continue
        if cond.status == status and cond.reason == reason and cond.message == message:
            return False
        if cond.status != status:
            cond.last_transition_time = _now()
        cond.status = status
        cond.reason = reason
        cond.message = message
        return True

    conditions.append(
        Condition(type=cond_type, status=status, reason=reason, message=message)
    )
    return True


def remove_condition(conditions: list[Condition], cond_type: ConditionType) -> bool:
    """Drop a condition type. Returns True if one was removed."""
    before = len(conditions)
    conditions[:] = [c for c in conditions if c.type != cond_type]
    return len(conditions) != before


def get_condition(
    conditions: list[Condition], cond_type: ConditionType
) -> Condition | None:
    return next((c for c in conditions if c.type == cond_type), None)


# =============================================================================
# Base Resource
# =============================================================================


class Resource(BaseModel):
    """Base class for all stored objects."""

    KIND: ClassVar[ResourceKind]

    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        return object_key(self.metadata.namespace, self.metadata.name)

    @property
    def version(self) -> int:
        return self.metadata.resource_version

    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.metadata.finalizers

    def add_finalizer(self, finalizer: str) -> bool:
        if finalizer in self.metadata.finalizers:
            return False
        self.metadata.finalizers.append(finalizer)
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        if finalizer not in self.metadata.finalizers:
            return False
        self.metadata.finalizers.remove(finalizer)
        return True

    def owner_reference(self) -> OwnerReference:
        return OwnerReference(kind=self.KIND, name=self.name, uid=self.metadata.uid)

    def to_dict(self) -> dict:
        """Serialize including the kind discriminator."""
        data = self.model_dump(mode="json")
        data["kind"] = self.KIND.value
        return data


# =============================================================================
# Machine
# =============================================================================


class NetworkDeviceSpec(BaseModel):
    """
    A machine network device.

    A device is DHCP-mode when dhcp4 or dhcp6 is set; otherwise it is static
    and gets ip_addrs/gateway4/nameservers/search_domains written once its
    claim is fulfilled.
    """

    network_name: str = ""
    dhcp4: bool = False
    dhcp6: bool = False
    ip_addrs: list[str] = Field(default_factory=list)
    gateway4: str = ""
    nameservers: list[str] = Field(default_factory=list)
    search_domains: list[str] = Field(default_factory=list)


class MachineSpec(BaseModel):
    cluster_name: str = ""
    pool_name: str = ""
    devices: list[NetworkDeviceSpec] = Field(default_factory=list)


class OwnerStatus(BaseModel):
    conditions: list[Condition] = Field(default_factory=list)


class Machine(Resource):
    """A compute node owning an ordered list of network devices."""

    KIND: ClassVar[ResourceKind] = ResourceKind.MACHINE

    spec: MachineSpec = Field(default_factory=MachineSpec)
    status: OwnerStatus = Field(default_factory=OwnerStatus)


# =============================================================================
# Cluster
# =============================================================================


class APIEndpoint(BaseModel):
    host: str = ""
    port: int = 6443


class ClusterSpec(BaseModel):
    pool_name: str = ""
    endpoint_mode: EndpointMode = EndpointMode.STATIC
    control_plane_endpoint: APIEndpoint = Field(default_factory=APIEndpoint)


class Cluster(Resource):
    """A cluster owning a single control-plane endpoint slot."""

    KIND: ClassVar[ResourceKind] = ResourceKind.CLUSTER

    spec: ClusterSpec = Field(default_factory=ClusterSpec)
    status: OwnerStatus = Field(default_factory=OwnerStatus)


# =============================================================================
# IP Pool
# =============================================================================


class IPPoolSpec(BaseModel):
    """
    Allocatable addresses plus pool-wide network metadata.

    Allocatable set = [start, end] range (if both set) + explicit addresses.
    """

    start: str = ""
    end: str = ""
    addresses: list[str] = Field(default_factory=list)
    prefix: int = Field(default=24, ge=0, le=128)
    gateway: str = ""
    dns_servers: list[str] = Field(default_factory=list)
    search_domains: list[str] = Field(default_factory=list)


class IPPoolStatus(BaseModel):
    # address -> claim name
    allocations: dict[str, str] = Field(default_factory=dict)


class IPPool(Resource):
    KIND: ClassVar[ResourceKind] = ResourceKind.POOL

    spec: IPPoolSpec = Field(default_factory=IPPoolSpec)
    status: IPPoolStatus = Field(default_factory=IPPoolStatus)


# =============================================================================
# IP Claim
# =============================================================================


class FulfilledAddress(BaseModel):
    """
    Read-only snapshot of an allocated address.

    Copied from the pool at fulfillment time; later pool edits do not
    change it.
    """

    model_config = ConfigDict(frozen=True)

    address: str
    gateway: str
    prefix: int
    dns_servers: tuple[str, ...] = ()
    search_domains: tuple[str, ...] = ()

    @property
    def cidr(self) -> str:
        return f"{self.address}/{self.prefix}"


class IPClaimSpec(BaseModel):
    pool_name: str


class IPClaimStatus(BaseModel):
    phase: ClaimPhase = ClaimPhase.UNFULFILLED
    address: FulfilledAddress | None = None
    conditions: list[Condition] = Field(default_factory=list)


class IPClaim(Resource):
    """A request for exactly one address from a pool."""

    KIND: ClassVar[ResourceKind] = ResourceKind.CLAIM

    spec: IPClaimSpec
    status: IPClaimStatus = Field(default_factory=IPClaimStatus)

    def is_fulfilled(self) -> bool:
        return (
            self.status.phase == ClaimPhase.FULFILLED
            and self.status.address is not None
        )

    def owner(self) -> OwnerReference | None:
        refs = self.metadata.owner_references
        return refs[0] if refs else None


# =============================================================================
# Lease
# =============================================================================


class LeaseSpec(BaseModel):
    holder: str = ""
    renew_time: datetime.datetime | None = None
    lease_duration_seconds: float = 15.0


class Lease(Resource):
    KIND: ClassVar[ResourceKind] = ResourceKind.LEASE

    spec: LeaseSpec = Field(default_factory=LeaseSpec)


# =============================================================================
# Kind Registry
# =============================================================================

RESOURCE_TYPES: dict[ResourceKind, type[Resource]] = {
    ResourceKind.MACHINE: Machine,
    ResourceKind.CLUSTER: Cluster,
    ResourceKind.POOL: IPPool,
    ResourceKind.CLAIM: IPClaim,
    ResourceKind.LEASE: Lease,
}


def parse_resource(data: dict) -> Resource:
    """
    Build a Resource from a dict carrying a "kind" discriminator.

    Raises:
        ValueError: Unknown or missing kind.
        pydantic.ValidationError: Malformed body.
    """
    data = dict(data)
    kind = data.pop("kind", None)
    try:
        cls = RESOURCE_TYPES[ResourceKind(kind)]
    except ValueError:
        raise ValueError(f"unknown resource kind: {kind!r}") from None
    return cls.model_validate(data)
