"""Shared fixtures: an in-memory store, fast config and resource builders."""

import pytest

from staticip.config import ControllerConfig
from staticip.controllers.driver import (
    ClaimReconciler,
    ClusterReconciler,
    MachineReconciler,
)
from staticip.ipam.engine import ClaimFulfillmentEngine
from staticip.models.enums import EndpointMode, ResourceKind, StoreBackend
from staticip.models.resources import (
    Cluster,
    ClusterSpec,
    IPPool,
    IPPoolSpec,
    Machine,
    MachineSpec,
    NetworkDeviceSpec,
    ObjectMeta,
)
from staticip.store.memory import MemoryStore


@pytest.fixture
def cfg():
    """Config with short deadlines and backoff so nothing in a test sleeps long."""
    return ControllerConfig(
        STORE_BACKEND=StoreBackend.MEMORY,
        CALL_TIMEOUT_SECONDS=2.0,
        CONFLICT_RETRIES=5,
        BACKOFF_BASE_SECONDS=0.01,
        BACKOFF_MAX_SECONDS=0.05,
        TRANSIENT_FAILURE_THRESHOLD=3,
        SYNC_PERIOD_SECONDS=60.0,
        LEASE_DURATION_SECONDS=0.5,
        LEASE_RENEW_SECONDS=0.05,
    )


@pytest.fixture
def store():
    return MemoryStore(call_timeout=2.0)


@pytest.fixture
def engine(store, cfg):
    return ClaimFulfillmentEngine(store, cfg)


# =============================================================================
# Builders
# =============================================================================


def make_pool(
    name="pool",
    start="10.0.0.10",
    end="10.0.0.12",
    addresses=None,
    gateway="10.0.0.1",
    prefix=24,
    labels=None,
    namespace="default",
):
    return IPPool(
        metadata=ObjectMeta(name=name, namespace=namespace, labels=labels or {}),
        spec=IPPoolSpec(
            start=start,
            end=end,
            addresses=addresses or [],
            gateway=gateway,
            prefix=prefix,
            dns_servers=["8.8.8.8"],
            search_domains=["example.local"],
        ),
    )


def make_machine(name="m1", devices=None, pool_name="pool", cluster_name=""):
    """Machine with the given devices ("static" / "dhcp" shorthands accepted)."""
    specs = []
    for device in devices if devices is not None else ["static"]:
        if device == "static":
            device = NetworkDeviceSpec(network_name="net")
        elif device == "dhcp":
            device = NetworkDeviceSpec(network_name="net", dhcp4=True)
        specs.append(device)
    return Machine(
        metadata=ObjectMeta(name=name),
        spec=MachineSpec(
            pool_name=pool_name, cluster_name=cluster_name, devices=specs
        ),
    )


def make_cluster(name="c1", pool_name="pool", mode=EndpointMode.STATIC):
    return Cluster(
        metadata=ObjectMeta(name=name),
        spec=ClusterSpec(pool_name=pool_name, endpoint_mode=mode),
    )


# =============================================================================
# Reconcile Helpers
# =============================================================================


@pytest.fixture
def reconcilers(store, engine, cfg):
    class Reconcilers:
        machine = MachineReconciler(store, engine, cfg)
        cluster = ClusterReconciler(store, engine, cfg)
        claim = ClaimReconciler(store, engine, cfg)

    return Reconcilers


@pytest.fixture
def settle(store, reconcilers):
    """
    Run owner and claim reconcilers for a few rounds.

    Stands in for the drivers: owners create claims, claims get fulfilled,
    owners pick the addresses up. Returns the last owner results by key.
    """

    async def run(rounds: int = 5) -> dict:
        results = {}
        for _ in range(rounds):
            for kind, reconciler in (
                (ResourceKind.MACHINE, reconcilers.machine),
                (ResourceKind.CLUSTER, reconcilers.cluster),
            ):
                for obj in await store.list(kind):
                    results[obj.key] = await reconciler.reconcile(obj.key)
            for claim in await store.list(ResourceKind.CLAIM):
                await reconcilers.claim.reconcile(claim.key)
        return results

    return run
