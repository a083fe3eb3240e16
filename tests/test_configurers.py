"""Tests for the device and endpoint configurers and their shared helpers."""

import asyncio

import pytest

from conftest import make_cluster, make_machine, make_pool
from staticip.controllers.device import DeviceConfigurer
from staticip.controllers.endpoint import EndpointConfigurer
from staticip.controllers.util import (
    apply_to_device,
    delete_claim,
    ensure_claim,
    is_device_dhcp,
    is_machine_dhcp,
    resolve_pool,
    validate_fulfilled,
)
from staticip.ipam.exceptions import NotFound, ValidationError
from staticip.ipam.naming import (
    LABEL_CLUSTER_NAME,
    LABEL_OWNER_NAME,
    RELEASE_FINALIZER,
)
from staticip.models.enums import (
    ConditionReason,
    EndpointMode,
    OutcomeKind,
    ResourceKind,
)
from staticip.models.resources import (
    FulfilledAddress,
    NetworkDeviceSpec,
    ObjectMeta,
    Machine,
)


class TestDhcpClassification:
    def test_device_dhcp_flags(self):
        assert is_device_dhcp(NetworkDeviceSpec(dhcp4=True))
        assert is_device_dhcp(NetworkDeviceSpec(dhcp6=True))
        assert not is_device_dhcp(NetworkDeviceSpec())

    def test_machine_dhcp_requires_every_device(self):
        dhcp = NetworkDeviceSpec(dhcp4=True)
        static = NetworkDeviceSpec()

        assert is_machine_dhcp([dhcp, dhcp])
        assert not is_machine_dhcp([dhcp, static])
        assert not is_machine_dhcp([static])

    def test_machine_without_devices_counts_as_dhcp(self):
        assert is_machine_dhcp([])


class TestFulfilledAddress:
    def test_validate_rejects_empty_fields(self):
        with pytest.raises(ValidationError, match="address"):
            validate_fulfilled(
                FulfilledAddress(address="", gateway="10.0.0.1", prefix=24)
            )
        with pytest.raises(ValidationError, match="gateway"):
            validate_fulfilled(
                FulfilledAddress(address="10.0.0.10", gateway="", prefix=24)
            )

    def test_apply_to_device(self):
        device = NetworkDeviceSpec()
        address = FulfilledAddress(
            address="10.0.0.10",
            gateway="10.0.0.1",
            prefix=24,
            dns_servers=("8.8.8.8",),
            search_domains=("example.local",),
        )

        apply_to_device(device, address)

        assert device.ip_addrs == ["10.0.0.10/24"]
        assert device.gateway4 == "10.0.0.1"
        assert device.nameservers == ["8.8.8.8"]
        assert device.search_domains == ["example.local"]


class TestPoolSelection:
    def test_explicit_pool_name_wins(self, store):
        result = asyncio.run(resolve_pool(store, "default", "mine", "c1"))
        assert result == "mine"

    def test_pool_selected_by_cluster_label(self, store):
        async def scenario():
            await store.create(make_pool("other"))
            await store.create(make_pool("labelled", labels={LABEL_CLUSTER_NAME: "c1"}))
            return await resolve_pool(store, "default", "", "c1")

        assert asyncio.run(scenario()) == "labelled"

    def test_no_pool_raises(self, store):
        with pytest.raises(ValidationError) as exc:
            asyncio.run(resolve_pool(store, "default", "", "c1"))

        assert exc.value.reason == ConditionReason.NO_POOL


class TestClaimBookkeeping:
    def test_ensure_claim_is_idempotent(self, store):
        async def scenario():
            machine = await store.create(make_machine())
            first = await ensure_claim(store, machine, "m1-0", "pool")
            second = await ensure_claim(store, machine, "m1-0", "pool")
            claims = await store.list(ResourceKind.CLAIM)
            return first, second, claims

        first, second, claims = asyncio.run(scenario())

        assert first.metadata.uid == second.metadata.uid
        assert len(claims) == 1
        claim = claims[0]
        assert claim.metadata.labels[LABEL_OWNER_NAME] == "m1"
        assert claim.owner().name == "m1"
        assert claim.has_finalizer(RELEASE_FINALIZER)

    def test_ensure_claim_rejects_foreign_owner(self, store):
        async def scenario():
            machine = await store.create(make_machine("m1"))
            other = await store.create(make_machine("m2"))
            await ensure_claim(store, other, "m1-0", "pool")
            await ensure_claim(store, machine, "m1-0", "pool")

        with pytest.raises(ValidationError) as exc:
            asyncio.run(scenario())

        assert exc.value.reason == ConditionReason.OWNER_MISMATCH

    def test_delete_claim_releases_then_removes(self, store, engine):
        async def scenario():
            await store.create(make_pool())
            machine = await store.create(make_machine())
            claim = await ensure_claim(store, machine, "m1-0", "pool")
            await engine.fulfill(claim.key)

            released = await delete_claim(store, engine, claim)
            again = await delete_claim(store, engine, claim)

            pool = await store.get(ResourceKind.POOL, "default/pool")
            with pytest.raises(NotFound):
                await store.get(ResourceKind.CLAIM, claim.key)
            return released, again, pool

        released, again, pool = asyncio.run(scenario())

        assert released == ["10.0.0.10"]
        assert again == []
        assert pool.status.allocations == {}


class TestDeviceConfigurer:
    def test_first_pass_creates_claims_and_is_pending(self, store, engine):
        async def scenario():
            await store.create(make_pool())
            machine = await store.create(
                make_machine(devices=["static", "dhcp", "static"])
            )
            outcome = await DeviceConfigurer(store, engine).configure(machine)
            claims = await store.list(ResourceKind.CLAIM)
            return outcome, claims

        outcome, claims = asyncio.run(scenario())

        assert outcome.kind == OutcomeKind.PARTIALLY_PENDING
        assert outcome.pending == [0, 2]
        assert [c.name for c in claims] == ["m1-0", "m1-2"]

    def test_fulfilled_claims_are_written_to_devices(self, store, engine):
        async def scenario():
            await store.create(make_pool())
            machine = await store.create(make_machine(devices=["static", "static"]))
            configurer = DeviceConfigurer(store, engine)
            await configurer.configure(machine)
            await engine.fulfill("default/m1-0")

            machine = await store.get(ResourceKind.MACHINE, machine.key)
            partial = await configurer.configure(machine)

            await engine.fulfill("default/m1-1")
            complete = await configurer.configure(partial.owner)

            stored = await store.get(ResourceKind.MACHINE, machine.key)
            return partial, complete, stored

        partial, complete, stored = asyncio.run(scenario())

        assert partial.kind == OutcomeKind.PARTIALLY_PENDING
        assert partial.written == [0]
        assert partial.pending == [1]
        assert complete.kind == OutcomeKind.ALL_CONFIGURED
        assert complete.written == [1]
        devices = stored.spec.devices
        assert devices[0].ip_addrs == ["10.0.0.10/24"]
        assert devices[1].ip_addrs == ["10.0.0.11/24"]

    def test_configured_machine_is_not_written_again(self, store, engine):
        async def scenario():
            await store.create(make_pool())
            machine = await store.create(make_machine())
            configurer = DeviceConfigurer(store, engine)
            await configurer.configure(machine)
            await engine.fulfill("default/m1-0")
            machine = await store.get(ResourceKind.MACHINE, machine.key)
            done = await configurer.configure(machine)

            again = await configurer.configure(done.owner)
            stored = await store.get(ResourceKind.MACHINE, machine.key)
            return done, again, stored

        done, again, stored = asyncio.run(scenario())

        assert again.kind == OutcomeKind.ALL_CONFIGURED
        assert again.written == []
        assert stored.version == done.owner.version

    def test_preconfigured_device_gets_no_claim(self, store, engine):
        async def scenario():
            await store.create(make_pool())
            preset = NetworkDeviceSpec(ip_addrs=["192.168.1.5/24"])
            machine = await store.create(make_machine(devices=[preset]))
            outcome = await DeviceConfigurer(store, engine).configure(machine)
            claims = await store.list(ResourceKind.CLAIM)
            return outcome, claims

        outcome, claims = asyncio.run(scenario())

        assert outcome.kind == OutcomeKind.ALL_CONFIGURED
        assert claims == []

    def test_pool_without_gateway_fails_validation(self, store, engine):
        async def scenario():
            await store.create(make_pool(gateway=""))
            machine = await store.create(make_machine())
            configurer = DeviceConfigurer(store, engine)
            await configurer.configure(machine)
            await engine.fulfill("default/m1-0")
            machine = await store.get(ResourceKind.MACHINE, machine.key)
            return await configurer.configure(machine)

        outcome = asyncio.run(scenario())

        assert outcome.kind == OutcomeKind.FAILED
        assert "gateway" in outcome.reason
        assert outcome.owner.spec.devices[0].ip_addrs == []

    def test_needs_allocation(self, store, engine):
        configurer = DeviceConfigurer(store, engine)

        assert configurer.needs_allocation(make_machine(devices=["static"]))
        assert not configurer.needs_allocation(make_machine(devices=["dhcp"]))
        assert not configurer.needs_allocation(
            Machine(metadata=ObjectMeta(name="empty"))
        )

    def test_release_claims(self, store, engine):
        async def scenario():
            await store.create(make_pool())
            machine = await store.create(make_machine(devices=["static", "static"]))
            configurer = DeviceConfigurer(store, engine)
            await configurer.configure(machine)
            await engine.fulfill("default/m1-0")
            await engine.fulfill("default/m1-1")
            released = await configurer.release_claims(machine)
            claims = await store.list(ResourceKind.CLAIM)
            return released, claims

        released, claims = asyncio.run(scenario())

        assert sorted(released) == ["10.0.0.10", "10.0.0.11"]
        assert claims == []


class TestEndpointConfigurer:
    def test_endpoint_host_written_once_fulfilled(self, store, engine):
        async def scenario():
            await store.create(make_pool())
            cluster = await store.create(make_cluster())
            configurer = EndpointConfigurer(store, engine)
            pending = await configurer.configure(cluster)
            await engine.fulfill("default/c1")
            cluster = await store.get(ResourceKind.CLUSTER, cluster.key)
            done = await configurer.configure(cluster)
            return pending, done

        pending, done = asyncio.run(scenario())

        assert pending.kind == OutcomeKind.PARTIALLY_PENDING
        assert done.kind == OutcomeKind.ALL_CONFIGURED
        assert done.owner.spec.control_plane_endpoint.host == "10.0.0.10"
        assert done.owner.spec.control_plane_endpoint.port == 6443

    def test_endpoint_pool_from_cluster_label(self, store, engine):
        async def scenario():
            await store.create(make_pool("vip", labels={LABEL_CLUSTER_NAME: "c1"}))
            cluster = await store.create(make_cluster(pool_name=""))
            await EndpointConfigurer(store, engine).configure(cluster)
            return await store.get(ResourceKind.CLAIM, "default/c1")

        claim = asyncio.run(scenario())

        assert claim.spec.pool_name == "vip"

    def test_needs_allocation(self, store, engine):
        configurer = EndpointConfigurer(store, engine)
        preset = make_cluster()
        preset.spec.control_plane_endpoint.host = "10.1.1.1"

        assert configurer.needs_allocation(make_cluster())
        assert not configurer.needs_allocation(make_cluster(mode=EndpointMode.DYNAMIC))
        assert not configurer.needs_allocation(preset)
