"""Tests for the owner/claim reconcilers and the reconcile driver."""

import asyncio

import pytest

from conftest import make_cluster, make_machine, make_pool
from staticip.controllers.driver import (
    ClaimReconciler,
    MachineReconciler,
    ReconcileDriver,
    ReconcileResult,
)
from staticip.ipam.exceptions import TransientError
from staticip.ipam.naming import CLAIM_FINALIZER
from staticip.models.enums import (
    ConditionType,
    EndpointMode,
    ReconcileState,
    ResourceKind,
)
from staticip.models.resources import get_condition


def condition(obj, cond_type):
    return get_condition(obj.status.conditions, cond_type)


class TestMachineReconciler:
    def test_dhcp_machine_is_skipped_without_writes(self, store, reconcilers):
        async def scenario():
            created = await store.create(make_machine(devices=["dhcp", "dhcp"]))
            result = await reconcilers.machine.reconcile(created.key)
            stored = await store.get(ResourceKind.MACHINE, created.key)
            claims = await store.list(ResourceKind.CLAIM)
            return created, result, stored, claims

        created, result, stored, claims = asyncio.run(scenario())

        assert result.state == ReconcileState.SKIP
        assert stored.version == created.version
        assert not stored.has_finalizer(CLAIM_FINALIZER)
        assert claims == []

    def test_pending_then_done(self, store, reconcilers):
        async def scenario():
            await store.create(make_pool())
            machine = await store.create(make_machine(devices=["static", "dhcp"]))
            pending = await reconcilers.machine.reconcile(machine.key)
            waiting = await store.get(ResourceKind.MACHINE, machine.key)

            await reconcilers.claim.reconcile("default/m1-0")
            done = await reconcilers.machine.reconcile(machine.key)
            stored = await store.get(ResourceKind.MACHINE, machine.key)
            return pending, waiting, done, stored

        pending, waiting, done, stored = asyncio.run(scenario())

        assert pending.state == ReconcileState.PENDING
        assert pending.requeue
        assert "device(s) 0" in pending.message
        assert waiting.has_finalizer(CLAIM_FINALIZER)
        assert condition(waiting, ConditionType.IP_ALLOCATED).status is False

        assert done.state == ReconcileState.DONE
        assert not done.requeue
        assert condition(stored, ConditionType.IP_ALLOCATED).status is True
        assert stored.spec.devices[0].ip_addrs == ["10.0.0.10/24"]
        assert stored.spec.devices[1].ip_addrs == []

    def test_converged_machine_produces_no_writes(self, store, settle, reconcilers):
        async def scenario():
            await store.create(make_pool())
            await store.create(make_machine(devices=["static", "static"]))
            await settle()
            before = await store.get(ResourceKind.MACHINE, "default/m1")
            claims_before = await store.list(ResourceKind.CLAIM)

            result = await reconcilers.machine.reconcile("default/m1")
            for claim in claims_before:
                await reconcilers.claim.reconcile(claim.key)

            after = await store.get(ResourceKind.MACHINE, "default/m1")
            claims_after = await store.list(ResourceKind.CLAIM)
            return result, before, after, claims_before, claims_after

        result, before, after, claims_before, claims_after = asyncio.run(scenario())

        assert result.state == ReconcileState.DONE
        assert after.version == before.version
        assert [c.version for c in claims_after] == [c.version for c in claims_before]

    def test_exhausted_pool_sets_condition(self, store, settle):
        async def scenario():
            await store.create(make_pool(start="10.0.0.10", end="10.0.0.10"))
            await store.create(make_machine(devices=["static", "static"]))
            results = await settle()
            machine = await store.get(ResourceKind.MACHINE, "default/m1")
            return results["default/m1"], machine

        result, machine = asyncio.run(scenario())

        assert result.state == ReconcileState.PENDING
        assert condition(machine, ConditionType.POOL_EXHAUSTED).status is True
        assert machine.spec.devices[0].ip_addrs == ["10.0.0.10/24"]
        assert machine.spec.devices[1].ip_addrs == []

    def test_missing_pool_is_validation_error(self, store, reconcilers):
        async def scenario():
            await store.create(make_machine(pool_name=""))
            result = await reconcilers.machine.reconcile("default/m1")
            machine = await store.get(ResourceKind.MACHINE, "default/m1")
            return result, machine

        result, machine = asyncio.run(scenario())

        assert result.state == ReconcileState.ERROR
        assert not result.requeue
        failed = condition(machine, ConditionType.VALIDATION_FAILED)
        assert failed.status is True
        assert failed.reason == "NoPoolSelected"

    def test_invalid_fulfilled_address_is_error(self, store, settle):
        async def scenario():
            await store.create(make_pool(gateway=""))
            await store.create(make_machine())
            results = await settle()
            machine = await store.get(ResourceKind.MACHINE, "default/m1")
            return results["default/m1"], machine

        result, machine = asyncio.run(scenario())

        assert result.state == ReconcileState.ERROR
        failed = condition(machine, ConditionType.VALIDATION_FAILED)
        assert failed.reason == "InvalidAddress"
        assert "gateway" in failed.message

    def test_malformed_pool_fails_owner_until_fixed(self, store, reconcilers):
        async def scenario():
            await store.create(make_pool(start="10.0.0.20", end="10.0.0.10"))
            await store.create(make_machine())
            await reconcilers.machine.reconcile("default/m1")
            await reconcilers.claim.reconcile("default/m1-0")
            failed = await reconcilers.machine.reconcile("default/m1")
            broken = await store.get(ResourceKind.MACHINE, "default/m1")

            pool = await store.get(ResourceKind.POOL, "default/pool")
            pool.spec.start, pool.spec.end = "10.0.0.10", "10.0.0.20"
            await store.update(pool)
            await reconcilers.claim.reconcile("default/m1-0")
            done = await reconcilers.machine.reconcile("default/m1")
            fixed = await store.get(ResourceKind.MACHINE, "default/m1")
            claim = await store.get(ResourceKind.CLAIM, "default/m1-0")
            return failed, broken, done, fixed, claim

        failed, broken, done, fixed, claim = asyncio.run(scenario())

        assert failed.state == ReconcileState.ERROR
        assert not failed.requeue
        reason = condition(broken, ConditionType.VALIDATION_FAILED)
        assert reason.status is True
        assert reason.reason == "InvalidPool"
        assert "device 0 (claim m1-0)" in reason.message

        assert done.state == ReconcileState.DONE
        assert condition(fixed, ConditionType.VALIDATION_FAILED) is None
        assert fixed.spec.devices[0].ip_addrs == ["10.0.0.10/24"]
        assert condition(claim, ConditionType.VALIDATION_FAILED) is None

    def test_deleted_owner_releases_claims(self, store, settle, reconcilers):
        async def scenario():
            await store.create(make_pool())
            await store.create(make_machine(devices=["static", "static"]))
            await settle()

            await store.delete(ResourceKind.MACHINE, "default/m1")
            result = await reconcilers.machine.reconcile("default/m1")

            machines = await store.list(ResourceKind.MACHINE)
            claims = await store.list(ResourceKind.CLAIM)
            pool = await store.get(ResourceKind.POOL, "default/pool")
            return result, machines, claims, pool

        result, machines, claims, pool = asyncio.run(scenario())

        assert result.state == ReconcileState.DONE
        assert machines == []
        assert claims == []
        assert pool.status.allocations == {}

    def test_missing_owner_is_done(self, reconcilers):
        result = asyncio.run(reconcilers.machine.reconcile("default/ghost"))

        assert result.state == ReconcileState.DONE
        assert not result.requeue

    def test_transient_failures_mark_retries_exhausted(
        self, store, reconcilers, cfg, monkeypatch
    ):
        async def scenario():
            await store.create(make_machine())
            configurer = reconcilers.machine.configurer

            async def unavailable(machine):
                raise TransientError("store timed out")

            monkeypatch.setattr(configurer, "configure", unavailable)
            results = [
                await reconcilers.machine.reconcile("default/m1")
                for _ in range(cfg.TRANSIENT_FAILURE_THRESHOLD)
            ]
            machine = await store.get(ResourceKind.MACHINE, "default/m1")
            return results, machine

        results, machine = asyncio.run(scenario())

        assert all(r.state == ReconcileState.PENDING for r in results)
        assert all(r.requeue for r in results)
        exhausted = condition(machine, ConditionType.RETRIES_EXHAUSTED)
        assert exhausted.status is True
        assert exhausted.reason == "StoreUnavailable"


class TestClusterReconciler:
    def test_static_endpoint_converges(self, store, settle):
        async def scenario():
            await store.create(make_pool())
            await store.create(make_cluster())
            results = await settle()
            cluster = await store.get(ResourceKind.CLUSTER, "default/c1")
            return results["default/c1"], cluster

        result, cluster = asyncio.run(scenario())

        # Once the host is set the cluster no longer needs an allocation
        assert result.state == ReconcileState.SKIP
        assert cluster.spec.control_plane_endpoint.host == "10.0.0.10"
        assert condition(cluster, ConditionType.IP_ALLOCATED).status is True

    def test_dynamic_endpoint_is_skipped(self, store, reconcilers):
        async def scenario():
            await store.create(make_cluster(mode=EndpointMode.DYNAMIC))
            result = await reconcilers.cluster.reconcile("default/c1")
            claims = await store.list(ResourceKind.CLAIM)
            return result, claims

        result, claims = asyncio.run(scenario())

        assert result.state == ReconcileState.SKIP
        assert claims == []

    def test_malformed_pool_fails_endpoint(self, store, reconcilers):
        async def scenario():
            await store.create(make_pool(addresses=["10.0.0.9-10.0.0.3"]))
            await store.create(make_cluster())
            await reconcilers.cluster.reconcile("default/c1")
            await reconcilers.claim.reconcile("default/c1")
            result = await reconcilers.cluster.reconcile("default/c1")
            cluster = await store.get(ResourceKind.CLUSTER, "default/c1")
            return result, cluster

        result, cluster = asyncio.run(scenario())

        assert result.state == ReconcileState.ERROR
        failed = condition(cluster, ConditionType.VALIDATION_FAILED)
        assert failed.reason == "InvalidPool"
        assert cluster.spec.control_plane_endpoint.host == ""


class TestClaimReconciler:
    def test_missing_pool_requeues_with_condition(self, store, reconcilers):
        async def scenario():
            await store.create(make_machine(pool_name="absent"))
            await reconcilers.machine.reconcile("default/m1")
            result = await reconcilers.claim.reconcile("default/m1-0")
            claim = await store.get(ResourceKind.CLAIM, "default/m1-0")
            return result, claim

        result, claim = asyncio.run(scenario())

        assert result.requeue
        allocated = condition(claim, ConditionType.IP_ALLOCATED)
        assert allocated.status is False
        assert allocated.reason == "PoolNotFound"

    def test_directly_deleted_claim_returns_address(self, store, settle, reconcilers):
        async def scenario():
            await store.create(make_pool())
            await store.create(make_machine())
            await settle()

            await store.delete(ResourceKind.CLAIM, "default/m1-0")
            result = await reconcilers.claim.reconcile("default/m1-0")
            claims = await store.list(ResourceKind.CLAIM)
            pool = await store.get(ResourceKind.POOL, "default/pool")
            return result, claims, pool

        result, claims, pool = asyncio.run(scenario())

        assert result.state == ReconcileState.DONE
        assert claims == []
        assert pool.status.allocations == {}

    def test_missing_claim_is_done(self, reconcilers):
        result = asyncio.run(reconcilers.claim.reconcile("default/ghost"))

        assert result.state == ReconcileState.DONE


class TestReconcileDriver:
    class StubReconciler:
        def __init__(self, results):
            self.results = list(results)
            self.calls = []

        async def reconcile(self, key):
            self.calls.append(key)
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result

    def test_requeue_result_backs_off(self, cfg):
        stub = self.StubReconciler(
            [ReconcileResult(ReconcileState.PENDING, requeue=True)]
        )

        async def scenario():
            driver = ReconcileDriver("test", stub, cfg)
            await driver.process("default/a")
            return driver

        driver = asyncio.run(scenario())

        assert driver.queue.num_requeues("default/a") == 1
        assert driver.get_stats()["requeues"] == 1

    def test_done_result_forgets_backoff(self, cfg):
        stub = self.StubReconciler(
            [
                ReconcileResult(ReconcileState.PENDING, requeue=True),
                ReconcileResult(ReconcileState.DONE),
            ]
        )

        async def scenario():
            driver = ReconcileDriver("test", stub, cfg)
            await driver.process("default/a")
            await driver.process("default/a")
            return driver

        driver = asyncio.run(scenario())

        assert driver.queue.num_requeues("default/a") == 0

    def test_unexpected_exception_is_contained(self, cfg):
        stub = self.StubReconciler([RuntimeError("boom")])

        async def scenario():
            driver = ReconcileDriver("test", stub, cfg)
            result = await driver.process("default/a")
            return driver, result

        driver, result = asyncio.run(scenario())

        assert result.state == ReconcileState.ERROR
        assert result.requeue
        assert driver.get_stats()["errors"] == 1

    def test_workers_drain_queue_and_shut_down(self, cfg):
        stub = self.StubReconciler(
            [ReconcileResult(ReconcileState.DONE) for _ in range(3)]
        )

        async def scenario():
            driver = ReconcileDriver("test", stub, cfg)
            driver.start(2)
            for key in ("default/a", "default/b", "default/a", "default/c"):
                driver.enqueue(key)
            for _ in range(100):
                if len(stub.calls) == 3:
                    break
                await asyncio.sleep(0.01)
            await driver.shutdown(timeout=1.0)
            return driver

        driver = asyncio.run(scenario())

        assert sorted(stub.calls) == ["default/a", "default/b", "default/c"]
        assert driver.get_stats()["states"] == {"done": 3}

    @pytest.mark.parametrize("workers", [1, 3])
    def test_pipeline_converges_through_drivers(self, store, engine, cfg, workers):
        async def scenario():
            await store.create(make_pool())
            await store.create(make_machine(devices=["static", "static"]))
            machines = ReconcileDriver(
                "machine", MachineReconciler(store, engine, cfg), cfg
            )
            claims = ReconcileDriver("claim", ClaimReconciler(store, engine, cfg), cfg)
            machines.start(workers)
            claims.start(workers)

            machines.enqueue("default/m1")
            machine = None
            for _ in range(200):
                await asyncio.sleep(0.01)
                for claim in await store.list(ResourceKind.CLAIM):
                    claims.enqueue(claim.key)
                machine = await store.get(ResourceKind.MACHINE, "default/m1")
                if all(d.ip_addrs for d in machine.spec.devices):
                    break

            await machines.shutdown(1.0)
            await claims.shutdown(1.0)
            return machine

        machine = asyncio.run(scenario())

        assert [d.ip_addrs for d in machine.spec.devices] == [
            ["10.0.0.10/24"],
            ["10.0.0.11/24"],
        ]
