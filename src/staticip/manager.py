"""
Controller manager.

Wires the store, the fulfillment engine and the three reconcile drivers:

    Machine events  -> machine driver (DeviceConfigurer)
    Cluster events  -> cluster driver (EndpointConfigurer)
    IPClaim events  -> claim driver (fulfillment) and the claim's owner
    IPPool events   -> unfulfilled claims of that pool; a new pool also
                       re-enqueues owners that failed validation

Every watched object is also re-enqueued every SYNC_PERIOD_SECONDS, so
missed events only delay convergence.

Lifecycle:
    start()  optionally wait for leadership, list + enqueue everything,
             start watches, workers and the resync loop
    stop()   stop watches, drain in-flight reconciliations, release the lease
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from staticip.controllers.driver import (
    ClaimReconciler,
    ClusterReconciler,
    MachineReconciler,
    ReconcileDriver,
)
from staticip.ipam.engine import ClaimFulfillmentEngine
from staticip.ipam.exceptions import IPAMError
from staticip.leader import LeaderElector
from staticip.models.enums import (
    ConditionType,
    EventType,
    ResourceKind,
    StoreBackend,
)
from staticip.models.resources import get_condition, object_key
from staticip.store.base import Selector, Watch, WatchEvent
from staticip.store.memory import MemoryStore
from staticip.store.sqlite import SqliteStore
from staticip.utils.logger import get_logger

if TYPE_CHECKING:
    from staticip.config import ControllerConfig
    from staticip.store.base import ResourceStore

logger = get_logger(__name__)

# Seconds given to in-flight reconciliations on shutdown
DRAIN_TIMEOUT_SECONDS = 30.0


def create_store(config: ControllerConfig) -> ResourceStore:
    """Build the configured store backend (not opened yet)."""
    if config.STORE_BACKEND == StoreBackend.MEMORY:
        return MemoryStore(call_timeout=config.CALL_TIMEOUT_SECONDS)
    return SqliteStore(config.DB_FILE, call_timeout=config.CALL_TIMEOUT_SECONDS)


class ControllerManager:
    """Runs the reconcile drivers against one store."""

    def __init__(self, store: ResourceStore, config: ControllerConfig):
        self.store = store
        self.config = config
        self.engine = ClaimFulfillmentEngine(store, config)

        self.drivers: dict[ResourceKind, ReconcileDriver] = {
            ResourceKind.MACHINE: ReconcileDriver(
                "machine", MachineReconciler(store, self.engine, config), config
            ),
            ResourceKind.CLUSTER: ReconcileDriver(
                "cluster", ClusterReconciler(store, self.engine, config), config
            ),
            ResourceKind.CLAIM: ReconcileDriver(
                "claim", ClaimReconciler(store, self.engine, config), config
            ),
        }

        self.elector = (
            LeaderElector(store, config) if config.ENABLE_LEADER_ELECTION else None
        )

        self._selector = Selector(namespace=config.NAMESPACE)
        self._watches: list[Watch] = []
        self._tasks: list[asyncio.Task] = []
        self._running = False
        self._stopping = False
        self.stopped = asyncio.Event()

    # =========================================================================
    # Event Mapping
    # =========================================================================

    async def handle_event(self, event: WatchEvent) -> None:
        """Route a watch event to the driver(s) that care about it."""
        obj = event.obj

        if event.kind in (ResourceKind.MACHINE, ResourceKind.CLUSTER):
            self.drivers[event.kind].enqueue(obj.key)

        elif event.kind == ResourceKind.CLAIM:
            if event.type != EventType.DELETED:
                self.drivers[ResourceKind.CLAIM].enqueue(obj.key)
            owner = obj.owner()
            if owner is not None and owner.kind in self.drivers:
                self.drivers[owner.kind].enqueue(object_key(obj.namespace, owner.name))

        elif event.kind == ResourceKind.POOL:
            if event.type == EventType.DELETED:
                return
            if event.type == EventType.ADDED:
                await self._enqueue_failed_owners(obj.namespace)
            # Freed capacity (or a fixed pool) may unblock waiting claims
            pending = await self.engine.pending_claims(obj.key)
            for claim in pending:
                self.drivers[ResourceKind.CLAIM].enqueue(claim.key)

    async def _enqueue_failed_owners(self, namespace: str) -> int:
        """
        Enqueue owners in a namespace that carry a ValidationFailed condition.

        Owners that found no pool stop requeueing; a new pool may be the one
        they were missing.
        """
        count = 0
        selector = Selector(namespace=namespace)
        for kind in (ResourceKind.MACHINE, ResourceKind.CLUSTER):
            for owner in await self.store.list(kind, selector):
                failed = get_condition(
                    owner.status.conditions, ConditionType.VALIDATION_FAILED
                )
                if failed is not None and failed.status:
                    self.drivers[kind].enqueue(owner.key)
                    count += 1
        return count

    async def _watch_loop(self, watch: Watch) -> None:
        async for event in watch:
            try:
                await self.handle_event(event)
            except IPAMError as e:
                logger.warning(f"Dropping {event.kind.value} event: {e}")
            except Exception as e:
                logger.exception(f"Error handling {event.kind.value} event: {e}")

    async def resync(self) -> int:
        """
        Enqueue every watched owner and claim.

        Returns:
            Number of keys enqueued.
        """
        count = 0
        for kind, driver in self.drivers.items():
            for obj in await self.store.list(kind, self._selector):
                driver.enqueue(obj.key)
                count += 1
        return count

    async def _resync_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.SYNC_PERIOD_SECONDS)
            try:
                count = await self.resync()
                logger.debug(f"Periodic resync enqueued {count} object(s)")
            except Exception as e:
                logger.error(f"Error during periodic resync: {e}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def _spawn(self, coro, name: str) -> None:
        self._tasks.append(asyncio.create_task(coro, name=name))

    async def start(self) -> None:
        """
        Start reconciling.

        Raises:
            TransientError: The initial listing failed.
        """
        if self.elector is not None:
            await self.elector.acquire()
            self._spawn(self.elector.keep_leading(self._on_leadership_lost), "lease")

        # Watches first so nothing written during the initial listing is lost
        for kind in (
            ResourceKind.MACHINE,
            ResourceKind.CLUSTER,
            ResourceKind.CLAIM,
            ResourceKind.POOL,
        ):
            watch = self.store.watch(kind, self._selector)
            self._watches.append(watch)
            self._spawn(self._watch_loop(watch), f"watch_{kind.value.lower()}")

        count = await self.resync()
        logger.info(
            f"Initial sync enqueued {count} object(s) "
            f"(namespace: {self.config.NAMESPACE or 'all'})"
        )

        for driver in self.drivers.values():
            driver.start(self.config.MAX_CONCURRENCY)
        self._spawn(self._resync_loop(), "resync")
        self._running = True

    async def _on_leadership_lost(self) -> None:
        logger.error("Leadership lost, stopping controllers")
        await self.stop()

    async def stop(self) -> None:
        """Stop watching and drain in-flight reconciliations."""
        if self._stopping:
            await self.stopped.wait()
            return
        self._stopping = True
        self._running = False
        current = asyncio.current_task()

        for watch in self._watches:
            watch.close()
        self._watches.clear()

        await asyncio.gather(
            *(d.shutdown(DRAIN_TIMEOUT_SECONDS) for d in self.drivers.values())
        )

        for task in self._tasks:
            if task is not current:
                task.cancel()
        await asyncio.gather(
            *(t for t in self._tasks if t is not current), return_exceptions=True
        )
        self._tasks.clear()

        if self.elector is not None:
            await self.elector.release()

        self.stopped.set()
        logger.info("Controller manager stopped")

    def is_ready(self) -> bool:
        if not self._running:
            return False
        return self.elector is None or self.elector.is_leader

    async def get_stats(self) -> dict:
        """Counters for /metrics."""
        try:
            pools = await self.engine.get_stats()
        except IPAMError as e:
            logger.warning(f"Pool stats unavailable: {e}")
            pools = []
        return {
            "ready": self.is_ready(),
            "leader": self.elector.is_leader if self.elector else None,
            "controllers": {d.name: d.get_stats() for d in self.drivers.values()},
            "pools": pools,
        }
