"""
Reconcile driver.

Entry point of every reconciliation. Each driver owns a WorkQueue keyed by
"namespace/name" and a bounded set of worker tasks; the queue guarantees a
key is never reconciled by two workers at once, and events arriving during
a reconciliation are coalesced into one follow-up pass.

Owner state machine (Machine / Cluster):
    START -> SKIP              owner is DHCP / endpoint dynamic or preset
    START -> NEEDS_ALLOCATION  delegate to the configurer, then
          -> DONE              all claims fulfilled and written
          -> PENDING           a claim is unfulfilled; requeue with backoff
          -> ERROR             validation failure; condition set, no requeue

Error mapping at the driver boundary:
    NotFound        nothing to do
    Conflict        re-read and re-run (CONFLICT_RETRIES), then requeue
    PoolExhausted   visible via PoolExhausted condition, requeue with backoff
    ValidationError ValidationFailed condition, terminal until the next change
    TransientError  requeue with backoff; RetriesExhausted condition after
                    TRANSIENT_FAILURE_THRESHOLD consecutive failures
"""

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING

from staticip.controllers.device import DeviceConfigurer
from staticip.controllers.endpoint import EndpointConfigurer
from staticip.controllers.util import ConfigureOutcome
from staticip.controllers.workqueue import WorkQueue
from staticip.ipam.exceptions import (
    Conflict,
    IPAMError,
    NotFound,
    PoolExhausted,
    TransientError,
    ValidationError,
)
from staticip.ipam.naming import CLAIM_FINALIZER, RELEASE_FINALIZER
from staticip.models.enums import (
    ConditionReason,
    ConditionType,
    OutcomeKind,
    ReconcileState,
    ResourceKind,
)
from staticip.models.resources import Resource, remove_condition, set_condition
from staticip.store.base import retry_on_conflict
from staticip.utils.logger import get_logger

if TYPE_CHECKING:
    from staticip.config import ControllerConfig
    from staticip.ipam.engine import ClaimFulfillmentEngine
    from staticip.store.base import ResourceStore

logger = get_logger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation of one key."""

    state: ReconcileState
    requeue: bool = False
    message: str = ""


def _requeue(message: str) -> ReconcileResult:
    return ReconcileResult(ReconcileState.PENDING, requeue=True, message=message)


# =============================================================================
# Owner Reconcilers
# =============================================================================


class OwnerReconciler:
    """
    State machine shared by machine and cluster reconciliation.

    Subclasses set `kind` and provide a configurer exposing
    needs_allocation(), configure() and release_claims().
    """

    kind: ResourceKind

    def __init__(self, store: ResourceStore, configurer, config: ControllerConfig):
        self.store = store
        self.configurer = configurer
        self.config = config

        # key -> consecutive TransientError count
        self._transient_failures: dict[str, int] = {}

    async def reconcile(self, key: str) -> ReconcileResult:
        try:
            result = await retry_on_conflict(
                lambda: self._reconcile_once(key), self.config.CONFLICT_RETRIES
            )
        except NotFound:
            result = ReconcileResult(ReconcileState.DONE, message="owner gone")
        except Conflict as e:
            logger.debug(f"{self.kind.value} {key}: giving up on conflicts: {e}")
            result = _requeue(str(e))
        except TransientError as e:
            return await self._on_transient(key, e)

        self._transient_failures.pop(key, None)
        return result

    async def _reconcile_once(self, key: str) -> ReconcileResult:
        try:
            owner = await self.store.get(self.kind, key)
        except NotFound:
            return ReconcileResult(ReconcileState.DONE, message="owner gone")

        if owner.is_deleting():
            return await self._finalize(owner)

        if not self.configurer.needs_allocation(owner):
            logger.trace(f"{self.kind.value} {key}: nothing to allocate")
            return ReconcileResult(ReconcileState.SKIP)

        # NEEDS_ALLOCATION
        if owner.add_finalizer(CLAIM_FINALIZER):
            owner = await self.store.update(owner)

        try:
            outcome = await self.configurer.configure(owner)
        except ValidationError as e:
            updates = self._failed_conditions(e.reason, str(e))
            await self._write_conditions(owner, updates)
            logger.warning(f"{self.kind.value} {key}: {e}")
            return ReconcileResult(ReconcileState.ERROR, message=str(e))

        return await self._apply_outcome(outcome)

    async def _finalize(self, owner: Resource) -> ReconcileResult:
        """Release the owner's claims, then let the store remove it."""
        if owner.has_finalizer(CLAIM_FINALIZER):
            await self.configurer.release_claims(owner)
            owner.remove_finalizer(CLAIM_FINALIZER)
            await self.store.update(owner)
            logger.info(f"{self.kind.value} {owner.key}: claims released")
        return ReconcileResult(ReconcileState.DONE, message="finalized")

    # =========================================================================
    # Outcome -> Conditions / Requeue
    # =========================================================================

    async def _apply_outcome(self, outcome: ConfigureOutcome) -> ReconcileResult:
        owner = outcome.owner

        if outcome.kind == OutcomeKind.FAILED:
            updates = self._failed_conditions(outcome.condition_reason, outcome.reason)
            await self._write_conditions(owner, updates)
            logger.warning(f"{self.kind.value} {owner.key}: {outcome.reason}")
            return ReconcileResult(ReconcileState.ERROR, message=outcome.reason)

        if outcome.kind == OutcomeKind.PARTIALLY_PENDING:
            message = self.pending_message(outcome)
            updates = [
                (ConditionType.IP_ALLOCATED, False, ConditionReason.WAITING, message),
                (ConditionType.VALIDATION_FAILED, None, "", ""),
                (ConditionType.RETRIES_EXHAUSTED, None, "", ""),
            ]
            if outcome.exhausted:
                updates.append(
                    (
                        ConditionType.POOL_EXHAUSTED,
                        True,
                        ConditionReason.POOL_EXHAUSTED,
                        "waiting for free addresses",
                    )
                )
            else:
                updates.append((ConditionType.POOL_EXHAUSTED, None, "", ""))
            await self._write_conditions(owner, updates)
            return _requeue(message)

        updates = [
            (ConditionType.IP_ALLOCATED, True, ConditionReason.FULFILLED, ""),
            (ConditionType.POOL_EXHAUSTED, None, "", ""),
            (ConditionType.VALIDATION_FAILED, None, "", ""),
            (ConditionType.RETRIES_EXHAUSTED, None, "", ""),
        ]
        await self._write_conditions(owner, updates)
        return ReconcileResult(ReconcileState.DONE)

    def pending_message(self, outcome: ConfigureOutcome) -> str:
        return "waiting for address"

    @staticmethod
    def _failed_conditions(reason: str, message: str) -> list[tuple]:
        return [
            (ConditionType.VALIDATION_FAILED, True, reason, message),
            (ConditionType.IP_ALLOCATED, False, reason, message),
        ]

    async def _write_conditions(self, owner: Resource, updates: list[tuple]) -> None:
        """
        Apply (type, status, reason, message) updates; status None removes.

        Writes only if something changed.
        """
        changed = False
        conditions = owner.status.conditions
        for cond_type, status, reason, message in updates:
            if status is None:
                changed = remove_condition(conditions, cond_type) or changed
            else:
                changed = (
                    set_condition(conditions, cond_type, status, reason, message)
                    or changed
                )
        if changed:
            await self.store.update(owner)

    async def _on_transient(self, key: str, error: TransientError) -> ReconcileResult:
        failures = self._transient_failures.get(key, 0) + 1
        self._transient_failures[key] = failures
        logger.warning(
            f"{self.kind.value} {key}: transient failure #{failures}: {error}"
        )

        if failures == self.config.TRANSIENT_FAILURE_THRESHOLD:
            await self._mark_retries_exhausted(key, failures, error)

        return _requeue(str(error))

    async def _mark_retries_exhausted(
        self, key: str, failures: int, error: TransientError
    ) -> None:
        async def attempt() -> None:
            owner = await self.store.get(self.kind, key)
            await self._write_conditions(
                owner,
                [
                    (
                        ConditionType.RETRIES_EXHAUSTED,
                        True,
                        ConditionReason.STORE_UNAVAILABLE,
                        f"{failures} consecutive failures, last: {error}",
                    )
                ],
            )

        try:
            await retry_on_conflict(attempt, self.config.CONFLICT_RETRIES)
        except IPAMError as e:
            logger.error(
                f"{self.kind.value} {key}: cannot record exhausted retries: {e}"
            )


class MachineReconciler(OwnerReconciler):
    kind = ResourceKind.MACHINE

    def __init__(
        self,
        store: ResourceStore,
        engine: ClaimFulfillmentEngine,
        config: ControllerConfig,
    ):
        super().__init__(store, DeviceConfigurer(store, engine), config)

    def pending_message(self, outcome: ConfigureOutcome) -> str:
        indices = ", ".join(str(i) for i in outcome.pending)
        return f"waiting for address of device(s) {indices}"


class ClusterReconciler(OwnerReconciler):
    kind = ResourceKind.CLUSTER

    def __init__(
        self,
        store: ResourceStore,
        engine: ClaimFulfillmentEngine,
        config: ControllerConfig,
    ):
        super().__init__(store, EndpointConfigurer(store, engine), config)

    def pending_message(self, outcome: ConfigureOutcome) -> str:
        return "waiting for control-plane endpoint address"


# =============================================================================
# Claim Reconciler
# =============================================================================


class ClaimReconciler:
    """Fulfillment side: binds unfulfilled claims, releases deleted ones."""

    kind = ResourceKind.CLAIM

    def __init__(
        self,
        store: ResourceStore,
        engine: ClaimFulfillmentEngine,
        config: ControllerConfig,
    ):
        self.store = store
        self.engine = engine
        self.config = config

    async def reconcile(self, key: str) -> ReconcileResult:
        try:
            claim = await self.store.get(ResourceKind.CLAIM, key)
            if claim.is_deleting():
                return await self._finalize(key)
            if claim.is_fulfilled():
                return ReconcileResult(ReconcileState.DONE)
            address = await self.engine.fulfill(key)
        except PoolExhausted as e:
            logger.info(f"Claim {key}: {e}")
            return _requeue(str(e))
        except ValidationError as e:
            await self._set_claim_condition(
                key, ConditionType.VALIDATION_FAILED, True, e.reason, str(e)
            )
            logger.warning(f"Claim {key}: {e}")
            return ReconcileResult(ReconcileState.ERROR, message=str(e))
        except NotFound as e:
            if e.kind != ResourceKind.POOL.value:
                return ReconcileResult(ReconcileState.DONE, message="claim gone")
            await self._set_claim_condition(
                key,
                ConditionType.IP_ALLOCATED,
                False,
                ConditionReason.POOL_NOT_FOUND,
                str(e),
            )
            return _requeue(str(e))
        except (Conflict, TransientError) as e:
            logger.warning(f"Claim {key}: {e}")
            return _requeue(str(e))

        if address is None:
            return ReconcileResult(ReconcileState.DONE, message="claim gone")
        return ReconcileResult(ReconcileState.DONE, message=address.cidr)

    async def _finalize(self, key: str) -> ReconcileResult:
        async def attempt() -> None:
            claim = await self.store.get(ResourceKind.CLAIM, key)
            if not claim.has_finalizer(RELEASE_FINALIZER):
                return
            await self.engine.release_claim(claim)
            claim.remove_finalizer(RELEASE_FINALIZER)
            await self.store.update(claim)

        await retry_on_conflict(attempt, self.config.CONFLICT_RETRIES)
        return ReconcileResult(ReconcileState.DONE, message="released")

    async def _set_claim_condition(
        self, key: str, cond_type: ConditionType, status: bool, reason, message: str
    ) -> None:
        async def attempt() -> None:
            claim = await self.store.get(ResourceKind.CLAIM, key)
            conditions = claim.status.conditions
            if set_condition(conditions, cond_type, status, reason, message):
                await self.store.update(claim)

        try:
            await retry_on_conflict(attempt, self.config.CONFLICT_RETRIES)
        except (NotFound, Conflict, TransientError) as e:
            logger.debug(f"Claim {key}: condition not recorded: {e}")


# =============================================================================
# Driver
# =============================================================================


class ReconcileDriver:
    """
    Runs a reconciler over a work queue with a bounded worker pool.

    Requeue policy: results with requeue=True go back through the queue's
    per-key exponential backoff; anything else resets the key's backoff.
    """

    def __init__(self, name: str, reconciler, config: ControllerConfig):
        self.name = name
        self.reconciler = reconciler
        self.config = config
        self.queue = WorkQueue(name, config.get_backoff)

        self._workers: list[asyncio.Task] = []
        self._states: Counter[str] = Counter()
        self._requeues = 0
        self._errors = 0

    def enqueue(self, key: str) -> None:
        self.queue.add(key)

    # =========================================================================
    # Processing
    # =========================================================================

    async def process(self, key: str) -> ReconcileResult:
        """Reconcile one key and apply the requeue policy."""
        try:
            result = await self.reconciler.reconcile(key)
        except Exception as e:
            logger.exception(f"[{self.name}] unexpected error reconciling {key}: {e}")
            result = ReconcileResult(ReconcileState.ERROR, requeue=True, message=str(e))
            self._errors += 1

        self._states[result.state.value] += 1
        if result.requeue:
            self._requeues += 1
            self.queue.add_rate_limited(key)
        else:
            self.queue.forget(key)

        logger.debug(f"[{self.name}] {key} -> {result.state.value} {result.message}")
        return result

    async def _worker(self, index: int) -> None:
        while True:
            key = await self.queue.get()
            if key is None:
                return
            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, workers: int | None = None) -> None:
        count = max(workers or self.config.MAX_CONCURRENCY, 1)
        for index in range(count):
            task = asyncio.create_task(
                self._worker(index), name=f"{self.name}_worker_{index}"
            )
            self._workers.append(task)
        logger.info(f"[{self.name}] started {count} worker(s)")

    async def shutdown(self, timeout: float | None = None) -> None:
        """
        Stop taking keys and wait for in-flight reconciliations.

        Workers still running after `timeout` seconds are cancelled.
        """
        self.queue.shutdown()
        if not self._workers:
            return
        done, pending = await asyncio.wait(self._workers, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"[{self.name}] cancelled {len(pending)} worker(s)")
            await asyncio.gather(*pending, return_exceptions=True)
        self._workers.clear()
        logger.info(f"[{self.name}] stopped")

    def get_stats(self) -> dict:
        return {
            "reconciles": sum(self._states.values()),
            "states": dict(self._states),
            "requeues": self._requeues,
            "errors": self._errors,
            "queue": self.queue.get_stats(),
        }
