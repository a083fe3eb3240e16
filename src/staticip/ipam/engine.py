"""
Claim Fulfillment Engine.

Binds outstanding IPClaims to addresses of their IPPool and returns
addresses when claims go away.

Critical section:
    allocate/release run under a per-pool asyncio.Lock spanning
    "read pool -> pick address -> persist pool". Within one process no two
    claims can be handed the same address. Between processes the pool write
    is a compare-and-swap on resource_version, and a lost race re-reads the
    pool and picks again (bounded by CONFLICT_RETRIES).

Crash safety:
    The pool is persisted before the claim. If the process dies between the
    two writes, the next fulfill() of the claim finds the address already
    recorded for it in the pool and reuses it.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import TYPE_CHECKING

from staticip.ipam.exceptions import NotFound, PoolExhausted
from staticip.ipam.pool import AddressPool
from staticip.models.enums import (
    ClaimPhase,
    ConditionReason,
    ConditionType,
    ResourceKind,
)
from staticip.models.resources import (
    FulfilledAddress,
    IPClaim,
    object_key,
    remove_condition,
    set_condition,
)
from staticip.store.base import ResourceStore, retry_on_conflict, with_deadline
from staticip.utils.logger import get_logger

if TYPE_CHECKING:
    from staticip.config import ControllerConfig

logger = get_logger(__name__)


def claim_pool_key(claim: IPClaim) -> str:
    """Pool key of a claim (pools are looked up in the claim's namespace)."""
    return object_key(claim.namespace, claim.spec.pool_name)


class ClaimFulfillmentEngine:
    """
    Matches unfulfilled claims against pool capacity.

    allocate / release / lookup are the pool contract; fulfill() is the
    claim-level step driven by the claim reconciler.
    """

    def __init__(self, store: ResourceStore, config: ControllerConfig):
        self.store = store
        self.config = config

        # pool key -> lock guarding the allocate/release critical section
        self._pool_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # =========================================================================
    # Pool Contract
    # =========================================================================

    async def allocate(self, pool_key: str, claim_name: str) -> FulfilledAddress:
        """
        Allocate the lowest free address of a pool to a claim.

        Raises:
            NotFound: The pool does not exist.
            PoolExhausted: No free address; nothing was written.
            Conflict: Lost the pool write race CONFLICT_RETRIES times.
            TransientError: Store unreachable or the deadline passed.
        """

        async def attempt() -> FulfilledAddress:
            pool = await self.store.get(ResourceKind.POOL, pool_key)
            address_pool = AddressPool(pool)
            before = dict(address_pool.allocations)

            result = address_pool.allocate(claim_name)

            if address_pool.allocations != before:
                await self.store.update(address_pool.pool)
                logger.info(
                    f"Allocated {result.address} from pool {pool_key} "
                    f"to claim {claim_name}"
                )
            return result

        async with self._pool_locks[pool_key]:
            return await with_deadline(
                retry_on_conflict(attempt, self.config.CONFLICT_RETRIES),
                self.config.CALL_TIMEOUT_SECONDS,
                f"allocate from {pool_key}",
            )

    async def release(self, pool_key: str, claim_name: str) -> list[str]:
        """
        Return a claim's address(es) to the pool.

        Idempotent: a missing pool or a claim holding nothing is a no-op.

        Returns:
            Released addresses.
        """

        async def attempt() -> list[str]:
            try:
                pool = await self.store.get(ResourceKind.POOL, pool_key)
            except NotFound:
                return []
            address_pool = AddressPool(pool)
            released = address_pool.release(claim_name)
            if released:
                await self.store.update(address_pool.pool)
                logger.info(
                    f"Released {', '.join(released)} of claim {claim_name} "
                    f"back to pool {pool_key}"
                )
            return released

        async with self._pool_locks[pool_key]:
            return await with_deadline(
                retry_on_conflict(attempt, self.config.CONFLICT_RETRIES),
                self.config.CALL_TIMEOUT_SECONDS,
                f"release to {pool_key}",
            )

    async def lookup(self, claim_key: str) -> FulfilledAddress | None:
        """Fulfilled address of a claim, or None if absent or not fulfilled."""
        try:
            claim = await self.store.get(ResourceKind.CLAIM, claim_key)
        except NotFound:
            return None
        return claim.status.address if claim.is_fulfilled() else None

    # =========================================================================
    # Claim Fulfillment
    # =========================================================================

    async def fulfill(self, claim_key: str) -> FulfilledAddress | None:
        """
        Fulfill one claim.

        Returns:
            The claim's address snapshot, or None if the claim is gone or
            being deleted.

        Raises:
            NotFound: The claim's pool does not exist.
            PoolExhausted: No capacity; the claim carries a PoolExhausted
                condition and stays unfulfilled.
        """
        try:
            claim = await self.store.get(ResourceKind.CLAIM, claim_key)
        except NotFound:
            return None

        if claim.is_fulfilled():
            return claim.status.address
        if claim.is_deleting():
            return None

        pool_key = claim_pool_key(claim)
        try:
            address = await self.allocate(pool_key, claim.name)
        except PoolExhausted as e:
            await self._mark_claim(claim_key, exhausted=str(e))
            raise

        try:
            return await self._record_fulfillment(claim_key, address)
        except NotFound:
            # Claim deleted while we allocated; give the address back
            logger.warning(
                f"Claim {claim_key} deleted while allocating {address.address}, "
                f"releasing it"
            )
            await self.release(pool_key, claim.name)
            return None

    async def release_claim(self, claim: IPClaim) -> list[str]:
        """Release whatever the claim holds in its pool."""
        return await self.release(claim_pool_key(claim), claim.name)

    async def _record_fulfillment(
        self, claim_key: str, address: FulfilledAddress
    ) -> FulfilledAddress:
        async def attempt() -> FulfilledAddress:
            claim = await self.store.get(ResourceKind.CLAIM, claim_key)
            if claim.is_deleting():
                raise NotFound(ResourceKind.CLAIM.value, claim_key)
            if claim.is_fulfilled():
                # Fulfilled exactly once; keep the first snapshot
                return claim.status.address
            claim.status.phase = ClaimPhase.FULFILLED
            claim.status.address = address
            remove_condition(claim.status.conditions, ConditionType.POOL_EXHAUSTED)
            remove_condition(claim.status.conditions, ConditionType.VALIDATION_FAILED)
            set_condition(
                claim.status.conditions,
                ConditionType.IP_ALLOCATED,
                True,
                reason=ConditionReason.FULFILLED,
                message=address.cidr,
            )
            await self.store.update(claim)
            logger.info(f"Claim {claim_key} fulfilled with {address.cidr}")
            return address

        return await retry_on_conflict(attempt, self.config.CONFLICT_RETRIES)

    async def _mark_claim(self, claim_key: str, exhausted: str) -> None:
        async def attempt() -> None:
            claim = await self.store.get(ResourceKind.CLAIM, claim_key)
            changed = set_condition(
                claim.status.conditions,
                ConditionType.POOL_EXHAUSTED,
                True,
                reason=ConditionReason.POOL_EXHAUSTED,
                message=exhausted,
            )
            if changed:
                await self.store.update(claim)

        try:
            await retry_on_conflict(attempt, self.config.CONFLICT_RETRIES)
        except NotFound:
            pass

    # =========================================================================
    # Queries
    # =========================================================================

    async def pending_claims(self, pool_key: str) -> list[IPClaim]:
        """Unfulfilled, live claims against a pool, oldest first."""
        namespace = pool_key.partition("/")[0]
        claims = await self.store.list(ResourceKind.CLAIM)
        pending = [
            c
            for c in claims
            if c.namespace == namespace
            and claim_pool_key(c) == pool_key
            and not c.is_fulfilled()
            and not c.is_deleting()
        ]
        pending.sort(key=lambda c: (str(c.metadata.creation_timestamp or ""), c.name))
        return pending

    async def get_stats(self) -> list[dict]:
        """Capacity bookkeeping of every pool."""
        stats = []
        for pool in await self.store.list(ResourceKind.POOL):
            try:
                stats.append(AddressPool(pool).get_stats())
            except Exception as e:
                logger.warning(f"Pool {pool.key} cannot be evaluated: {e}")
        return stats
