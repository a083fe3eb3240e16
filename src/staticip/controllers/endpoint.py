"""
Endpoint configurer.

Single-claim variant of the device configurer: a Cluster gets one claim,
named after the cluster, and the fulfilled address becomes the host of its
control-plane endpoint.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from staticip.controllers.util import (
    ConfigureOutcome,
    claim_failure,
    delete_claim,
    ensure_claim,
    list_owned_claims,
    resolve_pool,
    validate_fulfilled,
)
from staticip.ipam.exceptions import ValidationError
from staticip.ipam.naming import endpoint_claim_name
from staticip.models.enums import ConditionType, EndpointMode, OutcomeKind
from staticip.models.resources import Cluster, get_condition
from staticip.utils.logger import get_logger

if TYPE_CHECKING:
    from staticip.ipam.engine import ClaimFulfillmentEngine
    from staticip.store.base import ResourceStore

logger = get_logger(__name__)


class EndpointConfigurer:
    """Claim and write-back logic for a cluster's control-plane endpoint."""

    def __init__(self, store: ResourceStore, engine: ClaimFulfillmentEngine):
        self.store = store
        self.engine = engine

    def needs_allocation(self, cluster: Cluster) -> bool:
        """False for dynamic endpoints and endpoints whose host is already set."""
        if cluster.spec.endpoint_mode == EndpointMode.DYNAMIC:
            return False
        return not cluster.spec.control_plane_endpoint.host

    async def configure(self, cluster: Cluster) -> ConfigureOutcome:
        """
        Run one pass over the cluster's endpoint slot.

        Raises:
            ValidationError: No pool can be selected, or the claim name
                belongs to another owner.
            Conflict: The cluster changed during the pass.
            TransientError: Store unreachable.
        """
        if not self.needs_allocation(cluster):
            return ConfigureOutcome(OutcomeKind.ALL_CONFIGURED, cluster)

        pool_name = await resolve_pool(
            self.store, cluster.namespace, cluster.spec.pool_name, cluster.name
        )
        claim_name = endpoint_claim_name(cluster.name)
        claim = await ensure_claim(self.store, cluster, claim_name, pool_name)

        address = await self.engine.lookup(claim.key)
        failed = claim_failure(claim) if address is None else None
        if failed is not None:
            return ConfigureOutcome(
                OutcomeKind.FAILED,
                cluster,
                reason=f"endpoint (claim {claim_name}): {failed.message}",
                condition_reason=failed.reason,
            )
        if address is None:
            starved = get_condition(
                claim.status.conditions, ConditionType.POOL_EXHAUSTED
            )
            return ConfigureOutcome(
                OutcomeKind.PARTIALLY_PENDING,
                cluster,
                exhausted=bool(starved and starved.status),
            )

        try:
            validate_fulfilled(address)
        except ValidationError as e:
            reason = f"endpoint (claim {claim_name}): {e}"
            return ConfigureOutcome(OutcomeKind.FAILED, cluster, reason=reason)

        cluster.spec.control_plane_endpoint.host = address.address
        cluster = await self.store.update(cluster)
        logger.info(f"Cluster {cluster.key}: control-plane endpoint {address.address}")
        return ConfigureOutcome(OutcomeKind.ALL_CONFIGURED, cluster, written=[0])

    async def release_claims(self, cluster: Cluster) -> list[str]:
        """Release and delete the cluster's endpoint claim."""
        released: list[str] = []
        for claim in await list_owned_claims(self.store, cluster):
            released.extend(await delete_claim(self.store, self.engine, claim))
        if released:
            logger.info(f"Cluster {cluster.key}: released {', '.join(released)}")
        return released
