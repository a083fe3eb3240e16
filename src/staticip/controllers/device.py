"""
Device configurer.

Derives one claim per static network device of a Machine, checks whether
the claims are fulfilled and writes fulfilled addresses back onto the
devices. Never waits for fulfillment: unfulfilled devices are reported as
pending and picked up again on a later pass.

Claim identity:
    "{machine}-{index}" with the zero-based device index. Re-deriving the
    name always yields the same claim, so repeated passes never create a
    second claim for a device.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from staticip.controllers.util import (
    ConfigureOutcome,
    apply_to_device,
    claim_failure,
    delete_claim,
    device_configured,
    ensure_claim,
    is_device_dhcp,
    is_machine_dhcp,
    list_owned_claims,
    resolve_pool,
    validate_fulfilled,
)
from staticip.ipam.exceptions import ValidationError
from staticip.ipam.naming import device_claim_name
from staticip.models.enums import ConditionReason, ConditionType, OutcomeKind
from staticip.models.resources import Machine, get_condition
from staticip.utils.logger import get_logger

if TYPE_CHECKING:
    from staticip.ipam.engine import ClaimFulfillmentEngine
    from staticip.store.base import ResourceStore

logger = get_logger(__name__)


class DeviceConfigurer:
    """Claim and write-back logic for machine network devices."""

    def __init__(self, store: ResourceStore, engine: ClaimFulfillmentEngine):
        self.store = store
        self.engine = engine

    def needs_allocation(self, machine: Machine) -> bool:
        """False when every device is DHCP-mode (the machine is skipped)."""
        return not is_machine_dhcp(machine.spec.devices)

    async def configure(self, machine: Machine) -> ConfigureOutcome:
        """
        Run one pass over the machine's devices in index order.

        Devices that are DHCP-mode or already configured are skipped. Fulfilled
        devices are written in a single update at the end of the pass.

        Raises:
            ValidationError: No pool can be selected, or a derived claim name
                belongs to another owner.
            Conflict: The machine changed during the pass.
            TransientError: Store unreachable.
        """
        pool_name: str | None = None
        pending: list[int] = []
        written: list[int] = []
        failures: list[str] = []
        failure_reason = ""
        exhausted = False

        for index, device in enumerate(machine.spec.devices):
            if is_device_dhcp(device) or device_configured(device):
                continue

            if pool_name is None:
                pool_name = await resolve_pool(
                    self.store,
                    machine.namespace,
                    machine.spec.pool_name,
                    machine.spec.cluster_name,
                )

            claim_name = device_claim_name(machine.name, index)
            slot = f"device {index} (claim {claim_name})"
            claim = await ensure_claim(self.store, machine, claim_name, pool_name)

            address = await self.engine.lookup(claim.key)
            failed = claim_failure(claim) if address is None else None
            if failed is not None:
                failures.append(f"{slot}: {failed.message}")
                failure_reason = failure_reason or failed.reason
                continue
            if address is None:
                pending.append(index)
                starved = get_condition(
                    claim.status.conditions, ConditionType.POOL_EXHAUSTED
                )
                exhausted = exhausted or bool(starved and starved.status)
                continue

            try:
                validate_fulfilled(address)
            except ValidationError as e:
                failures.append(f"{slot}: {e}")
                failure_reason = failure_reason or ConditionReason.INVALID_ADDRESS
                continue

            apply_to_device(device, address)
            written.append(index)

        if written:
            machine = await self.store.update(machine)
            logger.info(
                f"Machine {machine.key}: configured device(s) "
                f"{', '.join(str(i) for i in written)}"
            )

        if failures:
            return ConfigureOutcome(
                OutcomeKind.FAILED,
                machine,
                pending=pending,
                written=written,
                reason="; ".join(failures),
                condition_reason=failure_reason,
            )
        if pending:
            logger.debug(f"Machine {machine.key}: waiting for device(s) {pending}")
            return ConfigureOutcome(
                OutcomeKind.PARTIALLY_PENDING,
                machine,
                pending=pending,
                written=written,
                exhausted=exhausted,
            )
        return ConfigureOutcome(OutcomeKind.ALL_CONFIGURED, machine, written=written)

    async def release_claims(self, machine: Machine) -> list[str]:
        """Release and delete every claim the machine created."""
        released: list[str] = []
        for claim in await list_owned_claims(self.store, machine):
            released.extend(await delete_claim(self.store, self.engine, claim))
        if released:
            logger.info(f"Machine {machine.key}: released {', '.join(released)}")
        return released
