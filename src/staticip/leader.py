"""
Lease-based leader election over the resource store.

Only one controller manager should reconcile at a time. Candidates compete
for a Lease object; the holder renews it every LEASE_RENEW_SECONDS and a
lease not renewed for LEASE_DURATION_SECONDS may be taken over. All writes
are optimistic updates, so two candidates racing for an expired lease
cannot both win.
"""

from __future__ import annotations

import asyncio
import datetime
import os
import socket
import uuid
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from staticip.ipam.exceptions import AlreadyExists, Conflict, IPAMError, NotFound
from staticip.models.enums import ResourceKind
from staticip.models.resources import (
    DEFAULT_NAMESPACE,
    Lease,
    LeaseSpec,
    ObjectMeta,
    object_key,
)
from staticip.utils.logger import get_logger

if TYPE_CHECKING:
    from staticip.config import ControllerConfig
    from staticip.store.base import ResourceStore

logger = get_logger(__name__)


def default_identity() -> str:
    """hostname_pid_random, unique per process."""
    return f"{socket.gethostname()}_{os.getpid()}_{uuid.uuid4().hex[:6]}"


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class LeaderElector:
    """Acquires and keeps a Lease for one identity."""

    def __init__(
        self,
        store: ResourceStore,
        config: ControllerConfig,
        identity: str | None = None,
    ):
        self.store = store
        self.config = config
        self.identity = identity or default_identity()
        self.namespace = config.NAMESPACE or DEFAULT_NAMESPACE
        self.key = object_key(self.namespace, config.LEADER_ELECTION_ID)
        self._leading = False

    @property
    def is_leader(self) -> bool:
        return self._leading

    def _expired(self, lease: Lease) -> bool:
        if not lease.spec.holder or lease.spec.renew_time is None:
            return True
        deadline = lease.spec.renew_time + datetime.timedelta(
            seconds=lease.spec.lease_duration_seconds
        )
        return _now() > deadline

    async def try_acquire_or_renew(self) -> bool:
        """
        One election round.

        Returns:
            True if this identity holds the lease afterwards.

        Raises:
            TransientError: Store unreachable.
        """
        try:
            lease = await self.store.get(ResourceKind.LEASE, self.key)
        except NotFound:
            lease = Lease(
                metadata=ObjectMeta(
                    name=self.config.LEADER_ELECTION_ID, namespace=self.namespace
                ),
                spec=LeaseSpec(
                    holder=self.identity,
                    renew_time=_now(),
                    lease_duration_seconds=self.config.LEASE_DURATION_SECONDS,
                ),
            )
            try:
                await self.store.create(lease)
            except AlreadyExists:
                return False
            self._set_leading(True)
            return True

        if lease.spec.holder != self.identity and not self._expired(lease):
            self._set_leading(False)
            return False

        if lease.spec.holder != self.identity:
            logger.info(
                f"Lease {self.key} held by {lease.spec.holder or 'nobody'} expired, "
                f"taking over"
            )
        lease.spec.holder = self.identity
        lease.spec.renew_time = _now()
        lease.spec.lease_duration_seconds = self.config.LEASE_DURATION_SECONDS
        try:
            await self.store.update(lease)
        except (Conflict, NotFound):
            return False
        self._set_leading(True)
        return True

    def _set_leading(self, leading: bool) -> None:
        if leading and not self._leading:
            logger.info(f"{self.identity} became leader ({self.key})")
        elif not leading and self._leading:
            logger.warning(f"{self.identity} lost leadership ({self.key})")
        self._leading = leading

    async def acquire(self) -> None:
        """Block until this identity is leader."""
        logger.info(f"{self.identity} waiting for leadership of {self.key}")
        while True:
            try:
                if await self.try_acquire_or_renew():
                    return
            except IPAMError as e:
                logger.warning(f"Leader election round failed: {e}")
            await asyncio.sleep(self.config.LEASE_RENEW_SECONDS)

    async def keep_leading(self, on_lost: Callable[[], Awaitable[None]]) -> None:
        """
        Renew the lease until renewal fails for a whole lease duration.

        Calls `on_lost` once leadership is gone.
        """
        last_renewed = asyncio.get_running_loop().time()
        while True:
            await asyncio.sleep(self.config.LEASE_RENEW_SECONDS)
            try:
                if await self.try_acquire_or_renew():
                    last_renewed = asyncio.get_running_loop().time()
                    continue
                # Someone else holds a valid lease
                break
            except IPAMError as e:
                logger.warning(f"Lease renewal failed: {e}")
            elapsed = asyncio.get_running_loop().time() - last_renewed
            if elapsed > self.config.LEASE_DURATION_SECONDS:
                break

        self._set_leading(False)
        await on_lost()

    async def release(self) -> None:
        """Give the lease up so a standby can take over without waiting."""
        if not self._leading:
            return
        try:
            lease = await self.store.get(ResourceKind.LEASE, self.key)
            if lease.spec.holder == self.identity:
                lease.spec.holder = ""
                lease.spec.renew_time = None
                await self.store.update(lease)
        except IPAMError as e:
            logger.warning(f"Could not release lease {self.key}: {e}")
        self._leading = False
