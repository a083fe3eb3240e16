"""
Resource store interface.

The store is the authoritative holder of every object (owners, pools,
claims, leases). Implementations only provide a handful of storage
primitives; the shared semantics live here:

    - get / list / watch
    - create (fails with AlreadyExists)
    - update with optimistic concurrency (fails with Conflict when the
      stored resource_version differs from the expected one)
    - delete with finalizer semantics: an object carrying finalizers is only
      marked (deletion_timestamp); it disappears once an update empties its
      finalizer list

Every primitive call carries a deadline; a timeout surfaces as
TransientError.
"""

from __future__ import annotations

import abc
import asyncio
import datetime
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from staticip.ipam.exceptions import AlreadyExists, Conflict, NotFound, TransientError
from staticip.models.enums import EventType, ResourceKind
from staticip.models.resources import Resource, split_key
from staticip.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


# =============================================================================
# Selection & Events
# =============================================================================


@dataclass
class Selector:
    """Namespace + label equality selector. Empty fields match everything."""

    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)

    def matches(self, obj: Resource) -> bool:
        if self.namespace and obj.namespace != self.namespace:
            return False
        obj_labels = obj.metadata.labels
        return all(obj_labels.get(k) == v for k, v in self.labels.items())


@dataclass
class WatchEvent:
    type: EventType
    kind: ResourceKind
    obj: Resource


class Watch:
    """
    Stream of change events for one kind.

    Iterate with `async for event in watch`; close() ends the iteration.
    """

    def __init__(self, store: ResourceStore, kind: ResourceKind, selector: Selector):
        self.kind = kind
        self.selector = selector
        self._store = store
        self._queue: asyncio.Queue[WatchEvent | None] = asyncio.Queue()
        self._closed = False

    def _push(self, event: WatchEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._store._unsubscribe(self)
        self._queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> WatchEvent:
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event


# =============================================================================
# Helpers
# =============================================================================


async def with_deadline(awaitable: Awaitable[T], timeout: float, what: str) -> T:
    """
    Await with a deadline.

    Raises:
        TransientError: The call did not finish within `timeout` seconds.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        raise TransientError(f"{what} timed out after {timeout}s") from None


async def retry_on_conflict(fn: Callable[[], Awaitable[T]], attempts: int) -> T:
    """
    Run a read-modify-write function, re-running it on Conflict.

    `fn` must re-read the object on every call. After `attempts` collisions
    the last Conflict propagates so the caller can fall back to a requeue.
    """
    last: Conflict | None = None
    for attempt in range(max(attempts, 1)):
        try:
            return await fn()
        except Conflict as e:
            last = e
            logger.debug(f"Conflict on attempt {attempt + 1}/{attempts}: {e}")
    assert last is not None
    raise last


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# =============================================================================
# Store Base Class
# =============================================================================


class ResourceStore(abc.ABC):
    """Base class for resource stores."""

    def __init__(self, call_timeout: float = 10.0):
        self.call_timeout = call_timeout
        self._watches: list[Watch] = []

    # -------------------------------------------------------------------------
    # Storage primitives (implemented by backends)
    # -------------------------------------------------------------------------

    @abc.abstractmethod
    async def _fetch(
        self, kind: ResourceKind, namespace: str, name: str
    ) -> Resource | None:
        """Return a private copy of the stored object, or None."""

    @abc.abstractmethod
    async def _fetch_all(self, kind: ResourceKind, namespace: str) -> list[Resource]:
        """Return private copies of all objects of a kind ("" = all namespaces)."""

    @abc.abstractmethod
    async def _insert(self, obj: Resource) -> bool:
        """Store a new object. Returns False if the key is taken."""

    @abc.abstractmethod
    async def _swap(self, obj: Resource, expected_version: int) -> bool:
        """Replace the object if its stored version equals expected_version."""

    @abc.abstractmethod
    async def _remove(
        self, kind: ResourceKind, namespace: str, name: str, expected_version: int
    ) -> bool:
        """Delete the object if its stored version equals expected_version."""

    async def open(self) -> None:
        """Prepare the backend. Raises TransientError if it is unreachable."""

    async def close(self) -> None:
        for watch in list(self._watches):
            watch.close()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def get(self, kind: ResourceKind, key: str) -> Resource:
        """
        Get an object by "namespace/name" key.

        Raises:
            NotFound: No such object.
        """
        namespace, name = split_key(key)
        obj = await self._bounded(
            self._fetch(kind, namespace, name), f"get {kind.value} {key}"
        )
        if obj is None:
            raise NotFound(kind.value, key)
        return obj

    async def list(
        self, kind: ResourceKind, selector: Selector | None = None
    ) -> list[Resource]:
        """List objects of a kind matching the selector, sorted by key."""
        selector = selector or Selector()
        objs = await self._bounded(
            self._fetch_all(kind, selector.namespace), f"list {kind.value}"
        )
        return sorted((o for o in objs if selector.matches(o)), key=lambda o: o.key)

    def watch(self, kind: ResourceKind, selector: Selector | None = None) -> Watch:
        """Subscribe to change events of a kind."""
        watch = Watch(self, kind, selector or Selector())
        self._watches.append(watch)
        return watch

    async def create(self, obj: Resource) -> Resource:
        """
        Create an object. Version starts at 1.

        Raises:
            AlreadyExists: The key is taken.
        """
        new = obj.model_copy(deep=True)
        new.metadata.resource_version = 1
        new.metadata.creation_timestamp = new.metadata.creation_timestamp or _now()
        new.metadata.deletion_timestamp = None

        inserted = await self._bounded(
            self._insert(new), f"create {new.KIND.value} {new.key}"
        )
        if not inserted:
            raise AlreadyExists(new.KIND.value, new.key)

        logger.debug(f"Created {new.KIND.value} {new.key}")
        self._notify(EventType.ADDED, new)
        return new.model_copy(deep=True)

    async def update(
        self, obj: Resource, expected_version: int | None = None
    ) -> Resource:
        """
        Write an object if nobody changed it since it was read.

        Args:
            obj: Modified object.
            expected_version: Version the caller read (defaults to obj's own).

        Returns:
            The stored object with its new version. If the object is being
            deleted and has no finalizers left it is removed instead.

        Raises:
            NotFound: The object no longer exists.
            Conflict: The stored version differs from expected_version.
        """
        expected = obj.version if expected_version is None else expected_version
        new = obj.model_copy(deep=True)
        new.metadata.resource_version = expected + 1
        what = f"update {new.KIND.value} {new.key}"

        if new.is_deleting() and not new.metadata.finalizers:
            removed = await self._bounded(
                self._remove(new.KIND, new.namespace, new.name, expected), what
            )
            if not removed:
                await self._raise_write_failure(new, expected)
            logger.debug(f"Finalizers cleared, removed {new.KIND.value} {new.key}")
            self._notify(EventType.DELETED, new)
            return new.model_copy(deep=True)

        swapped = await self._bounded(self._swap(new, expected), what)
        if not swapped:
            await self._raise_write_failure(new, expected)

        self._notify(EventType.MODIFIED, new)
        return new.model_copy(deep=True)

    async def delete(self, kind: ResourceKind, key: str) -> None:
        """
        Delete an object.

        Objects with finalizers are only marked for deletion; the owner of the
        finalizer removes it once cleanup is done.

        Raises:
            NotFound: No such object.
            Conflict: The object changed between read and delete.
        """
        current = await self.get(kind, key)

        if current.metadata.finalizers:
            if current.is_deleting():
                return
            current.metadata.deletion_timestamp = _now()
            await self.update(current)
            logger.debug(
                f"Marked {kind.value} {key} for deletion "
                f"(finalizers: {current.metadata.finalizers})"
            )
            return

        removed = await self._bounded(
            self._remove(kind, current.namespace, current.name, current.version),
            f"delete {kind.value} {key}",
        )
        if not removed:
            await self._raise_write_failure(current, current.version)
        logger.debug(f"Deleted {kind.value} {key}")
        self._notify(EventType.DELETED, current)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _bounded(self, awaitable: Awaitable[T], what: str) -> T:
        return await with_deadline(awaitable, self.call_timeout, what)

    async def _raise_write_failure(self, obj: Resource, expected: int) -> None:
        current = await self._bounded(
            self._fetch(obj.KIND, obj.namespace, obj.name),
            f"get {obj.KIND.value} {obj.key}",
        )
        if current is None:
            raise NotFound(obj.KIND.value, obj.key)
        raise Conflict(obj.KIND.value, obj.key, expected, current.version)

    def _notify(self, event_type: EventType, obj: Resource) -> None:
        for watch in list(self._watches):
            if watch.kind == obj.KIND and watch.selector.matches(obj):
                watch._push(WatchEvent(event_type, obj.KIND, obj.model_copy(deep=True)))

    def _unsubscribe(self, watch: Watch) -> None:
        if watch in self._watches:
            self._watches.remove(watch)
