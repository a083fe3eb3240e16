"""
Store access for CLI commands.

Commands are synchronous; each call opens the SQLite store at
config.DB_FILE, runs one coroutine and closes it again. The running
controller picks the changes up through its store poller.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from staticip.config import config
from staticip.ipam.exceptions import NotFound
from staticip.models.enums import ResourceKind
from staticip.models.resources import Resource
from staticip.store.base import ResourceStore, Selector
from staticip.store.sqlite import SqliteStore

T = TypeVar("T")

# CLI name -> resource kind
KIND_ALIASES: dict[str, ResourceKind] = {
    "machine": ResourceKind.MACHINE,
    "machines": ResourceKind.MACHINE,
    "cluster": ResourceKind.CLUSTER,
    "clusters": ResourceKind.CLUSTER,
    "pool": ResourceKind.POOL,
    "pools": ResourceKind.POOL,
    "ippool": ResourceKind.POOL,
    "claim": ResourceKind.CLAIM,
    "claims": ResourceKind.CLAIM,
    "ipclaim": ResourceKind.CLAIM,
}


def resolve_kind(name: str) -> ResourceKind:
    """
    Raises:
        ValueError: Unknown kind name.
    """
    try:
        return KIND_ALIASES[name.lower()]
    except KeyError:
        raise ValueError(
            f"unknown kind '{name}' (expected machine, cluster, pool or claim)"
        ) from None


def _run(fn: Callable[[ResourceStore], Awaitable[T]]) -> T:
    async def runner() -> T:
        store = SqliteStore(
            config.DB_FILE, call_timeout=config.CALL_TIMEOUT_SECONDS, poll_interval=0
        )
        await store.open()
        try:
            return await fn(store)
        finally:
            await store.close()

    return asyncio.run(runner())


# =============================================================================
# Operations
# =============================================================================


def list_resources(kind: ResourceKind, namespace: str = "") -> list[Resource]:
    """List objects of a kind, optionally in one namespace."""
    return _run(lambda store: store.list(kind, Selector(namespace=namespace)))


def apply_resources(objs: list[Resource]) -> list[tuple[Resource, str]]:
    """
    Create objects or update their spec and labels.

    Status is never taken from the input, so applying a pool again keeps
    its allocations.

    Returns:
        (object, "created" | "configured" | "unchanged") per input object.
    """

    async def apply_all(store: ResourceStore) -> list[tuple[Resource, str]]:
        results = []
        for obj in objs:
            try:
                current = await store.get(obj.KIND, obj.key)
            except NotFound:
                results.append((await store.create(obj), "created"))
                continue

            spec = getattr(obj, "spec", None)
            if (
                getattr(current, "spec", None) == spec
                and current.metadata.labels == obj.metadata.labels
            ):
                results.append((current, "unchanged"))
                continue
            if spec is not None:
                current.spec = spec
            current.metadata.labels = obj.metadata.labels
            results.append((await store.update(current), "configured"))
        return results

    return _run(apply_all)


def delete_resource(kind: ResourceKind, key: str) -> str:
    """
    Delete an object.

    Returns:
        "deleted", or "marked for deletion" while finalizers remain.

    Raises:
        NotFound: No such object.
    """

    async def delete(store: ResourceStore) -> str:
        await store.delete(kind, key)
        try:
            await store.get(kind, key)
        except NotFound:
            return "deleted"
        return "marked for deletion"

    return _run(delete)
