"""
SQLite resource store.

Persists objects through the peewee StoredResource model. Writes are single
compare-and-swap statements (`UPDATE ... WHERE version = expected`), so
optimistic concurrency also holds between processes sharing the file, e.g.
the controller and `staticip apply`.

Writes made by this process are announced to watchers immediately. Writes by
other processes are picked up by a poller that diffs row versions every
`poll_interval` seconds.
"""

import asyncio
import json

import peewee

from staticip.db.base import close_database, db, initialize_database, run_in_executor
from staticip.db.resource import StoredResource
from staticip.ipam.exceptions import TransientError
from staticip.models.enums import EventType, ResourceKind
from staticip.models.resources import Resource
from staticip.store.base import ResourceStore
from staticip.utils.logger import get_logger

logger = get_logger(__name__)

_RowKey = tuple[str, str, str]


def _row_key(obj: Resource) -> _RowKey:
    return (obj.KIND.value, obj.namespace, obj.name)


class SqliteStore(ResourceStore):
    """peewee/SQLite-backed store."""

    def __init__(
        self,
        db_path: str,
        call_timeout: float = 10.0,
        poll_interval: float = 2.0,
    ):
        super().__init__(call_timeout=call_timeout)
        self.db_path = db_path
        self.poll_interval = poll_interval

        # Last object seen per row, used to diff external writes
        self._known: dict[_RowKey, Resource] = {}
        self._poll_task: asyncio.Task | None = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def open(self) -> None:
        """
        Open the database and start polling for external writes.

        Raises:
            TransientError: The database cannot be opened.
        """
        try:
            await run_in_executor(initialize_database, self.db_path)
        except peewee.OperationalError as e:
            raise TransientError(f"cannot open store '{self.db_path}': {e}") from e

        for obj in await run_in_executor(self._load_all_sync):
            self._known[_row_key(obj)] = obj

        if self.poll_interval > 0:
            self._poll_task = asyncio.create_task(
                self._poll_loop(), name="sqlite_store_poller"
            )

    async def close(self) -> None:
        await super().close()
        if self._poll_task is not None:
            self._poll_task.cancel()
            await asyncio.gather(self._poll_task, return_exceptions=True)
            self._poll_task = None
        close_database()

    # =========================================================================
    # Storage Primitives
    # =========================================================================

    async def _fetch(self, kind, namespace, name):
        return await self._run(self._fetch_sync, kind, namespace, name)

    async def _fetch_all(self, kind, namespace):
        return await self._run(self._fetch_all_sync, kind, namespace)

    async def _insert(self, obj):
        return await self._run(self._insert_sync, obj)

    async def _swap(self, obj, expected_version):
        return await self._run(self._swap_sync, obj, expected_version)

    async def _remove(self, kind, namespace, name, expected_version):
        return await self._run(
            self._remove_sync, kind, namespace, name, expected_version
        )

    async def _run(self, func, *args):
        try:
            return await run_in_executor(func, *args)
        except (peewee.OperationalError, peewee.InterfaceError) as e:
            raise TransientError(f"store unavailable: {e}") from e

    # -------------------------------------------------------------------------
    # Blocking implementations
    # -------------------------------------------------------------------------

    @staticmethod
    def _where(kind: ResourceKind, namespace: str, name: str):
        return (
            (StoredResource.kind == kind.value)
            & (StoredResource.namespace == namespace)
            & (StoredResource.name == name)
        )

    def _fetch_sync(self, kind, namespace, name) -> Resource | None:
        row = StoredResource.get_or_none(self._where(kind, namespace, name))
        return row.get_resource() if row else None

    def _fetch_all_sync(self, kind, namespace) -> list[Resource]:
        query = StoredResource.select().where(StoredResource.kind == kind.value)
        if namespace:
            query = query.where(StoredResource.namespace == namespace)
        return [row.get_resource() for row in query]

    def _load_all_sync(self) -> list[Resource]:
        return [row.get_resource() for row in StoredResource.select()]

    def _insert_sync(self, obj: Resource) -> bool:
        try:
            with db.atomic():
                StoredResource.from_resource(obj).save(force_insert=True)
            return True
        except peewee.IntegrityError:
            return False

    def _swap_sync(self, obj: Resource, expected_version: int) -> bool:
        updated = (
            StoredResource.update(
                version=obj.version, body=json.dumps(obj.to_dict())
            )
            .where(
                self._where(obj.KIND, obj.namespace, obj.name)
                & (StoredResource.version == expected_version)
            )
            .execute()
        )
        return updated == 1

    def _remove_sync(self, kind, namespace, name, expected_version) -> bool:
        deleted = (
            StoredResource.delete()
            .where(
                self._where(kind, namespace, name)
                & (StoredResource.version == expected_version)
            )
            .execute()
        )
        return deleted == 1

    # =========================================================================
    # Change Tracking
    # =========================================================================

    def _notify(self, event_type: EventType, obj: Resource) -> None:
        if event_type == EventType.DELETED:
            self._known.pop(_row_key(obj), None)
        else:
            self._known[_row_key(obj)] = obj.model_copy(deep=True)
        super()._notify(event_type, obj)

    async def _poll_loop(self) -> None:
        """Periodically diff stored versions against what this process has seen."""
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.poll_once()
            except TransientError as e:
                logger.warning(f"Store poll failed: {e}")
            except Exception as e:
                logger.exception(f"Unexpected error polling store: {e}")

    async def poll_once(self) -> int:
        """
        Emit watch events for writes made by other processes.

        Returns:
            Number of events emitted.
        """
        current = {
            _row_key(obj): obj for obj in await self._run(self._load_all_sync)
        }
        emitted = 0

        for key, obj in current.items():
            known = self._known.get(key)
            if known is None:
                self._notify(EventType.ADDED, obj)
                emitted += 1
            elif known.version != obj.version:
                self._notify(EventType.MODIFIED, obj)
                emitted += 1

        for key in set(self._known) - set(current):
            self._notify(EventType.DELETED, self._known[key])
            emitted += 1

        if emitted:
            logger.debug(f"Store poll picked up {emitted} external change(s)")
        return emitted
