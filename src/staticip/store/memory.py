"""
In-process resource store.

Objects live in a dict keyed by (kind, namespace, name). Used by the test
suite and by `staticip run --store memory` for dry runs.
"""

from staticip.models.enums import ResourceKind
from staticip.models.resources import Resource
from staticip.store.base import ResourceStore


class MemoryStore(ResourceStore):
    """Dict-backed store. All primitives are synchronous under the hood."""

    def __init__(self, call_timeout: float = 10.0):
        super().__init__(call_timeout=call_timeout)
        self._objects: dict[tuple[ResourceKind, str, str], Resource] = {}

    async def _fetch(self, kind, namespace, name):
        obj = self._objects.get((kind, namespace, name))
        return obj.model_copy(deep=True) if obj is not None else None

    async def _fetch_all(self, kind, namespace):
        return [
            obj.model_copy(deep=True)
            for (k, ns, _), obj in self._objects.items()
            if k == kind and (not namespace or ns == namespace)
        ]

    async def _insert(self, obj: Resource) -> bool:
        key = (obj.KIND, obj.namespace, obj.name)
        if key in self._objects:
            return False
        self._objects[key] = obj.model_copy(deep=True)
        return True

    async def _swap(self, obj: Resource, expected_version: int) -> bool:
        key = (obj.KIND, obj.namespace, obj.name)
        current = self._objects.get(key)
        if current is None or current.version != expected_version:
            return False
        self._objects[key] = obj.model_copy(deep=True)
        return True

    async def _remove(self, kind, namespace, name, expected_version) -> bool:
        key = (kind, namespace, name)
        current = self._objects.get(key)
        if current is None or current.version != expected_version:
            return False
        del self._objects[key]
        return True

    def __len__(self) -> int:
        return len(self._objects)
