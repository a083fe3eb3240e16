"""
StoredResource database model.

One row per stored object. The object body is kept as JSON; kind,
namespace, name and version are real columns so lookups and
compare-and-swap updates are single indexed statements.
"""

import json

import peewee

from staticip.db.base import BaseModel
from staticip.models.resources import Resource, parse_resource


# =============================================================================
# StoredResource Model
# =============================================================================


class StoredResource(BaseModel):
    """
    A persisted resource.

    Attributes:
        kind: Resource kind ("Machine", "IPPool", ...).
        namespace: Object namespace.
        name: Object name (unique within kind + namespace).
        version: resource_version of the stored body.
        body: Full object serialized as JSON.
    """

    kind = peewee.CharField(index=True)
    namespace = peewee.CharField(index=True)
    name = peewee.CharField()
    version = peewee.IntegerField(default=1)
    body = peewee.TextField()

    class Meta:
        table_name = "resources"
        indexes = ((("kind", "namespace", "name"), True),)

    # =========================================================================
    # Body Accessors
    # =========================================================================

    def get_resource(self) -> Resource:
        """Deserialize the stored body into its Resource class."""
        return parse_resource(json.loads(self.body))

    def set_resource(self, obj: Resource) -> None:
        """Store an object body and mirror its identity columns."""
        self.kind = obj.KIND.value
        self.namespace = obj.namespace
        self.name = obj.name
        self.version = obj.version
        self.body = json.dumps(obj.to_dict())

    @classmethod
    def from_resource(cls, obj: Resource) -> "StoredResource":
        row = cls()
        row.set_resource(obj)
        return row
