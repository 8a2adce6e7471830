"""
Pack metadata (pack.json).
"""

from typing import Optional

from ..errors import PackInvalidError, PackUnsupportedError
from ..storage.layout import TOOL_TAG, utc_now_iso

PACK_SCHEMA = 1

REQUIRED_FIELDS = ('snapshotId', 'machineId', 'createdAt')


class PackMeta:
    """
    Identifying header written as the first entry of every pack.

    Fields:
        schema: pack format version
        tool: producer tag
        snapshot_id: id of the packed snapshot
        machine_id: machine the snapshot was taken on
        created_at: snapshot creation time
        packed_at: export time
    """

    def __init__(
        self,
        snapshot_id: str,
        machine_id: str,
        created_at: str,
        packed_at: Optional[str] = None,
        schema: int = PACK_SCHEMA,
        tool: str = TOOL_TAG,
    ):
        self.schema = schema
        self.tool = tool
        self.snapshot_id = snapshot_id
        self.machine_id = machine_id
        self.created_at = created_at
        self.packed_at = packed_at or utc_now_iso()

    @classmethod
    def for_manifest(cls, manifest_doc: dict, snapshot_id: str, machine_id: str) -> 'PackMeta':
        """Build the header for a manifest, falling back to the given ids."""
        return cls(
            snapshot_id=manifest_doc.get('id') or snapshot_id,
            machine_id=manifest_doc.get('machineId') or machine_id,
            created_at=manifest_doc.get('createdAt') or utc_now_iso(),
        )

    def to_dict(self) -> dict:
        return {
            'schema': self.schema,
            'tool': self.tool,
            'snapshotId': self.snapshot_id,
            'machineId': self.machine_id,
            'createdAt': self.created_at,
            'packedAt': self.packed_at,
        }

    @classmethod
    def from_dict(cls, data) -> 'PackMeta':
        """
        Parse and validate a pack.json document.

        Raises PackInvalidError for a non-object document or missing fields,
        PackUnsupportedError for a schema other than PACK_SCHEMA.
        """
        if not isinstance(data, dict):
            raise PackInvalidError("pack.json is not an object")
        schema = data.get('schema')
        if isinstance(schema, bool) or schema != PACK_SCHEMA:
            raise PackUnsupportedError(schema, PACK_SCHEMA)
        missing = [f for f in REQUIRED_FIELDS if not isinstance(data.get(f), str) or not data.get(f)]
        if missing:
            raise PackInvalidError(
                f"pack.json missing required fields: {', '.join(missing)}",
                hint="Expected snapshotId, machineId, createdAt.",
            )
        return cls(
            snapshot_id=data['snapshotId'],
            machine_id=data['machineId'],
            created_at=data['createdAt'],
            packed_at=data.get('packedAt'),
            schema=schema,
            tool=data.get('tool', ''),
        )

    def __repr__(self) -> str:
        return f"PackMeta(snapshot_id={self.snapshot_id}, machine_id={self.machine_id})"
