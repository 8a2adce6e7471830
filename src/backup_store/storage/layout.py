"""
Filesystem layout for a destination and machine.

A StorageLayout is the explicit (dest, machine_id) context passed into every
core operation; nothing is inferred from the environment.
"""

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import List

from ..errors import InvalidIdentifierError, NotInitializedError, StorageError
from ..integrity.canonical import read_document, write_document_atomic
from ..integrity.hashing import get_hash_prefix, is_valid_hash

ROOT_DIRNAME = 'BackupStore'
MARKER_FILENAME = 'BACKUP_STORE_ROOT.json'
MANIFEST_FILENAME = 'manifest.json'
LOCK_FILENAME = 'lock.json'
LATEST_FILENAME = 'latest.json'
MARKER_SCHEMA = 1
TOOL_TAG = 'backup-store'

_IDENTIFIER_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]*\Z')


def validate_identifier(kind: str, value) -> str:
    """
    Check that value is safe to use as a single path component.

    Raises InvalidIdentifierError otherwise.
    """
    if not isinstance(value, str) or not _IDENTIFIER_RE.match(value) or '..' in value:
        raise InvalidIdentifierError(kind, str(value))
    return value


class StorageLayout:
    """
    Manages filesystem layout for one machine under a destination.

    Layout:
        dest/
            BackupStore/
                BACKUP_STORE_ROOT.json      # presence = initialized
                machines/<machine_id>/
                    snapshots/<id>/manifest.json
                    objects/<prefix>/<hash>
                    staging/<tmp-name>/
                    lock/lock.json
                    latest.json
    """

    def __init__(self, dest: str | Path, machine_id: str):
        """Initialize storage layout for dest and machine_id."""
        self.dest = Path(dest).resolve()
        self.machine_id = validate_identifier('machine id', machine_id)
        self.root = self.dest / ROOT_DIRNAME
        self.marker_path = self.root / MARKER_FILENAME
        self.machine_root = self.root / 'machines' / machine_id
        self.snapshots_dir = self.machine_root / 'snapshots'
        self.objects_dir = self.machine_root / 'objects'
        self.staging_dir = self.machine_root / 'staging'
        self.lock_dir = self.machine_root / 'lock'
        self.lock_path = self.lock_dir / LOCK_FILENAME
        self.latest_path = self.machine_root / LATEST_FILENAME

    def initialize(self) -> bool:
        """
        Write the destination marker and create the machine root.

        Idempotent. Returns True if the marker was newly created.
        """
        created = False
        if not self.marker_path.exists():
            write_document_atomic(self.marker_path, {
                'createdAt': utc_now_iso(),
                'schema': MARKER_SCHEMA,
                'tool': TOOL_TAG,
            })
            created = True
        try:
            self.machine_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError("initialize", str(self.machine_root), e)
        return created

    def is_initialized(self) -> bool:
        return self.marker_path.is_file()

    def require_initialized(self) -> None:
        if not self.is_initialized():
            raise NotInitializedError(str(self.dest))

    def ensure_directories(self) -> None:
        """Create snapshots, objects and staging directories."""
        for directory in (self.snapshots_dir, self.objects_dir, self.staging_dir):
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError("mkdir", str(directory), e)

    # ========== Objects ==========

    def get_object_path(self, obj_hash: str) -> Path:
        """
        Get filesystem path for an object by its hash.

        Uses 2-character prefix for directory sharding.
        Raises ValueError for anything that is not a hex SHA-256 digest.
        """
        if not is_valid_hash(obj_hash):
            raise ValueError(f"Invalid object hash: {obj_hash!r}")
        prefix = get_hash_prefix(obj_hash, 2)
        return self.objects_dir / prefix / obj_hash

    def object_exists(self, obj_hash: str) -> bool:
        if not is_valid_hash(obj_hash):
            return False
        return self.get_object_path(obj_hash).is_file()

    def list_all_objects(self) -> List[str]:
        """
        List all object hashes in the store.

        Scans all prefix directories; temp files and foreign names are skipped.
        """
        objects = []
        if not self.objects_dir.exists():
            return objects
        try:
            for prefix_dir in sorted(self.objects_dir.iterdir()):
                if not prefix_dir.is_dir():
                    continue
                for obj_file in sorted(prefix_dir.iterdir()):
                    if obj_file.is_file() and is_valid_hash(obj_file.name) \
                            and obj_file.name[:2] == prefix_dir.name:
                        objects.append(obj_file.name)
        except OSError as e:
            raise StorageError("list_objects", str(self.objects_dir), e)
        return objects

    # ========== Snapshots ==========

    def get_snapshot_dir(self, snapshot_id: str) -> Path:
        validate_identifier('snapshot id', snapshot_id)
        return self.snapshots_dir / snapshot_id

    def get_manifest_path(self, snapshot_id: str) -> Path:
        return self.get_snapshot_dir(snapshot_id) / MANIFEST_FILENAME

    def list_snapshot_ids(self) -> List[str]:
        """List snapshot directory names, sorted."""
        if not self.snapshots_dir.exists():
            return []
        try:
            return sorted(d.name for d in self.snapshots_dir.iterdir() if d.is_dir())
        except OSError as e:
            raise StorageError("list_snapshots", str(self.snapshots_dir), e)

    # ========== Latest pointer ==========

    def read_latest(self):
        """Return the latest snapshot id, or None if unset or unreadable."""
        if not self.latest_path.exists():
            return None
        try:
            pointer = read_document(self.latest_path)
        except (OSError, ValueError):
            return None
        if not isinstance(pointer, dict):
            return None
        snapshot_id = pointer.get('snapshotId')
        return snapshot_id if isinstance(snapshot_id, str) and snapshot_id else None

    def write_latest(self, snapshot_id: str) -> None:
        write_document_atomic(self.latest_path, {
            'snapshotId': snapshot_id,
            'updatedAt': utc_now_iso(),
        })

    def __repr__(self) -> str:
        return f"StorageLayout(dest={self.dest}, machine_id={self.machine_id})"


def utc_now_iso(now: datetime = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a Z suffix."""
    now = now or datetime.now(timezone.utc)
    now = now.astimezone(timezone.utc)
    return now.strftime('%Y-%m-%dT%H:%M:%S.') + f"{now.microsecond // 1000:03d}Z"
