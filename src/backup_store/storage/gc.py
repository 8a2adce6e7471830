"""
Garbage collection for unreferenced objects.

Implements mark-and-sweep over snapshot manifests.
"""

import logging
from typing import List, Set

from ..errors import GarbageCollectionError
from ..integrity.canonical import read_document
from ..integrity.hashing import is_valid_hash
from ..model.manifest import is_valid_manifest_shape, referenced_hashes
from .layout import MANIFEST_FILENAME, StorageLayout
from .object_store import ObjectStore

logger = logging.getLogger(__name__)


class GcReport:
    """Result of one collection pass."""

    def __init__(self, dry_run: bool, referenced: int):
        self.dry_run = dry_run
        self.referenced = referenced
        self.removed: List[str] = []
        self.kept = 0
        self.bytes_removed = 0
        self.bytes_kept = 0

    def to_dict(self) -> dict:
        return {
            'ok': True,
            'dryRun': self.dry_run,
            'referenced': self.referenced,
            'removed': len(self.removed),
            'kept': self.kept,
            'bytesRemoved': self.bytes_removed,
            'bytesKept': self.bytes_kept,
            'removedHashes': list(self.removed),
        }


class GarbageCollector:
    """
    Garbage collector for one machine's object store.

    Uses mark-and-sweep:
    1. Mark: union of hashes referenced by every snapshot manifest
    2. Sweep: delete every stored object outside that set

    Safety guarantees:
    - Never deletes an object any manifest references
    - Refuses to run if any manifest cannot be read, since its references
      would be unknown
    - Snapshots without a manifest (legacy trees) reference nothing
    """

    def __init__(self, layout: StorageLayout, store: ObjectStore):
        self.layout = layout
        self.store = store

    def mark(self) -> Set[str]:
        """
        Collect every hash referenced by any manifest.

        Raises GarbageCollectionError on an unreadable or malformed manifest.
        """
        referenced = set()
        for snapshot_id in self.layout.list_snapshot_ids():
            manifest_path = self.layout.snapshots_dir / snapshot_id / MANIFEST_FILENAME
            if not manifest_path.exists():
                continue
            try:
                doc = read_document(manifest_path)
            except (OSError, ValueError) as e:
                raise GarbageCollectionError(f"unreadable manifest for {snapshot_id}: {e}")
            if not is_valid_manifest_shape(doc):
                raise GarbageCollectionError(f"malformed manifest for {snapshot_id}")
            referenced.update(h for h in referenced_hashes(doc) if is_valid_hash(h))
        return referenced

    def collect(self, dry_run: bool = False) -> GcReport:
        """
        Run garbage collection.

        Args:
            dry_run: if True, only report what would be deleted

        Returns GcReport with counts and byte totals.
        """
        referenced = self.mark()
        report = GcReport(dry_run, len(referenced))

        for obj_hash in self.store.list_all_objects():
            size = self.store.object_size(obj_hash)
            if obj_hash in referenced:
                report.kept += 1
                report.bytes_kept += size
                continue
            report.removed.append(obj_hash)
            report.bytes_removed += size
            if not dry_run:
                self.store.delete_object(obj_hash)

        logger.info(
            "gc%s: %d referenced, %d removed (%d bytes), %d kept",
            " (dry run)" if dry_run else "", report.referenced,
            len(report.removed), report.bytes_removed, report.kept,
        )
        return report
