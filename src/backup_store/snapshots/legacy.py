"""
Snapshot layout detection and legacy migration.

Older snapshots were plain copies of the source tree with no manifest.
detect_layout() classifies a snapshot directory once; callers branch on
the returned variant type instead of probing the directory themselves.
"""

import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from ..errors import StorageError
from ..integrity.canonical import read_document, write_document_atomic
from ..model.manifest import Manifest, is_valid_manifest_shape
from ..storage.layout import MANIFEST_FILENAME, utc_now_iso
from ..storage.object_store import ObjectStore
from .selection import SourceFile, normalize_rel

logger = logging.getLogger(__name__)

LAYOUT_CAS = 'cas'
LAYOUT_LEGACY_TREE = 'legacy-tree'
LAYOUT_EMPTY = 'empty'


@dataclass(frozen=True)
class CasLayout:
    """Snapshot described by a valid manifest."""

    manifest_path: Path
    manifest: dict
    kind = LAYOUT_CAS


@dataclass(frozen=True)
class LegacyTreeLayout:
    """Plain file tree; manifest_invalid is set when a bad manifest.json is present."""

    manifest_path: Path
    manifest_invalid: bool = False
    kind = LAYOUT_LEGACY_TREE


@dataclass(frozen=True)
class EmptyLayout:
    """Directory with neither a manifest nor any entries."""

    manifest_path: Path
    kind = LAYOUT_EMPTY


SnapshotLayout = Union[CasLayout, LegacyTreeLayout, EmptyLayout]


def detect_layout(snapshot_dir: str | Path) -> SnapshotLayout:
    """Classify a snapshot directory as CAS, legacy tree, or empty."""
    snapshot_dir = Path(snapshot_dir)
    manifest_path = snapshot_dir / MANIFEST_FILENAME

    if manifest_path.exists():
        try:
            doc = read_document(manifest_path)
        except (OSError, ValueError):
            return LegacyTreeLayout(manifest_path, manifest_invalid=True)
        if is_valid_manifest_shape(doc):
            return CasLayout(manifest_path, doc)
        return LegacyTreeLayout(manifest_path, manifest_invalid=True)

    try:
        has_entries = any(
            entry.is_file() or entry.is_dir() for entry in os.scandir(snapshot_dir)
        )
    except OSError:
        has_entries = False
    if not has_entries:
        return EmptyLayout(manifest_path)
    return LegacyTreeLayout(manifest_path)


def list_legacy_files(snapshot_dir: str | Path) -> List[SourceFile]:
    """All regular files in a legacy tree, minus any stray top-level manifest."""
    snapshot_dir = Path(snapshot_dir)
    files = []
    for dirpath, dirnames, filenames in os.walk(snapshot_dir, onerror=_walk_failed):
        dirnames[:] = sorted(
            d for d in dirnames if not os.path.islink(os.path.join(dirpath, d))
        )
        for name in filenames:
            abs_path = Path(dirpath) / name
            if not stat.S_ISREG(os.lstat(abs_path).st_mode):
                continue
            rel = normalize_rel(os.path.relpath(abs_path, snapshot_dir))
            if rel == MANIFEST_FILENAME:
                continue
            files.append(SourceFile(abs_path, rel))
    files.sort(key=lambda f: f.rel_path)
    return files


def _walk_failed(err: OSError) -> None:
    raise StorageError("list legacy files", str(err.filename), err)


class MigrationResult:
    """Outcome of migrating (or planning to migrate) one legacy snapshot."""

    def __init__(self, manifest: Manifest, files: int, dry_run: bool):
        self.manifest = manifest
        self.files = files
        self.dry_run = dry_run

    def to_dict(self) -> dict:
        return {
            'snapshotId': self.manifest.id,
            'files': self.files,
            'dryRun': self.dry_run,
            'stats': dict(self.manifest.stats),
        }


def migrate_legacy_snapshot(
    snapshot_dir: str | Path,
    store: ObjectStore,
    machine_id: str,
    snapshot_id: str,
    label: Optional[str] = None,
    dry_run: bool = False,
) -> MigrationResult:
    """
    Convert a legacy tree snapshot to the manifest layout in place.

    Each file is hashed and copied into the object store (existing objects
    are reused), then a manifest tagged with its legacy origin is written
    next to the original files. The directory itself is not moved.
    """
    snapshot_dir = Path(snapshot_dir)
    files = list_legacy_files(snapshot_dir)
    migrated_at = utc_now_iso()

    manifest = Manifest(
        snapshot_id=snapshot_id,
        created_at=migrated_at,
        machine_id=machine_id,
        label=label,
        legacy={'layout': 'tree', 'migratedAt': migrated_at},
    )

    if dry_run:
        return MigrationResult(manifest, len(files), dry_run=True)

    for source in files:
        try:
            obj_hash, created = store.put_file(source.abs_path)
        except OSError as e:
            raise StorageError("migrate", str(source.abs_path), e)
        manifest.sha256[source.rel_path] = obj_hash
        manifest.stats['files'] += 1
        manifest.stats['stored' if created else 'reused'] += 1

    write_document_atomic(snapshot_dir / MANIFEST_FILENAME, manifest.to_dict())
    logger.info(
        "Migrated legacy snapshot %s (%d files, %d stored)",
        snapshot_id, manifest.stats['files'], manifest.stats['stored'],
    )
    return MigrationResult(manifest, len(files), dry_run=False)
