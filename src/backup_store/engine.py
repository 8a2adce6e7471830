"""
Backup Store Engine.

Main entry point coordinating all components for one (dest, machine) pair.
"""

import logging
import os
import secrets
import shutil
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from .errors import (
    FsckFailedError,
    SnapshotEmptyError,
    SnapshotLegacyError,
    SnapshotNotFoundError,
    StorageError,
)
from .integration.pack_codec import ExportResult, ImportResult, export_pack, import_pack
from .integrity.diff import DiffResult, diff_manifests
from .integrity.verification import FsckReport, VerifyReport, run_fsck, verify_snapshot
from .model.manifest import Manifest
from .snapshots.creator import SnapshotCreator, SnapshotResult
from .snapshots.identifiers import parse_snapshot_id
from .snapshots.legacy import (
    CasLayout,
    EmptyLayout,
    LegacyTreeLayout,
    MigrationResult,
    SnapshotLayout,
    detect_layout,
    migrate_legacy_snapshot,
)
from .snapshots.restore import RestoreResult, restore_snapshot
from .snapshots.retention import DEFAULT_RETENTION, RetentionPolicy, plan_prune
from .storage.gc import GarbageCollector, GcReport
from .storage.layout import StorageLayout
from .storage.lock import DEFAULT_MAX_AGE_SECONDS, LockHandle, machine_lock
from .storage.object_store import ObjectStore

logger = logging.getLogger(__name__)


class BackupStoreEngine:
    """
    Main engine for backup store operations.

    This is the primary interface for:
    - Initializing a destination
    - Creating, listing, restoring and pruning snapshots
    - Verifying, diffing and auditing (fsck) snapshots
    - Collecting unreferenced objects
    - Exporting and importing packs

    Mutating operations (snapshot, prune, gc, import, export, migrate) run
    under the machine lock; read-only ones do not.
    """

    def __init__(
        self,
        dest: str | Path,
        machine_id: str,
        retention: RetentionPolicy = DEFAULT_RETENTION,
        trust_mtime: bool = True,
        hash_workers: Optional[int] = None,
        lock_max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
    ):
        """
        Initialize the engine.

        Args:
            dest: destination root (the BackupStore directory lives under it)
            machine_id: machine namespace inside the destination
            retention: policy used by prune
            trust_mtime: allow the size+mtime dedup fast path
            hash_workers: size of the hashing pool
            lock_max_age_seconds: age after which a held lock is reported stale
        """
        self.layout = StorageLayout(dest, machine_id)
        self.object_store = ObjectStore(self.layout)
        self.retention = retention
        self.lock_max_age_seconds = lock_max_age_seconds
        self.creator = SnapshotCreator(self.layout, self.object_store, trust_mtime, hash_workers)
        self.gc = GarbageCollector(self.layout, self.object_store)

    @classmethod
    def from_settings(cls, settings) -> 'BackupStoreEngine':
        """Build an engine from config.Settings."""
        return cls(
            settings.dest,
            settings.machine_id,
            retention=settings.retention,
            trust_mtime=settings.trust_mtime,
            hash_workers=settings.hash_workers,
        )

    @property
    def dest(self) -> Path:
        return self.layout.dest

    @property
    def machine_id(self) -> str:
        return self.layout.machine_id

    def initialize(self) -> dict:
        """
        Initialize the destination.

        Writes the root marker and creates the machine directories.
        Safe to call multiple times (idempotent).
        """
        created = self.layout.initialize()
        self.layout.ensure_directories()
        if created:
            logger.info("Initialized destination %s", self.layout.root)
        return {
            'ok': True,
            'dest': str(self.layout.dest),
            'root': str(self.layout.root),
            'machineId': self.machine_id,
            'created': created,
        }

    @contextmanager
    def _locked(self, command: str, force_lock: bool) -> Iterator[LockHandle]:
        with machine_lock(self.layout, command, force_lock, self.lock_max_age_seconds) as handle:
            yield handle

    # ========== Snapshots ==========

    def create_snapshot(
        self,
        source_root: str | Path,
        includes: Sequence[str] = (),
        excludes: Sequence[str] = (),
        label: Optional[str] = None,
        dry_run: bool = False,
        force_lock: bool = False,
    ) -> SnapshotResult:
        """
        Snapshot source_root and publish it as the new latest snapshot.

        A dry run only reports the id that would be used and takes no lock.
        """
        self.layout.require_initialized()
        if dry_run:
            return self.creator.create(source_root, includes, excludes, label, dry_run=True)
        with self._locked('snapshot', force_lock):
            return self.creator.create(source_root, includes, excludes, label)

    def latest(self) -> Optional[str]:
        """Return the snapshot id recorded in latest.json, if any."""
        self.layout.require_initialized()
        return self.layout.read_latest()

    def list_snapshots(self) -> List[dict]:
        """
        List snapshots in timestamp order.

        Each entry carries the layout kind, label and file count; label and
        files are None when there is no valid manifest.
        """
        self.layout.require_initialized()
        entries = []
        for snapshot_id in self.layout.list_snapshot_ids():
            layout = detect_layout(self.layout.snapshots_dir / snapshot_id)
            ts = parse_snapshot_id(snapshot_id)
            label = files = None
            if isinstance(layout, CasLayout):
                label = layout.manifest.get('label')
                files = len(layout.manifest['sha256'])
            entries.append({
                'id': snapshot_id,
                'tsMs': int(ts.timestamp() * 1000) if ts else None,
                'layout': layout.kind,
                'label': label,
                'files': files,
            })
        entries.sort(key=lambda e: (e['tsMs'] is None, e['tsMs'] or 0, e['id']))
        return entries

    def get_layout(self, snapshot_id: str) -> SnapshotLayout:
        """
        Classify a snapshot directory.

        Raises SnapshotNotFoundError if it does not exist.
        """
        self.layout.require_initialized()
        snapshot_dir = self.layout.get_snapshot_dir(snapshot_id)
        if not snapshot_dir.is_dir():
            raise SnapshotNotFoundError(snapshot_id)
        return detect_layout(snapshot_dir)

    def get_manifest(self, snapshot_id: str) -> dict:
        """
        Load the manifest document of a manifest-layout snapshot.

        Raises SnapshotNotFoundError, SnapshotLegacyError or
        SnapshotEmptyError when there is no usable manifest.
        """
        layout = self.get_layout(snapshot_id)
        if isinstance(layout, CasLayout):
            return layout.manifest
        if isinstance(layout, LegacyTreeLayout):
            raise SnapshotLegacyError(snapshot_id)
        raise SnapshotEmptyError(snapshot_id)

    def migrate(
        self,
        snapshot_id: str,
        dry_run: bool = False,
        label: Optional[str] = None,
        force_lock: bool = False,
    ) -> Optional[MigrationResult]:
        """
        Convert a legacy tree snapshot to the manifest layout in place.

        Returns None if the snapshot already has a manifest.
        """
        layout = self.get_layout(snapshot_id)
        if isinstance(layout, CasLayout):
            return None
        if isinstance(layout, EmptyLayout):
            raise SnapshotEmptyError(snapshot_id)
        snapshot_dir = self.layout.get_snapshot_dir(snapshot_id)
        if dry_run:
            return migrate_legacy_snapshot(
                snapshot_dir, self.object_store, self.machine_id, snapshot_id, label, dry_run=True,
            )
        with self._locked('migrate', force_lock):
            self.layout.ensure_directories()
            return migrate_legacy_snapshot(
                snapshot_dir, self.object_store, self.machine_id, snapshot_id, label,
            )

    def restore(
        self,
        snapshot_id: str,
        target: Optional[str | Path] = None,
        dry_run: bool = False,
    ) -> RestoreResult:
        """
        Materialize a snapshot under target.

        The default target is backup-store-restore-<id> in the working
        directory. latest.json is not touched.
        """
        manifest = Manifest.from_dict(self.get_manifest(snapshot_id))
        target = Path(target) if target else Path.cwd() / f"backup-store-restore-{snapshot_id}"
        return restore_snapshot(manifest, self.object_store, target, dry_run)

    def prune(
        self,
        dry_run: bool = False,
        now: Optional[datetime] = None,
        force_lock: bool = False,
    ) -> dict:
        """
        Delete snapshots outside the retention policy.

        The most recent snapshot and the snapshot named by latest.json are
        always kept, as are ids that do not parse as timestamps. Objects are
        left for gc.
        """
        self.layout.require_initialized()
        with self._locked('prune', force_lock):
            keep, delete = plan_prune(self.layout.list_snapshot_ids(), now, self.retention)
            latest = self.layout.read_latest()
            if latest in delete:
                delete.remove(latest)
                keep = sorted(keep + [latest])
            if not dry_run:
                for snapshot_id in delete:
                    self._remove_snapshot(snapshot_id)
        logger.info("prune%s: kept %d, removed %d", " (dry run)" if dry_run else "", len(keep), len(delete))
        return {'ok': True, 'dryRun': dry_run, 'kept': keep, 'removed': delete}

    def _remove_snapshot(self, snapshot_id: str) -> None:
        """Move the snapshot out of snapshots/ first so it disappears atomically."""
        snapshot_dir = self.layout.get_snapshot_dir(snapshot_id)
        doomed = self.layout.staging_dir / f"{snapshot_id}.del.{secrets.token_hex(4)}"
        try:
            self.layout.staging_dir.mkdir(parents=True, exist_ok=True)
            os.rename(snapshot_dir, doomed)
            shutil.rmtree(doomed)
        except OSError as e:
            raise StorageError("remove_snapshot", str(snapshot_dir), e)

    # ========== Integrity ==========

    def verify(self, snapshot_id: str, migrate: bool = False, force_lock: bool = False) -> VerifyReport:
        """
        Re-hash every object of a snapshot.

        With migrate=True a legacy tree snapshot is migrated first.
        """
        if migrate:
            self.migrate(snapshot_id, force_lock=force_lock)
        manifest = self.get_manifest(snapshot_id)
        return verify_snapshot(manifest, self.object_store, snapshot_id)

    def diff(self, snapshot_a: str, snapshot_b: str) -> DiffResult:
        """Compare two snapshots' path -> hash maps."""
        return diff_manifests(self.get_manifest(snapshot_a), self.get_manifest(snapshot_b))

    def fsck(self, verify_hash: bool = False) -> FsckReport:
        """
        Audit every snapshot against the object store.

        Raises FsckFailedError (carrying the report) if anything is wrong.
        """
        self.layout.require_initialized()
        report = run_fsck(self.layout, self.object_store, verify_hash)
        if not report.ok:
            raise FsckFailedError(report)
        return report

    # ========== Garbage Collection ==========

    def garbage_collect(self, dry_run: bool = False, force_lock: bool = False) -> GcReport:
        """
        Run garbage collection.

        Deletes objects not referenced by any snapshot manifest.

        Args:
            dry_run: if True, only report what would be deleted
        """
        self.layout.require_initialized()
        with self._locked('gc', force_lock):
            return self.gc.collect(dry_run=dry_run)

    # ========== Packs ==========

    def export_pack(
        self,
        snapshot_id: str,
        out_path: Optional[str | Path] = None,
        force_lock: bool = False,
    ) -> ExportResult:
        """Write a pack for a manifest-layout snapshot."""
        self.layout.require_initialized()
        with self._locked('export', force_lock):
            manifest = self.get_manifest(snapshot_id)
            return export_pack(self.layout, self.object_store, manifest, snapshot_id, out_path)

    def import_pack(
        self,
        pack_path: str | Path,
        force: bool = False,
        force_lock: bool = False,
    ) -> ImportResult:
        """Import a pack; force overwrites an existing snapshot's manifest."""
        self.layout.require_initialized()
        with self._locked('import', force_lock):
            return import_pack(self.layout, self.object_store, pack_path, force)

    # ========== Statistics ==========

    def get_statistics(self) -> dict:
        self.layout.require_initialized()
        stats = self.object_store.get_stats()
        stats['snapshots'] = len(self.layout.list_snapshot_ids())
        stats['latest'] = self.layout.read_latest()
        return stats

    def __repr__(self) -> str:
        return f"BackupStoreEngine(dest={self.layout.dest}, machine_id={self.machine_id})"
