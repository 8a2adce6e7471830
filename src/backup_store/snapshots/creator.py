"""
Snapshot creation.

Pipeline: walk + filter -> hash (worker pool) -> store objects -> stage
manifest -> rename into snapshots/ -> update latest.json.

Hash workers only read the source tree and return FileResult records.
Everything that touches the store or the manifest runs afterwards on the
calling thread, in path order.
"""

import logging
import os
import secrets
import shutil
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Sequence

from ..errors import ConfigurationError, InvalidIdentifierError, StorageError
from ..integrity.canonical import read_document, write_document_atomic
from ..integrity.hashing import hash_file
from ..model.manifest import FileEntry, Manifest
from ..storage.layout import MANIFEST_FILENAME, StorageLayout, utc_now_iso
from ..storage.object_store import ObjectStore
from .identifiers import next_free_snapshot_id
from .selection import PathFilter, SourceFile, walk_source

logger = logging.getLogger(__name__)

MAX_HASH_WORKERS = 8


def default_hash_workers() -> int:
    return max(1, min(MAX_HASH_WORKERS, os.cpu_count() or 1))


class FileResult(NamedTuple):
    """What a hash worker learned about one file."""

    rel_path: str
    abs_path: Path
    sha256: str
    size: int
    mtime_ms: int
    fast_path: bool


class SnapshotResult:
    """Outcome of create(); manifest is None for dry runs."""

    def __init__(self, snapshot_id: str, manifest: Optional[Manifest] = None, dry_run: bool = False):
        self.snapshot_id = snapshot_id
        self.manifest = manifest
        self.dry_run = dry_run

    def to_dict(self) -> dict:
        result = {'snapshotId': self.snapshot_id, 'dryRun': self.dry_run}
        if self.manifest is not None:
            result['stats'] = dict(self.manifest.stats)
            result['prev'] = self.manifest.prev
            result['label'] = self.manifest.label
        return result


def mtime_ms_of(st: os.stat_result) -> int:
    return st.st_mtime_ns // 1_000_000


def load_prev_index(layout: StorageLayout, prev_id: Optional[str]) -> Dict[str, FileEntry]:
    """
    Load the path -> FileEntry map of a previous snapshot.

    Anything unreadable yields an empty index; the fast path is an
    optimisation only.
    """
    if not prev_id:
        return {}
    try:
        doc = read_document(layout.get_manifest_path(prev_id))
    except (OSError, ValueError, InvalidIdentifierError):
        return {}
    files = doc.get('files') if isinstance(doc, dict) else None
    if not isinstance(files, dict):
        return {}
    index = {}
    for rel, meta in files.items():
        entry = FileEntry.from_dict(meta)
        if entry is not None:
            index[rel] = entry
    return index


class SnapshotCreator:
    """
    Builds and publishes snapshots for one (dest, machine) layout.

    trust_mtime enables the dedup fast path: a file whose size and mtime
    match the previous snapshot's record reuses the recorded hash without
    being read. This trusts the filesystem's mtime; turn it off to re-hash
    everything.
    """

    def __init__(
        self,
        layout: StorageLayout,
        store: ObjectStore,
        trust_mtime: bool = True,
        hash_workers: Optional[int] = None,
    ):
        self.layout = layout
        self.store = store
        self.trust_mtime = trust_mtime
        self.hash_workers = max(1, hash_workers or default_hash_workers())

    def create(
        self,
        source_root: str | Path,
        includes: Sequence[str] = (),
        excludes: Sequence[str] = (),
        label: Optional[str] = None,
        dry_run: bool = False,
    ) -> SnapshotResult:
        """
        Snapshot source_root.

        Args:
            source_root: directory to back up
            includes: glob patterns; empty means everything
            excludes: glob patterns, taking precedence over includes
            label: optional free-text label
            dry_run: only compute the snapshot id that would be used

        Returns SnapshotResult with the published manifest.
        """
        source_root = Path(source_root).resolve()
        if not source_root.is_dir():
            raise ConfigurationError(f"sourceRoot is not a directory: {source_root}")

        snapshot_id = next_free_snapshot_id(lambda sid: self.layout.get_snapshot_dir(sid).exists())
        if dry_run:
            return SnapshotResult(snapshot_id, dry_run=True)

        self.layout.ensure_directories()
        prev_id = self.layout.read_latest()
        prev_index = load_prev_index(self.layout, prev_id) if self.trust_mtime else {}

        files = walk_source(source_root, PathFilter(includes, excludes))
        logger.debug("Selected %d files under %s", len(files), source_root)

        results = self._hash_all(files, prev_index)

        manifest = Manifest(
            snapshot_id=snapshot_id,
            created_at=utc_now_iso(),
            machine_id=self.layout.machine_id,
            source_root=str(source_root),
            label=label,
            prev=prev_id,
            files={},
        )
        for result in results:
            self._record(manifest, result)

        self._publish(manifest)
        self.layout.write_latest(snapshot_id)
        logger.info(
            "Published snapshot %s (%d files, %d reused, %d stored)",
            snapshot_id, manifest.stats['files'], manifest.stats['reused'], manifest.stats['stored'],
        )
        return SnapshotResult(snapshot_id, manifest)

    # ========== Fan-out ==========

    def _hash_all(self, files: List[SourceFile], prev_index: Dict[str, FileEntry]) -> List[FileResult]:
        if not files:
            return []
        workers = min(self.hash_workers, len(files))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(lambda f: self._hash_one(f, prev_index), files))
        return [r for r in results if r is not None]

    def _hash_one(self, source: SourceFile, prev_index: Dict[str, FileEntry]) -> Optional[FileResult]:
        try:
            st = os.stat(source.abs_path)
        except FileNotFoundError:
            logger.warning("File vanished during snapshot: %s", source.rel_path)
            return None

        size = st.st_size
        mtime_ms = mtime_ms_of(st)
        prev = prev_index.get(source.rel_path)
        if prev is not None and prev.size == size and prev.mtime_ms == mtime_ms:
            logger.debug("Unchanged (size+mtime): %s", source.rel_path)
            return FileResult(source.rel_path, source.abs_path, prev.sha256, size, mtime_ms, True)

        try:
            digest = hash_file(source.abs_path)
        except FileNotFoundError:
            logger.warning("File vanished during snapshot: %s", source.rel_path)
            return None
        return FileResult(source.rel_path, source.abs_path, digest, size, mtime_ms, False)

    # ========== Fan-in ==========

    def _record(self, manifest: Manifest, result: FileResult) -> None:
        """Make sure the object exists, then add the file to the manifest."""
        digest, size, mtime_ms = result.sha256, result.size, result.mtime_ms

        if self.store.has_object(digest):
            created = False
        else:
            try:
                digest, created = self.store.put_file(result.abs_path)
            except FileNotFoundError:
                logger.warning("File vanished during snapshot: %s", result.rel_path)
                return
            if digest != result.sha256:
                logger.warning("File changed during snapshot: %s", result.rel_path)
                try:
                    st = os.stat(result.abs_path)
                    size, mtime_ms = st.st_size, mtime_ms_of(st)
                except FileNotFoundError:
                    pass

        manifest.sha256[result.rel_path] = digest
        manifest.files[result.rel_path] = FileEntry(digest, size, mtime_ms)
        manifest.stats['files'] += 1
        manifest.stats['stored' if created else 'reused'] += 1

    # ========== Publish ==========

    def _publish(self, manifest: Manifest) -> Path:
        """Write the manifest into a staging dir and rename it into place."""
        stage = self.layout.staging_dir / f"{manifest.id}.tmp.{secrets.token_hex(4)}"
        final = self.layout.get_snapshot_dir(manifest.id)
        try:
            stage.mkdir(parents=True)
            write_document_atomic(stage / MANIFEST_FILENAME, manifest.to_dict())
            os.rename(stage, final)
        except OSError as e:
            shutil.rmtree(stage, ignore_errors=True)
            raise StorageError("publish_snapshot", str(final), e)
        except StorageError:
            shutil.rmtree(stage, ignore_errors=True)
            raise
        return final
