"""
Materialize a snapshot into a target directory.
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path

from ..errors import InvalidIdentifierError, ObjectNotFoundError, StorageError
from ..model.manifest import Manifest
from ..storage.object_store import ObjectStore

logger = logging.getLogger(__name__)


class RestoreResult:
    def __init__(self, snapshot_id: str, target: Path, files: int, dry_run: bool):
        self.snapshot_id = snapshot_id
        self.target = target
        self.files = files
        self.dry_run = dry_run

    def to_dict(self) -> dict:
        return {
            'ok': True,
            'snapshotId': self.snapshot_id,
            'target': str(self.target),
            'files': self.files,
            'dryRun': self.dry_run,
        }


def resolve_inside(target: Path, rel: str) -> Path:
    """
    Join a manifest path onto target, refusing anything that escapes it.

    Raises InvalidIdentifierError for absolute paths, '..' segments and
    other escapes.
    """
    if not rel or '\0' in rel or '\\' in rel or rel.startswith('/'):
        raise InvalidIdentifierError('restore path', rel)
    if any(part in ('', '.', '..') for part in rel.split('/')):
        raise InvalidIdentifierError('restore path', rel)
    dst = (target / rel).resolve()
    if dst != target and target not in dst.parents:
        raise InvalidIdentifierError('restore path', rel)
    return dst


def restore_snapshot(
    manifest: Manifest,
    store: ObjectStore,
    target: str | Path,
    dry_run: bool = False,
) -> RestoreResult:
    """
    Copy every file of a manifest out of the object store under target.

    Paths are validated before anything is written, and every referenced
    object must exist. Each file is written to a temp file and renamed
    into place.
    """
    target = Path(target).resolve()
    entries = sorted(manifest.sha256.items())

    plan = []
    for rel, obj_hash in entries:
        if not store.has_object(obj_hash):
            raise ObjectNotFoundError(obj_hash, manifest.id)
        plan.append((resolve_inside(target, rel), obj_hash))

    if dry_run:
        return RestoreResult(manifest.id, target, len(plan), dry_run=True)

    for dst, obj_hash in plan:
        _copy_object(store, obj_hash, dst)

    logger.info("Restored snapshot %s to %s (%d files)", manifest.id, target, len(plan))
    return RestoreResult(manifest.id, target, len(plan), dry_run=False)


def _copy_object(store: ObjectStore, obj_hash: str, dst: Path) -> None:
    temp_path = None
    try:
        dst.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=str(dst.parent), prefix='.tmp_')
        with os.fdopen(fd, 'wb') as out, store.open_object(obj_hash) as src:
            shutil.copyfileobj(src, out)
        os.replace(temp_path, dst)
        temp_path = None
    except OSError as e:
        raise StorageError("restore", str(dst), e)
    finally:
        if temp_path is not None and os.path.exists(temp_path):
            os.unlink(temp_path)
