"""
Pack export and import.

A pack is a gzip-compressed tar stream:

    pack.json                   PackMeta
    manifest.json               the snapshot manifest, byte-for-byte
    objects/<2-hex>/<64-hex>    one entry per referenced object

Both directions stream: export copies objects straight from the store
into the archive, and import hashes each object entry into a temp file as
it is decompressed. Nothing becomes visible in the destination until every
entry has been checked and every referenced object is present.
"""

import io
import logging
import os
import posixpath
import re
import shutil
import tarfile
import tempfile
import zlib
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Set, Tuple

from ..errors import (
    InvalidIdentifierError,
    ObjectCorruptedError,
    ObjectNotFoundError,
    PackIncompleteError,
    PackInvalidError,
    PackMissingError,
    SnapshotExistsError,
    StorageError,
)
from ..integrity.canonical import decode_document, encode_document, write_document_atomic
from ..integrity.hashing import is_valid_hash
from ..model.manifest import is_valid_manifest_shape, referenced_hashes
from ..model.pack_meta import PackMeta
from ..storage.layout import MANIFEST_FILENAME, StorageLayout, validate_identifier
from ..storage.object_store import ObjectStore

logger = logging.getLogger(__name__)

MAX_META_BYTES = 50 * 1024 * 1024
PACK_META_NAME = 'pack.json'

_OBJECT_ENTRY_RE = re.compile(r'^objects/([0-9a-f]{2})/([0-9a-f]{64})\Z')


def default_pack_name(snapshot_id: str) -> str:
    return f"backup-store-pack-{snapshot_id}.tgz"


# ========== Export ==========

class ExportResult:
    def __init__(self, snapshot_id: str, out: Path, objects: int):
        self.snapshot_id = snapshot_id
        self.out = out
        self.objects = objects

    def to_dict(self) -> dict:
        return {'ok': True, 'snapshotId': self.snapshot_id, 'out': str(self.out), 'objects': self.objects}


def export_pack(
    layout: StorageLayout,
    store: ObjectStore,
    manifest_doc: dict,
    snapshot_id: str,
    out_path: Optional[str | Path] = None,
) -> ExportResult:
    """
    Write a pack for one manifest-layout snapshot.

    The archive is assembled in a temp file beside out_path and renamed
    over it only once complete; a missing object aborts the export with
    ObjectNotFoundError and leaves no file behind.
    """
    out_path = Path(out_path or default_pack_name(snapshot_id)).resolve()
    hashes = sorted(referenced_hashes(manifest_doc))
    for obj_hash in hashes:
        if not store.has_object(obj_hash):
            raise ObjectNotFoundError(obj_hash, snapshot_id)

    meta = PackMeta.for_manifest(manifest_doc, snapshot_id, layout.machine_id)

    temp_path = None
    try:
        out_path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=str(out_path.parent), prefix='.tmp_', suffix='.tgz')
        with os.fdopen(fd, 'wb') as raw, tarfile.open(fileobj=raw, mode='w|gz') as tar:
            _add_bytes(tar, PACK_META_NAME, encode_document(meta.to_dict()))
            _add_bytes(tar, MANIFEST_FILENAME, encode_document(manifest_doc))
            for obj_hash in hashes:
                _add_object(tar, store, obj_hash)
        os.replace(temp_path, out_path)
        temp_path = None
    except OSError as e:
        raise StorageError("export_pack", str(out_path), e)
    finally:
        if temp_path is not None and os.path.exists(temp_path):
            os.unlink(temp_path)

    logger.info("Exported snapshot %s to %s (%d objects)", snapshot_id, out_path, len(hashes))
    return ExportResult(snapshot_id, out_path, len(hashes))


def _add_bytes(tar: tarfile.TarFile, name: str, data: bytes) -> None:
    info = tarfile.TarInfo(name=name)
    info.size = len(data)
    info.mode = 0o644
    tar.addfile(info, io.BytesIO(data))


def _add_object(tar: tarfile.TarFile, store: ObjectStore, obj_hash: str) -> None:
    path = store.layout.get_object_path(obj_hash)
    info = tarfile.TarInfo(name=f"objects/{obj_hash[:2]}/{obj_hash}")
    with store.open_object(obj_hash) as src:
        st = os.fstat(src.fileno())
        info.size = st.st_size
        info.mtime = int(st.st_mtime)
        info.mode = 0o644
        tar.addfile(info, src)
    logger.debug("Packed object %s from %s", obj_hash, path)


# ========== Import ==========

class ImportResult:
    def __init__(self, snapshot_id: str, imported: int, objects: int):
        self.snapshot_id = snapshot_id
        self.imported = imported
        self.objects = objects

    def to_dict(self) -> dict:
        return {
            'ok': True,
            'snapshotId': self.snapshot_id,
            'imported': self.imported,
            'objects': self.objects,
        }


def normalize_entry_name(name: str) -> Optional[str]:
    """
    Validate and normalize an archive entry name.

    Returns None for names that are empty, absolute, contain a NUL byte, a
    backslash or any '..' segment.
    """
    if not name or '\0' in name or '\\' in name:
        return None
    if name.startswith('/') or '..' in name.split('/'):
        return None
    normalized = posixpath.normpath(name)
    while normalized.startswith('./'):
        normalized = normalized[2:]
    if not normalized or normalized == '.' or normalized.startswith('/'):
        return None
    return normalized


def iter_pack_entries(stream: BinaryIO) -> Iterator[Tuple[str, tarfile.TarInfo, tarfile.TarFile]]:
    """
    Decompress and walk a pack stream, yielding (name, member, tar) for each
    regular file entry with a validated name.

    Directory entries are skipped once their name is validated; any other
    entry type is rejected.
    """
    with tarfile.open(fileobj=stream, mode='r|gz') as tar:
        for member in tar:
            name = normalize_entry_name(member.name)
            if name is None:
                raise PackInvalidError(
                    f"Invalid pack entry path: {member.name!r}",
                    hint="Pack entry paths must be relative and free of traversal.",
                )
            if member.isdir():
                continue
            if not member.isfile():
                raise PackInvalidError(f"Unsupported entry type for {name}")
            yield name, member, tar


def _read_meta_entry(name: str, member: tarfile.TarInfo, tar: tarfile.TarFile):
    if member.size > MAX_META_BYTES:
        raise PackInvalidError(f"{name} is too large")
    data = tar.extractfile(member).read(MAX_META_BYTES + 1)
    if len(data) > MAX_META_BYTES:
        raise PackInvalidError(f"{name} is too large")
    try:
        return decode_document(data)
    except ValueError:
        raise PackInvalidError(f"Invalid JSON in {name}", hint="Pack metadata is corrupt.")


def _install_object(store: ObjectStore, name: str, member: tarfile.TarInfo, tar: tarfile.TarFile) -> str:
    match = _OBJECT_ENTRY_RE.match(name)
    if not match:
        raise PackInvalidError(f"Invalid object entry: {name}")
    prefix, obj_hash = match.groups()
    if obj_hash[:2] != prefix:
        raise PackInvalidError(f"Object prefix mismatch: {name}")
    try:
        store.put_stream(tar.extractfile(member), expected_hash=obj_hash)
    except ObjectCorruptedError:
        raise PackInvalidError(f"Object hash mismatch: {obj_hash}", hint="The pack may be corrupted.")
    return obj_hash


def import_pack(
    layout: StorageLayout,
    store: ObjectStore,
    pack_path: str | Path,
    force: bool = False,
) -> ImportResult:
    """
    Import a pack into layout.

    Objects are verified and installed as they stream past. The manifest
    is written last, after pack.json is validated, the ids agree, and every
    hash the manifest references is in the store. An existing snapshot
    with the same id blocks the import unless force is set.
    """
    pack_path = Path(pack_path).resolve()
    if not pack_path.is_file():
        raise PackMissingError(str(pack_path))

    layout.ensure_directories()

    meta_doc = None
    manifest_doc = None
    seen: Set[str] = set()

    try:
        with open(pack_path, 'rb') as stream:
            for name, member, tar in iter_pack_entries(stream):
                if name == PACK_META_NAME:
                    if meta_doc is not None:
                        raise PackInvalidError("Duplicate pack.json in pack")
                    meta_doc = _read_meta_entry(name, member, tar)
                elif name == MANIFEST_FILENAME:
                    if manifest_doc is not None:
                        raise PackInvalidError("Duplicate manifest.json in pack")
                    manifest_doc = _read_meta_entry(name, member, tar)
                elif name.startswith('objects/'):
                    seen.add(_install_object(store, name, member, tar))
                else:
                    raise PackInvalidError(
                        f"Unexpected pack entry: {name}",
                        hint="Pack should only include pack.json, manifest.json, and objects.",
                    )
    except (tarfile.TarError, EOFError, zlib.error) as e:
        raise PackInvalidError(f"Unreadable archive: {e}", hint="The pack may be truncated or corrupted.")

    if meta_doc is None:
        raise PackInvalidError("Pack missing pack.json", hint="Ensure the pack was created by export.")
    if manifest_doc is None:
        raise PackInvalidError("Pack missing manifest.json", hint="Ensure the pack includes a snapshot manifest.")

    meta = PackMeta.from_dict(meta_doc)
    if not is_valid_manifest_shape(manifest_doc):
        raise PackInvalidError("manifest.json does not have a valid shape")
    if manifest_doc['id'] != meta.snapshot_id:
        raise PackInvalidError(
            "Pack snapshot id does not match manifest id",
            hint="Re-export the pack to ensure it is consistent.",
        )
    try:
        snapshot_id = validate_identifier('snapshot id', meta.snapshot_id)
    except InvalidIdentifierError as e:
        raise PackInvalidError(e.message)

    required = referenced_hashes(manifest_doc)
    for obj_hash in sorted(required):
        if not is_valid_hash(obj_hash):
            raise PackInvalidError(f"Manifest references invalid hash: {obj_hash!r}")
        if not store.has_object(obj_hash):
            raise PackIncompleteError(obj_hash)

    _write_manifest(layout, snapshot_id, manifest_doc, force)
    logger.info(
        "Imported snapshot %s from %s (%d referenced, %d objects in pack)",
        snapshot_id, pack_path, len(required), len(seen),
    )
    return ImportResult(snapshot_id, len(required), len(seen))


def _write_manifest(layout: StorageLayout, snapshot_id: str, manifest_doc: dict, force: bool) -> None:
    snapshot_dir = layout.get_snapshot_dir(snapshot_id)
    if snapshot_dir.exists():
        if not force:
            raise SnapshotExistsError(snapshot_id)
        write_document_atomic(snapshot_dir / MANIFEST_FILENAME, manifest_doc)
        return

    stage = None
    try:
        stage = Path(tempfile.mkdtemp(dir=str(layout.staging_dir), prefix=f"{snapshot_id}.tmp."))
        write_document_atomic(stage / MANIFEST_FILENAME, manifest_doc)
        os.rename(stage, snapshot_dir)
    except OSError as e:
        raise StorageError("import_manifest", str(snapshot_dir), e)
    finally:
        if stage is not None and stage.exists():
            shutil.rmtree(stage, ignore_errors=True)
