"""
Content-addressed object storage.

Provides immutable blob storage keyed by the SHA-256 of the stored bytes.
"""

import hashlib
import logging
import os
import tempfile
from pathlib import Path
from typing import BinaryIO, List, Optional, Tuple

from ..errors import (
    ObjectCorruptedError,
    ObjectNotFoundError,
    StorageError,
)
from ..integrity.hashing import compute_hash, hash_file, is_valid_hash, iter_chunks
from .layout import StorageLayout

logger = logging.getLogger(__name__)


class ObjectStore:
    """
    Content-addressed object store with immutable objects.

    Objects are stored by their content hash.
    Once written, objects never change; only garbage collection deletes them.
    """

    def __init__(self, layout: StorageLayout):
        """Initialize object store with given layout."""
        self.layout = layout

    def put_object(self, data: bytes) -> str:
        """
        Store raw bytes and return their hash.

        If an object with the same hash is already present (checked by path),
        nothing is written.
        """
        obj_hash = compute_hash(data)
        obj_path = self.layout.get_object_path(obj_hash)
        if obj_path.exists():
            return obj_hash

        self._ensure_shard(obj_hash)
        self._write_object_atomic(obj_path, [data])
        return obj_hash

    def put_stream(self, stream: BinaryIO, expected_hash: Optional[str] = None) -> Tuple[str, bool]:
        """
        Store the contents of a binary stream.

        The stream is hashed while it is copied to a temp file in the shard
        directory. When expected_hash is given, content that hashes
        differently is discarded and ObjectCorruptedError is raised; if that
        object already exists the stream is still hashed and verified, then
        dropped.

        Returns (hash, created).
        """
        if expected_hash is not None:
            if not is_valid_hash(expected_hash):
                raise ValueError(f"Invalid object hash: {expected_hash!r}")
            if self.has_object(expected_hash):
                hasher = hashlib.sha256()
                for chunk in iter_chunks(stream):
                    hasher.update(chunk)
                actual = hasher.hexdigest()
                if actual != expected_hash:
                    raise ObjectCorruptedError(expected_hash, actual)
                return expected_hash, False

        self.layout.objects_dir.mkdir(parents=True, exist_ok=True)
        scratch_dir = self.layout.objects_dir
        if expected_hash is not None:
            scratch_dir = self._ensure_shard(expected_hash)

        hasher = hashlib.sha256()
        temp_path = None
        try:
            fd, temp_path = tempfile.mkstemp(dir=str(scratch_dir), prefix='.tmp_')
            with os.fdopen(fd, 'wb') as f:
                for chunk in iter_chunks(stream):
                    hasher.update(chunk)
                    f.write(chunk)
            actual = hasher.hexdigest()

            if expected_hash is not None and actual != expected_hash:
                raise ObjectCorruptedError(expected_hash, actual)

            obj_path = self.layout.get_object_path(actual)
            if obj_path.exists():
                return actual, False

            self._ensure_shard(actual)
            os.replace(temp_path, obj_path)
            temp_path = None
            logger.debug("Stored object %s", actual)
            return actual, True
        except OSError as e:
            raise StorageError("write_object", str(scratch_dir), e)
        finally:
            if temp_path is not None and os.path.exists(temp_path):
                os.unlink(temp_path)

    def put_file(self, path: str | Path, expected_hash: Optional[str] = None) -> Tuple[str, bool]:
        """
        Store a file's contents by streaming it.

        Returns (hash, created). The hash is that of the bytes actually
        copied, which may differ from an earlier hash if the file changed.
        """
        with open(path, 'rb') as f:
            return self.put_stream(f, expected_hash)

    def get_object(self, obj_hash: str, verify: bool = True) -> bytes:
        """
        Retrieve an object's bytes by its hash.

        If verify=True (default), verifies integrity before returning.

        Raises ObjectNotFoundError if object doesn't exist.
        Raises ObjectCorruptedError if verification fails.
        """
        obj_path = self._existing_path(obj_hash)
        try:
            data = obj_path.read_bytes()
        except OSError as e:
            raise StorageError("read_object", str(obj_path), e)
        if verify:
            actual = compute_hash(data)
            if actual != obj_hash:
                raise ObjectCorruptedError(obj_hash, actual)
        return data

    def open_object(self, obj_hash: str) -> BinaryIO:
        """Open an object for streaming reads. Caller closes it."""
        obj_path = self._existing_path(obj_hash)
        try:
            return open(obj_path, 'rb')
        except FileNotFoundError:
            raise ObjectNotFoundError(obj_hash)
        except OSError as e:
            raise StorageError("open_object", str(obj_path), e)

    def rehash_object(self, obj_hash: str) -> str:
        """
        Recompute the hash of a stored object.

        Raises ObjectNotFoundError if the object is absent.
        """
        obj_path = self._existing_path(obj_hash)
        return hash_file(obj_path)

    def has_object(self, obj_hash: str) -> bool:
        """Check if an object exists in the store."""
        return self.layout.object_exists(obj_hash)

    def object_size(self, obj_hash: str) -> int:
        try:
            return self.layout.get_object_path(obj_hash).stat().st_size
        except OSError:
            return 0

    def delete_object(self, obj_hash: str) -> bool:
        """
        Delete an object from the store.

        This is used by garbage collection. The shard directory is removed
        when it becomes empty.

        Returns True if deleted, False if didn't exist.
        """
        obj_path = self.layout.get_object_path(obj_hash)
        if not obj_path.exists():
            return False
        try:
            obj_path.unlink()
        except OSError as e:
            raise StorageError("delete_object", str(obj_path), e)
        self._prune_shard(obj_path.parent)
        return True

    def list_all_objects(self) -> List[str]:
        """List all object hashes in the store."""
        return self.layout.list_all_objects()

    def _existing_path(self, obj_hash: str) -> Path:
        if not self.has_object(obj_hash):
            raise ObjectNotFoundError(obj_hash)
        return self.layout.get_object_path(obj_hash)

    def _ensure_shard(self, obj_hash: str) -> Path:
        shard = self.layout.get_object_path(obj_hash).parent
        try:
            shard.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError("mkdir", str(shard), e)
        return shard

    @staticmethod
    def _prune_shard(shard: Path) -> None:
        try:
            shard.rmdir()
        except OSError:
            pass  # not empty, or already gone

    def _write_object_atomic(self, path: Path, chunks) -> None:
        """
        Write object file atomically.

        Uses temp file + rename for atomicity.
        """
        temp_path = None
        try:
            fd, temp_path = tempfile.mkstemp(dir=str(path.parent), prefix='.tmp_')
            with os.fdopen(fd, 'wb') as f:
                for chunk in chunks:
                    f.write(chunk)
            os.replace(temp_path, path)
            temp_path = None
            logger.debug("Stored object %s", path.name)
        except OSError as e:
            raise StorageError("write_file", str(path), e)
        finally:
            if temp_path is not None and os.path.exists(temp_path):
                os.unlink(temp_path)

    def get_stats(self) -> dict:
        """Count objects and their total size."""
        stats = {'total_objects': 0, 'total_size_bytes': 0}
        for obj_hash in self.list_all_objects():
            stats['total_objects'] += 1
            stats['total_size_bytes'] += self.object_size(obj_hash)
        return stats
