"""
Manifest object model.

A manifest describes one snapshot: which relative path holds which object,
plus the metadata needed for the dedup fast path and diagnostics.
"""

import platform
import socket
import sys
from typing import Dict, Optional, Set

from ..integrity.hashing import is_valid_hash


class FileEntry:
    """Per-path record used for the size+mtime dedup fast path."""

    __slots__ = ('sha256', 'size', 'mtime_ms')

    def __init__(self, sha256: str, size: int, mtime_ms: int):
        self.sha256 = sha256
        self.size = size
        self.mtime_ms = mtime_ms

    def to_dict(self) -> dict:
        return {'sha256': self.sha256, 'size': self.size, 'mtimeMs': self.mtime_ms}

    @classmethod
    def from_dict(cls, data) -> Optional['FileEntry']:
        """Parse a stored entry; returns None for anything malformed."""
        if not isinstance(data, dict):
            return None
        sha256 = data.get('sha256')
        try:
            size = int(data.get('size'))
            mtime_ms = int(data.get('mtimeMs'))
        except (TypeError, ValueError):
            return None
        if not is_valid_hash(sha256):
            return None
        return cls(sha256, size, mtime_ms)

    def __eq__(self, other) -> bool:
        if not isinstance(other, FileEntry):
            return NotImplemented
        return (self.sha256, self.size, self.mtime_ms) == (other.sha256, other.size, other.mtime_ms)

    def __repr__(self) -> str:
        return f"FileEntry(sha256={self.sha256[:8]}..., size={self.size}, mtime_ms={self.mtime_ms})"


def host_info() -> dict:
    """Hostname, platform and OS release, recorded for diagnostics."""
    return {
        'hostname': socket.gethostname(),
        'platform': sys.platform,
        'release': platform.release(),
    }


class Manifest:
    """
    Snapshot manifest.

    The manifest maps forward-slash relative paths to object hashes and
    records who made the snapshot, from where, and with what result.
    """

    def __init__(
        self,
        snapshot_id: str,
        created_at: str,
        machine_id: str,
        source_root: Optional[str] = None,
        label: Optional[str] = None,
        prev: Optional[str] = None,
        stats: Optional[dict] = None,
        sha256: Optional[Dict[str, str]] = None,
        files: Optional[Dict[str, FileEntry]] = None,
        host: Optional[dict] = None,
        legacy: Optional[dict] = None,
    ):
        self.id = snapshot_id
        self.created_at = created_at
        self.machine_id = machine_id
        self.source_root = source_root
        self.label = label
        self.prev = prev
        self.stats = dict(stats or {'files': 0, 'reused': 0, 'stored': 0})
        self.sha256 = dict(sha256 or {})
        self.files = dict(files) if files is not None else None
        self.host = host if host is not None else host_info()
        self.legacy = legacy

    def to_dict(self) -> dict:
        """Convert to the on-disk document shape."""
        doc = {
            'id': self.id,
            'createdAt': self.created_at,
            'machineId': self.machine_id,
            'sourceRoot': self.source_root,
            'label': self.label,
            'prev': self.prev,
            'stats': dict(self.stats),
            'sha256': {rel: self.sha256[rel] for rel in sorted(self.sha256)},
        }
        if self.files is not None:
            doc['files'] = {rel: self.files[rel].to_dict() for rel in sorted(self.files)}
        if self.legacy is not None:
            doc['legacy'] = dict(self.legacy)
        doc['host'] = dict(self.host)
        return doc

    @classmethod
    def from_dict(cls, data: dict) -> 'Manifest':
        """
        Reconstruct a manifest from a stored document.

        Raises ValueError if the document does not have a valid shape.
        """
        if not is_valid_manifest_shape(data):
            raise ValueError("Manifest must have a string 'id' and an object 'sha256'")

        files = None
        raw_files = data.get('files')
        if isinstance(raw_files, dict):
            files = {}
            for rel, meta in raw_files.items():
                entry = FileEntry.from_dict(meta)
                if entry is not None:
                    files[rel] = entry

        return cls(
            snapshot_id=data['id'],
            created_at=data.get('createdAt', ''),
            machine_id=data.get('machineId', ''),
            source_root=data.get('sourceRoot'),
            label=data.get('label'),
            prev=data.get('prev'),
            stats=data.get('stats') if isinstance(data.get('stats'), dict) else None,
            sha256={rel: str(h) for rel, h in data['sha256'].items()},
            files=files,
            host=data.get('host') if isinstance(data.get('host'), dict) else {},
            legacy=data.get('legacy') if isinstance(data.get('legacy'), dict) else None,
        )

    def __repr__(self) -> str:
        return f"Manifest(id={self.id}, files={len(self.sha256)}, label={self.label!r})"


def is_valid_manifest_shape(doc) -> bool:
    """A manifest needs a non-empty string id and an object-shaped hash map."""
    if not isinstance(doc, dict):
        return False
    if not isinstance(doc.get('id'), str) or not doc['id']:
        return False
    return isinstance(doc.get('sha256'), dict)


def referenced_hashes(doc) -> Set[str]:
    """
    Collect every object hash a manifest document references.

    Both the path->hash map and the richer files map are consulted.
    """
    hashes = set()
    if not isinstance(doc, dict):
        return hashes
    sha_map = doc.get('sha256')
    if isinstance(sha_map, dict):
        for value in sha_map.values():
            if isinstance(value, str):
                hashes.add(value)
    files = doc.get('files')
    if isinstance(files, dict):
        for meta in files.values():
            if isinstance(meta, dict) and isinstance(meta.get('sha256'), str):
                hashes.add(meta['sha256'])
    return hashes
