"""
Content hashing using SHA-256.

Object keys are hex-encoded SHA-256 digests of the raw stored bytes.
"""

import hashlib
import re
from pathlib import Path
from typing import BinaryIO, Iterator

CHUNK_SIZE = 1024 * 1024

_HASH_RE = re.compile(r'^[0-9a-f]{64}\Z')


def compute_hash(data: bytes) -> str:
    """Compute the hex SHA-256 of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def iter_chunks(stream: BinaryIO, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Yield a binary stream in fixed-size chunks until EOF."""
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            return
        yield chunk


def hash_stream(stream: BinaryIO) -> str:
    """Hash a binary stream without buffering it."""
    hasher = hashlib.sha256()
    for chunk in iter_chunks(stream):
        hasher.update(chunk)
    return hasher.hexdigest()


def hash_file(path: str | Path) -> str:
    """
    Hash a file by streaming its contents.

    Raises OSError if the file cannot be read.
    """
    with open(path, 'rb') as f:
        return hash_stream(f)


def is_valid_hash(value) -> bool:
    """Check that value is a lowercase 64-character hex digest."""
    return isinstance(value, str) and bool(_HASH_RE.match(value))


def get_hash_prefix(hash_str: str, prefix_length: int = 2) -> str:
    """
    Get prefix of hash for directory sharding.

    Default is 2 characters, creating 256 subdirectories.
    """
    if len(hash_str) < prefix_length:
        raise ValueError(f"Hash too short for prefix length {prefix_length}")
    return hash_str[:prefix_length]
