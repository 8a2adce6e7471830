"""
JSON document encoding for manifests, pointers and pack metadata.

All documents on disk share one encoding so that a manifest written by
snapshot creation and the same manifest written by pack import are
byte-identical.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from ..errors import StorageError


def encode_document(obj: Any) -> bytes:
    """
    Encode a document to JSON bytes.

    Rules:
    - Two-space indentation, insertion key order
    - UTF-8 encoding
    - No NaN/Infinity
    - Single trailing newline
    """
    text = json.dumps(obj, indent=2, ensure_ascii=False, allow_nan=False)
    return (text + '\n').encode('utf-8')


def decode_document(data: bytes) -> Any:
    """
    Decode JSON document bytes.

    Raises ValueError (json.JSONDecodeError or UnicodeDecodeError) on bad input.
    """
    return json.loads(data.decode('utf-8'))


def read_document(path: str | Path) -> Any:
    """Read and decode a JSON document from disk."""
    return decode_document(Path(path).read_bytes())


def write_document_atomic(path: str | Path, obj: Any) -> None:
    """
    Write a JSON document atomically.

    Uses temp file + rename in the destination directory, so readers see
    either the old document or the complete new one.
    """
    path = Path(path)
    data = encode_document(obj)
    temp_path = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=str(path.parent), prefix='.tmp_', suffix='.json')
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
        os.replace(temp_path, path)
        temp_path = None
    except OSError as e:
        raise StorageError("write_document", str(path), e)
    finally:
        if temp_path is not None and os.path.exists(temp_path):
            os.unlink(temp_path)
