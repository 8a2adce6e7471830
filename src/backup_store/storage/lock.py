"""
Cross-process machine lock.

Creating the lock directory is the atomic test-and-set; the lock.json
record inside it is diagnostic only.
"""

import logging
import os
import shutil
import socket
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from ..errors import LockHeldError, StorageError
from ..integrity.canonical import read_document, write_document_atomic
from .layout import LOCK_FILENAME, StorageLayout, utc_now_iso

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_SECONDS = 24 * 60 * 60


class LockHandle:
    """A held machine lock."""

    def __init__(self, lock_dir: Path, info: dict):
        self.lock_dir = lock_dir
        self.info = info
        self.released = False

    def __repr__(self) -> str:
        return f"LockHandle(dir={self.lock_dir}, command={self.info.get('command')})"


def acquire_lock(
    layout: StorageLayout,
    command: Optional[str] = None,
    force: bool = False,
    max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
) -> LockHandle:
    """
    Acquire the lock for (dest, machine).

    With force=True an existing lock directory is removed and re-created.
    Otherwise contention raises LockHeldError describing the holder; a lock
    older than max_age_seconds is flagged as possibly stale but never
    broken automatically.
    """
    try:
        layout.machine_root.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StorageError("mkdir", str(layout.machine_root), e)

    try:
        return _attempt(layout, command)
    except FileExistsError:
        pass

    if force:
        logger.warning("Breaking existing lock at %s", layout.lock_dir)
        shutil.rmtree(layout.lock_dir, ignore_errors=True)
        try:
            return _attempt(layout, command)
        except FileExistsError:
            logger.warning("Lock at %s was taken again while being broken", layout.lock_dir)

    info = read_lock_info(layout.lock_dir)
    age = _lock_age_seconds(layout.lock_dir, info)
    stale = age is not None and age > max_age_seconds
    if stale:
        logger.warning("Lock at %s looks stale (age %.0fs)", layout.lock_dir, age)
    raise LockHeldError(str(layout.lock_dir), info, age, stale, command)


def release_lock(handle: Optional[LockHandle]) -> None:
    """Remove the lock directory entirely."""
    if handle is None or handle.released:
        return
    shutil.rmtree(handle.lock_dir)
    handle.released = True
    logger.debug("Released lock %s", handle.lock_dir)


@contextmanager
def machine_lock(
    layout: StorageLayout,
    command: Optional[str] = None,
    force: bool = False,
    max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
) -> Iterator[LockHandle]:
    """
    Hold the machine lock for the duration of a block.

    A release failure is raised only when the block itself succeeded;
    otherwise it is logged and the original error propagates.
    """
    handle = acquire_lock(layout, command, force, max_age_seconds)
    try:
        yield handle
    except BaseException:
        try:
            release_lock(handle)
        except OSError as release_err:
            logger.warning("Failed to release lock at %s: %s", handle.lock_dir, release_err)
        raise
    release_lock(handle)


def read_lock_info(lock_dir: Path) -> dict:
    """Read the holder record; missing or unreadable records yield {}."""
    try:
        info = read_document(Path(lock_dir) / LOCK_FILENAME)
    except (OSError, ValueError):
        return {}
    return info if isinstance(info, dict) else {}


def _attempt(layout: StorageLayout, command: Optional[str]) -> LockHandle:
    os.mkdir(layout.lock_dir)
    info = {
        'pid': os.getpid(),
        'hostname': socket.gethostname(),
        'startedAt': utc_now_iso(),
        'command': command,
    }
    try:
        write_document_atomic(layout.lock_path, info)
    except StorageError:
        shutil.rmtree(layout.lock_dir, ignore_errors=True)
        raise
    logger.debug("Acquired lock %s for %s", layout.lock_dir, command)
    return LockHandle(layout.lock_dir, info)


def _lock_age_seconds(lock_dir: Path, info: dict) -> Optional[float]:
    started = info.get('startedAt')
    if isinstance(started, str):
        try:
            started_at = datetime.fromisoformat(started.replace('Z', '+00:00'))
            return max(0.0, time.time() - started_at.timestamp())
        except ValueError:
            pass
    for candidate in (Path(lock_dir) / LOCK_FILENAME, Path(lock_dir)):
        try:
            return max(0.0, time.time() - candidate.stat().st_mtime)
        except OSError:
            continue
    return None
