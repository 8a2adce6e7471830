"""
Error types for backup store operations.

Every well-understood failure is raised as a BackupStoreError carrying a
stable code, a process exit status, and optional operator guidance.
"""

import errno
from typing import Optional


class BackupStoreError(Exception):
    """Base exception for all backup store errors."""

    code = 'ERR'
    exit_code = 1

    def __init__(
        self,
        message: str,
        hint: Optional[str] = None,
        next_command: Optional[str] = None,
    ):
        self.message = message
        self.hint = hint
        self.next_command = next_command
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            'code': self.code,
            'exit_code': self.exit_code,
            'message': self.message,
            'hint': self.hint,
            'next': self.next_command,
        }


class ConfigurationError(BackupStoreError):
    """Raised when configuration is missing, unreadable or invalid."""

    code = 'CONFIG'
    exit_code = 8

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(
            f"Configuration error: {reason}",
            hint="Check the config file or pass --config <path>.",
        )


class NotInitializedError(BackupStoreError):
    """Raised when the destination has not been initialized."""

    code = 'NOT_INITIALIZED'
    exit_code = 3

    def __init__(self, dest: str):
        self.dest = dest
        super().__init__(
            f"Destination is not initialized: {dest}",
            hint="Initialize the destination before running other commands.",
            next_command=f"backup-store init --dest {dest}",
        )


class InvalidIdentifierError(BackupStoreError):
    """Raised when a machine or snapshot id is unsafe as a path component."""

    code = 'INVALID_ID'
    exit_code = 13

    def __init__(self, kind: str, value: str):
        self.kind = kind
        self.value = value
        super().__init__(
            f"Invalid {kind}: {value!r}",
            hint="Identifiers may only contain letters, digits, '.', '_' and '-'.",
        )


class LockHeldError(BackupStoreError):
    """Raised when another command holds the machine lock."""

    code = 'LOCKED'
    exit_code = 7

    def __init__(
        self,
        lock_dir: str,
        info: dict,
        age_seconds: Optional[float],
        stale: bool,
        command: Optional[str] = None,
    ):
        self.lock_dir = lock_dir
        self.info = info
        self.age_seconds = age_seconds
        self.stale = stale
        super().__init__(
            "Another backup-store command is already running for this destination and machine.",
            hint=_describe_lock(lock_dir, info, age_seconds, stale),
            next_command=f"backup-store {command or '<command>'} --force-lock",
        )


def _describe_lock(lock_dir: str, info: dict, age_seconds: Optional[float], stale: bool) -> str:
    parts = []
    for key, label in (('command', 'command'), ('pid', 'pid'),
                       ('hostname', 'host'), ('startedAt', 'started')):
        if info.get(key):
            parts.append(f"{label} {info[key]}")
    if age_seconds is not None:
        parts.append(f"age {format_age(age_seconds)}{' (stale?)' if stale else ''}")
    owner = ', '.join(parts) if parts else 'no metadata available'
    note = ' Lock age exceeds the configured maximum.' if stale else ''
    return (
        f"Lock: {lock_dir}. Owner: {owner}.{note} If you are sure no other "
        f"command is running, re-run with --force-lock to break the lock."
    )


def format_age(seconds: float) -> str:
    """Render an age as the largest whole unit (s, m, h, d)."""
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h"
    return f"{hours // 24}d"


# ========== Snapshot lookup ==========

class SnapshotLookupError(BackupStoreError):
    """Base for errors locating a usable snapshot."""

    code = 'SNAPSHOT'
    exit_code = 6


class SnapshotNotFoundError(SnapshotLookupError):
    code = 'SNAPSHOT_NOT_FOUND'

    def __init__(self, snapshot_id: str):
        self.snapshot_id = snapshot_id
        super().__init__(
            f"Snapshot not found: {snapshot_id}",
            hint="Run list to see available snapshots.",
            next_command="backup-store list",
        )


class SnapshotEmptyError(SnapshotLookupError):
    code = 'SNAPSHOT_EMPTY'

    def __init__(self, snapshot_id: str):
        self.snapshot_id = snapshot_id
        super().__init__(
            f"Snapshot is empty: {snapshot_id}",
            hint="The snapshot directory exists but contains no files or manifest.",
            next_command="backup-store list",
        )


class SnapshotLegacyError(SnapshotLookupError):
    code = 'SNAPSHOT_LEGACY'

    def __init__(self, snapshot_id: str):
        self.snapshot_id = snapshot_id
        super().__init__(
            f"Snapshot uses legacy layout: {snapshot_id}",
            hint="Legacy snapshots must be migrated before this operation.",
            next_command=f"backup-store verify {snapshot_id} --migrate",
        )


# ========== Object store integrity ==========

class ObjectNotFoundError(BackupStoreError):
    """Raised when a requested object does not exist."""

    code = 'OBJECT_MISSING'
    exit_code = 9

    def __init__(self, object_hash: str, snapshot_id: Optional[str] = None):
        self.object_hash = object_hash
        self.snapshot_id = snapshot_id
        super().__init__(
            f"Object not found: {object_hash}",
            hint="The snapshot may be incomplete. Try verify or re-snapshot.",
            next_command=f"backup-store verify {snapshot_id}" if snapshot_id else None,
        )


class ObjectCorruptedError(BackupStoreError):
    """Raised when content does not hash to its claimed key."""

    code = 'OBJECT_CORRUPT'
    exit_code = 9

    def __init__(self, object_hash: str, actual: str):
        self.object_hash = object_hash
        self.expected = object_hash
        self.actual = actual
        super().__init__(
            f"Object corrupted: {object_hash}\n"
            f"Expected hash: {object_hash}\n"
            f"Actual hash: {actual}"
        )


# ========== Packs ==========

class PackError(BackupStoreError):
    """Base for pack export/import failures."""

    code = 'PACK'
    exit_code = 4


class PackMissingError(PackError):
    code = 'PACK_MISSING'

    def __init__(self, path: str):
        self.path = path
        super().__init__(
            f"Pack not found: {path}",
            hint="Provide the path to a pack file created by export.",
        )


class PackInvalidError(PackError):
    code = 'PACK_INVALID'

    def __init__(self, reason: str, hint: Optional[str] = None):
        self.reason = reason
        super().__init__(f"Invalid pack: {reason}", hint=hint)


class PackUnsupportedError(PackError):
    code = 'PACK_UNSUPPORTED'

    def __init__(self, schema, expected: int):
        self.schema = schema
        self.expected = expected
        super().__init__(
            f"Unsupported pack schema: {schema!r}",
            hint=f"Expected schema {expected}.",
        )


class PackIncompleteError(PackError):
    code = 'PACK_INCOMPLETE'

    def __init__(self, missing_hash: str):
        self.missing_hash = missing_hash
        super().__init__(
            f"Pack missing object for {missing_hash}",
            hint="Re-export the pack; it should include all referenced objects.",
        )


class SnapshotExistsError(PackError):
    code = 'SNAPSHOT_EXISTS'

    def __init__(self, snapshot_id: str):
        self.snapshot_id = snapshot_id
        super().__init__(
            f"Snapshot already exists: {snapshot_id}",
            hint="Use --force to overwrite the existing manifest.",
        )


# ========== Filesystem ==========

class PermissionDeniedError(BackupStoreError):
    """Raised when the OS denies access to a path."""

    code = 'PERMISSION'
    exit_code = 5

    def __init__(self, action: Optional[str] = None, path: Optional[str] = None):
        self.action = action
        self.path = path
        msg = f"Permission denied while {action}." if action else "Permission denied."
        if path:
            msg += f" ({path})"
        super().__init__(
            msg,
            hint="Check file permissions and ensure the destination is writable.",
        )


class StorageError(BackupStoreError):
    """Raised when filesystem operations fail."""

    code = 'STORAGE'
    exit_code = 12

    def __init__(self, operation: str, path: str, cause: Exception = None):
        self.operation = operation
        self.path = path
        self.cause = cause
        msg = f"Storage error during {operation}: {path}"
        if cause:
            msg += f"\nCause: {cause}"
        super().__init__(msg)


class GarbageCollectionError(BackupStoreError):
    """Raised when garbage collection cannot safely proceed."""

    code = 'GC_ERROR'
    exit_code = 11

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(
            f"Garbage collection error: {reason}",
            hint="Run fsck to find unreadable manifests before collecting.",
            next_command="backup-store fsck",
        )


class FsckFailedError(BackupStoreError):
    """Raised when fsck finds any integrity violation."""

    code = 'FSCK_ERRORS'
    exit_code = 10

    def __init__(self, report):
        self.report = report
        super().__init__(
            "fsck found integrity errors",
            hint=(
                "Repair missing/corrupt objects and re-run fsck."
                if report.verify_hash
                else "Re-run with --verify-hash for full hash checking."
            ),
        )


_PERMISSION_ERRNOS = {errno.EACCES, errno.EPERM, errno.EROFS}


def as_user_error(exc: BaseException, action: Optional[str] = None) -> Optional[BackupStoreError]:
    """
    Translate an exception into a BackupStoreError when it is well understood.

    Returns the error itself if already structured, a PermissionDeniedError
    for access-denied OS errors, and None otherwise.
    """
    if isinstance(exc, StorageError) and isinstance(exc.cause, OSError):
        if exc.cause.errno in _PERMISSION_ERRNOS:
            return PermissionDeniedError(action or exc.operation, exc.path)
        return exc
    if isinstance(exc, BackupStoreError):
        return exc
    if isinstance(exc, OSError) and exc.errno in _PERMISSION_ERRNOS:
        return PermissionDeniedError(action, exc.filename)
    return None
