from .engine import BackupStoreEngine
from .config import Settings, load_config
from .model.manifest import FileEntry, Manifest
from .snapshots.retention import RetentionPolicy
from .errors import (
    BackupStoreError,
    ConfigurationError,
    NotInitializedError,
    InvalidIdentifierError,
    LockHeldError,
    SnapshotLookupError,
    SnapshotNotFoundError,
    SnapshotEmptyError,
    SnapshotLegacyError,
    ObjectNotFoundError,
    ObjectCorruptedError,
    PackError,
    PackMissingError,
    PackInvalidError,
    PackUnsupportedError,
    PackIncompleteError,
    SnapshotExistsError,
    PermissionDeniedError,
    StorageError,
    GarbageCollectionError,
    FsckFailedError,
)

__version__ = '0.1.0'

__all__ = [
    'BackupStoreEngine',
    'Settings',
    'load_config',
    'FileEntry',
    'Manifest',
    'RetentionPolicy',
    'BackupStoreError',
    'ConfigurationError',
    'NotInitializedError',
    'InvalidIdentifierError',
    'LockHeldError',
    'SnapshotLookupError',
    'SnapshotNotFoundError',
    'SnapshotEmptyError',
    'SnapshotLegacyError',
    'ObjectNotFoundError',
    'ObjectCorruptedError',
    'PackError',
    'PackMissingError',
    'PackInvalidError',
    'PackUnsupportedError',
    'PackIncompleteError',
    'SnapshotExistsError',
    'PermissionDeniedError',
    'StorageError',
    'GarbageCollectionError',
    'FsckFailedError',
]
