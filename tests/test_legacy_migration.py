"""
Test layout detection and migration of legacy tree snapshots.
"""

import errno
import json
import os

import pytest

from backup_store import BackupStoreEngine, SnapshotEmptyError, SnapshotLegacyError, StorageError
from backup_store.errors import PermissionDeniedError, as_user_error
from backup_store.integrity.hashing import compute_hash, hash_file
from backup_store.snapshots.legacy import (
    CasLayout,
    EmptyLayout,
    LegacyTreeLayout,
    detect_layout,
    list_legacy_files,
)

LEGACY_ID = '2024-05-01T08-00-00.000Z'


@pytest.fixture
def engine(tmp_path):
    engine = BackupStoreEngine(tmp_path / 'dest', 'laptop')
    engine.initialize()
    return engine


@pytest.fixture
def legacy_dir(engine):
    snapshot_dir = engine.layout.get_snapshot_dir(LEGACY_ID)
    (snapshot_dir / 'notes').mkdir(parents=True)
    (snapshot_dir / 'notes' / 'today.md').write_bytes(b'# today')
    (snapshot_dir / 'settings.json').write_bytes(b'{"theme": "dark"}')
    (snapshot_dir / 'dup.md').write_bytes(b'# today')
    return snapshot_dir


class TestDetectLayout:

    def test_manifest_snapshot(self, engine, tmp_path):
        (tmp_path / 'src').mkdir()
        (tmp_path / 'src' / 'a').write_bytes(b'a')
        result = engine.create_snapshot(tmp_path / 'src')

        layout = detect_layout(engine.layout.get_snapshot_dir(result.snapshot_id))

        assert isinstance(layout, CasLayout)
        assert layout.kind == 'cas'
        assert layout.manifest['id'] == result.snapshot_id

    def test_legacy_tree(self, legacy_dir):
        layout = detect_layout(legacy_dir)

        assert isinstance(layout, LegacyTreeLayout)
        assert layout.manifest_invalid is False

    def test_invalid_manifest_is_legacy(self, legacy_dir):
        (legacy_dir / 'manifest.json').write_text('[1, 2, 3]')

        layout = detect_layout(legacy_dir)

        assert isinstance(layout, LegacyTreeLayout)
        assert layout.manifest_invalid is True

    def test_empty_directory(self, engine):
        snapshot_dir = engine.layout.get_snapshot_dir(LEGACY_ID)
        snapshot_dir.mkdir()

        assert isinstance(detect_layout(snapshot_dir), EmptyLayout)

    def test_list_reports_layout(self, engine, legacy_dir):
        [entry] = engine.list_snapshots()

        assert entry['id'] == LEGACY_ID
        assert entry['layout'] == 'legacy-tree'
        assert entry['files'] is None

    def test_legacy_file_listing_skips_top_level_manifest(self, legacy_dir):
        (legacy_dir / 'manifest.json').write_text('not json')
        (legacy_dir / 'notes' / 'manifest.json').write_text('{}')

        rels = [f.rel_path for f in list_legacy_files(legacy_dir)]

        assert rels == ['dup.md', 'notes/manifest.json', 'notes/today.md', 'settings.json']


class TestMigration:

    def test_verify_requires_migration(self, engine, legacy_dir):
        with pytest.raises(SnapshotLegacyError) as exc_info:
            engine.verify(LEGACY_ID)

        assert '--migrate' in exc_info.value.next_command

    def test_verify_with_migrate(self, engine, legacy_dir):
        report = engine.verify(LEGACY_ID, migrate=True)

        assert report.ok is True
        assert report.checked == 3
        assert isinstance(engine.get_layout(LEGACY_ID), CasLayout)

    def test_migrated_manifest_matches_files(self, engine, legacy_dir):
        result = engine.migrate(LEGACY_ID, label='imported')

        doc = json.loads((legacy_dir / 'manifest.json').read_text())
        assert doc['id'] == LEGACY_ID
        assert doc['machineId'] == 'laptop'
        assert doc['label'] == 'imported'
        assert doc['legacy']['layout'] == 'tree'
        assert doc['legacy']['migratedAt'].endswith('Z')
        assert doc['sha256'] == {
            'dup.md': hash_file(legacy_dir / 'dup.md'),
            'notes/today.md': hash_file(legacy_dir / 'notes' / 'today.md'),
            'settings.json': hash_file(legacy_dir / 'settings.json'),
        }
        assert result.manifest.stats == {'files': 3, 'reused': 1, 'stored': 2}
        assert engine.object_store.has_object(compute_hash(b'# today'))

    def test_original_files_stay_in_place(self, engine, legacy_dir):
        engine.migrate(LEGACY_ID)

        assert (legacy_dir / 'notes' / 'today.md').read_bytes() == b'# today'

    def test_migrate_dry_run_writes_nothing(self, engine, legacy_dir):
        result = engine.migrate(LEGACY_ID, dry_run=True)

        assert result.dry_run is True
        assert result.files == 3
        assert not (legacy_dir / 'manifest.json').exists()
        assert engine.object_store.list_all_objects() == []

    def test_migrate_already_migrated_is_noop(self, engine, legacy_dir):
        engine.migrate(LEGACY_ID)
        before = (legacy_dir / 'manifest.json').read_bytes()

        assert engine.migrate(LEGACY_ID) is None
        assert (legacy_dir / 'manifest.json').read_bytes() == before

    def test_migrate_empty_snapshot(self, engine):
        engine.layout.get_snapshot_dir(LEGACY_ID).mkdir()

        with pytest.raises(SnapshotEmptyError):
            engine.migrate(LEGACY_ID)

    def test_gc_keeps_migrated_objects(self, engine, legacy_dir):
        engine.migrate(LEGACY_ID)

        report = engine.garbage_collect()

        assert report.removed == []
        assert report.kept == 2


@pytest.fixture
def unreadable_notes(monkeypatch):
    """Make os.scandir fail on any directory named 'notes'."""
    real_scandir = os.scandir

    def scandir(path='.'):
        if isinstance(path, int):
            return real_scandir(path)
        if os.path.basename(os.fspath(path)) == 'notes':
            raise PermissionError(errno.EACCES, 'Permission denied', os.fspath(path))
        return real_scandir(path)

    monkeypatch.setattr(os, 'scandir', scandir)


class TestUnreadableLegacyTree:

    def test_listing_raises_instead_of_skipping(self, legacy_dir, unreadable_notes):
        with pytest.raises(StorageError) as exc_info:
            list_legacy_files(legacy_dir)

        assert exc_info.value.path.endswith('notes')
        assert isinstance(as_user_error(exc_info.value), PermissionDeniedError)

    def test_migration_writes_no_partial_manifest(self, engine, legacy_dir, unreadable_notes):
        with pytest.raises(StorageError):
            engine.migrate(LEGACY_ID)

        assert not (legacy_dir / 'manifest.json').exists()
        assert engine.object_store.list_all_objects() == []
