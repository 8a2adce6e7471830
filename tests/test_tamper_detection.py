"""
Test tamper detection.

Verifies that modified, truncated or missing objects are detected by
verify, fsck and the object store itself.
"""

import io
import json
import tempfile
from pathlib import Path

import pytest

from backup_store import (
    BackupStoreEngine,
    FsckFailedError,
    ObjectCorruptedError,
    ObjectNotFoundError,
)
from backup_store.integrity.hashing import compute_hash


class TestTamperDetection:
    """Test that content tampering is detected."""

    @pytest.fixture
    def store(self):
        """Create a temporary destination holding one snapshot."""
        with tempfile.TemporaryDirectory() as tmpdir:
            tmp = Path(tmpdir)
            source = tmp / 'source'
            source.mkdir()
            (source / 'doc.txt').write_bytes(b'original content')
            (source / 'other.txt').write_bytes(b'untouched')
            engine = BackupStoreEngine(tmp / 'dest', 'laptop')
            engine.initialize()
            result = engine.create_snapshot(source)
            yield engine, result.snapshot_id

    def _tamper(self, engine, data: bytes, replacement: bytes) -> str:
        obj_hash = compute_hash(data)
        engine.layout.get_object_path(obj_hash).write_bytes(replacement)
        return obj_hash

    def test_get_object_detects_modification(self, store):
        engine, _ = store
        obj_hash = self._tamper(engine, b'original content', b'tampered content')

        with pytest.raises(ObjectCorruptedError) as exc_info:
            engine.object_store.get_object(obj_hash)

        assert exc_info.value.expected == obj_hash
        assert exc_info.value.actual == compute_hash(b'tampered content')

    def test_get_object_without_verify_returns_raw_bytes(self, store):
        engine, _ = store
        obj_hash = self._tamper(engine, b'original content', b'tampered content')

        assert engine.object_store.get_object(obj_hash, verify=False) == b'tampered content'

    def test_verify_detects_modification(self, store):
        engine, snapshot_id = store
        self._tamper(engine, b'original content', b'tampered content')

        report = engine.verify(snapshot_id)

        assert report.ok is False
        assert {c.rel: c.match for c in report.checks} == {'doc.txt': False, 'other.txt': True}

    def test_verify_detects_truncation(self, store):
        engine, snapshot_id = store
        self._tamper(engine, b'original content', b'original')

        assert engine.verify(snapshot_id).ok is False

    def test_fsck_passes_on_clean_store(self, store):
        engine, _ = store
        report = engine.fsck(verify_hash=True)

        assert report.ok is True
        assert report.snapshots_checked == 1
        assert report.manifests_ok == 1

    def test_fsck_without_hashing_misses_content_tampering(self, store):
        engine, _ = store
        self._tamper(engine, b'original content', b'tampered content')

        assert engine.fsck().ok is True

    def test_fsck_verify_hash_detects_corruption(self, store):
        engine, snapshot_id = store
        obj_hash = self._tamper(engine, b'original content', b'tampered content')

        with pytest.raises(FsckFailedError) as exc_info:
            engine.fsck(verify_hash=True)

        report = exc_info.value.report
        assert exc_info.value.exit_code == 10
        assert report.corrupt_objects == 1
        assert report.corrupt[0]['snapshotId'] == snapshot_id
        assert report.corrupt[0]['hash'] == obj_hash
        assert report.corrupt[0]['got'] == compute_hash(b'tampered content')

    def test_fsck_detects_missing_object(self, store):
        engine, snapshot_id = store
        obj_hash = compute_hash(b'untouched')
        engine.layout.get_object_path(obj_hash).unlink()

        with pytest.raises(FsckFailedError) as exc_info:
            engine.fsck()

        report = exc_info.value.report
        assert report.missing == [{'snapshotId': snapshot_id, 'rel': 'other.txt', 'hash': obj_hash}]
        assert report.to_dict()['missingObjects'] == 1

    def test_fsck_audits_hashes_only_in_files_map(self, store):
        engine, snapshot_id = store
        manifest_path = engine.layout.get_manifest_path(snapshot_id)
        doc = json.loads(manifest_path.read_text())
        absent = compute_hash(b'never stored')
        doc.setdefault('files', {})['extra.txt'] = {'sha256': absent, 'size': 12, 'mtimeMs': 0}
        manifest_path.write_text(json.dumps(doc))

        with pytest.raises(FsckFailedError) as exc_info:
            engine.fsck()

        report = exc_info.value.report
        assert report.missing == [{'snapshotId': snapshot_id, 'rel': 'extra.txt', 'hash': absent}]

    def test_fsck_flags_invalid_hash_values(self, store):
        engine, snapshot_id = store
        manifest_path = engine.layout.get_manifest_path(snapshot_id)
        doc = json.loads(manifest_path.read_text())
        doc['sha256']['doc.txt'] = '../../etc/passwd'
        manifest_path.write_text(json.dumps(doc))

        with pytest.raises(FsckFailedError) as exc_info:
            engine.fsck()

        invalid = exc_info.value.report.invalid_manifests
        assert [entry['snapshotId'] for entry in invalid] == [snapshot_id]

    def test_fsck_lists_manifestless_snapshots_without_failing(self, store):
        engine, _ = store
        legacy = engine.layout.snapshots_dir / '2020-01-01T00-00-00.000Z'
        legacy.mkdir()
        (legacy / 'a.txt').write_bytes(b'tree')

        report = engine.fsck()

        assert report.ok is True
        assert report.missing_manifests == [{'snapshotId': '2020-01-01T00-00-00.000Z'}]

    def test_put_stream_rejects_wrong_expected_hash(self, store):
        engine, _ = store
        claimed = compute_hash(b'what the sender promised')

        with pytest.raises(ObjectCorruptedError):
            engine.object_store.put_stream(io.BytesIO(b'what actually arrived'), claimed)

        assert not engine.object_store.has_object(claimed)
        assert not engine.object_store.has_object(compute_hash(b'what actually arrived'))

    def test_put_stream_rejects_mismatch_for_existing_object(self, store):
        engine, _ = store
        existing = compute_hash(b'untouched')

        with pytest.raises(ObjectCorruptedError):
            engine.object_store.put_stream(io.BytesIO(b'impostor'), existing)

        assert engine.object_store.get_object(existing) == b'untouched'

    def test_missing_object_raises(self, store):
        engine, _ = store
        with pytest.raises(ObjectNotFoundError):
            engine.object_store.get_object(compute_hash(b'never stored'))
