"""
Test the command-line interface.
"""

import errno
import json

import pytest
import yaml

from backup_store import StorageError
from backup_store.cli import create_parser, main
from backup_store.engine import BackupStoreEngine
from backup_store.integrity.hashing import compute_hash
from backup_store.storage.layout import StorageLayout
from backup_store.storage.lock import acquire_lock, release_lock


@pytest.fixture
def paths(tmp_path):
    source = tmp_path / 'src'
    source.mkdir()
    (source / 'a.txt').write_bytes(b'alpha')
    (source / 'b.txt').write_bytes(b'bravo')
    return {
        'config': tmp_path / 'backup-store.yaml',
        'dest': tmp_path / 'dest',
        'source': source,
        'tmp': tmp_path,
    }


def run(capsys, paths, *args):
    code = main(['--config', str(paths['config']), *args])
    out = capsys.readouterr()
    return code, out.out, out.err


@pytest.fixture
def initialized(capsys, paths):
    code, _, _ = run(
        capsys, paths, 'init',
        '--dest', str(paths['dest']), '--machine', 'laptop', '--source', str(paths['source']),
    )
    assert code == 0
    return paths


class TestCli:

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert 'usage' in capsys.readouterr().out

    def test_parser_has_all_commands(self):
        parser = create_parser()
        for command in ('init', 'snapshot', 'list', 'verify', 'diff', 'restore',
                        'prune', 'gc', 'fsck', 'export', 'import'):
            args = parser.parse_args([command] + {
                'init': ['--dest', 'x'],
                'verify': ['id'],
                'diff': ['a', 'b'],
                'restore': ['id'],
                'export': ['id'],
                'import': ['pack.tgz'],
            }.get(command, []))
            assert args.command == command

    def test_missing_config(self, capsys, paths):
        code, out, err = run(capsys, paths, 'list')

        assert code == 8
        assert out == ''
        assert 'error: ' in err

    def test_uninitialized_destination(self, capsys, paths):
        paths['config'].write_text(yaml.safe_dump({'dest': str(paths['dest']), 'machineId': 'laptop'}))

        code, _, err = run(capsys, paths, 'list')

        assert code == 3
        assert 'next: backup-store init' in err

    def test_init_writes_config(self, capsys, paths):
        code, out, _ = run(
            capsys, paths, 'init',
            '--dest', str(paths['dest']), '--machine', 'laptop', '--source', str(paths['source']),
        )

        result = json.loads(out)
        assert code == 0
        assert result['created'] is True
        assert result['configWritten'] is True
        config = yaml.safe_load(paths['config'].read_text())
        assert config['machineId'] == 'laptop'
        assert config['sourceRoot'] == str(paths['source'].resolve())

    def test_init_keeps_existing_config(self, capsys, initialized):
        before = initialized['config'].read_text()

        code, out, _ = run(
            capsys, initialized, 'init', '--dest', str(initialized['dest']), '--machine', 'laptop',
        )

        assert code == 0
        assert json.loads(out)['configWritten'] is False
        assert initialized['config'].read_text() == before

    def test_snapshot_list_verify(self, capsys, initialized):
        code, out, _ = run(capsys, initialized, 'snapshot', '--label', 'first')
        snapshot = json.loads(out)
        assert code == 0
        assert snapshot['stats'] == {'files': 2, 'reused': 0, 'stored': 2}
        assert snapshot['label'] == 'first'

        code, out, _ = run(capsys, initialized, 'list')
        listed = json.loads(out)['snapshots']
        assert [s['id'] for s in listed] == [snapshot['snapshotId']]

        code, out, _ = run(capsys, initialized, 'verify', snapshot['snapshotId'])
        assert code == 0
        assert json.loads(out)['ok'] is True

    def test_verify_mismatch_exit_status(self, capsys, initialized):
        _, out, _ = run(capsys, initialized, 'snapshot')
        snapshot_id = json.loads(out)['snapshotId']
        layout = StorageLayout(initialized['dest'], 'laptop')
        layout.get_object_path(compute_hash(b'alpha')).write_bytes(b'ALPHA')

        code, out, _ = run(capsys, initialized, 'verify', snapshot_id)

        assert code == 1
        assert json.loads(out)['ok'] is False

    def test_held_lock(self, capsys, initialized):
        layout = StorageLayout(initialized['dest'], 'laptop')
        handle = acquire_lock(layout, 'gc')
        try:
            code, _, err = run(capsys, initialized, 'snapshot')
        finally:
            release_lock(handle)

        assert code == 7
        assert '--force-lock' in err

    def test_fsck_failure(self, capsys, initialized):
        run(capsys, initialized, 'snapshot')
        layout = StorageLayout(initialized['dest'], 'laptop')
        layout.get_object_path(compute_hash(b'bravo')).unlink()

        code, out, err = run(capsys, initialized, 'fsck')

        assert code == 10
        report = json.loads(out)
        assert report['ok'] is False
        assert report['missingObjects'] == 1
        assert 'fsck found integrity errors' in err

    def test_unknown_snapshot(self, capsys, initialized):
        code, _, err = run(capsys, initialized, 'verify', '2000-01-01T00-00-00.000Z')

        assert code == 6
        assert 'Snapshot not found' in err

    def test_export_import_round_trip(self, capsys, initialized, tmp_path):
        _, out, _ = run(capsys, initialized, 'snapshot')
        snapshot_id = json.loads(out)['snapshotId']
        pack = tmp_path / 'snap.tgz'

        code, out, _ = run(capsys, initialized, 'export', snapshot_id, '--out', str(pack))
        assert code == 0
        assert json.loads(out)['objects'] == 2

        code, _, err = run(capsys, initialized, 'import', str(pack))
        assert code == 4
        assert '--force' in err

        code, out, _ = run(capsys, initialized, 'import', str(pack), '--force')
        assert code == 0
        assert json.loads(out)['snapshotId'] == snapshot_id

    def test_restore_and_gc(self, capsys, initialized, tmp_path):
        _, out, _ = run(capsys, initialized, 'snapshot')
        snapshot_id = json.loads(out)['snapshotId']
        target = tmp_path / 'restored'

        code, out, _ = run(capsys, initialized, 'restore', snapshot_id, '--target', str(target))
        assert code == 0
        assert (target / 'a.txt').read_bytes() == b'alpha'

        code, out, _ = run(capsys, initialized, 'gc', '--dry-run')
        assert code == 0
        assert json.loads(out)['removed'] == 0

        code, out, _ = run(capsys, initialized, 'prune', '--dry-run')
        assert code == 0
        assert json.loads(out)['kept'] == [snapshot_id]


def failing_list(exc):
    def list_snapshots(self):
        raise exc
    return list_snapshots


class TestPermissionErrors:

    def test_access_denied_os_error(self, capsys, initialized, monkeypatch):
        denied = PermissionError(errno.EACCES, 'Permission denied', str(initialized['dest']))
        monkeypatch.setattr(BackupStoreEngine, 'list_snapshots', failing_list(denied))

        code, out, err = run(capsys, initialized, 'list')

        assert code == 5
        assert out == ''
        assert 'Permission denied while list' in err
        assert str(initialized['dest']) in err

    def test_storage_error_wrapping_access_denied(self, capsys, initialized, monkeypatch):
        cause = OSError(errno.EROFS, 'Read-only file system')
        wrapped = StorageError('write', str(initialized['dest']), cause)
        monkeypatch.setattr(BackupStoreEngine, 'list_snapshots', failing_list(wrapped))

        code, _, err = run(capsys, initialized, 'list')

        assert code == 5
        assert 'hint: Check file permissions' in err

    def test_storage_error_with_other_cause_keeps_exit_code(self, capsys, initialized, monkeypatch):
        wrapped = StorageError('write', 'x', OSError(errno.ENOSPC, 'No space left on device'))
        monkeypatch.setattr(BackupStoreEngine, 'list_snapshots', failing_list(wrapped))

        code, _, err = run(capsys, initialized, 'list')

        assert code == 12
        assert 'Storage error during write' in err

    def test_other_os_error_propagates(self, capsys, initialized, monkeypatch):
        failure = OSError(errno.EIO, 'Input/output error')
        monkeypatch.setattr(BackupStoreEngine, 'list_snapshots', failing_list(failure))

        with pytest.raises(OSError) as exc_info:
            main(['--config', str(initialized['config']), 'list'])

        assert exc_info.value.errno == errno.EIO
