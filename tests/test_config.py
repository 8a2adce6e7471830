"""
Test configuration loading and validation.
"""

import json
from pathlib import Path

import pytest
import yaml

from backup_store import ConfigurationError, RetentionPolicy, Settings, load_config
from backup_store.config import CONFIG_ENV_VAR, get_config_path, save_config, settings_from_dict


def write_yaml(path: Path, data) -> Path:
    path.write_text(yaml.safe_dump(data))
    return path


class TestLoadConfig:

    def test_full_config(self, tmp_path):
        path = write_yaml(tmp_path / 'backup-store.yaml', {
            'sourceRoot': str(tmp_path / 'src'),
            'dest': str(tmp_path / 'dest'),
            'machineId': 'laptop',
            'includes': ['memory', '*.md'],
            'excludes': ['tmp/'],
            'retention': {'hourlyHours': 12, 'dailyDays': 7, 'weeklyWeeks': 52},
            'trustMtime': False,
            'hashWorkers': 2,
        })

        settings = load_config(path)

        assert settings.machine_id == 'laptop'
        assert settings.includes == ['memory', '*.md']
        assert settings.excludes == ['tmp/']
        assert settings.retention == RetentionPolicy(12, 7, 52)
        assert settings.trust_mtime is False
        assert settings.hash_workers == 2
        assert settings.path == str(path.resolve())

    def test_relative_paths_resolve_against_config_dir(self, tmp_path):
        path = write_yaml(tmp_path / 'conf.yaml', {'dest': 'backups', 'sourceRoot': 'notes'})

        settings = load_config(path)

        assert settings.dest == str((tmp_path / 'backups').resolve())
        assert settings.source_root == str((tmp_path / 'notes').resolve())

    def test_defaults(self, tmp_path):
        settings = load_config(write_yaml(tmp_path / 'c.yaml', {'dest': '/backups'}))

        assert settings.includes == []
        assert settings.excludes == []
        assert settings.retention == RetentionPolicy()
        assert settings.trust_mtime is True
        assert settings.hash_workers >= 1
        assert settings.machine_id

    def test_json_config_is_accepted(self, tmp_path):
        path = tmp_path / 'backup-store.json'
        path.write_text(json.dumps({'dest': '/backups', 'machineId': 'desk'}))

        assert load_config(path).machine_id == 'desk'

    def test_env_var_locates_config(self, tmp_path, monkeypatch):
        path = write_yaml(tmp_path / 'elsewhere.yaml', {'dest': '/backups'})
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))

        assert get_config_path() == path.resolve()
        assert load_config().dest == str(Path('/backups').resolve())

    def test_explicit_path_beats_env_var(self, tmp_path, monkeypatch):
        monkeypatch.setenv(CONFIG_ENV_VAR, str(tmp_path / 'env.yaml'))

        assert get_config_path(tmp_path / 'cli.yaml') == (tmp_path / 'cli.yaml').resolve()

    def test_default_path_in_working_directory(self, tmp_path, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        monkeypatch.chdir(tmp_path)

        assert get_config_path() == Path.cwd() / 'backup-store.yaml'

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError) as exc_info:
            load_config(tmp_path / 'absent.yaml')

        assert exc_info.value.exit_code == 8

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / 'bad.yaml'
        path.write_text('dest: [unclosed')

        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / 'list.yaml'
        path.write_text('- a\n- b\n')

        with pytest.raises(ConfigurationError):
            load_config(path)


class TestValidation:

    @pytest.mark.parametrize('data', [
        {},
        {'dest': ''},
        {'dest': 42},
        {'dest': '/b', 'includes': 'memory'},
        {'dest': '/b', 'excludes': [1, 2]},
        {'dest': '/b', 'machineId': ''},
        {'dest': '/b', 'retention': {'hourlyHours': -1}},
        {'dest': '/b', 'retention': 'weekly'},
        {'dest': '/b', 'trustMtime': 'yes'},
        {'dest': '/b', 'hashWorkers': 0},
        {'dest': '/b', 'hashWorkers': True},
    ])
    def test_invalid_values(self, data):
        with pytest.raises(ConfigurationError):
            settings_from_dict(data, base_dir=Path('/'))


class TestSaveConfig:

    def test_save_then_load(self, tmp_path):
        settings = Settings(
            dest=str(tmp_path / 'dest'),
            source_root=str(tmp_path / 'src'),
            machine_id='laptop',
            excludes=['tmp/'],
        )
        path = tmp_path / 'out' / 'backup-store.yaml'

        save_config(settings, path)
        loaded = load_config(path)

        assert loaded.dest == str((tmp_path / 'dest').resolve())
        assert loaded.machine_id == 'laptop'
        assert loaded.excludes == ['tmp/']
        assert list(yaml.safe_load(path.read_text()))[0] == 'sourceRoot'
