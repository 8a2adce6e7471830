"""
Configuration settings for backup-store.

Settings are read from a YAML document (JSON is valid YAML, so JSON
configs load too). The file is located by, in order: an explicit path,
the BACKUP_STORE_CONFIG environment variable, or backup-store.yaml in
the working directory.

Example:

    sourceRoot: ~/notes
    dest: /Volumes/Backup
    machineId: laptop
    includes: [memory, "*.md"]
    excludes: [tmp/, "**/*.log"]
    retention:
      hourlyHours: 24
      dailyDays: 30
      weeklyWeeks: 520
    trustMtime: true
    hashWorkers: 4
"""

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional

import yaml

from .errors import ConfigurationError
from .snapshots.creator import default_hash_workers
from .snapshots.retention import RetentionPolicy

CONFIG_ENV_VAR = 'BACKUP_STORE_CONFIG'
DEFAULT_CONFIG_NAME = 'backup-store.yaml'


@dataclass
class Settings:
    """Resolved configuration for one (dest, machine) pair."""

    dest: str
    source_root: str = field(default_factory=os.getcwd)
    machine_id: str = field(default_factory=socket.gethostname)
    includes: List[str] = field(default_factory=list)
    excludes: List[str] = field(default_factory=list)
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    trust_mtime: bool = True
    hash_workers: int = field(default_factory=default_hash_workers)
    path: Optional[str] = None


def get_config_path(config_path: Optional[str | Path] = None) -> Path:
    """
    Get the configuration file path.

    Returns the explicit path if given, then the BACKUP_STORE_CONFIG
    environment variable if set, otherwise backup-store.yaml in the
    working directory.
    """
    if config_path:
        return Path(config_path).expanduser().resolve()
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser().resolve()
    return Path.cwd() / DEFAULT_CONFIG_NAME


def load_config(config_path: Optional[str | Path] = None) -> Settings:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Optional path to the configuration file.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the file is missing, unreadable, not a
                            mapping, lacks dest, or holds invalid values.
    """
    path = get_config_path(config_path)
    if not path.exists():
        raise ConfigurationError(
            f"No config found at {path}. Provide --config <path>, set "
            f"{CONFIG_ENV_VAR}, or create {DEFAULT_CONFIG_NAME}."
        )
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file must contain a mapping: {path}")

    settings = settings_from_dict(data, base_dir=path.parent)
    settings.path = str(path)
    return settings


def settings_from_dict(data: dict, base_dir: Optional[Path] = None) -> Settings:
    """Build and validate Settings from the camelCase document shape."""
    base_dir = base_dir or Path.cwd()

    dest = data.get('dest')
    if not dest or not isinstance(dest, str):
        raise ConfigurationError("Config missing required field: dest")

    settings = Settings(dest=_resolve(base_dir, dest))
    if data.get('sourceRoot') is not None:
        settings.source_root = _resolve(base_dir, _require_str(data, 'sourceRoot'))
    if data.get('machineId') is not None:
        settings.machine_id = _require_str(data, 'machineId')
    settings.includes = _string_list(data, 'includes')
    settings.excludes = _string_list(data, 'excludes')
    settings.retention = _retention(data.get('retention'))

    if 'trustMtime' in data:
        if not isinstance(data['trustMtime'], bool):
            raise ConfigurationError("trustMtime must be true or false")
        settings.trust_mtime = data['trustMtime']
    if 'hashWorkers' in data:
        workers = data['hashWorkers']
        if isinstance(workers, bool) or not isinstance(workers, int) or workers < 1:
            raise ConfigurationError("hashWorkers must be a positive integer")
        settings.hash_workers = workers

    return settings


def save_config(settings: Settings, config_path: str | Path) -> None:
    """
    Save configuration to a YAML file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    config_path = Path(config_path)
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(settings_to_dict(settings), f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def settings_to_dict(settings: Settings) -> dict:
    """Convert Settings to the on-disk document shape."""
    return {
        'sourceRoot': settings.source_root,
        'dest': settings.dest,
        'machineId': settings.machine_id,
        'includes': list(settings.includes),
        'excludes': list(settings.excludes),
        'retention': {
            'hourlyHours': settings.retention.hourly_hours,
            'dailyDays': settings.retention.daily_days,
            'weeklyWeeks': settings.retention.weekly_weeks,
        },
        'trustMtime': settings.trust_mtime,
        'hashWorkers': settings.hash_workers,
    }


def _resolve(base_dir: Path, value: str) -> str:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    return str(path.resolve())


def _require_str(data: dict, key: str) -> str:
    value = data[key]
    if not isinstance(value, str) or not value:
        raise ConfigurationError(f"{key} must be a non-empty string")
    return value


def _string_list(data: dict, key: str) -> List[str]:
    value: Any = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigurationError(f"{key} must be a list of glob patterns")
    return list(value)


def _retention(value) -> RetentionPolicy:
    if value is None:
        return RetentionPolicy()
    if not isinstance(value, dict):
        raise ConfigurationError("retention must be a mapping")
    policy = RetentionPolicy(
        hourly_hours=value.get('hourlyHours', 24),
        daily_days=value.get('dailyDays', 30),
        weekly_weeks=value.get('weeklyWeeks', 520),
    )
    try:
        policy.validate()
    except ValueError as e:
        raise ConfigurationError(f"Invalid retention: {e}") from e
    return policy
