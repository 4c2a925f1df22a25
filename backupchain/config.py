"""
Run configuration.

Settings come from a shell-style config file (the KEY="value" format used by
backup_config.conf) and are overridden by command line flags.
"""

import shlex
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import List, Optional

from .errors import ConfigError


@dataclass
class BackupConfig:
    source: Optional[str] = None
    destination: Optional[str] = None
    incremental: bool = True
    full_interval_days: int = 7
    differential: bool = False
    retention_days: int = 30
    exclude: List[str] = field(default_factory=list)
    workers: int = 4
    compression: str = "none"
    verify: bool = False
    remote: Optional[str] = None
    max_file_size: int = 1_073_741_824
    log_file: str = "backupchain.log"

    def validate(self) -> 'BackupConfig':
        if self.workers < 1:
            raise ConfigError(f"workers must be at least 1, got {self.workers}")
        if self.full_interval_days < 0:
            raise ConfigError(f"full_interval_days cannot be negative, got {self.full_interval_days}")
        if self.compression not in ("none", "plain", "gzip"):
            raise ConfigError(f"Unknown compression '{self.compression}', expected none or gzip")
        return self

    def merge(self, **overrides) -> 'BackupConfig':
        """Return a copy with every non-None override applied."""
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        for key, value in overrides.items():
            if key not in values:
                raise ConfigError(f"Unknown setting '{key}'")
            if value is not None:
                values[key] = value
        return BackupConfig(**values)


def _parse_bool(key: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("true", "yes", "1", "on"):
        return True
    if lowered in ("false", "no", "0", "off", ""):
        return False
    raise ConfigError(f"{key} must be true or false, got '{value}'")


def _parse_int(key: str, value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got '{value}'") from None


def _parse_list(key: str, value: str) -> List[str]:
    return [item.strip() for item in value.split(',') if item.strip()]


# config file key -> (BackupConfig attribute, converter)
CONFIG_KEYS = {
    "SOURCE_DIR": ("source", None),
    "DESTINATION_DIR": ("destination", None),
    "BACKUP_RETENTION_DAYS": ("retention_days", _parse_int),
    "ENABLE_INCREMENTAL": ("incremental", _parse_bool),
    "INCREMENTAL_MAX_FULL": ("full_interval_days", _parse_int),
    "ENABLE_DIFFERENTIAL": ("differential", _parse_bool),
    "FILE_EXCLUSION_PATTERNS": ("exclude", _parse_list),
    "ENABLE_BACKUP_VERIFICATION": ("verify", _parse_bool),
    "REMOTE_PATH": ("remote", None),
    "WORKERS": ("workers", _parse_int),
    "MAX_FILE_SIZE": ("max_file_size", _parse_int),
    "LOG_FILE": ("log_file", None),
}


def load_config(path) -> BackupConfig:
    """
    Read a KEY="value" config file.

    Comments and unknown keys are ignored. ENABLE_COMPRESSION=true selects the
    gzip archiver.

    Raises:
        ConfigError: If the file cannot be read or a value is invalid
    """
    try:
        text = Path(path).read_text()
    except OSError as e:
        raise ConfigError(f"Cannot read config file '{path}': {str(e)}") from e

    values = {}
    for lineno, line in enumerate(text.splitlines(), 1):
        try:
            tokens = shlex.split(line, comments=True)
        except ValueError as e:
            raise ConfigError(f"{path}:{lineno}: {str(e)}") from None
        if not tokens:
            continue
        if tokens[0] == "export":
            tokens = tokens[1:]
        if len(tokens) != 1 or '=' not in tokens[0]:
            raise ConfigError(f"{path}:{lineno}: expected KEY=value")
        key, _, value = tokens[0].partition('=')
        if key == "ENABLE_COMPRESSION":
            values["compression"] = "gzip" if _parse_bool(key, value) else "none"
            continue
        if key not in CONFIG_KEYS:
            continue
        attribute, convert = CONFIG_KEYS[key]
        values[attribute] = convert(key, value) if convert else value

    return BackupConfig(**values).validate()
