"""
Run configuration.

The configuration is a JSON object read once at startup. Any key may be
overridden from the environment as DIRBACKUP_<KEY> (e.g. DIRBACKUP_PASSWORD),
which keeps secrets out of the file. Validation happens once, when the
BackupConfig is constructed, before any I/O.
"""

import os
import json
import tempfile
from dataclasses import dataclass, fields
from typing import Optional, Dict, Any

from dirbackup.errors import ConfigInvalid


CONFIG_PATH_ENV = 'DIRBACKUP_CONFIG_PATH'
ENV_PREFIX = 'DIRBACKUP_'

REQUIRED_FIELDS = (
    'source_dir',
    'remote_dir',
    'host',
    'port',
    'username',
    'password',
    'recipient',
    'sender',
)

VALID_POLICIES = ('all', 'modified_today')
VALID_FORMATS = ('zip', 'tar.gz', 'tar.bz2', 'tar.xz')


@dataclass(frozen=True)
class BackupConfig:
    """Immutable parameters for a backup run."""

    source_dir: str
    remote_dir: str
    host: str
    port: int
    username: str
    password: str
    recipient: str
    sender: str

    # Notification transport
    api_key: Optional[str] = None
    smtp_server: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True

    # Pipeline
    policy: str = 'all'
    compression_format: str = 'zip'
    max_concurrency: int = 4
    work_dir: str = tempfile.gettempdir()
    archive_prefix: str = 'backup'
    stale_after_hours: float = 6
    timeout: float = 30

    # Scheduling and reporting
    schedule: Optional[str] = None
    run_name: Optional[str] = None

    def __post_init__(self):
        self.validate()

    def validate(self):
        """
        Check every field.

        Raises:
            ConfigInvalid: If a required field is missing or empty, an
                optional field is set to an empty value, or a value is out
                of range
        """
        for name in REQUIRED_FIELDS:
            if _is_empty(getattr(self, name)):
                raise ConfigInvalid(f"Invalid value for {name}: {getattr(self, name)!r}")

        for f in fields(self):
            if f.name in REQUIRED_FIELDS:
                continue
            value = getattr(self, f.name)
            if value is None and f.default is None:
                continue
            if _is_empty(value):
                raise ConfigInvalid(f"Invalid value for {f.name}: {value!r}")

        if not _is_int(self.port) or not 0 < self.port < 65536:
            raise ConfigInvalid(f"Invalid port: {self.port}")

        if self.policy not in VALID_POLICIES:
            raise ConfigInvalid(
                f"Invalid policy: {self.policy}. Valid options: {list(VALID_POLICIES)}"
            )

        if self.compression_format not in VALID_FORMATS:
            raise ConfigInvalid(
                f"Invalid compression format: {self.compression_format}. "
                f"Valid options: {list(VALID_FORMATS)}"
            )

        for name in ('smtp_port', 'max_concurrency'):
            if not _is_int(getattr(self, name)):
                raise ConfigInvalid(f"Invalid value for {name}: {getattr(self, name)!r}")

        for name in ('stale_after_hours', 'timeout'):
            value = getattr(self, name)
            if not _is_number(value) or value <= 0:
                raise ConfigInvalid(f"{name} must be a positive number, got {value!r}")

        if self.max_concurrency < 1:
            raise ConfigInvalid(f"max_concurrency must be at least 1, got {self.max_concurrency}")

    @property
    def display_name(self) -> str:
        """Identifier used to tag notification subjects."""
        return self.run_name or self.username

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupConfig':
        """
        Build a config from a parsed JSON object.

        Args:
            data: Mapping of config keys to values

        Returns:
            Validated BackupConfig

        Raises:
            ConfigInvalid: If the mapping is not valid
        """
        if not isinstance(data, dict):
            raise ConfigInvalid("Config must be a JSON object")

        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(data) - set(known))
        if unknown:
            raise ConfigInvalid(f"Unknown config keys: {', '.join(unknown)}")

        missing = [name for name in REQUIRED_FIELDS if name not in data]
        if missing:
            raise ConfigInvalid(f"Missing config keys: {', '.join(missing)}")

        nulls = sorted(name for name, value in data.items() if value is None)
        if nulls:
            raise ConfigInvalid(f"Config keys must not be null: {', '.join(nulls)}")

        values = {}
        for name, value in data.items():
            values[name] = _coerce(name, value, known[name].type)

        return cls(**values)


def load_config(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> BackupConfig:
    """
    Load and validate the configuration file.

    Args:
        path: Path to JSON config file. Falls back to DIRBACKUP_CONFIG_PATH.
        environ: Environment mapping used for overrides (default: os.environ)

    Returns:
        Validated BackupConfig

    Raises:
        ConfigInvalid: If the file is missing, unreadable, not JSON or invalid
    """
    environ = os.environ if environ is None else environ

    path = path or environ.get(CONFIG_PATH_ENV)
    if not path:
        raise ConfigInvalid(f"Missing config path: pass --config or set {CONFIG_PATH_ENV}")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigInvalid(f"Config file not found: {path}")
    except json.JSONDecodeError as e:
        raise ConfigInvalid(f"Config file is not valid JSON: {e}")
    except OSError as e:
        raise ConfigInvalid(f"Failed to read config file {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigInvalid("Config must be a JSON object")

    return BackupConfig.from_dict(apply_env_overrides(data, environ))


def apply_env_overrides(data: Dict[str, Any], environ: Dict[str, str]) -> Dict[str, Any]:
    """
    Overlay DIRBACKUP_<KEY> environment variables onto config data.

    Args:
        data: Parsed config file
        environ: Environment mapping

    Returns:
        New dict with overrides applied
    """
    merged = dict(data)
    for f in fields(BackupConfig):
        env_name = ENV_PREFIX + f.name.upper()
        if env_name in environ:
            merged[f.name] = environ[env_name]
    return merged


def _is_empty(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _coerce(name: str, value, annotation):
    """Convert env-provided strings to the field's type."""
    if not isinstance(value, str):
        return value

    target = str(annotation)
    try:
        if target in ('int', "<class 'int'>"):
            return int(value)
        if target in ('float', "<class 'float'>"):
            return float(value)
        if target in ('bool', "<class 'bool'>"):
            return value.strip().lower() in ('1', 'true', 'yes', 'on')
    except ValueError:
        raise ConfigInvalid(f"Invalid value for {name}: {value!r}")

    return value
