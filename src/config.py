"""Reconciler configuration management.

Settings are loaded from a reconciler.yaml file:
- state_path: Location of the JSON state snapshot
- parallelism, max_attempts, backoff_base, backoff_max: Executor tuning
- on_error: continue | stop
- providers: Provider routing (default + per type prefix)

Resolution order for the settings file:
1. Explicit path (--config)
2. $RECONCILER_CONFIG environment variable
3. ./reconciler.yaml in the working directory
4. Built-in defaults (no file)

Relative paths inside the file are resolved against the file's directory.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

# Default settings file name looked up in the working directory
CONFIG_FILENAME = 'reconciler.yaml'

ON_ERROR_CHOICES = ('continue', 'stop')
PROVIDER_TYPES = ('memory', 'command')


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class ProviderConfig:
    """Configuration for one provider entry.

    Attributes:
        key: Routing key (resource type, type prefix, or 'default')
        type: Provider implementation ('memory' or 'command')
        hooks: Operation name -> command argv (command providers only)
        timeout: Per-hook timeout in seconds
        env: Extra environment variables for hook commands
        cwd: Working directory for hook commands
        computed: Resource type -> extra outputs (memory providers only)
    """
    key: str
    type: str = 'memory'
    hooks: dict[str, list[str]] = field(default_factory=dict)
    timeout: int = 300
    env: dict[str, str] = field(default_factory=dict)
    cwd: Optional[Path] = None
    computed: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_value(cls, key: str, value: Any, base_dir: Path) -> 'ProviderConfig':
        # Shorthand: "google: memory"
        if isinstance(value, str):
            value = {'type': value}
        if not isinstance(value, dict):
            raise ConfigError(f"Provider '{key}' must be a mapping or a provider type name")

        ptype = value.get('type', 'memory')
        if ptype not in PROVIDER_TYPES:
            raise ConfigError(
                f"Provider '{key}' has unknown type '{ptype}'. "
                f"Available: {', '.join(PROVIDER_TYPES)}"
            )

        hooks: dict[str, list[str]] = {}
        for op, cmd in (value.get('hooks') or {}).items():
            if op not in ('create', 'update', 'delete'):
                raise ConfigError(f"Provider '{key}' has unknown hook '{op}'")
            if isinstance(cmd, str):
                cmd = [cmd]
            if not isinstance(cmd, list) or not cmd:
                raise ConfigError(f"Provider '{key}' hook '{op}' must be a command list")
            hooks[op] = [str(part) for part in cmd]

        if ptype == 'command':
            missing = [op for op in ('create', 'update', 'delete') if op not in hooks]
            if missing:
                raise ConfigError(
                    f"Command provider '{key}' missing hooks: {', '.join(missing)}"
                )

        computed = value.get('computed') or {}
        if not isinstance(computed, dict) or not all(isinstance(v, dict) for v in computed.values()):
            raise ConfigError(f"Provider '{key}' computed must map resource types to mappings")

        cwd = value.get('cwd')
        return cls(
            key=key,
            type=ptype,
            hooks=hooks,
            timeout=_positive(value.get('timeout', 300), f'providers.{key}.timeout', int),
            env={str(k): str(v) for k, v in (value.get('env') or {}).items()},
            cwd=_resolve_path(cwd, base_dir) if cwd else base_dir,
            computed={str(k): dict(v) for k, v in computed.items()},
        )


@dataclass
class ReconcilerConfig:
    """Engine settings.

    All fields have working defaults so the reconciler runs without a
    settings file (memory provider, state under .states/default/).
    """
    state_path: Path = field(default_factory=lambda: Path('.states') / 'default' / 'state.json')
    parallelism: int = 4
    max_attempts: int = 5
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    on_error: str = 'continue'
    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    config_file: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.state_path, str):
            self.state_path = Path(self.state_path)
        if 'default' not in self.providers:
            self.providers['default'] = ProviderConfig(key='default')

    @classmethod
    def from_dict(cls, data: dict, base_dir: Optional[Path] = None) -> 'ReconcilerConfig':
        """Build settings from a parsed YAML mapping.

        Raises:
            ConfigError: On unknown keys or invalid values
        """
        base_dir = base_dir or Path.cwd()
        known = {'state_path', 'parallelism', 'max_attempts', 'backoff_base',
                 'backoff_max', 'on_error', 'providers'}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")

        on_error = data.get('on_error', 'continue')
        if on_error not in ON_ERROR_CHOICES:
            raise ConfigError(
                f"on_error must be one of {', '.join(ON_ERROR_CHOICES)}, got '{on_error}'"
            )

        providers_data = data.get('providers') or {}
        if not isinstance(providers_data, dict):
            raise ConfigError("providers must be a mapping")
        providers = {
            str(key): ProviderConfig.from_value(str(key), value, base_dir)
            for key, value in providers_data.items()
        }

        config = cls(
            parallelism=_positive(data.get('parallelism', 4), 'parallelism', int),
            max_attempts=_positive(data.get('max_attempts', 5), 'max_attempts', int),
            backoff_base=_non_negative(data.get('backoff_base', 1.0), 'backoff_base'),
            backoff_max=_non_negative(data.get('backoff_max', 30.0), 'backoff_max'),
            on_error=on_error,
            providers=providers,
        )
        if 'state_path' in data:
            config.state_path = _resolve_path(data['state_path'], base_dir)
        return config


def _resolve_path(value: Any, base_dir: Path) -> Path:
    path = Path(str(value)).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    return path


def _positive(value: Any, name: str, cast=int):
    try:
        result = cast(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got {value!r}")
    if result < 1:
        raise ConfigError(f"{name} must be >= 1, got {value!r}")
    return result


def _non_negative(value: Any, name: str) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got {value!r}")
    if result < 0:
        raise ConfigError(f"{name} must be >= 0, got {value!r}")
    return result


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def find_config_file(explicit: Optional[str] = None) -> Optional[Path]:
    """Discover the settings file.

    Returns:
        Path to the settings file, or None when defaults apply

    Raises:
        ConfigError: If an explicitly requested file does not exist
    """
    if explicit:
        path = Path(explicit)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        return path

    if env_path := os.environ.get('RECONCILER_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"RECONCILER_CONFIG={env_path} does not exist")

    local = Path.cwd() / CONFIG_FILENAME
    if local.exists():
        return local

    return None


def load_config(path: Optional[str] = None) -> ReconcilerConfig:
    """Load reconciler settings.

    Args:
        path: Optional explicit settings file

    Returns:
        ReconcilerConfig (defaults if no file was found)
    """
    config_file = find_config_file(path)
    if config_file is None:
        return ReconcilerConfig()

    config = ReconcilerConfig.from_dict(_parse_yaml(config_file),
                                        base_dir=config_file.parent.resolve())
    config.config_file = config_file
    return config
