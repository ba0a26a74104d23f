"""Configuration loader for quickpg.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/quickpg/config.yml`` (or an override path).
3. Environment variables prefixed with ``QUICKPG_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export QUICKPG_ROOT=/var/lib/quickpg
    export QUICKPG_PG_CTL__STATUS_STRATEGY=pidfile
    export QUICKPG_SERVER__CRASH_UNSAFE=true

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import copy
import getpass
import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import yaml

from .pgconf import PostgresqlConf, format_byte_size, parse_byte_size

ENV_PREFIX = "QUICKPG_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PgCtlConfig:
    """How the ``pg_ctl`` control program is invoked."""

    binary: Path
    timeout: float = 60.0
    status_strategy: str = "command"
    stop_mode: str = "fast"
    initdb_options: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "binary": str(self.binary),
            "timeout": self.timeout,
            "status_strategy": self.status_strategy,
            "stop_mode": self.stop_mode,
            "initdb_options": list(self.initdb_options),
        }


@dataclass(frozen=True)
class CloneConfig:
    """Clone engine tuning."""

    max_workers: int = 8

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"max_workers": self.max_workers}


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings for the post-start ``CREATE DATABASE``."""

    user: str
    host: str | None = None
    connect_attempts: int = 5
    retry_delay: float = 0.5

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "user": self.user,
            "host": self.host,
            "connect_attempts": self.connect_attempts,
            "retry_delay": self.retry_delay,
        }


@dataclass(frozen=True)
class PortsConfig:
    """Port selection defaults."""

    base: int = 0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"base": self.base}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for quickpg."""

    config_file: Path
    root: Path
    logs_dir: Path
    lock_timeout: float
    pg_ctl: PgCtlConfig
    clone: CloneConfig
    database: DatabaseConfig
    server: PostgresqlConf
    ports: PortsConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "root": str(self.root),
            "logs_dir": str(self.logs_dir),
            "lock_timeout": self.lock_timeout,
            "pg_ctl": self.pg_ctl.to_dict(),
            "clone": self.clone.to_dict(),
            "database": self.database.to_dict(),
            "server": _server_to_dict(self.server),
            "ports": self.ports.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/quickpg/config.yml",
    "root": ".",
    "logs_dir": None,  # derived from root when absent
    "lock_timeout": 30.0,
    "pg_ctl": {
        "binary": None,  # derived from root when absent
        "timeout": 60.0,
        "status_strategy": "command",
        "stop_mode": "fast",
        "initdb_options": [],
    },
    "clone": {
        "max_workers": 8,
    },
    "database": {
        "user": None,
        "host": None,
        "connect_attempts": 5,
        "retry_delay": 0.5,
    },
    "server": {
        "listen_addresses": "*",
        "max_connections": 100,
        "shared_buffers": "128MB",
        "max_wal_size": "1GB",
        "min_wal_size": "80MB",
        "timezone": "America/Toronto",
        "locale": "en_US.UTF-8",
        "crash_unsafe": False,
    },
    "ports": {
        "base": 0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "pg_ctl": {"binary", "timeout", "status_strategy", "stop_mode", "initdb_options"},
    "clone": {"max_workers"},
    "database": {"user", "host", "connect_attempts", "retry_delay"},
    "server": {
        "listen_addresses",
        "max_connections",
        "shared_buffers",
        "max_wal_size",
        "min_wal_size",
        "timezone",
        "locale",
        "crash_unsafe",
    },
    "ports": {"base"},
}
ALLOWED_STATUS_STRATEGIES = {"command", "pidfile"}
ALLOWED_STOP_MODES = {"smart", "fast", "immediate"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = copy.deepcopy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _config_path(config_default, config_file, resolved_env)

    file_values = _read_config_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    # An explicit path beats QUICKPG_CONFIG_FILE, which beats the default.
    return Path(cli_override or env.get(CONFIG_ENV_VAR) or default_path)


def _read_config_file(path: Path) -> dict[str, object]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file {path} is not valid YAML: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, str(path))


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    pg_ctl_map = _as_dict(raw.get("pg_ctl"), "pg_ctl")
    strategy = pg_ctl_map.get("status_strategy")
    if strategy is not None and str(strategy) not in ALLOWED_STATUS_STRATEGIES:
        allowed = ", ".join(sorted(ALLOWED_STATUS_STRATEGIES))
        raise ConfigError(f"Unsupported pg_ctl.status_strategy '{strategy}'. Allowed: {allowed}.")
    stop_mode = pg_ctl_map.get("stop_mode")
    if stop_mode is not None and str(stop_mode) not in ALLOWED_STOP_MODES:
        allowed = ", ".join(sorted(ALLOWED_STOP_MODES))
        raise ConfigError(f"Unsupported pg_ctl.stop_mode '{stop_mode}'. Allowed: {allowed}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    root = _to_path(raw.get("root"))
    logs_dir_value = raw.get("logs_dir")
    logs_dir = _to_path(logs_dir_value) if logs_dir_value else root / "logs"
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    pg_ctl_mapping = _as_dict(raw.get("pg_ctl"), "pg_ctl")
    binary_value = pg_ctl_mapping.get("binary")
    binary = _to_path(binary_value) if binary_value else root / "bin" / "pg_ctl"
    initdb_raw = pg_ctl_mapping.get("initdb_options")
    initdb_options: tuple[str, ...] = ()
    if initdb_raw is not None:
        initdb_options = tuple(
            str(item) for item in _as_sequence(initdb_raw, "pg_ctl.initdb_options")
        )
    pg_ctl = PgCtlConfig(
        binary=binary,
        timeout=_expect_positive_float(
            pg_ctl_mapping.get("timeout"), "pg_ctl.timeout", default=60.0
        ),
        status_strategy=str(pg_ctl_mapping.get("status_strategy", "command")),
        stop_mode=str(pg_ctl_mapping.get("stop_mode", "fast")),
        initdb_options=initdb_options,
    )

    clone_mapping = _as_dict(raw.get("clone"), "clone")
    max_workers = _expect_int(clone_mapping.get("max_workers"), "clone.max_workers", default=8)
    if max_workers < 1:
        raise ConfigError("clone.max_workers must be at least 1.")
    clone = CloneConfig(max_workers=max_workers)

    database_mapping = _as_dict(raw.get("database"), "database")
    user_value = database_mapping.get("user")
    user = str(user_value) if user_value else getpass.getuser()
    host_value = database_mapping.get("host")
    connect_attempts = _expect_int(
        database_mapping.get("connect_attempts"), "database.connect_attempts", default=5
    )
    if connect_attempts < 1:
        raise ConfigError("database.connect_attempts must be at least 1.")
    retry_delay_value = database_mapping.get("retry_delay")
    retry_delay = 0.5
    if retry_delay_value is not None:
        retry_delay = _expect_non_negative_float(retry_delay_value, "database.retry_delay")
    database = DatabaseConfig(
        user=user,
        host=str(host_value) if host_value else None,
        connect_attempts=connect_attempts,
        retry_delay=retry_delay,
    )

    server = _build_server(_as_dict(raw.get("server"), "server"))

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    base = _expect_int(ports_mapping.get("base"), "ports.base", default=0)
    if not 0 <= base < 65536:
        raise ConfigError(f"ports.base must be between 0 and 65535. Got {base}.")
    ports = PortsConfig(base=base)

    return AppConfig(
        config_file=config_file,
        root=root,
        logs_dir=logs_dir,
        lock_timeout=lock_timeout,
        pg_ctl=pg_ctl,
        clone=clone,
        database=database,
        server=server,
        ports=ports,
    )


def _build_server(mapping: Mapping[str, object]) -> PostgresqlConf:
    defaults = PostgresqlConf()
    max_connections = _expect_int(
        mapping.get("max_connections"),
        "server.max_connections",
        default=defaults.max_connections,
    )
    if max_connections < 1:
        raise ConfigError("server.max_connections must be at least 1.")
    return PostgresqlConf(
        listen_addresses=str(mapping.get("listen_addresses", defaults.listen_addresses)),
        max_connections=max_connections,
        shared_buffers=_expect_byte_size(
            mapping.get("shared_buffers"), "server.shared_buffers", defaults.shared_buffers
        ),
        max_wal_size=_expect_byte_size(
            mapping.get("max_wal_size"), "server.max_wal_size", defaults.max_wal_size
        ),
        min_wal_size=_expect_byte_size(
            mapping.get("min_wal_size"), "server.min_wal_size", defaults.min_wal_size
        ),
        timezone=str(mapping.get("timezone", defaults.timezone)),
        locale=str(mapping.get("locale", defaults.locale)),
        crash_unsafe=_expect_bool(mapping.get("crash_unsafe"), "server.crash_unsafe"),
    )


def _server_to_dict(server: PostgresqlConf) -> dict[str, object]:
    return {
        "listen_addresses": server.listen_addresses,
        "max_connections": server.max_connections,
        "shared_buffers": format_byte_size(server.shared_buffers),
        "max_wal_size": format_byte_size(server.max_wal_size),
        "min_wal_size": format_byte_size(server.min_wal_size),
        "timezone": server.timezone,
        "locale": server.locale,
        "crash_unsafe": server.crash_unsafe,
    }


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, raw in env.items():
        if key in RESERVED_ENV_KEYS or not key.startswith(ENV_PREFIX):
            continue
        segments = [part.lower() for part in key[len(ENV_PREFIX) :].split("__") if part]
        if not segments:
            continue
        node = overrides
        for segment in segments[:-1]:
            child = node.setdefault(segment, {})
            if not isinstance(child, dict):
                raise ConfigError(f"Environment variable {key} conflicts with {segment!r}.")
            node = child
        node[segments[-1]] = _parse_env_value(raw)
    return overrides


def _parse_env_value(raw: str) -> object:
    # YAML scalars, so "true", "5" and "[a, b]" keep their types.
    text = raw.strip()
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        current = target.get(key)
        if isinstance(current, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(current, _as_dict(value, key))
        else:
            target[key] = value


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        return value
    raise ConfigError(f"Expected {label} to be a list. Got {type(value).__name__}.")


def _to_path(value: object) -> Path:
    if isinstance(value, (str, os.PathLike)):
        return Path(value).expanduser()
    raise ConfigError(f"Expected a filesystem path. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Expected {label} to be an integer. Got {value!r}.")
    return value


def _expect_bool(value: object | None, label: str, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_byte_size(value: object | None, label: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ConfigError(f"Expected {label} to be a byte size such as '128MB'. Got {value!r}.")
    try:
        return parse_byte_size(value)
    except ValueError as exc:
        raise ConfigError(f"Invalid byte size for {label}: {value!r}.") from exc


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _to_float(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _to_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(value: object, label: str) -> float:
    numeric = _to_float(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    non_string = [key for key in value if not isinstance(key, str)]
    if non_string:
        raise ConfigError(f"Mapping {label} must use string keys. Got {non_string[0]!r}.")
    return dict(value)


__all__ = [
    "AppConfig",
    "CloneConfig",
    "ConfigError",
    "DatabaseConfig",
    "PgCtlConfig",
    "PortsConfig",
    "load_config",
]
