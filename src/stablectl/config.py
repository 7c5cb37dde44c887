"""Configuration loader for stablectl.

Values are resolved from the following sources, later sources winning:

1. Built-in defaults.
2. ``~/.config/stablectl/config.yml`` (or an override path).
3. Environment variables prefixed with ``STABLECTL_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export STABLECTL_PORTS__BASE=13000
    export STABLECTL_TIMEOUTS__BOOTSTRAP=null

Values are coerced via PyYAML's ``safe_load`` so that numbers and ``null`` are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "STABLECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
ALLOWED_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ToolsConfig:
    """External archive tools used to unpack distributions."""

    tar_bin: str = "tar"
    unzip_bin: str = "unzip"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"tar_bin": self.tar_bin, "unzip_bin": self.unzip_bin}


@dataclass(frozen=True)
class TimeoutsConfig:
    """Timeouts in seconds for blocking subprocesses (``None`` waits forever)."""

    unpack: float | None = 600.0
    bootstrap: float | None = 600.0
    version_query: float | None = 60.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unpack": self.unpack,
            "bootstrap": self.bootstrap,
            "version_query": self.version_query,
        }


@dataclass(frozen=True)
class ServerDefaults:
    """Defaults applied to new server instances and connection strings."""

    host: str = "localhost"
    user: str = "root"
    database: str = "test"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"host": self.host, "user": self.user, "database": self.database}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for stablectl."""

    config_file: Path
    root: Path
    logs_dir: Path
    log_level: str
    base_port: int
    first_server_id: int
    tools: ToolsConfig
    timeouts: TimeoutsConfig
    server: ServerDefaults

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "root": str(self.root),
            "logs_dir": str(self.logs_dir),
            "log_level": self.log_level,
            "ports": {"base": self.base_port},
            "server_ids": {"base": self.first_server_id},
            "tools": self.tools.to_dict(),
            "timeouts": self.timeouts.to_dict(),
            "server": self.server.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/stablectl/config.yml",
    "root": ".",
    "logs_dir": "~/.local/state/stablectl/logs",
    "log_level": "WARNING",
    "ports": {"base": 12000},
    "server_ids": {"base": 1},
    "tools": {"tar_bin": "tar", "unzip_bin": "unzip"},
    "timeouts": {"unpack": 600.0, "bootstrap": 600.0, "version_query": 60.0},
    "server": {"host": "localhost", "user": "root", "database": "test"},
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_ALLOWED_NESTED_KEYS: dict[str, set[str]] = {
    "ports": {"base"},
    "server_ids": {"base"},
    "tools": {"tar_bin", "unzip_bin"},
    "timeouts": {"unpack", "bootstrap", "version_query"},
    "server": {"host", "user", "database"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
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


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _ALLOWED_NESTED_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    level = str(raw.get("log_level", "WARNING")).upper()
    if level not in ALLOWED_LOG_LEVELS:
        allowed_levels = ", ".join(sorted(ALLOWED_LOG_LEVELS))
        raise ConfigError(f"Unsupported log_level '{level}'. Allowed: {allowed_levels}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    ports_mapping = _as_dict(raw.get("ports"), "ports")
    base_port = _expect_int(ports_mapping.get("base"), "ports.base", default=12000)
    if not 1 <= base_port <= 65535:
        raise ConfigError(f"ports.base must be between 1 and 65535. Got {base_port}.")

    ids_mapping = _as_dict(raw.get("server_ids"), "server_ids")
    first_server_id = _expect_int(ids_mapping.get("base"), "server_ids.base", default=1)
    if first_server_id < 1:
        raise ConfigError("server_ids.base must be a positive integer.")

    tools_mapping = _as_dict(raw.get("tools"), "tools")
    tools = ToolsConfig(
        tar_bin=str(tools_mapping.get("tar_bin", "tar")),
        unzip_bin=str(tools_mapping.get("unzip_bin", "unzip")),
    )

    timeouts_mapping = _as_dict(raw.get("timeouts"), "timeouts")
    timeouts = TimeoutsConfig(
        unpack=_expect_timeout(timeouts_mapping, "unpack", default=600.0),
        bootstrap=_expect_timeout(timeouts_mapping, "bootstrap", default=600.0),
        version_query=_expect_timeout(timeouts_mapping, "version_query", default=60.0),
    )

    server_mapping = _as_dict(raw.get("server"), "server")
    server = ServerDefaults(
        host=str(server_mapping.get("host", "localhost")),
        user=str(server_mapping.get("user", "root")),
        database=str(server_mapping.get("database", "test")),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        root=_to_path(raw.get("root")),
        logs_dir=_to_path(raw.get("logs_dir")),
        log_level=str(raw.get("log_level", "WARNING")).upper(),
        base_port=base_port,
        first_server_id=first_server_id,
        tools=tools,
        timeouts=timeouts,
        server=server,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_timeout(
    mapping: Mapping[str, object],
    key: str,
    *,
    default: float,
) -> float | None:
    label = f"timeouts.{key}"
    if key not in mapping:
        return default
    value = mapping[key]
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "ServerDefaults",
    "TimeoutsConfig",
    "ToolsConfig",
    "load_config",
]
