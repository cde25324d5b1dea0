"""Configuration loader for pcpctl.

Configuration values are merged from several sources, lowest precedence
first:

1. Built-in defaults.
2. ``/etc/pcpctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``PCPCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export PCPCTL_PORTS__APP_BASE=9100
    export PCPCTL_RUNTIME__COMPOSE_BIN="docker compose"

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load pcpctl configuration. Install with "
        "`pip install pcpctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "PCPCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortsConfig:
    """Port pool defaults for new instances."""

    app_base: int = 9000
    db_base: int = 5432
    max_attempts: int = 100
    probe_host: str = "0.0.0.0"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "app_base": self.app_base,
            "db_base": self.db_base,
            "max_attempts": self.max_attempts,
            "probe_host": self.probe_host,
        }


@dataclass(frozen=True)
class RuntimeConfig:
    """Container runtime integration values."""

    compose_bin: str = "docker-compose"
    docker_bin: str = "docker"
    project_prefix: str = "powerchat"
    build_context: Path = Path("/opt/powerchat")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "compose_bin": self.compose_bin,
            "docker_bin": self.docker_bin,
            "project_prefix": self.project_prefix,
            "build_context": str(self.build_context),
        }


@dataclass(frozen=True)
class DatabaseConfig:
    """PostgreSQL defaults applied to every instance."""

    user: str = "powerchat"
    image: str = "postgres:16-alpine"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"user": self.user, "image": self.image}


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage defaults."""

    root: Path
    archive_image: str = "alpine"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root), "archive_image": self.archive_image}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for pcpctl."""

    config_file: Path
    instances_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    ports: PortsConfig
    runtime: RuntimeConfig
    database: DatabaseConfig
    backups: BackupConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "instances_dir": str(self.instances_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "ports": self.ports.to_dict(),
            "runtime": self.runtime.to_dict(),
            "database": self.database.to_dict(),
            "backups": self.backups.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/pcpctl/config.yml",
    "instances_dir": "/opt/powerchat/instances",
    "logs_dir": "/var/log/pcpctl",
    "runtime_dir": "/run/pcpctl",
    "templates_dir": "/etc/pcpctl/templates",
    "lock_timeout": 30.0,
    "ports": {
        "app_base": 9000,
        "db_base": 5432,
        "max_attempts": 100,
        "probe_host": "0.0.0.0",
    },
    "runtime": {
        "compose_bin": "docker-compose",
        "docker_bin": "docker",
        "project_prefix": "powerchat",
        "build_context": "/opt/powerchat",
    },
    "database": {
        "user": "powerchat",
        "image": "postgres:16-alpine",
    },
    "backups": {
        "root": "/opt/powerchat/backups",
        "archive_image": "alpine",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], value).keys())
    for section, value in DEFAULTS.items()
    if isinstance(value, Mapping)
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
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


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

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    ports_mapping = _as_dict(raw.get("ports"), "ports")
    ports = PortsConfig(
        app_base=_expect_port(ports_mapping.get("app_base"), "ports.app_base", default=9000),
        db_base=_expect_port(ports_mapping.get("db_base"), "ports.db_base", default=5432),
        max_attempts=_expect_int(
            ports_mapping.get("max_attempts"), "ports.max_attempts", default=100
        ),
        probe_host=str(ports_mapping.get("probe_host", "0.0.0.0")),
    )
    if ports.max_attempts < 1:
        raise ConfigError("ports.max_attempts must be at least 1.")

    runtime_mapping = _as_dict(raw.get("runtime"), "runtime")
    runtime = RuntimeConfig(
        compose_bin=str(runtime_mapping.get("compose_bin", "docker-compose")),
        docker_bin=str(runtime_mapping.get("docker_bin", "docker")),
        project_prefix=str(runtime_mapping.get("project_prefix", "powerchat")),
        build_context=_to_path(runtime_mapping.get("build_context", "/opt/powerchat")),
    )

    database_mapping = _as_dict(raw.get("database"), "database")
    database = DatabaseConfig(
        user=str(database_mapping.get("user", "powerchat")),
        image=str(database_mapping.get("image", "postgres:16-alpine")),
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups = BackupConfig(
        root=_to_path(backups_mapping.get("root")),
        archive_image=str(backups_mapping.get("archive_image", "alpine")),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        instances_dir=_to_path(raw.get("instances_dir")),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        lock_timeout=_expect_positive_float(
            raw.get("lock_timeout"), "lock_timeout", default=30.0
        ),
        ports=ports,
        runtime=runtime,
        database=database,
        backups=backups,
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


def _expect_port(value: object | None, label: str, *, default: int) -> int:
    port = _expect_int(value, label, default=default)
    if not 1 <= port <= 65535:
        raise ConfigError(f"{label} must be between 1 and 65535. Got {port}.")
    return port


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
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
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
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
    "BackupConfig",
    "ConfigError",
    "DatabaseConfig",
    "PortsConfig",
    "RuntimeConfig",
    "load_config",
]
