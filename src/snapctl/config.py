"""Configuration loader for snapctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/snapctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``SNAPCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SNAPCTL_BACKUP__MIN_FREE_SPACE_GB=10
    export SNAPCTL_RESTORE__STAGING_ROOT=/var/tmp

Values are coerced via PyYAML's ``safe_load`` so that booleans, numbers and
lists are parsed naturally. The resulting configuration is exposed as
immutable ``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load snapctl configuration. Install with "
        "`pip install snapctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "SNAPCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

GIB = 1024 * 1024 * 1024


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class RepositoryConfig:
    """Location of the snapshot repository and its credential file."""

    path: Path = Path("/var/backups/restic-repo")
    password_file: Path = Path("/etc/restic/password")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"path": str(self.path), "password_file": str(self.password_file)}


@dataclass(frozen=True)
class BackupConfig:
    """What a backup covers and how much room a follow-up backup needs."""

    paths: tuple[Path, ...]
    excludes: tuple[str, ...]
    tags: tuple[str, ...] = ("manual-snapshot",)
    min_free_space_gb: int = 5

    @property
    def min_free_space_bytes(self) -> int:
        """Return the fixed free-space floor in bytes."""
        return self.min_free_space_gb * GIB

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "paths": [str(path) for path in self.paths],
            "excludes": list(self.excludes),
            "tags": list(self.tags),
            "min_free_space_gb": self.min_free_space_gb,
        }


@dataclass(frozen=True)
class RestoreConfig:
    """Staging, swap and sync settings for whole-machine restores."""

    staging_root: Path
    live_root: Path
    space_check_path: Path
    runtime_data_dir: Path
    additive_paths: tuple[Path, ...]
    sync_excludes: tuple[str, ...]
    confirmation_phrase: str = "PROCEED"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "staging_root": str(self.staging_root),
            "live_root": str(self.live_root),
            "space_check_path": str(self.space_check_path),
            "runtime_data_dir": str(self.runtime_data_dir),
            "additive_paths": [str(path) for path in self.additive_paths],
            "sync_excludes": list(self.sync_excludes),
            "confirmation_phrase": self.confirmation_phrase,
        }


@dataclass(frozen=True)
class RuntimeConfig:
    """Container runtime daemon units managed through systemd."""

    units: tuple[str, ...] = ("docker.socket", "docker.service")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"units": list(self.units)}


@dataclass(frozen=True)
class BinariesConfig:
    """External commands invoked by the providers."""

    restic: str = "restic"
    rsync: str = "rsync"
    docker: str = "docker"
    docker_compose: str = "docker-compose"
    systemctl: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "restic": self.restic,
            "rsync": self.rsync,
            "docker": self.docker,
            "docker_compose": self.docker_compose,
            "systemctl": self.systemctl,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for snapctl."""

    config_file: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    repository: RepositoryConfig
    backup: BackupConfig
    restore: RestoreConfig
    runtime: RuntimeConfig
    binaries: BinariesConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "repository": self.repository.to_dict(),
            "backup": self.backup.to_dict(),
            "restore": self.restore.to_dict(),
            "runtime": self.runtime.to_dict(),
            "binaries": self.binaries.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/snapctl/config.yml",
    "logs_dir": "/var/log/snapctl",
    "runtime_dir": "/run/snapctl",
    "lock_timeout": 30.0,
    "repository": {
        "path": "/var/backups/restic-repo",
        "password_file": "/etc/restic/password",
    },
    "backup": {
        "paths": ["/", "/boot"],
        "excludes": [
            "/var/cache",
            "/home/*/.cache",
            "/tmp",
            "/proc",
            "/sys",
            "/dev",
            "/run",
            "/mnt",
            "/media",
            "/snap",
        ],
        "tags": ["manual-snapshot"],
        "min_free_space_gb": 5,
    },
    "restore": {
        "staging_root": "/tmp",
        "live_root": "/",
        "space_check_path": "/",
        "runtime_data_dir": "/var/lib/docker",
        "additive_paths": ["/bin", "/sbin", "/lib", "/lib32", "/lib64", "/libx32", "/usr"],
        "sync_excludes": [
            "/var/cache",
            "/proc",
            "/sys",
            "/dev",
            "/run",
            "/tmp",
            "/mnt",
            "/media",
            "/boot/efi",
            "/snap",
        ],
        "confirmation_phrase": "PROCEED",
    },
    "runtime": {
        "units": ["docker.socket", "docker.service"],
    },
    "binaries": {
        "restic": "restic",
        "rsync": "rsync",
        "docker": "docker",
        "docker_compose": "docker-compose",
        "systemctl": "systemctl",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("repository", "backup", "restore", "runtime", "binaries")
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

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in _SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    backup_map = _as_dict(raw.get("backup"), "backup")
    min_free = backup_map.get("min_free_space_gb")
    if min_free is not None and _expect_int(min_free, "backup.min_free_space_gb", default=5) < 0:
        raise ConfigError("backup.min_free_space_gb must be non-negative.")
    if not _as_sequence(backup_map.get("paths", []), "backup.paths"):
        raise ConfigError("backup.paths must list at least one path.")

    restore_map = _as_dict(raw.get("restore"), "restore")
    phrase = restore_map.get("confirmation_phrase")
    if phrase is not None and not str(phrase).strip():
        raise ConfigError("restore.confirmation_phrase must be a non-empty string.")
    for key in ("staging_root", "live_root", "space_check_path", "runtime_data_dir"):
        value = restore_map.get(key)
        if value is not None and not Path(str(value)).is_absolute():
            raise ConfigError(f"restore.{key} must be an absolute path.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    repository_mapping = _as_dict(raw.get("repository"), "repository")
    repository = RepositoryConfig(
        path=_to_path(repository_mapping.get("path", "/var/backups/restic-repo")),
        password_file=_to_path(repository_mapping.get("password_file", "/etc/restic/password")),
    )

    backup_mapping = _as_dict(raw.get("backup"), "backup")
    backup_excludes = _string_tuple(backup_mapping.get("excludes"), "backup.excludes")
    backup = BackupConfig(
        paths=tuple(
            _to_path(item) for item in _as_sequence(backup_mapping.get("paths"), "backup.paths")
        ),
        excludes=_with_leading(str(repository.path), backup_excludes),
        tags=_string_tuple(backup_mapping.get("tags"), "backup.tags"),
        min_free_space_gb=_expect_int(
            backup_mapping.get("min_free_space_gb"), "backup.min_free_space_gb", default=5
        ),
    )

    restore_mapping = _as_dict(raw.get("restore"), "restore")
    runtime_data_dir = _to_path(restore_mapping.get("runtime_data_dir", "/var/lib/docker"))
    sync_excludes = _string_tuple(restore_mapping.get("sync_excludes"), "restore.sync_excludes")
    sync_excludes = _with_leading(str(runtime_data_dir), sync_excludes)
    sync_excludes = _with_leading(str(repository.path), sync_excludes)
    restore = RestoreConfig(
        staging_root=_to_path(restore_mapping.get("staging_root", "/tmp")),
        live_root=_to_path(restore_mapping.get("live_root", "/")),
        space_check_path=_to_path(restore_mapping.get("space_check_path", "/")),
        runtime_data_dir=runtime_data_dir,
        additive_paths=tuple(
            _to_path(item)
            for item in _as_sequence(
                restore_mapping.get("additive_paths", []), "restore.additive_paths"
            )
        ),
        sync_excludes=sync_excludes,
        confirmation_phrase=str(restore_mapping.get("confirmation_phrase", "PROCEED")).strip(),
    )

    runtime_mapping = _as_dict(raw.get("runtime"), "runtime")
    runtime = RuntimeConfig(
        units=_string_tuple(runtime_mapping.get("units"), "runtime.units"),
    )

    binaries_mapping = _as_dict(raw.get("binaries"), "binaries")
    binaries = BinariesConfig(
        restic=str(binaries_mapping.get("restic", "restic")),
        rsync=str(binaries_mapping.get("rsync", "rsync")),
        docker=str(binaries_mapping.get("docker", "docker")),
        docker_compose=str(binaries_mapping.get("docker_compose", "docker-compose")),
        systemctl=str(binaries_mapping.get("systemctl", "systemctl")),
    )

    return AppConfig(
        config_file=config_file,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        repository=repository,
        backup=backup,
        restore=restore,
        runtime=runtime,
        binaries=binaries,
    )


def _with_leading(value: str, items: tuple[str, ...]) -> tuple[str, ...]:
    """Return *items* with *value* first, dropping any duplicate of it."""
    return (value, *(item for item in items if item != value))


def _string_tuple(value: object | None, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    result: list[str] = []
    for item in _as_sequence(value, label):
        text = str(item).strip()
        if text:
            result.append(text)
    return tuple(result)


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
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, str):
        # A single path from an environment override, e.g. SNAPCTL_BACKUP__PATHS=/srv
        return [value]
    if isinstance(value, bytes) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


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
    "BinariesConfig",
    "ConfigError",
    "GIB",
    "RepositoryConfig",
    "RestoreConfig",
    "RuntimeConfig",
    "load_config",
]
