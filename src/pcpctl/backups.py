"""Helpers for laying out and listing instance backup sets.

Backups live under ``<backups.root>/<instance>/``. One backup set is four
files sharing a ``YYYYMMDD_HHMMSS`` timestamp::

    database_<ts>.sql
    volumes_<ts>.tar.gz
    config_<ts>.env
    docker-compose_<ts>.yml
"""
from __future__ import annotations

import os
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .state.records import validate_instance_name

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

# (kind, filename prefix, filename suffix)
ARTIFACTS: tuple[tuple[str, str, str], ...] = (
    ("database", "database_", ".sql"),
    ("volumes", "volumes_", ".tar.gz"),
    ("config", "config_", ".env"),
    ("compose", "docker-compose_", ".yml"),
)

_ARTIFACT_PATTERN = re.compile(
    r"^(?P<prefix>database_|volumes_|config_|docker-compose_)"
    r"(?P<ts>\d{8}_\d{6})"
    r"(?P<suffix>\.sql|\.tar\.gz|\.env|\.yml)$"
)


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


def _checked_name(name: str) -> str:
    try:
        return validate_instance_name(name)
    except ValueError as exc:
        raise BackupError(f"Invalid instance name {name!r}: {exc}") from exc


def format_timestamp(moment: datetime) -> str:
    """Return *moment* formatted as a backup timestamp."""
    return moment.strftime(TIMESTAMP_FORMAT)


@dataclass(frozen=True)
class BackupPlan:
    """Destination paths for one backup set."""

    directory: Path
    timestamp: str
    database: Path
    volumes: Path
    config: Path
    compose: Path

    @classmethod
    def for_instance(cls, root: Path, name: str, timestamp: str) -> BackupPlan:
        """Derive the artifact paths for *name* at *timestamp* under *root*."""
        try:
            datetime.strptime(timestamp, TIMESTAMP_FORMAT)
        except ValueError as exc:
            raise BackupError(f"Invalid backup timestamp '{timestamp}'.") from exc
        directory = Path(root).expanduser() / _checked_name(name)
        paths = {
            kind: directory / f"{prefix}{timestamp}{suffix}"
            for kind, prefix, suffix in ARTIFACTS
        }
        return cls(directory=directory, timestamp=timestamp, **paths)

    def artifacts(self) -> tuple[Path, Path, Path, Path]:
        return (self.database, self.volumes, self.config, self.compose)

    def ensure_directory(self) -> None:
        """Create the instance backup directory with restrictive permissions."""
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            os.chmod(self.directory, 0o750)
        except OSError as exc:
            raise BackupError(
                f"Failed to prepare backup directory {self.directory}: {exc}"
            ) from exc


@dataclass(slots=True)
class BackupSet:
    """Artifacts found on disk for one timestamp."""

    timestamp: str
    files: dict[str, Path] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return all(kind in self.files for kind, _, _ in ARTIFACTS)

    @property
    def missing(self) -> list[str]:
        return [kind for kind, _, _ in ARTIFACTS if kind not in self.files]

    @property
    def size_bytes(self) -> int:
        total = 0
        for path in self.files.values():
            try:
                total += path.stat().st_size
            except OSError:
                continue
        return total

    def to_dict(self) -> dict[str, object]:
        return {
            "timestamp": self.timestamp,
            "complete": self.complete,
            "missing": self.missing,
            "size_bytes": self.size_bytes,
            "files": {kind: str(path) for kind, path in self.files.items()},
        }


@dataclass(slots=True)
class BackupsRegistry:
    """Read-only view of the backup root."""

    root: Path

    def __post_init__(self) -> None:
        self.root = Path(self.root).expanduser()

    def instance_dir(self, name: str) -> Path:
        return self.root / _checked_name(name)

    def list_sets(self, name: str) -> list[BackupSet]:
        """Return backup sets for *name*, newest first."""
        directory = self.instance_dir(name)
        if not directory.is_dir():
            return []
        sets: dict[str, BackupSet] = {}
        prefixes = {prefix: kind for kind, prefix, _ in ARTIFACTS}
        for entry in directory.iterdir():
            if not entry.is_file():
                continue
            match = _ARTIFACT_PATTERN.match(entry.name)
            if match is None:
                continue
            kind = prefixes[match.group("prefix")]
            expected_suffix = next(suffix for k, _, suffix in ARTIFACTS if k == kind)
            if match.group("suffix") != expected_suffix:
                continue
            timestamp = match.group("ts")
            sets.setdefault(timestamp, BackupSet(timestamp=timestamp)).files[kind] = entry
        return [sets[key] for key in sorted(sets, reverse=True)]


def copy_artifact(source: Path, destination: Path, *, mode: int = 0o600) -> None:
    """Copy a configuration file into a backup set."""
    try:
        shutil.copyfile(source, destination)
        os.chmod(destination, mode)
    except OSError as exc:
        raise BackupError(f"Failed to copy {source} to {destination}: {exc}") from exc


__all__ = [
    "ARTIFACTS",
    "BackupError",
    "BackupPlan",
    "BackupSet",
    "BackupsRegistry",
    "TIMESTAMP_FORMAT",
    "copy_artifact",
    "format_timestamp",
]
