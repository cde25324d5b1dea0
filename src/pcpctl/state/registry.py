"""Filesystem-backed instance registry.

The registry root (``/opt/powerchat/instances`` by default) holds one
directory per instance. Each directory contains the ``.env`` file with ports,
metadata and secrets, plus the ``docker-compose.yml`` naming the instance's
container group. Removing the directory removes the instance.

Records missing required keys (for example after a process was killed
mid-write) are reported as corrupt and skipped when listing.
"""
from __future__ import annotations

import logging
import shutil
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from ..templates import write_atomic
from .envfile import EnvFileError, read_env, write_env
from .records import (
    InstanceMetadata,
    InstanceRecord,
    InstanceSecrets,
    RecordFormatError,
    validate_instance_name,
)

LOGGER = logging.getLogger(__name__)

ENV_FILENAME = ".env"
COMPOSE_FILENAME = "docker-compose.yml"


class InstanceRegistryError(RuntimeError):
    """Raised when registry operations fail."""


class InvalidInstanceNameError(InstanceRegistryError):
    """Raised when an instance name is not usable as a resource name."""


class InstanceNotFoundError(InstanceRegistryError):
    """Raised when the requested instance is not registered."""


class DuplicateInstanceError(InstanceRegistryError):
    """Raised when creating an instance whose name already exists."""


class PortConflictError(InstanceRegistryError):
    """Raised when a port is already recorded by another instance."""


class CorruptRecordError(InstanceRegistryError):
    """Raised when an instance directory is missing required data."""


class ServiceDefinitionRenderer(Protocol):
    """Anything able to produce the compose file for a record."""

    @property
    def database_user(self) -> str: ...

    def project_name(self, name: str) -> str: ...

    def render(self, record: InstanceRecord) -> str: ...


class InstanceStore(Protocol):
    """Repository interface used by the allocator and lifecycle controller."""

    def create(
        self,
        name: str,
        app_port: int,
        db_port: int,
        metadata: InstanceMetadata,
    ) -> InstanceRecord: ...

    def list(self) -> Iterable[InstanceRecord]: ...

    def get(self, name: str) -> InstanceRecord: ...

    def delete(self, name: str) -> None: ...

    def exists(self, name: str) -> bool: ...

    def reserved_ports(self) -> set[int]: ...

    def paths(self, name: str) -> InstancePaths: ...


@dataclass(slots=True)
class InstancePaths:
    """Filesystem paths associated with an instance."""

    root: Path
    env_file: Path
    compose_file: Path


class RegistryView:
    """Lazy, restartable view over the registry ordered by name.

    Every iteration re-reads storage, so external changes between iterations
    are reflected. Corrupt records are skipped with a warning.
    """

    def __init__(self, registry: InstanceRegistry) -> None:
        self._registry = registry
        self._corrupt: list[str] = []

    def __iter__(self) -> Iterator[InstanceRecord]:
        self._corrupt = []
        for name in self._registry.names():
            try:
                yield self._registry.get(name)
            except CorruptRecordError as exc:
                LOGGER.warning("Skipping corrupt instance record %s: %s", name, exc)
                self._corrupt.append(name)
            except InstanceNotFoundError:
                # Removed between directory scan and read.
                continue

    def corrupt(self) -> list[str]:
        """Names skipped as corrupt during the most recent iteration."""
        return list(self._corrupt)

    def names(self) -> list[str]:
        """Names of all readable records (performs a full iteration)."""
        return [record.name for record in self]


class InstanceRegistry:
    """Directory-per-instance registry rooted at *root*."""

    def __init__(self, root: Path, renderer: ServiceDefinitionRenderer) -> None:
        self.root = Path(root).expanduser()
        self.renderer = renderer

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    def paths(self, name: str) -> InstancePaths:
        """Return the paths for *name* without checking existence.

        Raises :class:`InvalidInstanceNameError` for names that could escape
        the registry root (``.``, ``..``, anything with a separator).
        """
        root = self.root / _checked_name(name)
        return InstancePaths(
            root=root,
            env_file=root / ENV_FILENAME,
            compose_file=root / COMPOSE_FILENAME,
        )

    def names(self) -> list[str]:
        """Return directory names under the root in sorted order."""
        if not self.root.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.root.iterdir()
            if entry.is_dir() and _is_instance_name(entry.name)
        )

    def exists(self, name: str) -> bool:
        return self.paths(name).root.is_dir()

    # ------------------------------------------------------------------
    def create(
        self,
        name: str,
        app_port: int,
        db_port: int,
        metadata: InstanceMetadata,
    ) -> InstanceRecord:
        """Persist a new instance record and its service definition."""
        normalized = _checked_name(name)

        if self.exists(normalized):
            raise DuplicateInstanceError(f"Instance '{normalized}' already exists.")

        if app_port == db_port:
            raise PortConflictError(
                f"Application and database ports must differ (both {app_port})."
            )
        owners = self.port_owners()
        for port in (app_port, db_port):
            owner = owners.get(port)
            if owner is not None:
                raise PortConflictError(
                    f"Port {port} is already assigned to instance '{owner}'."
                )
        existing = list(self.list())
        record = InstanceRecord(
            name=normalized,
            app_port=app_port,
            db_port=db_port,
            company_name=metadata.company_name,
            admin_email=metadata.admin_email,
            database_name=metadata.database_name or default_database_name(normalized),
            database_user=self.renderer.database_user,
            created_at=datetime.now(UTC).replace(microsecond=0),
            secrets=InstanceSecrets.generate(item.secrets for item in existing),
        )

        compose_text = self.renderer.render(record)
        paths = self.paths(normalized)
        self.ensure_root()
        try:
            paths.root.mkdir(mode=0o750)
        except FileExistsError as exc:
            raise DuplicateInstanceError(f"Instance '{normalized}' already exists.") from exc

        try:
            write_atomic(paths.compose_file, compose_text, mode=0o640)
            # Env file last: a directory without it reads as corrupt.
            write_env(
                paths.env_file,
                record.to_env(project_name=self.renderer.project_name(normalized)),
                header=f"PowerChat Plus instance '{normalized}' (managed by pcpctl)",
            )
        except (OSError, EnvFileError) as exc:
            shutil.rmtree(paths.root, ignore_errors=True)
            raise InstanceRegistryError(
                f"Failed to write instance '{normalized}': {exc}"
            ) from exc
        return record

    def list(self) -> RegistryView:
        """Return a lazy view over all intact records, ordered by name."""
        return RegistryView(self)

    def get(self, name: str) -> InstanceRecord:
        """Return the record for *name*."""
        paths = self.paths(name)
        if not paths.root.is_dir():
            raise InstanceNotFoundError(f"Instance '{name}' not found.")
        if not paths.env_file.is_file():
            raise CorruptRecordError(f"Instance '{name}' is missing {ENV_FILENAME}.")
        if not paths.compose_file.is_file():
            raise CorruptRecordError(f"Instance '{name}' is missing {COMPOSE_FILENAME}.")
        try:
            values = read_env(paths.env_file)
        except FileNotFoundError as exc:
            raise InstanceNotFoundError(f"Instance '{name}' not found.") from exc
        except (OSError, EnvFileError) as exc:
            raise CorruptRecordError(f"Instance '{name}' is unreadable: {exc}") from exc
        try:
            return InstanceRecord.from_env(name, values)
        except RecordFormatError as exc:
            raise CorruptRecordError(f"Instance '{name}' is corrupt: {exc}") from exc

    def delete(self, name: str) -> None:
        """Remove the instance directory.

        Containers and volumes must already be torn down; the registry does
        not talk to the container runtime.
        """
        paths = self.paths(name)
        if not paths.root.is_dir():
            raise InstanceNotFoundError(f"Instance '{name}' not found.")
        try:
            shutil.rmtree(paths.root)
        except OSError as exc:
            raise InstanceRegistryError(f"Failed to remove instance '{name}': {exc}") from exc

    def reserved_ports(self) -> set[int]:
        """Return every port recorded in the registry."""
        return set(self.port_owners())

    def port_owners(self) -> dict[int, str]:
        """Map recorded ports to instance names.

        Corrupt records still reserve whatever ports can be read from their
        env file, so a half-written instance never loses its ports.
        """
        owners: dict[int, str] = {}
        for name in self.names():
            env_file = self.paths(name).env_file
            try:
                values = read_env(env_file)
            except (OSError, EnvFileError):
                continue
            for key in ("APP_PORT", "DB_PORT"):
                try:
                    owners.setdefault(int(values[key]), name)
                except (KeyError, ValueError):
                    continue
        return owners


def _checked_name(name: str) -> str:
    try:
        return validate_instance_name(name)
    except ValueError as exc:
        raise InvalidInstanceNameError(f"Invalid instance name {name!r}: {exc}") from exc


def _is_instance_name(name: str) -> bool:
    try:
        validate_instance_name(name)
    except ValueError:
        return False
    return name == name.strip()


def default_database_name(name: str) -> str:
    """Return the database name used when none is supplied."""
    return f"powerchat_{name.replace('-', '_')}"


__all__ = [
    "COMPOSE_FILENAME",
    "CorruptRecordError",
    "DuplicateInstanceError",
    "ENV_FILENAME",
    "InstanceNotFoundError",
    "InstancePaths",
    "InstanceRegistry",
    "InstanceRegistryError",
    "InstanceStore",
    "InvalidInstanceNameError",
    "PortConflictError",
    "RegistryView",
    "ServiceDefinitionRenderer",
    "default_database_name",
]
