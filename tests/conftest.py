"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Collection, Iterable, Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path

import pytest

from pcpctl.config import BackupConfig, DatabaseConfig, PortsConfig, RuntimeConfig
from pcpctl.lifecycle import BackupService, LifecycleController
from pcpctl.locking import LockManager
from pcpctl.ports import PortAllocator, ProbeScope
from pcpctl.providers.runtime import ComposeError, RuntimeUnavailableError
from pcpctl.service_definition import ServiceDefinition
from pcpctl.state import (
    DuplicateInstanceError,
    InstanceMetadata,
    InstanceNotFoundError,
    InstancePaths,
    InstanceRecord,
    InstanceSecrets,
    PortConflictError,
)
from pcpctl.templates import TemplateEngine

BACKUP_MOMENT = datetime(2024, 1, 1, 12, 0, 0)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class FakeRuntime:
    """Scripted container runtime recording every call.

    ``fail`` maps an operation (``"build"``) or an operation scoped to one
    instance (``"build:acme"``) to the error message it should raise.
    """

    def __init__(
        self,
        *,
        fail: Mapping[str, str] | None = None,
        ps_output: str = "",
        published: Iterable[int] = (),
    ) -> None:
        self.calls: list[tuple[object, ...]] = []
        self.fail = dict(fail or {})
        self.ps_output = ps_output
        self.published = set(published)
        self.unavailable = False
        self.stats_output = "CONTAINER  CPU %  MEM USAGE"
        self.logs_output = "app | ready"

    def operations(self) -> list[str]:
        return [str(call[0]) for call in self.calls]

    def _call(self, op: str, target: str | None, *args: object, stdout: str = ""):
        self.calls.append((op, target, *args))
        if self.unavailable:
            raise RuntimeUnavailableError("Cannot connect to the Docker daemon")
        for key in (f"{op}:{target}", op):
            if key in self.fail:
                raise ComposeError(self.fail[key])
        return subprocess.CompletedProcess([op], returncode=0, stdout=stdout, stderr="")

    @staticmethod
    def _instance(compose_file: Path) -> str:
        return compose_file.parent.name

    def up(self, compose_file: Path):
        return self._call("up", self._instance(compose_file))

    def down(self, compose_file: Path, *, volumes: bool = False):
        return self._call("down", self._instance(compose_file), volumes)

    def restart(self, compose_file: Path):
        return self._call("restart", self._instance(compose_file))

    def build(self, compose_file: Path, *, no_cache: bool = True):
        return self._call("build", self._instance(compose_file), no_cache)

    def ps(self, compose_file: Path):
        return self._call("ps", self._instance(compose_file), stdout=self.ps_output)

    def exec(
        self,
        compose_file: Path,
        service: str,
        command: Sequence[str],
        *,
        output: Path | None = None,
    ):
        result = self._call("exec", self._instance(compose_file), service, tuple(command))
        if output is not None:
            output.write_text("-- PostgreSQL database dump\n", encoding="utf-8")
        return result

    def stats(self, compose_file: Path):
        return self._call("stats", self._instance(compose_file), stdout=self.stats_output)

    def logs(self, compose_file: Path, *, follow: bool = False, tail: int | None = None):
        return self._call("logs", self._instance(compose_file), follow, stdout=self.logs_output)

    def published_ports(self) -> set[int]:
        self._call("published_ports", None)
        return set(self.published)

    def archive_volumes(self, volumes: Mapping[str, str], destination: Path, *, image: str):
        result = self._call("archive_volumes", destination.parent.name, dict(volumes), image)
        destination.write_bytes(b"\x1f\x8b archive")
        return result

    def remove_volumes(self, volumes: Sequence[str]):
        return self._call("remove_volumes", None, tuple(volumes))

    def prune(self, resource: str):
        return self._call("prune", resource)


class FakeProbe:
    """Port probe reporting every port outside *busy* as free."""

    def __init__(self, busy: Iterable[int] = ()) -> None:
        self.busy = set(busy)
        self.checked: list[int] = []
        self.snapshots = 0

    def runtime_ports(self) -> frozenset[int]:
        self.snapshots += 1
        return frozenset()

    def is_port_free(
        self,
        port: int,
        scope: ProbeScope = ProbeScope.BOTH,
        *,
        published: Collection[int] | None = None,
    ) -> bool:
        self.checked.append(port)
        return port not in self.busy


def build_record(
    name: str,
    app_port: int = 9000,
    db_port: int = 5432,
    metadata: InstanceMetadata | None = None,
) -> InstanceRecord:
    metadata = metadata or InstanceMetadata(company_name="Acme", admin_email="ops@acme.test")
    return InstanceRecord(
        name=name,
        app_port=app_port,
        db_port=db_port,
        company_name=metadata.company_name,
        admin_email=metadata.admin_email,
        database_name=metadata.database_name or f"powerchat_{name.replace('-', '_')}",
        database_user="powerchat",
        created_at=datetime(2024, 1, 1, tzinfo=UTC),
        secrets=InstanceSecrets.generate(),
    )


class InMemoryStore:
    """Dictionary-backed instance store writing placeholder files under *root*."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.records: dict[str, InstanceRecord] = {}

    def create(
        self,
        name: str,
        app_port: int,
        db_port: int,
        metadata: InstanceMetadata,
    ) -> InstanceRecord:
        if name in self.records:
            raise DuplicateInstanceError(f"Instance '{name}' already exists.")
        if app_port == db_port or {app_port, db_port} & self.reserved_ports():
            raise PortConflictError(f"Ports {app_port}/{db_port} are taken.")
        record = build_record(name, app_port, db_port, metadata)
        self.records[name] = record
        paths = self.paths(name)
        paths.root.mkdir(parents=True, exist_ok=True)
        paths.env_file.write_text(f"INSTANCE_NAME={name}\n", encoding="utf-8")
        paths.compose_file.write_text("services: {}\n", encoding="utf-8")
        return record

    def add(self, name: str, app_port: int, db_port: int) -> InstanceRecord:
        return self.create(name, app_port, db_port, InstanceMetadata())

    def list(self) -> list[InstanceRecord]:
        return [self.records[name] for name in sorted(self.records)]

    def get(self, name: str) -> InstanceRecord:
        try:
            return self.records[name]
        except KeyError as exc:
            raise InstanceNotFoundError(f"Instance '{name}' not found.") from exc

    def delete(self, name: str) -> None:
        if name not in self.records:
            raise InstanceNotFoundError(f"Instance '{name}' not found.")
        del self.records[name]

    def exists(self, name: str) -> bool:
        return name in self.records

    def reserved_ports(self) -> set[int]:
        ports: set[int] = set()
        for record in self.records.values():
            ports.update((record.app_port, record.db_port))
        return ports

    def paths(self, name: str) -> InstancePaths:
        root = self.root / name
        return InstancePaths(
            root=root,
            env_file=root / ".env",
            compose_file=root / "docker-compose.yml",
        )


@pytest.fixture
def definitions() -> ServiceDefinition:
    return ServiceDefinition(
        templates=TemplateEngine.with_overrides(None),
        runtime=RuntimeConfig(),
        database=DatabaseConfig(),
    )


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime(ps_output="app-acme   Up 2 minutes\npostgres-acme   Up 2 minutes\n")


@pytest.fixture
def store(tmp_path: Path) -> InMemoryStore:
    return InMemoryStore(tmp_path / "instances")


@pytest.fixture
def backup_root(tmp_path: Path) -> Path:
    return tmp_path / "backups"


@pytest.fixture
def controller(
    tmp_path: Path,
    store: InMemoryStore,
    fake_runtime: FakeRuntime,
    definitions: ServiceDefinition,
    backup_root: Path,
) -> LifecycleController:
    backups = BackupService(
        fake_runtime,
        definitions,
        BackupConfig(root=backup_root),
        clock=lambda: BACKUP_MOMENT,
    )
    ticks = iter(float(value) for value in range(1000))
    return LifecycleController(
        store,
        fake_runtime,
        definitions,
        backups=backups,
        allocator=PortAllocator(FakeProbe(), store, PortsConfig()),
        locks=LockManager(tmp_path / "run", default_timeout=1.0),
        clock=lambda: next(ticks),
    )
