"""Tests for the filesystem-backed instance registry."""
from __future__ import annotations

import logging
from pathlib import Path

import pytest

from pcpctl.service_definition import ServiceDefinition
from pcpctl.state import (
    CorruptRecordError,
    DuplicateInstanceError,
    InstanceMetadata,
    InstanceNotFoundError,
    InstanceRegistry,
    InvalidInstanceNameError,
    PortConflictError,
)
from pcpctl.state.envfile import read_env


@pytest.fixture
def registry(tmp_path: Path, definitions: ServiceDefinition) -> InstanceRegistry:
    return InstanceRegistry(tmp_path / "instances", definitions)


def _metadata() -> InstanceMetadata:
    return InstanceMetadata(company_name="Acme Corp", admin_email="ops@acme.test")


def test_create_writes_env_and_compose(registry: InstanceRegistry) -> None:
    """A new instance gets a private env file and a compose file."""
    record = registry.create("acme", 9000, 5432, _metadata())

    paths = registry.paths("acme")
    values = read_env(paths.env_file)
    assert values["INSTANCE_NAME"] == "acme"
    assert values["APP_PORT"] == "9000"
    assert values["DB_PORT"] == "5432"
    assert values["COMPANY_NAME"] == "Acme Corp"
    assert values["POSTGRES_DB"] == "powerchat_acme"
    assert values["COMPOSE_PROJECT_NAME"] == "powerchat-acme"
    assert values["DATABASE_URL"] == record.database_url
    assert "@postgres-acme:5432/powerchat_acme" in values["DATABASE_URL"]
    assert oct(paths.env_file.stat().st_mode & 0o777) == "0o600"
    assert "app-acme:" in paths.compose_file.read_text(encoding="utf-8")


def test_get_round_trips_created_record(registry: InstanceRegistry) -> None:
    """Records read back equal the record returned by create."""
    created = registry.create(
        "acme",
        9000,
        5432,
        InstanceMetadata(company_name="Acme", admin_email="a@b.test", database_name="chat"),
    )

    assert registry.get("acme") == created
    assert created.database_name == "chat"


def test_duplicate_name_is_rejected(registry: InstanceRegistry) -> None:
    """Names are unique."""
    registry.create("acme", 9000, 5432, _metadata())

    with pytest.raises(DuplicateInstanceError):
        registry.create("acme", 9001, 5433, _metadata())


@pytest.mark.parametrize(
    ("app_port", "db_port"),
    [(9000, 5433), (9001, 5432), (9001, 9000), (9002, 9002)],
)
def test_port_conflicts_are_rejected(
    registry: InstanceRegistry, app_port: int, db_port: int
) -> None:
    """No port may be recorded twice across the registry."""
    registry.create("acme", 9000, 5432, _metadata())

    with pytest.raises(PortConflictError):
        registry.create("beta", app_port, db_port, _metadata())

    assert not registry.exists("beta")


@pytest.mark.parametrize("name", ["", "Acme", "-acme", "acme_eu", "a/b"])
def test_invalid_names_are_rejected(registry: InstanceRegistry, name: str) -> None:
    """Names must be usable as directory and container names."""
    with pytest.raises(InvalidInstanceNameError):
        registry.create(name, 9000, 5432, _metadata())


def test_secrets_are_unique_across_instances(registry: InstanceRegistry) -> None:
    """Each instance receives freshly generated credentials."""
    first = registry.create("acme", 9000, 5432, _metadata())
    second = registry.create("beta", 9001, 5433, _metadata())

    assert not set(first.secrets.values()) & set(second.secrets.values())


def test_list_is_ordered_and_skips_corrupt_records(
    registry: InstanceRegistry, caplog: pytest.LogCaptureFixture
) -> None:
    """Corrupt directories are reported and skipped, intact ones listed by name."""
    registry.create("zeta", 9001, 5433, _metadata())
    registry.create("acme", 9000, 5432, _metadata())
    broken = registry.paths("broken")
    broken.root.mkdir()
    broken.env_file.write_text("INSTANCE_NAME=broken\nAPP_PORT=9005\n", encoding="utf-8")
    broken.compose_file.write_text("services: {}\n", encoding="utf-8")

    view = registry.list()
    with caplog.at_level(logging.WARNING, logger="pcpctl.state.registry"):
        names = [record.name for record in view]

    assert names == ["acme", "zeta"]
    assert view.corrupt() == ["broken"]
    assert "broken" in caplog.text
    # Ports readable from the corrupt record stay reserved.
    assert registry.reserved_ports() == {9000, 5432, 9001, 5433, 9005}


def test_list_view_reflects_later_changes(registry: InstanceRegistry) -> None:
    """Iterating the view again re-reads storage."""
    view = registry.list()
    assert view.names() == []

    registry.create("acme", 9000, 5432, _metadata())

    assert view.names() == ["acme"]


def test_get_distinguishes_missing_and_corrupt(registry: InstanceRegistry) -> None:
    """Unknown names and incomplete directories raise different errors."""
    with pytest.raises(InstanceNotFoundError):
        registry.get("ghost")

    registry.paths("half").root.mkdir(parents=True)
    with pytest.raises(CorruptRecordError):
        registry.get("half")


def test_delete_removes_directory(registry: InstanceRegistry) -> None:
    """Deleting an instance frees its name and ports."""
    registry.create("acme", 9000, 5432, _metadata())

    registry.delete("acme")

    assert not registry.exists("acme")
    assert registry.reserved_ports() == set()
    with pytest.raises(InstanceNotFoundError):
        registry.delete("acme")


@pytest.mark.parametrize("name", [".", "..", "a/b", "../acme", ""])
def test_path_like_names_never_resolve(registry: InstanceRegistry, name: str) -> None:
    """Lookups with names outside the registry root fail before touching disk."""
    registry.create("acme", 9000, 5432, _metadata())

    with pytest.raises(InvalidInstanceNameError):
        registry.paths(name)
    with pytest.raises(InvalidInstanceNameError):
        registry.exists(name)
    with pytest.raises(InvalidInstanceNameError):
        registry.get(name)
    with pytest.raises(InvalidInstanceNameError):
        registry.delete(name)

    assert registry.root.is_dir()
    assert registry.get("acme").name == "acme"


def test_names_ignore_directories_that_are_not_instance_names(
    registry: InstanceRegistry,
) -> None:
    """Stray directories with unusable names are neither listed nor fatal."""
    registry.create("acme", 9000, 5432, _metadata())
    (registry.root / "Backup Copy").mkdir()
    (registry.root / ".staging").mkdir()

    assert registry.names() == ["acme"]
    assert [record.name for record in registry.list()] == ["acme"]


def test_failed_render_leaves_no_directory(tmp_path: Path) -> None:
    """A template failure does not leave a half-created instance."""

    class BrokenRenderer:
        database_user = "powerchat"

        def project_name(self, name: str) -> str:
            return name

        def render(self, record: object) -> str:
            raise RuntimeError("template exploded")

    registry = InstanceRegistry(tmp_path / "instances", BrokenRenderer())

    with pytest.raises(RuntimeError, match="template exploded"):
        registry.create("acme", 9000, 5432, _metadata())

    assert not registry.exists("acme")
