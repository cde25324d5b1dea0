"""Resource naming and docker-compose rendering for an instance.

Every Docker resource that belongs to an instance (services, volumes,
network) is named here so that the registry, the lifecycle controller and the
backup flow agree on them.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .config import DatabaseConfig, RuntimeConfig
from .state.records import InstanceRecord
from .templates import TemplateEngine

COMPOSE_TEMPLATE = "compose/docker-compose.yml.j2"


@dataclass(frozen=True)
class InstanceVolumes:
    """Named volumes owned by an instance."""

    uploads: str
    public: str
    logs: str
    backups: str
    database: str

    def all(self) -> tuple[str, ...]:
        """Return every volume name."""
        return (self.uploads, self.public, self.logs, self.backups, self.database)


@dataclass(slots=True)
class ServiceDefinition:
    """Render the docker-compose file for instances."""

    templates: TemplateEngine
    runtime: RuntimeConfig
    database: DatabaseConfig

    @property
    def database_user(self) -> str:
        return self.database.user

    def database_service(self, name: str) -> str:
        return f"postgres-{name}"

    def network_name(self, name: str) -> str:
        return f"{self.runtime.project_prefix}-network-{name}"

    def project_name(self, name: str) -> str:
        return f"{self.runtime.project_prefix}-{name}"

    def volumes(self, name: str) -> InstanceVolumes:
        prefix = self.runtime.project_prefix
        return InstanceVolumes(
            uploads=f"{prefix}-app-uploads-{name}",
            public=f"{prefix}-app-public-{name}",
            logs=f"{prefix}-app-logs-{name}",
            backups=f"{prefix}-app-backups-{name}",
            database=f"{prefix}-db-{name}",
        )

    def build_context(self) -> Path:
        """Return the application build context as an absolute path.

        Compose resolves relative contexts against the compose file's
        directory, which only holds the instance's own files.
        """
        return Path(self.runtime.build_context).expanduser().resolve()

    def render(self, record: InstanceRecord) -> str:
        """Return the docker-compose YAML for *record*."""
        volumes = self.volumes(record.name)
        context = {
            "instance_name": record.name,
            "volume_key": record.name.replace("-", "_"),
            "project_prefix": self.runtime.project_prefix,
            "build_context": str(self.build_context()),
            "app_port": record.app_port,
            "db_port": record.db_port,
            "database_name": _escape_interpolation(record.database_name),
            "database_user": _escape_interpolation(record.database_user),
            "database_image": self.database.image,
            "network_name": self.network_name(record.name),
            "volumes": {
                "uploads": volumes.uploads,
                "public": volumes.public,
                "logs": volumes.logs,
                "backups": volumes.backups,
                "database": volumes.database,
            },
        }
        return self.templates.render_to_string(COMPOSE_TEMPLATE, context)


def _escape_interpolation(value: str) -> str:
    """Double ``$`` so compose does not treat it as a variable reference."""
    return value.replace("$", "$$")


__all__ = ["COMPOSE_TEMPLATE", "InstanceVolumes", "ServiceDefinition"]
