"""Instance record types persisted by the registry."""
from __future__ import annotations

import re
import secrets
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime

NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*$")
MAX_NAME_LENGTH = 63

# Keys that must be present for a record to be considered intact.
REQUIRED_ENV_KEYS: tuple[str, ...] = (
    "INSTANCE_NAME",
    "APP_PORT",
    "DB_PORT",
    "ADMIN_EMAIL",
    "COMPANY_NAME",
    "CREATED_DATE",
    "POSTGRES_DB",
    "POSTGRES_USER",
    "POSTGRES_PASSWORD",
    "SESSION_SECRET",
    "ENCRYPTION_KEY",
)


class RecordFormatError(ValueError):
    """Raised when persisted values cannot be turned into a record."""


def validate_instance_name(name: str) -> str:
    """Validate and normalise an instance name.

    Names double as directory and Docker resource names, so only lowercase
    letters, digits and hyphens are accepted.
    """
    normalised = name.strip()
    if not normalised:
        raise ValueError("Instance name must be a non-empty string.")
    if len(normalised) > MAX_NAME_LENGTH:
        raise ValueError(f"Instance name must be {MAX_NAME_LENGTH} characters or fewer.")
    if not NAME_PATTERN.fullmatch(normalised):
        raise ValueError(
            "Instance name must use lowercase letters, digits and hyphens"
            " and start with a letter or digit."
        )
    return normalised


@dataclass(frozen=True)
class InstanceSecrets:
    """Credentials generated once per instance."""

    session_secret: str
    encryption_key: str
    database_password: str

    @classmethod
    def generate(cls, existing: Iterable[InstanceSecrets] = ()) -> InstanceSecrets:
        """Return fresh secrets that do not repeat any value in *existing*."""
        used: set[str] = set()
        for item in existing:
            used.update(item.values())
        while True:
            candidate = cls(
                session_secret=secrets.token_hex(32),
                encryption_key=secrets.token_hex(32),
                database_password=secrets.token_urlsafe(24),
            )
            values = candidate.values()
            if len(set(values)) == len(values) and not used.intersection(values):
                return candidate

    def values(self) -> tuple[str, str, str]:
        return (self.session_secret, self.encryption_key, self.database_password)


@dataclass(frozen=True)
class InstanceMetadata:
    """Descriptive, free-form instance details supplied at creation."""

    company_name: str = ""
    admin_email: str = ""
    database_name: str = ""


@dataclass(frozen=True)
class InstanceRecord:
    """A deployed instance as stored in the registry.

    Status is deliberately absent: it is derived from the container runtime
    whenever it is needed.
    """

    name: str
    app_port: int
    db_port: int
    company_name: str
    admin_email: str
    database_name: str
    database_user: str
    created_at: datetime
    secrets: InstanceSecrets

    @property
    def url(self) -> str:
        return f"http://localhost:{self.app_port}"

    def to_env(self, *, project_name: str) -> dict[str, object]:
        """Return the ordered ``.env`` payload for this record."""
        return {
            "INSTANCE_NAME": self.name,
            "COMPOSE_PROJECT_NAME": project_name,
            "APP_PORT": self.app_port,
            "DB_PORT": self.db_port,
            "COMPANY_NAME": self.company_name,
            "ADMIN_EMAIL": self.admin_email,
            "CREATED_DATE": self.created_at.isoformat(),
            "NODE_ENV": "production",
            "PORT": 9000,
            "POSTGRES_DB": self.database_name,
            "POSTGRES_USER": self.database_user,
            "POSTGRES_PASSWORD": self.secrets.database_password,
            "SESSION_SECRET": self.secrets.session_secret,
            "ENCRYPTION_KEY": self.secrets.encryption_key,
            "DATABASE_URL": self.database_url,
        }

    @property
    def database_url(self) -> str:
        """Connection string used by the application container."""
        return (
            f"postgresql://{self.database_user}:{self.secrets.database_password}"
            f"@postgres-{self.name}:5432/{self.database_name}"
        )

    @classmethod
    def from_env(cls, name: str, values: Mapping[str, str]) -> InstanceRecord:
        """Build a record from parsed ``.env`` values."""
        missing = [key for key in REQUIRED_ENV_KEYS if key not in values]
        if missing:
            raise RecordFormatError(f"missing keys: {', '.join(missing)}")
        try:
            app_port = int(values["APP_PORT"])
            db_port = int(values["DB_PORT"])
        except ValueError as exc:
            raise RecordFormatError(f"invalid port value: {exc}") from exc
        try:
            created_at = datetime.fromisoformat(values["CREATED_DATE"].replace("Z", "+00:00"))
        except ValueError as exc:
            raise RecordFormatError(f"invalid CREATED_DATE: {exc}") from exc
        if values["INSTANCE_NAME"] != name:
            raise RecordFormatError(
                f"INSTANCE_NAME {values['INSTANCE_NAME']!r} does not match directory {name!r}"
            )
        for key in ("POSTGRES_PASSWORD", "SESSION_SECRET", "ENCRYPTION_KEY", "POSTGRES_DB"):
            if not values[key]:
                raise RecordFormatError(f"{key} is empty")
        return cls(
            name=name,
            app_port=app_port,
            db_port=db_port,
            company_name=values["COMPANY_NAME"],
            admin_email=values["ADMIN_EMAIL"],
            database_name=values["POSTGRES_DB"],
            database_user=values["POSTGRES_USER"],
            created_at=created_at,
            secrets=InstanceSecrets(
                session_secret=values["SESSION_SECRET"],
                encryption_key=values["ENCRYPTION_KEY"],
                database_password=values["POSTGRES_PASSWORD"],
            ),
        )

    def summary(self) -> dict[str, object]:
        """Return a JSON-safe view without secrets."""
        return {
            "name": self.name,
            "app_port": self.app_port,
            "db_port": self.db_port,
            "company_name": self.company_name,
            "admin_email": self.admin_email,
            "database_name": self.database_name,
            "created_at": self.created_at.isoformat(),
            "url": self.url,
        }


__all__ = [
    "InstanceMetadata",
    "InstanceRecord",
    "InstanceSecrets",
    "MAX_NAME_LENGTH",
    "NAME_PATTERN",
    "REQUIRED_ENV_KEYS",
    "RecordFormatError",
    "validate_instance_name",
]
