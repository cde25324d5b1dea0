"""Instance registry helpers."""
from __future__ import annotations

from .records import (
    InstanceMetadata,
    InstanceRecord,
    InstanceSecrets,
    validate_instance_name,
)
from .registry import (
    CorruptRecordError,
    DuplicateInstanceError,
    InstanceNotFoundError,
    InstancePaths,
    InstanceRegistry,
    InstanceRegistryError,
    InstanceStore,
    InvalidInstanceNameError,
    PortConflictError,
    RegistryView,
    default_database_name,
)

__all__ = [
    "CorruptRecordError",
    "DuplicateInstanceError",
    "InstanceMetadata",
    "InstanceNotFoundError",
    "InstancePaths",
    "InstanceRecord",
    "InstanceRegistry",
    "InstanceRegistryError",
    "InstanceSecrets",
    "InstanceStore",
    "InvalidInstanceNameError",
    "PortConflictError",
    "RegistryView",
    "default_database_name",
    "validate_instance_name",
]
