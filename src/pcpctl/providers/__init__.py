"""Provider interfaces for pcpctl."""
from __future__ import annotations

from .compose import ComposeProvider
from .instance_status_provider import InstanceStatus, InstanceStatusProvider
from .runtime import ComposeError, ContainerRuntime, RuntimeUnavailableError

__all__ = [
    "ComposeError",
    "ComposeProvider",
    "ContainerRuntime",
    "InstanceStatus",
    "InstanceStatusProvider",
    "RuntimeUnavailableError",
]
