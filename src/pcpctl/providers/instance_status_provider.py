"""Derive instance status from the container runtime."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from .runtime import ComposeError, ContainerRuntime

LOGGER = logging.getLogger(__name__)

RUNNING = "running"
STOPPED = "stopped"
UNKNOWN = "unknown"

_UP_PATTERN = re.compile(r"(?:^|\s)(?:Up|running)(?:\s|$|\()", re.IGNORECASE)


@dataclass(frozen=True)
class InstanceStatus:
    """Represents the status of a PowerChat Plus instance."""

    state: str
    detail: str = ""

    @property
    def running(self) -> bool:
        return self.state == RUNNING


def summarise_ps(output: str) -> tuple[int, int]:
    """Return ``(up, total)`` service counts parsed from ``ps`` output."""
    up = 0
    total = 0
    for line in output.splitlines():
        stripped = line.strip()
        if not stripped or set(stripped) <= {"-", " "}:
            continue
        if stripped.split()[0].lower() == "name":
            continue
        total += 1
        if _UP_PATTERN.search(stripped):
            up += 1
    return up, total


class InstanceStatusProvider:
    """Return status information for instances.

    Status is never stored: each call asks the runtime for the container
    group's service listing. Any service reported up makes the instance
    ``running``; runtime errors yield ``unknown``.
    """

    def __init__(self, runtime: ContainerRuntime) -> None:
        self.runtime = runtime

    def status(self, compose_file: Path) -> InstanceStatus:
        """Return the status for the container group defined in *compose_file*."""
        try:
            result = self.runtime.ps(compose_file)
        except ComposeError as exc:
            LOGGER.debug("Status lookup failed for %s: %s", compose_file, exc)
            return InstanceStatus(state=UNKNOWN, detail=str(exc))
        up, total = summarise_ps(result.stdout or "")
        if total == 0:
            return InstanceStatus(state=STOPPED, detail="No containers.")
        if up:
            return InstanceStatus(state=RUNNING, detail=f"{up}/{total} services up")
        return InstanceStatus(state=STOPPED, detail=f"0/{total} services up")


__all__ = [
    "InstanceStatus",
    "InstanceStatusProvider",
    "RUNNING",
    "STOPPED",
    "UNKNOWN",
    "summarise_ps",
]
