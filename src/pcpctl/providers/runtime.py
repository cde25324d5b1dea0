"""Capability interface for the external container runtime."""
from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Protocol


class ComposeError(RuntimeError):
    """Raised when the container runtime reports a failure."""


class RuntimeUnavailableError(ComposeError):
    """Raised when the container runtime cannot be reached at all."""


class ContainerRuntime(Protocol):
    """Operations the lifecycle controller needs from the container runtime.

    Every call blocks until the runtime returns; none define a timeout.
    """

    def up(self, compose_file: Path) -> subprocess.CompletedProcess[str]: ...

    def down(
        self,
        compose_file: Path,
        *,
        volumes: bool = False,
    ) -> subprocess.CompletedProcess[str]: ...

    def restart(self, compose_file: Path) -> subprocess.CompletedProcess[str]: ...

    def build(
        self,
        compose_file: Path,
        *,
        no_cache: bool = True,
    ) -> subprocess.CompletedProcess[str]: ...

    def ps(self, compose_file: Path) -> subprocess.CompletedProcess[str]: ...

    def exec(
        self,
        compose_file: Path,
        service: str,
        command: Sequence[str],
        *,
        output: Path | None = None,
    ) -> subprocess.CompletedProcess[str]: ...

    def stats(self, compose_file: Path) -> subprocess.CompletedProcess[str]: ...

    def logs(
        self,
        compose_file: Path,
        *,
        follow: bool = False,
        tail: int | None = None,
    ) -> subprocess.CompletedProcess[str]: ...

    def published_ports(self) -> set[int]: ...

    def archive_volumes(
        self,
        volumes: Mapping[str, str],
        destination: Path,
        *,
        image: str,
    ) -> subprocess.CompletedProcess[str]: ...

    def remove_volumes(self, volumes: Sequence[str]) -> subprocess.CompletedProcess[str]: ...

    def prune(self, resource: str) -> subprocess.CompletedProcess[str]: ...


__all__ = ["ComposeError", "ContainerRuntime", "RuntimeUnavailableError"]
