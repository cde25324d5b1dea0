"""Port probing and allocation helpers for pcpctl.

Two pools are managed: application ports starting at ``ports.app_base`` and
database ports starting at ``ports.db_base``. A candidate is rejected when the
registry already records it (stopped instances hold no listener but keep
their ports) or when the probe reports it in use.
"""
from __future__ import annotations

import enum
import logging
import socket
from collections.abc import Collection, Iterable
from dataclasses import dataclass

from .config import PortsConfig
from .providers.runtime import ComposeError, ContainerRuntime, RuntimeUnavailableError
from .state.registry import InstanceStore

LOGGER = logging.getLogger(__name__)

MIN_PORT = 1
MAX_PORT = 65535


class PortAllocationError(RuntimeError):
    """Raised when port allocation fails."""


class PortRangeExhaustedError(PortAllocationError):
    """Raised when no free port exists within the attempt budget."""

    def __init__(self, base_port: int, max_attempts: int) -> None:
        last = base_port + max_attempts - 1
        super().__init__(
            f"No free port in {base_port}-{last} ({max_attempts} attempts)."
        )
        self.base_port = base_port
        self.max_attempts = max_attempts


class ProbeScope(enum.Enum):
    """Which sources a probe consults."""

    HOST = "host"
    RUNTIME = "runtime"
    BOTH = "both"


@dataclass(frozen=True)
class PortAssignment:
    """Application and database ports allocated to one instance."""

    app_port: int
    db_port: int


class PortProbe:
    """Report whether a TCP port is free on the host and in the runtime.

    Errors during probing count as "in use" so allocation never hands out a
    port it could not verify.
    """

    def __init__(self, runtime: ContainerRuntime | None = None, *, host: str = "0.0.0.0") -> None:
        self.runtime = runtime
        self.host = host

    def runtime_ports(self) -> frozenset[int]:
        """Return the host ports currently published by the container runtime.

        Raises :class:`ComposeError` (or :class:`RuntimeUnavailableError`)
        when the runtime cannot be queried.
        """
        if self.runtime is None:
            return frozenset()
        return frozenset(self.runtime.published_ports())

    def is_port_free(
        self,
        port: int,
        scope: ProbeScope = ProbeScope.BOTH,
        *,
        published: Collection[int] | None = None,
    ) -> bool:
        """Return ``True`` when *port* is not in use for the given *scope*.

        *published* is a runtime port snapshot from :meth:`runtime_ports`;
        without one the runtime is queried for this port alone.
        """
        if not MIN_PORT <= port <= MAX_PORT:
            return False
        if scope in (ProbeScope.HOST, ProbeScope.BOTH) and not self._host_free(port):
            return False
        if scope in (ProbeScope.RUNTIME, ProbeScope.BOTH) and not self._runtime_free(
            port, published
        ):
            return False
        return True

    def _host_free(self, port: int) -> bool:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                sock.bind((self.host, port))
        except OSError as exc:
            LOGGER.debug("Port %s unavailable on %s: %s", port, self.host, exc)
            return False
        return True

    def _runtime_free(self, port: int, published: Collection[int] | None) -> bool:
        if published is None:
            try:
                published = self.runtime_ports()
            except ComposeError as exc:
                LOGGER.debug("Runtime port query failed; treating %s as taken: %s", port, exc)
                return False
        return port not in published


class PortAllocator:
    """Select free ports for new instances.

    Callers hold the global lock from allocation until the registry record is
    written so that two deployments cannot pick the same port.
    """

    def __init__(self, probe: PortProbe, store: InstanceStore, config: PortsConfig) -> None:
        self.probe = probe
        self.store = store
        self.config = config

    def allocate(
        self,
        base_port: int,
        max_attempts: int,
        *,
        exclude: Iterable[int] = (),
    ) -> int:
        """Return the first free port in ``base_port .. base_port + max_attempts - 1``.

        The runtime's published ports are read once per call. An unreachable
        runtime raises :class:`RuntimeUnavailableError`; any other query
        failure raises :class:`PortAllocationError`.
        """
        if max_attempts < 1:
            raise PortAllocationError("max_attempts must be at least 1.")
        skipped = set(self.store.reserved_ports()) | set(exclude)
        try:
            published = self.probe.runtime_ports()
        except RuntimeUnavailableError:
            raise
        except ComposeError as exc:
            raise PortAllocationError(
                f"Cannot read ports published by the container runtime: {exc}"
            ) from exc
        for offset in range(max_attempts):
            candidate = base_port + offset
            if candidate in skipped:
                continue
            if self.probe.is_port_free(candidate, published=published):
                return candidate
        raise PortRangeExhaustedError(base_port, max_attempts)

    def allocate_pair(self) -> PortAssignment:
        """Allocate an application port and a database port."""
        app_port = self.allocate(self.config.app_base, self.config.max_attempts)
        db_port = self.allocate(
            self.config.db_base,
            self.config.max_attempts,
            exclude=(app_port,),
        )
        LOGGER.debug("Allocated app port %s and db port %s", app_port, db_port)
        return PortAssignment(app_port=app_port, db_port=db_port)


__all__ = [
    "PortAllocationError",
    "PortAllocator",
    "PortAssignment",
    "PortProbe",
    "PortRangeExhaustedError",
    "ProbeScope",
]
