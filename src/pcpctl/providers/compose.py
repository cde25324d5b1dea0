"""Docker Compose provider driving instance container groups."""
from __future__ import annotations

import re
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from .runtime import ComposeError, RuntimeUnavailableError

PRUNABLE_RESOURCES = ("networks", "containers", "images")

_DAEMON_DOWN_MARKERS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "error during connect",
)
_PUBLISHED_PORT = re.compile(r":(\d+)->")


def parse_published_ports(text: str) -> set[int]:
    """Extract host ports from ``docker ps --format {{.Ports}}`` output.

    Lines look like ``0.0.0.0:9000->9000/tcp, :::9000->9000/tcp``; ranges
    such as ``0.0.0.0:7000-7002->7000-7002/tcp`` expand to every port.
    """
    ports: set[int] = set()
    for chunk in re.split(r"[,\n]", text):
        chunk = chunk.strip()
        if "->" not in chunk:
            continue
        host_part = chunk.split("->", 1)[0]
        host_ports = host_part.rsplit(":", 1)[-1]
        if "-" in host_ports:
            start_raw, _, end_raw = host_ports.partition("-")
            if start_raw.isdigit() and end_raw.isdigit():
                ports.update(range(int(start_raw), int(end_raw) + 1))
            continue
        match = _PUBLISHED_PORT.search(f":{host_ports}->")
        if match:
            ports.add(int(match.group(1)))
    return ports


@dataclass(slots=True)
class ComposeProvider:
    """Shell out to ``docker-compose`` and ``docker`` for instance resources."""

    compose_bin: str = "docker-compose"
    docker_bin: str = "docker"
    dry_run: bool = False

    def up(self, compose_file: Path) -> subprocess.CompletedProcess[str]:
        """Create and start the container group in the background."""
        return self._compose(compose_file, "up", "-d")

    def down(
        self,
        compose_file: Path,
        *,
        volumes: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Stop and remove the container group."""
        args = ["down"]
        if volumes:
            args.append("--volumes")
        return self._compose(compose_file, *args)

    def restart(self, compose_file: Path) -> subprocess.CompletedProcess[str]:
        """Restart every service in the group."""
        return self._compose(compose_file, "restart")

    def build(
        self,
        compose_file: Path,
        *,
        no_cache: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Rebuild service images."""
        args = ["build"]
        if no_cache:
            args.append("--no-cache")
        return self._compose(compose_file, *args)

    def ps(self, compose_file: Path) -> subprocess.CompletedProcess[str]:
        """Return the runtime's service listing for the group."""
        return self._compose(compose_file, "ps", dry_run=False)

    def exec(
        self,
        compose_file: Path,
        service: str,
        command: Sequence[str],
        *,
        output: Path | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *command* inside *service*; stream stdout into *output* when given."""
        args = [*self._compose_base(compose_file), "exec", "-T", service, *command]
        if output is None:
            return self._run_command(args, error_prefix=f"exec {service}")
        if self.dry_run:
            return subprocess.CompletedProcess(args, returncode=0, stdout="", stderr="")
        output.parent.mkdir(parents=True, exist_ok=True)
        try:
            with output.open("w", encoding="utf-8") as handle:
                result = subprocess.run(  # noqa: S603 - controlled command execution
                    args,
                    stdout=handle,
                    stderr=subprocess.PIPE,
                    text=True,
                    check=False,
                )
        except FileNotFoundError as exc:
            raise RuntimeUnavailableError(f"{args[0]} not found: {exc}") from exc
        except OSError as exc:
            raise ComposeError(f"exec {service} could not write {output}: {exc}") from exc
        return self._check(result, error_prefix=f"exec {service}")

    def stats(self, compose_file: Path) -> subprocess.CompletedProcess[str]:
        """Return a one-shot resource usage table for running containers."""
        ids_result = self._compose(compose_file, "ps", "-q", dry_run=False)
        container_ids = [line.strip() for line in ids_result.stdout.splitlines() if line.strip()]
        if not container_ids:
            raise ComposeError("No running containers for this instance.")
        args = [
            *self._docker_base(),
            "stats",
            "--no-stream",
            "--format",
            "table {{.Container}}\t{{.Name}}\t{{.CPUPerc}}\t{{.MemUsage}}",
            *container_ids,
        ]
        return self._run_command(args, error_prefix="docker stats")

    def logs(
        self,
        compose_file: Path,
        *,
        follow: bool = False,
        tail: int | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Return or stream container logs; following streams to the terminal."""
        args = ["logs"]
        if tail is not None:
            args.extend(["--tail", str(tail)])
        if follow:
            args.append("-f")
        return self._compose(compose_file, *args, capture_output=not follow, dry_run=False)

    def published_ports(self) -> set[int]:
        """Return host ports published by any container on this host."""
        args = [*self._docker_base(), "ps", "--format", "{{.Ports}}"]
        result = self._run_command(args, error_prefix="docker ps")
        return parse_published_ports(result.stdout or "")

    def archive_volumes(
        self,
        volumes: Mapping[str, str],
        destination: Path,
        *,
        image: str,
    ) -> subprocess.CompletedProcess[str]:
        """Tar *volumes* into the gzip archive *destination* using a throwaway container.

        *volumes* maps a directory name inside the archive to a volume name.
        """
        destination.parent.mkdir(parents=True, exist_ok=True)
        args = [*self._docker_base(), "run", "--rm"]
        for mount, volume in volumes.items():
            args.extend(["-v", f"{volume}:/data/{mount}:ro"])
        args.extend(["-v", f"{destination.parent.resolve()}:/backup"])
        args.extend([image, "tar", "czf", f"/backup/{destination.name}", "-C", "/data", "."])
        return self._run_command(args, error_prefix="volume archive")

    def remove_volumes(self, volumes: Sequence[str]) -> subprocess.CompletedProcess[str]:
        """Delete named volumes."""
        args = [*self._docker_base(), "volume", "rm", *volumes]
        return self._run_command(args, error_prefix="docker volume rm")

    def prune(self, resource: str) -> subprocess.CompletedProcess[str]:
        """Prune unused networks, stopped containers or dangling images."""
        if resource not in PRUNABLE_RESOURCES:
            raise ComposeError(f"Unsupported prune target '{resource}'.")
        kind = resource[:-1]
        args = [*self._docker_base(), kind, "prune", "-f"]
        return self._run_command(args, error_prefix=f"docker {kind} prune")

    # ------------------------------------------------------------------
    def _compose_base(self, compose_file: Path) -> list[str]:
        return [*shlex.split(self.compose_bin), "-f", str(compose_file)]

    def _docker_base(self) -> list[str]:
        return shlex.split(self.docker_bin)

    def _compose(
        self,
        compose_file: Path,
        *args: str,
        capture_output: bool = True,
        dry_run: bool | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = [*self._compose_base(compose_file), *args]
        return self._run_command(
            command,
            error_prefix=f"{self.compose_bin} {args[0]}",
            capture_output=capture_output,
            dry_run=self.dry_run if dry_run is None else dry_run,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
        capture_output: bool = True,
        dry_run: bool | None = None,
    ) -> subprocess.CompletedProcess[str]:
        if self.dry_run if dry_run is None else dry_run:
            return subprocess.CompletedProcess(
                list(args),
                returncode=0,
                stdout="",
                stderr="",
            )
        try:
            if capture_output:
                result = subprocess.run(  # noqa: S603 - controlled command execution
                    list(args),
                    capture_output=True,
                    text=True,
                    check=False,
                )
            else:
                result = subprocess.run(  # noqa: S603 - controlled command execution
                    list(args),
                    text=True,
                    check=False,
                )
        except FileNotFoundError as exc:
            raise RuntimeUnavailableError(f"{args[0]} not found: {exc}") from exc
        return self._check(result, error_prefix=error_prefix)

    @staticmethod
    def _check(
        result: subprocess.CompletedProcess[str],
        *,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        if result.returncode == 0:
            return result
        stdout = getattr(result, "stdout", "") or ""
        stderr = getattr(result, "stderr", "") or ""
        message = stderr.strip() or stdout.strip() or "no output"
        if any(marker in message.lower() for marker in _DAEMON_DOWN_MARKERS):
            raise RuntimeUnavailableError(f"Container runtime unavailable: {message}")
        raise ComposeError(f"{error_prefix} failed (exit {result.returncode}): {message}")


__all__ = ["ComposeProvider", "PRUNABLE_RESOURCES", "parse_published_ports"]
