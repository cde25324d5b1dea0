"""Advisory file locks guarding registry mutations.

Probing ports and recording them in the registry are not atomic with respect
to the container runtime, so every flow that allocates ports holds the global
lock from the first probe until the instance record is written. Per-instance
locks serialise lifecycle operations against the same instance.
"""
from __future__ import annotations

import fcntl
import json
import os
import re
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "pcpctl.lock"
_POLL_INTERVAL = 0.05


class LockError(RuntimeError):
    """Raised when a lock cannot be acquired."""


class LockTimeoutError(LockError):
    """Raised when acquiring a lock exceeds the configured timeout."""


@dataclass(slots=True)
class LockHandle:
    """An acquired lock and the time spent waiting for it."""

    path: Path
    wait_ms: int
    _fd: int = field(repr=False, default=-1)

    def release(self) -> None:
        """Release the underlying flock and close the descriptor."""
        if self._fd < 0:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = -1


@dataclass(slots=True)
class LockBundle:
    """A group of locks acquired together."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Total milliseconds spent waiting across all locks."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Hand out global and per-instance advisory locks under *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = default_timeout

    def path_for(self, name: str) -> Path:
        """Return the lock file path for *name* (``pcpctl.lock`` for global)."""
        if name == GLOBAL_LOCK_NAME:
            return self.runtime_dir / GLOBAL_LOCK_NAME
        safe = re.sub(r"[^A-Za-z0-9_.-]", "-", name.strip()) or "_"
        return self.runtime_dir / f"{safe}.lock"

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the process-wide lock for the duration of the block."""
        handle = self._acquire(self.path_for(GLOBAL_LOCK_NAME), timeout)
        try:
            yield handle
        finally:
            handle.release()

    @contextmanager
    def instance_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for a single instance."""
        handle = self._acquire(self.path_for(name), timeout)
        try:
            yield handle
        finally:
            handle.release()

    @contextmanager
    def mutate_instances(
        self,
        names: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock followed by per-instance locks in name order."""
        with ExitStack() as stack:
            handles = [stack.enter_context(self.global_lock(timeout=timeout))]
            for name in sorted(set(names)):
                handles.append(stack.enter_context(self.instance_lock(name, timeout=timeout)))
            yield LockBundle(handles)

    # ------------------------------------------------------------------
    def _acquire(self, path: Path, timeout: float | None) -> LockHandle:
        limit = self.default_timeout if timeout is None else timeout
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        except OSError as exc:
            raise LockError(f"Unable to open lock file {path}: {exc}") from exc

        started = time.monotonic()
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() - started >= limit:
                    os.close(fd)
                    raise LockTimeoutError(
                        f"Timed out after {limit:.1f}s waiting for lock {path}"
                    ) from None
                time.sleep(_POLL_INTERVAL)

        wait_ms = int((time.monotonic() - started) * 1000)
        self._write_metadata(fd, path)
        return LockHandle(path=path, wait_ms=wait_ms, _fd=fd)

    @staticmethod
    def _write_metadata(fd: int, path: Path) -> None:
        payload = {
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": datetime.now(UTC).isoformat(),
        }
        data = (json.dumps(payload) + "\n").encode("utf-8")
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, data)


__all__ = [
    "GLOBAL_LOCK_NAME",
    "LockBundle",
    "LockError",
    "LockHandle",
    "LockManager",
    "LockTimeoutError",
]
