"""Lifecycle operations for PowerChat Plus instances.

The controller resolves an instance through the registry and issues the
matching container runtime calls. Multi-step operations record one
:class:`StepResult` per step; runtime failures are captured verbatim and never
retried. Only :class:`RuntimeUnavailableError` escapes, since nothing useful
can happen while the runtime is unreachable.
"""
from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .backups import BackupError, BackupPlan, copy_artifact, format_timestamp
from .config import BackupConfig
from .locking import LockManager
from .ports import PortAllocator, PortAssignment
from .providers.instance_status_provider import InstanceStatus, InstanceStatusProvider
from .providers.runtime import ComposeError, ContainerRuntime, RuntimeUnavailableError
from .service_definition import ServiceDefinition
from .state.records import InstanceMetadata, InstanceRecord, validate_instance_name
from .state.registry import (
    CorruptRecordError,
    DuplicateInstanceError,
    InstanceNotFoundError,
    InstancePaths,
    InstanceRegistryError,
    InstanceStore,
    InvalidInstanceNameError,
)

LOGGER = logging.getLogger(__name__)

STEP_OK = "ok"
STEP_FAILED = "failed"
STEP_SKIPPED = "skipped"

STALE_IMAGE_WARNING = (
    "StaleImage: rebuild failed but the instance was restarted on the previous image."
)


class Operation(str, enum.Enum):
    """Lifecycle operations; ``REMOVE`` is served by :meth:`LifecycleController.remove`."""

    START = "start"
    STOP = "stop"
    RESTART = "restart"
    UPDATE = "update"
    BACKUP = "backup"
    INFO = "info"
    LOGS = "logs"
    STATUS = "status"
    REMOVE = "remove"


BULK_OPERATIONS = frozenset({Operation.START, Operation.STOP, Operation.RESTART, Operation.UPDATE})


@dataclass(slots=True)
class StepResult:
    """Outcome of one runtime call."""

    name: str
    status: str
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status == STEP_OK

    def to_dict(self) -> dict[str, object]:
        return {"name": self.name, "status": self.status, "detail": self.detail}


@dataclass(slots=True)
class LifecycleResult:
    """Outcome of a lifecycle operation against one instance."""

    name: str
    operation: Operation
    steps: list[StepResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    output: str = ""
    data: dict[str, object] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return all(step.status != STEP_FAILED for step in self.steps)

    @property
    def errors(self) -> list[str]:
        return [f"{step.name}: {step.detail}" for step in self.steps if step.status == STEP_FAILED]

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "operation": self.operation.value,
            "succeeded": self.succeeded,
            "steps": [step.to_dict() for step in self.steps],
            "warnings": list(self.warnings),
            "data": dict(self.data),
        }


@dataclass(slots=True)
class BulkResult:
    """Aggregate outcome of an operation applied to many instances."""

    operation: Operation
    results: list[LifecycleResult] = field(default_factory=list)
    elapsed: float = 0.0
    aborted: str | None = None

    @property
    def succeeded(self) -> list[str]:
        return [result.name for result in self.results if result.succeeded]

    @property
    def failed(self) -> list[str]:
        return [result.name for result in self.results if not result.succeeded]

    @property
    def ok(self) -> bool:
        return self.aborted is None and not self.failed

    def to_dict(self) -> dict[str, object]:
        return {
            "operation": self.operation.value,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "elapsed_seconds": round(self.elapsed, 3),
            "aborted": self.aborted,
        }


@dataclass(frozen=True)
class DeployRequest:
    """Parameters for provisioning a new instance."""

    name: str
    metadata: InstanceMetadata = field(default_factory=InstanceMetadata)
    start: bool = True


@dataclass(slots=True)
class DeployResult:
    """Outcome of :meth:`LifecycleController.deploy`."""

    record: InstanceRecord
    ports: PortAssignment
    steps: list[StepResult] = field(default_factory=list)
    lock_wait_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return all(step.status != STEP_FAILED for step in self.steps)


def _checked_name(name: str) -> str:
    try:
        return validate_instance_name(name)
    except ValueError as exc:
        raise InvalidInstanceNameError(f"Invalid instance name {name!r}: {exc}") from exc


def run_step(name: str, action: Callable[[], object]) -> StepResult:
    """Run *action* and convert runtime failures into a failed step."""
    try:
        outcome = action()
    except RuntimeUnavailableError:
        raise
    except (ComposeError, BackupError) as exc:
        LOGGER.debug("Step %s failed: %s", name, exc)
        return StepResult(name=name, status=STEP_FAILED, detail=str(exc))
    detail = ""
    stdout = getattr(outcome, "stdout", None)
    if isinstance(stdout, str):
        detail = stdout.strip()
    return StepResult(name=name, status=STEP_OK, detail=detail)


class BackupService:
    """Capture a four-artifact backup of an instance.

    The database dump, the volume archive and the configuration copies are
    taken one after another with no coordination between them. A write that
    lands between the dump and the archive yields a set whose database and
    uploaded files disagree. A failing step marks the backup failed; the
    remaining steps still run so the other artifacts are captured.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        definitions: ServiceDefinition,
        config: BackupConfig,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.runtime = runtime
        self.definitions = definitions
        self.config = config
        self.clock = clock

    def plan(self, name: str) -> BackupPlan:
        return BackupPlan.for_instance(self.config.root, name, format_timestamp(self.clock()))

    def run(self, record: InstanceRecord, paths: InstancePaths) -> tuple[BackupPlan, list[StepResult]]:
        """Write the backup set for *record* and return the plan with step results."""
        plan = self.plan(record.name)
        plan.ensure_directory()
        volumes = self.definitions.volumes(record.name)
        steps = [
            run_step(
                "database",
                lambda: self.runtime.exec(
                    paths.compose_file,
                    self.definitions.database_service(record.name),
                    ["pg_dump", "-U", record.database_user, record.database_name],
                    output=plan.database,
                ),
            ),
            run_step(
                "volumes",
                lambda: self.runtime.archive_volumes(
                    {"uploads": volumes.uploads, "public": volumes.public},
                    plan.volumes,
                    image=self.config.archive_image,
                ),
            ),
            run_step("config", lambda: copy_artifact(paths.env_file, plan.config)),
            run_step(
                "compose",
                lambda: copy_artifact(paths.compose_file, plan.compose, mode=0o640),
            ),
        ]
        return plan, steps


class LifecycleController:
    """Drive lifecycle operations for registered instances."""

    def __init__(
        self,
        store: InstanceStore,
        runtime: ContainerRuntime,
        definitions: ServiceDefinition,
        *,
        backups: BackupService,
        status: InstanceStatusProvider | None = None,
        allocator: PortAllocator | None = None,
        locks: LockManager | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.runtime = runtime
        self.definitions = definitions
        self.backups = backups
        self.status_provider = status or InstanceStatusProvider(runtime)
        self.allocator = allocator
        self.locks = locks
        self.clock = clock

    # ------------------------------------------------------------------
    def execute(self, name: str, operation: Operation, *, follow: bool = False) -> LifecycleResult:
        """Run *operation* against instance *name*.

        Raises :class:`InvalidInstanceNameError`, :class:`InstanceNotFoundError`
        or :class:`CorruptRecordError` when the instance cannot be resolved.
        """
        record = self.store.get(_checked_name(name))
        paths = self.store.paths(record.name)
        result = LifecycleResult(name=record.name, operation=operation)
        compose_file = paths.compose_file

        if operation is Operation.START:
            result.steps.append(run_step("start", lambda: self.runtime.up(compose_file)))
        elif operation is Operation.STOP:
            result.steps.append(run_step("stop", lambda: self.runtime.down(compose_file)))
        elif operation is Operation.RESTART:
            result.steps.append(run_step("restart", lambda: self.runtime.restart(compose_file)))
        elif operation is Operation.UPDATE:
            self._update(result, compose_file)
        elif operation is Operation.BACKUP:
            plan, steps = self.backups.run(record, paths)
            result.steps.extend(steps)
            result.data["backup_dir"] = str(plan.directory)
            result.data["timestamp"] = plan.timestamp
            result.data["artifacts"] = [str(path) for path in plan.artifacts()]
        elif operation is Operation.INFO:
            self._info(result, record, compose_file)
        elif operation is Operation.LOGS:
            step = run_step("logs", lambda: self.runtime.logs(compose_file, follow=follow))
            result.output = step.detail if step.ok else ""
            result.steps.append(step)
        elif operation is Operation.STATUS:
            status = self.status_provider.status(compose_file)
            result.data["status"] = status.state
            result.data["detail"] = status.detail
            ps_step = run_step("ps", lambda: self.runtime.ps(compose_file))
            result.output = ps_step.detail
            result.steps.append(ps_step)
        else:
            raise ValueError(f"Operation '{operation.value}' is not handled by execute().")

        if result.succeeded:
            LOGGER.info("%s %s succeeded", operation.value, record.name)
        else:
            LOGGER.warning("%s %s failed: %s", operation.value, record.name, "; ".join(result.errors))
        return result

    def status(self, name: str) -> InstanceStatus:
        """Return the derived status of *name*."""
        return self.status_provider.status(self.store.paths(_checked_name(name)).compose_file)

    def _update(self, result: LifecycleResult, compose_file: Path) -> None:
        stop = run_step("stop", lambda: self.runtime.down(compose_file))
        result.steps.append(stop)
        if not stop.ok:
            result.steps.append(StepResult("build", STEP_SKIPPED, "stop failed"))
            result.steps.append(StepResult("start", STEP_SKIPPED, "stop failed"))
            return
        build = run_step("build", lambda: self.runtime.build(compose_file, no_cache=True))
        result.steps.append(build)
        start = run_step("start", lambda: self.runtime.up(compose_file))
        result.steps.append(start)
        if not build.ok and start.ok:
            result.warnings.append(STALE_IMAGE_WARNING)

    def _info(self, result: LifecycleResult, record: InstanceRecord, compose_file: Path) -> None:
        status = self.status_provider.status(compose_file)
        result.data.update(record.summary())
        result.data["status"] = status.state
        result.data["status_detail"] = status.detail
        ps_step = run_step("ps", lambda: self.runtime.ps(compose_file))
        result.steps.append(ps_step)
        result.data["services"] = ps_step.detail
        if status.running:
            stats_step = run_step("stats", lambda: self.runtime.stats(compose_file))
            if stats_step.ok:
                result.data["stats"] = stats_step.detail
            else:
                result.warnings.append(f"Resource usage unavailable: {stats_step.detail}")

    # ------------------------------------------------------------------
    def remove(self, name: str, *, purge_volumes: bool = False) -> LifecycleResult:
        """Tear down containers, optionally volumes, then delete the record."""
        name = _checked_name(name)
        paths = self.store.paths(name)
        if not self.store.exists(name):
            raise InstanceNotFoundError(f"Instance '{name}' not found.")
        result = LifecycleResult(name=name, operation=Operation.REMOVE)
        if paths.compose_file.is_file():
            stop = run_step("stop", lambda: self.runtime.down(paths.compose_file))
        else:
            stop = StepResult("stop", STEP_SKIPPED, "no service definition")
        result.steps.append(stop)
        if stop.status == STEP_FAILED:
            return result
        if purge_volumes:
            volumes = list(self.definitions.volumes(name).all())
            purge = run_step("volumes", lambda: self.runtime.remove_volumes(volumes))
            result.steps.append(purge)
            if not purge.ok:
                return result
        try:
            self.store.delete(name)
        except InstanceRegistryError as exc:
            result.steps.append(StepResult("record", STEP_FAILED, str(exc)))
        else:
            result.steps.append(StepResult("record", STEP_OK, "deleted"))
        return result

    def run_bulk(
        self,
        operation: Operation,
        names: Iterable[str] | None = None,
        *,
        on_result: Callable[[LifecycleResult], None] | None = None,
    ) -> BulkResult:
        """Apply *operation* to every instance in registry order.

        Per-instance failures are collected and the batch continues. An
        unreachable runtime stops the batch.
        """
        if operation not in BULK_OPERATIONS:
            raise ValueError(f"Operation '{operation.value}' cannot be applied in bulk.")
        started = self.clock()
        targets = list(names) if names is not None else [record.name for record in self.store.list()]
        bulk = BulkResult(operation=operation)
        for name in targets:
            try:
                result = self.execute(name, operation)
            except RuntimeUnavailableError as exc:
                bulk.aborted = str(exc)
                break
            except (InstanceNotFoundError, CorruptRecordError, InvalidInstanceNameError) as exc:
                result = LifecycleResult(
                    name=name,
                    operation=operation,
                    steps=[StepResult("lookup", STEP_FAILED, str(exc))],
                )
            bulk.results.append(result)
            if on_result is not None:
                on_result(result)
        bulk.elapsed = self.clock() - started
        return bulk

    # ------------------------------------------------------------------
    def deploy(self, request: DeployRequest) -> DeployResult:
        """Allocate ports, register, and optionally start a new instance.

        Port selection and registry creation happen under the global lock.
        Image build and start run after the lock is released; a failure there
        leaves the record in place so the instance can be started later.
        """
        if self.allocator is None or self.locks is None:
            raise RuntimeError("deploy requires a port allocator and lock manager.")
        name = _checked_name(request.name)

        with self.locks.global_lock() as handle:
            if self.store.exists(name):
                raise DuplicateInstanceError(f"Instance '{name}' already exists.")
            ports = self.allocator.allocate_pair()
            record = self.store.create(name, ports.app_port, ports.db_port, request.metadata)
            wait_ms = handle.wait_ms

        result = DeployResult(record=record, ports=ports, lock_wait_ms=wait_ms)
        result.steps.append(StepResult("register", STEP_OK, str(self.store.paths(name).root)))
        if not request.start:
            return result

        compose_file = self.store.paths(name).compose_file
        build = run_step("build", lambda: self.runtime.build(compose_file, no_cache=False))
        result.steps.append(build)
        if not build.ok:
            result.steps.append(StepResult("start", STEP_SKIPPED, "build failed"))
            return result
        result.steps.append(run_step("start", lambda: self.runtime.up(compose_file)))
        return result


__all__ = [
    "BULK_OPERATIONS",
    "BackupService",
    "BulkResult",
    "DeployRequest",
    "DeployResult",
    "LifecycleController",
    "LifecycleResult",
    "Operation",
    "STALE_IMAGE_WARNING",
    "STEP_FAILED",
    "STEP_OK",
    "STEP_SKIPPED",
    "StepResult",
    "run_step",
]
