"""Process-wide coordinator of package manager resolution and environment operations."""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from enva.binaries.platforms import executable_candidates, is_executable
from enva.binaries.resolver import BinaryResolver
from enva.catalog import CATALOG
from enva.config import Settings
from enva.environments.commands import (
    DEFAULT_CHANNELS,
    build_create_command,
    build_env_vars,
    build_install_command,
    build_list_command,
    build_remove_command,
    classify_failure,
    decode_output,
    default_prefix,
    parse_env_list,
)
from enva.environments.store import EnvironmentStore
from enva.errors import (
    CommandExecutionError,
    EnvironmentCreationError,
    EnvironmentOperationError,
    EnvironmentRemovalError,
    InstallationError,
    NotFoundError,
    PackageInstallError,
    ValidationError,
    log_error,
)
from enva.execution.process import run_process
from enva.logging import get_logger
from enva.specs import validate_spec
from enva.types import (
    CaptureMode,
    CreateOutcome,
    CreateResult,
    EnvironmentSpec,
    EnvironmentStatus,
    InstallResult,
    InstallState,
    ManagedEnvironment,
    ProcessResult,
    RemoveResult,
    ResolvedBinary,
    ValidationReport,
)

logger = get_logger(__name__)

T = TypeVar("T")

INTERRUPTED = "interrupted"

_EXISTING = frozenset({EnvironmentStatus.READY, EnvironmentStatus.INVALID})
_REMOVABLE = frozenset(
    {EnvironmentStatus.READY, EnvironmentStatus.INVALID, EnvironmentStatus.FAILED}
)


@dataclass
class InFlight:
    """A running operation on one environment name."""
    action: str
    task: asyncio.Task
    waiters: int = 0


@dataclass
class ManagerState:
    """Mutable state shared by every caller of a Manager; guarded by ``lock``."""
    binary: Optional[ResolvedBinary] = None
    install_state: InstallState = InstallState.NOT_INSTALLED
    install_error: Optional[InstallationError] = None
    install_task: Optional[asyncio.Task] = None
    in_flight: dict[str, InFlight] = field(default_factory=dict)
    catalog_registered: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Manager:
    """Coordinates binary resolution, the environment store and package manager calls.

    Operations on one environment name are serialized through the in-flight
    table; concurrent creates of the same name share a single subprocess and
    a single result. Different names proceed in parallel.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        resolver: Optional[BinaryResolver] = None,
        store: Optional[EnvironmentStore] = None,
    ):
        self.settings = settings or Settings.from_env()
        self.resolver = resolver or BinaryResolver(self.settings)
        self.store = store or EnvironmentStore()
        self.state = ManagerState()

    # -- binary ----------------------------------------------------------

    async def ensure_ready(self, retry: bool = False) -> ResolvedBinary:
        """Resolve the package manager once per process.

        Concurrent callers share one resolution. A failed resolution is
        re-raised on later calls unless ``retry`` is set.
        """
        async with self.state.lock:
            if self.state.install_state is InstallState.INSTALLED and self.state.binary:
                return self.state.binary
            error = self.state.install_error
            if self.state.install_state is InstallState.FAILED and error and not retry:
                raise error
            task = self.state.install_task
            if task is None:
                self.state.install_state = InstallState.INSTALLING
                self.state.install_error = None
                task = asyncio.create_task(self._resolve_binary())
                self.state.install_task = task

        return await asyncio.shield(task)

    async def _resolve_binary(self) -> ResolvedBinary:
        try:
            binary = await self.resolver.ensure_binary()
        except InstallationError as e:
            async with self.state.lock:
                self.state.install_state = InstallState.FAILED
                self.state.install_error = e
                self.state.install_task = None
            log_error(e, {"operation": "ensure_ready"}, logger)
            raise
        except BaseException:
            async with self.state.lock:
                self.state.install_state = InstallState.NOT_INSTALLED
                self.state.install_task = None
            raise

        async with self.state.lock:
            self.state.binary = binary
            self.state.install_state = InstallState.INSTALLED
            self.state.install_task = None

        logger.info(
            "package_manager_ready",
            manager=binary.manager.value,
            path=str(binary.path),
            downloaded=binary.downloaded,
        )
        return binary

    async def _known_binary(self) -> Optional[ResolvedBinary]:
        """The resolved binary, or an installed one found without downloading."""
        async with self.state.lock:
            if self.state.binary is not None:
                return self.state.binary
            if self.state.install_state is InstallState.FAILED:
                return None
        return await asyncio.to_thread(self.resolver.find)

    # -- in-flight table -------------------------------------------------

    async def _exclusive(
        self,
        name: str,
        action: str,
        operation: Callable[[], Awaitable[T]],
        join: bool = False,
    ) -> T:
        """Run ``operation`` as the only operation on ``name``.

        With ``join`` a caller finding the same action running attaches to it
        instead of starting another. Otherwise it waits for the running
        operation to finish, whatever its outcome, and then starts its own.
        """
        while True:
            async with self.state.lock:
                current = self.state.in_flight.get(name)
                if current is None:
                    entry = InFlight(action, asyncio.create_task(self._tracked(name, operation)))
                    self.state.in_flight[name] = entry
                    entry.waiters += 1
                    break
                if join and current.action == action:
                    entry = current
                    entry.waiters += 1
                    logger.debug("operation_joined", name=name, action=action)
                    break
            logger.debug("operation_waiting", name=name, action=action, running=current.action)
            await asyncio.wait([current.task])

        try:
            return await asyncio.shield(entry.task)
        finally:
            async with self.state.lock:
                entry.waiters -= 1
                orphaned = entry.waiters == 0 and not entry.task.done()
            if orphaned:
                # the last interested caller went away
                entry.task.cancel()
                await asyncio.wait([entry.task])

    async def _tracked(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await operation()
        finally:
            async with self.state.lock:
                current = self.state.in_flight.get(name)
                if current is not None and current.task is asyncio.current_task():
                    del self.state.in_flight[name]

    async def await_idle(self, name: str) -> None:
        """Wait until no operation is running on ``name``."""
        while True:
            async with self.state.lock:
                current = self.state.in_flight.get(name)
            if current is None:
                return
            logger.debug("operation_waiting", name=name, action="lookup", running=current.action)
            await asyncio.wait([current.task])

    async def _require_known(self, name: str) -> None:
        async with self.state.lock:
            if name not in self.state.in_flight:
                self.store.require(name)

    # -- registration ----------------------------------------------------

    async def register(self, spec: EnvironmentSpec) -> ManagedEnvironment:
        validate_spec(spec)
        async with self.state.lock:
            return self.store.register(spec)

    async def register_catalog(self) -> None:
        """Register every catalog environment as NotCreated, once per Manager.

        Later calls are no-ops so a removed catalog environment stays removed.
        """
        async with self.state.lock:
            if self.state.catalog_registered:
                return
            for spec in CATALOG.values():
                self.store.register(spec)
            self.state.catalog_registered = True

    async def _env_list(self, binary: ResolvedBinary) -> dict[str, Path]:
        result = await self._run(build_list_command(binary), binary)
        output = decode_output(result.stdout)
        if result.returncode != 0:
            raise EnvironmentOperationError(
                "Failed to list environments",
                "*",
                returncode=result.returncode,
                output=decode_output(result.stdout, result.stderr),
            )
        try:
            return parse_env_list(output)
        except ValueError as e:
            raise EnvironmentOperationError(str(e), "*", output=output) from e

    async def discover(self, install: bool = True) -> list[ManagedEnvironment]:
        """Sync the store with the environments the package manager reports.

        With ``install`` unset nothing is downloaded: discovery is skipped when
        no package manager is installed yet.
        """
        if install:
            binary = await self.ensure_ready()
        else:
            binary = await self._known_binary()
            if binary is None:
                logger.debug("discovery_skipped", reason="no package manager installed")
                async with self.state.lock:
                    return self.store.snapshot()
        found = await self._env_list(binary)

        async with self.state.lock:
            for name, path in found.items():
                record = self.store.get(name)
                if name in self.state.in_flight:
                    continue
                if record is None or record.status in (
                    EnvironmentStatus.NOT_CREATED,
                    EnvironmentStatus.READY,
                ):
                    self.store.adopt(name, path)
            snapshot = self.store.snapshot()

        logger.info("environments_discovered", count=len(found))
        return snapshot

    # -- create ----------------------------------------------------------

    async def create_environment(
        self,
        spec: EnvironmentSpec,
        recreate: bool = False,
        dry_run: bool = False,
    ) -> CreateResult:
        """Create ``spec``, or report that it already exists.

        Raises ConfigError for a malformed spec (also under ``dry_run``) and
        EnvironmentCreationError when the package manager fails.
        """
        validate_spec(spec)

        if dry_run:
            return await self._plan_create(spec, recreate)

        binary = await self.ensure_ready()
        action = "recreate" if recreate else "create"
        return await self._exclusive(
            spec.name, action, lambda: self._create(binary, spec, recreate), join=True
        )

    async def _plan_create(self, spec: EnvironmentSpec, recreate: bool) -> CreateResult:
        async with self.state.lock:
            record = self.store.get(spec.name)
            current = record.status if record else EnvironmentStatus.NOT_CREATED
            environment = self.store.detached(spec.name) if record else None

        binary = await self._known_binary()
        command = tuple(build_create_command(binary, spec)) if binary else ()

        if current in _EXISTING:
            outcome = CreateOutcome.WOULD_RECREATE if recreate else CreateOutcome.ALREADY_EXISTS
        else:
            outcome = CreateOutcome.WOULD_CREATE

        logger.info("environment_create_planned", name=spec.name, outcome=outcome.value)
        return CreateResult(spec.name, outcome, environment, command=command, dry_run=True)

    async def _create(
        self, binary: ResolvedBinary, spec: EnvironmentSpec, recreate: bool
    ) -> CreateResult:
        async with self.state.lock:
            record = self.store.register(spec)
            status = record.status
            if status in _EXISTING and not recreate:
                logger.info("environment_exists", name=spec.name, status=status.value)
                existing = self.store.detached(spec.name)
                return CreateResult(spec.name, CreateOutcome.ALREADY_EXISTS, existing)

        outcome = CreateOutcome.CREATED
        if status in _EXISTING:
            await self._remove(binary, spec.name)
            async with self.state.lock:
                self.store.register(spec)
            outcome = CreateOutcome.RECREATED

        args = build_create_command(binary, spec)
        async with self.state.lock:
            self.store.transition(spec.name, EnvironmentStatus.CREATING)

        logger.info(
            "environment_create_started",
            name=spec.name,
            channels=list(spec.channels),
            dependencies=len(spec.dependencies),
        )

        try:
            result = await self._run(args, binary)
        except asyncio.CancelledError:
            async with self.state.lock:
                self.store.transition(
                    spec.name, EnvironmentStatus.FAILED, failure_reason=INTERRUPTED
                )
            logger.warning("environment_create_interrupted", name=spec.name)
            raise
        except CommandExecutionError as e:
            async with self.state.lock:
                self.store.transition(
                    spec.name, EnvironmentStatus.FAILED, failure_reason=str(e)
                )
            log_error(e, {"operation": "create", "name": spec.name}, logger)
            raise

        if result.returncode != 0:
            output = decode_output(result.stdout, result.stderr)
            kind, reason = classify_failure(output, result.returncode)
            async with self.state.lock:
                self.store.transition(
                    spec.name, EnvironmentStatus.FAILED, failure_reason=f"{kind.value}: {reason}"
                )
            error = EnvironmentCreationError(
                spec.name, kind, reason, returncode=result.returncode, output=output
            )
            log_error(error, {"operation": "create", "kind": kind.value}, logger)
            raise error

        path = await self._installation_path(binary, spec.name)
        async with self.state.lock:
            self.store.transition(spec.name, EnvironmentStatus.READY, installation_path=path)
            created = self.store.detached(spec.name)

        logger.info(
            "environment_created",
            name=spec.name,
            path=str(path),
            duration=round(result.duration, 3),
        )
        return CreateResult(spec.name, outcome, created, command=tuple(args))

    async def _installation_path(self, binary: ResolvedBinary, name: str) -> Path:
        try:
            found = await self._env_list(binary)
        except (EnvironmentOperationError, CommandExecutionError) as e:
            logger.warning("environment_path_lookup_failed", name=name, error=str(e))
            found = {}
        return found.get(name) or default_prefix(binary, name)

    # -- list ------------------------------------------------------------

    async def list_environments(self) -> list[ManagedEnvironment]:
        async with self.state.lock:
            return self.store.snapshot()

    # -- install ---------------------------------------------------------

    async def install_packages(
        self, name: str, packages: Sequence[str], dry_run: bool = False
    ) -> InstallResult:
        """Install ``packages`` into a Ready environment.

        The environment stays Ready whether or not the install succeeds.
        """
        packages = tuple(p.strip() for p in packages if p and p.strip())
        if not packages:
            raise ValidationError("No packages given", details={"name": name})

        if dry_run:
            await self._require_ready(name)
            binary = await self._known_binary()
            command = tuple(self._install_args(binary, name, packages)) if binary else ()
            return InstallResult(name, packages, command=command, dry_run=True)

        await self._require_known(name)
        binary = await self.ensure_ready()
        return await self._exclusive(
            name, "install", lambda: self._install(binary, name, packages)
        )

    def _install_args(
        self, binary: ResolvedBinary, name: str, packages: Sequence[str]
    ) -> list[str]:
        spec = self.store.spec_for(name)
        channels = spec.channels if spec else DEFAULT_CHANNELS
        return build_install_command(binary, name, packages, channels)

    async def _install(
        self, binary: ResolvedBinary, name: str, packages: tuple[str, ...]
    ) -> InstallResult:
        async with self.state.lock:
            record = self.store.get(name)
            if record is None:
                raise NotFoundError(name)
            if record.status is not EnvironmentStatus.READY:
                raise NotFoundError(name, f"environment is {record.status.value}")
            args = self._install_args(binary, name, packages)

        logger.info("packages_install_started", name=name, packages=list(packages))
        result = await self._run(args, binary)

        if result.returncode != 0:
            output = decode_output(result.stdout, result.stderr)
            kind, reason = classify_failure(output, result.returncode)
            error = PackageInstallError(
                f"Failed to install {', '.join(packages)} into {name}: {reason}",
                name,
                returncode=result.returncode,
                output=output,
                details={"kind": kind.value, "packages": list(packages)},
            )
            log_error(error, {"operation": "install"}, logger)
            raise error

        logger.info("packages_installed", name=name, packages=list(packages))
        return InstallResult(name, packages, command=tuple(args))

    # -- validate --------------------------------------------------------

    async def validate_environment(self, name: str, dry_run: bool = False) -> ValidationReport:
        """Check the installation path and marker executables of ``name``."""
        if dry_run:
            async with self.state.lock:
                record = self.store.require(name)
                return ValidationReport(
                    name,
                    record.status is EnvironmentStatus.READY,
                    record.status,
                    installation_path=record.installation_path,
                    reason=record.failure_reason,
                    dry_run=True,
                )

        await self._require_known(name)
        return await self._exclusive(name, "validate", lambda: self._validate(name))

    async def _validate(self, name: str) -> ValidationReport:
        async with self.state.lock:
            record = self.store.require(name)
            if record.status not in _EXISTING:
                reason = record.failure_reason or f"environment is {record.status.value}"
                return ValidationReport(name, False, record.status, reason=reason)
            self.store.transition(name, EnvironmentStatus.VALIDATING)
            path = record.installation_path
            spec = self.store.spec_for(name)

        markers = spec.marker_executables() if spec else ()
        missing, reason = await asyncio.to_thread(self._check_installation, path, markers)
        valid = not missing

        async with self.state.lock:
            record = self.store.transition(
                name,
                EnvironmentStatus.READY if valid else EnvironmentStatus.INVALID,
                failure_reason=reason,
                validated_at=_now(),
            )
            report = ValidationReport(
                name,
                valid,
                record.status,
                installation_path=record.installation_path,
                missing=tuple(missing),
                reason=reason,
            )

        if valid:
            logger.info("environment_valid", name=name, path=str(path))
        else:
            logger.warning("environment_invalid", name=name, reason=reason, missing=missing)
        return report

    @staticmethod
    def _check_installation(
        path: Optional[Path], markers: Sequence[str]
    ) -> tuple[list[str], Optional[str]]:
        if path is None or not path.is_dir():
            return [str(path)], f"installation path {path} does not exist"

        missing = [
            marker
            for marker in markers
            if not any(is_executable(c) for c in executable_candidates(path, marker))
        ]
        if missing:
            return missing, f"missing executables: {', '.join(missing)}"
        return [], None

    # -- remove ----------------------------------------------------------

    async def remove_environment(self, name: str, dry_run: bool = False) -> RemoveResult:
        """Remove ``name`` through the package manager and forget it."""
        if dry_run:
            async with self.state.lock:
                record = self.store.require(name)
                if record.status not in _REMOVABLE:
                    raise NotFoundError(name, f"environment is {record.status.value}")
            binary = await self._known_binary()
            command = tuple(build_remove_command(binary, name)) if binary else ()
            return RemoveResult(name, command=command, dry_run=True)

        await self._require_known(name)
        binary = await self.ensure_ready()
        return await self._exclusive(name, "remove", lambda: self._remove(binary, name))

    async def _remove(self, binary: ResolvedBinary, name: str) -> RemoveResult:
        async with self.state.lock:
            record = self.store.require(name)
            if record.status not in _REMOVABLE:
                raise NotFoundError(name, f"environment is {record.status.value}")
            prior = record.status
            prior_reason = record.failure_reason
            self.store.transition(name, EnvironmentStatus.REMOVING)

        args = build_remove_command(binary, name)
        logger.info("environment_remove_started", name=name)

        try:
            result = await self._run(args, binary)
        except BaseException:
            async with self.state.lock:
                self.store.transition(name, prior, failure_reason=prior_reason)
            raise

        if result.returncode != 0:
            output = decode_output(result.stdout, result.stderr)
            _, reason = classify_failure(output, result.returncode)
            async with self.state.lock:
                self.store.transition(name, prior, failure_reason=prior_reason)
            error = EnvironmentRemovalError(
                f"Failed to remove environment {name}: {reason}",
                name,
                returncode=result.returncode,
                output=output,
            )
            log_error(error, {"operation": "remove"}, logger)
            raise error

        async with self.state.lock:
            self.store.transition(name, EnvironmentStatus.REMOVED)
            self.store.delete(name)

        logger.info("environment_removed", name=name)
        return RemoveResult(name, command=tuple(args))

    # -- lookup ----------------------------------------------------------

    async def _require_ready(self, name: str) -> ManagedEnvironment:
        async with self.state.lock:
            record = self.store.require(name)
            if record.status is not EnvironmentStatus.READY:
                raise NotFoundError(name, f"environment is {record.status.value}")
            return self.store.detached(name)

    async def resolve_environment(self, name: str) -> ManagedEnvironment:
        """The Ready record for ``name`` once no operation runs on it, or NotFoundError."""
        await self.await_idle(name)
        return await self._require_ready(name)

    async def _run(self, args: Sequence[str], binary: ResolvedBinary) -> ProcessResult:
        return await run_process(args, env=build_env_vars(binary), capture=CaptureMode.CAPTURE)


_manager: Optional[Manager] = None


def get_manager() -> Manager:
    """The process-wide Manager, created on first use."""
    global _manager
    if _manager is None:
        _manager = Manager()
    return _manager


def reset_manager() -> None:
    global _manager
    _manager = None
