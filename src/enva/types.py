"""Core type definitions"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from enva.errors import ValidationError


class PackageManager(Enum):
    CONDA = "conda"
    MAMBA = "mamba"
    MICROMAMBA = "micromamba"


class EnvironmentStatus(Enum):
    NOT_CREATED = "not_created"
    CREATING = "creating"
    READY = "ready"
    FAILED = "failed"
    VALIDATING = "validating"
    INVALID = "invalid"
    REMOVING = "removing"
    REMOVED = "removed"


class InstallState(Enum):
    NOT_INSTALLED = "not_installed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    FAILED = "failed"


class FailureKind(Enum):
    NETWORK = "network"
    CONFIGURATION = "configuration"
    PACKAGE_NOT_FOUND = "package_not_found"
    INTERRUPTED = "interrupted"
    UNKNOWN = "unknown"


class CaptureMode(Enum):
    INHERIT = "inherit"
    CAPTURE = "capture"


class CreateOutcome(Enum):
    CREATED = "created"
    RECREATED = "recreated"
    ALREADY_EXISTS = "already_exists"
    WOULD_CREATE = "would_create"
    WOULD_RECREATE = "would_recreate"


VERSION_OPERATORS = ("=", "<", ">", "!", "~")


@dataclass(frozen=True)
class PackageRequirement:
    """Single dependency entry of an environment spec"""
    name: str
    version: Optional[str] = None

    def match_spec(self) -> str:
        """Render as a package-manager match spec (``python=3.10``)."""
        if not self.version:
            return self.name
        if self.version.startswith(VERSION_OPERATORS):
            return f"{self.name}{self.version}"
        return f"{self.name}={self.version}"


@dataclass(frozen=True)
class EnvironmentSpec:
    """Declarative description of an environment before it exists"""
    name: str
    channels: tuple[str, ...]
    dependencies: tuple[PackageRequirement, ...]
    markers: tuple[str, ...] = ()

    def marker_executables(self) -> tuple[str, ...]:
        """Executables expected inside the environment once created."""
        if self.markers:
            return self.markers
        if any(dep.name == "python" for dep in self.dependencies):
            return ("python",)
        return ()


@dataclass
class ManagedEnvironment:
    """Runtime record of an environment, owned by the store"""
    name: str
    status: EnvironmentStatus = EnvironmentStatus.NOT_CREATED
    installation_path: Optional[Path] = None
    last_validated_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "status": self.status.value,
            "installation_path": str(self.installation_path) if self.installation_path else None,
            "last_validated_at": self.last_validated_at.isoformat() if self.last_validated_at else None,
            "failure_reason": self.failure_reason,
        }


@dataclass(frozen=True)
class ResolvedBinary:
    """Package manager executable selected by the resolver"""
    manager: PackageManager
    path: Path
    downloaded: bool = False


@dataclass(frozen=True)
class ProcessResult:
    """Exit status and output of a finished subprocess"""
    returncode: int
    stdout: Optional[bytes]
    stderr: Optional[bytes]
    duration: float


@dataclass(frozen=True)
class ExecutionRequest:
    """Command or script to run inside an environment"""
    environment: str
    command: Optional[str] = None
    script: Optional[Path] = None
    args: tuple[str, ...] = ()
    env_vars: dict[str, str] = field(default_factory=dict)
    cwd: Optional[Path] = None
    capture: CaptureMode = CaptureMode.CAPTURE


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of a spawned command; non-zero exit codes are not errors"""
    exit_code: int
    stdout: Optional[str]
    stderr: Optional[str]
    duration: float
    command: tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict:
        return {
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration": round(self.duration, 3),
        }


@dataclass(frozen=True)
class CreateResult:
    name: str
    outcome: CreateOutcome
    environment: Optional[ManagedEnvironment]
    command: tuple[str, ...] = ()
    dry_run: bool = False

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "outcome": self.outcome.value,
            "environment": self.environment.to_dict() if self.environment else None,
            "command": list(self.command),
            "dry_run": self.dry_run,
        }


@dataclass(frozen=True)
class InstallResult:
    name: str
    packages: tuple[str, ...]
    command: tuple[str, ...] = ()
    dry_run: bool = False

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "packages": list(self.packages),
            "command": list(self.command),
            "dry_run": self.dry_run,
        }


@dataclass(frozen=True)
class RemoveResult:
    name: str
    command: tuple[str, ...] = ()
    dry_run: bool = False

    def to_dict(self) -> dict:
        return {"name": self.name, "command": list(self.command), "dry_run": self.dry_run}


@dataclass(frozen=True)
class ValidationReport:
    """Validation outcome with the missing path or markers, if any"""
    name: str
    valid: bool
    status: EnvironmentStatus
    installation_path: Optional[Path] = None
    missing: tuple[str, ...] = ()
    reason: Optional[str] = None
    dry_run: bool = False

    def raise_for_status(self) -> None:
        if not self.valid:
            raise ValidationError(
                f"Environment {self.name} is invalid: {self.reason}",
                details={"name": self.name, "missing": list(self.missing)},
            )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "valid": self.valid,
            "status": self.status.value,
            "installation_path": str(self.installation_path) if self.installation_path else None,
            "missing": list(self.missing),
            "reason": self.reason,
            "dry_run": self.dry_run,
        }
