"""Environment orchestration for conda, mamba and micromamba."""

__version__ = "0.1.0"

from enva.types import (
    CaptureMode,
    CreateOutcome,
    EnvironmentSpec,
    EnvironmentStatus,
    ExecutionRequest,
    ExecutionResult,
    ManagedEnvironment,
    PackageManager,
    PackageRequirement,
)
from enva.errors import (
    EnvaError,
    InstallationError,
    NetworkError,
    ConfigError,
    NotFoundError,
    ValidationError,
    CommandExecutionError,
    EnvironmentCreationError,
    PackageInstallError,
    EnvironmentRemovalError,
)

__all__ = [
    # Types
    "CaptureMode",
    "CreateOutcome",
    "EnvironmentSpec",
    "EnvironmentStatus",
    "ExecutionRequest",
    "ExecutionResult",
    "ManagedEnvironment",
    "PackageManager",
    "PackageRequirement",

    # Errors
    "EnvaError",
    "InstallationError",
    "NetworkError",
    "ConfigError",
    "NotFoundError",
    "ValidationError",
    "CommandExecutionError",
    "EnvironmentCreationError",
    "PackageInstallError",
    "EnvironmentRemovalError",
]
