"""Error handling for enva."""
from typing import Any, Dict, Optional

from mcp.types import ErrorData, INTERNAL_ERROR, INVALID_PARAMS, INVALID_REQUEST

from enva.logging import get_logger

# Process exit codes
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_CONFIG = 3
EXIT_NETWORK = 4
EXIT_INTERRUPTED = 130


def log_error(
    error: Exception,
    context: Optional[Dict[str, Any]] = None,
    logger: Optional[Any] = None,
) -> None:
    """Log an error with context."""
    logger = logger or get_logger(__name__)

    error_info: Dict[str, Any] = {
        "error_type": error.__class__.__name__,
        "error_message": str(error),
    }
    if context:
        error_info["context"] = context
    if isinstance(error, EnvaError):
        error_info["exit_code"] = error.exit_code
        error_info["details"] = error.details

    logger.error("operation_failed", **error_info)


class EnvaError(Exception):
    """Base error class for enva."""

    exit_code = EXIT_FAILURE
    code = INTERNAL_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}

    def to_error_data(self) -> ErrorData:
        """Convert to ErrorData format."""
        return ErrorData(code=self.code, message=str(self), data=self.details)


class InstallationError(EnvaError):
    """Package manager binary could not be found or installed."""


class NetworkError(InstallationError):
    """Download failed after all retry attempts."""

    exit_code = EXIT_NETWORK


class ConfigError(EnvaError):
    """Malformed environment spec or settings."""

    exit_code = EXIT_CONFIG
    code = INVALID_PARAMS


class NotFoundError(EnvaError):
    """Unknown environment name, or environment not ready."""

    code = INVALID_PARAMS

    def __init__(self, name: str, reason: Optional[str] = None):
        message = f"Environment {name} not found"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, details={"name": name})
        self.name = name


class ValidationError(EnvaError):
    """Invalid environment or malformed execution request."""

    code = INVALID_REQUEST


class CommandExecutionError(EnvaError):
    """Subprocess could not be spawned at all."""


class EnvironmentOperationError(EnvaError):
    """Package manager ran but reported failure."""

    def __init__(
        self,
        message: str,
        name: str,
        returncode: Optional[int] = None,
        output: str = "",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message,
            details={"name": name, "returncode": returncode, **(details or {})},
        )
        self.name = name
        self.returncode = returncode
        self.output = output


class EnvironmentCreationError(EnvironmentOperationError):
    """Environment creation failed; carries the classified failure kind."""

    def __init__(
        self,
        name: str,
        kind: Any,
        reason: str,
        returncode: Optional[int] = None,
        output: str = "",
    ):
        super().__init__(
            f"Failed to create environment {name}: {reason}",
            name,
            returncode=returncode,
            output=output,
            details={"kind": kind.value},
        )
        self.kind = kind
        self.reason = reason

    @property
    def exit_code(self) -> int:  # type: ignore[override]
        if self.kind.value == "network":
            return EXIT_NETWORK
        if self.kind.value == "configuration":
            return EXIT_CONFIG
        return EXIT_FAILURE


class PackageInstallError(EnvironmentOperationError):
    """Package installation into an existing environment failed."""


class EnvironmentRemovalError(EnvironmentOperationError):
    """Environment removal failed."""
