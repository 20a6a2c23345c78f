"""Run commands and scripts inside a managed environment."""
import os
import shlex
from pathlib import Path
from typing import List, Optional

from enva.environments.commands import build_env_vars, build_run_command
from enva.environments.manager import Manager, get_manager
from enva.errors import ValidationError
from enva.execution.process import run_process
from enva.logging import get_logger
from enva.types import CaptureMode, ExecutionRequest, ExecutionResult

logger = get_logger(__name__)

# Interpreters picked by script suffix; anything else is executed directly
SCRIPT_INTERPRETERS = {
    ".r": "Rscript",
    ".py": "python",
    ".sh": "bash",
}


def shell_argv(command: str, args: tuple[str, ...] = ()) -> List[str]:
    """Argument vector running ``command`` through the platform shell."""
    if args:
        command = f"{command} {shlex.join(args)}"
    if os.name == "nt":
        return ["cmd", "/c", command]
    return ["bash", "-c", command]


def script_argv(script: Path, args: tuple[str, ...] = ()) -> List[str]:
    interpreter = SCRIPT_INTERPRETERS.get(script.suffix.lower())
    argv = [interpreter] if interpreter else []
    return argv + [str(script), *args]


def _decode(data: Optional[bytes]) -> Optional[str]:
    if data is None:
        return None
    return data.decode("utf-8", errors="replace")


class CommandRunner:
    """Executes ``ExecutionRequest`` values through the package manager's run facility."""

    def __init__(self, manager: Optional[Manager] = None):
        self.manager = manager or get_manager()

    def build_argv(self, request: ExecutionRequest) -> List[str]:
        """Validate ``request`` and return what runs inside the environment."""
        if bool(request.command) == (request.script is not None):
            raise ValidationError(
                "Exactly one of command or script is required",
                details={"environment": request.environment},
            )

        if request.cwd is not None and not request.cwd.is_dir():
            raise ValidationError(
                f"Working directory {request.cwd} does not exist",
                details={"cwd": str(request.cwd)},
            )

        script = request.script
        if script is None:
            return shell_argv(request.command or "", request.args)

        if not script.is_absolute():
            script = (request.cwd or Path.cwd()) / script
        if not script.is_file():
            raise ValidationError(
                f"Script {request.script} does not exist",
                details={"script": str(request.script)},
            )
        return script_argv(script.resolve(), request.args)

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run ``request``; a non-zero exit code is a result, not an error."""
        argv = self.build_argv(request)
        await self.manager.resolve_environment(request.environment)
        binary = await self.manager.ensure_ready()

        args = build_run_command(binary, request.environment, argv)
        env = build_env_vars(binary, overrides=request.env_vars)

        logger.info(
            "command_started",
            environment=request.environment,
            argv=argv,
            cwd=str(request.cwd) if request.cwd else None,
            capture=request.capture.value,
        )

        result = await run_process(args, env=env, cwd=request.cwd, capture=request.capture)

        logger.info(
            "command_complete",
            environment=request.environment,
            exit_code=result.returncode,
            duration=round(result.duration, 3),
        )

        captured = request.capture is CaptureMode.CAPTURE
        return ExecutionResult(
            exit_code=result.returncode,
            stdout=_decode(result.stdout) if captured else None,
            stderr=_decode(result.stderr) if captured else None,
            duration=result.duration,
            command=tuple(args),
        )
