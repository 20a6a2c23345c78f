"""Subprocess spawning with process-tree cleanup."""
import asyncio
import os
import time
from pathlib import Path
from typing import Mapping, Optional, Sequence

import psutil

from enva.errors import CommandExecutionError
from enva.logging import get_logger
from enva.types import CaptureMode, ProcessResult

logger = get_logger(__name__)

TERMINATE_TIMEOUT = 5.0


def terminate_process_tree(pid: int, timeout: float = TERMINATE_TIMEOUT) -> None:
    """Terminate ``pid`` and all of its descendants, killing stragglers."""
    try:
        parent = psutil.Process(pid)
        procs = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        return
    procs.append(parent)

    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass

    _, alive = psutil.wait_procs(procs, timeout=timeout)
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass

    logger.debug("process_tree_terminated", pid=pid, count=len(procs), killed=len(alive))


async def run_process(
    args: Sequence[str],
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[Path] = None,
    capture: CaptureMode = CaptureMode.CAPTURE,
) -> ProcessResult:
    """Run ``args`` to completion.

    In capture mode stdout and stderr are buffered and stdin is closed; in
    inherit mode the child shares this process's streams. Cancelling the
    awaiting task terminates the child and its descendants before the
    cancellation propagates.
    """
    if capture is CaptureMode.CAPTURE:
        stdin, stdout, stderr = asyncio.subprocess.DEVNULL, asyncio.subprocess.PIPE, asyncio.subprocess.PIPE
    else:
        stdin = stdout = stderr = None

    logger.debug("process_spawn", args=list(args), cwd=str(cwd) if cwd else None)
    start = time.monotonic()

    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
            env=dict(env) if env is not None else None,
            cwd=cwd,
            start_new_session=os.name != "nt",
        )
    except OSError as e:
        raise CommandExecutionError(
            f"Failed to start {args[0]}: {e}",
            details={"command": list(args), "errno": e.errno},
        ) from e

    try:
        out, err = await process.communicate()
    except asyncio.CancelledError:
        logger.warning("process_interrupted", pid=process.pid, command=args[0])
        await asyncio.to_thread(terminate_process_tree, process.pid)
        raise

    duration = time.monotonic() - start
    logger.debug(
        "process_complete",
        pid=process.pid,
        returncode=process.returncode,
        duration=round(duration, 3),
    )
    return ProcessResult(
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=out,
        stderr=err,
        duration=duration,
    )
