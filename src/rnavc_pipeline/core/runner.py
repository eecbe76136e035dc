"""
Execution of external stages.

Every tool is launched the same way: as a blocking child process that inherits
the environment and, unless a stage log is requested, the standard streams.
"""

import shlex
import subprocess
import time
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence
import structlog

from ..exceptions import StageTimeoutError
from ..models.results import StageResult, StageStatus
from ..utils import log_command
from .stages import Stage


# Shell convention for "command not found"
EXIT_COMMAND_NOT_FOUND = 127


def wrap_with_modules(argv: Sequence[str], modules: Sequence[str]) -> list:
    """Prefix a command with 'module reset && module load ...' run by a login shell."""
    if not modules:
        return list(argv)
    command_line = shlex.join(argv)
    load = " ".join(shlex.quote(m) for m in modules)
    return ["bash", "-lc", f"module reset && module load {load} && {command_line}"]


def run_command(
    argv: Sequence[str],
    stage_name: str,
    sample_id: str,
    logger: structlog.BoundLogger,
    timeout: Optional[float] = None,
    log_path: Optional[Path] = None,
    modules: Sequence[str] = ()
) -> int:
    """
    Run one external command and wait for it.

    Args:
        argv: Command and arguments
        stage_name: Stage the command belongs to, for logging
        sample_id: Sample identifier, for logging
        logger: Logger instance
        timeout: Seconds to wait before giving up; None waits forever
        log_path: File receiving the tool's stdout and stderr; None inherits streams
        modules: Environment modules to load first

    Returns:
        The child's exit status (127 when the executable does not exist)

    Raises:
        StageTimeoutError: If the command outlives the timeout
    """
    args = wrap_with_modules(argv, modules)
    log_command(logger, shlex.join(argv), sample_id=sample_id, stage=stage_name,
                modules=list(modules))

    try:
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(log_path, "a") as log_handle:
                log_handle.write(f"$ {shlex.join(argv)}\n")
                log_handle.flush()
                result = subprocess.run(
                    args,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    timeout=timeout,
                    check=False
                )
        else:
            result = subprocess.run(args, timeout=timeout, check=False)

    except FileNotFoundError:
        logger.error("Executable not found. Ensure the tool is installed and in your PATH.",
                     executable=args[0], sample_id=sample_id, stage=stage_name)
        return EXIT_COMMAND_NOT_FOUND
    except subprocess.TimeoutExpired:
        raise StageTimeoutError(stage_name, timeout)

    return result.returncode


def run_stage(
    stage: Stage,
    sample_id: str,
    logger: structlog.BoundLogger,
    timeout: Optional[float] = None,
    max_retries: int = 0,
    log_path: Optional[Path] = None,
    dry_run: bool = False
) -> StageResult:
    """
    Run the commands of a stage in order, stopping at the first failure.

    A failing command is relaunched up to max_retries times. Tool failures and
    timeouts come back as a FAILED result rather than an exception.
    """
    started_at = datetime.now()
    start = time.time()
    result = StageResult(
        name=stage.name,
        tool=stage.tool,
        status=StageStatus.PLANNED,
        commands=stage.command_lines(),
        outputs=[str(p) for p in stage.outputs],
        started_at=started_at,
    )

    if dry_run:
        for line in result.commands:
            logger.info("Planned command", command=line, stage=stage.name, sample_id=sample_id)
        return result

    attempts = 0
    return_code = 0
    for argv in stage.commands:
        for attempt in range(max_retries + 1):
            attempts += 1
            try:
                return_code = run_command(
                    argv, stage.name, sample_id, logger,
                    timeout=timeout, log_path=log_path, modules=stage.modules
                )
            except StageTimeoutError as e:
                logger.error("Command timed out", stage=stage.name, sample_id=sample_id,
                             timeout=timeout, attempt=attempt + 1)
                return result.model_copy(update={
                    "status": StageStatus.FAILED,
                    "attempts": attempts,
                    "duration_seconds": time.time() - start,
                    "error_message": str(e),
                })

            if return_code == 0:
                break
            logger.warning("Command failed", stage=stage.name, sample_id=sample_id,
                           return_code=return_code, attempt=attempt + 1,
                           attempts_allowed=max_retries + 1)

        if return_code != 0:
            return result.model_copy(update={
                "status": StageStatus.FAILED,
                "return_code": return_code,
                "attempts": attempts,
                "duration_seconds": time.time() - start,
                "error_message": f"{argv[0]} exited with status {return_code}",
            })

    return result.model_copy(update={
        "status": StageStatus.SUCCESS,
        "return_code": 0,
        "attempts": attempts,
        "duration_seconds": time.time() - start,
    })


def outputs_exist(stage: Stage) -> bool:
    """True when every output of the stage is present and non-empty."""
    return all(p.is_file() and p.stat().st_size > 0 for p in stage.outputs)
