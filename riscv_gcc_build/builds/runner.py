"""Command runner for external build tools.

This module handles:
- Executing configure/make/git/docker commands with subprocess
- Capturing stdout/stderr to log files
- Reporting failures with the exit code and log location
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """Raised when an external command fails or cannot be started."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        log_path: Path | None = None,
        code: str = "command_failed",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.log_path = log_path
        self.code = code


@dataclass
class CommandResult:
    """Result of a command execution.

    Attributes:
        exit_code: Process exit code.
        log_path: Path to the log file receiving the output.
        started_at: Start time.
        finished_at: Finish time.
        command: The command that was executed.
    """

    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str


def run_command(
    cmd: list[str],
    cwd: Path,
    log_path: Path,
    env_override: dict[str, str] | None = None,
) -> CommandResult:
    """Run a command, appending its output to a log file.

    Args:
        cmd: Command as list of strings.
        cwd: Working directory.
        log_path: Log file; created if missing, appended to otherwise.
        env_override: Optional environment variable overrides.

    Returns:
        CommandResult with execution details.

    Raises:
        CommandError: If the command cannot be started or exits non-zero.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    cmd_str = shlex.join(cmd)
    logger.info("Executing: %s", cmd_str)
    logger.debug("Working directory: %s", cwd)

    env: dict[str, str] | None = None
    if env_override:
        env = dict(os.environ)
        env.update(env_override)

    started_at = datetime.now(timezone.utc)

    try:
        with log_path.open("a") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {cwd}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            result = subprocess.run(
                cmd,
                cwd=cwd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                env=env,
                check=False,
            )
    except OSError as e:
        message = f"Failed to execute {cmd[0]}: {e}"
        logger.error(message)
        raise CommandError(
            message, log_path=log_path, code="execution_error"
        ) from e

    finished_at = datetime.now(timezone.utc)
    exit_code = result.returncode

    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n\n")

    if exit_code != 0:
        message = f"{cmd[0]} failed with exit code {exit_code}"
        logger.error("%s. See log: %s", message, log_path)
        raise CommandError(message, exit_code=exit_code, log_path=log_path)

    return CommandResult(
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
    )


def capture_command(
    cmd: list[str],
    cwd: Path | None = None,
    env_override: dict[str, str] | None = None,
    timeout: int = 60,
) -> str:
    """Run a short command and return its standard output.

    Args:
        cmd: Command as list of strings.
        cwd: Optional working directory.
        env_override: Optional environment variable overrides.
        timeout: Command timeout in seconds.

    Returns:
        Captured standard output.

    Raises:
        CommandError: If the command fails, times out, or cannot start.
    """
    env: dict[str, str] | None = None
    if env_override:
        env = dict(os.environ)
        env.update(env_override)

    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
            check=True,
        )
    except subprocess.TimeoutExpired as e:
        raise CommandError(
            f"{cmd[0]} timed out after {timeout}s",
            exit_code=-1,
            code="timeout",
        ) from e
    except subprocess.CalledProcessError as e:
        raise CommandError(
            f"{cmd[0]} failed: {e.stderr.strip() if e.stderr else e.returncode}",
            exit_code=e.returncode,
        ) from e
    except OSError as e:
        raise CommandError(
            f"Failed to run {cmd[0]}: {e}",
            code="execution_error",
        ) from e

    return result.stdout


__all__ = [
    "CommandError",
    "CommandResult",
    "capture_command",
    "run_command",
]
