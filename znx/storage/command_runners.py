"""External tool execution with typed results.

Every call to wipefs, sgdisk, mkfs, mount, zsync and friends goes through
``run_command`` so callers receive a ``CommandResult`` describing how the tool
ended instead of chaining exit statuses.
"""

from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence, Union

from znx.logging import EventLogger, LoggerFactory


log = LoggerFactory.for_device()


class CommandFailure(Enum):
    """How an external command ended."""

    NONE = "none"
    NOT_FOUND = "not_found"  # executable missing
    EXIT_STATUS = "exit_status"  # ran, returned non-zero


@dataclass(frozen=True)
class CommandResult:
    command: tuple[str, ...]
    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""
    failure: CommandFailure = CommandFailure.NONE

    @property
    def ok(self) -> bool:
        return self.failure is CommandFailure.NONE

    @property
    def message(self) -> str:
        """Best human-readable explanation of a failure."""
        if self.failure is CommandFailure.NOT_FOUND:
            return f"{self.command[0]} not found"
        return self.stderr.strip() or self.stdout.strip() or "Command failed"


def run_command(
    command: Sequence[str],
    *,
    cwd: Optional[Union[str, Path]] = None,
) -> CommandResult:
    """Run an external command and describe its outcome.

    Args:
        command: Argument list (never passed through a shell)
        cwd: Working directory for the command

    Returns:
        CommandResult; never raises for tool failures
    """
    command = tuple(str(part) for part in command)
    log.debug("Running command: {}", " ".join(command))
    start = time.time()
    try:
        completed = subprocess.run(
            list(command),
            cwd=str(cwd) if cwd is not None else None,
            text=True,
            capture_output=True,
        )
    except FileNotFoundError:
        log.debug("Executable not found: {}", command[0])
        return CommandResult(command, None, failure=CommandFailure.NOT_FOUND)

    stdout = completed.stdout or ""
    stderr = completed.stderr or ""
    output_log = log.bind(tags=["device", "output"])
    if stdout.strip():
        output_log.trace("stdout: {}", stdout.strip())
    if stderr.strip():
        output_log.trace("stderr: {}", stderr.strip())
    EventLogger.log_command(log, list(command), completed.returncode, time.time() - start)

    failure = CommandFailure.NONE if completed.returncode == 0 else CommandFailure.EXIT_STATUS
    return CommandResult(command, completed.returncode, stdout, stderr, failure)


__all__ = [
    "CommandFailure",
    "CommandResult",
    "run_command",
]
