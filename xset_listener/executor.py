"""Run display commands as child processes and classify the outcome."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from .errors import BridgeError, ErrorCategory

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of one command execution.

    ``output`` holds the combined stdout/stderr text and is only kept for
    failed runs.
    """

    command: Tuple[str, ...]
    returncode: Optional[int]
    error: Optional[str] = None
    output: str = ""

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.returncode == 0

    def describe(self) -> str:
        if self.succeeded:
            return f"{list(self.command)} succeeded"
        message = f"{list(self.command)} failed: {self.error}"
        if self.output:
            message = f"{message}\n{self.output}"
        return message


class CommandExecutionError(BridgeError):
    """Raised by callers that treat a failed command as fatal."""

    category = ErrorCategory.COMMAND

    def __init__(self, result: CommandResult) -> None:
        super().__init__(f"Error running command: {result.describe()}")
        self.result = result


class CommandExecutor:
    """Spawns one process per call and waits for it to finish."""

    def __init__(self, *, timeout_seconds: Optional[float] = 10.0) -> None:
        self.timeout_seconds = timeout_seconds

    async def execute(self, command: Sequence[str]) -> CommandResult:
        argv = tuple(command)
        if not argv or not argv[0]:
            raise ValueError("command line must name an executable")

        LOGGER.info("executing %s", list(argv))

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            LOGGER.debug("Failed to start %s", argv[0], exc_info=True)
            return CommandResult(argv, None, error=str(exc))

        try:
            stdout, _ = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            await _kill(process)
            return CommandResult(
                argv,
                process.returncode,
                error=f"timed out after {self.timeout_seconds:g}s",
            )
        except asyncio.CancelledError:
            await _kill(process)
            raise

        if process.returncode == 0:
            return CommandResult(argv, 0)

        output = (stdout or b"").decode("utf-8", errors="replace").strip()
        return CommandResult(
            argv,
            process.returncode,
            error=f"exit status {process.returncode}",
            output=output,
        )


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        process.kill()
    await process.wait()
