"""Message dispatch pipeline: payload -> action -> command."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from .actions import ActionSpec, CommandLine
from .executor import CommandExecutionError, CommandResult
from .health import HealthReporter
from .payload import ActionKind, LogicalAction, interpret
from .subscription import InboundMessage

LOGGER = logging.getLogger(__name__)


class Executor(Protocol):
    async def execute(self, command: Sequence[str]) -> CommandResult: ...


@dataclass(frozen=True, slots=True)
class DispatchOutcome:
    message: InboundMessage
    action: LogicalAction
    command: Optional[CommandLine] = None
    result: Optional[CommandResult] = None


class Dispatcher:
    """Processes inbound messages one at a time.

    Each delivery is handled independently; repeated payloads run the
    command again.
    """

    def __init__(
        self,
        spec: ActionSpec,
        executor: Executor,
        *,
        exit_on_failure: bool = False,
        health: Optional[HealthReporter] = None,
    ) -> None:
        self._spec = spec
        self._executor = executor
        self._exit_on_failure = exit_on_failure
        self._health = health
        self._stopping = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def busy(self) -> bool:
        return not self._idle.is_set()

    def command_for(self, action: LogicalAction) -> Optional[CommandLine]:
        if not action.is_known:
            return None
        if action.kind is ActionKind.TURN_ON:
            return self._spec.on_command
        return self._spec.off_command

    async def handle(self, message: InboundMessage) -> DispatchOutcome:
        """Run one message through the pipeline to completion.

        Raises:
            CommandExecutionError: If the command failed and failures are fatal.
        """
        LOGGER.info(
            "got: [t] %s  [m] %s",
            message.topic,
            message.payload.decode("utf-8", errors="replace"),
        )

        action = interpret(message.payload)
        command = self.command_for(action)
        if command is None:
            LOGGER.info("Unknown payload [%r], ignoring", message.payload)
            self._count("payloads_ignored")
            return DispatchOutcome(message, action)

        result = await self._executor.execute(command)
        if result.succeeded:
            self._count("commands_succeeded")
        else:
            self._count("commands_failed")
            if self._exit_on_failure:
                raise CommandExecutionError(result)
            LOGGER.error("Error running command: %s", result.describe())

        return DispatchOutcome(message, action, command, result)

    def start(self, queue: asyncio.Queue[InboundMessage]) -> asyncio.Task[None]:
        if self._task is not None and not self._task.done():
            raise RuntimeError("Dispatcher already running")
        self._stopping = False
        self._task = asyncio.create_task(self.run(queue))
        return self._task

    async def run(self, queue: asyncio.Queue[InboundMessage]) -> None:
        while not self._stopping:
            message = await queue.get()
            if self._stopping:
                queue.task_done()
                break

            self._idle.clear()
            try:
                await self.handle(message)
            finally:
                queue.task_done()
                self._idle.set()

    async def stop(self, timeout: float = 10.0) -> Optional[BaseException]:
        """Stop taking new messages, letting an in-flight command finish.

        A command still running after ``timeout`` seconds is cancelled.
        Returns the exception the dispatch task ended with, if any.
        """
        self._stopping = True
        task = self._task
        if task is None:
            return None

        if not task.done() and self.busy:
            LOGGER.info("Waiting up to %.1fs for the running command", timeout)
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                LOGGER.warning("Command still running after %.1fs; abandoning it", timeout)

        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._task = None
        return None if task.cancelled() else task.exception()

    def _count(self, counter: str) -> None:
        if self._health is not None:
            self._health.increment(counter)
