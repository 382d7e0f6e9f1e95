"""FIFO command/response correlation over the controller's command characteristic.

Each management command goes out as ``[sequence, opcode, *params]`` and the
peripheral echoes the sequence byte in its response notification
``[sequence, status, *data]``. Only the head of the queue is ever on the
wire; it leaves the queue when its response arrives, its timer fires, or its
write fails, and the next head is sent by the same pump task.

Sequence numbers wrap modulo 256. A collision would need 256 commands queued
behind a stalled head, which is not guarded against.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from mbble.core.errors import (
    CommandTimeoutError,
    CommandWriteError,
    DisconnectedError,
    InvalidParameterError,
)
from mbble.core.events import EventEmitter
from mbble.core.model import CommandResponse

DEFAULT_COMMAND_TIMEOUT_S = 1.0
LOGGER = logging.getLogger(__name__)

CommandWriter = Callable[[bytes], Awaitable[None]]


class CommandState(Enum):
    QUEUED = "queued"
    SENT = "sent"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    WRITE_FAILED = "write_failed"
    CANCELLED = "cancelled"


@dataclass(eq=False)
class PendingCommand:
    opcode: int
    params: bytes
    sequence: int
    timeout_s: float
    future: asyncio.Future[CommandResponse]
    state: CommandState = CommandState.QUEUED
    timer: asyncio.TimerHandle | None = None

    @property
    def frame(self) -> bytes:
        return bytes((self.sequence, self.opcode)) + self.params


class CommandSequencer:
    def __init__(
        self,
        writer: CommandWriter,
        *,
        default_timeout_s: float = DEFAULT_COMMAND_TIMEOUT_S,
        events: EventEmitter | None = None,
    ) -> None:
        self._writer = writer
        self._default_timeout_s = default_timeout_s
        self._events = events
        self._queue: deque[PendingCommand] = deque()
        self._next_sequence = 0
        self._pump_task: asyncio.Task[None] | None = None
        self._closed = False
        self.stale_responses = 0

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def in_flight(self) -> tuple[PendingCommand, ...]:
        return tuple(c for c in self._queue if c.state is CommandState.SENT)

    @property
    def next_sequence(self) -> int:
        return self._next_sequence

    @property
    def closed(self) -> bool:
        return self._closed

    def enqueue(
        self,
        opcode: int,
        params: bytes = b"",
        *,
        timeout_s: float | None = None,
    ) -> asyncio.Future[CommandResponse]:
        if self._closed:
            raise DisconnectedError("Command channel is closed")
        if not 0 <= opcode <= 0xFF:
            raise InvalidParameterError(f"opcode must fit in 8 bits, got {opcode}")

        loop = asyncio.get_running_loop()
        command = PendingCommand(
            opcode=opcode,
            params=bytes(params),
            sequence=self._next_sequence,
            timeout_s=self._default_timeout_s if timeout_s is None else timeout_s,
            future=loop.create_future(),
        )
        self._next_sequence = (self._next_sequence + 1) & 0xFF
        self._queue.append(command)
        if len(self._queue) == 1:
            self._kick()
        return command.future

    async def command(
        self,
        opcode: int,
        params: bytes = b"",
        *,
        timeout_s: float | None = None,
    ) -> CommandResponse:
        return await self.enqueue(opcode, params, timeout_s=timeout_s)

    def on_response(self, data: bytes) -> None:
        """Correlate a response notification with the command in flight."""
        if len(data) < 2:
            LOGGER.warning("Ignoring short command response %s", data.hex())
            self.stale_responses += 1
            return
        sequence, status = data[0], data[1]
        if not self._queue:
            LOGGER.debug("Ignoring response for sequence %d; no command pending", sequence)
            self.stale_responses += 1
            return

        head = self._queue[0]
        if head.state is not CommandState.SENT or head.sequence != sequence:
            LOGGER.warning(
                "Ignoring stale response for sequence %d; waiting on sequence %d",
                sequence,
                head.sequence,
            )
            self.stale_responses += 1
            return

        self._finish(
            head,
            CommandState.COMPLETED,
            result=CommandResponse(sequence=sequence, status=status, data=bytes(data[2:])),
        )

    def close(self, reason: str = "Disconnected") -> None:
        """Fail every pending command and refuse new ones."""
        self._closed = True
        while self._queue:
            command = self._queue.popleft()
            if command.timer is not None:
                command.timer.cancel()
            command.state = CommandState.CANCELLED
            if not command.future.done():
                command.future.set_exception(DisconnectedError(reason))
        if self._pump_task is not None and not self._pump_task.done():
            self._pump_task.cancel()
        self._pump_task = None

    def _kick(self) -> None:
        if self._closed or not self._queue:
            return
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.get_running_loop().create_task(self._pump())

    async def _pump(self) -> None:
        loop = asyncio.get_running_loop()
        while self._queue and not self._closed:
            command = self._queue[0]
            if command.state is not CommandState.QUEUED:
                return

            command.state = CommandState.SENT
            LOGGER.debug("Sending command %s", command.frame.hex())
            if self._events is not None:
                self._events.emit("sendCommand", command.frame)
            try:
                await self._writer(command.frame)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if command.state is CommandState.SENT:
                    error = CommandWriteError(command.sequence, command.opcode, str(exc))
                    error.__cause__ = exc
                    self._finish(command, CommandState.WRITE_FAILED, error=error)
                continue

            if command.state is CommandState.SENT:
                command.timer = loop.call_later(command.timeout_s, self._on_timeout, command)

    def _on_timeout(self, command: PendingCommand) -> None:
        if command.state is not CommandState.SENT or not self._queue or self._queue[0] is not command:
            return
        LOGGER.debug("Command sequence %d timed out", command.sequence)
        self._finish(
            command,
            CommandState.TIMED_OUT,
            error=CommandTimeoutError(command.sequence, command.opcode, command.timeout_s),
        )

    def _finish(
        self,
        command: PendingCommand,
        state: CommandState,
        *,
        result: CommandResponse | None = None,
        error: Exception | None = None,
    ) -> None:
        if command.timer is not None:
            command.timer.cancel()
            command.timer = None
        command.state = state
        if self._queue and self._queue[0] is command:
            self._queue.popleft()
        if not command.future.done():
            if error is not None:
                command.future.set_exception(error)
            else:
                command.future.set_result(result)
        self._kick()
