"""Descriptor-gated device commands issued through the sequencer."""

from __future__ import annotations

import logging
import re

from mbble.core.errors import (
    CommandNotImplementedError,
    CommandTimeoutError,
    CommandWriteError,
    DeviceCommandFailedError,
    UnsupportedOnFirmwareError,
)
from mbble.core.model import CommandResponse, CommandSpec, InspectionResult
from mbble.core.sequencer import CommandSequencer

_VERSION_PART_RE = re.compile(r"\d+")
LOGGER = logging.getLogger(__name__)


def version_tuple(value: str | None) -> tuple[int, ...] | None:
    """Numeric components of a revision string such as ``"v1.5.2"``."""
    if not value:
        return None
    parts = tuple(int(part) for part in _VERSION_PART_RE.findall(value))
    return parts or None


def meets_minimum(reported: str | None, required: str) -> bool:
    reported_parts = version_tuple(reported)
    required_parts = version_tuple(required)
    if reported_parts is None or required_parts is None:
        return False
    width = max(len(reported_parts), len(required_parts))
    return reported_parts + (0,) * (width - len(reported_parts)) >= required_parts + (0,) * (
        width - len(required_parts)
    )


class DeviceCommands:
    def __init__(self, result: InspectionResult, sequencer: CommandSequencer) -> None:
        self._result = result
        self._sequencer = sequencer

    @property
    def model(self) -> str:
        return self._result.model_number

    def require(self, key: str) -> CommandSpec:
        command = self._result.descriptor.commands.get(key)
        if command is None:
            raise CommandNotImplementedError(key, self.model)
        return command

    def check_supported(self, key: str) -> CommandSpec:
        command = self.require(key)
        for field, required in command.requirements.items():
            reported = self._result.identity.get(field)
            if not meets_minimum(reported, required):
                raise UnsupportedOnFirmwareError(key, self.model, field, required, reported)
        return command

    async def execute(
        self,
        key: str,
        params: bytes = b"",
        *,
        timeout_s: float | None = None,
    ) -> CommandResponse:
        command = self.check_supported(key)
        if timeout_s is None:
            timeout_s = self._result.descriptor.transport.command_timeout_s
        try:
            response = await self._sequencer.command(command.opcode, params, timeout_s=timeout_s)
        except (CommandTimeoutError, CommandWriteError) as exc:
            raise DeviceCommandFailedError(key, self.model, str(exc)) from exc
        if not response.ok:
            raise DeviceCommandFailedError(
                key, self.model, f"peripheral returned status {response.status}", status=response.status
            )
        LOGGER.debug("Command '%s' completed (sequence %d)", key, response.sequence)
        return response
