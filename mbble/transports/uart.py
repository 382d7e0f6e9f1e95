"""Transparent UART bridge: the BLE link as a byte-oriented duplex device."""

from __future__ import annotations

import asyncio
import logging

from mbble.core import framing
from mbble.core.errors import TransportSendError
from mbble.core.events import EventEmitter
from mbble.core.model import UART_SERVICE, InspectionResult, TransportSettings
from mbble.transports.base import GattSession

_BUSY_MARKERS = ("in progress", "busy")
LOGGER = logging.getLogger(__name__)


def _is_busy(exc: Exception) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _BUSY_MARKERS)


class UartBridge:
    """Writes chunked buffers to ``tx`` and re-emits ``rx`` as ``data``.

    No framing is applied to incoming notifications; whatever sits above this
    bridge reassembles frames itself.
    """

    def __init__(
        self,
        session: GattSession,
        result: InspectionResult,
        events: EventEmitter,
        settings: TransportSettings | None = None,
    ) -> None:
        self._session = session
        self._events = events
        self._settings = settings or result.descriptor.transport
        self._tx_uuid = result.uuid(UART_SERVICE, "tx")
        self._write_lock = asyncio.Lock()

    async def write(self, data: bytes) -> None:
        data = bytes(data)
        async with self._write_lock:
            for piece in framing.chunk(data, self._settings.write_chunk_size):
                await self._write_chunk(piece)
        self._events.emit("write", data)

    async def _write_chunk(self, piece: bytes) -> None:
        attempt = 0
        while True:
            self._events.emit("writeCharacteristic", self._tx_uuid, piece)
            try:
                await self._session.write(self._tx_uuid, piece, response=True)
                return
            except TransportSendError as exc:
                if not _is_busy(exc) or attempt >= self._settings.write_retries:
                    raise
                attempt += 1
                LOGGER.debug("tx busy, retry %d/%d: %s", attempt, self._settings.write_retries, exc)
                self._events.emit("writeAttempt", attempt)
                await asyncio.sleep(self._settings.write_retry_delay_s)

    async def send_frame(
        self,
        transaction_id: int,
        payload: bytes,
        protocol_id: int = framing.MODBUS_PROTOCOL_ID,
    ) -> bytes:
        frame = framing.encode(
            transaction_id,
            protocol_id,
            payload,
            max_payload=self._settings.max_payload,
        )
        await self.write(frame)
        return frame

    def on_rx(self, data: bytes) -> None:
        self._events.emit("data", bytes(data))
