"""BLE GATT transport implementation backed by bleak."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from types import ModuleType
from typing import Any

from mbble.core.errors import (
    TransportConnectError,
    TransportSendError,
    TransportUnavailableError,
)
from mbble.core.model import DetectedDevice, GattServiceInfo
from mbble.transports.base import NotificationHandler

LOGGER = logging.getLogger(__name__)


def _bleak() -> ModuleType:
    try:
        import bleak  # type: ignore
    except Exception as exc:  # pragma: no cover - import failure path
        raise TransportUnavailableError(
            "BLE transport requires 'bleak'. Install dependency and retry."
        ) from exc
    return bleak


@contextmanager
def _gatt_errors(action: str) -> Iterator[None]:
    bleak = _bleak()
    try:
        yield
    except (bleak.exc.BleakError, asyncio.TimeoutError, OSError) as exc:
        raise TransportSendError(f"{action} failed: {exc}") from exc


class BleakGattSession:
    def __init__(
        self,
        device: DetectedDevice,
        timeout_s: float = 10.0,
        on_disconnect: Callable[[], None] | None = None,
    ) -> None:
        self._device = device
        self._timeout_s = timeout_s
        self._on_disconnect = on_disconnect
        self._client: Any = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    def _handle_disconnect(self, _client: Any) -> None:
        LOGGER.debug("GATT server %s disconnected", self._device.address)
        if self._on_disconnect is not None:
            self._on_disconnect()

    def _require_client(self) -> Any:
        if not self.is_connected:
            raise TransportSendError(f"Not connected to {self._device.address}")
        return self._client

    async def connect(self) -> None:
        bleak = _bleak()
        self._client = bleak.BleakClient(
            self._device.address,
            disconnected_callback=self._handle_disconnect,
            timeout=self._timeout_s,
        )
        try:
            await self._client.connect()
        except (bleak.exc.BleakError, asyncio.TimeoutError, OSError) as exc:
            raise TransportConnectError(f"BLE connect failed for {self._device.address}: {exc}") from exc
        if not self._client.is_connected:
            raise TransportConnectError(f"BLE connect failed for {self._device.address}")

    async def disconnect(self) -> None:
        if self._client is None:
            return
        with _gatt_errors(f"Disconnect from {self._device.address}"):
            await self._client.disconnect()

    async def get_services(self) -> list[GattServiceInfo]:
        client = self._require_client()
        return [
            GattServiceInfo(
                uuid=str(service.uuid).lower(),
                characteristics=tuple(str(char.uuid).lower() for char in service.characteristics),
            )
            for service in client.services
        ]

    async def read(self, char_uuid: str) -> bytes:
        client = self._require_client()
        with _gatt_errors(f"Read of {char_uuid}"):
            return bytes(await client.read_gatt_char(char_uuid))

    async def write(self, char_uuid: str, data: bytes, *, response: bool = True) -> None:
        client = self._require_client()
        with _gatt_errors(f"Write to {char_uuid}"):
            await client.write_gatt_char(char_uuid, data, response=response)

    async def start_notify(self, char_uuid: str, handler: NotificationHandler) -> None:
        client = self._require_client()

        def _notify_handler(_: Any, data: bytearray) -> None:
            handler(bytes(data))

        with _gatt_errors(f"Subscribe to {char_uuid}"):
            await client.start_notify(char_uuid, _notify_handler)

    async def stop_notify(self, char_uuid: str) -> None:
        client = self._require_client()
        with _gatt_errors(f"Unsubscribe from {char_uuid}"):
            await client.stop_notify(char_uuid)


def bleak_session_factory(
    device: DetectedDevice,
    timeout_s: float,
    on_disconnect: Callable[[], None],
) -> BleakGattSession:
    return BleakGattSession(device, timeout_s=timeout_s, on_disconnect=on_disconnect)


class BleakScannerAdapter:
    async def check_available(self) -> None:
        bleak = _bleak()
        try:
            async with bleak.BleakScanner():
                pass
        except (bleak.exc.BleakError, OSError) as exc:
            raise TransportUnavailableError(f"Bluetooth is not available: {exc}") from exc

    async def discover(
        self,
        *,
        timeout_s: float,
        name: str | None = None,
        service_uuids: tuple[str, ...] = (),
    ) -> list[DetectedDevice]:
        bleak = _bleak()
        try:
            found = await bleak.BleakScanner.discover(
                timeout=timeout_s,
                service_uuids=list(service_uuids) or None,
            )
        except (bleak.exc.BleakError, OSError) as exc:
            raise TransportUnavailableError(f"BLE scan failed: {exc}") from exc

        devices = [
            DetectedDevice(address=device.address.upper(), name=device.name or "<unknown-device>")
            for device in found
        ]
        if name:
            devices = [device for device in devices if device.name == name]
        return devices
