"""Transport interfaces."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from mbble.core.model import DetectedDevice, GattServiceInfo

NotificationHandler = Callable[[bytes], None]


class GattSession(Protocol):
    """One connected GATT client session, owned by a single controller."""

    @property
    def is_connected(self) -> bool:
        """Whether the link is currently up."""

    async def connect(self) -> None:
        """Establish the link and resolve services."""

    async def disconnect(self) -> None:
        """Drop the link."""

    async def get_services(self) -> list[GattServiceInfo]:
        """Return all primary services with their characteristic UUIDs."""

    async def read(self, char_uuid: str) -> bytes:
        """Read a characteristic value."""

    async def write(self, char_uuid: str, data: bytes, *, response: bool = True) -> None:
        """Write a characteristic value."""

    async def start_notify(self, char_uuid: str, handler: NotificationHandler) -> None:
        """Enable notifications and route each value to ``handler``."""

    async def stop_notify(self, char_uuid: str) -> None:
        """Disable notifications for a characteristic."""


class Scanner(Protocol):
    async def check_available(self) -> None:
        """Raise TransportUnavailableError when the radio cannot be used."""

    async def discover(
        self,
        *,
        timeout_s: float,
        name: str | None = None,
        service_uuids: tuple[str, ...] = (),
    ) -> list[DetectedDevice]:
        """Scan for advertising peripherals."""


SessionFactory = Callable[[DetectedDevice, float, Callable[[], None]], GattSession]
