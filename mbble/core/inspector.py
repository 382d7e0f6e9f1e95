"""Capability discovery and verification against a connected peripheral."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping

from mbble.core.errors import InspectionError, MissingCapabilityError, TransportError
from mbble.core.events import EventEmitter
from mbble.core.model import (
    CONTROLLER_SERVICE,
    DEVICE_INFO_SERVICE,
    SUPER_WATCHER_KEY,
    UART_SERVICE,
    CapabilityDescriptor,
    GattServiceInfo,
    InspectionResult,
)
from mbble.core.notifications import NotificationHub
from mbble.transports.base import GattSession

LOGGER = logging.getLogger(__name__)

Handlers = Mapping[str, Callable[[bytes], None]]


def _text(data: bytes) -> str:
    return data.decode("utf-8", errors="replace").rstrip("\x00").strip()


class DeviceInspector:
    """Binds a descriptor to the services a peripheral actually exposes.

    ``handlers`` maps characteristic keys (``response``, ``rx``, ``fault``, ...)
    to callbacks attached when the mandatory subscriptions are made.
    """

    def __init__(
        self,
        session: GattSession,
        descriptor: CapabilityDescriptor,
        hub: NotificationHub,
        events: EventEmitter,
        handlers: Handlers | None = None,
    ) -> None:
        self._session = session
        self._descriptor = descriptor
        self._hub = hub
        self._events = events
        self._handlers = dict(handlers or {})

    async def inspect(self) -> InspectionResult:
        self._events.emit("inspecting")
        try:
            services = await self._session.get_services()
        except TransportError as exc:
            raise InspectionError(f"Service discovery failed: {exc}") from exc

        result = self._bind(services)
        await self._read_identity(result)
        await self._subscribe(result)
        LOGGER.debug(
            "Inspected %s: %d characteristics bound, %d watcher slots",
            result.model_number,
            len(result.bound),
            result.watcher_capacity,
        )
        self._events.emit("inspected")
        return result

    def _bind(self, services: list[GattServiceInfo]) -> InspectionResult:
        discovered: dict[str, set[str]] = {}
        for service in services:
            self._events.emit("discoveredService", service.uuid)
            chars = discovered.setdefault(service.uuid.lower(), set())
            for char_uuid in service.characteristics:
                self._events.emit("discoveredCharacteristic", service.uuid, char_uuid)
                chars.add(char_uuid.lower())

        bound: dict[tuple[str, str], str] = {}
        absent: list[tuple[str, str]] = []
        for service_key, service_spec in self._descriptor.services.items():
            found_chars = discovered.get(service_spec.uuid)
            if found_chars is None:
                raise MissingCapabilityError(service_key, service_spec.uuid)
            for char_key, char_spec in service_spec.characteristics.items():
                if char_spec.uuid in found_chars:
                    bound[(service_key, char_key)] = char_spec.uuid
                elif char_spec.optional:
                    LOGGER.info("Optional characteristic '%s.%s' not present", service_key, char_key)
                    absent.append((service_key, char_key))
                else:
                    raise MissingCapabilityError(service_key, char_spec.uuid, char_key)

        return InspectionResult(descriptor=self._descriptor, bound=bound, absent=tuple(absent))

    async def _read_required(self, result: InspectionResult, char_key: str) -> bytes:
        try:
            return await self._session.read(result.uuid(CONTROLLER_SERVICE, char_key))
        except TransportError as exc:
            raise InspectionError(f"Reading '{char_key}' failed: {exc}") from exc

    async def _read_identity(self, result: InspectionResult) -> None:
        result.product = _text(await self._read_required(result, "product"))
        result.serial = _text(await self._read_required(result, "serial"))
        fault = await self._read_required(result, "fault")
        result.fault = fault[0] if fault else None

        # Some of these are blocked by platform GATT restrictions; read what we can.
        for (service_key, char_key), char_uuid in result.bound.items():
            if service_key != DEVICE_INFO_SERVICE:
                continue
            try:
                result.identity[char_key] = _text(await self._session.read(char_uuid))
            except TransportError as exc:
                LOGGER.warning("Could not read device information '%s': %s", char_key, exc)

    async def _subscribe(self, result: InspectionResult) -> None:
        targets = [(UART_SERVICE, "control"), (UART_SERVICE, "rx")]
        targets += [(CONTROLLER_SERVICE, "response"), (CONTROLLER_SERVICE, "fault")]
        targets += [(CONTROLLER_SERVICE, key) for key in result.watcher_keys]
        if result.has_super_watcher:
            targets.append((CONTROLLER_SERVICE, SUPER_WATCHER_KEY))

        for service_key, char_key in targets:
            try:
                await self._hub.subscribe(
                    result.uuid(service_key, char_key),
                    char_key,
                    self._handlers.get(char_key),
                )
            except TransportError as exc:
                raise InspectionError(f"Subscribing to '{char_key}' failed: {exc}") from exc
