from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from mbble.core.capability_loader import LoadedDescriptors, load_descriptors
from mbble.core.controller import BleController
from mbble.core.errors import TransportSendError, TransportUnavailableError
from mbble.core.model import (
    CONTROLLER_SERVICE,
    DEVICE_INFO_SERVICE,
    CapabilityDescriptor,
    DetectedDevice,
    GattServiceInfo,
    ResolvedTarget,
)

CS1816_DEVICE = DetectedDevice(address="00:1E:C0:11:22:33", name="CS1816 Bridge")
CS1814_DEVICE = DetectedDevice(address="00:1E:C0:44:55:66", name="CS1814 Bridge")


class FakeGattSession:
    """In-memory GATT peripheral recording every call in order."""

    def __init__(
        self,
        services: dict[str, tuple[str, ...]],
        values: dict[str, bytes] | None = None,
    ) -> None:
        self.services = services
        self.values = dict(values or {})
        self.calls: list[tuple] = []
        self.handlers: dict[str, Callable[[bytes], None]] = {}
        self.connected = False
        self.write_errors: list[Exception] = []
        self.read_errors: dict[str, Exception] = {}
        self.notify_errors: dict[str, Exception] = {}
        self.on_write: Callable[[str, bytes], None] | None = None
        self.on_disconnect: Callable[[], None] | None = None

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> None:
        self.calls.append(("connect",))
        self.connected = True

    async def disconnect(self) -> None:
        self.calls.append(("disconnect",))
        self.connected = False
        if self.on_disconnect is not None:
            self.on_disconnect()

    async def get_services(self) -> list[GattServiceInfo]:
        return [GattServiceInfo(uuid=uuid, characteristics=chars) for uuid, chars in self.services.items()]

    async def read(self, char_uuid: str) -> bytes:
        self.calls.append(("read", char_uuid))
        if char_uuid in self.read_errors:
            raise self.read_errors[char_uuid]
        return self.values.get(char_uuid, b"")

    async def write(self, char_uuid: str, data: bytes, *, response: bool = True) -> None:
        self.calls.append(("write", char_uuid, bytes(data)))
        if self.write_errors:
            raise self.write_errors.pop(0)
        if self.on_write is not None:
            self.on_write(char_uuid, bytes(data))

    async def start_notify(self, char_uuid: str, handler: Callable[[bytes], None]) -> None:
        self.calls.append(("start_notify", char_uuid))
        if char_uuid in self.notify_errors:
            raise self.notify_errors[char_uuid]
        self.handlers[char_uuid] = handler

    async def stop_notify(self, char_uuid: str) -> None:
        self.calls.append(("stop_notify", char_uuid))
        self.handlers.pop(char_uuid, None)

    def notify(self, char_uuid: str, data: bytes) -> None:
        self.handlers[char_uuid](data)

    def drop_link(self) -> None:
        self.connected = False
        if self.on_disconnect is not None:
            self.on_disconnect()


class FakeScanner:
    def __init__(self, devices: list[DetectedDevice] | None = None, available: bool = True) -> None:
        self.devices = devices or []
        self.available = available
        self.discover_calls: list[dict] = []

    async def check_available(self) -> None:
        if not self.available:
            raise TransportUnavailableError("Bluetooth adapter is powered off")

    async def discover(self, *, timeout_s, name=None, service_uuids=()):
        self.discover_calls.append({"timeout_s": timeout_s, "name": name, "service_uuids": service_uuids})
        return list(self.devices)


def char_uuid(descriptor: CapabilityDescriptor, service_key: str, char_key: str) -> str:
    return descriptor.services[service_key].characteristics[char_key].uuid


def make_session(
    descriptor: CapabilityDescriptor,
    *,
    software_revision: str | None = "1.5",
    drop: tuple[str, ...] = (),
) -> FakeGattSession:
    """Build a peripheral exposing ``descriptor`` minus the characteristic keys in ``drop``."""
    services: dict[str, tuple[str, ...]] = {}
    for service in descriptor.services.values():
        services[service.uuid] = tuple(
            spec.uuid for key, spec in service.characteristics.items() if key not in drop
        )

    values = {
        char_uuid(descriptor, CONTROLLER_SERVICE, "product"): b"Modbus Bridge\x00",
        char_uuid(descriptor, CONTROLLER_SERVICE, "serial"): b"SN-0042",
        char_uuid(descriptor, CONTROLLER_SERVICE, "fault"): b"\x00",
    }
    identity = {
        "systemId": "0001",
        "modelNumber": descriptor.name,
        "manufacturerName": "Control Solutions",
        "firmwareRevision": "2.0",
        "hardwareRevision": "B",
    }
    if software_revision is not None:
        identity["softwareRevision"] = software_revision
    for key, text in identity.items():
        values[char_uuid(descriptor, DEVICE_INFO_SERVICE, key)] = text.encode()
    return FakeGattSession(services, values)


def auto_respond(
    session: FakeGattSession,
    descriptor: CapabilityDescriptor,
    replies: dict[int, tuple[int, bytes]] | None = None,
) -> None:
    """Answer every management command on the next loop iteration.

    ``replies`` maps opcode to (status, data); unlisted opcodes succeed empty.
    """
    command_uuid = char_uuid(descriptor, CONTROLLER_SERVICE, "command")
    response_uuid = char_uuid(descriptor, CONTROLLER_SERVICE, "response")
    if replies is None:
        replies = {}

    def _on_write(uuid: str, data: bytes) -> None:
        if uuid != command_uuid:
            return
        status, payload = replies.get(data[1], (0, b""))
        asyncio.get_running_loop().call_soon(session.notify, response_uuid, bytes([data[0], status]) + payload)

    session.on_write = _on_write


def busy_error() -> TransportSendError:
    return TransportSendError("Write failed: GATT operation already in progress.")


@pytest.fixture
def isolated_xdg(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    return tmp_path


@pytest.fixture
def loaded(isolated_xdg: Path) -> LoadedDescriptors:
    return load_descriptors()


@pytest.fixture
def cs1816(loaded: LoadedDescriptors) -> CapabilityDescriptor:
    return loaded.descriptors["CS1816"]


@pytest.fixture
def cs1814(loaded: LoadedDescriptors) -> CapabilityDescriptor:
    return loaded.descriptors["CS1814"]


def make_controller(
    loaded: LoadedDescriptors,
    session: FakeGattSession,
    descriptor: CapabilityDescriptor,
    device: DetectedDevice = CS1816_DEVICE,
    scanner: FakeScanner | None = None,
) -> BleController:
    def _factory(_device: DetectedDevice, _timeout_s: float, on_disconnect: Callable[[], None]) -> FakeGattSession:
        session.on_disconnect = on_disconnect
        return session

    controller = BleController(
        descriptors=loaded,
        session_factory=_factory,
        scanner=scanner or FakeScanner([device]),
    )
    controller.select(ResolvedTarget(device=device, descriptor=descriptor))
    return controller
