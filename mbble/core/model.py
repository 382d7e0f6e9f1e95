"""Core data models used across loader, inspector, controller, and CLI."""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from mbble.core.errors import CharacteristicUnavailableError

_STATUS_KEY_RE = re.compile(r"^status(\d+)$")

CONTROLLER_SERVICE = "controller"
UART_SERVICE = "transparentUart"
DEVICE_INFO_SERVICE = "deviceInformation"
SUPER_WATCHER_KEY = "superWatcher"


class DeviceModel(str, Enum):
    """Known dongle models; anything else parses to UNKNOWN."""

    CS1814 = "CS1814"
    CS1816 = "CS1816"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, name: str | None) -> DeviceModel:
        if name:
            for model in cls:
                if model is not cls.UNKNOWN and model.value == name.strip().upper():
                    return model
        return cls.UNKNOWN


@dataclass(frozen=True)
class MatchRules:
    name_contains: tuple[str, ...]
    mac_prefix: tuple[str, ...]


@dataclass(frozen=True)
class CharacteristicSpec:
    key: str
    uuid: str
    optional: bool = False


@dataclass(frozen=True)
class ServiceSpec:
    key: str
    uuid: str
    characteristics: Mapping[str, CharacteristicSpec]


@dataclass(frozen=True)
class CommandSpec:
    key: str
    opcode: int
    max_len: int | None = None
    slot: int | None = None
    params: Mapping[str, int] = field(default_factory=dict)
    requirements: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class TransportSettings:
    write_chunk_size: int = 20
    max_payload: int = 249
    command_timeout_s: float = 1.0
    write_retries: int = 3
    write_retry_delay_s: float = 0.05
    connect_timeout_s: float = 10.0


@dataclass(frozen=True)
class CapabilityDescriptor:
    name: str
    model: DeviceModel
    modbus_id: int
    match: MatchRules
    services: Mapping[str, ServiceSpec]
    commands: Mapping[str, CommandSpec]
    transport: TransportSettings = TransportSettings()

    def service_uuids(self) -> tuple[str, ...]:
        return tuple(service.uuid for service in self.services.values())

    @property
    def watcher_slots(self) -> int:
        """Watcher slots the descriptor declares; inspection may find fewer."""
        controller = self.services.get(CONTROLLER_SERVICE)
        if controller is None:
            return 0
        return sum(1 for key in controller.characteristics if _STATUS_KEY_RE.match(key))


@dataclass(frozen=True)
class DetectedDevice:
    address: str
    name: str


@dataclass(frozen=True)
class ResolvedTarget:
    device: DetectedDevice
    descriptor: CapabilityDescriptor


@dataclass(frozen=True)
class GattServiceInfo:
    """A primary service and the characteristic UUIDs found under it."""

    uuid: str
    characteristics: tuple[str, ...]


@dataclass(frozen=True)
class Frame:
    transaction_id: int
    protocol_id: int
    payload: bytes

    @property
    def payload_length(self) -> int:
        return len(self.payload)


@dataclass(frozen=True)
class CommandResponse:
    sequence: int
    status: int
    data: bytes

    @property
    def ok(self) -> bool:
        return self.status == 0


@dataclass
class WatcherSlot:
    slot: int
    device_id: int
    address: int | tuple[int, ...]
    length: int
    characteristic: str
    callback: Callable[[bytes], None] | None = None
    subscribed: bool = False


@dataclass(frozen=True)
class WatcherRecord:
    slot: int
    device_id: int
    address: int
    length: int


@dataclass(frozen=True)
class SuperWatcherMember:
    address: int


@dataclass(frozen=True)
class DeviceInfo:
    system_id: str | None
    manufacturer_name: str | None
    model_number: str | None
    dongle_serial_number: str | None
    software_revision: str | None
    firmware_revision: str | None
    hardware_revision: str | None
    modbus_id: int
    product: str | None
    serial: str | None
    fault: int | None


@dataclass
class InspectionResult:
    """Working copy of a descriptor annotated with what the peripheral exposes."""

    descriptor: CapabilityDescriptor
    bound: dict[tuple[str, str], str]
    absent: tuple[tuple[str, str], ...] = ()
    identity: dict[str, str] = field(default_factory=dict)
    product: str | None = None
    serial: str | None = None
    fault: int | None = None

    @property
    def model_number(self) -> str:
        return self.identity.get("modelNumber") or self.descriptor.name

    @property
    def watcher_keys(self) -> tuple[str, ...]:
        numbered = []
        for service_key, char_key in self.bound:
            match = _STATUS_KEY_RE.match(char_key)
            if service_key == CONTROLLER_SERVICE and match:
                numbered.append((int(match.group(1)), char_key))
        return tuple(key for _, key in sorted(numbered))

    @property
    def watcher_capacity(self) -> int:
        return len(self.watcher_keys)

    @property
    def has_super_watcher(self) -> bool:
        return self.has(CONTROLLER_SERVICE, SUPER_WATCHER_KEY)

    def has(self, service_key: str, char_key: str) -> bool:
        return (service_key, char_key) in self.bound

    def uuid(self, service_key: str, char_key: str) -> str:
        try:
            return self.bound[(service_key, char_key)]
        except KeyError:
            raise CharacteristicUnavailableError(
                f"Characteristic '{char_key}' of service '{service_key}' is not available on "
                f"{self.model_number}"
            ) from None

    def device_info(self) -> DeviceInfo:
        return DeviceInfo(
            system_id=self.identity.get("systemId"),
            manufacturer_name=self.identity.get("manufacturerName"),
            model_number=self.identity.get("modelNumber"),
            dongle_serial_number=self.identity.get("dongleSerialNumber"),
            software_revision=self.identity.get("softwareRevision"),
            firmware_revision=self.identity.get("firmwareRevision"),
            hardware_revision=self.identity.get("hardwareRevision"),
            modbus_id=self.descriptor.modbus_id,
            product=self.product,
            serial=self.serial,
            fault=self.fault,
        )
