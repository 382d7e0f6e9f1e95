"""Stable public API for building tooling on top of mbble.

This module is the supported integration surface for third-party callers,
such as a Modbus master that wants the dongle as its byte transport. Avoid
importing from internal modules unless intentionally depending on non-stable
internals.
"""

from __future__ import annotations

from mbble.core.capability_loader import LoadedDescriptors, for_variant, load_descriptors
from mbble.core.controller import BleController
from mbble.core.errors import (
    BridgeError,
    CharacteristicUnavailableError,
    CommandError,
    CommandNotImplementedError,
    CommandTimeoutError,
    CommandWriteError,
    DescriptorLoadError,
    DescriptorValidationError,
    DeviceCommandFailedError,
    DeviceSelectionError,
    DisconnectedError,
    FrameError,
    InspectionError,
    InvalidParameterError,
    InvalidSlotError,
    LengthExceedsMaximumError,
    MissingCapabilityError,
    NoPeripheralSelectedError,
    NotConnectedError,
    PayloadTooLargeError,
    TransportConnectError,
    TransportError,
    TransportSendError,
    TransportUnavailableError,
    UnknownDeviceError,
    UnsupportedOnFirmwareError,
    WatcherError,
)
from mbble.core.framing import chunk, decode, encode
from mbble.core.model import (
    CapabilityDescriptor,
    CommandResponse,
    DetectedDevice,
    DeviceInfo,
    DeviceModel,
    Frame,
    ResolvedTarget,
    SuperWatcherMember,
    WatcherRecord,
    WatcherSlot,
)
from mbble.transports.base import GattSession, Scanner

__all__ = [
    "BridgeError",
    "CharacteristicUnavailableError",
    "CommandError",
    "CommandNotImplementedError",
    "CommandTimeoutError",
    "CommandWriteError",
    "DescriptorLoadError",
    "DescriptorValidationError",
    "DeviceCommandFailedError",
    "DeviceSelectionError",
    "DisconnectedError",
    "FrameError",
    "InspectionError",
    "InvalidParameterError",
    "InvalidSlotError",
    "LengthExceedsMaximumError",
    "MissingCapabilityError",
    "NoPeripheralSelectedError",
    "NotConnectedError",
    "PayloadTooLargeError",
    "TransportConnectError",
    "TransportError",
    "TransportSendError",
    "TransportUnavailableError",
    "UnknownDeviceError",
    "UnsupportedOnFirmwareError",
    "WatcherError",
    "CapabilityDescriptor",
    "CommandResponse",
    "DetectedDevice",
    "DeviceInfo",
    "DeviceModel",
    "Frame",
    "ResolvedTarget",
    "SuperWatcherMember",
    "WatcherRecord",
    "WatcherSlot",
    "GattSession",
    "Scanner",
    "LoadedDescriptors",
    "BleController",
    "chunk",
    "decode",
    "encode",
    "for_variant",
    "load_descriptors",
]
