"""Domain-specific errors for mbble."""

from __future__ import annotations


class BridgeError(Exception):
    """Base error for mbble."""


class DescriptorValidationError(BridgeError):
    """Raised when a descriptor file does not conform to schema or semantics."""


class DescriptorLoadError(BridgeError):
    """Raised when loading descriptor sources fails."""


class UnknownDeviceError(BridgeError):
    """Raised when no capability descriptor exists for a device name."""

    def __init__(self, name: str | None, known: tuple[str, ...] = ()) -> None:
        self.name = name
        self.known = known
        hint = f" Known devices: {', '.join(known)}" if known else ""
        super().__init__(f"No peripheral information for {name!r}.{hint}")


class DeviceSelectionError(BridgeError):
    """Raised when scanning cannot resolve a single target peripheral."""


class NoPeripheralSelectedError(BridgeError):
    """Raised when open() is called before a peripheral was selected."""


class NotConnectedError(BridgeError):
    """Raised when an operation needs an open, inspected peripheral."""


class TransportError(BridgeError):
    """Base transport error."""


class TransportUnavailableError(TransportError):
    """Raised when the Bluetooth radio or stack cannot be used."""


class TransportConnectError(TransportError):
    """Raised on GATT connect failures."""


class TransportSendError(TransportError):
    """Raised when a GATT read, write or subscription fails."""


class InspectionError(BridgeError):
    """Raised when peripheral inspection cannot complete."""


class MissingCapabilityError(InspectionError):
    """Raised when a required service or characteristic is absent."""

    def __init__(self, service_key: str, uuid: str, characteristic_key: str | None = None) -> None:
        self.service_key = service_key
        self.characteristic_key = characteristic_key
        self.uuid = uuid
        if characteristic_key is None:
            message = f"Peripheral missing GATT service '{service_key}' with UUID {uuid}"
        else:
            message = (
                f"Peripheral missing characteristic '{characteristic_key}' of GATT service "
                f"'{service_key}' with UUID {uuid}"
            )
        super().__init__(message)


class CharacteristicUnavailableError(BridgeError):
    """Raised when accessing a characteristic that inspection did not bind."""


class CommandError(BridgeError):
    """Base error for management command failures."""


class CommandTimeoutError(CommandError):
    """Raised when no response arrives within the command's timeout."""

    def __init__(self, sequence: int, opcode: int, timeout_s: float) -> None:
        self.sequence = sequence
        self.opcode = opcode
        self.timeout_s = timeout_s
        super().__init__(
            f"Timeout waiting {timeout_s:.3f}s for response to opcode {opcode} (sequence {sequence})"
        )


class CommandWriteError(CommandError):
    """Raised when the command characteristic write fails."""

    def __init__(self, sequence: int, opcode: int, reason: str) -> None:
        self.sequence = sequence
        self.opcode = opcode
        super().__init__(f"Writing opcode {opcode} (sequence {sequence}) failed: {reason}")


class DisconnectedError(CommandError):
    """Raised on pending commands when the connection closes."""


class DeviceCommandFailedError(BridgeError):
    """Raised when a device command is rejected, times out or cannot be written."""

    def __init__(self, command_key: str, model: str, reason: str, status: int | None = None) -> None:
        self.command_key = command_key
        self.model = model
        self.status = status
        super().__init__(f"'{command_key}' failed on {model}: {reason}")


class CommandNotImplementedError(BridgeError):
    """Raised when the descriptor does not define a command."""

    def __init__(self, command_key: str, model: str) -> None:
        self.command_key = command_key
        self.model = model
        super().__init__(f"'{command_key}' is not implemented on {model}")


class UnsupportedOnFirmwareError(BridgeError):
    """Raised when a command's version requirement is not met."""

    def __init__(
        self,
        command_key: str,
        model: str,
        requirement: str,
        required: str,
        reported: str | None,
    ) -> None:
        self.command_key = command_key
        self.model = model
        self.requirement = requirement
        self.required = required
        self.reported = reported
        super().__init__(
            f"'{command_key}' is not supported on this firmware of {model}: "
            f"requires {requirement} >= {required}, this peripheral reports {reported}"
        )


class WatcherError(BridgeError):
    """Base error for watcher input validation."""


class InvalidSlotError(WatcherError):
    """Raised when a watcher slot is outside the device's capacity."""

    def __init__(self, slot: int, capacity: int, model: str) -> None:
        self.slot = slot
        self.capacity = capacity
        self.model = model
        super().__init__(f"Invalid slot {slot}. Range for {model} is 0 to {capacity - 1}.")


class LengthExceedsMaximumError(WatcherError):
    """Raised when a watch read length is outside 1..max_len."""

    def __init__(self, length: int, maximum: int) -> None:
        self.length = length
        self.maximum = maximum
        super().__init__(f"Read length {length} outside 1 to maximum length of {maximum} bytes.")


class InvalidParameterError(BridgeError, ValueError):
    """Raised when a command parameter does not fit its wire field."""


class FrameError(BridgeError):
    """Base error for UART framing."""


class PayloadTooLargeError(FrameError):
    """Raised when a frame payload exceeds the configured maximum."""

    def __init__(self, length: int, maximum: int) -> None:
        self.length = length
        self.maximum = maximum
        super().__init__(f"Payload of {length} bytes exceeds maximum of {maximum} bytes")
