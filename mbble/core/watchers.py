"""Watcher slots: device-side polling bound to status characteristics.

A watcher tells the dongle to poll ``length`` bytes at ``address`` of the
Modbus device ``device_id`` and to notify the value on ``status<slot+1>``.
The super-watcher aggregates single-byte addresses onto one characteristic
and lives on a reserved slot number.

``watch`` detaches the local listener, issues the command, then attaches the
new callback. ``unwatch`` detaches first and then issues the command, so a
late notification is dropped rather than delivered to a callback whose slot
the peripheral has already reassigned.
"""

from __future__ import annotations

import logging
import struct
from collections.abc import Callable, Sequence

from mbble.core.commands import DeviceCommands
from mbble.core.errors import (
    DeviceCommandFailedError,
    InvalidParameterError,
    InvalidSlotError,
    LengthExceedsMaximumError,
    TransportError,
)
from mbble.core.events import EventEmitter
from mbble.core.model import (
    CONTROLLER_SERVICE,
    SUPER_WATCHER_KEY,
    InspectionResult,
    SuperWatcherMember,
    WatcherRecord,
    WatcherSlot,
)
from mbble.core.notifications import NotificationHub

_RECORD = struct.Struct(">BBHB")
_ADDRESS = struct.Struct(">H")
LOGGER = logging.getLogger(__name__)

WatcherCallback = Callable[[bytes], None]


def parse_watchers(data: bytes) -> list[WatcherRecord]:
    """Decode a getWatchers payload of (slot, id, address, length) records."""
    records: list[WatcherRecord] = []
    for offset in range(0, len(data) - _RECORD.size + 1, _RECORD.size):
        slot, device_id, address, length = _RECORD.unpack_from(data, offset)
        records.append(WatcherRecord(slot=slot, device_id=device_id, address=address, length=length))
    return records


def parse_super_watcher(data: bytes) -> list[SuperWatcherMember]:
    """Decode a getSuperWatcher payload: slot, id, then 16-bit addresses."""
    members: list[SuperWatcherMember] = []
    for offset in range(2, len(data) - _ADDRESS.size + 1, _ADDRESS.size):
        (address,) = _ADDRESS.unpack_from(data, offset)
        members.append(SuperWatcherMember(address=address))
    return members


def _check_byte(name: str, value: int) -> None:
    if not 0 <= value <= 0xFF:
        raise InvalidParameterError(f"{name} must be 0 to 255, got {value}")


def _check_address(value: int) -> None:
    if not 0 <= value <= 0xFFFF:
        raise InvalidParameterError(f"address must be 0 to 0xFFFF, got {value}")


class WatcherManager:
    def __init__(
        self,
        result: InspectionResult,
        commands: DeviceCommands,
        hub: NotificationHub,
        events: EventEmitter,
    ) -> None:
        self._result = result
        self._commands = commands
        self._hub = hub
        self._events = events
        self._slots: dict[int, WatcherSlot] = {}
        self._super: WatcherSlot | None = None

    @property
    def capacity(self) -> int:
        return self._result.watcher_capacity

    @property
    def bindings(self) -> dict[int, WatcherSlot]:
        return dict(self._slots)

    def _check_slot(self, slot: int) -> str:
        if not 0 <= slot < self.capacity:
            raise InvalidSlotError(slot, self.capacity, self._commands.model)
        return self._result.watcher_keys[slot]

    async def _restore(self, char_key: str, previous: WatcherSlot | None, was_subscribed: bool) -> None:
        if not was_subscribed:
            return
        callback = previous.callback if previous is not None else None
        try:
            await self._hub.subscribe(self._result.uuid(CONTROLLER_SERVICE, char_key), char_key, callback)
        except TransportError as exc:
            LOGGER.warning("Could not restore subscription to '%s': %s", char_key, exc)

    async def watch(
        self,
        slot: int,
        device_id: int,
        address: int,
        length: int,
        callback: WatcherCallback,
    ) -> WatcherSlot:
        command = self._commands.check_supported("watch")
        char_key = self._check_slot(slot)
        max_len = command.max_len or 0
        if not 1 <= length <= max_len:
            raise LengthExceedsMaximumError(length, max_len)
        _check_byte("device_id", device_id)
        _check_address(address)

        char_uuid = self._result.uuid(CONTROLLER_SERVICE, char_key)
        previous = self._slots.get(slot)
        was_subscribed = self._hub.is_subscribed(char_uuid)

        await self._hub.unsubscribe(char_uuid)
        try:
            await self._commands.execute(
                "watch", bytes([slot, device_id, address >> 8, address & 0xFF, length])
            )
        except DeviceCommandFailedError:
            await self._restore(char_key, previous, was_subscribed)
            raise

        try:
            await self._hub.subscribe(char_uuid, char_key, callback)
        except TransportError:
            self._slots.pop(slot, None)
            raise
        binding = WatcherSlot(
            slot=slot,
            device_id=device_id,
            address=address,
            length=length,
            characteristic=char_key,
            callback=callback,
            subscribed=True,
        )
        self._slots[slot] = binding
        self._events.emit("watch", binding)
        return binding

    async def super_watch(
        self,
        device_id: int,
        addresses: Sequence[int],
        callback: WatcherCallback,
    ) -> WatcherSlot:
        command = self._commands.check_supported("superWatch")
        _check_byte("device_id", device_id)
        if not addresses:
            raise InvalidParameterError("superWatch needs at least one address")
        for address in addresses:
            _check_address(address)
        char_uuid = self._result.uuid(CONTROLLER_SERVICE, SUPER_WATCHER_KEY)
        slot = command.slot if command.slot is not None else 0xFF

        previous = self._super
        was_subscribed = self._hub.is_subscribed(char_uuid)
        params = bytearray([slot, device_id])
        for address in addresses:
            params += _ADDRESS.pack(address)

        await self._hub.unsubscribe(char_uuid)
        try:
            await self._commands.execute("superWatch", bytes(params))
        except DeviceCommandFailedError:
            await self._restore(SUPER_WATCHER_KEY, previous, was_subscribed)
            raise

        try:
            await self._hub.subscribe(char_uuid, SUPER_WATCHER_KEY, callback)
        except TransportError:
            self._super = None
            raise
        self._super = WatcherSlot(
            slot=slot,
            device_id=device_id,
            address=tuple(addresses),
            length=len(addresses),
            characteristic=SUPER_WATCHER_KEY,
            callback=callback,
            subscribed=True,
        )
        self._events.emit("superWatch", self._super)
        return self._super

    def _super_slot(self) -> int | None:
        if not self._result.has_super_watcher:
            return None
        command = self._result.descriptor.commands.get("superWatch")
        return command.slot if command is not None else None

    async def unwatch(self, slot: int) -> None:
        self._commands.require("unwatch")
        if 0 <= slot < self.capacity:
            char_key = self._result.watcher_keys[slot]
        elif slot == self._super_slot():
            self._commands.check_supported("superWatch")
            char_key = SUPER_WATCHER_KEY
        else:
            raise InvalidSlotError(slot, self.capacity, self._commands.model)
        _check_byte("slot", slot)

        await self._hub.unsubscribe(self._result.uuid(CONTROLLER_SERVICE, char_key))
        try:
            await self._commands.execute("unwatch", bytes([slot]))
        finally:
            if char_key == SUPER_WATCHER_KEY:
                self._super = None
            else:
                self._slots.pop(slot, None)
        self._events.emit("unwatch", {"event": char_key, "slot": slot})

    async def unwatch_all(self) -> None:
        self._commands.require("unwatchAll")
        char_keys = list(self._result.watcher_keys)
        if self._result.has_super_watcher:
            char_keys.append(SUPER_WATCHER_KEY)
        for char_key in char_keys:
            await self._hub.unsubscribe(self._result.uuid(CONTROLLER_SERVICE, char_key))
        self._slots.clear()
        self._super = None
        await self._commands.execute("unwatchAll")
        self._events.emit("unwatchAll")

    async def get_watchers(self) -> list[WatcherRecord]:
        command = self._commands.check_supported("getWatcher")
        response = await self._commands.execute("getWatcher", bytes([command.params["getWatchers"]]))
        return parse_watchers(response.data)

    async def get_super_watcher(self) -> list[SuperWatcherMember]:
        command = self._commands.check_supported("getWatcher")
        response = await self._commands.execute("getWatcher", bytes([command.params["getSuperWatcher"]]))
        return parse_super_watcher(response.data)

    def reset(self) -> None:
        """Drop local bookkeeping after the link is gone."""
        self._slots.clear()
        self._super = None
