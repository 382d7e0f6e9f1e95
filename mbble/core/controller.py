"""Controller session: scan, open, inspect, and the public operation surface."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from mbble.core.capability_loader import LoadedDescriptors, load_descriptors
from mbble.core.commands import DeviceCommands
from mbble.core.device_match import select_peripheral
from mbble.core.errors import (
    DeviceSelectionError,
    NoPeripheralSelectedError,
    NotConnectedError,
    TransportError,
)
from mbble.core.events import EventEmitter, Handler
from mbble.core.inspector import DeviceInspector
from mbble.core.model import (
    CONTROLLER_SERVICE,
    CommandResponse,
    DetectedDevice,
    DeviceInfo,
    InspectionResult,
    ResolvedTarget,
    SuperWatcherMember,
    WatcherRecord,
    WatcherSlot,
)
from mbble.core.notifications import NotificationHub
from mbble.core.sequencer import CommandSequencer
from mbble.core.watchers import WatcherCallback, WatcherManager
from mbble.transports.base import GattSession, Scanner, SessionFactory
from mbble.transports.ble_gatt import BleakScannerAdapter, bleak_session_factory
from mbble.transports.uart import UartBridge

DEFAULT_SCAN_TIMEOUT_S = 5.0
LOGGER = logging.getLogger(__name__)


class BleController:
    """One dongle, one GATT session, one command channel.

    Every piece of session state (subscriptions, pending commands, watcher
    bindings, the inspection result) is dropped together on close or link
    loss. Reopening always re-inspects.
    """

    def __init__(
        self,
        *,
        name: str | None = None,
        service_uuid: str | None = None,
        auto_connect: bool = False,
        scan_timeout_s: float = DEFAULT_SCAN_TIMEOUT_S,
        descriptors: LoadedDescriptors | None = None,
        session_factory: SessionFactory | None = None,
        scanner: Scanner | None = None,
    ) -> None:
        loaded = descriptors or load_descriptors()
        self.descriptors = loaded.descriptors
        self.load_warnings = loaded.warnings
        self.events = EventEmitter()
        self.target: ResolvedTarget | None = None
        self._name = name
        self._service_uuid = service_uuid
        self._auto_connect = auto_connect
        self._scan_timeout_s = scan_timeout_s
        self._session_factory = session_factory or bleak_session_factory
        self._scanner = scanner or BleakScannerAdapter()

        self._session: GattSession | None = None
        self._hub: NotificationHub | None = None
        self._sequencer: CommandSequencer | None = None
        self._result: InspectionResult | None = None
        self._commands: DeviceCommands | None = None
        self._watchers: WatcherManager | None = None
        self._bridge: UartBridge | None = None

    def subscribe(self, event: str, handler: Handler) -> Handler:
        return self.events.subscribe(event, handler)

    def unsubscribe(self, event: str, handler: Handler) -> None:
        self.events.unsubscribe(event, handler)

    @property
    def is_open(self) -> bool:
        return self._result is not None and self._session is not None and self._session.is_connected

    @property
    def inspection(self) -> InspectionResult | None:
        return self._result

    async def get_availability(self) -> bool:
        await self._scanner.check_available()
        return True

    async def discover(self) -> list[DetectedDevice]:
        devices = await self._scanner.discover(
            timeout_s=self._scan_timeout_s,
            name=self._name,
            service_uuids=(self._service_uuid,) if self._service_uuid else (),
        )
        for device in devices:
            self.events.emit("discover", device)
        return devices

    async def start_scanning(
        self,
        *,
        variant: str | None = None,
        device_hint: str | None = None,
    ) -> ResolvedTarget:
        self.events.emit("scanStart")
        try:
            devices = await self.discover()
            target = select_peripheral(
                devices,
                self.descriptors,
                variant=variant,
                device_hint=device_hint,
                first=self._auto_connect,
            )
        finally:
            self.events.emit("scanStop")
        LOGGER.info("Selected %s (%s) as %s", target.device.address, target.device.name, target.descriptor.name)
        self.target = target
        return target

    def select(self, target: ResolvedTarget) -> None:
        self.target = target

    async def open(self, device_id: str | None = None) -> DeviceInfo:
        if self.is_open:
            return self.get_info()
        if device_id is not None:
            target = await self.start_scanning(device_hint=device_id)
            if target.device.address.upper() != device_id.upper():
                raise DeviceSelectionError(f"No peripheral with address '{device_id}' found")
        if self.target is None:
            raise NoPeripheralSelectedError("No peripheral selected. Scan before opening.")

        target = self.target
        descriptor = target.descriptor
        self.events.emit("connecting", target.device)
        session = self._session_factory(target.device, descriptor.transport.connect_timeout_s, self._on_link_lost)
        self._session = session
        try:
            await session.connect()
            self.events.emit("connected", target.device)

            self._hub = NotificationHub(session, self.events)
            self._sequencer = CommandSequencer(
                self._write_command,
                default_timeout_s=descriptor.transport.command_timeout_s,
                events=self.events,
            )
            inspector = DeviceInspector(
                session,
                descriptor,
                self._hub,
                self.events,
                handlers={
                    "response": self._sequencer.on_response,
                    "rx": self._on_rx,
                    "fault": self._on_fault,
                },
            )
            result = await inspector.inspect()
        except BaseException:
            # Covers cancellation too; a half-open session is never kept.
            await self._disconnect(self._drop_state("Open aborted"))
            self.events.emit("disconnected")
            raise

        self._result = result
        self._commands = DeviceCommands(result, self._sequencer)
        self._watchers = WatcherManager(result, self._commands, self._hub, self.events)
        self._bridge = UartBridge(session, result, self.events)
        LOGGER.info("%s ready: %s", result.model_number, target.device.address)
        self.events.emit("ready")
        return result.device_info()

    async def close(self) -> None:
        if self._session is None:
            raise NotConnectedError("Not connected")
        self.events.emit("disconnecting")
        await self._disconnect(self._drop_state("Connection closed"))
        self.events.emit("disconnected")

    def _drop_state(self, reason: str) -> GattSession | None:
        session = self._session
        if self._sequencer is not None:
            self._sequencer.close(reason)
        if self._watchers is not None:
            self._watchers.reset()
        if self._hub is not None:
            self._hub.clear()
        self._session = None
        self._hub = None
        self._sequencer = None
        self._result = None
        self._commands = None
        self._watchers = None
        self._bridge = None
        return session

    async def _disconnect(self, session: GattSession | None) -> None:
        if session is None or not session.is_connected:
            return
        try:
            await session.disconnect()
        except TransportError as exc:
            LOGGER.warning("Disconnect failed: %s", exc)

    def _on_link_lost(self) -> None:
        if self._session is None:
            return
        LOGGER.warning("Link lost to %s", self.target.device.address if self.target else "<unknown>")
        self._drop_state("Link lost")
        self.events.emit("disconnected")

    def _on_rx(self, data: bytes) -> None:
        if self._bridge is None:
            LOGGER.debug("Dropping rx notification before ready: %s", data.hex())
            return
        self._bridge.on_rx(data)

    def _on_fault(self, data: bytes) -> None:
        if self._result is not None and data:
            self._result.fault = data[0]

    async def _write_command(self, frame: bytes) -> None:
        session = self._session
        result = self._result
        if session is None or result is None:
            raise NotConnectedError("Command channel is not ready")
        char_uuid = result.uuid(CONTROLLER_SERVICE, "command")
        self.events.emit("writeCharacteristic", char_uuid, frame)
        await session.write(char_uuid, frame, response=True)

    def _require(self) -> tuple[InspectionResult, DeviceCommands, WatcherManager, UartBridge]:
        if (
            not self.is_open
            or self._result is None
            or self._commands is None
            or self._watchers is None
            or self._bridge is None
        ):
            raise NotConnectedError("Peripheral is not open")
        return self._result, self._commands, self._watchers, self._bridge

    def get_info(self) -> DeviceInfo:
        result, _, _, _ = self._require()
        return result.device_info()

    async def configure(self, configuration: bytes) -> CommandResponse:
        _, commands, _, _ = self._require()
        return await commands.execute("configure", bytes(configuration))

    async def keyswitch(self, state: bool) -> CommandResponse:
        _, commands, _, _ = self._require()
        return await commands.execute("keySwitch", bytes([1 if state else 0]))

    async def write(self, data: bytes) -> None:
        _, _, _, bridge = self._require()
        await bridge.write(data)

    async def send_frame(self, transaction_id: int, payload: bytes, protocol_id: int = 0) -> bytes:
        _, _, _, bridge = self._require()
        return await bridge.send_frame(transaction_id, payload, protocol_id)

    async def watch(
        self,
        slot: int,
        device_id: int,
        address: int,
        length: int,
        callback: WatcherCallback,
    ) -> WatcherSlot:
        _, _, watchers, _ = self._require()
        return await watchers.watch(slot, device_id, address, length, callback)

    async def super_watch(
        self,
        device_id: int,
        addresses: Sequence[int],
        callback: WatcherCallback,
    ) -> WatcherSlot:
        _, _, watchers, _ = self._require()
        return await watchers.super_watch(device_id, addresses, callback)

    async def unwatch(self, slot: int) -> None:
        _, _, watchers, _ = self._require()
        await watchers.unwatch(slot)

    async def unwatch_all(self) -> None:
        _, _, watchers, _ = self._require()
        await watchers.unwatch_all()

    async def get_watchers(self) -> list[WatcherRecord]:
        _, _, watchers, _ = self._require()
        return await watchers.get_watchers()

    async def get_super_watcher(self) -> list[SuperWatcherMember]:
        _, _, watchers, _ = self._require()
        return await watchers.get_super_watcher()

    def watcher_bindings(self) -> dict[int, WatcherSlot]:
        _, _, watchers, _ = self._require()
        return watchers.bindings

