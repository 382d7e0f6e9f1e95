from __future__ import annotations

from dataclasses import replace

import pytest

from conftest import char_uuid, make_session
from mbble.core.errors import CharacteristicUnavailableError, InspectionError, MissingCapabilityError, TransportSendError
from mbble.core.events import EventEmitter
from mbble.core.inspector import DeviceInspector
from mbble.core.notifications import NotificationHub


def _inspector(session, descriptor, handlers=None):
    events = EventEmitter()
    hub = NotificationHub(session, events)
    return DeviceInspector(session, descriptor, hub, events, handlers), hub, events


@pytest.mark.asyncio
async def test_inspect_binds_reads_identity_and_subscribes(cs1816) -> None:
    session = make_session(cs1816)
    inspector, hub, events = _inspector(session, cs1816)
    seen: list[str] = []
    for name in ("inspecting", "inspected"):
        events.subscribe(name, lambda name=name: seen.append(name))

    result = await inspector.inspect()

    assert seen == ["inspecting", "inspected"]
    assert result.watcher_capacity == 15
    assert result.watcher_keys[0] == "status1"
    assert result.watcher_keys[-1] == "status15"
    assert result.has_super_watcher
    assert result.product == "Modbus Bridge"
    assert result.serial == "SN-0042"
    assert result.fault == 0
    assert result.identity["softwareRevision"] == "1.5"
    assert result.model_number == "CS1816"

    subscribed = [call[1] for call in session.calls if call[0] == "start_notify"]
    assert subscribed[:4] == [
        char_uuid(cs1816, "transparentUart", "control"),
        char_uuid(cs1816, "transparentUart", "rx"),
        char_uuid(cs1816, "controller", "response"),
        char_uuid(cs1816, "controller", "fault"),
    ]
    assert len(subscribed) == 4 + 15 + 1
    assert hub.is_subscribed(char_uuid(cs1816, "controller", "superWatcher"))


@pytest.mark.asyncio
async def test_missing_optional_characteristic_is_tolerated(cs1816) -> None:
    session = make_session(cs1816, drop=("superWatcher", "dongleSerialNumber"))
    inspector, _, _ = _inspector(session, cs1816)

    result = await inspector.inspect()

    assert not result.has_super_watcher
    assert ("controller", "superWatcher") in result.absent
    assert "dongleSerialNumber" not in result.identity
    assert result.device_info().dongle_serial_number is None
    with pytest.raises(CharacteristicUnavailableError):
        result.uuid("controller", "superWatcher")


@pytest.mark.asyncio
async def test_missing_required_characteristic_names_it(cs1816) -> None:
    session = make_session(cs1816, drop=("response",))
    inspector, _, _ = _inspector(session, cs1816)

    with pytest.raises(MissingCapabilityError) as excinfo:
        await inspector.inspect()

    assert excinfo.value.service_key == "controller"
    assert excinfo.value.characteristic_key == "response"
    assert excinfo.value.uuid == char_uuid(cs1816, "controller", "response")
    assert not any(call[0] == "start_notify" for call in session.calls)


@pytest.mark.asyncio
async def test_missing_service_fails(cs1814) -> None:
    session = make_session(cs1814)
    del session.services[cs1814.services["transparentUart"].uuid]
    inspector, _, _ = _inspector(session, cs1814)

    with pytest.raises(MissingCapabilityError, match="transparentUart"):
        await inspector.inspect()


@pytest.mark.asyncio
async def test_declared_status_characteristics_are_required(cs1816) -> None:
    session = make_session(cs1816, drop=tuple(f"status{n}" for n in range(6, 16)))
    inspector, _, _ = _inspector(session, cs1816)

    with pytest.raises(MissingCapabilityError, match="status6"):
        await inspector.inspect()


@pytest.mark.asyncio
async def test_device_information_read_failure_is_tolerated(cs1816) -> None:
    session = make_session(cs1816)
    session.read_errors[char_uuid(cs1816, "deviceInformation", "systemId")] = TransportSendError("blocked")
    inspector, _, _ = _inspector(session, cs1816)

    result = await inspector.inspect()
    assert "systemId" not in result.identity
    assert result.identity["manufacturerName"] == "Control Solutions"


@pytest.mark.asyncio
async def test_identity_read_failure_aborts(cs1816) -> None:
    session = make_session(cs1816)
    session.read_errors[char_uuid(cs1816, "controller", "serial")] = TransportSendError("read failed")
    inspector, _, _ = _inspector(session, cs1816)

    with pytest.raises(InspectionError, match="serial"):
        await inspector.inspect()


@pytest.mark.asyncio
async def test_mandatory_subscribe_failure_aborts(cs1816) -> None:
    session = make_session(cs1816)
    session.notify_errors[char_uuid(cs1816, "controller", "status3")] = TransportSendError("notify failed")
    inspector, _, _ = _inspector(session, cs1816)

    with pytest.raises(InspectionError, match="status3"):
        await inspector.inspect()


@pytest.mark.asyncio
async def test_handlers_receive_notifications(cs1816) -> None:
    session = make_session(cs1816)
    responses: list[bytes] = []
    inspector, _, events = _inspector(session, cs1816, {"response": responses.append})
    faults: list[bytes] = []
    events.subscribe("fault", faults.append)

    await inspector.inspect()
    session.notify(char_uuid(cs1816, "controller", "response"), b"\x00\x00")
    session.notify(char_uuid(cs1816, "controller", "fault"), b"\x02")

    assert responses == [b"\x00\x00"]
    assert faults == [b"\x02"]


def _with_optional_statuses(descriptor, first: int):
    controller = descriptor.services["controller"]
    characteristics = {
        key: replace(spec, optional=True) if key.startswith("status") and int(key[6:]) >= first else spec
        for key, spec in controller.characteristics.items()
    }
    services = dict(descriptor.services)
    services["controller"] = replace(controller, characteristics=characteristics)
    return replace(descriptor, services=services)


@pytest.mark.asyncio
async def test_watcher_capacity_follows_present_status_characteristics(cs1816) -> None:
    descriptor = _with_optional_statuses(cs1816, first=6)
    session = make_session(descriptor, drop=tuple(f"status{n}" for n in range(6, 16)))
    inspector, _, _ = _inspector(session, descriptor)

    result = await inspector.inspect()
    assert result.watcher_capacity == 5
    assert result.watcher_keys == ("status1", "status2", "status3", "status4", "status5")
