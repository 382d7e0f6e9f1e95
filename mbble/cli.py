"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging

import typer

from mbble.core.controller import BleController
from mbble.core.device_match import best_descriptor_for_device
from mbble.core.errors import BridgeError

app = typer.Typer(help="Drive BLE-to-Modbus bridge dongles")


def _build_controller(**kwargs) -> BleController:
    controller = BleController(**kwargs)
    for warning in getattr(controller, "load_warnings", ()):
        typer.echo(f"Warning: {warning}", err=True)
    return controller


def _parse_int(value: str, name: str) -> int:
    try:
        return int(value, 0)
    except ValueError:
        raise typer.BadParameter(f"{name} must be an integer, got {value!r}") from None


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log protocol traffic to stderr"),
) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")


@app.command("variants")
def list_variants() -> None:
    """List known dongle variants and their commands."""
    try:
        controller = _build_controller()
        if not controller.descriptors:
            typer.echo("No device descriptors loaded")
            raise typer.Exit(code=1)

        for name, descriptor in sorted(controller.descriptors.items()):
            typer.echo(f"{name}: modbus id 0x{descriptor.modbus_id:02X}, {descriptor.watcher_slots} watcher slots")
            for key, command in sorted(descriptor.commands.items(), key=lambda item: item[1].opcode):
                requirements = ", ".join(f"{field} >= {version}" for field, version in command.requirements.items())
                suffix = f" (requires {requirements})" if requirements else ""
                typer.echo(f"  {command.opcode}: {key}{suffix}")
    except BridgeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("scan")
def scan(
    timeout: float = typer.Option(5.0, "--timeout", help="Scan duration in seconds"),
) -> None:
    """Scan for advertising peripherals and show the matched variant."""
    try:
        controller = _build_controller(scan_timeout_s=timeout)
        devices = asyncio.run(controller.discover())
        if not devices:
            typer.echo("No BLE peripherals found")
            return

        for device in devices:
            descriptor = best_descriptor_for_device(device, controller.descriptors)
            matched = descriptor.name if descriptor else "<no-match>"
            typer.echo(f"{device.address} {device.name} -> {matched}")
    except BridgeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


async def _info(controller: BleController, variant: str | None, device: str | None) -> list[str]:
    await controller.start_scanning(variant=variant, device_hint=device)
    info = await controller.open()
    try:
        return [
            f"Model: {info.model_number}",
            f"Manufacturer: {info.manufacturer_name}",
            f"Product: {info.product}",
            f"Serial: {info.serial}",
            f"Software revision: {info.software_revision}",
            f"Firmware revision: {info.firmware_revision}",
            f"Hardware revision: {info.hardware_revision}",
            f"Modbus id: 0x{info.modbus_id:02X}",
            f"Fault: {info.fault}",
        ]
    finally:
        await controller.close()


@app.command("info")
def info(
    device: str | None = typer.Option(None, "--device", help="Address or partial name"),
    variant: str | None = typer.Option(None, "--variant", help="Descriptor name, e.g. CS1816"),
) -> None:
    """Connect, print the dongle's identity, and disconnect."""
    try:
        controller = _build_controller()
        for line in asyncio.run(_info(controller, variant, device)):
            typer.echo(line)
    except BridgeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


async def _watch(
    controller: BleController,
    variant: str | None,
    device: str | None,
    slot: int,
    device_id: int,
    address: int,
    length: int,
    duration: float,
) -> None:
    await controller.start_scanning(variant=variant, device_hint=device)
    await controller.open()
    try:
        await controller.watch(slot, device_id, address, length, lambda data: typer.echo(data.hex()))
        typer.echo(f"Watching slot {slot}: id {device_id} address 0x{address:04X} length {length}")
        await asyncio.sleep(duration)
        await controller.unwatch(slot)
    finally:
        if controller.is_open:
            await controller.close()


@app.command("watch")
def watch(
    slot: int,
    device_id: str,
    address: str,
    length: int,
    duration: float = typer.Option(10.0, "--duration", help="Seconds to print notifications"),
    device: str | None = typer.Option(None, "--device", help="Address or partial name"),
    variant: str | None = typer.Option(None, "--variant", help="Descriptor name, e.g. CS1816"),
) -> None:
    """Bind a watcher slot and print its notifications.

    DEVICE_ID and ADDRESS accept decimal or 0x-prefixed hex.
    """
    parsed_id = _parse_int(device_id, "DEVICE_ID")
    parsed_address = _parse_int(address, "ADDRESS")
    try:
        controller = _build_controller()
        asyncio.run(_watch(controller, variant, device, slot, parsed_id, parsed_address, length, duration))
    except BridgeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()
