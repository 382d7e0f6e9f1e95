"""Peripheral-to-descriptor matching and target selection."""

from __future__ import annotations

from collections.abc import Mapping, Sequence

from mbble.core.errors import DeviceSelectionError
from mbble.core.model import CapabilityDescriptor, DetectedDevice, ResolvedTarget


def _mac_prefix_match(address: str, descriptor: CapabilityDescriptor) -> bool:
    upper_address = address.upper()
    return any(upper_address.startswith(prefix) for prefix in descriptor.match.mac_prefix)


def _name_contains_match(device_name: str, descriptor: CapabilityDescriptor) -> bool:
    lower_name = device_name.lower()
    return any(token.lower() in lower_name for token in descriptor.match.name_contains)


def match_score(device: DetectedDevice, descriptor: CapabilityDescriptor) -> int:
    mac_match = _mac_prefix_match(device.address, descriptor)
    name_match = _name_contains_match(device.name, descriptor)
    if mac_match and name_match:
        return 3
    if mac_match:
        return 2
    if name_match:
        return 1
    return 0


def best_descriptor_for_device(
    device: DetectedDevice,
    descriptors: Mapping[str, CapabilityDescriptor],
) -> CapabilityDescriptor | None:
    best: CapabilityDescriptor | None = None
    best_score = 0
    for descriptor in descriptors.values():
        score = match_score(device, descriptor)
        if score > best_score:
            best = descriptor
            best_score = score
    return best


def select_peripheral(
    devices: Sequence[DetectedDevice],
    descriptors: Mapping[str, CapabilityDescriptor],
    *,
    variant: str | None = None,
    device_hint: str | None = None,
    first: bool = False,
) -> ResolvedTarget:
    """Pick exactly one matched peripheral from a scan.

    ``variant`` pins the descriptor; ``device_hint`` narrows by address or
    name; ``first`` takes the earliest candidate instead of refusing an
    ambiguous scan.
    """
    if not devices:
        raise DeviceSelectionError("No BLE peripherals found. Ensure the dongle is powered and in range.")

    override: CapabilityDescriptor | None = None
    if variant:
        override = descriptors.get(variant)
        if override is None:
            raise DeviceSelectionError(f"Unknown variant '{variant}'. Use 'mbble variants' to list them.")

    candidates: list[ResolvedTarget] = []
    for device in devices:
        if override is not None:
            if match_score(device, override) == 0:
                continue
            descriptor = override
        else:
            descriptor = best_descriptor_for_device(device, descriptors)
            if descriptor is None:
                continue
        candidates.append(ResolvedTarget(device=device, descriptor=descriptor))

    if device_hint:
        hint = device_hint.lower()
        hinted = [
            c
            for c in candidates
            if c.device.address.lower() == hint
            or hint in c.device.address.lower()
            or hint in c.device.name.lower()
        ]
        if not hinted:
            raise DeviceSelectionError(f"No peripheral found matching '{device_hint}'")
        candidates = hinted

    if not candidates:
        if variant:
            raise DeviceSelectionError(f"No peripheral matched variant '{variant}'.")
        raise DeviceSelectionError("No peripheral matched any known variant.")

    if len(candidates) > 1 and not first:
        candidate_desc = ", ".join(f"{c.device.address} ({c.device.name})" for c in candidates)
        raise DeviceSelectionError(
            f"Multiple candidate peripherals found: {candidate_desc}. Use --device to choose one."
        )

    return candidates[0]
