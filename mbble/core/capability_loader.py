"""Capability descriptor loading and validation for YAML-based device variants."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from mbble.core.errors import DescriptorLoadError, DescriptorValidationError, UnknownDeviceError
from mbble.core.model import (
    CONTROLLER_SERVICE,
    UART_SERVICE,
    CapabilityDescriptor,
    CharacteristicSpec,
    CommandSpec,
    DeviceModel,
    MatchRules,
    ServiceSpec,
    TransportSettings,
)

_UUID_RE = re.compile(r"^[0-9a-f]{4}$|^[0-9a-f]{8}$|^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")
_VERSION_RE = re.compile(r"^\d+(\.\d+)*$")
_BASE_UUID_SUFFIX = "-0000-1000-8000-00805f9b34fb"
_REQUIRED_CHARACTERISTICS = {
    CONTROLLER_SERVICE: ("command", "response", "product", "serial", "fault"),
    UART_SERVICE: ("tx", "rx", "control"),
}
LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


UniqueKeyLoader.yaml_implicit_resolvers = {
    key: list(value) for key, value in yaml.SafeLoader.yaml_implicit_resolvers.items()
}

for first_char, mappings in list(UniqueKeyLoader.yaml_implicit_resolvers.items()):
    UniqueKeyLoader.yaml_implicit_resolvers[first_char] = [
        (tag, regexp)
        for tag, regexp in mappings
        if tag != "tag:yaml.org,2002:bool"
    ]


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise DescriptorValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class LoadedDescriptors:
    descriptors: dict[str, CapabilityDescriptor]
    warnings: tuple[str, ...]

    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self.descriptors))


def _load_schema_validator() -> Any:
    schema_text = resources.files("mbble.schemas").joinpath("descriptor.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _descriptor_dirs() -> tuple[Path, Path]:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return xdg_config / "mbble/devices", xdg_data / "mbble/devices"


def _read_yaml(path: Path | Traversable) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise DescriptorLoadError(f"Could not read descriptor file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise DescriptorValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise DescriptorValidationError(f"Descriptor file {path} must contain a mapping at root")
    return loaded


def normalize_uuid(value: str, *, context: str = "uuid") -> str:
    """Lower-case a UUID and expand 16/32-bit forms onto the Bluetooth base UUID."""
    normalized = value.strip().lower()
    if not _UUID_RE.match(normalized):
        raise DescriptorValidationError(
            f"{context} must be a 16-bit, 32-bit, or 128-bit UUID string"
        )
    if len(normalized) == 4:
        return f"0000{normalized}{_BASE_UUID_SUFFIX}"
    if len(normalized) == 8:
        return f"{normalized}{_BASE_UUID_SUFFIX}"
    return normalized


def _normalize_mac_prefix(prefix: str) -> str:
    return prefix.strip().upper()


def _normalize_bool(value: Any, *, context: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    raise DescriptorValidationError(f"{context} must be boolean true/false")


def _normalize_version(value: Any, *, context: str) -> str:
    text = str(value).strip()
    if not _VERSION_RE.match(text):
        raise DescriptorValidationError(f"{context} must be a dotted numeric version")
    return text


def _build_services(doc: dict[str, Any], name: str) -> dict[str, ServiceSpec]:
    services: dict[str, ServiceSpec] = {}
    for service_key, service_doc in doc["services"].items():
        characteristics: dict[str, CharacteristicSpec] = {}
        for char_key, char_doc in service_doc["characteristics"].items():
            context = f"{name}.services.{service_key}.{char_key}"
            characteristics[char_key] = CharacteristicSpec(
                key=char_key,
                uuid=normalize_uuid(char_doc["uuid"], context=f"{context}.uuid"),
                optional=_normalize_bool(char_doc.get("optional", False), context=f"{context}.optional"),
            )
        services[service_key] = ServiceSpec(
            key=service_key,
            uuid=normalize_uuid(service_doc["uuid"], context=f"{name}.services.{service_key}.uuid"),
            characteristics=MappingProxyType(characteristics),
        )

    for service_key, char_keys in _REQUIRED_CHARACTERISTICS.items():
        service = services.get(service_key)
        if service is None:
            raise DescriptorValidationError(f"{name} must define service '{service_key}'")
        for char_key in char_keys:
            spec = service.characteristics.get(char_key)
            if spec is None or spec.optional:
                raise DescriptorValidationError(
                    f"{name}.services.{service_key} must define required characteristic '{char_key}'"
                )
    return services


def _build_commands(doc: dict[str, Any], name: str) -> dict[str, CommandSpec]:
    commands: dict[str, CommandSpec] = {}
    for command_key, command_doc in doc.get("commands", {}).items():
        context = f"{name}.commands.{command_key}"
        requirements = {
            field: _normalize_version(value, context=f"{context}.requirements.{field}")
            for field, value in command_doc.get("requirements", {}).items()
        }
        commands[command_key] = CommandSpec(
            key=command_key,
            opcode=int(command_doc["opcode"]),
            max_len=command_doc.get("max_len"),
            slot=command_doc.get("slot"),
            params=MappingProxyType(dict(command_doc.get("params", {}))),
            requirements=MappingProxyType(requirements),
        )

    watch = commands.get("watch")
    if watch is not None and watch.max_len is None:
        raise DescriptorValidationError(f"{name}.commands.watch must define max_len")
    super_watch = commands.get("superWatch")
    if super_watch is not None and super_watch.slot is None:
        raise DescriptorValidationError(f"{name}.commands.superWatch must define slot")
    get_watcher = commands.get("getWatcher")
    if get_watcher is not None:
        for param in ("getWatchers", "getSuperWatcher"):
            if param not in get_watcher.params:
                raise DescriptorValidationError(f"{name}.commands.getWatcher.params must define {param}")
    return commands


def _build_descriptor(doc: dict[str, Any], source: Path | Traversable) -> CapabilityDescriptor:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise DescriptorValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    name = doc["name"]
    transport_doc = doc.get("transport", {})
    defaults = TransportSettings()
    transport = TransportSettings(
        write_chunk_size=int(transport_doc.get("write_chunk_size", defaults.write_chunk_size)),
        max_payload=int(transport_doc.get("max_payload", defaults.max_payload)),
        command_timeout_s=float(transport_doc.get("command_timeout_s", defaults.command_timeout_s)),
        write_retries=int(transport_doc.get("write_retries", defaults.write_retries)),
        write_retry_delay_s=float(transport_doc.get("write_retry_delay_s", defaults.write_retry_delay_s)),
        connect_timeout_s=float(transport_doc.get("connect_timeout_s", defaults.connect_timeout_s)),
    )

    match_doc = doc.get("match", {})
    return CapabilityDescriptor(
        name=name,
        model=DeviceModel.parse(name),
        modbus_id=int(doc["modbus_id"]),
        match=MatchRules(
            name_contains=tuple(match_doc.get("name_contains", [name])),
            mac_prefix=tuple(_normalize_mac_prefix(p) for p in match_doc.get("mac_prefix", [])),
        ),
        services=MappingProxyType(_build_services(doc, name)),
        commands=MappingProxyType(_build_commands(doc, name)),
        transport=transport,
    )


def _iter_packaged_descriptor_paths() -> list[Traversable]:
    descriptor_root = resources.files("mbble.devices")
    return [item for item in descriptor_root.iterdir() if item.name.endswith((".yml", ".yaml"))]


def _iter_user_descriptor_paths() -> list[Path]:
    paths: list[Path] = []
    for directory in _descriptor_dirs():
        if not directory.exists() or not directory.is_dir():
            continue
        paths.extend(sorted(p for p in directory.iterdir() if p.suffix in {".yml", ".yaml"}))
    return paths


def load_descriptors() -> LoadedDescriptors:
    descriptors: dict[str, CapabilityDescriptor] = {}
    warnings: list[str] = []

    for path in sorted(_iter_packaged_descriptor_paths(), key=lambda p: p.name):
        doc = _read_yaml(path)
        descriptor = _build_descriptor(doc, path)
        descriptors[descriptor.name] = descriptor

    for path in _iter_user_descriptor_paths():
        doc = _read_yaml(path)
        descriptor = _build_descriptor(doc, path)
        if descriptor.name in descriptors:
            warning = f"User descriptor '{descriptor.name}' overrides packaged descriptor"
            LOGGER.warning(warning)
            warnings.append(warning)
        descriptors[descriptor.name] = descriptor

    return LoadedDescriptors(descriptors=descriptors, warnings=tuple(warnings))


def for_variant(
    name: str | DeviceModel | None,
    loaded: LoadedDescriptors | None = None,
) -> CapabilityDescriptor:
    """Return the descriptor for a device name or model, or raise UnknownDeviceError."""
    loaded = loaded or load_descriptors()
    key = name.value if isinstance(name, DeviceModel) else name
    if key is None or key == DeviceModel.UNKNOWN.value:
        raise UnknownDeviceError(key, loaded.names())
    descriptor = loaded.descriptors.get(key.strip())
    if descriptor is None:
        raise UnknownDeviceError(key, loaded.names())
    return descriptor
