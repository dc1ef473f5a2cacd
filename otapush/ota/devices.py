"""Device inventory read from descriptor files.

Each file in the devices directory describes one device with ``KEY=VALUE``
lines, e.g.::

    ID=esp32-garage
    desc=Garage door controller

``ID`` (or ``id``) scopes the MQTT topics; ``desc`` is the menu label.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from otapush.errors import DeviceNotFound

ID_KEYS = ("ID", "id")
NAME_KEY = "desc"


@dataclass(frozen=True)
class DeviceDescriptor:
    """One device the uploader can target."""

    device_id: str
    name: str = ""
    attributes: dict[str, str] = field(default_factory=dict)
    path: Path | None = None

    @property
    def label(self) -> str:
        return self.name or self.device_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "name": self.name,
            "attributes": dict(self.attributes),
            "path": str(self.path) if self.path else "",
        }


def parse_descriptor(text: str) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines.  Lines without both parts are skipped."""
    attrs: dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        key, value = key.strip(), value.strip()
        if sep and key and value:
            attrs[key] = value
    return attrs


def descriptor_from_file(path: Path) -> DeviceDescriptor | None:
    """Build a descriptor from one file, or ``None`` if it names no device."""
    attrs = parse_descriptor(path.read_text(errors="replace"))
    device_id = next((attrs[k] for k in ID_KEYS if k in attrs), "")
    if not device_id:
        logger.warning("[OTA/Devices] {} has no ID entry, skipped", path)
        return None
    return DeviceDescriptor(
        device_id=device_id,
        name=attrs.get(NAME_KEY, ""),
        attributes=attrs,
        path=path,
    )


def load_devices(directory: str | Path) -> list[DeviceDescriptor]:
    """Return descriptors for every file in *directory*, sorted by file name."""
    root = Path(directory)
    if not root.is_dir():
        logger.warning("[OTA/Devices] devices directory {} not found", root)
        return []
    devices: list[DeviceDescriptor] = []
    for path in sorted(p for p in root.iterdir() if p.is_file()):
        try:
            desc = descriptor_from_file(path)
        except OSError as exc:
            logger.warning("[OTA/Devices] cannot read {}: {}", path, exc)
            continue
        if desc is not None:
            devices.append(desc)
    logger.debug("[OTA/Devices] loaded {} devices from {}", len(devices), root)
    return devices


def find_device(devices: list[DeviceDescriptor], device_id: str) -> DeviceDescriptor:
    """Return the descriptor for *device_id*.  Raises ``DeviceNotFound``."""
    for device in devices:
        if device.device_id == device_id:
            return device
    raise DeviceNotFound(f"unknown device {device_id!r}")
