"""Wire-level protocol between the uploader and a device.

All traffic is scoped under ``iot/<device_id>/ota``:

    start   uploader → device   JSON start announcement (size + CRC)
    data    uploader → device   raw chunk bytes, no envelope
    ready   device → uploader   one unit of credit, payload ignored
    log     device → uploader   free-form diagnostics, only logged

Chunk order is implied by publish order only.  The MQTT broker keeps
messages from one client on one topic in order, which is what the device
relies on to reassemble the image.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

TOPIC_ROOT = "iot"


@dataclass(frozen=True)
class DeviceTopics:
    """Topic names for one device."""

    device_id: str

    @property
    def base(self) -> str:
        return f"{TOPIC_ROOT}/{self.device_id}/ota"

    @property
    def start(self) -> str:
        return f"{self.base}/start"

    @property
    def ready(self) -> str:
        return f"{self.base}/ready"

    @property
    def data(self) -> str:
        return f"{self.base}/data"

    @property
    def log(self) -> str:
        return f"{self.base}/log"

    @property
    def inbound(self) -> tuple[str, str]:
        """Topics the uploader subscribes to."""
        return (self.log, self.ready)


@dataclass(frozen=True)
class StartAnnouncement:
    """Body of the repeated start message."""

    size: int
    target_crc: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_bytes(self) -> bytes:
        # The device parses with a no-alloc JSON reader; keep it compact.
        return json.dumps(self.to_dict(), separators=(",", ":")).encode()

    @classmethod
    def from_bytes(cls, data: bytes) -> StartAnnouncement:
        obj = json.loads(data)
        return cls(size=int(obj["size"]), target_crc=int(obj["target_crc"]))


class InboundKind(str, Enum):
    """What an inbound message means to the uploader."""

    READY = "ready"              # One unit of credit
    DIAGNOSTIC = "diagnostic"    # Device log line
    UNKNOWN = "unknown"          # Anything else delivered on a subscription


@dataclass
class InboundEvent:
    """One message received from the device, already classified."""

    kind: InboundKind
    topic: str
    payload: bytes = b""

    @property
    def text(self) -> str:
        return self.payload.decode("utf-8", errors="replace")


def classify(topics: DeviceTopics, topic: str, payload: bytes) -> InboundEvent:
    """Turn a raw (topic, payload) delivery into a typed event."""
    if topic == topics.ready:
        kind = InboundKind.READY
    elif topic == topics.log:
        kind = InboundKind.DIAGNOSTIC
    else:
        kind = InboundKind.UNKNOWN
    return InboundEvent(kind=kind, topic=topic, payload=bytes(payload))
