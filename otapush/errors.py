"""Error hierarchy for otapush.

OTAError (base)
├── EndOfData           - chunk source exhausted (normal termination)
├── SourceReadError     - firmware image could not be read (fatal)
├── TransportError      - broker connection failure
│   └── TransportPublishError - a publish was refused (fatal)
├── BadCredential       - auth token has no usable client id
├── DeviceNotFound      - unknown device id
└── BuildError          - firmware build command failed

``EndOfData`` derives from ``OTAError`` so a single ``except OTAError``
still catches everything, but it is never escalated by the session.
"""

from __future__ import annotations


class OTAError(Exception):
    """Base exception for all otapush errors."""


class EndOfData(OTAError):
    """Raised by a chunk source when no bytes remain."""


class SourceReadError(OTAError):
    """Raised when the firmware image cannot be read mid-transfer."""


class TransportError(OTAError):
    """Raised when the broker connection cannot be established or is lost."""


class TransportPublishError(TransportError):
    """Raised when a publish is rejected by the transport."""

    def __init__(self, topic: str, reason: str) -> None:
        super().__init__(f"publish to {topic!r} failed: {reason}")
        self.topic = topic
        self.reason = reason


class BadCredential(OTAError):
    """Raised when the auth token cannot be turned into a client id."""


class DeviceNotFound(OTAError):
    """Raised when a device id is not in the inventory."""


class BuildError(OTAError):
    """Raised when the firmware build command exits non-zero."""

    def __init__(self, command: str, returncode: int) -> None:
        super().__init__(f"build command {command!r} exited with status {returncode}")
        self.command = command
        self.returncode = returncode
