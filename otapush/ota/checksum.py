"""CRC-32 used as the whole-image checksum in the start announcement.

Same polynomial (IEEE 802.3) as the device-side bootloader verifies with,
so the value can be compared directly after the last chunk is flashed.
"""

from __future__ import annotations

import zlib

CRC32_MASK = 0xFFFFFFFF


def checksum(data: bytes) -> int:
    """Return the unsigned 32-bit CRC of *data*."""
    return zlib.crc32(data) & CRC32_MASK
