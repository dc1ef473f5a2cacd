"""Firmware image metadata and the sequential chunk reader.

``FirmwareImage`` is loaded once per session: its size and checksum go
into the start announcement.  ``ChunkSource`` keeps a single cursor over
the image and hands out fixed-size chunks in file order.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO

from loguru import logger

from otapush.errors import EndOfData, SourceReadError
from otapush.ota.checksum import checksum

# Bytes per chunk.  Matches the flash sector size on ESP32 targets.
DEFAULT_CHUNK_SIZE = 4096


@dataclass(frozen=True)
class FirmwareImage:
    """Identity of one firmware binary: where it lives, how big it is, its CRC."""

    path: Path
    size: int
    checksum: int

    @classmethod
    def load(cls, path: str | Path) -> FirmwareImage:
        """Read *path* once and compute size and checksum.

        Raises ``SourceReadError`` if the file cannot be read.
        """
        p = Path(path)
        try:
            data = p.read_bytes()
        except OSError as exc:
            raise SourceReadError(f"cannot read firmware image {p}: {exc}") from exc
        image = cls(path=p, size=len(data), checksum=checksum(data))
        logger.info(
            "[OTA/Source] loaded {} ({} bytes, crc=0x{:08x})",
            p, image.size, image.checksum,
        )
        return image

    def to_dict(self) -> dict[str, Any]:
        return {"path": str(self.path), "size": self.size, "checksum": self.checksum}


class ChunkSource:
    """Sequential reader producing chunks of at most *chunk_size* bytes.

    Parameters
    ----------
    stream:
        Binary stream positioned at the start of the image.  Owned by the
        source and closed by :meth:`close`.
    chunk_size:
        Bytes per chunk.  Every chunk but the last is exactly this long.
    """

    def __init__(self, stream: BinaryIO, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self._stream = stream
        self.chunk_size = chunk_size
        self.index = 0          # Chunks handed out so far
        self.offset = 0         # Bytes handed out so far
        self._exhausted = False

    @classmethod
    def open(cls, image: FirmwareImage, chunk_size: int = DEFAULT_CHUNK_SIZE) -> ChunkSource:
        """Open the file behind *image* for chunked reading."""
        try:
            stream = open(image.path, "rb")
        except OSError as exc:
            raise SourceReadError(f"cannot open firmware image {image.path}: {exc}") from exc
        return cls(stream, chunk_size)

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    def next_chunk(self) -> bytes:
        """Return the next chunk in file order.

        Raises ``EndOfData`` once the image has been fully handed out, and
        ``SourceReadError`` if the underlying read fails.
        """
        if self._exhausted:
            raise EndOfData(f"image exhausted after {self.index} chunks")

        buf = bytearray()
        try:
            # Streams other than regular files may return short reads.
            while len(buf) < self.chunk_size:
                part = self._stream.read(self.chunk_size - len(buf))
                if not part:
                    break
                buf.extend(part)
        except OSError as exc:
            raise SourceReadError(
                f"read failed at offset {self.offset} (chunk {self.index}): {exc}"
            ) from exc

        if len(buf) < self.chunk_size:
            self._exhausted = True
        if not buf:
            logger.debug("[OTA/Source] end of image after {} chunks", self.index)
            raise EndOfData(f"image exhausted after {self.index} chunks")

        self.index += 1
        self.offset += len(buf)
        return bytes(buf)

    def close(self) -> None:
        self._stream.close()

    def __enter__(self) -> ChunkSource:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def chunk_lengths(size: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> list[int]:
    """Return the length of every chunk an image of *size* bytes splits into."""
    full, rest = divmod(size, chunk_size)
    return [chunk_size] * full + ([rest] if rest else [])
