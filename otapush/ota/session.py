"""Upload session: start handshake plus credit-driven chunk streaming.

Architecture
------------
- ``SessionState``  - HANDSHAKING → STREAMING → COMPLETE (or FAILED)
- ``ProgressMeter`` - smoothed byte rate and completion percentage
- ``UploadSession`` - owns the counters, the timers and the chunk cursor

Protocol summary
----------------
Uploader publishes the start announcement ``{size, target_crc}`` right
away and every ``handshake_interval`` seconds.  The device answers on the
``ready`` topic once it has begun the update, and again after every chunk
it has written.  Each ready message is one credit; on each credit the
uploader publishes chunks while ``sent_count - ready_count < window``.

With ``window=1`` the first credit releases two chunks, so the device
always has the next chunk queued while it flashes the current one.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from loguru import logger

from otapush.errors import EndOfData, OTAError, SourceReadError, TransportPublishError
from otapush.ota.protocol import DeviceTopics, InboundEvent, InboundKind, StartAnnouncement
from otapush.ota.resilience import PeriodicTask
from otapush.ota.source import ChunkSource, FirmwareImage

HANDSHAKE_INTERVAL = 2.0
PROGRESS_INTERVAL = 1.0
DEFAULT_WINDOW = 1

# Publish callable: (topic, payload) -> None, raises TransportPublishError.
PublishFn = Callable[[str, bytes], Awaitable[None]]


class SessionState(str, Enum):
    """State machine states for an upload session."""

    HANDSHAKING = "handshaking"  # Start announcement repeating
    STREAMING = "streaming"      # Chunks flowing as credit arrives
    COMPLETE = "complete"        # Image exhausted or transport closed
    FAILED = "failed"            # Read or publish error


TERMINAL_STATES = (SessionState.COMPLETE, SessionState.FAILED)


class HandshakeExit(str, Enum):
    """Which inbound traffic ends the start announcement phase."""

    READY = "ready"  # Only a message on the ready topic
    ANY = "any"      # First message on any subscribed topic


@dataclass
class ProgressMeter:
    """Exponentially smoothed throughput over a fixed sampling cadence."""

    total: int
    rate: float = 0.0
    last_bytes: int = 0

    def percent(self, bytes_sent: int) -> float:
        if self.total <= 0:
            return 100.0
        return bytes_sent / self.total * 100

    def sample(self, bytes_sent: int) -> tuple[float, float]:
        """Fold in the byte count seen at this tick.  Returns ``(rate, percent)``."""
        self.rate = (bytes_sent - self.last_bytes + self.rate) / 2
        self.last_bytes = bytes_sent
        return self.rate, self.percent(bytes_sent)


class UploadSession:
    """Streams one firmware image to one device.

    Parameters
    ----------
    device_id:
        Device identifier used to scope the topics.
    image:
        Loaded ``FirmwareImage`` (size and checksum for the handshake).
    source:
        ``ChunkSource`` over the same image.  Owned by the session.
    publish:
        Async ``(topic, payload)`` callable.  Typically
        ``MqttTransport.publish``.
    window:
        Chunks that may be published ahead of the ready signals received.
    handshake_interval:
        Seconds between start announcements.
    progress_interval:
        Seconds between progress reports while streaming.
    handshake_exit:
        ``HandshakeExit.READY`` (default) or ``HandshakeExit.ANY``.
    stall_timeout:
        Fail a streaming session after this many seconds without inbound
        traffic.  ``0`` waits forever.
    """

    def __init__(
        self,
        device_id: str,
        image: FirmwareImage,
        source: ChunkSource,
        publish: PublishFn,
        *,
        window: int = DEFAULT_WINDOW,
        handshake_interval: float = HANDSHAKE_INTERVAL,
        progress_interval: float = PROGRESS_INTERVAL,
        handshake_exit: HandshakeExit | str = HandshakeExit.READY,
        stall_timeout: float = 0.0,
    ) -> None:
        if window < 1:
            raise ValueError(f"window must be at least 1, got {window}")
        self.device_id = device_id
        self.topics = DeviceTopics(device_id)
        self.image = image
        self.source = source
        self._publish = publish
        self.window = window
        self.handshake_exit = HandshakeExit(handshake_exit)
        self.stall_timeout = stall_timeout

        self.state = SessionState.HANDSHAKING
        self.sent_count = 0
        self.ready_count = 0
        self.bytes_sent = 0
        self.handshake_active = True
        self.announcements = 0
        self.error = ""
        self.failure: OTAError | None = None
        self.started_at = 0.0
        self.finished_at = 0.0
        self.last_activity = time.time()

        self.meter = ProgressMeter(total=image.size)
        self._lock = asyncio.Lock()
        self._done = asyncio.Event()
        self._progress_callbacks: list[Callable[[UploadSession], Any]] = []
        self._handshake_timer = PeriodicTask(
            "handshake", self._announce, handshake_interval, immediate=True,
        )
        self._progress_timer = PeriodicTask(
            "progress", self._report_progress, progress_interval,
        )

    # -- derived values ------------------------------------------------------

    @property
    def in_flight(self) -> int:
        """Chunks published beyond the ready signals received."""
        return self.sent_count - self.ready_count

    @property
    def progress(self) -> float:
        """Completion percentage, 0–100."""
        return self.meter.percent(self.bytes_sent)

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_status(self) -> dict[str, Any]:
        """Return a summary dict for external consumers."""
        return {
            "device_id": self.device_id,
            "state": self.state.value,
            "size": self.image.size,
            "target_crc": self.image.checksum,
            "window": self.window,
            "sent_count": self.sent_count,
            "ready_count": self.ready_count,
            "bytes_sent": self.bytes_sent,
            "progress": round(self.progress, 2),
            "rate": round(self.meter.rate, 1),
            "announcements": self.announcements,
            "error": self.error,
        }

    # -- progress callbacks --------------------------------------------------

    def on_progress(self, callback: Callable[[UploadSession], Any]) -> None:
        """Register a callback invoked on every state change and progress tick."""
        self._progress_callbacks.append(callback)

    def _notify_progress(self) -> None:
        for cb in self._progress_callbacks:
            try:
                cb(self)
            except Exception as exc:
                logger.warning("[OTA/Session] progress callback error: {}", exc)

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        """Begin announcing the image to the device."""
        if self.started_at:
            return
        self.started_at = time.time()
        logger.info(
            "[OTA/Session] starting upload to {} ({} bytes, crc=0x{:08x}, window={})",
            self.device_id, self.image.size, self.image.checksum, self.window,
        )
        self._handshake_timer.start()
        self._notify_progress()

    async def wait_closed(self) -> dict[str, Any]:
        """Wait for COMPLETE or FAILED and return the final status."""
        await self._done.wait()
        return self.to_status()

    def close(self, reason: str = "transport closed") -> None:
        """End the session from outside, e.g. when the transport goes away."""
        if self.done:
            return
        if self.bytes_sent < self.image.size:
            self.error = reason  # COMPLETE, but cut short
            logger.warning(
                "[OTA/Session] {} with {}/{} bytes sent to {}",
                reason, self.bytes_sent, self.image.size, self.device_id,
            )
        self._finish(reason)

    # -- inbound events ------------------------------------------------------

    async def handle(self, event: InboundEvent) -> None:
        """Process one inbound event.  Events are applied strictly in call order."""
        async with self._lock:
            self.last_activity = time.time()
            if event.kind is InboundKind.READY:
                self._end_handshake()
                await self._on_ready()
            elif event.kind is InboundKind.DIAGNOSTIC:
                logger.info("[OTA/Device {}] {}", self.device_id, event.text)
                if self.handshake_exit is HandshakeExit.ANY:
                    self._end_handshake()
            else:
                logger.debug(
                    "[OTA/Session] ignoring message on {} ({} bytes)",
                    event.topic, len(event.payload),
                )
                if self.handshake_exit is HandshakeExit.ANY:
                    self._end_handshake()

    def _end_handshake(self) -> None:
        if not self.handshake_active:
            return
        self.handshake_active = False
        self._handshake_timer.stop()
        if self.state is SessionState.HANDSHAKING:
            self.state = SessionState.STREAMING
            self._progress_timer.start()
            logger.info(
                "[OTA/Session] {} answered after {} announcement(s), streaming",
                self.device_id, self.announcements,
            )
            self._notify_progress()

    async def _on_ready(self) -> None:
        if self.done:
            logger.debug("[OTA/Session] ready from {} after {}, ignored", self.device_id, self.state.value)
            return
        self.ready_count += 1
        # close() may land while a publish is awaited
        while not self.done and self.sent_count - self.ready_count < self.window:
            try:
                chunk = self.source.next_chunk()
            except EndOfData:
                self._finish("end of image")
                return
            except SourceReadError as exc:
                self._fail(str(exc), exc)
                raise

            self.sent_count += 1
            self.bytes_sent += len(chunk)
            try:
                await self._publish(self.topics.data, chunk)
            except TransportPublishError as exc:
                self._fail(str(exc), exc)
                raise
            logger.debug(
                "[OTA/Session] sent chunk {} ({} bytes) to {}",
                self.sent_count, len(chunk), self.device_id,
            )

    # -- timers --------------------------------------------------------------

    async def _announce(self) -> None:
        payload = StartAnnouncement(size=self.image.size, target_crc=self.image.checksum)
        self.announcements += 1
        logger.info("[OTA/Session] sending start {}", payload.to_dict())
        await self._publish(self.topics.start, payload.to_bytes())

    def _report_progress(self) -> None:
        rate, percent = self.meter.sample(self.bytes_sent)
        logger.info("[OTA/Session] data rate: {:.0f} bytes/sec, progress: {:.2f}%", rate, percent)
        self._notify_progress()
        if self.stall_timeout and self.state is SessionState.STREAMING:
            idle = time.time() - self.last_activity
            if idle > self.stall_timeout:
                self._fail(f"no traffic from device for {idle:.0f}s")

    # -- terminal transitions ------------------------------------------------

    def _stop_timers(self) -> None:
        self.handshake_active = False
        self._handshake_timer.stop()
        self._progress_timer.stop()

    def _finish(self, reason: str) -> None:
        self.state = SessionState.COMPLETE
        self.finished_at = time.time()
        self._stop_timers()
        self.source.close()
        logger.info(
            "[OTA/Session] upload to {} complete ({}): {} chunks, {} bytes",
            self.device_id, reason, self.sent_count, self.bytes_sent,
        )
        self._notify_progress()
        self._done.set()

    def _fail(self, reason: str, exc: OTAError | None = None) -> None:
        self.state = SessionState.FAILED
        self.error = reason
        self.failure = exc or OTAError(reason)
        self.finished_at = time.time()
        self._stop_timers()
        self.source.close()
        logger.error("[OTA/Session] upload to {} failed: {}", self.device_id, reason)
        self._notify_progress()
        self._done.set()
