"""Session bootstrap: build, connect, wire topics, run one upload.

Typical use from the CLI::

    transport = make_transport(config)          # fails fast on a bad token
    run_build(config.build_command)
    image = FirmwareImage.load(config.firmware_path)
    status = asyncio.run(upload_firmware(config, device, image, transport))
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from otapush.config.schema import Config, UploaderConfig
from otapush.errors import BuildError, TransportError
from otapush.ota.devices import DeviceDescriptor
from otapush.ota.identity import resolve_client_id
from otapush.ota.protocol import classify
from otapush.ota.session import PublishFn, UploadSession
from otapush.ota.source import ChunkSource, FirmwareImage
from otapush.ota.transport import MqttTransport, Transport


def run_build(command: str, cwd: str | Path | None = None) -> None:
    """Run the firmware build command.  Raises ``BuildError`` on failure."""
    if not command:
        return
    logger.info("[OTA/Build] running {!r}", command)
    result = subprocess.run(command, shell=True, cwd=cwd)
    if result.returncode != 0:
        raise BuildError(command, result.returncode)
    logger.info("[OTA/Build] done")


def make_transport(config: Config) -> MqttTransport:
    """Build the MQTT transport from config.  Raises ``BadCredential``."""
    token = config.auth_token
    client_id = resolve_client_id(token)
    broker = config.broker
    return MqttTransport(
        broker.host,
        broker.port,
        client_id=client_id,
        username=token,
        password=broker.password,
        keepalive=broker.keepalive,
        qos=broker.qos,
        connect_timeout=broker.connect_timeout,
    )


def create_session(
    settings: UploaderConfig,
    device_id: str,
    image: FirmwareImage,
    publish: PublishFn,
) -> UploadSession:
    """Open a chunk source over *image* and wrap it in a session."""
    source = ChunkSource.open(image, settings.chunk_size)
    return UploadSession(
        device_id,
        image,
        source,
        publish,
        window=settings.window,
        handshake_interval=settings.handshake_interval,
        progress_interval=settings.progress_interval,
        handshake_exit=settings.handshake_exit,
        stall_timeout=settings.stall_timeout,
    )


async def upload_firmware(
    config: Config,
    device: DeviceDescriptor,
    image: FirmwareImage,
    transport: Transport | None = None,
    *,
    on_progress: Callable[[UploadSession], Any] | None = None,
) -> dict[str, Any]:
    """Push *image* to *device* and return the final session status.

    Raises the session's ``OTAError`` if the upload fails, and
    ``TransportError`` if the connection closed before the whole image
    was sent.
    """
    if transport is None:
        transport = make_transport(config)
    session = create_session(config.uploader, device.device_id, image, transport.publish)
    if on_progress is not None:
        session.on_progress(on_progress)

    async def _route(topic: str, payload: bytes) -> None:
        await session.handle(classify(session.topics, topic, payload))

    transport.on_message(_route)
    transport.on_disconnect(session.close)

    try:
        await transport.connect()
        for topic in session.topics.inbound:
            await transport.subscribe(topic)
        session.start()
        status = await session.wait_closed()
    finally:
        session.close("upload interrupted")
        await transport.disconnect()

    if session.failure is not None:
        raise session.failure
    if status["bytes_sent"] < image.size:
        raise TransportError(
            f"{session.error}: sent {status['bytes_sent']} of {image.size} bytes "
            f"to {device.device_id}"
        )
    logger.info(
        "[OTA] {} ({}): {} bytes in {} chunks",
        device.label, device.device_id, status["bytes_sent"], status["sent_count"],
    )
    return status
