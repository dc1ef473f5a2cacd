"""End-to-end tests for the upload bootstrap.

A ``FakeDevice`` transport plays the device side of the protocol: it
answers the first start announcement with a log line and a ready signal,
stores every data chunk and answers each with another ready signal.
"""

from __future__ import annotations

import asyncio

import jwt
import pytest

from otapush.config.schema import BrokerConfig, Config, UploaderConfig
from otapush.errors import BadCredential, BuildError, TransportError, TransportPublishError
from otapush.ota.bootstrap import create_session, make_transport, run_build, upload_firmware
from otapush.ota.devices import DeviceDescriptor
from otapush.ota.protocol import DeviceTopics, StartAnnouncement
from otapush.ota.source import FirmwareImage
from otapush.ota.transport import MqttTransport, Transport


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_firmware(size: int = 1024) -> bytes:
    return bytes(range(256)) * (size // 256) + bytes(range(size % 256))


class FakeDevice(Transport):
    """In-memory transport that behaves like the device firmware.

    With *drop_after* set, the broker connection is lost once that many
    data chunks have arrived.
    """

    def __init__(
        self,
        device_id: str,
        *,
        responsive: bool = True,
        fail_data: bool = False,
        drop_after: int | None = None,
    ) -> None:
        super().__init__()
        self.topics = DeviceTopics(device_id)
        self.responsive = responsive
        self.fail_data = fail_data
        self.drop_after = drop_after
        self.connected = False
        self.subscriptions: list[str] = []
        self.announcements: list[StartAnnouncement] = []
        self.received = bytearray()
        self.chunks = 0
        self._queue: asyncio.Queue[tuple[str, bytes] | None] = asyncio.Queue()
        self._pump: asyncio.Task | None = None

    async def connect(self) -> None:
        self.connected = True
        self._pump = asyncio.create_task(self._run())

    async def disconnect(self) -> None:
        self.connected = False
        if self._pump is not None:
            self._pump.cancel()

    async def subscribe(self, topic: str) -> None:
        self.subscriptions.append(topic)

    async def publish(self, topic: str, payload: bytes) -> None:
        if topic == self.topics.start:
            self.announcements.append(StartAnnouncement.from_bytes(payload))
            if self.responsive and len(self.announcements) == 1:
                self._queue.put_nowait((self.topics.log, b"ota begin"))
                self._queue.put_nowait((self.topics.ready, b""))
        elif topic == self.topics.data:
            if self.fail_data:
                raise TransportPublishError(topic, "broker went away")
            self.received.extend(payload)
            self.chunks += 1
            if self.chunks == self.drop_after:
                self._queue.put_nowait(None)
            else:
                self._queue.put_nowait((self.topics.ready, b""))

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            if item is None:
                self.connected = False
                self._notify_disconnect()
                continue
            await self.deliver(*item)


@pytest.fixture
def firmware(tmp_path):
    data = _make_firmware(10000)
    path = tmp_path / "firmware.bin"
    path.write_bytes(data)
    return FirmwareImage.load(path), data


@pytest.fixture
def config(tmp_path):
    return Config(
        token="",
        uploader=UploaderConfig(handshake_interval=0.02, progress_interval=0.02),
        devices_dir=str(tmp_path / "devices"),
    )


DEVICE = DeviceDescriptor(device_id="esp32-garage", name="Garage")
SECRET = "test-signing-key-0123456789abcdef"


# ---------------------------------------------------------------------------
# upload_firmware
# ---------------------------------------------------------------------------

class TestUploadFirmware:
    @pytest.mark.asyncio
    async def test_full_upload(self, config, firmware):
        image, data = firmware
        device = FakeDevice(DEVICE.device_id)
        status = await asyncio.wait_for(upload_firmware(config, DEVICE, image, device), 5)

        assert status["state"] == "complete"
        assert status["bytes_sent"] == 10000
        assert status["sent_count"] == 3
        assert bytes(device.received) == data
        assert device.subscriptions == [device.topics.log, device.topics.ready]
        assert device.announcements[0] == StartAnnouncement(size=10000, target_crc=image.checksum)
        assert not device.connected

    @pytest.mark.asyncio
    @pytest.mark.parametrize("window", [1, 2, 5])
    async def test_full_upload_any_window(self, tmp_path, window):
        data = _make_firmware(50000)
        path = tmp_path / "fw.bin"
        path.write_bytes(data)
        config = Config(
            token="",
            uploader=UploaderConfig(window=window, chunk_size=1024, handshake_interval=0.02),
        )
        device = FakeDevice(DEVICE.device_id)
        status = await asyncio.wait_for(
            upload_firmware(config, DEVICE, FirmwareImage.load(path), device), 5,
        )
        assert status["bytes_sent"] == 50000
        assert bytes(device.received) == data

    @pytest.mark.asyncio
    async def test_progress_callback(self, config, firmware):
        image, _ = firmware
        states: list[str] = []
        await asyncio.wait_for(
            upload_firmware(
                config, DEVICE, image, FakeDevice(DEVICE.device_id),
                on_progress=lambda s: states.append(s.state.value),
            ),
            5,
        )
        assert states[0] == "handshaking"
        assert "streaming" in states
        assert states[-1] == "complete"

    @pytest.mark.asyncio
    async def test_publish_failure_raises(self, config, firmware):
        image, _ = firmware
        device = FakeDevice(DEVICE.device_id, fail_data=True)
        with pytest.raises(TransportPublishError):
            await asyncio.wait_for(upload_firmware(config, DEVICE, image, device), 5)
        assert not device.connected

    @pytest.mark.asyncio
    async def test_disconnect_during_handshake_raises(self, config, firmware):
        image, _ = firmware
        device = FakeDevice(DEVICE.device_id, responsive=False)
        task = asyncio.create_task(upload_firmware(config, DEVICE, image, device))
        await asyncio.sleep(0.07)
        assert len(device.announcements) >= 2
        device._notify_disconnect()
        with pytest.raises(TransportError, match="sent 0 of 10000 bytes"):
            await asyncio.wait_for(task, 1)
        assert not device.connected

    @pytest.mark.asyncio
    async def test_disconnect_mid_stream_raises(self, config, firmware):
        image, data = firmware
        device = FakeDevice(DEVICE.device_id, drop_after=1)
        with pytest.raises(TransportError, match="transport closed: sent 8192 of 10000"):
            await asyncio.wait_for(upload_firmware(config, DEVICE, image, device), 5)
        # The first ready sends two chunks; the drop stops the third.
        assert bytes(device.received) == data[:8192]

    @pytest.mark.asyncio
    async def test_cancel_disconnects(self, config, firmware):
        image, _ = firmware
        device = FakeDevice(DEVICE.device_id, responsive=False)
        task = asyncio.create_task(upload_firmware(config, DEVICE, image, device))
        await asyncio.sleep(0.03)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not device.connected


# ---------------------------------------------------------------------------
# create_session / make_transport / run_build
# ---------------------------------------------------------------------------

class TestBootstrapHelpers:
    @pytest.mark.asyncio
    async def test_create_session_uses_settings(self, firmware):
        image, _ = firmware
        settings = UploaderConfig(window=3, chunk_size=512, handshake_exit="any", stall_timeout=9)

        async def publish(topic: str, payload: bytes) -> None:
            pass

        session = create_session(settings, "dev-9", image, publish)
        assert session.window == 3
        assert session.source.chunk_size == 512
        assert session.handshake_exit.value == "any"
        assert session.stall_timeout == 9
        assert session.topics.data == "iot/dev-9/ota/data"
        session.close()

    def test_make_transport_from_token(self):
        token = jwt.encode({"id": "client-7"}, SECRET, algorithm="HS256")
        config = Config(token=token, broker=BrokerConfig(host="mq.local", port=1884))
        transport = make_transport(config)
        assert isinstance(transport, MqttTransport)
        assert transport.client_id == "client-7"
        assert transport.host == "mq.local"
        assert transport.port == 1884

    def test_broker_token_wins(self):
        token = jwt.encode({"id": "from-broker"}, SECRET, algorithm="HS256")
        other = jwt.encode({"id": "from-env"}, SECRET, algorithm="HS256")
        config = Config(token=other, broker=BrokerConfig(token=token))
        assert make_transport(config).client_id == "from-broker"

    def test_make_transport_bad_token(self):
        with pytest.raises(BadCredential):
            make_transport(Config(token="not-a-jwt", broker=BrokerConfig(token="")))

    def test_run_build_success(self, tmp_path):
        run_build("echo built > out.txt", cwd=tmp_path)
        assert (tmp_path / "out.txt").read_text().strip() == "built"

    def test_run_build_failure(self, tmp_path):
        with pytest.raises(BuildError) as excinfo:
            run_build("exit 3", cwd=tmp_path)
        assert excinfo.value.returncode == 3

    def test_run_build_disabled(self):
        run_build("")
