"""MQTT transport for the uploader.

paho-mqtt runs its network loop in its own thread.  Everything it receives
is handed to the asyncio loop with ``call_soon_threadsafe`` and queued; a
single pump task dispatches the queue to the registered handlers one
message at a time, so handlers never run concurrently and see messages in
delivery order.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

import paho.mqtt.client as mqtt
from loguru import logger

from otapush.errors import TransportError, TransportPublishError
from otapush.ota.resilience import supervised_task

# Callback types: (topic, payload) for messages, nothing for disconnects.
MessageHandler = Callable[[str, bytes], Awaitable[None]]
DisconnectHandler = Callable[[], Any]


class Transport(ABC):
    """Pub/sub channel the upload session talks through."""

    def __init__(self) -> None:
        self._handlers: list[MessageHandler] = []
        self._disconnect_handlers: list[DisconnectHandler] = []

    # -- handler registration ------------------------------------------------

    def on_message(self, handler: MessageHandler) -> None:
        """Register a callback that is invoked for every received message."""
        self._handlers.append(handler)

    def on_disconnect(self, handler: DisconnectHandler) -> None:
        """Register a callback invoked once the connection is gone."""
        self._disconnect_handlers.append(handler)

    async def deliver(self, topic: str, payload: bytes) -> None:
        """Dispatch one inbound message to every handler, in registration order."""
        for handler in self._handlers:
            try:
                await handler(topic, payload)
            except Exception as exc:
                logger.error("[OTA/Transport] handler error on {}: {}", topic, exc)

    def _notify_disconnect(self) -> None:
        for handler in self._disconnect_handlers:
            try:
                handler()
            except Exception as exc:
                logger.warning("[OTA/Transport] disconnect handler error: {}", exc)

    # -- lifecycle and operations --------------------------------------------

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection.  Raises ``TransportError`` on failure."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the connection."""

    @abstractmethod
    async def publish(self, topic: str, payload: bytes) -> None:
        """Publish *payload*.  Raises ``TransportPublishError`` if refused."""

    @abstractmethod
    async def subscribe(self, topic: str) -> None:
        """Subscribe to *topic*."""


class MqttTransport(Transport):
    """paho-mqtt backed transport.

    Parameters
    ----------
    host, port:
        Broker address.
    client_id:
        MQTT client identifier (resolved from the auth token).
    username, password:
        Broker credentials.  The auth token goes in as the username.
    keepalive:
        MQTT keepalive in seconds.
    qos:
        QoS used for publishes and subscriptions.
    connect_timeout:
        Seconds to wait for the broker's CONNACK.
    client:
        Pre-built paho client, mainly for tests.
    """

    def __init__(
        self,
        host: str,
        port: int = 1883,
        *,
        client_id: str = "",
        username: str | None = None,
        password: str | None = None,
        keepalive: int = 60,
        qos: int = 1,
        connect_timeout: float = 10.0,
        client: Any = None,
    ) -> None:
        super().__init__()
        self.host = host
        self.port = port
        self.client_id = client_id
        self.keepalive = keepalive
        self.qos = qos
        self.connect_timeout = connect_timeout
        self._client = client or mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2, client_id=client_id,
        )
        if username is not None:
            self._client.username_pw_set(username, password)
        self._client.on_connect = self._on_connect
        self._client.on_message = self._on_message
        self._client.on_disconnect = self._on_disconnect

        self._loop: asyncio.AbstractEventLoop | None = None
        self._connected: asyncio.Future | None = None
        self._queue: asyncio.Queue[tuple[str, bytes] | None] = asyncio.Queue()
        self._pump_task: asyncio.Task | None = None
        self.connected = False

    # -- paho callbacks (network thread) -------------------------------------

    def _on_connect(self, client: Any, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._resolve_connect, reason_code)

    def _on_message(self, client: Any, userdata: Any, msg: Any) -> None:
        if self._loop is not None:
            self._loop.call_soon_threadsafe(
                self._queue.put_nowait, (msg.topic, bytes(msg.payload)),
            )

    def _on_disconnect(self, client: Any, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, None)

    # -- loop-side handlers --------------------------------------------------

    def _resolve_connect(self, reason_code: Any) -> None:
        if self._connected is None or self._connected.done():
            return
        if getattr(reason_code, "is_failure", False):
            self._connected.set_exception(
                TransportError(f"broker refused connection: {reason_code}")
            )
        else:
            self._connected.set_result(None)

    async def _pump(self) -> None:
        while True:
            item = await self._queue.get()
            if item is None:
                if self.connected:
                    self.connected = False
                    logger.warning("[OTA/Transport] disconnected from {}:{}", self.host, self.port)
                    self._notify_disconnect()
                continue
            topic, payload = item
            logger.debug("[OTA/Transport] received {} bytes on {}", len(payload), topic)
            await self.deliver(topic, payload)

    # -- lifecycle -----------------------------------------------------------

    async def connect(self) -> None:
        """Connect to the broker and wait for CONNACK."""
        self._loop = asyncio.get_running_loop()
        self._connected = self._loop.create_future()
        logger.info(
            "[OTA/Transport] connecting to {}:{} as {}", self.host, self.port, self.client_id,
        )
        try:
            await asyncio.to_thread(self._client.connect, self.host, self.port, self.keepalive)
        except OSError as exc:
            raise TransportError(f"cannot reach broker {self.host}:{self.port}: {exc}") from exc
        self._client.loop_start()
        try:
            await asyncio.wait_for(self._connected, timeout=self.connect_timeout)
        except asyncio.TimeoutError as exc:
            self._client.loop_stop()
            raise TransportError(
                f"no CONNACK from {self.host}:{self.port} within {self.connect_timeout:.0f}s"
            ) from exc
        except TransportError:
            self._client.loop_stop()
            raise
        self.connected = True
        self._pump_task = supervised_task(self._pump(), name="mqtt-pump")
        logger.info("[OTA/Transport] connected to {}:{}", self.host, self.port)

    async def disconnect(self) -> None:
        if self.connected:
            self.connected = False
            self._client.disconnect()
        self._client.loop_stop()
        if self._pump_task is not None:
            self._pump_task.cancel()
            self._pump_task = None
        logger.info("[OTA/Transport] stopped")

    # -- operations ----------------------------------------------------------

    async def subscribe(self, topic: str) -> None:
        result, _mid = self._client.subscribe(topic, qos=self.qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(f"subscribe to {topic!r} failed: {mqtt.error_string(result)}")
        logger.debug("[OTA/Transport] subscribed to {}", topic)

    async def publish(self, topic: str, payload: bytes) -> None:
        info = self._client.publish(topic, payload, qos=self.qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportPublishError(topic, mqtt.error_string(info.rc))
