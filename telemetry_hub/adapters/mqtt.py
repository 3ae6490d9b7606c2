"""MQTT adapter encapsulating paho-mqtt client usage."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

import paho.mqtt.client as mqtt

from ..config import BrokerConfig

LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], Awaitable[None] | None]


class MQTTConnectionError(RuntimeError):
    """Raised when the MQTT client fails to connect, publish or subscribe."""


def _reason_value(reason_code: Any) -> int:
    value = getattr(reason_code, "value", reason_code)
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


class MQTTClient:
    """Async-friendly wrapper over the threaded paho-mqtt client.

    paho invokes its callbacks on the network thread; every callback is
    re-scheduled onto the asyncio loop so handlers observe messages in the
    order the broker delivered them.
    """

    def __init__(
        self,
        config: BrokerConfig,
        *,
        client_id: Optional[str] = None,
        keepalive: Optional[int] = None,
    ) -> None:
        self.config = config
        self.client_id = client_id or config.client_id
        self.keepalive = keepalive or config.keepalive

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected_event: Optional[asyncio.Event] = None
        self._disconnect_event: Optional[asyncio.Event] = None
        self._message_handler: Optional[MessageHandler] = None
        self._last_connect_rc: Optional[int] = None
        self._connected: bool = False
        self._disconnect_handlers: List[Callable[[int], None]] = []

    async def connect(self, timeout: float = 30.0) -> None:
        """Connect to the MQTT broker and wait for acknowledgement."""

        if self._client is not None:
            self._release(self._client)

        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._disconnect_event = asyncio.Event()
        self._last_connect_rc = None

        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2, client_id=self.client_id
        )
        client.enable_logger(LOGGER)

        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        self._client = client

        LOGGER.info(
            "Connecting to MQTT broker %s:%s", self.config.host, self.config.port
        )

        client.connect_async(self.config.host, self.config.port, self.keepalive)
        client.loop_start()

        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
            if self._last_connect_rc is None or self._last_connect_rc != 0:
                raise MQTTConnectionError(
                    f"MQTT broker rejected connection (rc={self._last_connect_rc})"
                )
        except asyncio.TimeoutError as exc:
            self._abandon(client)
            raise MQTTConnectionError("Timed out connecting to MQTT broker") from exc
        except MQTTConnectionError:
            self._abandon(client)
            raise

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Gracefully disconnect from the broker."""

        if not self._client:
            return

        assert self._disconnect_event is not None

        client = self._client
        client.disconnect()

        try:
            if self._connected:
                await asyncio.wait_for(self._disconnect_event.wait(), timeout=timeout)
        finally:
            client.loop_stop()
            self._client = None
            self._connected = False

    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None:
        if not self._client:
            raise MQTTConnectionError("MQTT client not connected")

        info = self._client.publish(topic, payload, qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Publish failed with rc={info.rc}")

    def subscribe(self, topic: str, qos: int = 1) -> None:
        if not self._client:
            raise MQTTConnectionError("MQTT client not connected")
        result, _ = self._client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Subscribe failed with rc={result}")

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        self._disconnect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    def _release(self, client: mqtt.Client) -> None:
        LOGGER.debug("Releasing previous MQTT client before reconnecting")
        client.on_connect = None
        client.on_disconnect = None
        client.on_message = None
        client.disconnect()
        self._abandon(client)

    def _abandon(self, client: mqtt.Client) -> None:
        client.loop_stop()
        if self._client is client:
            self._client = None
        self._connected = False

    # ------------------------------------------------------------------
    # Internal callbacks bridging the threaded paho callbacks into asyncio
    # ------------------------------------------------------------------
    def _on_connect(
        self, client: mqtt.Client, userdata, flags, reason_code, properties=None
    ) -> None:
        rc = _reason_value(reason_code)
        self._last_connect_rc = rc
        loop = self._loop
        if loop is None:
            return
        loop.call_soon_threadsafe(self._handle_connect, rc)

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata,
        flags,
        reason_code=0,
        properties=None,
    ) -> None:
        rc = _reason_value(reason_code)
        loop = self._loop
        if loop is None:
            return
        loop.call_soon_threadsafe(self._handle_disconnect, rc)

    def _on_message(
        self, client: mqtt.Client, userdata, message: mqtt.MQTTMessage
    ) -> None:
        loop = self._loop
        if not self._message_handler or not loop:
            return
        loop.call_soon_threadsafe(
            self._dispatch_message, message.topic, bytes(message.payload)
        )

    def _handle_connect(self, rc: int) -> None:
        if rc == 0:
            LOGGER.info("Connected to MQTT broker")
            self._connected = True
        else:
            LOGGER.error("MQTT connection failed with rc=%s", rc)
            self._connected = False
        if self._connected_event:
            self._connected_event.set()

    def _handle_disconnect(self, rc: int) -> None:
        LOGGER.info("Disconnected from MQTT broker (rc=%s)", rc)
        was_connected = self._connected
        self._connected = False
        if self._disconnect_event:
            self._disconnect_event.set()
        if not was_connected:
            return
        for handler in self._disconnect_handlers:
            handler(rc)

    def _dispatch_message(self, topic: str, payload: bytes) -> None:
        handler = self._message_handler
        if handler is None:
            return
        try:
            result = handler(topic, payload)
            if asyncio.iscoroutine(result):
                asyncio.ensure_future(result)
        except Exception:
            LOGGER.exception("MQTT message handler raised an exception")
