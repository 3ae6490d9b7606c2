"""Broker connection lifecycle and reconnection management.

The coordinator owns the single broker connection of the process. It drives
the ``disconnected -> connecting -> subscribed`` state machine, re-issues
every registered subscription after each successful connect and recovers
from transport loss with a fixed-delay retry loop.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, List, Optional, Protocol

from . import constants

if TYPE_CHECKING:
    from .config import ResilienceConfig

LOGGER = logging.getLogger(__name__)

ReconnectedCallback = Callable[[], Awaitable[None] | None]
DisconnectedCallback = Callable[["ReconnectReason"], Awaitable[None] | None]


class BrokerConnection(Protocol):
    async def connect(self, timeout: float = 30.0) -> None: ...

    async def disconnect(self, timeout: float = 5.0) -> None: ...

    def subscribe(self, topic: str, qos: int = 1) -> None: ...

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None: ...


class ReconnectReason(str, Enum):
    """Reason for requesting a reconnection."""

    STARTUP = "startup"
    """Initial connection attempt failed; keep trying in the background."""

    CONNECTION_LOST = "connection_lost"
    """Broker connection dropped unexpectedly."""


class ConnectionState(str, Enum):
    """Current state of the broker connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"


class ConnectionCoordinator:
    """Coordinates broker connection lifecycle and reconnection.

    Key responsibilities:
    - Accept reconnection requests from the adapter and from startup
    - Serialize reconnection attempts (only one at a time)
    - Re-issue the same subscriptions after every connect
    - Wait a fixed delay between failed attempts, never spinning
    """

    def __init__(
        self,
        *,
        mqtt_client: BrokerConnection,
        resilience_config: ResilienceConfig,
    ) -> None:
        self._mqtt_client = mqtt_client
        self._resilience = resilience_config

        self._state = ConnectionState.DISCONNECTED
        self._subscriptions: Dict[str, int] = {}
        self._reconnect_lock = asyncio.Lock()
        self._reconnect_event = asyncio.Event()
        self._pending_reason: Optional[ReconnectReason] = None
        self._stop_event = asyncio.Event()
        self._supervisor_task: Optional[asyncio.Task[None]] = None

        self._on_disconnected_callbacks: List[DisconnectedCallback] = []
        self._on_reconnected_callbacks: List[ReconnectedCallback] = []

        mqtt_client.register_disconnect_handler(self._on_transport_disconnect)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_subscribed(self) -> bool:
        return self._state == ConnectionState.SUBSCRIBED

    @property
    def reconnect_delay(self) -> float:
        return max(
            constants.MIN_RECONNECT_DELAY_SECONDS,
            self._resilience.reconnect_delay_seconds,
        )

    def add_subscription(self, topic: str, qos: int = 1) -> None:
        """Register a topic to (re)subscribe on every successful connect.

        When already subscribed the topic is subscribed immediately; repeating
        a subscription is harmless for the broker.
        """
        self._subscriptions[topic] = qos
        if self._state == ConnectionState.SUBSCRIBED:
            self._mqtt_client.subscribe(topic, qos=qos)

    def request_reconnect(self, reason: ReconnectReason) -> None:
        """Request a reconnection; concurrent requests are coalesced."""
        if self._stop_event.is_set():
            return

        if self._state == ConnectionState.CONNECTING:
            return

        if self._pending_reason is None:
            LOGGER.debug("Reconnect requested: %s", reason.value)
            self._pending_reason = reason

        self._reconnect_event.set()

    async def connect(self) -> None:
        """Perform a single connect-and-subscribe attempt.

        Raises:
            Exception: Whatever the broker adapter raised; state returns to
                ``disconnected``.
        """
        self._state = ConnectionState.CONNECTING
        try:
            await self._mqtt_client.connect(
                timeout=self._resilience.connect_timeout_seconds
            )
            for topic, qos in self._subscriptions.items():
                self._mqtt_client.subscribe(topic, qos=qos)
                LOGGER.info("Subscribed to %s", topic)
        except Exception:
            self._state = ConnectionState.DISCONNECTED
            try:
                await self._mqtt_client.disconnect()
            except Exception:
                LOGGER.debug("Dropping half-open broker client failed", exc_info=True)
            raise
        self._state = ConnectionState.SUBSCRIBED
        LOGGER.info("Broker connection established")

    async def disconnect(self) -> None:
        """Gracefully disconnect from the broker."""
        LOGGER.info("Disconnecting from MQTT broker")
        self._stop_event.set()
        self._state = ConnectionState.DISCONNECTED

        try:
            await self._mqtt_client.disconnect()
        except Exception:
            LOGGER.debug("Broker disconnect raised during shutdown", exc_info=True)

    def start_supervisor(self) -> None:
        """Start the connection supervision task."""
        if self._supervisor_task is not None and not self._supervisor_task.done():
            LOGGER.warning("Supervisor already running")
            return

        self._stop_event.clear()
        self._supervisor_task = asyncio.create_task(self._supervision_loop())

    async def stop_supervisor(self) -> None:
        """Stop the connection supervision task."""
        self._stop_event.set()
        self._reconnect_event.set()

        if self._supervisor_task is not None:
            self._supervisor_task.cancel()
            try:
                await self._supervisor_task
            except asyncio.CancelledError:
                pass
            self._supervisor_task = None

    def register_reconnected_callback(self, callback: ReconnectedCallback) -> None:
        """Register callback to be invoked after a successful reconnection."""
        self._on_reconnected_callbacks.append(callback)

    def register_disconnected_callback(self, callback: DisconnectedCallback) -> None:
        """Register callback to be invoked when a reconnection cycle starts."""
        self._on_disconnected_callbacks.append(callback)

    def _on_transport_disconnect(self, rc: int) -> None:
        if rc == 0 or self._stop_event.is_set():
            return
        LOGGER.warning("Broker connection lost (rc=%s)", rc)
        self._state = ConnectionState.DISCONNECTED
        self.request_reconnect(ReconnectReason.CONNECTION_LOST)

    async def _supervision_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self._reconnect_event.wait()
            except asyncio.CancelledError:
                break

            self._reconnect_event.clear()

            if self._stop_event.is_set():
                break

            async with self._reconnect_lock:
                reason = self._pending_reason
                self._pending_reason = None

                if reason is None:
                    continue

                await self._execute_reconnect(reason)

    async def _execute_reconnect(self, reason: ReconnectReason) -> None:
        LOGGER.info("Executing reconnection (reason=%s)", reason.value)
        self._state = ConnectionState.DISCONNECTED

        for callback in self._on_disconnected_callbacks:
            try:
                result = callback(reason)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                LOGGER.warning("Disconnected callback failed", exc_info=True)

        try:
            await self._mqtt_client.disconnect()
        except Exception:
            LOGGER.debug("Dropping stale broker client failed", exc_info=True)

        if not await self._connect_with_retry():
            self._state = ConnectionState.DISCONNECTED
            LOGGER.error(
                "Giving up after %d reconnect attempts; waiting for next trigger",
                self._resilience.reconnect_max_attempts,
            )
            return

        for callback in self._on_reconnected_callbacks:
            try:
                result = callback()
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                LOGGER.exception("Reconnected callback failed")

    async def _connect_with_retry(self) -> bool:
        """Attempt to connect, sleeping a fixed delay between attempts."""
        delay = self.reconnect_delay
        max_attempts = self._resilience.reconnect_max_attempts
        attempt = 0

        while not self._stop_event.is_set():
            attempt += 1
            try:
                LOGGER.debug("Broker connection attempt %d", attempt)
                await self.connect()
                return True
            except Exception as exc:
                if max_attempts and attempt >= max_attempts:
                    return False
                LOGGER.warning(
                    "Connection attempt %d failed: %s, retrying in %.1fs",
                    attempt,
                    exc,
                    delay,
                )

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                break
            except asyncio.TimeoutError:
                pass

        return False
