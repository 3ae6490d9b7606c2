"""Main application entry-point for telemetry-hub."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Optional

from .adapters import MQTTClient
from .auth import AuthorizationGate, JWTAuthorizationGate
from .commands import CommandDispatcher
from .config import HubConfig, load_config
from .connection import ConnectionCoordinator, ReconnectReason
from .health import HealthReporter
from .ingest import TelemetryIngestor
from .logging import configure_logging
from .registry import BroadcastFanout, ConnectionRegistry
from .server import RealtimeServer
from .storage import PersistenceGateway, SQLTelemetryStore

LOGGER = logging.getLogger(__name__)

DRAIN_TIMEOUT_SECONDS = 5.0


class TelemetryHubApp:
    """Owns and wires the telemetry pipeline for one process.

    Every shared component (broker connection, subscriber registry, storage)
    is created once here and handed to its collaborators explicitly.
    Collaborators may be injected for testing.
    """

    def __init__(
        self,
        config: Optional[HubConfig] = None,
        *,
        persistence: Optional[PersistenceGateway] = None,
        gate: Optional[AuthorizationGate] = None,
        mqtt_client: Optional[MQTTClient] = None,
    ) -> None:
        self._config = config or load_config()
        self._persistence = persistence
        self._owned_store: Optional[SQLTelemetryStore] = None
        self._gate: AuthorizationGate = gate or JWTAuthorizationGate.from_config(
            self._config.auth
        )
        self._mqtt_client = mqtt_client or MQTTClient(self._config.broker)
        self._health = HealthReporter()

        self._registry: Optional[ConnectionRegistry] = None
        self._fanout: Optional[BroadcastFanout] = None
        self._dispatcher: Optional[CommandDispatcher] = None
        self._ingestor: Optional[TelemetryIngestor] = None
        self._coordinator: Optional[ConnectionCoordinator] = None
        self._server: Optional[RealtimeServer] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._started: Optional[asyncio.Event] = None

    @property
    def registry(self) -> Optional[ConnectionRegistry]:
        return self._registry

    @property
    def ingestor(self) -> Optional[TelemetryIngestor]:
        return self._ingestor

    @property
    def coordinator(self) -> Optional[ConnectionCoordinator]:
        return self._coordinator

    @property
    def dispatcher(self) -> Optional[CommandDispatcher]:
        return self._dispatcher

    @property
    def health(self) -> HealthReporter:
        return self._health

    async def wait_started(self) -> None:
        if self._started is None:
            self._started = asyncio.Event()
        await self._started.wait()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def run(self) -> None:
        """Start every component and block until shutdown is requested."""

        self._shutdown_event = asyncio.Event()
        if self._started is None:
            self._started = asyncio.Event()

        LOGGER.info("telemetry-hub starting with config: %s", self._config.path)
        try:
            await self._start_services()
            self._started.set()
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            LOGGER.info("telemetry-hub received shutdown signal")
            raise
        finally:
            await self._stop_services()

    @classmethod
    def start(cls, config: Optional[HubConfig] = None) -> None:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("telemetry-hub received shutdown signal")

    async def _start_services(self) -> None:
        config = self._config

        if self._persistence is None:
            self._owned_store = SQLTelemetryStore.from_config(config.storage)
            await asyncio.to_thread(self._owned_store.initialise)
            self._persistence = self._owned_store
        await self._health.update("storage", True)
        await self._health.update("mqtt", False, "connecting")

        self._registry = ConnectionRegistry(self._gate)
        self._fanout = BroadcastFanout(self._registry)
        self._dispatcher = CommandDispatcher(
            self._mqtt_client, namespace=config.broker.namespace, qos=config.broker.qos
        )
        self._ingestor = TelemetryIngestor(
            self._persistence, self._fanout, namespace=config.broker.namespace
        )

        self._coordinator = ConnectionCoordinator(
            mqtt_client=self._mqtt_client, resilience_config=config.resilience
        )
        self._coordinator.register_disconnected_callback(self._on_connection_lost)
        self._coordinator.register_reconnected_callback(self._on_connection_restored)
        self._coordinator.add_subscription(
            self._ingestor.subscription, qos=config.broker.qos
        )
        self._mqtt_client.set_message_handler(self._ingestor.handle_message)

        self._server = RealtimeServer(
            registry=self._registry,
            dispatcher=self._dispatcher,
            gate=self._gate,
            health=self._health,
            host=config.server.host,
            port=config.server.port,
            websocket_path=config.server.websocket_path,
            heartbeat_seconds=config.server.heartbeat_seconds,
        )
        await self._server.start()
        await self._ingestor.start()

        self._coordinator.start_supervisor()
        try:
            await self._coordinator.connect()
        except Exception as exc:
            LOGGER.warning("Initial broker connection failed: %s", exc)
            await self._health.update("mqtt", False, str(exc))
            self._coordinator.request_reconnect(ReconnectReason.STARTUP)
        else:
            await self._health.update("mqtt", True)

    async def _stop_services(self) -> None:
        if self._coordinator is not None:
            await self._coordinator.stop_supervisor()
            await self._coordinator.disconnect()

        if self._ingestor is not None:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(
                    self._ingestor.drain(), timeout=DRAIN_TIMEOUT_SECONDS
                )
            await self._ingestor.stop()

        if self._server is not None:
            await self._server.stop()
            self._server = None

        if self._owned_store is not None:
            self._owned_store.close()
            self._owned_store = None
            self._persistence = None

        LOGGER.info("telemetry-hub stopped")

    async def _on_connection_lost(self, reason: ReconnectReason) -> None:
        await self._health.update("mqtt", False, reason.value)

    async def _on_connection_restored(self) -> None:
        await self._health.update("mqtt", True)
