"""Unit tests for ConnectionCoordinator.

Covers the broker state machine, fixed-delay reconnection and the
re-issue of subscriptions after every connect.
"""

import asyncio
import time

import pytest

from telemetry_hub.config import ResilienceConfig
from telemetry_hub.connection import (
    ConnectionCoordinator,
    ConnectionState,
    ReconnectReason,
)


class FakeMQTTClient:
    """Minimal stand-in for MQTTClient used in coordinator tests."""

    def __init__(self, failures: int = 0, connect_delay: float = 0):
        self.failures = failures
        self.connect_delay = connect_delay
        self.connect_times: list[float] = []
        self.disconnect_call_count = 0
        self.subscriptions: list[tuple[str, int]] = []
        self.disconnect_handlers: list = []
        self.states_during_connect: list[ConnectionState] = []
        self.coordinator = None

    async def connect(self, timeout: float = 30.0):
        self.connect_times.append(time.monotonic())
        if self.coordinator is not None:
            self.states_during_connect.append(self.coordinator.state)
        if self.connect_delay > 0:
            await asyncio.sleep(self.connect_delay)
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("Simulated connection failure")

    async def disconnect(self, timeout: float = 5.0):
        self.disconnect_call_count += 1

    def subscribe(self, topic: str, qos: int = 1):
        self.subscriptions.append((topic, qos))

    def register_disconnect_handler(self, handler):
        self.disconnect_handlers.append(handler)

    def drop(self, rc: int = 7):
        for handler in self.disconnect_handlers:
            handler(rc)


@pytest.fixture
def coordinator_setup():
    def _create(failures: int = 0, delay: float = 0.05, max_attempts: int = 0):
        mqtt_client = FakeMQTTClient(failures=failures)
        coordinator = ConnectionCoordinator(
            mqtt_client=mqtt_client,
            resilience_config=ResilienceConfig(
                reconnect_delay_seconds=delay,
                reconnect_max_attempts=max_attempts,
                connect_timeout_seconds=1.0,
            ),
        )
        mqtt_client.coordinator = coordinator
        coordinator.add_subscription("iot/devices/+/telemetry", qos=1)
        return coordinator, mqtt_client

    return _create


async def _wait_for_state(coordinator, state, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while coordinator.state != state:
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"state stuck at {coordinator.state}")
        await asyncio.sleep(0.01)


def test_state_enum_values():
    assert ConnectionState.DISCONNECTED.value == "disconnected"
    assert ConnectionState.CONNECTING.value == "connecting"
    assert ConnectionState.SUBSCRIBED.value == "subscribed"
    assert ReconnectReason.CONNECTION_LOST.value == "connection_lost"


@pytest.mark.asyncio
async def test_initial_state_is_disconnected(coordinator_setup):
    coordinator, _ = coordinator_setup()

    assert coordinator.state == ConnectionState.DISCONNECTED
    assert coordinator.is_subscribed is False


@pytest.mark.asyncio
async def test_connect_subscribes_and_transitions(coordinator_setup):
    coordinator, mqtt_client = coordinator_setup()

    await coordinator.connect()

    assert mqtt_client.states_during_connect == [ConnectionState.CONNECTING]
    assert coordinator.state == ConnectionState.SUBSCRIBED
    assert mqtt_client.subscriptions == [("iot/devices/+/telemetry", 1)]


@pytest.mark.asyncio
async def test_connect_failure_returns_to_disconnected(coordinator_setup):
    coordinator, mqtt_client = coordinator_setup(failures=1)

    with pytest.raises(ConnectionError):
        await coordinator.connect()

    assert coordinator.state == ConnectionState.DISCONNECTED
    assert mqtt_client.subscriptions == []


@pytest.mark.asyncio
async def test_add_subscription_when_subscribed_applies_immediately(coordinator_setup):
    coordinator, mqtt_client = coordinator_setup()
    await coordinator.connect()

    coordinator.add_subscription("iot/devices/+/status", qos=0)

    assert ("iot/devices/+/status", 0) in mqtt_client.subscriptions


@pytest.mark.asyncio
async def test_connection_loss_resubscribes_same_topic(coordinator_setup):
    coordinator, mqtt_client = coordinator_setup()
    await coordinator.connect()
    coordinator.start_supervisor()

    mqtt_client.drop()
    assert coordinator.state == ConnectionState.DISCONNECTED
    await asyncio.sleep(0)
    await _wait_for_state(coordinator, ConnectionState.SUBSCRIBED)

    await coordinator.stop_supervisor()

    assert mqtt_client.subscriptions == [
        ("iot/devices/+/telemetry", 1),
        ("iot/devices/+/telemetry", 1),
    ]
    assert mqtt_client.disconnect_call_count == 1


@pytest.mark.asyncio
async def test_retry_waits_fixed_delay_between_attempts(coordinator_setup):
    coordinator, mqtt_client = coordinator_setup(failures=3, delay=0.1)
    coordinator.start_supervisor()

    coordinator.request_reconnect(ReconnectReason.STARTUP)
    await _wait_for_state(coordinator, ConnectionState.SUBSCRIBED, timeout=3.0)
    await coordinator.stop_supervisor()

    times = mqtt_client.connect_times
    assert len(times) == 4
    gaps = [later - earlier for earlier, later in zip(times, times[1:])]
    assert all(gap >= 0.09 for gap in gaps)


@pytest.mark.asyncio
async def test_bounded_attempts_give_up(coordinator_setup):
    coordinator, mqtt_client = coordinator_setup(failures=10, delay=0.01, max_attempts=3)
    coordinator.start_supervisor()

    coordinator.request_reconnect(ReconnectReason.STARTUP)
    for _ in range(50):
        await asyncio.sleep(0.01)
        if len(mqtt_client.connect_times) >= 3 and coordinator.state == ConnectionState.DISCONNECTED:
            break
    await asyncio.sleep(0.05)
    await coordinator.stop_supervisor()

    assert len(mqtt_client.connect_times) == 3
    assert coordinator.state == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_concurrent_requests_are_coalesced(coordinator_setup):
    coordinator, mqtt_client = coordinator_setup()
    await coordinator.connect()
    coordinator.start_supervisor()

    coordinator.request_reconnect(ReconnectReason.CONNECTION_LOST)
    coordinator.request_reconnect(ReconnectReason.CONNECTION_LOST)
    coordinator.request_reconnect(ReconnectReason.CONNECTION_LOST)
    await asyncio.sleep(0.05)
    await coordinator.stop_supervisor()

    assert len(mqtt_client.connect_times) == 2


@pytest.mark.asyncio
async def test_clean_disconnect_does_not_reconnect(coordinator_setup):
    coordinator, mqtt_client = coordinator_setup()
    await coordinator.connect()
    coordinator.start_supervisor()

    mqtt_client.drop(rc=0)
    await asyncio.sleep(0.05)
    await coordinator.stop_supervisor()

    assert len(mqtt_client.connect_times) == 1
    assert coordinator.state == ConnectionState.SUBSCRIBED


@pytest.mark.asyncio
async def test_stop_interrupts_retry_wait(coordinator_setup):
    coordinator, mqtt_client = coordinator_setup(failures=100, delay=5.0)
    coordinator.start_supervisor()
    coordinator.request_reconnect(ReconnectReason.STARTUP)
    await asyncio.sleep(0.05)

    started = time.monotonic()
    await coordinator.stop_supervisor()

    assert time.monotonic() - started < 1.0
    assert len(mqtt_client.connect_times) == 1


@pytest.mark.asyncio
async def test_callbacks_invoked_around_reconnect(coordinator_setup):
    coordinator, mqtt_client = coordinator_setup()
    events: list[str] = []

    async def on_disconnected(reason: ReconnectReason) -> None:
        events.append(f"down:{reason.value}")

    def on_reconnected() -> None:
        events.append("up")

    coordinator.register_disconnected_callback(on_disconnected)
    coordinator.register_reconnected_callback(on_reconnected)
    await coordinator.connect()
    coordinator.start_supervisor()

    mqtt_client.drop()
    await asyncio.sleep(0)
    await _wait_for_state(coordinator, ConnectionState.SUBSCRIBED)
    await asyncio.sleep(0.01)
    await coordinator.stop_supervisor()

    assert events == ["down:connection_lost", "up"]


@pytest.mark.asyncio
async def test_disconnect_stops_further_requests(coordinator_setup):
    coordinator, mqtt_client = coordinator_setup()
    await coordinator.connect()

    await coordinator.disconnect()
    coordinator.request_reconnect(ReconnectReason.CONNECTION_LOST)

    assert coordinator.state == ConnectionState.DISCONNECTED
    assert mqtt_client.disconnect_call_count == 1
    assert coordinator._pending_reason is None


class SubscribeFailingClient(FakeMQTTClient):
    def subscribe(self, topic: str, qos: int = 1):
        raise RuntimeError("Subscribe failed with rc=4")


@pytest.mark.asyncio
async def test_subscribe_failure_drops_connected_client():
    mqtt_client = SubscribeFailingClient()
    coordinator = ConnectionCoordinator(
        mqtt_client=mqtt_client,
        resilience_config=ResilienceConfig(reconnect_delay_seconds=0.1),
    )
    coordinator.add_subscription("iot/devices/+/telemetry", qos=1)

    with pytest.raises(RuntimeError):
        await coordinator.connect()

    assert coordinator.state == ConnectionState.DISCONNECTED
    assert mqtt_client.disconnect_call_count == 1
