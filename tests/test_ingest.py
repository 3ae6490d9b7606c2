import asyncio
import json

import pytest
import pytest_asyncio

from telemetry_hub.auth import JWTAuthorizationGate
from telemetry_hub.ingest import TelemetryIngestor
from telemetry_hub.models import DeviceStatus, TelemetrySample
from telemetry_hub.registry import BroadcastFanout, ConnectionRegistry
from telemetry_hub.storage import SQLTelemetryStore

from conftest import JWT_SECRET


class RecordingStore:
    def __init__(self, *, fail: bool = False, delays=None) -> None:
        self.samples: list[TelemetrySample] = []
        self.fail = fail
        self.delays = delays or {}
        self.active = 0
        self.max_active = 0

    async def upsert_device_and_sample(self, sample: TelemetrySample) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            delay = self.delays.get((sample.device_id, sample.temperature), 0)
            if delay:
                await asyncio.sleep(delay)
            if self.fail:
                raise RuntimeError("database unavailable")
            self.samples.append(sample)
        finally:
            self.active -= 1


class RecordingFanout:
    def __init__(self, *, fail: bool = False) -> None:
        self.events: list[tuple[str, dict]] = []
        self.fail = fail

    async def publish(self, event_type: str, data=None) -> int:
        if self.fail:
            raise RuntimeError("fan-out exploded")
        self.events.append((event_type, data))
        return 1


def _payload(device_id: str = "esp32_001", **overrides) -> bytes:
    body = {
        "device_id": device_id,
        "temperature": 25.5,
        "humidity": 60.2,
        "weight": 5.25,
        "battery": 95,
    }
    body.update(overrides)
    return json.dumps(body).encode("utf-8")


@pytest_asyncio.fixture
async def pipeline():
    store = RecordingStore()
    fanout = RecordingFanout()
    ingestor = TelemetryIngestor(store, fanout, namespace="iot")
    await ingestor.start()
    yield ingestor, store, fanout
    await ingestor.stop()


def test_subscription_uses_namespace():
    ingestor = TelemetryIngestor(RecordingStore(), RecordingFanout(), namespace="farm")

    assert ingestor.subscription == "farm/devices/+/telemetry"


@pytest.mark.asyncio
async def test_valid_sample_persisted_and_broadcast_once(pipeline):
    ingestor, store, fanout = pipeline

    ingestor.handle_message("iot/devices/esp32_001/telemetry", _payload())
    await ingestor.drain()

    assert len(store.samples) == 1
    assert store.samples[0].device_id == "esp32_001"
    assert fanout.events == [
        (
            "device_data",
            {
                "device_id": "esp32_001",
                "temperature": 25.5,
                "humidity": 60.2,
                "weight": 5.25,
                "battery": 95,
            },
        )
    ]
    assert ingestor.stats.processed == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        b"not json",
        b"[1, 2, 3]",
        json.dumps({"temperature": 20}).encode(),
        _payload(temperature="hot"),
    ],
)
async def test_malformed_payload_dropped(pipeline, payload):
    ingestor, store, fanout = pipeline

    ingestor.handle_message("iot/devices/esp32_001/telemetry", payload)
    await ingestor.drain()

    assert store.samples == []
    assert fanout.events == []
    assert ingestor.stats.dropped == 1


@pytest.mark.asyncio
async def test_malformed_payload_does_not_stop_ingestion(pipeline):
    ingestor, store, fanout = pipeline

    ingestor.handle_message("iot/devices/esp32_001/telemetry", b"{broken")
    ingestor.handle_message("iot/devices/esp32_001/telemetry", _payload())
    await ingestor.drain()

    assert len(store.samples) == 1
    assert len(fanout.events) == 1


@pytest.mark.asyncio
async def test_persistence_failure_still_broadcasts():
    store = RecordingStore(fail=True)
    fanout = RecordingFanout()
    ingestor = TelemetryIngestor(store, fanout, namespace="iot")
    await ingestor.start()
    try:
        ingestor.handle_message("iot/devices/esp32_001/telemetry", _payload())
        ingestor.handle_message("iot/devices/esp32_001/telemetry", _payload())
        await ingestor.drain()
    finally:
        await ingestor.stop()

    assert len(fanout.events) == 2
    assert ingestor.stats.persist_failures == 2
    assert ingestor.running is False


@pytest.mark.asyncio
async def test_broadcast_failure_still_persists():
    store = RecordingStore()
    fanout = RecordingFanout(fail=True)
    ingestor = TelemetryIngestor(store, fanout, namespace="iot")
    await ingestor.start()
    try:
        ingestor.handle_message("iot/devices/esp32_001/telemetry", _payload())
        await ingestor.drain()
    finally:
        await ingestor.stop()

    assert len(store.samples) == 1
    assert ingestor.stats.broadcast_failures == 1


@pytest.mark.asyncio
async def test_same_device_order_preserved_despite_slow_store():
    store = RecordingStore(delays={("esp32_001", 1.0): 0.05})
    fanout = RecordingFanout()
    ingestor = TelemetryIngestor(store, fanout, namespace="iot")
    await ingestor.start()
    try:
        ingestor.handle_message(
            "iot/devices/esp32_001/telemetry", _payload(temperature=1.0)
        )
        ingestor.handle_message(
            "iot/devices/esp32_001/telemetry", _payload(temperature=2.0)
        )
        await ingestor.drain()
    finally:
        await ingestor.stop()

    assert [sample.temperature for sample in store.samples] == [1.0, 2.0]
    assert [data["temperature"] for _, data in fanout.events] == [1.0, 2.0]


@pytest.mark.asyncio
async def test_different_devices_processed_concurrently():
    store = RecordingStore(
        delays={("esp32_001", 25.5): 0.05, ("esp32_002", 25.5): 0.05}
    )
    fanout = RecordingFanout()
    ingestor = TelemetryIngestor(store, fanout, namespace="iot")
    await ingestor.start()
    try:
        ingestor.handle_message("iot/devices/esp32_001/telemetry", _payload("esp32_001"))
        ingestor.handle_message("iot/devices/esp32_002/telemetry", _payload("esp32_002"))
        await ingestor.drain()
    finally:
        await ingestor.stop()

    assert store.max_active == 2
    assert {sample.device_id for sample in store.samples} == {"esp32_001", "esp32_002"}


@pytest.mark.asyncio
async def test_payload_device_id_wins_over_topic(pipeline):
    ingestor, store, fanout = pipeline

    ingestor.handle_message("iot/devices/other/telemetry", _payload("esp32_001"))
    await ingestor.drain()

    assert store.samples[0].device_id == "esp32_001"
    assert fanout.events[0][1]["device_id"] == "esp32_001"


@pytest.mark.asyncio
async def test_timestamp_is_carried_through(pipeline):
    ingestor, store, fanout = pipeline

    ingestor.handle_message(
        "iot/devices/esp32_001/telemetry",
        _payload(timestamp="2024-01-01T10:00:00Z"),
    )
    await ingestor.drain()

    assert store.samples[0].timestamp.isoformat() == "2024-01-01T10:00:00+00:00"
    assert fanout.events[0][1]["timestamp"] == "2024-01-01T10:00:00+00:00"


@pytest.mark.asyncio
async def test_process_directly_counts_sample(pipeline):
    ingestor, store, fanout = pipeline
    sample = TelemetrySample("esp32_003", 21.0, 45.0, 1.5, 90)

    await ingestor.process(sample)

    assert store.samples == [sample]
    assert ingestor.stats.processed == 1


@pytest.mark.asyncio
async def test_esp32_scenario_stores_online_device_and_notifies_subscribers(
    tmp_path, make_token
):
    class Socket:
        closed = False

        def __init__(self):
            self.sent = []

        async def send_str(self, data):
            self.sent.append(json.loads(data))

    store = SQLTelemetryStore(f"sqlite:///{tmp_path / 'scenario.db'}")
    store.initialise()
    registry = ConnectionRegistry(JWTAuthorizationGate(secret=JWT_SECRET))
    sockets = [Socket(), Socket()]
    for socket in sockets:
        await registry.admit(socket, make_token())
    ingestor = TelemetryIngestor(store, BroadcastFanout(registry), namespace="iot")
    await ingestor.start()
    try:
        ingestor.handle_message(
            "iot/devices/esp32_001/telemetry",
            json.dumps(
                {
                    "device_id": "esp32_001",
                    "temperature": 24.5,
                    "humidity": 55.2,
                    "weight": 1.20,
                    "battery": 91,
                }
            ).encode(),
        )
        await ingestor.drain()
        device = await store.get_device("esp32_001")
    finally:
        await ingestor.stop()
        store.close()

    assert device.status == DeviceStatus.ONLINE
    assert device.last_seen is not None
    for socket in sockets:
        assert socket.sent[-1] == {
            "type": "device_data",
            "data": {
                "device_id": "esp32_001",
                "temperature": 24.5,
                "humidity": 55.2,
                "weight": 1.2,
                "battery": 91,
            },
        }


@pytest.mark.asyncio
async def test_oversized_number_dropped_as_malformed(pipeline, caplog):
    ingestor, store, fanout = pipeline

    with caplog.at_level("WARNING", logger="telemetry_hub.ingest"):
        ingestor.handle_message(
            "iot/devices/esp32_001/telemetry",
            _payload().replace(b'"battery": 95', b'"battery": ' + b"9" * 400),
        )
        await ingestor.drain()

    assert store.samples == []
    assert fanout.events == []
    assert ingestor.stats.dropped == 1
    assert "Dropping malformed telemetry" in caplog.text
    assert "Unexpected error" not in caplog.text
