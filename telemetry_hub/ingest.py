"""Telemetry ingestion from the broker into storage and realtime fan-out."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple

from .models import (
    EVENT_DEVICE_DATA,
    TelemetryParseError,
    TelemetrySample,
    device_id_from_topic,
    parse_telemetry,
    telemetry_subscription,
)
from .storage import PersistenceGateway

LOGGER = logging.getLogger(__name__)


class EventPublisher(Protocol):
    async def publish(self, event_type: str, data: object = None) -> int: ...


@dataclass(slots=True)
class IngestStats:
    received: int = 0
    dropped: int = 0
    processed: int = 0
    persist_failures: int = 0
    broadcast_failures: int = 0


class _DeviceLane:
    """Ordered work queue for a single device."""

    __slots__ = ("device_id", "queue", "task")

    def __init__(self, device_id: str) -> None:
        self.device_id = device_id
        self.queue: asyncio.Queue[TelemetrySample] = asyncio.Queue()
        self.task: Optional[asyncio.Task[None]] = None


class TelemetryIngestor:
    """Consumes broker telemetry and drives persistence and fan-out.

    Messages enter a single channel in broker delivery order. A dispatcher
    parses them and hands each sample to its device's lane; lanes run
    concurrently, but samples of one device are handled strictly one after
    another so subscribers see them in arrival order.
    """

    def __init__(
        self,
        persistence: PersistenceGateway,
        fanout: EventPublisher,
        *,
        namespace: str,
    ) -> None:
        self._persistence = persistence
        self._fanout = fanout
        self._namespace = namespace
        self._inbound: asyncio.Queue[Tuple[str, bytes]] = asyncio.Queue()
        self._lanes: Dict[str, _DeviceLane] = {}
        self._dispatcher: Optional[asyncio.Task[None]] = None
        self.stats = IngestStats()

    @property
    def subscription(self) -> str:
        return telemetry_subscription(self._namespace)

    @property
    def running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    def handle_message(self, topic: str, payload: bytes) -> None:
        """Broker message handler; must be called on the event loop."""
        self.stats.received += 1
        self._inbound.put_nowait((topic, payload))

    async def start(self) -> None:
        if self.running:
            return
        self._dispatcher = asyncio.create_task(self._dispatch_loop())
        LOGGER.info("Telemetry ingestor listening on %s", self.subscription)

    async def stop(self) -> None:
        tasks = []
        if self._dispatcher is not None:
            tasks.append(self._dispatcher)
            self._dispatcher = None
        for lane in self._lanes.values():
            if lane.task is not None:
                tasks.append(lane.task)
                lane.task = None
        self._lanes.clear()

        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def drain(self) -> None:
        """Wait until every message received so far is fully handled."""
        await self._inbound.join()
        for lane in list(self._lanes.values()):
            await lane.queue.join()

    async def _dispatch_loop(self) -> None:
        while True:
            topic, payload = await self._inbound.get()
            try:
                self._route(topic, payload)
            except Exception:
                self.stats.dropped += 1
                LOGGER.exception("Unexpected error routing telemetry on %s", topic)
            finally:
                self._inbound.task_done()

    def _route(self, topic: str, payload: bytes) -> None:
        try:
            sample = parse_telemetry(payload)
        except TelemetryParseError as exc:
            self.stats.dropped += 1
            LOGGER.warning("Dropping malformed telemetry on %s: %s", topic, exc)
            return

        topic_device = device_id_from_topic(topic)
        if topic_device is not None and topic_device != sample.device_id:
            LOGGER.warning(
                "Telemetry on %s carries device_id %s; using payload value",
                topic,
                sample.device_id,
            )

        lane = self._lanes.get(sample.device_id)
        if lane is None:
            lane = _DeviceLane(sample.device_id)
            lane.task = asyncio.create_task(self._lane_loop(lane))
            self._lanes[sample.device_id] = lane
        lane.queue.put_nowait(sample)

    async def _lane_loop(self, lane: _DeviceLane) -> None:
        while True:
            sample = await lane.queue.get()
            try:
                await self.process(sample)
            finally:
                lane.queue.task_done()

    async def process(self, sample: TelemetrySample) -> None:
        """Persist and broadcast ``sample``; neither outcome affects the other."""
        await asyncio.gather(self._persist(sample), self._broadcast(sample))
        self.stats.processed += 1
        LOGGER.debug("Processed telemetry from %s", sample.device_id)

    async def _persist(self, sample: TelemetrySample) -> None:
        try:
            await self._persistence.upsert_device_and_sample(sample)
        except Exception:
            self.stats.persist_failures += 1
            LOGGER.error(
                "Failed to persist telemetry from %s", sample.device_id, exc_info=True
            )

    async def _broadcast(self, sample: TelemetrySample) -> None:
        try:
            await self._fanout.publish(EVENT_DEVICE_DATA, sample.as_dict())
        except Exception:
            self.stats.broadcast_failures += 1
            LOGGER.error(
                "Failed to broadcast telemetry from %s",
                sample.device_id,
                exc_info=True,
            )
