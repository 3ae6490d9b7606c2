"""Simulated ESP32 devices publishing telemetry for local development."""

from __future__ import annotations

import asyncio
import json
import logging
import random
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .adapters.mqtt import MQTTClient, MQTTConnectionError
from .config import BrokerConfig
from .models import telemetry_topic

LOGGER = logging.getLogger(__name__)


def simulated_device_ids(count: int) -> List[str]:
    return [f"esp32_{index:03d}" for index in range(1, count + 1)]


def generate_sample(
    device_id: str, *, rng: Optional[random.Random] = None
) -> Dict[str, object]:
    rng = rng or random.Random()
    return {
        "device_id": device_id,
        "temperature": round(20 + rng.random() * 15, 1),
        "humidity": round(40 + rng.random() * 40, 1),
        "weight": round(rng.random() * 10, 2),
        "battery": rng.randrange(85, 100),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def run_simulator(
    config: BrokerConfig,
    *,
    devices: int = 3,
    interval: float = 5.0,
    count: Optional[int] = None,
) -> int:
    """Publish one sample per device every ``interval`` seconds.

    Returns the number of samples published. ``count`` limits the number of
    rounds; ``None`` runs until cancelled.
    """

    client = MQTTClient(config, client_id=f"{config.client_id}-simulator")
    await client.connect()

    device_ids = simulated_device_ids(devices)
    LOGGER.info("Starting %d device simulators", len(device_ids))

    published = 0
    rounds = 0
    try:
        while count is None or rounds < count:
            for device_id in device_ids:
                sample = generate_sample(device_id)
                try:
                    client.publish(
                        telemetry_topic(config.namespace, device_id),
                        json.dumps(sample).encode("utf-8"),
                        qos=config.qos,
                    )
                except MQTTConnectionError as exc:
                    LOGGER.error("Failed to publish data for %s: %s", device_id, exc)
                    continue
                published += 1
                LOGGER.debug("Published data for %s: %s", device_id, sample)
            rounds += 1
            if count is None or rounds < count:
                await asyncio.sleep(interval)
    finally:
        await client.disconnect()

    return published
