"""Realtime subscriber registry and broadcast fan-out.

Delivery is best-effort: one attempt per subscriber, no queueing and no
replay. A subscriber whose send fails is dropped from the registry; the
remaining subscribers still receive the event.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from .auth import AuthorizationGate
from .models import EVENT_CONNECTED, Envelope

LOGGER = logging.getLogger(__name__)

CONNECTED_MESSAGE = "WebSocket connected"


class SubscriberConnection(Protocol):
    """Transport handle for one realtime subscriber (e.g. an aiohttp websocket)."""

    @property
    def closed(self) -> bool: ...

    async def send_str(self, data: str) -> None: ...


class AdmissionRejected(RuntimeError):
    """Raised when a subscriber presents an invalid or missing credential."""

    def __init__(self, reason: Optional[str]) -> None:
        super().__init__(reason or "unauthorized")
        self.reason = reason


@dataclass(eq=False, slots=True)
class Subscriber:
    connection: SubscriberConnection
    claims: Dict[str, Any]
    alive: bool = True
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def send(self, message: str) -> None:
        # Frames for one connection go out one at a time and in call order.
        async with self.send_lock:
            await self.connection.send_str(message)


class ConnectionRegistry:
    """Tracks admitted realtime subscribers, at most one entry per connection."""

    def __init__(self, gate: AuthorizationGate) -> None:
        self._gate = gate
        self._subscribers: Dict[int, Subscriber] = {}

    def __len__(self) -> int:
        return len(self._subscribers)

    def __contains__(self, connection: object) -> bool:
        return id(connection) in self._subscribers

    def snapshot(self) -> List[Subscriber]:
        return list(self._subscribers.values())

    async def admit(
        self,
        connection: SubscriberConnection,
        token: Optional[str],
        *,
        accept: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> Subscriber:
        """Verify ``token`` and register ``connection`` as a subscriber.

        ``accept`` completes the transport handshake (a websocket upgrade);
        it only runs after verification succeeded, so a rejected caller never
        sees an open connection.

        Raises:
            AdmissionRejected: The credential failed verification. Nothing was
                registered and nothing was sent.
        """

        result = self._gate.verify(token)
        if not result.valid:
            LOGGER.info("Realtime subscriber rejected: %s", result.reason)
            raise AdmissionRejected(result.reason)

        existing = self._subscribers.get(id(connection))
        if existing is not None:
            return existing

        if accept is not None:
            await accept()

        subscriber = Subscriber(connection=connection, claims=dict(result.claims))
        self._subscribers[id(connection)] = subscriber
        LOGGER.info(
            "Realtime subscriber connected (%s, total=%d)",
            result.claims.get("username") or result.claims.get("sub") or "anonymous",
            len(self._subscribers),
        )

        ack = Envelope(type=EVENT_CONNECTED, message=CONNECTED_MESSAGE).to_json()
        try:
            await subscriber.send(ack)
        except Exception:
            LOGGER.warning("Failed to acknowledge realtime subscriber", exc_info=True)
            self.remove(connection)
        return subscriber

    def remove(self, connection: object) -> bool:
        """Drop ``connection`` from the registry; repeated calls are no-ops."""

        subscriber = self._subscribers.pop(id(connection), None)
        if subscriber is None:
            return False
        subscriber.alive = False
        LOGGER.info(
            "Realtime subscriber disconnected (total=%d)", len(self._subscribers)
        )
        return True


class BroadcastFanout:
    """Serializes an event once and delivers it to every registered subscriber."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry

    async def publish(self, event_type: str, data: Any = None) -> int:
        """Deliver ``{type, data}`` to all open subscribers.

        Returns the number of successful deliveries. Never raises for a
        failing subscriber; that subscriber is removed instead.
        """

        message = Envelope(type=event_type, data=data).to_json()
        targets = [
            subscriber
            for subscriber in self._registry.snapshot()
            if subscriber.alive and not subscriber.connection.closed
        ]
        if not targets:
            return 0

        results = await asyncio.gather(
            *(subscriber.send(message) for subscriber in targets),
            return_exceptions=True,
        )

        delivered = 0
        for subscriber, outcome in zip(targets, results):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                LOGGER.warning(
                    "Dropping realtime subscriber after failed send: %s", outcome
                )
                self._registry.remove(subscriber.connection)
                continue
            delivered += 1
        return delivered
