"""Operator command dispatch to devices over the broker."""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Optional, Protocol

from .models import Command, command_topic

LOGGER = logging.getLogger(__name__)

_TOPIC_RESERVED = frozenset("/+#")


class CommandDispatchError(RuntimeError):
    """Raised when a command cannot be dispatched to a device."""

    def __init__(self, message: str, *, code: str, device_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code
        self.device_id = device_id


class CommandPublisher(Protocol):
    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None: ...


class CommandDispatcher:
    """Publishes commands on ``<ns>/devices/<id>/commands``.

    Fire-and-forget: no device acknowledgement is awaited and a failed publish
    is reported to the caller without retrying.
    """

    def __init__(
        self, mqtt: CommandPublisher, *, namespace: str, qos: int = 1
    ) -> None:
        self._mqtt = mqtt
        self._namespace = namespace
        self._qos = qos

    def publish_command(self, device_id: str, command: Command) -> Command:
        """Validate and publish ``command`` for ``device_id``.

        Raises:
            CommandDispatchError: The device id or command is invalid, or the
                broker refused the publish.
        """

        if not isinstance(device_id, str) or not device_id.strip():
            raise CommandDispatchError("Device id is required", code="invalid_device")
        if _TOPIC_RESERVED.intersection(device_id):
            raise CommandDispatchError(
                f"Device id {device_id!r} contains reserved topic characters",
                code="invalid_device",
                device_id=device_id,
            )
        if not isinstance(command.name, str) or not command.name.strip():
            raise CommandDispatchError(
                "Command field is required",
                code="invalid_command",
                device_id=device_id,
            )
        if command.parameters is not None and not isinstance(
            command.parameters, Mapping
        ):
            raise CommandDispatchError(
                "Command parameters must be an object",
                code="invalid_command",
                device_id=device_id,
            )

        topic = command_topic(self._namespace, device_id)
        payload = json.dumps(command.to_payload()).encode("utf-8")

        try:
            self._mqtt.publish(topic, payload, qos=self._qos)
        except Exception as exc:
            LOGGER.error("Failed to publish command to %s: %s", device_id, exc)
            raise CommandDispatchError(
                f"Broker publish failed: {exc}",
                code="publish_failed",
                device_id=device_id,
            ) from exc

        LOGGER.info("Command %s sent to %s", command.name, device_id)
        return command


def build_command(device_id: str, body: Any) -> Command:
    """Build a :class:`Command` from a decoded request body."""

    if not isinstance(body, Mapping):
        raise CommandDispatchError(
            "Request body must be a JSON object",
            code="invalid_command",
            device_id=device_id,
        )
    name = body.get("command")
    return Command(
        device_id=device_id,
        name=name if isinstance(name, str) else "",
        parameters=body.get("parameters"),
    )
