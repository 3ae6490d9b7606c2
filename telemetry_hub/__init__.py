"""Realtime telemetry hub: MQTT ingestion, storage and websocket fan-out."""

__version__ = "0.1.0"
