"""Constants used across the telemetry-hub package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "telemetry-hub"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME

DEFAULT_BROKER_HOST = "localhost"
DEFAULT_BROKER_PORT = 1883
DEFAULT_CLIENT_ID = APP_NAME
DEFAULT_TOPIC_NAMESPACE = "iot"

DEFAULT_SERVER_HOST = "0.0.0.0"
DEFAULT_SERVER_PORT = 3001
DEFAULT_WEBSOCKET_PATH = "/"

DEFAULT_DATABASE_URL = "sqlite:///iot_dashboard.db"

DEFAULT_RECONNECT_DELAY_SECONDS = 3.0
MIN_RECONNECT_DELAY_SECONDS = 0.1
