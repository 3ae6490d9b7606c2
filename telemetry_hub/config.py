"""Configuration loader for telemetry-hub."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

from . import constants

DEFAULT_JWT_ALGORITHMS = ["HS256"]


@dataclass(slots=True)
class BrokerConfig:
    host: str = constants.DEFAULT_BROKER_HOST
    port: int = constants.DEFAULT_BROKER_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: str = constants.DEFAULT_CLIENT_ID
    namespace: str = constants.DEFAULT_TOPIC_NAMESPACE
    keepalive: int = 60
    qos: int = 1


@dataclass(slots=True)
class ServerConfig:
    host: str = constants.DEFAULT_SERVER_HOST
    port: int = constants.DEFAULT_SERVER_PORT
    websocket_path: str = constants.DEFAULT_WEBSOCKET_PATH
    heartbeat_seconds: float = 30.0


@dataclass(slots=True)
class AuthConfig:
    jwt_secret: Optional[str] = None
    algorithms: List[str] = field(default_factory=lambda: list(DEFAULT_JWT_ALGORITHMS))
    public_key: Optional[str] = None  # Base64-encoded raw Ed25519 public key for EdDSA tokens
    leeway_seconds: float = 0.0
    require_exp: bool = True


@dataclass(slots=True)
class StorageConfig:
    url: str = constants.DEFAULT_DATABASE_URL
    echo: bool = False


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(slots=True)
class ResilienceConfig:
    reconnect_delay_seconds: float = constants.DEFAULT_RECONNECT_DELAY_SECONDS
    reconnect_max_attempts: int = 0  # 0 keeps retrying until shutdown
    connect_timeout_seconds: float = 30.0


@dataclass(slots=True)
class HubConfig:
    broker: BrokerConfig
    server: ServerConfig
    auth: AuthConfig
    storage: StorageConfig
    logging: LoggingConfig
    resilience: ResilienceConfig
    raw: ConfigParser
    path: Path


def _parse_list(value: str, *, default: Iterable[str]) -> List[str]:
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


def load_config(path: Optional[Path] = None) -> HubConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "broker": {
                "host": constants.DEFAULT_BROKER_HOST,
                "port": str(constants.DEFAULT_BROKER_PORT),
                "client_id": constants.DEFAULT_CLIENT_ID,
                "namespace": constants.DEFAULT_TOPIC_NAMESPACE,
                "keepalive": "60",
                "qos": "1",
            },
            "server": {
                "host": constants.DEFAULT_SERVER_HOST,
                "port": str(constants.DEFAULT_SERVER_PORT),
                "websocket_path": constants.DEFAULT_WEBSOCKET_PATH,
                "heartbeat_seconds": "30",
            },
            "auth": {
                "algorithms": ",".join(DEFAULT_JWT_ALGORITHMS),
                "leeway_seconds": "0",
                "require_exp": "true",
            },
            "storage": {
                "url": constants.DEFAULT_DATABASE_URL,
                "echo": "false",
            },
            "logging": {
                "level": "INFO",
                "log_network": "false",
            },
            "resilience": {
                "reconnect_delay_seconds": str(
                    constants.DEFAULT_RECONNECT_DELAY_SECONDS
                ),
                "reconnect_max_attempts": "0",
                "connect_timeout_seconds": "30.0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    broker_host_value = parser.get("broker", "host")
    broker_port_value = parser.getint(
        "broker", "port", fallback=constants.DEFAULT_BROKER_PORT
    )

    if ":" in broker_host_value:
        host_part, port_part = broker_host_value.rsplit(":", 1)
        try:
            parsed_port = int(port_part)
        except ValueError:
            pass
        else:
            broker_host_value = host_part
            broker_port_value = parsed_port
            parser.set("broker", "host", host_part)
            parser.set("broker", "port", str(parsed_port))

    broker = BrokerConfig(
        host=broker_host_value,
        port=broker_port_value,
        username=parser.get("broker", "username", fallback=None),
        password=parser.get("broker", "password", fallback=None),
        client_id=parser.get("broker", "client_id"),
        namespace=parser.get("broker", "namespace").strip("/")
        or constants.DEFAULT_TOPIC_NAMESPACE,
        keepalive=max(5, parser.getint("broker", "keepalive", fallback=60)),
        qos=max(0, min(2, parser.getint("broker", "qos", fallback=1))),
    )

    websocket_path = parser.get("server", "websocket_path").strip() or "/"
    if not websocket_path.startswith("/"):
        websocket_path = "/" + websocket_path

    server = ServerConfig(
        host=parser.get("server", "host"),
        port=parser.getint("server", "port", fallback=constants.DEFAULT_SERVER_PORT),
        websocket_path=websocket_path,
        heartbeat_seconds=max(
            0.0, parser.getfloat("server", "heartbeat_seconds", fallback=30.0)
        ),
    )

    auth = AuthConfig(
        jwt_secret=parser.get("auth", "jwt_secret", fallback=None) or None,
        algorithms=_parse_list(
            parser.get("auth", "algorithms", fallback=""),
            default=DEFAULT_JWT_ALGORITHMS,
        ),
        public_key=parser.get("auth", "public_key", fallback=None) or None,
        leeway_seconds=max(
            0.0, parser.getfloat("auth", "leeway_seconds", fallback=0.0)
        ),
        require_exp=parser.getboolean("auth", "require_exp", fallback=True),
    )

    storage = StorageConfig(
        url=parser.get("storage", "url"),
        echo=parser.getboolean("storage", "echo", fallback=False),
    )

    log_path_value = parser.get("logging", "path", fallback="")
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    resilience = ResilienceConfig(
        reconnect_delay_seconds=max(
            constants.MIN_RECONNECT_DELAY_SECONDS,
            parser.getfloat(
                "resilience",
                "reconnect_delay_seconds",
                fallback=constants.DEFAULT_RECONNECT_DELAY_SECONDS,
            ),
        ),
        reconnect_max_attempts=max(
            0, parser.getint("resilience", "reconnect_max_attempts", fallback=0)
        ),
        connect_timeout_seconds=max(
            1.0,
            parser.getfloat("resilience", "connect_timeout_seconds", fallback=30.0),
        ),
    )

    return HubConfig(
        broker=broker,
        server=server,
        auth=auth,
        storage=storage,
        logging=logging_config,
        resilience=resilience,
        raw=parser,
        path=config_path,
    )


def save_config(config: HubConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
