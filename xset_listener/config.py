"""Configuration loader for xset-listener."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

from . import constants


@dataclass(slots=True)
class BrokerConfig:
    host: str = constants.DEFAULT_BROKER_HOST
    port: int = constants.DEFAULT_BROKER_PORT
    keepalive_seconds: int = constants.DEFAULT_KEEPALIVE_SECONDS
    connect_timeout_seconds: float = 30.0
    username: Optional[str] = None
    password: Optional[str] = None


@dataclass(slots=True)
class SubscriptionConfig:
    topics: List[str] = field(default_factory=lambda: list(constants.DEFAULT_TOPICS))
    qos: int = constants.DEFAULT_QOS
    queue_size: int = constants.DEFAULT_QUEUE_SIZE


@dataclass(slots=True)
class BridgeSettings:
    platform: Optional[str] = None  # Empty means detect from sys.platform
    client_id_prefix: str = constants.DEFAULT_CLIENT_ID_PREFIX


@dataclass(slots=True)
class CommandConfig:
    timeout_seconds: float = 10.0
    exit_on_failure: bool = False
    shutdown_grace_seconds: float = 10.0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(slots=True)
class ResilienceConfig:
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0
    reconnect_jitter_ratio: float = 0.5
    reconnect_max_attempts: int = 10


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(slots=True)
class BridgeConfig:
    broker: BrokerConfig
    subscriptions: SubscriptionConfig
    bridge: BridgeSettings
    commands: CommandConfig
    logging: LoggingConfig
    resilience: ResilienceConfig
    health: HealthConfig
    raw: ConfigParser
    path: Path

    def topics_for(self, hostname: str) -> List[str]:
        """Expand the ``{hostname}`` placeholder in the configured filters."""

        topics: List[str] = []
        for topic in self.subscriptions.topics:
            expanded = topic.replace("{hostname}", hostname)
            if expanded not in topics:
                topics.append(expanded)
        return topics


def _parse_list(value: str, *, default: Iterable[str]) -> List[str]:
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


def load_config(path: Optional[Path] = None) -> BridgeConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser(interpolation=None)
    parser.read_dict(
        {
            "broker": {
                "host": constants.DEFAULT_BROKER_HOST,
                "port": str(constants.DEFAULT_BROKER_PORT),
                "keepalive_seconds": str(constants.DEFAULT_KEEPALIVE_SECONDS),
                "connect_timeout_seconds": "30.0",
            },
            "subscriptions": {
                "topics": ",".join(constants.DEFAULT_TOPICS),
                "qos": str(constants.DEFAULT_QOS),
                "queue_size": str(constants.DEFAULT_QUEUE_SIZE),
            },
            "bridge": {
                "platform": "",
                "client_id_prefix": constants.DEFAULT_CLIENT_ID_PREFIX,
            },
            "commands": {
                "timeout_seconds": "10.0",
                "exit_on_failure": "false",
                "shutdown_grace_seconds": "10.0",
            },
            "logging": {
                "level": "INFO",
                "path": "",
                "log_network": "false",
            },
            "resilience": {
                "reconnect_initial_seconds": "1.0",
                "reconnect_max_seconds": "30.0",
                "reconnect_jitter_ratio": "0.5",
                "reconnect_max_attempts": "10",
            },
            "health": {
                "enabled": "false",
                "host": "127.0.0.1",
                "port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    host_value = parser.get("broker", "host")
    port_value = parser.getint(
        "broker", "port", fallback=constants.DEFAULT_BROKER_PORT
    )

    if ":" in host_value:
        host_part, port_part = host_value.rsplit(":", 1)
        try:
            parsed_port = int(port_part)
        except ValueError:
            pass
        else:
            host_value = host_part
            port_value = parsed_port
            parser.set("broker", "host", host_part)
            parser.set("broker", "port", str(parsed_port))

    broker = BrokerConfig(
        host=host_value,
        port=port_value,
        keepalive_seconds=max(
            1,
            parser.getint(
                "broker",
                "keepalive_seconds",
                fallback=constants.DEFAULT_KEEPALIVE_SECONDS,
            ),
        ),
        connect_timeout_seconds=max(
            0.1,
            parser.getfloat("broker", "connect_timeout_seconds", fallback=30.0),
        ),
        username=parser.get("broker", "username", fallback=None) or None,
        password=parser.get("broker", "password", fallback=None) or None,
    )

    subscriptions = SubscriptionConfig(
        topics=_parse_list(
            parser.get("subscriptions", "topics", fallback=""),
            default=constants.DEFAULT_TOPICS,
        ),
        qos=max(
            0,
            min(
                2,
                parser.getint(
                    "subscriptions", "qos", fallback=constants.DEFAULT_QOS
                ),
            ),
        ),
        queue_size=max(
            1,
            parser.getint(
                "subscriptions",
                "queue_size",
                fallback=constants.DEFAULT_QUEUE_SIZE,
            ),
        ),
    )

    bridge = BridgeSettings(
        platform=parser.get("bridge", "platform", fallback="").strip() or None,
        client_id_prefix=parser.get(
            "bridge",
            "client_id_prefix",
            fallback=constants.DEFAULT_CLIENT_ID_PREFIX,
        ).strip()
        or constants.DEFAULT_CLIENT_ID_PREFIX,
    )

    command_defaults = CommandConfig()

    commands = CommandConfig(
        timeout_seconds=max(
            0.1,
            parser.getfloat(
                "commands",
                "timeout_seconds",
                fallback=command_defaults.timeout_seconds,
            ),
        ),
        exit_on_failure=parser.getboolean(
            "commands", "exit_on_failure", fallback=False
        ),
        shutdown_grace_seconds=max(
            0.0,
            parser.getfloat(
                "commands",
                "shutdown_grace_seconds",
                fallback=command_defaults.shutdown_grace_seconds,
            ),
        ),
    )

    log_path_value = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    resilience = ResilienceConfig(
        reconnect_initial_seconds=parser.getfloat(
            "resilience", "reconnect_initial_seconds", fallback=1.0
        ),
        reconnect_max_seconds=parser.getfloat(
            "resilience", "reconnect_max_seconds", fallback=30.0
        ),
        reconnect_jitter_ratio=max(
            0.0,
            min(
                1.0,
                parser.getfloat("resilience", "reconnect_jitter_ratio", fallback=0.5),
            ),
        ),
        reconnect_max_attempts=max(
            1,
            parser.getint("resilience", "reconnect_max_attempts", fallback=10),
        ),
    )

    health = HealthConfig(
        enabled=parser.getboolean("health", "enabled", fallback=False),
        host=parser.get("health", "host", fallback="127.0.0.1"),
        port=parser.getint("health", "port", fallback=0),
    )

    return BridgeConfig(
        broker=broker,
        subscriptions=subscriptions,
        bridge=bridge,
        commands=commands,
        logging=logging_config,
        resilience=resilience,
        health=health,
        raw=parser,
        path=config_path,
    )
