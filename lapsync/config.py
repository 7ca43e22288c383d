"""Configuration loading for lapsync."""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 5000


@dataclass
class LedgerConfig:
    """Configuration for the record ledger and reset retries."""

    db_path: str = "~/.lapsync/ledger.db"
    clear_retry_attempts: int = 3
    clear_retry_backoff_seconds: float = 0.5


@dataclass
class HubConfig:
    max_pending_events: int = 1000  # Backlog before a subscriber is evicted


@dataclass
class ClientConfig:
    """Configuration for the client sync agent and REST client."""

    server_url: str = "http://localhost:5000"
    replay_db_path: str = "~/.lapsync/replay.db"
    reconnect_backoff_seconds: float = 1.0
    reconnect_max_backoff_seconds: float = 30.0
    max_reconnect_attempts: int = 10
    resync_timeout_seconds: float = 10.0
    min_uptime_seconds: float = 5.0
    request_timeout_seconds: float = 10.0
    request_retries: int = 3

    @property
    def websocket_url(self) -> str:
        base = self.server_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/ws"


@dataclass
class MQTTConfig:
    """Configuration for the optional MQTT event mirror."""

    enabled: bool = False
    broker: str = "localhost"
    port: int = 1883
    topic_prefix: str = "lapsync"
    username: str | None = None
    password: str | None = None


@dataclass
class LoggingConfig:
    level: str = "info"
    json: bool = False
    buffer_size: int = 100


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    hub: HubConfig = field(default_factory=HubConfig)
    client: ClientConfig = field(default_factory=ClientConfig)
    mqtt: MQTTConfig = field(default_factory=MQTTConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with LAPSYNC_ prefix."""
    return os.environ.get(f"LAPSYNC_{key}", default)


def _as_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Server overrides
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)

    # Ledger overrides
    if db_path := _get_env("LEDGER_DB_PATH"):
        config.ledger.db_path = db_path
    if attempts := _get_env("LEDGER_CLEAR_RETRY_ATTEMPTS"):
        config.ledger.clear_retry_attempts = int(attempts)

    # Hub overrides
    if max_pending := _get_env("HUB_MAX_PENDING_EVENTS"):
        config.hub.max_pending_events = int(max_pending)

    # Client overrides
    if server_url := _get_env("CLIENT_SERVER_URL"):
        config.client.server_url = server_url
    if replay_db_path := _get_env("CLIENT_REPLAY_DB_PATH"):
        config.client.replay_db_path = replay_db_path
    if max_attempts := _get_env("CLIENT_MAX_RECONNECT_ATTEMPTS"):
        config.client.max_reconnect_attempts = int(max_attempts)
    if resync_timeout := _get_env("CLIENT_RESYNC_TIMEOUT"):
        config.client.resync_timeout_seconds = float(resync_timeout)

    # MQTT overrides
    if mqtt_enabled := _get_env("MQTT_ENABLED"):
        config.mqtt.enabled = _as_bool(mqtt_enabled)
    if broker := _get_env("MQTT_BROKER"):
        config.mqtt.broker = broker
    if port := _get_env("MQTT_PORT"):
        config.mqtt.port = int(port)
    if username := _get_env("MQTT_USERNAME"):
        config.mqtt.username = username
    if password := _get_env("MQTT_PASSWORD"):
        config.mqtt.password = password

    # Logging overrides
    if level := _get_env("LOG_LEVEL"):
        config.logging.level = level.lower()
    if json_logs := _get_env("LOG_JSON"):
        config.logging.json = _as_bool(json_logs)

    return config


def _parse_section(cls: type, data: dict[str, Any] | None, current: Any) -> Any:
    """Build a section dataclass from YAML data, keeping defaults for missing keys.

    Unknown keys are ignored.
    """
    if not data:
        return current

    known = {f.name for f in fields(cls)}
    values = {f.name: getattr(current, f.name) for f in fields(cls)}
    values.update({k: v for k, v in data.items() if k in known})
    return cls(**values)


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            config.server = _parse_section(ServerConfig, data.get("server"), config.server)
            config.ledger = _parse_section(LedgerConfig, data.get("ledger"), config.ledger)
            config.hub = _parse_section(HubConfig, data.get("hub"), config.hub)
            config.client = _parse_section(ClientConfig, data.get("client"), config.client)
            config.mqtt = _parse_section(MQTTConfig, data.get("mqtt"), config.mqtt)
            config.logging = _parse_section(LoggingConfig, data.get("logging"), config.logging)

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    return config
