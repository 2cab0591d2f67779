"""Configuration management for hubrelay."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml

DEFAULT_PORT = 5258
DEFAULT_RECONNECT_DELAYS = [0.0, 2.0, 10.0, 30.0]


@dataclass
class ServerConfig:
    """Relay server tuning."""

    send_timeout: float = 5.0  # seconds per outbound frame
    heartbeat: float = 30.0  # WebSocket ping interval, seconds
    handler_timeout: float = 10.0  # max time for one hub method


@dataclass
class HistoryConfig:
    """Per-session history settings."""

    max_messages: int = 50  # ring buffer cap
    replay_count: int = 10  # entries resent on registration


@dataclass
class ClientConfig:
    """Client session controller settings."""

    url: str = f"ws://127.0.0.1:{DEFAULT_PORT}/chathub"
    retry_delay: float = 5.0  # fixed delay after a failed initial connect
    reconnect_delays: list[float] = field(
        default_factory=lambda: DEFAULT_RECONNECT_DELAYS.copy()
    )
    invoke_timeout: float = 10.0


@dataclass
class Config:
    """Top-level configuration."""

    port: int = DEFAULT_PORT
    bind_address: str = "127.0.0.1"
    hub_path: str = "/chathub"
    log_level: str = "INFO"
    log_format: str = "text"  # "text" or "json"
    log_file: str | None = None
    server: ServerConfig = field(default_factory=ServerConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    client: ClientConfig = field(default_factory=ClientConfig)


def get_config_path(custom_path: Path | None = None) -> Path:
    """Get the configuration file path.

    Args:
        custom_path: Override path. If None, returns default.

    Returns:
        Path to config file.
    """
    if custom_path is not None:
        return custom_path
    return Path.home() / ".config" / "hubrelay" / "config.yaml"


def _default_file_reader(path: Path) -> dict[str, Any] | None:
    """Default file reader that loads YAML from disk."""
    if not path.exists():
        return None
    try:
        content = path.read_text()
        if not content.strip():
            return None
        return yaml.safe_load(content)
    except yaml.YAMLError:
        return None


def load_config(
    path: Path | None = None,
    file_reader: Callable[[Path], dict[str, Any] | None] | None = None,
) -> Config:
    """Load configuration from file.

    Args:
        path: Path to config file. If None, uses default path.
        file_reader: Injectable file reader for testing.

    Returns:
        Config object with values from file or defaults.
    """
    config_path = get_config_path(path)
    reader = file_reader or _default_file_reader

    data = reader(config_path)

    if not isinstance(data, dict):
        return Config()

    server_data = data.get("server") or {}
    server_config = ServerConfig(
        send_timeout=server_data.get("send_timeout", ServerConfig.send_timeout),
        heartbeat=server_data.get("heartbeat", ServerConfig.heartbeat),
        handler_timeout=server_data.get(
            "handler_timeout", ServerConfig.handler_timeout
        ),
    )

    history_data = data.get("history") or {}
    history_config = HistoryConfig(
        max_messages=history_data.get("max_messages", HistoryConfig.max_messages),
        replay_count=history_data.get("replay_count", HistoryConfig.replay_count),
    )

    client_data = data.get("client") or {}
    client_config = ClientConfig(
        url=client_data.get("url", ClientConfig.url),
        retry_delay=client_data.get("retry_delay", ClientConfig.retry_delay),
        reconnect_delays=client_data.get(
            "reconnect_delays", DEFAULT_RECONNECT_DELAYS.copy()
        ),
        invoke_timeout=client_data.get("invoke_timeout", ClientConfig.invoke_timeout),
    )

    return Config(
        port=data.get("port", Config.port),
        bind_address=data.get("bind_address", Config.bind_address),
        hub_path=data.get("hub_path", Config.hub_path),
        log_level=data.get("log_level", Config.log_level),
        log_format=data.get("log_format", Config.log_format),
        log_file=data.get("log_file", Config.log_file),
        server=server_config,
        history=history_config,
        client=client_config,
    )
