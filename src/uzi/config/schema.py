"""Configuration schema for uzi.yaml."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DATA_DIR_ENV = "UZI_DATA_DIR"
DEFAULT_CONFIG_PATH = "uzi.yaml"


@dataclass(slots=True)
class AgentConfig:
    command: str = "claude"
    count: int = 1
    dev_server: bool = True  # False: never start the dev window for this agent


@dataclass(slots=True)
class WatchConfig:
    poll_interval_seconds: float = 0.5
    refresh_interval_seconds: float = 5.0
    error_backoff_seconds: float = 2.0
    activity_interval_seconds: float = 30.0  # git metrics refresh in ``auto``


@dataclass(slots=True)
class DiscoveryConfig:
    cache_ttl_seconds: float = 2.0
    active_window_seconds: float = 300.0  # last use within 5 min counts as active


@dataclass(slots=True)
class UziYamlConfig:
    dev_command: str | None = None  # "$PORT" is replaced with the allocated port
    port_range: str | None = None   # "3000-3010"
    start_command: str | None = None
    agents: list[AgentConfig] = field(default_factory=lambda: [AgentConfig()])
    watch: WatchConfig = field(default_factory=WatchConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    data_dir: str | None = None

    @property
    def wants_dev_server(self) -> bool:
        return bool(self.dev_command) and bool(self.port_range)

    def data_root(self) -> Path:
        override = self.data_dir or os.environ.get(DATA_DIR_ENV)
        if override:
            return Path(override).expanduser()
        return Path.home() / ".local" / "share" / "uzi"
