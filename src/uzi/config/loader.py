"""YAML config loader for uzi."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from uzi.config.schema import AgentConfig, DiscoveryConfig, UziYamlConfig, WatchConfig
from uzi.errors import ConfigurationError

# uzi.yaml spelling -> UziYamlConfig attribute
_TOP_LEVEL_KEYS = {
    "dev": "dev_command",
    "portRange": "port_range",
    "start_command": "start_command",
    "data_dir": "data_dir",
}


def load_uzi_yaml(path: str | Path) -> UziYamlConfig:
    p = Path(path)
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) if p.exists() else {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"invalid YAML in {p}: {exc}") from exc
    if not isinstance(raw, dict):
        raw = {}

    values: dict[str, Any] = {}
    for key, attr in _TOP_LEVEL_KEYS.items():
        value = raw.get(key)
        if value is not None:
            values[attr] = str(value)

    watch_raw = raw.get("watch", {}) if isinstance(raw.get("watch"), dict) else {}
    discovery_raw = raw.get("discovery", {}) if isinstance(raw.get("discovery"), dict) else {}

    agents: list[AgentConfig] = []
    raw_agents = raw.get("agents", [])
    if isinstance(raw_agents, list):
        for item in raw_agents:
            if isinstance(item, dict) and item.get("command"):
                agents.append(AgentConfig(**_pick(item, AgentConfig)))

    cfg = UziYamlConfig(
        watch=WatchConfig(**_pick(watch_raw, WatchConfig)),
        discovery=DiscoveryConfig(**_pick(discovery_raw, DiscoveryConfig)),
        **values,
    )
    if agents:
        cfg.agents = agents
    return cfg


def _pick(raw: dict[str, Any], model_type: type[Any]) -> dict[str, Any]:
    allowed = set(model_type.__dataclass_fields__.keys())
    return {k: v for k, v in raw.items() if k in allowed}
