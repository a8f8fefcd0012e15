"""Agent naming, batch specs and launch commands."""

from __future__ import annotations

import random
import shlex
from dataclasses import dataclass

from uzi.errors import ConfigurationError

AGENT_NAMES = (
    "ada", "alma", "ari", "bea", "cal", "cleo", "dex", "eli", "ezra", "faye",
    "finn", "gus", "hana", "ida", "ike", "ivy", "jade", "jude", "kai", "lena",
    "leo", "lou", "mae", "mia", "milo", "nell", "nico", "noa", "otis", "pia",
    "quin", "remy", "rosa", "rui", "sam", "sky", "tess", "theo", "una", "vera",
    "wes", "wren", "xan", "yara", "yuri", "zara", "zed", "zoe",
)

# agent name -> command launched in the agent window
_KNOWN_COMMANDS = {
    "claude": "claude",
    "cursor": "cursor",
    "codex": "codex",
    "gemini": "gemini",
    "random": "claude",
}

MAX_AGENTS_PER_SPEC = 10


@dataclass(slots=True)
class AgentRequest:
    agent: str
    command: str
    count: int = 1


def parse_agent_spec(spec: str) -> list[AgentRequest]:
    """Parse ``"claude:2,codex:1"`` into ordered agent requests."""
    requests: list[AgentRequest] = []
    seen: set[str] = set()
    for pair in spec.split(","):
        pair = pair.strip()
        if not pair:
            continue
        parts = pair.split(":")
        if len(parts) != 2:
            raise ConfigurationError(f"invalid agent format: {pair} (expected agent:count)")
        agent, count_str = parts[0].strip(), parts[1].strip()
        if not agent:
            raise ConfigurationError(f"invalid agent format: {pair} (empty agent name)")
        try:
            count = int(count_str)
        except ValueError as exc:
            raise ConfigurationError(f"invalid count for agent {agent}: {count_str}") from exc
        if count < 1 or count > MAX_AGENTS_PER_SPEC:
            raise ConfigurationError(
                f"count for agent {agent} must be between 1 and {MAX_AGENTS_PER_SPEC}"
            )
        if agent in seen:
            raise ConfigurationError(f"agent {agent} listed more than once")
        seen.add(agent)
        requests.append(AgentRequest(agent=agent, command=command_for_agent(agent), count=count))
    if not requests:
        raise ConfigurationError("no agents requested")
    return requests


def command_for_agent(agent: str) -> str:
    return _KNOWN_COMMANDS.get(agent, agent)


def choose_agent_name(
    agent: str,
    taken: set[str],
    rng: random.Random | None = None,
) -> str:
    """Pick a worker name not in *taken*.

    ``random`` draws from ``AGENT_NAMES``; any other agent keeps its own
    name, suffixed with a counter when that name is already in use.
    """
    rng = rng or random.Random()
    if agent == "random":
        free = [n for n in AGENT_NAMES if n not in taken]
        if free:
            return rng.choice(free)
        agent = rng.choice(AGENT_NAMES)
    if agent not in taken:
        return agent
    n = 2
    while f"{agent}{n}" in taken:
        n += 1
    return f"{agent}{n}"


def build_agent_command(command: str, prompt: str) -> str:
    """Shell line typed into the agent window."""
    if command == "gemini":
        return f"{command} -p {shlex.quote(prompt)}"
    return f"{command} {shlex.quote(prompt)}"
