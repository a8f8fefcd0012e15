"""Registry and discovery types for uzi."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

Activity = Literal["attached", "active", "inactive"]
AgentWindowStatus = Literal["attached", "running", "ready", "not_found"]

NO_PORT = 0


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_iso(ts: str) -> datetime | None:
    if not ts:
        return None
    try:
        dt = datetime.fromisoformat(ts)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


# JSON key in state.json -> SessionRecord attribute
_RECORD_KEYS: dict[str, str] = {
    "git_repo": "repository_remote",
    "branch_from": "base_branch",
    "branch_name": "branch_name",
    "worktree_path": "worktree_path",
    "prompt": "prompt",
    "model": "model",
    "port": "port",
    "created_at": "created_at",
    "updated_at": "updated_at",
}

RECORD_FIELDS = frozenset(_RECORD_KEYS.values())


@dataclass(slots=True)
class SessionRecord:
    """One worker as persisted in the registry."""

    session_id: str
    repository_remote: str = ""
    base_branch: str = ""
    branch_name: str = ""
    worktree_path: str = ""
    prompt: str = ""
    model: str = ""
    port: int = NO_PORT
    created_at: str = ""
    updated_at: str = ""

    @property
    def has_dev_server(self) -> bool:
        return self.port != NO_PORT

    def to_dict(self) -> dict[str, Any]:
        return {key: getattr(self, attr) for key, attr in _RECORD_KEYS.items()}

    @classmethod
    def from_dict(cls, session_id: str, raw: dict[str, Any]) -> SessionRecord:
        values: dict[str, Any] = {}
        for key, attr in _RECORD_KEYS.items():
            if key in raw and raw[key] is not None:
                values[attr] = raw[key]
        try:
            values["port"] = int(values.get("port", NO_PORT) or NO_PORT)
        except (TypeError, ValueError):
            values["port"] = NO_PORT
        return cls(session_id=session_id, **values)


@dataclass(slots=True)
class TmuxSessionInfo:
    """Point-in-time view of one tmux session."""

    name: str
    windows: int = 0
    panes: int = 0
    attached: bool = False
    created: datetime | None = None
    last_used: datetime | None = None
    window_names: list[str] = field(default_factory=list)
    activity: Activity = "inactive"


def default_data_layout(data_root: Path) -> dict[str, Path]:
    return {
        "root": data_root,
        "state": data_root / "state.json",
        "lock": data_root / "state.lock",
        "worktrees": data_root / "worktrees",
        "worktree_state": data_root / "worktree",
    }
