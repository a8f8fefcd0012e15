"""Cached, read-only view of live tmux sessions.

Discovery is advisory: when tmux is missing, has no server, or fails, every
query answers as if there were no sessions instead of raising.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from uzi.errors import ExternalToolError
from uzi.protocol.models import Activity, AgentWindowStatus, TmuxSessionInfo, utc_now
from uzi.tmux.client import AGENT_WINDOW, DEV_WINDOW, TmuxClient

log = logging.getLogger(__name__)

RUNNING_MARKERS = ("esc to interrupt", "Thinking", "Working")
UZI_WINDOWS = frozenset({AGENT_WINDOW, DEV_WINDOW})


def is_uzi_session_name(name: str) -> bool:
    """Session ids look like ``agent-<project>-<hash>-<agentName>``."""
    return name.startswith("agent-") and len(name.split("-")) >= 4


def extract_agent_name(session_name: str) -> str:
    """Return the agent-name part of a session id, or the id unchanged."""
    parts = session_name.split("-")
    if len(parts) < 4 or parts[0] != "agent":
        return session_name
    # Project names may contain dashes, so look for the last hash-like part.
    for i in range(len(parts) - 2, 1, -1):
        if _is_hash_like(parts[i]):
            return "-".join(parts[i + 1:])
    return "-".join(parts[3:])


def _is_hash_like(part: str) -> bool:
    if len(part) < 6 or not part.isascii() or not part.isalnum():
        return False
    return any(c.isdigit() for c in part) and any(c.isalpha() for c in part)


class TmuxDiscovery:
    """Parses ``tmux list-sessions`` and friends into ``TmuxSessionInfo``.

    All queries share one snapshot cached for ``cache_ttl`` seconds.  The
    snapshot is rebuilt under a lock, so concurrent callers that miss the
    cache wait for a single fresh query instead of issuing their own.
    """

    def __init__(
        self,
        client: TmuxClient | None = None,
        *,
        cache_ttl: float = 2.0,
        active_window: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.client = client or TmuxClient()
        self.cache_ttl = cache_ttl
        self.active_window = active_window
        self._clock = clock
        self._now = now
        self._lock = threading.Lock()
        self._sessions: dict[str, TmuxSessionInfo] = {}
        self._fetched_at: float | None = None

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def get_all_sessions(self) -> dict[str, TmuxSessionInfo]:
        with self._lock:
            if self._fetched_at is not None and self._clock() - self._fetched_at < self.cache_ttl:
                return dict(self._sessions)
            self._sessions = self._discover()
            self._fetched_at = self._clock()
            return dict(self._sessions)

    def refresh_cache(self) -> None:
        with self._lock:
            self._fetched_at = None

    # ------------------------------------------------------------------
    # Public queries
    # ------------------------------------------------------------------

    def list_all_sessions(self) -> list[TmuxSessionInfo]:
        return sorted(self.get_all_sessions().values(), key=lambda s: s.name)

    def get_uzi_sessions(self) -> dict[str, TmuxSessionInfo]:
        return {
            name: info
            for name, info in self.get_all_sessions().items()
            if self.is_uzi_session(name, info)
        }

    def is_uzi_session(self, name: str, info: TmuxSessionInfo | None = None) -> bool:
        if is_uzi_session_name(name):
            return True
        if info is None:
            info = self.get_all_sessions().get(name)
        if info is None:
            return False
        return any(w in UZI_WINDOWS for w in info.window_names)

    def is_live(self, name: str) -> bool:
        return name in self.get_all_sessions()

    def is_attached(self, name: str) -> bool:
        info = self.get_all_sessions().get(name)
        return bool(info and info.attached)

    def get_activity(self, name: str) -> Activity:
        info = self.get_all_sessions().get(name)
        return info.activity if info else "inactive"

    def get_agent_window_status(self, name: str) -> AgentWindowStatus:
        info = self.get_all_sessions().get(name)
        if info is None:
            return "not_found"
        if info.attached:
            return "attached"
        if AGENT_WINDOW not in info.window_names:
            return "ready"
        try:
            content = self.client.capture_pane(name)
        except ExternalToolError as exc:
            log.debug("capture-pane for %s failed: %s", name, exc)
            return "ready"
        if any(marker in content for marker in RUNNING_MARKERS):
            return "running"
        return "ready"

    def attached_count(self) -> int:
        return sum(1 for info in self.get_all_sessions().values() if info.attached)

    def sessions_by_activity(self) -> dict[str, list[TmuxSessionInfo]]:
        grouped: dict[str, list[TmuxSessionInfo]] = {"attached": [], "active": [], "inactive": []}
        for info in sorted(self.get_uzi_sessions().values(), key=lambda s: s.name):
            grouped[info.activity].append(info)
        return grouped

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def _discover(self) -> dict[str, TmuxSessionInfo]:
        try:
            output = self.client.list_sessions()
        except ExternalToolError as exc:
            log.debug("tmux list-sessions unavailable: %s", exc)
            return {}

        sessions: dict[str, TmuxSessionInfo] = {}
        for line in output.splitlines():
            line = line.strip()
            if not line:
                continue
            info = self.parse_session_line(line)
            if info is None:
                log.debug("Skipping unexpected tmux line: %r", line)
                continue
            info.window_names, info.panes = self._windows_and_panes(info.name)
            sessions[info.name] = info
        return sessions

    def parse_session_line(self, line: str) -> TmuxSessionInfo | None:
        # name|windows|attached|created|activity
        parts = line.split("|")
        if len(parts) != 5:
            return None
        name, windows, attached, created, activity = parts
        created_at = _from_unix(created)
        last_used = _from_unix(activity)
        is_attached = attached == "1"
        return TmuxSessionInfo(
            name=name,
            windows=_to_int(windows),
            attached=is_attached,
            created=created_at,
            last_used=last_used,
            activity=self._classify(is_attached, last_used),
        )

    def _classify(self, attached: bool, last_used: datetime | None) -> Activity:
        if attached:
            return "attached"
        if last_used is not None and (self._now() - last_used).total_seconds() < self.active_window:
            return "active"
        return "inactive"

    def _windows_and_panes(self, name: str) -> tuple[list[str], int]:
        try:
            windows = [w for w in self.client.list_windows(name).splitlines() if w.strip()]
        except ExternalToolError:
            return [], 0
        try:
            panes = [p for p in self.client.list_panes(name).splitlines() if p.strip()]
        except ExternalToolError:
            return windows, 0
        return windows, len(panes)


def _to_int(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        return 0


def _from_unix(value: str) -> datetime | None:
    try:
        return datetime.fromtimestamp(int(value), UTC)
    except (ValueError, OverflowError, OSError):
        return None
