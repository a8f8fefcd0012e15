"""Thin wrapper over the tmux command line."""

from __future__ import annotations

import logging
import subprocess

from uzi.errors import ExternalToolError

log = logging.getLogger(__name__)

AGENT_WINDOW = "agent"
DEV_WINDOW = "uzi-dev"

_SESSION_FORMAT = (
    "#{session_name}|#{session_windows}|#{?session_attached,1,0}"
    "|#{session_created}|#{session_activity}"
)


class TmuxClient:
    """Runs tmux commands and raises ``ExternalToolError`` on failure.

    Output is returned as text; parsing belongs to ``TmuxDiscovery``.
    """

    def __init__(self, binary: str = "tmux", timeout: float = 10.0) -> None:
        self.binary = binary
        self.timeout = timeout

    def _run(self, *args: str) -> str:
        cmd = [self.binary, *args]
        try:
            proc = subprocess.run(
                cmd,
                check=True,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.timeout,
            )
        except subprocess.CalledProcessError as exc:
            log.debug("tmux %s exited %s: %s", args[0], exc.returncode, (exc.stderr or "").strip())
            raise ExternalToolError(cmd, exc.returncode, exc.stderr or exc.stdout or "") from exc
        except subprocess.TimeoutExpired as exc:
            raise ExternalToolError(cmd, None, f"timed out after {self.timeout}s") from exc
        except FileNotFoundError as exc:
            raise ExternalToolError(cmd, None, f"{self.binary}: command not found") from exc
        except OSError as exc:
            raise ExternalToolError(cmd, None, str(exc)) from exc
        return proc.stdout or ""

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_sessions(self) -> str:
        return self._run("list-sessions", "-F", _SESSION_FORMAT)

    def list_windows(self, session: str) -> str:
        return self._run("list-windows", "-t", session, "-F", "#{window_name}")

    def list_panes(self, session: str) -> str:
        return self._run("list-panes", "-s", "-t", session, "-F", "#{pane_id}")

    def capture_pane(self, session: str, window: str = AGENT_WINDOW) -> str:
        return self._run("capture-pane", "-t", f"{session}:{window}", "-p")

    def has_session(self, session: str) -> bool:
        try:
            self._run("has-session", "-t", session)
        except ExternalToolError:
            return False
        return True

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def new_session(self, session: str, cwd: str) -> None:
        self._run("new-session", "-d", "-s", session, "-c", cwd)

    def rename_window(self, target: str, name: str) -> None:
        self._run("rename-window", "-t", target, name)

    def new_window(self, session: str, name: str, cwd: str) -> None:
        self._run("new-window", "-t", session, "-n", name, "-c", cwd)

    def kill_session(self, session: str) -> None:
        self._run("kill-session", "-t", session)

    def send_keys(self, target: str, *keys: str) -> None:
        self._run("send-keys", "-t", target, *keys)
