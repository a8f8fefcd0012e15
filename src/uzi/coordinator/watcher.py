"""Activity watcher: per-session pane monitors with prompt auto-confirm.

A supervisor owns one asyncio task per active session.  Each task polls
its session's agent pane, hashes the snapshot to detect progress, and taps
Enter whenever a known confirmation prompt is on screen.  A slower
reconciliation loop re-derives the active set from the registry and tmux
and starts or stops monitors to match it.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from uzi.errors import ExternalToolError
from uzi.tmux.client import AGENT_WINDOW, TmuxClient

logger = logging.getLogger(__name__)

CONFIRMATION_PROMPTS = (
    "Do you trust the files in this folder?",
    "Press Enter to continue",
    "Continue? (Y/n)",
    "Do you want to proceed?",
    "Do you want to",
    "Proceed? (y/N)",
)


def detect_prompt(content: str) -> bool:
    """True when *content* shows a prompt that Enter would confirm."""
    if any(p in content for p in CONFIRMATION_PROMPTS):
        return True
    return "Allow command" in content and "Thinking" not in content


def hash_content(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class WatcherEntry:
    """What the watcher last saw for one session."""

    session_id: str
    content_hash: str
    last_updated: float
    update_count: int = 0
    no_update_count: int = 0


@dataclass(slots=True)
class PollResult:
    session_id: str
    updated: bool
    prompt: bool
    confirmed: bool = False


@dataclass(slots=True)
class _Monitor:
    task: asyncio.Task[None]
    stop: asyncio.Event


# ---------------------------------------------------------------------------
# AgentWatcher
# ---------------------------------------------------------------------------


class AgentWatcher:
    """Supervisor of per-session monitors.

    ``active_sessions`` returns the desired set of session ids; it is called
    from a worker thread since it shells out to git and tmux.
    """

    def __init__(
        self,
        tmux: TmuxClient,
        active_sessions: Callable[[], list[str]],
        *,
        poll_interval: float = 0.5,
        refresh_interval: float = 5.0,
        error_backoff: float = 2.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._tmux = tmux
        self._active_sessions = active_sessions
        self.poll_interval = poll_interval
        self.refresh_interval = refresh_interval
        self.error_backoff = error_backoff
        self._clock = clock
        self.entries: dict[str, WatcherEntry] = {}
        self._monitors: dict[str, _Monitor] = {}
        self._retiring: set[asyncio.Task[None]] = set()
        self._stop = asyncio.Event()

    @property
    def watched_sessions(self) -> list[str]:
        return sorted(self._monitors)

    def stop(self) -> None:
        """Ask every loop to exit at its next check point."""
        self._stop.set()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def observe(self, session_id: str, content: str) -> bool:
        """Record a snapshot; returns True when it differs from the baseline.

        The first snapshot of a session only establishes the baseline.
        """
        digest = hash_content(content)
        entry = self.entries.get(session_id)
        if entry is None:
            self.entries[session_id] = WatcherEntry(
                session_id=session_id,
                content_hash=digest,
                last_updated=self._clock(),
            )
            return False
        if digest != entry.content_hash:
            entry.content_hash = digest
            entry.last_updated = self._clock()
            entry.update_count += 1
            entry.no_update_count = 0
            return True
        entry.no_update_count += 1
        return False

    async def poll_once(self, session_id: str) -> PollResult:
        """One capture/compare/confirm cycle for *session_id*."""
        content = await asyncio.to_thread(self._tmux.capture_pane, session_id, AGENT_WINDOW)
        updated = self.observe(session_id, content)
        result = PollResult(session_id=session_id, updated=updated, prompt=detect_prompt(content))
        if updated:
            logger.debug("Session updated: %s", session_id)
        if result.prompt:
            logger.info("Auto-pressing Enter for prompt in %s", session_id)
            try:
                await asyncio.to_thread(
                    self._tmux.send_keys, f"{session_id}:{AGENT_WINDOW}", "Enter"
                )
                result.confirmed = True
            except ExternalToolError as exc:
                logger.error("Failed to send Enter to %s: %s", session_id, exc)
        return result

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _wait(self, stop: asyncio.Event, seconds: float) -> bool:
        """Sleep up to *seconds*; True if *stop* or the global stop fired."""
        if stop.is_set() or self._stop.is_set():
            return True
        waiters = [asyncio.ensure_future(stop.wait()), asyncio.ensure_future(self._stop.wait())]
        try:
            await asyncio.wait(waiters, timeout=seconds, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for w in waiters:
                w.cancel()
        return stop.is_set() or self._stop.is_set()

    async def watch_session(self, session_id: str, stop: asyncio.Event) -> None:
        logger.info("Starting to watch session %s", session_id)
        try:
            while not (stop.is_set() or self._stop.is_set()):
                try:
                    await self.poll_once(session_id)
                except Exception as exc:
                    if isinstance(exc, ExternalToolError):
                        logger.error("Error checking session %s: %s", session_id, exc)
                    else:
                        logger.exception("Unexpected error checking session %s", session_id)
                    if await self._wait(stop, self.error_backoff):
                        break
                    continue
                if await self._wait(stop, self.poll_interval):
                    break
        finally:
            if session_id not in self._monitors:
                self.entries.pop(session_id, None)
            logger.info("Stopped watching session %s", session_id)

    async def reconcile(self) -> None:
        """Diff the desired active set against running monitors."""
        desired = set(await asyncio.to_thread(self._active_sessions))

        for session_id in sorted(set(self._monitors) - desired):
            logger.info("Session %s no longer active, stopping watch", session_id)
            monitor = self._monitors.pop(session_id)
            monitor.stop.set()
            self._retiring.add(monitor.task)
            monitor.task.add_done_callback(self._retiring.discard)
            self.entries.pop(session_id, None)

        for session_id, monitor in sorted(self._monitors.items()):
            if monitor.task.done():
                logger.warning("Monitor for %s exited, restarting it", session_id)
                del self._monitors[session_id]

        for session_id in sorted(desired - set(self._monitors)):
            stop = asyncio.Event()
            task = asyncio.create_task(self.watch_session(session_id, stop), name=f"watch:{session_id}")
            self._monitors[session_id] = _Monitor(task=task, stop=stop)

    async def run(self) -> None:
        """Reconcile every ``refresh_interval`` until ``stop()`` is called."""
        logger.info("Starting agent watcher")
        idle = asyncio.Event()
        try:
            while not self._stop.is_set():
                try:
                    await self.reconcile()
                except Exception as exc:
                    logger.error("Failed to refresh active sessions: %s", exc)
                if await self._wait(idle, self.refresh_interval):
                    break
        finally:
            monitors = list(self._monitors.values())
            self._monitors.clear()
            for monitor in monitors:
                monitor.stop.set()
            tasks = [m.task for m in monitors] + list(self._retiring)
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            self.entries.clear()
            logger.info("Agent watcher stopped")
