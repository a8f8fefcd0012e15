"""Git activity metrics for agent worktrees and stalled-worker detection."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from pathlib import Path

from uzi.errors import SessionNotFoundError
from uzi.protocol.models import utc_now
from uzi.state.store import SessionStore
from uzi.workspace import worktree as git

logger = logging.getLogger(__name__)

WORKING_WINDOW = timedelta(hours=1)
STUCK_AFTER = timedelta(hours=2)
RECENT_WINDOW = timedelta(minutes=5)
COMMIT_LOOKBACK = "24 hours ago"


class WorkStatus(StrEnum):
    WORKING = "working"
    IDLE = "idle"
    STUCK = "stuck"


@dataclass(slots=True)
class ActivityMetrics:
    commits: int = 0  # within COMMIT_LOOKBACK
    insertions: int = 0
    deletions: int = 0
    files_changed: int = 0
    last_commit_at: datetime | None = None
    status: WorkStatus = WorkStatus.IDLE

    @property
    def total_changes(self) -> int:
        return self.insertions + self.deletions

    @property
    def has_uncommitted_changes(self) -> bool:
        return self.insertions > 0 or self.deletions > 0 or self.files_changed > 0

    def is_active(self, now: datetime) -> bool:
        if self.status is WorkStatus.WORKING:
            return True
        return self.last_commit_at is not None and now - self.last_commit_at < RECENT_WINDOW

    def to_dict(self) -> dict[str, object]:
        return {
            "commits": self.commits,
            "insertions": self.insertions,
            "deletions": self.deletions,
            "files_changed": self.files_changed,
            "last_commit_at": self.last_commit_at.isoformat() if self.last_commit_at else None,
            "status": str(self.status),
        }


def classify(metrics: ActivityMetrics, now: datetime) -> WorkStatus:
    """Uncommitted changes or a commit within the hour mean working.

    A last commit two hours old or more means stuck; everything else,
    including a worktree that never committed, is idle.
    """
    if metrics.has_uncommitted_changes:
        return WorkStatus.WORKING
    if metrics.last_commit_at is None:
        return WorkStatus.IDLE
    age = now - metrics.last_commit_at
    if age <= WORKING_WINDOW:
        return WorkStatus.WORKING
    if age >= STUCK_AFTER:
        return WorkStatus.STUCK
    return WorkStatus.IDLE


def collect_metrics(worktree_path: str, now: datetime) -> ActivityMetrics:
    metrics = ActivityMetrics()
    if not worktree_path or not Path(worktree_path).is_dir():
        return metrics
    metrics.commits, metrics.last_commit_at = git.recent_commits(worktree_path, since=COMMIT_LOOKBACK)
    stats = git.diff_stats(worktree_path)
    metrics.insertions = stats.insertions
    metrics.deletions = stats.deletions
    metrics.files_changed = stats.files_changed
    metrics.status = classify(metrics, now)
    return metrics


class ActivityMonitor:
    """Keeps one ``ActivityMetrics`` per active session of the repository.

    ``refresh`` is blocking (it shells out to git); ``run`` calls it from a
    worker thread every *interval* seconds until ``stop()``.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._now = now
        self._lock = threading.Lock()
        self._metrics: dict[str, ActivityMetrics] = {}
        self._stop = asyncio.Event()

    def snapshot(self) -> dict[str, ActivityMetrics]:
        with self._lock:
            return {sid: dataclasses.replace(m) for sid, m in self._metrics.items()}

    def refresh(self) -> dict[str, ActivityMetrics]:
        """Recompute metrics for every active session and drop departed ones."""
        now = self._now()
        fresh: dict[str, ActivityMetrics] = {}
        for session_id in self._store.list_active_for_repository():
            try:
                record = self._store.get_record(session_id)
            except SessionNotFoundError:
                continue
            fresh[session_id] = collect_metrics(record.worktree_path, now)

        with self._lock:
            previous, self._metrics = self._metrics, fresh
        for session_id, metrics in fresh.items():
            before = previous.get(session_id)
            if metrics.status is WorkStatus.STUCK and (before is None or before.status is not WorkStatus.STUCK):
                logger.warning(
                    "Session %s looks stuck: no commits since %s",
                    session_id,
                    metrics.last_commit_at.isoformat() if metrics.last_commit_at else "never",
                )
        return self.snapshot()

    def stop(self) -> None:
        self._stop.set()

    async def run(self, interval: float) -> None:
        logger.info("Starting activity monitor")
        while not self._stop.is_set():
            try:
                await asyncio.to_thread(self.refresh)
            except Exception:
                logger.exception("Failed to refresh activity metrics")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except TimeoutError:
                continue
        logger.info("Activity monitor stopped")
