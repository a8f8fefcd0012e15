"""Global test fixtures for uzi."""

from __future__ import annotations

import random
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from uzi.config.schema import UziYamlConfig
from uzi.coordinator.lifecycle import LifecycleManager
from uzi.errors import ExternalToolError
from uzi.state.store import SessionStore
from uzi.workspace import worktree

REMOTE = "git@github.com:acme/proj.git"


class FakeTmux:
    """In-memory stand-in for ``TmuxClient``.

    ``fail_on`` maps a method name to the exception that method raises.
    """

    def __init__(self) -> None:
        self.sessions: dict[str, dict[str, Any]] = {}
        self.panes: dict[str, str] = {}
        self.sent: list[tuple[str, tuple[str, ...]]] = []
        self.fail_on: dict[str, Exception] = {}
        self.calls: list[str] = []

    def _call(self, op: str) -> None:
        self.calls.append(op)
        exc = self.fail_on.get(op)
        if exc is not None:
            raise exc

    def has_session(self, session: str) -> bool:
        return session in self.sessions

    def list_sessions(self) -> str:
        self._call("list_sessions")
        return "".join(
            f"{name}|{len(info['windows'])}|0|1700000000|1700000000\n"
            for name, info in self.sessions.items()
        )

    def list_windows(self, session: str) -> str:
        return "\n".join(self.sessions[session]["windows"])

    def list_panes(self, session: str) -> str:
        return "\n".join(f"%{i}" for i, _ in enumerate(self.sessions[session]["windows"]))

    def new_session(self, session: str, cwd: str) -> None:
        self._call("new_session")
        self.sessions[session] = {"cwd": cwd, "windows": ["0"]}

    def rename_window(self, target: str, name: str) -> None:
        self._call("rename_window")
        session, index = target.split(":")
        self.sessions[session]["windows"][int(index)] = name

    def new_window(self, session: str, name: str, cwd: str) -> None:
        self._call("new_window")
        self.sessions[session]["windows"].append(name)

    def kill_session(self, session: str) -> None:
        self._call("kill_session")
        del self.sessions[session]

    def send_keys(self, target: str, *keys: str) -> None:
        self._call("send_keys")
        self.sent.append((target, keys))

    def capture_pane(self, session: str, window: str = "agent") -> str:
        self._call("capture_pane")
        return self.panes.get(session, "")


class FakeGit:
    """Replaces the git helpers in ``uzi.workspace.worktree``."""

    def __init__(self, remote: str = REMOTE) -> None:
        self.remote = remote
        self.hash = "abc"
        self.current = "main"
        self.branches: set[str] = {"main"}
        self.commits_ahead: dict[str, int] = {}
        self.committed: list[tuple[str, str]] = []
        self.rebased: list[str] = []
        self.calls: list[str] = []
        self.rebase_error: ExternalToolError | None = None
        self.create_error: ExternalToolError | None = None
        self.recent: dict[str, tuple[int, datetime | None]] = {}

    def install(self, monkeypatch: pytest.MonkeyPatch) -> FakeGit:
        for name in (
            "repo_remote",
            "short_hash",
            "default_branch",
            "current_branch",
            "branch_exists",
            "create_worktree",
            "remove_worktree",
            "delete_branch",
            "commit_all",
            "merge_base",
            "count_commits",
            "rebase",
            "diff_stats",
            "recent_commits",
        ):
            monkeypatch.setattr(worktree, name, getattr(self, name))
        return self

    def repo_remote(self, cwd: Any) -> str:
        return self.remote

    def short_hash(self, cwd: Any) -> str:
        return self.hash

    def default_branch(self, cwd: Any) -> str:
        return "main"

    def current_branch(self, cwd: Any) -> str:
        return self.current

    def branch_exists(self, cwd: Any, branch_name: str) -> bool:
        return branch_name in self.branches

    def create_worktree(
        self,
        repo_root: Path,
        worktrees_root: Path,
        worktree_name: str,
        branch_name: str,
        start_point: str | None = None,
    ) -> Path:
        self.calls.append("create_worktree")
        if self.create_error is not None:
            raise self.create_error
        path = worktrees_root / worktree_name
        path.mkdir(parents=True)
        self.branches.add(branch_name)
        return path

    def remove_worktree(self, repo_root: Path, worktree_path: Path | str) -> None:
        self.calls.append("remove_worktree")
        shutil.rmtree(worktree_path)

    def delete_branch(self, repo_root: Path, branch_name: str) -> None:
        self.calls.append("delete_branch")
        self.branches.discard(branch_name)

    def commit_all(self, worktree_path: Path | str, message: str) -> bool:
        self.committed.append((str(worktree_path), message))
        return True

    def merge_base(self, repo_root: Path, a: str, b: str) -> str:
        return "base"

    def count_commits(self, repo_root: Path, base: str, branch_name: str) -> int:
        return self.commits_ahead.get(branch_name, 0)

    def rebase(self, repo_root: Path, onto: str) -> str:
        if self.rebase_error is not None:
            raise self.rebase_error
        self.rebased.append(onto)
        return f"Successfully rebased and updated refs/heads/{self.current}.\n"

    def diff_stats(self, worktree_path: Path | str) -> worktree.DiffStats:
        return worktree.DiffStats(insertions=3, deletions=1, files_changed=2)

    def recent_commits(self, worktree_path: Path | str, since: str = "24 hours ago") -> tuple[int, datetime | None]:
        return self.recent.get(str(worktree_path), (0, None))


@pytest.fixture
def tmp_workdir(tmp_path: Path) -> Path:
    """Provide a temporary working directory for file operation tests."""
    return tmp_path


@pytest.fixture
def data_root(tmp_path: Path) -> Path:
    root = tmp_path / "data"
    root.mkdir()
    return root


@pytest.fixture
def fake_tmux() -> FakeTmux:
    return FakeTmux()


@pytest.fixture
def fake_git(monkeypatch: pytest.MonkeyPatch) -> FakeGit:
    return FakeGit().install(monkeypatch)


@pytest.fixture
def store(data_root: Path, fake_tmux: FakeTmux) -> SessionStore:
    return SessionStore(
        data_root / "state.json",
        is_live=fake_tmux.has_session,
        remote_fn=lambda: REMOTE,
    )


@pytest.fixture
def dev_config() -> UziYamlConfig:
    return UziYamlConfig(dev_command="npm run dev -- --port $PORT", port_range="3000-3002")


@pytest.fixture
def manager(
    store: SessionStore,
    fake_tmux: FakeTmux,
    fake_git: FakeGit,
    dev_config: UziYamlConfig,
    tmp_path: Path,
    data_root: Path,
) -> LifecycleManager:
    return LifecycleManager(
        store,
        fake_tmux,  # type: ignore[arg-type]
        dev_config,
        repo_root=tmp_path / "repo",
        data_root=data_root,
        port_probe=lambda _port: True,
        clock=lambda: 1_700_000_000.0,
        rng=random.Random(0),
    )
