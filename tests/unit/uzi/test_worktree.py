"""Tests for uzi.workspace.worktree git helpers."""

from __future__ import annotations

import subprocess
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import MagicMock, call, patch

import pytest

from uzi.errors import ExternalToolError
from uzi.workspace.worktree import (
    branch_exists,
    commit_all,
    count_commits,
    create_worktree,
    default_branch,
    delete_branch,
    diff_stats,
    prune_worktrees,
    project_name,
    rebase,
    recent_commits,
    repo_remote,
)


def _ok(stdout: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess([], 0, stdout=stdout, stderr="")


def _git_call(cwd: Path | str, *args: str):  # noqa: ANN202
    return call(["git", *args], cwd=cwd, check=True, capture_output=True, text=True, errors="replace")


# ---------------------------------------------------------------------------
# Repository facts
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("git@github.com:acme/proj.git", "proj"),
        ("https://github.com/acme/proj.git", "proj"),
        ("https://github.com/acme/proj/", "proj"),
        ("git@host:proj", "proj"),
    ],
)
def test_project_name(url: str, expected: str) -> None:
    assert project_name(url, "/tmp/fallback") == expected


def test_project_name_falls_back_to_directory() -> None:
    assert project_name("", "/tmp/somewhere/myrepo") == "myrepo"


@patch("uzi.workspace.worktree.subprocess.run", side_effect=subprocess.CalledProcessError(1, "git"))
def test_repo_remote_missing(mock_run: MagicMock) -> None:
    assert repo_remote(Path("/repo")) == ""


@patch("uzi.workspace.worktree.subprocess.run")
def test_default_branch(mock_run: MagicMock) -> None:
    mock_run.return_value = _ok("refs/remotes/origin/trunk\n")
    assert default_branch(Path("/repo")) == "trunk"

    mock_run.side_effect = subprocess.CalledProcessError(128, "git")
    assert default_branch(Path("/repo")) == "main"


@patch("uzi.workspace.worktree.subprocess.run")
def test_branch_exists(mock_run: MagicMock) -> None:
    mock_run.return_value = _ok()
    assert branch_exists(Path("/repo"), "feature")
    mock_run.assert_called_once_with(
        ["git", "show-ref", "--verify", "--quiet", "refs/heads/feature"],
        cwd=Path("/repo"),
        check=True,
        capture_output=True,
        text=True,
        errors="replace",
    )

    mock_run.side_effect = subprocess.CalledProcessError(1, "git")
    assert not branch_exists(Path("/repo"), "feature")


# ---------------------------------------------------------------------------
# Worktree lifecycle
# ---------------------------------------------------------------------------


@patch("uzi.workspace.worktree.subprocess.run", side_effect=subprocess.CalledProcessError(1, "git"))
def test_prune_worktrees_swallows_errors(mock_run: MagicMock) -> None:
    prune_worktrees(Path("/repo"))


@patch("uzi.workspace.worktree.subprocess.run")
def test_create_worktree_prunes_then_adds(mock_run: MagicMock, tmp_path: Path) -> None:
    mock_run.return_value = _ok()
    repo = tmp_path / "repo"

    path = create_worktree(repo, tmp_path / "wts", "sam-proj-abc-1", "sam-proj-abc-1", start_point="main")

    assert path == tmp_path / "wts" / "sam-proj-abc-1"
    assert mock_run.call_args_list == [
        _git_call(repo, "worktree", "prune"),
        _git_call(repo, "worktree", "add", "-b", "sam-proj-abc-1", str(path), "main"),
    ]


@patch("uzi.workspace.worktree.subprocess.run")
def test_create_worktree_raises_git_error(mock_run: MagicMock, tmp_path: Path) -> None:
    mock_run.side_effect = [
        _ok(),
        subprocess.CalledProcessError(128, "git", stderr="fatal: a branch named 'x' already exists"),
    ]

    with pytest.raises(ExternalToolError) as excinfo:
        create_worktree(tmp_path, tmp_path / "wts", "x", "x")
    assert "already exists" in excinfo.value.output


@patch("uzi.workspace.worktree.subprocess.run")
def test_delete_branch_calls_git(mock_run: MagicMock) -> None:
    mock_run.return_value = _ok()
    delete_branch(Path("/repo"), "sam-proj-abc-1")
    mock_run.assert_called_once_with(
        ["git", "branch", "-D", "sam-proj-abc-1"],
        cwd=Path("/repo"),
        check=True,
        capture_output=True,
        text=True,
        errors="replace",
    )


# ---------------------------------------------------------------------------
# Checkpoint support
# ---------------------------------------------------------------------------


@patch("uzi.workspace.worktree.subprocess.run")
def test_commit_all_with_nothing_to_commit(mock_run: MagicMock) -> None:
    mock_run.side_effect = [_ok(), subprocess.CalledProcessError(1, "git", output="nothing to commit")]
    assert commit_all("/wt", "msg") is False


@patch("uzi.workspace.worktree.subprocess.run")
def test_count_commits(mock_run: MagicMock) -> None:
    mock_run.return_value = _ok("4\n")
    assert count_commits(Path("/repo"), "base", "sam") == 4
    assert mock_run.call_args.args[0] == ["git", "rev-list", "--count", "base..sam"]


@patch("uzi.workspace.worktree.subprocess.run")
def test_rebase_failure_keeps_output_verbatim(mock_run: MagicMock) -> None:
    mock_run.return_value = subprocess.CompletedProcess(
        [], 1, stdout="Auto-merging app.py\n", stderr="CONFLICT (content): Merge conflict in app.py\n"
    )

    with pytest.raises(ExternalToolError) as excinfo:
        rebase(Path("/repo"), "sam")

    assert excinfo.value.output == "Auto-merging app.py\nCONFLICT (content): Merge conflict in app.py\n"
    assert str(excinfo.value) == "Auto-merging app.py\nCONFLICT (content): Merge conflict in app.py"


# ---------------------------------------------------------------------------
# Activity
# ---------------------------------------------------------------------------


@patch("uzi.workspace.worktree.subprocess.run")
def test_diff_stats_tracked_changes(mock_run: MagicMock, tmp_path: Path) -> None:
    mock_run.side_effect = [_ok(" 3 files changed, 12 insertions(+), 1 deletion(-)\n"), _ok("")]

    stats = diff_stats(tmp_path)

    assert (stats.insertions, stats.deletions, stats.files_changed) == (12, 1, 3)
    assert mock_run.call_args_list == [
        _git_call(tmp_path, "diff", "--shortstat", "HEAD"),
        _git_call(tmp_path, "ls-files", "--others", "--exclude-standard", "-z"),
    ]


@patch("uzi.workspace.worktree.subprocess.run")
def test_diff_stats_counts_untracked_files(mock_run: MagicMock, tmp_path: Path) -> None:
    (tmp_path / "new.py").write_text("a = 1\nb = 2\nprint(a + b)")
    (tmp_path / "logo.png").write_bytes(b"\x89PNG\0\0\n")
    mock_run.side_effect = [_ok(" 1 file changed, 2 insertions(+)\n"), _ok("new.py\0logo.png\0")]

    stats = diff_stats(tmp_path)

    assert (stats.insertions, stats.deletions, stats.files_changed) == (5, 0, 3)


@patch("uzi.workspace.worktree.subprocess.run", side_effect=subprocess.CalledProcessError(128, "git"))
def test_diff_stats_git_failure_is_empty(mock_run: MagicMock) -> None:
    stats = diff_stats("/wt")
    assert (stats.insertions, stats.deletions, stats.files_changed) == (0, 0, 0)


@patch("uzi.workspace.worktree.subprocess.run")
def test_recent_commits(mock_run: MagicMock) -> None:
    mock_run.return_value = _ok("1700003600\n1700000000\n")

    count, last = recent_commits("/wt")

    assert count == 2
    assert last == datetime.fromtimestamp(1700003600, UTC)
    assert mock_run.call_args.args[0] == ["git", "--no-pager", "log", "--since=24 hours ago", "--format=%ct"]

    mock_run.return_value = _ok("")
    assert recent_commits("/wt") == (0, None)

    mock_run.side_effect = subprocess.CalledProcessError(128, "git")
    assert recent_commits("/wt") == (0, None)
