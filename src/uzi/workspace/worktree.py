"""git worktree and branch helpers for agent isolation."""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from uzi.errors import ExternalToolError

log = logging.getLogger(__name__)

_SHORTSTAT_RE = {
    "files_changed": re.compile(r"(\d+) files? changed"),
    "insertions": re.compile(r"(\d+) insertions?\(\+\)"),
    "deletions": re.compile(r"(\d+) deletions?\(-\)"),
}


def _run_git(cwd: Path | str, *args: str) -> str:
    """Run ``git <args>`` in *cwd* and return stdout.

    Failures raise ``ExternalToolError`` with git's own stderr (falling back
    to stdout) so callers can surface it unchanged.
    """
    cmd = ["git", *args]
    try:
        proc = subprocess.run(
            cmd,
            cwd=cwd,
            check=True,
            capture_output=True,
            text=True,
            errors="replace",
        )
    except subprocess.CalledProcessError as exc:
        raise ExternalToolError(cmd, exc.returncode, exc.stderr or exc.stdout or "") from exc
    except OSError as exc:
        raise ExternalToolError(cmd, None, str(exc)) from exc
    return proc.stdout or ""


# ---------------------------------------------------------------------------
# Repository facts
# ---------------------------------------------------------------------------


def repo_remote(cwd: Path | str) -> str:
    """Return ``remote.origin.url`` or ``""`` when there is none."""
    try:
        return _run_git(cwd, "config", "--get", "remote.origin.url").strip()
    except ExternalToolError as exc:
        log.debug("Could not get git remote URL: %s", exc)
        return ""


def project_name(remote_url: str, fallback: Path | str) -> str:
    """Repository name from a https or ssh remote URL."""
    if remote_url:
        tail = remote_url.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
        name = tail.removesuffix(".git")
        if name:
            return name
    return Path(fallback).resolve().name


def default_branch(cwd: Path | str) -> str:
    try:
        ref = _run_git(cwd, "symbolic-ref", "refs/remotes/origin/HEAD").strip()
    except ExternalToolError:
        return "main"
    return ref.rsplit("/", 1)[-1] or "main"


def current_branch(cwd: Path | str) -> str:
    return _run_git(cwd, "branch", "--show-current").strip()


def short_hash(cwd: Path | str) -> str:
    return _run_git(cwd, "rev-parse", "--short", "HEAD").strip()


def branch_exists(cwd: Path | str, branch_name: str) -> bool:
    try:
        _run_git(cwd, "show-ref", "--verify", "--quiet", f"refs/heads/{branch_name}")
    except ExternalToolError:
        return False
    return True


# ---------------------------------------------------------------------------
# Worktree lifecycle
# ---------------------------------------------------------------------------


def prune_worktrees(repo_root: Path) -> None:
    """Run ``git worktree prune`` to clean up stale bookkeeping entries."""
    try:
        _run_git(repo_root, "worktree", "prune")
    except ExternalToolError as exc:
        log.warning("git worktree prune failed: %s", exc.output.strip())


def create_worktree(
    repo_root: Path,
    worktrees_root: Path,
    worktree_name: str,
    branch_name: str,
    start_point: str | None = None,
) -> Path:
    """Create ``worktrees_root/worktree_name`` on a new branch.

    Raises ``ExternalToolError`` if git refuses; nothing is created then.
    """
    path = worktrees_root / worktree_name
    path.parent.mkdir(parents=True, exist_ok=True)

    prune_worktrees(repo_root)

    args = ["worktree", "add", "-b", branch_name, str(path)]
    if start_point:
        args.append(start_point)
    _run_git(repo_root, *args)
    log.debug("Created worktree %s on branch %s", path, branch_name)
    return path


def remove_worktree(repo_root: Path, worktree_path: Path | str) -> None:
    _run_git(repo_root, "worktree", "remove", "--force", str(worktree_path))


def delete_branch(repo_root: Path, branch_name: str) -> None:
    _run_git(repo_root, "branch", "-D", branch_name)


# ---------------------------------------------------------------------------
# Checkpoint support
# ---------------------------------------------------------------------------


def commit_all(worktree_path: Path | str, message: str) -> bool:
    """Stage and commit everything in *worktree_path*.

    Returns False when there was nothing to commit.
    """
    _run_git(worktree_path, "add", ".")
    try:
        _run_git(worktree_path, "commit", "-am", message)
    except ExternalToolError as exc:
        log.info("Nothing committed in %s: %s", worktree_path, exc.output.strip())
        return False
    return True


def merge_base(repo_root: Path, a: str, b: str) -> str:
    return _run_git(repo_root, "merge-base", a, b).strip()


def count_commits(repo_root: Path, base: str, branch_name: str) -> int:
    out = _run_git(repo_root, "rev-list", "--count", f"{base}..{branch_name}").strip()
    try:
        return int(out)
    except ValueError as exc:
        raise ExternalToolError(
            ["git", "rev-list", "--count"], 0, out, message=f"unexpected rev-list output: {out!r}"
        ) from exc


def rebase(repo_root: Path, onto: str) -> str:
    """Rebase the current branch of *repo_root* onto *onto*.

    On failure the error carries git's combined output verbatim.
    """
    cmd = ["git", "rebase", onto]
    proc = subprocess.run(
        cmd,
        cwd=repo_root,
        check=False,
        capture_output=True,
        text=True,
        errors="replace",
    )
    output = (proc.stdout or "") + (proc.stderr or "")
    if proc.returncode != 0:
        raise ExternalToolError(cmd, proc.returncode, output, message=output.strip() or "git rebase failed")
    return output


# ---------------------------------------------------------------------------
# Activity
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class DiffStats:
    insertions: int = 0
    deletions: int = 0
    files_changed: int = 0


def parse_shortstat(output: str) -> DiffStats:
    """Parse `` 3 files changed, 15 insertions(+), 7 deletions(-)``."""
    counts: dict[str, int] = {}
    for key, pattern in _SHORTSTAT_RE.items():
        match = pattern.search(output)
        counts[key] = int(match.group(1)) if match else 0
    return DiffStats(**counts)


def diff_stats(worktree_path: Path | str) -> DiffStats:
    """Uncommitted work in a worktree, untracked files included.

    Tracked changes come from ``git diff --shortstat HEAD``; every untracked,
    non-ignored file counts as one changed file whose lines are insertions.
    The index is never touched.  Any git failure reads as no changes.
    """
    try:
        out = _run_git(worktree_path, "diff", "--shortstat", "HEAD")
        untracked = _run_git(worktree_path, "ls-files", "--others", "--exclude-standard", "-z")
    except ExternalToolError:
        return DiffStats()
    stats = parse_shortstat(out)
    for name in untracked.split("\0"):
        if not name:
            continue
        stats.files_changed += 1
        stats.insertions += _count_lines(Path(worktree_path) / name)
    return stats


def _count_lines(path: Path) -> int:
    try:
        data = path.read_bytes()
    except OSError:
        return 0
    if b"\0" in data:
        return 0  # binary, as git counts it
    return data.count(b"\n") + (1 if data and not data.endswith(b"\n") else 0)


def recent_commits(worktree_path: Path | str, since: str = "24 hours ago") -> tuple[int, datetime | None]:
    """Number of commits since *since* and the time of the newest one."""
    try:
        out = _run_git(worktree_path, "--no-pager", "log", f"--since={since}", "--format=%ct")
    except ExternalToolError:
        return 0, None
    stamps = [int(line) for line in out.split() if line.isdigit()]
    if not stamps:
        return 0, None
    return len(stamps), datetime.fromtimestamp(max(stamps), UTC)
