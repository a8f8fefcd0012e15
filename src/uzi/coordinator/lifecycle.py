"""Lifecycle manager: spawn, kill and checkpoint agent sessions.

Each operation touches three systems with no shared transaction: git
(worktree and branch), tmux (session and windows) and the registry.  The
ordering rules are:

* spawn writes the registry record last, only once the worktree and the
  tmux session both exist; a failure after the worktree was created kills
  any half-started tmux session, leaves the worktree in place and raises
  ``SpawnError`` naming it;
* kill removes the registry record last, so an interrupted teardown still
  leaves evidence of the worker behind; every step runs even when an
  earlier one failed;
* checkpoint delegates conflicts to git and surfaces its output verbatim.
"""

from __future__ import annotations

import logging
import random
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from uzi.config.schema import UziYamlConfig
from uzi.coordinator.agents import (
    AgentRequest,
    build_agent_command,
    command_for_agent,
    choose_agent_name,
    parse_agent_spec,
)
from uzi.errors import (
    AmbiguousTargetError,
    ConfigurationError,
    SessionNotFoundError,
    SpawnError,
    UziError,
)
from uzi.protocol.models import NO_PORT, default_data_layout
from uzi.state.store import SessionStore
from uzi.tmux.client import AGENT_WINDOW, DEV_WINDOW, TmuxClient
from uzi.tmux.discovery import extract_agent_name
from uzi.workspace import worktree as git
from uzi.workspace.ports import find_available_port, is_port_available, parse_port_range

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class SpawnResult:
    session_id: str
    agent_name: str
    branch_name: str
    worktree_path: str
    model: str
    port: int = NO_PORT


@dataclass(slots=True)
class BatchSpawnResult:
    spawned: list[SpawnResult] = field(default_factory=list)
    errors: list[UziError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(slots=True)
class StepResult:
    name: str
    ok: bool
    detail: str = ""


@dataclass(slots=True)
class KillReport:
    session_id: str
    steps: list[StepResult] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        """True when nothing is left for the operator to clean up by hand."""
        return all(step.ok for step in self.steps)

    @property
    def failures(self) -> list[StepResult]:
        return [step for step in self.steps if not step.ok]


@dataclass(slots=True)
class KillAllReport:
    reports: list[KillReport] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.reports if r.clean)

    @property
    def total(self) -> int:
        return len(self.reports)


@dataclass(slots=True)
class CheckpointResult:
    agent_name: str
    session_id: str
    branch_name: str
    commit_count: int = 0
    committed: bool = False
    output: str = ""

    @property
    def nothing_to_checkpoint(self) -> bool:
        return self.commit_count == 0


@dataclass(slots=True)
class _RepoFacts:
    remote: str
    project: str
    short_hash: str
    base_branch: str
    current_branch: str


# ---------------------------------------------------------------------------
# LifecycleManager
# ---------------------------------------------------------------------------


class LifecycleManager:
    """Composes the registry, tmux and git into multi-step workflows."""

    def __init__(
        self,
        store: SessionStore,
        tmux: TmuxClient,
        config: UziYamlConfig,
        *,
        repo_root: Path,
        data_root: Path | None = None,
        port_probe: Callable[[int], bool] = is_port_available,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.tmux = tmux
        self.config = config
        self.repo_root = repo_root
        self.layout = default_data_layout(data_root or config.data_root())
        self._port_probe = port_probe
        self._clock = clock
        self._rng = rng or random.Random()

    # ------------------------------------------------------------------
    # Spawn
    # ------------------------------------------------------------------

    def spawn(self, agent: str, prompt: str, *, dev_server: bool = True) -> SpawnResult:
        """Spawn one agent; raises on failure instead of collecting errors."""
        batch = self.spawn_batch(
            [AgentRequest(agent=agent, command=command_for_agent(agent))],
            prompt,
            dev_server=dev_server,
        )
        if batch.errors:
            raise batch.errors[0]
        return batch.spawned[0]

    def spawn_batch(
        self,
        agents: str | list[AgentRequest],
        prompt: str,
        *,
        dev_server: bool | dict[str, bool] = True,
    ) -> BatchSpawnResult:
        """Spawn every requested agent, continuing past individual failures.

        *dev_server* may be a mapping from agent to flag so a batch can mix
        workers with and without a dev server.  Ports claimed earlier in the
        batch are never handed out again within it.
        """
        if not prompt.strip():
            raise ConfigurationError("prompt argument is required")
        requests = parse_agent_spec(agents) if isinstance(agents, str) else list(agents)
        facts = self._repo_facts()

        records = self.store.list_records()
        assigned_ports = self.store.assigned_ports()
        taken_names = {extract_agent_name(sid) for sid in records}

        result = BatchSpawnResult()
        for request in requests:
            wants_dev = (
                dev_server.get(request.agent, True) if isinstance(dev_server, dict) else dev_server
            )
            for _ in range(request.count):
                try:
                    spawned = self._spawn_one(
                        request,
                        prompt,
                        facts,
                        assigned_ports=assigned_ports,
                        taken_names=taken_names,
                        dev_server=wants_dev,
                    )
                except UziError as exc:
                    logger.error("Failed to create agent %s: %s", request.agent, exc)
                    result.errors.append(exc)
                    continue
                result.spawned.append(spawned)
        return result

    def _repo_facts(self) -> _RepoFacts:
        remote = git.repo_remote(self.repo_root)
        if not remote:
            raise ConfigurationError(
                f"repository at {self.repo_root} has no 'origin' remote; uzi scopes sessions by remote URL"
            )
        return _RepoFacts(
            remote=remote,
            project=git.project_name(remote, self.repo_root),
            short_hash=git.short_hash(self.repo_root),
            base_branch=git.default_branch(self.repo_root),
            current_branch=git.current_branch(self.repo_root),
        )

    def _allocate_port(self, assigned_ports: set[int]) -> int:
        start, end = parse_port_range(self.config.port_range or "")
        port = find_available_port(start, end, assigned_ports, probe=self._port_probe)
        assigned_ports.add(port)
        return port

    def _spawn_one(
        self,
        request: AgentRequest,
        prompt: str,
        facts: _RepoFacts,
        *,
        assigned_ports: set[int],
        taken_names: set[str],
        dev_server: bool,
    ) -> SpawnResult:
        agent_name = choose_agent_name(request.agent, taken_names, self._rng)
        command = request.command
        stamp = int(self._clock())
        branch_name = f"{agent_name}-{facts.project}-{facts.short_hash}-{stamp}"
        session_id = f"agent-{facts.project}-{facts.short_hash}-{agent_name}"
        if self.tmux.has_session(session_id):
            raise ConfigurationError(f"tmux session {session_id} already exists")

        port = NO_PORT
        if dev_server and self.config.wants_dev_server:
            port = self._allocate_port(assigned_ports)

        start_point = facts.base_branch if git.branch_exists(self.repo_root, facts.base_branch) else None
        try:
            worktree_path = git.create_worktree(
                self.repo_root,
                self.layout["worktrees"],
                branch_name,
                branch_name,
                start_point=start_point,
            )
        except UziError:
            assigned_ports.discard(port)
            raise
        taken_names.add(agent_name)
        logger.info("Created worktree %s for %s", worktree_path, session_id)

        try:
            self._launch(session_id, worktree_path, command, prompt, port)
        except UziError as exc:
            self._abandon_session(session_id)
            assigned_ports.discard(port)
            raise SpawnError(
                f"worktree {worktree_path} was created but session {session_id} failed to start: {exc}",
                worktree_path=str(worktree_path),
                session_name=session_id,
            ) from exc

        self._write_branch_marker(session_id, facts.current_branch)
        try:
            self.store.save(
                session_id,
                repository_remote=facts.remote,
                base_branch=facts.base_branch,
                branch_name=branch_name,
                worktree_path=str(worktree_path),
                prompt=prompt,
                model=command,
                port=port,
            )
        except UziError as exc:
            self._abandon_session(session_id)
            assigned_ports.discard(port)
            raise SpawnError(
                f"worktree {worktree_path} was created but session {session_id} could not be registered: {exc}",
                worktree_path=str(worktree_path),
                session_name=session_id,
            ) from exc

        logger.info("Spawned %s (port %s)", session_id, port or "none")
        return SpawnResult(
            session_id=session_id,
            agent_name=agent_name,
            branch_name=branch_name,
            worktree_path=str(worktree_path),
            model=command,
            port=port,
        )

    def _launch(self, session_id: str, worktree_path: Path, command: str, prompt: str, port: int) -> None:
        cwd = str(worktree_path)
        self.tmux.new_session(session_id, cwd)
        self.tmux.rename_window(f"{session_id}:0", AGENT_WINDOW)

        if port != NO_PORT and self.config.dev_command:
            dev_cmd = self.config.dev_command.replace("$PORT", str(port))
            self.tmux.new_window(session_id, DEV_WINDOW, cwd)
            self.tmux.send_keys(f"{session_id}:{DEV_WINDOW}", dev_cmd, "C-m")

        agent_target = f"{session_id}:{AGENT_WINDOW}"
        self.tmux.send_keys(agent_target, "C-m")
        if self.config.start_command:
            self.tmux.send_keys(agent_target, self.config.start_command, "C-m")
        self.tmux.send_keys(agent_target, build_agent_command(command, prompt), "C-m")

    def _abandon_session(self, session_id: str) -> None:
        """Kill a half-started tmux session so it never outlives its record."""
        try:
            if self.tmux.has_session(session_id):
                self.tmux.kill_session(session_id)
        except UziError as exc:
            logger.error("Could not kill half-started session %s: %s", session_id, exc)

    def _write_branch_marker(self, session_id: str, branch: str) -> None:
        if not branch:
            return
        marker_dir = self.layout["worktree_state"] / session_id
        try:
            marker_dir.mkdir(parents=True, exist_ok=True)
            (marker_dir / "tree").write_text(branch, encoding="utf-8")
        except OSError as exc:
            logger.error("Error storing worktree branch for %s: %s", session_id, exc)

    # ------------------------------------------------------------------
    # Target resolution
    # ------------------------------------------------------------------

    def resolve(self, target: str) -> str:
        """Map an exact session id or an agent name to one session id.

        Exact ids match any registry record, live or not, so stale records
        can still be torn down.  Agent names match active sessions whose id
        ends with ``-<target>``; more than one match is an error.
        """
        if not target:
            raise ConfigurationError("agent name argument is required")
        if target in self.store.list_records():
            return target
        active = self.store.list_active_for_repository()
        matches = [sid for sid in active if sid.endswith(f"-{target}")]
        if not matches:
            raise SessionNotFoundError(target)
        if len(matches) > 1:
            raise AmbiguousTargetError(target, matches)
        return matches[0]

    # ------------------------------------------------------------------
    # Kill
    # ------------------------------------------------------------------

    def kill(self, target: str) -> KillReport:
        return self._teardown(self.resolve(target))

    def kill_all(self) -> KillAllReport:
        report = KillAllReport()
        for session_id in self.store.list_active_for_repository():
            try:
                report.reports.append(self._teardown(session_id))
            except UziError as exc:
                logger.error("Teardown of %s aborted: %s", session_id, exc)
                report.reports.append(
                    KillReport(session_id, [StepResult("teardown", False, str(exc))])
                )
        logger.info("Killed %d/%d sessions", report.success_count, report.total)
        return report

    def _teardown(self, session_id: str) -> KillReport:
        try:
            record = self.store.get_record(session_id)
        except SessionNotFoundError:
            record = None
        worktree_path = Path(record.worktree_path) if record and record.worktree_path else None
        branch_name = record.branch_name if record else ""

        def kill_session() -> str:
            if not self.tmux.has_session(session_id):
                return "absent"
            self.tmux.kill_session(session_id)
            return "killed"

        def remove_worktree() -> str:
            if worktree_path is None or not worktree_path.exists():
                return "absent"
            git.remove_worktree(self.repo_root, worktree_path)
            return f"removed {worktree_path}"

        def delete_branch() -> str:
            if not branch_name or not git.branch_exists(self.repo_root, branch_name):
                return "absent"
            git.delete_branch(self.repo_root, branch_name)
            return f"deleted {branch_name}"

        def remove_cached_dirs() -> str:
            removed = []
            candidates = [self.layout["worktree_state"] / session_id]
            if worktree_path is not None:
                candidates.append(self.layout["worktrees"] / worktree_path.name)
            for path in candidates:
                if path.exists():
                    shutil.rmtree(path)
                    removed.append(str(path))
            return ", ".join(removed) or "absent"

        def remove_record() -> str:
            return "removed" if self.store.remove(session_id) else "absent"

        steps: list[tuple[str, Callable[[], str]]] = [
            ("tmux-session", kill_session),
            ("worktree", remove_worktree),
            ("branch", delete_branch),
            ("cached-dirs", remove_cached_dirs),
            ("registry", remove_record),
        ]
        report = KillReport(session_id)
        for name, step in steps:
            try:
                detail = step()
            except (UziError, OSError) as exc:
                logger.error("Kill %s: %s step failed: %s", session_id, name, exc)
                report.steps.append(StepResult(name, False, str(exc)))
                continue
            logger.debug("Kill %s: %s %s", session_id, name, detail)
            report.steps.append(StepResult(name, True, detail))
        return report

    # ------------------------------------------------------------------
    # Checkpoint
    # ------------------------------------------------------------------

    def checkpoint(self, agent_name: str, commit_message: str | None = None) -> CheckpointResult:
        """Rebase the operator's current branch onto the agent's branch.

        With *commit_message*, pending work in the agent's worktree is
        committed first.  Zero new commits is a successful no-op.
        """
        session_id = self.resolve(agent_name)
        record = self.store.get_record(session_id)
        if not record.branch_name or not record.worktree_path:
            raise ConfigurationError(f"invalid state for session: {session_id}")

        current = git.current_branch(self.repo_root)
        if not git.branch_exists(self.repo_root, record.branch_name):
            raise ConfigurationError(f"agent branch does not exist: {record.branch_name}")

        result = CheckpointResult(
            agent_name=agent_name,
            session_id=session_id,
            branch_name=record.branch_name,
        )
        if commit_message:
            result.committed = git.commit_all(record.worktree_path, commit_message)

        base = git.merge_base(self.repo_root, current, record.branch_name)
        result.commit_count = git.count_commits(self.repo_root, base, record.branch_name)
        if result.nothing_to_checkpoint:
            logger.info("Nothing to checkpoint for %s", session_id)
            return result

        logger.info("Checkpointing %d commits from %s", result.commit_count, session_id)
        result.output = git.rebase(self.repo_root, record.branch_name)
        if not self.store.touch(session_id):
            logger.info("Session %s was removed during checkpoint", session_id)
        return result
