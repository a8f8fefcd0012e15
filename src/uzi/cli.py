"""CLI entrypoint for uzi."""

from __future__ import annotations

import asyncio
import contextlib
import json
import shutil
import signal
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from uzi.config.loader import load_uzi_yaml
from uzi.config.schema import DEFAULT_CONFIG_PATH, UziYamlConfig
from uzi.coordinator.activity import ActivityMonitor
from uzi.coordinator.agents import AgentRequest, command_for_agent
from uzi.coordinator.lifecycle import KillReport, LifecycleManager
from uzi.coordinator.watcher import AgentWatcher
from uzi.errors import UziError
from uzi.logging_setup import get_logger, setup_logging
from uzi.protocol.models import NO_PORT, default_data_layout
from uzi.state.store import SessionStore
from uzi.tmux.client import AGENT_WINDOW, TmuxClient
from uzi.tmux.discovery import TmuxDiscovery, extract_agent_name
from uzi.workspace import worktree as git

log = get_logger("uzi.cli")

_HEALTH_STYLES = {"working": "green", "idle": "yellow", "stuck": "red"}


@dataclass(slots=True)
class UziApp:
    """Wired-up components shared by every command."""

    config: UziYamlConfig
    store: SessionStore
    tmux: TmuxClient
    discovery: TmuxDiscovery
    manager: LifecycleManager
    repo_root: Path


def build_app(config_path: Path, repo_root: Path | None = None) -> UziApp:
    cfg = load_uzi_yaml(config_path)
    root = repo_root or Path.cwd()
    layout = default_data_layout(cfg.data_root())
    tmux = TmuxClient()
    store = SessionStore(
        layout["state"],
        lock_path=layout["lock"],
        is_live=tmux.has_session,
        remote_fn=lambda: git.repo_remote(root),
    )
    discovery = TmuxDiscovery(
        tmux,
        cache_ttl=cfg.discovery.cache_ttl_seconds,
        active_window=cfg.discovery.active_window_seconds,
    )
    manager = LifecycleManager(store, tmux, cfg, repo_root=root, data_root=layout["root"])
    return UziApp(cfg, store, tmux, discovery, manager, root)


@contextlib.contextmanager
def _user_errors() -> Iterator[None]:
    try:
        yield
    except UziError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="Path to uzi.yaml",
)
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines")
@click.pass_context
def main(ctx: click.Context, config_path: Path, debug: bool, json_logs: bool) -> None:
    """Run coding agents side by side in git worktrees and tmux sessions."""
    setup_logging(debug=debug, json_output=json_logs)
    if ctx.obj is None:
        with _user_errors():
            ctx.obj = build_app(config_path)


@main.command("prompt")
@click.option("--agents", "agent_spec", default=None, help="Agents to spawn, e.g. claude:2,codex:1")
@click.argument("prompt", nargs=-1)
@click.pass_obj
def prompt_command(app: UziApp, agent_spec: str | None, prompt: tuple[str, ...]) -> None:
    """Spawn agents working on PROMPT."""
    prompt_text = " ".join(prompt).strip()
    if not prompt_text:
        raise click.ClickException("Prompt text is required")

    agents: str | list[AgentRequest]
    dev_server: bool | dict[str, bool] = True
    if agent_spec:
        agents = agent_spec
    else:
        agents = [
            AgentRequest(agent=a.command, command=command_for_agent(a.command), count=a.count)
            for a in app.config.agents
        ]
        dev_server = {a.command: a.dev_server for a in app.config.agents}

    with _user_errors():
        result = app.manager.spawn_batch(agents, prompt_text, dev_server=dev_server)

    for spawned in result.spawned:
        port = f" port={spawned.port}" if spawned.port != NO_PORT else ""
        click.echo(f"{spawned.agent_name}: {spawned.session_id} branch={spawned.branch_name}{port}")
        log.info("agent_spawned", session=spawned.session_id, model=spawned.model)
    for err in result.errors:
        click.echo(f"error: {err}", err=True)
    if result.errors:
        raise SystemExit(1)


def _echo_kill_report(report: KillReport) -> None:
    status = "killed" if report.clean else "partially killed"
    click.echo(f"{status}: {report.session_id}")
    for step in report.failures:
        click.echo(f"  {step.name} failed: {step.detail}", err=True)


@main.command("kill")
@click.argument("target")
@click.pass_obj
def kill_command(app: UziApp, target: str) -> None:
    """Kill one agent (by name or session id), or ``all``."""
    with _user_errors():
        if target == "all":
            summary = app.manager.kill_all()
            for report in summary.reports:
                _echo_kill_report(report)
            click.echo(f"Killed {summary.success_count}/{summary.total} sessions")
            clean = summary.success_count == summary.total
        else:
            report = app.manager.kill(target)
            _echo_kill_report(report)
            clean = report.clean
    if not clean:
        raise SystemExit(1)


@main.command("checkpoint")
@click.argument("agent")
@click.argument("message", nargs=-1)
@click.pass_obj
def checkpoint_command(app: UziApp, agent: str, message: tuple[str, ...]) -> None:
    """Rebase the agent's commits onto the current branch."""
    commit_message = " ".join(message).strip() or None
    with _user_errors():
        result = app.manager.checkpoint(agent, commit_message)
    if result.nothing_to_checkpoint:
        click.echo(f"Nothing to checkpoint for {result.agent_name}")
        return
    if result.output:
        click.echo(result.output.rstrip())
    click.echo(
        f"Checkpointed {result.commit_count} commit(s) from {result.branch_name}"
    )


async def _run_watcher(watcher: AgentWatcher, activity: ActivityMonitor, activity_interval: float) -> None:
    def stop() -> None:
        watcher.stop()
        activity.stop()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop)
    await asyncio.gather(watcher.run(), activity.run(activity_interval))


@main.command("auto")
@click.pass_obj
def auto_command(app: UziApp) -> None:
    """Confirm agent prompts and track agent activity until interrupted."""
    watch = app.config.watch
    watcher = AgentWatcher(
        app.tmux,
        app.store.list_active_for_repository,
        poll_interval=watch.poll_interval_seconds,
        refresh_interval=watch.refresh_interval_seconds,
        error_backoff=watch.error_backoff_seconds,
    )
    click.echo("Watching agents; press Ctrl-C to stop")
    asyncio.run(_run_watcher(watcher, ActivityMonitor(app.store), watch.activity_interval_seconds))


def _session_rows(app: UziApp) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for session_id, metrics in ActivityMonitor(app.store).refresh().items():
        record = app.store.get_record(session_id)
        rows.append(
            {
                "session": session_id,
                "agent": extract_agent_name(session_id),
                "model": record.model,
                "status": app.discovery.get_agent_window_status(session_id),
                "activity": app.discovery.get_activity(session_id),
                "health": str(metrics.status),
                "commits": metrics.commits,
                "insertions": metrics.insertions,
                "deletions": metrics.deletions,
                "files_changed": metrics.files_changed,
                "last_commit_at": metrics.to_dict()["last_commit_at"],
                "port": record.port,
                "branch": record.branch_name,
                "prompt": record.prompt,
                "updated_at": record.updated_at,
            }
        )
    return rows


@main.command("ls")
@click.option("--json", "as_json", is_flag=True, help="Print machine-readable JSON")
@click.pass_obj
def ls_command(app: UziApp, as_json: bool) -> None:
    """List active agent sessions for this repository."""
    with _user_errors():
        rows = _session_rows(app)
    if as_json:
        click.echo(json.dumps(rows, indent=2))
        return
    if not rows:
        click.echo("No active sessions found")
        return

    table = Table(title="Agents")
    for column in ("AGENT", "MODEL", "STATUS", "HEALTH", "DIFF", "ADDR", "PROMPT"):
        table.add_column(column)
    for row in rows:
        addr = f"http://localhost:{row['port']}" if row["port"] != NO_PORT else ""
        prompt = row["prompt"] if len(row["prompt"]) <= 40 else row["prompt"][:37] + "..."
        health_style = _HEALTH_STYLES[row["health"]]
        table.add_row(
            row["agent"],
            row["model"],
            f"{row['status']} ({row['activity']})",
            f"[{health_style}]{row['health']}[/{health_style}] {row['commits']}c",
            f"[green]+{row['insertions']}[/green]/[red]-{row['deletions']}[/red]",
            addr,
            prompt,
        )
    Console().print(table)


@main.command("reset")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_obj
def reset_command(app: UziApp, yes: bool) -> None:
    """Delete all uzi data (registry, worktrees and markers)."""
    data_root = app.config.data_root()
    if not yes:
        click.confirm(f"This will delete all data in {data_root}. Continue?", abort=True)
    if data_root.exists():
        shutil.rmtree(data_root)
    click.echo(f"Removed {data_root}")


@main.command("broadcast")
@click.argument("message", nargs=-1)
@click.pass_obj
def broadcast_command(app: UziApp, message: tuple[str, ...]) -> None:
    """Type MESSAGE into every active agent window."""
    text = " ".join(message).strip()
    if not text:
        raise click.ClickException("Message text is required")
    with _user_errors():
        sessions = app.store.list_active_for_repository()
    if not sessions:
        raise click.ClickException("No active agent sessions found")

    click.echo(f"Broadcasting message to {len(sessions)} agent sessions:")
    failed = 0
    for session_id in sessions:
        try:
            app.tmux.send_keys(f"{session_id}:{AGENT_WINDOW}", text, "Enter")
        except UziError as exc:
            failed += 1
            click.echo(f"  {session_id}: failed: {exc}", err=True)
            continue
        click.echo(f"  {session_id}")
    if failed:
        raise SystemExit(1)
