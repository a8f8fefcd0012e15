"""Tests for uzi.tmux.client command construction and error mapping."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from uzi.errors import ExternalToolError
from uzi.tmux.client import TmuxClient


@patch("uzi.tmux.client.subprocess.run")
def test_send_keys(mock_run: MagicMock) -> None:
    mock_run.return_value = subprocess.CompletedProcess([], 0, stdout="", stderr="")
    TmuxClient().send_keys("agent-proj-abc-sam:agent", "Enter")
    mock_run.assert_called_once_with(
        ["tmux", "send-keys", "-t", "agent-proj-abc-sam:agent", "Enter"],
        check=True,
        capture_output=True,
        text=True,
        errors="replace",
        timeout=10.0,
    )


@patch("uzi.tmux.client.subprocess.run")
def test_capture_pane_targets_agent_window(mock_run: MagicMock) -> None:
    mock_run.return_value = subprocess.CompletedProcess([], 0, stdout="hello\n", stderr="")
    assert TmuxClient().capture_pane("s1") == "hello\n"
    assert mock_run.call_args.args[0] == ["tmux", "capture-pane", "-t", "s1:agent", "-p"]


@patch(
    "uzi.tmux.client.subprocess.run",
    side_effect=subprocess.CalledProcessError(1, "tmux", stderr="can't find session: s1"),
)
def test_failure_carries_stderr(mock_run: MagicMock) -> None:
    with pytest.raises(ExternalToolError) as excinfo:
        TmuxClient().kill_session("s1")
    assert excinfo.value.returncode == 1
    assert excinfo.value.output == "can't find session: s1"
    assert "can't find session" in str(excinfo.value)


@patch("uzi.tmux.client.subprocess.run", side_effect=FileNotFoundError("tmux"))
def test_missing_binary(mock_run: MagicMock) -> None:
    with pytest.raises(ExternalToolError) as excinfo:
        TmuxClient().list_sessions()
    assert excinfo.value.returncode is None


@patch("uzi.tmux.client.subprocess.run")
def test_has_session(mock_run: MagicMock) -> None:
    mock_run.return_value = subprocess.CompletedProcess([], 0, stdout="", stderr="")
    assert TmuxClient().has_session("s1")

    mock_run.side_effect = subprocess.CalledProcessError(1, "tmux")
    assert not TmuxClient().has_session("s1")


@patch("uzi.tmux.client.subprocess.run", side_effect=PermissionError(13, "Permission denied"))
def test_os_errors_become_tool_errors(mock_run: MagicMock) -> None:
    with pytest.raises(ExternalToolError) as excinfo:
        TmuxClient().capture_pane("s1")
    assert excinfo.value.returncode is None
    assert "Permission denied" in excinfo.value.output


def test_undecodable_pane_bytes_are_replaced(tmp_path: Path) -> None:
    binary = tmp_path / "tmux"
    binary.write_text("#!/bin/sh\nprintf 'Continue? (Y/n) \\377\\376'\n")
    binary.chmod(0o755)

    content = TmuxClient(binary=str(binary)).capture_pane("s1")

    assert content.startswith("Continue? (Y/n) ")
    assert "\ufffd" in content
