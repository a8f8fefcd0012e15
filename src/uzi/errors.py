"""uzi error hierarchy."""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path
from typing import Any


class ErrorCategory(StrEnum):
    """Category of error for classification and reporting."""

    CONFIGURATION = "configuration"
    NOT_FOUND = "not_found"
    EXTERNAL_TOOL = "external_tool"
    CONSISTENCY = "consistency"
    RESOURCE = "resource"
    PARTIAL_FAILURE = "partial_failure"


class UziError(Exception):
    """Base error for all uzi exceptions."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.CONFIGURATION,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.details: dict[str, Any] = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, category={self.category!r})"


class ConfigurationError(UziError):
    """Invalid or missing configuration or input."""

    def __init__(self, message: str) -> None:
        super().__init__(message, category=ErrorCategory.CONFIGURATION)


class SessionNotFoundError(UziError):
    """No registry record or active session matches the request."""

    def __init__(self, target: str, message: str | None = None) -> None:
        super().__init__(
            message or f"no active session found for agent: {target}",
            category=ErrorCategory.NOT_FOUND,
        )
        self.target = target


class AmbiguousTargetError(UziError):
    """An agent name matches more than one active session."""

    def __init__(self, target: str, matches: list[str]) -> None:
        super().__init__(
            f"agent name {target!r} matches {len(matches)} sessions: {', '.join(matches)}",
            category=ErrorCategory.CONFIGURATION,
            details={"matches": list(matches)},
        )
        self.target = target
        self.matches = list(matches)


class RegistryCorruptError(UziError):
    """The session registry file cannot be parsed."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(
            f"session registry {path} is corrupt: {reason}",
            category=ErrorCategory.CONSISTENCY,
        )
        self.path = path


class PortsExhaustedError(UziError):
    """Every port in the configured range is claimed or bound."""

    def __init__(self, start: int, end: int) -> None:
        super().__init__(
            f"no available ports in range {start}-{end}",
            category=ErrorCategory.RESOURCE,
        )
        self.start = start
        self.end = end


class ExternalToolError(UziError):
    """A git or tmux command failed.

    ``output`` carries the tool's own diagnostics verbatim.
    """

    def __init__(
        self,
        command: list[str],
        returncode: int | None,
        output: str,
        *,
        message: str | None = None,
    ) -> None:
        text = output.strip()
        if message is None:
            message = f"{' '.join(command[:3])} failed"
            if returncode is not None:
                message += f" (exit {returncode})"
            if text:
                message += f": {text}"
        super().__init__(message, category=ErrorCategory.EXTERNAL_TOOL)
        self.command = list(command)
        self.returncode = returncode
        self.output = output


class SpawnError(UziError):
    """Spawn failed after some external resources were created."""

    def __init__(
        self,
        message: str,
        *,
        worktree_path: str = "",
        session_name: str = "",
    ) -> None:
        super().__init__(
            message,
            category=ErrorCategory.PARTIAL_FAILURE,
            details={"worktree_path": worktree_path, "session_name": session_name},
        )
        self.worktree_path = worktree_path
        self.session_name = session_name
