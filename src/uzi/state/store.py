"""Session registry: the persisted ``session id -> SessionRecord`` mapping.

The registry is one JSON file.  Every mutation is a locked
read-modify-write of the whole mapping followed by an atomic replace, so
readers never take the lock and always see a complete mapping.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from uzi.errors import ConfigurationError, RegistryCorruptError, SessionNotFoundError
from uzi.protocol.io import read_json, write_json_atomic
from uzi.protocol.locks import locked_file
from uzi.protocol.models import (
    NO_PORT,
    RECORD_FIELDS,
    SessionRecord,
    parse_iso,
    utc_now,
)

log = logging.getLogger(__name__)

_MANAGED_FIELDS = frozenset({"created_at", "updated_at"})


class SessionStore:
    """Single-writer store over ``state.json``.

    ``is_live`` answers whether a session currently exists in tmux; it is
    consulted per call and never cached in the record.  ``remote_fn``
    resolves the current repository's remote when callers do not pass one.
    """

    def __init__(
        self,
        state_path: Path,
        *,
        lock_path: Path | None = None,
        is_live: Callable[[str], bool] | None = None,
        remote_fn: Callable[[], str] | None = None,
    ) -> None:
        self.state_path = state_path
        self.lock_path = lock_path or state_path.with_suffix(".lock")
        self._is_live = is_live or (lambda _name: False)
        self._remote_fn = remote_fn or (lambda: "")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _load(self) -> dict[str, dict[str, Any]]:
        raw = read_json(self.state_path, default={})
        if not isinstance(raw, dict):
            raise RegistryCorruptError(self.state_path, "top level is not a JSON object")
        for session_id, entry in raw.items():
            if not isinstance(entry, dict):
                raise RegistryCorruptError(
                    self.state_path, f"entry {session_id!r} is not a JSON object"
                )
        return raw

    def list_records(self) -> dict[str, SessionRecord]:
        return {sid: SessionRecord.from_dict(sid, entry) for sid, entry in self._load().items()}

    def get_record(self, session_id: str) -> SessionRecord:
        entry = self._load().get(session_id)
        if entry is None:
            raise SessionNotFoundError(session_id, f"no state found for session: {session_id}")
        return SessionRecord.from_dict(session_id, entry)

    def list_active_for_repository(self, repo_remote: str | None = None) -> list[str]:
        """Ids of records for *repo_remote* whose tmux session is live now."""
        remote = self._remote_fn() if repo_remote is None else repo_remote
        if not remote:
            return []
        active = [
            sid
            for sid, record in sorted(self.list_records().items())
            if record.repository_remote == remote and self._is_live(sid)
        ]
        return active

    def assigned_ports(self) -> set[int]:
        return {r.port for r in self.list_records().values() if r.port != NO_PORT}

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def save(self, session_id: str, **fields: Any) -> SessionRecord:
        """Create or update *session_id*, preserving ``created_at``."""
        unknown = set(fields) - (RECORD_FIELDS - _MANAGED_FIELDS)
        if unknown:
            raise ConfigurationError(f"unknown session fields: {', '.join(sorted(unknown))}")

        with locked_file(self.lock_path):
            states = self._load()
            existing = states.get(session_id)
            record = (
                SessionRecord.from_dict(session_id, existing)
                if existing is not None
                else SessionRecord(session_id=session_id)
            )
            for name, value in fields.items():
                setattr(record, name, value)
            record.port = int(record.port or NO_PORT)

            now = _next_timestamp(record.updated_at)
            if existing is None or not record.created_at:
                record.created_at = now.isoformat()
            record.updated_at = now.isoformat()

            states[session_id] = record.to_dict()
            write_json_atomic(self.state_path, states)
        log.debug("Saved session %s", session_id)
        return record

    def touch(self, session_id: str) -> bool:
        """Bump ``updated_at`` of an existing record; False when it is gone."""
        with locked_file(self.lock_path):
            states = self._load()
            existing = states.get(session_id)
            if existing is None:
                return False
            record = SessionRecord.from_dict(session_id, existing)
            record.updated_at = _next_timestamp(record.updated_at).isoformat()
            states[session_id] = record.to_dict()
            write_json_atomic(self.state_path, states)
        return True

    def remove(self, session_id: str) -> bool:
        """Delete *session_id*; returns False (not an error) when absent."""
        with locked_file(self.lock_path):
            if not self.state_path.exists():
                return False
            states = self._load()
            if session_id not in states:
                return False
            del states[session_id]
            write_json_atomic(self.state_path, states)
        log.debug("Removed session %s", session_id)
        return True


def _next_timestamp(previous_iso: str) -> datetime:
    # updated_at must strictly increase even when the clock does not
    now = utc_now()
    previous = parse_iso(previous_iso)
    if previous is not None and now <= previous:
        now = previous + timedelta(microseconds=1)
    return now
