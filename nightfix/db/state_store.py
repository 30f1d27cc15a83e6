"""Durable session checkpoints.

A StateStore persists the full RunSession after every target transition
so an interrupted run can be resumed instead of reprocessed. The file
store is the default; the PostgreSQL store keeps the same document in a
JSONB column plus one summary row per target for ad-hoc queries.
"""

from __future__ import annotations

import contextlib
import logging
import os
import uuid
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from nightfix.core.exceptions import DatabaseError, SessionNotFoundError
from nightfix.core.models import RunSession
from nightfix.db.engine import DatabaseEngine

logger = logging.getLogger("nightfix.db.state_store")


class StateStore(Protocol):
    def save(self, session: RunSession) -> None: ...

    def load(self, session_id: str) -> RunSession: ...

    def list_sessions(self) -> list[str]: ...


class FileStateStore:
    """One JSON document per session, replaced atomically on save."""

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)

    def _path(self, session_id: str) -> Path:
        return self.state_dir / f"{session_id}.json"

    def save(self, session: RunSession) -> None:
        final = self._path(session.id)
        tmp = self.state_dir / f".{session.id}.{uuid.uuid4().hex[:8]}.tmp"
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            tmp.write_text(session.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp, final)
        except OSError as e:
            with contextlib.suppress(OSError):
                tmp.unlink(missing_ok=True)
            raise DatabaseError(f"Failed to checkpoint session {session.id}: {e}") from e

    def load(self, session_id: str) -> RunSession:
        path = self._path(session_id)
        if not path.exists():
            raise SessionNotFoundError(session_id)
        try:
            return RunSession.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            raise DatabaseError(f"Corrupt checkpoint for session {session_id}: {e}") from e

    def list_sessions(self) -> list[str]:
        if not self.state_dir.exists():
            return []
        return sorted(p.stem for p in self.state_dir.glob("*.json"))


class PostgresStateStore:
    """Session checkpoints in PostgreSQL."""

    def __init__(self, engine: DatabaseEngine):
        self.engine = engine

    def save(self, session: RunSession) -> None:
        with self.engine.transaction() as cur:
            cur.execute(
                """INSERT INTO run_sessions (id, status, created_at, state)
                   VALUES (%s, %s, %s, %s::jsonb)
                   ON CONFLICT (id) DO UPDATE
                   SET status = EXCLUDED.status, state = EXCLUDED.state, updated_at = now()""",
                [session.id, session.status.value, session.created_at, session.model_dump_json()],
            )
            for target in session.ordered_targets():
                latest = target.baseline_result or target.latest_result
                cur.execute(
                    """INSERT INTO contract_targets
                           (id, session_id, name, status, failure_reason, attempts, pass_rate)
                       VALUES (%s, %s, %s, %s, %s, %s, %s)
                       ON CONFLICT (id) DO UPDATE
                       SET status = EXCLUDED.status,
                           failure_reason = EXCLUDED.failure_reason,
                           attempts = EXCLUDED.attempts,
                           pass_rate = EXCLUDED.pass_rate,
                           updated_at = now()""",
                    [
                        target.id,
                        session.id,
                        target.name,
                        target.status.value,
                        target.failure_reason.value if target.failure_reason else None,
                        target.attempts,
                        latest.pass_rate if latest else None,
                    ],
                )

    def load(self, session_id: str) -> RunSession:
        row = self.engine.fetch_one("SELECT state FROM run_sessions WHERE id = %s", [session_id])
        if row is None:
            raise SessionNotFoundError(session_id)
        state = row["state"]
        try:
            if isinstance(state, (str, bytes)):
                return RunSession.model_validate_json(state)
            return RunSession.model_validate(state)
        except ValidationError as e:
            raise DatabaseError(f"Corrupt checkpoint for session {session_id}: {e}") from e

    def list_sessions(self) -> list[str]:
        rows = self.engine.fetch_all("SELECT id FROM run_sessions ORDER BY created_at")
        return [row["id"] for row in rows]
