"""
Persistent session record store.

Durable mapping of session id to its persisted attributes. The record is the
single source of truth for a session's status; the in-memory registry only
mirrors what is written here.
"""

import sqlite3
from enum import Enum
from typing import Optional, List, Dict, Any

from ..models.session import Session, SessionStatus, utcnow
from ..utils.errors import DatabaseError
from ..utils.logging import get_logger, log_function_call
from .database import Database


logger = get_logger("park-engine.storage")

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    directory TEXT NOT NULL,
    command TEXT NOT NULL,
    status TEXT NOT NULL CHECK(status IN ('configured', 'active', 'stopped', 'completed')),
    type TEXT NOT NULL CHECK(type IN ('interactive-pty', 'non-interactive')),
    pid INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status);
CREATE INDEX IF NOT EXISTS idx_sessions_created ON sessions(created_at DESC);
"""

UPDATABLE_FIELDS = frozenset(("name", "directory", "command", "type", "status", "pid"))


class SessionStore:
    """Session records kept in SQLite."""

    def __init__(self, db: Database):
        self.db = db

    async def initialize(self) -> None:
        """Create the schema if needed."""
        await self.db.executescript(SCHEMA)

    @log_function_call(logger)
    async def create(self, session: Session) -> Session:
        """Insert a new record and return it as stored."""
        try:
            await self.db.execute(
                """
                INSERT INTO sessions
                (id, name, directory, command, status, type, pid, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session.id,
                    session.name,
                    session.directory,
                    session.command,
                    session.status.value,
                    session.type.value,
                    session.pid,
                    session.created_at.isoformat(),
                    session.updated_at.isoformat(),
                ),
            )
        except sqlite3.IntegrityError as e:
            raise DatabaseError(f"Failed to create session {session.id}: {e}", session_id=session.id) from e

        logger.info("session_record_created", session_id=session.id, name=session.name)
        return session

    async def get_by_id(self, session_id: str) -> Optional[Session]:
        row = await self.db.fetchone("SELECT * FROM sessions WHERE id = ?", (session_id,))
        return Session.from_row(row) if row else None

    async def list_all(self) -> List[Session]:
        """All records, newest first."""
        rows = await self.db.fetchall("SELECT * FROM sessions ORDER BY created_at DESC")
        return [Session.from_row(row) for row in rows]

    async def list_by_status(self, status: SessionStatus) -> List[Session]:
        rows = await self.db.fetchall(
            "SELECT * FROM sessions WHERE status = ? ORDER BY created_at DESC",
            (status.value,),
        )
        return [Session.from_row(row) for row in rows]

    async def update(self, session_id: str, fields: Dict[str, Any]) -> Optional[Session]:
        """
        Apply a partial update and bump updated_at.

        Returns the updated record, or None when the id is unknown.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise DatabaseError(f"Fields not updatable: {', '.join(sorted(unknown))}", session_id=session_id)

        columns = list(fields)
        values = [self._to_column(fields[c]) for c in columns]
        columns.append("updated_at")
        values.append(utcnow().isoformat())

        set_clause = ", ".join(f"{c} = ?" for c in columns)
        try:
            changed = await self.db.execute(
                f"UPDATE sessions SET {set_clause} WHERE id = ?",
                (*values, session_id),
            )
        except sqlite3.IntegrityError as e:
            raise DatabaseError(f"Failed to update session {session_id}: {e}", session_id=session_id) from e

        if changed == 0:
            return None

        logger.debug("session_record_updated", session_id=session_id, fields=sorted(fields))
        return await self.get_by_id(session_id)

    @log_function_call(logger)
    async def delete(self, session_id: str) -> bool:
        deleted = await self.db.execute("DELETE FROM sessions WHERE id = ?", (session_id,)) > 0
        if deleted:
            logger.info("session_record_deleted", session_id=session_id)
        return deleted

    @staticmethod
    def _to_column(value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        return value


__all__ = ['SessionStore', 'SCHEMA']
