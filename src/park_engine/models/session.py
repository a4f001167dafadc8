"""
Session data model.

A session is the persisted unit of work: a command, the directory it runs in,
how it is attached to a terminal, and where it is in its lifecycle.
"""

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, field_validator


class SessionStatus(str, Enum):
    """Persisted lifecycle status."""
    CONFIGURED = "configured"
    ACTIVE = "active"
    STOPPED = "stopped"
    COMPLETED = "completed"


class SessionType(str, Enum):
    """How the session's process is attached."""
    INTERACTIVE_PTY = "interactive-pty"
    NON_INTERACTIVE = "non-interactive"

    @property
    def is_pty(self) -> bool:
        return self is SessionType.INTERACTIVE_PTY


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    """A persisted session record."""
    id: str
    name: str
    directory: str
    command: str
    type: SessionType
    status: SessionStatus = SessionStatus.CONFIGURED
    pid: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "directory": self.directory,
            "command": self.command,
            "type": self.type.value,
            "status": self.status.value,
            "pid": self.pid,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: Any) -> "Session":
        """Build a session from a sessions table row."""
        return cls(
            id=row["id"],
            name=row["name"],
            directory=row["directory"],
            command=row["command"],
            type=SessionType(row["type"]),
            status=SessionStatus(row["status"]),
            pid=row["pid"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


class SessionCreate(BaseModel):
    """Validated input for a new session."""
    name: str
    directory: str
    command: str
    type: SessionType

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    @field_validator("name", "directory", "command")
    @classmethod
    def not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("directory")
    @classmethod
    def expand_directory(cls, v: str) -> str:
        return os.path.expanduser(v)


class SessionUpdate(BaseModel):
    """Validated partial update; only editable fields are accepted."""
    name: Optional[str] = None
    directory: Optional[str] = None
    command: Optional[str] = None
    type: Optional[SessionType] = None

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    @field_validator("name", "directory", "command")
    @classmethod
    def not_empty(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("directory")
    @classmethod
    def expand_directory(cls, v: Optional[str]) -> Optional[str]:
        return os.path.expanduser(v) if v is not None else v

    def changes(self) -> Dict[str, Any]:
        """Fields that were actually supplied."""
        return self.model_dump(exclude_none=True)


__all__ = [
    'Session',
    'SessionStatus',
    'SessionType',
    'SessionCreate',
    'SessionUpdate',
    'utcnow',
]
