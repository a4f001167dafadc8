"""
Error handling framework for the PARK session engine.

This module provides:
- Hierarchical exception classes for every engine failure mode
- Error context preservation
- Structured error responses (HTTP status + JSON body)
"""

from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from contextlib import contextmanager

from .logging import get_logger


logger = get_logger("park-engine.errors")


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for classification."""
    VALIDATION = "validation"
    LOOKUP = "lookup"
    STATE = "state"
    PROCESS = "process"
    DATABASE = "database"
    CONFIGURATION = "configuration"
    TRANSPORT = "transport"
    INTERNAL = "internal"


@dataclass
class ErrorContext:
    """Context information for an error."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    session_id: Optional[str] = None
    component: Optional[str] = None
    operation: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ParkError(Exception):
    """Base exception for all engine errors."""

    code: str = "PARK_ERROR"
    default_message: str = "An error occurred in the session engine"
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.INTERNAL
    status_code: int = 500

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        session_id: Optional[str] = None,
    ):
        self.message = message or self.default_message
        self.context = context or ErrorContext()
        if session_id and not self.context.session_id:
            self.context.session_id = session_id
        self.cause = cause
        super().__init__(self.message)

    @property
    def session_id(self) -> Optional[str]:
        return self.context.session_id

    def get_suggestions(self) -> List[str]:
        """Get error resolution suggestions."""
        return []

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        body: Dict[str, Any] = {
            "error": self.message,
            "code": self.code,
        }
        suggestions = self.get_suggestions()
        if suggestions:
            body["suggestions"] = suggestions
        if self.context.session_id:
            body["session_id"] = self.context.session_id
        return body

    def to_log(self) -> Dict[str, Any]:
        """Key/values suitable for a structured log event."""
        return {
            "error_code": self.code,
            "error": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "session_id": self.context.session_id,
            "component": self.context.component,
            "operation": self.context.operation,
        }


# Validation errors

class InvalidInput(ParkError):
    """Missing or invalid fields, rejected before any mutation."""
    code = "INVALID_INPUT"
    default_message = "Invalid input"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING
    status_code = 400

    def __init__(self, message: Optional[str] = None, fields: Optional[List[str]] = None, **kwargs):
        self.fields = fields or []
        super().__init__(message, **kwargs)


class InvalidDirectory(ParkError):
    """Working directory absent at create, update or launch time."""
    code = "INVALID_DIRECTORY"
    default_message = "Directory does not exist"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING
    status_code = 400

    def __init__(self, directory: str, **kwargs):
        self.directory = directory
        super().__init__(f"Directory does not exist: {directory}", **kwargs)

    def get_suggestions(self) -> List[str]:
        return ["Create the directory or point the session at an existing one"]


# Lookup errors

class NotFound(ParkError):
    """Unknown session id."""
    code = "NOT_FOUND"
    default_message = "Session not found"
    category = ErrorCategory.LOOKUP
    severity = ErrorSeverity.WARNING
    status_code = 404

    def __init__(self, session_id: str, **kwargs):
        super().__init__(f"Session {session_id} not found", session_id=session_id, **kwargs)


# State errors

class AlreadyRunning(ParkError):
    """Launch of a session that already has a live instance."""
    code = "ALREADY_RUNNING"
    default_message = "Session is already running"
    category = ErrorCategory.STATE
    severity = ErrorSeverity.WARNING
    status_code = 409

    def __init__(self, session_id: str, **kwargs):
        super().__init__(f"Session {session_id} is already running", session_id=session_id, **kwargs)


class NotRunning(ParkError):
    """Stop against a session with no live instance."""
    code = "NOT_RUNNING"
    default_message = "Session is not running"
    category = ErrorCategory.STATE
    severity = ErrorSeverity.WARNING
    status_code = 409

    def __init__(self, session_id: str, **kwargs):
        super().__init__(f"Session {session_id} is not running", session_id=session_id, **kwargs)


class ActiveSessionImmutable(ParkError):
    """Edit attempt on an active session."""
    code = "ACTIVE_SESSION_IMMUTABLE"
    default_message = "Cannot update active session"
    category = ErrorCategory.STATE
    severity = ErrorSeverity.WARNING
    status_code = 409

    def __init__(self, session_id: str, **kwargs):
        super().__init__(f"Cannot update active session {session_id}", session_id=session_id, **kwargs)

    def get_suggestions(self) -> List[str]:
        return ["Stop the session before editing it"]


class SessionNotLive(ParkError):
    """Observer attach to a session without a live instance."""
    code = "SESSION_NOT_LIVE"
    default_message = "Session not found or not active"
    category = ErrorCategory.STATE
    severity = ErrorSeverity.INFO
    status_code = 409

    def __init__(self, session_id: str, **kwargs):
        super().__init__(self.default_message, session_id=session_id, **kwargs)


# Process errors

class SpawnError(ParkError):
    """The OS refused to start the session's process."""
    code = "SPAWN_ERROR"
    default_message = "Failed to start session process"
    category = ErrorCategory.PROCESS
    severity = ErrorSeverity.ERROR
    status_code = 500


# Infrastructure errors

class DatabaseError(ParkError):
    """Database-related errors."""
    code = "DATABASE_ERROR"
    default_message = "Database error occurred"
    category = ErrorCategory.DATABASE
    severity = ErrorSeverity.ERROR


class ConfigurationError(ParkError):
    """Configuration errors."""
    code = "CONFIG_ERROR"
    default_message = "Configuration error"
    category = ErrorCategory.CONFIGURATION
    severity = ErrorSeverity.ERROR

    def get_suggestions(self) -> List[str]:
        return [
            "Check your configuration file syntax",
            "Verify PARK_* environment variables",
        ]


@contextmanager
def error_context(component: str, operation: str, session_id: Optional[str] = None, **metadata):
    """
    Attach component/operation context to engine errors raised in the block.

    Engine errors are annotated and re-raised unchanged. Anything else is
    logged and wrapped in a ParkError so callers only ever see the hierarchy.
    """
    try:
        yield
    except ParkError as e:
        e.context.component = e.context.component or component
        e.context.operation = e.context.operation or operation
        if session_id and not e.context.session_id:
            e.context.session_id = session_id
        e.context.metadata.update(metadata)
        raise
    except Exception as e:
        wrapped = ParkError(
            message=str(e) or type(e).__name__,
            context=ErrorContext(
                component=component,
                operation=operation,
                session_id=session_id,
                metadata=metadata,
            ),
            cause=e,
        )
        logger.error("unexpected_error_in_context", **wrapped.to_log(), exc_info=True)
        raise wrapped from e


__all__ = [
    'ParkError',
    'ErrorContext',
    'ErrorSeverity',
    'ErrorCategory',
    'InvalidInput',
    'InvalidDirectory',
    'NotFound',
    'AlreadyRunning',
    'NotRunning',
    'ActiveSessionImmutable',
    'SessionNotLive',
    'SpawnError',
    'DatabaseError',
    'ConfigurationError',
    'error_context',
]
