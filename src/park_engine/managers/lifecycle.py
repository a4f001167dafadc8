"""
Session lifecycle controller.

Governs a session's persisted status:

    configured -> active -> {completed, stopped}
    stopped / completed -> active   (relaunch, new live instance)

Active sessions can be stopped or deleted but never edited. Everything that
touches a process is delegated to the SessionRegistry.
"""

import asyncio
import os
import uuid
from typing import Dict, Any, List, Iterable

import psutil
from pydantic import ValidationError

from .base import BaseManager, ManagerConfig
from .registry import SessionRegistry
from ..models.session import Session, SessionStatus, SessionCreate, SessionUpdate
from ..storage.session_store import SessionStore
from ..utils.errors import (
    ParkError,
    InvalidInput,
    InvalidDirectory,
    NotFound,
    AlreadyRunning,
    NotRunning,
    ActiveSessionImmutable,
    SpawnError,
    error_context,
)
from ..utils.logging import log_function_call, get_logger


def _invalid_input(error: ValidationError) -> InvalidInput:
    fields = []
    problems = []
    for item in error.errors():
        name = ".".join(str(part) for part in item.get("loc", ())) or "input"
        fields.append(name)
        problems.append(f"{name}: {item.get('msg')}")
    return InvalidInput("Invalid session fields: " + "; ".join(problems), fields=fields)


class SessionLifecycle(BaseManager):
    """Creates, launches, edits and removes sessions."""

    def __init__(self, store: SessionStore, registry: SessionRegistry):
        super().__init__(ManagerConfig(name="lifecycle"))
        self.store = store
        self.registry = registry

    async def _initialize(self) -> None:
        await self.store.initialize()
        await self.reconcile()

    async def _stop(self) -> None:
        pass

    async def _health_check(self) -> Dict[str, Any]:
        sessions = await self.store.list_all()
        return {
            "total": len(sessions),
            "active": sum(1 for s in sessions if s.is_active),
            "live": len(self.registry.live_ids()),
        }

    async def reconcile(self) -> int:
        """
        Correct records left active by a previous run.

        Any active record whose pid no longer exists is marked stopped with
        its pid cleared. Returns the number of records corrected.
        """
        corrected = 0
        for session in await self.store.list_by_status(SessionStatus.ACTIVE):
            if session.pid is not None and psutil.pid_exists(session.pid):
                self.logger.warning("orphaned_session_still_running", session_id=session.id, pid=session.pid)
                continue
            await self.store.update(session.id, {"status": SessionStatus.STOPPED, "pid": None})
            corrected += 1
            self.logger.info("session_reconciled", session_id=session.id, pid=session.pid)

        if corrected:
            self.logger.info("reconciliation_complete", corrected=corrected)
        return corrected

    # Queries

    async def get(self, session_id: str) -> Session:
        session = await self.store.get_by_id(session_id)
        if session is None:
            raise NotFound(session_id)
        return session

    async def list_all(self) -> List[Session]:
        return await self.store.list_all()

    # Operations

    @log_function_call(get_logger("park-engine.lifecycle"))
    async def create_config(self, data: Dict[str, Any]) -> Session:
        """
        Validate and persist a new session in the configured state.

        Raises:
            InvalidInput: Missing or malformed fields
            InvalidDirectory: The directory does not exist
        """
        try:
            request = SessionCreate.model_validate(data)
        except ValidationError as e:
            raise _invalid_input(e) from e

        await self._require_directory(request.directory)

        session = Session(
            id=str(uuid.uuid4()),
            name=request.name,
            directory=request.directory,
            command=request.command,
            type=request.type,
        )
        with error_context("lifecycle", "create_config", session_id=session.id):
            await self.store.create(session)

        self.logger.info("session_configured", session_id=session.id, name=session.name, type=session.type.value)
        return session

    async def launch(self, session_id: str) -> Session:
        """
        Start a live instance for a configured, stopped or completed session.

        Raises:
            NotFound: Unknown id
            AlreadyRunning: The session is active
            InvalidDirectory: The directory vanished since the record was made
            SpawnError: The process could not be started; the record is
                marked stopped
        """
        session = await self.get(session_id)
        if session.is_active or self.registry.is_live(session_id):
            raise AlreadyRunning(session_id)

        try:
            instance = await self.registry.spawn(session)
        except (InvalidDirectory, AlreadyRunning):
            raise
        except Exception as e:
            await self.store.update(session_id, {"status": SessionStatus.STOPPED, "pid": None})
            self.logger.error("session_launch_failed", session_id=session_id, error=str(e))
            if isinstance(e, SpawnError):
                raise
            raise SpawnError(f"Failed to launch session {session_id}: {e}", cause=e, session_id=session_id) from e

        self.logger.info("session_launched", session_id=session_id, pid=instance.pid)
        return instance.session

    async def launch_many(self, session_ids: Iterable[str]) -> List[Session]:
        """Launch each id independently; returns the sessions that started."""
        launched = []
        for session_id in session_ids:
            try:
                launched.append(await self.launch(session_id))
            except ParkError as e:
                self.logger.warning("batch_launch_failed", **{**e.to_log(), "session_id": session_id})
        return launched

    async def create_and_launch(self, data: Dict[str, Any]) -> Session:
        session = await self.create_config(data)
        return await self.launch(session.id)

    async def update(self, session_id: str, fields: Dict[str, Any]) -> Session:
        """
        Edit a non-active session.

        Raises:
            NotFound: Unknown id
            ActiveSessionImmutable: The session is active
            InvalidInput: Unknown or malformed fields
            InvalidDirectory: A new directory does not exist
        """
        session = await self.get(session_id)
        if session.is_active or self.registry.is_live(session_id):
            raise ActiveSessionImmutable(session_id)

        try:
            changes = SessionUpdate.model_validate(fields).changes()
        except ValidationError as e:
            raise _invalid_input(e) from e

        if not changes:
            return session
        if "directory" in changes:
            await self._require_directory(changes["directory"])

        updated = await self.store.update(session_id, changes)
        if updated is None:
            raise NotFound(session_id)

        self.logger.info("session_updated", session_id=session_id, fields=sorted(changes))
        return updated

    async def stop_session(self, session_id: str) -> Session:
        """
        Raises:
            NotFound: Unknown id
            NotRunning: No live instance
        """
        await self.get(session_id)
        await self.registry.stop_session(session_id)
        return await self.get(session_id)

    async def delete(self, session_id: str) -> None:
        """Stop the session if it is live, then remove its record."""
        await self.get(session_id)
        try:
            await self.registry.stop_session(session_id)
        except NotRunning:
            pass

        if not await self.store.delete(session_id):
            raise NotFound(session_id)
        self.registry.forget(session_id)
        self.logger.info("session_deleted", session_id=session_id)

    async def purge_finished(self) -> int:
        """Delete every session that is not active. Returns the count."""
        deleted = 0
        for session in await self.store.list_all():
            if session.is_active or self.registry.is_live(session.id):
                continue
            if await self.store.delete(session.id):
                self.registry.forget(session.id)
                deleted += 1

        self.logger.info("finished_sessions_purged", count=deleted)
        return deleted

    async def _require_directory(self, directory: str) -> None:
        if not await asyncio.to_thread(os.path.isdir, directory):
            raise InvalidDirectory(directory)


__all__ = ['SessionLifecycle']
