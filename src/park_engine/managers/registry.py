"""
Session runtime registry.

The single authority over which sessions are live. For each live session it
owns the process handle, the output ring buffer and the set of attached
observers, and it fans output out to those observers.

Every operation on a session id (spawn, attach, detach, input, resize, stop,
output arrival, exit arrival) runs under that id's lock, so buffer and
observer-set updates are never interleaved. Delivery to observers goes
through one bounded queue and sender task per observer; the producer never
waits on a slow channel.
"""

import asyncio
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List, Set, Callable, Awaitable

from .base import BaseManager, ManagerConfig
from ..models.session import Session, SessionStatus, utcnow
from ..process.adapter import ProcessHandle, ProcessExit, spawn_process
from ..storage.session_store import SessionStore
from ..streaming.buffer import OutputRingBuffer
from ..transport.base import Observer, history_event, output_event, exit_event
from ..utils.config import SessionConfig, ShellConfig
from ..utils.errors import AlreadyRunning, InvalidDirectory, NotRunning, SessionNotLive


Spawner = Callable[..., Awaitable[ProcessHandle]]

# Marks the end of an observer's queue.
_CLOSE = object()

# Settle time for exit callbacks after a forced kill during shutdown.
KILL_SETTLE_TIMEOUT = 1.0


class ObserverSubscription:
    """Delivery queue and sender task for one attached observer."""

    def __init__(
        self,
        session_id: str,
        observer: Observer,
        limit: int,
        on_failure: Callable[["ObserverSubscription", str], Awaitable[None]],
        logger: Any,
    ):
        self.session_id = session_id
        self.observer = observer
        self.limit = limit
        self._on_failure = on_failure
        self._logger = logger
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self.delivered = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def start(self) -> None:
        self._task = asyncio.create_task(
            self._run(), name=f"observer-{self.session_id}-{id(self.observer):x}"
        )

    def offer(self, message: Dict[str, Any]) -> bool:
        """Queue a message without waiting. False when the queue is full."""
        if self._queue.qsize() >= self.limit:
            return False
        self._queue.put_nowait(message)
        return True

    def finish(self) -> None:
        """Deliver what is queued, then stop."""
        self._queue.put_nowait(_CLOSE)

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _run(self) -> None:
        while True:
            message = await self._queue.get()
            if message is _CLOSE:
                return
            try:
                await self.observer.send(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.warning(
                    "observer_send_failed",
                    session_id=self.session_id,
                    error=str(e),
                )
                await self._on_failure(self, "send failed")
                return
            self.delivered += 1


@dataclass
class LiveInstance:
    """Runtime state of a session with a running process."""
    session: Session
    handle: ProcessHandle
    buffer: OutputRingBuffer
    lock: asyncio.Lock
    subscriptions: Dict[Observer, ObserverSubscription] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utcnow)
    stopping: bool = False
    exited: bool = False

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def pid(self) -> int:
        return self.handle.pid

    @property
    def is_pty(self) -> bool:
        return self.handle.supports_resize

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "pid": self.pid,
            "pty": self.is_pty,
            "observers": len(self.subscriptions),
            "buffered_chunks": len(self.buffer),
            "started_at": self.started_at.isoformat(),
        }


class SessionRegistry(BaseManager):
    """Live session instances, their output buffers and observers."""

    def __init__(
        self,
        store: SessionStore,
        session_config: Optional[SessionConfig] = None,
        shell_config: Optional[ShellConfig] = None,
        spawner: Optional[Spawner] = None,
    ):
        session_config = session_config or SessionConfig()
        shell_config = shell_config or ShellConfig()
        super().__init__(ManagerConfig(
            name="registry",
            custom_config=session_config.model_dump(),
        ))

        self.store = store
        self.session_config = session_config
        self.shell_config = shell_config
        self._spawner: Spawner = spawner or spawn_process
        self._live: Dict[str, LiveInstance] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._background: Set[asyncio.Task] = set()

    async def _initialize(self) -> None:
        pass

    async def _stop(self) -> None:
        await self.shutdown(self.session_config.shutdown_timeout)
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def _health_check(self) -> Dict[str, Any]:
        return {
            "live_sessions": len(self._live),
            "observers": sum(len(i.subscriptions) for i in self._live.values()),
        }

    # Queries

    def is_live(self, session_id: str) -> bool:
        return session_id in self._live

    def live_ids(self) -> List[str]:
        return list(self._live)

    def get_instance(self, session_id: str) -> Optional[LiveInstance]:
        return self._live.get(session_id)

    def buffer_snapshot(self, session_id: str) -> List[str]:
        """Buffered output chunks of a live session, oldest first."""
        instance = self._live.get(session_id)
        return instance.buffer.snapshot() if instance else []

    def observer_count(self, session_id: str) -> int:
        instance = self._live.get(session_id)
        return len(instance.subscriptions) if instance else 0

    def forget(self, session_id: str) -> None:
        """Drop the lock of a session whose record is gone. Live sessions keep theirs."""
        if session_id in self._live:
            return
        lock = self._locks.get(session_id)
        if lock is not None and not lock.locked():
            del self._locks[session_id]

    # Operations

    async def spawn(self, session: Session) -> LiveInstance:
        """
        Start a process for the session and register it as live.

        Output handling is wired up only after the instance is registered, so
        the first output chunk always lands in the buffer.

        Raises:
            AlreadyRunning: A live instance exists for this id
            InvalidDirectory: The working directory does not exist
            SpawnError: The OS refused to start the process
        """
        lock = self._lock_for(session.id, create=True)
        async with lock:
            if session.id in self._live:
                raise AlreadyRunning(session.id)

            if not await asyncio.to_thread(os.path.isdir, session.directory):
                raise InvalidDirectory(session.directory, session_id=session.id)

            handle = await self._spawner(
                session.command,
                session.directory,
                session.type.is_pty,
                shell=self.shell_config.default_shell,
                cols=self.session_config.pty_cols,
                rows=self.session_config.pty_rows,
            )

            instance = LiveInstance(
                session=session,
                handle=handle,
                buffer=OutputRingBuffer(self.session_config.buffer_capacity),
                lock=lock,
            )
            self._live[session.id] = instance

            try:
                updated = await self.store.update(
                    session.id, {"status": SessionStatus.ACTIVE, "pid": handle.pid}
                )
            except Exception:
                del self._live[session.id]
                handle.kill()
                raise
            if updated is not None:
                instance.session = updated

            handle.start(
                lambda chunk: self._on_output(instance, chunk),
                lambda result: self._on_exit(instance, result),
            )

        self.logger.info(
            "session_spawned",
            session_id=session.id,
            pid=handle.pid,
            pty=session.type.is_pty,
        )
        await self._notify_event("session_spawned", {"session_id": session.id, "pid": handle.pid})
        return instance

    async def attach(self, session_id: str, observer: Observer) -> None:
        """
        Attach an observer to a live session.

        The buffered output is queued as one history event before the
        observer joins the live set; no chunk can slip in between.

        Raises:
            SessionNotLive: The session has no live instance
        """
        async with self._lock_for(session_id):
            instance = self._live.get(session_id)
            if instance is None or instance.exited:
                raise SessionNotLive(session_id)
            if observer in instance.subscriptions:
                return

            subscription = ObserverSubscription(
                session_id,
                observer,
                self.session_config.observer_queue_size,
                lambda sub, reason: self._drop_observer(instance, sub, reason),
                self.logger,
            )
            history = instance.buffer.joined()
            if history:
                subscription.offer(history_event(history))
            instance.subscriptions[observer] = subscription
            subscription.start()

        self.logger.info(
            "observer_attached",
            session_id=session_id,
            observers=len(instance.subscriptions),
            history_chars=len(history),
        )

    async def detach(self, session_id: str, observer: Observer) -> None:
        """Remove an observer; a no-op when it is not attached."""
        async with self._lock_for(session_id):
            instance = self._live.get(session_id)
            if instance is None:
                return
            subscription = instance.subscriptions.pop(observer, None)
            if subscription is None:
                return
            subscription.finish()

        self.logger.info(
            "observer_detached",
            session_id=session_id,
            observers=len(instance.subscriptions),
        )

    async def send_input(self, session_id: str, data: str) -> None:
        """Write input to a live session; ignored when not live."""
        async with self._lock_for(session_id):
            instance = self._live.get(session_id)
            if instance is None:
                self.logger.debug("input_ignored", session_id=session_id, reason="not live")
                return
            await instance.handle.write(data)

    async def resize(self, session_id: str, cols: int, rows: int) -> None:
        """Resize a live PTY session; ignored otherwise."""
        async with self._lock_for(session_id):
            instance = self._live.get(session_id)
            if instance is None or not instance.is_pty:
                self.logger.debug("resize_ignored", session_id=session_id)
                return
            await instance.handle.resize(cols, rows)

    async def stop_session(self, session_id: str) -> None:
        """
        Terminate a live session and mark it stopped.

        Observers still receive the exit event once the process is reaped.

        Raises:
            NotRunning: The session has no live instance
        """
        async with self._lock_for(session_id):
            instance = self._live.get(session_id)
            if instance is None:
                raise NotRunning(session_id)

            instance.stopping = True
            instance.handle.terminate()
            del self._live[session_id]
            await self.store.update(session_id, {"status": SessionStatus.STOPPED, "pid": None})

        self._track(asyncio.create_task(self._escalate(instance)))
        self.logger.info("session_stopped", session_id=session_id, pid=instance.pid)
        await self._notify_event("session_stopped", {"session_id": session_id, "pid": instance.pid})

    async def shutdown(self, timeout: float) -> None:
        """
        Stop every live session.

        SIGTERM first, SIGKILL for whatever is still running after
        ``timeout`` seconds. Records end up stopped regardless.
        """
        instances = list(self._live.values())
        if not instances:
            return

        self.logger.info("registry_shutdown", live_sessions=len(instances), timeout=timeout)
        for instance in instances:
            instance.stopping = True
            instance.handle.terminate()

        waiters = [asyncio.create_task(i.handle.wait()) for i in instances]
        _, pending = await asyncio.wait(waiters, timeout=timeout)

        if pending:
            stubborn = [i for i in instances if i.handle.is_running]
            self.logger.warning("killing_sessions", session_ids=[i.session_id for i in stubborn])
            for instance in stubborn:
                instance.handle.kill()
            _, pending = await asyncio.wait(pending, timeout=KILL_SETTLE_TIMEOUT)
            for waiter in pending:
                waiter.cancel()

        for instance in instances:
            try:
                await self.store.update(instance.session_id, {"status": SessionStatus.STOPPED, "pid": None})
            except Exception as e:
                self.logger.error("shutdown_persist_failed", session_id=instance.session_id, error=str(e))
            if self._live.get(instance.session_id) is instance:
                del self._live[instance.session_id]
            for subscription in instance.subscriptions.values():
                subscription.cancel()
            instance.subscriptions.clear()

    # Adapter callbacks

    async def _on_output(self, instance: LiveInstance, chunk: str) -> None:
        async with instance.lock:
            instance.buffer.append(chunk)
            event = output_event(chunk)
            for subscription in list(instance.subscriptions.values()):
                if not subscription.offer(event):
                    self._remove_subscription(instance, subscription, "queue overflow")

    async def _on_exit(self, instance: LiveInstance, result: ProcessExit) -> None:
        session_id = instance.session_id
        async with instance.lock:
            if instance.exited:
                return
            instance.exited = True

            status = None
            if not instance.stopping:
                status = SessionStatus.COMPLETED if result.code == 0 else SessionStatus.STOPPED
                try:
                    await self.store.update(session_id, {"status": status, "pid": None})
                except Exception as e:
                    self.logger.error("exit_persist_failed", session_id=session_id, error=str(e))

            event = exit_event(result.code)
            for subscription in list(instance.subscriptions.values()):
                if subscription.offer(event):
                    subscription.finish()
                else:
                    self._remove_subscription(instance, subscription, "queue overflow")
            instance.subscriptions.clear()

            if self._live.get(session_id) is instance:
                del self._live[session_id]

        self.logger.info(
            "session_exited",
            session_id=session_id,
            code=result.code,
            signal=result.signal,
            status=status.value if status else None,
        )
        await self._notify_event("session_exited", {
            "session_id": session_id,
            "code": result.code,
            "signal": result.signal,
        })

    # Internals

    def _lock_for(self, session_id: str, create: bool = False) -> asyncio.Lock:
        """
        The lock serializing work on ``session_id``.

        Only spawn registers a lock. An id that was never spawned has no live
        state to protect, so callers get a private lock that is not kept.
        """
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            if create:
                self._locks[session_id] = lock
        return lock

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _remove_subscription(self, instance: LiveInstance, subscription: ObserverSubscription, reason: str) -> None:
        """Drop an observer from the live set. Caller holds the instance lock."""
        if instance.subscriptions.get(subscription.observer) is subscription:
            del instance.subscriptions[subscription.observer]
        subscription.cancel()
        self.logger.warning("observer_dropped", session_id=instance.session_id, reason=reason)
        self._track(asyncio.create_task(self._close_observer(subscription.observer, reason)))

    async def _drop_observer(self, instance: LiveInstance, subscription: ObserverSubscription, reason: str) -> None:
        async with instance.lock:
            if instance.subscriptions.get(subscription.observer) is subscription:
                del instance.subscriptions[subscription.observer]
        self.logger.warning("observer_dropped", session_id=instance.session_id, reason=reason)
        await self._close_observer(subscription.observer, reason)

    async def _close_observer(self, observer: Observer, reason: str) -> None:
        if observer.closed:
            return
        try:
            await observer.close(reason)
        except Exception as e:
            self.logger.debug("observer_close_failed", error=str(e))

    async def _escalate(self, instance: LiveInstance) -> None:
        """Force-kill a stopped session that ignores SIGTERM."""
        try:
            await asyncio.wait_for(instance.handle.wait(), self.session_config.shutdown_timeout)
        except asyncio.TimeoutError:
            self.logger.warning("session_kill_escalated", session_id=instance.session_id, pid=instance.pid)
            instance.handle.kill()


__all__ = ['SessionRegistry', 'LiveInstance', 'ObserverSubscription']
