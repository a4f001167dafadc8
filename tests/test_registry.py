"""
Tests for the session runtime registry.
"""

import asyncio
import re

import pytest

from park_engine.managers.registry import SessionRegistry
from park_engine.models.session import SessionStatus, SessionType
from park_engine.process.adapter import ProcessExit
from park_engine.utils.config import ShellConfig
from park_engine.utils.errors import (
    AlreadyRunning,
    InvalidDirectory,
    NotRunning,
    SessionNotLive,
    SpawnError,
)
from tests.utils.async_helpers import wait_for_condition
from tests.utils.mock_helpers import RecordingObserver, StalledObserver


async def _exited(observer: RecordingObserver) -> bool:
    return await wait_for_condition(lambda: "exit" in observer.types, timeout=2.0)


class TestSpawn:
    """Test spawning and registration."""

    @pytest.mark.asyncio
    async def test_spawn_registers_and_persists(self, registry, spawner, store, make_session):
        session = await make_session(session_type=SessionType.INTERACTIVE_PTY)

        instance = await registry.spawn(session)

        handle = spawner.last
        assert handle.started
        assert instance.pid == handle.pid
        assert instance.is_pty
        assert registry.is_live(session.id)
        assert registry.live_ids() == [session.id]

        record = await store.get_by_id(session.id)
        assert record.status == SessionStatus.ACTIVE
        assert record.pid == handle.pid

        call = spawner.calls[0]
        assert call["command"] == "echo hi"
        assert call["is_pty"] is True
        assert call["shell"] == "/bin/sh"
        assert (call["cols"], call["rows"]) == (80, 30)

    @pytest.mark.asyncio
    async def test_spawn_twice(self, registry, make_session):
        session = await make_session()
        await registry.spawn(session)

        with pytest.raises(AlreadyRunning):
            await registry.spawn(session)

    @pytest.mark.asyncio
    async def test_missing_directory(self, registry, spawner, store, make_session, temp_dir):
        session = await make_session(directory=str(temp_dir / "gone"))

        with pytest.raises(InvalidDirectory):
            await registry.spawn(session)

        assert spawner.calls == []
        assert not registry.is_live(session.id)
        assert (await store.get_by_id(session.id)).status == SessionStatus.CONFIGURED

    @pytest.mark.asyncio
    async def test_spawn_failure_leaves_nothing_live(self, registry, spawner, make_session):
        spawner.fail_with = SpawnError("no such shell")
        session = await make_session()

        with pytest.raises(SpawnError):
            await registry.spawn(session)
        assert not registry.is_live(session.id)

    @pytest.mark.asyncio
    async def test_spawned_event(self, registry, spawner, make_session):
        events = []
        registry.register_event_handler("session_spawned", lambda event, data: events.append(data))
        session = await make_session()

        await registry.spawn(session)

        assert events == [{"session_id": session.id, "pid": spawner.last.pid}]


class TestOutput:
    """Test buffering and fan-out."""

    @pytest.mark.asyncio
    async def test_output_is_buffered_with_eviction(self, registry, spawner, make_session):
        session = await make_session()
        await registry.spawn(session)

        await spawner.last.emit(*[str(i) for i in range(7)])

        # capacity is 5 in tests
        assert registry.buffer_snapshot(session.id) == ["2", "3", "4", "5", "6"]

    @pytest.mark.asyncio
    async def test_history_then_live_output(self, registry, spawner, make_session):
        session = await make_session()
        await registry.spawn(session)
        handle = spawner.last

        await handle.emit("a", "b")
        observer = RecordingObserver()
        await registry.attach(session.id, observer)
        await handle.emit("c", "d")
        await handle.finish(0)

        assert await _exited(observer)
        assert observer.messages == [
            {"type": "history", "data": "ab"},
            {"type": "output", "data": "c"},
            {"type": "output", "data": "d"},
            {"type": "exit", "code": 0},
        ]

    @pytest.mark.asyncio
    async def test_no_history_when_buffer_empty(self, registry, spawner, make_session):
        session = await make_session()
        await registry.spawn(session)
        observer = RecordingObserver()

        await registry.attach(session.id, observer)
        await spawner.last.emit("x")
        await spawner.last.finish(0)

        assert await _exited(observer)
        assert observer.types == ["output", "exit"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("attach_after", [0, 1, 3, 8, 20, 60])
    async def test_attach_during_output_has_no_gap_or_duplicate(
        self, registry, spawner, make_session, attach_after
    ):
        session = await make_session()
        await registry.spawn(session)
        handle = spawner.last
        observer = RecordingObserver()

        async def produce():
            for i in range(40):
                await handle.emit(f"<{i}>")
                await asyncio.sleep(0)

        async def attach():
            for _ in range(attach_after):
                await asyncio.sleep(0)
            await registry.attach(session.id, observer)

        await asyncio.gather(produce(), attach())
        await handle.finish(0)
        assert await _exited(observer)

        seen = [int(n) for n in re.findall(r"<(\d+)>", observer.output_text())]
        assert seen, "observer saw no output"
        assert seen == list(range(seen[0], 40))
        assert len(observer.of_type("history")) <= 1
        assert observer.types[-1] == "exit"

    @pytest.mark.asyncio
    async def test_all_observers_see_same_order(self, registry, spawner, make_session):
        session = await make_session(session_type=SessionType.INTERACTIVE_PTY)
        await registry.spawn(session)
        first, second = RecordingObserver(), RecordingObserver()
        await registry.attach(session.id, first)
        await registry.attach(session.id, second)

        await spawner.last.emit("1", "2", "3")
        await spawner.last.finish(0)

        assert await _exited(first) and await _exited(second)
        assert first.messages == second.messages

    @pytest.mark.asyncio
    async def test_broken_observer_does_not_affect_others(self, registry, spawner, make_session):
        session = await make_session()
        await registry.spawn(session)
        broken = RecordingObserver(fail_after=1)
        healthy = RecordingObserver()
        await registry.attach(session.id, broken)
        await registry.attach(session.id, healthy)

        await spawner.last.emit("a", "b", "c")
        assert await wait_for_condition(lambda: registry.observer_count(session.id) == 1)
        await spawner.last.finish(0)

        assert await _exited(healthy)
        assert healthy.output_text() == "abc"
        assert broken.closed

    @pytest.mark.asyncio
    async def test_stalled_observer_is_dropped(self, registry, spawner, make_session):
        session = await make_session()
        await registry.spawn(session)
        stalled = StalledObserver()
        healthy = RecordingObserver()
        await registry.attach(session.id, stalled)
        await registry.attach(session.id, healthy)

        # queue limit is 50 in tests; the producer must never wait on it
        chunks = [f"{i};" for i in range(80)]

        async def produce():
            for chunk in chunks:
                await spawner.last.emit(chunk)
                await asyncio.sleep(0)

        await asyncio.wait_for(produce(), timeout=2.0)

        assert await wait_for_condition(lambda: stalled.closed)
        assert registry.observer_count(session.id) == 1
        assert await wait_for_condition(lambda: healthy.output_text() == "".join(chunks))


class TestAttachDetach:
    """Test observer membership."""

    @pytest.mark.asyncio
    async def test_attach_not_live(self, registry, make_session):
        session = await make_session()

        with pytest.raises(SessionNotLive) as exc_info:
            await registry.attach(session.id, RecordingObserver())
        assert exc_info.value.message == "Session not found or not active"

    @pytest.mark.asyncio
    async def test_attach_unknown(self, registry):
        with pytest.raises(SessionNotLive):
            await registry.attach("nope", RecordingObserver())

    @pytest.mark.asyncio
    async def test_detach_is_idempotent(self, registry, spawner, make_session):
        session = await make_session()
        await registry.spawn(session)
        observer = RecordingObserver()
        await registry.attach(session.id, observer)

        await registry.detach(session.id, observer)
        await registry.detach(session.id, observer)
        await registry.detach("unknown", observer)

        await spawner.last.emit("late")
        await asyncio.sleep(0.05)
        assert registry.observer_count(session.id) == 0
        assert observer.messages == []

    @pytest.mark.asyncio
    async def test_attach_same_observer_twice(self, registry, spawner, make_session):
        session = await make_session()
        await registry.spawn(session)
        observer = RecordingObserver()

        await registry.attach(session.id, observer)
        await registry.attach(session.id, observer)
        await spawner.last.emit("x")
        await spawner.last.finish(0)

        assert await _exited(observer)
        assert observer.types == ["output", "exit"]


class TestInputAndResize:
    """Test client-driven input and resize."""

    @pytest.mark.asyncio
    async def test_input_to_pty(self, registry, spawner, make_session):
        session = await make_session(session_type=SessionType.INTERACTIVE_PTY)
        await registry.spawn(session)

        await registry.send_input(session.id, "ls\n")

        assert spawner.last.inputs == ["ls\n"]

    @pytest.mark.asyncio
    async def test_input_to_plain_is_discarded(self, registry, spawner, make_session):
        session = await make_session()
        await registry.spawn(session)

        await registry.send_input(session.id, "ls\n")

        assert spawner.last.inputs == []

    @pytest.mark.asyncio
    async def test_input_not_live_is_noop(self, registry):
        await registry.send_input("nope", "ls\n")

    @pytest.mark.asyncio
    async def test_resize_pty(self, registry, spawner, make_session):
        session = await make_session(session_type=SessionType.INTERACTIVE_PTY)
        await registry.spawn(session)

        await registry.resize(session.id, 120, 40)

        assert spawner.last.resizes == [(120, 40)]

    @pytest.mark.asyncio
    async def test_resize_plain_ignored(self, registry, spawner, make_session):
        session = await make_session()
        await registry.spawn(session)

        await registry.resize(session.id, 120, 40)
        await registry.resize("nope", 120, 40)

        assert spawner.last.resizes == []


class TestExit:
    """Test exit handling."""

    @pytest.mark.asyncio
    async def test_zero_exit_completes(self, registry, spawner, store, make_session):
        session = await make_session()
        await registry.spawn(session)

        await spawner.last.finish(0)

        record = await store.get_by_id(session.id)
        assert record.status == SessionStatus.COMPLETED
        assert record.pid is None
        assert not registry.is_live(session.id)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code,signal", [(1, None), (-9, "SIGKILL")])
    async def test_nonzero_exit_stops(self, registry, spawner, store, make_session, code, signal):
        session = await make_session()
        await registry.spawn(session)

        await spawner.last.finish(code, signal)

        record = await store.get_by_id(session.id)
        assert record.status == SessionStatus.STOPPED
        assert record.pid is None

    @pytest.mark.asyncio
    async def test_exit_event_fires_once(self, registry, spawner, make_session):
        session = await make_session()
        await registry.spawn(session)
        observer = RecordingObserver()
        await registry.attach(session.id, observer)
        handle = spawner.last

        # a duplicate exit notification must not produce a second event
        await handle.on_exit(ProcessExit(code=2))
        await handle.on_exit(ProcessExit(code=0))

        assert await _exited(observer)
        await asyncio.sleep(0.05)
        assert observer.types == ["exit"]
        assert observer.messages[-1] == {"type": "exit", "code": 2}

    @pytest.mark.asyncio
    async def test_exited_event(self, registry, spawner, make_session):
        events = []

        async def handler(event, data):
            events.append((event, data))

        registry.register_event_handler("session_exited", handler)
        session = await make_session()
        await registry.spawn(session)
        await spawner.last.finish(1)

        assert events == [("session_exited", {"session_id": session.id, "code": 1, "signal": None})]


class TestStop:
    """Test user-initiated stop."""

    @pytest.mark.asyncio
    async def test_stop_not_running(self, registry, make_session):
        session = await make_session()

        with pytest.raises(NotRunning):
            await registry.stop_session(session.id)

    @pytest.mark.asyncio
    async def test_stop(self, registry, spawner, store, make_session):
        session = await make_session()
        await registry.spawn(session)
        observer = RecordingObserver()
        await registry.attach(session.id, observer)

        await registry.stop_session(session.id)

        assert not registry.is_live(session.id)
        assert spawner.last.signals == ["SIGTERM"]
        record = await store.get_by_id(session.id)
        assert record.status == SessionStatus.STOPPED
        assert record.pid is None

        assert await _exited(observer)
        assert observer.messages[-1] == {"type": "exit", "code": -15}

        with pytest.raises(NotRunning):
            await registry.stop_session(session.id)

    @pytest.mark.asyncio
    async def test_clean_exit_after_stop_stays_stopped(self, registry, spawner, store, make_session):
        spawner.exit_on_terminate = False
        session = await make_session()
        await registry.spawn(session)

        await registry.stop_session(session.id)
        await spawner.last.finish(0)

        assert (await store.get_by_id(session.id)).status == SessionStatus.STOPPED

    @pytest.mark.asyncio
    async def test_stop_escalates_to_kill(self, registry, spawner, make_session):
        spawner.exit_on_terminate = False
        session = await make_session()
        await registry.spawn(session)

        await registry.stop_session(session.id)

        # shutdown_timeout is 0.5s in tests
        assert await wait_for_condition(lambda: "SIGKILL" in spawner.last.signals, timeout=2.0)

    @pytest.mark.asyncio
    async def test_relaunch_starts_fresh(self, registry, spawner, store, make_session):
        spawner.exit_on_terminate = False
        session = await make_session()
        await registry.spawn(session)
        old = spawner.last
        await old.emit("first run")
        await registry.stop_session(session.id)

        await registry.spawn(await store.get_by_id(session.id))
        new = spawner.last
        assert registry.buffer_snapshot(session.id) == []

        # late exit of the previous process must not touch the new instance
        await old.finish(0)
        assert registry.is_live(session.id)
        record = await store.get_by_id(session.id)
        assert record.status == SessionStatus.ACTIVE
        assert record.pid == new.pid

    @pytest.mark.asyncio
    async def test_concurrent_stops(self, registry, spawner, store, make_session):
        spawner.exit_on_terminate = False
        session = await make_session()
        await registry.spawn(session)

        results = await asyncio.gather(
            registry.stop_session(session.id),
            registry.stop_session(session.id),
            return_exceptions=True,
        )

        assert results.count(None) == 1
        assert sum(isinstance(r, NotRunning) for r in results) == 1
        assert spawner.last.signals == ["SIGTERM"]
        record = await store.get_by_id(session.id)
        assert record.status == SessionStatus.STOPPED
        assert record.pid is None


class TestShutdown:
    """Test stopping everything."""

    @pytest.mark.asyncio
    async def test_shutdown_terminates_then_kills(self, registry, spawner, store, make_session):
        polite = await make_session()
        await registry.spawn(polite)
        spawner.exit_on_terminate = False
        stubborn = await make_session()
        await registry.spawn(stubborn)

        await registry.shutdown(timeout=0.1)

        assert registry.live_ids() == []
        assert spawner.handles[0].signals == ["SIGTERM"]
        assert spawner.handles[1].signals == ["SIGTERM", "SIGKILL"]
        for session in (polite, stubborn):
            record = await store.get_by_id(session.id)
            assert record.status == SessionStatus.STOPPED
            assert record.pid is None

    @pytest.mark.asyncio
    async def test_manager_stop_shuts_sessions_down(self, store, session_config, spawner, make_session):
        registry = SessionRegistry(store, session_config, ShellConfig(default_shell="/bin/sh"), spawner=spawner)
        await registry.initialize()
        await registry.start()
        session = await make_session()
        await registry.spawn(session)

        await registry.stop()

        assert registry.live_ids() == []
        assert spawner.last.signals == ["SIGTERM"]
        record = await store.get_by_id(session.id)
        assert record.status == SessionStatus.STOPPED
        assert record.pid is None

    @pytest.mark.asyncio
    async def test_health_check(self, registry, make_session):
        session = await make_session()
        await registry.spawn(session)
        await registry.attach(session.id, RecordingObserver())

        status = await registry.health_check()
        assert status.healthy
        assert status.details == {"live_sessions": 1, "observers": 1}


@pytest.mark.pty
class TestRealProcesses:
    """End-to-end through real processes."""

    @pytest.mark.asyncio
    async def test_echo_scenario(self, real_registry, store, make_session):
        session = await make_session(command="sleep 0.2; echo hi")
        await real_registry.spawn(session)
        observer = RecordingObserver()
        await real_registry.attach(session.id, observer)

        assert await wait_for_condition(lambda: "exit" in observer.types, timeout=10)
        assert observer.output_text() == "hi\n"
        assert observer.messages[-1] == {"type": "exit", "code": 0}
        assert (await store.get_by_id(session.id)).status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_pty_input_shared_by_observers(self, real_registry, make_session):
        session = await make_session(
            command="read line; echo got:$line", session_type=SessionType.INTERACTIVE_PTY
        )
        await real_registry.spawn(session)
        first, second = RecordingObserver(), RecordingObserver()
        await real_registry.attach(session.id, first)
        await real_registry.attach(session.id, second)

        await real_registry.send_input(session.id, "ls\n")

        assert await wait_for_condition(lambda: "exit" in first.types and "exit" in second.types, timeout=10)
        assert "got:ls" in first.output_text()
        assert first.of_type("output") == second.of_type("output")


class TestLockBookkeeping:
    """Test that per-session locks do not pile up."""

    @pytest.mark.asyncio
    async def test_unknown_ids_leave_no_lock(self, registry):
        with pytest.raises(SessionNotLive):
            await registry.attach("missing", RecordingObserver())
        await registry.detach("missing", RecordingObserver())
        await registry.send_input("missing", "ls\n")
        await registry.resize("missing", 80, 24)
        with pytest.raises(NotRunning):
            await registry.stop_session("missing")

        assert registry._locks == {}

    @pytest.mark.asyncio
    async def test_forget_keeps_live_sessions(self, registry, spawner, make_session):
        session = await make_session()
        await registry.spawn(session)

        registry.forget(session.id)
        assert session.id in registry._locks

        await spawner.last.finish(0)
        registry.forget(session.id)
        assert session.id not in registry._locks
