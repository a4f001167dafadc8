"""
Pytest configuration and shared fixtures for PARK session engine tests.
"""

import pytest
import tempfile
import shutil
from pathlib import Path
from typing import Generator, AsyncGenerator, Callable, Awaitable

# Add src to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from park_engine.managers.lifecycle import SessionLifecycle
from park_engine.managers.registry import SessionRegistry
from park_engine.models.session import Session, SessionType
from park_engine.storage.database import Database
from park_engine.storage.session_store import SessionStore
from park_engine.utils.config import SessionConfig, ShellConfig
from tests.utils.mock_helpers import FakeSpawner


# Small limits keep eviction and overflow tests cheap.
TEST_SESSION_CONFIG = {
    "buffer_capacity": 5,
    "observer_queue_size": 50,
    "shutdown_timeout": 0.5,
}


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
async def test_db(temp_dir: Path) -> AsyncGenerator[Database, None]:
    """Create a test database."""
    db = Database(temp_dir / "park.db")
    await db.connect()
    yield db
    await db.close()


@pytest.fixture
async def store(test_db: Database) -> SessionStore:
    store = SessionStore(test_db)
    await store.initialize()
    return store


@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig(**TEST_SESSION_CONFIG)


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
async def registry(store: SessionStore, session_config: SessionConfig, spawner: FakeSpawner) -> AsyncGenerator[SessionRegistry, None]:
    """Registry driving scriptable fake processes."""
    registry = SessionRegistry(store, session_config, ShellConfig(default_shell="/bin/sh"), spawner=spawner)
    await registry.initialize()
    yield registry
    await registry.stop()


@pytest.fixture
async def real_registry(store: SessionStore, session_config: SessionConfig) -> AsyncGenerator[SessionRegistry, None]:
    """Registry spawning real processes."""
    registry = SessionRegistry(store, session_config, ShellConfig(default_shell="/bin/sh"))
    await registry.initialize()
    yield registry
    await registry.stop()


@pytest.fixture
async def lifecycle(store: SessionStore, registry: SessionRegistry) -> AsyncGenerator[SessionLifecycle, None]:
    lifecycle = SessionLifecycle(store, registry)
    await lifecycle.initialize()
    yield lifecycle
    await lifecycle.stop()


@pytest.fixture
def make_session(store: SessionStore, temp_dir: Path) -> Callable[..., Awaitable[Session]]:
    """Factory persisting a configured session record."""
    counter = {"n": 0}

    async def factory(
        command: str = "echo hi",
        session_type: SessionType = SessionType.NON_INTERACTIVE,
        directory: str = None,
        name: str = None,
    ) -> Session:
        counter["n"] += 1
        session = Session(
            id=f"session-{counter['n']}",
            name=name or f"test-{counter['n']}",
            directory=directory or str(temp_dir),
            command=command,
            type=session_type,
        )
        return await store.create(session)

    return factory
