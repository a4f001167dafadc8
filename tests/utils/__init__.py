"""
Test utilities for the PARK session engine.
"""

from .async_helpers import AsyncTestHelper, wait_for_condition
from .mock_helpers import FakeProcessHandle, FakeSpawner, RecordingObserver, StalledObserver

__all__ = [
    "AsyncTestHelper",
    "wait_for_condition",
    "FakeProcessHandle",
    "FakeSpawner",
    "RecordingObserver",
    "StalledObserver",
]
