"""
Output buffer for live sessions.

Keeps the most recent output chunks of a session so that an observer
attaching late can be shown what it missed.
"""

from collections import deque
from typing import Deque, List


DEFAULT_CAPACITY = 1000


class OutputRingBuffer:
    """Fixed-capacity FIFO of output chunks; the oldest chunk is evicted first."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._chunks: Deque[str] = deque(maxlen=capacity)

        # Stats
        self._total_chunks = 0
        self._evicted_chunks = 0

    def __len__(self) -> int:
        return len(self._chunks)

    @property
    def total_chunks(self) -> int:
        """Chunks appended over the buffer's lifetime."""
        return self._total_chunks

    @property
    def evicted_chunks(self) -> int:
        return self._evicted_chunks

    @property
    def is_full(self) -> bool:
        return len(self._chunks) == self.capacity

    def append(self, chunk: str) -> None:
        if self.is_full:
            self._evicted_chunks += 1
        self._chunks.append(chunk)
        self._total_chunks += 1

    def snapshot(self) -> List[str]:
        """Copy of the buffered chunks, oldest first."""
        return list(self._chunks)

    def joined(self) -> str:
        """Buffered output as a single string."""
        return "".join(self._chunks)

    def clear(self) -> None:
        self._chunks.clear()


__all__ = ['OutputRingBuffer', 'DEFAULT_CAPACITY']
