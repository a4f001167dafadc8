"""Output buffering."""

from .buffer import OutputRingBuffer

__all__ = ['OutputRingBuffer']
