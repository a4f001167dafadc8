"""Process and PTY spawning."""

from .adapter import ProcessHandle, ProcessExit, spawn_process

__all__ = ['ProcessHandle', 'ProcessExit', 'spawn_process']
