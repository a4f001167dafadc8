"""
PARK session engine.

Runs configured shell commands as sessions, either on a pseudo-terminal or
as plain child processes, keeps a bounded history of their output and fans
it out to any number of attached observers:
- Persisted session lifecycle (configured, active, stopped, completed)
- Output ring buffer with history replay on attach
- Input and resize forwarding for PTY sessions
- REST and WebSocket surface
"""

__version__ = "0.1.0"
__author__ = "PARK Team"

__all__ = ['__version__']
