"""
Process and PTY adapter.

Wraps OS primitives behind one capability surface so the registry can drive
both session types with the same code:

- PtyProcessHandle runs ``<shell> -l -c <command>`` on a pseudo-terminal,
  forwarding the combined terminal output and accepting input and resizes.
- PipeProcessHandle runs ``/bin/sh -c <command>`` with stdout and stderr
  piped; input is discarded and resize is unsupported.

Output reading only begins when ``start()`` is called, so a caller can
register the handle before any output is delivered.
"""

import asyncio
import codecs
import fcntl
import os
import pty
import signal
import struct
import termios
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Dict, List, Callable, Awaitable

from ..utils.errors import SpawnError
from ..utils.logging import get_logger


logger = get_logger("park-engine.process")

READ_CHUNK_SIZE = 4096
DRAIN_TIMEOUT = 1.0

OutputCallback = Callable[[str], Awaitable[None]]
ExitCallback = Callable[["ProcessExit"], Awaitable[None]]


@dataclass(frozen=True)
class ProcessExit:
    """How a process ended. Signal deaths carry a negative code."""
    code: Optional[int]
    signal: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.code == 0

    @classmethod
    def from_returncode(cls, returncode: Optional[int]) -> "ProcessExit":
        if returncode is not None and returncode < 0:
            try:
                name = signal.Signals(-returncode).name
            except ValueError:
                name = None
            return cls(code=returncode, signal=name)
        return cls(code=returncode)


class ProcessHandle(ABC):
    """A spawned session process."""

    supports_input: bool = False
    supports_resize: bool = False

    def __init__(self, process: asyncio.subprocess.Process, command: str, cwd: str):
        self._process = process
        self.command = command
        self.cwd = cwd
        self._watch_task: Optional[asyncio.Task] = None
        self._exit: Optional[ProcessExit] = None
        self._exited = asyncio.Event()
        self._closed = False

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    @property
    def is_running(self) -> bool:
        return self._exit is None and self._process.returncode is None

    def start(self, on_output: OutputCallback, on_exit: ExitCallback) -> None:
        """Begin forwarding output; ``on_exit`` fires exactly once afterwards."""
        if self._watch_task is not None:
            raise RuntimeError(f"Process {self.pid} already started")
        self._watch_task = asyncio.create_task(
            self._watch(on_output, on_exit),
            name=f"process-watch-{self.pid}",
        )

    async def wait(self) -> ProcessExit:
        """Wait until the exit callback has been issued."""
        await self._exited.wait()
        return self._exit

    async def write(self, data: str) -> None:
        logger.debug("input_discarded", pid=self.pid, length=len(data))

    async def resize(self, cols: int, rows: int) -> None:
        logger.debug("resize_unsupported", pid=self.pid)

    def terminate(self) -> None:
        """Send SIGTERM to the process group."""
        self._signal(signal.SIGTERM)

    def kill(self) -> None:
        """Send SIGKILL to the process group."""
        self._signal(signal.SIGKILL)

    def _signal(self, sig: signal.Signals) -> None:
        if self._process.returncode is not None:
            return
        try:
            os.killpg(self._process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            # The group may already be gone and its id reused; fall back to the pid.
            try:
                self._process.send_signal(sig)
            except ProcessLookupError:
                pass
        logger.debug("signal_sent", pid=self.pid, signal=sig.name)

    @abstractmethod
    async def _open_streams(self) -> List[asyncio.StreamReader]:
        """Readers whose output makes up the session's output."""

    def _close(self) -> None:
        """Release OS resources once the process is gone."""
        self._closed = True

    async def _pump(self, stream: asyncio.StreamReader, on_output: OutputCallback) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            try:
                data = await stream.read(READ_CHUNK_SIZE)
            except OSError:
                # EIO from a pty master once the last slave holder exits
                data = b""
            text = decoder.decode(data, final=not data)
            if text:
                try:
                    await on_output(text)
                except Exception as e:
                    logger.error("output_callback_failed", pid=self.pid, error=str(e), exc_info=True)
            if not data:
                return

    async def _watch(self, on_output: OutputCallback, on_exit: ExitCallback) -> None:
        readers: List[asyncio.Task] = []
        try:
            streams = await self._open_streams()
            readers = [asyncio.create_task(self._pump(s, on_output)) for s in streams]

            returncode = await self._process.wait()

            if readers:
                _, pending = await asyncio.wait(readers, timeout=DRAIN_TIMEOUT)
                for task in pending:
                    task.cancel()
                if pending:
                    logger.warning("output_drain_timeout", pid=self.pid, pending=len(pending))
                    await asyncio.gather(*pending, return_exceptions=True)
        except asyncio.CancelledError:
            for task in readers:
                task.cancel()
            raise
        finally:
            self._close()

        self._exit = ProcessExit.from_returncode(returncode)
        logger.info("process_exited", pid=self.pid, code=self._exit.code, signal=self._exit.signal)
        try:
            await on_exit(self._exit)
        finally:
            self._exited.set()


class PipeProcessHandle(ProcessHandle):
    """Plain child process with piped stdout/stderr."""

    async def _open_streams(self) -> List[asyncio.StreamReader]:
        return [s for s in (self._process.stdout, self._process.stderr) if s is not None]


class PtyProcessHandle(ProcessHandle):
    """Child process attached to a pseudo-terminal."""

    supports_input = True
    supports_resize = True

    def __init__(self, process: asyncio.subprocess.Process, command: str, cwd: str, master_fd: int):
        super().__init__(process, command, cwd)
        self.master_fd = master_fd
        self._read_transport: Optional[asyncio.ReadTransport] = None

    async def _open_streams(self) -> List[asyncio.StreamReader]:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        pipe = os.fdopen(self.master_fd, "rb", buffering=0, closefd=False)
        self._read_transport, _ = await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader), pipe
        )
        return [reader]

    async def write(self, data: str) -> None:
        if self._closed:
            return
        payload = data.encode("utf-8")
        try:
            while payload:
                try:
                    written = os.write(self.master_fd, payload)
                except BlockingIOError:
                    await asyncio.sleep(0.01)
                    continue
                payload = payload[written:]
        except OSError as e:
            logger.warning("pty_write_failed", pid=self.pid, error=str(e))

    async def resize(self, cols: int, rows: int) -> None:
        if self._closed:
            return
        try:
            _set_window_size(self.master_fd, cols, rows)
        except (OSError, struct.error) as e:
            logger.warning("pty_resize_failed", pid=self.pid, error=str(e))
            return
        logger.debug("pty_resized", pid=self.pid, cols=cols, rows=rows)

    def _close(self) -> None:
        if self._closed:
            return
        super()._close()
        if self._read_transport is not None:
            self._read_transport.close()
        try:
            os.close(self.master_fd)
        except OSError:
            pass


def _set_window_size(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is the pty slave.
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


async def spawn_process(
    command: str,
    cwd: str,
    is_pty: bool,
    shell: str = "/bin/bash",
    env: Optional[Dict[str, str]] = None,
    cols: int = 80,
    rows: int = 30,
) -> ProcessHandle:
    """
    Start a session process.

    Args:
        command: Shell command line
        cwd: Working directory
        is_pty: Allocate a pseudo-terminal and run through a login shell
        shell: Login shell for PTY sessions
        env: Extra environment variables
        cols: Initial terminal width (PTY only)
        rows: Initial terminal height (PTY only)

    Raises:
        SpawnError: If the OS refuses to start the process
    """
    process_env = {**os.environ, **(env or {})}

    try:
        if is_pty:
            handle = await _spawn_pty(command, cwd, shell, process_env, cols, rows)
        else:
            handle = await _spawn_pipe(command, cwd, process_env)
    except OSError as e:
        logger.error("spawn_failed", command=command, cwd=cwd, pty=is_pty, error=str(e))
        raise SpawnError(f"Failed to start '{command}': {e}", cause=e) from e

    logger.info("process_spawned", pid=handle.pid, command=command, cwd=cwd, pty=is_pty)
    return handle


async def _spawn_pty(
    command: str,
    cwd: str,
    shell: str,
    env: Dict[str, str],
    cols: int,
    rows: int,
) -> PtyProcessHandle:
    env.setdefault("TERM", "xterm-256color")
    master_fd, slave_fd = pty.openpty()
    try:
        _set_window_size(slave_fd, cols, rows)
        process = await asyncio.create_subprocess_exec(
            shell, "-l", "-c", command,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            cwd=cwd,
            env=env,
            start_new_session=True,
            preexec_fn=_acquire_controlling_tty,
        )
    except BaseException:
        os.close(master_fd)
        raise
    finally:
        os.close(slave_fd)

    return PtyProcessHandle(process, command, cwd, master_fd)


async def _spawn_pipe(command: str, cwd: str, env: Dict[str, str]) -> PipeProcessHandle:
    process = await asyncio.create_subprocess_shell(
        command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=env,
        start_new_session=True,
    )
    return PipeProcessHandle(process, command, cwd)


__all__ = [
    'ProcessHandle',
    'PtyProcessHandle',
    'PipeProcessHandle',
    'ProcessExit',
    'spawn_process',
    'OutputCallback',
    'ExitCallback',
]
