"""
Graceful shutdown handling for the PARK session engine.

This module provides shutdown coordination with:
- Signal handling (SIGTERM, SIGINT, SIGHUP)
- Component shutdown ordering by phase
- Per-component timeouts, after which cleanup continues regardless
"""

import asyncio
import signal
import sys
from typing import Optional, List, Dict, Callable, Any
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from .logging import get_logger


logger = get_logger("park-engine.shutdown")


class ShutdownPhase(Enum):
    """Shutdown phases for ordered component shutdown."""
    STOP_ACCEPTING = 1     # Stop accepting new connections
    STOP_WORKERS = 2       # Terminate live sessions
    CLOSE_CONNECTIONS = 3  # Close database and other handles
    FINAL_CLEANUP = 4


@dataclass
class ShutdownComponent:
    """Component registration for shutdown."""
    name: str
    phase: ShutdownPhase
    handler: Callable[[], Any]
    timeout: float = 10.0

    def __hash__(self):
        return hash(self.name)


class ShutdownManager:
    """Runs registered shutdown handlers phase by phase."""

    def __init__(self):
        self._components: Dict[str, ShutdownComponent] = {}
        self._shutdown_event = asyncio.Event()
        self._requested = asyncio.Event()
        self._is_shutting_down = False
        self._signals: List[int] = []

    @property
    def is_shutting_down(self) -> bool:
        return self._is_shutting_down

    def register_component(
        self,
        name: str,
        handler: Callable[[], Any],
        phase: ShutdownPhase = ShutdownPhase.FINAL_CLEANUP,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Register a component for shutdown.

        Args:
            name: Component name
            handler: Shutdown handler (sync or async)
            phase: Shutdown phase
            timeout: Component shutdown timeout in seconds
        """
        self._components[name] = ShutdownComponent(
            name=name,
            phase=phase,
            handler=handler,
            timeout=timeout if timeout is not None else 10.0,
        )
        logger.debug("component_registered", component=name, phase=phase.name)

    def unregister_component(self, name: str) -> bool:
        """Unregister a component. Returns False if it was not registered."""
        return self._components.pop(name, None) is not None

    def setup_signal_handlers(self) -> None:
        """Turn SIGTERM/SIGINT/SIGHUP into a shutdown request."""
        if sys.platform == "win32":
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGHUP):
            loop.add_signal_handler(sig, self._signal_handler, sig)
            self._signals.append(sig)
        logger.info("signal_handlers_installed")

    def restore_signal_handlers(self) -> None:
        """Remove the handlers installed by setup_signal_handlers."""
        if not self._signals:
            return
        loop = asyncio.get_running_loop()
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals.clear()

    def _signal_handler(self, signum: int) -> None:
        logger.info("shutdown_signal_received", signal=signal.Signals(signum).name)
        self._requested.set()

    def request_shutdown(self) -> None:
        """Ask a waiter in wait_for_request() to begin shutdown."""
        self._requested.set()

    async def wait_for_request(self) -> None:
        """Block until a signal or request_shutdown() asks for shutdown."""
        await self._requested.wait()

    async def shutdown(self, reason: str = "signal") -> None:
        """
        Run every registered component, phase by phase.

        Repeated calls wait for the first shutdown to finish.
        """
        if self._is_shutting_down:
            await self._shutdown_event.wait()
            return
        self._is_shutting_down = True

        start_time = datetime.now(timezone.utc)
        logger.info("shutdown_initiated", reason=reason, components=len(self._components))

        try:
            phases: Dict[ShutdownPhase, List[ShutdownComponent]] = {}
            for component in self._components.values():
                phases.setdefault(component.phase, []).append(component)

            for phase in ShutdownPhase:
                if phase in phases:
                    logger.info("executing_shutdown_phase", phase=phase.name)
                    for component in phases[phase]:
                        await self._run_component(component)
        finally:
            self.restore_signal_handlers()
            duration = (datetime.now(timezone.utc) - start_time).total_seconds()
            logger.info("shutdown_complete", duration_seconds=duration)
            self._shutdown_event.set()

    async def _run_component(self, component: ShutdownComponent) -> None:
        try:
            if asyncio.iscoroutinefunction(component.handler):
                await asyncio.wait_for(component.handler(), timeout=component.timeout)
            else:
                loop = asyncio.get_running_loop()
                await asyncio.wait_for(
                    loop.run_in_executor(None, component.handler),
                    timeout=component.timeout
                )
            logger.debug("component_shutdown_complete", component=component.name)
        except asyncio.TimeoutError:
            logger.error(
                "component_shutdown_timeout",
                component=component.name,
                timeout=component.timeout
            )
        except Exception as e:
            logger.error(
                "component_shutdown_error",
                component=component.name,
                error=str(e),
                exc_info=True
            )


__all__ = [
    'ShutdownManager',
    'ShutdownPhase',
    'ShutdownComponent',
]
