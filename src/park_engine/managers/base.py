"""
Base class for the engine's long-lived components.

A manager moves through initialize -> start -> stop, reports health on
demand and publishes named events to registered handlers.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List, Callable
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from ..utils.logging import get_logger


class ManagerState(Enum):
    """Manager lifecycle states."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class ManagerError(Exception):
    """A manager failed to change state."""


# Handlers receive (event, data) and may be plain functions or coroutines.
EventHandler = Callable[[str, Dict[str, Any]], Any]


@dataclass
class ManagerConfig:
    """Base configuration for all managers."""
    name: str
    enable_notifications: bool = True
    custom_config: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HealthStatus:
    """Result of the last health check."""
    healthy: bool
    last_check: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "last_check": self.last_check.isoformat(),
            "details": self.details,
            "error": self.error,
        }


class BaseManager(ABC):
    """
    Common lifecycle, health and event plumbing.

    Subclasses implement ``_initialize``, ``_stop`` and ``_health_check``;
    ``_start`` is optional.
    """

    def __init__(self, config: ManagerConfig):
        self.config = config
        self.logger = get_logger(f"park-engine.{config.name}")
        self.state = ManagerState.UNINITIALIZED
        self._event_handlers: Dict[str, List[EventHandler]] = {}

    @property
    def name(self) -> str:
        return self.config.name

    async def initialize(self) -> None:
        if self.state != ManagerState.UNINITIALIZED:
            raise ManagerError(f"Cannot initialize {self.name} from state {self.state.value}")

        self.state = ManagerState.INITIALIZING
        try:
            await self._initialize()
        except Exception as e:
            self.state = ManagerState.ERROR
            self.logger.error("initialization_failed", manager=self.name, error=str(e), exc_info=True)
            raise ManagerError(f"Failed to initialize {self.name}: {e}") from e

        self.state = ManagerState.READY
        self.logger.info("manager_initialized", manager=self.name)

    async def start(self) -> None:
        if self.state == ManagerState.RUNNING:
            return
        if self.state != ManagerState.READY:
            raise ManagerError(f"Manager {self.name} not ready (state {self.state.value})")

        try:
            await self._start()
        except Exception as e:
            self.state = ManagerState.ERROR
            self.logger.error("start_failed", manager=self.name, error=str(e), exc_info=True)
            raise ManagerError(f"Failed to start {self.name}: {e}") from e

        self.state = ManagerState.RUNNING
        self.logger.info("manager_started", manager=self.name)

    async def stop(self) -> None:
        """Stop the manager. Repeated calls are no-ops."""
        if self.state in (ManagerState.STOPPING, ManagerState.STOPPED, ManagerState.UNINITIALIZED):
            return

        self.state = ManagerState.STOPPING
        try:
            await self._stop()
        except Exception as e:
            self.state = ManagerState.ERROR
            self.logger.error("stop_failed", manager=self.name, error=str(e), exc_info=True)
            raise ManagerError(f"Failed to stop {self.name}: {e}") from e

        self.state = ManagerState.STOPPED
        self.logger.info("manager_stopped", manager=self.name)

    async def health_check(self) -> HealthStatus:
        now = datetime.now(timezone.utc)
        try:
            details = await self._health_check()
        except Exception as e:
            self.logger.error("health_check_failed", manager=self.name, error=str(e))
            return HealthStatus(healthy=False, last_check=now, error=str(e))
        return HealthStatus(healthy=True, last_check=now, details=details)

    def register_event_handler(self, event: str, handler: EventHandler) -> None:
        self._event_handlers.setdefault(event, []).append(handler)

    async def _notify_event(self, event: str, data: Dict[str, Any]) -> None:
        """Call every handler for ``event``; a failing handler is logged and skipped."""
        if not self.config.enable_notifications:
            return

        for handler in list(self._event_handlers.get(event, [])):
            try:
                result = handler(event, data)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self.logger.error(
                    "event_handler_error",
                    event_type=event,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e),
                )

    @abstractmethod
    async def _initialize(self) -> None:
        pass

    async def _start(self) -> None:
        pass

    @abstractmethod
    async def _stop(self) -> None:
        pass

    @abstractmethod
    async def _health_check(self) -> Dict[str, Any]:
        pass


__all__ = [
    'BaseManager',
    'ManagerConfig',
    'ManagerState',
    'ManagerError',
    'HealthStatus',
]
