"""
Observer channel abstraction and the client message protocol.

An observer is any bidirectional message channel attached to a live session.
The engine pushes JSON-shaped events to it; clients send ``input`` and
``resize`` messages back.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Dict, Any, Union

from ..utils.logging import get_logger


logger = get_logger("park-engine.transport")


class Observer(ABC):
    """A channel that receives session events."""

    @property
    @abstractmethod
    def closed(self) -> bool:
        """Whether the channel can no longer deliver messages."""

    @abstractmethod
    async def send(self, message: Dict[str, Any]) -> None:
        """Deliver one event. Raises if the channel is broken."""

    @abstractmethod
    async def close(self, message: Optional[str] = None) -> None:
        """Close the channel, optionally explaining why."""


# Engine -> client events

def history_event(data: str) -> Dict[str, Any]:
    return {"type": "history", "data": data}


def output_event(data: str) -> Dict[str, Any]:
    return {"type": "output", "data": data}


def exit_event(code: Optional[int]) -> Dict[str, Any]:
    return {"type": "exit", "code": code}


def error_event(message: str) -> Dict[str, Any]:
    return {"type": "error", "message": message}


# Client -> engine messages

@dataclass(frozen=True)
class InputMessage:
    data: str


@dataclass(frozen=True)
class ResizeMessage:
    cols: int
    rows: int


ClientMessage = Union[InputMessage, ResizeMessage]


# Terminal dimensions are unsigned shorts in the window size ioctl.
MAX_TERMINAL_DIMENSION = 65535


def _terminal_dimension(value: Any) -> bool:
    return (
        isinstance(value, int)
        and not isinstance(value, bool)
        and 0 < value <= MAX_TERMINAL_DIMENSION
    )


def parse_client_message(raw: Union[str, bytes, Dict[str, Any]]) -> Optional[ClientMessage]:
    """
    Decode a client message.

    Returns None for anything that is not a well-formed ``input`` or
    ``resize`` message; such messages are logged and otherwise ignored.
    """
    if isinstance(raw, dict):
        payload = raw
    else:
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning("malformed_client_message", error=str(e))
            return None

    if not isinstance(payload, dict):
        logger.warning("malformed_client_message", error="expected an object")
        return None

    kind = payload.get("type")
    if kind == "input":
        data = payload.get("data")
        if isinstance(data, str):
            return InputMessage(data=data)
        logger.debug("input_message_ignored", reason="data must be a string")
        return None

    if kind == "resize":
        cols, rows = payload.get("cols"), payload.get("rows")
        if _terminal_dimension(cols) and _terminal_dimension(rows):
            return ResizeMessage(cols=cols, rows=rows)
        logger.debug("resize_message_ignored", cols=cols, rows=rows)
        return None

    logger.debug("unknown_client_message", message_type=kind)
    return None


__all__ = [
    'Observer',
    'ClientMessage',
    'InputMessage',
    'ResizeMessage',
    'parse_client_message',
    'history_event',
    'output_event',
    'exit_event',
    'error_event',
]
