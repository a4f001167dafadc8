"""WebSocket observer channel and the /terminal/{session_id} endpoint."""

from typing import Optional, Dict, Any

from aiohttp import web, WSMsgType, WSCloseCode

from .base import Observer, InputMessage, ResizeMessage, parse_client_message, error_event
from ..managers.lifecycle import SessionLifecycle
from ..utils.errors import NotFound, SessionNotLive
from ..utils.logging import get_logger


logger = get_logger("park-engine.transport.websocket")


class WebSocketObserver(Observer):
    """Observer backed by an aiohttp websocket."""

    def __init__(self, ws: web.WebSocketResponse, remote: Optional[str] = None):
        self.ws = ws
        self.remote = remote

    @property
    def closed(self) -> bool:
        return self.ws.closed

    async def send(self, message: Dict[str, Any]) -> None:
        if self.ws.closed:
            raise ConnectionResetError("websocket is closed")
        await self.ws.send_json(message)

    async def close(self, message: Optional[str] = None) -> None:
        if self.ws.closed:
            return
        await self.ws.close(
            code=WSCloseCode.GOING_AWAY if message else WSCloseCode.OK,
            message=(message or "").encode("utf-8"),
        )


class TerminalHandler:
    """
    Attaches websocket clients to live sessions.

    Unknown or non-live sessions get an error event and the socket is
    closed. Otherwise the client receives history and live output, and its
    input/resize messages are forwarded to the session.
    """

    def __init__(self, lifecycle: SessionLifecycle, heartbeat: float = 30.0):
        self.lifecycle = lifecycle
        self.registry = lifecycle.registry
        self.heartbeat = heartbeat

    async def handle(self, request: web.Request) -> web.WebSocketResponse:
        session_id = request.match_info["session_id"]
        ws = web.WebSocketResponse(heartbeat=self.heartbeat)
        await ws.prepare(request)
        observer = WebSocketObserver(ws, remote=request.remote)

        try:
            await self.lifecycle.get(session_id)
            await self.registry.attach(session_id, observer)
        except NotFound:
            await self._reject(ws, session_id, "Session not found")
            return ws
        except SessionNotLive as e:
            await self._reject(ws, session_id, e.message)
            return ws

        logger.info("terminal_client_connected", session_id=session_id, remote=request.remote)
        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    await self._dispatch(session_id, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("terminal_client_error", session_id=session_id, error=str(ws.exception()))
                    break
        finally:
            await self.registry.detach(session_id, observer)
            logger.info("terminal_client_disconnected", session_id=session_id, remote=request.remote)

        return ws

    async def _dispatch(self, session_id: str, raw) -> None:
        message = parse_client_message(raw)
        if isinstance(message, InputMessage):
            await self.registry.send_input(session_id, message.data)
        elif isinstance(message, ResizeMessage):
            await self.registry.resize(session_id, message.cols, message.rows)

    async def _reject(self, ws: web.WebSocketResponse, session_id: str, reason: str) -> None:
        logger.info("terminal_client_rejected", session_id=session_id, reason=reason)
        await ws.send_json(error_event(reason))
        await ws.close()


__all__ = ['WebSocketObserver', 'TerminalHandler']
