"""
HTTP and WebSocket server for the PARK session engine.

REST routes over the lifecycle controller plus the terminal websocket:

    GET    /api/sessions                 list sessions
    POST   /api/sessions                 create and launch
    DELETE /api/sessions                 purge finished sessions
    POST   /api/sessions/config          create without launching
    POST   /api/sessions/launch          launch many ({"sessionIds": [...]})
    GET    /api/sessions/{id}            get one
    PUT    /api/sessions/{id}            edit (non-active only)
    DELETE /api/sessions/{id}            stop if live, then delete
    POST   /api/sessions/{id}/stop       stop
    GET    /api/system/health            status, uptime, session counts
    GET    /api/system/config            effective configuration
    PUT    /api/system/config            partial configuration update
    GET    /api/system/prompts           prompt template catalogue
    GET    /terminal/{id}                websocket observer channel
"""

import json
import time
from typing import Optional, Dict, Any

from aiohttp import web

from . import __version__
from .managers.lifecycle import SessionLifecycle
from .managers.registry import SessionRegistry
from .storage.database import Database
from .storage.session_store import SessionStore
from .transport.websocket import TerminalHandler
from .models.prompt import all_prompt_templates
from .utils.config import ParkConfig, update_config
from .utils.errors import ParkError, InvalidInput, ConfigurationError
from .utils.logging import get_logger
from .utils.shutdown import ShutdownManager, ShutdownPhase


logger = get_logger("park-engine.server")

LIFECYCLE_KEY = web.AppKey("lifecycle", SessionLifecycle)


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Render engine errors as {"error", "code"} with their HTTP status."""
    start = time.monotonic()
    try:
        response = await handler(request)
    except ParkError as e:
        logger.info(
            "request_failed",
            method=request.method,
            path=request.path,
            status=e.status_code,
            **{k: v for k, v in e.to_log().items() if v is not None},
        )
        return web.json_response(e.to_dict(), status=e.status_code)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.error("request_error", method=request.method, path=request.path, error=str(e), exc_info=True)
        return web.json_response({"error": str(e) or "Internal server error", "code": "INTERNAL_ERROR"}, status=500)

    logger.debug(
        "request_completed",
        method=request.method,
        path=request.path,
        status=getattr(response, "status", None),
        duration_ms=round((time.monotonic() - start) * 1000, 1),
    )
    return response


async def _json_body(request: web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidInput(f"Malformed JSON body: {e}") from e
    if not isinstance(body, dict):
        raise InvalidInput("Request body must be a JSON object")
    return body


class SessionRoutes:
    """Request handlers bound to one lifecycle controller."""

    def __init__(self, lifecycle: SessionLifecycle):
        self.lifecycle = lifecycle

    async def list_sessions(self, request: web.Request) -> web.Response:
        sessions = await self.lifecycle.list_all()
        return web.json_response({"sessions": [s.to_dict() for s in sessions]})

    async def create_session(self, request: web.Request) -> web.Response:
        session = await self.lifecycle.create_and_launch(await _json_body(request))
        return web.json_response({"session": session.to_dict()}, status=201)

    async def create_config(self, request: web.Request) -> web.Response:
        session = await self.lifecycle.create_config(await _json_body(request))
        return web.json_response({"session": session.to_dict()}, status=201)

    async def launch_many(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        session_ids = body.get("sessionIds")
        if not isinstance(session_ids, list) or not all(isinstance(i, str) for i in session_ids):
            raise InvalidInput("sessionIds array required", fields=["sessionIds"])

        launched = await self.lifecycle.launch_many(session_ids)
        return web.json_response({
            "launched": [s.to_dict() for s in launched],
            "count": len(launched),
        })

    async def get_session(self, request: web.Request) -> web.Response:
        session = await self.lifecycle.get(request.match_info["id"])
        return web.json_response({"session": session.to_dict()})

    async def update_session(self, request: web.Request) -> web.Response:
        session = await self.lifecycle.update(request.match_info["id"], await _json_body(request))
        return web.json_response({"session": session.to_dict()})

    async def delete_session(self, request: web.Request) -> web.Response:
        await self.lifecycle.delete(request.match_info["id"])
        return web.json_response({"success": True})

    async def stop_session(self, request: web.Request) -> web.Response:
        session = await self.lifecycle.stop_session(request.match_info["id"])
        return web.json_response({"success": True, "session": session.to_dict()})

    async def purge_finished(self, request: web.Request) -> web.Response:
        deleted = await self.lifecycle.purge_finished()
        return web.json_response({"deleted": deleted})


class SystemRoutes:
    """Health, configuration and prompt template handlers."""

    def __init__(self, lifecycle: SessionLifecycle, config: ParkConfig):
        self.lifecycle = lifecycle
        self.config = config
        self.started_at = time.monotonic()

    async def health(self, request: web.Request) -> web.Response:
        sessions = await self.lifecycle.list_all()
        return web.json_response({
            "status": "ok",
            "version": __version__,
            "uptime": round(time.monotonic() - self.started_at, 3),
            "sessions": {
                "active": sum(1 for s in sessions if s.is_active),
                "total": len(sessions),
                "live": len(self.lifecycle.registry.live_ids()),
            },
        })

    async def get_config(self, request: web.Request) -> web.Response:
        return web.json_response({"config": self.config.model_dump(mode="json")})

    async def put_config(self, request: web.Request) -> web.Response:
        # Takes effect for what reads the config per request; the running
        # listener and registry keep the settings they started with.
        try:
            self.config = update_config(self.config, await _json_body(request))
        except ConfigurationError as e:
            raise InvalidInput(e.message) from e
        return web.json_response({"config": self.config.model_dump(mode="json")})

    async def prompts(self, request: web.Request) -> web.Response:
        return web.json_response({"prompts": [t.to_dict() for t in all_prompt_templates()]})


def create_app(lifecycle: SessionLifecycle, config: Optional[ParkConfig] = None) -> web.Application:
    """Build the aiohttp application around an initialized lifecycle controller."""
    app = web.Application(middlewares=[error_middleware])
    app[LIFECYCLE_KEY] = lifecycle

    routes = SessionRoutes(lifecycle)
    system = SystemRoutes(lifecycle, config or ParkConfig())
    terminal = TerminalHandler(lifecycle)

    r = app.router
    r.add_get("/api/sessions", routes.list_sessions)
    r.add_post("/api/sessions", routes.create_session)
    r.add_delete("/api/sessions", routes.purge_finished)
    r.add_post("/api/sessions/config", routes.create_config)
    r.add_post("/api/sessions/launch", routes.launch_many)
    r.add_get("/api/sessions/{id}", routes.get_session)
    r.add_put("/api/sessions/{id}", routes.update_session)
    r.add_delete("/api/sessions/{id}", routes.delete_session)
    r.add_post("/api/sessions/{id}/stop", routes.stop_session)
    r.add_get("/api/system/health", system.health)
    r.add_get("/api/system/config", system.get_config)
    r.add_put("/api/system/config", system.put_config)
    r.add_get("/api/system/prompts", system.prompts)
    r.add_get("/terminal/{session_id}", terminal.handle)
    return app


class ParkServer:
    """Wires storage, registry, lifecycle and the web app together."""

    def __init__(self, config: ParkConfig):
        self.config = config
        self.db = Database(config.database.path)
        self.store = SessionStore(self.db)
        self.registry = SessionRegistry(self.store, config.session, config.shell)
        self.lifecycle = SessionLifecycle(self.store, self.registry)
        self.app = create_app(self.lifecycle, config)
        self.shutdown_manager = ShutdownManager()
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    async def start(self) -> None:
        await self.registry.initialize()
        await self.lifecycle.initialize()
        await self.registry.start()
        await self.lifecycle.start()

        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.config.server.host, self.config.server.port)
        await self._site.start()

        self._register_shutdown()
        logger.info(
            "server_started",
            host=self.config.server.host,
            port=self.config.server.port,
            database=str(self.config.database.path),
        )

    def _register_shutdown(self) -> None:
        sm = self.shutdown_manager
        sm.register_component("web_site", self._site.stop, ShutdownPhase.STOP_ACCEPTING, timeout=5.0)
        sm.register_component(
            "session_registry",
            self.registry.stop,
            ShutdownPhase.STOP_WORKERS,
            timeout=self.config.session.shutdown_timeout + 5.0,
        )
        sm.register_component("lifecycle", self.lifecycle.stop, ShutdownPhase.STOP_WORKERS, timeout=5.0)
        sm.register_component("web_runner", self._runner.cleanup, ShutdownPhase.CLOSE_CONNECTIONS, timeout=5.0)
        sm.register_component("database", self.db.close, ShutdownPhase.CLOSE_CONNECTIONS, timeout=5.0)

    async def stop(self, reason: str = "requested") -> None:
        await self.shutdown_manager.shutdown(reason)

    async def serve_forever(self) -> None:
        """Run until SIGINT/SIGTERM, then shut down in phases."""
        self.shutdown_manager.setup_signal_handlers()
        await self.start()
        try:
            await self.shutdown_manager.wait_for_request()
        finally:
            await self.stop("signal")


__all__ = ['ParkServer', 'create_app', 'error_middleware', 'LIFECYCLE_KEY']
