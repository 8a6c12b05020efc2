"""
============================================================
 Fleet Relay — Real-Time Hub Server
 FastAPI + Socket.IO relay between driver apps and the
 monitoring dashboard.

 Run locally:  python -m fleet_relay.server
      or:      uvicorn fleet_relay.server:create_asgi_app --factory --port 4001
============================================================
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Optional
from urllib.parse import parse_qs

import socketio
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from socketio.exceptions import ConnectionRefusedError as SocketRefused

from fleet_relay import __version__
from fleet_relay.auth import api_key_valid, socket_allowed
from fleet_relay.chat_store import ChatStore
from fleet_relay.config import Settings
from fleet_relay.dispatch import DispatchEngine
from fleet_relay.driver_store import DriverStateStore
from fleet_relay.errors import NotFoundError, ValidationError
from fleet_relay.log_writer import NullLogWriter, open_writer
from fleet_relay.models import RouteWithTollRequest, epoch_seconds, utc_iso
from fleet_relay.routing import RouteProvider, build_provider, route_with_fallback
from fleet_relay.simulator import SampleReplay, load_sample_data
from fleet_relay.sweeper import LifecycleSweeper

logger = logging.getLogger(__name__)


class SocketIOTransport:
    """Delivers engine emissions to one Socket.IO session at a time."""

    def __init__(self, sio: socketio.AsyncServer) -> None:
        self.sio = sio

    async def emit(self, event: str, data: Any, to: str) -> None:
        await self.sio.emit(event, data, to=to)


def _origins(value: str):
    if value.strip() == "*":
        return "*"
    return [o.strip() for o in value.split(",") if o.strip()]


def _first(query: dict, key: str) -> Optional[str]:
    values = query.get(key)
    return values[0] if values else None


def create_app(
    settings: Optional[Settings] = None,
    *,
    route_provider: Optional[RouteProvider] = None,
) -> FastAPI:
    """Build the HTTP app, the Socket.IO server and the relay state behind both.

    The Socket.IO server is kept on `app.state.sio`; `create_asgi_app()`
    mounts the two together.
    """
    settings = settings or Settings.from_env()

    gps_log = open_writer(settings.log_dir, background=settings.log_background_writes)
    chat_log = gps_log if settings.log_chat else NullLogWriter()
    drivers = DriverStateStore(
        history_length=settings.history_length,
        log_writer=gps_log,
        log_prefix=settings.log_file_prefix,
    )
    chat = ChatStore(
        max_messages=settings.max_chat_messages,
        max_length=settings.max_message_length,
        rate_limit=settings.message_rate_limit,
        log_writer=chat_log,
        log_prefix=settings.chat_log_prefix,
    )
    if route_provider is None:
        route_provider = build_provider(
            settings.osrm_url, settings.graphhopper_url, settings.graphhopper_api_key
        )

    sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=_origins(settings.cors_origins))
    engine = DispatchEngine(
        SocketIOTransport(sio),
        drivers=drivers,
        chat=chat,
        route_provider=route_provider,
        settings=settings,
    )
    sweeper = LifecycleSweeper(
        drivers,
        chat,
        notify=engine.broadcast_monitors,
        interval=settings.sweep_interval_seconds,
        offline_eviction=settings.offline_eviction_seconds,
        stale_after=settings.stale_driver_seconds,
        chat_retention=settings.chat_retention_seconds,
    )
    replay = None
    if settings.enable_sample_data:
        replay = SampleReplay(
            engine, load_sample_data(settings.sample_data_file), settings.location_interval_ms
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("[STARTUP] Fleet Relay %s on %s:%d", __version__, settings.host, settings.port)
        logger.info("[STARTUP] Chat %s, demo mode %s",
                    "enabled" if settings.enable_chat else "disabled",
                    "enabled" if replay else "disabled")
        await sweeper.start()
        if replay is not None:
            await replay.start()
        yield
        if replay is not None:
            await replay.stop()
        await sweeper.stop()
        await route_provider.aclose()
        await asyncio.to_thread(gps_log.flush)

    app = FastAPI(title="Fleet Relay", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.sweeper = sweeper
    app.state.log_writer = gps_log
    app.state.sio = sio

    # ── CORS: driver apps and dashboards from the configured origins ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.cors_origins.strip() == "*" else _origins(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_socket_handlers(sio, engine, settings)
    _register_routes(app)
    return app


def create_asgi_app(settings: Optional[Settings] = None) -> socketio.ASGIApp:
    app = create_app(settings)
    return socketio.ASGIApp(app.state.sio, other_asgi_app=app)


# ── Socket.IO ─────────────────────────────────────────────────────────
def _register_socket_handlers(sio: socketio.AsyncServer, engine: DispatchEngine, settings: Settings) -> None:

    @sio.event
    async def connect(sid, environ, auth=None):
        query = parse_qs(environ.get("QUERY_STRING", ""))
        token = (auth or {}).get("token") if isinstance(auth, dict) else None
        token = token or _first(query, "token")
        if not socket_allowed(settings.api_key, token):
            logger.warning("[HUB] Rejected socket %s: invalid token", sid)
            raise SocketRefused("Authentication error")
        await engine.connect(sid, _first(query, "clientType"), _first(query, "clientId"))

    @sio.event
    async def disconnect(sid, *args):
        await engine.disconnect(sid)

    def bind(name):
        async def handler(sid, data=None):
            return await engine.handle(name, sid, data)
        sio.on(name, handler)

    for name in engine.events:
        bind(name)


# ── HTTP ──────────────────────────────────────────────────────────────
def _engine(request: Request) -> DispatchEngine:
    return request.app.state.engine


def require_api_key(
    request: Request,
    x_api_key: Optional[str] = Header(default=None),
    api_key: Optional[str] = Query(default=None, alias="apiKey"),
) -> None:
    settings: Settings = request.app.state.settings
    if not api_key_valid(settings.api_key, x_api_key or api_key):
        raise HTTPException(status_code=401, detail="Unauthorized. Invalid API key.")


def _register_routes(app: FastAPI) -> None:

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(ValidationError)
    async def invalid(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"error": str(exc), "field": exc.field})

    @app.get("/health", response_class=PlainTextResponse)
    async def health():
        return "OK"

    @app.get("/")
    async def root(request: Request):
        engine = _engine(request)
        return {
            "status": "Server is running",
            "time": utc_iso(),
            "activeDrivers": len(engine.drivers),
        }

    @app.get("/api/status")
    async def api_status(request: Request):
        """Server status, connection counts and file-log stats."""
        status = _engine(request).status()
        status["server"] = f"Fleet Relay v{__version__}"
        status["logWriter"] = request.app.state.log_writer.get_stats()
        status["sweeps"] = request.app.state.sweeper.sweeps
        return status

    @app.get("/api/drivers", dependencies=[Depends(require_api_key)])
    async def list_drivers(request: Request):
        engine = _engine(request)
        return {"drivers": {r.device_id: r.to_dict() for r in engine.drivers.get_active()}}

    @app.get("/api/drivers/{driver_id}", dependencies=[Depends(require_api_key)])
    async def get_driver(driver_id: str, request: Request):
        record = _engine(request).drivers.get(driver_id)
        if record is None:
            raise NotFoundError("Driver not found")
        return {"driver": record.to_dict()}

    @app.get("/api/history/{driver_id}", dependencies=[Depends(require_api_key)])
    async def get_history(
        driver_id: str,
        request: Request,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ):
        """Position history, optionally filtered to [start, end] (ISO-8601 or epoch)."""
        drivers = _engine(request).drivers
        if not drivers.has_history(driver_id):
            raise NotFoundError("No history found for this driver")
        start_ts = epoch_seconds(start) if start else None
        end_ts = epoch_seconds(end) if end else None
        if (start and start_ts is None) or (end and end_ts is None):
            raise ValidationError("start/end must be ISO-8601 or epoch timestamps", field="start")
        history = drivers.get_history(driver_id, start_ts, end_ts)
        return {"history": [r.to_dict() for r in history]}

    @app.post("/api/route")
    async def compute_route(body: RouteWithTollRequest, request: Request):
        """One-shot route with toll estimate. Falls back to a direct line when upstreams fail."""
        engine = _engine(request)
        try:
            result = await route_with_fallback(
                engine.route_provider,
                body.start_point,
                body.end_point,
                body.transport_mode,
                body.truck_specs,
                body.prefer_toll_roads,
                timeout=engine.settings.route_timeout_seconds,
            )
        except Exception as e:
            logger.exception("[ROUTE] route request failed: %s", e)
            raise HTTPException(status_code=500, detail="Route calculation failed")
        return {"success": True, "route": result.to_dict()}


# ── Main ──────────────────────────────────────────────────────────────
def main() -> None:
    import uvicorn

    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    print("\n    +-----------------------------------------------------------+")
    print("    |         FLEET RELAY  v%-8s                            |" % __version__)
    print("    |         FastAPI + Socket.IO Hub + Route/Toll Proxy        |")
    print("    +-----------------------------------------------------------+\n")
    port = int(os.environ.get("PORT", settings.port))
    uvicorn.run(create_asgi_app(settings), host=settings.host, port=port, log_level="info")


if __name__ == "__main__":
    main()
