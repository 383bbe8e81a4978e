"""
server.py — Live Interpreter · FastAPI Control Plane
====================================================
Rendering-layer interface for a single MeetingInterpreter.

Endpoints
---------
  GET    /health        Service liveness
  GET    /status        Status snapshot (state, error, session age, counters)
  POST   /start         Start interpreting (returns once the session is active)
  POST   /stop          Stop; terminal for the current conversation
  PUT    /languages     Change source/target language (idle only)
  DELETE /error         Dismiss the surfaced error
  GET    /transcript    Ordered transcript records
  GET    /minutes       Meeting minutes as a text download (?title=)
  GET    /config        Current configuration
  PUT    /config        Nested partial config update (idle only), persisted
  WS     /ws/events     Live status / transcript / log events

Error mapping
-------------
  InvalidTransition → 409, ConnectionFailed → 502, DeviceUnavailable → 503
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Optional, Set

from dotenv import load_dotenv
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from .config import InterpreterConfig, SupportedLanguage
from .engine import MeetingInterpreter
from .errors import ConnectionFailed, DeviceUnavailable, InterpreterError, InvalidTransition

load_dotenv()

LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s"

logging.basicConfig(
    level=logging.DEBUG if os.getenv("INTERPRETER_DEBUG") else logging.INFO,
    format=LOG_FORMAT,
    datefmt="%H:%M:%S",
)
log = logging.getLogger("live_interpreter.server")

HISTORY_SIZE = 500

InterpreterFactory = Callable[[InterpreterConfig], MeetingInterpreter]


# ---------------------------------------------------------------------------
# WebSocket event broadcaster
# ---------------------------------------------------------------------------

class EventBroadcaster:
    """Fan-out hub for status, transcript and log events to all WS clients."""
    def __init__(self) -> None:
        self._clients: Set[WebSocket] = set()
        self._history: list[dict] = []  # last 500 events replayed to late-joiners
        self._tasks: Set[asyncio.Task] = set()

    @property
    def history(self) -> list[dict]:
        return list(self._history)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._clients.add(ws)
        for event in self._history[-HISTORY_SIZE:]:
            try:
                await ws.send_text(json.dumps(event))
            except (WebSocketDisconnect, RuntimeError):
                break

    def disconnect(self, ws: WebSocket) -> None:
        self._clients.discard(ws)

    async def broadcast(self, event: dict) -> None:
        self._history.append(event)
        if len(self._history) > HISTORY_SIZE:
            self._history = self._history[-HISTORY_SIZE:]
        dead: Set[WebSocket] = set()
        for ws in list(self._clients):
            try:
                await ws.send_text(json.dumps(event))
            except (WebSocketDisconnect, RuntimeError):
                dead.add(ws)
        self._clients -= dead

    def publish(self, event: dict) -> None:
        """Schedule a broadcast from synchronous code running on the loop."""
        task = asyncio.get_running_loop().create_task(self.broadcast(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


class _WsBroadcastHandler(logging.Handler):
    """Logging handler that forwards every log record to all WS clients."""
    def __init__(self, broadcaster: EventBroadcaster, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__()
        self._broadcaster = broadcaster
        self._loop = loop

    def emit(self, record: logging.LogRecord) -> None:
        event = {
            "kind":   "log",
            "level":  record.levelname,
            "logger": record.name,
            "msg":    self.format(record),
            "ts":     record.created,
        }
        try:
            self._loop.call_soon_threadsafe(self._broadcaster.publish, event)
        except RuntimeError:
            pass  # loop closed during shutdown


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class LanguagesRequest(BaseModel):
    source_language: SupportedLanguage
    target_language: SupportedLanguage


def _default_factory(config: InterpreterConfig) -> MeetingInterpreter:
    return MeetingInterpreter(config)


def _config_path() -> Path:
    return Path(os.getenv("INTERPRETER_CONFIG", "interpreter_config.json"))


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

def create_app(factory: Optional[InterpreterFactory] = None) -> FastAPI:
    factory = factory or _default_factory

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        path = _config_path()
        config = InterpreterConfig.load(path)
        broadcaster = EventBroadcaster()
        interpreter = factory(config)

        interpreter.on_status(lambda snap: broadcaster.publish(
            {"kind": "status", "data": snap.model_dump(mode="json")}
        ))
        interpreter.on_records(lambda records: broadcaster.publish(
            {"kind": "transcript", "data": [r.model_dump(mode="json") for r in records]}
        ))

        handler = _WsBroadcastHandler(broadcaster, asyncio.get_running_loop())
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
        logging.getLogger("live_interpreter").addHandler(handler)

        app.state.config_path = path
        app.state.broadcaster = broadcaster
        app.state.interpreter = interpreter
        log.info("event=server_start config=%s", path)
        try:
            yield
        finally:
            log.info("event=server_shutdown state=%s", interpreter.state.value)
            await interpreter.aclose()
            logging.getLogger("live_interpreter").removeHandler(handler)
            log.info("event=server_stopped")

    app = FastAPI(
        title="Live Interpreter",
        version="1.0.0",
        description="Continuous meeting interpretation over rotating Live API sessions",
        lifespan=_lifespan,
    )

    # Allow file:// and any local origin to reach the API (dev only)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(InterpreterError)
    async def _interpreter_error(request: Request, exc: InterpreterError) -> JSONResponse:
        if isinstance(exc, InvalidTransition):
            code = status.HTTP_409_CONFLICT
        elif isinstance(exc, ConnectionFailed):
            code = status.HTTP_502_BAD_GATEWAY
        elif isinstance(exc, DeviceUnavailable):
            code = status.HTTP_503_SERVICE_UNAVAILABLE
        else:
            code = status.HTTP_500_INTERNAL_SERVER_ERROR
        log.warning("event=request_failed path=%s kind=%s error=%s", request.url.path, exc.kind, exc)
        return JSONResponse(status_code=code, content={"kind": exc.kind, "detail": str(exc)})

    def _interpreter(request: Request) -> MeetingInterpreter:
        return request.app.state.interpreter

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        """Liveness check."""
        return JSONResponse({"status": "ok", "state": _interpreter(request).state.value})

    @app.get("/status")
    async def get_status(request: Request) -> dict:
        return _interpreter(request).snapshot().model_dump(mode="json")

    @app.post("/start")
    async def start(request: Request) -> dict:
        interpreter = _interpreter(request)
        await interpreter.start()
        return interpreter.snapshot().model_dump(mode="json")

    @app.post("/stop")
    async def stop(request: Request) -> dict:
        interpreter = _interpreter(request)
        await interpreter.stop()
        return interpreter.snapshot().model_dump(mode="json")

    @app.put("/languages")
    async def set_languages(body: LanguagesRequest, request: Request) -> dict:
        interpreter = _interpreter(request)
        interpreter.select_languages(body.source_language, body.target_language)
        return interpreter.snapshot().model_dump(mode="json")

    @app.delete("/error")
    async def dismiss_error(request: Request) -> dict:
        interpreter = _interpreter(request)
        interpreter.dismiss_error()
        return interpreter.snapshot().model_dump(mode="json")

    @app.get("/transcript")
    async def transcript(request: Request) -> list[dict]:
        return [r.model_dump(mode="json") for r in _interpreter(request).transcript]

    @app.get("/minutes")
    async def minutes(request: Request, title: Optional[str] = None) -> PlainTextResponse:
        filename, text = _interpreter(request).minutes(title)
        return PlainTextResponse(
            text,
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.get("/config")
    async def get_config(request: Request) -> dict:
        return _interpreter(request).config.model_dump(mode="json")

    @app.put("/config")
    async def put_config(patch: dict, request: Request) -> dict:
        interpreter = _interpreter(request)
        try:
            config = interpreter.update_config(patch)
        except ValueError as exc:
            return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                                content={"detail": str(exc)})
        config.save(request.app.state.config_path)
        return config.model_dump(mode="json")

    @app.websocket("/ws/events")
    async def ws_events(ws: WebSocket) -> None:
        """
        Live event stream.  Each message is a JSON object:
        {"kind": "status",     "data": <status snapshot>}
        {"kind": "transcript", "data": [<record>, ...]}
        {"kind": "log", "level": ..., "logger": ..., "msg": ..., "ts": ...}
        """
        broadcaster: EventBroadcaster = ws.app.state.broadcaster
        await broadcaster.connect(ws)
        log.info("event=ws_client_connected remote=%s", ws.client)
        try:
            while True:
                # Keep the connection alive; we only send, never receive
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.disconnect(ws)
            log.info("event=ws_client_disconnected remote=%s", ws.client)

    return app


app = create_app()
