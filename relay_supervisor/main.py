"""
Relay supervisor FastAPI application.

Thin web layer over the supervisor: a snapshot query, a start/stop command,
real-time events over WebSocket or Server-Sent Events, run history and the
supervisor's own log. Startup runs in a fixed order: history database, state
store, slot restore, then requests are accepted.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from . import __version__
from .config import Config, config
from .document import SlotName
from .errors import ConfigurationError, ConflictError, StoreIOError
from .events import EventBroadcaster
from .history import HistoryRecorder
from .mediaserver import MediaServer
from .models import initialize_db
from .monitor import ResourceMonitor
from .process import ProcessManager
from .store import StateStore
from .supervisor import RelaySupervisor

logger = logging.getLogger(__name__)

SSE_KEEPALIVE_SECONDS = 15.0


def setup_logging(cfg: Config):
    """Configure the root logger with a rotating file handler and the console."""
    root = logging.getLogger()
    if any(getattr(handler, "_relay_supervisor", False) for handler in root.handlers):
        return

    log_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    # Rotating file handler (auto-compaction)
    file_handler = RotatingFileHandler(
        cfg.supervisor_log,
        maxBytes=cfg.log_max_bytes,
        backupCount=cfg.log_backup_count,
    )
    file_handler.setFormatter(log_formatter)
    file_handler._relay_supervisor = True

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(log_formatter)
    console_handler._relay_supervisor = True

    root.setLevel(logging.INFO)
    root.addHandler(file_handler)
    root.addHandler(console_handler)


# Pydantic models for API
class AddressUpdate(BaseModel):
    source: Optional[str] = Field(None, description="Stream to pull from")
    output: Optional[str] = Field(None, description="Destination to push to")


class CommandRequest(BaseModel):
    slot: str = Field(..., description="repeatToLocalNginx or repeatToOptionalOutput")
    action: str = Field(..., description="start or stop")
    address: Optional[AddressUpdate] = Field(None, description="Address change, slot must be stopped")


def run_command(supervisor: RelaySupervisor, data: CommandRequest) -> dict:
    """Apply a command, mapping supervisor errors to HTTP errors."""
    address = data.address.model_dump(exclude_none=True) if data.address else None
    try:
        return supervisor.apply_user_command(data.slot, data.action, address)
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except StoreIOError as e:
        raise HTTPException(status_code=500, detail=str(e))


def create_app(cfg: Config = config, process_manager: ProcessManager = None) -> FastAPI:
    """Build the application around a supervisor for cfg."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler for startup/shutdown."""
        setup_logging(cfg)
        logger.info(f"Starting relay supervisor v{__version__}...")

        initialize_db(cfg.db_path)
        history = HistoryRecorder()
        broadcaster = EventBroadcaster(queue_size=cfg.subscriber_queue_size)
        supervisor = RelaySupervisor(
            cfg,
            StateStore(cfg.state_path),
            broadcaster,
            process_manager=process_manager,
            history=history,
        )
        media_server = MediaServer(cfg)
        monitor = ResourceMonitor(supervisor, cfg, history)

        media_server.start()
        supervisor.load()
        supervisor.restore_all()
        await monitor.start()

        app.state.supervisor = supervisor
        app.state.broadcaster = broadcaster
        app.state.history = history
        app.state.media_server = media_server
        app.state.monitor = monitor

        yield

        logger.info("Shutting down relay supervisor...")
        await monitor.stop()
        broadcaster.close_all()
        await asyncio.to_thread(supervisor.shutdown)
        media_server.stop()

    app = FastAPI(
        title="Relay Supervisor",
        description="Supervises ffmpeg relays into and out of a local media server",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/snapshot")
    async def get_snapshot(request: Request):
        """Current intent, run state, progress and address of both slots."""
        return request.app.state.supervisor.snapshot()

    @app.post("/api/command", status_code=202)
    async def post_command(request: Request, data: CommandRequest):
        """Start or stop a slot."""
        supervisor = request.app.state.supervisor
        slot = await asyncio.to_thread(run_command, supervisor, data)
        return {"status": "accepted", "slot": slot}

    @app.get("/api/status")
    async def get_status(request: Request):
        """Supervisor, media server and process resource status."""
        state = request.app.state
        slots = {}
        for name, slot in state.supervisor.snapshot().items():
            slots[name] = {
                "runState": slot["runState"],
                "userIntent": slot["userIntent"],
                "pid": slot["pid"],
                "metrics": state.monitor.get_current_metrics(name),
            }

        return {
            "version": __version__,
            "media_server": {
                "reachable": await state.media_server.is_reachable(),
                "managed": bool(cfg.media_server_exec),
                "pid": state.media_server.pid,
            },
            "subscribers": state.broadcaster.subscriber_count,
            "slots": slots,
        }

    @app.get("/api/slots/{name}/runs")
    async def get_slot_runs(request: Request, name: str, limit: int = Query(50, ge=1, le=500)):
        """Recent ffmpeg runs of a slot."""
        slot_name = _slot_or_404(name)
        return await asyncio.to_thread(request.app.state.history.runs, slot_name.value, limit)

    @app.get("/api/slots/{name}/logs")
    async def get_slot_logs(
        request: Request,
        name: str,
        limit: int = Query(100, ge=1, le=1000),
        level: Optional[str] = None,
    ):
        """Recent ffmpeg diagnostic lines of a slot."""
        slot_name = _slot_or_404(name)
        return await asyncio.to_thread(request.app.state.history.logs, slot_name.value, limit, level)

    @app.get("/api/supervisor/logs")
    async def get_supervisor_logs(lines: int = Query(100, ge=1, le=1000)):
        """Get recent supervisor log entries."""
        try:
            with open(cfg.supervisor_log, "r") as f:
                all_lines = f.readlines()
                return {"lines": all_lines[-lines:], "total": len(all_lines)}
        except FileNotFoundError:
            return {"lines": [], "total": 0}

    @app.get("/api/events")
    async def stream_events(request: Request):
        """
        Stream slot events.

        Returns Server-Sent Events (SSE) stream, starting with a snapshot.
        """
        subscription = request.app.state.broadcaster.subscribe(loop=asyncio.get_running_loop())

        async def event_stream():
            try:
                while True:
                    event = await subscription.next_event(SSE_KEEPALIVE_SECONDS)
                    if event is None:
                        if subscription.closed:
                            break
                        yield ": keepalive\n\n"
                        continue
                    yield f"data: {json.dumps(event.to_dict())}\n\n"
            finally:
                subscription.close()

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @app.websocket("/ws")
    async def events_socket(websocket: WebSocket):
        """Push slot events and accept commands on the same connection."""
        await websocket.accept()
        supervisor = websocket.app.state.supervisor
        subscription = websocket.app.state.broadcaster.subscribe(loop=asyncio.get_running_loop())

        async def sender():
            while True:
                event = await subscription.next_event(SSE_KEEPALIVE_SECONDS)
                if event is None:
                    if subscription.closed:
                        return
                    continue
                await websocket.send_json(event.to_dict())

        async def receiver():
            while True:
                text = await websocket.receive_text()
                await websocket.send_json(await _socket_command(supervisor, text))

        tasks = [asyncio.create_task(sender()), asyncio.create_task(receiver())]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            for task in done:
                error = task.exception()
                if error is not None and not isinstance(error, WebSocketDisconnect):
                    logger.error(f"WebSocket error: {error}")
        finally:
            subscription.close()

    return app


async def _socket_command(supervisor: RelaySupervisor, text: str) -> dict:
    """Run a command received over the WebSocket and describe the outcome."""
    try:
        data = CommandRequest.model_validate(json.loads(text))
    except ValueError as e:
        return {"type": "command_result", "status": 422, "detail": f"Invalid command: {e}"}

    try:
        slot = await asyncio.to_thread(run_command, supervisor, data)
    except HTTPException as e:
        return {"type": "command_result", "status": e.status_code, "detail": e.detail}
    return {"type": "command_result", "status": 202, "slot": slot}


def _slot_or_404(name: str) -> SlotName:
    try:
        return SlotName(name)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Slot '{name}' not found")


app = create_app()
