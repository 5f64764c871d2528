"""
MicroSense — FastAPI Server

================================================================================
Architecture:
  • One ScanService per process, owning camera, microphone, detector,
    heuristics engines, persisted settings/history and the Ollama client
  • REST endpoints drive the scan lifecycle, settings and chat
  • Chat replies stream back as plain text, token by token
  • State, countdown, profile, error and live-state events fan out to
    every connected WebSocket
================================================================================

Endpoints:
  GET    /health             — server health
  GET    /scan               — scan state, countdown, latency trace
  POST   /scan/start         — begin a scan (409 when the camera is unavailable)
  POST   /scan/stop          — abort the running scan
  GET    /profile            — latest AlphaEye profile (404 before the first scan)
  GET    /history            — persisted scan history, newest first
  GET    /settings           — user settings
  PUT    /settings           — update settings
  DELETE /data               — clear settings and history
  GET    /chat               — conversation turns
  POST   /chat               — send a message, stream the reply (502 when Ollama fails)
  POST   /chat/abort         — abandon the in-flight reply
  POST   /monitor/start      — start the live indicator
  POST   /monitor/stop       — stop the live indicator
  GET    /models             — models installed on the Ollama server
  GET    /therapy/{state}    — therapy direction + a suggested technique
  WS     /ws/events          — event stream

Client → Server messages (WebSocket):
  { type: "live_context", active: true }   → chat view shown / hidden
  { type: "ping" }                         → keepalive

Server → Client messages:
  { type: "status", data: {...} }          → snapshot on connect
  { type: "state", data: {state} }         → scan state change
  { type: "countdown", data: {...} }       → remaining / total ms
  { type: "frame", data: {frame_count} }   → faces forwarded so far
  { type: "profile", data: {...} }         → completed scan
  { type: "live_state", data: {...} }      → monitoring indicator change
  { type: "error", message: "..." }        → recoverable failure
  { type: "pong" }                         → keepalive ack
"""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Set

from fastapi import Body, FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from .core.config import server_cfg
from .core.errors import DeviceBusyError, DeviceUnavailableError, InferenceError, ModelLoadError
from .core.interfaces import EngineSet
from .core.models import AlphaEyeProfile, TherapyDirection
from .core.state_machine import ScanState
from .processing.fusion import dominant_state
from .processing.therapy import get_direction, quick_suggestion
from .services.scan_service import ScanService

VERSION = "1.0.0"

logger = logging.getLogger("microsense")


# ---------------------------------------------------------------------------
# Event fan-out
# ---------------------------------------------------------------------------

class EventHub:
    """Broadcasts service events to every WebSocket subscriber."""

    def __init__(self, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._subscribers: Set[asyncio.Queue] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def publish(self, event: Dict[str, Any]) -> None:
        for queue in list(self._subscribers):
            if queue.full():
                # Slow consumer: drop its oldest event
                queue.get_nowait()
            queue.put_nowait(event)

    def attach(self, service: ScanService) -> None:
        def on_state(state: ScanState) -> None:
            self.publish({"type": "state", "data": {"state": state.value}})

        def on_countdown(remaining_ms: int, total_ms: int) -> None:
            self.publish({"type": "countdown", "data": {"remaining_ms": remaining_ms, "total_ms": total_ms}})

        def on_frame(frame_count: int) -> None:
            self.publish({"type": "frame", "data": {"frame_count": frame_count}})

        def on_profile(profile: AlphaEyeProfile) -> None:
            self.publish({"type": "profile", "data": profile_payload(profile)})

        def on_error(error: Exception) -> None:
            self.publish({"type": "error", "message": str(error)[:200]})

        def on_live_state(state: str, direction: TherapyDirection) -> None:
            self.publish({"type": "live_state", "data": {"state": state, "direction": direction.to_dict()}})

        service.on_state = on_state
        service.on_countdown = on_countdown
        service.on_frame = on_frame
        service.on_profile = on_profile
        service.on_error = on_error
        service.on_live_state = on_live_state


def profile_payload(profile: AlphaEyeProfile) -> Dict[str, Any]:
    state = dominant_state(profile.params)
    return {
        **profile.to_dict(),
        "dominant_state": state,
        "direction": get_direction(state).to_dict(),
    }


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(service: ScanService, load_models: bool = True) -> FastAPI:
    hub = EventHub()
    hub.attach(service)

    async def _bootstrap() -> None:
        if load_models:
            try:
                await service.load_models()
            except ModelLoadError as e:
                logger.error(f"Face detector unavailable: {e}")
        connected = await service.check_connection()
        logger.info(f"   Ollama at {service.client.base_url}: {'connected' if connected else 'offline'}")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🚀 MicroSense starting...")
        bootstrap = asyncio.create_task(_bootstrap(), name="bootstrap")
        yield
        logger.info("🛑 Shutting down...")
        if not bootstrap.done():
            bootstrap.cancel()
            try:
                await bootstrap
            except (asyncio.CancelledError, Exception):
                pass
        await service.shutdown()
        logger.info("🛑 MicroSense stopped")

    app = FastAPI(
        title="MicroSense — Facial Micro-Vibration Scanner",
        version=VERSION,
        description=(
            "Runs a timed webcam + microphone scan, fuses the heuristics engines "
            "into an AlphaEye psychometric profile and chats about it through a "
            "local Ollama model."
        ),
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.hub = hub

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(server_cfg.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -- Health & scan -------------------------------------------------------

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "version": VERSION,
            "state": service.state.value,
            "ollama_connected": service.client.connected,
            "event_subscribers": hub.subscriber_count,
        }

    @app.get("/scan")
    async def scan_status():
        return service.status()

    @app.post("/scan/start")
    async def scan_start():
        try:
            started = await service.start()
        except DeviceUnavailableError as e:
            return JSONResponse(status_code=409, content={"error": str(e)})
        return {"started": started, "state": service.state.value}

    @app.post("/scan/stop")
    async def scan_stop():
        stopped = await service.stop()
        return {"stopped": stopped, "state": service.state.value}

    @app.get("/profile")
    async def profile():
        if service.profile is None:
            return JSONResponse(status_code=404, content={"error": "No scan results yet"})
        return profile_payload(service.profile)

    @app.get("/history")
    async def history():
        return [entry.to_dict() for entry in service.history]

    # -- Settings ------------------------------------------------------------

    @app.get("/settings")
    async def get_settings():
        return service.context.settings.to_dict()

    @app.put("/settings")
    async def put_settings(changes: Dict[str, Any] = Body(...)):
        try:
            settings = service.update_settings(**changes)
        except (ValueError, TypeError) as e:
            return JSONResponse(status_code=422, content={"error": str(e)})
        return settings.to_dict()

    @app.delete("/data")
    async def clear_data():
        service.reset_all()
        return {"cleared": True}

    # -- Chat ----------------------------------------------------------------

    @app.get("/chat")
    async def chat_log():
        return [turn.to_message() for turn in service.conversation.turns]

    @app.post("/chat")
    async def chat(payload: Dict[str, Any] = Body(...)):
        text = payload.get("message")
        if not isinstance(text, str) or not text.strip():
            return JSONResponse(status_code=422, content={"error": "message must be a non-empty string"})

        tokens = service.send_message(text)
        # Pull the first token up front so connection failures map to 502
        try:
            first: Optional[str] = await tokens.__anext__()
        except StopAsyncIteration:
            first = None
        except InferenceError as e:
            return JSONResponse(status_code=502, content={"error": str(e)})

        async def stream() -> AsyncIterator[str]:
            if first is None:
                return
            yield first
            try:
                async for token in tokens:
                    yield token
            except InferenceError as e:
                logger.warning(f"Chat stream interrupted: {e}")

        return StreamingResponse(stream(), media_type="text/plain; charset=utf-8")

    @app.post("/chat/abort")
    async def chat_abort():
        service.abort_chat()
        return {"aborted": True}

    # -- Monitoring, models, therapy -----------------------------------------

    @app.post("/monitor/start")
    async def monitor_start():
        started = await service.set_live_context(True)
        return {"monitoring": started, "live_state": service.context.live_state}

    @app.post("/monitor/stop")
    async def monitor_stop():
        await service.set_live_context(False)
        return {"monitoring": False}

    @app.get("/models")
    async def models():
        names = await service.list_models()
        return {"models": names, "current": service.client.model}

    @app.get("/therapy/{state}")
    async def therapy(state: str):
        return {
            **get_direction(state).to_dict(),
            "suggestion": quick_suggestion(state),
        }

    # -- WebSocket -----------------------------------------------------------

    @app.websocket("/ws/events")
    async def events(websocket: WebSocket):
        await websocket.accept()
        queue = hub.subscribe()
        logger.info("Event subscriber connected")

        async def sender() -> None:
            while True:
                event = await queue.get()
                await websocket.send_json(event)

        await websocket.send_json({"type": "status", "data": service.status()})
        send_task = asyncio.create_task(sender(), name="ws-sender")
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    await websocket.send_json({"type": "error", "message": "Invalid JSON"})
                    continue
                if not isinstance(message, dict):
                    continue

                msg_type = message.get("type")
                if msg_type == "ping":
                    await websocket.send_json({"type": "pong"})
                elif msg_type == "live_context":
                    try:
                        await service.set_live_context(bool(message.get("active")))
                    except DeviceBusyError as e:
                        await websocket.send_json({"type": "error", "message": str(e)})
        except WebSocketDisconnect:
            logger.info("Event subscriber disconnected")
        finally:
            hub.unsubscribe(queue)
            send_task.cancel()
            try:
                await send_task
            except (asyncio.CancelledError, Exception):
                pass

    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def load_engines(target: str) -> EngineSet:
    """Resolve "package.module:factory" and call it for the engine set."""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Engine factory must look like 'module:callable', got {target!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    engines = factory()
    if isinstance(engines, dict):
        engines = EngineSet(**engines)
    if not isinstance(engines, EngineSet):
        raise TypeError(f"{target} returned {type(engines).__name__}, expected EngineSet")
    return engines


def main() -> None:
    import uvicorn

    from .processing.detector import MediaPipeFaceDetector
    from .processing.devices import OpenCVCamera, SoundDeviceMicrophone

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )

    if not server_cfg.engine_factory:
        raise SystemExit("Set MICROSENSE_ENGINES=module:callable to provide the heuristics engines")

    service = ScanService(
        MediaPipeFaceDetector(),
        load_engines(server_cfg.engine_factory),
        OpenCVCamera(),
        SoundDeviceMicrophone(),
    )
    uvicorn.run(
        create_app(service),
        host=server_cfg.host,
        port=server_cfg.port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
