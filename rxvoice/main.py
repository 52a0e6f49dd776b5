from __future__ import annotations

import asyncio
import contextlib
import uuid
from typing import Any, Optional

import orjson
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .errors import ValidationError
from .events import ClientAudio, ClientControl, ClientInvalid, Shutdown
from .logging import RichLogger
from .metrics import clear_file, read_turn_metrics, summarize_file
from .pipeline import SessionCoordinator
from .sessions import SessionRegistry
from .settings import settings
from .wire import decode_client_frame

registry = SessionRegistry()


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    sweeper = asyncio.create_task(registry.sweep_forever(settings.sweep_interval_s))
    try:
        yield
    finally:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper


app = FastAPI(title="rxvoice", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _configured(key: str) -> str:
    return "✅" if key else "❌"


# Log server startup configuration
print("🚀 RxVoice Server Starting")
print(
    f"🎯 STT: {settings.deepgram_model} {_configured(settings.deepgram_api_key)} | "
    f"🤖 LLM: {settings.llm_model} {_configured(settings.openai_api_key)} | "
    f"🎤 TTS: {settings.elevenlabs_model_id} {_configured(settings.elevenlabs_api_key)}"
)
print(f"📊 Audio: {settings.sample_rate}Hz @ {settings.frame_ms}ms | 🌐 {settings.host}:{settings.port}")
print(f"⏱️  Sessions: ttl {settings.session_ttl_ms // 1000}s | idle {settings.idle_timeout_s:.0f}s")
print("=" * 60)


# ----------------------------
# Client connection
# ----------------------------
class Connection:
    """One client socket. Outbound messages are serialized; sends after close are dropped."""

    def __init__(self, ws: WebSocket, conn_id: Optional[str] = None):
        self.ws = ws
        self.id = conn_id or uuid.uuid4().hex
        self._lock = asyncio.Lock()
        self._closed = False

    async def accept(self):
        await self.ws.accept()
        print(RichLogger.line(RichLogger.connection_open(self.id)))

    async def close(self, code: int = 1000):
        if self._closed:
            return
        self._closed = True
        # the peer may already be gone
        with contextlib.suppress(Exception):
            await self.ws.close(code=code)

    async def send_json(self, obj: dict[str, Any]):
        if self._closed:
            return
        text = orjson.dumps(obj).decode("utf-8")
        async with self._lock:
            await self.ws.send_text(text)


# ----------------------------
# WebSocket endpoint
# ----------------------------
@app.websocket("/ws")
async def ws_session(ws: WebSocket):
    conn = Connection(ws)
    await conn.accept()

    coord = SessionCoordinator(conn.send_json, registry, conn_id=conn.id)
    run_task = asyncio.create_task(coord.run())
    # coordinator closed itself (expiry): drop the socket so the receive loop ends
    run_task.add_done_callback(lambda _t: asyncio.ensure_future(conn.close()))

    try:
        while not coord.closed:
            msg = await ws.receive()
            t = msg["type"]
            if t == "websocket.disconnect":
                break
            if t != "websocket.receive":
                continue
            payload = msg.get("text")
            if payload is None:
                payload = msg.get("bytes")
            if payload is None:
                continue
            try:
                frame = decode_client_frame(payload)
            except ValidationError as e:
                coord.post(ClientInvalid(error=e))
                continue
            if isinstance(frame, dict):
                coord.post(ClientControl(message=frame))
            else:
                coord.post(ClientAudio(data=frame))
    except (WebSocketDisconnect, RuntimeError):
        pass
    finally:
        coord.post(Shutdown(reason="disconnect"))
        with contextlib.suppress(Exception):
            await asyncio.wait_for(run_task, timeout=5)
        if not run_task.done():
            run_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await run_task
            await coord.close("disconnect")
        await conn.close()


# ----------------------------
# Health, status & metrics
# ----------------------------
@app.get("/health")
def health():
    return {"ok": True}


@app.get("/api/status")
def status():
    return {
        "ok": True,
        "services": {
            "stt": bool(settings.deepgram_api_key),
            "llm": bool(settings.openai_api_key),
            "tts": bool(settings.elevenlabs_api_key),
        },
        "sessions": registry.live_count,
    }


@app.get("/metrics")
def metrics_summary():
    return summarize_file()


@app.get("/metrics/turns")
def metrics_turns(limit: int = 0):
    """Raw turn records, newest last. `limit` keeps only the most recent N."""
    turns = read_turn_metrics(settings.metrics_file)
    return turns[-limit:] if limit > 0 else turns


@app.delete("/metrics")
def reset_metrics():
    try:
        clear_file(settings.metrics_file)
    except OSError as e:
        print(RichLogger.line(RichLogger.error(f"metrics reset failed: {e!r}")))
        return JSONResponse(status_code=500, content={"error": f"could not clear metrics: {e}"})
    return {"message": "Metrics cleared successfully"}
