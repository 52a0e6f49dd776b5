from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union
from urllib.parse import urlencode

import orjson
import websockets
from websockets.exceptions import ConnectionClosed

from .audio import AudioFrame
from .errors import BridgeConnectionError, StreamError
from .events import EventSink, TranscriptEvent, TranscriptionFailed, TranscriptReceived
from .logging import RichLogger
from .settings import settings

NORMAL_CLOSURE = 1000

Connector = Callable[[str, Dict[str, str]], Awaitable[Any]]


@dataclass
class ASRConfig:
    api_key: str = settings.deepgram_api_key
    url: str = settings.deepgram_url
    model: str = settings.deepgram_model
    language: str = settings.deepgram_language
    sample_rate: int = settings.sample_rate       # Hz (expected input)
    channels: int = settings.channels
    encoding: str = "linear16"
    interim_results: bool = True
    endpointing: bool = True
    punctuate: bool = True
    profanity_filter: bool = False
    redact: Tuple[str, ...] = ("pci", "numbers")  # keep card numbers/digits out of transcripts

    # Connection management
    connect_timeout_s: float = settings.stt_connect_timeout_s
    max_reconnects: int = settings.stt_max_reconnects
    reconnect_delay_s: float = settings.stt_reconnect_delay_s   # doubled on every attempt
    keepalive_s: float = settings.stt_keepalive_s               # 0 disables

    def __post_init__(self):
        if self.connect_timeout_s <= 0:
            raise ValueError(f"connect_timeout_s must be > 0, got {self.connect_timeout_s}")
        if self.max_reconnects < 0:
            raise ValueError(f"max_reconnects must be >= 0, got {self.max_reconnects}")
        if self.reconnect_delay_s < 0:
            raise ValueError(f"reconnect_delay_s must be >= 0, got {self.reconnect_delay_s}")

    def build_url(self) -> str:
        params = {
            "model": self.model,
            "language": self.language,
            "sample_rate": str(self.sample_rate),
            "encoding": self.encoding,
            "channels": str(self.channels),
            "interim_results": str(self.interim_results).lower(),
            "endpointing": str(self.endpointing).lower(),
            "punctuate": str(self.punctuate).lower(),
            "profanity_filter": str(self.profanity_filter).lower(),
        }
        query = urlencode(params)
        if self.redact:
            query += "&" + "&".join(urlencode({"redact": r}) for r in self.redact)
        return f"{self.url}?{query}"


async def _websocket_connector(url: str, headers: Dict[str, str]) -> Any:
    # Handshake timeout is enforced by the caller
    return await websockets.connect(url, additional_headers=headers, open_timeout=None)


class TranscriptionBridge:
    """
    Streaming speech-to-text over a vendor websocket (Deepgram listen API).

        stt = TranscriptionBridge(queue.put_nowait)
        await stt.connect()                  # BridgeConnectionError on timeout/auth failure
        await stt.send_audio(frame)          # dropped silently while disconnected
        await stt.finalize()                 # ask for the final result of the utterance
        await stt.disconnect()

    Transcripts and failures are posted to `emit` as session events. An unexpected
    close triggers up to `max_reconnects` attempts with exponential backoff; when
    those run out a fatal TranscriptionFailed is posted.
    """

    def __init__(
        self,
        emit: EventSink,
        cfg: Optional[ASRConfig] = None,
        connector: Optional[Connector] = None,
        session_id: str = "",
    ):
        self.cfg = cfg or ASRConfig()
        self._emit = emit
        self._connector = connector or _websocket_connector
        self._session_id = session_id or "--------"
        self._ws: Any = None
        self._connected = False
        self._closing = False
        self._attempts = 0
        self._utterance_id = 0
        self._recv_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self._connected and self._ws is not None

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    def _log(self, msg: str):
        print(RichLogger.line(f"[STT {self._session_id[:8]}]", msg))

    # ------------- public contract -------------
    async def connect(self):
        if self.connected:
            return
        if not self.cfg.api_key:
            raise BridgeConnectionError("Deepgram API key is required", code="STT_CONNECT_FAILED")
        self._closing = False
        await self._open()
        self._attempts = 0
        if self.cfg.keepalive_s > 0 and (self._keepalive_task is None or self._keepalive_task.done()):
            self._keepalive_task = asyncio.create_task(self._keepalive_loop())

    async def send_audio(self, frame: Union[AudioFrame, bytes]) -> bool:
        ws = self._ws
        if not self._connected or ws is None:
            return False
        data = frame.data if isinstance(frame, AudioFrame) else bytes(frame)
        if not data:
            return False
        try:
            await ws.send(data)
            return True
        except ConnectionClosed:
            # receive loop owns reconnection
            return False
        except Exception as e:
            self._log(RichLogger.warning(f"audio send failed: {e!r}"))
            return False

    async def finalize(self):
        await self._send_control({"type": "Finalize"})

    async def keep_alive(self):
        await self._send_control({"type": "KeepAlive"})

    async def disconnect(self):
        self._closing = True
        self._connected = False
        ws, self._ws = self._ws, None
        for task in (self._keepalive_task, self._recv_task):
            if task and not task.done() and task is not asyncio.current_task():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task
        self._keepalive_task = None
        self._recv_task = None
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.send(orjson.dumps({"type": "CloseStream"}).decode("utf-8"))
            with contextlib.suppress(Exception):
                await ws.close(code=NORMAL_CLOSURE)

    # ------------- internals -------------
    async def _send_control(self, obj: dict):
        ws = self._ws
        if not self._connected or ws is None:
            return
        try:
            await ws.send(orjson.dumps(obj).decode("utf-8"))
        except Exception as e:
            self._log(RichLogger.warning(f"control send failed ({obj.get('type')}): {e!r}"))

    async def _open(self):
        headers = {"Authorization": f"Token {self.cfg.api_key}"}
        try:
            ws = await asyncio.wait_for(
                self._connector(self.cfg.build_url(), headers), timeout=self.cfg.connect_timeout_s
            )
        except asyncio.TimeoutError:
            raise BridgeConnectionError("STT connection timeout", code="STT_CONNECT_FAILED")
        except BridgeConnectionError:
            raise
        except Exception as e:
            raise BridgeConnectionError(f"Failed to connect to STT: {e!r}", code="STT_CONNECT_FAILED") from e

        self._ws = ws
        self._connected = True
        self._recv_task = asyncio.create_task(self._receive_loop(ws))
        self._log(RichLogger.stt_connect(self._attempts))

    async def _receive_loop(self, ws: Any):
        try:
            async for raw in ws:
                self._handle_message(raw)
        except ConnectionClosed:
            pass
        except Exception as e:
            self._log(RichLogger.error(f"STT receive failed: {e!r}"))

        if ws is not self._ws:
            return
        code = getattr(ws, "close_code", None)
        self._connected = False
        self._ws = None
        if self._closing:
            return
        if code == NORMAL_CLOSURE:
            self._log(f"STT closed normally ({code})")
            return
        self._log(RichLogger.warning(f"STT closed unexpectedly (code={code})"))
        await self._reconnect()

    async def _reconnect(self):
        while self._attempts < self.cfg.max_reconnects and not self._closing:
            self._attempts += 1
            delay = self.cfg.reconnect_delay_s * (2 ** (self._attempts - 1))
            self._log(RichLogger.stt_reconnect(self._attempts, self.cfg.max_reconnects, delay))
            await asyncio.sleep(delay)
            if self._closing:
                return
            try:
                await self._open()
                self._attempts = 0
                return
            except BridgeConnectionError as e:
                self._log(RichLogger.error(f"STT reconnect failed: {e}"))

        if not self._closing:
            self._log(RichLogger.error("Max STT reconnection attempts reached"))
            self._stop_keepalive()
            self._emit(
                TranscriptionFailed(
                    error=StreamError(
                        f"speech recognition unavailable after {self.cfg.max_reconnects} reconnect attempts",
                        code="STT_ERROR",
                    ),
                    fatal=True,
                )
            )

    def _stop_keepalive(self):
        task, self._keepalive_task = self._keepalive_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _keepalive_loop(self):
        while not self._closing:
            await asyncio.sleep(self.cfg.keepalive_s)
            if self.connected:
                await self.keep_alive()

    def _handle_message(self, raw: Union[str, bytes]):
        try:
            message = orjson.loads(raw)
        except orjson.JSONDecodeError:
            self._log(RichLogger.warning("unparseable STT message"))
            return
        if not isinstance(message, dict):
            return

        typ = message.get("type")
        if typ == "Results":
            channel = message.get("channel") or {}
            alternatives = channel.get("alternatives") or []
            if not alternatives:
                return
            alt = alternatives[0] or {}
            transcript = (alt.get("transcript") or "").strip()
            if not transcript:
                return
            is_final = bool(message.get("is_final", channel.get("is_final", False)))
            evt = TranscriptEvent(
                text=transcript,
                confidence=float(alt.get("confidence") or 0.0),
                is_final=is_final,
                utterance_id=self._utterance_id,
            )
            if is_final:
                self._utterance_id += 1
            self._emit(TranscriptReceived(event=evt))
        elif typ == "Error":
            desc = message.get("description") or message.get("message") or "Unknown STT error"
            self._log(RichLogger.error(f"STT vendor error: {desc}"))
            self._emit(TranscriptionFailed(error=StreamError(desc, code="STT_ERROR"), fatal=False))
