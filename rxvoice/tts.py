from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional, Tuple

import httpx

from .errors import Cancelled, StreamError
from .events import EventSink, SynthesisChunk, SynthesisChunkReady, SynthesisComplete, SynthesisFailed
from .logging import RichLogger
from .sentences import clean_for_tts, estimate_speaking_ms
from .settings import settings


@dataclass
class TTSConfig:
    api_key: str = settings.elevenlabs_api_key
    url: str = settings.elevenlabs_url
    voice_id: str = settings.elevenlabs_voice_id
    model_id: str = settings.elevenlabs_model_id
    output_format: str = settings.tts_output_format   # raw PCM16 at 16 kHz
    sample_rate: int = settings.tts_sample_rate
    timeout_s: float = settings.tts_timeout_s

    # Voice settings
    stability: float = 0.5
    similarity_boost: float = 0.75
    style: float = 0.0
    use_speaker_boost: bool = True
    optimize_streaming_latency: int = 2   # 0 (off) .. 4 (max)

    chunk_size: int = 4096                # bytes per read from the HTTP stream

    def __post_init__(self):
        if not 0.0 <= self.stability <= 1.0 or not 0.0 <= self.similarity_boost <= 1.0:
            raise ValueError("stability and similarity_boost must be in [0, 1]")
        if not 0 <= self.optimize_streaming_latency <= 4:
            raise ValueError(f"optimize_streaming_latency must be in [0, 4], got {self.optimize_streaming_latency}")
        if self.timeout_s <= 0:
            raise ValueError(f"timeout_s must be > 0, got {self.timeout_s}")

    @property
    def endpoint(self) -> str:
        return f"{self.url.rstrip('/')}/{self.voice_id}/stream"

    def body(self, text: str) -> Dict[str, Any]:
        return {
            "text": text,
            "model_id": self.model_id,
            "voice_settings": {
                "stability": self.stability,
                "similarity_boost": self.similarity_boost,
                "style": self.style,
                "use_speaker_boost": self.use_speaker_boost,
            },
        }


class SynthesisBridge:
    """
    Streaming text-to-speech over HTTP (ElevenLabs stream endpoint).

    At most one stream is active; each gets a fresh stream id and its audio is
    posted as SynthesisChunkReady events with a per-stream sequence number.

        tts = SynthesisBridge(queue.put_nowait)
        sid = await tts.synthesize("Your refill is ready.")
        await tts.pause()        # aborts the HTTP stream; partial audio is discarded
        await tts.resume()       # speaks text queued while paused, FIFO
        await tts.stop()         # abort + clear queue; stays paused until resume()

    An aborted stream ends with the `Cancelled` outcome, never a SynthesisFailed.
    """

    def __init__(
        self,
        emit: EventSink,
        cfg: Optional[TTSConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        session_id: str = "",
    ):
        self.cfg = cfg or TTSConfig()
        self._emit = emit
        self._client = client
        self._owns_client = client is None
        self._session_id = session_id or "--------"
        self._paused = False
        self._pending: Deque[str] = deque()
        self._task: Optional[asyncio.Task] = None
        self._next_id = 0
        self._active_id: Optional[int] = None
        self.last_outcome: Any = None

    def _log(self, msg: str):
        print(RichLogger.line(f"[TTS {self._session_id[:8]}]", msg))

    @property
    def status(self) -> Dict[str, bool]:
        return {
            "paused": self._paused,
            "has_pending": bool(self._pending),
            "active": self._task is not None and not self._task.done(),
        }

    @property
    def active_stream_id(self) -> Optional[int]:
        return self._active_id

    @property
    def paused(self) -> bool:
        return self._paused

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.cfg.timeout_s))
        return self._client

    # ------------- public contract -------------
    async def synthesize(self, text: str) -> Optional[int]:
        """Start speaking `text`, replacing any active stream. Returns the stream id, or None if queued/ignored."""
        text = clean_for_tts(text or "")
        if not text:
            return None
        if self._paused:
            self._pending.append(text)
            return None
        await self._cancel_active()
        items = self._assign_ids([text])
        self._task = asyncio.create_task(self._run(items))
        return items[0][0]

    async def pause(self) -> Any:
        """Hard-cancel the in-flight stream. Returns its outcome (Cancelled) or None if idle."""
        self._paused = True
        return await self._cancel_active()

    async def resume(self) -> List[int]:
        self._paused = False
        if not self._pending or self.status["active"]:
            return []
        items = self._assign_ids(list(self._pending))
        self._pending.clear()
        self._task = asyncio.create_task(self._run(items))
        return [sid for sid, _ in items]

    async def stop(self) -> Any:
        self._paused = True
        self._pending.clear()
        return await self._cancel_active()

    def clear_pending(self):
        self._pending.clear()

    async def close(self):
        await self.stop()
        if self._owns_client and self._client is not None:
            with contextlib.suppress(Exception):
                await self._client.aclose()
            self._client = None

    # ------------- internals -------------
    def _assign_ids(self, texts: List[str]) -> List[Tuple[int, str]]:
        items = []
        for t in texts:
            self._next_id += 1
            items.append((self._next_id, t))
        return items

    async def _cancel_active(self) -> Any:
        task, self._task = self._task, None
        self._active_id = None
        if task is None or task.done():
            return None
        task.cancel()
        try:
            outcome = await task
        except asyncio.CancelledError:
            outcome = Cancelled
        self.last_outcome = outcome
        return outcome

    async def _run(self, items: List[Tuple[int, str]]) -> Any:
        stream_id = None
        try:
            for stream_id, text in items:
                self._active_id = stream_id
                await self._stream_one(stream_id, text)
            self._active_id = None
            self.last_outcome = None
            return None
        except asyncio.CancelledError:
            if stream_id is not None:
                self._log(RichLogger.tts_cancelled(stream_id))
            return Cancelled

    async def _stream_one(self, stream_id: int, text: str):
        if not self.cfg.api_key:
            self._emit(
                SynthesisFailed(
                    stream_id=stream_id, error=StreamError("ElevenLabs API key is required", code="TTS_ERROR")
                )
            )
            return

        self._log(RichLogger.tts_start(stream_id, text, estimate_speaking_ms(text)))
        seq = 0
        total = 0
        carry = b""
        try:
            client = self._get_client()
            async with client.stream(
                "POST",
                self.cfg.endpoint,
                params={
                    "output_format": self.cfg.output_format,
                    "optimize_streaming_latency": str(self.cfg.optimize_streaming_latency),
                },
                headers={"xi-api-key": self.cfg.api_key, "Accept": "audio/pcm"},
                json=self.cfg.body(text),
            ) as resp:
                if resp.status_code != 200:
                    detail = (await resp.aread())[:200].decode("utf-8", errors="ignore")
                    raise StreamError(f"TTS API error {resp.status_code}: {detail}", code="TTS_ERROR")
                async for data in resp.aiter_bytes(self.cfg.chunk_size):
                    data = carry + data
                    # keep PCM16 samples whole across reads
                    cut = len(data) - (len(data) % 2)
                    data, carry = data[:cut], data[cut:]
                    if not data:
                        continue
                    self._emit(SynthesisChunkReady(chunk=SynthesisChunk(audio=data, seq=seq, stream_id=stream_id)))
                    seq += 1
                    total += len(data)
        except StreamError as e:
            self._log(RichLogger.error(str(e)))
            self._emit(SynthesisFailed(stream_id=stream_id, error=e))
            return
        except httpx.HTTPError as e:
            self._log(RichLogger.error(f"TTS request failed: {e!r}"))
            self._emit(
                SynthesisFailed(stream_id=stream_id, error=StreamError(f"TTS request failed: {e}", code="TTS_ERROR"))
            )
            return
        except Exception as e:
            # anything else (httpx stream errors, bad URLs) must still end the stream
            self._log(RichLogger.error(f"TTS stream failed: {e!r}"))
            self._emit(
                SynthesisFailed(stream_id=stream_id, error=StreamError(f"TTS stream failed: {e}", code="TTS_ERROR"))
            )
            return

        self._log(RichLogger.tts_complete(stream_id, seq, total))
        self._emit(SynthesisComplete(stream_id=stream_id, total_bytes=total, chunks=seq))
