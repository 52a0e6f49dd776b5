"""
Command-line client for the voice session server.

Streams a 16 kHz mono PCM16 WAV file (or a typed message) over the session
websocket, prints transcripts and replies as they arrive, and renders the
synthesized reply through the jitter buffer into an output WAV file.

    python -m rxvoice.client --wav question.wav --out reply.wav
    python -m rxvoice.client --text "Can I take ibuprofen with lisinopril?"
"""

from __future__ import annotations

import argparse
import asyncio
import base64
import time
import wave
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import orjson
import websockets

from .audio import AudioFramer, FramerConfig, float_to_pcm16
from .events import SynthesisChunk
from .logging import RichLogger
from .playback import JitterBuffer, PlaybackConfig
from .settings import settings
from .wire import (
    MSG_AUDIO_START,
    MSG_AUDIO_STOP,
    MSG_AUTH,
    MSG_AUTH_SUCCESS,
    MSG_ERROR,
    MSG_LLM_PARTIAL,
    MSG_STATUS,
    MSG_STT_FINAL,
    MSG_STT_PARTIAL,
    MSG_TEXT_INPUT,
    MSG_TTS_CHUNK,
    MSG_TTS_END,
)


class WavSink:
    """Offline audio sink: schedules samples on a wall-clock timeline and mixes them into a WAV file."""

    def __init__(self, sample_rate: int = settings.tts_sample_rate):
        self.sample_rate = sample_rate
        self._t0 = time.monotonic()
        self._scheduled: List[Tuple[float, np.ndarray]] = []

    def current_time(self) -> float:
        return time.monotonic() - self._t0

    def play(self, samples: np.ndarray, at: float) -> None:
        self._scheduled.append((at, samples))

    def render(self) -> np.ndarray:
        if not self._scheduled:
            return np.zeros(0, dtype=np.float32)
        start = min(at for at, _ in self._scheduled)
        end = max(int((at - start) * self.sample_rate) + s.size for at, s in self._scheduled)
        out = np.zeros(end, dtype=np.float32)
        for at, s in self._scheduled:
            i = int((at - start) * self.sample_rate)
            out[i:i + s.size] += s
        return out

    def write(self, path: str | Path) -> int:
        pcm = float_to_pcm16(self.render())
        with wave.open(str(path), "wb") as w:
            w.setnchannels(1)
            w.setsampwidth(2)
            w.setframerate(self.sample_rate)
            w.writeframes(pcm)
        return len(pcm) // 2


def read_wav_pcm16(path: str | Path, sample_rate: int = settings.sample_rate) -> bytes:
    with wave.open(str(path), "rb") as w:
        if w.getframerate() != sample_rate or w.getnchannels() != 1 or w.getsampwidth() != 2:
            raise ValueError(
                f"{path}: expected {sample_rate} Hz mono 16-bit, got "
                f"{w.getframerate()} Hz x{w.getnchannels()} {8 * w.getsampwidth()}-bit"
            )
        return w.readframes(w.getnframes())


class VoiceClient:
    def __init__(self, url: str, sink: WavSink, token: Optional[str] = None):
        self.url = url
        self.token = token
        self.session_id: Optional[str] = None
        self.jitter = JitterBuffer(sink, PlaybackConfig(sample_rate=sink.sample_rate))
        self.authed = asyncio.Event()
        self.turn_done = asyncio.Event()
        self.replies: List[str] = []

    @staticmethod
    def _say(msg: str):
        print(RichLogger.line(msg))

    def handle(self, obj: Dict[str, Any]):
        typ = obj.get("type")
        if typ == MSG_AUTH_SUCCESS:
            self.token = obj.get("token")
            self.session_id = obj.get("sessionId")
            self._say(RichLogger.auth(self.session_id or "", resumed=False))
            self.authed.set()
        elif typ == MSG_STT_PARTIAL:
            self._say(RichLogger.asr_partial(obj.get("text", "")))
        elif typ == MSG_STT_FINAL:
            self._say(RichLogger.asr_final(obj.get("text", ""), float(obj.get("confidence") or 0.0)))
        elif typ == MSG_LLM_PARTIAL:
            if obj.get("sentenceReady"):
                self.replies.append(obj.get("text", ""))
                self._say(f"🤖 {obj.get('text', '')}")
        elif typ == MSG_TTS_CHUNK:
            audio = base64.b64decode(obj.get("data", ""))
            self.jitter.add_chunk(SynthesisChunk(audio=audio, seq=int(obj.get("seq", 0))))
        elif typ == MSG_TTS_END:
            self.turn_done.set()
        elif typ == MSG_STATUS:
            if obj.get("event") == "barge_in":
                self.jitter.stop()
            self._say(f"ℹ️  {obj.get('message')}")
        elif typ == MSG_ERROR:
            self._say(RichLogger.error(f"{obj.get('code')}: {obj.get('message')}"))
            if not self.authed.is_set():
                self.authed.set()

    async def _receive(self, ws):
        async for raw in ws:
            if isinstance(raw, bytes):
                continue
            self.handle(orjson.loads(raw))

    async def run(
        self,
        pcm: Optional[bytes] = None,
        text: Optional[str] = None,
        realtime: bool = True,
        reply_timeout_s: float = 30.0,
    ):
        async with websockets.connect(self.url, max_size=None) as ws:
            recv = asyncio.create_task(self._receive(ws))
            try:
                auth: Dict[str, Any] = {"type": MSG_AUTH}
                if self.token:
                    auth["token"] = self.token
                await ws.send(orjson.dumps(auth).decode("utf-8"))
                await asyncio.wait_for(self.authed.wait(), timeout=10)

                if text:
                    await ws.send(orjson.dumps({"type": MSG_TEXT_INPUT, "text": text}).decode("utf-8"))
                if pcm:
                    await self._stream_audio(ws, pcm, realtime)

                try:
                    await asyncio.wait_for(self.turn_done.wait(), timeout=reply_timeout_s)
                except asyncio.TimeoutError:
                    self._say(RichLogger.warning(f"no complete reply within {reply_timeout_s:.0f}s"))
                await self.jitter.drain()
            finally:
                recv.cancel()
                await asyncio.gather(recv, return_exceptions=True)

    async def _stream_audio(self, ws, pcm: bytes, realtime: bool):
        cfg = FramerConfig()
        framer = AudioFramer(cfg)
        await ws.send(orjson.dumps({"type": MSG_AUDIO_START, "sampleRate": cfg.sample_rate}).decode("utf-8"))
        frames = framer.add(pcm)
        tail = framer.flush()
        if tail is not None:
            frames.append(tail)
        for frame in frames:
            await ws.send(frame.data)
            if realtime:
                await asyncio.sleep(frame.duration_ms / 1000.0)
        await ws.send(orjson.dumps({"type": MSG_AUDIO_STOP}).decode("utf-8"))


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="Voice session test client")
    parser.add_argument("--url", default=f"ws://localhost:{settings.port}/ws", help="Server websocket URL")
    parser.add_argument("--wav", help="16 kHz mono PCM16 WAV file to stream as microphone input")
    parser.add_argument("--text", help="Send a typed message instead of (or before) audio")
    parser.add_argument("--out", default="reply.wav", help="Where to write the synthesized reply")
    parser.add_argument("--token", help="Resume an existing session")
    parser.add_argument("--fast", action="store_true", help="Send audio as fast as possible instead of real time")
    parser.add_argument("--timeout", type=float, default=30.0, help="Seconds to wait for the reply")
    args = parser.parse_args(argv)

    if not args.wav and not args.text:
        parser.error("one of --wav or --text is required")

    pcm = read_wav_pcm16(args.wav) if args.wav else None
    sink = WavSink()
    client = VoiceClient(args.url, sink, token=args.token)
    asyncio.run(client.run(pcm=pcm, text=args.text, realtime=not args.fast, reply_timeout_s=args.timeout))

    samples = sink.write(args.out)
    print(RichLogger.line(f"💾 Wrote {samples / sink.sample_rate:.1f}s of audio to {args.out}"))
    if client.token:
        print(RichLogger.line(f"🔑 Session token: {client.token}"))


if __name__ == "__main__":
    main()
