from __future__ import annotations

import asyncio
import bisect
import contextlib
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Protocol

import numpy as np

from .audio import pcm16_to_float
from .events import SynthesisChunk
from .settings import settings

Decoder = Callable[[bytes], Awaitable[np.ndarray]]


class AudioSink(Protocol):
    def current_time(self) -> float:
        """Output clock in seconds."""
        ...

    def play(self, samples: np.ndarray, at: float) -> None:
        """Schedule float32 samples to start at `at` seconds on the output clock."""
        ...


@dataclass
class PlaybackConfig:
    sample_rate: int = settings.tts_sample_rate
    channels: int = 1
    min_buffer_ms: float = 100.0   # buffered audio needed before playback starts
    max_buffer_ms: float = 500.0   # above this the oldest queued chunk is dropped

    def __post_init__(self):
        if self.min_buffer_ms < 0 or self.max_buffer_ms <= 0:
            raise ValueError("buffer bounds must be positive")
        if self.min_buffer_ms > self.max_buffer_ms:
            raise ValueError(f"min_buffer_ms ({self.min_buffer_ms}) must be <= max_buffer_ms ({self.max_buffer_ms})")


async def decode_pcm16(data: bytes) -> np.ndarray:
    return pcm16_to_float(data)


class JitterBuffer:
    """
    Client-side playback buffer for synthesized audio.

        jb = JitterBuffer(sink)
        jb.add_chunk(SynthesisChunk(audio=pcm, seq=n))
        ...
        await jb.drain()     # end of stream: play whatever is still queued

    Chunks are kept ordered by sequence number; playback starts once
    `min_buffer_ms` is queued and then consumes chunks as they arrive,
    scheduling each one right after the previous on the sink clock so the
    output is gapless. Chunks at or below the last played sequence number
    are dropped.
    """

    def __init__(self, sink: AudioSink, cfg: Optional[PlaybackConfig] = None, decoder: Optional[Decoder] = None):
        self.cfg = cfg or PlaybackConfig()
        self.sink = sink
        self._decode = decoder or decode_pcm16
        self._seqs: List[int] = []
        self._chunks: List[SynthesisChunk] = []
        self._task: Optional[asyncio.Task] = None
        self.is_playing = False
        self.next_play_time = 0.0
        self.volume = 1.0
        self.last_played_seq = -1
        self.dropped = 0

    # ------------- buffer -------------
    def chunk_ms(self, chunk: SynthesisChunk) -> float:
        samples = len(chunk.audio) // 2 // max(1, self.cfg.channels)
        return samples / self.cfg.sample_rate * 1000.0

    @property
    def buffered_ms(self) -> float:
        return sum(self.chunk_ms(c) for c in self._chunks)

    def __len__(self) -> int:
        return len(self._chunks)

    def add_chunk(self, chunk: SynthesisChunk) -> bool:
        """Queue a chunk. Returns False when it was discarded as late or duplicate."""
        if not chunk.audio or chunk.seq <= self.last_played_seq:
            return False
        i = bisect.bisect_left(self._seqs, chunk.seq)
        if i < len(self._seqs) and self._seqs[i] == chunk.seq:
            return False
        self._seqs.insert(i, chunk.seq)
        self._chunks.insert(i, chunk)

        if self.is_playing:
            self._ensure_consumer()
        elif self.buffered_ms >= self.cfg.min_buffer_ms:
            self._start()

        while self._chunks and self.buffered_ms > self.cfg.max_buffer_ms:
            self._seqs.pop(0)
            self._chunks.pop(0)
            self.dropped += 1
        return True

    # ------------- playback -------------
    def _start(self):
        self.is_playing = True
        self.next_play_time = max(self.next_play_time, self.sink.current_time())
        self._ensure_consumer()

    def _ensure_consumer(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._consume())

    async def _consume(self):
        while self.is_playing and self._chunks:
            self._seqs.pop(0)
            chunk = self._chunks.pop(0)
            samples = await self._decode(chunk.audio)
            if not self.is_playing:
                # paused mid-decode: keep the chunk for resume()
                self._requeue(chunk)
                return
            samples = np.asarray(samples, dtype=np.float32) * self.volume
            at = max(self.next_play_time, self.sink.current_time())
            self.sink.play(samples, at)
            self.next_play_time = at + samples.size / self.cfg.channels / self.cfg.sample_rate
            self.last_played_seq = chunk.seq
            await asyncio.sleep(0)

    def _requeue(self, chunk: SynthesisChunk):
        i = bisect.bisect_left(self._seqs, chunk.seq)
        self._seqs.insert(i, chunk.seq)
        self._chunks.insert(i, chunk)

    async def drain(self):
        """Play everything queued regardless of the start threshold and wait for it."""
        if self._chunks and not self.is_playing:
            self._start()
        if self._task is not None:
            await self._task

    def pause(self):
        self.is_playing = False

    def resume(self):
        if not self.is_playing and self._chunks:
            self._start()

    def stop(self):
        self.is_playing = False
        self._seqs.clear()
        self._chunks.clear()
        self.next_play_time = 0.0
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def close(self):
        task = self._task
        self.stop()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def set_volume(self, volume: float):
        self.volume = max(0.0, min(1.0, volume))

    @property
    def state(self) -> dict:
        return {
            "is_playing": self.is_playing,
            "buffer_length": len(self._chunks),
            "buffer_duration_ms": self.buffered_ms,
            "volume": self.volume,
            "next_play_time": self.next_play_time,
            "last_played_seq": self.last_played_seq,
            "dropped": self.dropped,
        }
