from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from .settings import settings


@dataclass
class FramerConfig:
    frame_ms: int = settings.frame_ms
    sample_rate: int = settings.sample_rate
    channels: int = settings.channels
    pcm_width: int = settings.pcm_width

    def __post_init__(self):
        if self.frame_ms <= 0:
            raise ValueError(f"frame_ms must be > 0, got {self.frame_ms}")
        if self.sample_rate <= 0:
            raise ValueError(f"sample_rate must be > 0, got {self.sample_rate}")
        if self.channels <= 0:
            raise ValueError(f"channels must be > 0, got {self.channels}")
        if self.pcm_width != 2:
            raise ValueError("only signed 16-bit PCM is supported")

    @property
    def frame_bytes(self) -> int:
        samples = int(self.frame_ms / 1000 * self.sample_rate * self.channels)
        return samples * self.pcm_width


@dataclass(frozen=True)
class AudioFrame:
    data: bytes
    sample_rate: int = 16000
    channels: int = 1
    timestamp: float = field(default_factory=time.time)

    @property
    def duration_ms(self) -> float:
        samples = len(self.data) // 2 // max(1, self.channels)
        return samples / self.sample_rate * 1000.0


def pcm16_to_float(data: bytes) -> np.ndarray:
    """Little-endian PCM16 → float32 in [-1, 1]. A trailing odd byte is ignored."""
    usable = len(data) - (len(data) % 2)
    if usable <= 0:
        return np.zeros(0, dtype=np.float32)
    return np.frombuffer(data[:usable], dtype="<i2").astype(np.float32) / 32768.0


def pcm16_rms(data: bytes) -> float:
    x = pcm16_to_float(data)
    if x.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(x * x)))


def float_to_pcm16(x: np.ndarray) -> bytes:
    y = np.clip(x, -1.0, 1.0)
    return (y * 32767.0).astype("<i2").tobytes()


class AudioFramer:
    """
    Accumulates raw PCM bytes and cuts them into fixed-duration frames.

        framer = AudioFramer()
        for frame in framer.add(data):   # zero or more full frames
            ...
        tail = framer.flush()            # short final frame or None

    Concatenating every emitted frame plus the flush remainder reproduces the input exactly.
    """

    def __init__(self, cfg: Optional[FramerConfig] = None):
        self.cfg = cfg or FramerConfig()
        self._frame_bytes = self.cfg.frame_bytes
        self._buf = bytearray()

    @property
    def frame_bytes(self) -> int:
        return self._frame_bytes

    @property
    def buffered_bytes(self) -> int:
        return len(self._buf)

    @property
    def buffered_ms(self) -> float:
        samples = len(self._buf) / self.cfg.pcm_width / self.cfg.channels
        return samples / self.cfg.sample_rate * 1000.0

    def _frame(self, data: bytes) -> AudioFrame:
        return AudioFrame(data=data, sample_rate=self.cfg.sample_rate, channels=self.cfg.channels)

    def add(self, data: bytes) -> List[AudioFrame]:
        if not data:
            return []
        self._buf.extend(data)
        frames: List[AudioFrame] = []
        n = self._frame_bytes
        offset = 0
        while len(self._buf) - offset >= n:
            frames.append(self._frame(bytes(self._buf[offset:offset + n])))
            offset += n
        if offset:
            del self._buf[:offset]
        return frames

    def flush(self) -> Optional[AudioFrame]:
        if not self._buf:
            return None
        frame = self._frame(bytes(self._buf))
        self._buf.clear()
        return frame

    def reset(self):
        self._buf.clear()
