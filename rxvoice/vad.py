from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional, Union

from .audio import AudioFrame, pcm16_rms
from .settings import settings


@dataclass
class VADConfig:
    sample_rate: int = settings.sample_rate                     # Hz
    energy_threshold: float = settings.vad_energy_threshold     # fixed floor for the adaptive threshold
    speech_timeout_ms: int = settings.vad_speech_timeout_ms     # speech needed to enter SPEAKING
    silence_timeout_ms: int = settings.vad_silence_timeout_ms   # silence needed to leave SPEAKING
    noise_decay: float = settings.vad_noise_decay               # background estimate decay per frame

    def __post_init__(self):
        if not 0.0 < self.energy_threshold < 1.0:
            raise ValueError(f"energy_threshold must be in (0, 1), got {self.energy_threshold}")
        if self.speech_timeout_ms < 0 or self.silence_timeout_ms < 0:
            raise ValueError("speech/silence timeouts must be >= 0")
        if not 0.0 <= self.noise_decay < 1.0:
            raise ValueError(f"noise_decay must be in [0, 1), got {self.noise_decay}")


@dataclass
class VADResult:
    is_speech: bool
    energy: float
    confidence: float
    timestamp: float


class EnergyVAD:
    """
    RMS-energy voice activity detector with an adaptive noise floor.

    Usage:
        vad = EnergyVAD()
        result = vad.update(frame)      # AudioFrame or raw PCM16 bytes
        vad.is_speaking                 # hysteresis state (SILENT/SPEAKING)

    Notes:
      - `result.is_speech` is the per-frame decision: energy above
        max(floor, 2 × background estimate).
      - `is_speaking` only flips after `speech_timeout_ms` of continuous speech
        frames, and flips back after `silence_timeout_ms` of continuous
        non-speech. Durations are counted in audio time, not wall time.
      - Never raises; empty or malformed frames have energy 0.
    """

    def __init__(self, cfg: VADConfig | None = None):
        self.cfg = cfg or VADConfig()
        self.reset()

    def reset(self):
        self.background_noise = 0.0
        self.is_speaking = False
        self.speech_starts = 0
        self._speech_run_ms = 0.0
        self._silence_run_ms = 0.0
        self.last_result: Optional[VADResult] = None

    @property
    def state(self) -> dict:
        return {
            "is_speaking": self.is_speaking,
            "background_noise": self.background_noise,
            "speech_run_ms": self._speech_run_ms,
            "silence_run_ms": self._silence_run_ms,
        }

    def _frame_ms(self, data: bytes, sample_rate: int, channels: int) -> float:
        samples = len(data) // 2 // max(1, channels)
        return samples / max(1, sample_rate) * 1000.0

    def update(self, frame: Union[AudioFrame, bytes, bytearray, None]) -> VADResult:
        if isinstance(frame, AudioFrame):
            data, rate, channels, ts = frame.data, frame.sample_rate, frame.channels, frame.timestamp
        else:
            data = bytes(frame) if isinstance(frame, (bytes, bytearray)) else b""
            rate, channels, ts = self.cfg.sample_rate, 1, time.time()

        # odd-length input is not whole PCM16 samples
        energy = pcm16_rms(data) if len(data) % 2 == 0 else 0.0
        frame_ms = self._frame_ms(data, rate, channels)

        # Adapt to background noise only while not in a speech segment
        if not self.is_speaking:
            d = self.cfg.noise_decay
            self.background_noise = self.background_noise * d + energy * (1.0 - d)

        threshold = max(self.cfg.energy_threshold, self.background_noise * 2.0)
        is_speech = energy > threshold
        confidence = min(1.0, max(0.0, energy / (threshold * 2.0)))

        if is_speech:
            self._speech_run_ms += frame_ms
            self._silence_run_ms = 0.0
            if not self.is_speaking and self._speech_run_ms >= self.cfg.speech_timeout_ms:
                self.is_speaking = True
                self.speech_starts += 1
        else:
            self._silence_run_ms += frame_ms
            self._speech_run_ms = 0.0
            if self.is_speaking and self._silence_run_ms >= self.cfg.silence_timeout_ms:
                self.is_speaking = False

        self.last_result = VADResult(is_speech=is_speech, energy=energy, confidence=confidence, timestamp=ts)
        return self.last_result
