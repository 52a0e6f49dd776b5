from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from .audio import AudioFrame
from .settings import settings
from .vad import EnergyVAD, VADConfig, VADResult


@dataclass
class BargeInConfig:
    energy_threshold: float = settings.barge_in_threshold   # energy a frame must exceed to count
    min_consecutive_frames: int = settings.barge_in_min_frames

    def __post_init__(self):
        if self.min_consecutive_frames < 1:
            raise ValueError(f"min_consecutive_frames must be >= 1, got {self.min_consecutive_frames}")
        if not 0.0 < self.energy_threshold < 1.0:
            raise ValueError(f"energy_threshold must be in (0, 1), got {self.energy_threshold}")


@dataclass
class BargeInResult:
    should_barge_in: bool
    vad: VADResult


class BargeInDetector:
    """
    Decides when the user is talking over synthesized speech.

    A barge-in is confirmed only while TTS is playing and the VAD reports a
    speech frame whose energy exceeds the barge-in threshold for
    `min_consecutive_frames` frames in a row. Any non-qualifying frame, or
    playback stopping, resets the run.
    """

    def __init__(self, cfg: Optional[BargeInConfig] = None, vad_cfg: Optional[VADConfig] = None):
        self.cfg = cfg or BargeInConfig()
        self.vad = EnergyVAD(vad_cfg)
        self.is_playing_tts = False
        self.consecutive_speech_frames = 0

    def set_tts_playing(self, playing: bool):
        self.is_playing_tts = playing
        if not playing:
            self.consecutive_speech_frames = 0

    def process(self, frame: Union[AudioFrame, bytes]) -> BargeInResult:
        vad_result = self.vad.update(frame)

        should_barge_in = False
        if self.is_playing_tts:
            if vad_result.is_speech and vad_result.energy > self.cfg.energy_threshold:
                self.consecutive_speech_frames += 1
                if self.consecutive_speech_frames >= self.cfg.min_consecutive_frames:
                    should_barge_in = True
            else:
                self.consecutive_speech_frames = 0

        return BargeInResult(should_barge_in=should_barge_in, vad=vad_result)

    def reset(self):
        self.vad.reset()
        self.consecutive_speech_frames = 0
        self.is_playing_tts = False

    @property
    def state(self) -> dict:
        return {
            "is_playing_tts": self.is_playing_tts,
            "consecutive_speech_frames": self.consecutive_speech_frames,
            "vad": self.vad.state,
        }
