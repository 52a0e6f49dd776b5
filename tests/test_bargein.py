import math
import struct

import pytest

from rxvoice.bargein import BargeInConfig, BargeInDetector
from rxvoice.vad import VADConfig

SR = 16000


def pcm16_sine(amp: float, frame_samples: int = 1600, freq_hz: float = 440.0) -> bytes:
    vals = [int(amp * math.sin(2 * math.pi * freq_hz * n / SR) * 32767) for n in range(frame_samples)]
    return struct.pack("<" + "h" * frame_samples, *vals)


LOUD = pcm16_sine(0.3)        # rms ~0.21
QUIET = pcm16_sine(0.0212)    # rms ~0.015: speech for the VAD, under the barge-in threshold
SILENCE = b"\x00\x00" * 1600


def make_detector(min_frames: int = 3) -> BargeInDetector:
    return BargeInDetector(
        BargeInConfig(energy_threshold=0.02, min_consecutive_frames=min_frames),
        VADConfig(sample_rate=SR, energy_threshold=0.01, speech_timeout_ms=100, silence_timeout_ms=1000),
    )


def test_triggers_after_min_consecutive_frames():
    det = make_detector(min_frames=3)
    det.set_tts_playing(True)

    results = [det.process(LOUD).should_barge_in for _ in range(3)]
    assert results == [False, False, True]


def test_never_triggers_when_tts_not_playing():
    det = make_detector(min_frames=1)
    assert not any(det.process(LOUD).should_barge_in for _ in range(10))
    assert det.consecutive_speech_frames == 0


def test_quiet_speech_below_threshold_never_triggers():
    det = make_detector(min_frames=2)
    det.set_tts_playing(True)
    results = [det.process(QUIET) for _ in range(10)]
    assert results[0].vad.is_speech, "frame should still count as speech for the VAD"
    assert not any(r.should_barge_in for r in results)


def test_gap_resets_the_run():
    det = make_detector(min_frames=3)
    det.set_tts_playing(True)
    seq = [LOUD, LOUD, SILENCE, LOUD, LOUD]
    assert not any(det.process(f).should_barge_in for f in seq)
    assert det.process(LOUD).should_barge_in


def test_playback_stop_resets_counter():
    det = make_detector(min_frames=3)
    det.set_tts_playing(True)
    det.process(LOUD)
    det.process(LOUD)
    det.set_tts_playing(False)
    assert det.consecutive_speech_frames == 0

    det.set_tts_playing(True)
    assert det.process(LOUD).should_barge_in is False


def test_reset_clears_vad_and_playing_flag():
    det = make_detector()
    det.set_tts_playing(True)
    det.process(LOUD)
    det.reset()
    assert det.state["is_playing_tts"] is False
    assert det.state["consecutive_speech_frames"] == 0
    assert det.state["vad"]["is_speaking"] is False


@pytest.mark.parametrize("kw", [dict(min_consecutive_frames=0), dict(energy_threshold=0.0)])
def test_invalid_config_raises(kw):
    with pytest.raises(ValueError):
        BargeInConfig(**kw)
