import numpy as np
import pytest

from rxvoice.audio import AudioFramer, FramerConfig, float_to_pcm16, pcm16_rms, pcm16_to_float


def test_framer_emits_fixed_frames_and_keeps_remainder():
    framer = AudioFramer(FramerConfig(frame_ms=100, sample_rate=16000))
    assert framer.frame_bytes == 3200

    blob = bytes(range(256)) * 28  # 7168 bytes
    frames = framer.add(blob[:5000])
    assert [len(f.data) for f in frames] == [3200]
    assert framer.buffered_bytes == 1800

    frames += framer.add(blob[5000:])
    assert [len(f.data) for f in frames] == [3200, 3200]
    tail = framer.flush()
    assert tail is not None and len(tail.data) == 768

    assert b"".join(f.data for f in frames) + tail.data == blob
    assert framer.flush() is None


def test_frames_carry_duration():
    framer = AudioFramer(FramerConfig(frame_ms=100, sample_rate=16000))
    (frame,) = framer.add(b"\x00" * 3200)
    assert frame.duration_ms == pytest.approx(100.0)
    assert framer.add(b"") == []


def test_reset_drops_buffered_audio():
    framer = AudioFramer()
    framer.add(b"\x00" * 100)
    framer.reset()
    assert framer.buffered_bytes == 0
    assert framer.flush() is None


def test_pcm16_conversions():
    x = pcm16_to_float(b"\xff\x7f\x00\x80\x00")  # trailing odd byte ignored
    assert x.dtype == np.float32
    assert x.tolist() == pytest.approx([32767 / 32768, -1.0])

    pcm = float_to_pcm16(np.array([2.0, -2.0, 0.0], dtype=np.float32))
    assert pcm == b"\xff\x7f\x01\x80\x00\x00"  # clipped to +/-32767
    assert pcm16_rms(b"") == 0.0


@pytest.mark.parametrize(
    "kw", [dict(frame_ms=0), dict(sample_rate=0), dict(channels=0), dict(pcm_width=1)]
)
def test_invalid_framer_config_raises(kw):
    with pytest.raises(ValueError):
        FramerConfig(**kw)
