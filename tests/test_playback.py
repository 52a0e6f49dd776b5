import asyncio

import numpy as np
import pytest

from rxvoice.events import SynthesisChunk
from rxvoice.playback import JitterBuffer, PlaybackConfig

SR = 16000


class FakeSink:
    def __init__(self, now: float = 0.0):
        self.now = now
        self.played = []

    def current_time(self) -> float:
        return self.now

    def play(self, samples, at):
        self.played.append((at, samples))


def chunk(seq: int, ms: float = 50.0, value: int = 1000) -> SynthesisChunk:
    n = int(SR * ms / 1000)
    return SynthesisChunk(audio=np.full(n, value, dtype="<i2").tobytes(), seq=seq)


def make_buffer(**kw):
    sink = FakeSink()
    cfg = PlaybackConfig(**{"sample_rate": SR, "min_buffer_ms": 100, "max_buffer_ms": 500, **kw})
    return JitterBuffer(sink, cfg), sink


async def settle(n: int = 20):
    for _ in range(n):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_waits_for_min_buffer_before_playing():
    jb, sink = make_buffer()
    jb.add_chunk(chunk(0))
    await settle()
    assert sink.played == []
    assert jb.is_playing is False

    jb.add_chunk(chunk(1))
    await settle()
    assert len(sink.played) == 2
    assert jb.last_played_seq == 1


@pytest.mark.asyncio
async def test_out_of_order_chunks_play_in_sequence_and_gapless():
    jb, sink = make_buffer(min_buffer_ms=150)
    for seq in (2, 0, 1):
        jb.add_chunk(chunk(seq, value=1000 * (seq + 1)))
    await settle()

    values = [int(round(s[0] * 32768)) for _, s in sink.played]
    assert values == [1000, 2000, 3000]
    starts = [at for at, _ in sink.played]
    assert starts == pytest.approx([0.0, 0.05, 0.10])


@pytest.mark.asyncio
async def test_late_and_duplicate_chunks_are_dropped():
    jb, sink = make_buffer()
    assert jb.add_chunk(chunk(0))
    assert jb.add_chunk(chunk(0)) is False
    jb.add_chunk(chunk(1))
    await settle()
    assert jb.last_played_seq == 1

    assert jb.add_chunk(chunk(1)) is False
    assert jb.add_chunk(chunk(0)) is False
    assert jb.add_chunk(SynthesisChunk(audio=b"", seq=5)) is False


@pytest.mark.asyncio
async def test_overflow_drops_oldest_chunks():
    jb, sink = make_buffer(min_buffer_ms=500, max_buffer_ms=500)
    # no awaits in between: the consumer never gets to run
    for seq in range(13):  # 650ms against a 500ms cap
        jb.add_chunk(chunk(seq))
    assert jb.buffered_ms == pytest.approx(500)
    assert jb.dropped == 3
    jb.stop()


@pytest.mark.asyncio
async def test_schedule_never_starts_in_the_past():
    jb, sink = make_buffer()
    sink.now = 5.0
    jb.add_chunk(chunk(0, ms=100))
    await settle()
    assert sink.played[0][0] == pytest.approx(5.0)
    assert jb.next_play_time == pytest.approx(5.1)


@pytest.mark.asyncio
async def test_drain_plays_below_threshold():
    jb, sink = make_buffer()
    jb.add_chunk(chunk(0, ms=20))
    await jb.drain()
    assert len(sink.played) == 1


@pytest.mark.asyncio
async def test_stop_clears_queue_and_volume_scales_output():
    jb, sink = make_buffer(min_buffer_ms=0)
    jb.set_volume(0.5)
    jb.add_chunk(chunk(0, value=16384))
    await settle()
    assert sink.played[0][1][0] == pytest.approx(0.25)

    jb.pause()
    jb.add_chunk(chunk(1))
    jb.stop()
    assert len(jb) == 0
    assert jb.state["is_playing"] is False
    assert jb.next_play_time == 0.0


@pytest.mark.asyncio
async def test_pause_during_decode_requeues_chunk():
    decode_gate = asyncio.Event()

    async def slow_decode(data: bytes):
        await decode_gate.wait()
        return np.zeros(len(data) // 2, dtype=np.float32)

    sink = FakeSink()
    jb = JitterBuffer(sink, PlaybackConfig(sample_rate=SR, min_buffer_ms=0), decoder=slow_decode)
    jb.add_chunk(chunk(0))
    await settle()
    jb.pause()
    decode_gate.set()
    await settle()

    assert sink.played == []
    assert len(jb) == 1
    jb.resume()
    await jb.drain()
    assert jb.last_played_seq == 0


def test_invalid_config_raises():
    with pytest.raises(ValueError):
        PlaybackConfig(min_buffer_ms=600, max_buffer_ms=500)
