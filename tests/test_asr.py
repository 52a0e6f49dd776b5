import asyncio
from typing import Any, List

import orjson
import pytest

from rxvoice.asr import ASRConfig, TranscriptionBridge
from rxvoice.audio import AudioFrame
from rxvoice.errors import BridgeConnectionError
from rxvoice.events import TranscriptionFailed, TranscriptReceived


class FakeWS:
    """Just enough of a websockets client connection for the bridge."""

    def __init__(self):
        self.sent: List[Any] = []
        self.close_code = None
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, data):
        self.sent.append(data)

    async def close(self, code: int = 1000):
        self.close_code = code
        self._inbox.put_nowait(None)

    def push(self, obj):
        self._inbox.put_nowait(orjson.dumps(obj))

    def drop(self, code: int = 1006):
        self.close_code = code
        self._inbox.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item


class Connector:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def __call__(self, url, headers):
        self.calls.append((url, headers))
        out = self.outcomes.pop(0) if self.outcomes else OSError("refused")
        if isinstance(out, Exception):
            raise out
        return out


def results(text: str, is_final: bool, confidence: float = 0.9) -> dict:
    return {
        "type": "Results",
        "is_final": is_final,
        "channel": {"alternatives": [{"transcript": text, "confidence": confidence}]},
    }


def make_cfg(**kw) -> ASRConfig:
    base = dict(api_key="dg-test", keepalive_s=0, reconnect_delay_s=0, max_reconnects=2, connect_timeout_s=1)
    base.update(kw)
    return ASRConfig(**base)


async def settle(n: int = 10):
    for _ in range(n):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_connect_requires_api_key():
    stt = TranscriptionBridge(lambda e: None, make_cfg(api_key=""), connector=Connector(FakeWS()))
    with pytest.raises(BridgeConnectionError) as exc:
        await stt.connect()
    assert exc.value.code == "STT_CONNECT_FAILED"
    assert not stt.connected


@pytest.mark.asyncio
async def test_connect_times_out():
    async def hang(url, headers):
        await asyncio.sleep(3600)

    stt = TranscriptionBridge(lambda e: None, make_cfg(connect_timeout_s=0.05), connector=hang)
    with pytest.raises(BridgeConnectionError, match="timeout"):
        await stt.connect()


@pytest.mark.asyncio
async def test_connect_sends_auth_header_and_query():
    conn = Connector(FakeWS())
    stt = TranscriptionBridge(lambda e: None, make_cfg(), connector=conn)
    await stt.connect()
    url, headers = conn.calls[0]
    assert headers == {"Authorization": "Token dg-test"}
    assert "sample_rate=16000" in url
    assert "encoding=linear16" in url
    assert url.endswith("redact=pci&redact=numbers")
    await stt.disconnect()


@pytest.mark.asyncio
async def test_partial_and_final_transcripts_are_posted():
    events = []
    ws = FakeWS()
    stt = TranscriptionBridge(events.append, make_cfg(), connector=Connector(ws))
    await stt.connect()

    ws.push(results("I need a", False, 0.6))
    ws.push(results("I need a refill.", True))
    ws.push(results("   ", True))  # blank results are ignored
    ws.push(results("For lisinopril.", True))
    await settle()

    got = [e.event for e in events if isinstance(e, TranscriptReceived)]
    assert [(t.text, t.is_final, t.utterance_id) for t in got] == [
        ("I need a", False, 0),
        ("I need a refill.", True, 0),
        ("For lisinopril.", True, 1),
    ]
    assert got[0].confidence == pytest.approx(0.6)
    await stt.disconnect()


@pytest.mark.asyncio
async def test_audio_dropped_while_disconnected():
    ws = FakeWS()
    stt = TranscriptionBridge(lambda e: None, make_cfg(), connector=Connector(ws))
    assert await stt.send_audio(b"\x00\x00") is False

    await stt.connect()
    assert await stt.send_audio(AudioFrame(data=b"\x01\x00")) is True
    assert await stt.send_audio(b"") is False
    await stt.finalize()
    assert ws.sent == [b"\x01\x00", '{"type":"Finalize"}']
    await stt.disconnect()


@pytest.mark.asyncio
async def test_disconnect_closes_stream_without_reconnecting():
    events = []
    ws = FakeWS()
    conn = Connector(ws, FakeWS())
    stt = TranscriptionBridge(events.append, make_cfg(), connector=conn)
    await stt.connect()

    await stt.disconnect()
    await stt.disconnect()  # idempotent
    await settle()

    assert '{"type":"CloseStream"}' in ws.sent
    assert ws.close_code == 1000
    assert len(conn.calls) == 1
    assert not stt.connected
    assert events == []


@pytest.mark.asyncio
async def test_normal_remote_close_does_not_reconnect():
    ws = FakeWS()
    conn = Connector(ws, FakeWS())
    stt = TranscriptionBridge(lambda e: None, make_cfg(), connector=conn)
    await stt.connect()

    ws.drop(code=1000)
    await settle()
    assert not stt.connected
    assert len(conn.calls) == 1


@pytest.mark.asyncio
async def test_unexpected_close_reconnects_and_resets_attempts():
    events = []
    first, second = FakeWS(), FakeWS()
    conn = Connector(first, second)
    stt = TranscriptionBridge(events.append, make_cfg(), connector=conn)
    await stt.connect()

    first.drop(code=1011)
    await settle(50)
    assert stt.connected
    assert stt.reconnect_attempts == 0
    assert len(conn.calls) == 2

    second.push(results("still here", True))
    await settle()
    assert [e.event.text for e in events if isinstance(e, TranscriptReceived)] == ["still here"]
    await stt.disconnect()


@pytest.mark.asyncio
async def test_exhausted_reconnects_post_fatal_failure():
    events = []
    ws = FakeWS()
    conn = Connector(ws, OSError("refused"), OSError("refused"))
    stt = TranscriptionBridge(events.append, make_cfg(max_reconnects=2), connector=conn)
    await stt.connect()

    ws.drop(code=1006)
    await settle(50)

    failures = [e for e in events if isinstance(e, TranscriptionFailed)]
    assert len(failures) == 1
    assert failures[0].fatal is True
    assert failures[0].error.code == "STT_ERROR"
    assert len(conn.calls) == 3
    assert not stt.connected


@pytest.mark.asyncio
async def test_keepalive_stops_once_reconnects_are_exhausted():
    events = []
    ws = FakeWS()
    conn = Connector(ws, OSError("refused"))
    stt = TranscriptionBridge(events.append, make_cfg(max_reconnects=1, keepalive_s=60), connector=conn)
    await stt.connect()
    keepalive = stt._keepalive_task
    assert keepalive is not None and not keepalive.done()

    ws.drop(code=1006)
    await settle(50)

    assert [e.fatal for e in events if isinstance(e, TranscriptionFailed)] == [True]
    assert stt._keepalive_task is None
    assert keepalive.done()


@pytest.mark.asyncio
async def test_vendor_error_message_is_not_fatal():
    events = []
    ws = FakeWS()
    stt = TranscriptionBridge(events.append, make_cfg(), connector=Connector(ws))
    await stt.connect()

    ws.push({"type": "Error", "description": "bad audio"})
    ws._inbox.put_nowait(b"not json")
    await settle()

    (failure,) = events
    assert isinstance(failure, TranscriptionFailed)
    assert failure.fatal is False
    assert str(failure.error) == "bad audio"
    assert stt.connected
    await stt.disconnect()


def test_invalid_config_raises():
    with pytest.raises(ValueError):
        ASRConfig(connect_timeout_s=0)
    with pytest.raises(ValueError):
        ASRConfig(max_reconnects=-1)
