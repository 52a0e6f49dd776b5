"""
Messages flowing through a session's ordered event queue.

Bridges never touch session state directly: they post one of these onto the
coordinator's queue and the coordinator handles them one at a time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from time import time
from typing import Any, Callable, Dict, Optional


# ----------------- payloads -----------------
@dataclass(frozen=True)
class TranscriptEvent:
    text: str = ""
    confidence: float = 0.0
    is_final: bool = False
    utterance_id: int = 0


@dataclass(frozen=True)
class FunctionCallRequest:
    name: str = ""
    args: Dict[str, Any] = field(default_factory=dict)
    call_id: str = ""


@dataclass(frozen=True)
class ResponseChunk:
    text: str = ""
    is_sentence_complete: bool = False
    function_call: Optional[FunctionCallRequest] = None
    generation: int = 0
    confidence: float = 0.0


@dataclass(frozen=True)
class SynthesisChunk:
    audio: bytes = b""
    seq: int = 0
    stream_id: int = 0


# ----------------- queue events -----------------
@dataclass(frozen=True)
class SessionEvent:
    timestamp: float = field(default_factory=time)


@dataclass(frozen=True)
class ClientControl(SessionEvent):
    message: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ClientAudio(SessionEvent):
    data: bytes = b""


@dataclass(frozen=True)
class ClientInvalid(SessionEvent):
    error: Optional[Exception] = None


@dataclass(frozen=True)
class TranscriptReceived(SessionEvent):
    event: TranscriptEvent = field(default_factory=TranscriptEvent)


@dataclass(frozen=True)
class TranscriptionFailed(SessionEvent):
    error: Optional[Exception] = None
    fatal: bool = False


@dataclass(frozen=True)
class ResponseChunkReceived(SessionEvent):
    chunk: ResponseChunk = field(default_factory=ResponseChunk)


@dataclass(frozen=True)
class ResponseComplete(SessionEvent):
    generation: int = 0
    text: str = ""
    awaiting_function: bool = False


@dataclass(frozen=True)
class ResponseFailed(SessionEvent):
    generation: int = 0
    error: Optional[Exception] = None


@dataclass(frozen=True)
class FunctionResultReady(SessionEvent):
    request: FunctionCallRequest = field(default_factory=FunctionCallRequest)
    result: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SynthesisChunkReady(SessionEvent):
    chunk: SynthesisChunk = field(default_factory=SynthesisChunk)


@dataclass(frozen=True)
class SynthesisComplete(SessionEvent):
    stream_id: int = 0
    total_bytes: int = 0
    chunks: int = 0


@dataclass(frozen=True)
class SynthesisFailed(SessionEvent):
    stream_id: int = 0
    error: Optional[Exception] = None


@dataclass(frozen=True)
class SessionExpired(SessionEvent):
    reason: str = "idle_timeout"


@dataclass(frozen=True)
class Shutdown(SessionEvent):
    reason: str = "disconnect"


EventSink = Callable[[SessionEvent], None]
