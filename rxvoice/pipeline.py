from __future__ import annotations

import asyncio
import base64
import time
import traceback
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, FrozenSet, Optional, Set

from .asr import ASRConfig, TranscriptionBridge
from .audio import AudioFrame, AudioFramer, FramerConfig
from .audit import AuditLogger
from .bargein import BargeInConfig, BargeInDetector
from .errors import BridgeConnectionError, VoiceError
from .events import (
    ClientAudio,
    ClientControl,
    ClientInvalid,
    EventSink,
    FunctionCallRequest,
    FunctionResultReady,
    ResponseChunkReceived,
    ResponseComplete,
    ResponseFailed,
    SessionEvent,
    SessionExpired,
    Shutdown,
    SynthesisChunkReady,
    SynthesisComplete,
    SynthesisFailed,
    TranscriptionFailed,
    TranscriptReceived,
)
from .llm import LLMConfig, ResponseStreamBridge
from .logging import NDJSONLogger, RichLogger
from .sessions import SessionRecord, SessionRegistry
from .settings import settings
from .tools import ToolRouter
from .tts import SynthesisBridge, TTSConfig
from .vad import VADConfig
from .wire import (
    CLIENT_TYPES,
    ERR_AUTH_FAILED,
    ERR_INTERNAL,
    ERR_LLM,
    ERR_NOT_AUTHENTICATED,
    ERR_STT,
    ERR_STT_CONNECT,
    ERR_TTS,
    ERR_UNKNOWN_TYPE,
    ERR_VALIDATION,
    MSG_AUDIO_START,
    MSG_AUDIO_STARTED,
    MSG_AUDIO_STOP,
    MSG_AUDIO_STOPPED,
    MSG_AUTH,
    MSG_AUTH_SUCCESS,
    MSG_LLM_PARTIAL,
    MSG_STT_FINAL,
    MSG_STT_PARTIAL,
    MSG_TEXT_INPUT,
    MSG_TTS_CHUNK,
    MSG_TTS_END,
    MSG_UI_INTERRUPT,
    error_message,
    status_message,
)


class SessionState(str, Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    IDLE = "IDLE"
    LISTENING = "LISTENING"
    THINKING = "THINKING"
    SPEAKING = "SPEAKING"
    CLOSED = "CLOSED"


VALID_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.UNAUTHENTICATED: frozenset({SessionState.IDLE, SessionState.CLOSED}),
    SessionState.IDLE: frozenset({SessionState.LISTENING, SessionState.THINKING, SessionState.CLOSED}),
    SessionState.LISTENING: frozenset({SessionState.IDLE, SessionState.THINKING, SessionState.CLOSED}),
    # THINKING falls back to LISTENING/IDLE when a reply had nothing to speak
    SessionState.THINKING: frozenset(
        {SessionState.SPEAKING, SessionState.LISTENING, SessionState.IDLE, SessionState.CLOSED}
    ),
    SessionState.SPEAKING: frozenset({SessionState.LISTENING, SessionState.IDLE, SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}


class InvalidTransitionError(VoiceError):
    code = ERR_INTERNAL


# ----------------- pipeline config -----------------
@dataclass
class PipelineConfig:
    framer: FramerConfig = field(default_factory=FramerConfig)
    vad: VADConfig = field(default_factory=VADConfig)
    barge_in: BargeInConfig = field(default_factory=BargeInConfig)
    asr: ASRConfig = field(default_factory=ASRConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    tts: TTSConfig = field(default_factory=TTSConfig)

    metrics_file: str = settings.metrics_file
    audit_file: str = settings.audit_file
    touch_interval_s: float = 1.0   # how often streamed audio refreshes the registry idle clock
    log_audio: bool = False         # per-frame RMS lines (noisy)

    def __post_init__(self):
        if self.touch_interval_s < 0:
            raise ValueError(f"touch_interval_s must be >= 0, got {self.touch_interval_s}")
        if self.vad.sample_rate != self.framer.sample_rate:
            raise ValueError("VAD and framer sample rates must match")


@dataclass
class Bridges:
    stt: TranscriptionBridge
    llm: ResponseStreamBridge
    tts: SynthesisBridge


BridgeFactory = Callable[[EventSink, str, PipelineConfig], Bridges]
SendFn = Callable[[Dict[str, Any]], Awaitable[None]]


def default_bridges(emit: EventSink, session_id: str, cfg: PipelineConfig) -> Bridges:
    return Bridges(
        stt=TranscriptionBridge(emit, cfg.asr, session_id=session_id),
        llm=ResponseStreamBridge(emit, cfg.llm, session_id=session_id),
        tts=SynthesisBridge(emit, cfg.tts, session_id=session_id),
    )


# ----------------- coordinator -----------------
class SessionCoordinator:
    """
    Per-connection state machine.

    Every input (client frames, transcripts, LLM chunks, synthesis audio, tool
    results) arrives as a SessionEvent on one queue and is handled in order by a
    single task, so no handler ever races another.

        coord = SessionCoordinator(send_json, registry)
        task = asyncio.create_task(coord.run())
        coord.post(ClientControl(message={"type": "auth"}))
        ...
        coord.post(Shutdown())
    """

    def __init__(
        self,
        send: SendFn,
        registry: SessionRegistry,
        cfg: Optional[PipelineConfig] = None,
        bridge_factory: Optional[BridgeFactory] = None,
        tools: Optional[ToolRouter] = None,
        audit: Optional[AuditLogger] = None,
        metrics: Optional[NDJSONLogger] = None,
        conn_id: str = "",
    ):
        self.cfg = cfg or PipelineConfig()
        self._send_fn = send
        self.registry = registry
        self._bridge_factory = bridge_factory or default_bridges
        self.tools = tools or ToolRouter()
        self.audit = audit or AuditLogger(self.cfg.audit_file)
        self.metrics = metrics or NDJSONLogger(self.cfg.metrics_file)
        self.conn_id = conn_id or "--------"

        self.queue: "asyncio.Queue[SessionEvent]" = asyncio.Queue()
        self.state = SessionState.UNAUTHENTICATED
        self.session: Optional[SessionRecord] = None
        self.bridges: Optional[Bridges] = None
        self.framer = AudioFramer(self.cfg.framer)
        self.barge_in = BargeInDetector(self.cfg.barge_in, self.cfg.vad)
        self.recording = False
        self.degraded = False
        self._closed = False
        self._last_touch = 0.0

        # turn bookkeeping
        self.turn_id = 0
        self._active_generation: Optional[int] = None   # generation streaming or awaiting tools
        self._speak_generation: Optional[int] = None    # generation whose sentences are spoken
        self._generation_done = True
        self._sentences: Deque[str] = deque()
        self._deferred: Deque[str] = deque()
        self._tts_stream_id: Optional[int] = None
        self._out_seq = 0
        self._tool_tasks: Set[asyncio.Task] = set()
        self._turn_t0: Optional[float] = None
        self._first_sentence_t: Optional[float] = None
        self._first_audio_t: Optional[float] = None

        self._handlers = {
            ClientControl: self._on_control,
            ClientAudio: self._on_audio,
            ClientInvalid: self._on_invalid,
            TranscriptReceived: self._on_transcript,
            TranscriptionFailed: self._on_transcription_failed,
            ResponseChunkReceived: self._on_response_chunk,
            ResponseComplete: self._on_response_complete,
            ResponseFailed: self._on_response_failed,
            FunctionResultReady: self._on_function_result,
            SynthesisChunkReady: self._on_synthesis_chunk,
            SynthesisComplete: self._on_synthesis_complete,
            SynthesisFailed: self._on_synthesis_failed,
            SessionExpired: self._on_session_expired,
        }

    # ------------- queue plumbing -------------
    @property
    def session_id(self) -> str:
        return self.session.id if self.session else self.conn_id

    @property
    def closed(self) -> bool:
        return self._closed

    def post(self, event: SessionEvent):
        self.queue.put_nowait(event)

    async def run(self):
        while not self._closed:
            event = await self.queue.get()
            if isinstance(event, Shutdown):
                await self.close(event.reason)
                return
            await self.dispatch(event)

    async def drain(self):
        """Handle everything currently queued (used when driving the coordinator by hand)."""
        while not self.queue.empty() and not self._closed:
            event = self.queue.get_nowait()
            if isinstance(event, Shutdown):
                await self.close(event.reason)
                return
            await self.dispatch(event)

    async def dispatch(self, event: SessionEvent):
        handler = self._handlers.get(type(event))
        if handler is None or self._closed:
            return
        try:
            await handler(event)
        except VoiceError as e:
            self._log(RichLogger.error(f"{type(e).__name__}: {e}"))
            await self._send(error_message(e.code, e.message))
        except Exception as e:
            self._log(RichLogger.error(f"handler for {type(event).__name__} failed: {e!r}"))
            traceback.print_exc()
            await self._send(error_message(ERR_INTERNAL, "Internal error"))

    # ------------- helpers -------------
    def _log(self, msg: str):
        print(RichLogger.line(RichLogger.session_info(self.session_id, self.turn_id, self.state.value), msg))

    async def _send(self, obj: Dict[str, Any]):
        try:
            await self._send_fn(obj)
        except Exception as e:
            self._log(RichLogger.warning(f"send failed ({obj.get('type')}): {e!r}"))

    def _transition(self, new: SessionState, reason: str = ""):
        old = self.state
        if new is old:
            return
        if new not in VALID_TRANSITIONS[old]:
            raise InvalidTransitionError(f"invalid transition {old.value} → {new.value}")
        self.state = new
        if self.session is not None:
            self.session.state = new.value
        self._log(RichLogger.state_transition(old.value, new.value, reason))

    def _ensure_bridges(self) -> Bridges:
        if self.bridges is None:
            self.bridges = self._bridge_factory(self.post, self.session_id, self.cfg)
            self.bridges.llm.start_conversation()
        return self.bridges

    async def _touch(self, force: bool = False):
        if self.session is None:
            return
        now = time.monotonic()
        if not force and now - self._last_touch < self.cfg.touch_interval_s:
            return
        self._last_touch = now
        await self.registry.touch(self.session.token, self.state.value)

    def _on_registry_expire(self, reason: str):
        self.post(SessionExpired(reason=reason))

    def _rest_state(self) -> SessionState:
        return SessionState.LISTENING if self.recording else SessionState.IDLE

    # ------------- client control -------------
    async def _on_control(self, event: ClientControl):
        msg = event.message
        typ = msg.get("type")
        if typ not in CLIENT_TYPES:
            await self._send(error_message(ERR_UNKNOWN_TYPE, f"Unknown message type: {typ}"))
            return
        if typ == MSG_AUTH:
            await self._handle_auth(msg)
            return
        if self.state is SessionState.UNAUTHENTICATED:
            await self._send(error_message(ERR_NOT_AUTHENTICATED, "Please authenticate first"))
            return

        await self._touch(force=True)
        if typ == MSG_AUDIO_START:
            await self._handle_audio_start(msg)
        elif typ == MSG_AUDIO_STOP:
            await self._handle_audio_stop()
        elif typ == MSG_UI_INTERRUPT:
            await self._barge_in("ui")
        elif typ == MSG_TEXT_INPUT:
            await self._user_turn(msg.get("text", ""))

    async def _on_invalid(self, event: ClientInvalid):
        await self._send(error_message(ERR_VALIDATION, str(event.error or "invalid message")))

    async def _handle_auth(self, msg: Dict[str, Any]):
        if self.session is not None:
            # already authenticated on this connection
            await self._send({"type": MSG_AUTH_SUCCESS, "token": self.session.token, "sessionId": self.session.id})
            return

        token = msg.get("token")
        try:
            rec = await self.registry.attach(token, self._on_registry_expire) if token else None
            resumed = rec is not None
            if rec is None:
                rec = await self.registry.create(on_expire=self._on_registry_expire)
            else:
                await self.registry.extend(rec.token)
        except Exception as e:
            self._log(RichLogger.error(f"auth failed: {e!r}"))
            await self._send(error_message(ERR_AUTH_FAILED, "Authentication failed"))
            return

        self.session = rec
        self._transition(SessionState.IDLE, "auth")
        self._log(RichLogger.auth(rec.id, resumed))
        await self._send({"type": MSG_AUTH_SUCCESS, "token": rec.token, "sessionId": rec.id})
        self.audit.log_event(rec.id, "session_start", {"connection": self.conn_id, "resumed": resumed})

    async def _handle_audio_start(self, msg: Dict[str, Any]):
        rate = msg.get("sampleRate", self.cfg.framer.sample_rate)
        if rate != self.cfg.framer.sample_rate:
            await self._send(
                error_message(ERR_VALIDATION, f"unsupported sampleRate {rate}; expected {self.cfg.framer.sample_rate}")
            )
            return

        bridges = self._ensure_bridges()
        if not bridges.stt.connected:
            try:
                await bridges.stt.connect()
                self.degraded = False
            except BridgeConnectionError as e:
                self._log(RichLogger.error(f"STT connect failed: {e}"))
                self.degraded = True
                await self._send(error_message(ERR_STT_CONNECT, "Failed to connect to speech recognition"))
                await self._send(status_message("Speech recognition unavailable; text input only", degraded=True))
                return

        self.framer.reset()
        self.recording = True
        if self.state is SessionState.IDLE:
            self._transition(SessionState.LISTENING, "audio.start")
        await self._send({"type": MSG_AUDIO_STARTED, "sampleRate": rate})

    async def _handle_audio_stop(self):
        tail = self.framer.flush()
        if self.bridges is not None:
            if tail is not None:
                await self.bridges.stt.send_audio(tail)
            await self.bridges.stt.finalize()
        self.recording = False
        if self.state is SessionState.LISTENING:
            self._transition(SessionState.IDLE, "audio.stop")
        await self._send({"type": MSG_AUDIO_STOPPED})

    # ------------- audio -------------
    async def _on_audio(self, event: ClientAudio):
        if self.state is SessionState.UNAUTHENTICATED or not self.recording:
            return
        for frame in self.framer.add(event.data):
            await self._process_frame(frame)
        await self._touch()

    async def _process_frame(self, frame: AudioFrame):
        if self.bridges is not None:
            await self.bridges.stt.send_audio(frame)
        result = self.barge_in.process(frame)
        if self.cfg.log_audio:
            self._log(RichLogger.audio_frame(frame.duration_ms, result.vad.energy, result.vad.is_speech))
        if result.should_barge_in:
            await self._barge_in("vad")

    async def _barge_in(self, source: str) -> bool:
        if self.state is not SessionState.SPEAKING:
            return False
        self._log(RichLogger.barge_in(source))
        if self.bridges is not None:
            await self.bridges.tts.pause()
        self._tts_stream_id = None
        self._sentences.clear()
        # the generation keeps streaming into history but is no longer spoken
        self._speak_generation = None
        self.barge_in.reset()
        self._transition(SessionState.LISTENING, f"barge-in ({source})")
        await self._send(status_message("Barge-in detected, pausing speech", event="barge_in", source=source))
        self._write_turn_metrics(interrupted=True)
        return True

    # ------------- transcription -------------
    async def _on_transcript(self, event: TranscriptReceived):
        t = event.event
        if self.state in (SessionState.UNAUTHENTICATED, SessionState.CLOSED):
            return
        if not t.is_final:
            await self._send({"type": MSG_STT_PARTIAL, "text": t.text, "confidence": t.confidence})
            return
        self._log(RichLogger.asr_final(t.text, t.confidence))
        await self._send(
            {"type": MSG_STT_FINAL, "text": t.text, "confidence": t.confidence, "utteranceId": t.utterance_id}
        )
        await self._touch(force=True)
        await self._user_turn(t.text)

    async def _on_transcription_failed(self, event: TranscriptionFailed):
        msg = str(event.error) if event.error else "Speech recognition error"
        if event.fatal:
            self.degraded = True
            await self._send(error_message(ERR_STT, "Speech recognition unavailable"))
            await self._send(status_message("Speech recognition unavailable; text input only", degraded=True))
        else:
            await self._send(error_message(ERR_STT, msg))

    # ------------- turns -------------
    async def _user_turn(self, text: str):
        text = (text or "").strip()
        if not text:
            return
        if self.state is SessionState.SPEAKING:
            await self._barge_in("speech")
        if self._active_generation is not None:
            # one generation at a time; the reply still streaming is not spoken anymore
            self._speak_generation = None
            if self._deferred:
                self._deferred[-1] = f"{self._deferred[-1]} {text}"
            else:
                self._deferred.append(text)
            return
        await self._start_turn(text)

    async def _start_turn(self, text: str):
        bridges = self._ensure_bridges()
        self.turn_id += 1
        self._turn_t0 = time.time()
        self._first_sentence_t = None
        self._first_audio_t = None
        self._sentences.clear()
        self._tts_stream_id = None
        bridges.tts.clear_pending()
        await bridges.tts.resume()

        self._transition(SessionState.THINKING, "user turn")
        gen = bridges.llm.send_message(text)
        self._active_generation = gen
        self._speak_generation = gen
        self._generation_done = False

    async def _next_deferred(self):
        if self.state is SessionState.SPEAKING:
            return
        if self._deferred and self._active_generation is None:
            await self._start_turn(self._deferred.popleft())

    # ------------- response stream -------------
    async def _on_response_chunk(self, event: ResponseChunkReceived):
        c = event.chunk
        if c.generation != self._active_generation:
            return
        if c.function_call is not None:
            self._start_tool(c.function_call)
            return

        await self._send({"type": MSG_LLM_PARTIAL, "text": c.text, "sentenceReady": c.is_sentence_complete})
        if not c.is_sentence_complete or c.generation != self._speak_generation or not c.text.strip():
            return

        if self._first_sentence_t is None:
            self._first_sentence_t = time.time()
        self._sentences.append(c.text)
        if self.state is SessionState.THINKING:
            self._transition(SessionState.SPEAKING, "first sentence")
            self.barge_in.set_tts_playing(True)
        if self.state is SessionState.SPEAKING:
            await self._pump_tts()

    async def _on_response_complete(self, event: ResponseComplete):
        if event.generation != self._active_generation or event.awaiting_function:
            return
        self._active_generation = None
        if self._speak_generation == event.generation:
            self._generation_done = True
            if self.state is SessionState.THINKING:
                # nothing was spoken
                self._transition(self._rest_state(), "empty reply")
                self._write_turn_metrics(interrupted=False)
            else:
                await self._pump_tts()
                await self._maybe_finish_turn()
        await self._next_deferred()

    async def _on_response_failed(self, event: ResponseFailed):
        if event.generation != self._active_generation:
            return
        self._active_generation = None
        await self._send(error_message(ERR_LLM, "AI processing error"))
        if self._speak_generation == event.generation:
            self._generation_done = True
            if self.state is SessionState.THINKING:
                self._transition(self._rest_state(), "llm error")
                self._write_turn_metrics(interrupted=False)
            else:
                await self._maybe_finish_turn()
        elif self.state is SessionState.THINKING and not self._deferred:
            self._transition(self._rest_state(), "llm error")
        await self._next_deferred()

    # ------------- tools -------------
    def _start_tool(self, req: FunctionCallRequest):
        task = asyncio.create_task(self._run_tool(req))
        self._tool_tasks.add(task)
        task.add_done_callback(self._tool_tasks.discard)

    async def _run_tool(self, req: FunctionCallRequest):
        result = await self.tools.dispatch(req)
        self.post(FunctionResultReady(request=req, result=result))

    async def _on_function_result(self, event: FunctionResultReady):
        req, result = event.request, event.result
        self.audit.log_event(
            self.session_id,
            "function_invoked",
            {"function": req.name, "args": req.args, "ok": "error" not in result},
        )
        self._audit_drug_info(req, result)
        if self._active_generation is None or self.bridges is None:
            return
        following = self._speak_generation == self._active_generation
        gen = self.bridges.llm.handle_function_result(req.name, result, call_id=req.call_id)
        if gen is None:
            return
        self._active_generation = gen
        if following:
            self._speak_generation = gen

    def _audit_drug_info(self, req: FunctionCallRequest, result: Dict[str, Any]):
        if req.name == "drug_info.checkInteractions":
            self.audit.log_event(
                self.session_id,
                "interaction_check",
                {
                    "medications": req.args.get("meds") or [],
                    "conditions": req.args.get("conditions") or [],
                    "alertCount": len(result.get("alerts") or []),
                },
            )
        elif req.name == "drug_info.getAdministrationGuide":
            self.audit.log_event(
                self.session_id,
                "admin_advice",
                {"medication": req.args.get("med"), "found": bool(result.get("found"))},
            )

    # ------------- synthesis -------------
    async def _pump_tts(self):
        if self.bridges is None:
            return
        while self._tts_stream_id is None and self._sentences:
            self._tts_stream_id = await self.bridges.tts.synthesize(self._sentences.popleft())

    async def _maybe_finish_turn(self):
        if self.state is not SessionState.SPEAKING:
            return
        if self._tts_stream_id is not None or self._sentences or not self._generation_done:
            return
        await self._finish_speaking("complete")

    async def _finish_speaking(self, reason: str):
        self.barge_in.set_tts_playing(False)
        await self._send({"type": MSG_TTS_END})
        self._transition(self._rest_state(), reason)
        self._write_turn_metrics(interrupted=False)
        await self._next_deferred()

    async def _on_synthesis_chunk(self, event: SynthesisChunkReady):
        c = event.chunk
        if c.stream_id != self._tts_stream_id or self.state is not SessionState.SPEAKING:
            return
        if self._first_audio_t is None:
            self._first_audio_t = time.time()
        await self._send(
            {"type": MSG_TTS_CHUNK, "data": base64.b64encode(c.audio).decode("ascii"), "seq": self._out_seq}
        )
        self._out_seq += 1

    async def _on_synthesis_complete(self, event: SynthesisComplete):
        if event.stream_id != self._tts_stream_id:
            return
        self._tts_stream_id = None
        await self._pump_tts()
        await self._maybe_finish_turn()

    async def _on_synthesis_failed(self, event: SynthesisFailed):
        if event.stream_id != self._tts_stream_id:
            return
        self._tts_stream_id = None
        self._sentences.clear()
        self._speak_generation = None
        await self._send(error_message(ERR_TTS, "Text-to-speech error"))
        if self.state is SessionState.SPEAKING:
            await self._finish_speaking("tts error")

    # ------------- metrics -------------
    def _write_turn_metrics(self, interrupted: bool):
        if self._turn_t0 is None:
            return
        t0, self._turn_t0 = self._turn_t0, None
        now = time.time()

        def ms(t: Optional[float], base: Optional[float]) -> Optional[int]:
            return int((t - base) * 1000) if t is not None and base is not None else None

        rec = {
            "evt": "turn_metrics",
            "session_id": self.session_id,
            "turn": self.turn_id,
            "rt_ms": ms(self._first_audio_t, t0),
            "llm_ms": ms(self._first_sentence_t, t0),
            "tts_ms": ms(self._first_audio_t, self._first_sentence_t),
            "total_ms": int((now - t0) * 1000),
            "interrupted": interrupted,
            "ts": now,
        }
        self.metrics.write(rec)
        self._log(RichLogger.turn_summary(rec["total_ms"], rec["llm_ms"] or 0, rec["tts_ms"] or 0, interrupted))

    # ------------- teardown -------------
    async def _on_session_expired(self, event: SessionExpired):
        await self._send(status_message("Session expired", event="expired", reason=event.reason))
        await self.close(event.reason)

    async def close(self, reason: str = "disconnect"):
        if self._closed:
            return
        self._closed = True
        self.recording = False
        self._transition(SessionState.CLOSED, reason)

        for task in list(self._tool_tasks):
            task.cancel()
        if self._tool_tasks:
            await asyncio.gather(*self._tool_tasks, return_exceptions=True)

        if self.bridges is not None:
            for step in (self.bridges.stt.disconnect, self.bridges.tts.close, self.bridges.llm.close):
                try:
                    await step()
                except Exception as e:
                    self._log(RichLogger.warning(f"bridge shutdown failed: {e!r}"))

        if self.session is not None:
            # a resumed connection may own the record by now; leave it alone then
            if self.session.on_expire == self._on_registry_expire:
                self.session.on_expire = None
                await self.registry.expire(self.session.token, reason)
            self.audit.log_event(self.session.id, "session_end", {"reason": reason, "turns": self.turn_id})
        self._log(RichLogger.connection_closed(self.conn_id, reason))
