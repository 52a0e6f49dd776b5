"""
Console and structured logging for voice sessions.

RichLogger builds short emoji-tagged lines that callers print with `RichLogger.line(...)`.
NDJSONLogger appends one JSON object per line (turn metrics, audit records).
Nothing here should print patient data: tool arguments are logged by key only.
"""

import time
from pathlib import Path
from typing import Any, Dict

import orjson


class RichLogger:
    @staticmethod
    def _clock() -> str:
        return time.strftime("%H:%M:%S", time.localtime())

    @staticmethod
    def _ms(ms: float) -> str:
        return f"{ms:.0f}ms" if ms < 1000 else f"{ms / 1000:.2f}s"

    @staticmethod
    def _clip(text: str, limit: int = 80) -> str:
        return text if len(text) <= limit else text[: limit - 1] + "…"

    @staticmethod
    def line(*parts: str) -> str:
        return f"[{RichLogger._clock()}] " + " ".join(p for p in parts if p)

    @staticmethod
    def session_info(session_id: str, turn_id: int, state: str) -> str:
        return f"🎯 [{session_id[:8]}] #{turn_id} {state}"

    # connection / session
    @staticmethod
    def connection_open(conn_id: str) -> str:
        return f"🔌 Connection open: {conn_id[:8]}"

    @staticmethod
    def connection_closed(conn_id: str, reason: str = "") -> str:
        return f"🔌 Connection closed: {conn_id[:8]}" + (f" ({reason})" if reason else "")

    @staticmethod
    def auth(session_id: str, resumed: bool) -> str:
        return f"🔑 Auth: session={session_id[:8]} " + ("resumed" if resumed else "new")

    @staticmethod
    def sweep(expired: int, remaining: int) -> str:
        return f"🧹 Sweep: expired={expired} live={remaining}"

    @staticmethod
    def state_transition(old_state: str, new_state: str, reason: str = "") -> str:
        return f"🔄 {old_state} → {new_state}" + (f" ({reason})" if reason else "")

    # audio in
    @staticmethod
    def audio_frame(frame_ms: float, energy: float, is_speech: bool) -> str:
        return f"{'🔊' if is_speech else '🔇'} Frame {frame_ms:.0f}ms energy={energy:.4f}"

    @staticmethod
    def barge_in(source: str) -> str:
        return f"⚡ Barge-in ({source})"

    # speech recognition
    @staticmethod
    def stt_connect(attempt: int = 0) -> str:
        return "📡 STT connected" + (f" (reconnect {attempt})" if attempt else "")

    @staticmethod
    def stt_reconnect(attempt: int, max_attempts: int, delay_s: float) -> str:
        return f"📡 STT reconnect {attempt}/{max_attempts} in {delay_s:.1f}s"

    @staticmethod
    def asr_partial(text: str) -> str:
        return f"📝 Partial: '{RichLogger._clip(text)}'"

    @staticmethod
    def asr_final(text: str, confidence: float) -> str:
        return f"✅ Final: '{RichLogger._clip(text)}' ({confidence:.2f})"

    # response generation
    @staticmethod
    def llm_request(text: str) -> str:
        return f"🧠 LLM ← '{RichLogger._clip(text)}'"

    @staticmethod
    def llm_sentence(text: str, confidence: float) -> str:
        return f"💬 Sentence: '{RichLogger._clip(text)}' ({confidence:.2f})"

    @staticmethod
    def tool_call(name: str, args: Dict[str, Any]) -> str:
        return f"🔧 Tool: {name}({', '.join(sorted(args))})"

    # synthesis
    @staticmethod
    def tts_start(stream_id: int, text: str, est_ms: float = 0.0) -> str:
        est = f" ~{RichLogger._ms(est_ms)}" if est_ms else ""
        return f"🗣️  TTS #{stream_id}{est}: '{RichLogger._clip(text)}'"

    @staticmethod
    def tts_complete(stream_id: int, chunks: int, total_bytes: int) -> str:
        return f"✅ TTS #{stream_id} done: {chunks} chunks, {total_bytes}B"

    @staticmethod
    def tts_cancelled(stream_id: int) -> str:
        return f"⏹️  TTS #{stream_id} cancelled"

    # timings / problems
    @staticmethod
    def timing(component: str, duration_ms: float) -> str:
        return f"⏱️  {component}: {RichLogger._ms(duration_ms)}"

    @staticmethod
    def turn_summary(total_ms: float, llm_ms: float, tts_ms: float, interrupted: bool = False) -> str:
        s = f"🏁 Turn: total {RichLogger._ms(total_ms)} | LLM {RichLogger._ms(llm_ms)} | TTS {RichLogger._ms(tts_ms)}"
        return s + (" | interrupted" if interrupted else "")

    @staticmethod
    def warning(msg: str) -> str:
        return f"⚠️  {msg}"

    @staticmethod
    def error(error_msg: str) -> str:
        return f"❌ Error: {error_msg}"


class NDJSONLogger:
    """Append-only NDJSON file. Write failures are reported and dropped."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)

    def write(self, record: Dict[str, Any]) -> None:
        line = orjson.dumps(record, default=str) + b"\n"
        try:
            with self.path.open("ab") as f:
                f.write(line)
        except OSError as e:
            print(RichLogger.line(RichLogger.warning(f"NDJSON write failed ({self.path}): {e!r}")))
