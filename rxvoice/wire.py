from __future__ import annotations

from typing import Any, Union

import orjson

from .errors import ValidationError

# Client → Server control
MSG_AUTH = "auth"
MSG_AUDIO_START = "audio.start"
MSG_AUDIO_STOP = "audio.stop"
MSG_UI_INTERRUPT = "ui.interrupt"
MSG_TEXT_INPUT = "text.input"

CLIENT_TYPES = (MSG_AUTH, MSG_AUDIO_START, MSG_AUDIO_STOP, MSG_UI_INTERRUPT, MSG_TEXT_INPUT)

# Server → Client session
MSG_AUTH_SUCCESS = "auth.success"
MSG_AUDIO_STARTED = "audio.started"
MSG_AUDIO_STOPPED = "audio.stopped"
MSG_STATUS = "status"
MSG_ERROR = "error"

# Server → Client STT / LLM
MSG_STT_PARTIAL = "stt.partial"
MSG_STT_FINAL = "stt.final"
MSG_LLM_PARTIAL = "llm.partial"

# Server → Client TTS/Playback
MSG_TTS_CHUNK = "tts.chunk"
MSG_TTS_END = "tts.end"

# Error codes
ERR_AUTH_FAILED = "AUTH_FAILED"
ERR_NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
ERR_UNKNOWN_TYPE = "UNKNOWN_MESSAGE_TYPE"
ERR_VALIDATION = "VALIDATION_ERROR"
ERR_STT_CONNECT = "STT_CONNECT_FAILED"
ERR_STT = "STT_ERROR"
ERR_LLM = "LLM_ERROR"
ERR_TTS = "TTS_ERROR"
ERR_INTERNAL = "INTERNAL_ERROR"


ClientFrame = Union[dict, bytes]


def decode_client_frame(payload: Union[str, bytes]) -> ClientFrame:
    """
    Split an inbound websocket payload into a control message or raw audio.

    Text frames must carry a JSON object. Binary frames that parse as a JSON
    object are control messages too; anything else is PCM16 audio.
    """
    if isinstance(payload, str):
        try:
            obj = orjson.loads(payload)
        except orjson.JSONDecodeError:
            raise ValidationError("control message is not valid JSON")
        if not isinstance(obj, dict):
            raise ValidationError("control message must be a JSON object")
        return validate_control(obj)

    if payload[:1] == b"{":
        try:
            obj = orjson.loads(payload)
        except orjson.JSONDecodeError:
            return bytes(payload)
        if isinstance(obj, dict):
            return validate_control(obj)
    return bytes(payload)


def validate_control(obj: dict[str, Any]) -> dict[str, Any]:
    typ = obj.get("type")
    if not isinstance(typ, str) or not typ:
        raise ValidationError("control message is missing a 'type'")
    if typ == MSG_AUTH and obj.get("token") is not None and not isinstance(obj["token"], str):
        raise ValidationError("auth token must be a string")
    if typ == MSG_TEXT_INPUT and not isinstance(obj.get("text"), str):
        raise ValidationError("text.input requires a 'text' string")
    if typ == MSG_AUDIO_START:
        rate = obj.get("sampleRate")
        if rate is not None and (not isinstance(rate, int) or isinstance(rate, bool) or rate <= 0):
            raise ValidationError("sampleRate must be a positive integer")
    return obj


def error_message(code: str, message: str) -> dict[str, Any]:
    return {"type": MSG_ERROR, "code": code, "message": message}


def status_message(message: str, **extra: Any) -> dict[str, Any]:
    return {"type": MSG_STATUS, "message": message, **extra}
