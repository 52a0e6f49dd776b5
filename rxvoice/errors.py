"""
Error taxonomy for the voice session pipeline.

Bridges catch vendor faults at their boundary and turn them into failure events;
the coordinator maps those onto client-facing error codes. Cancellation from
pause/stop is an expected outcome and is never reported as an error.
"""

from __future__ import annotations


class VoiceError(Exception):
    """Base class for pipeline errors. `code` is the client-facing error code."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "", *, code: str | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)


class BridgeConnectionError(VoiceError, ConnectionError):
    """Vendor handshake/auth failure or connect timeout."""

    code = "CONNECTION_ERROR"


class StreamError(VoiceError):
    """Mid-stream vendor fault; the session degrades instead of terminating."""

    code = "STREAM_ERROR"


class ValidationError(VoiceError):
    """Malformed client control message."""

    code = "VALIDATION_ERROR"


class _CancelledType:
    """Outcome of a synthesis stream that was aborted on purpose."""

    _instance: "_CancelledType | None" = None

    def __new__(cls) -> "_CancelledType":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "Cancelled"

    def __bool__(self) -> bool:
        return False


Cancelled = _CancelledType()
