from __future__ import annotations
import os
from dataclasses import dataclass

from dotenv import find_dotenv, load_dotenv

# Load .env if present; real environment variables win
load_dotenv(find_dotenv(usecwd=True), override=False)

def _get_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return v.lower() in ("1", "true", "yes", "on")

def _get_list(key: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(key, default)
    return tuple(x.strip() for x in raw.split(",") if x.strip())

@dataclass(frozen=True)
class Settings:
    host: str = os.getenv("RXV_HOST", "0.0.0.0")
    port: int = int(os.getenv("RXV_PORT", "3001"))
    cors_origins: tuple[str, ...] = _get_list("RXV_CORS_ORIGINS", "http://localhost:5173")

    # Inbound audio: 16kHz mono PCM16, framed into 100ms frames
    sample_rate: int = int(os.getenv("RXV_SAMPLE_RATE", "16000"))
    channels: int = int(os.getenv("RXV_CHANNELS", "1"))
    frame_ms: int = int(os.getenv("RXV_FRAME_MS", "100"))
    pcm_width: int = int(os.getenv("RXV_PCM_WIDTH", "2"))

    # VAD / barge-in
    vad_energy_threshold: float = float(os.getenv("RXV_VAD_ENERGY_THRESHOLD", "0.01"))
    vad_speech_timeout_ms: int = int(os.getenv("RXV_VAD_SPEECH_TIMEOUT_MS", "100"))
    vad_silence_timeout_ms: int = int(os.getenv("RXV_VAD_SILENCE_TIMEOUT_MS", "1000"))
    vad_noise_decay: float = float(os.getenv("RXV_VAD_NOISE_DECAY", "0.95"))
    barge_in_threshold: float = float(os.getenv("RXV_BARGE_IN_THRESHOLD", "0.02"))
    barge_in_min_frames: int = int(os.getenv("RXV_BARGE_IN_MIN_FRAMES", "3"))

    # Sessions
    session_ttl_ms: int = int(os.getenv("SESSION_TIMEOUT_MS", "3600000"))
    idle_timeout_s: float = float(os.getenv("RXV_IDLE_TIMEOUT_S", "600"))
    sweep_interval_s: float = float(os.getenv("RXV_SWEEP_INTERVAL_S", "300"))

    # STT (Deepgram)
    deepgram_api_key: str = os.getenv("DEEPGRAM_API_KEY", "")
    deepgram_url: str = os.getenv("RXV_DEEPGRAM_URL", "wss://api.deepgram.com/v1/listen")
    deepgram_model: str = os.getenv("DEEPGRAM_MODEL", "nova-2")
    deepgram_language: str = os.getenv("DEEPGRAM_LANGUAGE", "en-US")
    stt_connect_timeout_s: float = float(os.getenv("RXV_STT_CONNECT_TIMEOUT_S", "10"))
    stt_max_reconnects: int = int(os.getenv("RXV_STT_MAX_RECONNECTS", "3"))
    stt_reconnect_delay_s: float = float(os.getenv("RXV_STT_RECONNECT_DELAY_S", "1.0"))
    stt_keepalive_s: float = float(os.getenv("RXV_STT_KEEPALIVE_S", "8"))

    # LLM
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    llm_model: str = os.getenv("RXV_LLM_MODEL", "gpt-4o-mini")
    llm_temperature: float = float(os.getenv("RXV_LLM_TEMPERATURE", "0.7"))
    llm_max_tokens: int = int(os.getenv("RXV_LLM_MAX_TOKENS", "1024"))
    llm_max_history: int = int(os.getenv("RXV_LLM_MAX_HISTORY", "32"))
    llm_log: bool = _get_bool("RXV_LLM_LOG", True)
    system_prompt_path: str = os.getenv("RXV_SYSTEM_PROMPT_PATH", "")

    # TTS (ElevenLabs)
    elevenlabs_api_key: str = os.getenv("ELEVENLABS_API_KEY", "")
    elevenlabs_url: str = os.getenv("RXV_ELEVENLABS_URL", "https://api.elevenlabs.io/v1/text-to-speech")
    elevenlabs_voice_id: str = os.getenv("ELEVENLABS_VOICE_ID", "21m00Tcm4TlvDq8ikWAM")
    elevenlabs_model_id: str = os.getenv("ELEVENLABS_MODEL_ID", "eleven_turbo_v2_5")
    tts_output_format: str = os.getenv("RXV_TTS_OUTPUT_FORMAT", "pcm_16000")
    tts_sample_rate: int = int(os.getenv("RXV_TTS_SAMPLE_RATE", "16000"))
    tts_timeout_s: float = float(os.getenv("RXV_TTS_TIMEOUT_S", "10"))

    # Text chunking
    min_sentence_chars: int = int(os.getenv("RXV_MIN_SENTENCE_CHARS", "10"))

    # Metrics / audit
    metrics_dir: str = os.getenv("RXV_METRICS_DIR", "./metrics")
    metrics_file: str = os.getenv("RXV_METRICS_FILE", "./metrics/latency.ndjson")
    audit_file: str = os.getenv("RXV_AUDIT_FILE", "./metrics/audit.ndjson")
    audit_salt: str = os.getenv("JWT_SECRET", "default_salt")


settings = Settings()
