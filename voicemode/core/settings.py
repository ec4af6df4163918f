from functools import lru_cache
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    app_name: str = "Voice Mode"
    debug: bool = False
    log_level: str = "INFO"
    logs_dir: Path = Path("logs")

    # ElevenLabs
    elevenlabs_api_key: str | None = None
    elevenlabs_stt_ws_url: str = "wss://api.elevenlabs.io/v1/speech-to-text/realtime"
    elevenlabs_tts_base_url: str = "https://api.elevenlabs.io/v1/text-to-speech"

    # Transcription connection
    voice_stt_connect_timeout_seconds: float = 10.0
    voice_stt_close_timeout_seconds: float = 2.0
    voice_stt_reconnect_attempts: int = 3
    voice_stt_reconnect_backoff_seconds: float = 0.5
    voice_stt_reconnect_backoff_max_seconds: float = 4.0

    # Speech synthesis / playback
    voice_tts_timeout_seconds: float = 30.0
    voice_playback_chunk_frames: int = 2048

    # Diagnostics
    voice_trace_logging: bool = False
    voice_trace_max_chars: int = 200

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra fields from existing .env

    @field_validator("voice_stt_reconnect_attempts")
    @classmethod
    def validate_reconnect_attempts(cls, v):
        if v < 1:
            raise ValueError("VOICE_STT_RECONNECT_ATTEMPTS must be at least 1")
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
