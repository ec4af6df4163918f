"""Voice session configuration, validation and wire-request builders."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any, Literal
from urllib.parse import quote, urlencode

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from voicemode.core.settings import get_settings
from voicemode.services.voice.errors import VoiceConfigurationError

TTS_MODELS = ("eleven_flash_v2_5", "eleven_multilingual_v2")
STT_MODELS = ("scribe_v2_realtime",)
AUDIO_FORMATS = ("mp3_44100_128", "pcm_24000")

# Human-readable rule per field, used instead of raw pydantic messages.
_FIELD_RULES: dict[str, str] = {
    "voice_id": "voice_id is required and must be a non-empty string",
    "silence_threshold": "silence_threshold must be a number between 0.3 and 3.0",
    "vad_threshold": "vad_threshold must be a number between 0.1 and 0.9",
    "speech_rms_threshold": "speech_rms_threshold must be a number between 0 and 1",
    "latency_optimization": "latency_optimization must be an integer between 0 and 4",
    "token_supplier": "token_supplier must be a callable returning a token",
    "api_key_supplier": "api_key_supplier must be a callable returning an API key",
    "tts_model": f"tts_model must be one of: {', '.join(TTS_MODELS)}",
    "stt_model": f"stt_model must be one of: {', '.join(STT_MODELS)}",
    "audio_format": f"audio_format must be one of: {', '.join(AUDIO_FORMATS)}",
    "sample_rate": "sample_rate must be an integer between 8000 and 48000",
    "min_speech_duration_ms": "min_speech_duration_ms must be an integer between 0 and 5000",
    "min_silence_duration_ms": "min_silence_duration_ms must be an integer between 0 and 5000",
    "prefix_padding_ms": "prefix_padding_ms must be an integer between 0 and 2000",
    "capture_block_size": "capture_block_size must be an integer between 256 and 16384",
}


class VoiceTexts(BaseModel):
    """User-facing strings the embedding UI renders for each session phase."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    title: str = "Fully voice mode"
    listening: str = "I'm listening, how can I help you?"
    microphone_hint: str = "The microphone is on, you can speak whenever you're ready."
    speaking: str = "Speaking..."
    processing: str = "Processing..."
    error_title: str = "Something went wrong"


class VoiceConfiguration(BaseModel):
    """Validated, immutable configuration snapshot for one voice session."""

    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    voice_id: str = Field(..., strict=True)
    language_code: str | None = "pt"

    tts_model: Literal["eleven_flash_v2_5", "eleven_multilingual_v2"] = "eleven_flash_v2_5"
    stt_model: Literal["scribe_v2_realtime"] = "scribe_v2_realtime"
    audio_format: Literal["mp3_44100_128", "pcm_24000"] = "mp3_44100_128"
    sample_rate: int = Field(16_000, ge=8_000, le=48_000, strict=True)

    # Server-side VAD (auto-commit)
    silence_threshold: float = Field(1.5, ge=0.3, le=3.0, strict=True, description="seconds")
    vad_threshold: float = Field(0.4, ge=0.1, le=0.9, strict=True)
    min_speech_duration_ms: int = Field(100, ge=0, le=5_000, strict=True)
    # Accepted for client parity; the server silence window is silence_threshold.
    min_silence_duration_ms: int = Field(100, ge=0, le=5_000, strict=True)
    prefix_padding_ms: int = Field(300, ge=0, le=2_000, strict=True)

    # Local VAD (barge-in and UI feedback only)
    speech_rms_threshold: float = Field(0.01, gt=0.0, lt=1.0, strict=True)
    capture_block_size: int = Field(4096, ge=256, le=16_384, strict=True)

    latency_optimization: int = Field(3, ge=0, le=4, strict=True)

    enable_barge_in: bool = True
    auto_listen: bool = True

    token_supplier: Callable[[], Any] | None = None
    api_key_supplier: Callable[[], Any] | None = None

    texts: VoiceTexts = Field(default_factory=VoiceTexts)

    @field_validator("voice_id")
    @classmethod
    def validate_voice_id(cls, v: str) -> str:
        normalized = v.strip()
        if not normalized:
            raise ValueError("voice_id cannot be blank")
        return normalized

    @field_validator("language_code")
    @classmethod
    def normalize_language_code(cls, v: str | None) -> str | None:
        if v is None:
            return None
        normalized = v.strip()
        return normalized or None

    @property
    def silence_duration_ms(self) -> int:
        return round(self.silence_threshold * 1000)


def _describe_errors(exc: ValidationError) -> list[str]:
    messages: list[str] = []
    for error in exc.errors():
        field = str(error["loc"][0]) if error.get("loc") else "configuration"
        if error.get("type") == "extra_forbidden":
            message = f"{field} is not a recognised configuration option"
        else:
            message = _FIELD_RULES.get(field, f"{field}: {error.get('msg')}")
        if message not in messages:
            messages.append(message)
    return messages


def validate_voice_config(config: Mapping[str, Any]) -> list[str]:
    """Return every validation problem for a raw configuration mapping.

    An empty list means the configuration is valid.
    """

    try:
        VoiceConfiguration.model_validate(dict(config))
    except ValidationError as exc:
        return _describe_errors(exc)
    return []


def merge_voice_config(
    config: Mapping[str, Any] | VoiceConfiguration | None = None,
    **overrides: Any,
) -> VoiceConfiguration:
    """Merge user configuration with defaults and validate it.

    Raises:
        VoiceConfigurationError: When any field is missing or out of range.
    """

    if isinstance(config, VoiceConfiguration):
        if not overrides:
            return config
        data: dict[str, Any] = config.model_dump()
        data["token_supplier"] = config.token_supplier
        data["api_key_supplier"] = config.api_key_supplier
    else:
        data = dict(config or {})
    data.update(overrides)

    try:
        return VoiceConfiguration.model_validate(data)
    except ValidationError as exc:
        raise VoiceConfigurationError(_describe_errors(exc)) from exc


def build_stt_websocket_url(config: VoiceConfiguration, token: str | None) -> str:
    """Build the realtime transcription URL with VAD auto-commit parameters."""

    params: dict[str, str] = {"model_id": config.stt_model}
    if config.language_code:
        params["language_code"] = config.language_code
    if token:
        params["token"] = token
    params.update(
        {
            "commit_strategy": "vad",
            "vad_threshold": str(config.vad_threshold),
            "vad_silence_duration_ms": str(config.silence_duration_ms),
            "vad_min_speech_duration_ms": str(config.min_speech_duration_ms),
            "vad_prefix_padding_ms": str(config.prefix_padding_ms),
        }
    )
    return f"{get_settings().elevenlabs_stt_ws_url}?{urlencode(params)}"


def build_tts_stream_url(voice_id: str) -> str:
    """Build the streaming synthesis endpoint for one voice."""

    base_url = get_settings().elevenlabs_tts_base_url.rstrip("/")
    return f"{base_url}/{quote(voice_id, safe='')}/stream"


def build_tts_request_body(text: str, config: VoiceConfiguration) -> dict[str, Any]:
    """Build the synthesis request payload."""

    body: dict[str, Any] = {
        "text": text,
        "model_id": config.tts_model,
        "output_format": config.audio_format,
        "optimize_streaming_latency": config.latency_optimization,
    }
    if config.language_code:
        body["language_code"] = config.language_code
    return body
