"""Shared fixtures for voice mode tests."""

from __future__ import annotations

import pytest

from voicemode.core.settings import Settings
from voicemode.services.voice import (
    audio_capture,
    config,
    orchestrator,
    speech_player,
    transcription,
)

_SETTINGS_CONSUMERS = (audio_capture, config, orchestrator, speech_player, transcription)


@pytest.fixture
def voice_settings(monkeypatch, tmp_path) -> Settings:
    """Deterministic settings: no .env, fast timeouts, no reconnect backoff."""

    settings = Settings(
        _env_file=None,
        logs_dir=tmp_path / "logs",
        elevenlabs_api_key="sk_test",
        elevenlabs_stt_ws_url="wss://stt.example.test/v1/speech-to-text/realtime",
        elevenlabs_tts_base_url="https://tts.example.test/v1/text-to-speech",
        voice_stt_connect_timeout_seconds=1.0,
        voice_stt_close_timeout_seconds=0.5,
        voice_stt_reconnect_attempts=3,
        voice_stt_reconnect_backoff_seconds=0.0,
        voice_stt_reconnect_backoff_max_seconds=0.0,
        voice_playback_chunk_frames=256,
        voice_trace_logging=True,
    )
    for module in _SETTINGS_CONSUMERS:
        monkeypatch.setattr(module, "get_settings", lambda: settings)
    return settings
