"""Continuous voice conversation: capture, transcription, synthesis, playback."""

from voicemode.services.voice.config import (
    VoiceConfiguration,
    VoiceTexts,
    merge_voice_config,
    validate_voice_config,
)
from voicemode.services.voice.errors import (
    VoiceConfigurationError,
    VoiceError,
    VoiceErrorCode,
    create_voice_error,
)
from voicemode.services.voice.orchestrator import VoiceSessionOrchestrator, create_voice_session
from voicemode.services.voice.session_state import (
    InvalidStateTransition,
    SessionInfo,
    VoiceSessionSnapshot,
    VoiceSessionState,
)

__all__ = [
    "InvalidStateTransition",
    "SessionInfo",
    "VoiceConfiguration",
    "VoiceConfigurationError",
    "VoiceError",
    "VoiceErrorCode",
    "VoiceSessionOrchestrator",
    "VoiceSessionSnapshot",
    "VoiceSessionState",
    "VoiceTexts",
    "create_voice_error",
    "create_voice_session",
    "merge_voice_config",
    "validate_voice_config",
]
