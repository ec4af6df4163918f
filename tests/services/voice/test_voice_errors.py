"""Tests for the voice error taxonomy and failure classification."""

from __future__ import annotations

from types import SimpleNamespace

import httpx
import pytest

from voicemode.services.voice.errors import (
    ERROR_METADATA,
    VoiceConfigurationError,
    VoiceError,
    VoiceErrorCode,
    classify_capture_error,
    classify_connection_error,
    classify_synthesis_error,
    classify_token_error,
    classify_transcription_message,
    create_voice_error,
)


def test_every_code_has_user_facing_metadata() -> None:
    """Each code carries a message and a suggestion."""

    for code in VoiceErrorCode:
        metadata = ERROR_METADATA[code]
        assert metadata.message
        assert metadata.suggestion


@pytest.mark.parametrize(
    ("code", "recoverable"),
    [
        (VoiceErrorCode.MICROPHONE_PERMISSION_DENIED, True),
        (VoiceErrorCode.MICROPHONE_NOT_FOUND, False),
        (VoiceErrorCode.PLATFORM_NOT_SUPPORTED, False),
        (VoiceErrorCode.TRANSCRIPTION_CONNECTION_FAILED, True),
        (VoiceErrorCode.TOKEN_EXPIRED, True),
        (VoiceErrorCode.UNKNOWN, True),
    ],
)
def test_recoverability(code: VoiceErrorCode, recoverable: bool) -> None:
    """Only missing hardware and unsupported platforms are fatal."""

    assert VoiceError(code).recoverable is recoverable


def test_voice_error_defaults_and_serialization() -> None:
    """A VoiceError falls back to the code's message and serializes for the UI."""

    cause = RuntimeError("boom")
    error = VoiceError(VoiceErrorCode.SYNTHESIS_FAILED, original_error=cause)

    assert error.message == "Could not generate speech"
    assert error.__cause__ is cause
    assert error.to_dict() == {
        "code": "synthesis-failed",
        "message": "Could not generate speech",
        "suggestion": "The response will be shown as text",
        "recoverable": True,
    }


def test_unknown_code_string_resolves_to_unknown() -> None:
    """Unrecognised code strings never raise."""

    assert VoiceError("not-a-code").code is VoiceErrorCode.UNKNOWN
    assert VoiceError("rate-limited").code is VoiceErrorCode.RATE_LIMITED


def test_create_voice_error_variants() -> None:
    """create_voice_error accepts exceptions, messages and existing VoiceErrors."""

    existing = VoiceError(VoiceErrorCode.NETWORK_ERROR)
    assert create_voice_error(VoiceErrorCode.UNKNOWN, existing) is existing

    from_exc = create_voice_error(VoiceErrorCode.UNKNOWN, ValueError("bad value"))
    assert from_exc.message == "bad value"
    assert isinstance(from_exc.original_error, ValueError)

    from_text = create_voice_error(VoiceErrorCode.TOKEN_EXPIRED, "Token rejected")
    assert from_text.message == "Token rejected"
    assert from_text.original_error is None


def test_configuration_error_lists_every_problem() -> None:
    """VoiceConfigurationError joins all validation messages."""

    error = VoiceConfigurationError(["voice_id is required", "vad_threshold out of range"])

    assert isinstance(error, VoiceError)
    assert error.errors == ["voice_id is required", "vad_threshold out of range"]
    assert "voice_id is required; vad_threshold out of range" in error.message


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (PermissionError("denied"), VoiceErrorCode.MICROPHONE_PERMISSION_DENIED),
        (RuntimeError("Error opening InputStream: Access denied"), VoiceErrorCode.MICROPHONE_PERMISSION_DENIED),
        (OSError("PortAudio library not found"), VoiceErrorCode.PLATFORM_NOT_SUPPORTED),
        (ImportError("no sounddevice"), VoiceErrorCode.PLATFORM_NOT_SUPPORTED),
        (ValueError("No input device matching 'usb'"), VoiceErrorCode.MICROPHONE_NOT_FOUND),
        (RuntimeError("Error querying device -1: no default input"), VoiceErrorCode.MICROPHONE_NOT_FOUND),
        (RuntimeError("something odd"), VoiceErrorCode.UNKNOWN),
    ],
)
def test_classify_capture_error(error: BaseException, expected: VoiceErrorCode) -> None:
    """Capture failures map onto microphone and platform codes."""

    assert classify_capture_error(error) is expected


def test_classify_connection_error_by_status() -> None:
    """Handshake rejections are classified by HTTP status."""

    unauthorized = SimpleNamespace(response=SimpleNamespace(status_code=401))
    throttled = SimpleNamespace(response=SimpleNamespace(status_code=429))

    assert classify_connection_error(unauthorized) is VoiceErrorCode.TOKEN_EXPIRED
    assert classify_connection_error(throttled) is VoiceErrorCode.RATE_LIMITED


def test_classify_connection_error_by_type_and_message() -> None:
    """Timeouts, socket errors and messages fall back sensibly."""

    assert classify_connection_error(TimeoutError()) is (
        VoiceErrorCode.TRANSCRIPTION_CONNECTION_FAILED
    )
    assert classify_connection_error(ConnectionRefusedError()) is VoiceErrorCode.NETWORK_ERROR
    assert classify_connection_error(RuntimeError("invalid token")) is (
        VoiceErrorCode.TOKEN_EXPIRED
    )
    assert classify_connection_error(RuntimeError("handshake failed")) is (
        VoiceErrorCode.TRANSCRIPTION_CONNECTION_FAILED
    )


@pytest.mark.parametrize(
    ("message_type", "text", "expected"),
    [
        ("scribe_auth_error", "bad token", VoiceErrorCode.TOKEN_EXPIRED),
        ("scribe_rate_limited_error", None, VoiceErrorCode.RATE_LIMITED),
        ("scribe_throttled_error", None, VoiceErrorCode.RATE_LIMITED),
        ("scribe_quota_exceeded_error", "quota", VoiceErrorCode.RATE_LIMITED),
        ("scribe_error", "Network unreachable", VoiceErrorCode.NETWORK_ERROR),
        ("scribe_error", "Model crashed", VoiceErrorCode.TRANSCRIPTION_FAILED),
    ],
)
def test_classify_transcription_message(
    message_type: str, text: str | None, expected: VoiceErrorCode
) -> None:
    """Inbound recognizer errors map by message type, then by text."""

    assert classify_transcription_message(message_type, text) is expected


def test_classify_synthesis_error() -> None:
    """Synthesis failures map status codes and transport errors."""

    request = httpx.Request("POST", "https://tts.example.test")

    assert classify_synthesis_error(401) is VoiceErrorCode.TOKEN_EXPIRED
    assert classify_synthesis_error(429) is VoiceErrorCode.RATE_LIMITED
    assert classify_synthesis_error(500) is VoiceErrorCode.SYNTHESIS_FAILED
    assert classify_synthesis_error(httpx.ConnectError("down", request=request)) is (
        VoiceErrorCode.NETWORK_ERROR
    )
    assert classify_synthesis_error(RuntimeError("decoder exploded")) is (
        VoiceErrorCode.SYNTHESIS_FAILED
    )


def test_classify_token_error() -> None:
    """Token supplier failures distinguish auth, throttling and network."""

    assert classify_token_error(SimpleNamespace(status_code=403)) is VoiceErrorCode.TOKEN_EXPIRED
    assert classify_token_error(ConnectionResetError()) is VoiceErrorCode.NETWORK_ERROR
    assert classify_token_error(RuntimeError("rate limit hit")) is VoiceErrorCode.RATE_LIMITED
    assert classify_token_error(RuntimeError("nope")) is VoiceErrorCode.UNKNOWN
