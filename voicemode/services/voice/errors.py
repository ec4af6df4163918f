"""Voice error taxonomy and failure classification.

Every leaf component classifies its own failures through the helpers in this
module before raising or emitting them, so the orchestrator only ever sees a
``VoiceError`` with a code from ``VoiceErrorCode``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx


class VoiceErrorCode(str, Enum):
    MICROPHONE_PERMISSION_DENIED = "microphone-permission-denied"
    MICROPHONE_NOT_FOUND = "microphone-not-found"
    PLATFORM_NOT_SUPPORTED = "platform-not-supported"
    TRANSCRIPTION_CONNECTION_FAILED = "transcription-connection-failed"
    TRANSCRIPTION_FAILED = "transcription-failed"
    SYNTHESIS_FAILED = "synthesis-failed"
    NETWORK_ERROR = "network-error"
    TOKEN_EXPIRED = "token-expired"
    RATE_LIMITED = "rate-limited"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class _ErrorMetadata:
    message: str
    suggestion: str
    recoverable: bool


ERROR_METADATA: dict[VoiceErrorCode, _ErrorMetadata] = {
    VoiceErrorCode.MICROPHONE_PERMISSION_DENIED: _ErrorMetadata(
        message="Microphone access was denied",
        suggestion="Allow microphone access for this application and try again",
        recoverable=True,
    ),
    VoiceErrorCode.MICROPHONE_NOT_FOUND: _ErrorMetadata(
        message="No microphone was found",
        suggestion="Connect a microphone and try again",
        recoverable=False,
    ),
    VoiceErrorCode.PLATFORM_NOT_SUPPORTED: _ErrorMetadata(
        message="Voice mode is not supported on this platform",
        suggestion="Install an audio backend (PortAudio) or use a supported device",
        recoverable=False,
    ),
    VoiceErrorCode.TRANSCRIPTION_CONNECTION_FAILED: _ErrorMetadata(
        message="Could not connect to the speech recognition service",
        suggestion="Check your connection and try again",
        recoverable=True,
    ),
    VoiceErrorCode.TRANSCRIPTION_FAILED: _ErrorMetadata(
        message="Speech recognition failed",
        suggestion="Please try speaking again",
        recoverable=True,
    ),
    VoiceErrorCode.SYNTHESIS_FAILED: _ErrorMetadata(
        message="Could not generate speech",
        suggestion="The response will be shown as text",
        recoverable=True,
    ),
    VoiceErrorCode.NETWORK_ERROR: _ErrorMetadata(
        message="Network connection lost",
        suggestion="Please check your internet connection",
        recoverable=True,
    ),
    VoiceErrorCode.TOKEN_EXPIRED: _ErrorMetadata(
        message="Authentication expired",
        suggestion="Reconnecting...",
        recoverable=True,
    ),
    VoiceErrorCode.RATE_LIMITED: _ErrorMetadata(
        message="Too many requests",
        suggestion="Please wait a moment and try again",
        recoverable=True,
    ),
    VoiceErrorCode.UNKNOWN: _ErrorMetadata(
        message="An unexpected error occurred",
        suggestion="Please try again",
        recoverable=True,
    ),
}


class VoiceError(Exception):
    """Structured voice mode error carrying a taxonomy code and user-facing text."""

    def __init__(
        self,
        code: VoiceErrorCode | str,
        message: str | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        try:
            resolved = VoiceErrorCode(code)
        except ValueError:
            resolved = VoiceErrorCode.UNKNOWN
        metadata = ERROR_METADATA[resolved]
        self.code = resolved
        self.message = message or metadata.message
        self.suggestion = metadata.suggestion
        self.recoverable = metadata.recoverable
        self.original_error = original_error
        super().__init__(self.message)
        if original_error is not None:
            self.__cause__ = original_error

    def to_dict(self) -> dict[str, Any]:
        """Serialize for event payloads and UI rendering."""

        return {
            "code": self.code.value,
            "message": self.message,
            "suggestion": self.suggestion,
            "recoverable": self.recoverable,
        }

    def __repr__(self) -> str:
        return f"VoiceError(code={self.code.value!r}, message={self.message!r})"


class VoiceConfigurationError(VoiceError):
    """Raised when a voice configuration fails validation."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__(
            VoiceErrorCode.UNKNOWN,
            f"Invalid voice configuration: {'; '.join(self.errors)}",
        )


def create_voice_error(
    code: VoiceErrorCode | str,
    error_or_message: BaseException | str | None = None,
) -> VoiceError:
    """Build a VoiceError from an exception or a custom message."""

    if isinstance(error_or_message, VoiceError):
        return error_or_message
    if isinstance(error_or_message, BaseException):
        return VoiceError(code, str(error_or_message) or None, error_or_message)
    return VoiceError(code, error_or_message)


def _status_code_of(error: Any) -> int | None:
    """Extract an HTTP status from httpx or websockets handshake failures."""

    if isinstance(error, int):
        return error
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    if status is None:
        status = getattr(error, "status_code", None)
    return status if isinstance(status, int) else None


def _lower_message(error: Any) -> str:
    return str(error or "").lower()


def classify_capture_error(error: BaseException) -> VoiceErrorCode:
    """Map a microphone acquisition failure to the taxonomy."""

    if isinstance(error, VoiceError):
        return error.code
    if isinstance(error, PermissionError):
        return VoiceErrorCode.MICROPHONE_PERMISSION_DENIED
    if isinstance(error, (ImportError, NotImplementedError)):
        return VoiceErrorCode.PLATFORM_NOT_SUPPORTED

    message = _lower_message(error)
    if "permission" in message or "not allowed" in message or "access denied" in message:
        return VoiceErrorCode.MICROPHONE_PERMISSION_DENIED
    if "portaudio library not found" in message or "not supported" in message:
        return VoiceErrorCode.PLATFORM_NOT_SUPPORTED
    if (
        "no default input" in message
        or "device unavailable" in message
        or "invalid device" in message
        or "no such device" in message
        or "not found" in message
        or "no input" in message
    ):
        return VoiceErrorCode.MICROPHONE_NOT_FOUND
    return VoiceErrorCode.UNKNOWN


def _classify_by_status(status: int | None) -> VoiceErrorCode | None:
    if status in (401, 403):
        return VoiceErrorCode.TOKEN_EXPIRED
    if status == 429:
        return VoiceErrorCode.RATE_LIMITED
    return None


def _classify_by_message(message: str) -> VoiceErrorCode | None:
    if "401" in message or "unauthorized" in message or "token" in message:
        return VoiceErrorCode.TOKEN_EXPIRED
    if "429" in message or "rate limit" in message or "throttl" in message:
        return VoiceErrorCode.RATE_LIMITED
    if "network" in message or "connection" in message:
        return VoiceErrorCode.NETWORK_ERROR
    return None


def classify_connection_error(error: BaseException) -> VoiceErrorCode:
    """Map a transcription connection failure to the taxonomy."""

    if isinstance(error, VoiceError):
        return error.code
    by_status = _classify_by_status(_status_code_of(error))
    if by_status is not None:
        return by_status
    if isinstance(error, TimeoutError):
        return VoiceErrorCode.TRANSCRIPTION_CONNECTION_FAILED
    if isinstance(error, OSError):
        return VoiceErrorCode.NETWORK_ERROR
    return _classify_by_message(_lower_message(error)) or (
        VoiceErrorCode.TRANSCRIPTION_CONNECTION_FAILED
    )


def classify_transcription_message(message_type: str, error_text: str | None) -> VoiceErrorCode:
    """Map an inbound transcription error message to the taxonomy."""

    if message_type == "scribe_auth_error":
        return VoiceErrorCode.TOKEN_EXPIRED
    if message_type in (
        "scribe_rate_limited_error",
        "scribe_throttled_error",
        "scribe_quota_exceeded_error",
    ):
        return VoiceErrorCode.RATE_LIMITED
    return _classify_by_message(_lower_message(error_text)) or VoiceErrorCode.TRANSCRIPTION_FAILED


def classify_synthesis_error(error: Any) -> VoiceErrorCode:
    """Map a speech synthesis failure (exception or HTTP status) to the taxonomy."""

    if isinstance(error, VoiceError):
        return error.code
    by_status = _classify_by_status(_status_code_of(error))
    if by_status is not None:
        return by_status
    if isinstance(error, (httpx.TransportError, OSError)):
        return VoiceErrorCode.NETWORK_ERROR
    message = _lower_message(error)
    if "network" in message or "fetch" in message:
        return VoiceErrorCode.NETWORK_ERROR
    return VoiceErrorCode.SYNTHESIS_FAILED


def classify_token_error(error: BaseException) -> VoiceErrorCode:
    """Map a token supplier failure to the taxonomy."""

    if isinstance(error, VoiceError):
        return error.code
    by_status = _classify_by_status(_status_code_of(error))
    if by_status is not None:
        return by_status
    if isinstance(error, OSError):
        return VoiceErrorCode.NETWORK_ERROR
    return _classify_by_message(_lower_message(error)) or VoiceErrorCode.UNKNOWN
