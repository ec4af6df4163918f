"""Voice session states, allowed transitions and the live session record."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from voicemode.services.voice.config import VoiceConfiguration
from voicemode.services.voice.errors import VoiceError


class VoiceSessionState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    LISTENING = "listening"
    PROCESSING = "processing"
    # Declared for UI parity; no transition reaches these.
    SENDING = "sending"
    RECEIVING = "receiving"
    SPEAKING = "speaking"
    ERROR = "error"


ALLOWED_TRANSITIONS: dict[VoiceSessionState, frozenset[VoiceSessionState]] = {
    VoiceSessionState.IDLE: frozenset({VoiceSessionState.INITIALIZING}),
    VoiceSessionState.INITIALIZING: frozenset(
        {VoiceSessionState.LISTENING, VoiceSessionState.IDLE, VoiceSessionState.ERROR}
    ),
    VoiceSessionState.LISTENING: frozenset(
        {
            VoiceSessionState.PROCESSING,
            VoiceSessionState.SPEAKING,
            VoiceSessionState.IDLE,
            VoiceSessionState.ERROR,
        }
    ),
    VoiceSessionState.PROCESSING: frozenset(
        {
            VoiceSessionState.LISTENING,
            VoiceSessionState.SPEAKING,
            VoiceSessionState.IDLE,
            VoiceSessionState.ERROR,
        }
    ),
    VoiceSessionState.SPEAKING: frozenset(
        {VoiceSessionState.LISTENING, VoiceSessionState.IDLE, VoiceSessionState.ERROR}
    ),
    VoiceSessionState.SENDING: frozenset(),
    VoiceSessionState.RECEIVING: frozenset(),
    VoiceSessionState.ERROR: frozenset({VoiceSessionState.IDLE}),
}

# States in which capture and transcription are live.
ACTIVE_STATES = frozenset(
    {
        VoiceSessionState.LISTENING,
        VoiceSessionState.PROCESSING,
        VoiceSessionState.SPEAKING,
    }
)


class InvalidStateTransition(RuntimeError):
    """Raised when a state change is not an allowed edge."""

    def __init__(self, current: VoiceSessionState, target: VoiceSessionState) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid voice session transition: {current.value} -> {target.value}")


def can_transition(current: VoiceSessionState, target: VoiceSessionState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class VoiceSession:
    """Mutable record for the one live session an orchestrator owns."""

    config: VoiceConfiguration
    id: str = field(default_factory=lambda: f"voice_{uuid.uuid4().hex}")
    started_at: int = field(default_factory=_now_ms)
    state: VoiceSessionState = VoiceSessionState.LISTENING
    partial_transcript: str = ""
    last_error: VoiceError | None = None

    def duration_ms(self) -> int:
        return max(0, _now_ms() - self.started_at)


@dataclass(frozen=True)
class SessionInfo:
    """Returned by ``start_session``."""

    session_id: str
    started_at: int
    state: VoiceSessionState


@dataclass(frozen=True)
class VoiceSessionSnapshot:
    """Read-only view of the live session for the UI."""

    id: str
    state: VoiceSessionState
    started_at: int
    config: VoiceConfiguration
    partial_transcript: str
    is_playing: bool
    last_error: VoiceError | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "started_at": self.started_at,
            "partial_transcript": self.partial_transcript,
            "is_playing": self.is_playing,
            "last_error": self.last_error.to_dict() if self.last_error else None,
        }
