"""Voice session orchestration: capture -> STT -> chat backend -> TTS.

One orchestrator owns one microphone capture, at most one live transcription
connection and one speech player. It runs a small state machine, segments
streamed reply text into sentences for synthesis and stops playback as soon
as the user starts talking over it.
"""

from __future__ import annotations

import asyncio
import inspect
import re
from collections.abc import Callable, Mapping
from contextlib import suppress
from typing import Any, NoReturn

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from voicemode.core.logging import get_logger
from voicemode.core.settings import get_settings
from voicemode.services.voice.audio_capture import AudioCapture, CaptureOptions
from voicemode.services.voice.audio_utils import AudioFrame
from voicemode.services.voice.config import VoiceConfiguration, merge_voice_config
from voicemode.services.voice.errors import (
    VoiceError,
    VoiceErrorCode,
    classify_token_error,
)
from voicemode.services.voice.events import EventChannel
from voicemode.services.voice.session_state import (
    ACTIVE_STATES,
    InvalidStateTransition,
    SessionInfo,
    VoiceSession,
    VoiceSessionSnapshot,
    VoiceSessionState,
    can_transition,
)
from voicemode.services.voice.speech_player import SpeechOptions, SpeechPlayer
from voicemode.services.voice.transcription import TranscriptEvent, TranscriptionConnection

logger = get_logger(__name__)

SESSION_EVENTS = (
    "session:started",
    "session:ended",
    "state:changed",
    "transcript:partial",
    "transcript:committed",
    "speaking:started",
    "speaking:ended",
    "barge-in",
    "error",
    "listening:started",
    "listening:stopped",
)

ConnectionFactory = Callable[..., TranscriptionConnection]
MessageCallback = Callable[[str], Any]

# A sentence ends at a terminator run plus any closing quotes or brackets.
# Latin terminators need following whitespace so "3.14" or "e.g." mid-stream
# do not split; full-width terminators and newlines end a sentence outright.
_SENTENCE_BOUNDARY = re.compile(
    r"(?:[.!?…]+[\"'”’)\]»]*(?=\s)"
    r"|[。！？]+[\"'”’)\]」』]*"
    r"|\n)"
)


def _truncate_for_trace(text: str | None) -> str:
    """Bound trace text payloads to keep structured logs compact."""

    if not text:
        return ""
    max_chars = max(40, int(get_settings().voice_trace_max_chars))
    trimmed = text.strip()
    if len(trimmed) <= max_chars:
        return trimmed
    return trimmed[:max_chars].rstrip() + "..."


class _SentenceBuffer:
    """Accumulate streamed reply text and release complete sentences."""

    def __init__(self) -> None:
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def add_delta(self, text_delta: str) -> list[str]:
        """Add new text and return every sentence that is now complete."""

        if not text_delta:
            return []

        self._buffer += text_delta
        sentences: list[str] = []
        consumed = 0
        for match in _SENTENCE_BOUNDARY.finditer(self._buffer):
            sentence = self._buffer[consumed : match.end()].strip()
            consumed = match.end()
            if sentence:
                sentences.append(sentence)
        if consumed:
            self._buffer = self._buffer[consumed:].lstrip()
        return sentences

    def flush_remaining(self) -> str:
        """Flush and clear any remaining buffered text."""

        remaining = self._buffer.strip()
        self._buffer = ""
        return remaining

    def clear(self) -> None:
        self._buffer = ""


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, VoiceError):
        return exc.recoverable
    return isinstance(exc, Exception)


class VoiceSessionOrchestrator:
    """Stateful coordinator for one continuous voice conversation."""

    def __init__(
        self,
        config: VoiceConfiguration,
        *,
        capture: AudioCapture | None = None,
        player: SpeechPlayer | None = None,
        connection_factory: ConnectionFactory | None = None,
    ) -> None:
        self.config = config
        self._capture = capture or AudioCapture()
        self._player = player or SpeechPlayer()
        self._connection_factory = connection_factory or TranscriptionConnection
        self._events = EventChannel("voice_session", SESSION_EVENTS)
        self._state = VoiceSessionState.IDLE
        self._session: VoiceSession | None = None
        self._connection: TranscriptionConnection | None = None
        self._connection_unsubscribers: list[Callable[[], None]] = []
        self._reconnect_task: asyncio.Task[None] | None = None
        self._message_callback: MessageCallback | None = None
        self._callback_tasks: set[asyncio.Task[Any]] = set()
        self._sentences = _SentenceBuffer()
        self._outstanding_speech: set[asyncio.Future[str | None]] = set()
        self._speech_generation = 0
        self._last_error: VoiceError | None = None
        self._dropped_frames = 0
        self._destroyed = False

        self._capture.on("audio_data", self._handle_audio_frame)
        self._capture.on("voice_activity", self._handle_voice_activity)
        self._capture.on("silence_detected", self._handle_silence)
        self._player.on("error", self._handle_player_error)

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> VoiceSessionState:
        return self._state

    @property
    def session_id(self) -> str | None:
        return self._session.id if self._session else None

    @property
    def last_error(self) -> VoiceError | None:
        return self._last_error

    @property
    def pending_text(self) -> str:
        return self._sentences.pending

    def is_supported(self) -> bool:
        return self._capture.is_supported()

    def on(self, name: str, handler: Callable[..., Any]) -> Callable[[], None]:
        return self._events.subscribe(name, handler)

    def off(self, name: str, handler: Callable[..., Any]) -> None:
        self._events.unsubscribe(name, handler)

    def set_message_callback(self, callback: MessageCallback | None) -> None:
        """Register the receiver of committed user utterances."""

        self._message_callback = callback

    def get_session(self) -> VoiceSessionSnapshot | None:
        session = self._session
        if session is None:
            return None
        return VoiceSessionSnapshot(
            id=session.id,
            state=self._state,
            started_at=session.started_at,
            config=session.config,
            partial_transcript=session.partial_transcript,
            is_playing=self._player.is_playing,
            last_error=self._last_error,
        )

    async def start_session(self) -> SessionInfo:
        """Acquire a token, open the microphone and the first STT connection.

        Raises:
            VoiceError: When any step fails; the orchestrator is left in
                ``error`` with every resource released.
        """

        if self._destroyed:
            raise VoiceError(VoiceErrorCode.UNKNOWN, "Voice session has been destroyed")
        if self._state is VoiceSessionState.ERROR:
            await self.end_session()
        if self._state is not VoiceSessionState.IDLE:
            raise VoiceError(VoiceErrorCode.UNKNOWN, "Cannot start session: already in progress")

        self._set_state(VoiceSessionState.INITIALIZING)
        self._last_error = None
        self._dropped_frames = 0
        logger.info(
            "Starting voice session",
            extra={
                "component": "voice_session",
                "operation": "start",
                "context_data": {
                    "voice_id": self.config.voice_id,
                    "language_code": self.config.language_code,
                    "sample_rate": self.config.sample_rate,
                },
            },
        )

        try:
            token = await self._resolve_token()
            connection = self._prepare_connection(token)
            results = await asyncio.gather(
                self._capture.start(self._capture_options()),
                connection.connect(),
                return_exceptions=True,
            )
        except Exception as exc:
            await self._fail_start(exc)

        if self._state is not VoiceSessionState.INITIALIZING:
            await self._teardown()
            raise VoiceError(VoiceErrorCode.UNKNOWN, "Voice session ended while starting")

        for result in results:
            if isinstance(result, Exception):
                await self._fail_start(result)
            if isinstance(result, BaseException):
                await self._teardown()
                raise result

        try:
            await self._require_live_connection(connection)
        except VoiceError as exc:
            await self._fail_start(exc)

        session = VoiceSession(config=self.config)
        self._session = session
        self._set_state(VoiceSessionState.LISTENING)
        self._emit("session:started", {"id": session.id, "started_at": session.started_at})
        self._emit("listening:started", {})
        logger.info(
            "Voice session started",
            extra={
                "component": "voice_session",
                "operation": "start",
                "item_id": session.id,
            },
        )
        return SessionInfo(
            session_id=session.id,
            started_at=session.started_at,
            state=self._state,
        )

    async def end_session(self) -> None:
        """Release every resource and return to ``idle``. Safe to repeat."""

        if self._state is VoiceSessionState.IDLE and self._session is None:
            return

        session = self._session
        duration_ms = session.duration_ms() if session else 0
        await self._teardown()
        self._session = None
        self._last_error = None
        self._set_state(VoiceSessionState.IDLE)
        if session is not None:
            self._emit("session:ended", {"session_id": session.id, "duration_ms": duration_ms})
            self._emit("listening:stopped", {})
        logger.info(
            "Voice session ended",
            extra={
                "component": "voice_session",
                "operation": "end",
                "item_id": session.id if session else None,
                "context_data": {
                    "duration_ms": duration_ms,
                    "dropped_frames": self._dropped_frames,
                },
            },
        )

    def process_text_chunk(self, chunk: str, is_complete: bool = False) -> list[str]:
        """Feed streamed reply text; complete sentences are spoken right away.

        Returns the sentences handed to the player by this call.
        """

        sentences = self._sentences.add_delta(chunk)
        if is_complete:
            remaining = self._sentences.flush_remaining()
            if remaining:
                sentences.append(remaining)
        for sentence in sentences:
            self._enqueue_speech(sentence)
        return sentences

    async def speak(self, text: str) -> str | None:
        """Speak ``text`` after anything already queued.

        Returns the text once played, or ``None`` when it was skipped,
        interrupted or failed. Failures are reported through the ``error``
        event rather than raised.
        """

        future = self._enqueue_speech(text)
        if future is None:
            return None
        try:
            return await future
        except VoiceError:
            return None

    def stop_speaking(self) -> None:
        """Stop playback and drop any reply text not yet spoken."""

        self._cancel_speech()
        if self._state is VoiceSessionState.SPEAKING:
            self._emit("speaking:ended", {"interrupted": True})
            self._return_to_listening()

    def pause_listening(self) -> None:
        """Keep the microphone open but stop sending audio (mute)."""

        if self._state not in ACTIVE_STATES:
            return
        self._capture.pause()
        self._emit("listening:stopped", {})

    mute = pause_listening

    def resume_listening(self) -> None:
        if self._state not in ACTIVE_STATES:
            return
        self._capture.resume()
        self._emit("listening:started", {})

    async def destroy(self) -> None:
        """End the session and release every owned component."""

        if self._destroyed:
            return
        await self.end_session()
        self._capture.destroy()
        await self._player.destroy()
        self._events.clear()
        self._message_callback = None
        self._destroyed = True

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _set_state(self, target: VoiceSessionState) -> None:
        current = self._state
        if target is current:
            return
        if not can_transition(current, target):
            raise InvalidStateTransition(current, target)
        self._state = target
        if self._session is not None:
            self._session.state = target
        self._log_trace("state_changed", {"from": current.value, "to": target.value})
        self._emit("state:changed", {"state": target, "previous_state": current})

    def _return_to_listening(self) -> None:
        if self._state is VoiceSessionState.LISTENING:
            return
        self._set_state(VoiceSessionState.LISTENING)
        if self.config.auto_listen and self._capture.is_paused:
            self._capture.resume()
        self._emit("listening:started", {})

    # ------------------------------------------------------------------
    # Capture handlers (event loop thread)
    # ------------------------------------------------------------------

    def _handle_audio_frame(self, frame: AudioFrame) -> None:
        if (
            self._state is VoiceSessionState.SPEAKING
            and frame.has_voice
            and self.config.enable_barge_in
        ):
            self._barge_in()

        if self._state not in (VoiceSessionState.LISTENING, VoiceSessionState.PROCESSING):
            return
        connection = self._connection
        if connection is None or not connection.is_connected:
            self._dropped_frames += 1
            return
        connection.send_audio(frame)

    def _handle_voice_activity(self, speaking: bool) -> None:
        if speaking and self._state is VoiceSessionState.LISTENING:
            self._set_state(VoiceSessionState.PROCESSING)

    def _handle_silence(self, duration_ms: float) -> None:
        if duration_ms == 0:
            self._log_trace("silence_started", {"state": self._state.value})

    def _barge_in(self) -> None:
        """Cut playback short because the user started talking."""

        self._cancel_speech()
        self._capture.reset_speaking_state()
        self._log_trace("barge_in", {})
        self._emit("barge-in", {})
        self._return_to_listening()

    # ------------------------------------------------------------------
    # Transcription
    # ------------------------------------------------------------------

    def _prepare_connection(self, token: str | None) -> TranscriptionConnection:
        self._detach_connection()
        connection = self._connection_factory(
            self.config, token, api_key=self._resolve_api_key()
        )
        self._connection = connection
        self._connection_unsubscribers = [
            connection.on("partial", lambda event: self._handle_partial(connection, event)),
            connection.on("committed", lambda event: self._handle_committed(connection, event)),
            connection.on("error", lambda error: self._handle_stt_error(connection, error)),
            connection.on(
                "close", lambda code, reason: self._handle_stt_close(connection, code, reason)
            ),
        ]
        return connection

    def _detach_connection(self) -> TranscriptionConnection | None:
        for unsubscribe in self._connection_unsubscribers:
            unsubscribe()
        self._connection_unsubscribers = []
        connection = self._connection
        self._connection = None
        return connection

    async def _release_connection(
        self, connection: TranscriptionConnection, operation: str
    ) -> None:
        try:
            await connection.disconnect()
        except Exception:
            logger.exception(
                "Failed to disconnect realtime STT",
                extra={"component": "voice_session", "operation": operation},
            )

    async def _require_live_connection(self, connection: TranscriptionConnection) -> None:
        """Fail when ``connection`` closed between its handshake and hand-over."""

        if self._connection is connection and connection.is_connected:
            return
        if self._connection is connection:
            self._detach_connection()
        await self._release_connection(connection, "connect")
        raise VoiceError(
            VoiceErrorCode.TRANSCRIPTION_CONNECTION_FAILED,
            "Connection closed before it was ready",
        )

    def _handle_partial(self, connection: TranscriptionConnection, event: TranscriptEvent) -> None:
        if connection is not self._connection or self._session is None:
            return
        self._session.partial_transcript = event.text
        self._emit("transcript:partial", {"text": event.text})

    def _handle_committed(
        self, connection: TranscriptionConnection, event: TranscriptEvent
    ) -> None:
        if connection is not self._connection or self._session is None:
            return

        text = event.text.strip()
        if not text:
            if self._state is VoiceSessionState.PROCESSING:
                self._set_state(VoiceSessionState.LISTENING)
            return

        if self._state is VoiceSessionState.SPEAKING and self.config.enable_barge_in:
            self._barge_in()

        self._session.partial_transcript = ""
        self._log_trace(
            "transcript_committed",
            {"chars": len(text), "preview": _truncate_for_trace(text)},
        )
        self._emit(
            "transcript:committed",
            {"text": text, "language_code": event.language_code, "words": event.words},
        )
        self._deliver_message(text)
        if self._state is VoiceSessionState.PROCESSING:
            self._set_state(VoiceSessionState.LISTENING)

    def _deliver_message(self, text: str) -> None:
        callback = self._message_callback
        if callback is None:
            return
        try:
            result = callback(text)
        except Exception:
            logger.exception(
                "Voice message callback failed",
                extra={"component": "voice_session", "operation": "deliver_message"},
            )
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._callback_tasks.add(task)
            task.add_done_callback(self._on_callback_task_done)

    def _on_callback_task_done(self, task: asyncio.Task[Any]) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Voice message callback failed",
                exc_info=(type(exc), exc, exc.__traceback__),
                extra={"component": "voice_session", "operation": "deliver_message"},
            )

    def _handle_stt_error(self, connection: TranscriptionConnection, error: VoiceError) -> None:
        if connection is not self._connection:
            return
        self._record_error(error)
        self._emit("error", error)

    def _handle_stt_close(
        self, connection: TranscriptionConnection, code: int, reason: str
    ) -> None:
        if connection is not self._connection:
            return
        self._detach_connection()
        self._log_trace("stt_closed", {"code": code, "reason": reason})
        if self._state not in ACTIVE_STATES:
            return
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect(connection))

    async def _reconnect(self, previous: TranscriptionConnection | None = None) -> None:
        """Open a fresh connection with a fresh token after a remote close."""

        if previous is not None:
            await self._release_connection(previous, "reconnect")

        settings = get_settings()
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(settings.voice_stt_reconnect_attempts),
                wait=wait_exponential(
                    multiplier=settings.voice_stt_reconnect_backoff_seconds,
                    max=settings.voice_stt_reconnect_backoff_max_seconds,
                ),
                retry=retry_if_exception(_is_retryable),
                reraise=True,
            ):
                with attempt:
                    if self._state not in ACTIVE_STATES:
                        return
                    self._log_trace(
                        "stt_reconnect",
                        {"attempt": attempt.retry_state.attempt_number},
                    )
                    token = await self._resolve_token()
                    connection = self._prepare_connection(token)
                    try:
                        await connection.connect()
                    except BaseException:
                        if self._connection is connection:
                            self._detach_connection()
                        raise
                    await self._require_live_connection(connection)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if isinstance(exc, VoiceError):
                error = exc
            else:
                error = VoiceError(
                    VoiceErrorCode.TRANSCRIPTION_CONNECTION_FAILED, original_error=exc
                )
            logger.error(
                "Realtime STT reconnect failed",
                extra={
                    "component": "voice_session",
                    "operation": "reconnect",
                    "item_id": self.session_id,
                    "context_data": {"code": error.code.value},
                },
            )
            if self._state in ACTIVE_STATES:
                self._reconnect_task = None
                await self._teardown()
                self._record_error(error)
                self._set_state(VoiceSessionState.ERROR)
                self._emit("error", error)

    # ------------------------------------------------------------------
    # Speech
    # ------------------------------------------------------------------

    def _enqueue_speech(self, text: str) -> asyncio.Future[str | None] | None:
        if not text or not text.strip():
            return None
        if self._state not in ACTIVE_STATES:
            logger.info(
                "Ignoring speech request outside an active session",
                extra={
                    "component": "voice_session",
                    "operation": "speak",
                    "context_data": {"state": self._state.value},
                },
            )
            return None

        if self._state is not VoiceSessionState.SPEAKING:
            self._set_state(VoiceSessionState.SPEAKING)
            self._emit("speaking:started", {"text": text})

        options = SpeechOptions(config=self.config, api_key=self._resolve_api_key())
        future = self._player.enqueue(text, options)
        generation = self._speech_generation
        self._outstanding_speech.add(future)
        future.add_done_callback(lambda done: self._on_speech_done(done, generation))
        self._log_trace("speech_enqueued", {"preview": _truncate_for_trace(text)})
        return future

    def _on_speech_done(self, future: asyncio.Future[str | None], generation: int) -> None:
        self._outstanding_speech.discard(future)
        if not future.cancelled():
            # Retrieve so a failed utterance is never reported as unhandled.
            future.exception()
        if generation != self._speech_generation or self._outstanding_speech:
            return
        if self._state is not VoiceSessionState.SPEAKING:
            return
        self._emit("speaking:ended", {})
        self._return_to_listening()

    def _cancel_speech(self) -> None:
        self._speech_generation += 1
        self._outstanding_speech.clear()
        self._sentences.clear()
        self._player.stop()

    def _handle_player_error(self, error: VoiceError) -> None:
        self._record_error(error)
        self._emit("error", error)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _capture_options(self) -> CaptureOptions:
        return CaptureOptions(
            sample_rate=self.config.sample_rate,
            block_size=self.config.capture_block_size,
            speech_rms_threshold=self.config.speech_rms_threshold,
            silence_timeout_ms=self.config.silence_threshold * 1000.0,
        )

    async def _resolve_token(self) -> str | None:
        supplier = self.config.token_supplier
        if supplier is None:
            return None
        try:
            token = supplier()
            if inspect.isawaitable(token):
                token = await token
        except Exception as exc:
            raise VoiceError(classify_token_error(exc), original_error=exc) from exc
        return str(token) if token else None

    def _resolve_api_key(self) -> str | None:
        supplier = self.config.api_key_supplier
        if supplier is None:
            return None
        try:
            api_key = supplier()
        except Exception:
            logger.exception(
                "API key supplier failed; falling back to configured key",
                extra={"component": "voice_session", "operation": "resolve_api_key"},
            )
            return None
        return str(api_key) if api_key else None

    def _record_error(self, error: VoiceError) -> None:
        self._last_error = error
        if self._session is not None:
            self._session.last_error = error

    async def _fail_start(self, exc: Exception) -> NoReturn:
        if isinstance(exc, VoiceError):
            error = exc
        else:
            error = VoiceError(VoiceErrorCode.UNKNOWN, original_error=exc)
        logger.error(
            "Voice session failed to start",
            extra={
                "component": "voice_session",
                "operation": "start",
                "context_data": {"code": error.code.value, "error": str(exc)},
            },
        )
        await self._teardown()
        self._record_error(error)
        if self._state is VoiceSessionState.INITIALIZING:
            self._set_state(VoiceSessionState.ERROR)
            self._emit("error", error)
        if error is exc:
            raise error
        raise error from exc

    async def _teardown(self) -> None:
        """Release capture, playback and transcription; log leaf failures."""

        reconnect = self._reconnect_task
        self._reconnect_task = None
        if reconnect is not None and reconnect is not asyncio.current_task():
            reconnect.cancel()
            with suppress(asyncio.CancelledError):
                await reconnect

        try:
            self._cancel_speech()
        except Exception:
            logger.exception(
                "Failed to stop speech playback",
                extra={"component": "voice_session", "operation": "teardown"},
            )
        try:
            self._capture.stop()
        except Exception:
            logger.exception(
                "Failed to stop microphone capture",
                extra={"component": "voice_session", "operation": "teardown"},
            )

        connection = self._detach_connection()
        if connection is not None:
            await self._release_connection(connection, "teardown")

    def _emit(self, name: str, payload: Any) -> None:
        self._events.emit(name, payload)

    def _log_trace(self, operation: str, context_data: dict[str, Any]) -> None:
        if not get_settings().voice_trace_logging:
            return
        logger.info(
            "Voice session trace",
            extra={
                "component": "voice_session",
                "operation": operation,
                "item_id": self.session_id,
                "context_data": {"state": self._state.value, **context_data},
            },
        )


def create_voice_session(
    config: Mapping[str, Any] | VoiceConfiguration,
    **dependencies: Any,
) -> VoiceSessionOrchestrator:
    """Validate ``config`` and build an orchestrator around it.

    Raises:
        VoiceConfigurationError: Before any component is constructed.
    """

    resolved = merge_voice_config(config)
    return VoiceSessionOrchestrator(resolved, **dependencies)
