"""Realtime speech-to-text websocket connection (ElevenLabs Scribe v2)."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Literal

from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed

from voicemode.core.logging import get_logger
from voicemode.core.settings import get_settings
from voicemode.services.voice.audio_utils import AudioFrame
from voicemode.services.voice.config import VoiceConfiguration, build_stt_websocket_url
from voicemode.services.voice.errors import (
    VoiceError,
    VoiceErrorCode,
    classify_connection_error,
    classify_transcription_message,
)
from voicemode.services.voice.events import EventChannel

logger = get_logger(__name__)

TRANSCRIPTION_EVENTS = ("session", "partial", "committed", "error", "close")
ERROR_MESSAGE_TYPES = frozenset(
    {
        "scribe_error",
        "scribe_auth_error",
        "scribe_rate_limited_error",
        "scribe_throttled_error",
        "scribe_quota_exceeded_error",
    }
)
NORMAL_CLOSE_CODE = 1000
ABNORMAL_CLOSE_CODE = 1006

Connector = Callable[..., Any]


@dataclass(frozen=True)
class TranscriptEvent:
    """A partial or committed transcript from the recognizer."""

    kind: Literal["partial", "committed"]
    text: str
    language_code: str | None = None
    words: list[dict[str, Any]] | None = field(default=None)


def _extract_text(payload: dict[str, Any]) -> str:
    text = payload.get("text")
    if text is None:
        text = payload.get("transcript")
    return "" if text is None else str(text)


class TranscriptionConnection:
    """One realtime transcription websocket, opened per utterance.

    The remote side commits on its own VAD and closes the socket after each
    utterance. Reconnecting is the caller's responsibility.

    A single-use ``token`` goes in the query string. Without one the socket
    authenticates with the ``xi-api-key`` header (explicit key, then settings).
    """

    def __init__(
        self,
        config: VoiceConfiguration,
        token: str | None,
        *,
        api_key: str | None = None,
        connector: Connector | None = None,
    ) -> None:
        self.config = config
        self._token = token
        self._api_key = api_key
        self._connector = connector or websocket_connect
        self._events = EventChannel("voice_stt", TRANSCRIPTION_EVENTS)
        self._ws: Any = None
        self._reader_task: asyncio.Task[None] | None = None
        self._writer_task: asyncio.Task[None] | None = None
        self._outbound: asyncio.Queue[str | None] = asyncio.Queue()
        self._ready: asyncio.Future[None] | None = None
        self._connected = False
        self._closing = False
        self._close_emitted = False
        self._remote_close: tuple[int, str] | None = None
        self.session_id: str | None = None
        self._frames_sent = 0
        self._frames_dropped = 0

    @property
    def is_connected(self) -> bool:
        return self._connected and self._ws is not None

    def on(self, name: str, listener: Callable[..., Any]) -> Callable[[], None]:
        return self._events.subscribe(name, listener)

    def off(self, name: str, listener: Callable[..., Any]) -> None:
        self._events.unsubscribe(name, listener)

    def _log_trace(self, operation: str, context_data: dict[str, Any]) -> None:
        if not get_settings().voice_trace_logging:
            return
        logger.info(
            "Voice STT trace",
            extra={
                "component": "voice_stt",
                "operation": operation,
                "context_data": {"session_id": self.session_id, **context_data},
            },
        )

    def _auth_headers(self) -> dict[str, str] | None:
        if self._token:
            return None
        api_key = self._api_key or get_settings().elevenlabs_api_key
        if not api_key:
            logger.warning(
                "Opening realtime STT connection without credentials",
                extra={"component": "voice_stt", "operation": "connect"},
            )
            return None
        return {"xi-api-key": api_key}

    async def connect(self) -> None:
        """Open the websocket and wait for ``session_started``.

        Raises:
            VoiceError: Classified handshake, timeout or early protocol failure,
                including a remote close before the connection was handed over.
        """

        if self._ws is not None:
            return

        settings = get_settings()
        url = build_stt_websocket_url(self.config, self._token)
        ready = asyncio.get_running_loop().create_future()
        self._ready = ready
        logger.info(
            "Opening realtime STT connection",
            extra={
                "component": "voice_stt",
                "operation": "connect",
                "context_data": {
                    "url": url,
                    "model_id": self.config.stt_model,
                    "language_code": self.config.language_code,
                    "sample_rate": self.config.sample_rate,
                    "auth": "token" if self._token else "api_key",
                },
            },
        )
        try:
            await asyncio.wait_for(
                self._open_and_wait(url, self._auth_headers(), ready),
                timeout=settings.voice_stt_connect_timeout_seconds,
            )
            if self._remote_close is not None:
                code, reason = self._remote_close
                raise VoiceError(
                    VoiceErrorCode.TRANSCRIPTION_CONNECTION_FAILED,
                    f"Connection closed: {reason or 'Unknown reason'} (code: {code})",
                )
        except asyncio.CancelledError:
            await self._teardown()
            raise
        except Exception as exc:
            await self._teardown()
            if isinstance(exc, VoiceError):
                error = exc
            elif isinstance(exc, TimeoutError):
                error = VoiceError(
                    VoiceErrorCode.TRANSCRIPTION_CONNECTION_FAILED,
                    "Connection timeout",
                    exc,
                )
            else:
                error = VoiceError(classify_connection_error(exc), original_error=exc)
            logger.error(
                "Realtime STT connection failed",
                extra={
                    "component": "voice_stt",
                    "operation": "connect",
                    "context_data": {"code": error.code.value, "error": str(exc)},
                },
            )
            if error is exc:
                raise
            raise error from exc

        self._connected = True
        self._log_trace("connected", {"model_id": self.config.stt_model})

    async def _open_and_wait(
        self, url: str, headers: dict[str, str] | None, ready: asyncio.Future[None]
    ) -> None:
        self._ws = await self._connector(url, additional_headers=headers)
        self._reader_task = asyncio.create_task(self._read_loop(self._ws))
        self._writer_task = asyncio.create_task(self._write_loop(self._ws))
        await ready

    def send_audio(self, frame: AudioFrame, commit: bool = False) -> None:
        """Queue one PCM frame for sending. Dropped when not connected."""

        if not self.is_connected:
            self._frames_dropped += 1
            return
        message: dict[str, Any] = {
            "message_type": "input_audio_chunk",
            "audio_base_64": frame.to_base64(),
            "sample_rate": frame.sample_rate,
        }
        if commit:
            message["commit"] = True
        self._outbound.put_nowait(json.dumps(message))
        self._frames_sent += 1
        if self._frames_sent == 1 or self._frames_sent % 500 == 0:
            self._log_trace("audio_frame_progress", {"frames_sent": self._frames_sent})

    def commit(self) -> None:
        """Force the recognizer to commit the current utterance."""

        if not self.is_connected:
            return
        self._outbound.put_nowait(
            json.dumps(
                {
                    "message_type": "input_audio_chunk",
                    "audio_base_64": "",
                    "commit": True,
                }
            )
        )

    async def _write_loop(self, ws: Any) -> None:
        while True:
            message = await self._outbound.get()
            if message is None:
                return
            try:
                await ws.send(message)
            except ConnectionClosed:
                return
            except Exception:
                logger.exception(
                    "Failed to send STT message",
                    extra={"component": "voice_stt", "operation": "send"},
                )

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                self._handle_message(raw)
        except ConnectionClosed:
            pass
        except Exception:
            logger.exception(
                "Realtime STT reader failed",
                extra={"component": "voice_stt", "operation": "receive"},
            )
        finally:
            self._handle_closed(
                getattr(ws, "close_code", None) or ABNORMAL_CLOSE_CODE,
                getattr(ws, "close_reason", None) or "",
            )

    def _handle_message(self, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(
                "Skipping malformed STT message",
                extra={
                    "component": "voice_stt",
                    "operation": "receive",
                    "context_data": {"preview": str(raw)[:120]},
                },
            )
            return
        if not isinstance(message, dict):
            return

        message_type = message.get("message_type")
        if message_type == "session_started":
            self.session_id = message.get("session_id")
            self._events.emit(
                "session",
                {"session_id": self.session_id, "config": message.get("config")},
            )
            if self._ready is not None and not self._ready.done():
                self._ready.set_result(None)
        elif message_type == "partial_transcript":
            self._events.emit("partial", TranscriptEvent("partial", _extract_text(message)))
        elif message_type == "committed_transcript":
            text = _extract_text(message)
            self._log_trace("committed", {"chars": len(text)})
            self._events.emit("committed", TranscriptEvent("committed", text))
        elif message_type == "committed_transcript_with_timestamps":
            text = _extract_text(message)
            self._log_trace("committed", {"chars": len(text), "timestamps": True})
            self._events.emit(
                "committed",
                TranscriptEvent(
                    "committed",
                    text,
                    language_code=message.get("language_code"),
                    words=message.get("words"),
                ),
            )
        elif message_type in ERROR_MESSAGE_TYPES:
            error_text = message.get("error")
            error = VoiceError(
                classify_transcription_message(message_type, error_text),
                str(error_text) if error_text else None,
            )
            logger.warning(
                "Realtime STT reported an error",
                extra={
                    "component": "voice_stt",
                    "operation": "receive",
                    "context_data": {"message_type": message_type, "code": error.code.value},
                },
            )
            if self._ready is not None and not self._ready.done():
                self._ready.set_exception(error)
                return
            self._events.emit("error", error)

    def _handle_closed(self, code: int, reason: str) -> None:
        was_connected = self._connected
        self._connected = False
        self._outbound.put_nowait(None)
        if self._closing:
            return
        self._remote_close = (code, reason)
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(
                VoiceError(
                    VoiceErrorCode.TRANSCRIPTION_CONNECTION_FAILED,
                    f"Connection closed: {reason or 'Unknown reason'} (code: {code})",
                )
            )
        # Before connect() returns, the close surfaces as a connect failure.
        if not was_connected or self._close_emitted:
            return
        self._close_emitted = True
        self._log_trace("closed", {"code": code, "reason": reason})
        self._events.emit("close", code, reason)

    async def disconnect(self) -> None:
        """Close the socket with a normal close code. Safe to call repeatedly."""

        if self._closing:
            return
        self._closing = True
        self._connected = False
        await self._teardown()
        self._log_trace(
            "disconnected",
            {"frames_sent": self._frames_sent, "frames_dropped": self._frames_dropped},
        )

    async def _teardown(self) -> None:
        self._closing = True
        ws = self._ws
        self._ws = None
        if ws is not None:
            try:
                await asyncio.wait_for(
                    ws.close(NORMAL_CLOSE_CODE, "Client disconnect"),
                    timeout=get_settings().voice_stt_close_timeout_seconds,
                )
            except Exception as exc:  # noqa: BLE001 - close is best effort
                logger.warning(
                    "Realtime STT close did not complete cleanly",
                    extra={
                        "component": "voice_stt",
                        "operation": "disconnect",
                        "context_data": {"error": repr(exc)},
                    },
                )

        tasks = [task for task in (self._writer_task, self._reader_task) if task is not None]
        self._writer_task = None
        self._reader_task = None
        current = asyncio.current_task()
        for task in tasks:
            if task is not current and not task.done():
                task.cancel()
        for task in tasks:
            if task is current:
                continue
            with suppress(asyncio.CancelledError):
                await task
        if self._ready is not None and not self._ready.done():
            self._ready.cancel()
        self.session_id = None

    async def destroy(self) -> None:
        await self.disconnect()
        self._events.clear()
