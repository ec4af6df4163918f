"""Streaming speech synthesis and FIFO playback."""

from __future__ import annotations

import asyncio
import io
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
import numpy as np
from pydub import AudioSegment

from voicemode.core.logging import get_logger
from voicemode.core.settings import get_settings
from voicemode.services.voice.config import (
    VoiceConfiguration,
    build_tts_request_body,
    build_tts_stream_url,
)
from voicemode.services.voice.errors import (
    VoiceError,
    VoiceErrorCode,
    classify_synthesis_error,
)
from voicemode.services.voice.events import EventChannel

try:  # pragma: no cover - availability depends on the PortAudio install
    import sounddevice as sd
except Exception:  # pragma: no cover - gracefully handled at runtime
    sd = None  # type: ignore[assignment]

logger = get_logger(__name__)

PLAYER_EVENTS = ("started", "ended", "error")

OutputFactory = Callable[..., Any]


@dataclass(frozen=True)
class SpeechOptions:
    """Per-utterance synthesis parameters."""

    config: VoiceConfiguration
    api_key: str | None = None


@dataclass(frozen=True)
class DecodedAudio:
    """Float32 samples shaped ``(frames, channels)``."""

    samples: np.ndarray
    sample_rate: int

    @property
    def channels(self) -> int:
        return int(self.samples.shape[1]) if self.samples.ndim > 1 else 1


@dataclass
class _Utterance:
    text: str
    options: SpeechOptions
    future: asyncio.Future[str | None]


def decode_audio(data: bytes, audio_format: str) -> DecodedAudio:
    """Decode a complete synthesis payload into float samples.

    ``pcm_<rate>`` payloads are raw little-endian int16 mono. Everything else
    is handed to pydub (ffmpeg) using the codec prefix as the container format.
    """

    codec, _, rate = audio_format.partition("_")
    if codec == "pcm":
        usable = len(data) - (len(data) % 2)
        pcm = np.frombuffer(data[:usable], dtype="<i2").astype(np.float32) / 32768.0
        return DecodedAudio(samples=pcm.reshape(-1, 1), sample_rate=int(rate))

    segment = AudioSegment.from_file(io.BytesIO(data), format=codec)
    scale = float(1 << (8 * segment.sample_width - 1))
    samples = np.array(segment.get_array_of_samples(), dtype=np.float32) / scale
    return DecodedAudio(
        samples=samples.reshape(-1, segment.channels),
        sample_rate=int(segment.frame_rate),
    )


def _default_output_factory(**kwargs: Any) -> Any:
    if sd is None:
        raise VoiceError(VoiceErrorCode.PLATFORM_NOT_SUPPORTED)
    return sd.OutputStream(**kwargs)


class SpeechPlayer:
    """Synthesize and play utterances one at a time, in enqueue order."""

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient | None = None,
        output_factory: OutputFactory | None = None,
        decoder: Callable[[bytes, str], DecodedAudio] = decode_audio,
    ) -> None:
        self._client = http_client
        self._owns_client = http_client is None
        self._output_factory = output_factory or _default_output_factory
        self._decoder = decoder
        self._events = EventChannel("voice_tts", PLAYER_EVENTS)
        self._queue: deque[_Utterance] = deque()
        self._worker: asyncio.Task[None] | None = None
        self._current: _Utterance | None = None
        self._stop_event = threading.Event()
        self._stream_lock = threading.Lock()
        self._active_stream: Any = None
        self._is_playing = False
        self._destroyed = False

    @property
    def is_playing(self) -> bool:
        return self._is_playing

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    def on(self, name: str, listener: Callable[..., Any]) -> Callable[[], None]:
        return self._events.subscribe(name, listener)

    def off(self, name: str, listener: Callable[..., Any]) -> None:
        self._events.unsubscribe(name, listener)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            settings = get_settings()
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(timeout=settings.voice_tts_timeout_seconds, connect=10.0)
            )
        return self._client

    def enqueue(self, text: str, options: SpeechOptions) -> asyncio.Future[str | None]:
        """Queue ``text`` for playback.

        The returned future resolves to the text once it has played, to
        ``None`` when it was blank or discarded by ``stop()``, and fails with
        a VoiceError when synthesis or playback fails.
        """

        loop = asyncio.get_running_loop()
        future: asyncio.Future[str | None] = loop.create_future()
        if self._destroyed or not text or not text.strip():
            future.set_result(None)
            return future

        self._queue.append(_Utterance(text=text.strip(), options=options, future=future))
        if self._worker is None or self._worker.done():
            # Fresh flag per run; a thread from a stopped run keeps the old one.
            self._stop_event = threading.Event()
            self._worker = asyncio.create_task(self._run_queue(self._stop_event))
        return future

    async def speak(self, text: str, options: SpeechOptions) -> str | None:
        return await self.enqueue(text, options)

    async def _run_queue(self, stop_event: threading.Event) -> None:
        while self._queue and not stop_event.is_set():
            utterance = self._queue.popleft()
            self._current = utterance
            try:
                await self._play_utterance(utterance, stop_event)
            except asyncio.CancelledError:
                if not utterance.future.done():
                    utterance.future.set_result(None)
                raise
            except VoiceError as error:
                self._fail_utterance(utterance, error)
            except Exception as exc:
                self._fail_utterance(
                    utterance, VoiceError(classify_synthesis_error(exc), original_error=exc)
                )
            else:
                if not utterance.future.done():
                    utterance.future.set_result(None if stop_event.is_set() else utterance.text)
            finally:
                if self._current is utterance:
                    self._current = None

    def _fail_utterance(self, utterance: _Utterance, error: VoiceError) -> None:
        logger.error(
            "Speech synthesis failed",
            extra={
                "component": "voice_tts",
                "operation": "speak",
                "context_data": {
                    "code": error.code.value,
                    "text_chars": len(utterance.text),
                    "error": str(error.original_error or error),
                },
            },
        )
        self._events.emit("error", error)
        if not utterance.future.done():
            utterance.future.set_exception(error)

    async def _play_utterance(self, utterance: _Utterance, stop_event: threading.Event) -> None:
        text = utterance.text
        config = utterance.options.config
        api_key = utterance.options.api_key or get_settings().elevenlabs_api_key
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["xi-api-key"] = api_key

        self._is_playing = True
        try:
            chunks: list[bytes] = []
            try:
                async with self._get_client().stream(
                    "POST",
                    build_tts_stream_url(config.voice_id),
                    json=build_tts_request_body(text, config),
                    headers=headers,
                ) as response:
                    if not response.is_success:
                        await response.aread()
                        raise VoiceError(
                            classify_synthesis_error(response.status_code),
                            f"TTS request failed: {response.status_code}",
                        )
                    self._events.emit("started", text)
                    async for chunk in response.aiter_bytes():
                        if stop_event.is_set():
                            return
                        chunks.append(chunk)
            except httpx.HTTPError as exc:
                raise VoiceError(classify_synthesis_error(exc), original_error=exc) from exc

            audio_bytes = b"".join(chunks)
            if stop_event.is_set():
                return
            if audio_bytes:
                try:
                    decoded = await asyncio.to_thread(
                        self._decoder, audio_bytes, config.audio_format
                    )
                except VoiceError:
                    raise
                except Exception as exc:
                    raise VoiceError(
                        VoiceErrorCode.SYNTHESIS_FAILED,
                        "Could not decode synthesized audio",
                        exc,
                    ) from exc
                if stop_event.is_set():
                    return
                await asyncio.to_thread(self._play_samples, decoded, stop_event)

            if not stop_event.is_set():
                self._events.emit("ended", text)
        finally:
            # A stopped run may still be unwinding while the next one plays.
            if self._stop_event is stop_event:
                self._is_playing = False

    def _play_samples(self, decoded: DecodedAudio, stop_event: threading.Event) -> None:
        """Blocking playback; runs in a worker thread."""

        chunk_frames = max(256, int(get_settings().voice_playback_chunk_frames))
        try:
            stream = self._output_factory(
                samplerate=decoded.sample_rate,
                channels=decoded.channels,
                dtype="float32",
            )
        except VoiceError:
            raise
        except Exception as exc:
            raise VoiceError(
                VoiceErrorCode.PLATFORM_NOT_SUPPORTED, original_error=exc
            ) from exc

        with self._stream_lock:
            if stop_event.is_set():
                stream.close()
                return
            self._active_stream = stream
        try:
            stream.start()
            total = decoded.samples.shape[0]
            cursor = 0
            while cursor < total and not stop_event.is_set():
                end = min(cursor + chunk_frames, total)
                stream.write(decoded.samples[cursor:end])
                cursor = end
            if not stop_event.is_set():
                stream.stop()
        except Exception as exc:
            if stop_event.is_set():
                return
            raise VoiceError(VoiceErrorCode.SYNTHESIS_FAILED, original_error=exc) from exc
        finally:
            with self._stream_lock:
                if self._active_stream is stream:
                    self._active_stream = None
            try:
                stream.close()
            except Exception:
                logger.exception(
                    "Failed to close audio output stream",
                    extra={"component": "voice_tts", "operation": "stream_close"},
                )

    def stop(self) -> None:
        """Stop playback now and discard every pending utterance."""

        self._stop_event.set()
        with self._stream_lock:
            stream = self._active_stream
            if stream is not None:
                try:
                    stream.abort()
                except Exception:
                    logger.exception(
                        "Failed to abort audio output stream",
                        extra={"component": "voice_tts", "operation": "stop"},
                    )

        worker = self._worker
        self._worker = None
        if worker is not None and not worker.done():
            worker.cancel()

        discarded = 0
        current = self._current
        self._current = None
        if current is not None and not current.future.done():
            current.future.set_result(None)
        while self._queue:
            utterance = self._queue.popleft()
            if not utterance.future.done():
                utterance.future.set_result(None)
            discarded += 1
        self._is_playing = False
        if discarded or worker is not None:
            logger.info(
                "Speech playback stopped",
                extra={
                    "component": "voice_tts",
                    "operation": "stop",
                    "context_data": {"discarded": discarded},
                },
            )

    async def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        self.stop()
        self._events.clear()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
        self._client = None
