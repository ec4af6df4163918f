"""Microphone capture with downsampling and local RMS voice activity detection."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import numpy as np

from voicemode.core.logging import get_logger
from voicemode.core.settings import get_settings
from voicemode.services.voice.audio_utils import (
    DEFAULT_SPEECH_RMS_THRESHOLD,
    AudioFrame,
    calculate_rms,
    downsample_buffer,
    float_to_pcm16,
)
from voicemode.services.voice.errors import (
    VoiceError,
    VoiceErrorCode,
    classify_capture_error,
)
from voicemode.services.voice.events import EventChannel

try:  # pragma: no cover - availability depends on the PortAudio install
    import sounddevice as sd
except Exception:  # pragma: no cover - gracefully handled at runtime
    sd = None  # type: ignore[assignment]

logger = get_logger(__name__)

CAPTURE_EVENTS = ("audio_data", "voice_activity", "silence_detected")

StreamFactory = Callable[..., Any]
DeviceRateResolver = Callable[[Any], float]


@dataclass(frozen=True)
class CaptureOptions:
    """Per-start capture parameters."""

    sample_rate: int = 16_000
    block_size: int = 4096
    speech_rms_threshold: float = DEFAULT_SPEECH_RMS_THRESHOLD
    silence_timeout_ms: float = 1500.0
    device: int | str | None = None


def _default_stream_factory(**kwargs: Any) -> Any:
    return sd.InputStream(**kwargs)


def _default_device_rate(device: Any) -> float:
    info = sd.query_devices(device, "input")
    return float(info["default_samplerate"])


class AudioCapture:
    """Own one microphone input stream and turn it into PCM frames.

    The PortAudio callback only copies the block and hands it to the event
    loop; downsampling, VAD and event dispatch run on the loop thread.
    """

    def __init__(
        self,
        *,
        stream_factory: StreamFactory | None = None,
        device_rate_resolver: DeviceRateResolver | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._stream_factory = stream_factory
        self._device_rate_resolver = device_rate_resolver
        self._clock = clock
        self._events = EventChannel("voice_capture", CAPTURE_EVENTS)
        self._stream: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._options = CaptureOptions()
        self._device_rate = self._options.sample_rate
        self._active = False
        self._paused = False
        self._is_speaking = False
        self._silence_started_at: float | None = None
        self._blocks_seen = 0

    @property
    def is_capturing(self) -> bool:
        return self._active

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_speaking(self) -> bool:
        return self._is_speaking

    @property
    def device_sample_rate(self) -> int:
        return self._device_rate

    def on(self, name: str, listener: Callable[..., Any]) -> Callable[[], None]:
        return self._events.subscribe(name, listener)

    def off(self, name: str, listener: Callable[..., Any]) -> None:
        self._events.unsubscribe(name, listener)

    def is_supported(self) -> bool:
        """Return whether an input backend and at least one input device exist."""

        if self._stream_factory is not None:
            return True
        if sd is None:
            return False
        try:
            sd.query_devices(kind="input")
        except Exception as exc:  # noqa: BLE001 - PortAudio raises plain errors
            logger.info(
                "No audio input device available",
                extra={
                    "component": "voice_capture",
                    "operation": "probe",
                    "context_data": {"error": str(exc)},
                },
            )
            return False
        return True

    async def start(self, options: CaptureOptions | None = None) -> None:
        """Open the microphone stream and begin emitting frames.

        Calling ``start`` while already capturing is a no-op.

        Raises:
            VoiceError: Classified as permission denied, device not found or
                platform not supported.
        """

        if self._active:
            return

        options = options or CaptureOptions()
        stream_factory = self._stream_factory
        rate_resolver = self._device_rate_resolver
        if stream_factory is None or rate_resolver is None:
            if sd is None:
                raise VoiceError(VoiceErrorCode.PLATFORM_NOT_SUPPORTED)
            stream_factory = stream_factory or _default_stream_factory
            rate_resolver = rate_resolver or _default_device_rate

        self._loop = asyncio.get_running_loop()
        stream = None
        try:
            device_rate = int(rate_resolver(options.device))
            if device_rate < options.sample_rate:
                raise VoiceError(
                    VoiceErrorCode.PLATFORM_NOT_SUPPORTED,
                    f"Input device rate {device_rate} Hz is below the required "
                    f"{options.sample_rate} Hz",
                )
            stream = stream_factory(
                samplerate=device_rate,
                blocksize=options.block_size,
                channels=1,
                dtype="float32",
                callback=self._on_audio_block,
                device=options.device,
            )
            stream.start()
        except Exception as exc:
            self._close_stream(stream)
            if isinstance(exc, VoiceError):
                error = exc
            else:
                error = VoiceError(classify_capture_error(exc), original_error=exc)
            logger.error(
                "Failed to start microphone capture",
                extra={
                    "component": "voice_capture",
                    "operation": "start",
                    "context_data": {"code": error.code.value, "error": str(exc)},
                },
            )
            if error is exc:
                raise
            raise error from exc

        self._stream = stream
        self._options = options
        self._device_rate = device_rate
        self._active = True
        self._paused = False
        self._blocks_seen = 0
        self.reset_speaking_state()
        logger.info(
            "Microphone capture started",
            extra={
                "component": "voice_capture",
                "operation": "start",
                "context_data": {
                    "device_sample_rate": device_rate,
                    "target_sample_rate": options.sample_rate,
                    "block_size": options.block_size,
                },
            },
        )

    def _on_audio_block(self, indata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
        """PortAudio callback; runs on the audio thread."""

        if status and get_settings().voice_trace_logging:
            logger.info(
                "Audio input status",
                extra={
                    "component": "voice_capture",
                    "operation": "callback_status",
                    "context_data": {"status": str(status)},
                },
            )
        loop = self._loop
        if loop is None or not self._active or self._paused:
            return
        block = np.array(indata[:, 0] if indata.ndim > 1 else indata, dtype=np.float32)
        try:
            loop.call_soon_threadsafe(self.process_block, block)
        except RuntimeError:
            # Loop already closed during shutdown.
            return

    def process_block(self, samples: np.ndarray) -> None:
        """Downsample, run VAD and emit one frame for a float block."""

        if not self._active or self._paused:
            return

        options = self._options
        downsampled = downsample_buffer(samples, self._device_rate, options.sample_rate)
        has_voice = calculate_rms(downsampled) > options.speech_rms_threshold
        self._update_vad(has_voice)
        self._blocks_seen += 1

        frame = AudioFrame(
            samples=float_to_pcm16(downsampled),
            sample_rate=options.sample_rate,
            has_voice=has_voice,
        )
        self._events.emit("audio_data", frame)

    def _update_vad(self, has_voice: bool) -> None:
        if has_voice:
            self._silence_started_at = None
            if not self._is_speaking:
                self._is_speaking = True
                self._events.emit("voice_activity", True)
            return

        if not self._is_speaking:
            return

        now = self._clock()
        if self._silence_started_at is None:
            self._silence_started_at = now
        silence_ms = (now - self._silence_started_at) * 1000.0
        self._events.emit("silence_detected", silence_ms)
        if silence_ms >= self._options.silence_timeout_ms:
            self._is_speaking = False
            self._silence_started_at = None
            self._events.emit("voice_activity", False)

    def pause(self) -> None:
        """Stop emitting frames while keeping the stream open."""

        self._paused = True

    def resume(self) -> None:
        self._paused = False
        self.reset_speaking_state()

    def reset_speaking_state(self) -> None:
        """Forget VAD history, e.g. after the user interrupted playback."""

        self._is_speaking = False
        self._silence_started_at = None

    def stop(self) -> None:
        """Stop and close the stream. Safe to call repeatedly or before start."""

        was_active = self._active
        self._active = False
        self._paused = False
        stream = self._stream
        self._stream = None
        self._close_stream(stream)
        self.reset_speaking_state()
        if was_active:
            logger.info(
                "Microphone capture stopped",
                extra={
                    "component": "voice_capture",
                    "operation": "stop",
                    "context_data": {"blocks_processed": self._blocks_seen},
                },
            )

    def destroy(self) -> None:
        self.stop()
        self._events.clear()

    def _close_stream(self, stream: Any) -> None:
        if stream is None:
            return
        for method in ("stop", "close"):
            try:
                getattr(stream, method)()
            except Exception:
                logger.exception(
                    "Failed to release audio input stream",
                    extra={
                        "component": "voice_capture",
                        "operation": f"stream_{method}",
                    },
                )
