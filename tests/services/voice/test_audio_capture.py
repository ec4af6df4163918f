"""Tests for microphone capture, downsampling and local VAD."""

from __future__ import annotations

import asyncio

import numpy as np
import pytest

from voicemode.services.voice.audio_capture import AudioCapture, CaptureOptions
from voicemode.services.voice.audio_utils import AudioFrame
from voicemode.services.voice.errors import VoiceError, VoiceErrorCode


class FakeInputStream:
    def __init__(self, **kwargs) -> None:
        self.kwargs = kwargs
        self.started = False
        self.stopped = 0
        self.closed = 0

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped += 1

    def close(self) -> None:
        self.closed += 1


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _make_capture(device_rate: float = 48_000.0, clock: FakeClock | None = None):
    streams: list[FakeInputStream] = []

    def factory(**kwargs) -> FakeInputStream:
        stream = FakeInputStream(**kwargs)
        streams.append(stream)
        return stream

    capture = AudioCapture(
        stream_factory=factory,
        device_rate_resolver=lambda _device: device_rate,
        clock=clock or FakeClock(),
    )
    return capture, streams


def _block(level: float, size: int = 4800) -> np.ndarray:
    return np.full(size, level, dtype=np.float32)


@pytest.mark.asyncio
async def test_start_opens_mono_float_stream_at_device_rate(voice_settings) -> None:
    """The stream opens at the device rate with the configured block size."""

    capture, streams = _make_capture()

    await capture.start(CaptureOptions(block_size=2048))

    assert capture.is_capturing is True
    assert len(streams) == 1
    kwargs = streams[0].kwargs
    assert kwargs["samplerate"] == 48_000
    assert kwargs["blocksize"] == 2048
    assert kwargs["channels"] == 1
    assert kwargs["dtype"] == "float32"
    assert streams[0].started is True


@pytest.mark.asyncio
async def test_start_twice_is_a_noop(voice_settings) -> None:
    """A second start while capturing opens nothing new."""

    capture, streams = _make_capture()

    await capture.start()
    await capture.start()

    assert len(streams) == 1


@pytest.mark.asyncio
async def test_permission_denied_is_classified_and_releases_stream(voice_settings) -> None:
    """A denied microphone surfaces as a recoverable permission error."""

    opened: list[FakeInputStream] = []

    class DeniedStream(FakeInputStream):
        def start(self) -> None:
            raise PermissionError("Microphone access denied")

    def factory(**kwargs) -> FakeInputStream:
        stream = DeniedStream(**kwargs)
        opened.append(stream)
        return stream

    capture = AudioCapture(stream_factory=factory, device_rate_resolver=lambda _d: 16_000)

    with pytest.raises(VoiceError) as exc_info:
        await capture.start()

    assert exc_info.value.code is VoiceErrorCode.MICROPHONE_PERMISSION_DENIED
    assert exc_info.value.recoverable is True
    assert opened[0].closed == 1
    assert capture.is_capturing is False


@pytest.mark.asyncio
async def test_missing_device_is_not_found(voice_settings) -> None:
    """A resolver failure for the default device maps to microphone-not-found."""

    def resolver(_device):
        raise ValueError("No input device matching 'default'")

    capture = AudioCapture(stream_factory=FakeInputStream, device_rate_resolver=resolver)

    with pytest.raises(VoiceError) as exc_info:
        await capture.start()

    assert exc_info.value.code is VoiceErrorCode.MICROPHONE_NOT_FOUND
    assert exc_info.value.recoverable is False


@pytest.mark.asyncio
async def test_device_rate_below_target_fails_fast(voice_settings) -> None:
    """Upsampling is unsupported so a low-rate device is rejected before opening."""

    capture, streams = _make_capture(device_rate=8_000)

    with pytest.raises(VoiceError) as exc_info:
        await capture.start(CaptureOptions(sample_rate=16_000))

    assert exc_info.value.code is VoiceErrorCode.PLATFORM_NOT_SUPPORTED
    assert streams == []


def test_stop_is_idempotent_and_safe_before_start() -> None:
    """stop() may be called at any time, any number of times."""

    capture, _ = _make_capture()

    capture.stop()
    capture.stop()
    capture.destroy()

    assert capture.is_capturing is False


@pytest.mark.asyncio
async def test_stop_closes_stream_once(voice_settings) -> None:
    """Stopping closes the stream and later stops do nothing."""

    capture, streams = _make_capture()
    await capture.start()

    capture.stop()
    capture.stop()

    assert streams[0].stopped == 1
    assert streams[0].closed == 1


@pytest.mark.asyncio
async def test_process_block_downsamples_and_emits_frames(voice_settings) -> None:
    """Blocks are downsampled to the target rate and converted to int16."""

    capture, _ = _make_capture()
    frames: list[AudioFrame] = []
    capture.on("audio_data", frames.append)
    await capture.start()

    capture.process_block(_block(0.5))

    assert len(frames) == 1
    frame = frames[0]
    assert frame.sample_rate == 16_000
    assert len(frame.samples) == 1600
    assert frame.samples.dtype == np.int16
    assert frame.has_voice is True


@pytest.mark.asyncio
async def test_vad_edges_and_silence_fallback(voice_settings) -> None:
    """Speech raises voice_activity once; enough silence lowers it again."""

    clock = FakeClock()
    capture, _ = _make_capture(clock=clock)
    activity: list[bool] = []
    silences: list[float] = []
    capture.on("voice_activity", activity.append)
    capture.on("silence_detected", silences.append)
    await capture.start(CaptureOptions(silence_timeout_ms=1000))

    capture.process_block(_block(0.2))
    capture.process_block(_block(0.2))
    assert activity == [True]
    assert capture.is_speaking is True

    capture.process_block(_block(0.0))
    clock.now += 0.5
    capture.process_block(_block(0.0))
    assert capture.is_speaking is True

    clock.now += 0.6
    capture.process_block(_block(0.0))

    assert silences == [0.0, pytest.approx(500.0), pytest.approx(1100.0)]
    assert activity == [True, False]
    assert capture.is_speaking is False


@pytest.mark.asyncio
async def test_speech_resets_silence_timer(voice_settings) -> None:
    """Speech in between silent blocks restarts the silence measurement."""

    clock = FakeClock()
    capture, _ = _make_capture(clock=clock)
    silences: list[float] = []
    capture.on("silence_detected", silences.append)
    await capture.start()

    capture.process_block(_block(0.2))
    capture.process_block(_block(0.0))
    clock.now += 0.3
    capture.process_block(_block(0.2))
    capture.process_block(_block(0.0))

    assert silences == [0.0, 0.0]


@pytest.mark.asyncio
async def test_pause_suppresses_frames_and_resume_resets_vad(voice_settings) -> None:
    """Paused capture emits nothing; resuming forgets previous speech."""

    capture, _ = _make_capture()
    frames: list[AudioFrame] = []
    activity: list[bool] = []
    capture.on("audio_data", frames.append)
    capture.on("voice_activity", activity.append)
    await capture.start()

    capture.process_block(_block(0.2))
    capture.pause()
    capture.process_block(_block(0.2))
    assert len(frames) == 1

    capture.resume()
    assert capture.is_speaking is False
    capture.process_block(_block(0.2))

    assert len(frames) == 2
    assert activity == [True, True]


@pytest.mark.asyncio
async def test_callback_hands_blocks_to_the_loop(voice_settings) -> None:
    """The audio-thread callback defers processing to the event loop."""

    capture, _ = _make_capture()
    frames: list[AudioFrame] = []
    capture.on("audio_data", frames.append)
    await capture.start()

    indata = np.full((4800, 1), 0.1, dtype=np.float32)
    capture._on_audio_block(indata, 4800, None, None)
    assert frames == []

    await asyncio.sleep(0)

    assert len(frames) == 1
    assert len(frames[0].samples) == 1600


@pytest.mark.asyncio
async def test_reset_speaking_state_allows_new_rising_edge(voice_settings) -> None:
    """After a reset the next loud block counts as new speech."""

    capture, _ = _make_capture()
    activity: list[bool] = []
    capture.on("voice_activity", activity.append)
    await capture.start()

    capture.process_block(_block(0.2))
    capture.reset_speaking_state()
    capture.process_block(_block(0.2))

    assert activity == [True, True]
