"""Tests for PCM framing, downsampling and RMS voice detection."""

from __future__ import annotations

import base64

import numpy as np
import pytest

from voicemode.services.voice.audio_utils import (
    AudioFrame,
    calculate_rms,
    detect_voice_activity,
    downsample_buffer,
    float_to_pcm16,
    pcm16_to_base64,
)


@pytest.mark.parametrize("length", [4096, 4095, 4097, 3])
def test_downsample_48k_to_16k_length(length: int) -> None:
    """48 kHz -> 16 kHz yields round(n / 3) samples."""

    samples = np.linspace(-1.0, 1.0, length, dtype=np.float32)

    result = downsample_buffer(samples, 48_000, 16_000)

    assert len(result) == round(length / 3)


def test_downsample_averages_each_window() -> None:
    """Each output sample is the mean of its source window."""

    samples = np.array([0.0, 0.3, 0.6, 0.9, 0.6, 0.3], dtype=np.float32)

    result = downsample_buffer(samples, 48_000, 16_000)

    np.testing.assert_allclose(result, [0.3, 0.6], rtol=1e-6)


def test_downsample_non_integer_ratio() -> None:
    """44.1 kHz input uses rounded window boundaries."""

    samples = np.ones(4410, dtype=np.float32)

    result = downsample_buffer(samples, 44_100, 16_000)

    assert len(result) == 1600
    np.testing.assert_allclose(result, 1.0)


def test_downsample_equal_rates_returns_input() -> None:
    """Equal rates return the very same buffer."""

    samples = np.zeros(128, dtype=np.float32)

    assert downsample_buffer(samples, 16_000, 16_000) is samples


def test_upsampling_is_rejected() -> None:
    """A target rate above the source rate raises."""

    with pytest.raises(ValueError, match="Upsampling is not supported"):
        downsample_buffer(np.zeros(10, dtype=np.float32), 8_000, 16_000)


def test_float_to_pcm16_scaling_and_clamping() -> None:
    """Negative values scale by 32768, positive by 32767, out-of-range clamps."""

    result = float_to_pcm16(np.array([-1.0, -0.5, 0.0, 0.5, 1.0, 2.0, -3.0]))

    assert result.dtype == np.int16
    assert result.tolist() == [-32768, -16384, 0, 16383, 32767, 32767, -32768]


def test_pcm16_to_base64_is_little_endian() -> None:
    """PCM is encoded as little-endian int16 bytes."""

    encoded = pcm16_to_base64(np.array([1, -2], dtype=np.int16))

    assert base64.b64decode(encoded) == b"\x01\x00\xfe\xff"


def test_rms_and_voice_detection() -> None:
    """RMS of a constant block is its magnitude; detection uses a strict threshold."""

    quiet = np.full(160, 0.005, dtype=np.float32)
    loud = np.full(160, 0.2, dtype=np.float32)

    assert calculate_rms(np.zeros(0)) == 0.0
    assert calculate_rms(loud) == pytest.approx(0.2)
    assert detect_voice_activity(quiet) is False
    assert detect_voice_activity(loud) is True
    assert detect_voice_activity(loud, threshold=0.5) is False


def test_audio_frame_encoding_and_duration() -> None:
    """Frames expose base64 payloads and their duration."""

    frame = AudioFrame(samples=np.zeros(1600, dtype=np.int16), sample_rate=16_000)

    assert frame.duration_ms == pytest.approx(100.0)
    assert len(base64.b64decode(frame.to_base64())) == 3200
    assert frame.has_voice is False
