"""PCM helpers for microphone capture: framing, resampling and RMS VAD."""

from __future__ import annotations

import base64
from dataclasses import dataclass

import numpy as np

DEFAULT_SPEECH_RMS_THRESHOLD = 0.01


@dataclass(frozen=True)
class AudioFrame:
    """One block of mono int16 PCM ready for transcription."""

    samples: np.ndarray
    sample_rate: int
    has_voice: bool = False

    @property
    def duration_ms(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return len(self.samples) * 1000.0 / self.sample_rate

    def to_bytes(self) -> bytes:
        return np.asarray(self.samples, dtype="<i2").tobytes()

    def to_base64(self) -> str:
        return pcm16_to_base64(self.samples)


def _round_half_up(values: np.ndarray | float) -> np.ndarray:
    return np.floor(np.asarray(values, dtype=np.float64) + 0.5)


def float_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Convert float samples in [-1, 1] to signed 16-bit PCM.

    Values outside the range are clamped. Negative samples scale by 32768 and
    positive samples by 32767 so both ends stay representable.
    """

    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 0x8000, clipped * 0x7FFF)
    return scaled.astype(np.int16)


def pcm16_to_base64(samples: np.ndarray) -> str:
    """Encode int16 PCM samples as little-endian base64."""

    return base64.b64encode(np.asarray(samples, dtype="<i2").tobytes()).decode("ascii")


def downsample_buffer(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """Downsample by averaging the source samples that fall in each output slot.

    Equal rates return the input unchanged. Upsampling is not supported.

    Raises:
        ValueError: If ``target_rate`` is higher than ``source_rate``.
    """

    if source_rate == target_rate:
        return samples
    if target_rate > source_rate:
        raise ValueError("Upsampling is not supported")
    if target_rate <= 0:
        raise ValueError("Target sample rate must be positive")

    data = np.asarray(samples, dtype=np.float32)
    ratio = source_rate / target_rate
    new_length = int(_round_half_up(len(data) / ratio))
    if new_length == 0:
        return np.zeros(0, dtype=np.float32)

    ends = _round_half_up(np.arange(1, new_length + 1) * ratio).astype(np.int64)
    ends = np.minimum(ends, len(data))
    starts = np.concatenate(([0], ends[:-1]))
    starts = np.minimum(starts, ends)

    cumulative = np.concatenate(([0.0], np.cumsum(data, dtype=np.float64)))
    sums = cumulative[ends] - cumulative[starts]
    counts = ends - starts
    averaged = np.divide(sums, counts, out=np.zeros(new_length), where=counts > 0)
    return averaged.astype(np.float32)


def calculate_rms(samples: np.ndarray) -> float:
    """Root mean square level of a float block (0.0 for an empty block)."""

    data = np.asarray(samples, dtype=np.float64)
    if data.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(data))))


def detect_voice_activity(
    samples: np.ndarray,
    threshold: float = DEFAULT_SPEECH_RMS_THRESHOLD,
) -> bool:
    """Energy-based voice detection: True when RMS exceeds ``threshold``."""

    return calculate_rms(samples) > threshold
