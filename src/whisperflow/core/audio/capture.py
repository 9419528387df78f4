"""
Audio capture contract consumed by the session orchestrator.

The format contract is fixed: 16 kHz, mono, 16-bit PCM. Capture
implementations convert at the edge; the core never renegotiates it.
"""

import io
from dataclasses import dataclass
from typing import Optional, Protocol

import numpy as np
import scipy.io.wavfile as wav

from ..errors import CaptureError
from ..events import EventChannel
from ..settings.config import SAMPLE_RATE


@dataclass
class AudioClip:
    samples: np.ndarray
    sample_rate: int = SAMPLE_RATE

    @property
    def duration(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return len(self.samples) / self.sample_rate

    @property
    def is_empty(self) -> bool:
        return self.samples.size == 0

    def to_int16(self) -> np.ndarray:
        samples = self._first_channel()
        if samples.dtype == np.int16:
            return samples
        if np.issubdtype(samples.dtype, np.integer):
            return _float_to_int16(_to_float32(samples))
        clipped = np.clip(samples.astype(np.float32), -1.0, 1.0)
        return (clipped * 32767.0).astype(np.int16)

    def to_float32(self) -> np.ndarray:
        return _to_float32(self._first_channel())

    def _first_channel(self) -> np.ndarray:
        samples = self.samples
        if samples.ndim > 1:
            samples = samples[:, 0] if samples.shape[1] > 1 else samples.flatten()
        return samples

    def to_wav_bytes(self) -> bytes:
        buffer = io.BytesIO()
        wav.write(buffer, self.sample_rate, self.to_int16())
        return buffer.getvalue()


@dataclass(frozen=True)
class DeviceEvent:
    device: Optional[str]
    connected: bool
    message: str = ""


class AudioCapture(Protocol):
    device_events: EventChannel[DeviceEvent]

    def start(self, device: Optional[str] = None) -> None:
        """Begin capturing. Raises CaptureError if the device is unavailable."""

    def stop(self) -> Optional[AudioClip]:
        """Finalize capture and return the clip, or None if nothing was captured."""


class WavFileCapture:
    """Replays a WAV file as if it were captured live (CLI automation, tests)."""

    def __init__(self, path: str):
        self.path = path
        self.device_events: EventChannel[DeviceEvent] = EventChannel("wav-device")
        self._clip: Optional[AudioClip] = None
        self._active = False

    def start(self, device: Optional[str] = None) -> None:
        try:
            rate, data = wav.read(self.path)
        except (OSError, ValueError) as e:
            raise CaptureError(f"Cannot read audio file '{self.path}': {e}") from e

        self._clip = AudioClip(samples=_to_pcm16(data, rate), sample_rate=SAMPLE_RATE)
        self._active = True

    def stop(self) -> Optional[AudioClip]:
        if not self._active:
            return None
        self._active = False
        clip, self._clip = self._clip, None
        if clip is None or clip.is_empty:
            return None
        return clip


def _to_float32(samples: np.ndarray) -> np.ndarray:
    """Scale any PCM dtype to float32 in [-1, 1]. 8-bit PCM is unsigned."""
    if samples.dtype == np.uint8:
        return (samples.astype(np.float32) - 128.0) / 128.0
    if np.issubdtype(samples.dtype, np.integer):
        return (samples / float(-np.iinfo(samples.dtype).min)).astype(np.float32)
    return samples.astype(np.float32)


def _float_to_int16(samples: np.ndarray) -> np.ndarray:
    return np.clip(np.round(samples * 32768.0), -32768, 32767).astype(np.int16)


def _to_pcm16(data: np.ndarray, rate: int) -> np.ndarray:
    """Convert decoded WAV data of any bit depth and rate to 16 kHz mono int16."""
    if data.dtype == np.int16 and data.ndim == 1 and rate == SAMPLE_RATE:
        return data

    samples = _to_float32(data)
    if samples.ndim > 1:
        samples = samples.mean(axis=1)
    if rate != SAMPLE_RATE:
        from scipy.signal import resample_poly

        divisor = np.gcd(rate, SAMPLE_RATE)
        samples = resample_poly(samples, SAMPLE_RATE // divisor, rate // divisor)
    return _float_to_int16(samples)
