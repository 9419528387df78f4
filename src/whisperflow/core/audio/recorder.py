from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np
import sounddevice as sd

from ...utils.logger import get_logger
from ..errors import CaptureError
from ..events import EventChannel
from ..settings.config import CHANNELS, SAMPLE_RATE
from .capture import AudioClip, DeviceEvent

logger = get_logger(__name__)


@dataclass
class AudioDevice:
    name: str
    index: int
    channels: int
    default_sample_rate: float


class AudioRecorder:
    """
    Microphone capture through sounddevice.

    Publishes a DeviceEvent on ``device_events`` when the input stream ends
    while still recording (device unplugged or the host API aborted it).
    """

    def __init__(
        self,
        sample_rate: int = SAMPLE_RATE,
        channels: int = CHANNELS,
        device: Optional[str] = None,
        on_audio_level: Optional[Callable[[float], None]] = None,
    ):

        self.sample_rate = sample_rate
        self.channels = channels
        self.device = device
        self.on_audio_level = on_audio_level
        self.device_events: EventChannel[DeviceEvent] = EventChannel("audio-device")

        self._stream: Optional[sd.InputStream] = None
        self._audio_buffer: List[np.ndarray] = []
        self._is_recording = False
        self._active_device: Optional[str] = None

    @property
    def is_recording(self) -> bool:
        return self._is_recording

    def start(self, device: Optional[str] = None) -> None:
        if self._is_recording:
            return

        if self._stream is not None:
            # Left open by a stream that ended on its own
            self._stream.close()
            self._stream = None

        self._audio_buffer = []
        self._active_device = device if device is not None else self.device

        try:
            self._stream = sd.InputStream(
                samplerate=float(self.sample_rate),
                channels=self.channels,
                dtype="int16",
                device=self._get_device_index(self._active_device),
                callback=self._audio_callback,
                finished_callback=self._on_stream_finished,
            )
            self._stream.start()
            self._is_recording = True
            logger.debug(f"Input stream started on {self._active_device or 'default'}")

        except CaptureError:
            self._is_recording = False
            raise
        except sd.PortAudioError as e:
            self._is_recording = False
            raise CaptureError(f"Audio device error: {e}") from e
        except Exception as e:
            self._is_recording = False
            raise CaptureError(f"Failed to start recording: {e}") from e

    def stop(self) -> Optional[AudioClip]:
        if not self._is_recording:
            return None

        self._is_recording = False

        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None

        if not self._audio_buffer:
            return None

        audio_data = np.concatenate(self._audio_buffer, axis=0)
        self._audio_buffer = []

        return AudioClip(samples=audio_data, sample_rate=self.sample_rate)

    def _audio_callback(self, indata: np.ndarray, frames: int, time, status) -> None:
        if status:
            logger.debug(f"Input stream status: {status}")

        if self._is_recording:
            self._audio_buffer.append(indata.copy())

            if self.on_audio_level is not None:
                level = np.abs(indata.astype(np.float32) / 32768.0).mean()
                self.on_audio_level(min(1.0, level * 10))

    def _on_stream_finished(self) -> None:
        if self._is_recording:
            self._is_recording = False
            logger.warning(f"Input stream ended unexpectedly ({self._active_device})")
            self.device_events.publish(
                DeviceEvent(
                    device=self._active_device,
                    connected=False,
                    message="Input stream ended while recording",
                )
            )

    def _get_device_index(self, name: Optional[str]) -> Optional[int]:
        if name is None:
            return None

        for device in self.list_devices():
            if device.name == name:
                return device.index

        raise CaptureError(f"Input device not found: {name}")

    @staticmethod
    def list_devices() -> List[AudioDevice]:
        devices = []

        for i, device in enumerate(sd.query_devices()):
            if device["max_input_channels"] > 0:
                devices.append(
                    AudioDevice(
                        name=device["name"],
                        index=i,
                        channels=device["max_input_channels"],
                        default_sample_rate=device["default_samplerate"],
                    )
                )

        return devices
