from .capture import AudioCapture, AudioClip, DeviceEvent, WavFileCapture
from .recorder import AudioDevice, AudioRecorder

__all__ = [
    "AudioCapture",
    "AudioClip",
    "AudioDevice",
    "AudioRecorder",
    "DeviceEvent",
    "WavFileCapture",
]
