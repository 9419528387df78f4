"""
Shared fixtures for the session core tests.

Provides in-memory fakes for audio capture, model storage and transcription
backends so the orchestrator and cache can be exercised without hardware,
model files or network access.
"""

import threading
import time

import numpy as np
import pytest

from whisperflow.core.asr.backends import (
    ModelDescriptor,
    ProviderKind,
    TranscriptionBackend,
)
from whisperflow.core.asr.model_cache import ModelContextCache
from whisperflow.core.asr.registry import ProviderRegistry
from whisperflow.core.audio.capture import AudioClip
from whisperflow.core.events import EventChannel
from whisperflow.core.settings.settings import EffectiveConfig, RetryPolicy

LOCAL_MODEL = ModelDescriptor(
    id="local-test",
    name="Local Test",
    provider=ProviderKind.LOCAL,
    engine="transducer",
    requires_handle=True,
)

CLOUD_MODEL = ModelDescriptor(
    id="cloud-test",
    name="Cloud Test",
    provider=ProviderKind.CLOUD,
    engine="whisper-1",
    requires_network=True,
)


def one_second_clip() -> AudioClip:
    return AudioClip(samples=np.zeros(16000, dtype=np.int16))


def make_config(model_id: str = LOCAL_MODEL.id, **overrides) -> EffectiveConfig:
    overrides.setdefault("retry", RetryPolicy(max_attempts=3, backoff_seconds=0.0))
    return EffectiveConfig(model_id=model_id, **overrides)


class FakeCapture:
    def __init__(self, clip=None, start_error=None):
        self.device_events = EventChannel("fake-device")
        self.clip = clip if clip is not None else one_second_clip()
        self.start_error = start_error
        self.started = 0
        self.stopped = 0
        self.active = False
        self._lock = threading.Lock()

    def start(self, device=None):
        if self.start_error is not None:
            raise self.start_error
        with self._lock:
            self.started += 1
            self.active = True

    def stop(self):
        with self._lock:
            self.stopped += 1
            was_active, self.active = self.active, False
        return self.clip if was_active else None


class FakeStore:
    def __init__(self, delay: float = 0.0, error=None):
        self.delay = delay
        self.error = error
        self.loads = []
        self.unloads = []
        self._lock = threading.Lock()

    def load(self, model_id):
        with self._lock:
            self.loads.append(model_id)
            count = len(self.loads)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return f"handle:{model_id}:{count}"

    def unload(self, handle):
        with self._lock:
            self.unloads.append(handle)


class ScriptedBackend(TranscriptionBackend):
    """Returns (or raises) queued results in order; the last one repeats."""

    def __init__(self, kind, results, gate=None):
        self.kind = kind
        self._results = list(results)
        self.gate = gate
        self.entered = threading.Event()
        self.calls = []

    def transcribe(self, audio, model, model_handle, config, cancel_token=None):
        self.calls.append(model_handle)
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        result = self._results.pop(0) if len(self._results) > 1 else self._results[0]
        if isinstance(result, BaseException):
            raise result
        return result


@pytest.fixture
def capture():
    return FakeCapture()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def cache(store):
    return ModelContextCache(store, capacity=2, idle_ttl=None)


@pytest.fixture
def registry():
    return ProviderRegistry(models=[LOCAL_MODEL, CLOUD_MODEL])
