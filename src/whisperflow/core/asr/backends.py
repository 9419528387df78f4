"""
Transcription backend abstraction layer.

Provides a unified interface for the interchangeable transcription providers:
- Local: sherpa-onnx offline recognizers, using a handle borrowed from the
  ModelContextCache
- Cloud: hosted speech-to-text APIs called through litellm
- Native: an on-device system recognizer supplied by the host platform
- Custom: a user-defined OpenAI-compatible HTTP endpoint

The orchestrator resolves one backend per session through the
ProviderRegistry and passes it explicitly; nothing here holds session state.
"""

import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

import litellm
import requests
from litellm.exceptions import (
    APIConnectionError,
    AuthenticationError,
    BadRequestError,
    InternalServerError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from ...utils.logger import get_logger
from ..audio.capture import AudioClip
from ..errors import ProviderError, ProviderErrorKind
from ..events import CancellationToken
from ..settings.settings import EffectiveConfig

logger = get_logger(__name__)


class ProviderKind(Enum):
    LOCAL = "local"
    CLOUD = "cloud"
    NATIVE = "native"
    CUSTOM = "custom"


@dataclass(frozen=True)
class ProviderCapabilities:
    requires_model_handle: bool
    requires_network: bool
    supports_streaming: bool = False


@dataclass(frozen=True)
class ModelDescriptor:
    """
    Static description of a selectable model.

    Attributes:
        id: Catalog identifier, also the local model directory name
        name: Display name
        provider: Which backend family serves this model
        engine: Provider-specific model reference (sherpa model type
            "whisper"/"transducer", or a litellm model string)
        endpoint: Base URL for custom endpoints
        api_key_env: Environment variable holding the API key, if any
    """

    id: str
    name: str
    provider: ProviderKind
    engine: str = ""
    endpoint: Optional[str] = None
    api_key_env: Optional[str] = None
    requires_handle: bool = False
    requires_network: bool = False
    streaming: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "ModelDescriptor":
        provider = ProviderKind(data.get("provider", "local"))
        defaults = DEFAULT_CAPABILITIES[provider]
        return cls(
            id=data["id"],
            name=data.get("name") or data["id"],
            provider=provider,
            engine=data.get("engine", ""),
            endpoint=data.get("endpoint"),
            api_key_env=data.get("api_key_env"),
            requires_handle=data.get(
                "requires_handle", defaults.requires_model_handle
            ),
            requires_network=data.get("requires_network", defaults.requires_network),
            streaming=data.get("streaming", defaults.supports_streaming),
        )


DEFAULT_CAPABILITIES = {
    ProviderKind.LOCAL: ProviderCapabilities(
        requires_model_handle=True, requires_network=False
    ),
    ProviderKind.CLOUD: ProviderCapabilities(
        requires_model_handle=False, requires_network=True
    ),
    ProviderKind.NATIVE: ProviderCapabilities(
        requires_model_handle=False, requires_network=False, supports_streaming=True
    ),
    ProviderKind.CUSTOM: ProviderCapabilities(
        requires_model_handle=False, requires_network=True
    ),
}


class TranscriptionBackend(ABC):
    """
    Abstract base class for transcription backends.

    All implementations share the same capability query and transcribe
    signature so the orchestrator can swap them without code changes.
    """

    kind: ProviderKind

    def capabilities(self) -> ProviderCapabilities:
        return DEFAULT_CAPABILITIES[self.kind]

    @abstractmethod
    def transcribe(
        self,
        audio: AudioClip,
        model: ModelDescriptor,
        model_handle: Optional[Any],
        config: EffectiveConfig,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        """
        Transcribe a finalized clip to text.

        Args:
            audio: 16 kHz mono clip
            model: Descriptor of the selected model
            model_handle: Loaded handle when capabilities require one
            config: Frozen session configuration (prompt, language, timeout)
            cancel_token: Observed where the backend has a cancellation hook

        Returns:
            The transcribed text (may be empty)

        Raises:
            ProviderError: on network, auth, rate-limit or unsupported failures
        """


class LocalSherpaBackend(TranscriptionBackend):
    """Offline decoding with a sherpa-onnx recognizer borrowed from the cache."""

    kind = ProviderKind.LOCAL

    def transcribe(
        self,
        audio: AudioClip,
        model: ModelDescriptor,
        model_handle: Optional[Any],
        config: EffectiveConfig,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        if model_handle is None:
            raise ProviderError(
                ProviderErrorKind.UNSUPPORTED,
                f"Model '{model.id}' has no loaded handle",
            )

        start_time = time.time()

        stream = model_handle.create_stream()
        stream.accept_waveform(audio.sample_rate, audio.to_float32())
        model_handle.decode_stream(stream)
        text = stream.result.text.strip()

        processing_time = time.time() - start_time
        if processing_time > 0:
            logger.debug(
                f"Local transcription finished: audio_len={audio.duration:.2f}s, "
                f"time={processing_time:.2f}s, speed={audio.duration / processing_time:.2f}x"
            )
        return text


class CloudTranscriptionBackend(TranscriptionBackend):
    """Hosted speech-to-text (OpenAI, Groq, Deepgram, ...) through litellm."""

    kind = ProviderKind.CLOUD

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
    ):
        self.api_key = api_key
        self.api_base = api_base

    def transcribe(
        self,
        audio: AudioClip,
        model: ModelDescriptor,
        model_handle: Optional[Any],
        config: EffectiveConfig,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        kwargs = {
            "model": model.engine or model.id,
            "file": ("audio.wav", audio.to_wav_bytes()),
            "timeout": config.request_timeout,
        }
        if config.prompt:
            kwargs["prompt"] = config.prompt
        if config.language:
            kwargs["language"] = config.language

        api_key = self.api_key or (
            os.environ.get(model.api_key_env) if model.api_key_env else None
        )
        if api_key:
            kwargs["api_key"] = api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base

        try:
            response = litellm.transcription(**kwargs)
        except RateLimitError as e:
            raise ProviderError(ProviderErrorKind.RATE_LIMIT, str(e)) from e
        except (AuthenticationError, PermissionDeniedError) as e:
            raise ProviderError(ProviderErrorKind.AUTH, str(e)) from e
        except (
            APIConnectionError,
            Timeout,
            ServiceUnavailableError,
            InternalServerError,
        ) as e:
            raise ProviderError(ProviderErrorKind.NETWORK, str(e)) from e
        except (BadRequestError, NotFoundError) as e:
            raise ProviderError(ProviderErrorKind.UNSUPPORTED, str(e)) from e

        text = getattr(response, "text", None)
        if text is None and isinstance(response, dict):
            text = response.get("text")
        return (text or "").strip()


class CustomEndpointBackend(TranscriptionBackend):
    """
    User-defined endpoint speaking the OpenAI ``/audio/transcriptions`` shape:
    multipart upload of ``file`` plus ``model``, JSON response with ``text``.
    """

    kind = ProviderKind.CUSTOM

    def __init__(self, session: Optional[requests.Session] = None):
        self._session = session or requests.Session()

    def transcribe(
        self,
        audio: AudioClip,
        model: ModelDescriptor,
        model_handle: Optional[Any],
        config: EffectiveConfig,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        if not model.endpoint:
            raise ProviderError(
                ProviderErrorKind.UNSUPPORTED,
                f"Custom model '{model.id}' has no endpoint configured",
            )

        headers = {}
        if model.api_key_env:
            api_key = os.environ.get(model.api_key_env)
            if api_key:
                headers["Authorization"] = f"Bearer {api_key}"

        data = {"model": model.engine or model.id}
        if config.prompt:
            data["prompt"] = config.prompt
        if config.language:
            data["language"] = config.language

        try:
            response = self._session.post(
                model.endpoint,
                files={"file": ("audio.wav", audio.to_wav_bytes(), "audio/wav")},
                data=data,
                headers=headers,
                timeout=config.request_timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise ProviderError(ProviderErrorKind.NETWORK, str(e)) from e

        status = response.status_code
        if status in (401, 403):
            raise ProviderError(ProviderErrorKind.AUTH, f"HTTP {status}")
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise ProviderError(
                ProviderErrorKind.RATE_LIMIT,
                f"HTTP {status}",
                retry_after=float(retry_after)
                if retry_after and retry_after.isdigit()
                else None,
            )
        if status >= 500:
            raise ProviderError(ProviderErrorKind.NETWORK, f"HTTP {status}")
        if status >= 400:
            raise ProviderError(
                ProviderErrorKind.UNSUPPORTED, f"HTTP {status}: {response.text[:200]}"
            )

        try:
            payload = response.json()
        except ValueError:
            return response.text.strip()
        if not isinstance(payload, dict):
            raise ProviderError(
                ProviderErrorKind.UNSUPPORTED,
                f"Unexpected response from {model.endpoint}: {type(payload).__name__}",
            )
        return str(payload.get("text", "")).strip()


NativeRecognizer = Callable[[AudioClip, Optional[str]], str]


class NativeSpeechBackend(TranscriptionBackend):
    """
    On-device system speech recognition.

    The recognizer is supplied by the host platform integration as a callable
    ``(clip, language) -> text``; without one every call is unsupported.
    """

    kind = ProviderKind.NATIVE

    def __init__(self, recognizer: Optional[NativeRecognizer] = None):
        self._recognizer = recognizer

    @property
    def available(self) -> bool:
        return self._recognizer is not None

    def transcribe(
        self,
        audio: AudioClip,
        model: ModelDescriptor,
        model_handle: Optional[Any],
        config: EffectiveConfig,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        if self._recognizer is None:
            raise ProviderError(
                ProviderErrorKind.UNSUPPORTED,
                "No on-device speech recognizer is available on this platform",
            )
        return self._recognizer(audio, config.language).strip()
