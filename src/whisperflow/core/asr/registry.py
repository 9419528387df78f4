import json
import os
import threading
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from ...utils.logger import get_logger
from ..errors import UnsupportedProviderError
from .backends import (
    CloudTranscriptionBackend,
    CustomEndpointBackend,
    LocalSherpaBackend,
    ModelDescriptor,
    NativeRecognizer,
    NativeSpeechBackend,
    ProviderCapabilities,
    ProviderKind,
    TranscriptionBackend,
)

if TYPE_CHECKING:
    from ..settings.settings import Settings

logger = get_logger(__name__)


def load_models(extra: Iterable[dict] = ()) -> List[ModelDescriptor]:
    """Load the bundled model catalog, followed by any user-defined entries."""
    models: List[ModelDescriptor] = []
    try:
        current_dir = os.path.dirname(os.path.abspath(__file__))
        json_path = os.path.join(current_dir, "models.json")

        with open(json_path, "r", encoding="utf-8") as f:
            data = json.load(f)
            models.extend(ModelDescriptor.from_dict(item) for item in data)
    except (OSError, ValueError, KeyError) as e:
        logger.error(f"Error loading models.json: {e}")

    for item in extra:
        try:
            models.append(ModelDescriptor.from_dict(item))
        except (KeyError, ValueError) as e:
            logger.warning(f"Skipping invalid custom model {item!r}: {e}")

    return models


AVAILABLE_MODELS: List[ModelDescriptor] = load_models()


def get_model_by_id(
    model_id: str, models: Optional[Iterable[ModelDescriptor]] = None
) -> Optional[ModelDescriptor]:
    # Later entries shadow earlier ones so custom models can override the catalog
    found = None
    for model in models if models is not None else AVAILABLE_MODELS:
        if model.id == model_id:
            found = model
    return found


class ProviderRegistry:
    """
    Maps a provider kind to its transcription backend.

    Resolution is a pure lookup; the registry keeps no session state.
    """

    def __init__(self, models: Optional[Iterable[ModelDescriptor]] = None):
        self._backends: Dict[ProviderKind, TranscriptionBackend] = {}
        self._models: List[ModelDescriptor] = list(
            models if models is not None else AVAILABLE_MODELS
        )
        self._lock = threading.Lock()

    def register(self, kind: ProviderKind, backend: TranscriptionBackend) -> None:
        with self._lock:
            if kind in self._backends:
                logger.info(f"Replacing {kind.value} backend")
            self._backends[kind] = backend

    def unregister(self, kind: ProviderKind) -> None:
        with self._lock:
            self._backends.pop(kind, None)

    def resolve(self, descriptor: ModelDescriptor) -> TranscriptionBackend:
        with self._lock:
            backend = self._backends.get(descriptor.provider)
        if backend is None:
            raise UnsupportedProviderError(
                f"No backend registered for provider '{descriptor.provider.value}' "
                f"(model '{descriptor.id}')"
            )
        return backend

    def capabilities(self, kind: ProviderKind) -> ProviderCapabilities:
        with self._lock:
            backend = self._backends.get(kind)
        if backend is None:
            raise UnsupportedProviderError(
                f"No backend registered for provider '{kind.value}'"
            )
        return backend.capabilities()

    def kinds(self) -> List[ProviderKind]:
        with self._lock:
            return list(self._backends)

    @property
    def models(self) -> List[ModelDescriptor]:
        return list(self._models)

    def add_model(self, descriptor: ModelDescriptor) -> None:
        with self._lock:
            self._models.append(descriptor)

    def get_model(self, model_id: str) -> ModelDescriptor:
        with self._lock:
            descriptor = get_model_by_id(model_id, self._models)
        if descriptor is None:
            raise UnsupportedProviderError(f"Unknown model '{model_id}'")
        return descriptor


def create_default_registry(
    settings: Optional["Settings"] = None,
    native_recognizer: Optional[NativeRecognizer] = None,
) -> ProviderRegistry:
    """
    Build a registry with all four backend families and the model catalog.

    Custom models from settings are appended after the bundled catalog, so a
    custom entry with a catalog id overrides it.
    """
    custom_models = settings.custom_models if settings is not None else ()
    registry = ProviderRegistry(models=load_models(custom_models))
    registry.register(ProviderKind.LOCAL, LocalSherpaBackend())
    registry.register(ProviderKind.CLOUD, CloudTranscriptionBackend())
    registry.register(ProviderKind.NATIVE, NativeSpeechBackend(native_recognizer))
    registry.register(ProviderKind.CUSTOM, CustomEndpointBackend())
    logger.debug(
        f"Provider registry ready: {[k.value for k in registry.kinds()]}, "
        f"{len(registry.models)} models"
    )
    return registry
