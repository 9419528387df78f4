from .backends import (
    CloudTranscriptionBackend,
    CustomEndpointBackend,
    LocalSherpaBackend,
    ModelDescriptor,
    NativeSpeechBackend,
    ProviderCapabilities,
    ProviderKind,
    TranscriptionBackend,
)
from .model_cache import LoadedContext, LoadStatus, ModelContextCache
from .model_store import ModelStore, SherpaOnnxModelStore, get_models_dir
from .registry import (
    AVAILABLE_MODELS,
    ProviderRegistry,
    create_default_registry,
    get_model_by_id,
    load_models,
)

__all__ = [
    "AVAILABLE_MODELS",
    "CloudTranscriptionBackend",
    "CustomEndpointBackend",
    "LoadedContext",
    "LoadStatus",
    "LocalSherpaBackend",
    "ModelContextCache",
    "ModelDescriptor",
    "ModelStore",
    "NativeSpeechBackend",
    "ProviderCapabilities",
    "ProviderKind",
    "ProviderRegistry",
    "SherpaOnnxModelStore",
    "TranscriptionBackend",
    "create_default_registry",
    "get_model_by_id",
    "get_models_dir",
    "load_models",
]
