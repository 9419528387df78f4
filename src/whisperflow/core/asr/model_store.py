"""
Model storage collaborator: turns a model id into a loaded recognizer handle.

Downloads and progress tracking are not handled here; a model directory
must already exist under ``get_models_dir()``.
"""

import os
from typing import Any, Dict, Iterable, Optional, Protocol

import platformdirs

from ...utils.logger import get_logger
from ..errors import ModelLoadError, ModelLoadReason
from .backends import ModelDescriptor
from .registry import get_model_by_id

logger = get_logger(__name__)

NUM_THREADS = 4

_WHISPER_FILES = {
    "encoder": ("-encoder.int8.onnx", "-encoder.onnx"),
    "decoder": ("-decoder.int8.onnx", "-decoder.onnx"),
    "tokens": ("-tokens.txt", "tokens.txt"),
}

_TRANSDUCER_FILES = {
    "encoder": ("encoder.int8.onnx", "encoder.fp16.onnx", "encoder.onnx"),
    "decoder": ("decoder.int8.onnx", "decoder.fp16.onnx", "decoder.onnx"),
    "joiner": ("joiner.int8.onnx", "joiner.fp16.onnx", "joiner.onnx"),
    "tokens": ("tokens.txt",),
}


def get_models_dir() -> str:
    return os.path.join(
        platformdirs.user_data_dir("whisperflow", appauthor=False), "models"
    )


class ModelStore(Protocol):
    def load(self, model_id: str) -> Any:
        """Return an opaque handle. Raises ModelLoadError."""

    def unload(self, handle: Any) -> None:
        """Release resources held by a handle returned from load()."""


def _find_by_suffix(directory: str, suffixes: Iterable[str]) -> Optional[str]:
    try:
        names = sorted(os.listdir(directory))
    except OSError:
        return None
    for suffix in suffixes:
        for name in names:
            if name.endswith(suffix):
                return os.path.join(directory, name)
    return None


def _find_exact(directory: str, candidates: Iterable[str]) -> Optional[str]:
    for name in candidates:
        path = os.path.join(directory, name)
        if os.path.exists(path):
            return path
    return None


def locate_model_files(model_dir: str, engine: str) -> Dict[str, Optional[str]]:
    """Map each required file role to its path (None when absent)."""
    if engine == "whisper":
        return {
            role: _find_by_suffix(model_dir, suffixes)
            for role, suffixes in _WHISPER_FILES.items()
        }
    return {
        role: _find_exact(model_dir, names) for role, names in _TRANSDUCER_FILES.items()
    }


def is_model_downloaded(
    model_id: str, engine: str, models_dir: Optional[str] = None
) -> bool:
    model_dir = os.path.join(models_dir or get_models_dir(), model_id)
    if not os.path.isdir(model_dir):
        return False
    return all(locate_model_files(model_dir, engine).values())


class SherpaOnnxModelStore:
    """Loads sherpa-onnx offline recognizers (Whisper or NeMo transducer)."""

    def __init__(
        self,
        models_dir: Optional[str] = None,
        num_threads: int = NUM_THREADS,
        models: Optional[Iterable[ModelDescriptor]] = None,
    ):
        self.models_dir = models_dir or get_models_dir()
        self.num_threads = num_threads
        self._models = list(models) if models is not None else None

    def load(self, model_id: str) -> Any:
        descriptor = get_model_by_id(model_id, self._models)
        engine = descriptor.engine if descriptor else "transducer"
        model_dir = os.path.join(self.models_dir, model_id)

        if not os.path.isdir(model_dir):
            raise ModelLoadError(
                model_id,
                ModelLoadReason.MISSING,
                f"model directory not found: {model_dir}. Please download the model first.",
            )

        files = locate_model_files(model_dir, engine)
        missing = [role for role, path in files.items() if path is None]
        if missing:
            raise ModelLoadError(
                model_id,
                ModelLoadReason.MISSING,
                f"missing {engine} model files in {model_dir}: {', '.join(missing)}",
            )

        import sherpa_onnx

        logger.info(f"Loading model '{model_id}' as type '{engine}'")
        try:
            if engine == "whisper":
                return sherpa_onnx.OfflineRecognizer.from_whisper(
                    encoder=files["encoder"],
                    decoder=files["decoder"],
                    tokens=files["tokens"],
                    num_threads=self.num_threads,
                    provider="cpu",
                    debug=False,
                    decoding_method="greedy_search",
                )
            return sherpa_onnx.OfflineRecognizer.from_transducer(
                encoder=files["encoder"],
                decoder=files["decoder"],
                joiner=files["joiner"],
                tokens=files["tokens"],
                num_threads=self.num_threads,
                provider="cpu",
                debug=False,
                decoding_method="greedy_search",
                model_type="nemo_transducer",
            )
        except MemoryError as e:
            raise ModelLoadError(
                model_id, ModelLoadReason.RESOURCE_EXHAUSTED, str(e)
            ) from e
        except Exception as e:
            raise ModelLoadError(model_id, ModelLoadReason.CORRUPT, str(e)) from e

    def unload(self, handle: Any) -> None:
        # sherpa-onnx frees native memory when the recognizer is collected
        del handle
