"""Tests for sherpa-onnx model discovery and loading."""

import sys
from unittest.mock import MagicMock, patch

import pytest

from whisperflow.core.asr.backends import ModelDescriptor, ProviderKind
from whisperflow.core.asr.model_store import (
    SherpaOnnxModelStore,
    get_models_dir,
    is_model_downloaded,
    locate_model_files,
)
from whisperflow.core.errors import ModelLoadError, ModelLoadReason

TRANSDUCER = ModelDescriptor(
    id="parakeet", name="Parakeet", provider=ProviderKind.LOCAL, engine="transducer"
)
WHISPER = ModelDescriptor(
    id="tiny", name="Tiny", provider=ProviderKind.LOCAL, engine="whisper"
)


def _touch(directory, *names):
    directory.mkdir(parents=True, exist_ok=True)
    for name in names:
        (directory / name).write_bytes(b"")


@pytest.fixture
def fake_sherpa():
    module = MagicMock()
    with patch.dict(sys.modules, {"sherpa_onnx": module}):
        yield module


class TestLocateModelFiles:
    """Tests for finding model files on disk."""

    def test_transducer_prefers_int8(self, tmp_path):
        """Test int8 files are preferred for transducers."""
        _touch(
            tmp_path,
            "encoder.int8.onnx",
            "encoder.onnx",
            "decoder.int8.onnx",
            "joiner.int8.onnx",
            "tokens.txt",
        )

        files = locate_model_files(str(tmp_path), "transducer")

        assert files["encoder"].endswith("encoder.int8.onnx")
        assert all(files.values())

    def test_whisper_suffix_matching(self, tmp_path):
        """Test whisper files are found by suffix."""
        _touch(
            tmp_path,
            "tiny.en-encoder.int8.onnx",
            "tiny.en-decoder.int8.onnx",
            "tiny.en-tokens.txt",
        )

        files = locate_model_files(str(tmp_path), "whisper")

        assert files["encoder"].endswith("tiny.en-encoder.int8.onnx")
        assert files["tokens"].endswith("tiny.en-tokens.txt")

    def test_missing_roles_are_none(self, tmp_path):
        """Test missing files are reported as None."""
        _touch(tmp_path, "tokens.txt")
        files = locate_model_files(str(tmp_path), "transducer")
        assert files["encoder"] is None
        assert files["tokens"] is not None

    def test_is_model_downloaded(self, tmp_path):
        """Test a model counts as downloaded once all files exist."""
        assert is_model_downloaded("parakeet", "transducer", str(tmp_path)) is False
        _touch(
            tmp_path / "parakeet",
            "encoder.onnx",
            "decoder.onnx",
            "joiner.onnx",
            "tokens.txt",
        )
        assert is_model_downloaded("parakeet", "transducer", str(tmp_path)) is True

    def test_models_dir_under_user_data(self):
        """Test the models dir lives under the app data dir."""
        assert get_models_dir().endswith("models")
        assert "whisperflow" in get_models_dir()


class TestSherpaOnnxModelStore:
    """Tests for building sherpa-onnx recognizers."""

    def test_missing_directory(self, tmp_path):
        """Test a missing model directory is MISSING."""
        store = SherpaOnnxModelStore(models_dir=str(tmp_path), models=[TRANSDUCER])

        with pytest.raises(ModelLoadError) as excinfo:
            store.load("parakeet")

        assert excinfo.value.reason is ModelLoadReason.MISSING

    def test_missing_files(self, tmp_path):
        """Test missing model files are MISSING and named."""
        _touch(tmp_path / "parakeet", "tokens.txt")
        store = SherpaOnnxModelStore(models_dir=str(tmp_path), models=[TRANSDUCER])

        with pytest.raises(ModelLoadError) as excinfo:
            store.load("parakeet")

        assert excinfo.value.reason is ModelLoadReason.MISSING
        assert "encoder" in str(excinfo.value)

    def test_loads_transducer(self, tmp_path, fake_sherpa):
        """Test transducer models use from_transducer."""
        _touch(
            tmp_path / "parakeet",
            "encoder.int8.onnx",
            "decoder.int8.onnx",
            "joiner.int8.onnx",
            "tokens.txt",
        )
        store = SherpaOnnxModelStore(
            models_dir=str(tmp_path), num_threads=2, models=[TRANSDUCER]
        )

        handle = store.load("parakeet")

        factory = fake_sherpa.OfflineRecognizer.from_transducer
        assert handle is factory.return_value
        kwargs = factory.call_args.kwargs
        assert kwargs["num_threads"] == 2
        assert kwargs["model_type"] == "nemo_transducer"
        assert kwargs["joiner"].endswith("joiner.int8.onnx")

    def test_loads_whisper(self, tmp_path, fake_sherpa):
        """Test whisper models use from_whisper."""
        _touch(
            tmp_path / "tiny",
            "tiny-encoder.onnx",
            "tiny-decoder.onnx",
            "tiny-tokens.txt",
        )
        store = SherpaOnnxModelStore(models_dir=str(tmp_path), models=[WHISPER])

        handle = store.load("tiny")

        assert handle is fake_sherpa.OfflineRecognizer.from_whisper.return_value
        fake_sherpa.OfflineRecognizer.from_transducer.assert_not_called()

    @pytest.mark.parametrize(
        "error,reason",
        [
            (RuntimeError("protobuf parsing failed"), ModelLoadReason.CORRUPT),
            (MemoryError(), ModelLoadReason.RESOURCE_EXHAUSTED),
        ],
    )
    def test_loader_errors_mapped(self, tmp_path, fake_sherpa, error, reason):
        """Test loader exceptions map to load reasons."""
        _touch(
            tmp_path / "parakeet",
            "encoder.onnx",
            "decoder.onnx",
            "joiner.onnx",
            "tokens.txt",
        )
        fake_sherpa.OfflineRecognizer.from_transducer.side_effect = error
        store = SherpaOnnxModelStore(models_dir=str(tmp_path), models=[TRANSDUCER])

        with pytest.raises(ModelLoadError) as excinfo:
            store.load("parakeet")

        assert excinfo.value.reason is reason
