"""Tests for the ONNX model manager."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from cattlescan.config import Settings
from cattlescan.ml.model_manager import CPU_BACKEND, MODEL_REGISTRY, Backend, OnnxModelManager

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(models_dir: Path, **overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "classifier_model": "resnet_50",
        "models_dir": str(models_dir),
        "top_k": 5,
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
        "max_concurrent": 2,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def _write_config(directory: Path, id2label: dict[str, str]) -> Path:
    config = directory / "config.json"
    config.write_text(json.dumps({"id2label": id2label}), encoding="utf-8")
    return config


# ---------------------------------------------------------------------------
# Model registry tests
# ---------------------------------------------------------------------------


class TestModelRegistry:
    def test_known_model_lookup(self) -> None:
        spec = MODEL_REGISTRY["resnet_50"]
        assert spec.name == "resnet_50"
        assert spec.task == "image_classification"
        assert spec.image_size == 224

    def test_unknown_model_raises_keyerror(self) -> None:
        with pytest.raises(KeyError):
            MODEL_REGISTRY["nonexistent_model"]

    def test_mobilenet_uses_half_normalization(self) -> None:
        spec = MODEL_REGISTRY["mobilenet_v2"]
        assert spec.mean == (0.5, 0.5, 0.5)
        assert spec.std == (0.5, 0.5, 0.5)


# ---------------------------------------------------------------------------
# OnnxModelManager tests
# ---------------------------------------------------------------------------


class TestOnnxModelManager:
    @patch("cattlescan.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_calls_hf_hub_download(self, mock_download: MagicMock, tmp_path: Path) -> None:
        mock_download.return_value = str(tmp_path / "onnx" / "model.onnx")
        mgr = OnnxModelManager(_make_settings(tmp_path))

        path = mgr.ensure_downloaded("resnet_50")

        mock_download.assert_called_once_with(
            repo_id="Xenova/resnet-50",
            filename="model.onnx",
            subfolder="onnx",
            local_dir=str(tmp_path),
        )
        assert path == tmp_path / "onnx" / "model.onnx"

    @patch("cattlescan.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_skips_existing(self, mock_download: MagicMock, tmp_path: Path) -> None:
        model_file = tmp_path / "model.onnx"
        model_file.touch()

        mgr = OnnxModelManager(_make_settings(tmp_path))
        # Simulate a previous download by setting the cached path.
        mgr._model_paths["resnet_50"] = model_file

        path = mgr.ensure_downloaded("resnet_50")

        mock_download.assert_not_called()
        assert path == model_file

    @patch("cattlescan.ml.model_manager.hf_hub_download")
    def test_load_labels_orders_by_numeric_id(self, mock_download: MagicMock, tmp_path: Path) -> None:
        mock_download.return_value = str(_write_config(tmp_path, {"10": "k", "2": "c", "0": "a", "1": "b"}))
        mgr = OnnxModelManager(_make_settings(tmp_path))

        assert mgr.load_labels("resnet_50") == ["a", "b", "c", "k"]
        assert mock_download.call_args.kwargs["filename"] == "config.json"

    def test_unknown_configured_model_raises_keyerror(self, tmp_path: Path) -> None:
        with pytest.raises(KeyError, match="Unknown model"):
            OnnxModelManager(_make_settings(tmp_path, classifier_model="totally_fake_model"))

    def test_unknown_model_download_raises_keyerror(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path))
        with pytest.raises(KeyError, match="Unknown model"):
            mgr.ensure_downloaded("totally_fake_model")

    @patch("cattlescan.ml.model_manager.InferenceSession")
    @patch("cattlescan.ml.model_manager.hf_hub_download")
    def test_load_classifier_builds_session_for_backend(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        config = _write_config(tmp_path, {"0": "ox", "1": "tabby"})
        model = tmp_path / "model.onnx"
        mock_download.side_effect = lambda **kw: str(config if kw["filename"] == "config.json" else model)
        input_meta = MagicMock()
        input_meta.name = "pixel_values"
        mock_session_cls.return_value.get_inputs.return_value = [input_meta]

        mgr = OnnxModelManager(_make_settings(tmp_path))
        backend = Backend(name="test", providers=("CUDAExecutionProvider", "CPUExecutionProvider"))
        classifier = mgr.load_classifier(backend)

        assert classifier.model_name == "resnet_50"
        mock_session_cls.assert_called_once()
        assert mock_session_cls.call_args.args == (str(model),)
        assert mock_session_cls.call_args.kwargs["providers"] == ["CUDAExecutionProvider", "CPUExecutionProvider"]

    @patch("cattlescan.ml.model_manager.InferenceSession", side_effect=RuntimeError("no provider"))
    @patch("cattlescan.ml.model_manager.hf_hub_download")
    def test_load_classifier_propagates_session_failure(
        self, mock_download: MagicMock, _mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.return_value = str(_write_config(tmp_path, {"0": "ox"}))
        mgr = OnnxModelManager(_make_settings(tmp_path))

        with pytest.raises(RuntimeError, match="no provider"):
            mgr.load_classifier(CPU_BACKEND)


class TestBackends:
    def test_cpu_has_single_backend(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path, device="cpu"))
        assert mgr.backends() == [CPU_BACKEND]
        assert CPU_BACKEND.accelerated is False

    def test_cuda_is_tried_before_cpu(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path, device="cuda"))
        accelerated, fallback = mgr.backends()

        provider_name, provider_opts = accelerated.providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert accelerated.providers[1] == "CPUExecutionProvider"
        assert accelerated.accelerated is True
        assert fallback == CPU_BACKEND

    def test_openvino_is_tried_before_cpu(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path, device="openvino"))
        accelerated, fallback = mgr.backends()

        provider_name, _provider_opts = accelerated.providers[0]  # type: ignore[misc]
        assert provider_name == "OpenVINOExecutionProvider"
        assert fallback == CPU_BACKEND

    @patch("cattlescan.ml.model_manager.onnxruntime.get_available_providers")
    def test_auto_picks_installed_accelerators(self, mock_available: MagicMock, tmp_path: Path) -> None:
        mock_available.return_value = [
            "TensorrtExecutionProvider",
            "CUDAExecutionProvider",
            "AzureExecutionProvider",
            "CPUExecutionProvider",
        ]
        mgr = OnnxModelManager(_make_settings(tmp_path, device="auto"))
        accelerated, fallback = mgr.backends()

        assert accelerated.name == "CUDAExecutionProvider"
        assert len(accelerated.providers) == 2
        assert accelerated.providers[-1] == "CPUExecutionProvider"
        assert fallback == CPU_BACKEND

    @patch("cattlescan.ml.model_manager.onnxruntime.get_available_providers")
    def test_auto_without_accelerators_uses_cpu_only(self, mock_available: MagicMock, tmp_path: Path) -> None:
        mock_available.return_value = ["AzureExecutionProvider", "CPUExecutionProvider"]
        mgr = OnnxModelManager(_make_settings(tmp_path, device="auto"))
        assert mgr.backends() == [CPU_BACKEND]
