"""Model manager: download ONNX classifiers and build sessions per backend.

Handles downloading models and their label maps from HuggingFace, choosing
the ordered execution backends (accelerated first, CPU fallback), and
creating ONNX InferenceSessions for a given backend.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import onnxruntime
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from cattlescan.ml.image_classifier import OnnxImageClassifier

if TYPE_CHECKING:
    from cattlescan.config import Settings
    from cattlescan.ml.image_classifier import ImageClassifier

logger = logging.getLogger(__name__)

CPU_PROVIDER = "CPUExecutionProvider"

# Providers "auto" may pick, in onnxruntime priority order.
ACCELERATED_PROVIDERS = (
    "CUDAExecutionProvider",
    "ROCMExecutionProvider",
    "DmlExecutionProvider",
    "CoreMLExecutionProvider",
    "OpenVINOExecutionProvider",
)

Provider = str | tuple[str, dict[str, object]]


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for classifier model lifecycle management."""

    def ensure_downloaded(self, model_name: str) -> Path:
        """Ensure a model is downloaded and return its file path."""
        ...

    def backends(self) -> list[Backend]:
        """Return execution backends in the order they should be attempted."""
        ...

    def load_classifier(self, backend: Backend) -> ImageClassifier:
        """Build a ready-to-use classifier on the given backend."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class ModelTask(StrEnum):
    IMAGE_CLASSIFICATION = "image_classification"


IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX classifier."""

    name: str
    repo_id: str
    filename: str
    subfolder: str | None
    task: ModelTask
    license: str
    image_size: int = 224
    crop_pct: float = 0.875
    mean: tuple[float, float, float] = IMAGENET_MEAN
    std: tuple[float, float, float] = IMAGENET_STD
    config_filename: str = "config.json"


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "resnet_50": ModelSpec(
        name="resnet_50",
        repo_id="Xenova/resnet-50",
        filename="model.onnx",
        subfolder="onnx",
        task=ModelTask.IMAGE_CLASSIFICATION,
        license="Apache-2.0",
    ),
    "mobilenet_v2": ModelSpec(
        name="mobilenet_v2",
        repo_id="Xenova/mobilenet_v2_1.0_224",
        filename="model.onnx",
        subfolder="onnx",
        task=ModelTask.IMAGE_CLASSIFICATION,
        license="Apache-2.0",
        mean=(0.5, 0.5, 0.5),
        std=(0.5, 0.5, 0.5),
    ),
}


@dataclass(frozen=True)
class Backend:
    """An execution mode: an ordered list of onnxruntime providers."""

    name: str
    providers: tuple[Provider, ...]

    @property
    def accelerated(self) -> bool:
        return any(_provider_name(p) != CPU_PROVIDER for p in self.providers)


CPU_BACKEND = Backend(name="cpu", providers=(CPU_PROVIDER,))


def _provider_name(provider: Provider) -> str:
    return provider if isinstance(provider, str) else provider[0]


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Downloads ONNX classifiers and creates sessions for each backend."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._spec = self._get_spec(settings.classifier_model)
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._model_paths: dict[str, Path] = {}
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    @property
    def spec(self) -> ModelSpec:
        return self._spec

    def ensure_downloaded(self, model_name: str) -> Path:
        """Download a model from HuggingFace if not already present locally."""
        spec = self._get_spec(model_name)

        if model_name in self._model_paths:
            path = self._model_paths[model_name]
            if path.exists():
                return path

        downloaded = Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=spec.filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir),
            )
        )
        self._model_paths[model_name] = downloaded
        logger.info("Downloaded %s to %s", model_name, downloaded)
        return downloaded

    def load_labels(self, model_name: str) -> list[str]:
        """Read the ``id2label`` map shipped with the model as an ordered list."""
        spec = self._get_spec(model_name)
        config_path = hf_hub_download(
            repo_id=spec.repo_id,
            filename=spec.config_filename,
            local_dir=str(self._models_dir),
        )
        with open(config_path, encoding="utf-8") as fh:
            id2label: dict[str, str] = json.load(fh)["id2label"]
        return [label for _, label in sorted(id2label.items(), key=lambda item: int(item[0]))]

    def backends(self) -> list[Backend]:
        """Return backends in attempt order: accelerated first, then CPU."""
        accelerated = self._build_accelerated_providers()
        if not accelerated:
            return [CPU_BACKEND]
        name = "+".join(_provider_name(p) for p in accelerated)
        return [Backend(name=name, providers=(*accelerated, CPU_PROVIDER)), CPU_BACKEND]

    def load_classifier(self, backend: Backend) -> OnnxImageClassifier:
        """Create an InferenceSession on ``backend`` and wrap it as a classifier."""
        model_path = self.ensure_downloaded(self._spec.name)
        labels = self.load_labels(self._spec.name)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=list(backend.providers),
        )
        logger.info("Loaded session for %s on %s", self._spec.name, backend.name)
        return OnnxImageClassifier(session, self._spec, labels, top_k=self._settings.top_k)

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _get_spec(model_name: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise KeyError(f"Unknown model: {model_name}") from None

    def _build_accelerated_providers(self) -> list[Provider]:
        device = self._settings.device
        if device == "cuda":
            return [self._cuda_provider()]
        if device == "openvino":
            return [("OpenVINOExecutionProvider", {"device_type": "CPU"})]
        if device == "auto":
            available = onnxruntime.get_available_providers()
            return [
                self._cuda_provider() if name == "CUDAExecutionProvider" else name
                for name in available
                if name in ACCELERATED_PROVIDERS
            ]
        return []

    def _cuda_provider(self) -> Provider:
        return (
            "CUDAExecutionProvider",
            {
                "device_id": 0,
                "gpu_mem_limit": self._settings.gpu_mem_limit,
                "arena_extend_strategy": "kSameAsRequested",
            },
        )

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
