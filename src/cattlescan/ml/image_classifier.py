"""Image classification: ranked label/score pairs from an ONNX model."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from cattlescan.ml.preprocessing import preprocess_for_classification

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from cattlescan.ml.model_manager import ModelSpec


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    score: float


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        """Classify an image and return ranked labels.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            List of classification results sorted by score (descending).
        """
        ...


class OnnxImageClassifier:
    """Runs an ImageNet-style classifier through an ONNX InferenceSession."""

    def __init__(
        self,
        session: InferenceSession,
        spec: ModelSpec,
        labels: Sequence[str],
        top_k: int = 5,
    ) -> None:
        self._session = session
        self._spec = spec
        self._labels = list(labels)
        self._top_k = top_k
        self._input_name = session.get_inputs()[0].name

    @property
    def model_name(self) -> str:
        return self._spec.name

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        tensor = preprocess_for_classification(image, self._spec)
        logits = self._session.run(None, {self._input_name: tensor})[0][0]
        scores = _softmax(np.asarray(logits, dtype=np.float64))

        top = np.argsort(scores)[::-1][: self._top_k]
        return [ClassificationResult(label=self._label_for(int(i)), score=float(scores[i])) for i in top]

    def _label_for(self, index: int) -> str:
        if index < len(self._labels):
            return self._labels[index]
        return f"LABEL_{index}"


def _softmax(logits: NDArray[np.float64]) -> NDArray[np.float64]:
    shifted = np.exp(logits - logits.max())
    return shifted / shifted.sum()
