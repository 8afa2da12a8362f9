"""Whole-image classification with MobileNetV2 via ONNX Runtime."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from photolabel.ml.inference import InferenceError
from photolabel.ml.labels import imagenet_classes
from photolabel.ml.preprocessing import ImagePreprocessor

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from photolabel.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Classification:
    """A single whole-image label prediction."""

    class_name: str
    probability: float


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: NDArray[np.uint8]) -> list[Classification]:
        """Classify an image and return ranked labels.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            List of classifications sorted by probability (descending).
        """
        ...


def softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    return exp / np.sum(exp)


class MobileNetV2Classifier:
    """ImageNet classifier backed by a MobileNetV2 ONNX session."""

    def __init__(
        self,
        model_manager: ModelManager,
        top_k: int = 3,
        model_name: str = "mobilenet_v2",
    ) -> None:
        self._model_manager = model_manager
        self._top_k = top_k
        self._model_name = model_name

    @property
    def model_name(self) -> str:
        return self._model_name

    def classify(self, image: NDArray[np.uint8]) -> list[Classification]:
        tensor = ImagePreprocessor.preprocess_for_classification(image)

        try:
            session = self._model_manager.get_session(self._model_name)
            input_name = session.get_inputs()[0].name
            outputs = session.run(None, {input_name: tensor})
        except Exception as exc:
            raise InferenceError(f"{self._model_name} inference failed: {exc}") from exc

        logits = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        labels = imagenet_classes()
        # Some exports carry a leading background class.
        if logits.shape[0] == len(labels) + 1:
            logits = logits[1:]
        if logits.shape[0] != len(labels):
            raise InferenceError(f"{self._model_name} returned {logits.shape[0]} scores, expected {len(labels)}")

        probabilities = softmax(logits)
        k = min(self._top_k, probabilities.shape[0])
        # Stable sort keeps the lower class index first on ties.
        top = np.argsort(-probabilities, kind="stable")[:k]
        results = [Classification(class_name=labels[i], probability=float(probabilities[i])) for i in top]
        logger.debug("%s top-%d: %s", self._model_name, k, results)
        return results
