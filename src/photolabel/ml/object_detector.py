"""Object detection with SSD MobileNetV2 (COCO) via ONNX Runtime.

The model follows the TF object detection API export layout: four outputs
holding normalized ``[ymin, xmin, ymax, xmax]`` boxes, 1-based COCO class ids,
scores, and the number of valid detections.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from photolabel.ml.inference import InferenceError
from photolabel.ml.labels import coco_label
from photolabel.ml.preprocessing import ImagePreprocessor

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from photolabel.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)

_OUTPUT_KEYS = ("detection_boxes", "detection_classes", "detection_scores", "num_detections")


@dataclass(frozen=True)
class Detection:
    """A detected object.

    ``bbox`` is ``(x, y, width, height)`` in pixels of the source image.
    """

    class_name: str
    score: float
    bbox: tuple[float, float, float, float]


class ObjectDetector(Protocol):
    """Protocol for object detection models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def detect(self, image: NDArray[np.uint8]) -> list[Detection]:
        """Detect objects in an image.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            List of detections sorted by score (descending).
        """
        ...


class CocoSsdDetector:
    """COCO object detector backed by an SSD MobileNetV2 ONNX session."""

    def __init__(
        self,
        model_manager: ModelManager,
        min_score: float = 0.5,
        max_boxes: int = 20,
        model_name: str = "ssd_mobilenet_v2_coco",
    ) -> None:
        self._model_manager = model_manager
        self._min_score = min_score
        self._max_boxes = max_boxes
        self._model_name = model_name

    @property
    def model_name(self) -> str:
        return self._model_name

    def detect(self, image: NDArray[np.uint8]) -> list[Detection]:
        tensor = ImagePreprocessor.preprocess_for_detection(image)

        try:
            session = self._model_manager.get_session(self._model_name)
            input_name = session.get_inputs()[0].name
            output_names = [o.name for o in session.get_outputs()]
            outputs = session.run(None, {input_name: tensor})
        except Exception as exc:
            raise InferenceError(f"{self._model_name} inference failed: {exc}") from exc

        named = self._match_outputs(output_names, outputs)
        boxes = np.asarray(named["detection_boxes"], dtype=np.float32).reshape(-1, 4)
        classes = np.asarray(named["detection_classes"]).reshape(-1)
        scores = np.asarray(named["detection_scores"], dtype=np.float32).reshape(-1)
        count = min(int(np.asarray(named["num_detections"]).reshape(-1)[0]), scores.shape[0])

        height, width = image.shape[:2]
        detections: list[Detection] = []
        for i in np.argsort(-scores[:count], kind="stable"):
            score = float(scores[i])
            if score < self._min_score:
                break
            ymin, xmin, ymax, xmax = (float(v) for v in boxes[i])
            x, y = xmin * width, ymin * height
            detections.append(
                Detection(
                    class_name=coco_label(int(classes[i])),
                    score=score,
                    bbox=(x, y, xmax * width - x, ymax * height - y),
                )
            )
            if len(detections) >= self._max_boxes:
                break

        logger.debug("%s kept %d of %d detections", self._model_name, len(detections), count)
        return detections

    def _match_outputs(self, names: list[str], outputs: list[object]) -> dict[str, object]:
        """Map exported output names (which may carry ``:0`` suffixes) to canonical keys."""
        matched: dict[str, object] = {}
        for name, value in zip(names, outputs, strict=False):
            base = name.split(":", 1)[0]
            if base in _OUTPUT_KEYS:
                matched[base] = value
        missing = [key for key in _OUTPUT_KEYS if key not in matched]
        if missing:
            raise InferenceError(f"{self._model_name} is missing outputs: {', '.join(missing)}")
        return matched
