"""Model-choice dispatch and the shared prediction display slot.

``InferenceDispatcher`` maps a :class:`ModelChoice` to a backend and
normalizes each backend's output into uniform :class:`PredictionRow` lists.
``PredictionBoard`` holds the latest published rows and drops results from
runs that were superseded while they were in flight.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    import numpy as np
    from numpy.typing import NDArray

    from photolabel.config import Settings
    from photolabel.ml.image_classifier import ImageClassifier
    from photolabel.ml.model_manager import ModelManager
    from photolabel.ml.object_detector import ObjectDetector

logger = logging.getLogger(__name__)


class ModelChoice(StrEnum):
    MOBILENET_V2 = "MOBILENET_V2"
    COCO_SSD = "COCO_SSD"


# Registry entry backing each choice.
MODEL_FOR_CHOICE: dict[ModelChoice, str] = {
    ModelChoice.MOBILENET_V2: "mobilenet_v2",
    ModelChoice.COCO_SSD: "ssd_mobilenet_v2_coco",
}


@dataclass(frozen=True)
class PredictionRow:
    """One display row: position id, label, and confidence in [0, 1]."""

    id: str
    description: str
    probability: float


class InferenceBackend(Protocol):
    """A model that turns an image into display rows."""

    def predict(self, image: NDArray[np.uint8]) -> list[PredictionRow]: ...


class ClassifierBackend:
    """Adapts an :class:`ImageClassifier` to :class:`InferenceBackend`."""

    def __init__(self, classifier: ImageClassifier) -> None:
        self._classifier = classifier

    def predict(self, image: NDArray[np.uint8]) -> list[PredictionRow]:
        return [
            PredictionRow(id=str(index), description=c.class_name, probability=c.probability)
            for index, c in enumerate(self._classifier.classify(image))
        ]


class DetectorBackend:
    """Adapts an :class:`ObjectDetector` to :class:`InferenceBackend`."""

    def __init__(self, detector: ObjectDetector) -> None:
        self._detector = detector

    def predict(self, image: NDArray[np.uint8]) -> list[PredictionRow]:
        return [
            PredictionRow(id=str(index), description=d.class_name, probability=d.score)
            for index, d in enumerate(self._detector.detect(image))
        ]


class InferenceDispatcher:
    """Runs the backend selected by a :class:`ModelChoice`.

    Backends are created on first use and reused afterwards. Backend errors
    propagate to the caller untouched; there are no retries and no partial
    results.
    """

    def __init__(self, factories: Mapping[ModelChoice, Callable[[], InferenceBackend]]) -> None:
        self._factories = dict(factories)
        self._backends: dict[ModelChoice, InferenceBackend] = {}
        self._lock = threading.Lock()

    @property
    def choices(self) -> list[ModelChoice]:
        return list(self._factories)

    def backend_for(self, model: ModelChoice) -> InferenceBackend:
        with self._lock:
            backend = self._backends.get(model)
            if backend is None:
                try:
                    factory = self._factories[model]
                except KeyError:
                    raise KeyError(f"Unknown model choice: {model}") from None
                backend = factory()
                self._backends[model] = backend
            return backend

    def run(self, image: NDArray[np.uint8], model: ModelChoice) -> list[PredictionRow]:
        """Run ``model`` on ``image`` and return rows in backend order."""
        logger.info("Using %s", model)
        rows = self.backend_for(model).predict(image)
        logger.info("%s produced %d predictions", model, len(rows))
        return rows


def build_dispatcher(settings: Settings, model_manager: ModelManager) -> InferenceDispatcher:
    """Wire the bundled ONNX models into a dispatcher."""
    from photolabel.ml.image_classifier import MobileNetV2Classifier
    from photolabel.ml.object_detector import CocoSsdDetector

    return InferenceDispatcher(
        {
            ModelChoice.MOBILENET_V2: lambda: ClassifierBackend(
                MobileNetV2Classifier(
                    model_manager,
                    top_k=settings.classifier_top_k,
                    model_name=MODEL_FOR_CHOICE[ModelChoice.MOBILENET_V2],
                )
            ),
            ModelChoice.COCO_SSD: lambda: DetectorBackend(
                CocoSsdDetector(
                    model_manager,
                    min_score=settings.detector_min_score,
                    max_boxes=settings.detector_max_boxes,
                    model_name=MODEL_FOR_CHOICE[ModelChoice.COCO_SSD],
                )
            ),
        }
    )


# ---------------------------------------------------------------------------
# Display state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunTicket:
    """Identifies one inference run in issue order."""

    run_id: int
    model: ModelChoice


@dataclass(frozen=True)
class BoardSnapshot:
    run_id: int
    model: ModelChoice | None
    rows: list[PredictionRow] = field(default_factory=list)


class PredictionBoard:
    """Single last-write slot for the rows currently on display.

    Every run takes a ticket from :meth:`begin`. A result is stored only if
    no run issued later has already been published, so a slow run can never
    overwrite a newer one.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._next_id = 0
        self._published = BoardSnapshot(run_id=0, model=None)

    def begin(self, model: ModelChoice) -> RunTicket:
        with self._lock:
            self._next_id += 1
            return RunTicket(run_id=self._next_id, model=model)

    def publish(self, ticket: RunTicket, rows: list[PredictionRow]) -> bool:
        """Store ``rows`` for ``ticket`` unless a later run already published."""
        with self._lock:
            if ticket.run_id <= self._published.run_id:
                logger.debug(
                    "Discarding result of run %d (%s); run %d already published",
                    ticket.run_id,
                    ticket.model,
                    self._published.run_id,
                )
                return False
            self._published = BoardSnapshot(run_id=ticket.run_id, model=ticket.model, rows=list(rows))
            return True

    def snapshot(self) -> BoardSnapshot:
        with self._lock:
            return self._published


class PhotoSession:
    """The photo and model choice currently selected by the user.

    Exactly one model choice is active at a time. The photo is replaced
    wholesale on each successful upload and kept as-is otherwise.
    """

    def __init__(self, model: ModelChoice) -> None:
        self._lock = threading.Lock()
        self._model = model
        self._photo: NDArray[np.uint8] | None = None

    @property
    def model(self) -> ModelChoice:
        with self._lock:
            return self._model

    @property
    def photo(self) -> NDArray[np.uint8] | None:
        with self._lock:
            return self._photo

    def replace_photo(self, photo: NDArray[np.uint8]) -> ModelChoice:
        """Swap in a new photo and return the model choice to run it with."""
        with self._lock:
            self._photo = photo
            return self._model

    def select_model(self, model: ModelChoice) -> NDArray[np.uint8] | None:
        """Switch the active model and return the photo to re-run, if any."""
        with self._lock:
            self._model = model
            return self._photo
