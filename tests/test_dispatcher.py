"""Tests for model-choice dispatch, the prediction board, and the photo session."""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import MagicMock

import numpy as np
import pytest

from photolabel.config import Settings
from photolabel.ml.dispatcher import (
    MODEL_FOR_CHOICE,
    ClassifierBackend,
    DetectorBackend,
    InferenceDispatcher,
    ModelChoice,
    PhotoSession,
    PredictionBoard,
    PredictionRow,
    build_dispatcher,
)
from photolabel.ml.image_classifier import Classification, MobileNetV2Classifier
from photolabel.ml.inference import InferenceError
from photolabel.ml.model_manager import MODEL_REGISTRY
from photolabel.ml.object_detector import CocoSsdDetector, Detection
from tests.fakes import FakeClassifier, FakeDetector

if TYPE_CHECKING:
    from numpy.typing import NDArray


CAT_DOG = [Classification("cat", 0.92), Classification("dog", 0.05)]
PERSON = [Detection("person", 0.88, (1.0, 2.0, 3.0, 4.0))]


def _dispatcher(classifier: FakeClassifier, detector: FakeDetector) -> InferenceDispatcher:
    return InferenceDispatcher(
        {
            ModelChoice.MOBILENET_V2: lambda: ClassifierBackend(classifier),
            ModelChoice.COCO_SSD: lambda: DetectorBackend(detector),
        }
    )


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class TestClassifierBackend:
    def test_rows_mirror_classifier_output(self, rgb_image: NDArray[np.uint8]) -> None:
        rows = ClassifierBackend(FakeClassifier(CAT_DOG)).predict(rgb_image)
        assert rows == [
            PredictionRow(id="0", description="cat", probability=0.92),
            PredictionRow(id="1", description="dog", probability=0.05),
        ]

    def test_empty_output_gives_no_rows(self, rgb_image: NDArray[np.uint8]) -> None:
        assert ClassifierBackend(FakeClassifier([])).predict(rgb_image) == []


class TestDetectorBackend:
    def test_rows_mirror_detector_output(self, rgb_image: NDArray[np.uint8]) -> None:
        rows = DetectorBackend(FakeDetector(PERSON)).predict(rgb_image)
        assert rows == [PredictionRow(id="0", description="person", probability=0.88)]

    def test_order_is_not_resorted(self, rgb_image: NDArray[np.uint8]) -> None:
        detections = [
            Detection("cup", 0.4, (0, 0, 1, 1)),
            Detection("person", 0.9, (0, 0, 1, 1)),
        ]
        rows = DetectorBackend(FakeDetector(detections)).predict(rgb_image)
        assert [r.description for r in rows] == ["cup", "person"]
        assert [r.id for r in rows] == ["0", "1"]


# ---------------------------------------------------------------------------
# InferenceDispatcher
# ---------------------------------------------------------------------------


class TestInferenceDispatcher:
    def test_mobilenet_uses_classifier(self, rgb_image: NDArray[np.uint8]) -> None:
        classifier, detector = FakeClassifier(CAT_DOG), FakeDetector(PERSON)
        rows = _dispatcher(classifier, detector).run(rgb_image, ModelChoice.MOBILENET_V2)

        assert len(rows) == len(CAT_DOG)
        for row, prediction in zip(rows, CAT_DOG, strict=True):
            assert row.probability == prediction.probability
        assert classifier.calls == 1
        assert detector.calls == 0

    def test_coco_ssd_uses_detector(self, rgb_image: NDArray[np.uint8]) -> None:
        classifier, detector = FakeClassifier(CAT_DOG), FakeDetector(PERSON)
        rows = _dispatcher(classifier, detector).run(rgb_image, ModelChoice.COCO_SSD)

        assert len(rows) == len(PERSON)
        assert rows[0].description == PERSON[0].class_name
        assert detector.calls == 1
        assert classifier.calls == 0

    def test_rerun_is_idempotent(self, rgb_image: NDArray[np.uint8]) -> None:
        dispatcher = _dispatcher(FakeClassifier(CAT_DOG), FakeDetector(PERSON))
        first = dispatcher.run(rgb_image, ModelChoice.MOBILENET_V2)
        dispatcher.run(rgb_image, ModelChoice.COCO_SSD)
        again = dispatcher.run(rgb_image, ModelChoice.MOBILENET_V2)
        assert first == again

    def test_backend_built_once_per_choice(self, rgb_image: NDArray[np.uint8]) -> None:
        factory = MagicMock(return_value=ClassifierBackend(FakeClassifier(CAT_DOG)))
        dispatcher = InferenceDispatcher({ModelChoice.MOBILENET_V2: factory})

        dispatcher.run(rgb_image, ModelChoice.MOBILENET_V2)
        dispatcher.run(rgb_image, ModelChoice.MOBILENET_V2)

        factory.assert_called_once_with()

    def test_backends_built_lazily(self) -> None:
        factory = MagicMock()
        InferenceDispatcher({ModelChoice.COCO_SSD: factory})
        factory.assert_not_called()

    def test_backend_failure_propagates(self, rgb_image: NDArray[np.uint8]) -> None:
        failing = FakeClassifier([], error=InferenceError("boom"))
        dispatcher = _dispatcher(failing, FakeDetector(PERSON))
        with pytest.raises(InferenceError, match="boom"):
            dispatcher.run(rgb_image, ModelChoice.MOBILENET_V2)
        assert failing.calls == 1

    def test_unconfigured_choice_raises_keyerror(self, rgb_image: NDArray[np.uint8]) -> None:
        dispatcher = InferenceDispatcher({})
        with pytest.raises(KeyError, match="Unknown model choice"):
            dispatcher.run(rgb_image, ModelChoice.COCO_SSD)


class TestBuildDispatcher:
    def test_every_choice_maps_to_registry(self) -> None:
        for choice in ModelChoice:
            assert MODEL_FOR_CHOICE[choice] in MODEL_REGISTRY

    def test_wires_settings_into_backends(self) -> None:
        settings = Settings(classifier_top_k=5, detector_min_score=0.3, detector_max_boxes=7)
        dispatcher = build_dispatcher(settings, MagicMock())

        classifier_backend = dispatcher.backend_for(ModelChoice.MOBILENET_V2)
        detector_backend = dispatcher.backend_for(ModelChoice.COCO_SSD)

        assert isinstance(classifier_backend, ClassifierBackend)
        assert isinstance(classifier_backend._classifier, MobileNetV2Classifier)
        assert classifier_backend._classifier._top_k == 5
        assert isinstance(detector_backend, DetectorBackend)
        assert isinstance(detector_backend._detector, CocoSsdDetector)
        assert detector_backend._detector._min_score == 0.3
        assert detector_backend._detector._max_boxes == 7
        assert dispatcher.choices == [ModelChoice.MOBILENET_V2, ModelChoice.COCO_SSD]


# ---------------------------------------------------------------------------
# PredictionBoard
# ---------------------------------------------------------------------------


def _rows(*labels: str) -> list[PredictionRow]:
    return [PredictionRow(id=str(i), description=label, probability=0.5) for i, label in enumerate(labels)]


class TestPredictionBoard:
    def test_starts_empty(self) -> None:
        snapshot = PredictionBoard().snapshot()
        assert snapshot.run_id == 0
        assert snapshot.model is None
        assert snapshot.rows == []

    def test_tickets_are_monotonic(self) -> None:
        board = PredictionBoard()
        ids = [board.begin(ModelChoice.MOBILENET_V2).run_id for _ in range(3)]
        assert ids == [1, 2, 3]

    def test_publish_replaces_rows(self) -> None:
        board = PredictionBoard()
        assert board.publish(board.begin(ModelChoice.MOBILENET_V2), _rows("cat", "dog"))
        assert board.publish(board.begin(ModelChoice.COCO_SSD), _rows("person"))

        snapshot = board.snapshot()
        assert snapshot.run_id == 2
        assert snapshot.model == ModelChoice.COCO_SSD
        assert [r.description for r in snapshot.rows] == ["person"]

    def test_superseded_run_is_discarded(self) -> None:
        board = PredictionBoard()
        slow = board.begin(ModelChoice.MOBILENET_V2)
        fast = board.begin(ModelChoice.COCO_SSD)

        assert board.publish(fast, _rows("person"))
        assert not board.publish(slow, _rows("cat"))

        snapshot = board.snapshot()
        assert snapshot.run_id == fast.run_id
        assert [r.description for r in snapshot.rows] == ["person"]

    def test_earlier_run_may_publish_before_later_one(self) -> None:
        board = PredictionBoard()
        first = board.begin(ModelChoice.MOBILENET_V2)
        second = board.begin(ModelChoice.MOBILENET_V2)

        assert board.publish(first, _rows("cat"))
        assert board.publish(second, _rows("dog"))
        assert board.snapshot().rows == _rows("dog")

    def test_published_rows_are_copied(self) -> None:
        board = PredictionBoard()
        rows = _rows("cat")
        board.publish(board.begin(ModelChoice.MOBILENET_V2), rows)
        rows.append(PredictionRow(id="1", description="dog", probability=0.1))
        assert len(board.snapshot().rows) == 1


# ---------------------------------------------------------------------------
# PhotoSession
# ---------------------------------------------------------------------------


class TestPhotoSession:
    def test_initial_state(self) -> None:
        session = PhotoSession(ModelChoice.COCO_SSD)
        assert session.model == ModelChoice.COCO_SSD
        assert session.photo is None

    def test_replace_photo_returns_active_model(self, rgb_image: NDArray[np.uint8]) -> None:
        session = PhotoSession(ModelChoice.MOBILENET_V2)
        assert session.replace_photo(rgb_image) == ModelChoice.MOBILENET_V2
        assert session.photo is rgb_image

    def test_select_model_returns_current_photo(self, rgb_image: NDArray[np.uint8]) -> None:
        session = PhotoSession(ModelChoice.MOBILENET_V2)
        assert session.select_model(ModelChoice.COCO_SSD) is None

        session.replace_photo(rgb_image)
        assert session.select_model(ModelChoice.MOBILENET_V2) is rgb_image
        assert session.model == ModelChoice.MOBILENET_V2
