"""Tests for the face detector pipeline."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import numpy as np
import pytest

from dnnface.config import Settings
from dnnface.errors import InvalidInputError
from dnnface.ml.face_detector import FaceDetection, FaceDetector, Landmarks, detect

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

# Stride-8 prior at row 15, column 20, anchor size 10: center (164, 124).
FAR_ANCHOR = (15 * 40 + 20) * 3


def _outputs(num: int) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Two overlapping faces at priors 0 and 1 plus one far away face."""
    loc = np.zeros((num, 14), dtype=np.float32)
    conf = np.zeros((num, 2), dtype=np.float32)
    conf[:, 0] = 1.0
    iou = np.zeros((num, 1), dtype=np.float32)

    conf[[0, 1, FAR_ANCHOR]] = [0.0, 1.0]
    iou[0] = 0.9025  # score 0.95
    iou[1] = 0.64  # score 0.80, 16x16 box overlapping prior 0 (IoU 0.39)
    iou[FAR_ANCHOR] = 0.49  # score 0.70
    return loc, conf, iou


@pytest.fixture(scope="module")
def detector() -> FaceDetector:
    return FaceDetector(320, 240)


class _FakeNetwork:
    def __init__(self, outputs: tuple[np.ndarray, np.ndarray, np.ndarray]) -> None:
        self._outputs = outputs
        self.calls = 0

    def forward(self, blob: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        self.calls += 1
        return self._outputs


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestConstruction:
    def test_priors_cached_for_input_size(self, detector: FaceDetector) -> None:
        assert detector.input_size == (320, 240)
        assert len(detector.priors) == 4385
        assert detector.priors is detector.priors

    def test_from_settings(self) -> None:
        settings = Settings(input_width=64, input_height=48, score_threshold=0.5, nms_threshold=0.4, top_k=10)
        det = FaceDetector.from_settings(settings)
        assert det.input_size == (64, 48)

    @pytest.mark.parametrize(("width", "height"), [(0, 240), (320, -5)])
    def test_rejects_non_positive_dimensions(self, width: int, height: int) -> None:
        with pytest.raises(InvalidInputError, match="positive"):
            FaceDetector(width, height)

    @pytest.mark.parametrize(
        "kwargs",
        [{"score_threshold": 1.5}, {"nms_threshold": -0.1}, {"top_k": -1}],
    )
    def test_rejects_invalid_thresholds(self, kwargs: dict[str, float]) -> None:
        with pytest.raises(InvalidInputError):
            FaceDetector(320, 240, **kwargs)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


class TestDetect:
    def test_default_threshold_keeps_confident_face(self, detector: FaceDetector) -> None:
        faces = detector.detect(*_outputs(len(detector.priors)))
        assert len(faces) == 1
        face = faces[0]
        assert isinstance(face, FaceDetection)
        assert face.score == pytest.approx(0.95, abs=1e-6)
        assert face.box == pytest.approx((-1.0, -1.0, 10.0, 10.0), abs=1e-4)

    def test_overrides_suppress_overlap_and_keep_far_face(self, detector: FaceDetector) -> None:
        faces = detector.detect(*_outputs(len(detector.priors)), score_threshold=0.5)
        assert [round(f.score, 4) for f in faces] == [0.95, 0.7]
        assert faces[1].box == pytest.approx((159.0, 119.0, 10.0, 10.0), abs=1e-4)

    def test_loose_nms_keeps_overlap(self, detector: FaceDetector) -> None:
        faces = detector.detect(*_outputs(len(detector.priors)), score_threshold=0.5, nms_threshold=0.5)
        assert [round(f.score, 4) for f in faces] == [0.95, 0.8, 0.7]

    def test_top_k_override(self, detector: FaceDetector) -> None:
        faces = detector.detect(*_outputs(len(detector.priors)), score_threshold=0.5, top_k=1)
        assert len(faces) == 1

    def test_named_landmarks(self, detector: FaceDetector) -> None:
        loc, conf, iou = _outputs(len(detector.priors))
        loc[0, 4:] = [1.0, -1.0, -1.0, -1.0, 0.0, 0.0, 1.0, 1.0, -1.0, 1.0]
        face = detector.detect(loc, conf, iou)[0]
        assert isinstance(face.landmarks, Landmarks)
        assert face.landmarks.right_eye == pytest.approx((5.0, 3.0), abs=1e-4)
        assert face.landmarks.left_eye == pytest.approx((3.0, 3.0), abs=1e-4)
        assert face.landmarks.nose_tip == pytest.approx((4.0, 4.0), abs=1e-4)
        assert face.landmarks.mouth_right == pytest.approx((5.0, 5.0), abs=1e-4)
        assert face.landmarks.mouth_left == pytest.approx((3.0, 5.0), abs=1e-4)
        assert len(face.landmarks.as_list()) == 5

    def test_no_faces_is_empty_list(self, detector: FaceDetector) -> None:
        n = len(detector.priors)
        loc = np.zeros((n, 14), dtype=np.float32)
        conf = np.tile(np.array([1.0, 0.0], dtype=np.float32), (n, 1))
        iou = np.ones(n, dtype=np.float32)
        assert detector.detect(loc, conf, iou) == []

    def test_row_mismatch_raises_before_decoding(self, detector: FaceDetector) -> None:
        loc, conf, iou = _outputs(len(detector.priors))
        with pytest.raises(InvalidInputError, match="one per prior"):
            detector.detect(loc[:-1], conf[:-1], iou[:-1])

    def test_invalid_override_raises(self, detector: FaceDetector) -> None:
        with pytest.raises(InvalidInputError, match="nms_threshold"):
            detector.detect(*_outputs(len(detector.priors)), nms_threshold=2.0)

    def test_detect_rows_layout(self, detector: FaceDetector) -> None:
        rows = detector.detect_rows(*_outputs(len(detector.priors)), score_threshold=0.5)
        assert rows.shape == (2, 15)
        assert rows[:, 14] == pytest.approx(np.array([0.95, 0.7]), abs=1e-6)
        assert rows[0, :4] == pytest.approx(np.array([-1.0, -1.0, 10.0, 10.0]), abs=1e-4)

    def test_detect_rows_overrides_are_keyword_only(self, detector: FaceDetector) -> None:
        outputs = _outputs(len(detector.priors))
        with pytest.raises(TypeError):
            detector.detect_rows(*outputs, 0.5)  # type: ignore[misc]
        rows = detector.detect_rows(*outputs, score_threshold=0.5, nms_threshold=0.3, top_k=1)
        assert rows.shape == (1, 15)

    def test_detect_rows_rejects_invalid_override(self, detector: FaceDetector) -> None:
        with pytest.raises(InvalidInputError, match="top_k"):
            detector.detect_rows(*_outputs(len(detector.priors)), top_k=-1)

    def test_forward_runs_network_then_decodes(self, detector: FaceDetector) -> None:
        network = _FakeNetwork(_outputs(len(detector.priors)))
        faces = detector.forward(network, np.zeros((1, 3, 240, 320), dtype=np.float32))
        assert network.calls == 1
        assert len(faces) == 1

    def test_concurrent_calls_agree(self, detector: FaceDetector) -> None:
        outputs = _outputs(len(detector.priors))
        expected = detector.detect(*outputs, score_threshold=0.5)
        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: detector.detect(*outputs, score_threshold=0.5), range(8)))
        assert all(result == expected for result in results)


class TestTinyInputs:
    def test_input_without_priors_detects_nothing(self) -> None:
        det = FaceDetector(4, 4)
        assert len(det.priors) == 0
        assert det.detect([], [], []) == []

    def test_smallest_layout(self) -> None:
        # One stride-8 cell with three anchor sizes.
        det = FaceDetector(8, 8)
        assert len(det.priors) == 3
        loc = np.zeros((3, 14), dtype=np.float32)
        conf = np.tile(np.array([0.0, 1.0], dtype=np.float32), (3, 1))
        iou = np.ones(3, dtype=np.float32)
        faces = det.detect(loc, conf, iou)
        # All three share a center; the 10px box wins on index tie-break and covers
        # the 16px box above the threshold (100/256), but not the 24px one (100/576).
        assert len(faces) == 2
        assert faces[0].box == pytest.approx((-1.0, -1.0, 10.0, 10.0), abs=1e-4)
        assert faces[1].box == pytest.approx((-8.0, -8.0, 24.0, 24.0), abs=1e-4)


class TestDetectFunction:
    def test_matches_detector(self, detector: FaceDetector) -> None:
        outputs = _outputs(len(detector.priors))
        faces = detect(320, 240, *outputs, score_threshold=0.5)
        assert faces == detector.detect(*outputs, score_threshold=0.5)

    def test_defaults(self, detector: FaceDetector) -> None:
        faces = detect(320, 240, *_outputs(len(detector.priors)))
        assert len(faces) == 1

    def test_rejects_non_positive_dimensions(self) -> None:
        with pytest.raises(InvalidInputError):
            detect(0, 0, [], [], [])

    def test_ragged_loc_raises_invalid_input(self) -> None:
        loc = [[0.0] * 14, [0.0] * 14, [0.0] * 13]
        with pytest.raises(InvalidInputError, match="rectangular"):
            FaceDetector(8, 8).detect(loc, [[0.0, 1.0]] * 3, [1.0, 1.0, 1.0])
        with pytest.raises(InvalidInputError, match="rectangular"):
            detect(8, 8, loc, [[0.0, 1.0]] * 3, [1.0, 1.0, 1.0])

    def test_row_mismatch_rejected_before_building_priors(self) -> None:
        with (
            patch("dnnface.ml.face_detector.generate_priors") as build,
            pytest.raises(InvalidInputError, match="rows"),
        ):
            detect(12000, 12000, [[0.0] * 14], [[0.0, 1.0]], [1.0])
        build.assert_not_called()

    def test_invalid_threshold_rejected_before_building_priors(self) -> None:
        with (
            patch("dnnface.ml.face_detector.generate_priors") as build,
            pytest.raises(InvalidInputError, match="score_threshold"),
        ):
            detect(12000, 12000, [[0.0] * 14], [[0.0, 1.0]], [1.0], score_threshold=1.5)
        build.assert_not_called()
