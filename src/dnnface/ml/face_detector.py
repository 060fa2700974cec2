"""Face detector: priors, decode and NMS wired together.

The network forward pass is not done here. A ``DetectionNetwork`` (any
inference runtime) produces the ``loc``, ``conf`` and ``iou`` outputs and
``FaceDetector`` turns them into ranked faces.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from dnnface.errors import InvalidInputError
from dnnface.ml.decoder import AnchorOutputs, Candidates, check_outputs, decode
from dnnface.ml.nms import suppress
from dnnface.ml.priors import count_priors, generate_priors

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import ArrayLike, NDArray

    from dnnface.config import Settings
    from dnnface.ml.priors import PriorBoxes

logger = logging.getLogger(__name__)

DEFAULT_SCORE_THRESHOLD: float = 0.9
DEFAULT_NMS_THRESHOLD: float = 0.3
DEFAULT_TOP_K: int = 5000

Point = tuple[float, float]


@dataclass(frozen=True)
class Landmarks:
    """Five facial landmarks in pixel coordinates."""

    right_eye: Point
    left_eye: Point
    nose_tip: Point
    mouth_right: Point
    mouth_left: Point

    def as_list(self) -> list[Point]:
        return [self.right_eye, self.left_eye, self.nose_tip, self.mouth_right, self.mouth_left]


@dataclass(frozen=True)
class FaceDetection:
    """A single detected face.

    ``box`` is ``(x, y, width, height)`` in pixels, ``(x, y)`` being the top-left corner.
    """

    box: tuple[float, float, float, float]
    landmarks: Landmarks
    score: float


class DetectionNetwork(Protocol):
    """Protocol for the inference runtime that produces the raw outputs."""

    def forward(self, blob: NDArray[np.float32]) -> tuple[ArrayLike, ArrayLike, ArrayLike]:
        """Run the network on a preprocessed input.

        Args:
            blob: NCHW input tensor sized to the detector's input resolution.

        Returns:
            ``(loc, conf, iou)`` with one row per prior, in prior order.
        """
        ...


def _check_thresholds(score_threshold: float, nms_threshold: float, top_k: int) -> None:
    if not 0.0 <= score_threshold <= 1.0:
        raise InvalidInputError(f"score_threshold must be in [0, 1], got {score_threshold}")
    if not 0.0 <= nms_threshold <= 1.0:
        raise InvalidInputError(f"nms_threshold must be in [0, 1], got {nms_threshold}")
    if top_k < 0:
        raise InvalidInputError(f"top_k must be non-negative, got {top_k}")


def _to_detections(candidates: Candidates) -> list[FaceDetection]:
    detections: list[FaceDetection] = []
    for box, points, score in zip(
        candidates.boxes.tolist(), candidates.landmarks.tolist(), candidates.scores.tolist()
    ):
        x, y, w, h = box
        landmarks = Landmarks(*(tuple(p) for p in points))
        detections.append(FaceDetection(box=(x, y, w, h), landmarks=landmarks, score=score))
    return detections


class FaceDetector:
    """Decodes raw detector outputs for a fixed input resolution.

    Priors are generated once at construction and shared read-only by every
    call, so one instance can serve concurrent calls from several threads.
    """

    def __init__(
        self,
        input_width: int,
        input_height: int,
        score_threshold: float = DEFAULT_SCORE_THRESHOLD,
        nms_threshold: float = DEFAULT_NMS_THRESHOLD,
        top_k: int = DEFAULT_TOP_K,
    ) -> None:
        _check_thresholds(score_threshold, nms_threshold, top_k)
        self._priors = generate_priors(input_width, input_height)
        self._score_threshold = score_threshold
        self._nms_threshold = nms_threshold
        self._top_k = top_k
        logger.info(
            "Face detector ready (input=%dx%d, priors=%d, layout=v%d)",
            input_width,
            input_height,
            len(self._priors),
            self._priors.layout_version,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> FaceDetector:
        """Build a detector from application settings."""
        return cls(
            input_width=settings.input_width,
            input_height=settings.input_height,
            score_threshold=settings.score_threshold,
            nms_threshold=settings.nms_threshold,
            top_k=settings.top_k,
        )

    @property
    def priors(self) -> PriorBoxes:
        return self._priors

    @property
    def input_size(self) -> tuple[int, int]:
        """``(width, height)`` the priors were generated for."""
        return self._priors.width, self._priors.height

    def decode_candidates(
        self,
        loc: ArrayLike,
        conf: ArrayLike,
        iou: ArrayLike,
        *,
        score_threshold: float | None = None,
        nms_threshold: float | None = None,
        top_k: int | None = None,
    ) -> Candidates:
        """Decode and suppress, returning the surviving candidates as arrays.

        Raises:
            InvalidInputError: If a threshold is out of range or an output
                does not have one row per prior.
        """
        score_thr = self._score_threshold if score_threshold is None else score_threshold
        nms_thr = self._nms_threshold if nms_threshold is None else nms_threshold
        k = self._top_k if top_k is None else top_k
        _check_thresholds(score_thr, nms_thr, k)

        outputs = AnchorOutputs.pair(self._priors, loc, conf, iou)
        return suppress(decode(outputs), score_thr, nms_thr, k)

    def detect(
        self,
        loc: ArrayLike,
        conf: ArrayLike,
        iou: ArrayLike,
        *,
        score_threshold: float | None = None,
        nms_threshold: float | None = None,
        top_k: int | None = None,
    ) -> list[FaceDetection]:
        """Detect faces from the raw network outputs.

        Args:
            loc: (N, 14) box and landmark deltas.
            conf: (N, 2) background and face scores.
            iou: (N,) or (N, 1) IoU-quality estimates.
            score_threshold: Per-call override of the minimum fused score.
            nms_threshold: Per-call override of the suppression IoU.
            top_k: Per-call override of the pre-suppression cap.

        Returns:
            Faces in descending score order.
        """
        candidates = self.decode_candidates(
            loc,
            conf,
            iou,
            score_threshold=score_threshold,
            nms_threshold=nms_threshold,
            top_k=top_k,
        )
        detections = _to_detections(candidates)
        logger.debug("Detected %d faces", len(detections))
        return detections

    def detect_rows(
        self,
        loc: ArrayLike,
        conf: ArrayLike,
        iou: ArrayLike,
        *,
        score_threshold: float | None = None,
        nms_threshold: float | None = None,
        top_k: int | None = None,
    ) -> NDArray[np.float32]:
        """Like :meth:`detect`, but return (K, 15) rows of box, landmarks and score."""
        candidates = self.decode_candidates(
            loc,
            conf,
            iou,
            score_threshold=score_threshold,
            nms_threshold=nms_threshold,
            top_k=top_k,
        )
        return candidates.as_rows()

    def forward(self, network: DetectionNetwork, blob: NDArray[np.float32]) -> list[FaceDetection]:
        """Run ``network`` on ``blob`` and decode its outputs with the default thresholds."""
        loc, conf, iou = network.forward(blob)
        return self.detect(loc, conf, iou)


def detect(
    image_width: int,
    image_height: int,
    loc: ArrayLike,
    conf: ArrayLike,
    iou: ArrayLike,
    score_threshold: float = DEFAULT_SCORE_THRESHOLD,
    nms_threshold: float = DEFAULT_NMS_THRESHOLD,
    top_k: int = DEFAULT_TOP_K,
) -> list[FaceDetection]:
    """One-off detection for an ``image_width`` x ``image_height`` input.

    Builds the priors for the given resolution on every call; keep a
    :class:`FaceDetector` around to reuse them. The outputs are checked
    against the prior count first, so a mismatched call fails without
    allocating priors.

    Raises:
        InvalidInputError: If a dimension, threshold or output shape is invalid.
    """
    _check_thresholds(score_threshold, nms_threshold, top_k)
    loc, conf, iou = check_outputs(count_priors(image_width, image_height), loc, conf, iou)
    detector = FaceDetector(image_width, image_height, score_threshold, nms_threshold, top_k)
    return detector.detect(loc, conf, iou)
