"""Per-anchor decoding of the ``loc``/``conf``/``iou`` network outputs.

Each row ``i`` of the three outputs belongs to prior ``i``. ``AnchorOutputs``
keeps the priors and the rows together so the pairing is checked once, up front.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from dnnface.errors import InvalidInputError

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

    from dnnface.ml.priors import PriorBoxes

logger = logging.getLogger(__name__)

VARIANCES: tuple[float, float] = (0.1, 0.2)

LOC_WIDTH: int = 14
CONF_WIDTH: int = 2
NUM_LANDMARKS: int = 5


def _as_rows(name: str, values: ArrayLike, num_rows: int, width: int) -> NDArray[np.float32]:
    try:
        array = np.asarray(values, dtype=np.float32)
    except (TypeError, ValueError) as exc:
        raise InvalidInputError(f"'{name}' must be a rectangular array of numbers: {exc}") from exc
    if array.ndim == 1 and width > 1 and array.size == num_rows * width:
        array = array.reshape(num_rows, width)
    elif array.ndim > 2:
        # Leading batch axis of size 1, as produced by most runtimes.
        array = array.reshape(-1, array.shape[-1])

    if width == 1:
        array = array.reshape(-1)
        if array.shape[0] != num_rows:
            raise InvalidInputError(f"'{name}' has {array.shape[0]} rows, expected {num_rows} (one per prior)")
        return array

    if array.ndim != 2 or array.shape[1] != width:
        raise InvalidInputError(f"'{name}' must have {width} values per anchor, got shape {array.shape}")
    if array.shape[0] != num_rows:
        raise InvalidInputError(f"'{name}' has {array.shape[0]} rows, expected {num_rows} (one per prior)")
    return array


def check_outputs(
    num_priors: int, loc: ArrayLike, conf: ArrayLike, iou: ArrayLike
) -> tuple[NDArray[np.float32], NDArray[np.float32], NDArray[np.float32]]:
    """Coerce the three outputs to float32 rows, ``num_priors`` rows each.

    Needs only the prior count, so callers can reject mismatched outputs
    before building priors for an unfamiliar resolution.
    """
    return (
        _as_rows("loc", loc, num_priors, LOC_WIDTH),
        _as_rows("conf", conf, num_priors, CONF_WIDTH),
        _as_rows("iou", iou, num_priors, 1),
    )


@dataclass(frozen=True, eq=False)
class AnchorOutputs:
    """Priors paired row-for-row with the three network outputs."""

    priors: PriorBoxes
    loc: NDArray[np.float32]
    conf: NDArray[np.float32]
    iou: NDArray[np.float32]

    @classmethod
    def pair(cls, priors: PriorBoxes, loc: ArrayLike, conf: ArrayLike, iou: ArrayLike) -> AnchorOutputs:
        """Validate and pair raw outputs with ``priors``.

        ``loc`` is (N, 14), ``conf`` is (N, 2) and ``iou`` is (N,) or (N, 1).
        Flat buffers and a leading batch axis of one are accepted.

        Raises:
            InvalidInputError: If any output is ragged or does not have one row per prior.
        """
        loc_rows, conf_rows, iou_rows = check_outputs(len(priors), loc, conf, iou)
        return cls(priors=priors, loc=loc_rows, conf=conf_rows, iou=iou_rows)

    def __len__(self) -> int:
        return len(self.priors)


@dataclass(frozen=True, eq=False)
class Candidates:
    """Decoded detections, one per anchor (before suppression) or per kept face (after).

    ``boxes`` is (N, 4) ``(x, y, w, h)`` in pixels with ``(x, y)`` the top-left
    corner, ``landmarks`` is (N, 5, 2) in pixels and ``scores`` is (N,).
    """

    boxes: NDArray[np.float32]
    landmarks: NDArray[np.float32]
    scores: NDArray[np.float32]

    def __len__(self) -> int:
        return int(self.scores.shape[0])

    def take(self, indices: ArrayLike) -> Candidates:
        """Return the candidates at ``indices``, in that order."""
        idx = np.asarray(indices, dtype=np.intp)
        return Candidates(boxes=self.boxes[idx], landmarks=self.landmarks[idx], scores=self.scores[idx])

    def as_rows(self) -> NDArray[np.float32]:
        """Flatten to (N, 15) rows: box, the five landmark points, score."""
        return np.concatenate(
            [
                self.boxes,
                self.landmarks.reshape(-1, NUM_LANDMARKS * 2),
                self.scores.reshape(-1, 1),
            ],
            axis=1,
        ).astype(np.float32, copy=False)


def fuse_scores(face_conf: ArrayLike, iou: ArrayLike) -> NDArray[np.float32]:
    """Geometric mean of the face score and the IoU estimate clamped to [0, 1]."""
    cls_score = np.asarray(face_conf, dtype=np.float32)
    iou_score = np.clip(np.asarray(iou, dtype=np.float32), 0.0, 1.0)
    return np.sqrt(cls_score * iou_score)


def decode(outputs: AnchorOutputs) -> Candidates:
    """Decode every anchor into a pixel-space candidate, preserving anchor order."""
    priors = outputs.priors.boxes
    img_w = float(outputs.priors.width)
    img_h = float(outputs.priors.height)
    loc = outputs.loc
    center_var, size_var = VARIANCES

    p_cx = priors[:, 0]
    p_cy = priors[:, 1]
    p_w = priors[:, 2]
    p_h = priors[:, 3]

    cx = (p_cx + loc[:, 0] * center_var * p_w) * img_w
    cy = (p_cy + loc[:, 1] * center_var * p_h) * img_h
    # Width decodes with the center variance, height with the size variance.
    w = p_w * np.exp(loc[:, 2] * center_var) * img_w
    h = p_h * np.exp(loc[:, 3] * size_var) * img_h
    boxes = np.stack([cx - w / 2, cy - h / 2, w, h], axis=1).astype(np.float32)

    # Landmark deltas alternate x, y for: right eye, left eye, nose tip, right and left mouth corners.
    deltas = loc[:, 4:].reshape(-1, NUM_LANDMARKS, 2)
    xs = (p_cx[:, None] + deltas[:, :, 0] * center_var * p_w[:, None]) * img_w
    ys = (p_cy[:, None] + deltas[:, :, 1] * center_var * p_h[:, None]) * img_h
    landmarks = np.stack([xs, ys], axis=2).astype(np.float32)

    scores = fuse_scores(outputs.conf[:, 1], outputs.iou)

    logger.debug("Decoded %d anchors", scores.shape[0])
    return Candidates(boxes=boxes, landmarks=landmarks, scores=scores.astype(np.float32))
