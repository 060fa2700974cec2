"""Greedy single-class non-maximum suppression."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

    from dnnface.ml.decoder import Candidates

logger = logging.getLogger(__name__)


def _to_pixel_rects(boxes: ArrayLike) -> NDArray[np.float64]:
    # Integer rectangles: coordinates truncate toward zero.
    return np.trunc(np.asarray(boxes, dtype=np.float64).reshape(-1, 4))


def box_iou(box: ArrayLike, boxes: ArrayLike) -> NDArray[np.float64]:
    """IoU between one ``(x, y, w, h)`` box and N boxes, on half-open pixel rectangles."""
    a = _to_pixel_rects(box)[0]
    bs = _to_pixel_rects(boxes)
    return _iou_1vn(a, bs)


def _iou_1vn(a: NDArray[np.float64], bs: NDArray[np.float64]) -> NDArray[np.float64]:
    x1 = np.maximum(a[0], bs[:, 0])
    y1 = np.maximum(a[1], bs[:, 1])
    x2 = np.minimum(a[0] + a[2], bs[:, 0] + bs[:, 2])
    y2 = np.minimum(a[1] + a[3], bs[:, 1] + bs[:, 3])
    inter = np.maximum(x2 - x1, 0.0) * np.maximum(y2 - y1, 0.0)

    area_a = max(a[2], 0.0) * max(a[3], 0.0)
    area_b = np.maximum(bs[:, 2], 0.0) * np.maximum(bs[:, 3], 0.0)
    union = area_a + area_b - inter

    ious = np.zeros_like(inter)
    np.divide(inter, union, out=ious, where=union > 0)
    return ious


def nms_boxes(
    boxes: ArrayLike,
    scores: ArrayLike,
    score_threshold: float,
    nms_threshold: float,
    top_k: int = 0,
) -> NDArray[np.intp]:
    """Classic greedy NMS.

    Args:
        boxes: (N, 4) ``(x, y, w, h)`` in pixels.
        scores: (N,) confidence per box.
        score_threshold: Boxes scoring below this never survive.
        nms_threshold: Followers with IoU above this against an accepted box are dropped.
        top_k: Keep at most this many eligible boxes before suppression (0 = no cap).

    Returns:
        Indices into ``boxes`` of the kept boxes, in acceptance order (score
        descending, ties in input order).
    """
    score_arr = np.asarray(scores, dtype=np.float32).reshape(-1)
    rects = _to_pixel_rects(boxes)

    eligible = np.flatnonzero(score_arr >= score_threshold)
    if eligible.size == 0:
        return np.empty((0,), dtype=np.intp)

    # Stable sort keeps the input order among equal scores.
    order = eligible[np.argsort(-score_arr[eligible], kind="stable")]
    if top_k > 0:
        order = order[:top_k]

    if order.size == 1:
        return order.astype(np.intp)

    keep: list[int] = []
    while order.size > 0:
        i = int(order[0])
        keep.append(i)
        if order.size == 1:
            break

        ious = _iou_1vn(rects[i], rects[order[1:]])
        order = order[1:][ious <= nms_threshold]

    return np.asarray(keep, dtype=np.intp)


def suppress(
    candidates: Candidates,
    score_threshold: float,
    nms_threshold: float,
    top_k: int = 0,
) -> Candidates:
    """Run :func:`nms_boxes` over decoded candidates and return the survivors."""
    keep = nms_boxes(candidates.boxes, candidates.scores, score_threshold, nms_threshold, top_k)
    logger.debug("NMS kept %d of %d candidates", keep.size, len(candidates))
    return candidates.take(keep)
