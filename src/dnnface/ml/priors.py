"""Prior (anchor) generation.

Priors are laid out level by level (strides 8, 16, 32, 64), then row by row,
column by column, and finally by anchor size. The network emits its
``loc``/``conf``/``iou`` rows in the same order, so the layout is a contract
between the two stages and is versioned by ``PRIOR_LAYOUT_VERSION``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from dnnface.errors import InvalidInputError

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

PRIOR_LAYOUT_VERSION: int = 1

MIN_SIZES: tuple[tuple[int, ...], ...] = (
    (10, 16, 24),
    (32, 48),
    (64, 96),
    (128, 192, 256),
)
STEPS: tuple[int, ...] = (8, 16, 32, 64)


@dataclass(frozen=True, eq=False)
class PriorBoxes:
    """Ordered priors for one input resolution.

    ``boxes`` has shape (N, 4) with columns ``(cx, cy, base_w, base_h)``,
    normalized to the image size. The array is read-only.
    """

    width: int
    height: int
    boxes: NDArray[np.float32]
    layout_version: int = PRIOR_LAYOUT_VERSION

    def __len__(self) -> int:
        return int(self.boxes.shape[0])


def _check_dimensions(width: int, height: int) -> None:
    if width <= 0 or height <= 0:
        raise InvalidInputError(f"Image dimensions must be positive, got {width}x{height}")


def feature_map_sizes(width: int, height: int) -> list[tuple[int, int]]:
    """Return ``(w, h)`` of the feature maps at levels 3 to 6.

    The first halving rounds up (odd-size tolerant stem), every later one truncates.
    """
    _check_dimensions(width, height)
    w = ((width + 1) // 2) // 2
    h = ((height + 1) // 2) // 2
    sizes: list[tuple[int, int]] = []
    for _ in STEPS:
        w, h = w // 2, h // 2
        sizes.append((w, h))
    return sizes


def count_priors(width: int, height: int) -> int:
    """Number of priors ``generate_priors(width, height)`` would return, without building them."""
    return sum(
        fm_w * fm_h * len(min_sizes)
        for (fm_w, fm_h), min_sizes in zip(feature_map_sizes(width, height), MIN_SIZES)
    )


def generate_priors(width: int, height: int) -> PriorBoxes:
    """Generate the ordered prior list for a ``width`` x ``height`` input.

    Raises:
        InvalidInputError: If either dimension is not positive.
    """
    _check_dimensions(width, height)

    levels: list[NDArray[np.float32]] = []
    for (fm_w, fm_h), step, min_sizes in zip(feature_map_sizes(width, height), STEPS, MIN_SIZES):
        num_sizes = len(min_sizes)
        # Index grid in (row, column, size) order, flattened row-major.
        rows, cols, size_idx = np.meshgrid(
            np.arange(fm_h, dtype=np.float64),
            np.arange(fm_w, dtype=np.float64),
            np.arange(num_sizes),
            indexing="ij",
        )
        sizes = np.asarray(min_sizes, dtype=np.float64)[size_idx]

        level = np.empty((fm_h * fm_w * num_sizes, 4), dtype=np.float32)
        level[:, 0] = ((cols + 0.5) * step / width).ravel()
        level[:, 1] = ((rows + 0.5) * step / height).ravel()
        level[:, 2] = (sizes / width).ravel()
        level[:, 3] = (sizes / height).ravel()
        levels.append(level)

    boxes = np.concatenate(levels, axis=0)
    boxes.flags.writeable = False

    logger.debug("Generated %d priors for %dx%d input", boxes.shape[0], width, height)
    return PriorBoxes(width=width, height=height, boxes=boxes)
