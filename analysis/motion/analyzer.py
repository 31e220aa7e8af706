"""Difference & contour analyzer.

Compares two preprocessed frames and returns every connected region of
change, unfiltered by area. Area gating belongs to the decision engine so
this output can be inspected and tested independently of ``min_area``.
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

import cv2
import numpy as np

from common.errors import DimensionMismatch

from .model import MotionConfig, MotionRegion, PreprocessedFrame, clamp_sensitivity

_KERNEL_3X3 = np.ones((3, 3), np.uint8)


def binarize_threshold(sensitivity: float, base_threshold: float = 250.0) -> float:
    """Map sensitivity in [0, 1] to a per-pixel intensity-change threshold.

    ``base_threshold * (1 - sensitivity)`` clamped to [0, 255]; never rises
    as sensitivity rises. At 1.0 any non-zero change counts.
    """
    thr = float(base_threshold) * (1.0 - clamp_sensitivity(sensitivity))
    return max(0.0, min(255.0, thr))


def change_mask(
    prev: PreprocessedFrame,
    curr: PreprocessedFrame,
    sensitivity: float,
    config: MotionConfig,
) -> np.ndarray:
    """Binary (0/255) mask of pixels whose change exceeds the threshold."""
    if prev.shape != curr.shape:
        raise DimensionMismatch(prev.shape, curr.shape)

    diff = cv2.absdiff(prev.gray, curr.gray)
    thr = binarize_threshold(sensitivity, config.base_threshold)
    # THRESH_BINARY keeps strictly-greater pixels
    _, mask = cv2.threshold(diff, thr, 255, cv2.THRESH_BINARY)
    if config.dilate_iters > 0:
        mask = cv2.dilate(mask, _KERNEL_3X3, iterations=int(config.dilate_iters))
    return mask


def regions_from_mask(mask: np.ndarray, connectivity: int = 8) -> List[MotionRegion]:
    num, _labels, stats, _ = cv2.connectedComponentsWithStats(mask, connectivity=connectivity)
    out: List[MotionRegion] = []
    for i in range(1, num):  # label 0 is background
        x, y, w, h, a = stats[i]
        out.append(MotionRegion(x=int(x), y=int(y), width=int(w), height=int(h), area=int(a)))
    out.sort(key=MotionRegion.sort_key)
    return out


def analyze(
    prev: PreprocessedFrame,
    curr: PreprocessedFrame,
    sensitivity: float,
    config: MotionConfig = MotionConfig(),
) -> List[MotionRegion]:
    """Return all regions of change between ``prev`` and ``curr``.

    Regions are ordered by area (largest first), ties broken by top-left
    raster position.

    Raises
    ------
    DimensionMismatch
        If the two frames do not share the same (height, width).
    """
    mask = change_mask(prev, curr, sensitivity, config)
    return regions_from_mask(mask, connectivity=config.connectivity)


def motion_area_fraction(regions: Sequence[MotionRegion], shape: Tuple[int, int]) -> float:
    total = int(shape[0]) * int(shape[1])
    if total <= 0:
        return 0.0
    return float(sum(r.area for r in regions)) / float(total)
