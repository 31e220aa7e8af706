"""Frame preprocessor: colour frame -> blurred grayscale intensity grid."""

from __future__ import annotations

import cv2
import numpy as np

from common.errors import InvalidFrame
from common.frame import Frame

from .model import PreprocessedFrame


def _to_gray(img: np.ndarray) -> np.ndarray:
    if img.ndim == 2:
        return img
    channels = img.shape[2]
    if channels == 1:
        return img[:, :, 0]
    if channels == 3:
        return cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    if channels == 4:
        return cv2.cvtColor(img, cv2.COLOR_BGRA2GRAY)
    raise InvalidFrame(f"unsupported channel count: {channels}")


def preprocess(frame: Frame, blur_radius: int = 2) -> PreprocessedFrame:
    """Convert ``frame`` to a smoothed single-channel intensity grid.

    Uses the BT.601 luma weights built into ``cv2.cvtColor`` followed by a
    ``(2r+1) x (2r+1)`` Gaussian blur to suppress sensor noise before
    differencing. Pure function of its input.

    Raises
    ------
    InvalidFrame
        If the frame has no image, a zero dimension, or an unsupported shape.
    """
    img = getattr(frame, "img", None)
    if img is None or not hasattr(img, "ndim"):
        raise InvalidFrame("frame has no image data")
    arr = np.asarray(img)
    if arr.ndim not in (2, 3) or arr.size == 0 or arr.shape[0] == 0 or arr.shape[1] == 0:
        raise InvalidFrame(f"malformed frame shape: {arr.shape}")
    if arr.dtype != np.uint8:
        arr = np.clip(arr, 0, 255).astype(np.uint8)

    gray = _to_gray(arr)
    radius = max(0, int(blur_radius))
    if radius > 0:
        k = 2 * radius + 1
        gray = cv2.GaussianBlur(gray, (k, k), 0)
    else:
        gray = gray.copy()

    return PreprocessedFrame(
        gray=gray,
        blur_radius=radius,
        pts_ms=float(frame.pts_ms),
        frame_id=int(frame.frame_id),
    )
