"""Per-frame motion pipeline.

Chains the preprocessor, the difference analyzer and the decision engine,
and keeps the only state that survives between frames: the previous
preprocessed frame and the current motion presence. The coordinator owns
one engine per camera and calls :meth:`MotionEngine.step` once per cycle.

Frame-level problems never escape ``step``:

- an invalid frame is dropped and the previous reference kept;
- a resolution change resets the previous reference to the new frame, so
  differencing resumes cleanly on the next compatible pair.
"""

from __future__ import annotations

import logging
from typing import Optional

from common.errors import DimensionMismatch, InvalidFrame
from common.frame import Frame

from .analyzer import analyze, motion_area_fraction
from .events import MotionDecisionEngine, qualifying_regions
from .model import DetectionConfig, MotionConfig, MotionResult, PreprocessedFrame
from .preprocess import preprocess

_LOG = logging.getLogger(__name__)


class MotionEngine:
    """Stateful frame-differencing motion engine."""

    def __init__(self, config: Optional[MotionConfig] = None) -> None:
        self._cfg = config or MotionConfig()
        self._decider = MotionDecisionEngine()
        self._prev: Optional[PreprocessedFrame] = None
        self._present = False

    # ------------------------------------------------------------------ #
    # State
    # ------------------------------------------------------------------ #

    @property
    def config(self) -> MotionConfig:
        return self._cfg

    @property
    def motion_present(self) -> bool:
        return self._present

    @property
    def has_reference(self) -> bool:
        return self._prev is not None

    @property
    def last_sequence(self) -> int:
        return self._decider.last_sequence

    def reset(self) -> None:
        """Forget the previous frame, presence and sequence counter."""
        self._prev = None
        self._present = False
        self._decider.reset()

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def step(self, frame: Frame, detection: DetectionConfig) -> MotionResult:
        """Process a single frame and return a `MotionResult`.

        Parameters
        ----------
        frame:
            The current video frame, carrying `img`, `pts_ms` and `frame_id`.
        detection:
            The config snapshot for this cycle; read once, never mid-cycle.
        """
        pts_ms = float(getattr(frame, "pts_ms", 0.0) or 0.0)
        frame_id = int(getattr(frame, "frame_id", 0) or 0)
        result = MotionResult(frame_id=frame_id, pts_ms=pts_ms, is_motion=self._present)

        try:
            curr = preprocess(frame, self._cfg.blur_radius)
        except InvalidFrame as exc:
            _LOG.warning("Discarding frame %d: %s", frame_id, exc)
            result.skipped = "invalid"
            return result

        prev = self._prev
        if prev is None:
            # Cannot detect motion on the first frame.
            self._prev = curr
            result.skipped = "first"
            return result

        try:
            regions = analyze(prev, curr, detection.sensitivity, self._cfg)
        except DimensionMismatch as exc:
            _LOG.info("Resetting motion reference: %s", exc)
            self._prev = curr
            result.skipped = "resized"
            return result

        present, event = self._decider.decide(
            regions,
            detection,
            self._present,
            ts_ms=pts_ms,
            frame_id=frame_id,
        )
        self._present = present
        self._prev = curr

        result.is_motion = present
        result.regions = list(regions)
        result.qualifying = qualifying_regions(regions, detection.min_area)
        result.event = event
        result.area_frac = motion_area_fraction(result.qualifying, curr.shape)
        return result
