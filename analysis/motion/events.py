from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .model import DetectionConfig, MotionRegion


@dataclass(frozen=True)
class MotionEvent:
    """
    One motion onset: the no-motion -> motion edge of a single episode.

    This is the main unit that downstream components (CLI printer, event
    log, control panel) consume.
    """

    # Strictly increasing within an episode, starting at 1.
    sequence: int
    ts_ms: float
    frame_id: int

    # Regions from the triggering frame that passed the min_area filter,
    # largest first.
    regions: Tuple[MotionRegion, ...] = field(default_factory=tuple)

    # True when a snapshot capture was scheduled for this event.
    snapshot: bool = False
    device_index: int = 0

    @property
    def total_area(self) -> int:
        return sum(r.area for r in self.regions)

    def as_dict(self) -> dict:
        return {
            "type": "motion_event",
            "sequence": int(self.sequence),
            "ts_ms": float(self.ts_ms),
            "frame_id": int(self.frame_id),
            "device_index": int(self.device_index),
            "snapshot": bool(self.snapshot),
            "regions": [r.as_dict() for r in self.regions],
        }


def qualifying_regions(regions: Sequence[MotionRegion], min_area: int) -> List[MotionRegion]:
    """Regions with ``area >= min_area`` (inclusive), ordering preserved."""
    return [r for r in regions if r.area >= int(min_area)]


def decide(
    regions: Sequence[MotionRegion],
    config: DetectionConfig,
    prior: bool,
    sequence: int,
    ts_ms: float = 0.0,
    frame_id: int = 0,
) -> Tuple[bool, Optional[MotionEvent]]:
    """
    Pure decision step.

    Returns the new presence flag and, on a False -> True edge only, a
    MotionEvent numbered ``sequence``. Continuous motion yields one event at
    onset; re-triggering needs an intervening cycle without qualifying
    regions.
    """
    survivors = qualifying_regions(regions, config.min_area)
    present = bool(survivors)
    if not present or prior:
        return present, None
    survivors.sort(key=MotionRegion.sort_key)
    ev = MotionEvent(
        sequence=int(sequence),
        ts_ms=float(ts_ms),
        frame_id=int(frame_id),
        regions=tuple(survivors),
        device_index=config.device_index,
    )
    return present, ev


class MotionDecisionEngine:
    """
    Edge-triggered motion decisions with an episode sequence counter.

    API:
        engine = MotionDecisionEngine()
        present, event = engine.decide(regions, config, prior, ts_ms)
        engine.reset()   # at the start of each episode
    """

    def __init__(self) -> None:
        self._last_sequence = 0

    @property
    def last_sequence(self) -> int:
        return self._last_sequence

    def reset(self) -> None:
        self._last_sequence = 0

    def decide(
        self,
        regions: Sequence[MotionRegion],
        config: DetectionConfig,
        prior: bool,
        ts_ms: float = 0.0,
        frame_id: int = 0,
    ) -> Tuple[bool, Optional[MotionEvent]]:
        present, ev = decide(
            regions,
            config,
            prior,
            sequence=self._last_sequence + 1,
            ts_ms=ts_ms,
            frame_id=frame_id,
        )
        if ev is not None:
            self._last_sequence = ev.sequence
        return present, ev
