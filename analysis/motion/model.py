from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Tuple

import numpy as np

if TYPE_CHECKING:  # pragma: no cover
    from .events import MotionEvent

MIN_AREA_LIMIT = 10_000_000


def clamp_sensitivity(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def clamp_min_area(value: int) -> int:
    return max(1, min(MIN_AREA_LIMIT, int(value)))


@dataclass(frozen=True)
class DetectionConfig:
    """
    Live-tunable detection settings.

    Instances are immutable; updates produce a new object so the loop always
    reads one consistent config per cycle. Out-of-range values are clamped
    rather than rejected.
    """

    sensitivity: float = 0.9  # 0.0 .. 1.0, higher flags smaller changes; 0.9 -> threshold 25
    min_area: int = 500  # px; regions below this are noise
    device_index: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "sensitivity", clamp_sensitivity(self.sensitivity))
        object.__setattr__(self, "min_area", clamp_min_area(self.min_area))
        object.__setattr__(self, "device_index", max(0, int(self.device_index)))

    def with_sensitivity(self, value: float) -> DetectionConfig:
        if not math.isfinite(float(value)):
            raise ValueError(f"sensitivity must be finite, got {value!r}")
        return replace(self, sensitivity=value)

    def with_min_area(self, value: int) -> DetectionConfig:
        return replace(self, min_area=value)

    def with_device(self, index: int) -> DetectionConfig:
        return replace(self, device_index=index)


@dataclass(frozen=True)
class MotionConfig:
    """
    Fixed tuning points for the frame preprocessor and difference analyzer.

    These are not touched by control commands; they are read once from the
    application config.
    """

    # Per-pixel change threshold at sensitivity 0.0 (intensity units, 0..255);
    # close to full scale so that 0.0 only reacts to near-maximal change.
    base_threshold: float = 250.0
    # Gaussian kernel is (2r+1, 2r+1); 0 disables smoothing.
    blur_radius: int = 2
    # 4 or 8; 8 groups diagonal neighbours into one region.
    connectivity: int = 8
    # Optional 3x3 dilation passes on the binary mask before labelling.
    dilate_iters: int = 0

    def __post_init__(self) -> None:
        if self.connectivity not in (4, 8):
            raise ValueError(f"connectivity must be 4 or 8, got {self.connectivity!r}")
        object.__setattr__(self, "blur_radius", max(0, int(self.blur_radius)))
        object.__setattr__(self, "dilate_iters", max(0, int(self.dilate_iters)))


@dataclass(frozen=True)
class CoordinatorConfig:
    """Loop timing, snapshot policy and channel sizing for the coordinator."""

    frame_timeout_s: float = 2.0
    stall_retries: int = 1  # timeouts tolerated before the episode ends
    fps_window: int = 30  # cycles averaged for the FPS estimate
    status_interval_s: float = 0.0  # 0 publishes a status every cycle
    snapshot_on_motion: bool = True
    snapshot_cooldown_s: float = 2.0
    snapshot_dir: Optional[Path] = None  # None = current working directory
    event_queue_max: int = 256
    stop_timeout_s: float = 5.0


class DetectionState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(frozen=True)
class MotionRegion:
    """One connected blob of changed pixels, in frame coordinates."""

    x: int
    y: int
    width: int
    height: int
    area: int  # changed-pixel count, not bbox area

    def sort_key(self) -> Tuple[int, int, int]:
        return (-self.area, self.y, self.x)

    def as_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "w": self.width, "h": self.height, "area": self.area}


@dataclass(frozen=True, eq=False)
class PreprocessedFrame:
    gray: np.ndarray  # (H,W) uint8 intensity
    blur_radius: int
    pts_ms: float
    frame_id: int

    @property
    def shape(self) -> Tuple[int, int]:
        return (int(self.gray.shape[0]), int(self.gray.shape[1]))

    @property
    def height(self) -> int:
        return self.shape[0]

    @property
    def width(self) -> int:
        return self.shape[1]


@dataclass(frozen=True)
class StatusSnapshot:
    """Periodic summary published by the coordinator; superseded by the next one."""

    state: DetectionState
    fps: float = 0.0
    resolution: Optional[Tuple[int, int]] = None  # (width, height)
    motion_count: int = 0
    last_motion_ms: Optional[float] = None
    motion_present: bool = False
    frames_processed: int = 0
    event_backlog: bool = False
    ts_ms: float = 0.0


@dataclass
class MotionResult:
    """
    Per-frame output of the motion engine.

    ``regions`` is the analyzer's unfiltered output; ``qualifying`` is what
    survived the ``min_area`` filter.
    """

    frame_id: int
    pts_ms: float
    is_motion: bool = False
    regions: List[MotionRegion] = field(default_factory=list)
    qualifying: List[MotionRegion] = field(default_factory=list)
    event: Optional["MotionEvent"] = None
    area_frac: float = 0.0  # fraction of frame covered by qualifying regions
    skipped: Optional[str] = None  # "first", "resized" or "invalid"
