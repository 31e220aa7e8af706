"""Public exports for the motion analysis package."""

from __future__ import annotations

from .analyzer import analyze, binarize_threshold
from .channel import DetectionNotice, StateChannel, Subscription
from .commands import (
    CommandAck,
    SetDevice,
    SetMinArea,
    SetSensitivity,
    SnapshotNow,
    Start,
    Stop,
)
from .coordinator import DetectionCoordinator
from .engine import MotionEngine
from .events import MotionDecisionEngine, MotionEvent, decide, qualifying_regions
from .model import (
    CoordinatorConfig,
    DetectionConfig,
    DetectionState,
    MotionConfig,
    MotionRegion,
    MotionResult,
    PreprocessedFrame,
    StatusSnapshot,
)
from .preprocess import preprocess

__all__ = [
    "analyze",
    "binarize_threshold",
    "decide",
    "preprocess",
    "qualifying_regions",
    "CommandAck",
    "CoordinatorConfig",
    "DetectionConfig",
    "DetectionCoordinator",
    "DetectionNotice",
    "DetectionState",
    "MotionConfig",
    "MotionDecisionEngine",
    "MotionEngine",
    "MotionEvent",
    "MotionRegion",
    "MotionResult",
    "PreprocessedFrame",
    "SetDevice",
    "SetMinArea",
    "SetSensitivity",
    "SnapshotNow",
    "Start",
    "StateChannel",
    "StatusSnapshot",
    "Stop",
    "Subscription",
]

__version__ = "0.1.0"
