"""Error taxonomy shared by the capture, analysis and record packages.

Every class carries a stable ``code`` so observers (CLI printer, control
panel) can report failures without depending on exception types.
"""

from __future__ import annotations


class MotionWatchError(Exception):
    """Base class for all motion-watch errors."""

    code = "error"


class InvalidFrame(MotionWatchError):
    """Malformed frame (missing, zero-sized or wrongly shaped image)."""

    code = "InvalidFrame"


class DimensionMismatch(MotionWatchError):
    """Previous and current preprocessed frames differ in size."""

    code = "DimensionMismatch"

    def __init__(self, prev_shape: tuple, curr_shape: tuple) -> None:
        super().__init__(f"frame size changed from {prev_shape} to {curr_shape}")
        self.prev_shape = prev_shape
        self.curr_shape = curr_shape


class CameraError(MotionWatchError):
    """Base class for camera collaborator failures."""

    code = "CameraError"


class CameraUnavailable(CameraError):
    """The device could not be opened (absent, busy or permission denied)."""

    code = "CameraUnavailable"


class FrameTimeout(CameraError):
    """A single ``next_frame`` call did not produce a frame in time."""

    code = "Timeout"


class CameraStalled(CameraError):
    """Frame fetches kept timing out past the retry budget."""

    code = "CameraStalled"


class CameraLost(CameraError):
    """The device disappeared or the capture backend stopped."""

    code = "CameraLost"


class SnapshotError(MotionWatchError):
    """Writing a snapshot image failed."""

    code = "IoError"


IoError = SnapshotError


class EventBacklog(MotionWatchError):
    """An observer is not keeping up with published events."""

    code = "EventBacklog"
