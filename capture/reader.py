from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import List, Literal, Optional, Protocol, Tuple

import cv2
import numpy as np

from common.errors import CameraLost, CameraUnavailable
from common.time import now_ms

from .nonblocking_adapter import CameraHandle, DropPolicy

_LOG = logging.getLogger(__name__)

SourceKind = Literal["camera", "synthetic"]


class FrameStream(Protocol):
    def start(self) -> None: ...
    def read(self) -> Optional[Tuple[np.ndarray, float, int]]: ...  # (frame_bgr, pts_ms, frame_id)
    def close(self) -> None: ...


@dataclass(frozen=True)
class DeviceInfo:
    index: int
    width: int
    height: int

    def __str__(self) -> str:
        return f"Camera {self.index} - {self.width}x{self.height}"


class SyntheticStream:
    """
    A tiny source that synthesizes gray frames at a fixed rate. Useful for
    tests/dev without a camera.

    When ``blob_period`` > 0 a bright square is shown for ``blob_frames``
    frames out of every ``blob_period``, so the detector has something to
    find.
    """

    def __init__(
        self,
        width: int = 640,
        height: int = 480,
        fps: float = 30.0,
        level: int = 96,
        blob_size: int = 80,
        blob_period: int = 90,
        blob_frames: int = 30,
    ):
        self.width, self.height, self.fps = width, height, fps
        self.level = level
        self.blob_size = blob_size
        self.blob_period = blob_period
        self.blob_frames = blob_frames
        self._running = False
        self._next_ts = 0.0
        self._frame_id = 0

    def _render(self, fid: int) -> np.ndarray:
        frame = np.full((self.height, self.width, 3), self.level, dtype=np.uint8)
        if self.blob_period > 0 and (fid % self.blob_period) < self.blob_frames:
            s = min(self.blob_size, self.width, self.height)
            # drift the square so consecutive frames differ
            step = (fid // self.blob_period) * s
            x = step % max(1, self.width - s)
            y = (self.height - s) // 2
            frame[y : y + s, x : x + s] = 255
        return frame

    def start(self) -> None:
        self._running = True
        self._next_ts = time.time() * 1000.0

    def read(self) -> Optional[Tuple[np.ndarray, float, int]]:
        if not self._running:
            raise CameraLost("synthetic stream is closed")
        now = time.time() * 1000.0
        if now < self._next_ts:
            return None
        fid = self._frame_id
        self._frame_id += 1
        self._next_ts += 1000.0 / max(self.fps, 0.001)
        return self._render(fid), now, fid

    def close(self) -> None:
        self._running = False


class OpenCvStream:
    """``cv2.VideoCapture`` device reader.

    ``start`` fails with :class:`CameraUnavailable` if the device cannot be
    opened or does not deliver a first frame; the device is released before
    raising.
    """

    def __init__(self, index: int, width: int = 640, height: int = 480, fps: float = 30.0):
        self.index = int(index)
        self.width, self.height, self.fps = width, height, fps
        self._cap: Optional[cv2.VideoCapture] = None
        self._primed: Optional[np.ndarray] = None
        self._frame_id = 0

    def start(self) -> None:
        cap = cv2.VideoCapture(self.index)
        if not cap.isOpened():
            cap.release()
            raise CameraUnavailable(
                f"Failed to open camera device {self.index} - "
                "check if device exists and user has permissions"
            )
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, float(self.width))
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, float(self.height))
        cap.set(cv2.CAP_PROP_FPS, float(self.fps))

        ok, img = cap.read()
        if not ok or img is None or img.size == 0:
            cap.release()
            raise CameraUnavailable(f"camera device {self.index} delivered no initial frame")
        self._cap = cap
        self._primed = img

    def read(self) -> Optional[Tuple[np.ndarray, float, int]]:
        cap = self._cap
        if cap is None:
            raise CameraLost(f"camera device {self.index} is not open")
        if self._primed is not None:
            img, self._primed = self._primed, None
        else:
            ok, img = cap.read()
            if not ok or img is None:
                if not cap.isOpened():
                    raise CameraLost(f"camera device {self.index} was disconnected")
                return None
        fid = self._frame_id
        self._frame_id += 1
        return img, now_ms(), fid

    def close(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None
        self._primed = None


# --- Discovery ---------------------------------------------------------------


@dataclass
class CameraConfig:
    source: SourceKind = "camera"  # or "synthetic"
    width: int = 640
    height: int = 480
    fps: float = 30.0
    queue_max: int = 3
    drop_policy: DropPolicy = "drop_old"
    start_timeout_s: float = 5.0
    close_timeout_s: float = 0.75
    max_devices: int = 4  # indices checked by list_devices()
    synthetic_devices: int = 1


class CameraFactory:
    """Camera collaborator: enumerate devices and open exclusive handles."""

    def __init__(self, config: Optional[CameraConfig] = None) -> None:
        self._cfg = config or CameraConfig()

    @property
    def config(self) -> CameraConfig:
        return self._cfg

    def _make_stream(self, index: int) -> FrameStream:
        cfg = self._cfg
        if cfg.source == "synthetic":
            if not 0 <= index < cfg.synthetic_devices:
                raise CameraUnavailable(f"no synthetic camera with index {index}")
            return SyntheticStream(width=cfg.width, height=cfg.height, fps=cfg.fps)
        if index < 0:
            raise CameraUnavailable(f"invalid camera index {index}")
        return OpenCvStream(index, width=cfg.width, height=cfg.height, fps=cfg.fps)

    def open(self, index: int) -> CameraHandle:
        """Open device ``index`` and start grabbing frames.

        Raises
        ------
        CameraUnavailable
            If the device is absent, busy, or does not deliver frames.
        """
        stream = self._make_stream(int(index))
        handle = CameraHandle(
            stream,
            device_index=int(index),
            queue_max=self._cfg.queue_max,
            drop_policy=self._cfg.drop_policy,
            start_timeout_s=self._cfg.start_timeout_s,
            close_timeout_s=self._cfg.close_timeout_s,
        )
        try:
            handle.start()
        except CameraUnavailable:
            handle.close()
            raise
        except Exception as exc:
            handle.close()
            raise CameraUnavailable(f"camera device {index} failed to start: {exc}") from exc
        _LOG.info("Opened camera device %d (%s)", index, self._cfg.source)
        return handle

    def list_devices(self) -> List[DeviceInfo]:
        """Try the first ``max_devices`` indices and report what opens."""
        cfg = self._cfg
        count = cfg.synthetic_devices if cfg.source == "synthetic" else cfg.max_devices
        found: List[DeviceInfo] = []
        for i in range(count):
            try:
                with self.open(i) as handle:
                    frame = handle.next_frame(timeout=cfg.start_timeout_s)
                    found.append(DeviceInfo(index=i, width=frame.width, height=frame.height))
            except Exception as exc:
                _LOG.debug("Camera %d not usable: %s", i, exc)
        return found
