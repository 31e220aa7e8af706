from __future__ import annotations

import contextlib
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Literal, Optional, Protocol, Tuple

import numpy as np  # type: ignore

from common.errors import CameraLost, CameraUnavailable, FrameTimeout
from common.frame import Frame

DropPolicy = Literal["drop_new", "drop_old"]

_LOG = logging.getLogger(__name__)


class FrameStream(Protocol):
    def start(self) -> None: ...
    def read(self) -> Optional[Tuple[np.ndarray, float, int]]: ...
    def close(self) -> None: ...


@dataclass
class HandleStats:
    frames_in: int = 0
    frames_out: int = 0
    drops: int = 0
    read_errors: int = 0


class CameraHandle:
    """
    Exclusive handle on one camera. Wraps any FrameStream so that:
      - start() runs inner.start() in a grab thread and propagates its error
      - next_frame(timeout) blocks at most ``timeout`` seconds
      - close() stops the grab thread without hanging the caller
    Also usable as a context manager; leaving the block releases the device.
    """

    def __init__(
        self,
        inner: FrameStream,
        device_index: int = 0,
        queue_max: int = 3,
        drop_policy: DropPolicy = "drop_old",
        start_timeout_s: float = 5.0,
        close_timeout_s: float = 0.75,
    ):
        self._inner = inner
        self.device_index = int(device_index)
        self._q: Deque[Tuple[np.ndarray, float, int]] = deque(maxlen=max(1, queue_max))
        self._drop = drop_policy
        self._cond = threading.Condition()
        self._ev = threading.Event()
        self._thr: Optional[threading.Thread] = None
        self._start_timeout_s = start_timeout_s
        self._close_timeout_s = close_timeout_s
        self._started = threading.Event()
        self._start_exc: Optional[BaseException] = None
        self._error: Optional[BaseException] = None
        self._stats = HandleStats()

    def __enter__(self) -> CameraHandle:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def stats(self) -> HandleStats:
        return self._stats

    @property
    def is_open(self) -> bool:
        return self._thr is not None and self._thr.is_alive()

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._ev.set()
        self._thr = threading.Thread(
            target=self._worker, name=f"camera-{self.device_index}-grab", daemon=True
        )
        self._thr.start()
        if not self._started.wait(self._start_timeout_s):
            self._ev.clear()
            raise CameraUnavailable(
                f"camera device {self.device_index} not ready after {self._start_timeout_s:.2f}s"
            )
        if self._start_exc:
            raise self._start_exc

    def _worker(self) -> None:
        try:
            try:
                self._inner.start()
            except BaseException as e:
                self._start_exc = e
            finally:
                self._started.set()

            while self._ev.is_set() and self._start_exc is None:
                item = None
                try:
                    item = self._inner.read()
                except CameraLost as e:
                    with self._cond:
                        self._error = e
                        self._cond.notify_all()
                    return
                except Exception as e:
                    self._stats.read_errors += 1
                    _LOG.debug("camera %d read failed: %s", self.device_index, e)
                    time.sleep(0.001)
                if item is None:
                    # yield a tick to avoid hot spinning
                    time.sleep(0.001)
                    continue
                with self._cond:
                    self._stats.frames_in += 1
                    if len(self._q) == self._q.maxlen:
                        self._stats.drops += 1
                        if self._drop == "drop_old":
                            self._q.popleft()
                            self._q.append(item)
                    else:
                        self._q.append(item)
                    self._cond.notify_all()
        finally:
            with contextlib.suppress(Exception):
                self._inner.close()
            with self._cond:
                self._cond.notify_all()

    def next_frame(self, timeout: float) -> Frame:
        """Return the next captured frame.

        Raises
        ------
        FrameTimeout
            No frame arrived within ``timeout`` seconds.
        CameraLost
            The device went away or the handle was closed.
        """
        with self._cond:
            self._cond.wait_for(
                lambda: bool(self._q) or self._error is not None or not self.is_open,
                timeout,
            )
            if self._q:
                img, pts_ms, fid = self._q.popleft()
                self._stats.frames_out += 1
                return Frame(img=img, pts_ms=float(pts_ms), frame_id=int(fid))
            if self._error is not None:
                raise self._error
            if not self.is_open:
                raise CameraLost(f"camera device {self.device_index} is closed")
        raise FrameTimeout(f"no frame from camera {self.device_index} within {timeout:.2f}s")

    def close(self) -> None:
        self._ev.clear()

        # Close inner in a short-lived thread so we don't block
        def _closer():
            with contextlib.suppress(Exception):
                self._inner.close()

        t = threading.Thread(target=_closer, name="camera-close", daemon=True)
        t.start()
        t.join(timeout=self._close_timeout_s)
        if self._thr:
            self._thr.join(timeout=0.5)
            self._thr = None
        with self._cond:
            self._q.clear()
            self._cond.notify_all()
