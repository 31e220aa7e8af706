from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Set

import cv2
import numpy as np

from common.errors import SnapshotError
from common.time import snapshot_stamp

_LOG = logging.getLogger(__name__)


@dataclass
class SnapshotConfig:
    """Configuration for snapshot persistence.

    Parameters
    ----------
    out_dir:
        Directory for snapshot images; ``None`` means the current working
        directory at save time. Created on demand.
    prefix:
        File name prefix; names look like ``motion_20240101_120000.jpg``.
    jpeg_quality:
        0..100, passed to ``cv2.imwrite``.
    """

    out_dir: Optional[Path] = None
    prefix: str = "motion"
    ext: str = ".jpg"
    jpeg_quality: int = 90


@dataclass(frozen=True)
class SnapshotResult:
    ts_ms: float
    path: Optional[Path]
    error: Optional[SnapshotError] = None
    sequence: Optional[int] = None  # triggering event, None for manual snapshots

    @property
    def ok(self) -> bool:
        return self.error is None


class SnapshotWriter:
    """Synchronous snapshot writer (``motion_YYYYMMDD_HHMMSS.jpg``)."""

    def __init__(self, config: Optional[SnapshotConfig] = None) -> None:
        self._cfg = config or SnapshotConfig()
        self._lock = threading.Lock()

    @property
    def config(self) -> SnapshotConfig:
        return self._cfg

    def _target_path(self, ts_ms: float) -> Path:
        out_dir = Path(self._cfg.out_dir) if self._cfg.out_dir is not None else Path.cwd()
        stem = f"{self._cfg.prefix}_{snapshot_stamp(ts_ms)}"
        path = out_dir / f"{stem}{self._cfg.ext}"
        n = 1
        # several snapshots within one second get _1, _2, ... suffixes
        while path.exists():
            path = out_dir / f"{stem}_{n}{self._cfg.ext}"
            n += 1
        return path

    def save(self, image: np.ndarray, ts_ms: float) -> Path:
        """Write ``image`` and return its path.

        Raises
        ------
        SnapshotError
            If the directory cannot be created or encoding/writing fails.
        """
        if image is None or getattr(image, "size", 0) == 0:
            raise SnapshotError("no image data to save")
        with self._lock:
            try:
                out_dir = Path(self._cfg.out_dir) if self._cfg.out_dir is not None else Path.cwd()
                out_dir.mkdir(parents=True, exist_ok=True)
                path = self._target_path(ts_ms)
                params = [int(cv2.IMWRITE_JPEG_QUALITY), int(self._cfg.jpeg_quality)]
                ok = cv2.imwrite(str(path), image, params)
            except (OSError, cv2.error) as exc:
                raise SnapshotError(f"snapshot write failed: {exc}") from exc
            if not ok:
                raise SnapshotError(f"cv2.imwrite could not write {path}")
        _LOG.debug("Saved snapshot %s", path)
        return path


class AsyncSnapshotWriter:
    """
    Runs :class:`SnapshotWriter` saves on a single background worker so the
    detection loop never waits on disk I/O. Failures are delivered to the
    callback as a :class:`SnapshotResult` with ``error`` set; they are never
    raised into the caller.
    """

    def __init__(self, writer: Optional[SnapshotWriter] = None) -> None:
        self._writer = writer or SnapshotWriter()
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="snapshot")
        self._inflight: Set[Future] = set()
        self._lock = threading.Lock()

    @property
    def writer(self) -> SnapshotWriter:
        return self._writer

    def _run(self, image: np.ndarray, ts_ms: float, sequence: Optional[int]) -> SnapshotResult:
        try:
            path = self._writer.save(image, ts_ms)
        except SnapshotError as exc:
            _LOG.warning("Snapshot failed (non-fatal): %s", exc)
            return SnapshotResult(ts_ms=ts_ms, path=None, error=exc, sequence=sequence)
        return SnapshotResult(ts_ms=ts_ms, path=path, sequence=sequence)

    def submit(
        self,
        image: np.ndarray,
        ts_ms: float,
        callback: Optional[Callable[[SnapshotResult], None]] = None,
        sequence: Optional[int] = None,
    ) -> Future:
        # The frame is immutable by contract, but take a private copy so the
        # capture backend can reuse its buffer.
        fut = self._pool.submit(self._run, np.array(image, copy=True), float(ts_ms), sequence)
        with self._lock:
            self._inflight.add(fut)

        def _done(f: Future) -> None:
            with self._lock:
                self._inflight.discard(f)
            if callback is None or f.cancelled():
                return
            try:
                callback(f.result())
            except Exception:
                _LOG.exception("Snapshot callback raised")

        fut.add_done_callback(_done)
        return fut

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until all submitted saves finish; False on timeout."""
        with self._lock:
            pending = set(self._inflight)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self, timeout: Optional[float] = None) -> None:
        self.wait(timeout)
        self._pool.shutdown(wait=False)
