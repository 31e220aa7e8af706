"""Detection loop coordinator.

Owns the camera handle for the length of an episode (one Start .. Stop or
failure interval), runs the per-frame pipeline on a background thread and
publishes what it sees on a :class:`StateChannel`.

Observers never touch the camera or the engine. They talk to the loop
through two conduits only: the command queue (``submit``) and the channel.
While Running, commands are applied between cycles, so a config change
takes effect on the next frame and never mid-frame.
"""

from __future__ import annotations

import logging
import math
import queue
import threading
import time
from dataclasses import replace
from typing import Any, List, Optional, Protocol

from common.errors import (
    CameraError,
    CameraStalled,
    CameraUnavailable,
    FrameTimeout,
    SnapshotError,
)
from common.frame import Frame
from common.time import now_ms
from record.snapshot import AsyncSnapshotWriter, SnapshotConfig, SnapshotResult, SnapshotWriter

from .channel import DetectionNotice, StateChannel
from .commands import (
    Command,
    CommandAck,
    SetDevice,
    SetMinArea,
    SetSensitivity,
    SnapshotNow,
    Start,
    Stop,
)
from .engine import MotionEngine
from .events import MotionEvent
from .model import (
    CoordinatorConfig,
    DetectionConfig,
    DetectionState,
    MotionConfig,
    StatusSnapshot,
)
from .stats import FpsMeter

_LOG = logging.getLogger(__name__)


class CameraSource(Protocol):
    def open(self, index: int) -> Any: ...
    def list_devices(self) -> List[Any]: ...


class DetectionCoordinator:
    """Start/stop the detection loop and relay commands into it.

    Usage:
        coord = DetectionCoordinator(CameraFactory(), DetectionConfig(device_index=0))
        sub = coord.channel.subscribe("cli")
        coord.start()                         # raises CameraUnavailable
        coord.submit(SetSensitivity(0.6))     # applied on the next cycle
        coord.stop()
    """

    def __init__(
        self,
        camera: CameraSource,
        detection: Optional[DetectionConfig] = None,
        motion: Optional[MotionConfig] = None,
        config: Optional[CoordinatorConfig] = None,
        channel: Optional[StateChannel] = None,
        snapshots: Optional[AsyncSnapshotWriter] = None,
    ) -> None:
        self._camera = camera
        self._detection = detection or DetectionConfig()
        self._cfg = config or CoordinatorConfig()
        self._channel = channel or StateChannel(event_queue_max=self._cfg.event_queue_max)
        self._snapshots = snapshots or AsyncSnapshotWriter(
            SnapshotWriter(SnapshotConfig(out_dir=self._cfg.snapshot_dir))
        )
        self._engine = MotionEngine(motion)
        self._fps = FpsMeter(window=self._cfg.fps_window)

        self._commands: "queue.Queue[Command]" = queue.Queue()
        # _lock guards state/config and the hand-off between submit() and the
        # loop; _lifecycle serialises start()/stop().
        self._lock = threading.RLock()
        self._lifecycle = threading.Lock()
        self._state = DetectionState.IDLE
        self._idle = threading.Event()
        self._idle.set()
        self._thread: Optional[threading.Thread] = None
        self._handle: Any = None

        # Per-episode bookkeeping; touched only by the loop thread while Running.
        self._motion_count = 0
        self._last_motion_ms: Optional[float] = None
        self._frames = 0
        self._resolution: Optional[tuple] = None
        self._snapshot_requested = False
        self._last_auto_snapshot_s: Optional[float] = None
        self._last_status_s = 0.0

    # ------------------------------------------------------------------ #
    # Observation
    # ------------------------------------------------------------------ #

    @property
    def channel(self) -> StateChannel:
        return self._channel

    @property
    def state(self) -> DetectionState:
        with self._lock:
            return self._state

    @property
    def config(self) -> DetectionConfig:
        with self._lock:
            return self._detection

    @property
    def motion_config(self) -> MotionConfig:
        return self._engine.config

    def status(self) -> StatusSnapshot:
        with self._lock:
            state = self._state
        return StatusSnapshot(
            state=state,
            fps=self._fps.fps if state is not DetectionState.IDLE else 0.0,
            resolution=self._resolution,
            motion_count=self._motion_count,
            last_motion_ms=self._last_motion_ms,
            motion_present=self._engine.motion_present if state is DetectionState.RUNNING else False,
            frames_processed=self._frames,
            event_backlog=self._channel.backlogged,
            ts_ms=now_ms(),
        )

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self._idle.wait(timeout)

    @property
    def camera(self) -> CameraSource:
        return self._camera

    def list_devices(self) -> List[Any]:
        return self._camera.list_devices()

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """Acquire the camera and begin an episode.

        Raises
        ------
        CameraUnavailable
            The device could not be opened; state stays Idle.
        RuntimeError
            Detection is already running.
        """
        with self._lifecycle:
            with self._lock:
                if self._state is not DetectionState.IDLE or not self._idle.is_set():
                    raise RuntimeError("detection is already running")
                device = self._detection.device_index

            handle = self._open_camera(device)

            with self._lock:
                self._handle = handle
                self._begin_episode(device)
            self._thread = threading.Thread(
                target=self._run, name="motion-detector", daemon=True
            )
            self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Ask the loop to finish its current cycle and release the camera.

        Returns True once the coordinator is Idle.
        """
        with self._lifecycle:
            with self._lock:
                if self._state is DetectionState.IDLE:
                    return True
                if self._state is DetectionState.RUNNING:
                    self._state = DetectionState.STOPPING
                self._commands.put(Stop())
            thr = self._thread
            if thr is not None and thr is not threading.current_thread():
                thr.join(timeout if timeout is not None else self._cfg.stop_timeout_s)
            return self._idle.is_set()

    def close(self) -> None:
        self.stop()
        self._snapshots.close(timeout=self._cfg.stop_timeout_s)

    # ------------------------------------------------------------------ #
    # Commands
    # ------------------------------------------------------------------ #

    def submit(self, command: Command) -> CommandAck:
        """Acknowledge or reject ``command``.

        Config values are clamped rather than rejected. While Running the
        change is queued for the next cycle boundary; while Idle it applies
        immediately.
        """
        if isinstance(command, Start):
            try:
                self.start()
            except (CameraUnavailable, RuntimeError) as exc:
                return CommandAck(command, False, str(exc))
            return CommandAck(command, True)

        if isinstance(command, Stop):
            if self.state is DetectionState.IDLE:
                return CommandAck(command, False, "detection is not running")
            self.stop()
            return CommandAck(command, True)

        if isinstance(command, SetSensitivity):
            try:
                value = float(command.value)
            except (TypeError, ValueError):
                return CommandAck(command, False, f"invalid sensitivity {command.value!r}")
            if not math.isfinite(value):
                return CommandAck(command, False, f"invalid sensitivity {command.value!r}")
            command = SetSensitivity(value)
        elif isinstance(command, SetMinArea):
            try:
                command = SetMinArea(int(command.value))
            except (TypeError, ValueError, OverflowError):
                return CommandAck(command, False, f"invalid min_area {command.value!r}")
        elif isinstance(command, SetDevice):
            try:
                index = int(command.index)
            except (TypeError, ValueError, OverflowError):
                return CommandAck(command, False, f"invalid device index {command.index!r}")
            if index < 0:
                return CommandAck(command, False, f"invalid device index {index}")
            command = SetDevice(index)
        elif not isinstance(command, SnapshotNow):
            return CommandAck(command, False, f"unknown command {command!r}")

        with self._lock:
            if self._state is DetectionState.RUNNING:
                self._commands.put(command)
                return CommandAck(command, True)
            if isinstance(command, SnapshotNow):
                return CommandAck(command, False, "no frame available while detection is stopped")
            if self._state is DetectionState.STOPPING:
                # applied by _end_episode once the loop has let go
                self._commands.put(command)
                return CommandAck(command, True)
            self._apply_config_command(command)
        return CommandAck(command, True)

    def _apply_config_command(self, command: Command) -> bool:
        """Swap in a new DetectionConfig; True when the device changed."""
        cfg = self._detection
        if isinstance(command, SetSensitivity):
            new = cfg.with_sensitivity(command.value)
        elif isinstance(command, SetMinArea):
            new = cfg.with_min_area(command.value)
        elif isinstance(command, SetDevice):
            new = cfg.with_device(command.index)
        else:
            return False
        with self._lock:
            self._detection = new
        _LOG.debug("Config updated: %s", new)
        return new.device_index != cfg.device_index

    # ------------------------------------------------------------------ #
    # Loop
    # ------------------------------------------------------------------ #

    def _open_camera(self, device: int) -> Any:
        try:
            return self._camera.open(device)
        except CameraUnavailable:
            raise
        except CameraError as exc:
            raise CameraUnavailable(str(exc)) from exc

    def _begin_episode(self, device: int) -> None:
        self._engine.reset()
        self._fps.reset()
        self._motion_count = 0
        self._last_motion_ms = None
        self._frames = 0
        self._resolution = None
        self._snapshot_requested = False
        self._last_auto_snapshot_s = None
        self._last_status_s = 0.0
        with self._lock:
            self._state = DetectionState.RUNNING
            self._idle.clear()
        _LOG.info("Motion detection started on device %d", device)
        self._notice("info", "started", f"motion detection started on device {device}")
        self._channel.publish_status(self.status())

    def _drain_commands(self) -> tuple:
        """Apply queued commands; return (stop_requested, device_changed)."""
        stop = False
        switch = False
        while True:
            try:
                cmd = self._commands.get_nowait()
            except queue.Empty:
                break
            if isinstance(cmd, Stop):
                stop = True
            elif isinstance(cmd, SnapshotNow):
                self._snapshot_requested = True
            elif self._apply_config_command(cmd):
                switch = True
        return stop, switch

    def _run(self) -> None:
        terminal: Optional[BaseException] = None
        stalls = 0
        try:
            while True:
                stop, switch = self._drain_commands()
                if stop:
                    break
                if switch:
                    self._switch_device()
                    stalls = 0

                t0 = time.perf_counter()
                try:
                    frame = self._handle.next_frame(self._cfg.frame_timeout_s)
                except FrameTimeout as exc:
                    stalls += 1
                    device = self._detection.device_index
                    if stalls > self._cfg.stall_retries:
                        raise CameraStalled(
                            f"camera {device} delivered no frame in {stalls} attempts"
                        ) from exc
                    _LOG.warning("Camera %d stalled (%d/%d): %s", device, stalls,
                                 self._cfg.stall_retries, exc)
                    self._notice(
                        "warning",
                        CameraStalled.code,
                        f"camera {device} stalled, retrying ({stalls}/{self._cfg.stall_retries})",
                    )
                    continue
                stalls = 0
                self._cycle(frame, t0)
        except CameraError as exc:
            _LOG.error("Detection stopped: %s", exc)
            terminal = exc
        except Exception as exc:
            _LOG.exception("Detection loop failed")
            terminal = exc
        finally:
            self._end_episode(terminal)

    def _cycle(self, frame: Frame, t0: float) -> None:
        cfg = self.config  # one consistent snapshot for the whole cycle
        result = self._engine.step(frame, cfg)
        self._frames += 1
        if result.skipped != "invalid":
            self._resolution = (frame.width, frame.height)

        if self._snapshot_requested and result.skipped != "invalid":
            self._snapshot_requested = False
            self._schedule_snapshot(frame, None)

        ev = result.event
        if ev is not None:
            self._motion_count += 1
            self._last_motion_ms = ev.ts_ms
            take = self._auto_snapshot_due()
            ev = replace(ev, snapshot=take)
            _LOG.info(
                "Motion detected (#%d) regions=%d largest=%d px",
                ev.sequence,
                len(ev.regions),
                ev.regions[0].area if ev.regions else 0,
            )
            self._channel.publish_event(ev)
            if take:
                self._schedule_snapshot(frame, ev)

        self._fps.update(time.perf_counter() - t0)
        self._maybe_publish_status()

    def _maybe_publish_status(self) -> None:
        interval = float(self._cfg.status_interval_s)
        now = time.monotonic()
        if interval > 0.0 and (now - self._last_status_s) < interval:
            return
        self._last_status_s = now
        self._channel.publish_status(self.status())

    def _switch_device(self) -> None:
        device = self._detection.device_index
        _LOG.info("Switching to camera device %d", device)
        old, self._handle = self._handle, None
        self._snapshots.wait(self._cfg.stop_timeout_s)
        if old is not None:
            old.close()
        self._handle = self._open_camera(device)  # CameraUnavailable ends the episode
        self._begin_episode(device)

    def _end_episode(self, terminal: Optional[BaseException]) -> None:
        with self._lock:
            self._state = DetectionState.STOPPING
        self._channel.publish_status(self.status())

        if not self._snapshots.wait(self._cfg.stop_timeout_s):
            _LOG.warning("Snapshot writes still pending after %.1fs", self._cfg.stop_timeout_s)
        handle, self._handle = self._handle, None
        if handle is not None:
            try:
                handle.close()
            except Exception:
                _LOG.exception("Error releasing camera")

        with self._lock:
            self._state = DetectionState.IDLE
            # keep config commands that raced with shutdown; drop the rest
            while True:
                try:
                    cmd = self._commands.get_nowait()
                except queue.Empty:
                    break
                self._apply_config_command(cmd)

        if terminal is not None:
            code = getattr(terminal, "code", type(terminal).__name__)
            self._notice("error", code, str(terminal), terminal=True)
        else:
            _LOG.info("Motion detection stopped")
            self._notice("info", "stopped", "motion detection stopped")
        self._channel.publish_status(self.status())
        self._idle.set()

    # ------------------------------------------------------------------ #
    # Snapshots
    # ------------------------------------------------------------------ #

    def _auto_snapshot_due(self) -> bool:
        if not self._cfg.snapshot_on_motion:
            return False
        now = time.monotonic()
        last = self._last_auto_snapshot_s
        if last is not None and (now - last) < float(self._cfg.snapshot_cooldown_s):
            return False
        self._last_auto_snapshot_s = now
        return True

    def _schedule_snapshot(self, frame: Frame, event: Optional[MotionEvent]) -> None:
        sequence = event.sequence if event is not None else None
        self._snapshots.submit(
            frame.img,
            frame.pts_ms,
            callback=self._on_snapshot,
            sequence=sequence,
        )

    def _on_snapshot(self, res: SnapshotResult) -> None:
        label = f"event #{res.sequence}" if res.sequence is not None else "manual"
        if res.ok:
            self._notice(
                "info",
                "snapshot_saved",
                f"snapshot saved ({label}): {res.path}",
                path=str(res.path),
            )
        else:
            err = res.error or SnapshotError("unknown snapshot failure")
            self._notice("warning", err.code, f"snapshot failed ({label}): {err}")

    def _notice(
        self,
        level: str,
        code: str,
        message: str,
        terminal: bool = False,
        path: Optional[str] = None,
    ) -> None:
        self._channel.publish_notice(
            DetectionNotice(
                level=level,
                code=code,
                message=message,
                ts_ms=now_ms(),
                terminal=terminal,
                path=path,
            )
        )
