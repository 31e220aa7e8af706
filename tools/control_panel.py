"""Real-time control panel for the motion detector.

``PanelModel`` holds everything the panel shows and is driven purely by a
channel subscription plus the coordinator's command API, so it can be
exercised without a display. ``run_control_panel`` draws it with OpenCV
HighGUI.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Deque, List, Optional

import cv2
import numpy as np

from analysis.motion.channel import DetectionNotice, Message, Subscription
from analysis.motion.commands import (
    CommandAck,
    SetDevice,
    SetMinArea,
    SetSensitivity,
    SnapshotNow,
    Start,
    Stop,
)
from analysis.motion.coordinator import DetectionCoordinator
from analysis.motion.events import MotionEvent
from analysis.motion.model import DetectionState, StatusSnapshot
from common.time import now_ms, to_local_str

_LOG = logging.getLogger(__name__)

STOPPED = "Stopped"
RUNNING = "Running"
ERROR = "Error"

WINDOW = "Motion Watch"
SENS_TRACKBAR = "Sensitivity %"
AREA_TRACKBAR = "Min area"
AREA_TRACKBAR_MAX = 10_000
DEVICE_TRACKBAR = "Device"


class PanelModel:
    def __init__(
        self,
        coordinator: DetectionCoordinator,
        subscription: Optional[Subscription] = None,
        max_log: int = 100,
        max_history: int = 100,
    ) -> None:
        self.coordinator = coordinator
        self.sub = subscription or coordinator.channel.subscribe("panel")
        self.status = STOPPED
        self.error: Optional[str] = None
        self.last_status: Optional[StatusSnapshot] = None
        self.log: Deque[str] = deque(maxlen=max_log)
        self.history: Deque[bool] = deque(maxlen=max_history)
        self.last_event: Optional[MotionEvent] = None

    @property
    def start_enabled(self) -> bool:
        return self.status != RUNNING

    @property
    def device_slots(self) -> int:
        """How many device indices the panel offers, at least one."""
        cfg = getattr(self.coordinator.camera, "config", None)
        if cfg is None:
            return max(1, self.coordinator.config.device_index + 1)
        count = cfg.synthetic_devices if cfg.source == "synthetic" else cfg.max_devices
        return max(1, count, self.coordinator.config.device_index + 1)

    @property
    def status_text(self) -> str:
        if self.status == ERROR and self.error:
            return f"{ERROR}: {self.error}"
        return self.status

    def _add_log(self, text: str, ts_ms: Optional[float] = None) -> None:
        stamp = to_local_str(now_ms() if ts_ms is None else ts_ms, "%H:%M:%S")
        self.log.append(f"[{stamp}] {text}")

    # ---------------------------------------------------------------- incoming

    def apply(self, msg: Message) -> None:
        if isinstance(msg, StatusSnapshot):
            self.last_status = msg
            if msg.state is DetectionState.RUNNING:
                self.history.append(bool(msg.motion_present))
                if self.status != ERROR:
                    self.status = RUNNING
            return

        if isinstance(msg, MotionEvent):
            self.last_event = msg
            self._add_log(f"Motion detected (#{msg.sequence}, {msg.total_area} px)", msg.ts_ms)
            return

        if isinstance(msg, DetectionNotice):
            if msg.code == "snapshot_saved":
                self._add_log(f"Snapshot saved: {msg.path}", msg.ts_ms)
            else:
                self._add_log(msg.message, msg.ts_ms)
            if msg.terminal:
                self.status = ERROR
                self.error = msg.message
            elif msg.code == "started":
                self.status = RUNNING
                self.error = None
            elif msg.code == "stopped":
                self.status = STOPPED

    def poll(self) -> int:
        """Apply every queued channel message; return how many were applied."""
        msgs = self.sub.drain()
        for msg in msgs:
            self.apply(msg)
        return len(msgs)

    # ---------------------------------------------------------------- outgoing

    def _submit(self, command) -> CommandAck:
        ack = self.coordinator.submit(command)
        if not ack:
            _LOG.info("Command %r rejected: %s", command, ack.reason)
            self._add_log(f"Rejected: {ack.reason}")
        return ack

    def toggle_detection(self) -> CommandAck:
        if self.start_enabled:
            ack = self._submit(Start())
            if ack:
                self.status = RUNNING
                self.error = None
            else:
                self.status = ERROR
                self.error = ack.reason
            return ack
        ack = self._submit(Stop())
        self.poll()
        if ack and self.status == RUNNING:
            self.status = STOPPED
        return ack

    def set_sensitivity(self, value: float) -> CommandAck:
        return self._submit(SetSensitivity(value))

    def set_min_area(self, value: int) -> CommandAck:
        return self._submit(SetMinArea(value))

    def set_device(self, index: int) -> CommandAck:
        return self._submit(SetDevice(index))

    def snapshot_now(self) -> CommandAck:
        return self._submit(SnapshotNow())

    def clear_log(self) -> None:
        self.log.clear()

    def close(self) -> None:
        self.coordinator.channel.unsubscribe(self.sub)


# ------------------------------------------------------------------------------
# Rendering
# ------------------------------------------------------------------------------


def _status_color(model: PanelModel):
    if model.status == RUNNING:
        return (80, 200, 80)
    if model.status == ERROR:
        return (60, 60, 230)
    return (180, 180, 180)


def render_panel(model: PanelModel, width: int = 640, height: int = 420) -> np.ndarray:
    img = np.zeros((height, width, 3), dtype=np.uint8)
    font, fs, ft = cv2.FONT_HERSHEY_SIMPLEX, 0.5, 1
    line_h = 20

    cfg = model.coordinator.config
    st = model.last_status
    lines: List[str] = [
        f"Status: {model.status_text}",
        f"Device: {cfg.device_index}  Sensitivity: {cfg.sensitivity:.2f}  Min area: {cfg.min_area}",
    ]
    if st is not None:
        res = f"{st.resolution[0]}x{st.resolution[1]}" if st.resolution else "-"
        last = to_local_str(st.last_motion_ms, "%H:%M:%S") if st.last_motion_ms else "never"
        lines.append(f"FPS: {st.fps:.1f}  Resolution: {res}  Events: {st.motion_count}")
        lines.append(f"Last motion: {last}  Motion now: {'YES' if st.motion_present else 'no'}")
        if st.event_backlog:
            lines.append("Observer backlog!")

    y = line_h
    for i, text in enumerate(lines):
        color = _status_color(model) if i == 0 else (220, 220, 220)
        cv2.putText(img, text, (8, y), font, fs, color, ft, cv2.LINE_AA)
        y += line_h

    # motion history strip, one column per sample
    strip_top, strip_h = y, 30
    if model.history:
        col_w = max(1, (width - 16) // model.history.maxlen)
        for i, present in enumerate(model.history):
            x0 = 8 + i * col_w
            color = (60, 60, 230) if present else (70, 70, 70)
            cv2.rectangle(img, (x0, strip_top), (x0 + col_w - 1, strip_top + strip_h), color, -1)
    y = strip_top + strip_h + line_h

    cv2.putText(img, "space: start/stop  p: snapshot  c: clear log  q: quit",
                (8, y), font, 0.45, (160, 160, 160), ft, cv2.LINE_AA)
    y += line_h

    max_lines = max(0, (height - y) // line_h)
    tail = list(model.log)[-max_lines:] if max_lines else []
    for text in tail:
        y += line_h
        cv2.putText(img, text[:90], (8, y), font, 0.45, (200, 200, 200), ft, cv2.LINE_AA)
    return img


def run_control_panel(coordinator: DetectionCoordinator) -> int:
    model = PanelModel(coordinator)
    cfg = coordinator.config

    cv2.namedWindow(WINDOW, cv2.WINDOW_AUTOSIZE)
    cv2.createTrackbar(
        SENS_TRACKBAR, WINDOW, int(round(cfg.sensitivity * 100)), 100,
        lambda v: model.set_sensitivity(v / 100.0),
    )
    cv2.createTrackbar(
        AREA_TRACKBAR, WINDOW, min(cfg.min_area, AREA_TRACKBAR_MAX), AREA_TRACKBAR_MAX,
        lambda v: model.set_min_area(max(1, v)),
    )
    # OpenCV needs a positive trackbar maximum, even for a single device
    cv2.createTrackbar(
        DEVICE_TRACKBAR, WINDOW, cfg.device_index, max(1, model.device_slots - 1),
        lambda v: model.set_device(v),
    )

    try:
        while True:
            model.poll()
            cv2.imshow(WINDOW, render_panel(model))
            key = cv2.waitKey(30) & 0xFF
            if key == ord("q"):
                break
            if key == ord(" "):
                model.toggle_detection()
            elif key == ord("p"):
                model.snapshot_now()
            elif key == ord("c"):
                model.clear_log()
    except KeyboardInterrupt:
        _LOG.info("KeyboardInterrupt received, closing panel.")
    finally:
        coordinator.close()
        model.close()
        cv2.destroyAllWindows()
    return 0
