from __future__ import annotations

import math
import time
from pathlib import Path

import numpy as np
import pytest

from analysis.motion.channel import DetectionNotice
from analysis.motion.commands import (
    SetDevice,
    SetMinArea,
    SetSensitivity,
    SnapshotNow,
    Start,
    Stop,
)
from analysis.motion.coordinator import DetectionCoordinator
from analysis.motion.events import MotionEvent
from analysis.motion.model import CoordinatorConfig, DetectionConfig, DetectionState
from common.errors import CameraUnavailable, FrameTimeout
from common.frame import Frame
from common.time import now_ms
from record.snapshot import AsyncSnapshotWriter, SnapshotConfig, SnapshotWriter

BASE = np.full((100, 100, 3), 40, dtype=np.uint8)
SQUARE = BASE.copy()
SQUARE[40:60, 40:60] = 250


class _FakeHandle:
    """Serves scripted frames, then repeats the last one or times out."""

    def __init__(self, frames, repeat_last=True):
        self._frames = list(frames)
        self._repeat = repeat_last
        self._last = None
        self.served = 0
        self.closed = False

    def next_frame(self, timeout):
        if self._frames:
            self._last = self._frames.pop(0)
        elif not self._repeat or self._last is None:
            time.sleep(min(timeout, 0.01))
            raise FrameTimeout("no frame")
        else:
            time.sleep(0.002)
        self.served += 1
        return Frame(img=self._last, pts_ms=now_ms(), frame_id=self.served)

    def close(self):
        self.closed = True


class _FakeCamera:
    def __init__(self, scripts, repeat_last=True):
        self._scripts = scripts  # device index -> list of frames
        self._repeat = repeat_last
        self.opened = []
        self.handles = []

    def open(self, index):
        if index not in self._scripts:
            raise CameraUnavailable(f"no camera {index}")
        self.opened.append(index)
        h = _FakeHandle(self._scripts[index], repeat_last=self._repeat)
        self.handles.append(h)
        return h

    def list_devices(self):
        return sorted(self._scripts)


def _coordinator(camera, tmp_path: Path, **cfg):
    cfg.setdefault("frame_timeout_s", 0.05)
    cfg.setdefault("snapshot_on_motion", False)
    cfg.setdefault("snapshot_dir", tmp_path)
    return DetectionCoordinator(
        camera,
        detection=DetectionConfig(sensitivity=0.5, min_area=300),
        config=CoordinatorConfig(**cfg),
    )


def _collect(sub, pred, timeout=3.0):
    """Gather messages until ``pred(messages)`` holds or the timeout expires."""
    out = []
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline and not pred(out):
        msg = sub.get(timeout=0.05)
        if msg is not None:
            out.append(msg)
    return out


def _events(msgs):
    return [m for m in msgs if isinstance(m, MotionEvent)]


def _notices(msgs, code=None):
    return [m for m in msgs if isinstance(m, DetectionNotice) and (code is None or m.code == code)]


def _wait_for(pred, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(0.01)
    return pred()


def test_unavailable_device_stays_idle(tmp_path):
    coord = _coordinator(_FakeCamera({0: [BASE]}), tmp_path)
    coord.submit(SetDevice(3))
    with pytest.raises(CameraUnavailable):
        coord.start()
    assert coord.state is DetectionState.IDLE

    ack = coord.submit(Start())
    assert not ack
    assert "no camera 3" in ack.reason
    coord.close()


def test_motion_events_are_edge_triggered(tmp_path):
    cam = _FakeCamera({0: [BASE, SQUARE, SQUARE, SQUARE, BASE, BASE]})
    coord = _coordinator(cam, tmp_path)
    sub = coord.channel.subscribe("test")
    coord.start()
    assert coord.state is DetectionState.RUNNING

    msgs = _collect(sub, lambda m: len(_events(m)) >= 2)
    time.sleep(0.1)
    msgs += sub.drain()
    coord.close()

    events = _events(msgs)
    assert [e.sequence for e in events] == [1, 2]
    assert [e.frame_id for e in events] == [2, 5]
    assert all(not e.snapshot for e in events)
    assert _notices(msgs, "started")
    assert coord.state is DetectionState.IDLE
    assert cam.handles[0].closed


def test_status_snapshots_track_episode(tmp_path):
    coord = _coordinator(_FakeCamera({0: [BASE, SQUARE]}), tmp_path)
    sub = coord.channel.subscribe("test")
    coord.start()
    assert _wait_for(lambda: coord.status().frames_processed >= 5)
    st = coord.status()
    assert st.state is DetectionState.RUNNING
    assert st.resolution == (100, 100)
    assert st.motion_count == 1
    assert st.last_motion_ms is not None
    coord.stop()
    final = coord.status()
    assert final.state is DetectionState.IDLE
    assert final.fps == 0.0
    assert final.motion_present is False
    coord.close()


def test_sequence_restarts_each_episode(tmp_path):
    cam = _FakeCamera({0: [BASE, SQUARE]})
    coord = _coordinator(cam, tmp_path)
    sub = coord.channel.subscribe("test")

    seqs = []
    for _ in range(2):
        coord.start()
        msgs = _collect(sub, lambda m: len(_events(m)) >= 1)
        assert coord.stop()
        seqs += [e.sequence for e in _events(msgs)]
    coord.close()
    assert seqs == [1, 1]
    assert cam.opened == [0, 0]


def test_stop_releases_camera_and_reports(tmp_path):
    cam = _FakeCamera({0: [BASE]})
    coord = _coordinator(cam, tmp_path)
    sub = coord.channel.subscribe("test")
    coord.start()
    assert not coord.submit(Start())
    assert coord.submit(Stop())
    assert coord.wait_idle(2.0)
    msgs = sub.drain()
    stopped = _notices(msgs, "stopped")
    assert stopped and not stopped[0].terminal
    assert cam.handles[0].closed
    assert not coord.submit(Stop())
    coord.close()


def test_stalled_camera_is_terminal(tmp_path):
    cam = _FakeCamera({0: [BASE]}, repeat_last=False)
    coord = _coordinator(cam, tmp_path, stall_retries=1)
    sub = coord.channel.subscribe("test")
    coord.start()
    assert coord.wait_idle(3.0)
    msgs = sub.drain()

    stalls = _notices(msgs, "CameraStalled")
    assert [n.terminal for n in stalls] == [False, True]
    assert stalls[-1].level == "error"
    assert coord.state is DetectionState.IDLE
    assert cam.handles[0].closed

    # Start works again once the error has been reported
    cam._repeat = True
    coord.start()
    assert coord.state is DetectionState.RUNNING
    coord.close()


def test_config_commands_apply_between_cycles(tmp_path):
    coord = _coordinator(_FakeCamera({0: [BASE]}), tmp_path)
    coord.start()
    assert coord.submit(SetMinArea(42))
    assert coord.submit(SetSensitivity(3.0))
    assert _wait_for(lambda: coord.config.min_area == 42)
    assert _wait_for(lambda: coord.config.sensitivity == 1.0)
    coord.close()


def test_commands_while_idle(tmp_path):
    coord = _coordinator(_FakeCamera({0: [BASE]}), tmp_path)

    ack = coord.submit(SnapshotNow())
    assert not ack
    assert ack.reason

    assert coord.submit(SetSensitivity(-1.0))
    assert coord.config.sensitivity == 0.0
    assert coord.submit(SetMinArea(0))
    assert coord.config.min_area == 1

    assert not coord.submit(SetSensitivity(math.nan))
    assert not coord.submit(SetSensitivity("loud"))
    assert not coord.submit(SetDevice(-1))
    assert not coord.submit(SetMinArea(math.inf))
    assert not coord.submit(SetMinArea(math.nan))
    assert not coord.submit(SetDevice(math.inf))
    assert coord.config.min_area == 1
    assert coord.config.device_index == 0
    coord.close()


def test_device_switch_starts_new_episode(tmp_path):
    cam = _FakeCamera({0: [BASE, SQUARE], 1: [BASE, SQUARE]})
    coord = _coordinator(cam, tmp_path)
    sub = coord.channel.subscribe("test")
    coord.start()
    first = _collect(sub, lambda m: len(_events(m)) >= 1)
    assert coord.submit(SetDevice(1))
    second = _collect(sub, lambda m: len(_events(m)) >= 1)
    coord.close()

    assert cam.opened == [0, 1]
    assert cam.handles[0].closed
    assert _events(first)[0].device_index == 0
    ev = _events(second)[0]
    assert ev.device_index == 1
    assert ev.sequence == 1
    assert any("device 1" in n.message for n in _notices(second, "started"))


def test_switch_to_missing_device_ends_episode(tmp_path):
    cam = _FakeCamera({0: [BASE]})
    coord = _coordinator(cam, tmp_path)
    sub = coord.channel.subscribe("test")
    coord.start()
    assert coord.submit(SetDevice(5))
    assert coord.wait_idle(3.0)
    terminal = [n for n in _notices(sub.drain()) if n.terminal]
    assert terminal and terminal[0].code == "CameraUnavailable"
    coord.close()


def test_auto_snapshot_saved(tmp_path):
    coord = _coordinator(_FakeCamera({0: [BASE, SQUARE]}), tmp_path, snapshot_on_motion=True)
    sub = coord.channel.subscribe("test")
    coord.start()
    msgs = _collect(sub, lambda m: bool(_notices(m, "snapshot_saved")))
    coord.close()

    events = _events(msgs)
    assert events and events[0].snapshot
    saved = _notices(msgs, "snapshot_saved")[0]
    assert Path(saved.path).exists()
    assert Path(saved.path).parent == tmp_path
    # event first, then its snapshot report
    assert msgs.index(events[0]) < msgs.index(saved)


def test_manual_snapshot(tmp_path):
    coord = _coordinator(_FakeCamera({0: [BASE]}), tmp_path)
    sub = coord.channel.subscribe("test")
    coord.start()
    assert coord.submit(SnapshotNow())
    msgs = _collect(sub, lambda m: bool(_notices(m, "snapshot_saved")))
    coord.close()
    assert "manual" in _notices(msgs, "snapshot_saved")[0].message
    assert list(tmp_path.glob("motion_*.jpg"))


def test_snapshot_failure_does_not_stop_detection(tmp_path):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("x")
    writer = AsyncSnapshotWriter(SnapshotWriter(SnapshotConfig(out_dir=blocker / "snaps")))
    coord = DetectionCoordinator(
        _FakeCamera({0: [BASE, SQUARE]}),
        detection=DetectionConfig(sensitivity=0.5, min_area=300),
        config=CoordinatorConfig(frame_timeout_s=0.05, snapshot_on_motion=True),
        snapshots=writer,
    )
    sub = coord.channel.subscribe("test")
    coord.start()
    msgs = _collect(sub, lambda m: bool(_notices(m, "IoError")))
    frames_then = coord.status().frames_processed
    assert _wait_for(lambda: coord.status().frames_processed > frames_then)
    assert coord.state is DetectionState.RUNNING
    coord.close()

    failure = _notices(msgs, "IoError")[0]
    assert failure.level == "warning"
    assert not failure.terminal
    assert _events(msgs)[0].snapshot
