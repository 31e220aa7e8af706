from __future__ import annotations

from pathlib import Path

from analysis.motion.channel import DetectionNotice
from analysis.motion.events import MotionEvent
from analysis.motion.model import MotionRegion
from record.event_log import EventLogReader, EventLogWriter


def _event(seq):
    return MotionEvent(
        sequence=seq,
        ts_ms=1_700_000_000_000.0 + seq,
        frame_id=seq * 10,
        regions=(MotionRegion(1, 2, 3, 4, 9),),
        snapshot=True,
    )


def test_write_and_read_back(tmp_path: Path):
    path = tmp_path / "logs" / "events.jsonl"
    with EventLogWriter(path) as w:
        w.write_notice(DetectionNotice("info", "started", "go", 1.0))
        w.write_event(_event(1))
        w.write_notice(DetectionNotice("info", "snapshot_saved", "ok", 2.0, path="/tmp/x.jpg"))
        w.write_event(_event(2))

    recs = list(EventLogReader(path))
    assert [r["type"] for r in recs] == ["notice", "motion_event", "notice", "motion_event"]
    assert recs[2]["path"] == "/tmp/x.jpg"
    assert "path" not in recs[0]

    events = EventLogReader(path).events()
    assert [e["sequence"] for e in events] == [1, 2]
    assert events[0]["regions"] == [{"x": 1, "y": 2, "w": 3, "h": 4, "area": 9}]
    assert events[0]["snapshot"] is True
    assert events[0]["ts_iso"].startswith("2023-11-14T")


def test_append_mode_keeps_earlier_runs(tmp_path: Path):
    path = tmp_path / "events.jsonl"
    with EventLogWriter(path) as w:
        w.write_event(_event(1))
    with EventLogWriter(path) as w:
        w.write_event(_event(1))
    assert len(EventLogReader(path).events()) == 2

    with EventLogWriter(path, append=False) as w:
        w.write_event(_event(5))
    assert [e["sequence"] for e in EventLogReader(path).events()] == [5]


def test_reader_skips_garbage_lines(tmp_path: Path):
    path = tmp_path / "events.jsonl"
    with EventLogWriter(path) as w:
        w.write_event(_event(1))
    with path.open("a", encoding="utf-8") as fh:
        fh.write("\n{not json\n")
    assert len(list(EventLogReader(path))) == 1
