# ruff: noqa: UP007  # keep Optional[...] for Py3.9; don't force X | Y
from __future__ import annotations

import json
import os
from collections.abc import Iterator
from contextlib import suppress
from pathlib import Path
from typing import Any, Optional, TextIO

from analysis.motion.channel import DetectionNotice
from analysis.motion.events import MotionEvent
from common.time import to_iso_utc


class EventLogWriter:
    """
    Append motion events and notices to a JSONL file, one object per line.

    Event lines carry ``type="motion_event"``; notice lines carry
    ``type="notice"``.
    """

    def __init__(self, path: str | Path, append: bool = True):
        self.path = Path(path)
        self._append = append
        self._fh: Optional[TextIO] = None

    def __enter__(self) -> EventLogWriter:
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        mode = "a" if self._append else "w"
        self._fh = self.path.open(mode, encoding="utf-8", newline="")

    def _write(self, rec: dict) -> None:
        if not self._fh:
            raise RuntimeError("EventLogWriter is not open")
        self._fh.write(json.dumps(rec, ensure_ascii=False) + "\n")
        self._fh.flush()

    def write_event(self, ev: MotionEvent) -> None:
        payload = ev.as_dict()
        payload["ts_iso"] = to_iso_utc(ev.ts_ms)
        self._write(payload)

    def write_notice(self, notice: DetectionNotice) -> None:
        payload: dict[str, Any] = {
            "type": "notice",
            "level": notice.level,
            "code": notice.code,
            "message": notice.message,
            "ts_ms": float(notice.ts_ms),
            "terminal": bool(notice.terminal),
        }
        if notice.path is not None:
            payload["path"] = notice.path
        self._write(payload)

    def close(self) -> None:
        if self._fh is not None:
            with suppress(Exception):
                self._fh.flush()
            # Best-effort durability; harmless if underlying file doesn't support fileno()
            with suppress(Exception):
                os.fsync(self._fh.fileno())
            self._fh.close()
            self._fh = None


class EventLogReader:
    def __init__(self, path: str | Path):
        self.path = Path(path)

    def __iter__(self) -> Iterator[dict[str, Any]]:
        with self.path.open("r", encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    continue

    def events(self) -> list[dict[str, Any]]:
        return [rec for rec in self if rec.get("type") == "motion_event"]
