from __future__ import annotations

import re
import threading
from pathlib import Path

import numpy as np
import pytest

from common.errors import SnapshotError
from common.time import snapshot_stamp
from record.snapshot import AsyncSnapshotWriter, SnapshotConfig, SnapshotWriter

TS_MS = 1_700_000_000_000.0


def _img():
    img = np.zeros((24, 32, 3), dtype=np.uint8)
    img[4:12, 4:12] = 255
    return img


def test_filename_convention(tmp_path: Path):
    w = SnapshotWriter(SnapshotConfig(out_dir=tmp_path))
    path = w.save(_img(), TS_MS)
    assert path.parent == tmp_path
    assert path.name == f"motion_{snapshot_stamp(TS_MS)}.jpg"
    assert re.fullmatch(r"motion_\d{8}_\d{6}\.jpg", path.name)
    assert path.stat().st_size > 0


def test_same_second_gets_suffix(tmp_path: Path):
    w = SnapshotWriter(SnapshotConfig(out_dir=tmp_path))
    first = w.save(_img(), TS_MS)
    second = w.save(_img(), TS_MS + 200.0)
    third = w.save(_img(), TS_MS + 400.0)
    assert second.name == f"{first.stem}_1.jpg"
    assert third.name == f"{first.stem}_2.jpg"


def test_directory_created_on_demand(tmp_path: Path):
    out = tmp_path / "a" / "b"
    path = SnapshotWriter(SnapshotConfig(out_dir=out)).save(_img(), TS_MS)
    assert path.exists()


def test_failures_raise_snapshot_error(tmp_path: Path):
    w = SnapshotWriter(SnapshotConfig(out_dir=tmp_path))
    with pytest.raises(SnapshotError):
        w.save(None, TS_MS)
    with pytest.raises(SnapshotError):
        w.save(np.zeros((0, 0, 3), dtype=np.uint8), TS_MS)

    blocker = tmp_path / "file"
    blocker.write_text("x")
    with pytest.raises(SnapshotError) as ei:
        SnapshotWriter(SnapshotConfig(out_dir=blocker / "sub")).save(_img(), TS_MS)
    assert ei.value.code == "IoError"


def test_async_writer_reports_results(tmp_path: Path):
    aw = AsyncSnapshotWriter(SnapshotWriter(SnapshotConfig(out_dir=tmp_path)))
    results = []
    done = threading.Event()

    def _cb(res):
        results.append(res)
        done.set()

    img = _img()
    aw.submit(img, TS_MS, callback=_cb, sequence=4)
    img[:] = 0  # caller may reuse its buffer right away
    assert done.wait(5.0)
    assert aw.wait(5.0)
    aw.close()

    res = results[0]
    assert res.ok
    assert res.sequence == 4
    assert res.path.exists()


def test_async_writer_failure_is_not_raised(tmp_path: Path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    aw = AsyncSnapshotWriter(SnapshotWriter(SnapshotConfig(out_dir=blocker / "sub")))
    results = []
    fut = aw.submit(_img(), TS_MS, callback=results.append)
    res = fut.result(timeout=5.0)
    assert aw.wait(5.0)
    aw.close()
    assert not res.ok
    assert isinstance(res.error, SnapshotError)
    assert res.path is None
