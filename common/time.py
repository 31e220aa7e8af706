from __future__ import annotations

from datetime import datetime, timezone


def now_ms() -> float:
    return datetime.now(tz=timezone.utc).timestamp() * 1000.0


def to_iso_utc(ts_ms: float) -> str:
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).isoformat()


def to_local_str(ts_ms: float, fmt: str = "%Y-%m-%d %H:%M:%S") -> str:
    return datetime.fromtimestamp(ts_ms / 1000.0).strftime(fmt)


def snapshot_stamp(ts_ms: float) -> str:
    """Local-time stamp used in snapshot file names (``YYYYMMDD_HHMMSS``)."""
    return to_local_str(ts_ms, "%Y%m%d_%H%M%S")
