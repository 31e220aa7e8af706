# tests/conftest.py
import os
import sys

import numpy as np
import pytest

# pytest-dotenv has already loaded .env at this point
pp = os.getenv("PYTHONPATH")
if pp:
    for p in pp.split(os.pathsep):
        if p:
            sys.path.insert(0, os.path.abspath(p))

from common.frame import Frame  # noqa: E402


def make_bgr(h=100, w=100, level=40):
    return np.full((h, w, 3), level, dtype=np.uint8)


def with_square(img, x=40, y=40, size=20, level=250):
    out = img.copy()
    out[y : y + size, x : x + size] = level
    return out


@pytest.fixture
def bgr_pair():
    """Uniform gray frame and the same frame with a bright 20x20 square at (40, 40)."""
    base = make_bgr()
    return base, with_square(base)


@pytest.fixture
def frame_factory():
    counter = {"id": 0}

    def _make(img, pts_ms=None):
        counter["id"] += 1
        fid = counter["id"]
        return Frame(img=img, pts_ms=float(pts_ms if pts_ms is not None else fid * 33.0), frame_id=fid)

    return _make
