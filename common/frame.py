from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True, eq=False)
class Frame:
    img: np.ndarray  # BGR (H,W,3), uint8; (H,W) gray and (H,W,4) BGRA also accepted
    pts_ms: float  # epoch ms (float)
    frame_id: int

    @property
    def height(self) -> int:
        return int(self.img.shape[0]) if self.img is not None and self.img.ndim >= 2 else 0

    @property
    def width(self) -> int:
        return int(self.img.shape[1]) if self.img is not None and self.img.ndim >= 2 else 0
