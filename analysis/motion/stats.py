from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque

import numpy as np


@dataclass
class FpsMeter:
    """Sliding-window frame rate over the last ``window`` cycle durations."""

    window: int = 30
    fps: float = 0.0
    cycles: int = 0
    _durations_s: Deque[float] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._durations_s = deque(maxlen=max(1, int(self.window)))

    def update(self, dt_s: float) -> float:
        self.cycles += 1
        if dt_s > 0.0:
            self._durations_s.append(float(dt_s))
        if self._durations_s:
            mean_s = float(np.fromiter(self._durations_s, dtype=np.float64).mean())
            self.fps = 1.0 / mean_s if mean_s > 0.0 else 0.0
        return self.fps

    def reset(self) -> None:
        self._durations_s.clear()
        self.fps = 0.0
        self.cycles = 0
