# somnoview/timebase.py
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable
import numpy as np

@dataclass(frozen=True)
class Timebase:
    """
    Recording clock for one analysed study.
    - t=0.0 is the recording start reported by the analysis service.
    - Event times and chunk windows are seconds from that start.
    """
    start_dt: datetime
    duration_s: float

    def to_datetime(self, t_s: float) -> datetime:
        return self.start_dt + timedelta(seconds=float(t_s))

    def clock_label(self, t_s: float) -> str:
        """
        Wall-clock HH:MM:SS for an offset in seconds.
        """
        when = self.to_datetime(t_s)
        return f"{when.hour:02d}:{when.minute:02d}:{when.second:02d}"

    @staticmethod
    def time_vector(t0_s: float, n: int, fs: float) -> np.ndarray:
        """
        Time stamps for n samples starting at t0_s, spaced 1/fs apart.
        """
        if fs <= 0:
            raise ValueError("fs must be positive")
        if n <= 0:
            return np.zeros(0, dtype=float)
        return t0_s + np.arange(n, dtype=np.int64) / float(fs)


def relative_labels(offsets_s: Iterable[float]) -> list[str]:
    """
    Elapsed HH:MM:SS since recording start, used when no wall clock is known.
    """
    out = []
    for v in offsets_s:
        sec = int(round(v))
        h, r = divmod(sec, 3600); m, s = divmod(r, 60)
        out.append(f"{h:02d}:{m:02d}:{s:02d}")
    return out
