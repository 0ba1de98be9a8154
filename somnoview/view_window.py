"""Viewport windows (start/end, channels, downsampling) with clamping."""
from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Iterable, Sequence


@dataclass(frozen=True)
class WindowLimits:
    duration_min: float = 1.0
    duration_max: float = 8 * 3600.0


@dataclass(frozen=True)
class ViewportWindow:
    start: float
    end: float
    channels: tuple[str, ...] = ()
    factor: int = 1

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError("viewport end must not precede start")
        if int(self.factor) < 1:
            raise ValueError("downsample factor must be >= 1")
        object.__setattr__(self, "channels", tuple(dict.fromkeys(self.channels)))
        object.__setattr__(self, "factor", int(self.factor))

    @property
    def duration(self) -> float:
        return self.end - self.start

    def with_channels(self, channels: Iterable[str]) -> "ViewportWindow":
        return replace(self, channels=tuple(channels))

    def with_span(self, start: float, duration: float) -> "ViewportWindow":
        return replace(self, start=start, end=start + duration)


def clamp_window(start: float, duration: float, *, total: float, limits: WindowLimits) -> tuple[float, float]:
    duration_clamped = max(limits.duration_min, min(limits.duration_max, duration))
    start_clamped = max(0.0, min(start, max(0.0, total - duration_clamped)))
    # recording shorter than the minimum window
    if total < limits.duration_min:
        duration_clamped = total
        start_clamped = 0.0
    elif start_clamped + duration_clamped > total:
        start_clamped = max(0.0, total - duration_clamped)
    return start_clamped, duration_clamped


def pan_window(start: float, duration: float, delta: float, *, total: float, limits: WindowLimits) -> tuple[float, float]:
    return clamp_window(start + delta, duration, total=total, limits=limits)


def zoom_window(start: float, duration: float, factor: float, *, anchor: float, total: float, limits: WindowLimits) -> tuple[float, float]:
    if factor <= 0:
        raise ValueError("factor must be positive")
    duration_new = duration * factor
    duration_new = max(limits.duration_min, min(limits.duration_max, duration_new))

    # keep anchor position (relative 0..1) within window
    rel = 0.0
    if duration > 0:
        rel = (anchor - start) / duration
    rel = min(1.0, max(0.0, rel))

    start_new = anchor - rel * duration_new
    return clamp_window(start_new, duration_new, total=total, limits=limits)


def focus_window(
    event_start: float,
    event_end: float,
    *,
    padding: float,
    total: float,
    limits: WindowLimits,
) -> tuple[float, float]:
    """Window around an event with ``padding`` seconds on either side."""
    start = event_start - max(0.0, padding)
    duration = (event_end - event_start) + 2.0 * max(0.0, padding)
    return clamp_window(start, duration, total=total, limits=limits)


def choose_downsample_factor(duration: float, sample_rates: Sequence[float], max_points: int) -> int:
    """Smallest power-of-two factor that keeps every channel under ``max_points``.

    Powers of two keep the set of factors small so cached chunks are reused
    across nearby zoom levels.
    """
    if max_points <= 0:
        raise ValueError("max_points must be positive")
    rates = [float(rate) for rate in sample_rates if float(rate) > 0]
    if duration <= 0 or not rates:
        return 1
    samples = duration * max(rates)
    if samples <= max_points:
        return 1
    return 2 ** int(math.ceil(math.log2(samples / max_points)))
