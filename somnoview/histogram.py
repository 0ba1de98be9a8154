"""Histogram binning and summary statistics for event durations."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Mapping, Sequence

import numpy as np

__all__ = [
    "HistogramBin",
    "Histogram",
    "DualHistogram",
    "SummaryStatistics",
    "recommended_bin_count",
    "clamp_bin_count",
    "histogram",
    "dual_histogram",
    "summary_statistics",
]

EMPTY_STATE_BINS = 5


@dataclass(frozen=True)
class HistogramBin:
    start: float
    end: float
    count: int = 0


@dataclass(frozen=True)
class Histogram:
    bins: tuple[HistogramBin, ...] = ()
    frequencies: tuple[int, ...] = ()
    labels: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.bins


@dataclass(frozen=True)
class DualHistogram:
    """Several series counted against one shared set of bin boundaries."""

    bins: tuple[HistogramBin, ...] = ()
    labels: tuple[str, ...] = ()
    frequencies: Mapping[str, tuple[int, ...]] | None = None

    @property
    def is_empty(self) -> bool:
        return not self.bins

    def series(self, name: str) -> tuple[int, ...]:
        return (self.frequencies or {}).get(name, ())


@dataclass(frozen=True)
class SummaryStatistics:
    count: int
    mean: float
    median: float
    min: float
    max: float
    q1: float
    q3: float


def recommended_bin_count(n: int) -> int:
    """Sturges' rule, ``ceil(log2(n)) + 1``.

    ``n == 0`` returns 5 so an empty-state preview still has a usable axis.
    """
    n = int(n)
    if n < 0:
        raise ValueError("n must be non-negative")
    if n == 0:
        return EMPTY_STATE_BINS
    return int(math.ceil(math.log2(n))) + 1


def clamp_bin_count(value, *, minimum: int = 3, maximum: int = 20, default: int = 8) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        parsed = 0
    if parsed == 0:
        parsed = default
    return max(minimum, min(maximum, parsed))


def _bin_indices(values: np.ndarray, vmin: float, width: float, bin_count: int) -> np.ndarray:
    if width == 0:
        # every value equals vmin; nothing to divide
        return np.zeros(values.size, dtype=np.int64)
    idx = np.floor((values - vmin) / width).astype(np.int64)
    # values equal to max land one past the last bin
    return np.clip(idx, 0, bin_count - 1)


def _edges(vmin: float, vmax: float, bin_count: int) -> tuple[float, list[tuple[float, float]]]:
    width = (vmax - vmin) / bin_count
    return width, [(vmin + i * width, vmin + (i + 1) * width) for i in range(bin_count)]


def _check_bin_count(bin_count: int) -> int:
    bin_count = int(bin_count)
    if bin_count < 1:
        raise ValueError("bin_count must be at least 1")
    return bin_count


def histogram(values: Sequence[float] | np.ndarray, bin_count: int) -> Histogram:
    """Bucket ``values`` into ``bin_count`` equal-width bins.

    Parameters
    ----------
    values : sequence of float
        Event durations (or any real numbers).
    bin_count : int
        Number of bins, at least 1.

    Returns
    -------
    Histogram
        Bins span ``[min, max]``; each is half-open except the last, which
        also takes the maximum. Empty input gives an empty histogram.
    """
    bin_count = _check_bin_count(bin_count)
    data = np.asarray(values, dtype=np.float64).ravel()
    if data.size == 0:
        return Histogram()
    vmin = float(data.min())
    vmax = float(data.max())
    width, edges = _edges(vmin, vmax, bin_count)
    counts = np.bincount(_bin_indices(data, vmin, width, bin_count), minlength=bin_count)
    bins = tuple(
        HistogramBin(start, end, int(count)) for (start, end), count in zip(edges, counts)
    )
    return Histogram(
        bins=bins,
        frequencies=tuple(b.count for b in bins),
        labels=tuple(f"{b.start:.1f}-{b.end:.1f}s" for b in bins),
    )


def dual_histogram(series: Mapping[str, Sequence[float]], bin_count: int) -> DualHistogram:
    """Count each series against boundaries taken from the combined range.

    Frequencies of different series line up bin for bin, so apnea and
    hypopnea counts can share one chart.
    """
    bin_count = _check_bin_count(bin_count)
    arrays = {name: np.asarray(vals, dtype=np.float64).ravel() for name, vals in series.items()}
    populated = [arr for arr in arrays.values() if arr.size]
    if not populated:
        return DualHistogram(frequencies={name: () for name in arrays})
    combined = np.concatenate(populated)
    vmin = float(combined.min())
    vmax = float(combined.max())
    width, edges = _edges(vmin, vmax, bin_count)

    frequencies: dict[str, tuple[int, ...]] = {}
    for name, arr in arrays.items():
        counts = np.bincount(_bin_indices(arr, vmin, width, bin_count), minlength=bin_count)
        frequencies[name] = tuple(int(c) for c in counts)
    totals = np.sum([frequencies[name] for name in arrays], axis=0)
    bins = tuple(HistogramBin(start, end, int(total)) for (start, end), total in zip(edges, totals))
    return DualHistogram(
        bins=bins,
        labels=tuple(f"{start:.1f}-{end:.1f}" for start, end in edges),
        frequencies=frequencies,
    )


def summary_statistics(values: Sequence[float] | np.ndarray) -> SummaryStatistics | None:
    """Count, mean, median, range and quartiles; ``None`` for empty input.

    Quartiles use the simplified nearest-rank method: the sorted value at
    index ``floor(n * 0.25)`` / ``floor(n * 0.75)``, no interpolation.
    """
    data = np.sort(np.asarray(values, dtype=np.float64).ravel())
    n = int(data.size)
    if n == 0:
        return None
    mid = n // 2
    if n % 2 == 0:
        median = (data[mid - 1] + data[mid]) / 2.0
    else:
        median = data[mid]
    return SummaryStatistics(
        count=n,
        mean=float(np.mean(data)),
        median=float(median),
        min=float(data[0]),
        max=float(data[-1]),
        q1=float(data[int(math.floor(n * 0.25))]),
        q3=float(data[int(math.floor(n * 0.75))]),
    )
