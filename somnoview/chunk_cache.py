from __future__ import annotations

import logging
import math
from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterator

import numpy as np

LOG = logging.getLogger(__name__)

ChunkKey = tuple[str, float, float, int]


@dataclass(frozen=True)
class SignalChunk:
    """Samples of one channel over ``[start, end]`` at a downsample factor."""

    channel: str
    start: float
    end: float
    factor: int
    t: np.ndarray
    x: np.ndarray

    def __post_init__(self) -> None:
        if self.t.shape != self.x.shape:
            raise ValueError("t and x must have matching shapes")

    @property
    def key(self) -> ChunkKey:
        return (self.channel, self.start, self.end, self.factor)

    @property
    def sample_count(self) -> int:
        return int(self.x.size)

    @property
    def nbytes(self) -> int:
        return int(self.t.nbytes + self.x.nbytes)

    def covers(self, start: float, end: float) -> bool:
        return self.start <= start and end <= self.end

    def slice(self, start: float, end: float) -> "SignalChunk":
        idx_start = int(np.searchsorted(self.t, start, side="left"))
        idx_end = int(np.searchsorted(self.t, end, side="right"))
        idx_end = max(idx_start, idx_end)
        return SignalChunk(
            self.channel,
            max(self.start, start),
            min(self.end, end),
            self.factor,
            self.t[idx_start:idx_end],
            self.x[idx_start:idx_end],
        )


def snap_window(start: float, end: float, snap_s: float) -> tuple[float, float]:
    """Widen ``[start, end]`` outward to multiples of ``snap_s``."""
    if snap_s <= 0:
        return round(start, 6), round(end, 6)
    s = math.floor(round(start / snap_s, 9)) * snap_s
    e = math.ceil(round(end / snap_s, 9)) * snap_s
    if e <= s:
        e = s + snap_s
    return round(max(0.0, s), 6), round(e, 6)


def chunk_key(channel: str, start: float, end: float, factor: int, snap_s: float) -> ChunkKey:
    s, e = snap_window(start, end, snap_s)
    return (channel, s, e, int(factor))


@dataclass
class CacheConfig:
    snap_s: float = 5.0
    max_samples: int = 4_000_000
    max_bytes: float | None = None  # approximate budget in bytes


class ChunkCache:
    """LRU arena of signal chunks bounded by total samples and bytes.

    Chunks for one channel may coexist at several windows and factors. The
    most recently stored chunk is always kept, even when it alone exceeds the
    budget.
    """

    def __init__(self, config: CacheConfig | None = None):
        self.config = config or CacheConfig()
        self._cache: OrderedDict[ChunkKey, SignalChunk] = OrderedDict()
        self._samples = 0
        self._bytes = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: object) -> bool:
        return key in self._cache

    def __iter__(self) -> Iterator[ChunkKey]:
        return iter(list(self._cache))

    def key_for(self, channel: str, start: float, end: float, factor: int) -> ChunkKey:
        return chunk_key(channel, start, end, factor, self.config.snap_s)

    def get(self, channel: str, start: float, end: float, factor: int) -> SignalChunk | None:
        """Chunk covering ``[start, end]`` at ``factor``, exact key first then any superset."""
        key = self.key_for(channel, start, end, factor)
        chunk = self._cache.get(key)
        if chunk is None:
            chunk = self._find_superset(channel, start, end, factor)
        if chunk is None:
            self._misses += 1
            return None
        self._cache.move_to_end(chunk.key)
        self._hits += 1
        return chunk

    def peek(self, channel: str, start: float, end: float, factor: int) -> bool:
        """Whether a covering chunk is cached, without touching LRU order or stats."""
        key = self.key_for(channel, start, end, factor)
        return key in self._cache or self._find_superset(channel, start, end, factor) is not None

    def put(self, chunk: SignalChunk) -> None:
        key = chunk.key
        old = self._cache.pop(key, None)
        if old is not None:
            self._samples -= old.sample_count
            self._bytes -= old.nbytes
        self._cache[key] = chunk
        self._samples += chunk.sample_count
        self._bytes += chunk.nbytes
        self._evict_if_needed()

    def clear(self) -> None:
        self._cache.clear()
        self._samples = 0
        self._bytes = 0

    def configure(self, config: CacheConfig) -> None:
        self.config = config
        self._evict_if_needed()

    @property
    def total_samples(self) -> int:
        return self._samples

    @property
    def total_bytes(self) -> int:
        return self._bytes

    @property
    def stats(self) -> tuple[int, int]:
        return self._hits, self._misses

    @property
    def evictions(self) -> int:
        return self._evictions

    def _find_superset(self, channel: str, start: float, end: float, factor: int) -> SignalChunk | None:
        best: SignalChunk | None = None
        for (ch, _s, _e, f), chunk in self._cache.items():
            if ch != channel or f != factor or not chunk.covers(start, end):
                continue
            # prefer the tightest covering chunk
            if best is None or chunk.sample_count < best.sample_count:
                best = chunk
        return best

    def _over_budget(self) -> bool:
        if self.config.max_samples and self._samples > self.config.max_samples:
            return True
        return bool(self.config.max_bytes) and self._bytes > float(self.config.max_bytes)

    def _evict_if_needed(self) -> None:
        while len(self._cache) > 1 and self._over_budget():
            key, chunk = self._cache.popitem(last=False)
            self._samples -= chunk.sample_count
            self._bytes -= chunk.nbytes
            self._evictions += 1
            LOG.debug("Evicted chunk %s (%d samples)", key, chunk.sample_count)
