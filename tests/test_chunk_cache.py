import numpy as np
import pytest

from somnoview.chunk_cache import CacheConfig, ChunkCache, SignalChunk, snap_window


def make_chunk(channel, start, end, factor=1, n=100):
    t = np.linspace(start, end, num=n, endpoint=False)
    x = np.full(n, 1.0, dtype=np.float32)
    return SignalChunk(channel, float(start), float(end), factor, t, x)


@pytest.mark.parametrize(
    "start, end, expected",
    [
        (12.3, 17.1, (10.0, 20.0)),
        (10.0, 20.0, (10.0, 20.0)),
        (3.0, 3.0, (0.0, 5.0)),
        (5.0, 5.0, (5.0, 10.0)),
        (-2.0, 4.0, (0.0, 5.0)),
    ],
)
def test_snap_window(start, end, expected):
    assert snap_window(start, end, 5.0) == expected


def test_nearby_viewports_share_a_key():
    cache = ChunkCache(CacheConfig(snap_s=5.0))
    assert cache.key_for("Flow", 11.0, 19.0, 1) == cache.key_for("Flow", 10.2, 19.9, 1)
    assert cache.key_for("Flow", 11.0, 19.0, 1) != cache.key_for("Flow", 11.0, 19.0, 2)


def test_get_exact_key():
    cache = ChunkCache()
    cache.put(make_chunk("Flow", 10.0, 20.0))
    chunk = cache.get("Flow", 12.0, 18.0, 1)
    assert chunk is not None
    assert (chunk.start, chunk.end) == (10.0, 20.0)
    assert cache.stats == (1, 0)


def test_superset_chunk_serves_narrower_window():
    cache = ChunkCache()
    cache.put(make_chunk("Flow", 0.0, 60.0, n=600))
    cache.put(make_chunk("Flow", 20.0, 40.0, n=200))
    chunk = cache.get("Flow", 26.0, 33.0, 1)
    # tightest covering chunk wins
    assert (chunk.start, chunk.end) == (20.0, 40.0)


def test_factor_mismatch_is_a_miss():
    cache = ChunkCache()
    cache.put(make_chunk("Flow", 0.0, 60.0, factor=4))
    assert cache.get("Flow", 10.0, 20.0, 1) is None
    assert cache.get("Flow", 10.0, 20.0, 4) is not None
    assert cache.stats == (1, 1)


def test_multiple_windows_for_one_channel_coexist():
    cache = ChunkCache()
    cache.put(make_chunk("Flow", 0.0, 10.0))
    cache.put(make_chunk("Flow", 10.0, 20.0))
    cache.put(make_chunk("Flow", 0.0, 10.0, factor=2))
    assert len(cache) == 3
    assert cache.total_samples == 300


def test_lru_eviction_respects_recent_use():
    cache = ChunkCache(CacheConfig(max_samples=250))
    cache.put(make_chunk("A", 0.0, 10.0))
    cache.put(make_chunk("B", 0.0, 10.0))
    assert cache.get("A", 0.0, 10.0, 1) is not None
    cache.put(make_chunk("C", 0.0, 10.0))
    keys = {key[0] for key in cache}
    assert keys == {"A", "C"}
    assert cache.evictions == 1
    assert cache.total_samples == 200


def test_newest_chunk_kept_when_over_budget():
    cache = ChunkCache(CacheConfig(max_samples=10))
    cache.put(make_chunk("A", 0.0, 10.0))
    cache.put(make_chunk("B", 0.0, 10.0))
    assert [key[0] for key in cache] == ["B"]


def test_byte_budget():
    chunk = make_chunk("A", 0.0, 10.0)
    cache = ChunkCache(CacheConfig(max_samples=0, max_bytes=chunk.nbytes * 2))
    for name in "ABC":
        cache.put(make_chunk(name, 0.0, 10.0))
    assert len(cache) == 2
    assert cache.total_bytes <= chunk.nbytes * 2


def test_replacing_key_keeps_totals_consistent():
    cache = ChunkCache()
    cache.put(make_chunk("A", 0.0, 10.0, n=100))
    cache.put(make_chunk("A", 0.0, 10.0, n=40))
    assert len(cache) == 1
    assert cache.total_samples == 40


def test_peek_does_not_count():
    cache = ChunkCache()
    cache.put(make_chunk("A", 0.0, 10.0))
    assert cache.peek("A", 2.0, 8.0, 1)
    assert not cache.peek("A", 2.0, 18.0, 1)
    assert cache.stats == (0, 0)


def test_configure_shrinks_cache():
    cache = ChunkCache()
    for name in "ABCD":
        cache.put(make_chunk(name, 0.0, 10.0))
    cache.configure(CacheConfig(max_samples=150))
    assert len(cache) == 1


def test_clear():
    cache = ChunkCache()
    cache.put(make_chunk("A", 0.0, 10.0))
    cache.clear()
    assert len(cache) == 0
    assert cache.total_samples == 0


def test_chunk_slice():
    chunk = make_chunk("A", 0.0, 10.0, n=10)
    part = chunk.slice(2.0, 5.0)
    np.testing.assert_allclose(part.t, [2.0, 3.0, 4.0, 5.0])
    assert (part.start, part.end) == (2.0, 5.0)


def test_chunk_shape_mismatch_rejected():
    with pytest.raises(ValueError):
        SignalChunk("A", 0.0, 1.0, 1, np.zeros(3), np.zeros(4))
