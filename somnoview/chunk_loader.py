"""Viewport-driven chunk retrieval on top of :class:`ChunkCache`."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

from somnoview.chunk_cache import CacheConfig, ChunkCache, ChunkKey, SignalChunk
from somnoview.errors import EmptyDataError, SomnoviewError, TransportError
from somnoview.models import ChannelRange, Recording, parse_channel_ranges
from somnoview.timebase import Timebase
from somnoview.transport import MAX_CHANNELS_PER_REQUEST, ChannelSamples, Transport
from somnoview.view_window import ViewportWindow

LOG = logging.getLogger(__name__)

__all__ = ["ChunkLoader", "LoaderStats", "WindowResult"]


@dataclass(frozen=True)
class WindowResult:
    """Chunks for one viewport request.

    ``generation`` is the loader generation when the request was issued; the
    result only belongs on screen while it still equals the loader's current
    generation.
    """

    viewport: ViewportWindow
    generation: int
    chunks: dict[str, SignalChunk] = field(default_factory=dict)
    from_cache: bool = False
    stale: bool = False
    cancelled: bool = False

    @property
    def sample_count(self) -> int:
        return sum(chunk.sample_count for chunk in self.chunks.values())

    @property
    def is_empty(self) -> bool:
        return self.sample_count == 0


@dataclass(frozen=True)
class _Pending:
    channel: str
    key: ChunkKey
    future: asyncio.Future


@dataclass(frozen=True)
class LoaderStats:
    hits: int
    misses: int
    network_calls: int
    in_flight: int
    cached_chunks: int
    cached_samples: int


class ChunkLoader:
    def __init__(
        self,
        transport: Transport,
        *,
        recording: Recording | None = None,
        config: CacheConfig | None = None,
    ):
        self.transport = transport
        self.recording = recording
        self.cache = ChunkCache(config)
        self.generation = 0
        self._inflight: dict[ChunkKey, asyncio.Future] = {}
        self._tasks: set[asyncio.Task] = set()
        self._ranges: dict[str, ChannelRange] = {}
        self._network_calls = 0

    # ----- queries -----

    def is_current(self, generation: int) -> bool:
        return generation == self.generation

    def lookup(self, viewport: ViewportWindow) -> dict[str, SignalChunk] | None:
        """Resolve ``viewport`` from cache only; ``None`` if any channel misses."""
        chunks: dict[str, SignalChunk] = {}
        for channel in viewport.channels:
            chunk = self.cache.get(channel, viewport.start, viewport.end, viewport.factor)
            if chunk is None:
                return None
            chunks[channel] = chunk.slice(viewport.start, viewport.end)
        return chunks

    def is_cached(self, viewport: ViewportWindow) -> bool:
        return all(
            self.cache.peek(channel, viewport.start, viewport.end, viewport.factor)
            for channel in viewport.channels
        )

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    @property
    def stats(self) -> LoaderStats:
        hits, misses = self.cache.stats
        return LoaderStats(
            hits=hits,
            misses=misses,
            network_calls=self._network_calls,
            in_flight=len(self._inflight),
            cached_chunks=len(self.cache),
            cached_samples=self.cache.total_samples,
        )

    # ----- requests -----

    async def request_window(self, viewport: ViewportWindow) -> WindowResult:
        """Chunks for every channel of ``viewport``.

        Cached channels resolve without touching the transport. Missing ones
        join an outstanding request for the same key when there is one,
        otherwise they are fetched in batches of up to five channels. The
        generation is bumped on every call, so an earlier request that is still
        waiting comes back marked ``stale``; its chunks are cached regardless.

        Raises :class:`EmptyDataError` when the window is still current and no
        channel has any samples. Empty chunks are cached all the same.
        """
        self.generation += 1
        generation = self.generation
        chunks: dict[str, SignalChunk] = {}
        missing: list[str] = []
        for channel in viewport.channels:
            chunk = self.cache.get(channel, viewport.start, viewport.end, viewport.factor)
            if chunk is None:
                missing.append(channel)
            else:
                chunks[channel] = chunk.slice(viewport.start, viewport.end)
        if not missing:
            LOG.debug("Window %.1f-%.1fs served from cache", viewport.start, viewport.end)
            return self._checked(WindowResult(viewport, generation, chunks, from_cache=True))

        waiting = self._attach(missing, viewport)
        outcomes = await asyncio.gather(
            *(asyncio.shield(fut) for fut in waiting.values()), return_exceptions=True
        )
        cancelled = False
        for channel, outcome in zip(waiting, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                cancelled = True
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                chunks[channel] = outcome.slice(viewport.start, viewport.end)
        stale = cancelled or generation != self.generation
        if stale:
            LOG.debug(
                "Discarding stale window %.1f-%.1fs (generation %d, current %d)",
                viewport.start,
                viewport.end,
                generation,
                self.generation,
            )
        ordered = {ch: chunks[ch] for ch in viewport.channels if ch in chunks}
        return self._checked(WindowResult(viewport, generation, ordered, stale=stale, cancelled=cancelled))

    @staticmethod
    def _checked(result: WindowResult) -> WindowResult:
        # empty chunks stay cached; only a current window with no samples at all is an error
        if result.stale or not result.viewport.channels or not result.is_empty:
            return result
        raise EmptyDataError(channels=result.viewport.channels)

    def _attach(self, channels: Sequence[str], viewport: ViewportWindow) -> dict[str, asyncio.Future]:
        loop = asyncio.get_running_loop()
        waiting: dict[str, asyncio.Future] = {}
        to_fetch: list[_Pending] = []
        for channel in channels:
            key = self.cache.key_for(channel, viewport.start, viewport.end, viewport.factor)
            fut = self._inflight.get(key)
            if fut is None:
                fut = loop.create_future()
                self._inflight[key] = fut
                to_fetch.append(_Pending(channel, key, fut))
            else:
                LOG.debug("Joining in-flight request for %s", key)
            waiting[channel] = fut
        for offset in range(0, len(to_fetch), MAX_CHANNELS_PER_REQUEST):
            batch = to_fetch[offset : offset + MAX_CHANNELS_PER_REQUEST]
            task = loop.create_task(self._fetch_batch(batch))
            self._tasks.add(task)
            task.add_done_callback(lambda t, batch=batch: self._settle(t, batch))
        return waiting

    async def _fetch_batch(self, batch: list[_Pending]) -> None:
        _, start, end, factor = batch[0].key
        channels = [item.channel for item in batch]
        self._network_calls += 1
        LOG.info("Fetching %s %.1f-%.1fs (factor %d)", ",".join(channels), start, end, factor)
        try:
            if len(channels) == 1:
                samples = {channels[0]: await self.transport.fetch_window(channels[0], start, end, factor)}
            else:
                samples = await self.transport.fetch_multi_window(channels, start, end, factor)
        except Exception as exc:
            if not isinstance(exc, SomnoviewError):
                wrapped = TransportError(f"chunk retrieval failed: {exc}")
                wrapped.__cause__ = exc
                exc = wrapped
            LOG.warning("Chunk retrieval for %s failed: %s", ",".join(channels), exc)
            for item in batch:
                self._release(item)
                if not item.future.done():
                    item.future.set_exception(exc)
            return
        for item in batch:
            self._release(item)
            chunk = self._build_chunk(item.channel, item.key, samples.get(item.channel))
            self.cache.put(chunk)
            if not item.future.done():
                item.future.set_result(chunk)

    def _release(self, item: _Pending) -> None:
        if self._inflight.get(item.key) is item.future:
            del self._inflight[item.key]

    def _settle(self, task: asyncio.Task, batch: list[_Pending]) -> None:
        self._tasks.discard(task)
        # a task cancelled before or while running leaves its waiters pending
        for item in batch:
            self._release(item)
            if not item.future.done():
                item.future.cancel()

    def _build_chunk(self, channel: str, key: ChunkKey, samples: ChannelSamples | None) -> SignalChunk:
        _, start, end, factor = key
        if samples is None:
            x = np.zeros(0, dtype=np.float32)
            t = np.zeros(0, dtype=np.float64)
        else:
            x = samples.x
            t = samples.t if samples.t is not None else self._synth_times(channel, start, end, factor, x.size)
        return SignalChunk(channel, start, end, factor, t, x)

    def _synth_times(self, channel: str, start: float, end: float, factor: int, n: int) -> np.ndarray:
        if self.recording is not None and channel in self.recording:
            fs = self.recording.channel(channel).sample_rate / max(1, factor)
            return Timebase.time_vector(start, n, fs)
        return np.linspace(start, end, num=n, endpoint=False)

    # ----- channel ranges -----

    async def channel_ranges(self, channels: Sequence[str]) -> dict[str, ChannelRange]:
        missing = [ch for ch in dict.fromkeys(channels) if ch not in self._ranges]
        if missing:
            self._network_calls += 1
            payload = await self.transport.fetch_channel_ranges(missing)
            self._ranges.update(parse_channel_ranges(payload, missing))
        return {ch: self._ranges[ch] for ch in channels}

    # ----- lifecycle -----

    def cancel(self) -> None:
        """Invalidate the active viewport and stop outstanding fetches."""
        self.generation += 1
        for task in list(self._tasks):
            task.cancel()
        abort = getattr(self.transport, "abort", None)
        if callable(abort) and self._tasks:
            abort()

    def reset(self, recording: Recording | None = None) -> None:
        self.cancel()
        self.cache.clear()
        self._ranges.clear()
        if recording is not None:
            self.recording = recording

    def close(self) -> None:
        self.reset()
        close = getattr(self.transport, "close", None)
        if callable(close):
            close()
