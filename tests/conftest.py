"""Shared fakes for the analysis service."""
from __future__ import annotations

import asyncio

import numpy as np
import pytest

from somnoview.transport import ChannelSamples


def make_event(kind: str, start: float, duration: float, **extra) -> dict:
    event = {
        "type": kind,
        "start_time": start,
        "end_time": start + duration,
        "duration": duration,
        "severity": extra.pop("severity", "moderate"),
    }
    event.update(extra)
    return event


def make_payload(apnea=(), hypopnea=(), **summary) -> dict:
    apnea = [make_event("apnea", s, d) for s, d in apnea]
    hypopnea = [make_event("hypopnea", s, d) for s, d in hypopnea]
    all_events = sorted(apnea + hypopnea, key=lambda ev: ev["start_time"])
    ahi = {
        "ahi_score": 12.4,
        "severity": "Mild",
        "total_events": len(all_events),
        "apnea_count": len(apnea),
        "hypopnea_count": len(hypopnea),
        "events_per_hour_breakdown": {"apnea_per_hour": 7.0, "hypopnea_per_hour": 5.4},
    }
    ahi.update(summary)
    return {
        "ahi_analysis": ahi,
        "apnea_events": apnea,
        "hypopnea_events": hypopnea,
        "all_events": all_events,
    }


class FakeTransport:
    """In-memory service: sample value equals the channel's index in ``rates``.

    Channels listed in ``empty`` come back with no samples.
    """

    def __init__(self, rates=None, *, payload=None):
        self.rates = rates or {"Flow": 10.0, "SpO2": 1.0, "Thor": 10.0}
        self.payload = payload
        self.calls: list[tuple] = []
        self.gates: dict[float, asyncio.Event] = {}
        self.fail_with: BaseException | None = None
        self.aborted = 0
        self.empty: set[str] = set()

    def gate(self, start: float) -> asyncio.Event:
        event = asyncio.Event()
        self.gates[start] = event
        return event

    def _samples(self, channel, start, end, factor):
        fs = self.rates[channel] / factor
        n = 0 if channel in self.empty else int(round((end - start) * fs))
        t = start + np.arange(n) / fs
        value = list(self.rates).index(channel)
        return ChannelSamples(x=np.full(n, value, dtype=np.float32), t=t)

    async def _wait(self, start):
        await asyncio.sleep(0)
        gate = self.gates.get(start)
        if gate is not None:
            await gate.wait()
        if self.fail_with is not None:
            raise self.fail_with

    async def fetch_window(self, channel, start, end, factor):
        self.calls.append(("single", (channel,), start, end, factor))
        await self._wait(start)
        return self._samples(channel, start, end, factor)

    async def fetch_multi_window(self, channels, start, end, factor):
        self.calls.append(("multi", tuple(channels), start, end, factor))
        await self._wait(start)
        return {ch: self._samples(ch, start, end, factor) for ch in channels}

    async def fetch_channel_ranges(self, channels):
        self.calls.append(("ranges", tuple(channels)))
        return {ch: {"min": -1.0 * idx, "max": float(idx)} for idx, ch in enumerate(channels)}

    async def run_analysis(self, flow_channel, spo2_channel):
        self.calls.append(("analysis", flow_channel, spo2_channel))
        await self._wait(-1.0)
        return self.payload

    def abort(self):
        self.aborted += 1


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def payload_factory():
    return make_payload
