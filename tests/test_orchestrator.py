import asyncio
import dataclasses

import pytest

from somnoview.chunk_loader import ChunkLoader
from somnoview.errors import TransportError
from somnoview.histogram import DualHistogram, Histogram
from somnoview.models import Channel, Recording
from somnoview.orchestrator import OrchestratorSettings, SleepEventAnalysisOrchestrator
from somnoview.view_window import ViewportWindow

from conftest import FakeTransport, make_payload

RECORDING = Recording(
    [Channel("Flow", 10.0, 8 * 3600 * 10), Channel("SpO2", 1.0, 8 * 3600), Channel("Thor", 10.0, 8 * 3600 * 10)]
)


def make_orchestrator(transport, **settings):
    loader = ChunkLoader(transport, recording=RECORDING)
    return SleepEventAnalysisOrchestrator(
        loader, recording=RECORDING, settings=OrchestratorSettings(**settings)
    )


def seven_three_payload():
    apnea = [(100 * i, 10 + i) for i in range(1, 8)]
    hypopnea = [(100 * i + 50, 20 + i) for i in range(1, 4)]
    return make_payload(apnea=apnea, hypopnea=hypopnea, total_events=10)


def test_initial_state(fake_transport):
    orch = make_orchestrator(fake_transport)
    state = orch.state
    assert state.revision == 0
    assert not state.has_events
    assert state.bin_count == 8
    assert state.navigation.index is None


def test_load_analysis_derives_everything_together(fake_transport):
    orch = make_orchestrator(fake_transport)
    state = orch.load_analysis(seven_three_payload())
    assert len(state.events) == 10
    assert state.recommended_bins == 5
    assert isinstance(state.histogram, DualHistogram)
    assert sum(state.histogram.series("apnea")) == 7
    assert sum(state.histogram.series("hypopnea")) == 3
    assert state.statistics.count == 10
    assert state.navigation.index == 0
    assert state.current_event.start_time == 100.0
    assert state.analysis.ahi_score == pytest.approx(12.4)
    assert state.error is None


def test_new_payload_replaces_previous_atomically(fake_transport):
    orch = make_orchestrator(fake_transport)
    orch.load_analysis(seven_three_payload())
    orch.last()
    snapshots = []
    orch.subscribe(snapshots.append)
    state = orch.load_analysis(make_payload(apnea=[(30, 12)]))
    assert len(snapshots) == 2
    assert len(state.events) == 1
    assert state.navigation.index == 0
    assert state.statistics.count == 1
    assert sum(state.histogram.series("apnea")) == 1


def test_invalid_payload_keeps_prior_analysis(fake_transport):
    orch = make_orchestrator(fake_transport)
    good = orch.load_analysis(seven_three_payload())
    bad = make_payload(apnea=[(10, 20)])
    bad["all_events"] = []
    state = orch.load_analysis(bad)
    assert state.error is not None
    assert state.error.kind == "validation"
    assert state.events is good.events
    assert state.histogram is good.histogram


def test_zero_events_sets_notice(fake_transport):
    orch = make_orchestrator(fake_transport)
    state = orch.load_analysis(make_payload())
    assert state.notice
    assert state.histogram.is_empty
    assert state.statistics is None
    assert state.navigation.label == "0 of 0"
    assert state.focus is None


def test_snapshots_are_immutable(fake_transport):
    orch = make_orchestrator(fake_transport)
    seen = []
    unsubscribe = orch.subscribe(seen.append)
    orch.load_analysis(seven_three_payload())
    orch.next()
    unsubscribe()
    orch.next()
    assert [s.revision for s in seen] == [0, 1, 2]
    assert seen[1].navigation.index == 0
    assert seen[2].navigation.index == 1
    with pytest.raises(dataclasses.FrozenInstanceError):
        seen[2].bin_count = 3


def test_navigation_focus_padding(fake_transport):
    orch = make_orchestrator(fake_transport, focus_padding_s=10.0)
    orch.load_analysis(make_payload(apnea=[(100, 20)], hypopnea=[(5, 15)]))
    state = orch.first()
    assert state.focus.start_time == 5.0
    # clamped at the start of the recording
    assert state.focus.window_start == 0.0
    state = orch.next()
    assert (state.focus.window_start, state.focus.window_end) == (90.0, 130.0)
    assert orch.next().navigation.index == 1


def test_bin_controls(fake_transport):
    orch = make_orchestrator(fake_transport)
    orch.load_analysis(seven_three_payload())
    assert orch.set_bin_count(50).bin_count == 20
    assert orch.set_bin_count("junk").bin_count == 8
    state = orch.set_bin_count(4)
    assert len(state.histogram.bins) == 4
    assert orch.use_recommended_bins().bin_count == 5
    combined = orch.set_separate_types(False)
    assert isinstance(combined.histogram, Histogram)
    assert sum(combined.histogram.frequencies) == 10


def test_run_analysis_applies_payload(fake_transport):
    fake_transport.payload = seven_three_payload()
    orch = make_orchestrator(fake_transport)
    seen = []
    orch.subscribe(seen.append)
    state = asyncio.run(orch.run_analysis("Flow", "SpO2"))
    assert len(state.events) == 10
    assert not state.analyzing
    assert any(s.analyzing for s in seen)
    assert ("analysis", "Flow", "SpO2") in fake_transport.calls


def test_run_analysis_requires_both_channels(fake_transport):
    orch = make_orchestrator(fake_transport)
    state = asyncio.run(orch.run_analysis("Flow", ""))
    assert state.error.kind == "validation"
    assert fake_transport.calls == []


def test_run_analysis_failure_becomes_error_state(fake_transport):
    fake_transport.fail_with = TransportError("boom", status_code=502)
    orch = make_orchestrator(fake_transport)
    state = asyncio.run(orch.run_analysis("Flow", "SpO2"))
    assert state.error.kind == "transport"
    assert state.error.message.startswith("Server error")
    assert not state.analyzing


def test_superseded_analysis_is_dropped(fake_transport):
    orch = make_orchestrator(fake_transport)

    async def scenario():
        gate = fake_transport.gate(-1.0)
        fake_transport.payload = make_payload(apnea=[(10, 12)])
        first = asyncio.create_task(orch.run_analysis("Flow", "SpO2"))
        for _ in range(3):
            await asyncio.sleep(0)
        fake_transport.gates.clear()
        fake_transport.payload = seven_three_payload()
        second = await orch.run_analysis("Thor", "SpO2")
        gate.set()
        return await first, second

    first, second = asyncio.run(scenario())
    assert len(orch.state.events) == 10
    assert len(second.events) == 10


def test_viewport_load_publishes_chunks(fake_transport):
    orch = make_orchestrator(fake_transport)
    seen = []
    orch.subscribe(seen.append)
    state = asyncio.run(orch.set_viewport(ViewportWindow(0.0, 30.0, ("Flow", "SpO2"))))
    assert set(state.chunks) == {"Flow", "SpO2"}
    assert not state.loading
    assert any(s.loading for s in seen)


def test_cached_viewport_skips_loading_state(fake_transport):
    orch = make_orchestrator(fake_transport)
    viewport = ViewportWindow(0.0, 30.0, ("Flow",))
    asyncio.run(orch.set_viewport(viewport))
    seen = []
    orch.subscribe(seen.append)
    asyncio.run(orch.set_viewport(viewport))
    assert not any(s.loading for s in seen)
    assert len(fake_transport.calls) == 1


def test_stale_viewport_result_not_applied(fake_transport):
    orch = make_orchestrator(fake_transport)
    old = ViewportWindow(0.0, 30.0, ("Flow",))
    new = ViewportWindow(300.0, 330.0, ("Flow",))

    async def scenario():
        gate = fake_transport.gate(0.0)
        slow = asyncio.create_task(orch.set_viewport(old))
        await asyncio.sleep(0)
        await orch.set_viewport(new)
        gate.set()
        await slow

    asyncio.run(scenario())
    assert orch.state.viewport == new
    assert orch.state.chunks["Flow"].start >= 300.0
    # the late response still warmed the cache
    assert orch.loader.is_cached(old)


def test_viewport_limited_to_five_channels():
    names = [f"C{i}" for i in range(7)]
    transport = FakeTransport({name: 1.0 for name in names})
    orch = SleepEventAnalysisOrchestrator(ChunkLoader(transport))
    state = asyncio.run(orch.set_viewport(ViewportWindow(0.0, 10.0, tuple(names))))
    assert state.viewport.channels == tuple(names[:5])


def test_viewport_failure_sets_error(fake_transport):
    fake_transport.fail_with = TransportError("refused")
    orch = make_orchestrator(fake_transport)
    state = asyncio.run(orch.set_viewport(ViewportWindow(0.0, 30.0, ("Flow",))))
    assert state.error.kind == "transport"
    assert not state.loading


def test_empty_window_is_a_notice(fake_transport):
    fake_transport.empty.add("SpO2")
    orch = make_orchestrator(fake_transport)
    gap = ViewportWindow(0.0, 30.0, ("SpO2",))

    async def scenario():
        first = await orch.set_viewport(gap)
        await orch.set_viewport(ViewportWindow(0.0, 30.0, ("Flow",)))
        return first, await orch.set_viewport(gap)

    first, again = asyncio.run(scenario())
    for state in (first, again):
        assert state.error is None
        assert state.notice == "No data to display."
        assert state.chunks == {}
        assert state.viewport == gap
        assert not state.loading
    assert len(fake_transport.calls) == 2


def test_one_empty_channel_does_not_hide_the_others(fake_transport):
    fake_transport.empty.add("SpO2")
    orch = make_orchestrator(fake_transport)

    async def scenario():
        await orch.set_viewport(ViewportWindow(0.0, 30.0, ("Flow",)))
        return await orch.set_viewport(ViewportWindow(0.0, 30.0, ("Flow", "SpO2")))

    state = asyncio.run(scenario())
    assert state.notice is None
    assert state.chunks["Flow"].sample_count == 300
    assert state.chunks["SpO2"].sample_count == 0


def test_analysis_run_clears_interrupted_viewport_load(fake_transport):
    fake_transport.payload = make_payload(apnea=[(10, 12)])
    orch = make_orchestrator(fake_transport)

    async def scenario():
        fake_transport.gate(0.0)
        loading = asyncio.create_task(orch.set_viewport(ViewportWindow(0.0, 30.0, ("Flow",))))
        for _ in range(3):
            await asyncio.sleep(0)
        assert orch.state.loading
        await orch.run_analysis("Flow", "SpO2")
        await loading

    asyncio.run(scenario())
    assert not orch.state.loading
    assert len(orch.state.events) == 1
    assert orch.state.chunks == {}


def test_pan_zoom_and_toggle(fake_transport):
    orch = make_orchestrator(fake_transport)

    async def scenario():
        await orch.set_viewport(ViewportWindow(0.0, 60.0, ("Flow",)))
        panned = await orch.pan(30.0)
        zoomed = await orch.zoom(0.5)
        toggled = await orch.toggle_channel("SpO2")
        return panned, zoomed, toggled

    panned, zoomed, toggled = asyncio.run(scenario())
    assert (panned.viewport.start, panned.viewport.end) == (30.0, 90.0)
    assert zoomed.viewport.duration == pytest.approx(30.0)
    assert zoomed.viewport.start == pytest.approx(45.0)
    assert toggled.viewport.channels == ("Flow", "SpO2")
    with pytest.raises(KeyError):
        asyncio.run(orch.toggle_channel("EEG"))


def test_zoom_out_raises_downsample_factor(fake_transport):
    orch = make_orchestrator(fake_transport, max_points=1000)

    async def scenario():
        await orch.set_viewport(ViewportWindow(0.0, 60.0, ("Flow",)))
        return await orch.zoom(10.0)

    state = asyncio.run(scenario())
    assert state.viewport.duration == pytest.approx(600.0)
    assert state.viewport.factor == 8


def test_pan_without_viewport_raises(fake_transport):
    orch = make_orchestrator(fake_transport)
    with pytest.raises(RuntimeError):
        asyncio.run(orch.pan(10.0))


def test_focus_current_event_moves_viewport(fake_transport):
    orch = make_orchestrator(fake_transport)
    orch.load_analysis(make_payload(apnea=[(100, 20)]))

    async def scenario():
        await orch.set_viewport(ViewportWindow(0.0, 30.0, ("Flow",)))
        return await orch.focus_current_event()

    state = asyncio.run(scenario())
    assert (state.viewport.start, state.viewport.end) == (90.0, 130.0)
    assert state.viewport.channels == ("Flow",)


def test_channel_stats_and_ranges(fake_transport):
    orch = make_orchestrator(fake_transport)
    state = orch.set_channel_stats(
        {"Flow": {"mean": 0.1, "median": 0.0, "min": -1.0, "max": 1.0, "stddev": 0.3, "sample_rate": 10}}
    )
    assert state.formatted_stats["Flow"]["Sample rate"] == "10.00 Hz"

    async def scenario():
        await orch.set_viewport(ViewportWindow(0.0, 30.0, ("Flow", "SpO2")))
        return await orch.load_channel_ranges()

    state = asyncio.run(scenario())
    assert set(state.channel_ranges) == {"Flow", "SpO2"}
    assert orch.set_channel_stats({"Flow": "nope"}).error.kind == "validation"


def test_clear_error(fake_transport):
    orch = make_orchestrator(fake_transport)
    orch.load_analysis({})
    assert orch.state.error is not None
    assert orch.clear_error().error is None
