"""Single coordination point between service payloads and the view."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Mapping

from somnoview.chunk_cache import SignalChunk
from somnoview.chunk_loader import ChunkLoader, WindowResult
from somnoview.errors import EmptyDataError, SomnoviewError, ValidationError, remediation_for
from somnoview.formatting import format_stats_table
from somnoview.histogram import (
    DualHistogram,
    Histogram,
    SummaryStatistics,
    clamp_bin_count,
    dual_histogram,
    histogram,
    recommended_bin_count,
    summary_statistics,
)
from somnoview.models import (
    AHIEvent,
    AnalysisResult,
    AnalysisSummary,
    ChannelRange,
    ChannelStats,
    EventCollection,
    Recording,
    parse_analysis_payload,
    parse_channel_stats,
)
from somnoview.navigator import EventNavigator, NavigationState
from somnoview.view_window import (
    ViewportWindow,
    WindowLimits,
    choose_downsample_factor,
    focus_window,
    pan_window,
    zoom_window,
)

LOG = logging.getLogger(__name__)

MAX_SELECTED_CHANNELS = 5


@dataclass(frozen=True)
class OrchestratorSettings:
    default_bins: int = 8
    min_bins: int = 3
    max_bins: int = 20
    separate_types: bool = True
    focus_padding_s: float = 10.0
    max_points: int = 20_000
    limits: WindowLimits = field(default_factory=WindowLimits)


@dataclass(frozen=True)
class ErrorState:
    kind: str
    message: str
    detail: str = ""

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorState":
        return cls(kind=getattr(exc, "kind", "error"), message=remediation_for(exc), detail=str(exc))


@dataclass(frozen=True)
class EventFocus:
    """Scroll hint for the chart: the event span and a padded window around it."""

    start_time: float
    end_time: float
    window_start: float
    window_end: float


@dataclass(frozen=True)
class ViewState:
    revision: int = 0
    analysis: AnalysisSummary | None = None
    events: EventCollection = field(default_factory=EventCollection)
    histogram: Histogram | DualHistogram = field(default_factory=Histogram)
    bin_count: int = 8
    recommended_bins: int = 8
    separate_types: bool = True
    statistics: SummaryStatistics | None = None
    navigation: NavigationState = field(
        default_factory=lambda: NavigationState(None, 0, None, True, True)
    )
    focus: EventFocus | None = None
    viewport: ViewportWindow | None = None
    chunks: Mapping[str, SignalChunk] = field(default_factory=dict)
    channel_stats: Mapping[str, ChannelStats] = field(default_factory=dict)
    formatted_stats: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
    channel_ranges: Mapping[str, ChannelRange] = field(default_factory=dict)
    loading: bool = False
    analyzing: bool = False
    error: ErrorState | None = None
    notice: str | None = None

    @property
    def current_event(self) -> AHIEvent | None:
        return self.navigation.current

    @property
    def has_events(self) -> bool:
        return len(self.events) > 0


Listener = Callable[[ViewState], None]


class SleepEventAnalysisOrchestrator:
    """Owns the analysis view-state and republishes it after every command.

    Listeners registered with :meth:`subscribe` receive a frozen
    :class:`ViewState` after each transition. Histogram, statistics and
    navigator are always rebuilt from the same :class:`EventCollection`, and a
    new analysis payload replaces all of them in one publish.
    """

    def __init__(
        self,
        loader: ChunkLoader,
        *,
        recording: Recording | None = None,
        settings: OrchestratorSettings | None = None,
    ):
        self.loader = loader
        self.recording = recording if recording is not None else loader.recording
        self.settings = settings or OrchestratorSettings()
        self._navigator: EventNavigator[AHIEvent] = EventNavigator()
        self._listeners: list[Listener] = []
        self._analysis_task: asyncio.Task | None = None
        self._viewport_seq = 0
        self._state = ViewState(
            bin_count=self.settings.default_bins,
            recommended_bins=self.settings.default_bins,
            separate_types=self.settings.separate_types,
        )

    # ----- observers -----

    @property
    def state(self) -> ViewState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        listener(self._state)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, **changes: Any) -> ViewState:
        self._state = replace(self._state, revision=self._state.revision + 1, **changes)
        for listener in list(self._listeners):
            listener(self._state)
        return self._state

    # ----- analysis payloads -----

    def load_analysis(self, payload: Mapping[str, Any]) -> ViewState:
        """Validate and apply a fresh analysis payload.

        An invalid payload leaves the previous analysis in place and only
        sets the error state.
        """
        try:
            result = parse_analysis_payload(payload)
        except ValidationError as exc:
            LOG.warning("Rejected analysis payload: %s", exc)
            return self._publish(analyzing=False, error=ErrorState.from_exception(exc))
        return self._apply_analysis(result)

    def _apply_analysis(self, result: AnalysisResult) -> ViewState:
        events = result.events
        self._navigator.reset(events.all)
        recommended = recommended_bin_count(len(events))
        LOG.info(
            "Loaded analysis: AHI %.1f (%s), %d apnea / %d hypopnea events",
            result.summary.ahi_score,
            result.summary.severity,
            len(events.apnea),
            len(events.hypopnea),
        )
        derived = self._derive(events, self._state.bin_count, self._state.separate_types)
        return self._publish(
            analysis=result.summary,
            events=events,
            recommended_bins=recommended,
            navigation=self._navigator.snapshot(),
            focus=self._focus_for(self._navigator.current_event),
            analyzing=False,
            error=None,
            notice=None if events else "No apnea or hypopnea events detected",
            **derived,
        )

    async def run_analysis(self, flow_channel: str, spo2_channel: str) -> ViewState:
        """Ask the service for a new analysis and apply it.

        A newer run supersedes an older one still waiting; the older response
        is dropped.
        """
        if not flow_channel or not spo2_channel:
            return self._publish(
                error=ErrorState("validation", "Select both a flow and an SpO2 channel.")
            )
        if self._analysis_task is not None and not self._analysis_task.done():
            self._analysis_task.cancel()
        self._viewport_seq += 1
        self.loader.cancel()
        self._publish(analyzing=True, loading=False, error=None)
        task = asyncio.ensure_future(self.loader.transport.run_analysis(flow_channel, spo2_channel))
        self._analysis_task = task
        try:
            payload = await task
        except asyncio.CancelledError:
            if task.cancelled() and self._analysis_task is not task:
                LOG.debug("Analysis for %s/%s superseded", flow_channel, spo2_channel)
                return self._state
            raise
        except SomnoviewError as exc:
            LOG.warning("Analysis request failed: %s", exc)
            return self._publish(analyzing=False, error=ErrorState.from_exception(exc))
        if self._analysis_task is not task:
            return self._state
        self._analysis_task = None
        return self.load_analysis(payload)

    def _derive(self, events: EventCollection, bin_count: int, separate: bool) -> dict[str, Any]:
        if separate:
            hist: Histogram | DualHistogram = dual_histogram(
                {"apnea": events.durations("apnea"), "hypopnea": events.durations("hypopnea")},
                bin_count,
            )
        else:
            hist = histogram(events.durations(), bin_count)
        return {
            "histogram": hist,
            "bin_count": bin_count,
            "separate_types": separate,
            "statistics": summary_statistics(events.durations()),
        }

    # ----- histogram controls -----

    def set_bin_count(self, value) -> ViewState:
        s = self.settings
        bins = clamp_bin_count(value, minimum=s.min_bins, maximum=s.max_bins, default=s.default_bins)
        return self._publish(**self._derive(self._state.events, bins, self._state.separate_types))

    def use_recommended_bins(self) -> ViewState:
        bins = max(1, self._state.recommended_bins)
        return self._publish(**self._derive(self._state.events, bins, self._state.separate_types))

    def set_separate_types(self, separate: bool) -> ViewState:
        return self._publish(**self._derive(self._state.events, self._state.bin_count, bool(separate)))

    # ----- navigation -----

    def navigate(self, direction: str) -> ViewState:
        event = self._navigator.navigate(direction)
        return self._publish(navigation=self._navigator.snapshot(), focus=self._focus_for(event))

    def first(self) -> ViewState:
        return self.navigate("first")

    def prev(self) -> ViewState:
        return self.navigate("prev")

    def next(self) -> ViewState:
        return self.navigate("next")

    def last(self) -> ViewState:
        return self.navigate("last")

    def _focus_for(self, event: AHIEvent | None) -> EventFocus | None:
        if event is None:
            return None
        total = self._total_duration(event.end_time + self.settings.focus_padding_s)
        start, duration = focus_window(
            event.start_time,
            event.end_time,
            padding=self.settings.focus_padding_s,
            total=total,
            limits=self.settings.limits,
        )
        return EventFocus(event.start_time, event.end_time, start, start + duration)

    async def focus_current_event(self) -> ViewState:
        """Move the viewport onto the padded window of the selected event."""
        focus = self._state.focus
        if focus is None:
            return self._state
        channels = self._state.viewport.channels if self._state.viewport else ()
        factor = self._auto_factor(focus.window_end - focus.window_start, channels)
        return await self.set_viewport(
            ViewportWindow(focus.window_start, focus.window_end, channels, factor)
        )

    # ----- channel statistics -----

    def set_channel_stats(self, payload: Mapping[str, Any]) -> ViewState:
        try:
            stats = parse_channel_stats(payload)
        except ValidationError as exc:
            return self._publish(error=ErrorState.from_exception(exc))
        return self._publish(channel_stats=stats, formatted_stats=format_stats_table(stats))

    async def load_channel_ranges(self) -> ViewState:
        viewport = self._state.viewport
        if viewport is None or not viewport.channels:
            return self._state
        try:
            ranges = await self.loader.channel_ranges(viewport.channels)
        except SomnoviewError as exc:
            return self._publish(error=ErrorState.from_exception(exc))
        return self._publish(channel_ranges={**self._state.channel_ranges, **ranges})

    # ----- viewport -----

    async def set_viewport(self, viewport: ViewportWindow) -> ViewState:
        """Request chunks for ``viewport`` and apply them if still current."""
        if len(viewport.channels) > MAX_SELECTED_CHANNELS:
            viewport = viewport.with_channels(viewport.channels[:MAX_SELECTED_CHANNELS])
        self._viewport_seq += 1
        seq = self._viewport_seq
        if not self.loader.is_cached(viewport):
            self._publish(viewport=viewport, loading=True)
        try:
            result = await self.loader.request_window(viewport)
        except EmptyDataError as exc:
            if seq != self._viewport_seq:
                return self._state
            return self._publish(
                viewport=viewport, loading=False, chunks={}, error=None, notice=remediation_for(exc)
            )
        except SomnoviewError as exc:
            if seq != self._viewport_seq:
                LOG.debug("Ignoring failure for superseded window: %s", exc)
                return self._state
            return self._publish(loading=False, error=ErrorState.from_exception(exc))
        return self._apply_result(result)

    def _apply_result(self, result: WindowResult) -> ViewState:
        # check then mutate; no await between the two
        if result.stale or not self.loader.is_current(result.generation):
            LOG.debug("Stale window result for generation %d dropped", result.generation)
            return self._state
        return self._apply_chunks(result.viewport, result.chunks)

    def _apply_chunks(self, viewport: ViewportWindow, chunks: Mapping[str, SignalChunk]) -> ViewState:
        return self._publish(viewport=viewport, chunks=dict(chunks), loading=False, notice=None)

    async def pan(self, delta: float) -> ViewState:
        viewport = self._require_viewport()
        start, duration = pan_window(
            viewport.start,
            viewport.duration,
            delta,
            total=self._total_duration(viewport.end + delta),
            limits=self.settings.limits,
        )
        return await self.set_viewport(viewport.with_span(start, duration))

    async def zoom(self, factor: float, anchor: float | None = None) -> ViewState:
        viewport = self._require_viewport()
        anchor = viewport.start + viewport.duration / 2.0 if anchor is None else anchor
        start, duration = zoom_window(
            viewport.start,
            viewport.duration,
            factor,
            anchor=anchor,
            total=self._total_duration(viewport.end),
            limits=self.settings.limits,
        )
        updated = replace(
            viewport.with_span(start, duration),
            factor=self._auto_factor(duration, viewport.channels),
        )
        return await self.set_viewport(updated)

    async def toggle_channel(self, name: str) -> ViewState:
        viewport = self._require_viewport()
        if self.recording is not None and name not in self.recording:
            raise KeyError(f"unknown channel {name!r}")
        channels = list(viewport.channels)
        if name in channels:
            channels.remove(name)
        elif len(channels) >= MAX_SELECTED_CHANNELS:
            LOG.info("Channel limit of %d reached; %s not added", MAX_SELECTED_CHANNELS, name)
            return self._state
        else:
            channels.append(name)
        return await self.set_viewport(viewport.with_channels(channels))

    def _require_viewport(self) -> ViewportWindow:
        if self._state.viewport is None:
            raise RuntimeError("no viewport has been set")
        return self._state.viewport

    def _auto_factor(self, duration: float, channels) -> int:
        if self.recording is None:
            return 1
        rates = [self.recording.channel(ch).sample_rate for ch in channels if ch in self.recording]
        return choose_downsample_factor(duration, rates, self.settings.max_points)

    def _total_duration(self, fallback: float) -> float:
        if self.recording is not None and self.recording.duration_s > 0:
            return self.recording.duration_s
        return max(fallback, 0.0)

    # ----- lifecycle -----

    def clear_error(self) -> ViewState:
        return self._publish(error=None)

    def cancel(self) -> ViewState:
        """Abandon outstanding retrievals; pending results are dropped when they land."""
        if self._analysis_task is not None and not self._analysis_task.done():
            self._analysis_task.cancel()
        self._analysis_task = None
        self._viewport_seq += 1
        self.loader.cancel()
        return self._publish(loading=False, analyzing=False)

    def reset(self, recording: Recording | None = None) -> ViewState:
        """Drop analysis, viewport and navigation for a newly opened recording.

        Subscribers stay registered and receive the cleared state.
        """
        if self._analysis_task is not None and not self._analysis_task.done():
            self._analysis_task.cancel()
        self._analysis_task = None
        self._viewport_seq += 1
        self.recording = recording
        self._navigator.reset(())
        fresh = ViewState(
            bin_count=self.settings.default_bins,
            recommended_bins=self.settings.default_bins,
            separate_types=self.settings.separate_types,
        )
        self._state = replace(fresh, revision=self._state.revision)
        return self._publish()
