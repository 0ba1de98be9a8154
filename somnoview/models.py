"""Recording, event and statistics types received from the analysis service."""
from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Iterator, Mapping, Sequence

import numpy as np

from somnoview.errors import ValidationError
from somnoview.timebase import Timebase

LOG = logging.getLogger(__name__)

EVENT_TYPES = ("apnea", "hypopnea")
DURATION_TOLERANCE_S = 1e-3


@dataclass(frozen=True)
class Channel:
    name: str
    sample_rate: float
    total_samples: int = 0

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("channel name must not be empty")
        if not self.sample_rate or self.sample_rate <= 0:
            raise ValueError(f"sample rate of {self.name!r} must be positive")
        if self.total_samples < 0:
            raise ValueError("total_samples must be non-negative")

    @property
    def duration_s(self) -> float:
        return self.total_samples / self.sample_rate


class Recording:
    """Channel layout of one loaded recording."""

    def __init__(self, channels: Iterable[Channel], *, start_dt: datetime | None = None):
        ordered = tuple(channels)
        names = [ch.name for ch in ordered]
        dupes = sorted(name for name, count in Counter(names).items() if count > 1)
        if dupes:
            raise ValueError(f"duplicate channel names: {', '.join(dupes)}")
        self.channels = ordered
        self._by_name = {ch.name: ch for ch in ordered}
        self.start_dt = start_dt
        self.duration_s = max((ch.duration_s for ch in ordered), default=0.0)
        self.timebase = Timebase(start_dt, self.duration_s) if start_dt is not None else None

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self.channels)

    def __iter__(self) -> Iterator[Channel]:
        return iter(self.channels)

    def channel(self, name: str) -> Channel:
        try:
            return self._by_name[name]
        except KeyError:
            raise KeyError(f"unknown channel {name!r}") from None

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(ch.name for ch in self.channels)


@dataclass(frozen=True)
class AHIEvent:
    type: str
    start_time: float
    end_time: float
    duration: float
    severity: str = ""
    spo2_drop: float | None = None

    def __post_init__(self) -> None:
        if self.type not in EVENT_TYPES:
            raise ValidationError(f"unknown event type {self.type!r}", field="type")
        if not self.end_time > self.start_time:
            raise ValidationError(
                f"event end {self.end_time} must be after start {self.start_time}",
                field="end_time",
            )
        if abs(self.duration - (self.end_time - self.start_time)) > DURATION_TOLERANCE_S:
            raise ValidationError(
                f"event duration {self.duration} does not match end - start", field="duration"
            )
        if self.spo2_drop is not None and self.spo2_drop < 0:
            raise ValidationError("spo2_drop must be non-negative", field="spo2_drop")

    @classmethod
    def from_payload(cls, raw: Mapping[str, Any]) -> "AHIEvent":
        if not isinstance(raw, Mapping):
            raise ValidationError("event must be an object", field="event")
        for key in ("type", "start_time", "end_time"):
            if raw.get(key) is None:
                raise ValidationError(f"event is missing {key!r}", field=key)
        start = _as_float(raw["start_time"], "start_time")
        end = _as_float(raw["end_time"], "end_time")
        duration = raw.get("duration")
        duration = end - start if duration is None else _as_float(duration, "duration")
        spo2 = raw.get("spo2_drop")
        return cls(
            type=str(raw["type"]).lower(),
            start_time=start,
            end_time=end,
            duration=duration,
            severity=str(raw.get("severity") or ""),
            spo2_drop=None if spo2 is None else _as_float(spo2, "spo2_drop"),
        )

    @property
    def is_apnea(self) -> bool:
        return self.type == "apnea"


class EventCollection:
    """Chronological events with apnea / hypopnea partitions."""

    def __init__(self, events: Iterable[AHIEvent] = ()):
        ordered = sorted(events, key=lambda ev: (ev.start_time, ev.end_time))
        self.all: tuple[AHIEvent, ...] = tuple(ordered)
        self.apnea = tuple(ev for ev in self.all if ev.type == "apnea")
        self.hypopnea = tuple(ev for ev in self.all if ev.type == "hypopnea")

    def __len__(self) -> int:
        return len(self.all)

    def __iter__(self) -> Iterator[AHIEvent]:
        return iter(self.all)

    def __getitem__(self, index: int) -> AHIEvent:
        return self.all[index]

    def __bool__(self) -> bool:
        return bool(self.all)

    def subset(self, kind: str) -> tuple[AHIEvent, ...]:
        if kind == "all":
            return self.all
        if kind == "apnea":
            return self.apnea
        if kind == "hypopnea":
            return self.hypopnea
        raise ValueError(f"unknown event subset {kind!r}")

    def durations(self, kind: str = "all") -> np.ndarray:
        return np.array([ev.duration for ev in self.subset(kind)], dtype=np.float64)


@dataclass(frozen=True)
class AnalysisSummary:
    ahi_score: float
    severity: str
    severity_color: str = ""
    total_events: int = 0
    apnea_count: int = 0
    hypopnea_count: int = 0
    recording_duration_hours: float = 0.0
    total_event_duration_minutes: float = 0.0
    event_percentage: float = 0.0
    avg_apnea_duration: float = 0.0
    avg_hypopnea_duration: float = 0.0
    apnea_per_hour: float = 0.0
    hypopnea_per_hour: float = 0.0

    @classmethod
    def from_payload(cls, raw: Mapping[str, Any]) -> "AnalysisSummary":
        if not isinstance(raw, Mapping):
            raise ValidationError("ahi_analysis must be an object", field="ahi_analysis")
        if raw.get("ahi_score") is None:
            raise ValidationError("ahi_analysis is missing 'ahi_score'", field="ahi_score")
        if raw.get("severity") is None:
            raise ValidationError("ahi_analysis is missing 'severity'", field="severity")
        per_hour = raw.get("events_per_hour_breakdown") or {}
        if not isinstance(per_hour, Mapping):
            raise ValidationError(
                "events_per_hour_breakdown must be an object", field="events_per_hour_breakdown"
            )
        return cls(
            ahi_score=_as_float(raw["ahi_score"], "ahi_score"),
            severity=str(raw["severity"]),
            severity_color=str(raw.get("severity_color") or ""),
            total_events=_as_int(raw.get("total_events") or 0, "total_events"),
            apnea_count=_as_int(raw.get("apnea_count") or 0, "apnea_count"),
            hypopnea_count=_as_int(raw.get("hypopnea_count") or 0, "hypopnea_count"),
            recording_duration_hours=_as_float(raw.get("recording_duration_hours") or 0.0, "recording_duration_hours"),
            total_event_duration_minutes=_as_float(
                raw.get("total_event_duration_minutes") or 0.0, "total_event_duration_minutes"
            ),
            event_percentage=_as_float(raw.get("event_percentage") or 0.0, "event_percentage"),
            avg_apnea_duration=_as_float(raw.get("avg_apnea_duration") or 0.0, "avg_apnea_duration"),
            avg_hypopnea_duration=_as_float(raw.get("avg_hypopnea_duration") or 0.0, "avg_hypopnea_duration"),
            apnea_per_hour=_as_float(per_hour.get("apnea_per_hour") or 0.0, "apnea_per_hour"),
            hypopnea_per_hour=_as_float(per_hour.get("hypopnea_per_hour") or 0.0, "hypopnea_per_hour"),
        )


@dataclass(frozen=True)
class AnalysisResult:
    summary: AnalysisSummary
    events: EventCollection = field(default_factory=EventCollection)


def parse_analysis_payload(payload: Mapping[str, Any]) -> AnalysisResult:
    """Validate an AHI analysis response and build its event collection.

    ``all_events`` must be exactly ``apnea_events`` plus ``hypopnea_events``
    (compared as multisets) and each partition must only hold its own type.
    """
    if not isinstance(payload, Mapping):
        raise ValidationError("analysis payload must be an object")
    for key in ("ahi_analysis", "apnea_events", "hypopnea_events", "all_events"):
        if key not in payload or payload[key] is None:
            raise ValidationError(f"analysis payload is missing {key!r}", field=key)
    summary = AnalysisSummary.from_payload(payload["ahi_analysis"])
    apnea = _parse_events(payload["apnea_events"], "apnea_events")
    hypopnea = _parse_events(payload["hypopnea_events"], "hypopnea_events")
    all_events = _parse_events(payload["all_events"], "all_events")

    if any(ev.type != "apnea" for ev in apnea):
        raise ValidationError("apnea_events contains a non-apnea event", field="apnea_events")
    if any(ev.type != "hypopnea" for ev in hypopnea):
        raise ValidationError("hypopnea_events contains a non-hypopnea event", field="hypopnea_events")
    if Counter(all_events) != Counter(apnea) + Counter(hypopnea):
        raise ValidationError(
            "all_events is not the union of apnea_events and hypopnea_events", field="all_events"
        )

    events = EventCollection(all_events)
    if summary.total_events and summary.total_events != len(events):
        LOG.warning(
            "Summary reports %d events but payload holds %d", summary.total_events, len(events)
        )
    return AnalysisResult(summary=summary, events=events)


@dataclass(frozen=True)
class ChannelStats:
    mean: float
    median: float
    min: float
    max: float
    stddev: float
    total_samples: int | None = None
    sample_rate: float | None = None

    @classmethod
    def from_payload(cls, raw: Mapping[str, Any], *, channel: str = "") -> "ChannelStats":
        if not isinstance(raw, Mapping):
            raise ValidationError(f"stats for {channel!r} must be an object", field=channel)
        values = {}
        for key in ("mean", "median", "min", "max", "stddev"):
            value = raw.get(key)
            # NaN is a legal "not available" marker from the service
            values[key] = math.nan if value is None else _as_float(value, key)
        total = raw.get("total_samples")
        rate = raw.get("sample_rate")
        return cls(
            total_samples=None if total is None else _as_int(total, "total_samples"),
            sample_rate=None if rate is None else _as_float(rate, "sample_rate"),
            **values,
        )


def parse_channel_stats(payload: Mapping[str, Any]) -> dict[str, ChannelStats]:
    if not isinstance(payload, Mapping):
        raise ValidationError("channel stats must be an object keyed by channel")
    return {str(name): ChannelStats.from_payload(raw, channel=str(name)) for name, raw in payload.items()}


@dataclass(frozen=True)
class ChannelRange:
    min: float
    max: float


def parse_channel_ranges(payload: Mapping[str, Any], channels: Sequence[str]) -> dict[str, ChannelRange]:
    if not isinstance(payload, Mapping):
        raise ValidationError("channel ranges must be an object keyed by channel")
    ranges: dict[str, ChannelRange] = {}
    for name in channels:
        raw = payload.get(name)
        if not isinstance(raw, Mapping) or raw.get("min") is None or raw.get("max") is None:
            raise ValidationError(f"missing min/max for channel {name!r}", field=name)
        ranges[name] = ChannelRange(_as_float(raw["min"], "min"), _as_float(raw["max"], "max"))
    return ranges


def _parse_events(raw: Any, field_name: str) -> list[AHIEvent]:
    if not isinstance(raw, (list, tuple)):
        raise ValidationError(f"{field_name} must be a list", field=field_name)
    events = []
    for idx, item in enumerate(raw):
        try:
            events.append(AHIEvent.from_payload(item))
        except ValidationError as exc:
            raise ValidationError(f"{field_name}[{idx}]: {exc}", field=field_name) from exc
    return events


def _as_float(value: Any, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be numeric, got {value!r}", field=name) from None


def _as_int(value: Any, name: str) -> int:
    number = _as_float(value, name)
    if not math.isfinite(number) or number != int(number):
        raise ValidationError(f"{name} must be a whole number, got {value!r}", field=name)
    return int(number)
