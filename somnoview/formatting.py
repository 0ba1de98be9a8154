"""Presentation strings for channel statistics and event read-outs."""
from __future__ import annotations

import math
from typing import Mapping

from somnoview.models import AHIEvent, ChannelStats
from somnoview.timebase import Timebase, relative_labels

NOT_AVAILABLE = "N/A"
SCIENTIFIC_ABOVE = 1e4
SCIENTIFIC_BELOW = 1e-3

SEVERITY_BANDS = (
    (5.0, "normal"),
    (15.0, "mild"),
    (30.0, "moderate"),
)


def _missing(value) -> bool:
    if value is None:
        return True
    try:
        return not math.isfinite(float(value))
    except (TypeError, ValueError):
        return True


def format_value(value, precision: int = 2) -> str:
    """Fixed notation for ordinary magnitudes, scientific for tiny or huge ones.

    >>> format_value(12.5)
    '12.50'
    >>> format_value(0.0000123)
    '1.23e-05'
    >>> format_value(None)
    'N/A'
    """
    if _missing(value):
        return NOT_AVAILABLE
    value = float(value)
    magnitude = abs(value)
    if value != 0 and (magnitude >= SCIENTIFIC_ABOVE or magnitude < SCIENTIFIC_BELOW):
        return f"{value:.{precision}e}"
    return f"{value:.{precision}f}"


def format_count(value) -> str:
    if _missing(value):
        return NOT_AVAILABLE
    return f"{int(value):,}"


def format_rate(value) -> str:
    if _missing(value):
        return NOT_AVAILABLE
    return f"{format_value(value)} Hz"


def format_channel_stats(stats: ChannelStats, precision: int = 2) -> dict[str, str]:
    return {
        "Mean": format_value(stats.mean, precision),
        "Median": format_value(stats.median, precision),
        "Min": format_value(stats.min, precision),
        "Max": format_value(stats.max, precision),
        "Std dev": format_value(stats.stddev, precision),
        "Samples": format_count(stats.total_samples),
        "Sample rate": format_rate(stats.sample_rate),
    }


def format_stats_table(stats: Mapping[str, ChannelStats], precision: int = 2) -> dict[str, dict[str, str]]:
    return {name: format_channel_stats(entry, precision) for name, entry in stats.items()}


def format_duration(seconds) -> str:
    if _missing(seconds):
        return NOT_AVAILABLE
    return f"{float(seconds):.1f}s"


def format_spo2_drop(percent) -> str:
    if _missing(percent):
        return NOT_AVAILABLE
    return f"{float(percent):.1f}%"


def format_event(event: AHIEvent, timebase: Timebase | None = None) -> dict[str, str]:
    if timebase is not None:
        start = timebase.clock_label(event.start_time)
        end = timebase.clock_label(event.end_time)
    else:
        start, end = relative_labels((event.start_time, event.end_time))
    return {
        "type": event.type,
        "severity": event.severity or NOT_AVAILABLE,
        "time": f"{start} - {end}",
        "duration": format_duration(event.duration),
        "spo2_drop": format_spo2_drop(event.spo2_drop),
    }


def severity_band(ahi_score) -> str:
    """Legend band for an AHI score received from the service."""
    if _missing(ahi_score):
        return NOT_AVAILABLE
    for upper, name in SEVERITY_BANDS:
        if float(ahi_score) < upper:
            return name
    return "severe"
