"""Signal chunk caching and sleep-event analytics for the somnoview dashboard."""

# Re-export commonly used modules for convenience.
from . import (
    chunk_cache,
    chunk_loader,
    errors,
    formatting,
    histogram,
    models,
    navigator,
    orchestrator,
    session,
    timebase,
    transport,
    view_window,
)

__version__ = "0.1.0"

__all__ = [
    "chunk_cache",
    "chunk_loader",
    "errors",
    "formatting",
    "histogram",
    "models",
    "navigator",
    "orchestrator",
    "session",
    "timebase",
    "transport",
    "view_window",
]
