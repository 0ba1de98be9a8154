"""Per-session application state.

A :class:`Session` is created when a recording is opened and closed when the
user navigates away. It owns the transport, the chunk loader and the
orchestrator so nothing lives in module-level globals.
"""
from __future__ import annotations

import logging
from typing import Any

from somnoview.chunk_cache import CacheConfig
from somnoview.chunk_loader import ChunkLoader
from somnoview.models import Recording
from somnoview.orchestrator import OrchestratorSettings, SleepEventAnalysisOrchestrator
from somnoview.transport import HttpTransport, Transport

LOG = logging.getLogger(__name__)


class Session:
    def __init__(
        self,
        transport: Transport,
        *,
        recording: Recording | None = None,
        cache_config: CacheConfig | None = None,
        settings: OrchestratorSettings | None = None,
    ):
        self.transport = transport
        self.recording = recording
        self.loader = ChunkLoader(transport, recording=recording, config=cache_config)
        self.orchestrator = SleepEventAnalysisOrchestrator(
            self.loader, recording=recording, settings=settings
        )
        self.closed = False

    @classmethod
    def from_config(cls, config: Any, *, recording: Recording | None = None) -> "Session":
        """Build a session from a ``ViewerConfig``-like object."""
        transport = HttpTransport(config.api_base_url, **config.transport_kwargs())
        LOG.info("Opening session against %s", config.api_base_url)
        return cls(
            transport,
            recording=recording,
            cache_config=config.cache_config(),
            settings=config.orchestrator_settings(),
        )

    def open_recording(self, recording: Recording) -> SleepEventAnalysisOrchestrator:
        """Switch to another recording; cached chunks and derived state are dropped.

        The orchestrator is reset in place so existing subscribers keep
        receiving updates.
        """
        self.loader.reset(recording)
        self.recording = recording
        self.orchestrator.reset(recording)
        return self.orchestrator

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.orchestrator.cancel()
        self.loader.close()
        LOG.debug("Session closed")

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
