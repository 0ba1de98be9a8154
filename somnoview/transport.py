"""HTTP access to the recording analysis service."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence

import numpy as np
import requests

from somnoview.errors import (
    FetchTimeoutError,
    PayloadError,
    TransportError,
)

LOG = logging.getLogger(__name__)

MAX_CHANNELS_PER_REQUEST = 5


@dataclass(frozen=True)
class Endpoints:
    chunk: str = "/upload/edf-chunk"
    chunk_downsample: str = "/upload/edf-chunk-downsample"
    multi_chunk: str = "/upload/edf-multi-chunk"
    max_min_values: str = "/upload/max-min-values"
    ahi_analysis: str = "/upload/ahi-analysis"


@dataclass(frozen=True)
class ChannelSamples:
    """Decoded samples; ``t`` is ``None`` when the service sent values only."""

    x: np.ndarray
    t: np.ndarray | None = None


class Transport(Protocol):
    async def fetch_window(self, channel: str, start: float, end: float, factor: int) -> ChannelSamples: ...

    async def fetch_multi_window(
        self, channels: Sequence[str], start: float, end: float, factor: int
    ) -> dict[str, ChannelSamples]: ...

    async def fetch_channel_ranges(self, channels: Sequence[str]) -> dict[str, Any]: ...

    async def run_analysis(self, flow_channel: str, spo2_channel: str) -> dict[str, Any]: ...


class HttpTransport:
    """``requests`` based transport; blocking calls run in worker threads.

    Timeouts are generous because the service parses large recordings on
    demand. A timeout is reported as :class:`FetchTimeoutError`, anything else
    on the wire as :class:`TransportError`, bad JSON as :class:`PayloadError`.
    Empty sample lists are returned as they are; the loader caches them and
    decides whether a whole window is empty.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 600.0,
        connect_timeout_s: float = 10.0,
        endpoints: Endpoints | None = None,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = (float(connect_timeout_s), float(timeout_s))
        self.endpoints = endpoints or Endpoints()
        self._session = session
        self._owns_session = session is None

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update({"Accept": "application/json"})
            self._owns_session = True
        return self._session

    def abort(self) -> None:
        """Close pooled connections so later requests start on fresh ones.

        A read already blocked in a worker thread is not interrupted; it runs
        until the server answers or the read timeout expires, and the loader
        discards its result.
        """
        if self._session is not None:
            LOG.debug("Aborting HTTP session for %s", self.base_url)
            self._session.close()
            if self._owns_session:
                self._session = None

    def close(self) -> None:
        self.abort()

    # ----- blocking core -----

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        LOG.debug("%s %s", method, url)
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.ConnectTimeout as exc:
            raise TransportError(f"{method} {path} could not connect: {exc}") from exc
        except requests.Timeout as exc:
            raise FetchTimeoutError(f"{method} {path} timed out after {self.timeout[1]:.0f}s") from exc
        except requests.RequestException as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            detail = _error_detail(response)
            raise TransportError(
                f"{method} {path} returned HTTP {response.status_code}: {detail}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise PayloadError(f"{method} {path} returned invalid JSON") from exc

    def get_window(self, channel: str, start: float, end: float, factor: int = 1) -> ChannelSamples:
        params: dict[str, Any] = {"channel": channel, "start": start, "end": end}
        path = self.endpoints.chunk
        if factor > 1:
            params["factor"] = int(factor)
            path = self.endpoints.chunk_downsample
        payload = self._request("GET", path, params=params)
        return decode_samples(payload, channel)

    def get_multi_window(
        self, channels: Sequence[str], start: float, end: float, factor: int = 1
    ) -> dict[str, ChannelSamples]:
        channels = list(channels)
        if not channels:
            return {}
        if len(channels) > MAX_CHANNELS_PER_REQUEST:
            raise ValueError(f"at most {MAX_CHANNELS_PER_REQUEST} channels per request")
        body = {"channels": channels, "start": start, "end": end, "factor": int(factor)}
        payload = self._request("POST", self.endpoints.multi_chunk, json=body)
        block = payload.get("channels", payload) if isinstance(payload, Mapping) else payload
        if not isinstance(block, Mapping):
            raise PayloadError("multi-channel response must be an object", field="channels")
        out: dict[str, ChannelSamples] = {}
        for name in channels:
            if name not in block:
                raise PayloadError(f"response has no samples for channel {name!r}", field=name)
            out[name] = decode_samples(block[name], name)
        return out

    def get_channel_ranges(self, channels: Sequence[str]) -> dict[str, Any]:
        payload = self._request(
            "GET", self.endpoints.max_min_values, params={"channels": ",".join(channels)}
        )
        if not isinstance(payload, Mapping):
            raise PayloadError("min/max response must be an object")
        return dict(payload)

    def post_analysis(self, flow_channel: str, spo2_channel: str) -> dict[str, Any]:
        body = {"flow_channel": flow_channel, "spo2_channel": spo2_channel}
        payload = self._request("POST", self.endpoints.ahi_analysis, json=body)
        if not isinstance(payload, Mapping):
            raise PayloadError("analysis response must be an object")
        return dict(payload)

    # ----- async surface -----

    async def fetch_window(self, channel: str, start: float, end: float, factor: int) -> ChannelSamples:
        return await asyncio.to_thread(self.get_window, channel, start, end, factor)

    async def fetch_multi_window(
        self, channels: Sequence[str], start: float, end: float, factor: int
    ) -> dict[str, ChannelSamples]:
        return await asyncio.to_thread(self.get_multi_window, list(channels), start, end, factor)

    async def fetch_channel_ranges(self, channels: Sequence[str]) -> dict[str, Any]:
        return await asyncio.to_thread(self.get_channel_ranges, list(channels))

    async def run_analysis(self, flow_channel: str, spo2_channel: str) -> dict[str, Any]:
        return await asyncio.to_thread(self.post_analysis, flow_channel, spo2_channel)


def decode_samples(raw: Any, channel: str = "") -> ChannelSamples:
    """Accept ``{"data": [...], "time": [...]}`` or a bare list of samples."""
    times = None
    if isinstance(raw, Mapping):
        if "data" not in raw:
            raise PayloadError(f"samples for {channel!r} have no 'data' field", field=channel)
        values = raw["data"]
        times = raw.get("time", raw.get("timestamps"))
    else:
        values = raw
    if not isinstance(values, (list, tuple)):
        raise PayloadError(f"samples for {channel!r} must be a list", field=channel)
    try:
        x = np.asarray(values, dtype=np.float32)
        t = None if times is None else np.asarray(times, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise PayloadError(f"samples for {channel!r} are not numeric", field=channel) from exc
    if x.ndim != 1:
        raise PayloadError(f"samples for {channel!r} must be one-dimensional", field=channel)
    if t is not None and t.shape != x.shape:
        raise PayloadError(f"time and data lengths differ for {channel!r}", field=channel)
    return ChannelSamples(x=x, t=t)


def _error_detail(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason or "error"
    if isinstance(body, Mapping) and body.get("error"):
        return str(body["error"])
    return response.reason or "error"
