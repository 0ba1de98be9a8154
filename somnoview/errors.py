"""Error taxonomy shared by the loader, transport and orchestrator."""
from __future__ import annotations

__all__ = [
    "SomnoviewError",
    "ValidationError",
    "FetchError",
    "FetchTimeoutError",
    "TransportError",
    "PayloadError",
    "EmptyDataError",
    "remediation_for",
]


class SomnoviewError(Exception):
    """Base class for all errors raised by somnoview."""

    kind = "error"


class ValidationError(SomnoviewError, ValueError):
    """Payload is missing required fields or breaks an event invariant."""

    kind = "validation"

    def __init__(self, message: str, *, field: str | None = None):
        super().__init__(message)
        self.field = field


class FetchError(SomnoviewError):
    """Retrieval from the analysis service failed.

    ``cause`` is one of ``"timeout"``, ``"transport"`` or ``"malformed"`` so the
    view can pick the right remediation text.
    """

    cause = "transport"

    @property
    def kind(self) -> str:  # type: ignore[override]
        return self.cause


class FetchTimeoutError(FetchError):
    cause = "timeout"


class TransportError(FetchError):
    cause = "transport"

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class PayloadError(FetchError, ValidationError):
    cause = "malformed"

    def __init__(self, message: str, *, field: str | None = None):
        ValidationError.__init__(self, message, field=field)


class EmptyDataError(SomnoviewError):
    """Well-formed response that carries no samples.

    Rendered as an explicit "no data" state rather than a failure.
    """

    kind = "empty"

    def __init__(self, message: str = "No data in the requested window", *, channels=()):
        super().__init__(message)
        self.channels = tuple(channels)


_REMEDIATION = {
    "timeout": (
        "Request timed out. The recording is large or the server is under heavy load; "
        "wait a few minutes and try again."
    ),
    "transport": "Network error. Please check your connection and try again.",
    "malformed": "The analysis service returned unexpected data.",
    "validation": "The analysis service returned unexpected data.",
    "empty": "No data to display.",
}


def remediation_for(exc: BaseException) -> str:
    kind = getattr(exc, "kind", "error")
    if isinstance(exc, TransportError) and exc.status_code and exc.status_code >= 500:
        return f"Server error: {exc}"
    return _REMEDIATION.get(kind, str(exc) or exc.__class__.__name__)
