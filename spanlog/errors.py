"""Structured error types for spanlog.

Callers can catch specific error types instead of inspecting raw httpx
exceptions:

    from spanlog.errors import FlushError, ValidationError

    try:
        span.log(scores={"accuracy": 1.5})
    except ValidationError:
        # Raised synchronously, nothing was queued
        ...

    try:
        await logger.flush()
    except FlushError as exc:
        # Only surfaced in sync-flush mode; each batch failure is in exc.errors
        ...
"""

from __future__ import annotations

import httpx


class SpanLogError(Exception):
    """Base for all spanlog errors."""

    def __init__(self, message: str, original: Exception | None = None) -> None:
        super().__init__(message)
        self.original = original


class ValidationError(SpanLogError):
    """Malformed record; raised to the caller and never queued."""


class ProtocolInvariantError(SpanLogError):
    """Span protocol violated (tags on a child span, mismatched parent object)."""


class MalformedToken(SpanLogError):
    """A span export string could not be decoded."""


class ResolutionError(SpanLogError):
    """A deferred record field failed to compute after all retries."""


class LoginError(SpanLogError):
    """Login handshake failed or required credentials are missing."""


class TransportError(SpanLogError):
    """HTTP request failed (non-2xx response, timeout, connection)."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        status_text: str | None = None,
        body: str | None = None,
        original: Exception | None = None,
    ) -> None:
        super().__init__(message, original=original)
        self.status = status
        self.status_text = status_text
        self.body = body

    def describe(self) -> str:
        if self.status is None:
            return str(self)
        return f"{self.status} ({self.status_text}): {self.body}"


class FlushError(SpanLogError):
    """One or more batches failed during a flush pass."""

    def __init__(self, message: str, errors: list[BaseException]) -> None:
        super().__init__(message)
        self.errors = list(errors)

    def __str__(self) -> str:
        base = super().__str__()
        details = "\n".join(f"  - {type(e).__name__}: {e}" for e in self.errors)
        return f"{base}\n{details}" if details else base


def classify_error(error: Exception) -> type[SpanLogError]:
    """Classify any exception into a SpanLogError subtype.

    httpx failures map to TransportError; anything else raised while building
    a record maps to ResolutionError.
    """
    if isinstance(error, SpanLogError):
        return type(error)
    if isinstance(error, (httpx.HTTPError, httpx.InvalidURL)):
        return TransportError
    return ResolutionError


def wrap_error(error: Exception) -> SpanLogError:
    """Wrap an exception in the appropriate SpanLogError subclass.

    If the error is already a SpanLogError, returns it unchanged.
    """
    if isinstance(error, SpanLogError):
        return error
    cls = classify_error(error)
    if cls is TransportError and isinstance(error, httpx.HTTPStatusError):
        response = error.response
        return TransportError(
            f"{response.status_code}: {response.reason_phrase}",
            status=response.status_code,
            status_text=response.reason_phrase,
            body=response.text,
            original=error,
        )
    return cls(str(error) or type(error).__name__, original=error)


def error_text(error: BaseException) -> str:
    """Human-readable one-liner used in retry warnings."""
    if isinstance(error, TransportError):
        return error.describe()
    return f"{type(error).__name__}: {error}"

