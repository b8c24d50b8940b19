"""
Exception taxonomy for the sync engine.

Transport and API failures are raised by the HTTP clients, parse failures when
a body is not the JSON shape we expect. Engine-level conditions (open circuit,
error-rate abort) fail the whole run; everything else is handled per row.
"""

from __future__ import annotations

from http import HTTPStatus

RAW_PAYLOAD_PREVIEW_LIMIT = 500

_STATUS_MESSAGES = {
    HTTPStatus.UNAUTHORIZED: "Authentication failed. Check the API key.",
    HTTPStatus.FORBIDDEN: "Access forbidden. The API key lacks permission for this resource.",
    HTTPStatus.NOT_FOUND: "Resource not found.",
    HTTPStatus.TOO_MANY_REQUESTS: "Rate limit exceeded. Please wait before retrying.",
    HTTPStatus.INTERNAL_SERVER_ERROR: "Remote server error.",
    HTTPStatus.BAD_GATEWAY: "Remote service unavailable.",
    HTTPStatus.SERVICE_UNAVAILABLE: "Remote service unavailable.",
    HTTPStatus.GATEWAY_TIMEOUT: "Remote service unavailable.",
}


def message_for_status(status_code: int | None) -> str:
    """Human readable message for an HTTP status returned by a remote system."""
    if status_code is None:
        return "Remote request failed."
    try:
        return _STATUS_MESSAGES[HTTPStatus(status_code)]
    except (KeyError, ValueError):
        if 500 <= status_code < 600:
            return "Remote service unavailable."
        return f"Remote request failed with status {status_code}."


class SyncError(RuntimeError):
    """Base class for sync engine failures."""

    retryable = False


class TransportError(SyncError):
    """Timeout or connection failure before a response was received."""

    retryable = True

    def __init__(self, message: str, *, endpoint: str | None = None):
        super().__init__(message)
        self.endpoint = endpoint


class ApiError(SyncError):
    """Non-success response from a remote system."""

    def __init__(self, status_code: int | None, endpoint: str, message: str | None = None):
        self.status_code = status_code
        self.endpoint = endpoint
        self.message = message or message_for_status(status_code)
        super().__init__(f"{self.message} (status={status_code}, endpoint={endpoint})")

    @property
    def is_not_found(self) -> bool:
        return self.status_code == HTTPStatus.NOT_FOUND

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status_code == HTTPStatus.TOO_MANY_REQUESTS or (
            self.status_code is not None and self.status_code >= 500
        )


class ParseError(SyncError):
    """Response body could not be decoded into the expected shape."""

    def __init__(self, message: str, *, endpoint: str | None = None, raw: str | None = None):
        super().__init__(message)
        self.endpoint = endpoint
        self.raw_preview = (raw or "")[:RAW_PAYLOAD_PREVIEW_LIMIT]


class CircuitOpenError(SyncError):
    """Raised when a sync refuses to start because the remote system is unhealthy."""


class SyncAbortedError(SyncError):
    """Raised when a run trips its error-rate threshold mid-flight."""
