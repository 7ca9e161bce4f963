"""Structured error taxonomy shared by the HTTP client and the turn orchestrator."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal, Mapping

__all__ = [
    "ErrorCode",
    "APIError",
    "ErrorKind",
    "CrowClientError",
    "NetworkError",
    "HttpError",
    "ProtocolError",
    "LocalValidationError",
    "TurnInProgressError",
    "StreamCancelledError",
    "HTTP_STATUS_TO_ERROR_CODE",
    "RETRYABLE_ERROR_CODES",
    "RETRYABLE_STATUS_CODES",
    "ERROR_MESSAGES",
    "is_retryable_code",
    "error_code_from_status",
    "get_error_message",
    "create_api_error",
    "api_error_from_payload",
    "parse_error_payload",
]


class ErrorCode(StrEnum):
    # Client errors (4xx)
    INVALID_REQUEST = "INVALID_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMITED = "RATE_LIMITED"
    REQUEST_TIMEOUT = "REQUEST_TIMEOUT"

    # Server errors (5xx)
    PROVIDER_ERROR = "PROVIDER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

    # Network errors
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"

    # Internal errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


HTTP_STATUS_TO_ERROR_CODE: Mapping[int, ErrorCode] = {
    400: ErrorCode.INVALID_REQUEST,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    408: ErrorCode.REQUEST_TIMEOUT,
    429: ErrorCode.RATE_LIMITED,
    500: ErrorCode.INTERNAL_ERROR,
    502: ErrorCode.PROVIDER_ERROR,
    503: ErrorCode.SERVICE_UNAVAILABLE,
    504: ErrorCode.TIMEOUT,
}

RETRYABLE_ERROR_CODES: frozenset[ErrorCode] = frozenset(
    {
        ErrorCode.RATE_LIMITED,
        ErrorCode.SERVICE_UNAVAILABLE,
        ErrorCode.REQUEST_TIMEOUT,
        ErrorCode.TIMEOUT,
        ErrorCode.NETWORK_ERROR,
    }
)

RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({429, 503, 408, 504})

ERROR_MESSAGES: Mapping[ErrorCode, str] = {
    ErrorCode.INVALID_REQUEST: "Invalid request. Please check your input.",
    ErrorCode.UNAUTHORIZED: "Invalid API key. Please check your provider configuration.",
    ErrorCode.FORBIDDEN: "Access forbidden. Your API key may not have the required permissions.",
    ErrorCode.NOT_FOUND: "Resource not found.",
    ErrorCode.RATE_LIMITED: "Rate limit exceeded. Please wait a moment and try again.",
    ErrorCode.REQUEST_TIMEOUT: "Request timed out. Please try again.",
    ErrorCode.PROVIDER_ERROR: "Provider service error. Please try again later.",
    ErrorCode.SERVICE_UNAVAILABLE: "Service temporarily unavailable. Please try again later.",
    ErrorCode.NETWORK_ERROR: "Network error. Please check your connection.",
    ErrorCode.TIMEOUT: "Request timed out. Please check your network connection.",
    ErrorCode.INTERNAL_ERROR: "An internal error occurred. Please try again.",
    ErrorCode.VALIDATION_ERROR: "Validation failed. Please check your configuration.",
    ErrorCode.CONFIGURATION_ERROR: "Invalid configuration. Please check your settings.",
}


def is_retryable_code(code: ErrorCode | str | None) -> bool:
    try:
        return ErrorCode(code) in RETRYABLE_ERROR_CODES
    except ValueError:
        return False


def error_code_from_status(status: int) -> ErrorCode:
    return HTTP_STATUS_TO_ERROR_CODE.get(status, ErrorCode.INTERNAL_ERROR)


def get_error_message(code: ErrorCode | str | None) -> str | None:
    """Return the user-facing message for ``code`` or ``None`` for unknown codes."""

    try:
        return ERROR_MESSAGES[ErrorCode(code)]
    except ValueError:
        return None


@dataclass(frozen=True, slots=True)
class APIError:
    """Structured failure description returned by the API server."""

    code: ErrorCode | str
    message: str
    retryable: bool = False
    retry_after: float | None = None
    details: Mapping[str, Any] | None = field(default=None, compare=False)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": str(self.code),
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            payload["retryAfter"] = self.retry_after
        if self.details:
            payload["details"] = dict(self.details)
        return payload


def create_api_error(
    code: ErrorCode,
    message: str | None = None,
    retry_after: float | None = None,
    details: Mapping[str, Any] | None = None,
) -> APIError:
    """Build an :class:`APIError` whose retry flag follows the code policy."""

    return APIError(
        code=code,
        message=message or ERROR_MESSAGES.get(code, ERROR_MESSAGES[ErrorCode.INTERNAL_ERROR]),
        retryable=is_retryable_code(code),
        retry_after=retry_after,
        details=details,
    )


def api_error_from_payload(payload: Mapping[str, Any], *, fallback_message: str = "") -> APIError:
    """Coerce a server-provided ``error`` object into an :class:`APIError`."""

    raw_code = payload.get("code")
    try:
        code: ErrorCode | str = ErrorCode(raw_code)
    except ValueError:
        code = str(raw_code) if raw_code else ErrorCode.INTERNAL_ERROR
    message = payload.get("message")
    if not isinstance(message, str) or not message:
        message = fallback_message or get_error_message(code) or ERROR_MESSAGES[ErrorCode.INTERNAL_ERROR]
    retryable = payload.get("retryable")
    if not isinstance(retryable, bool):
        retryable = is_retryable_code(code)
    retry_after = _coerce_seconds(payload.get("retryAfter"))
    details = payload.get("details")
    return APIError(
        code=code,
        message=message,
        retryable=retryable,
        retry_after=retry_after,
        details=dict(details) if isinstance(details, Mapping) else None,
    )


def _coerce_seconds(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None


ErrorKind = Literal["network", "http", "protocol", "local", "cancelled"]


class CrowClientError(Exception):
    """Base class for every failure surfaced by the chat client.

    Subclasses form a closed family discriminated by :attr:`kind`; callers
    branch on ``kind`` (or the subclass) instead of probing attributes.
    """

    kind: ErrorKind = "network"

    def __init__(self, message: str, *, api_error: APIError | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.api_error = api_error

    @property
    def code(self) -> ErrorCode | str | None:
        return self.api_error.code if self.api_error is not None else None

    @property
    def retryable(self) -> bool:
        return self.api_error.retryable if self.api_error is not None else False

    @property
    def retry_after(self) -> float | None:
        return self.api_error.retry_after if self.api_error is not None else None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, code={self.code!r})"


class NetworkError(CrowClientError):
    """No HTTP response was received at all."""

    kind: ErrorKind = "network"

    def __init__(self, message: str = "Network error", *, api_error: APIError | None = None) -> None:
        super().__init__(
            message,
            api_error=api_error or create_api_error(ErrorCode.NETWORK_ERROR, message),
        )


class HttpError(CrowClientError):
    """The server answered with a non-OK status."""

    kind: ErrorKind = "http"

    def __init__(self, message: str, *, status: int | None = None, api_error: APIError | None = None) -> None:
        super().__init__(message, api_error=api_error)
        self.status = status


class ProtocolError(CrowClientError):
    """The stream carried an ``error`` record or a line that is not valid JSON."""

    kind: ErrorKind = "protocol"


class LocalValidationError(CrowClientError):
    """A precondition failed before any request reached the network."""

    kind: ErrorKind = "local"

    def __init__(self, message: str, *, api_error: APIError | None = None) -> None:
        super().__init__(
            message,
            api_error=api_error or create_api_error(ErrorCode.CONFIGURATION_ERROR, message),
        )


class TurnInProgressError(LocalValidationError):
    """A turn was requested while another one is still streaming."""

    def __init__(self, message: str = "A message is already being sent") -> None:
        super().__init__(message, api_error=create_api_error(ErrorCode.VALIDATION_ERROR, message))


class StreamCancelledError(CrowClientError):
    """The abort signal fired while a streaming request was in flight."""

    kind: ErrorKind = "cancelled"

    def __init__(self, message: str = "Request aborted") -> None:
        super().__init__(message)


def parse_error_payload(status: int, body: bytes | str | None) -> HttpError:
    """Convert a failure reply body into an :class:`HttpError`.

    The server replies with ``{"error": <APIError>}`` or ``{"error": "text"}``;
    anything unparsable falls back to a generic ``HTTP error: <status>``.
    """

    fallback = f"HTTP error: {status}"
    try:
        data = json.loads(body) if body else None
    except (TypeError, ValueError):
        data = None
    error = data.get("error") if isinstance(data, Mapping) else None
    if isinstance(error, Mapping):
        api_error = api_error_from_payload(error, fallback_message=fallback)
        return HttpError(api_error.message, status=status, api_error=api_error)
    if isinstance(error, str) and error:
        return HttpError(error, status=status)
    return HttpError(fallback, status=status)
