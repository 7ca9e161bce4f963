"""HTTP client, stream decoding, and error taxonomy for the chat API."""

from .cancellation import AbortController, AbortSignal
from .client import APIClient, ClientSettings, ValidationResult
from .errors import APIError, CrowClientError, ErrorCode
from .stream_decoder import NDJSONStreamDecoder
from .transport import RetryingTransport, RetryPolicy

__all__ = [
    "APIClient",
    "ClientSettings",
    "ValidationResult",
    "AbortController",
    "AbortSignal",
    "APIError",
    "CrowClientError",
    "ErrorCode",
    "NDJSONStreamDecoder",
    "RetryingTransport",
    "RetryPolicy",
]
