"""Retrying transport for non-streaming API calls."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx
from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt

from .errors import RETRYABLE_STATUS_CODES, CrowClientError, HttpError, NetworkError, parse_error_payload

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0
MAX_BACKOFF_SECONDS = 30.0
JITTER_RATIO = 0.3

SleepFn = Callable[[float], Awaitable[None]]
RandomFn = Callable[[], float]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retry budget and backoff parameters for :class:`RetryingTransport`."""

    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = MAX_BACKOFF_SECONDS
    retryable_status_codes: frozenset[int] = RETRYABLE_STATUS_CODES


def compute_backoff(
    attempt: int,
    base_delay: float = DEFAULT_BASE_DELAY,
    *,
    max_delay: float = MAX_BACKOFF_SECONDS,
    rng: RandomFn = random.random,
) -> float:
    """Return ``min(base * 2**attempt + jitter, max_delay)`` in seconds.

    ``jitter`` is uniform in ``[0, 0.3 * base * 2**attempt]``.
    """

    exponential = base_delay * (2**attempt)
    jitter = rng() * JITTER_RATIO * exponential
    return min(exponential + jitter, max_delay)


class RetryingTransport:
    """Issues one HTTP request with exponential-backoff retries.

    A non-OK response is parsed into an :class:`HttpError`; it is retried when
    budget remains and either the status is in the retryable set or the error
    declares itself retryable. Requests that never produce a response are
    retried the same way and surface as :class:`NetworkError`.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        policy: RetryPolicy | None = None,
        *,
        sleep: SleepFn = asyncio.sleep,
        rng: RandomFn = random.random,
    ) -> None:
        self._client = client
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send the request, retrying per policy; returns the first OK response."""

        async for attempt in self._retrying():
            with attempt:
                return await self._send_once(method, url, **kwargs)
        raise NetworkError("Max retries exceeded")  # pragma: no cover - tenacity reraises

    async def _send_once(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise NetworkError(str(exc) or "Network error") from exc
        if response.is_success:
            return response
        raise parse_error_payload(response.status_code, response.content)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(0, self._policy.max_retries) + 1),
            wait=self._wait,
            retry=self._should_retry,
            sleep=self._sleep,
            before_sleep=self._log_retry,
        )

    def _should_retry(self, retry_state: RetryCallState) -> bool:
        outcome = retry_state.outcome
        if outcome is None or not outcome.failed:
            return False
        exc = outcome.exception()
        if isinstance(exc, NetworkError):
            return True
        if isinstance(exc, HttpError):
            return exc.status in self._policy.retryable_status_codes or exc.retryable
        return False

    def _wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome is not None else None
        if isinstance(exc, HttpError) and exc.retry_after is not None:
            return float(exc.retry_after)
        return compute_backoff(
            retry_state.attempt_number - 1,
            self._policy.base_delay,
            max_delay=self._policy.max_delay,
            rng=self._rng,
        )

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome is not None else None
        delay = retry_state.next_action.sleep if retry_state.next_action is not None else 0.0
        code = exc.code if isinstance(exc, CrowClientError) else None
        LOGGER.warning(
            "Request attempt %s failed (%s: %s); retrying in %.2fs",
            retry_state.attempt_number,
            code or type(exc).__name__,
            exc,
            delay,
        )


__all__ = [
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_BASE_DELAY",
    "MAX_BACKOFF_SECONDS",
    "RetryPolicy",
    "RetryingTransport",
    "compute_backoff",
]
