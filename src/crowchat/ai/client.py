"""Async HTTP client for the local chat API server."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Sequence, TypeVar

import httpx

from .ai_types import AIConfig, AIMessage, AIRequestOptions, StreamChunk, build_chat_payload
from .cancellation import AbortSignal
from .errors import (
    RETRYABLE_STATUS_CODES,
    APIError,
    CrowClientError,
    NetworkError,
    ProtocolError,
    StreamCancelledError,
    parse_error_payload,
)
from .stream_decoder import NDJSONStreamDecoder
from .transport import DEFAULT_BASE_DELAY, DEFAULT_MAX_RETRIES, RetryingTransport, RetryPolicy

LOGGER = logging.getLogger(__name__)

DEFAULT_API_PORT = 2323

ChunkCallback = Callable[[StreamChunk], None]
_T = TypeVar("_T")


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the API client."""

    port: int = DEFAULT_API_PORT
    host: str = "localhost"
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_base_delay: float = DEFAULT_BASE_DELAY
    retryable_status_codes: frozenset[int] = RETRYABLE_STATUS_CODES
    request_timeout: float | None = 60.0
    default_headers: Mapping[str, str] = field(default_factory=dict)
    debug_logging: bool = False

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}/api"

    @property
    def health_url(self) -> str:
        return f"http://{self.host}:{self.port}/health"

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            retryable_status_codes=frozenset(self.retryable_status_codes),
        )


@dataclass(slots=True)
class ValidationResult:
    valid: bool
    error: str | None = None
    api_error: APIError | None = None


class APIClient:
    """Request layer for chat, provider metadata, validation and health probes.

    Non-streaming calls go through :class:`RetryingTransport`. Streaming calls
    are issued once; their body is decoded line by line and every chunk is
    handed over strictly in arrival order.
    """

    def __init__(
        self,
        settings: ClientSettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        transport: RetryingTransport | None = None,
    ) -> None:
        self._settings = settings or ClientSettings()
        self._owns_client = client is None
        self._client = client or self._build_client(self._settings)
        self._transport = transport or RetryingTransport(self._client, self._settings.retry_policy())

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def base_url(self) -> str:
        return self._settings.base_url

    def configure_port(self, port: int | None) -> None:
        """Point the client at the API server listening on ``port``."""

        if not port:
            LOGGER.warning("No API port reported; keeping %s", self.base_url)
            return
        self._settings.port = int(port)
        LOGGER.info("API client initialized with port %s", port)

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------
    async def send_message(
        self,
        provider: str,
        messages: Sequence[AIMessage | Mapping[str, Any]],
        config: AIConfig | Mapping[str, Any],
        options: AIRequestOptions | None = None,
    ) -> str:
        """Send a full (non-streaming) chat request and return the reply text."""

        payload = build_chat_payload(provider, messages, config, options)
        self._log_payload(payload)
        response = await self._transport.request("POST", f"{self.base_url}/chat", json=payload)
        data = self._json(response)
        content = data.get("content") if isinstance(data, Mapping) else None
        return content if isinstance(content, str) else ""

    async def send_message_stream(
        self,
        provider: str,
        messages: Sequence[AIMessage | Mapping[str, Any]],
        config: AIConfig | Mapping[str, Any],
        on_chunk: ChunkCallback,
        signal: AbortSignal | None = None,
        options: AIRequestOptions | None = None,
    ) -> None:
        """Stream a chat reply, invoking ``on_chunk`` synchronously per record.

        Raises :class:`StreamCancelledError` when ``signal`` fires.
        """

        stream = self.stream_chunks(provider, messages, config, signal=signal, options=options)
        async with contextlib.aclosing(stream) as chunks:
            async for chunk in chunks:
                on_chunk(chunk)

    async def stream_chunks(
        self,
        provider: str,
        messages: Sequence[AIMessage | Mapping[str, Any]],
        config: AIConfig | Mapping[str, Any],
        *,
        signal: AbortSignal | None = None,
        options: AIRequestOptions | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Yield decoded stream chunks in arrival order."""

        if signal is not None and signal.aborted:
            raise StreamCancelledError()
        payload = build_chat_payload(provider, messages, config, options)
        LOGGER.debug(
            "Starting streamed chat via %s with %s message(s)",
            provider,
            len(payload["messages"]),
        )
        self._log_payload(payload)

        request = self._client.build_request(
            "POST",
            f"{self.base_url}/chat/stream",
            json=payload,
            timeout=httpx.Timeout(self._settings.request_timeout, read=None),
        )
        response: httpx.Response | None = None
        try:
            response = await _abortable(self._client.send(request, stream=True), signal)
            if not response.is_success:
                body = await response.aread()
                raise parse_error_payload(response.status_code, body)
            if response.is_stream_consumed or response.is_closed:
                raise CrowClientError("Failed to get response reader")

            decoder = NDJSONStreamDecoder()
            reader = response.aiter_raw().__aiter__()
            count = 0
            while True:
                raw = await _abortable(_next_bytes(reader), signal)
                if raw is None:
                    break
                for record in decoder.feed(raw):
                    chunk = self._to_chunk(record)
                    if signal is not None and signal.aborted:
                        raise StreamCancelledError()
                    count += 1
                    yield chunk
            decoder.finish()
            LOGGER.debug("Stream finished after %s chunk(s)", count)
        except StreamCancelledError:
            LOGGER.debug("Streamed chat aborted by caller")
            raise
        except httpx.TransportError as exc:
            if signal is not None and signal.aborted:
                raise StreamCancelledError() from exc
            raise NetworkError(str(exc) or "Network error") from exc
        finally:
            if response is not None:
                await response.aclose()

    @staticmethod
    def _to_chunk(record: Any) -> StreamChunk:
        try:
            chunk = StreamChunk.from_record(record)
        except ValueError as exc:
            raise ProtocolError(str(exc)) from exc
        if chunk.kind != "error":
            return chunk
        error = chunk.error
        if isinstance(error, APIError):
            raise ProtocolError(error.message, api_error=error)
        raise ProtocolError(str(error))

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------
    async def list_providers(self) -> list[str]:
        response = await self._transport.request("GET", f"{self.base_url}/providers")
        return list(self._json(response).get("providers") or [])

    async def get_default_model(self, provider: str) -> str:
        response = await self._transport.request("GET", f"{self.base_url}/providers/{provider}/default-model")
        return str(self._json(response).get("defaultModel") or "")

    async def get_supported_models(self, provider: str) -> list[str]:
        response = await self._transport.request("GET", f"{self.base_url}/providers/{provider}/models")
        return list(self._json(response).get("models") or [])

    async def validate_provider(self, provider: str, config: AIConfig | Mapping[str, Any]) -> ValidationResult:
        """Probe provider credentials; failures are reported, never raised."""

        body = {"provider": provider, "config": config.to_dict() if isinstance(config, AIConfig) else dict(config)}
        try:
            response = await self._transport.request("POST", f"{self.base_url}/providers/validate", json=body)
            data = self._json(response)
        except CrowClientError as exc:
            return ValidationResult(valid=False, error=exc.message, api_error=exc.api_error)
        except Exception as exc:
            LOGGER.debug("Provider validation failed unexpectedly", exc_info=True)
            return ValidationResult(valid=False, error=str(exc) or "Failed to validate provider")
        error = data.get("error")
        return ValidationResult(valid=bool(data.get("valid")), error=str(error) if error else None)

    async def health_check(self) -> bool:
        try:
            response = await self._client.get(self._settings.health_url)
        except Exception:
            LOGGER.debug("Health check failed", exc_info=True)
            return False
        return response.is_success

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _build_client(settings: ClientSettings) -> httpx.AsyncClient:
        headers = {"Content-Type": "application/json", **dict(settings.default_headers)}
        return httpx.AsyncClient(timeout=settings.request_timeout, headers=headers)

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise ProtocolError(f"Response body is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ProtocolError("Response body must be a JSON object")
        return data

    def _log_payload(self, payload: Mapping[str, Any]) -> None:
        if not self._settings.debug_logging:
            return
        redacted = dict(payload)
        config = redacted.get("config")
        if isinstance(config, Mapping) and config.get("apiKey"):
            redacted["config"] = {**config, "apiKey": "***"}
        try:
            serialized = json.dumps(redacted, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("Chat payload (unserializable): %s", redacted)
        else:
            LOGGER.debug("Chat payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying HTTP client when this instance created it."""

        if self._owns_client:
            await self._client.aclose()


async def _next_bytes(reader: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await reader.__anext__()
    except StopAsyncIteration:
        return None


async def _abortable(awaitable: Awaitable[_T], signal: AbortSignal | None) -> _T:
    """Await ``awaitable`` in its own task so that ``signal`` can cancel just that task."""

    if signal is None:
        return await awaitable
    if signal.aborted:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        raise StreamCancelledError()
    task = asyncio.ensure_future(awaitable)
    remove_listener = signal.add_listener(task.cancel)
    try:
        return await task
    except asyncio.CancelledError:
        current = asyncio.current_task()
        if signal.aborted and (current is None or current.cancelling() == 0):
            raise StreamCancelledError() from None
        raise
    finally:
        remove_listener()


__all__ = ["APIClient", "ClientSettings", "ValidationResult", "ChunkCallback", "DEFAULT_API_PORT"]
