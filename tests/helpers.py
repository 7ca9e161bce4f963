"""Shared test helpers and stub classes.

Import from here instead of duplicating fakes in individual test files.
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Callable, Iterable

import httpx

from crowchat.ai.client import APIClient, ClientSettings
from crowchat.ai.transport import RetryingTransport
from crowchat.chat.message_model import Message

Handler = Callable[[httpx.Request], Any]


def ndjson(*records: Any) -> bytes:
    """Encode ``records`` as newline-terminated JSON lines."""

    return b"".join(json.dumps(record, ensure_ascii=False).encode("utf-8") + b"\n" for record in records)


async def _iter_parts(parts: Iterable[bytes]) -> AsyncIterator[bytes]:
    for part in parts:
        yield part


def stream_response(parts: Iterable[bytes], *, status_code: int = 200) -> httpx.Response:
    """Return a streaming response whose body arrives in exactly ``parts``."""

    return httpx.Response(status_code, content=_iter_parts(list(parts)))


class TrackingByteStream(httpx.AsyncByteStream):
    """Response body that records whether it was closed.

    When ``gate`` is given the stream pauses after the first part until it is set.
    """

    def __init__(self, parts: Iterable[bytes], *, gate: Any = None) -> None:
        self.parts = list(parts)
        self.gate = gate
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for index, part in enumerate(self.parts):
            if index == 1 and self.gate is not None:
                await self.gate.wait()
            yield part

    async def aclose(self) -> None:
        self.closed = True


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_api_client(
    handler: Handler,
    *,
    max_retries: int = 3,
    retry_base_delay: float = 1.0,
    sleep: FakeSleep | None = None,
    rng: Callable[[], float] = lambda: 0.0,
) -> APIClient:
    """Build an :class:`APIClient` whose HTTP traffic is answered by ``handler``."""

    settings = ClientSettings(port=4321, max_retries=max_retries, retry_base_delay=retry_base_delay)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    transport = RetryingTransport(http_client, settings.retry_policy(), sleep=sleep or FakeSleep(), rng=rng)
    return APIClient(settings, client=http_client, transport=transport)


class FailingRepository:
    """Message repository whose writes always fail."""

    def __init__(self) -> None:
        self.calls = 0

    async def save_message(self, conversation_id: str, message: Message) -> None:
        self.calls += 1
        raise OSError("disk full")

    async def rename_conversation(self, conversation_id: str, title: str) -> None:
        raise OSError("disk full")
