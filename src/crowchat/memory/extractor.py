"""Background extraction of long-lived memories from recent conversation turns."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Iterable, Literal, Mapping, Protocol, Sequence

from ..ai.ai_types import AIConfig, AIMessage
from ..ai.client import APIClient
from ..ai.errors import CrowClientError, LocalValidationError
from ..chat.conversation_state import ChatSettingsProvider, ConversationState
from ..chat.events import EventBus, TurnCompleted
from ..chat.message_model import Message
from ..chat.orchestrator import resolve_provider_config

LOGGER = logging.getLogger(__name__)

MemoryCategory = Literal["preference", "knowledge", "decision", "pattern"]

MEMORY_CATEGORIES: frozenset[str] = frozenset({"preference", "knowledge", "decision", "pattern"})
MAX_RECENT_MESSAGES = 10
MAX_CONVERSATION_CHARS = 8000
EXTRACTION_TEMPERATURE = 0.1
DEFAULT_EXTRACTION_INTERVAL = 5

EXTRACTION_SYSTEM_PROMPT = """Analyse the conversation below and extract information worth remembering.
Only extract explicit facts; do not speculate.

Categories:
- preference: preferences the user stated explicitly (e.g. "I prefer pnpm")
- knowledge: facts about the project (e.g. "the project uses Electron + React")
- decision: technical decisions (e.g. "chose Zustand over Redux")
- pattern: recurring patterns (e.g. "always asks for tests")

Reply with a JSON array whose items have "category", "content" and "tags".
If nothing is worth remembering, reply with an empty array []."""

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


@dataclass(slots=True, frozen=True)
class ExtractedMemory:
    category: MemoryCategory
    content: str
    tags: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {"category": self.category, "content": self.content, "tags": list(self.tags)}


class MemorySink(Protocol):
    async def save_memories(self, conversation_id: str, memories: Sequence[ExtractedMemory]) -> None:
        ...


class MemoryExtractor:
    """Turns recent conversation text into :class:`ExtractedMemory` records.

    Attach it to an :class:`EventBus` and it runs after every ``interval``-th
    user message of a conversation. Extraction failures are logged and never
    reach the turn that triggered them.
    """

    def __init__(
        self,
        client: APIClient,
        conversations: ConversationState,
        settings: ChatSettingsProvider,
        sink: MemorySink | None = None,
        *,
        interval: int = DEFAULT_EXTRACTION_INTERVAL,
    ) -> None:
        self._client = client
        self._conversations = conversations
        self._settings = settings
        self._sink = sink
        self._interval = max(1, interval)
        self._tasks: set[asyncio.Task[Any]] = set()
        self._bus: EventBus | None = None

    @property
    def interval(self) -> int:
        return self._interval

    def attach(self, bus: EventBus) -> None:
        self._bus = bus
        bus.subscribe(TurnCompleted, self._handle_turn_completed)

    def detach(self) -> None:
        if self._bus is not None:
            self._bus.unsubscribe(TurnCompleted, self._handle_turn_completed)
            self._bus = None

    async def wait_idle(self) -> None:
        """Wait for scheduled extractions to finish."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        self.detach()
        for task in list(self._tasks):
            task.cancel()
        await self.wait_idle()

    async def extract(
        self,
        messages: Sequence[Message | AIMessage],
        provider: str,
        config: AIConfig,
    ) -> list[ExtractedMemory]:
        """Ask the model for memories in ``messages``; returns ``[]`` on any failure."""

        text = format_conversation(messages)
        if not text:
            return []
        request = [
            AIMessage(role="system", content=EXTRACTION_SYSTEM_PROMPT),
            AIMessage(role="user", content=text),
        ]
        extraction_config = AIConfig(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            api_format=config.api_format,
            temperature=EXTRACTION_TEMPERATURE,
            max_tokens=config.max_tokens,
        )
        try:
            response = await self._client.send_message(provider, request, extraction_config)
        except CrowClientError as exc:
            LOGGER.warning("Memory extraction request failed: %s", exc)
            return []
        return parse_memories(response)

    async def extract_for_conversation(self, conversation_id: str) -> list[ExtractedMemory]:
        try:
            provider, config = resolve_provider_config(self._settings)
        except LocalValidationError as exc:
            LOGGER.debug("Skipping memory extraction for %s: %s", conversation_id, exc)
            return []
        memories = await self.extract(self._conversations.messages(conversation_id), provider, config)
        if memories and self._sink is not None:
            await self._sink.save_memories(conversation_id, memories)
        LOGGER.debug("Extracted %d memor(ies) from %s", len(memories), conversation_id)
        return memories

    def _handle_turn_completed(self, event: TurnCompleted) -> None:
        count = event.user_message_count
        if count <= 0 or count % self._interval != 0:
            return
        self._schedule_task(self.extract_for_conversation(event.conversation_id))

    def _schedule_task(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_finished)

    def _task_finished(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Memory extraction task failed", exc_info=exc)


def format_conversation(
    messages: Iterable[Message | AIMessage],
    *,
    max_messages: int = MAX_RECENT_MESSAGES,
    max_chars: int = MAX_CONVERSATION_CHARS,
) -> str:
    """Render the latest user/assistant messages as ``Role: text`` paragraphs.

    Only the last ``max_chars`` characters are kept so the newest content survives.
    """

    recent = [message for message in messages if message.role in ("user", "assistant")][-max_messages:]
    lines = []
    for message in recent:
        role = "User" if message.role == "user" else "Assistant"
        body = message.text() if isinstance(message, AIMessage) else message.content
        lines.append(f"{role}: {body}")
    text = "\n\n".join(lines)
    if len(text) > max_chars:
        text = text[-max_chars:]
    return text


def parse_memories(response: str) -> list[ExtractedMemory]:
    """Parse the model reply; invalid items are dropped and invalid JSON yields ``[]``."""

    payload = (response or "").strip()
    match = _FENCED_BLOCK.search(payload)
    if match:
        payload = match.group(1).strip()
    try:
        parsed = json.loads(payload)
    except ValueError:
        LOGGER.warning("Memory extraction reply is not valid JSON")
        return []
    if not isinstance(parsed, list):
        return []
    memories: list[ExtractedMemory] = []
    for item in parsed:
        memory = _coerce_memory(item)
        if memory is not None:
            memories.append(memory)
    return memories


def _coerce_memory(item: Any) -> ExtractedMemory | None:
    if not isinstance(item, Mapping):
        return None
    category = item.get("category")
    content = item.get("content")
    tags = item.get("tags")
    if not isinstance(content, str) or category not in MEMORY_CATEGORIES:
        return None
    if not isinstance(tags, list) or not all(isinstance(tag, str) for tag in tags):
        return None
    return ExtractedMemory(category=category, content=content, tags=tuple(tags))


__all__ = [
    "ExtractedMemory",
    "MemoryCategory",
    "MemoryExtractor",
    "MemorySink",
    "EXTRACTION_SYSTEM_PROMPT",
    "MAX_CONVERSATION_CHARS",
    "MAX_RECENT_MESSAGES",
    "format_conversation",
    "parse_memories",
]
