"""In-memory conversation transcripts and the collaborator interfaces around them."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Callable, Iterable, Protocol, Sequence

from .events import ConversationUpdated, EventBus
from .message_model import Message

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ..ai.ai_types import ToolPermissionState
    from ..services.settings import ModelConfig, ProviderConfig

LOGGER = logging.getLogger(__name__)

MessageUpdater = Callable[[Message], Message | None]


@dataclass(slots=True, frozen=True)
class Conversation:
    """Immutable snapshot of one conversation; updates replace the whole snapshot."""

    id: str
    title: str = "New Chat"
    messages: tuple[Message, ...] = field(default_factory=tuple)

    @property
    def user_message_count(self) -> int:
        return sum(1 for message in self.messages if message.role == "user")

    def find(self, message_id: str) -> Message | None:
        return next((message for message in self.messages if message.id == message_id), None)


class ConversationState:
    """Ordered message lists per conversation, mutated copy-on-write.

    Every mutation builds a new tuple of messages and swaps it in within a
    single synchronous call, so readers never observe a half-applied update.
    """

    def __init__(self, *, bus: EventBus | None = None) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._current_id: str | None = None
        self._bus = bus

    @property
    def current_conversation_id(self) -> str | None:
        return self._current_id

    def create_conversation(self, title: str = "New Chat", *, conversation_id: str | None = None) -> Conversation:
        conversation = Conversation(id=conversation_id or str(uuid.uuid4()), title=title)
        self._conversations[conversation.id] = conversation
        self._current_id = conversation.id
        self._notify(conversation.id)
        return conversation

    def load(self, conversation: Conversation) -> None:
        self._conversations[conversation.id] = conversation
        self._notify(conversation.id)

    def select(self, conversation_id: str | None) -> None:
        self._current_id = conversation_id

    def get(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def current(self) -> Conversation | None:
        if self._current_id is None:
            return None
        return self._conversations.get(self._current_id)

    def messages(self, conversation_id: str) -> tuple[Message, ...]:
        conversation = self._conversations.get(conversation_id)
        return conversation.messages if conversation is not None else ()

    def add_message(self, conversation_id: str, message: Message) -> None:
        conversation = self._require(conversation_id)
        self._conversations[conversation_id] = replace(conversation, messages=conversation.messages + (message,))
        self._notify(conversation_id)

    def update_message(self, conversation_id: str, message_id: str, updater: MessageUpdater) -> Message | None:
        """Apply ``updater`` to a copy of the message and swap the result in.

        Returns the stored message, or ``None`` when the conversation or the
        message no longer exists or ``updater`` declined the change.
        """

        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            LOGGER.debug("Dropping update for unknown conversation %s", conversation_id)
            return None
        updated_messages: list[Message] = []
        result: Message | None = None
        for message in conversation.messages:
            if message.id == message_id and result is None:
                candidate = updater(message.copy())
                if candidate is None:
                    return None
                result = candidate
                updated_messages.append(candidate)
            else:
                updated_messages.append(message)
        if result is None:
            LOGGER.debug("Message %s not found in conversation %s", message_id, conversation_id)
            return None
        self._conversations[conversation_id] = replace(conversation, messages=tuple(updated_messages))
        self._notify(conversation_id)
        return result

    def rename(self, conversation_id: str, title: str) -> None:
        conversation = self._require(conversation_id)
        self._conversations[conversation_id] = replace(conversation, title=title)
        self._notify(conversation_id)

    def _require(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise KeyError(f"Unknown conversation: {conversation_id}")
        return conversation

    def _notify(self, conversation_id: str) -> None:
        if self._bus is not None:
            self._bus.publish(ConversationUpdated(conversation_id=conversation_id))


class MessageRepository(Protocol):
    """Durable storage for messages and conversation titles."""

    async def save_message(self, conversation_id: str, message: Message) -> None:
        ...

    async def rename_conversation(self, conversation_id: str, title: str) -> None:
        ...


class AttachmentLoader(Protocol):
    async def get_base64(self, attachment_id: str) -> str | None:
        """Return the stored attachment payload as base64, or ``None`` if missing."""
        ...


class ChatSettingsProvider(Protocol):
    """Read access to the provider/model selection and tool permission settings."""

    temperature: float
    thinking_enabled: bool

    def get_current_provider(self) -> ProviderConfig | None:
        ...

    def get_current_model(self) -> ModelConfig | None:
        ...

    def get_tool_permissions(self, workspace_path: str | None) -> ToolPermissionState:
        ...


class WorkspaceProvider(Protocol):
    workspace_path: str | None


@dataclass(slots=True)
class Skill:
    name: str
    content: str


class SkillProvider(Protocol):
    def active_skills(self) -> Sequence[Skill]:
        ...


class InMemoryMessageRepository:
    """Repository that keeps persisted messages in dictionaries."""

    def __init__(self) -> None:
        self.messages: dict[str, dict[str, Message]] = {}
        self.titles: dict[str, str] = {}

    async def save_message(self, conversation_id: str, message: Message) -> None:
        self.messages.setdefault(conversation_id, {})[message.id] = message.copy()

    async def rename_conversation(self, conversation_id: str, title: str) -> None:
        self.titles[conversation_id] = title

    def list_messages(self, conversation_id: str) -> list[Message]:
        return list(self.messages.get(conversation_id, {}).values())


@dataclass(slots=True)
class StaticWorkspace:
    workspace_path: str | None = None


@dataclass(slots=True)
class StaticSkills:
    skills: list[Skill] = field(default_factory=list)

    def active_skills(self) -> Sequence[Skill]:
        return list(self.skills)

    @classmethod
    def of(cls, items: Iterable[tuple[str, str]]) -> StaticSkills:
        return cls([Skill(name=name, content=content) for name, content in items])


__all__ = [
    "Conversation",
    "ConversationState",
    "MessageUpdater",
    "MessageRepository",
    "AttachmentLoader",
    "ChatSettingsProvider",
    "WorkspaceProvider",
    "Skill",
    "SkillProvider",
    "InMemoryMessageRepository",
    "StaticWorkspace",
    "StaticSkills",
]
