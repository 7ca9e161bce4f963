"""Event bus and turn lifecycle events.

Observers (UI layers, memory extraction) subscribe here instead of reaching
into the orchestrator or the conversation state directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Generic, TypeVar
from weakref import WeakMethod

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ..ai.errors import APIError

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all events published on the :class:`EventBus`."""

    # Chatty events fire once per streamed chunk and are delivered without a debug log line.
    chatty: ClassVar[bool] = False


@dataclass(slots=True)
class ConversationUpdated(Event):
    """Emitted whenever a conversation's message list or title is replaced.

    Attributes:
        conversation_id: The conversation whose state changed.
    """

    chatty: ClassVar[bool] = True

    conversation_id: str


@dataclass(slots=True)
class TurnStarted(Event):
    """Emitted once the user message is persisted and streaming is about to begin.

    Attributes:
        conversation_id: The conversation the turn belongs to.
        user_message_id: Id of the persisted user message.
        assistant_message_id: Id of the assistant placeholder.
    """

    conversation_id: str
    user_message_id: str
    assistant_message_id: str


@dataclass(slots=True)
class TurnCompleted(Event):
    """Emitted after the assistant message of a turn has been persisted.

    Attributes:
        conversation_id: The conversation the turn belongs to.
        assistant_message_id: Id of the finalized assistant message.
        user_message_count: Number of user messages in the conversation so far.
    """

    conversation_id: str
    assistant_message_id: str
    user_message_count: int


@dataclass(slots=True)
class TurnFailed(Event):
    """Emitted when a turn ends with an error.

    Attributes:
        conversation_id: The conversation the turn belongs to.
        message: User-facing error text.
        retryable: Whether the presentation layer may offer a retry.
        api_error: Structured error from the server, when one was available.
    """

    conversation_id: str
    message: str
    retryable: bool
    api_error: APIError | None = None


@dataclass(slots=True)
class TurnCancelled(Event):
    """Emitted when the user aborted a streaming turn."""

    conversation_id: str


@dataclass(slots=True)
class ChatStateChanged(Event):
    """Snapshot of the orchestrator's observable state after a change."""

    is_loading: bool
    error: str | None
    retryable: bool
    last_error: APIError | None = None


class EventBus(Generic[E]):
    """Synchronous publish-subscribe bus keyed by exact event type.

    Bound-method handlers are held weakly so an observer that goes away stops
    receiving events without unsubscribing; plain functions and lambdas are
    held strongly. Handlers run in subscription order and a raising handler is
    logged without stopping delivery to the rest.

    Not thread-safe; publish and subscribe from the event loop thread.
    """

    __slots__ = ("_subscriptions",)

    def __init__(self) -> None:
        self._subscriptions: dict[type[Event], list[_Subscription]] = {}

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> Callable[[], None]:
        """Register ``handler`` for ``event_type``; returns a function that removes it."""

        subscription = _Subscription(handler)
        self._subscriptions.setdefault(event_type, []).append(subscription)
        logger.debug("Subscribed %s to %s", subscription.name, event_type.__name__)

        def _remove() -> None:
            subscriptions = self._subscriptions.get(event_type, [])
            if subscription in subscriptions:
                subscriptions.remove(subscription)

        return _remove

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the first registration of ``handler``; unknown handlers are ignored."""

        subscriptions = self._subscriptions.get(event_type, [])
        for subscription in subscriptions:
            if subscription.wraps(handler):
                subscriptions.remove(subscription)
                logger.debug("Unsubscribed %s from %s", subscription.name, event_type.__name__)
                return

    def publish(self, event: E) -> int:
        """Deliver ``event`` to its handlers and return how many were called."""

        event_type = type(event)
        subscriptions = self._subscriptions.get(event_type)
        if not subscriptions:
            return 0
        if not event_type.chatty:
            logger.debug("Publishing %s to %d handler(s)", event_type.__name__, len(subscriptions))

        delivered = 0
        for subscription in list(subscriptions):
            handler = subscription.resolve()
            if handler is None:
                subscriptions.remove(subscription)
                continue
            delivered += 1
            try:
                handler(event)
            except Exception:
                logger.exception("Handler %s failed on %s", subscription.name, event_type.__name__)
        return delivered

    def clear(self) -> None:
        self._subscriptions.clear()

    def handler_count(self, event_type: type[E] | None = None) -> int:
        if event_type is not None:
            return len(self._subscriptions.get(event_type, ()))
        return sum(len(subscriptions) for subscriptions in self._subscriptions.values())


class _Subscription:
    __slots__ = ("_target", "_weak", "name")

    def __init__(self, handler: Handler) -> None:
        owner = getattr(handler, "__self__", None)
        func = getattr(handler, "__func__", None)
        self._weak = owner is not None and func is not None
        self._target: Any = WeakMethod(handler) if self._weak else handler  # type: ignore[arg-type]
        if self._weak:
            self.name = f"{type(owner).__name__}.{func.__name__}"
        else:
            self.name = getattr(handler, "__name__", repr(handler))

    def resolve(self) -> Handler | None:
        return self._target() if self._weak else self._target

    def wraps(self, handler: Handler) -> bool:
        resolved = self.resolve()
        return resolved is not None and resolved == handler


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "ConversationUpdated",
    "TurnStarted",
    "TurnCompleted",
    "TurnFailed",
    "TurnCancelled",
    "ChatStateChanged",
]
