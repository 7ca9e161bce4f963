"""Conversation state, turn orchestration and chat events."""

from .conversation_state import Conversation, ConversationState, InMemoryMessageRepository, Skill
from .events import EventBus, TurnCancelled, TurnCompleted, TurnFailed, TurnStarted
from .message_model import Message, PendingAttachment, ToolCall, ToolResult
from .orchestrator import TurnOrchestrator, TurnState
from .prompts import build_system_prompt

__all__ = [
    "Conversation",
    "ConversationState",
    "EventBus",
    "InMemoryMessageRepository",
    "Message",
    "PendingAttachment",
    "Skill",
    "ToolCall",
    "ToolResult",
    "TurnCancelled",
    "TurnCompleted",
    "TurnFailed",
    "TurnOrchestrator",
    "TurnStarted",
    "TurnState",
    "build_system_prompt",
]
