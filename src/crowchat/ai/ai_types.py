"""Wire-level payload types exchanged with the chat API server."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Sequence, Union

from .errors import APIError, api_error_from_payload

LOGGER = logging.getLogger(__name__)

WireRole = Literal["system", "user", "assistant"]
TOOL_PERMISSION_PREFIX = "__tool_permission__:"


@dataclass(slots=True)
class TextContent:
    text: str
    type: Literal["text"] = "text"

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(slots=True)
class ImageContent:
    """Inline image block; ``data`` holds the base64 payload without a ``data:`` prefix."""

    mime_type: str
    data: str
    note: str | None = None
    type: Literal["image"] = "image"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": "image", "mimeType": self.mime_type, "data": self.data}
        if self.note:
            payload["note"] = self.note
        return payload


ContentBlock = Union[TextContent, ImageContent]


@dataclass(slots=True)
class AIMessage:
    role: WireRole
    content: str | list[ContentBlock]

    @property
    def is_multimodal(self) -> bool:
        return isinstance(self.content, list)

    def text(self) -> str:
        """Return the concatenated text blocks of the message."""

        if isinstance(self.content, str):
            return self.content
        return "".join(block.text for block in self.content if isinstance(block, TextContent))

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [block.to_dict() for block in self.content]}


@dataclass(slots=True)
class AIConfig:
    """Provider configuration forwarded verbatim to the API server."""

    api_key: str
    model: str
    base_url: str | None = None
    api_format: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    thinking_enabled: bool | None = None
    thinking_budget: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"apiKey": self.api_key, "model": self.model}
        optional = {
            "baseURL": self.base_url,
            "apiFormat": self.api_format,
            "temperature": self.temperature,
            "maxTokens": self.max_tokens,
            "thinkingEnabled": self.thinking_enabled,
            "thinkingBudget": self.thinking_budget,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload


@dataclass(slots=True)
class ToolPermissionState:
    allow_all: bool = False
    session_approved_tools: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"allowAll": self.allow_all}
        if self.session_approved_tools:
            payload["sessionApprovedTools"] = list(self.session_approved_tools)
        return payload


@dataclass(slots=True)
class AIRequestOptions:
    tool_permissions: ToolPermissionState | None = None
    allow_once_tools: list[str] | None = None


@dataclass(slots=True)
class PermissionRequestPayload:
    """Sentinel tool output asking the user to approve a pending tool call."""

    tool_name: str
    tool_call_id: str | None = None

    @classmethod
    def parse(cls, output: str | None) -> PermissionRequestPayload | None:
        if not output or not output.startswith(TOOL_PERMISSION_PREFIX):
            return None
        raw = output[len(TOOL_PERMISSION_PREFIX) :]
        try:
            parsed = json.loads(raw)
        except ValueError:
            LOGGER.debug("Permission request payload is not valid JSON: %r", raw[:200])
            return None
        if not isinstance(parsed, Mapping) or parsed.get("kind") != "permission_request":
            return None
        tool_name = parsed.get("toolName")
        if not isinstance(tool_name, str):
            return None
        tool_call_id = parsed.get("toolCallId")
        return cls(tool_name=tool_name, tool_call_id=tool_call_id if isinstance(tool_call_id, str) else None)


@dataclass(slots=True)
class ToolCallData:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ToolResultData:
    tool_call_id: str
    output: str
    is_error: bool = False


StreamChunkKind = Literal["content", "thinking", "tool_call", "tool_result", "error", "done"]


@dataclass(slots=True)
class StreamChunk:
    """One decoded line of the streaming response.

    Exactly one of the payload fields is populated; :attr:`kind` names it.
    Records without a payload (a terminal ``done`` or ``usage`` record) decode
    as an inert ``"done"`` chunk.
    """

    kind: StreamChunkKind
    content: str | None = None
    thinking: str | None = None
    tool_call: ToolCallData | None = None
    tool_result: ToolResultData | None = None
    error: APIError | str | None = None
    done: bool = False

    @classmethod
    def from_record(cls, record: Any) -> StreamChunk:
        """Build a chunk from a decoded NDJSON record.

        Raises ``ValueError`` when the record is not a JSON object.
        """

        if not isinstance(record, Mapping):
            raise ValueError(f"Stream record must be a JSON object, got {type(record).__name__}")
        done = bool(record.get("done", False))
        if "error" in record and record["error"] is not None:
            error = record["error"]
            if isinstance(error, Mapping):
                return cls(kind="error", error=api_error_from_payload(error), done=done)
            return cls(kind="error", error=str(error), done=done)
        tool_call = record.get("toolCall")
        if isinstance(tool_call, Mapping):
            return cls(
                kind="tool_call",
                tool_call=ToolCallData(
                    id=str(tool_call.get("id", "")),
                    name=str(tool_call.get("name", "")),
                    input=dict(tool_call.get("input") or {}),
                ),
                done=done,
            )
        tool_result = record.get("toolResult")
        if isinstance(tool_result, Mapping):
            return cls(
                kind="tool_result",
                tool_result=ToolResultData(
                    tool_call_id=str(tool_result.get("toolCallId", "")),
                    output=str(tool_result.get("output", "")),
                    is_error=bool(tool_result.get("isError", False)),
                ),
                done=done,
            )
        thinking = record.get("thinking")
        if isinstance(thinking, str) and thinking:
            return cls(kind="thinking", thinking=thinking, done=done)
        content = record.get("content")
        if isinstance(content, str):
            return cls(kind="content", content=content, done=done)
        LOGGER.debug("Stream record without payload: keys=%s", sorted(record))
        return cls(kind="done", done=done)


def serialize_messages(messages: Sequence[AIMessage | Mapping[str, Any]]) -> list[dict[str, Any]]:
    serialized: list[dict[str, Any]] = []
    for message in messages:
        if isinstance(message, AIMessage):
            serialized.append(message.to_dict())
        else:
            serialized.append(dict(message))
    return serialized


def build_chat_payload(
    provider: str,
    messages: Sequence[AIMessage | Mapping[str, Any]],
    config: AIConfig | Mapping[str, Any],
    options: AIRequestOptions | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "provider": provider,
        "messages": serialize_messages(messages),
        "config": config.to_dict() if isinstance(config, AIConfig) else dict(config),
    }
    if options is not None:
        if options.tool_permissions is not None:
            payload["toolPermissions"] = options.tool_permissions.to_dict()
        if options.allow_once_tools:
            payload["allowOnceTools"] = list(options.allow_once_tools)
    return payload


__all__ = [
    "WireRole",
    "TOOL_PERMISSION_PREFIX",
    "TextContent",
    "ImageContent",
    "ContentBlock",
    "AIMessage",
    "AIConfig",
    "ToolPermissionState",
    "AIRequestOptions",
    "PermissionRequestPayload",
    "ToolCallData",
    "ToolResultData",
    "StreamChunk",
    "StreamChunkKind",
    "serialize_messages",
    "build_chat_payload",
]
