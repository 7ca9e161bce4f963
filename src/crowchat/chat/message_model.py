"""Chat message, tool call, and attachment data models."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Literal, Optional

from ..ai.ai_types import PermissionRequestPayload, ToolCallData, ToolResultData

ChatRole = Literal["user", "assistant", "system"]


def _now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""

    return int(time.time() * 1000)


def new_message_id() -> str:
    return str(uuid.uuid4())


@dataclass(slots=True)
class ToolCall:
    """A tool invocation requested by the assistant."""

    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_data(cls, data: ToolCallData) -> ToolCall:
        return cls(id=data.id, name=data.name, input=dict(data.input))

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "input": dict(self.input)}


@dataclass(slots=True)
class ToolResult:
    """Outcome of a tool invocation, matched to its call by ``tool_call_id``."""

    tool_call_id: str
    output: str
    is_error: bool = False

    @classmethod
    def from_data(cls, data: ToolResultData) -> ToolResult:
        return cls(tool_call_id=data.tool_call_id, output=data.output, is_error=data.is_error)

    @property
    def permission_request(self) -> PermissionRequestPayload | None:
        """Return the approval request carried by this result, if any."""

        return PermissionRequestPayload.parse(self.output)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"toolCallId": self.tool_call_id, "output": self.output}
        if self.is_error:
            payload["isError"] = True
        return payload


@dataclass(slots=True)
class AttachmentPreview:
    """Stored attachment metadata without the binary payload."""

    id: str
    message_id: str
    filename: str
    mime_type: str
    note: Optional[str] = None
    size: int = 0
    width: Optional[int] = None
    height: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "messageId": self.message_id,
            "filename": self.filename,
            "mimeType": self.mime_type,
            "note": self.note,
            "size": self.size,
            "width": self.width,
            "height": self.height,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> AttachmentPreview:
        return cls(
            id=str(payload["id"]),
            message_id=str(payload.get("messageId", "")),
            filename=str(payload.get("filename", "")),
            mime_type=str(payload.get("mimeType", "")),
            note=payload.get("note"),
            size=int(payload.get("size") or 0),
            width=payload.get("width"),
            height=payload.get("height"),
        )


@dataclass(slots=True)
class PendingAttachment:
    """Attachment selected by the user but not yet persisted."""

    id: str
    filename: str
    mime_type: str
    data_url: str
    note: str = ""
    size: int = 0
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def base64_data(self) -> str:
        """Return the payload of ``data_url`` without its ``data:...;base64,`` header."""

        _, sep, data = self.data_url.partition(",")
        return data if sep else self.data_url

    def to_preview(self, message_id: str) -> AttachmentPreview:
        return AttachmentPreview(
            id=self.id,
            message_id=message_id,
            filename=self.filename,
            mime_type=self.mime_type,
            note=self.note or None,
            size=self.size,
            width=self.width,
            height=self.height,
        )


@dataclass(slots=True)
class Message:
    """Represents a row inside a conversation transcript."""

    id: str
    role: ChatRole
    content: str
    timestamp: int = field(default_factory=_now_ms)
    thinking: Optional[str] = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    attachments: list[AttachmentPreview] = field(default_factory=list)
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    duration_ms: Optional[int] = None

    def copy(self) -> Message:
        """Return a copy whose list fields can be mutated independently."""

        return replace(
            self,
            tool_calls=list(self.tool_calls),
            tool_results=list(self.tool_results),
            attachments=list(self.attachments),
        )

    def pending_permission_requests(self) -> list[PermissionRequestPayload]:
        requests: list[PermissionRequestPayload] = []
        for result in self.tool_results:
            request = result.permission_request
            if request is not None:
                requests.append(request)
        return requests

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the message for persistence."""

        payload: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.thinking:
            payload["thinking"] = self.thinking
        if self.tool_calls:
            payload["toolCalls"] = [call.to_dict() for call in self.tool_calls]
        if self.tool_results:
            payload["toolResults"] = [result.to_dict() for result in self.tool_results]
        if self.attachments:
            payload["attachments"] = [attachment.to_dict() for attachment in self.attachments]
        for key, value in (
            ("inputTokens", self.input_tokens),
            ("outputTokens", self.output_tokens),
            ("durationMs", self.duration_ms),
        ):
            if value is not None:
                payload[key] = value
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> Message:
        return cls(
            id=str(payload["id"]),
            role=payload.get("role", "user"),
            content=str(payload.get("content", "")),
            timestamp=int(payload.get("timestamp") or _now_ms()),
            thinking=payload.get("thinking"),
            tool_calls=[
                ToolCall(id=str(item["id"]), name=str(item.get("name", "")), input=dict(item.get("input") or {}))
                for item in payload.get("toolCalls") or []
            ],
            tool_results=[
                ToolResult(
                    tool_call_id=str(item["toolCallId"]),
                    output=str(item.get("output", "")),
                    is_error=bool(item.get("isError", False)),
                )
                for item in payload.get("toolResults") or []
            ],
            attachments=[AttachmentPreview.from_dict(item) for item in payload.get("attachments") or []],
            input_tokens=payload.get("inputTokens"),
            output_tokens=payload.get("outputTokens"),
            duration_ms=payload.get("durationMs"),
        )


__all__ = [
    "ChatRole",
    "ToolCall",
    "ToolResult",
    "AttachmentPreview",
    "PendingAttachment",
    "Message",
    "new_message_id",
]
