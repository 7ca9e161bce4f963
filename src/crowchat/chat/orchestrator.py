"""Turn orchestration: one user message in, one streamed assistant message out."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Literal, Mapping, Sequence

from ..ai.ai_types import (
    AIConfig,
    AIMessage,
    AIRequestOptions,
    ContentBlock,
    ImageContent,
    StreamChunk,
    TextContent,
    ToolPermissionState,
)
from ..ai.cancellation import AbortController
from ..ai.client import APIClient
from ..ai.errors import (
    APIError,
    CrowClientError,
    LocalValidationError,
    StreamCancelledError,
    TurnInProgressError,
    get_error_message,
)
from ..services.settings import redact_secret
from .conversation_state import (
    AttachmentLoader,
    ChatSettingsProvider,
    Conversation,
    ConversationState,
    MessageRepository,
    SkillProvider,
    WorkspaceProvider,
)
from .events import ChatStateChanged, EventBus, TurnCancelled, TurnCompleted, TurnFailed, TurnStarted
from .message_model import Message, PendingAttachment, ToolCall, ToolResult, new_message_id
from .prompts import build_system_prompt

LOGGER = logging.getLogger(__name__)

ApprovalScope = Literal["once", "session", "project", "global"]

TITLE_MAX_CHARS = 50
_REMEMBERED_SCOPES = frozenset({"session", "project", "global"})
_DENIAL_INSTRUCTION = (
    "The user denied this tool call. Do not retry it unchanged; "
    "try a different approach or ask the user how to proceed."
)


class TurnState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TurnOrchestrator:
    """Runs chat turns against :class:`APIClient` and keeps the transcript in sync.

    Only one turn may be in flight per orchestrator. While a turn is loading,
    :meth:`send_message` and the approve/deny helpers raise
    :class:`TurnInProgressError` without touching any state.
    """

    def __init__(
        self,
        client: APIClient,
        conversations: ConversationState,
        repository: MessageRepository,
        settings: ChatSettingsProvider,
        *,
        workspace: WorkspaceProvider | None = None,
        skills: SkillProvider | None = None,
        attachments: AttachmentLoader | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._client = client
        self._conversations = conversations
        self._repository = repository
        self._settings = settings
        self._workspace = workspace
        self._skills = skills
        self._attachments = attachments
        self._bus = bus
        self._state = TurnState.IDLE
        self._is_loading = False
        self._controller: AbortController | None = None
        self._error: str | None = None
        self._retryable = False
        self._last_error: APIError | None = None
        self._session_approvals: dict[str, list[str]] = {}

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------
    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def retryable(self) -> bool:
        return self._retryable

    @property
    def last_error(self) -> APIError | None:
        return self._last_error

    @property
    def abort_controller(self) -> AbortController | None:
        return self._controller

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------
    async def send_message(
        self,
        conversation_id: str,
        text: str,
        provider: str,
        config: AIConfig | Mapping[str, Any],
        attachments: Sequence[PendingAttachment] = (),
        options: AIRequestOptions | None = None,
    ) -> Message | None:
        """Send ``text`` and stream the assistant reply into the conversation.

        Returns the assistant message as it stands when the turn ends, or
        ``None`` if the conversation disappeared mid-turn. Stream failures are
        reported through :attr:`error` and the event bus rather than raised;
        failures to persist the user message propagate before any request is
        made.
        """

        self._ensure_idle()
        self._is_loading = True
        self._state = TurnState.SENDING
        self._error = None
        self._retryable = False
        self._publish_state()

        controller: AbortController | None = None
        try:
            user_message = await self._persist_user_message(conversation_id, text, attachments)
            history = await self._build_history(conversation_id, text, attachments)
            request_options = self._request_options(conversation_id, options)

            assistant_id = new_message_id()
            self._conversations.add_message(
                conversation_id,
                Message(id=assistant_id, role="assistant", content=""),
            )
            controller = AbortController()
            self._controller = controller
            self._state = TurnState.STREAMING
            self._publish(
                TurnStarted(
                    conversation_id=conversation_id,
                    user_message_id=user_message.id,
                    assistant_message_id=assistant_id,
                )
            )
            LOGGER.debug(
                "Streaming turn in %s via %s (%s)",
                conversation_id,
                provider,
                _describe_config(config),
            )

            try:
                await self._client.send_message_stream(
                    provider,
                    history,
                    config,
                    lambda chunk: self._apply_chunk(conversation_id, assistant_id, chunk),
                    signal=controller.signal,
                    options=request_options,
                )
                assistant = self._conversations.get(conversation_id)
                finalized = assistant.find(assistant_id) if assistant is not None else None
                if finalized is not None:
                    await self._repository.save_message(conversation_id, finalized)
                await self._maybe_rename(conversation_id, text)
            except StreamCancelledError:
                LOGGER.debug("Turn in %s cancelled", conversation_id)
                if self._controller is controller:
                    self._state = TurnState.CANCELLED
                self._publish(TurnCancelled(conversation_id=conversation_id))
                return self._find(conversation_id, assistant_id)
            except Exception as exc:
                self._fail_turn(conversation_id, assistant_id, exc)
                return self._find(conversation_id, assistant_id)

            if self._controller is not controller:
                # Aborted while the reply was being saved; a newer turn may own the state.
                LOGGER.debug("Turn in %s aborted after streaming finished", conversation_id)
                self._publish(TurnCancelled(conversation_id=conversation_id))
                return self._find(conversation_id, assistant_id)

            self._state = TurnState.COMPLETED
            conversation = self._conversations.get(conversation_id)
            self._publish(
                TurnCompleted(
                    conversation_id=conversation_id,
                    assistant_message_id=assistant_id,
                    user_message_count=conversation.user_message_count if conversation is not None else 0,
                )
            )
            return self._find(conversation_id, assistant_id)
        except BaseException:
            if self._state in (TurnState.SENDING, TurnState.STREAMING):
                self._state = TurnState.FAILED
            raise
        finally:
            self._finish_turn(controller)

    async def approve_tool_call(
        self,
        conversation_id: str,
        tool_name: str,
        scope: ApprovalScope = "once",
    ) -> Message | None:
        """Grant ``tool_name`` and ask the assistant to re-issue its pending call.

        ``session``, ``project`` and ``global`` all record the tool in the
        conversation's session approvals; ``once`` only allows the next call.
        """

        self._ensure_idle()
        if scope not in ("once", *_REMEMBERED_SCOPES):
            raise LocalValidationError(f"Unknown approval scope: {scope}")
        provider, config = self._resolve_provider()
        if scope in _REMEMBERED_SCOPES:
            if scope != "session":
                LOGGER.info("Approval scope %s is stored for this session only", scope)
            self._remember_approval(conversation_id, tool_name)
        text = f"[Tool Approved] {tool_name}\nPermission granted. Please continue with the pending {tool_name} call."
        return await self.send_message(
            conversation_id,
            text,
            provider,
            config,
            options=AIRequestOptions(allow_once_tools=[tool_name]),
        )

    async def deny_tool_call(
        self,
        conversation_id: str,
        tool_name: str,
        tool_call_id: str,
        reason: str | None = None,
    ) -> Message | None:
        self._ensure_idle()
        provider, config = self._resolve_provider()
        lines = [f"[Tool Denied] {tool_name} ({tool_call_id})"]
        if reason and reason.strip():
            lines.append(f"Reason: {reason.strip()}")
        lines.append(_DENIAL_INSTRUCTION)
        return await self.send_message(conversation_id, "\n".join(lines), provider, config)

    def abort_message(self) -> None:
        """Abort the in-flight turn, if any, and clear the loading state immediately."""

        controller = self._controller
        if controller is None:
            return
        LOGGER.debug("Aborting in-flight turn")
        self._controller = None
        self._is_loading = False
        self._state = TurnState.CANCELLED
        controller.abort()
        self._publish_state()

    # ------------------------------------------------------------------
    # Session approvals and error state
    # ------------------------------------------------------------------
    def get_session_approved_tools(self, conversation_id: str) -> list[str]:
        return list(self._session_approvals.get(conversation_id, ()))

    def clear_session_approvals(self, conversation_id: str | None = None) -> None:
        if conversation_id is None:
            self._session_approvals.clear()
        else:
            self._session_approvals.pop(conversation_id, None)

    def clear_error(self) -> None:
        self._error = None
        self._retryable = False
        self._last_error = None
        self._publish_state()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _ensure_idle(self) -> None:
        if self._is_loading:
            raise TurnInProgressError()

    def _resolve_provider(self) -> tuple[str, AIConfig]:
        return resolve_provider_config(self._settings)

    def _remember_approval(self, conversation_id: str, tool_name: str) -> None:
        approved = self._session_approvals.setdefault(conversation_id, [])
        if tool_name not in approved:
            approved.append(tool_name)

    async def _persist_user_message(
        self,
        conversation_id: str,
        text: str,
        attachments: Sequence[PendingAttachment],
    ) -> Message:
        message_id = new_message_id()
        message = Message(
            id=message_id,
            role="user",
            content=text,
            attachments=[attachment.to_preview(message_id) for attachment in attachments],
        )
        await self._repository.save_message(conversation_id, message)
        if self._conversations.get(conversation_id) is None:
            self._conversations.load(Conversation(id=conversation_id))
        self._conversations.add_message(conversation_id, message)
        return message

    async def _build_history(
        self,
        conversation_id: str,
        text: str,
        attachments: Sequence[PendingAttachment],
    ) -> list[AIMessage]:
        workspace_path = self._workspace.workspace_path if self._workspace is not None else None
        skills = self._skills.active_skills() if self._skills is not None else ()
        history = [AIMessage(role="system", content=build_system_prompt(workspace_path, skills))]

        messages = self._conversations.messages(conversation_id)
        for message in messages[:-1]:
            if message.role == "system":
                continue
            history.append(await self._to_wire(message))

        if attachments:
            blocks: list[ContentBlock] = []
            if text:
                blocks.append(TextContent(text=text))
            blocks.extend(
                ImageContent(mime_type=attachment.mime_type, data=attachment.base64_data, note=attachment.note or None)
                for attachment in attachments
            )
            history.append(AIMessage(role="user", content=blocks))
        else:
            history.append(AIMessage(role="user", content=text))
        return history

    async def _to_wire(self, message: Message) -> AIMessage:
        if not message.attachments or self._attachments is None:
            return AIMessage(role=message.role, content=message.content)
        blocks: list[ContentBlock] = []
        if message.content:
            blocks.append(TextContent(text=message.content))
        for attachment in message.attachments:
            data = await self._attachments.get_base64(attachment.id)
            if not data:
                LOGGER.debug("Attachment %s has no stored payload; skipping", attachment.id)
                continue
            blocks.append(ImageContent(mime_type=attachment.mime_type, data=data, note=attachment.note))
        return AIMessage(role=message.role, content=blocks)

    def _request_options(self, conversation_id: str, options: AIRequestOptions | None) -> AIRequestOptions:
        permissions = options.tool_permissions if options is not None else None
        if permissions is None:
            workspace_path = self._workspace.workspace_path if self._workspace is not None else None
            permissions = self._settings.get_tool_permissions(workspace_path)
        permissions = ToolPermissionState(
            allow_all=permissions.allow_all,
            session_approved_tools=self.get_session_approved_tools(conversation_id),
        )
        allow_once = list(options.allow_once_tools or []) if options is not None else []
        return AIRequestOptions(tool_permissions=permissions, allow_once_tools=allow_once or None)

    def _apply_chunk(self, conversation_id: str, message_id: str, chunk: StreamChunk) -> None:
        def _update(message: Message) -> Message | None:
            if chunk.kind == "content":
                message.content += chunk.content or ""
            elif chunk.kind == "thinking":
                message.thinking = (message.thinking or "") + (chunk.thinking or "")
            elif chunk.kind == "tool_call" and chunk.tool_call is not None:
                if any(call.id == chunk.tool_call.id for call in message.tool_calls):
                    return None
                message.tool_calls.append(ToolCall.from_data(chunk.tool_call))
            elif chunk.kind == "tool_result" and chunk.tool_result is not None:
                call_id = chunk.tool_result.tool_call_id
                if any(result.tool_call_id == call_id for result in message.tool_results):
                    return None
                message.tool_results.append(ToolResult.from_data(chunk.tool_result))
            else:
                return None
            return message

        self._conversations.update_message(conversation_id, message_id, _update)

    async def _maybe_rename(self, conversation_id: str, text: str) -> None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None or conversation.user_message_count != 1:
            return
        title = text[:TITLE_MAX_CHARS] + ("..." if len(text) > TITLE_MAX_CHARS else "")
        self._conversations.rename(conversation_id, title)
        await self._repository.rename_conversation(conversation_id, title)

    def _fail_turn(self, conversation_id: str, assistant_id: str, exc: Exception) -> None:
        api_error: APIError | None = None
        retryable = False
        if isinstance(exc, CrowClientError):
            api_error = exc.api_error
            message = (api_error.message if api_error is not None else "") or str(exc)
            retryable = exc.retryable
        else:
            message = get_error_message(str(exc)) or str(exc)
        message = message or "Unknown error"
        LOGGER.error("Turn in %s failed: %s", conversation_id, message, exc_info=exc)

        def _mark(existing: Message) -> Message:
            existing.content = f"Error: {message}"
            return existing

        self._conversations.update_message(conversation_id, assistant_id, _mark)
        self._state = TurnState.FAILED
        self._error = message
        self._retryable = retryable
        self._last_error = api_error
        self._publish(
            TurnFailed(
                conversation_id=conversation_id,
                message=message,
                retryable=retryable,
                api_error=api_error,
            )
        )

    def _finish_turn(self, controller: AbortController | None) -> None:
        # An aborted turn has already released the loading state, and a newer
        # turn may own it by now.
        if controller is not None and self._controller is not controller:
            return
        self._controller = None
        self._is_loading = False
        self._publish_state()

    def _find(self, conversation_id: str, message_id: str) -> Message | None:
        conversation = self._conversations.get(conversation_id)
        return conversation.find(message_id) if conversation is not None else None

    def _publish(self, event: Any) -> None:
        if self._bus is not None:
            self._bus.publish(event)

    def _publish_state(self) -> None:
        self._publish(
            ChatStateChanged(
                is_loading=self._is_loading,
                error=self._error,
                retryable=self._retryable,
                last_error=self._last_error,
            )
        )


def resolve_provider_config(settings: ChatSettingsProvider) -> tuple[str, AIConfig]:
    """Return the selected provider type and its request config.

    Raises :class:`LocalValidationError` when no provider and model are selected
    or the provider has no API key.
    """

    provider = settings.get_current_provider()
    model = settings.get_current_model()
    if provider is None or model is None:
        raise LocalValidationError("No provider or model selected")
    if not provider.api_key:
        raise LocalValidationError(f"Provider {provider.name or provider.id} has no API key configured")
    config = AIConfig(
        api_key=provider.api_key,
        model=model.model_id,
        base_url=provider.base_url,
        api_format=provider.api_format,
        temperature=settings.temperature,
        thinking_enabled=settings.thinking_enabled or None,
    )
    return provider.type, config


def _describe_config(config: AIConfig | Mapping[str, Any]) -> str:
    if isinstance(config, AIConfig):
        return f"model={config.model} key={redact_secret(config.api_key)}"
    return f"model={config.get('model')} key={redact_secret(str(config.get('apiKey') or ''))}"


__all__ = ["ApprovalScope", "TurnOrchestrator", "TurnState", "TITLE_MAX_CHARS", "resolve_provider_config"]
