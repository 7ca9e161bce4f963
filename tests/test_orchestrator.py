"""Tests for :mod:`crowchat.chat.orchestrator`."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any, Sequence

import httpx
import pytest

from crowchat.ai.ai_types import (
    AIConfig,
    AIMessage,
    AIRequestOptions,
    ImageContent,
    StreamChunk,
    TextContent,
    ToolCallData,
    ToolResultData,
)
from crowchat.ai.cancellation import AbortSignal
from crowchat.ai.errors import (
    ErrorCode,
    HttpError,
    LocalValidationError,
    StreamCancelledError,
    TurnInProgressError,
    create_api_error,
)
from crowchat.chat.conversation_state import ConversationState, InMemoryMessageRepository, StaticWorkspace
from crowchat.chat.events import (
    ChatStateChanged,
    Event,
    EventBus,
    TurnCancelled,
    TurnCompleted,
    TurnFailed,
    TurnStarted,
)
from crowchat.chat.message_model import AttachmentPreview, Message, PendingAttachment
from crowchat.chat.orchestrator import TurnOrchestrator, TurnState
from crowchat.services.settings import Settings, SettingsChatProvider
from tests.helpers import FailingRepository, make_api_client, ndjson, stream_response

CONFIG = AIConfig(api_key="sk-test", model="gpt-4")


def _content(text: str) -> StreamChunk:
    return StreamChunk(kind="content", content=text)


def _tool_call(call_id: str, name: str = "Bash") -> StreamChunk:
    return StreamChunk(kind="tool_call", tool_call=ToolCallData(id=call_id, name=name, input={"command": "ls"}))


def _tool_result(call_id: str, output: str = "ok") -> StreamChunk:
    return StreamChunk(kind="tool_result", tool_result=ToolResultData(tool_call_id=call_id, output=output))


@dataclass
class FakeStreamClient:
    """Replays chunks through ``on_chunk`` and optionally blocks until aborted."""

    chunks: list[StreamChunk] = field(default_factory=list)
    error: Exception | None = None
    block_until_abort: bool = False
    gate: asyncio.Event | None = None
    calls: list[SimpleNamespace] = field(default_factory=list)
    started: asyncio.Event = field(default_factory=asyncio.Event)

    async def send_message_stream(
        self,
        provider: str,
        messages: Sequence[AIMessage],
        config: Any,
        on_chunk,
        signal: AbortSignal | None = None,
        options: AIRequestOptions | None = None,
    ) -> None:
        self.calls.append(
            SimpleNamespace(provider=provider, messages=list(messages), config=config, signal=signal, options=options)
        )
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        for chunk in self.chunks:
            on_chunk(chunk)
        if self.error is not None:
            raise self.error
        if self.block_until_abort:
            assert signal is not None
            aborted = asyncio.Event()
            signal.add_listener(aborted.set)
            await aborted.wait()
            raise StreamCancelledError()


class FakeAttachmentLoader:
    def __init__(self, payloads: dict[str, str]) -> None:
        self.payloads = payloads

    async def get_base64(self, attachment_id: str) -> str | None:
        return self.payloads.get(attachment_id)


def _build(
    client: Any,
    *,
    settings: Settings | None = None,
    repository: Any = None,
    workspace: str | None = None,
    attachments: FakeAttachmentLoader | None = None,
) -> SimpleNamespace:
    bus: EventBus[Event] = EventBus()
    events: list[Event] = []
    for event_type in (TurnStarted, TurnCompleted, TurnFailed, TurnCancelled, ChatStateChanged):
        bus.subscribe(event_type, events.append)
    conversations = ConversationState(bus=bus)
    conversations.create_conversation(conversation_id="conv-1")
    repo = repository if repository is not None else InMemoryMessageRepository()
    orchestrator = TurnOrchestrator(
        client,
        conversations,
        repo,
        SettingsChatProvider(settings or Settings()),
        workspace=StaticWorkspace(workspace),
        attachments=attachments,
        bus=bus,
    )
    return SimpleNamespace(
        orchestrator=orchestrator,
        conversations=conversations,
        repository=repo,
        client=client,
        events=events,
    )


def _assistant(env: SimpleNamespace, conversation_id: str = "conv-1") -> Message:
    return [m for m in env.conversations.messages(conversation_id) if m.role == "assistant"][-1]


def _events_of(env: SimpleNamespace, event_type: type) -> list[Any]:
    return [event for event in env.events if isinstance(event, event_type)]


@pytest.mark.asyncio
async def test_stream_over_http_builds_assistant_message() -> None:
    payload = ndjson({"content": "Hello "}, {"content": "world!"})
    env = _build(make_api_client(lambda request: stream_response([payload[:9], payload[9:]])))

    reply = await env.orchestrator.send_message("conv-1", "Hi", "openai", CONFIG)

    assert reply is not None and reply.content == "Hello world!"
    assert _assistant(env).content == "Hello world!"
    assert env.orchestrator.state is TurnState.COMPLETED
    assert env.orchestrator.is_loading is False
    assert env.orchestrator.abort_controller is None
    saved = env.repository.list_messages("conv-1")
    assert [m.role for m in saved] == ["user", "assistant"]
    assert saved[1].content == "Hello world!"
    completed = _events_of(env, TurnCompleted)
    assert len(completed) == 1
    assert completed[0].user_message_count == 1


@pytest.mark.asyncio
async def test_first_message_renames_conversation_with_ellipsis() -> None:
    env = _build(FakeStreamClient(chunks=[_content("ok")]))

    await env.orchestrator.send_message("conv-1", "A" * 60, "openai", CONFIG)

    assert env.conversations.get("conv-1").title == "A" * 50 + "..."
    assert env.repository.titles["conv-1"] == "A" * 50 + "..."


@pytest.mark.asyncio
async def test_short_first_message_is_title_and_later_messages_do_not_rename() -> None:
    env = _build(FakeStreamClient(chunks=[_content("ok")]))

    await env.orchestrator.send_message("conv-1", "Plan the release", "openai", CONFIG)
    await env.orchestrator.send_message("conv-1", "Second question", "openai", CONFIG)

    assert env.conversations.get("conv-1").title == "Plan the release"
    assert _events_of(env, TurnCompleted)[-1].user_message_count == 2


@pytest.mark.asyncio
async def test_duplicate_tool_chunks_are_ignored() -> None:
    env = _build(
        FakeStreamClient(
            chunks=[
                _tool_call("tc-1"),
                _tool_call("tc-1"),
                _tool_result("tc-1"),
                _tool_result("tc-1", "again"),
                _tool_call("tc-2", "Read"),
                StreamChunk(kind="thinking", thinking="step 1 "),
                StreamChunk(kind="thinking", thinking="step 2"),
            ]
        )
    )

    await env.orchestrator.send_message("conv-1", "run it", "openai", CONFIG)

    assistant = _assistant(env)
    assert [call.id for call in assistant.tool_calls] == ["tc-1", "tc-2"]
    assert [result.output for result in assistant.tool_results] == ["ok"]
    assert assistant.thinking == "step 1 step 2"


@pytest.mark.asyncio
async def test_structured_failure_marks_placeholder_and_publishes_error() -> None:
    api_error = create_api_error(ErrorCode.RATE_LIMITED, "Rate limit exceeded")
    client = FakeStreamClient(chunks=[_content("partial")], error=HttpError("Rate limited", status=429, api_error=api_error))
    env = _build(client)

    await env.orchestrator.send_message("conv-1", "Hello", "openai", CONFIG)

    assert _assistant(env).content == "Error: Rate limit exceeded"
    assert env.orchestrator.error == "Rate limit exceeded"
    assert env.orchestrator.retryable is True
    assert env.orchestrator.last_error == api_error
    assert env.orchestrator.state is TurnState.FAILED
    assert env.orchestrator.is_loading is False
    failed = _events_of(env, TurnFailed)
    assert len(failed) == 1 and failed[0].retryable is True
    assert [m.role for m in env.repository.list_messages("conv-1")] == ["user"]
    assert _events_of(env, TurnCompleted) == []


@pytest.mark.asyncio
async def test_generic_failure_uses_exception_text() -> None:
    env = _build(FakeStreamClient(error=RuntimeError("kaput")))

    await env.orchestrator.send_message("conv-1", "Hello", "openai", CONFIG)

    assert env.orchestrator.error == "kaput"
    assert env.orchestrator.retryable is False
    assert env.orchestrator.last_error is None
    assert _assistant(env).content == "Error: kaput"


@pytest.mark.asyncio
async def test_failure_without_message_reports_unknown_error() -> None:
    env = _build(FakeStreamClient(error=RuntimeError()))

    await env.orchestrator.send_message("conv-1", "Hello", "openai", CONFIG)

    assert env.orchestrator.error == "Unknown error"
    assert _assistant(env).content == "Error: Unknown error"


@pytest.mark.asyncio
async def test_new_turn_clears_previous_error() -> None:
    client = FakeStreamClient(error=RuntimeError("kaput"))
    env = _build(client)
    await env.orchestrator.send_message("conv-1", "Hello", "openai", CONFIG)

    client.error = None
    client.chunks = [_content("fine")]
    await env.orchestrator.send_message("conv-1", "Again", "openai", CONFIG)

    assert env.orchestrator.error is None
    assert env.orchestrator.retryable is False


@pytest.mark.asyncio
async def test_abort_mid_stream_is_clean() -> None:
    client = FakeStreamClient(chunks=[_content("Hello ")], block_until_abort=True)
    env = _build(client)

    task = asyncio.create_task(env.orchestrator.send_message("conv-1", "Hi", "openai", CONFIG))
    await client.started.wait()
    await asyncio.sleep(0)
    assert env.orchestrator.is_loading is True
    assert env.orchestrator.abort_controller is not None

    env.orchestrator.abort_message()

    assert env.orchestrator.is_loading is False
    assert env.orchestrator.abort_controller is None
    assert env.orchestrator.error is None

    await task

    assert env.orchestrator.error is None
    assert env.orchestrator.state is TurnState.CANCELLED
    assert _assistant(env).content == "Hello "
    assert len(_events_of(env, TurnCancelled)) == 1
    assert _events_of(env, TurnFailed) == []


def test_abort_without_turn_is_noop() -> None:
    env = _build(FakeStreamClient())

    env.orchestrator.abort_message()

    assert env.orchestrator.state is TurnState.IDLE
    assert env.events == []


@pytest.mark.asyncio
async def test_second_send_while_loading_is_rejected() -> None:
    client = FakeStreamClient(block_until_abort=True)
    env = _build(client)
    task = asyncio.create_task(env.orchestrator.send_message("conv-1", "first", "openai", CONFIG))
    await client.started.wait()
    controller = env.orchestrator.abort_controller

    with pytest.raises(TurnInProgressError):
        await env.orchestrator.send_message("conv-1", "second", "openai", CONFIG)

    assert env.orchestrator.abort_controller is controller
    assert [m.content for m in env.repository.list_messages("conv-1")] == ["first"]
    assert len(client.calls) == 1

    env.orchestrator.abort_message()
    await task


@pytest.mark.asyncio
async def test_user_message_persistence_failure_propagates_before_network() -> None:
    client = FakeStreamClient(chunks=[_content("never")])
    env = _build(client, repository=FailingRepository())

    with pytest.raises(OSError):
        await env.orchestrator.send_message("conv-1", "Hello", "openai", CONFIG)

    assert client.calls == []
    assert env.conversations.messages("conv-1") == ()
    assert env.orchestrator.is_loading is False
    assert env.orchestrator.abort_controller is None


@pytest.mark.asyncio
async def test_chunks_follow_original_conversation_after_switch() -> None:
    gate = asyncio.Event()
    client = FakeStreamClient(chunks=[_content("for conv-1")], gate=gate)
    env = _build(client)
    task = asyncio.create_task(env.orchestrator.send_message("conv-1", "Hi", "openai", CONFIG))
    await client.started.wait()

    env.conversations.create_conversation(conversation_id="conv-2")
    gate.set()
    await task

    assert env.conversations.current_conversation_id == "conv-2"
    assert _assistant(env, "conv-1").content == "for conv-1"
    assert env.conversations.messages("conv-2") == ()


@pytest.mark.asyncio
async def test_wire_history_includes_system_prompt_and_images() -> None:
    client = FakeStreamClient(chunks=[_content("ok")])
    env = _build(client, workspace="/work/demo", attachments=FakeAttachmentLoader({"old-att": "T0xE"}))
    env.conversations.add_message(
        "conv-1",
        Message(
            id="m0",
            role="user",
            content="earlier",
            attachments=[AttachmentPreview(id="old-att", message_id="m0", filename="a.png", mime_type="image/png")],
        ),
    )
    env.conversations.add_message("conv-1", Message(id="m1", role="assistant", content="seen it"))
    pending = PendingAttachment(id="new-att", filename="b.png", mime_type="image/png", data_url="data:image/png;base64,TkVX")

    await env.orchestrator.send_message("conv-1", "and this?", "openai", CONFIG, attachments=[pending])

    messages = client.calls[0].messages
    assert messages[0].role == "system"
    assert "/work/demo" in messages[0].content
    assert messages[1].content == [
        TextContent(text="earlier"),
        ImageContent(mime_type="image/png", data="T0xE"),
    ]
    assert messages[2] == AIMessage(role="assistant", content="seen it")
    assert messages[3].content == [
        TextContent(text="and this?"),
        ImageContent(mime_type="image/png", data="TkVX"),
    ]
    saved_user = env.repository.list_messages("conv-1")[0]
    assert [a.id for a in saved_user.attachments] == ["new-att"]


@pytest.mark.asyncio
async def test_tool_permissions_follow_workspace_settings() -> None:
    client = FakeStreamClient(chunks=[_content("ok")])
    env = _build(client, settings=Settings(tool_permissions={"/ws": True}), workspace="/ws")

    await env.orchestrator.send_message("conv-1", "Hi", "openai", CONFIG)

    permissions = client.calls[0].options.tool_permissions
    assert permissions.allow_all is True
    assert permissions.session_approved_tools == []


@pytest.mark.asyncio
async def test_approve_session_records_tool_once(configured_settings: Settings) -> None:
    client = FakeStreamClient(chunks=[_content("ran it")])
    env = _build(client, settings=configured_settings)

    await env.orchestrator.approve_tool_call("conv-1", "Bash", "session")
    assert env.orchestrator.get_session_approved_tools("conv-1") == ["Bash"]

    await env.orchestrator.approve_tool_call("conv-1", "Bash", "session")
    assert env.orchestrator.get_session_approved_tools("conv-1") == ["Bash"]

    first, second = client.calls
    assert first.provider == "openai"
    assert first.config.api_key == "key"
    assert first.config.model == "gpt-4"
    assert first.options.allow_once_tools == ["Bash"]
    assert second.options.tool_permissions.session_approved_tools == ["Bash"]
    assert "Bash" in first.messages[-1].content


@pytest.mark.asyncio
async def test_approve_scopes(configured_settings: Settings) -> None:
    env = _build(FakeStreamClient(chunks=[_content("ok")]), settings=configured_settings)

    await env.orchestrator.approve_tool_call("conv-1", "Read", "once")
    assert env.orchestrator.get_session_approved_tools("conv-1") == []

    await env.orchestrator.approve_tool_call("conv-1", "Write", "project")
    await env.orchestrator.approve_tool_call("conv-1", "Edit", "global")
    assert env.orchestrator.get_session_approved_tools("conv-1") == ["Write", "Edit"]
    assert env.orchestrator.get_session_approved_tools("other") == []

    env.orchestrator.clear_session_approvals("conv-1")
    assert env.orchestrator.get_session_approved_tools("conv-1") == []


@pytest.mark.asyncio
async def test_approve_requires_provider_with_key(configured_settings: Settings) -> None:
    configured_settings.providers[0].api_key = ""
    client = FakeStreamClient()
    env = _build(client, settings=configured_settings)

    with pytest.raises(LocalValidationError):
        await env.orchestrator.approve_tool_call("conv-1", "Bash", "session")
    with pytest.raises(LocalValidationError):
        await env.orchestrator.deny_tool_call("conv-1", "Bash", "tc-1")

    assert client.calls == []
    assert env.orchestrator.get_session_approved_tools("conv-1") == []
    assert env.orchestrator.is_loading is False


@pytest.mark.asyncio
async def test_approve_without_selection_fails() -> None:
    env = _build(FakeStreamClient())

    with pytest.raises(LocalValidationError):
        await env.orchestrator.approve_tool_call("conv-1", "Bash")


@pytest.mark.asyncio
async def test_deny_sends_reason_through_normal_turn(configured_settings: Settings) -> None:
    client = FakeStreamClient(chunks=[_content("I'll try something else")])
    env = _build(client, settings=configured_settings)

    await env.orchestrator.deny_tool_call("conv-1", "Write", "tc-2", "Too dangerous")

    user_message = env.repository.list_messages("conv-1")[0]
    assert user_message.role == "user"
    for fragment in ("Write", "tc-2", "Reason: Too dangerous"):
        assert fragment in user_message.content
    assert client.calls[0].options.allow_once_tools is None
    assert _assistant(env).content == "I'll try something else"


@pytest.mark.asyncio
async def test_deny_without_reason_omits_reason_line(configured_settings: Settings) -> None:
    env = _build(FakeStreamClient(chunks=[_content("ok")]), settings=configured_settings)

    await env.orchestrator.deny_tool_call("conv-1", "Bash", "tc-1")

    content = env.repository.list_messages("conv-1")[0].content
    assert content.startswith("[Tool Denied] Bash (tc-1)")
    assert "Reason:" not in content


@pytest.mark.asyncio
async def test_clear_error_resets_error_state() -> None:
    env = _build(FakeStreamClient(error=HttpError("x", status=503, api_error=create_api_error(ErrorCode.SERVICE_UNAVAILABLE))))
    await env.orchestrator.send_message("conv-1", "Hello", "openai", CONFIG)
    assert env.orchestrator.error is not None

    env.orchestrator.clear_error()

    assert env.orchestrator.error is None
    assert env.orchestrator.retryable is False
    assert env.orchestrator.last_error is None


@pytest.mark.asyncio
async def test_state_events_bracket_the_turn() -> None:
    env = _build(FakeStreamClient(chunks=[_content("ok")]))

    await env.orchestrator.send_message("conv-1", "Hello", "openai", CONFIG)

    states = _events_of(env, ChatStateChanged)
    assert states[0].is_loading is True
    assert states[-1].is_loading is False
    assert isinstance(env.events[1], TurnStarted)


@pytest.mark.asyncio
async def test_http_error_stream_surfaces_server_message() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"code": "UNAUTHORIZED", "message": "Invalid API key"}})

    env = _build(make_api_client(handler))

    await env.orchestrator.send_message("conv-1", "Hello", "openai", CONFIG)

    assert env.orchestrator.error == "Invalid API key"
    assert env.orchestrator.retryable is False
    assert _assistant(env).content == "Error: Invalid API key"


@pytest.mark.asyncio
async def test_terminal_done_record_keeps_streamed_text() -> None:
    payload = ndjson({"content": "Hello", "done": False}, {"done": True, "usage": {"inputTokens": 1}})
    env = _build(make_api_client(lambda request: stream_response([payload])))

    await env.orchestrator.send_message("conv-1", "Hi", "openai", CONFIG)

    assert _assistant(env).content == "Hello"
    assert env.orchestrator.error is None
    assert env.orchestrator.state is TurnState.COMPLETED


class GatedRepository(InMemoryMessageRepository):
    """Blocks the assistant save until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.saving = asyncio.Event()
        self.release = asyncio.Event()

    async def save_message(self, conversation_id: str, message: Message) -> None:
        if message.role == "assistant":
            self.saving.set()
            await self.release.wait()
        await super().save_message(conversation_id, message)


@pytest.mark.asyncio
async def test_abort_while_saving_reply_does_not_complete_turn() -> None:
    repository = GatedRepository()
    env = _build(FakeStreamClient(chunks=[_content("done")]), repository=repository)
    task = asyncio.create_task(env.orchestrator.send_message("conv-1", "Hi", "openai", CONFIG))
    await repository.saving.wait()

    env.orchestrator.abort_message()
    repository.release.set()
    await task

    assert env.orchestrator.state is TurnState.CANCELLED
    assert env.orchestrator.is_loading is False
    assert _events_of(env, TurnCompleted) == []
    assert len(_events_of(env, TurnCancelled)) == 1
