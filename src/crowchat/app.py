"""Application bootstrap helpers and the ``crowchat`` command line entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_type_hints

from .ai.client import APIClient
from .chat.conversation_state import (
    ConversationState,
    InMemoryMessageRepository,
    MessageRepository,
    StaticWorkspace,
)
from .chat.events import EventBus
from .chat.orchestrator import TurnOrchestrator, resolve_provider_config
from .memory.extractor import MemoryExtractor, MemorySink
from .memory.sink import JsonlMemorySink
from .services.settings import (
    Settings,
    SettingsChatProvider,
    SettingsStore,
    client_settings_from,
    redact_secret,
)
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}


@dataclass(slots=True)
class ChatRuntime:
    """Wired-up services returned by :func:`build_runtime`."""

    settings: Settings
    client: APIClient
    bus: EventBus
    conversations: ConversationState
    repository: MessageRepository
    orchestrator: TurnOrchestrator
    extractor: MemoryExtractor

    async def aclose(self) -> None:
        await self.extractor.aclose()
        await self.client.aclose()


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


def build_runtime(
    settings: Settings,
    *,
    client: APIClient | None = None,
    repository: MessageRepository | None = None,
    memory_sink: MemorySink | None = None,
    workspace_path: str | None = None,
) -> ChatRuntime:
    """Construct the client, conversation state, orchestrator and memory extractor."""

    bus = EventBus()
    api_client = client or APIClient(client_settings_from(settings))
    conversations = ConversationState(bus=bus)
    active_repository = repository or InMemoryMessageRepository()
    chat_settings = SettingsChatProvider(settings)
    orchestrator = TurnOrchestrator(
        api_client,
        conversations,
        active_repository,
        chat_settings,
        workspace=StaticWorkspace(workspace_path),
        bus=bus,
    )
    extractor = MemoryExtractor(
        api_client,
        conversations,
        chat_settings,
        memory_sink,
        interval=settings.memory_extraction_interval,
    )
    extractor.attach(bus)
    return ChatRuntime(
        settings=settings,
        client=api_client,
        bus=bus,
        conversations=conversations,
        repository=active_repository,
        orchestrator=orchestrator,
        extractor=extractor,
    )


async def run_prompt(runtime: ChatRuntime, text: str, *, stream: TextIO | None = None) -> int:
    """Send one message in a fresh conversation and print the reply; returns an exit code."""

    destination = stream or sys.stdout
    provider, config = resolve_provider_config(SettingsChatProvider(runtime.settings))
    conversation = runtime.conversations.create_conversation()
    reply = await runtime.orchestrator.send_message(conversation.id, text, provider, config)
    await runtime.extractor.wait_idle()
    if runtime.orchestrator.error is not None:
        print(f"Error: {runtime.orchestrator.error}", file=sys.stderr)
        return 1
    if reply is not None:
        destination.write(reply.content.rstrip("\n") + "\n")
    return 0


async def check_health(runtime: ChatRuntime, *, stream: TextIO | None = None) -> int:
    destination = stream or sys.stdout
    healthy = await runtime.client.health_check()
    destination.write(f"{runtime.client.settings.health_url}: {'ok' if healthy else 'unreachable'}\n")
    return 0 if healthy else 1


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the ``crowchat`` console script."""

    args = _parse_cli_args(argv)
    debug = _env_flag("CROWCHAT_DEBUG", default=False)
    configure_logging(debug, force=True)

    settings_path = args.settings_path or os.environ.get("CROWCHAT_SETTINGS_PATH")
    store = SettingsStore(Path(settings_path).expanduser() if settings_path else None)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2
    settings = load_settings(store=store, overrides=cli_overrides or None)

    if args.dump_settings:
        _dump_settings(settings, store, overrides=cli_overrides)
        return 0
    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    return asyncio.run(_run(settings, args))


async def _run(settings: Settings, args: argparse.Namespace) -> int:
    runtime = build_runtime(
        settings,
        memory_sink=JsonlMemorySink(),
        workspace_path=args.workspace,
    )
    try:
        if args.health:
            return await check_health(runtime)
        if not args.prompt:
            print("Nothing to do: pass a prompt or --health.", file=sys.stderr)
            return 2
        return await run_prompt(runtime, " ".join(args.prompt))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        runtime.orchestrator.abort_message()
        return 130
    finally:
        await runtime.aclose()


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="crowchat",
        description="Talk to the local CrowChat API server or inspect its configuration.",
    )
    parser.add_argument("prompt", nargs="*", help="Message to send in a new conversation.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument("--health", action="store_true", help="Probe the API server health endpoint.")
    parser.add_argument("--workspace", metavar="PATH", help="Workspace path announced to the assistant.")
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.crowchat/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = (part.strip() for part in entry.split("=", 1))
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in type_hints:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(type_hints[key], raw_value)
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    if raw_value.lower() in {"none", "null"} and annotation not in (bool, int, float):
        return None
    if annotation is bool:
        lowered = raw_value.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ValueError(f"Cannot coerce '{raw_value}' to a boolean.")
    if annotation is int:
        return int(raw_value, 10)
    if annotation is float:
        return float(raw_value)
    if annotation in (str, Optional[str]):
        return raw_value
    raise ValueError(f"Setting type {annotation!r} cannot be overridden from the command line.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    for provider in payload.get("providers", []):
        provider["api_key"] = redact_secret(provider.get("api_key") or "")
    metadata = {
        "path": str(store.path),
        "cli_overrides": sorted(overrides),
        "environment_variables": sorted(name for name in os.environ if name.startswith("CROWCHAT_")),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
