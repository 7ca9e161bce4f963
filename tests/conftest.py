"""Shared pytest fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from crowchat.services.settings import ModelConfig, ProviderConfig, SecretVault, Settings, SettingsStore
from tests.helpers import FakeSleep


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def configured_settings() -> Settings:
    return Settings(
        providers=[
            ProviderConfig(
                id="p1",
                type="openai",
                name="OpenAI",
                api_key="key",
                api_format="chat-completions",
            )
        ],
        models=[ModelConfig(id="m1", provider_id="p1", model_id="gpt-4", name="GPT-4")],
        current_provider_id="p1",
        current_model_id="m1",
    )


@pytest.fixture
def settings_store(tmp_path: Path) -> SettingsStore:
    return SettingsStore(tmp_path / "settings.json", vault=SecretVault(key_path=tmp_path / "settings.key"))


@pytest.fixture(autouse=True)
def _clear_crowchat_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "CROWCHAT_API_PORT",
        "CROWCHAT_MAX_RETRIES",
        "CROWCHAT_RETRY_BASE_DELAY",
        "CROWCHAT_REQUEST_TIMEOUT",
        "CROWCHAT_TEMPERATURE",
        "CROWCHAT_DEBUG_LOGGING",
        "CROWCHAT_THINKING_ENABLED",
        "CROWCHAT_MEMORY_INTERVAL",
    ):
        monkeypatch.delenv(name, raising=False)
