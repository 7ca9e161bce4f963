"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..ai.ai_types import ToolPermissionState
from ..ai.client import DEFAULT_API_PORT, ClientSettings

__all__ = [
    "Settings",
    "ProviderConfig",
    "ModelConfig",
    "SettingsStore",
    "SecretVault",
    "SettingsChatProvider",
    "client_settings_from",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".crowchat"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_API_KEY_FIELD = "api_key_ciphertext"
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "CROWCHAT_DEBUG_LOGGING": "debug_logging",
    "CROWCHAT_THINKING_ENABLED": "thinking_enabled",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "CROWCHAT_RETRY_BASE_DELAY": "retry_base_delay",
    "CROWCHAT_REQUEST_TIMEOUT": "request_timeout",
    "CROWCHAT_TEMPERATURE": "temperature",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "CROWCHAT_API_PORT": "api_port",
    "CROWCHAT_MAX_RETRIES": "max_retries",
    "CROWCHAT_MEMORY_INTERVAL": "memory_extraction_interval",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


@dataclass(slots=True)
class ProviderConfig:
    """A configured inference provider (OpenAI, Claude, ...)."""

    id: str
    type: str
    name: str = ""
    api_key: str = ""
    base_url: str | None = None
    api_format: str | None = None
    enabled: bool = True


@dataclass(slots=True)
class ModelConfig:
    """A model offered by a provider."""

    id: str
    provider_id: str
    model_id: str
    name: str = ""
    enabled: bool = True


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    api_port: int = DEFAULT_API_PORT
    max_retries: int = 3
    retry_base_delay: float = 1.0
    request_timeout: float = 60.0
    temperature: float = 1.0
    thinking_enabled: bool = False
    memory_extraction_interval: int = 5
    debug_logging: bool = False
    providers: list[ProviderConfig] = field(default_factory=list)
    models: list[ModelConfig] = field(default_factory=list)
    current_provider_id: str | None = None
    current_model_id: str | None = None
    tool_permissions: dict[str, bool] = field(default_factory=dict)

    def provider(self, provider_id: str | None) -> ProviderConfig | None:
        return next((p for p in self.providers if p.id == provider_id), None)

    def model(self, model_id: str | None) -> ModelConfig | None:
        return next((m for m in self.models if m.id == model_id), None)


class SecretVault:
    """Encrypts provider API keys with a Fernet key stored next to the settings file."""

    name = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._get_fernet().encrypt(secret.encode("utf-8")).decode("ascii")
        return f"{self.name}:{token}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, _, payload = token.partition(":")
        if prefix != self.name or not payload:
            LOGGER.warning("Unknown secret token prefix %s; returning ciphertext.", prefix)
            return token
        try:
            return self._get_fernet().decrypt(payload.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:  # pragma: no cover - indicates tampering
            raise ValueError("Invalid Fernet token") from exc

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            data = _filter_fields(payload)
            data["providers"] = [self._load_provider(item) for item in data.get("providers") or []]
            data["models"] = [_load_model(item) for item in data.get("models") or []]
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")
        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        body = json.dumps(self._serialize(settings), indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s (%d provider(s))", self._path, len(settings.providers))
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        providers = []
        for provider in data.get("providers", []):
            api_key = provider.pop("api_key", "") or ""
            if api_key:
                provider[_API_KEY_FIELD] = self._vault.encrypt(api_key)
            providers.append(provider)
        data["providers"] = providers
        data["version"] = _SETTINGS_VERSION
        return data

    def _load_provider(self, item: Mapping[str, Any]) -> ProviderConfig:
        data = dict(item)
        ciphertext = data.pop(_API_KEY_FIELD, None)
        plaintext = data.pop("api_key", None)
        api_key = plaintext or ""
        if ciphertext:
            try:
                api_key = self._vault.decrypt(ciphertext)
            except ValueError:
                LOGGER.warning("Unable to decrypt API key for provider %s", data.get("id"))
                api_key = ""
        allowed = {f.name for f in fields(ProviderConfig)}
        return ProviderConfig(**{k: v for k, v in data.items() if k in allowed}, api_key=api_key)

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            return json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}

    def _apply_overrides(self, settings: Settings, overrides: Mapping[str, Any], *, source: str = "runtime") -> Settings:
        allowed = {f.name for f in fields(Settings)}
        filtered = {key: value for key, value in overrides.items() if key in allowed and value is not None}
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {f.name for f in fields(Settings)}
    return {key: value for key, value in payload.items() if key in allowed}


def _load_model(item: Mapping[str, Any]) -> ModelConfig:
    allowed = {f.name for f in fields(ModelConfig)}
    return ModelConfig(**{k: v for k, v in item.items() if k in allowed})


def client_settings_from(settings: Settings) -> ClientSettings:
    """Derive HTTP client configuration from persisted settings."""

    return ClientSettings(
        port=settings.api_port,
        max_retries=settings.max_retries,
        retry_base_delay=settings.retry_base_delay,
        request_timeout=settings.request_timeout,
        debug_logging=settings.debug_logging,
    )


class SettingsChatProvider:
    """Exposes :class:`Settings` through the orchestrator's settings interface."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @property
    def settings(self) -> Settings:
        return self._settings

    def update(self, settings: Settings) -> None:
        self._settings = settings

    def get_current_provider(self) -> ProviderConfig | None:
        return self._settings.provider(self._settings.current_provider_id)

    def get_current_model(self) -> ModelConfig | None:
        return self._settings.model(self._settings.current_model_id)

    def get_tool_permissions(self, workspace_path: str | None) -> ToolPermissionState:
        key = workspace_path or ""
        return ToolPermissionState(allow_all=bool(self._settings.tool_permissions.get(key, False)))

    @property
    def temperature(self) -> float:
        return self._settings.temperature

    @property
    def thinking_enabled(self) -> bool:
        return self._settings.thinking_enabled


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
