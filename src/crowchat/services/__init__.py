"""Service layer helpers (settings persistence)."""

from .settings import Settings, SettingsChatProvider, SettingsStore

__all__ = ["Settings", "SettingsChatProvider", "SettingsStore"]
