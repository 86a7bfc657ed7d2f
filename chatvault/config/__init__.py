"""Configuration module for chatvault."""

from .settings import (
    Settings,
    ChatSettings,
    CredentialSettings,
    MirrorSettings,
    EncryptionSettings,
    get_app_data_dir,
    get_settings,
    load_settings,
    save_settings,
    update_settings,
)

__all__ = [
    "Settings",
    "ChatSettings",
    "CredentialSettings",
    "MirrorSettings",
    "EncryptionSettings",
    "get_app_data_dir",
    "get_settings",
    "load_settings",
    "save_settings",
    "update_settings",
]
