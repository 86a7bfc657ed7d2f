"""Storage settings with YAML configuration support."""

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

APP_NAME = "chatvault"


def get_app_data_dir() -> Path:
    """Get the application data directory."""
    override = os.getenv("CHATVAULT_DATA_DIR")
    if override:
        path = Path(override)
    else:
        if os.name == "nt":
            base = os.getenv("APPDATA", os.path.expanduser("~"))
        else:
            base = os.getenv("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
        path = Path(base) / APP_NAME
    path.mkdir(parents=True, exist_ok=True)
    return path


class EncryptionSettings(BaseModel):
    """At-rest encryption state for one store."""

    enabled: bool = Field(default=False, description="Encrypt this store's sensitive data")


class MirrorSettings(BaseModel):
    """File mirror settings."""

    enabled: bool = Field(default=True, description="Mirror messages into the granted directory")
    flush_delay: float = Field(default=1.0, gt=0.0, le=60.0, description="Debounce delay in seconds")
    encryption: EncryptionSettings = Field(default_factory=EncryptionSettings)


class ChatSettings(BaseModel):
    """Conversation store settings."""

    database_file: str = Field(default="chats.db", description="SQLite file for chat records")
    quota_warning_ratio: float = Field(default=0.9, gt=0.0, le=1.0, description="Usage ratio that triggers a storage warning")
    encryption: EncryptionSettings = Field(default_factory=EncryptionSettings)


class CredentialSettings(BaseModel):
    """Credential store settings."""

    database_file: str = Field(default="secure.db", description="SQLite file for credentials")
    default_gateway_url: str = Field(default="ws://127.0.0.1:18789", description="Gateway used when none is stored")
    default_session_key: str = Field(default="main", description="Session label used when none is stored")
    encryption: EncryptionSettings = Field(default_factory=EncryptionSettings)


class Settings(BaseModel):
    """Main storage settings."""

    data_dir: Optional[str] = Field(default=None, description="Data directory (defaults to the app data dir)")
    kv_file: str = Field(default="local.json", description="Key-value fallback file")
    handles_file: str = Field(default="handles.db", description="SQLite file for persisted directory handles")
    ops_log: bool = Field(default=False, description="Write an operations log into the data directory")

    chats: ChatSettings = Field(default_factory=ChatSettings)
    credentials: CredentialSettings = Field(default_factory=CredentialSettings)
    mirror: MirrorSettings = Field(default_factory=MirrorSettings)

    model_config = {"extra": "ignore"}

    def resolve_data_dir(self) -> Path:
        """Return the data directory, creating it if needed."""
        if self.data_dir:
            path = Path(self.data_dir).expanduser()
            path.mkdir(parents=True, exist_ok=True)
            return path
        return get_app_data_dir()


# Global settings instance
_settings: Optional[Settings] = None


def get_config_path() -> Path:
    """Get the configuration file path."""
    # Check local config first, then app data
    local_config = Path("chatvault.yaml")
    if local_config.exists():
        return local_config
    return get_app_data_dir() / "config.yaml"


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """Load settings from YAML config file."""
    global _settings

    if config_path is None:
        config_path = get_config_path()

    if config_path.exists():
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            _settings = Settings(**data)
        except Exception as e:
            logger.warning("Could not load config from %s: %s", config_path, e)
            _settings = Settings()
    else:
        _settings = Settings()

    if os.getenv("CHATVAULT_DATA_DIR"):
        _settings.data_dir = os.getenv("CHATVAULT_DATA_DIR")

    return _settings


def save_settings(settings: Settings, config_path: Optional[Path] = None) -> None:
    """Save settings to YAML config file."""
    if config_path is None:
        config_path = get_config_path()

    data = settings.model_dump()

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w", encoding="utf-8") as f:
        yaml.dump(data, f, default_flow_style=False, allow_unicode=True, sort_keys=False)


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def update_settings(config_path: Optional[Path] = None, **kwargs) -> Settings:
    """Update settings with new values."""
    settings = get_settings()

    # Handle nested updates
    for key, value in kwargs.items():
        if hasattr(settings, key):
            if isinstance(value, dict) and hasattr(getattr(settings, key), "model_dump"):
                # Nested model - merge
                current = getattr(settings, key).model_dump()
                current.update(value)
                setattr(settings, key, type(getattr(settings, key))(**current))
            else:
                setattr(settings, key, value)

    save_settings(settings, config_path)
    return settings
