"""Composition root: builds the three stores from one settings object."""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional

from .config.settings import Settings, get_settings, save_settings
from .logging_config import configure_ops_log
from .storage import (
    ConversationStore,
    CredentialStore,
    CryptoEnvelope,
    FileMirrorStore,
    KeyValueStore,
    PBKDF2_ITERATIONS,
    PermissionProbe,
)

logger = logging.getLogger(__name__)

CHATS_NAMESPACE = "chats"
CREDENTIALS_NAMESPACE = "config"
MIRROR_NAMESPACE = "filememory"


class Vault:
    """Owns the conversation, mirror and credential stores for one data directory.

    Each store gets its own ``CryptoEnvelope`` namespace, so the stores share
    no key material. Encryption flags live in ``settings``; the vault writes
    the settings back whenever one of them changes.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        config_path: Optional[Path] = None,
        permission_probe: Optional[PermissionProbe] = None,
        kdf_iterations: int = PBKDF2_ITERATIONS,
    ):
        self.settings = settings or get_settings()
        self.config_path = config_path
        data_dir = self.settings.resolve_data_dir()
        self.data_dir = data_dir

        self.kv = KeyValueStore(data_dir / self.settings.kv_file)
        self.chats = ConversationStore(
            self.kv,
            CryptoEnvelope(self.kv, CHATS_NAMESPACE, kdf_iterations),
            self.settings.chats,
            data_dir / self.settings.chats.database_file,
        )
        self.credentials = CredentialStore(
            self.kv,
            CryptoEnvelope(self.kv, CREDENTIALS_NAMESPACE, kdf_iterations),
            self.settings.credentials,
            data_dir / self.settings.credentials.database_file,
        )
        self.mirror = FileMirrorStore(
            CryptoEnvelope(self.kv, MIRROR_NAMESPACE, kdf_iterations),
            self.settings.mirror,
            data_dir / self.settings.handles_file,
            probe=permission_probe,
        )
        self._ops_handler: Optional[RotatingFileHandler] = None

    async def open(self) -> "Vault":
        """Open every store and run the one-time credential migration."""
        if self.settings.ops_log and self._ops_handler is None:
            self._ops_handler = configure_ops_log(self.data_dir)
        await self.chats.open()
        await self.credentials.open()
        await self.mirror.init()
        if not self.credentials.needs_unlock:
            await self.credentials.migrate_from_legacy()
        return self

    async def close(self) -> None:
        await self.mirror.close()
        await self.chats.close()
        await self.credentials.close()
        if self._ops_handler is not None:
            logging.getLogger("chatvault").removeHandler(self._ops_handler)
            self._ops_handler.close()
            self._ops_handler = None

    @property
    def needs_unlock(self) -> bool:
        return self.chats.needs_unlock or self.credentials.needs_unlock or self.mirror.needs_unlock

    async def unlock(self, passphrase: str) -> Dict[str, bool]:
        """Try ``passphrase`` on every store that is locked.

        Returns:
            Per-store result; stores that were not locked report True
        """
        results = {"chats": True, "credentials": True, "mirror": True}
        if self.chats.needs_unlock:
            results["chats"] = await self.chats.unlock(passphrase)
        if self.credentials.needs_unlock:
            results["credentials"] = await self.credentials.unlock(passphrase)
            if results["credentials"]:
                await self.credentials.migrate_from_legacy()
        if self.mirror.needs_unlock:
            results["mirror"] = await self.mirror.unlock(passphrase)
        return results

    async def enable_encryption(self, passphrase: str) -> None:
        """Enable encryption on all three stores with the same passphrase."""
        await self.chats.enable_encryption(passphrase)
        await self.credentials.enable_encryption(passphrase)
        await self.mirror.enable_encryption(passphrase)
        self._save_settings()

    async def disable_chat_encryption(self) -> None:
        await self.chats.disable_encryption()
        self._save_settings()

    def _save_settings(self) -> None:
        try:
            save_settings(self.settings, self.config_path)
        except OSError as e:
            logger.error("Could not save settings: %s", e)
