"""Credential storage for the gateway auth token and connection settings.

Every sensitive value is sealed on its own, so cleartext settings such as
the gateway address stay readable while the store is locked. Tokens are
never kept in the history, only a salted SHA-256 of each one.
"""

import hashlib
import json
import logging
import sqlite3
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config.settings import CredentialSettings
from ..errors import AuthenticationError, BackendUnavailable
from .crypto import CryptoEnvelope
from .database import ObjectStore
from .models import now_ms
from .secure import KeyValueStore

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
COLLECTION = "config"

TOKEN_KEY = "authToken"
GATEWAY_KEY = "gatewayUrl"
SESSION_KEY = "sessionKey"
TOKEN_CREATED_KEY = "tokenCreatedAt"
TOKEN_HISTORY_KEY = "tokenHistory"

TOKEN_HASH_SUFFIX = "-chatvault-token-hash"
TOKEN_HISTORY_LIMIT = 10

ROTATION_WARNING_DAYS = 60
ROTATION_RECOMMENDED_DAYS = 90
MS_PER_DAY = 24 * 60 * 60 * 1000

SETUP_COMPLETE_FLAG = "credentials-setup-complete"
LEGACY_SETTINGS_SLOT = "settings"


class RotationStatus(str, Enum):
    UNKNOWN = "unknown"
    OK = "ok"
    WARNING = "warning"
    ROTATE = "rotate"


def hash_token(token: str) -> str:
    """Salted hash recorded in the token history."""
    return hashlib.sha256((token + TOKEN_HASH_SUFFIX).encode("utf-8")).hexdigest()


class CredentialStore:
    """Key/value credential store on SQLite with per-value encryption."""

    def __init__(
        self,
        kv: KeyValueStore,
        crypto: CryptoEnvelope,
        settings: CredentialSettings,
        db_path: Path,
    ):
        """Initialize the credential store.

        Args:
            kv: Key-value store holding the setup flag and the legacy settings blob
            crypto: Envelope bound to this store's namespace
            settings: Credential settings; ``settings.encryption.enabled`` is the source of truth
            db_path: SQLite file for credential rows
        """
        self._kv = kv
        self.crypto = crypto
        self.settings = settings
        self._db = ObjectStore(db_path, {COLLECTION: "key"}, SCHEMA_VERSION)
        self._opened = False
        self._available = False

    async def open(self) -> "CredentialStore":
        if self._opened:
            return self
        self._opened = True
        try:
            await self._db.open()
            self._available = True
        except BackendUnavailable as e:
            logger.error("Credential store unavailable: %s", e)
        return self

    async def close(self) -> None:
        await self._db.close()

    @property
    def available(self) -> bool:
        return self._available

    # -------------------------------------------------------------------------
    # Encryption
    # -------------------------------------------------------------------------

    @property
    def is_encrypted(self) -> bool:
        return self.settings.encryption.enabled

    @property
    def needs_unlock(self) -> bool:
        return self.is_encrypted and not self.crypto.ready

    async def enable_encryption(self, passphrase: str) -> int:
        """Turn on encryption and seal sensitive values stored in cleartext.

        Returns:
            Number of values sealed
        """
        if self.crypto.has_probe() and not await self.crypto.verify_password(passphrase):
            raise AuthenticationError("Passphrase does not match the existing verification probe")
        await self.crypto.initialize(passphrase)
        await self.crypto.create_verification_probe()
        self.settings.encryption.enabled = True

        await self.open()
        if not self._available:
            return 0
        sealed = 0
        for row in await self._db.get_all(COLLECTION):
            if row.get("sensitive") and not row.get("encrypted"):
                await self.set(row["key"], row["value"], sensitive=True)
                sealed += 1
        return sealed

    async def unlock(self, passphrase: str) -> bool:
        if not self.is_encrypted:
            return True
        if not await self.crypto.verify_password(passphrase):
            return False
        await self.crypto.initialize(passphrase)
        return True

    # -------------------------------------------------------------------------
    # Generic values
    # -------------------------------------------------------------------------

    async def set(self, key: str, value: Any, sensitive: bool = True) -> bool:
        """Store a value; sensitive values are sealed when encryption is on.

        Returns:
            False if the value could not be stored
        """
        await self.open()
        if not self._available:
            return False
        if sensitive and self.needs_unlock:
            logger.warning("Refusing to store %s in cleartext while encrypted storage is locked", key)
            return False

        encrypt = sensitive and self.crypto.ready and self.is_encrypted
        stored = await self.crypto.encrypt(json.dumps(value)) if encrypt else value
        now = now_ms()
        try:
            existing = await self._db.get(COLLECTION, key)
            await self._db.put(COLLECTION, {
                "key": key,
                "value": stored,
                "encrypted": encrypt,
                "sensitive": sensitive,
                "createdAt": existing.get("createdAt", now) if existing else now,
                "updatedAt": now,
            })
        except sqlite3.Error as e:
            logger.error("Failed to store %s: %s", key, e)
            return False
        return True

    async def get(self, key: str) -> Any:
        """Return a stored value, or None if missing, locked or undecryptable."""
        await self.open()
        if not self._available:
            return None
        try:
            row = await self._db.get(COLLECTION, key)
        except sqlite3.Error as e:
            logger.error("Failed to read %s: %s", key, e)
            return None
        if not row:
            return None

        if not row.get("encrypted"):
            return row.get("value")
        if not self.crypto.ready:
            return None
        try:
            return json.loads(await self.crypto.decrypt(row["value"]))
        except (AuthenticationError, ValueError) as e:
            logger.error("Failed to decrypt %s: %s", key, e)
            return None

    async def delete(self, key: str) -> bool:
        await self.open()
        if not self._available:
            return False
        try:
            return await self._db.delete(COLLECTION, key)
        except sqlite3.Error as e:
            logger.error("Failed to delete %s: %s", key, e)
            return False

    async def clear(self) -> bool:
        """Remove every credential and the encryption material (logout/reset).

        Returns:
            False if the rows could not be removed; key material is then kept
            so the remaining rows stay readable
        """
        await self.open()
        if self._available:
            try:
                await self._db.clear(COLLECTION)
            except sqlite3.Error as e:
                logger.error("Failed to clear credentials: %s", e)
                return False
        self._kv.remove_item(SETUP_COMPLETE_FLAG)
        self.crypto.clear()
        self.settings.encryption.enabled = False
        return True

    # -------------------------------------------------------------------------
    # Token
    # -------------------------------------------------------------------------

    async def store_token(
        self,
        token: str,
        gateway_url: Optional[str] = None,
        session_key: Optional[str] = None,
    ) -> bool:
        """Store the auth token with its connection settings and record its hash."""
        if not await self.set(TOKEN_KEY, token):
            return False
        await self.set(GATEWAY_KEY, gateway_url or self.settings.default_gateway_url, sensitive=False)
        await self.set(SESSION_KEY, session_key or self.settings.default_session_key, sensitive=False)
        await self.set(TOKEN_CREATED_KEY, now_ms(), sensitive=False)

        await self._add_to_token_history(token)
        self._kv.set_item(SETUP_COMPLETE_FLAG, "true")
        return True

    async def get_token(self) -> Optional[str]:
        return await self.get(TOKEN_KEY)

    async def get_gateway_url(self) -> str:
        return (await self.get(GATEWAY_KEY)) or self.settings.default_gateway_url

    async def get_session_key(self) -> str:
        return (await self.get(SESSION_KEY)) or self.settings.default_session_key

    async def needs_setup(self) -> bool:
        return not await self.get_token()

    def is_setup_complete(self) -> bool:
        return self._kv.get_item(SETUP_COMPLETE_FLAG) == "true"

    async def get_token_history(self) -> List[Dict[str, Any]]:
        data = await self.get(TOKEN_HISTORY_KEY)
        if not data:
            return []
        try:
            history = json.loads(data)
        except ValueError:
            return []
        return history if isinstance(history, list) else []

    async def _add_to_token_history(self, token: str) -> None:
        token_hash = hash_token(token)
        history = await self.get_token_history()

        if any(h.get("hash") == token_hash for h in history):
            logger.warning("Token reuse detected")

        history.append({"hash": token_hash, "createdAt": now_ms()})
        await self.set(TOKEN_HISTORY_KEY, json.dumps(history[-TOKEN_HISTORY_LIMIT:]), sensitive=False)

    async def is_token_reused(self, token: str) -> bool:
        """True if ``token`` matches the current entry and at least one earlier one."""
        token_hash = hash_token(token)
        history = await self.get_token_history()
        return sum(1 for h in history if h.get("hash") == token_hash) > 1

    async def token_age_days(self) -> Optional[int]:
        created_at = await self.get(TOKEN_CREATED_KEY)
        if not created_at:
            return None
        return int((now_ms() - int(created_at)) // MS_PER_DAY)

    async def should_rotate(self) -> bool:
        age = await self.token_age_days()
        return age is not None and age >= ROTATION_RECOMMENDED_DAYS

    async def rotation_status(self) -> RotationStatus:
        """Rotation tier for display; only ``ROTATE`` means rotation is recommended."""
        age = await self.token_age_days()
        if age is None:
            return RotationStatus.UNKNOWN
        if age >= ROTATION_RECOMMENDED_DAYS:
            return RotationStatus.ROTATE
        if age >= ROTATION_WARNING_DAYS:
            return RotationStatus.WARNING
        return RotationStatus.OK

    # -------------------------------------------------------------------------
    # Legacy migration
    # -------------------------------------------------------------------------

    async def migrate_from_legacy(self, legacy_slot: str = LEGACY_SETTINGS_SLOT) -> bool:
        """Import the token from a plaintext settings blob, then strip it from the blob.

        The other fields of the blob are preserved. The token is only
        imported if no token is stored yet.

        Returns:
            True if a token was imported
        """
        legacy = self._kv.get_json(legacy_slot, {})
        if not isinstance(legacy, dict) or not legacy.get(TOKEN_KEY):
            return False

        imported = False
        if await self.get_token():
            logger.info("Credential store already holds a token, discarding legacy copy")
        else:
            imported = await self.store_token(
                legacy[TOKEN_KEY],
                legacy.get(GATEWAY_KEY),
                legacy.get(SESSION_KEY),
            )
            if not imported:
                return False
            logger.info("Migrated token from legacy settings")

        del legacy[TOKEN_KEY]
        self._kv.set_json(legacy_slot, legacy)
        return imported
