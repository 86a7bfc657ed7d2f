"""Chat history persistence with optional per-record encryption."""

import json
import logging
import shutil
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..config.settings import ChatSettings
from ..errors import (
    AuthenticationError,
    BackendUnavailable,
    ChatVaultError,
    EncryptionNotInitialized,
    PartialWriteFailure,
    QuotaExceeded,
)
from .crypto import CryptoEnvelope
from .database import ObjectStore
from .models import ChatRecord
from .secure import KeyValueStore

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
COLLECTION = "chats"
FALLBACK_SLOT = "chats"
MIGRATED_FLAG = "chats-migrated"


class ConversationStore:
    """Persists chat records in SQLite, or in the key-value store when SQLite is unavailable.

    Metadata (title, timestamps, pin state) is always stored in cleartext so
    the chat list can be sorted without a key; when encryption is enabled
    only the message list of each record is sealed.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        crypto: CryptoEnvelope,
        settings: ChatSettings,
        db_path: Path,
    ):
        """Initialize the conversation store.

        Args:
            kv: Key-value store used as fallback backend and for the migration flag
            crypto: Envelope bound to this store's namespace
            settings: Chat settings; ``settings.encryption.enabled`` is the source of truth
            db_path: SQLite file for the transactional backend
        """
        self._kv = kv
        self.crypto = crypto
        self.settings = settings
        self.db_path = Path(db_path)
        self._db: Optional[ObjectStore] = None
        self._opened = False
        self._fallback = False
        self.last_warning: Optional[QuotaExceeded] = None

    # -------------------------------------------------------------------------
    # Backend lifecycle
    # -------------------------------------------------------------------------

    async def open(self) -> "ConversationStore":
        """Select the backend. Runs once; fallback mode is never retried."""
        if self._opened:
            return self
        self._opened = True
        try:
            self._db = await ObjectStore(self.db_path, {COLLECTION: "id"}, SCHEMA_VERSION).open()
        except BackendUnavailable as e:
            logger.warning("Transactional store unavailable, falling back to key-value store: %s", e)
            self._db = None
            self._fallback = True
        return self

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def fallback_mode(self) -> bool:
        return self._fallback

    # -------------------------------------------------------------------------
    # Encryption
    # -------------------------------------------------------------------------

    @property
    def is_encrypted(self) -> bool:
        return self.settings.encryption.enabled

    @property
    def needs_unlock(self) -> bool:
        return self.is_encrypted and not self.crypto.ready

    async def enable_encryption(self, passphrase: str) -> None:
        """Turn on encryption and re-save every record with sealed messages.

        Raises:
            AuthenticationError: If a probe already exists and the passphrase does not match it
        """
        if self.crypto.has_probe() and not await self.crypto.verify_password(passphrase):
            raise AuthenticationError("Passphrase does not match the existing verification probe")

        if self.is_encrypted:
            await self.crypto.initialize(passphrase)
            chats = await self.load_all()
        else:
            chats = await self.load_all()
            await self.crypto.initialize(passphrase)
        await self.crypto.create_verification_probe()

        self.settings.encryption.enabled = True
        try:
            await self.save_all(chats)
        except ChatVaultError:
            self.settings.encryption.enabled = False
            raise
        logger.info("Encryption enabled for %d chats", len(chats))

    async def unlock(self, passphrase: str) -> bool:
        """Derive the key if ``passphrase`` matches the stored probe."""
        if not self.crypto.is_configured():
            return False
        if not await self.crypto.verify_password(passphrase):
            return False
        await self.crypto.initialize(passphrase)
        return True

    async def disable_encryption(self) -> None:
        """Re-save every record in cleartext, then drop the key material."""
        if self.needs_unlock:
            raise EncryptionNotInitialized("Unlock before disabling encryption")

        chats = await self.load_all()
        self.settings.encryption.enabled = False
        try:
            await self.save_all(chats)
        except ChatVaultError:
            self.settings.encryption.enabled = True
            raise
        self.crypto.clear()

    async def _encode(self, record: ChatRecord) -> Dict[str, Any]:
        """Turn a record into its stored document, sealing messages if enabled."""
        doc = record.metadata_document()

        if record.decryption_failed and record.sealed_messages:
            doc["_encrypted"] = True
            doc["_messagesEncrypted"] = record.sealed_messages
            return doc

        if self.is_encrypted:
            if not self.crypto.ready:
                raise EncryptionNotInitialized("Chat storage is encrypted and locked")
            payload = json.dumps(record.messages_document(), ensure_ascii=False)
            doc["_encrypted"] = True
            doc["_messagesEncrypted"] = await self.crypto.encrypt(payload)
        else:
            doc["messages"] = record.messages_document()
        return doc

    async def _decode(self, doc: Dict[str, Any]) -> Optional[ChatRecord]:
        """Turn a stored document back into a record.

        A record that cannot be decrypted comes back with no messages and
        ``decryption_failed`` set instead of failing the whole load.
        """
        try:
            envelope = doc.get("_messagesEncrypted")
            if not (doc.get("_encrypted") and envelope):
                return ChatRecord.model_validate(doc)

            metadata = {k: v for k, v in doc.items()
                        if k not in ("_messagesEncrypted", "messages", "_encrypted", "_decryptionFailed")}
            if not self.crypto.ready:
                return ChatRecord.undecryptable(metadata, envelope)
            try:
                messages = json.loads(await self.crypto.decrypt(envelope))
            except (AuthenticationError, ValueError) as e:
                logger.error("Failed to decrypt chat %s: %s", doc.get("id"), e)
                return ChatRecord.undecryptable(metadata, envelope)
            return ChatRecord.model_validate({**metadata, "messages": messages, "_encrypted": True})
        except ValidationError as e:
            logger.error("Skipping malformed chat record %s: %s", doc.get("id"), e)
            return None

    async def _decode_all(self, docs: List[Dict[str, Any]]) -> Dict[str, ChatRecord]:
        chats: Dict[str, ChatRecord] = {}
        for doc in docs:
            if not isinstance(doc, dict):
                continue
            record = await self._decode(doc)
            if record is not None:
                chats[record.id] = record
        return chats

    # -------------------------------------------------------------------------
    # Migration
    # -------------------------------------------------------------------------

    def _read_fallback(self) -> Dict[str, Any]:
        data = self._kv.get_json(FALLBACK_SLOT, {})
        return data if isinstance(data, dict) else {}

    async def _migrate_legacy(self) -> List[Dict[str, Any]]:
        """Copy legacy key-value data into the empty transactional store, once."""
        if self._kv.get_item(MIGRATED_FLAG) == "true":
            return []

        legacy = self._read_fallback()
        if not legacy:
            self._kv.set_item(MIGRATED_FLAG, "true")
            return []

        docs = [{**doc, "id": doc.get("id", chat_id)} for chat_id, doc in legacy.items() if isinstance(doc, dict)]
        if self.needs_unlock and any(not doc.get("_encrypted") for doc in docs):
            # Cleartext records wait for the key; served as-is until then
            logger.info("Deferring chat migration until storage is unlocked")
            return docs

        if self.is_encrypted:
            sealed = []
            for doc in docs:
                if not doc.get("_encrypted"):
                    record = await self._decode(doc)
                    if record is None:
                        continue
                    doc = await self._encode(record)
                sealed.append(doc)
            docs = sealed

        await self._db.replace_all(COLLECTION, docs)
        self._kv.remove_item(FALLBACK_SLOT)
        self._kv.set_item(MIGRATED_FLAG, "true")
        logger.info("Migrated %d chats from key-value store to transactional store", len(docs))
        return docs

    # -------------------------------------------------------------------------
    # Read / write
    # -------------------------------------------------------------------------

    async def load_all(self) -> Dict[str, ChatRecord]:
        """Load every chat record, decrypting message lists where possible."""
        await self.open()

        if self._fallback:
            return await self._decode_all(list(self._read_fallback().values()))

        try:
            docs = await self._db.get_all(COLLECTION)
            if not docs:
                docs = await self._migrate_legacy()
        except sqlite3.Error as e:
            logger.error("Failed to load chats from transactional store: %s", e)
            return {}
        return await self._decode_all(docs)

    async def save_all(self, chats: Dict[str, ChatRecord]) -> None:
        """Replace the whole collection with ``chats``.

        Raises:
            PartialWriteFailure: If the rewrite was interrupted
        """
        await self.open()
        docs = [await self._encode(chat) for chat in chats.values()]

        if self._fallback:
            try:
                self._kv.set_json(FALLBACK_SLOT, {doc["id"]: doc for doc in docs})
            except OSError as e:
                raise PartialWriteFailure(f"Failed to save chats: {e}") from e
            return

        try:
            await self._db.replace_all(COLLECTION, docs)
        except sqlite3.Error as e:
            raise PartialWriteFailure(f"Failed to save chats: {e}") from e

    async def save_one(self, record: ChatRecord) -> None:
        """Insert or replace a single chat record.

        Raises:
            PartialWriteFailure: If the write failed; ``warning`` carries a
                QuotaExceeded when storage is nearly full
        """
        await self.open()
        doc = await self._encode(record)

        try:
            if self._fallback:
                all_docs = self._read_fallback()
                all_docs[record.id] = doc
                self._kv.set_json(FALLBACK_SLOT, all_docs)
            else:
                await self._db.put(COLLECTION, doc)
        except (OSError, sqlite3.Error) as e:
            logger.error("Failed to save chat %s: %s", record.id, e)
            warning = self.check_storage_quota()
            raise PartialWriteFailure(f"Failed to save chat {record.id}: {e}", warning) from e

    async def delete_one(self, chat_id: str) -> bool:
        """Delete one chat record.

        Returns:
            False if the record did not exist or could not be deleted
        """
        await self.open()
        try:
            if self._fallback:
                all_docs = self._read_fallback()
                if chat_id not in all_docs:
                    return False
                del all_docs[chat_id]
                self._kv.set_json(FALLBACK_SLOT, all_docs)
                return True
            return await self._db.delete(COLLECTION, chat_id)
        except (OSError, sqlite3.Error) as e:
            logger.error("Failed to delete chat %s: %s", chat_id, e)
            return False

    def check_storage_quota(self) -> Optional[QuotaExceeded]:
        """Return a QuotaExceeded warning if the data volume is nearly full."""
        try:
            usage = shutil.disk_usage(self.db_path.parent)
        except OSError as e:
            logger.debug("Storage quota check failed: %s", e)
            return None

        if usage.total and usage.used / usage.total > self.settings.quota_warning_ratio:
            warning = QuotaExceeded(usage.used, usage.total)
            logger.warning("%s. Consider deleting old chats.", warning)
            self.last_warning = warning
            return warning
        return None
