"""Passphrase-based envelope encryption shared by every store.

Each store owns one ``CryptoEnvelope`` bound to its own namespace, so salts
and verification probes never overlap between stores. Keys come from
PBKDF2-HMAC-SHA256 over the passphrase and a per-namespace salt; payloads
are sealed with AES-256-GCM and rendered as ``base64(nonce || ciphertext)``.
"""

import asyncio
import base64
import binascii
import logging
import os
import time
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..errors import AuthenticationError, EncryptionNotInitialized
from .secure import KeyValueStore

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100_000
SALT_LENGTH = 16
NONCE_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"), validate=True)


def derive_key(passphrase: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """Derive a 256-bit key from a passphrase (deliberately slow)."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def seal(key: bytes, plaintext: str) -> str:
    """Encrypt under ``key`` with a fresh nonce and return the envelope string."""
    nonce = os.urandom(NONCE_LENGTH)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return _b64encode(nonce + ciphertext)


def open_envelope(key: bytes, envelope: str) -> str:
    """Decrypt an envelope, raising AuthenticationError on any failure."""
    try:
        combined = _b64decode(envelope.strip())
    except (binascii.Error, ValueError, UnicodeEncodeError) as e:
        raise AuthenticationError("Envelope is not valid base64") from e
    if len(combined) < NONCE_LENGTH + TAG_LENGTH:
        raise AuthenticationError("Envelope is truncated")

    nonce, ciphertext = combined[:NONCE_LENGTH], combined[NONCE_LENGTH:]
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise AuthenticationError("Envelope failed authentication") from e
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise AuthenticationError("Envelope payload is not UTF-8") from e


class CryptoEnvelope:
    """Key derivation, envelope encryption and password verification for one store.

    Args:
        kv: Key-value store holding the salt and verification probe
        namespace: Store-scoped prefix, e.g. ``"chats"`` or ``"config"``
        iterations: PBKDF2 iteration count; fixed per deployment so one probe
            validates a password for every record of the store
    """

    def __init__(self, kv: KeyValueStore, namespace: str, iterations: int = PBKDF2_ITERATIONS):
        self._kv = kv
        self.namespace = namespace
        self.iterations = iterations
        self._key: Optional[bytes] = None

    @property
    def salt_key(self) -> str:
        return f"{self.namespace}-salt"

    @property
    def probe_key(self) -> str:
        return f"{self.namespace}-verify"

    @property
    def ready(self) -> bool:
        """True once a key has been derived."""
        return self._key is not None

    def is_configured(self) -> bool:
        """True if a salt has been persisted for this namespace."""
        return self._kv.has_item(self.salt_key)

    def has_probe(self) -> bool:
        return self._kv.has_item(self.probe_key)

    def _load_or_create_salt(self) -> bytes:
        stored = self._kv.get_item(self.salt_key)
        if stored:
            return _b64decode(stored)
        salt = os.urandom(SALT_LENGTH)
        self._kv.set_item(self.salt_key, _b64encode(salt))
        return salt

    async def initialize(self, passphrase: str) -> "CryptoEnvelope":
        """Load or create the salt and derive the key for ``passphrase``."""
        salt = self._load_or_create_salt()
        self._key = await asyncio.to_thread(derive_key, passphrase, salt, self.iterations)
        return self

    def _require_key(self) -> bytes:
        if self._key is None:
            raise EncryptionNotInitialized(f"Encryption for {self.namespace!r} is not initialized")
        return self._key

    async def encrypt(self, plaintext: str) -> str:
        """Encrypt a string and return the envelope."""
        return seal(self._require_key(), plaintext)

    async def decrypt(self, envelope: str) -> str:
        """Decrypt an envelope.

        Raises:
            AuthenticationError: tampered, truncated, or produced under another key
        """
        return open_envelope(self._require_key(), envelope)

    async def verify_password(self, candidate: str) -> bool:
        """Check ``candidate`` against the stored probe without touching state."""
        probe = self._kv.get_item(self.probe_key)
        if not probe:
            # No verification data, assume correct
            return True
        stored_salt = self._kv.get_item(self.salt_key)
        if not stored_salt:
            return False
        try:
            salt = _b64decode(stored_salt)
        except (binascii.Error, ValueError):
            logger.warning("Salt for %r is corrupt", self.namespace)
            return False

        temp_key = await asyncio.to_thread(derive_key, candidate, salt, self.iterations)
        try:
            open_envelope(temp_key, probe)
        except AuthenticationError:
            return False
        return True

    async def create_verification_probe(self) -> bool:
        """Persist the verification probe; never overwrites an existing one.

        Returns:
            True if a probe was written
        """
        if self.has_probe():
            return False
        sentinel = f"{self.namespace}-verify-{int(time.time() * 1000)}"
        self._kv.set_item(self.probe_key, await self.encrypt(sentinel))
        return True

    def lock(self) -> None:
        """Forget the derived key; persisted material stays."""
        self._key = None

    def clear(self) -> None:
        """Remove the salt and probe for this namespace and forget the key."""
        self._kv.remove_item(self.salt_key)
        self._kv.remove_item(self.probe_key)
        self._key = None
