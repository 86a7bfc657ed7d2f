"""Tests for CredentialStore: sealed tokens, history, rotation and legacy migration."""

import sqlite3

import pytest

from chatvault.config.settings import CredentialSettings
from chatvault.storage import CredentialStore, CryptoEnvelope, RotationStatus
from chatvault.storage.credentials import (
    COLLECTION,
    LEGACY_SETTINGS_SLOT,
    MS_PER_DAY,
    TOKEN_CREATED_KEY,
    TOKEN_HISTORY_LIMIT,
    TOKEN_KEY,
    hash_token,
)
from chatvault.storage.database import ObjectStore
from chatvault.storage.models import now_ms

from conftest import TEST_ITERATIONS


def _store(tmp_path, kv, settings):
    return CredentialStore(
        kv,
        CryptoEnvelope(kv, "config", iterations=TEST_ITERATIONS),
        settings,
        tmp_path / "secure.db",
    )


@pytest.mark.asyncio
async def test_store_and_read_token(credential_store):
    assert await credential_store.needs_setup()
    assert await credential_store.store_token("tok-1", "ws://gateway:1234", "work")

    assert await credential_store.get_token() == "tok-1"
    assert await credential_store.get_gateway_url() == "ws://gateway:1234"
    assert await credential_store.get_session_key() == "work"
    assert credential_store.is_setup_complete()
    assert not await credential_store.needs_setup()


@pytest.mark.asyncio
async def test_defaults_for_connection_settings(credential_store):
    assert await credential_store.get_gateway_url() == "ws://127.0.0.1:18789"
    assert await credential_store.get_session_key() == "main"

    await credential_store.store_token("tok")
    assert await credential_store.get_gateway_url() == "ws://127.0.0.1:18789"


@pytest.mark.asyncio
async def test_sensitive_values_are_sealed(credential_store):
    await credential_store.enable_encryption("pw")
    await credential_store.store_token("super-secret", "ws://gw")

    token_row = await credential_store._db.get(COLLECTION, TOKEN_KEY)
    assert token_row["encrypted"] is True
    assert token_row["sensitive"] is True
    assert "super-secret" not in token_row["value"]

    gateway_row = await credential_store._db.get(COLLECTION, "gatewayUrl")
    assert gateway_row["encrypted"] is False
    assert gateway_row["value"] == "ws://gw"

    assert await credential_store.get_token() == "super-secret"


@pytest.mark.asyncio
async def test_enable_encryption_seals_existing_values(credential_store):
    await credential_store.store_token("plain-token")
    assert (await credential_store._db.get(COLLECTION, TOKEN_KEY))["encrypted"] is False

    assert await credential_store.enable_encryption("pw") == 1
    row = await credential_store._db.get(COLLECTION, TOKEN_KEY)
    assert row["encrypted"] is True
    assert await credential_store.get_token() == "plain-token"


@pytest.mark.asyncio
async def test_created_at_survives_updates(credential_store):
    await credential_store.set("note", "first", sensitive=False)
    created = (await credential_store._db.get(COLLECTION, "note"))["createdAt"]
    await credential_store.set("note", "second", sensitive=False)

    row = await credential_store._db.get(COLLECTION, "note")
    assert row["createdAt"] == created
    assert row["value"] == "second"


@pytest.mark.asyncio
async def test_locked_store_refuses_sensitive_values(tmp_path, kv):
    settings = CredentialSettings()
    first = _store(tmp_path, kv, settings)
    await first.enable_encryption("pw")
    await first.store_token("sealed")
    await first.close()

    locked = _store(tmp_path, kv, settings)
    assert locked.needs_unlock
    assert await locked.get_token() is None
    assert not await locked.store_token("would-be-cleartext")
    assert await locked.set("gatewayUrl", "ws://still-fine", sensitive=False)

    assert not await locked.unlock("wrong")
    assert await locked.unlock("pw")
    assert await locked.get_token() == "sealed"
    await locked.close()


@pytest.mark.asyncio
async def test_token_reuse_detection(credential_store):
    await credential_store.store_token("T")
    assert not await credential_store.is_token_reused("T")

    await credential_store.store_token("U")
    await credential_store.store_token("T")
    assert await credential_store.is_token_reused("T")
    assert not await credential_store.is_token_reused("U")


@pytest.mark.asyncio
async def test_token_history_is_bounded_and_hashed(credential_store):
    for i in range(TOKEN_HISTORY_LIMIT + 3):
        await credential_store.store_token(f"token-{i}")

    history = await credential_store.get_token_history()
    assert len(history) == TOKEN_HISTORY_LIMIT
    assert history[-1]["hash"] == hash_token(f"token-{TOKEN_HISTORY_LIMIT + 2}")
    assert all("token-" not in entry["hash"] for entry in history)


def test_hash_token_is_salted():
    import hashlib

    assert hash_token("abc") != hashlib.sha256(b"abc").hexdigest()
    assert hash_token("abc") == hashlib.sha256(b"abc-chatvault-token-hash").hexdigest()


@pytest.mark.asyncio
@pytest.mark.parametrize("age_days, status", [
    (0, RotationStatus.OK),
    (61, RotationStatus.WARNING),
    (91, RotationStatus.ROTATE),
])
async def test_rotation_status(credential_store, age_days, status):
    await credential_store.store_token("tok")
    await credential_store.set(TOKEN_CREATED_KEY, now_ms() - age_days * MS_PER_DAY, sensitive=False)

    assert await credential_store.token_age_days() == age_days
    assert await credential_store.rotation_status() == status
    assert await credential_store.should_rotate() == (status == RotationStatus.ROTATE)


@pytest.mark.asyncio
async def test_rotation_unknown_without_token(credential_store):
    assert await credential_store.token_age_days() is None
    assert await credential_store.rotation_status() == RotationStatus.UNKNOWN
    assert not await credential_store.should_rotate()


@pytest.mark.asyncio
async def test_legacy_migration(credential_store, kv):
    kv.set_json(LEGACY_SETTINGS_SLOT, {"authToken": "legacy-tok", "gatewayUrl": "ws://old", "theme": "dark"})

    assert await credential_store.migrate_from_legacy()
    assert await credential_store.get_token() == "legacy-tok"
    assert await credential_store.get_gateway_url() == "ws://old"
    assert kv.get_json(LEGACY_SETTINGS_SLOT) == {"gatewayUrl": "ws://old", "theme": "dark"}

    assert not await credential_store.migrate_from_legacy()
    assert await credential_store.get_token() == "legacy-tok"


@pytest.mark.asyncio
async def test_legacy_token_discarded_when_token_exists(credential_store, kv):
    await credential_store.store_token("current")
    kv.set_json(LEGACY_SETTINGS_SLOT, {"authToken": "stale"})

    assert not await credential_store.migrate_from_legacy()
    assert await credential_store.get_token() == "current"
    assert kv.get_json(LEGACY_SETTINGS_SLOT) == {}


@pytest.mark.asyncio
async def test_legacy_token_kept_when_import_fails(tmp_path, kv):
    settings = CredentialSettings()
    first = _store(tmp_path, kv, settings)
    await first.enable_encryption("pw")
    await first.close()

    kv.set_json(LEGACY_SETTINGS_SLOT, {"authToken": "legacy"})
    locked = _store(tmp_path, kv, settings)
    assert not await locked.migrate_from_legacy()
    assert kv.get_json(LEGACY_SETTINGS_SLOT) == {"authToken": "legacy"}
    await locked.close()


@pytest.mark.asyncio
async def test_clear_resets_everything(credential_store):
    await credential_store.enable_encryption("pw")
    await credential_store.store_token("tok")
    assert await credential_store.clear()

    assert await credential_store.get_token() is None
    assert not credential_store.is_setup_complete()
    assert not credential_store.is_encrypted
    assert not credential_store.crypto.is_configured()


@pytest.mark.asyncio
async def test_failed_clear_keeps_key_material(credential_store, monkeypatch):
    await credential_store.enable_encryption("pw")
    await credential_store.store_token("tok")

    async def failing_clear(self, collection):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(ObjectStore, "clear", failing_clear)
    assert not await credential_store.clear()
    assert credential_store.is_encrypted
    assert credential_store.crypto.is_configured()
    assert await credential_store.get_token() == "tok"


@pytest.mark.asyncio
async def test_failed_delete_returns_false(credential_store, monkeypatch):
    await credential_store.set("note", "x", sensitive=False)

    async def failing_delete(self, collection, key):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(ObjectStore, "delete", failing_delete)
    assert not await credential_store.delete("note")
