"""Tests for CryptoEnvelope: round trips, tamper detection and password verification."""

import base64
import secrets

import pytest

from chatvault.errors import AuthenticationError, EncryptionNotInitialized
from chatvault.storage import CryptoEnvelope, KeyValueStore


@pytest.mark.asyncio
async def test_round_trip(make_crypto):
    crypto = await make_crypto().initialize("correct-horse")
    for plaintext in ["", "hello", "ünïcødé ✓", "x" * 10_000, '{"json": [1, 2]}']:
        assert await crypto.decrypt(await crypto.encrypt(plaintext)) == plaintext


@pytest.mark.asyncio
async def test_fresh_nonce_per_call(make_crypto):
    crypto = await make_crypto().initialize("pw")
    first = await crypto.encrypt("same text")
    second = await crypto.encrypt("same text")
    assert first != second
    assert base64.b64decode(first)[:12] != base64.b64decode(second)[:12]


@pytest.mark.asyncio
async def test_wrong_key_rejected(tmp_path):
    kv1 = KeyValueStore(tmp_path / "one.json")
    kv2 = KeyValueStore(tmp_path / "two.json")
    k1 = await CryptoEnvelope(kv1, "chats", iterations=1000).initialize("pw")
    k2 = await CryptoEnvelope(kv2, "chats", iterations=1000).initialize("pw")

    envelope = await k1.encrypt("secret")
    with pytest.raises(AuthenticationError):
        await k2.decrypt(envelope)


@pytest.mark.asyncio
async def test_tampered_and_truncated_envelopes_rejected(make_crypto):
    crypto = await make_crypto().initialize("pw")
    envelope = await crypto.encrypt("attack at dawn")

    raw = bytearray(base64.b64decode(envelope))
    raw[-1] ^= 0x01
    with pytest.raises(AuthenticationError):
        await crypto.decrypt(base64.b64encode(bytes(raw)).decode())

    with pytest.raises(AuthenticationError):
        await crypto.decrypt(envelope[:16])

    with pytest.raises(AuthenticationError):
        await crypto.decrypt("not base64 !!")


@pytest.mark.asyncio
async def test_initialize_is_idempotent_for_salt(kv, make_crypto):
    first = await make_crypto("chats").initialize("pw")
    salt = kv.get_item("chats-salt")
    envelope = await first.encrypt("payload")

    second = await make_crypto("chats").initialize("pw")
    assert kv.get_item("chats-salt") == salt
    assert await second.decrypt(envelope) == "payload"


@pytest.mark.asyncio
async def test_namespaces_are_independent(kv, make_crypto):
    chats = await make_crypto("chats").initialize("pw")
    config = await make_crypto("config").initialize("pw")
    assert kv.get_item("chats-salt") != kv.get_item("config-salt")

    with pytest.raises(AuthenticationError):
        await config.decrypt(await chats.encrypt("x"))


@pytest.mark.asyncio
async def test_encrypt_before_initialize_fails(make_crypto):
    crypto = make_crypto()
    assert not crypto.ready
    with pytest.raises(EncryptionNotInitialized):
        await crypto.encrypt("x")


@pytest.mark.asyncio
async def test_verify_password(kv, make_crypto):
    crypto = await make_crypto("chats").initialize("correct-horse")
    assert await crypto.create_verification_probe()

    snapshot = dict((k, kv.get_item(k)) for k in kv.keys())
    assert await crypto.verify_password("correct-horse")
    for _ in range(100):
        candidate = secrets.token_urlsafe(12)
        assert not await crypto.verify_password(candidate)

    # Failed checks leave persisted state untouched
    assert dict((k, kv.get_item(k)) for k in kv.keys()) == snapshot


@pytest.mark.asyncio
async def test_verify_without_probe_accepts(make_crypto):
    crypto = make_crypto()
    assert await crypto.verify_password("anything")


@pytest.mark.asyncio
async def test_probe_never_overwritten(kv, make_crypto):
    crypto = await make_crypto("chats").initialize("first")
    await crypto.create_verification_probe()
    probe = kv.get_item("chats-verify")

    assert not await crypto.create_verification_probe()
    assert kv.get_item("chats-verify") == probe


@pytest.mark.asyncio
async def test_clear_removes_key_material(kv, make_crypto):
    crypto = await make_crypto("chats").initialize("pw")
    await crypto.create_verification_probe()
    crypto.clear()

    assert not crypto.ready
    assert not crypto.is_configured()
    assert kv.get_item("chats-verify") is None
