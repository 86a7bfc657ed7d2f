"""
Shared pytest fixtures for chatvault tests.

Stores are built on tmp_path with a low PBKDF2 iteration count so key
derivation does not dominate the suite's runtime.
"""

from pathlib import Path

import pytest
import pytest_asyncio

from chatvault.config.settings import ChatSettings, CredentialSettings, MirrorSettings
from chatvault.storage import (
    ChatRecord,
    ConversationStore,
    CredentialStore,
    CryptoEnvelope,
    DirectoryHandle,
    FileMirrorStore,
    KeyValueStore,
    Message,
    PermissionState,
)

TEST_ITERATIONS = 1000


class FakePermissionProbe:
    """Permission probe with scripted answers, counting calls."""

    def __init__(self, query_result=PermissionState.GRANTED, request_result=PermissionState.GRANTED):
        self.query_result = query_result
        self.request_result = request_result
        self.queries = 0
        self.requests = 0

    async def query(self, handle: DirectoryHandle) -> PermissionState:
        self.queries += 1
        return self.query_result

    async def request(self, handle: DirectoryHandle) -> PermissionState:
        self.requests += 1
        return self.request_result


def make_chat(chat_id="chat-1", title="Test chat", contents=("Hello", "Hi there"), start=1_736_935_200_000):
    """Chat with alternating user/assistant messages one second apart."""
    messages = [
        Message(role="user" if i % 2 == 0 else "assistant", content=text, timestamp=start + i * 1000)
        for i, text in enumerate(contents)
    ]
    return ChatRecord(
        id=chat_id,
        title=title,
        messages=messages,
        created_at=start,
        updated_at=start + max(len(contents) - 1, 0) * 1000,
    )


@pytest.fixture
def kv(tmp_path):
    return KeyValueStore(tmp_path / "local.json")


@pytest.fixture
def make_crypto(kv):
    def _make(namespace="test", store=None):
        return CryptoEnvelope(store or kv, namespace, iterations=TEST_ITERATIONS)
    return _make


@pytest.fixture
def chat_settings():
    return ChatSettings()


@pytest_asyncio.fixture
async def chat_store(tmp_path, kv, make_crypto, chat_settings):
    store = ConversationStore(kv, make_crypto("chats"), chat_settings, tmp_path / "chats.db")
    await store.open()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def credential_store(tmp_path, kv, make_crypto):
    store = CredentialStore(kv, make_crypto("config"), CredentialSettings(), tmp_path / "secure.db")
    await store.open()
    yield store
    await store.close()


@pytest.fixture
def mirror_dir(tmp_path) -> Path:
    path = tmp_path / "memory"
    path.mkdir()
    return path


@pytest.fixture
def probe():
    return FakePermissionProbe()


@pytest_asyncio.fixture
async def mirror(tmp_path, make_crypto, probe, mirror_dir):
    """A live mirror bound to mirror_dir."""
    store = FileMirrorStore(
        make_crypto("filememory"),
        MirrorSettings(flush_delay=0.05),
        tmp_path / "handles.db",
        probe=probe,
    )
    await store.init()
    assert await store.grant_directory(lambda: mirror_dir)
    yield store
    await store.close()
