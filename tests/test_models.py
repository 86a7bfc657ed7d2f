"""Tests for chat record models and the helpers around them."""

import pytest
from pydantic import ValidationError

from chatvault.storage.models import (
    ChatRecord,
    Message,
    MirrorEntry,
    generate_chat_id,
    generate_title,
    sort_for_display,
    toggle_pin,
)

from conftest import make_chat


def test_chat_ids_are_unique_and_time_prefixed():
    ids = {generate_chat_id() for _ in range(200)}
    assert len(ids) == 200
    assert all(i.isalnum() and i == i.lower() for i in ids)


def test_pin_order_follows_pinned_flag():
    assert ChatRecord(id="a", pinned=False, pinned_order=3).pinned_order is None
    assert ChatRecord(id="a", pinned=True).pinned_order == 0
    assert ChatRecord(id="a", pinned=True, pinned_order=2).pinned_order == 2


def test_documents_use_camel_case():
    chat = make_chat()
    doc = chat.to_document()
    assert set(doc) == {"id", "title", "createdAt", "updatedAt", "pinned", "messages"}
    assert doc["messages"][0] == {"role": "user", "content": "Hello", "timestamp": chat.created_at}

    chat.pinned = True
    chat.pinned_order = 4
    assert chat.metadata_document()["pinnedOrder"] == 4


def test_record_loads_from_document():
    doc = make_chat().to_document()
    doc["unknownField"] = "ignored"
    chat = ChatRecord.model_validate(doc)
    assert chat.title == "Test chat"
    assert [m.role for m in chat.messages] == ["user", "assistant"]


def test_undecryptable_record_carries_envelope():
    meta = make_chat().metadata_document()
    chat = ChatRecord.undecryptable(meta, "c2VhbGVk")
    assert chat.messages == []
    assert chat.encrypted and chat.decryption_failed
    assert chat.sealed_messages == "c2VhbGVk"
    assert make_chat().sealed_messages is None


def test_generate_title():
    assert generate_title([]) == "New chat"
    assert generate_title([Message(role="assistant", content="hi")]) == "New chat"
    assert generate_title([Message(role="user", content="short")]) == "short"

    long_text = "x" * 45
    assert generate_title([Message(role="user", content=long_text)]) == "x" * 30 + "..."


def test_toggle_pin_appends_to_pinned_list():
    chats = {c: make_chat(c) for c in ("a", "b", "c")}
    toggle_pin(chats, "a")
    toggle_pin(chats, "b")
    assert chats["a"].pinned_order == 1
    assert chats["b"].pinned_order == 2

    toggle_pin(chats, "a")
    assert not chats["a"].pinned
    assert chats["a"].pinned_order is None
    assert toggle_pin(chats, "missing") is None


def test_sort_for_display():
    chats = {
        "old": make_chat("old", start=1_000),
        "new": make_chat("new", start=9_000),
        "pin2": make_chat("pin2", start=5_000),
        "pin1": make_chat("pin1", start=2_000),
    }
    toggle_pin(chats, "pin1")
    toggle_pin(chats, "pin2")
    assert [c.id for c in sort_for_display(chats)] == ["pin1", "pin2", "new", "old"]


def test_mirror_entry_from_chat():
    chat = make_chat(title="")
    entry = MirrorEntry.from_chat(chat, 1)
    assert entry.id == "chat-1-1"
    assert entry.chat_title == "Untitled"
    assert entry.order == 1
    assert entry.to_line()["chatId"] == "chat-1"


def test_append_bumps_updated_at():
    chat = make_chat(start=1_000)
    chat.append(Message(role="user", content="later"))
    assert chat.updated_at >= chat.messages[-1].timestamp
    assert len(chat.messages) == 3


def test_roles_are_restricted():
    with pytest.raises(ValidationError):
        Message(role="system", content="nope")
    with pytest.raises(ValidationError):
        MirrorEntry(id="x-0", chat_id="x", role="tool", timestamp=0)
    assert Message(role="assistant").role == "assistant"
