"""Chat record models shared by the conversation store and the file mirror."""

import secrets
import string
import time
from typing import Any, Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator

Role = Literal["user", "assistant"]
_BASE36 = string.digits + string.ascii_lowercase


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_chat_id() -> str:
    """Time-prefixed random identifier, unique per client."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(11))
    return _to_base36(now_ms()) + suffix


class Message(BaseModel):
    """A single chat message."""

    model_config = ConfigDict(extra="ignore")

    role: Role = Field(..., description="'user' or 'assistant'")
    content: str = Field(default="", description="Message text")
    timestamp: int = Field(default_factory=now_ms, description="Creation time, epoch ms")


class ChatRecord(BaseModel):
    """A conversation: cleartext metadata plus its ordered messages."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    title: str = "New chat"
    messages: List[Message] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms, alias="createdAt")
    updated_at: int = Field(default_factory=now_ms, alias="updatedAt")
    pinned: bool = False
    pinned_order: Optional[int] = Field(default=None, alias="pinnedOrder")
    encrypted: bool = Field(default=False, alias="_encrypted")
    decryption_failed: bool = Field(default=False, alias="_decryptionFailed")

    # Ciphertext kept for records that could not be decrypted, so saving
    # them again never replaces sealed messages with an empty list.
    _sealed_messages: Optional[str] = PrivateAttr(default=None)

    @model_validator(mode="after")
    def _pin_order_matches_pinned(self) -> "ChatRecord":
        if not self.pinned:
            self.pinned_order = None
        elif self.pinned_order is None:
            self.pinned_order = 0
        return self

    @classmethod
    def undecryptable(cls, metadata: Dict[str, Any], envelope: str) -> "ChatRecord":
        """Record whose messages could not be decrypted; the ciphertext is retained."""
        record = cls.model_validate({**metadata, "messages": [], "_encrypted": True, "_decryptionFailed": True})
        record._sealed_messages = envelope
        return record

    @property
    def sealed_messages(self) -> Optional[str]:
        return self._sealed_messages

    def append(self, message: Message) -> None:
        """Push a message and bump ``updated_at``."""
        self.messages.append(message)
        self.updated_at = max(self.updated_at, message.timestamp, now_ms())

    def metadata_document(self) -> Dict[str, Any]:
        """Cleartext fields as stored on disk (no messages, no runtime markers)."""
        doc: Dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "pinned": self.pinned,
        }
        if self.pinned:
            doc["pinnedOrder"] = self.pinned_order
        return doc

    def messages_document(self) -> List[Dict[str, Any]]:
        return [m.model_dump() for m in self.messages]

    def to_document(self) -> Dict[str, Any]:
        """Plain (unencrypted) export form, as used in whole-export files."""
        doc = self.metadata_document()
        doc["messages"] = self.messages_document()
        return doc


class MirrorEntry(BaseModel):
    """One line of a mirror log: a message plus the chat it belongs to."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    chat_id: str = Field(..., alias="chatId")
    chat_title: str = Field(default="Untitled", alias="chatTitle")
    order: Optional[int] = None
    role: Role
    content: str = ""
    timestamp: int

    def to_line(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)

    @classmethod
    def from_chat(cls, chat: ChatRecord, index: int) -> "MirrorEntry":
        msg = chat.messages[index]
        return cls(
            id=f"{chat.id}-{index}",
            chat_id=chat.id,
            chat_title=chat.title or "Untitled",
            order=index,
            role=msg.role,
            content=msg.content or "",
            timestamp=msg.timestamp or chat.created_at or now_ms(),
        )


def generate_title(messages: Iterable[Message]) -> str:
    """Title from the first user message, truncated to 30 characters."""
    for msg in messages:
        if msg.role == "user":
            text = msg.content[:30]
            return text + "..." if len(text) < len(msg.content) else text
    return "New chat"


def toggle_pin(chats: Dict[str, ChatRecord], chat_id: str) -> Optional[ChatRecord]:
    """Pin a chat at the end of the pinned list, or unpin it."""
    chat = chats.get(chat_id)
    if chat is None:
        return None

    if chat.pinned:
        chat.pinned = False
        chat.pinned_order = None
    else:
        max_order = max((c.pinned_order or 0 for c in chats.values() if c.pinned), default=0)
        chat.pinned = True
        chat.pinned_order = max_order + 1
    return chat


def sort_for_display(chats: Dict[str, ChatRecord]) -> List[ChatRecord]:
    """Pinned chats by pin order, then the rest newest first."""
    pinned = sorted((c for c in chats.values() if c.pinned), key=lambda c: (c.pinned_order, c.id))
    others = sorted((c for c in chats.values() if not c.pinned), key=lambda c: c.updated_at, reverse=True)
    return pinned + others
