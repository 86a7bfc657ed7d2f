"""Storage module for encrypted chat and credential persistence."""

from .secure import KeyValueStore
from .database import ObjectStore
from .crypto import CryptoEnvelope, PBKDF2_ITERATIONS
from .models import (
    ChatRecord,
    Message,
    MirrorEntry,
    generate_chat_id,
    generate_title,
    now_ms,
    sort_for_display,
    toggle_pin,
)
from .chat_history import ConversationStore
from .mirror import (
    BindingState,
    DirectoryHandle,
    FileMirrorStore,
    FilesystemPermissionProbe,
    FlushResult,
    PermissionProbe,
    PermissionState,
)
from .credentials import CredentialStore, RotationStatus, hash_token

__all__ = [
    "KeyValueStore",
    "ObjectStore",
    "CryptoEnvelope",
    "PBKDF2_ITERATIONS",
    "ChatRecord",
    "Message",
    "MirrorEntry",
    "generate_chat_id",
    "generate_title",
    "now_ms",
    "sort_for_display",
    "toggle_pin",
    "ConversationStore",
    "BindingState",
    "DirectoryHandle",
    "FileMirrorStore",
    "FilesystemPermissionProbe",
    "FlushResult",
    "PermissionProbe",
    "PermissionState",
    "CredentialStore",
    "RotationStatus",
    "hash_token",
]
