"""
File mirror: an append-only JSONL copy of every message in a user-granted directory.

Messages are written one per line into one file per UTC calendar day
(``2025-01-15.jsonl``, or ``2025-01-15.enc.jsonl`` when encrypted), so that
external tools can read conversations without going through the app.

Writes are debounced: ``write_message`` only enqueues, and a single timer
flushes the whole queue. Each append first reads the day's file and skips
message ids that are already present, which makes repeated syncs of the same
chats idempotent.

The directory itself is a revocable grant. The persisted reference survives
restarts, but its permission is re-checked on every start:

    unbound --grant--> bound-live
    (restart) --> bound-stale --query granted--> bound-live
    bound-stale --reconnect granted--> bound-live
    bound-stale --reconnect denied--> bound-revoked (needs a new grant)
"""

import asyncio
import inspect
import json
import logging
import os
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Set, Tuple, Union

from pydantic import ValidationError

from ..config.settings import MirrorSettings
from ..errors import AuthenticationError, BackendUnavailable, ChatVaultError, PermissionDenied
from .crypto import CryptoEnvelope
from .database import ObjectStore
from .models import ChatRecord, Message, MirrorEntry

logger = logging.getLogger(__name__)

HANDLES_COLLECTION = "handles"
HANDLE_ID = "memoryDir"
HANDLES_SCHEMA_VERSION = 1

FORMAT_VERSION = 1
ENCRYPTED_HEADER = {"_encrypted": True, "_version": FORMAT_VERSION}
DEDUPE_PREFIX_LENGTH = 100

PathPicker = Callable[[], Union[Optional[Union[str, Path]], Awaitable[Optional[Union[str, Path]]]]]


class PermissionState(str, Enum):
    GRANTED = "granted"
    PROMPT = "prompt"
    DENIED = "denied"


class BindingState(str, Enum):
    UNBOUND = "unbound"
    LIVE = "bound-live"
    STALE = "bound-stale"
    REVOKED = "bound-revoked"


@dataclass(frozen=True)
class DirectoryHandle:
    """Persisted reference to a user-granted directory."""

    path: Path

    @property
    def name(self) -> str:
        return self.path.name

    def to_document(self) -> Dict[str, Any]:
        return {"id": HANDLE_ID, "path": str(self.path)}

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> Optional["DirectoryHandle"]:
        path = doc.get("path")
        return cls(Path(path)) if path else None


class PermissionProbe(Protocol):
    """Checks and requests read-write access to a directory handle."""

    async def query(self, handle: DirectoryHandle) -> PermissionState:
        """Report the current permission without prompting."""
        ...

    async def request(self, handle: DirectoryHandle) -> PermissionState:
        """Ask for permission; only called from a user gesture."""
        ...


class FilesystemPermissionProbe:
    """Permission probe backed by the host filesystem's access checks.

    A missing directory is ``denied``; a directory that is readable but not
    writable is ``prompt`` (degraded to read-only).
    """

    @staticmethod
    def _check(path: Path) -> PermissionState:
        if not path.is_dir():
            return PermissionState.DENIED
        if os.access(path, os.R_OK | os.W_OK | os.X_OK):
            return PermissionState.GRANTED
        if os.access(path, os.R_OK):
            return PermissionState.PROMPT
        return PermissionState.DENIED

    async def query(self, handle: DirectoryHandle) -> PermissionState:
        return await asyncio.to_thread(self._check, handle.path)

    async def request(self, handle: DirectoryHandle) -> PermissionState:
        return await asyncio.to_thread(self._check, handle.path)


@dataclass
class FlushResult:
    """Outcome of one flush of the pending queue."""

    written: int = 0
    skipped: int = 0
    requeued: int = 0
    files: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def date_key(timestamp_ms: int) -> str:
    """UTC calendar day of an epoch-millisecond timestamp."""
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def _read_text(path: Path) -> str:
    # Files in the granted directory may be edited by other tools
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return ""


def _append_text(path: Path, text: str) -> None:
    with open(path, "a", encoding="utf-8") as f:
        f.write(text)


def _list_files(directory: Path) -> List[Path]:
    return sorted(p for p in directory.iterdir() if p.is_file())


def _is_header(line: str) -> bool:
    try:
        header = json.loads(line)
    except ValueError:
        return False
    return isinstance(header, dict) and header.get("_encrypted") is True


class FileMirrorStore:
    """Best-effort mirror of chat messages into a user-granted directory."""

    def __init__(
        self,
        crypto: CryptoEnvelope,
        settings: MirrorSettings,
        handles_path: Path,
        probe: Optional[PermissionProbe] = None,
    ):
        """Initialize the mirror.

        Args:
            crypto: Envelope bound to the mirror's namespace
            settings: Mirror settings (flush delay, encryption flag)
            handles_path: SQLite file where the directory handle is persisted
            probe: Permission probe; defaults to filesystem access checks
        """
        self.crypto = crypto
        self.settings = settings
        self._handles = ObjectStore(handles_path, {HANDLES_COLLECTION: "id"}, HANDLES_SCHEMA_VERSION)
        self._handles_available = False
        self._probe: PermissionProbe = probe or FilesystemPermissionProbe()

        self._handle: Optional[DirectoryHandle] = None
        self._state = BindingState.UNBOUND

        self._pending: List[MirrorEntry] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._flush_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Directory binding
    # -------------------------------------------------------------------------

    @property
    def state(self) -> BindingState:
        return self._state

    @property
    def handle(self) -> Optional[DirectoryHandle]:
        return self._handle

    def is_enabled(self) -> bool:
        return self.settings.enabled and self._state == BindingState.LIVE

    @property
    def directory_name(self) -> Optional[str]:
        return self._handle.name if self._handle else None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def init(self) -> bool:
        """Restore a persisted handle and probe its permission.

        Returns:
            True if the mirror is live
        """
        try:
            await self._handles.open()
            self._handles_available = True
        except BackendUnavailable as e:
            logger.warning("Directory handle store unavailable, grants last for this session: %s", e)
            return self.is_enabled()

        try:
            doc = await self._handles.get(HANDLES_COLLECTION, HANDLE_ID)
        except sqlite3.Error as e:
            logger.warning("Error restoring directory handle: %s", e)
            return False
        handle = DirectoryHandle.from_document(doc) if doc else None
        if handle is None:
            return False

        self._handle = handle
        self._state = BindingState.STALE
        permission = await self._probe.query(handle)
        if permission == PermissionState.GRANTED:
            self._state = BindingState.LIVE
            logger.info("Restored mirror directory %s", handle.path)
        else:
            # Parked: a later user gesture can reconnect without re-picking
            logger.info("Mirror directory %s restored without permission (%s)", handle.path, permission.value)
        return self.is_enabled()

    async def grant_directory(self, picker: PathPicker) -> bool:
        """Bind a new directory chosen by the user.

        Args:
            picker: Called from the user's gesture; returns the chosen
                directory, or None if the user cancelled
        """
        try:
            chosen = picker()
            if inspect.isawaitable(chosen):
                chosen = await chosen
        except OSError as e:
            logger.error("Error selecting directory: %s", e)
            return False
        if chosen is None:
            return False

        handle = DirectoryHandle(Path(chosen).expanduser())
        permission = await self._probe.request(handle)
        if permission != PermissionState.GRANTED:
            logger.warning("Directory %s was not granted read-write access (%s)", handle.path, permission.value)
            return False

        await self._persist_handle(handle)
        self._handle = handle
        self._state = BindingState.LIVE
        logger.info("Mirror directory selected: %s", handle.name)
        if self._pending:
            self._schedule_flush()
        return True

    async def _persist_handle(self, handle: DirectoryHandle) -> None:
        if not self._handles_available:
            return
        try:
            await self._handles.put(HANDLES_COLLECTION, handle.to_document())
        except sqlite3.Error as e:
            logger.warning("Could not persist directory handle: %s", e)

    async def reconnect(self) -> bool:
        """Re-request permission for a parked handle; call from a user gesture."""
        if self._state == BindingState.LIVE:
            return True
        if self._handle is None or self._state != BindingState.STALE:
            return False

        permission = await self._probe.request(self._handle)
        if permission == PermissionState.GRANTED:
            self._state = BindingState.LIVE
            logger.info("Reconnected mirror directory %s", self._handle.path)
            if self._pending:
                self._schedule_flush()
            return True
        if permission == PermissionState.DENIED:
            self._state = BindingState.REVOKED
            logger.warning("Mirror directory %s was revoked", self._handle.path)
        return False

    def _require_live(self) -> DirectoryHandle:
        if self._handle is None or self._state != BindingState.LIVE:
            raise PermissionDenied(f"Mirror directory is {self._state.value}")
        return self._handle

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
        """Encrypt files written from now on; existing files are left as they are."""
        if self.crypto.has_probe() and not await self.crypto.verify_password(passphrase):
            raise AuthenticationError("Passphrase does not match the existing verification probe")
        await self.crypto.initialize(passphrase)
        await self.crypto.create_verification_probe()
        self.settings.encryption.enabled = True

    async def unlock(self, passphrase: str) -> bool:
        if not self.is_encrypted:
            return True
        if not await self.crypto.verify_password(passphrase):
            return False
        await self.crypto.initialize(passphrase)
        if self._pending and self.is_enabled():
            self._schedule_flush()
        return True

    # -------------------------------------------------------------------------
    # Writing
    # -------------------------------------------------------------------------

    async def write_message(self, entry: Union[MirrorEntry, Dict[str, Any]]) -> bool:
        """Queue one message and (re)arm the flush timer.

        Returns:
            False if the mirror is not live and the message was dropped
        """
        if not self.is_enabled():
            return False
        if not isinstance(entry, MirrorEntry):
            entry = MirrorEntry.model_validate(entry)
        self._pending.append(entry)
        self._schedule_flush()
        return True

    def _schedule_flush(self) -> None:
        loop = asyncio.get_running_loop()
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self.settings.flush_delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._flush_task = asyncio.ensure_future(self.flush())

    async def write_chat(self, chat: ChatRecord) -> int:
        """Queue every message of a chat with its position in the chat."""
        if not self.is_enabled():
            return 0
        for index in range(len(chat.messages)):
            await self.write_message(MirrorEntry.from_chat(chat, index))
        return len(chat.messages)

    async def sync_all(self, chats: Union[Dict[str, ChatRecord], Iterable[ChatRecord]]) -> int:
        """Queue every message of every chat and flush immediately.

        Returns:
            Number of messages queued
        """
        if not self.is_enabled():
            return 0
        records = chats.values() if isinstance(chats, dict) else chats

        count = 0
        for chat in records:
            count += await self.write_chat(chat)

        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        await self.flush()
        return count

    async def flush(self) -> FlushResult:
        """Write all queued messages, one append per calendar day.

        On failure the unwritten days go back to the front of the queue;
        days already written stay written.
        """
        async with self._flush_lock:
            if not self.is_enabled() or not self._pending:
                return FlushResult()
            if self.needs_unlock:
                logger.debug("Mirror is encrypted and locked, keeping %d queued", len(self._pending))
                return FlushResult(requeued=len(self._pending))

            batch, self._pending = self._pending, []

            by_date: Dict[str, List[MirrorEntry]] = {}
            for entry in batch:
                by_date.setdefault(date_key(entry.timestamp), []).append(entry)
            days = list(by_date.items())

            result = FlushResult()
            for index, (day, entries) in enumerate(days):
                try:
                    filename, written, skipped = await self._append_to_date_file(day, entries)
                except (OSError, ValueError, ChatVaultError) as e:
                    if isinstance(e, PermissionError) and self._state == BindingState.LIVE:
                        self._state = BindingState.STALE
                    remaining = [entry for _, rest in days[index:] for entry in rest]
                    self._pending = remaining + self._pending
                    result.requeued = len(remaining)
                    result.error = str(e)
                    logger.error("Error writing mirror file for %s, %d messages requeued: %s",
                                 day, len(remaining), e)
                    break
                result.written += written
                result.skipped += skipped
                if written:
                    result.files.append(filename)
            return result

    async def _existing_ids(self, content: str) -> Set[str]:
        """Ids already present in a day file's content."""
        ids: Set[str] = set()
        if not content:
            return ids
        lines = content.split("\n")
        encrypted = bool(lines[0]) and _is_header(lines[0])
        for line in (lines[1:] if encrypted else lines):
            line = line.strip()
            if not line:
                continue
            try:
                if encrypted:
                    if not self.crypto.ready:
                        continue
                    data = json.loads(await self.crypto.decrypt(line))
                else:
                    data = json.loads(line)
            except (AuthenticationError, ValueError):
                continue
            if isinstance(data, dict) and data.get("id"):
                ids.add(str(data["id"]))
        return ids

    async def _append_to_date_file(self, day: str, entries: List[MirrorEntry]) -> Tuple[str, int, int]:
        handle = self._require_live()
        encrypting = self.is_encrypted
        filename = f"{day}.enc.jsonl" if encrypting else f"{day}.jsonl"
        path = handle.path / filename

        existing = await asyncio.to_thread(_read_text, path)
        seen = await self._existing_ids(existing)

        new_entries = []
        for entry in entries:
            if entry.id in seen:
                continue
            seen.add(entry.id)
            new_entries.append(entry)
        skipped = len(entries) - len(new_entries)
        if not new_entries:
            return filename, 0, skipped

        lines = []
        if encrypting and not existing:
            lines.append(json.dumps(ENCRYPTED_HEADER))
        for entry in new_entries:
            line = json.dumps(entry.to_line(), ensure_ascii=False)
            if encrypting:
                line = await self.crypto.encrypt(line)
            lines.append(line)

        text = "\n".join(lines) + "\n"
        if existing and not existing.endswith("\n"):
            text = "\n" + text
        await asyncio.to_thread(_append_text, path, text)

        logger.info("Wrote %d messages to %s", len(new_entries), filename)
        return filename, len(new_entries), skipped

    # -------------------------------------------------------------------------
    # Reconstruction
    # -------------------------------------------------------------------------

    async def load_from_mirror(self) -> Dict[str, ChatRecord]:
        """Rebuild chat records from every log and export file in the directory."""
        if not self.is_enabled():
            return {}
        handle = self._require_live()

        try:
            files = await asyncio.to_thread(_list_files, handle.path)
        except OSError as e:
            logger.error("Error loading from mirror: %s", e)
            return {}

        replayed: Dict[str, Dict[str, Any]] = {}
        exports: List[Tuple[str, str]] = []
        for path in files:
            if not (path.name.endswith(".jsonl") or path.name.endswith(".json")):
                continue
            try:
                content = await asyncio.to_thread(_read_text, path)
            except (OSError, ValueError) as e:
                logger.warning("Error reading %s: %s", path.name, e)
                continue
            if path.name.endswith(".jsonl"):
                await self._replay_log(path.name, content, replayed)
            else:
                exports.append((path.name, content))

        chats = {chat_id: self._assemble(chat) for chat_id, chat in replayed.items()}

        for name, content in exports:
            self._merge_export(name, content, chats)

        logger.info("Loaded %d chats from mirror directory", len(chats))
        return chats

    async def _replay_log(self, name: str, content: str, chats: Dict[str, Dict[str, Any]]) -> None:
        lines = content.split("\n")
        encrypted = bool(lines[0]) and _is_header(lines[0])
        if encrypted and not self.crypto.ready:
            logger.warning("Cannot read encrypted file %s - not unlocked", name)
            return

        for line in (lines[1:] if encrypted else lines):
            line = line.strip()
            if not line:
                continue
            try:
                raw = await self.crypto.decrypt(line) if encrypted else line
                entry = MirrorEntry.model_validate(json.loads(raw))
            except (AuthenticationError, ValueError, ValidationError):
                continue

            chat = chats.get(entry.chat_id)
            if chat is None:
                chat = chats[entry.chat_id] = {
                    "id": entry.chat_id,
                    "title": entry.chat_title or "Untitled",
                    "createdAt": entry.timestamp,
                    "updatedAt": entry.timestamp,
                    "entries": [],
                }
            chat["createdAt"] = min(chat["createdAt"], entry.timestamp)
            chat["updatedAt"] = max(chat["updatedAt"], entry.timestamp)
            chat["entries"].append(entry)

    @staticmethod
    def _assemble(chat: Dict[str, Any]) -> ChatRecord:
        """Order replayed entries and drop duplicates from overlapping files."""
        entries: List[MirrorEntry] = chat["entries"]
        if all(e.order is not None for e in entries):
            entries.sort(key=lambda e: (e.order, e.timestamp))
        else:
            entries.sort(key=lambda e: e.timestamp)

        seen: Set[str] = set()
        messages = []
        for e in entries:
            key = f"{e.role}:{e.timestamp}:{e.content[:DEDUPE_PREFIX_LENGTH]}"
            if key in seen:
                continue
            seen.add(key)
            messages.append(Message(role=e.role, content=e.content, timestamp=e.timestamp))

        return ChatRecord(
            id=chat["id"],
            title=chat["title"],
            messages=messages,
            created_at=chat["createdAt"],
            updated_at=chat["updatedAt"],
        )

    @staticmethod
    def _merge_export(name: str, content: str, chats: Dict[str, ChatRecord]) -> None:
        try:
            data = json.loads(content)
        except ValueError as e:
            logger.warning("Error parsing %s: %s", name, e)
            return
        exported = data.get("chats") if isinstance(data, dict) else None
        if not isinstance(exported, dict):
            return

        logger.info("Found export file %s with %d chats", name, len(exported))
        for chat_id, doc in exported.items():
            if chat_id in chats or not isinstance(doc, dict):
                continue
            try:
                chats[chat_id] = ChatRecord.model_validate({**doc, "id": doc.get("id", chat_id)})
            except ValidationError as e:
                logger.warning("Skipping chat %s in %s: %s", chat_id, name, e)

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Flush anything still queued and release the handle store."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._flush_task is not None and not self._flush_task.done():
            await self._flush_task
        if self._pending and self.is_enabled():
            await self.flush()
        await self._handles.close()
