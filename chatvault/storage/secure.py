"""Flat key-value persistence used for key material and as the fallback backend."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class KeyValueStore:
    """One flat, string-keyed slot per logical item, persisted as a JSON file.

    Every value is a string; structured values go through ``get_json`` and
    ``set_json``. Writes replace the file atomically.
    """

    def __init__(self, path: Path):
        """Initialize the store.

        Args:
            path: JSON file holding all slots
        """
        self._path = Path(path)
        self._slots: Dict[str, str] = {}
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        """Load slots from file."""
        if self._path.exists():
            try:
                data = json.loads(self._path.read_text("utf-8"))
                self._slots = {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}
            except (OSError, ValueError) as e:
                logger.warning("Could not read key-value store %s: %s", self._path, e)
                self._slots = {}

    def _save(self) -> None:
        """Save slots to file."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".tmp")
        tmp.write_text(json.dumps(self._slots, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp, self._path)

    def get_item(self, key: str) -> Optional[str]:
        return self._slots.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._slots[key] = value
        self._save()

    def remove_item(self, key: str) -> None:
        if key in self._slots:
            del self._slots[key]
            self._save()

    def has_item(self, key: str) -> bool:
        return key in self._slots

    def get_json(self, key: str, default: Any = None) -> Any:
        """Get a slot decoded as JSON, or ``default`` if missing or corrupt."""
        raw = self._slots.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Slot %r holds invalid JSON, ignoring", key)
            return default

    def set_json(self, key: str, value: Any) -> None:
        self.set_item(key, json.dumps(value, ensure_ascii=False))

    def keys(self):
        return list(self._slots.keys())
