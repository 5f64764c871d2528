"""
MicroSense — Persistence

Settings and scan history live in an external key-value store as JSON
strings. Loading is forgiving (corrupt data falls back to defaults);
saving replaces the stored value in one step so a crash never leaves a
half-written profile behind.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .config import scan_cfg, storage_cfg
from .interfaces import KeyValueStore
from .models import HistoryEntry, Settings

logger = logging.getLogger("microsense.store")


class MemoryStore:
    """Process-local store (tests, ephemeral sessions)."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore:
    """All keys in one JSON object file, rewritten atomically on every change."""

    def __init__(self, path: Path = storage_cfg.path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Store unreadable at {self._path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=".store-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp, self._path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def get(self, key: str) -> Optional[str]:
        value = self._read().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def delete(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)


class Persistence:
    """Typed load/save of settings and the capped scan history."""

    def __init__(
        self,
        store: KeyValueStore,
        history_limit: int = scan_cfg.history_limit,
        settings_key: str = storage_cfg.settings_key,
        history_key: str = storage_cfg.history_key,
    ) -> None:
        self._store = store
        self._history_limit = history_limit
        self._settings_key = settings_key
        self._history_key = history_key

    @property
    def history_limit(self) -> int:
        return self._history_limit

    # ── Settings ────────────────────────────────────────────────────────

    def load_settings(self) -> Settings:
        raw = self._store.get(self._settings_key)
        if not raw:
            return Settings()
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("settings blob is not an object")
            return Settings.from_dict(data)
        except (ValueError, TypeError) as e:
            logger.warning(f"Stored settings ignored: {e}")
            return Settings()

    def save_settings(self, settings: Settings) -> None:
        self._store.set(self._settings_key, json.dumps(settings.to_dict()))

    # ── History ─────────────────────────────────────────────────────────

    def load_history(self) -> List[HistoryEntry]:
        raw = self._store.get(self._history_key)
        if not raw:
            return []
        try:
            data = json.loads(raw)
            if not isinstance(data, list):
                raise ValueError("history is not a list")
            entries = [HistoryEntry.from_dict(item) for item in data]
        except (ValueError, TypeError, KeyError) as e:
            logger.warning(f"Stored history ignored: {e}")
            return []
        return entries[: self._history_limit]

    def save_history(self, entries: Sequence[HistoryEntry]) -> None:
        payload = [e.to_dict() for e in entries[: self._history_limit]]
        self._store.set(self._history_key, json.dumps(payload))

    def clear(self) -> None:
        self._store.delete(self._settings_key)
        self._store.delete(self._history_key)
