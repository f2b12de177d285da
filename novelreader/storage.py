"""Key-value persistence for narration preferences and progress.

Two things survive between sessions: the preferred playback rate (one
global number) and, per resume key, the index of the chunk a narration
had reached. Both are small strings in a key-value store. The JSON file
store keeps everything in one file that is rewritten on every change;
the amounts involved are tiny.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional, Protocol

logger = logging.getLogger(__name__)

PLAYBACK_RATE_KEY = "narrationPlaybackRate"
PROGRESS_KEY_PREFIX = "narrationProgress:"


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStore:
    """A store that lives as long as the process."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore:
    """A store backed by a single JSON object on disk.

    An unreadable or malformed file is treated as empty (and logged)
    rather than raised; losing a saved playback rate is preferable to
    refusing to play. Writes go to a temporary file that is then moved
    into place, so a crash never leaves half a file behind.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._data: Optional[Dict[str, str]] = None

    def _load(self) -> Dict[str, str]:
        if self._data is not None:
            return self._data
        data: Dict[str, str] = {}
        if self.path.is_file():
            try:
                payload = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                logger.exception("Failed to read narration state from %s", self.path)
                payload = {}
            if isinstance(payload, dict):
                data = {str(key): str(value) for key, value in payload.items()}
        self._data = data
        return data

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(self._load(), f, indent=2, sort_keys=True)
        os.replace(tmp_path, self.path)

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        self._load()[key] = value
        self._save()

    def remove(self, key: str) -> None:
        if self._load().pop(key, None) is not None:
            self._save()


class NarrationPreferences:
    """Typed access to the values the narration player persists."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    @property
    def playback_rate(self) -> Optional[float]:
        raw = self.store.get(PLAYBACK_RATE_KEY)
        if raw is None:
            return None
        try:
            rate = float(raw)
        except ValueError:
            logger.warning("Ignoring malformed playback rate %r", raw)
            return None
        return rate if rate > 0 else None

    @playback_rate.setter
    def playback_rate(self, rate: float) -> None:
        self.store.set(PLAYBACK_RATE_KEY, repr(float(rate)))

    def load_progress(self, resume_key: str) -> Optional[int]:
        raw = self.store.get(PROGRESS_KEY_PREFIX + resume_key)
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            logger.warning("Ignoring malformed progress %r for %s", raw, resume_key)
            return None

    def save_progress(self, resume_key: str, index: int) -> None:
        self.store.set(PROGRESS_KEY_PREFIX + resume_key, str(index))

    def clear_progress(self, resume_key: str) -> None:
        self.store.remove(PROGRESS_KEY_PREFIX + resume_key)
