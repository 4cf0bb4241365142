"""Durable key/value storage for pending changes and the sync checkpoint.

Values are opaque strings, mirroring browser local storage: the mutation
log stores a JSON blob and the checkpoint stores an integer rendered as
text. ``JsonFileStorage`` keeps one file per key and replaces it
atomically; ``MemoryStorage`` serves tests and embedders that persist
elsewhere.
"""

import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

from .errors import StorageError


logger = logging.getLogger(__name__)

PENDING_CHANGES_KEY = "aigenda_pending_changes"
LAST_SYNC_KEY = "aigenda_last_sync"

_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class KeyValueStorage(ABC):
    """Interface for the local durable store."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None when the key is absent.

        Raises:
            StorageError: If the backing store cannot be read
        """
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one.

        Raises:
            StorageError: If the backing store cannot be written
        """
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        """Delete a key; missing keys are ignored."""
        pass


class MemoryStorage(KeyValueStorage):
    """In-process storage backed by a dict."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self):
        return list(self._data.keys())


class JsonFileStorage(KeyValueStorage):
    """File-backed storage writing one ``<key>.json`` file per key."""

    def __init__(self, directory: Path):
        """Initialize the storage.

        Args:
            directory: Directory holding the key files; created on first write
        """
        self.directory = Path(directory).expanduser()
        self._lock = threading.Lock()

    def _path_for(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            raise StorageError(f"Invalid storage key: {key!r}")
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path_for(key)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

    def set(self, key: str, value: str) -> None:
        path = self._path_for(key)
        temp_file = path.with_suffix('.tmp')
        with self._lock:
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                with open(temp_file, 'w', encoding='utf-8') as f:
                    f.write(value)
                os.replace(temp_file, path)
            except OSError as e:
                raise StorageError(f"Failed to write {path}: {e}") from e

    def remove(self, key: str) -> None:
        path = self._path_for(key)
        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise StorageError(f"Failed to remove {path}: {e}") from e


class SyncCheckpoint:
    """The ``last_sync_timestamp`` cursor used as ``since`` for pulls."""

    def __init__(self, storage: KeyValueStorage, key: str = LAST_SYNC_KEY):
        self.storage = storage
        self.key = key
        self.value: Optional[int] = None
        self.logger = logging.getLogger(__name__)

    def load(self) -> Optional[int]:
        """Reload the checkpoint from storage; unreadable values reset it."""
        try:
            raw = self.storage.get(self.key)
        except StorageError as e:
            self.logger.error(f"Error loading sync checkpoint: {e}")
            return self.value

        if raw is None or not raw.strip():
            self.value = None
            return None

        try:
            self.value = int(raw.strip())
        except ValueError:
            self.logger.warning(f"Ignoring corrupt sync checkpoint value: {raw!r}")
            self.value = None
        return self.value

    @property
    def since(self) -> int:
        """Cursor for the next pull; 0 when never synced."""
        return self.value or 0

    def update(self, timestamp: int) -> None:
        """Advance the checkpoint and persist it.

        A storage failure keeps the in-memory value so the next cycle still
        pulls from the right place.
        """
        self.value = int(timestamp)
        try:
            self.storage.set(self.key, str(self.value))
        except StorageError as e:
            self.logger.error(f"Error saving sync checkpoint: {e}")

    def clear(self) -> None:
        self.value = None
        try:
            self.storage.remove(self.key)
        except StorageError as e:
            self.logger.error(f"Error clearing sync checkpoint: {e}")
