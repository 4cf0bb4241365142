"""Local mutation log: the durable queue of pending changes.

Every mutation (enqueue, mark-synced, conflict resolution, error
attachment, discard) sweeps expired synced entries and rewrites the whole
store to local storage. Storage failures are logged and recorded but never
raised, so a later mutation retries the save.
"""

import json
import logging
import secrets
import string
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .errors import StorageError
from .models import ChangeAction, ChangeEntry, EntryError
from .storage import KeyValueStorage, PENDING_CHANGES_KEY
from ..utils.datetime import now_ms


logger = logging.getLogger(__name__)

DEFAULT_RETENTION_MS = 60 * 60 * 1000
DEFAULT_LOCAL_ID_PREFIX = "local_"

_ID_ALPHABET = string.ascii_lowercase + string.digits


class MutationLog:
    """Append-only, per-entity-type list of pending changes."""

    def __init__(self, storage: KeyValueStorage,
                 retention_ms: int = DEFAULT_RETENTION_MS,
                 local_id_prefix: str = DEFAULT_LOCAL_ID_PREFIX,
                 clock: Callable[[], int] = now_ms,
                 storage_key: str = PENDING_CHANGES_KEY):
        """Initialize the log.

        Args:
            storage: Durable key/value store
            retention_ms: How long synced entries are kept, from entry timestamp
            local_id_prefix: Reserved prefix marking client-generated ids
            clock: Source of epoch-millisecond timestamps
            storage_key: Key the store is persisted under
        """
        self.storage = storage
        self.retention_ms = retention_ms
        self.local_id_prefix = local_id_prefix
        self.clock = clock
        self.storage_key = storage_key
        self.last_persist_error: Optional[StorageError] = None

        self._changes: Dict[str, List[ChangeEntry]] = {}
        self._lock = threading.RLock()
        self.logger = logging.getLogger(__name__)

    # Identifiers

    def generate_local_id(self) -> str:
        """Create a client-local id distinguishable from server ids."""
        suffix = ''.join(secrets.choice(_ID_ALPHABET) for _ in range(9))
        return f"{self.local_id_prefix}{self.clock()}_{suffix}"

    def is_local_id(self, entity_id: Any) -> bool:
        return isinstance(entity_id, str) and entity_id.startswith(self.local_id_prefix)

    # Persistence

    def load(self) -> Dict[str, List[ChangeEntry]]:
        """Reload the store from local storage.

        A missing key leaves the store empty; unreadable or corrupt blobs are
        logged and leave the in-memory store unchanged.
        """
        try:
            raw = self.storage.get(self.storage_key)
        except StorageError as e:
            self.logger.error(f"Error loading pending changes from storage: {e}")
            return self.snapshot()

        if not raw:
            return self.snapshot()

        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("pending changes blob is not an object")
            loaded = {}
            for entity_type, entries in data.items():
                parsed = [ChangeEntry.from_dict(entity_type, entry) for entry in entries]
                if parsed:
                    parsed.sort(key=lambda e: e.timestamp)
                    loaded[entity_type] = parsed
        except (ValueError, KeyError, TypeError) as e:
            self.logger.error(f"Ignoring corrupt pending changes in storage: {e}")
            return self.snapshot()

        with self._lock:
            self._changes = loaded
        self.logger.debug(f"Loaded {self.pending_count()} pending changes from storage")
        return self.snapshot()

    def _persist(self) -> bool:
        """Write the full store; failures are recorded, not raised."""
        with self._lock:
            blob = json.dumps({
                entity_type: [entry.to_dict() for entry in entries]
                for entity_type, entries in self._changes.items()
            })
            try:
                self.storage.set(self.storage_key, blob)
            except StorageError as e:
                self.last_persist_error = e
                self.logger.error(f"Error saving pending changes to storage: {e}")
                return False
            self.last_persist_error = None
            return True

    def _sweep(self) -> int:
        """Drop synced entries whose timestamp is past the retention window."""
        cutoff = self.clock() - self.retention_ms
        removed = 0
        for entity_type in list(self._changes):
            kept = [e for e in self._changes[entity_type] if not e.synced or e.timestamp > cutoff]
            removed += len(self._changes[entity_type]) - len(kept)
            if kept:
                self._changes[entity_type] = kept
            else:
                del self._changes[entity_type]
        if removed:
            self.logger.debug(f"Swept {removed} expired synced changes")
        return removed

    def _commit(self) -> bool:
        with self._lock:
            self._sweep()
            return self._persist()

    # Mutations

    def enqueue(self, entity_type: str, action: Union[ChangeAction, str],
                data: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """Append a pending change.

        Args:
            entity_type: Collection key, e.g. "tasks"
            action: create, update or delete
            data: Entity payload; copied, never mutated

        Returns:
            The entity id, generated for creates that did not supply one

        Raises:
            ValueError: If the entity type is empty or the action unknown
        """
        if not entity_type:
            raise ValueError("entity_type is required")
        action = ChangeAction(action)
        payload = dict(data or {})

        if action == ChangeAction.CREATE and not payload.get('id'):
            payload['id'] = self.generate_local_id()

        entry = ChangeEntry(
            entity_type=entity_type,
            action=action,
            data=payload,
            timestamp=self.clock(),
        )

        with self._lock:
            entries = self._changes.setdefault(entity_type, [])
            entries.append(entry)
            if len(entries) > 1 and entries[-2].timestamp > entry.timestamp:
                entries.sort(key=lambda e: e.timestamp)
        self._commit()

        self.logger.debug(f"Queued {action.value} for {entity_type} {entry.entity_id}")
        return payload.get('id')

    def mark_synced(self, synced_ids: Dict[str, Iterable[Any]]) -> int:
        """Mark every unsynced entry whose id was acknowledged.

        Calling this again with the same ids changes nothing.

        Returns:
            Number of entries newly marked synced
        """
        marked = 0
        with self._lock:
            for entity_type, ids in synced_ids.items():
                wanted = set(ids)
                for entry in self._changes.get(entity_type, []):
                    if not entry.synced and entry.entity_id in wanted:
                        entry.mark_synced()
                        marked += 1
        self._commit()
        return marked

    def _find_unsynced(self, entity_type: str, entity_id: Any) -> Optional[ChangeEntry]:
        for entry in self._changes.get(entity_type, []):
            if not entry.synced and entry.entity_id == entity_id:
                return entry
        return None

    def resolve_conflict(self, entity_type: str, entity_id: Any,
                         server_version: Dict[str, Any]) -> Optional[ChangeEntry]:
        """Replace the first matching unsynced entry's data with the server's.

        Returns:
            A copy of the resolved entry, or None when nothing matched
        """
        with self._lock:
            entry = self._find_unsynced(entity_type, entity_id)
            if entry is not None:
                entry.data = dict(server_version) if isinstance(server_version, dict) else server_version
                entry.mark_synced()
                resolved = entry.copy()
            else:
                resolved = None
        self._commit()
        return resolved

    def attach_error(self, entity_type: str, entity_id: Any, code: str,
                     message: str = "") -> Optional[ChangeEntry]:
        """Attach a terminal rejection to the first matching unsynced entry."""
        with self._lock:
            entry = self._find_unsynced(entity_type, entity_id)
            if entry is not None:
                entry.error = EntryError(code=code, message=message)
                errored = entry.copy()
            else:
                errored = None
        self._commit()
        return errored

    def discard(self, entity_type: str, entity_id: Any) -> int:
        """Remove the unsynced entries for one entity.

        This is how callers give up on changes the server rejected.

        Returns:
            Number of entries removed
        """
        with self._lock:
            entries = self._changes.get(entity_type, [])
            kept = [e for e in entries if e.synced or e.entity_id != entity_id]
            removed = len(entries) - len(kept)
            if kept:
                self._changes[entity_type] = kept
            else:
                self._changes.pop(entity_type, None)
        if removed:
            self._commit()
        return removed

    def discard_errored(self) -> int:
        """Remove every entry carrying a terminal error."""
        with self._lock:
            removed = 0
            for entity_type in list(self._changes):
                kept = [e for e in self._changes[entity_type] if e.error is None]
                removed += len(self._changes[entity_type]) - len(kept)
                if kept:
                    self._changes[entity_type] = kept
                else:
                    del self._changes[entity_type]
        if removed:
            self._commit()
        return removed

    def clear(self) -> None:
        """Forget every pending change and remove it from storage."""
        with self._lock:
            self._changes = {}
        try:
            self.storage.remove(self.storage_key)
        except StorageError as e:
            self.logger.error(f"Error clearing pending changes from storage: {e}")

    # Reads

    def get_unsynced(self) -> Dict[str, List[ChangeEntry]]:
        """Snapshot of unsynced entries grouped by entity type.

        Entity types without unsynced entries are omitted, so an empty
        mapping means there is nothing to push.
        """
        unsynced = {}
        with self._lock:
            for entity_type, entries in self._changes.items():
                pending = [e.copy() for e in entries if not e.synced]
                if pending:
                    unsynced[entity_type] = pending
        return unsynced

    def get_errored(self) -> Dict[str, List[ChangeEntry]]:
        errored = {}
        with self._lock:
            for entity_type, entries in self._changes.items():
                failed = [e.copy() for e in entries if e.error is not None]
                if failed:
                    errored[entity_type] = failed
        return errored

    def entries(self, entity_type: Optional[str] = None) -> List[ChangeEntry]:
        """Copies of all stored entries, optionally for one entity type."""
        with self._lock:
            if entity_type is not None:
                return [e.copy() for e in self._changes.get(entity_type, [])]
            return [e.copy() for entries in self._changes.values() for e in entries]

    def snapshot(self) -> Dict[str, List[ChangeEntry]]:
        with self._lock:
            return {t: [e.copy() for e in entries] for t, entries in self._changes.items()}

    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for entries in self._changes.values() for e in entries if not e.synced)

    def errored_count(self) -> int:
        with self._lock:
            return sum(1 for entries in self._changes.values() for e in entries if e.error is not None)
