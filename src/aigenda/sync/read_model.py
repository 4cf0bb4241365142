"""UI-facing cache of server state, refreshed by pulls."""

import copy
import logging
import threading
from typing import Any, Dict, Iterable, List


logger = logging.getLogger(__name__)


class ReadModelCache:
    """Per-entity-type view of the latest known server records.

    Records are merged by ``id``; records without one are appended as-is.
    The pending change queue is never touched from here.
    """

    def __init__(self):
        self._records: Dict[str, Dict[Any, Dict[str, Any]]] = {}
        self._anonymous: Dict[str, List[Any]] = {}
        self._lock = threading.Lock()

    def apply(self, entity_type: str, entities: Iterable[Any]) -> int:
        """Merge server records into the cache.

        Records whose id cannot serve as a key are skipped.

        Returns:
            Number of records applied
        """
        applied = 0
        with self._lock:
            records = self._records.setdefault(entity_type, {})
            for entity in entities:
                entity = copy.deepcopy(entity)
                entity_id = entity.get('id') if isinstance(entity, dict) else None
                if entity_id is None:
                    self._anonymous.setdefault(entity_type, []).append(entity)
                else:
                    try:
                        records[entity_id] = entity
                    except TypeError:
                        logger.warning(f"Skipping {entity_type} record with unusable id {entity_id!r}")
                        continue
                applied += 1
        return applied

    def get(self, entity_type: str) -> List[Any]:
        with self._lock:
            records = list(self._records.get(entity_type, {}).values())
            records += self._anonymous.get(entity_type, [])
            return copy.deepcopy(records)

    def get_record(self, entity_type: str, entity_id: Any) -> Any:
        with self._lock:
            return copy.deepcopy(self._records.get(entity_type, {}).get(entity_id))

    def entity_types(self) -> List[str]:
        with self._lock:
            return sorted(set(self._records) | set(self._anonymous))

    def clear(self) -> None:
        with self._lock:
            self._records = {}
            self._anonymous = {}
