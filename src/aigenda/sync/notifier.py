"""Fire-and-forget broadcast of applied remote changes.

Delivery is synchronous and at most once per ``notify`` call. Nothing is
queued or replayed: a consumer that subscribes late picks up full state
from the read model after the next pull.
"""

import logging
import threading
from typing import Any, Callable, Dict, List


logger = logging.getLogger(__name__)

ALL_ENTITY_TYPES = "*"

ChangeListener = Callable[[str, Any], None]


def event_name(entity_type: str) -> str:
    """Name of the per-entity-type update event."""
    return f"aigenda:{entity_type}:updated"


class ChangeNotifier:
    """Observer list keyed by entity type."""

    def __init__(self):
        self._subscribers: Dict[str, List[ChangeListener]] = {}
        self._lock = threading.Lock()

    def subscribe(self, entity_type: str, callback: ChangeListener) -> Callable[[], None]:
        """Listen for updates of one entity type, or ``"*"`` for all.

        Callbacks receive ``(entity_type, payload)``.

        Returns:
            A function that removes the subscription
        """
        with self._lock:
            self._subscribers.setdefault(entity_type, []).append(callback)

        def unsubscribe():
            with self._lock:
                callbacks = self._subscribers.get(entity_type, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._subscribers.pop(entity_type, None)

        return unsubscribe

    def notify(self, entity_type: str, payload: Any) -> int:
        """Deliver an update to current subscribers.

        Returns:
            Number of callbacks that received the update
        """
        with self._lock:
            callbacks = list(self._subscribers.get(entity_type, []))
            callbacks += self._subscribers.get(ALL_ENTITY_TYPES, [])

        delivered = 0
        for callback in callbacks:
            try:
                callback(entity_type, payload)
                delivered += 1
            except Exception as e:
                logger.error(f"Subscriber for {event_name(entity_type)} failed: {e}")
        return delivered

    def subscriber_count(self, entity_type: str) -> int:
        with self._lock:
            return len(self._subscribers.get(entity_type, []))
