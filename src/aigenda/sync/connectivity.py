"""Connectivity monitor tracking online/offline transitions."""

import logging
import threading
from typing import Callable, List


logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], None]


class ConnectivityMonitor:
    """Boolean online signal with transition callbacks.

    Platform integrations feed ``set_online`` from their own online/offline
    events; listeners only hear about real transitions.
    """

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: List[ConnectivityListener] = []
        self._lock = threading.Lock()

    @property
    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> bool:
        """Record the current platform signal.

        Returns:
            True if the state changed and listeners were notified
        """
        with self._lock:
            if online == self._online:
                return False
            self._online = online
            listeners = list(self._listeners)

        if online:
            logger.info("Connectivity restored")
        else:
            logger.info("Connectivity lost; changes will be stored locally")

        for listener in listeners:
            try:
                listener(online)
            except Exception as e:
                logger.error(f"Connectivity listener {listener!r} failed: {e}")
        return True

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Register a transition callback.

        Returns:
            A function that removes the listener again
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe
