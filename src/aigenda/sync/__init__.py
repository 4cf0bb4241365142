"""Offline-first synchronization subsystem for AIGENDA."""

from .engine import DataSyncService
from .errors import (
    SyncError,
    NetworkError,
    SyncTimeoutError,
    AuthenticationError,
    ServerError,
    ProtocolError,
    StorageError,
)
from .models import (
    ChangeAction,
    ChangeEntry,
    EntryError,
    ConflictReport,
    EntryErrorReport,
    SyncResponse,
    SyncResult,
    SyncState,
    SyncStatus,
)
from .mutation_log import MutationLog
from .connectivity import ConnectivityMonitor
from .notifier import ChangeNotifier, event_name
from .read_model import ReadModelCache
from .conflict_resolver import ConflictResolver
from .scheduler import SyncScheduler
from .storage import JsonFileStorage, KeyValueStorage, MemoryStorage, SyncCheckpoint
from .transport import HttpSyncTransport, SyncTransport

__all__ = [
    "DataSyncService",
    "SyncError",
    "NetworkError",
    "SyncTimeoutError",
    "AuthenticationError",
    "ServerError",
    "ProtocolError",
    "StorageError",
    "ChangeAction",
    "ChangeEntry",
    "EntryError",
    "ConflictReport",
    "EntryErrorReport",
    "SyncResponse",
    "SyncResult",
    "SyncState",
    "SyncStatus",
    "MutationLog",
    "ConnectivityMonitor",
    "ChangeNotifier",
    "event_name",
    "ReadModelCache",
    "ConflictResolver",
    "SyncScheduler",
    "JsonFileStorage",
    "KeyValueStorage",
    "MemoryStorage",
    "SyncCheckpoint",
    "HttpSyncTransport",
    "SyncTransport",
]
