"""Data models for the offline-first sync engine.

This module contains the structures shared across the sync subsystem:
pending change entries, the parsed push response and the outcome of a
sync cycle.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ProtocolError


class ChangeAction(Enum):
    """Kinds of local mutation."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncStatus(Enum):
    """Outcome of a sync cycle."""
    SUCCESS = "success"
    SKIPPED = "skipped"                    # Another cycle was already running
    OFFLINE = "offline"
    NOT_AUTHENTICATED = "not_authenticated"
    AUTH_FAILED = "auth_failed"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    ERROR = "error"


@dataclass
class EntryError:
    """Terminal rejection attached to a change entry."""
    code: str
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {'code': self.code, 'message': self.message}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EntryError':
        return cls(code=str(data.get('code', '')), message=str(data.get('message') or ''))


@dataclass
class ChangeEntry:
    """One pending local mutation."""

    entity_type: str
    action: ChangeAction
    data: Dict[str, Any]
    timestamp: int
    synced: bool = False
    error: Optional[EntryError] = None

    @property
    def entity_id(self) -> Optional[Any]:
        """Identifier of the entity this change applies to."""
        return self.data.get('id') if isinstance(self.data, dict) else None

    @property
    def has_error(self) -> bool:
        return self.error is not None

    def mark_synced(self):
        """Record server acknowledgement, dropping any stale rejection."""
        self.synced = True
        self.error = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the wire/storage representation.

        The entity type is the key of the enclosing mapping, so it is not
        repeated here.
        """
        data = {
            'action': self.action.value,
            'data': self.data,
            'timestamp': self.timestamp,
            'synced': self.synced,
        }
        if self.error is not None:
            data['error'] = self.error.to_dict()
        return data

    @classmethod
    def from_dict(cls, entity_type: str, data: Dict[str, Any]) -> 'ChangeEntry':
        """Create from the wire/storage representation."""
        error = data.get('error')
        return cls(
            entity_type=entity_type,
            action=ChangeAction(data['action']),
            data=dict(data.get('data') or {}),
            timestamp=int(data.get('timestamp', 0)),
            synced=bool(data.get('synced', False)),
            error=EntryError.from_dict(error) if isinstance(error, dict) else None,
        )

    def copy(self) -> 'ChangeEntry':
        return copy.deepcopy(self)


@dataclass
class ConflictReport:
    """Server-reported conflict for one pushed entity."""
    id: Any
    server_version: Dict[str, Any]


@dataclass
class EntryErrorReport:
    """Server-reported rejection for one pushed entity."""
    id: Any
    code: str
    message: str = ""


def _require_mapping(value: Any, name: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ProtocolError(f"'{name}' must be an object, got {type(value).__name__}")
    return value


def _require_list(value: Any, name: str) -> List[Any]:
    if not isinstance(value, list):
        raise ProtocolError(f"'{name}' must be a list, got {type(value).__name__}")
    return value


@dataclass
class SyncResponse:
    """Parsed body of a successful push."""

    synced_ids: Dict[str, List[Any]] = field(default_factory=dict)
    conflicts: Dict[str, List[ConflictReport]] = field(default_factory=dict)
    errors: Dict[str, List[EntryErrorReport]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> 'SyncResponse':
        """Parse a push response body.

        Args:
            data: Decoded JSON body

        Returns:
            Parsed response; missing sections are empty

        Raises:
            ProtocolError: If the body does not have the expected shape
        """
        if not isinstance(data, dict):
            raise ProtocolError("Push response must be a JSON object")

        synced_ids = {}
        for entity_type, ids in _require_mapping(data.get('syncedIds'), 'syncedIds').items():
            synced_ids[entity_type] = list(_require_list(ids, f'syncedIds.{entity_type}'))

        conflicts = {}
        for entity_type, items in _require_mapping(data.get('conflicts'), 'conflicts').items():
            reports = []
            for item in _require_list(items, f'conflicts.{entity_type}'):
                if (not isinstance(item, dict) or 'id' not in item
                        or not isinstance(item.get('serverVersion'), dict)):
                    raise ProtocolError(f"Malformed conflict entry for {entity_type}: {item!r}")
                reports.append(ConflictReport(id=item['id'], server_version=item['serverVersion']))
            conflicts[entity_type] = reports

        errors = {}
        for entity_type, items in _require_mapping(data.get('errors'), 'errors').items():
            reports = []
            for item in _require_list(items, f'errors.{entity_type}'):
                if not isinstance(item, dict) or 'id' not in item:
                    raise ProtocolError(f"Malformed error entry for {entity_type}: {item!r}")
                reports.append(EntryErrorReport(
                    id=item['id'],
                    code=str(item.get('code', '')),
                    message=str(item.get('message') or ''),
                ))
            errors[entity_type] = reports

        return cls(synced_ids=synced_ids, conflicts=conflicts, errors=errors)

    def resolved_ids(self, entity_type: str) -> set:
        """Ids of an entity type that carry a conflict or error in this response."""
        ids = {c.id for c in self.conflicts.get(entity_type, [])}
        ids.update(e.id for e in self.errors.get(entity_type, []))
        return ids


@dataclass
class SyncResult:
    """Outcome of one pull+push cycle."""

    status: SyncStatus
    started_at: Optional[int] = None
    finished_at: Optional[int] = None
    pulled: int = 0
    pushed: int = 0
    synced: int = 0
    conflicts: int = 0
    errors: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == SyncStatus.SUCCESS

    def __bool__(self) -> bool:
        return self.success

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'started_at': self.started_at,
            'finished_at': self.finished_at,
            'pulled': self.pulled,
            'pushed': self.pushed,
            'synced': self.synced,
            'conflicts': self.conflicts,
            'errors': self.errors,
            'error': self.error,
        }


@dataclass
class SyncState:
    """Snapshot of engine state for UIs that poll for spinners or badges."""
    is_online: bool
    is_syncing: bool
    last_sync_timestamp: Optional[int]
    pending_count: int
    errored_count: int
    last_result: Optional[SyncResult] = None
