"""Offline-first data synchronization engine.

``DataSyncService`` ties the mutation log, transport, conflict resolver,
scheduler, connectivity monitor and change notifier together. Every
collaborator is injected so tests and embedders can substitute fakes; the
service binds to no process-wide state and has an explicit start/stop
lifecycle.

One cycle pulls remote changes since the checkpoint, applies them to the
read model, then pushes the unsynced local changes. The checkpoint only
advances when both phases succeed.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from ..config import SyncSettings
from ..utils.datetime import now_ms
from .conflict_resolver import ConflictResolver
from .connectivity import ConnectivityMonitor
from .errors import (
    AuthenticationError,
    NetworkError,
    ProtocolError,
    ServerError,
    SyncError,
    SyncTimeoutError,
)
from .models import (
    ChangeAction,
    ChangeEntry,
    EntryErrorReport,
    SyncResponse,
    SyncResult,
    SyncState,
    SyncStatus,
)
from .mutation_log import MutationLog
from .notifier import ChangeNotifier
from .read_model import ReadModelCache
from .scheduler import SyncScheduler
from .storage import JsonFileStorage, KeyValueStorage, MemoryStorage, SyncCheckpoint
from .transport import HttpSyncTransport, SyncTransport


logger = logging.getLogger(__name__)


class DataSyncService:
    """Queues local mutations and reconciles them with the server."""

    def __init__(self, transport: SyncTransport,
                 storage: Optional[KeyValueStorage] = None,
                 settings: Optional[SyncSettings] = None,
                 connectivity: Optional[ConnectivityMonitor] = None,
                 notifier: Optional[ChangeNotifier] = None,
                 read_model: Optional[ReadModelCache] = None,
                 clock: Callable[[], int] = now_ms,
                 auth_token: Optional[str] = None):
        """Initialize the service.

        Args:
            transport: Network side of the cycle
            storage: Durable store for pending changes and the checkpoint
            settings: Engine settings; defaults when omitted
            connectivity: Online/offline signal
            notifier: Broadcast channel for applied remote changes
            read_model: UI-facing cache refreshed by pulls
            clock: Source of epoch-millisecond timestamps
            auth_token: Bearer token; falls back to ``settings.auth_token``
        """
        self.settings = settings or SyncSettings()
        self.transport = transport
        self.storage = storage if storage is not None else MemoryStorage()
        self.connectivity = connectivity or ConnectivityMonitor()
        self.notifier = notifier or ChangeNotifier()
        self.read_model = read_model or ReadModelCache()
        self.clock = clock

        self.mutation_log = MutationLog(
            self.storage,
            retention_ms=self.settings.retention_seconds * 1000,
            local_id_prefix=self.settings.local_id_prefix,
            clock=clock,
        )
        self.checkpoint = SyncCheckpoint(self.storage)
        self.conflict_resolver = ConflictResolver(self.mutation_log, self.notifier, self.read_model)
        self.scheduler = SyncScheduler(self.sync_data, self.connectivity)

        self.auth_token = None
        self.set_auth_token(auth_token or self.settings.auth_token)

        self.last_result: Optional[SyncResult] = None
        self._syncing = False
        self._unsubscribe_connectivity: Optional[Callable[[], None]] = None
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_settings(cls, settings: SyncSettings, **kwargs) -> 'DataSyncService':
        """Build a service with file storage and the REST transport."""
        transport = HttpSyncTransport(
            settings.api_url,
            auth_token=settings.auth_token,
            sync_path=settings.sync_path,
            timeout=settings.request_timeout_seconds,
        )
        storage = JsonFileStorage(settings.data_path / "sync")
        return cls(transport, storage=storage, settings=settings, **kwargs)

    # Lifecycle

    def load(self) -> None:
        """Reload pending changes and the checkpoint from storage."""
        self.mutation_log.load()
        self.checkpoint.load()

    async def start(self, auth_token: Optional[str] = None,
                    interval_seconds: Optional[float] = None) -> None:
        """Load persisted state, arm the timer and run an initial sync.

        Args:
            auth_token: Optional token replacing the current one
            interval_seconds: Timer interval; defaults to the configured one
        """
        if auth_token:
            self.set_auth_token(auth_token)
        self.load()

        self.scheduler.start(interval_seconds or self.settings.sync_interval_seconds)
        if self._unsubscribe_connectivity is None:
            self._unsubscribe_connectivity = self.connectivity.subscribe(self._handle_connectivity_change)

        if self.connectivity.is_online and self.auth_token:
            self.scheduler.trigger()

    async def stop(self) -> None:
        """Disarm the timer and wait for an in-flight cycle to finish."""
        self.scheduler.stop()
        if self._unsubscribe_connectivity is not None:
            self._unsubscribe_connectivity()
            self._unsubscribe_connectivity = None
        await self.scheduler.wait_idle()

    async def aclose(self) -> None:
        await self.stop()
        await self.transport.aclose()

    def _handle_connectivity_change(self, online: bool):
        if online:
            self.logger.info("App is online. Attempting to sync pending changes...")
            self.scheduler.trigger()
        else:
            self.logger.info("App is offline. Changes will be stored locally.")

    def set_auth_token(self, auth_token: Optional[str]) -> None:
        self.auth_token = auth_token
        self.transport.set_auth_token(auth_token)

    # Local mutations

    def queue_change(self, entity_type: str, action: Union[ChangeAction, str],
                     data: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """Queue a change to be synced with the server.

        Attempts an immediate sync when online.

        Returns:
            The entity id, generated for creates without one
        """
        entity_id = self.mutation_log.enqueue(entity_type, action, data)
        if self.connectivity.is_online and self.auth_token:
            self.scheduler.trigger()
        return entity_id

    def get_unsynced(self) -> Dict[str, List[ChangeEntry]]:
        return self.mutation_log.get_unsynced()

    def discard_change(self, entity_type: str, entity_id: Any) -> int:
        return self.mutation_log.discard(entity_type, entity_id)

    def discard_errored(self) -> int:
        return self.mutation_log.discard_errored()

    @property
    def last_sync_timestamp(self) -> Optional[int]:
        return self.checkpoint.value

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    def get_state(self) -> SyncState:
        return SyncState(
            is_online=self.connectivity.is_online,
            is_syncing=self._syncing,
            last_sync_timestamp=self.checkpoint.value,
            pending_count=self.mutation_log.pending_count(),
            errored_count=self.mutation_log.errored_count(),
            last_result=self.last_result,
        )

    # Sync cycle

    async def sync_data(self) -> SyncResult:
        """Run one pull-then-push cycle.

        Never raises; failures are reported through the result and leave
        the checkpoint and pending changes untouched.
        """
        if not self.auth_token:
            self.logger.error("Cannot sync: No auth token provided")
            return self._finish(SyncResult(SyncStatus.NOT_AUTHENTICATED, error="No auth token provided"))

        if not self.connectivity.is_online:
            self.logger.debug("Cannot sync: Device is offline")
            return self._finish(SyncResult(SyncStatus.OFFLINE))

        if self._syncing:
            self.logger.debug("Sync already in progress; skipping")
            return SyncResult(SyncStatus.SKIPPED)

        self._syncing = True
        started_at = self.clock()
        result = SyncResult(SyncStatus.SUCCESS, started_at=started_at)
        self.logger.info(f"Sync cycle started (since={self.checkpoint.since})")

        try:
            result.pulled = await self.pull_changes()
            pushed, synced, conflicts, errors = await self.push_changes()
            result.pushed = pushed
            result.synced = synced
            result.conflicts = conflicts
            result.errors = errors

            self.checkpoint.update(started_at)
        except AuthenticationError as e:
            self._fail(result, SyncStatus.AUTH_FAILED, e)
        except SyncTimeoutError as e:
            self._fail(result, SyncStatus.TIMEOUT, e)
        except NetworkError as e:
            self._fail(result, SyncStatus.NETWORK_ERROR, e)
        except ServerError as e:
            self._fail(result, SyncStatus.SERVER_ERROR, e)
        except SyncError as e:
            self._fail(result, SyncStatus.ERROR, e)
        except Exception as e:
            self.logger.error(f"Sync failed unexpectedly: {e}", exc_info=True)
            result.status = SyncStatus.ERROR
            result.error = str(e)
        finally:
            self._syncing = False

        if result.success:
            self.logger.info(
                f"Sync cycle finished: pulled {result.pulled}, pushed {result.pushed}, "
                f"synced {result.synced}, conflicts {result.conflicts}, errors {result.errors}"
            )
        return self._finish(result)

    def _fail(self, result: SyncResult, status: SyncStatus, error: Exception):
        self.logger.error(f"Sync failed: {error}")
        result.status = status
        result.error = str(error)

    def _finish(self, result: SyncResult) -> SyncResult:
        result.finished_at = self.clock()
        self.last_result = result
        return result

    async def _call(self, awaitable: Awaitable[Any]) -> Any:
        """Await a transport call bounded by the request timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.settings.request_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise SyncTimeoutError(
                f"Transport call exceeded {self.settings.request_timeout_seconds}s"
            ) from e

    async def pull_changes(self) -> int:
        """Fetch and apply remote changes since the checkpoint.

        Returns:
            Number of remote records applied
        """
        server_changes = await self._call(self.transport.pull(self.checkpoint.since))
        if not server_changes:
            return 0
        if not isinstance(server_changes, dict):
            raise ProtocolError("Pull response must be an object keyed by entity type")
        return self.apply_server_changes(server_changes)

    def apply_server_changes(self, server_changes: Dict[str, Any]) -> int:
        """Merge pulled records into the read model and notify subscribers."""
        applied = 0
        for entity_type, entities in server_changes.items():
            if not isinstance(entities, list):
                self.logger.warning(f"Ignoring non-list server changes for {entity_type}")
                continue
            self.logger.debug(f"Applying server changes for {entity_type}: {len(entities)}")
            applied += self.read_model.apply(entity_type, entities)
            self.notifier.notify(entity_type, entities)
        return applied

    async def push_changes(self) -> Tuple[int, int, int, int]:
        """Send unsynced changes and process the server's verdicts.

        Returns:
            Tuple of (pushed, synced, conflicts resolved, errors reported)
        """
        changes_to_sync = self.mutation_log.get_unsynced()
        if not changes_to_sync:
            self.logger.debug("No changes to push to server")
            return 0, 0, 0, 0

        pushed = sum(len(entries) for entries in changes_to_sync.values())
        raw = await self._call(self.transport.push(changes_to_sync))
        response = SyncResponse.from_dict(raw)
        synced, conflicts, errors = self.handle_sync_response(response)
        return pushed, synced, conflicts, errors

    def handle_sync_response(self, response: SyncResponse) -> Tuple[int, int, int]:
        """Apply a push response: conflicts, then errors, then acknowledgements.

        An id reported as conflicting or failed is not also marked synced
        from the same response.

        Returns:
            Tuple of (synced, conflicts resolved, errors reported)
        """
        conflicts = self.conflict_resolver.resolve_conflicts(response.conflicts)
        errors = self._handle_sync_errors(response.errors)

        acknowledged = {}
        for entity_type, ids in response.synced_ids.items():
            excluded = response.resolved_ids(entity_type)
            acknowledged[entity_type] = [i for i in ids if i not in excluded]
        synced = self.mutation_log.mark_synced(acknowledged)
        return synced, conflicts, errors

    def _handle_sync_errors(self, errors: Dict[str, List[EntryErrorReport]]) -> int:
        terminal = set(self.settings.terminal_error_codes)
        reported = 0
        for entity_type, reports in errors.items():
            for report in reports:
                reported += 1
                self.logger.error(
                    f"Sync error for {entity_type} {report.id}: [{report.code}] {report.message}"
                )
                if report.code in terminal:
                    self.mutation_log.attach_error(entity_type, report.id, report.code, report.message)
        return reported

    def clear_all(self) -> None:
        """Drop all local sync state (for logout)."""
        self.scheduler.stop()
        self.mutation_log.clear()
        self.checkpoint.clear()
        self.read_model.clear()
        self.last_result = None
