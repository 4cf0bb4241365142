"""Server-authoritative conflict resolution.

For every conflict the server reports, the matching pending change takes
the server's version and is marked synced. There is no three-way merge
and no client-wins option.
"""

import logging
from typing import Dict, List, Optional

from .models import ConflictReport
from .mutation_log import MutationLog
from .notifier import ChangeNotifier
from .read_model import ReadModelCache


logger = logging.getLogger(__name__)


class ConflictResolver:
    """Applies server versions for conflicting pending changes."""

    def __init__(self, mutation_log: MutationLog, notifier: ChangeNotifier,
                 read_model: Optional[ReadModelCache] = None):
        self.mutation_log = mutation_log
        self.notifier = notifier
        self.read_model = read_model
        self.logger = logging.getLogger(__name__)

    def resolve_conflicts(self, conflicts: Dict[str, List[ConflictReport]]) -> int:
        """Resolve all reported conflicts in favour of the server.

        Args:
            conflicts: Conflict reports by entity type

        Returns:
            Number of pending changes resolved
        """
        resolved = 0
        for entity_type, reports in conflicts.items():
            for report in reports:
                entry = self.mutation_log.resolve_conflict(entity_type, report.id, report.server_version)
                if entry is None:
                    self.logger.warning(
                        f"Conflict for {entity_type} {report.id} matches no pending change; ignoring"
                    )
                    continue

                resolved += 1
                self.logger.info(f"Resolved conflict for {entity_type} {report.id} - server version accepted")

                if self.read_model is not None and isinstance(report.server_version, dict):
                    self.read_model.apply(entity_type, [report.server_version])
                self.notifier.notify(entity_type, [report.server_version])
        return resolved
