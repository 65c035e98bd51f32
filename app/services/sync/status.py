"""Status reports for sync runs.

is_complete comes from completed_at alone. A run whose status already reads
terminal but whose completed_at is not yet visible is reported as not
complete, and callers keep polling.
"""
import logging
from typing import Dict, List

from sqlalchemy.orm import Session

from app.models import SyncRun
from app.repositories.sync_run_repository import SyncRunRepository
from app.services.sync.exceptions import SyncRunNotFoundError

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 500


def _iso(value):
    return value.isoformat() if value else None


def run_summary(run: SyncRun) -> Dict:
    """Flat view of one run."""
    return {
        'id': run.id,
        'kind': run.kind,
        'status': run.status,
        'is_complete': run.completed_at is not None,
        'records_synced': run.records_synced or 0,
        'records_failed': run.records_failed or 0,
        'duration_seconds': run.duration_seconds,
        'error_message': run.error_message,
        'started_at': _iso(run.started_at),
        'completed_at': _iso(run.completed_at),
        'parent_run_id': run.parent_run_id,
    }


class StatusReporter:
    """Read-only view over SyncRun records."""

    def __init__(self, db: Session):
        self.repo = SyncRunRepository(db)

    def get_status(self, run_id: str) -> Dict:
        """
        Current state of a run, with its stage runs for orchestrated syncs.

        Args:
            run_id: SyncRun id

        Returns:
            Run summary plus a 'stages' list (empty for single-task runs)

        Raises:
            SyncRunNotFoundError: If no run has that id
        """
        run = self.repo.find_by_id(run_id)
        if run is None:
            raise SyncRunNotFoundError(f"Sync run {run_id} not found")

        report = run_summary(run)
        if run.status != 'running' and run.completed_at is None:
            logger.debug(f"Sync run {run_id} reads {run.status} but completion is not visible yet")
        report['stages'] = [run_summary(child) for child in self.repo.children(run_id)]
        return report

    def list_history(self, limit: int = 100) -> List[Dict]:
        """Newest runs first, at most MAX_HISTORY_LIMIT."""
        limit = max(1, min(limit, MAX_HISTORY_LIMIT))
        return [run_summary(run) for run in self.repo.history(limit)]
