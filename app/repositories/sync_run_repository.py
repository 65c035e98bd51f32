"""
Sync Run Repository.

A run is created 'running' and closed once. close() only touches a row that
is still open, so its boolean result tells "closed now" apart from "missing
or already closed".
"""
from datetime import datetime
from typing import List, Optional

from app.models import SyncRun
from app.repositories.base import BaseRepository
from app.utils.timezone import utcnow

RUNNING = "running"
SUCCESS = "success"
PARTIAL = "partial"
FAILED = "failed"

TERMINAL_STATUSES = (SUCCESS, PARTIAL, FAILED)


class SyncRunRepository(BaseRepository[SyncRun]):
    """Repository for sync run records."""

    def __init__(self, db):
        """Initialize the sync run repository."""
        super().__init__(SyncRun, db)

    def start(self, kind: str, parent_run_id: Optional[str] = None, run_id: Optional[str] = None) -> SyncRun:
        """Create a running record and commit it."""
        fields = {
            "kind": kind,
            "status": RUNNING,
            "records_synced": 0,
            "records_failed": 0,
            "started_at": utcnow(),
            "parent_run_id": parent_run_id,
        }
        if run_id:
            fields["id"] = run_id
        run = self.create(**fields)
        self.db.commit()
        return run

    def close(
        self,
        run_id: str,
        status: str,
        records_synced: int,
        records_failed: int,
        error_message: Optional[str],
        completed_at: datetime,
        duration_seconds: float,
    ) -> bool:
        """
        Close an open run and commit.

        Returns:
            True if an open run was closed, False if none matched
        """
        updated = self.db.query(SyncRun).filter(
            SyncRun.id == run_id,
            SyncRun.completed_at.is_(None)
        ).update({
            "status": status,
            "records_synced": records_synced,
            "records_failed": records_failed,
            "error_message": error_message,
            "completed_at": completed_at,
            "duration_seconds": duration_seconds,
        }, synchronize_session=False)
        self.db.commit()
        return updated > 0

    def mark_completed(self, run_id: str, completed_at: datetime) -> bool:
        """Last-resort close that stamps only completed_at on an open run."""
        updated = self.db.query(SyncRun).filter(
            SyncRun.id == run_id,
            SyncRun.completed_at.is_(None)
        ).update({"completed_at": completed_at}, synchronize_session=False)
        self.db.commit()
        return updated > 0

    def children(self, parent_run_id: str) -> List[SyncRun]:
        """Stage runs of an orchestration run, oldest first."""
        return self.db.query(SyncRun).filter(
            SyncRun.parent_run_id == parent_run_id
        ).order_by(SyncRun.started_at.asc()).all()

    def history(self, limit: int = 100) -> List[SyncRun]:
        """Newest runs first."""
        return self.db.query(SyncRun).order_by(SyncRun.started_at.desc()).limit(limit).all()

    def stale_running(self, started_before: datetime) -> List[SyncRun]:
        """Runs still open that started before the cutoff."""
        return self.db.query(SyncRun).filter(
            SyncRun.completed_at.is_(None),
            SyncRun.started_at < started_before
        ).all()
