"""Shared run bookkeeping for source sync tasks.

A task opens its own SyncRun, does its work, and closes the run exactly
once. Entity failures are counted on the run; an exception escaping
_sync() closes the run as failed and is re-raised to the caller.

Store work runs on the store executor, one session per unit of work;
only source I/O runs on the event loop.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, TypeVar

from sqlalchemy.orm import Session

from app.core import metrics
from app.core.database import run_in_db_executor
from app.core.logging import sync_run_context
from app.repositories.sync_run_repository import (
    FAILED, PARTIAL, SUCCESS, SyncRunRepository
)
from app.utils.timezone import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

SessionFactory = Callable[[], Session]

# Error messages kept on a run before the rest are summarized as a count
MAX_REPORTED_ERRORS = 10


def compute_status(records_synced: int, records_failed: int, has_errors: bool) -> str:
    """
    Terminal status from aggregate counts.

    failed  - errors and nothing synced
    partial - any errors or failures with something synced
    success - otherwise
    """
    if has_errors and records_synced == 0:
        return FAILED
    if has_errors or records_failed > 0:
        return PARTIAL
    return SUCCESS


def summarize_errors(errors: Sequence[str]) -> Optional[str]:
    """Join the first few errors into one message."""
    if not errors:
        return None
    shown = "; ".join(errors[:MAX_REPORTED_ERRORS])
    hidden = len(errors) - MAX_REPORTED_ERRORS
    if hidden > 0:
        shown += f" (+{hidden} more)"
    return shown


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Consecutive slices of at most size items."""
    size = max(1, size)
    for start in range(0, len(items), size):
        yield items[start:start + size]


@dataclass
class TaskResult:
    records_synced: int = 0
    records_failed: int = 0
    errors: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    def fail(self, message: str) -> None:
        self.records_failed += 1
        self.errors.append(message)


class SyncTask:
    """
    Base class for one-source sync tasks.

    Subclasses set `kind` and implement `_sync(run_id, result)`.
    """

    kind = "task"

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    async def run(self, run_id: Optional[str] = None, parent_run_id: Optional[str] = None) -> Dict:
        """
        Execute the task under its own SyncRun record.

        Args:
            run_id: Id to give the run (the orchestrator pre-assigns it so it can poll)
            parent_run_id: Orchestration run this task belongs to

        Returns:
            Dict with run_id, status, counts, errors and duration

        Raises:
            Exception: Task-fatal errors, after the run is closed as failed
        """
        start_time = utcnow()
        run_id = await run_in_db_executor(self._open_run, run_id, parent_run_id)
        result = TaskResult()

        with sync_run_context(run_id):
            logger.info(f"Starting {self.kind} sync")
            try:
                await self._sync(run_id, result)
            except Exception as e:
                logger.error(f"{self.kind} sync failed: {e}")
                result.errors.append(str(e))
                await run_in_db_executor(self._close_run, run_id, FAILED, result, start_time)
                raise

            status = compute_status(result.records_synced, result.records_failed, bool(result.errors))
            duration = await run_in_db_executor(self._close_run, run_id, status, result, start_time)
            logger.info(
                f"{self.kind} sync {status}: {result.records_synced} synced, "
                f"{result.records_failed} failed ({duration:.1f}s)"
            )

        return {
            'run_id': run_id,
            'kind': self.kind,
            'status': status,
            'records_synced': result.records_synced,
            'records_failed': result.records_failed,
            'errors': list(result.errors),
            'duration_seconds': duration,
            **result.details,
        }

    async def _sync(self, run_id: str, result: TaskResult) -> None:
        raise NotImplementedError

    def _open_run(self, run_id: Optional[str], parent_run_id: Optional[str]) -> str:
        db = self.session_factory()
        try:
            repo = SyncRunRepository(db)
            # A trigger may already have recorded the run so it is visible immediately
            existing = repo.find_by_id(run_id) if run_id else None
            if existing is not None:
                return existing.id
            return repo.start(self.kind, parent_run_id=parent_run_id, run_id=run_id).id
        finally:
            db.close()

    def _close_run(self, run_id: str, status: str, result: TaskResult, start_time) -> float:
        completed_at = utcnow()
        duration = (completed_at - start_time).total_seconds()
        db = self.session_factory()
        try:
            closed = SyncRunRepository(db).close(
                run_id,
                status=status,
                records_synced=result.records_synced,
                records_failed=result.records_failed,
                error_message=summarize_errors(result.errors),
                completed_at=completed_at,
                duration_seconds=duration,
            )
        finally:
            db.close()
        if closed:
            metrics.record_sync_run(self.kind, status, duration, result.records_synced, result.records_failed)
        else:
            logger.warning(f"Sync run {run_id} was already closed")
        return duration
