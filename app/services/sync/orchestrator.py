"""Sync orchestrator for coordinating directory and device syncs.

This orchestrator coordinates:
- Triggering sync runs (directory, devices, or both) without blocking the caller
- Running Directory Sync before Device Sync for full runs
- Stage timeouts, with fallback to the stage's own SyncRun record when its
  direct result is lost
- Closing every run it starts, with a verified write
- Recovering runs abandoned by a crash or restart

Run lifecycle: running → success | partial | failed (terminal, written once).

A full ("all") run:
1. Record the run as running and return its id to the caller
2. Directory stage: first of {task result, timeout, polled child record}.
   Failure or timeout fails the run; Device Sync is not started, since
   device ownership must reflect fresh directory data.
3. Device stage: task result or timeout, with one store check on failure
4. Aggregate counts and close the run

Store reads and writes go through the store executor, so the timeout and
poll branches keep firing while a stage is busy writing.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.core import metrics
from app.core.config import settings as default_settings
from app.core.database import run_in_db_executor
from app.core.logging import sync_run_context
from app.models.models import new_id
from app.repositories.sync_run_repository import FAILED, SyncRunRepository
from app.services.sync.adapters.directory_client import DirectoryClient
from app.services.sync.adapters.management_client import ManagementClient
from app.services.sync.base_task import SessionFactory, compute_status, summarize_errors
from app.services.sync.device_sync import DeviceSyncTask
from app.services.sync.directory_sync import DirectorySyncTask
from app.services.sync.exceptions import RunVisibilityError, UnknownSyncKindError
from app.services.sync.run_registry import SyncTaskRegistry
from app.services.sync.software_sync import SoftwareSyncTask
from app.services.sync.status import StatusReporter
from app.services.sync.utils.waiting import TIMEOUT, first_of, retry_on_visibility_lag
from app.utils.timezone import utcnow

logger = logging.getLogger(__name__)

DIRECTORY = "directory"
DEVICES = "devices"
ALL = "all"

SYNC_KINDS = (DIRECTORY, DEVICES, ALL)


class SyncOrchestrator:
    """
    Coordinates sync runs between the directory and the management service.

    This is the main entry point for the sync engine. Triggers, status
    polling and history all go through the orchestrator.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        directory_client: DirectoryClient,
        management_client: ManagementClient,
        registry: SyncTaskRegistry,
        config=None,
    ):
        """
        Initialize the sync orchestrator.

        Args:
            session_factory: Callable returning a new SQLAlchemy session
            directory_client: Client for the identity directory
            management_client: Client for the device management service
            registry: Holds background tasks until they finish
            config: Settings object (defaults to app settings)
        """
        config = config or default_settings
        self.session_factory = session_factory
        self.directory_client = directory_client
        self.management_client = management_client
        self.registry = registry

        self.batch_size = config.SYNC_BATCH_SIZE
        self.directory_timeout = config.SYNC_DIRECTORY_TIMEOUT_SECONDS
        self.device_timeout = config.SYNC_DEVICE_TIMEOUT_SECONDS
        self.poll_interval = config.SYNC_POLL_INTERVAL_SECONDS
        self.close_attempts = config.SYNC_CLOSE_ATTEMPTS
        self.close_backoff = config.SYNC_CLOSE_BACKOFF_SECONDS
        self.stale_run_minutes = config.SYNC_STALE_RUN_MINUTES

        self.software_task = SoftwareSyncTask(session_factory, management_client)

    # ========================================================================
    # Tasks
    # ========================================================================

    def directory_task(self) -> DirectorySyncTask:
        return DirectorySyncTask(self.session_factory, self.directory_client, batch_size=self.batch_size)

    def device_task(self) -> DeviceSyncTask:
        return DeviceSyncTask(
            self.session_factory,
            self.management_client,
            batch_size=self.batch_size,
            schedule_software=self._schedule_software,
        )

    def _schedule_software(self, device_id: str, management_device_id: str) -> None:
        """Fire-and-forget software sync; skipped if one is already running for the device."""
        key = f"software:{device_id}"
        if self.registry.is_active(key):
            logger.debug(f"Software sync already running for device {device_id}")
            return
        self.registry.register(key, self.software_task.sync_device(device_id, management_device_id))

    # ========================================================================
    # Triggering
    # ========================================================================

    async def trigger_sync(self, kind: str) -> str:
        """
        Start a sync run in the background.

        The run is recorded before this returns, so the id can be polled
        right away.

        Args:
            kind: directory, devices or all

        Returns:
            The new SyncRun id

        Raises:
            UnknownSyncKindError: For any other kind
        """
        if kind not in SYNC_KINDS:
            raise UnknownSyncKindError(f"Unknown sync kind '{kind}', expected one of {', '.join(SYNC_KINDS)}")

        run_id = await run_in_db_executor(self._start_run, kind)

        if kind == ALL:
            self.registry.register(run_id, self._run_all(run_id))
        else:
            self.registry.register(run_id, self._run_single(kind, run_id))

        logger.info(f"Triggered {kind} sync {run_id}")
        return run_id

    def _start_run(self, kind: str) -> str:
        db = self.session_factory()
        try:
            return SyncRunRepository(db).start(kind).id
        finally:
            db.close()

    async def _run_single(self, kind: str, run_id: str) -> None:
        """Run one task under an already-recorded run."""
        task = self.directory_task() if kind == DIRECTORY else self.device_task()
        start_time = utcnow()
        try:
            await task.run(run_id=run_id)
        except asyncio.CancelledError:
            self._close_unverified(run_id, start_time, "Sync cancelled before completion")
            raise
        except Exception as e:
            # The task closes its own run; this covers failures before it could
            logger.error(f"{kind} sync {run_id} failed: {e}")
            await self._close_run(run_id, kind, FAILED, 0, 0, [str(e)], start_time)

    # ========================================================================
    # Full run state machine
    # ========================================================================

    async def _run_all(self, run_id: str) -> Dict:
        """
        Directory stage, then device stage, then close the run.

        Returns:
            Summary dict with status, counts and per-stage results
        """
        start_time = utcnow()
        errors: List[str] = []
        records_synced = 0
        records_failed = 0
        stages: Dict[str, Dict] = {}

        with sync_run_context(run_id):
            logger.info("Starting full sync")
            try:
                directory = await self._run_directory_stage(run_id)
                stages[DIRECTORY] = directory
                records_synced += directory['records_synced']
                records_failed += directory['records_failed']

                if directory['status'] == FAILED:
                    errors.append(f"Directory sync failed: {directory.get('error') or 'unknown error'}")
                    logger.error("Directory sync did not succeed, skipping device sync")
                    await self._close_run(run_id, ALL, FAILED, records_synced, records_failed, errors, start_time)
                    return {'run_id': run_id, 'status': FAILED, 'stages': stages, 'errors': errors}

                devices = await self._run_device_stage(run_id)
                stages[DEVICES] = devices
                records_synced += devices['records_synced']
                records_failed += devices['records_failed']
                if devices['status'] == FAILED:
                    errors.append(f"Device sync failed: {devices.get('error') or 'unknown error'}")

                status = compute_status(records_synced, records_failed, bool(errors))
                await self._close_run(run_id, ALL, status, records_synced, records_failed, errors, start_time)
                logger.info(
                    f"Full sync {status}: {records_synced} synced, {records_failed} failed"
                )
                return {
                    'run_id': run_id,
                    'status': status,
                    'records_synced': records_synced,
                    'records_failed': records_failed,
                    'stages': stages,
                    'errors': errors,
                }

            except asyncio.CancelledError:
                self._close_unverified(run_id, start_time, "Sync cancelled before completion")
                raise
            except Exception as e:
                logger.exception(f"Full sync {run_id} failed unexpectedly: {e}")
                errors.append(f"Unexpected error: {e}")
                await self._close_run(run_id, ALL, FAILED, records_synced, records_failed, errors, start_time)
                return {'run_id': run_id, 'status': FAILED, 'stages': stages, 'errors': errors}

    async def _run_directory_stage(self, parent_run_id: str) -> Dict:
        """
        Run Directory Sync, racing its result against a timeout and its own run record.

        Returns:
            Stage dict: status, records_synced, records_failed, error, source
        """
        child_id = new_id()
        task = self.registry.register(
            child_id, self.directory_task().run(run_id=child_id, parent_run_id=parent_run_id)
        )
        outcome = await first_of(
            task,
            timeout=self.directory_timeout,
            poll=lambda: self._poll_closed_run(child_id),
            poll_interval=self.poll_interval,
        )

        if outcome.error is not None:
            return self._stage(child_id, FAILED, 0, 0, str(outcome.error), outcome.winner)

        if outcome.winner == TIMEOUT:
            logger.error(f"Directory sync {child_id} did not finish within {self.directory_timeout}s")
            return self._stage(child_id, FAILED, 0, 0, f"timed out after {self.directory_timeout:g}s", TIMEOUT)

        # Task results carry an error list, polled records a stored message
        value = outcome.value
        return self._stage(
            child_id,
            value['status'],
            value.get('records_synced') or 0,
            value.get('records_failed') or 0,
            value.get('error_message') or summarize_errors(value.get('errors') or []),
            outcome.winner,
        )

    async def _run_device_stage(self, parent_run_id: str) -> Dict:
        """
        Run Device Sync with a timeout; on a lost result, check its record once.

        Returns:
            Stage dict: status, records_synced, records_failed, error, source
        """
        child_id = new_id()
        task = self.registry.register(
            child_id, self.device_task().run(run_id=child_id, parent_run_id=parent_run_id)
        )
        outcome = await first_of(task, timeout=self.device_timeout)

        if outcome.ok:
            value = outcome.value
            return self._stage(
                child_id, value['status'], value['records_synced'], value['records_failed'],
                summarize_errors(value.get('errors') or []), outcome.winner
            )

        recorded = await self._poll_closed_run(child_id)
        if recorded is not None:
            logger.warning(f"Device sync {child_id} result lost, using its recorded state")
            return self._stage(
                child_id, recorded['status'], recorded['records_synced'], recorded['records_failed'],
                recorded['error_message'], "recorded"
            )

        if outcome.winner == TIMEOUT:
            logger.error(f"Device sync {child_id} did not finish within {self.device_timeout}s")
            return self._stage(child_id, FAILED, 0, 0, f"timed out after {self.device_timeout:g}s", TIMEOUT)
        return self._stage(child_id, FAILED, 0, 0, str(outcome.error), outcome.winner)

    @staticmethod
    def _stage(run_id, status, synced, failed, error, source) -> Dict:
        return {
            'run_id': run_id,
            'status': status,
            'records_synced': synced,
            'records_failed': failed,
            'error': error,
            'source': source,
        }

    async def _poll_closed_run(self, run_id: str) -> Optional[Dict]:
        """Snapshot of a run once it has a completed_at, else None."""
        return await run_in_db_executor(self._read_closed_run, run_id)

    def _read_closed_run(self, run_id: str) -> Optional[Dict]:
        db = self.session_factory()
        try:
            run = SyncRunRepository(db).find_by_id(run_id)
            if run is None or run.completed_at is None:
                return None
            return {
                'status': run.status,
                'records_synced': run.records_synced or 0,
                'records_failed': run.records_failed or 0,
                'error_message': run.error_message,
            }
        finally:
            db.close()

    # ========================================================================
    # Closing runs
    # ========================================================================

    async def _close_run(
        self,
        run_id: str,
        kind: str,
        status: str,
        records_synced: int,
        records_failed: int,
        errors: List[str],
        start_time,
    ) -> None:
        """
        Close a run and verify the close from a fresh session.

        Retries with backoff while the close is not visible; falls back to
        stamping completed_at alone rather than leaving the run open.
        """
        completed_at = utcnow()
        duration = (completed_at - start_time).total_seconds()
        error_message = summarize_errors(errors)
        written = []

        def write_and_verify() -> str:
            db = self.session_factory()
            try:
                closed = SyncRunRepository(db).close(
                    run_id,
                    status=status,
                    records_synced=records_synced,
                    records_failed=records_failed,
                    error_message=error_message,
                    completed_at=completed_at,
                    duration_seconds=duration,
                )
                if closed:
                    written.append(True)
            except SQLAlchemyError as e:
                db.rollback()
                raise RunVisibilityError(run_id, f"close failed: {e}") from e
            finally:
                db.close()

            check = self.session_factory()
            try:
                run = SyncRunRepository(check).find_by_id(run_id)
            except SQLAlchemyError as e:
                raise RunVisibilityError(run_id, f"verify failed: {e}") from e
            finally:
                check.close()
            if run is None:
                raise RunVisibilityError(run_id, "record not found")
            if run.completed_at is None:
                raise RunVisibilityError(run_id, "completed_at not set")
            return run.status

        try:
            stored_status = await retry_on_visibility_lag(
                lambda: run_in_db_executor(write_and_verify),
                attempts=self.close_attempts,
                min_wait=self.close_backoff,
            )
        except RunVisibilityError as e:
            logger.error(f"Could not verify close of sync run {run_id}: {e}; stamping completion only")
            await run_in_db_executor(self._mark_completed, run_id)
            return

        if not written:
            if stored_status != status:
                logger.warning(f"Sync run {run_id} was already closed as {stored_status}, wanted {status}")
            return
        metrics.record_sync_run(kind, status, duration, records_synced, records_failed)

    def _mark_completed(self, run_id: str) -> None:
        db = self.session_factory()
        try:
            SyncRunRepository(db).mark_completed(run_id, utcnow())
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Minimal close of sync run {run_id} failed: {e}")
        finally:
            db.close()

    def _close_unverified(self, run_id: str, start_time, message: str) -> None:
        """Single synchronous close attempt, for paths that cannot await."""
        completed_at = utcnow()
        db = self.session_factory()
        try:
            SyncRunRepository(db).close(
                run_id,
                status=FAILED,
                records_synced=0,
                records_failed=0,
                error_message=message,
                completed_at=completed_at,
                duration_seconds=(completed_at - start_time).total_seconds(),
            )
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to close cancelled sync run {run_id}: {e}")
        finally:
            db.close()

    # ========================================================================
    # Recovery, status and history
    # ========================================================================

    def recover_abandoned_runs(self, older_than_minutes: Optional[int] = None) -> int:
        """
        Fail open runs that no live task owns and that started before the ceiling.

        Returns:
            Number of runs closed
        """
        minutes = self.stale_run_minutes if older_than_minutes is None else older_than_minutes
        now = utcnow()
        cutoff = now - timedelta(minutes=minutes)

        db = self.session_factory()
        recovered = 0
        try:
            repo = SyncRunRepository(db)
            for run in repo.stale_running(cutoff):
                if self.registry.is_active(run.id):
                    continue
                closed = repo.close(
                    run.id,
                    status=FAILED,
                    records_synced=run.records_synced or 0,
                    records_failed=run.records_failed or 0,
                    error_message=f"Abandoned: no terminal state recorded within {minutes} minutes",
                    completed_at=now,
                    duration_seconds=(now - run.started_at).total_seconds(),
                )
                if closed:
                    recovered += 1
                    metrics.record_sync_run(run.kind, FAILED, 0, 0, 0)
                    logger.warning(f"Recovered abandoned {run.kind} sync run {run.id}")
        finally:
            db.close()
        return recovered

    def get_sync_status(self, run_id: str) -> Dict:
        """Status report for one run (see StatusReporter.get_status)."""
        db = self.session_factory()
        try:
            return StatusReporter(db).get_status(run_id)
        finally:
            db.close()

    def list_sync_history(self, limit: int = 100) -> List[Dict]:
        """Newest runs first."""
        db = self.session_factory()
        try:
            return StatusReporter(db).list_history(limit)
        finally:
            db.close()

    async def cleanup(self):
        """Close any open connections."""
        await self.directory_client.close()
        await self.management_client.close()
