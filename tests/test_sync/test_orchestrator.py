"""Integration tests for SyncOrchestrator.

Test Strategy:
1. trigger_sync() records the run and returns before the work finishes
2. Full runs: directory stage, then device stage, counts aggregated
3. Directory failure or timeout fails the run and skips device sync
4. A lost stage result is recovered from the stage's own run record; for
   the directory stage the polled record also lets device sync go ahead
5. Every run is closed; an unverifiable close degrades to a minimal close
6. Abandoned runs are recovered; runs owned by live tasks are not

Each test follows the pattern:
- Given: Fake sources and an empty in-memory store
- When: A sync is triggered and its background task awaited
- Then: Run records and synced data match the expected outcome
"""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.orm import Session

from app.core.database import run_in_db_executor
from app.models import Device, DeviceSoftware, Employee, SyncRun
from app.repositories.sync_run_repository import SyncRunRepository
from app.services.sync.exceptions import SyncRunNotFoundError, UnknownSyncKindError
from app.services.sync.orchestrator import SyncOrchestrator
from app.utils.timezone import utcnow

from conftest import (
    fake_directory_client, fake_management_client, make_detail, make_managed,
    make_person, make_registration, make_software
)


def build(session_factory, registry, sync_settings, directory=None, management=None) -> SyncOrchestrator:
    return SyncOrchestrator(
        session_factory=session_factory,
        directory_client=directory or fake_directory_client([]),
        management_client=management or fake_management_client([]),
        registry=registry,
        config=sync_settings,
    )


async def run_to_completion(orchestrator: SyncOrchestrator, kind: str) -> str:
    run_id = await orchestrator.trigger_sync(kind)
    await orchestrator.registry.get(run_id)
    return run_id


def directory_with_one_device():
    people = [make_person("p1", display_name="Alice"), make_person("p2", display_name="Bob")]
    devices = {"p1": [make_registration("dev-1", "atl-HKXRGK2", registered="2024-02-01T09:00:00Z")]}
    return fake_directory_client(people, devices)


class LostResultTask:
    """Stage that records a successful run, then loses its direct result."""

    def __init__(self, session_factory, kind: str, records_synced: int):
        self.session_factory = session_factory
        self.kind = kind
        self.records_synced = records_synced

    async def run(self, run_id=None, parent_run_id=None):
        await run_in_db_executor(self._record, run_id, parent_run_id)
        raise ConnectionResetError("result lost in transit")

    def _record(self, run_id, parent_run_id):
        db = self.session_factory()
        try:
            repo = SyncRunRepository(db)
            repo.start(self.kind, parent_run_id=parent_run_id, run_id=run_id)
            repo.close(run_id, "success", self.records_synced, 0, None, utcnow(), 1.0)
        finally:
            db.close()


class TestTrigger:

    @pytest.mark.asyncio
    async def test_returns_running_run_immediately(self, session_factory, registry, sync_settings, db_session: Session):
        orchestrator = build(session_factory, registry, sync_settings, directory=directory_with_one_device())

        run_id = await orchestrator.trigger_sync("all")

        run = db_session.get(SyncRun, run_id)
        assert run.kind == "all"
        assert run.status == "running"
        assert run.completed_at is None
        assert registry.is_active(run_id)
        await registry.get(run_id)
        await registry.drain(timeout=1.0)

    @pytest.mark.asyncio
    async def test_unknown_kind_rejected(self, session_factory, registry, sync_settings, db_session: Session):
        orchestrator = build(session_factory, registry, sync_settings)

        with pytest.raises(UnknownSyncKindError):
            await orchestrator.trigger_sync("payroll")
        assert db_session.query(SyncRun).count() == 0

    @pytest.mark.asyncio
    async def test_single_kind_reuses_triggered_run(self, session_factory, registry, sync_settings, db_session: Session):
        orchestrator = build(session_factory, registry, sync_settings, directory=directory_with_one_device())

        run_id = await run_to_completion(orchestrator, "directory")

        runs = db_session.query(SyncRun).all()
        assert [r.id for r in runs] == [run_id]
        assert runs[0].status == "success"
        assert runs[0].records_synced == 3
        assert runs[0].completed_at is not None


class TestFullRun:
    """Directory stage, then device stage."""

    # Happy Path Tests
    # ─────────────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_full_run_succeeds(self, session_factory, registry, sync_settings, db_session: Session):
        management = fake_management_client(
            [make_managed(1042, "DESKTOP-8F2K1")],
            details={"1042": make_detail("HKXRGK2")},
            software={"1042": [make_software("7-Zip 24.01 (x64)")]},
        )
        orchestrator = build(session_factory, registry, sync_settings, directory_with_one_device(), management)

        run_id = await run_to_completion(orchestrator, "all")
        await registry.drain(timeout=1.0)

        status = orchestrator.get_sync_status(run_id)
        assert status["status"] == "success"
        assert status["is_complete"] is True
        assert status["records_synced"] == 4  # 2 people + 1 registration + 1 managed device
        assert [s["kind"] for s in status["stages"]] == ["directory", "devices"]
        assert all(s["parent_run_id"] == run_id for s in status["stages"])

        alice = db_session.query(Employee).filter_by(directory_id="p1").one()
        device = db_session.query(Device).one()
        assert device.employee_id == alice.id
        assert device.management_device_id == "1042"
        assert device.manufacturer == "Dell Inc."
        assert db_session.query(DeviceSoftware).count() == 1

    @pytest.mark.asyncio
    async def test_device_entity_failures_make_run_partial(self, session_factory, registry, sync_settings, db_session: Session):
        management = fake_management_client(
            [make_managed(1, "WS-1"), make_managed(2, "WS-2")],
            details={"1": make_detail("S1")},
            failing_details=["2"],
        )
        orchestrator = build(session_factory, registry, sync_settings, directory_with_one_device(), management)

        run_id = await run_to_completion(orchestrator, "all")
        await registry.drain(timeout=1.0)

        run = db_session.get(SyncRun, run_id)
        assert run.status == "partial"
        assert run.records_failed == 1
        assert run.completed_at is not None

    # Directory Failure Tests
    # ─────────────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_directory_failure_skips_device_sync(self, session_factory, registry, sync_settings, db_session: Session):
        management = fake_management_client([make_managed(1, "WS-1")])
        orchestrator = build(
            session_factory, registry, sync_settings,
            directory=fake_directory_client([], unavailable=True), management=management
        )

        run_id = await run_to_completion(orchestrator, "all")

        run = db_session.get(SyncRun, run_id)
        assert run.status == "failed"
        assert run.completed_at is not None
        assert "Directory sync failed" in run.error_message
        management.list_all_devices.assert_not_called()
        stages = SyncRunRepository(db_session).children(run_id)
        assert [s.kind for s in stages] == ["directory"]

    @pytest.mark.asyncio
    async def test_directory_timeout_fails_run(self, session_factory, registry, sync_settings, db_session: Session):
        directory = fake_directory_client([make_person("p1")])

        async def slow_listing(person_id):
            await asyncio.sleep(0.5)
            return []

        directory.list_devices_for_person = slow_listing
        management = fake_management_client([])
        config = sync_settings.model_copy(update={"SYNC_DIRECTORY_TIMEOUT_SECONDS": 0.1})
        orchestrator = build(session_factory, registry, config, directory, management)

        run_id = await run_to_completion(orchestrator, "all")

        run = db_session.get(SyncRun, run_id)
        assert run.status == "failed"
        assert "timed out" in run.error_message
        management.list_all_devices.assert_not_called()

        # The stage keeps running in the background and still closes its own run
        await registry.drain(timeout=2.0)
        db_session.expire_all()
        stage = SyncRunRepository(db_session).children(run_id)[0]
        assert stage.status == "success"
        assert stage.completed_at is not None

    # Lost Result Tests
    # ─────────────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_lost_device_result_recovered_from_record(self, session_factory, registry, sync_settings, db_session: Session):
        """The stage recorded success but its direct result never arrived."""
        orchestrator = build(session_factory, registry, sync_settings, directory_with_one_device())
        orchestrator.device_task = lambda: LostResultTask(session_factory, "devices", records_synced=7)

        run_id = await run_to_completion(orchestrator, "all")

        run = db_session.get(SyncRun, run_id)
        assert run.status == "success"
        assert run.records_synced == 3 + 7

    @pytest.mark.asyncio
    async def test_lost_directory_result_recovered_from_polled_record(
        self, session_factory, registry, sync_settings, db_session: Session
    ):
        """The directory stage recorded success but raised instead of returning it."""
        management = fake_management_client(
            [make_managed(1042, "DESKTOP-8F2K1")],
            details={"1042": make_detail("HKXRGK2")},
        )
        orchestrator = build(session_factory, registry, sync_settings, directory_with_one_device(), management)
        orchestrator.directory_task = lambda: LostResultTask(session_factory, "directory", records_synced=5)

        run_id = await run_to_completion(orchestrator, "all")
        await registry.drain(timeout=1.0)

        management.list_all_devices.assert_awaited()
        db_session.expire_all()
        run = db_session.get(SyncRun, run_id)
        assert run.status == "success"
        assert run.records_synced == 5 + 1  # polled directory count + one managed device
        stages = SyncRunRepository(db_session).children(run_id)
        assert sorted(s.kind for s in stages) == ["devices", "directory"]


class TestRunClosing:

    @pytest.mark.asyncio
    async def test_unverifiable_close_degrades_to_minimal_close(
        self, session_factory, registry, sync_settings, db_session: Session, monkeypatch
    ):
        orchestrator = build(session_factory, registry, sync_settings)
        run = SyncRunRepository(db_session).start("all")
        run_id = run.id

        # Store accepts the write but never shows it
        monkeypatch.setattr(SyncRunRepository, "close", lambda self, *args, **kwargs: False)

        await orchestrator._close_run(run_id, "all", "success", 5, 0, [], utcnow())

        db_session.expire_all()
        stored = db_session.get(SyncRun, run_id)
        assert stored.completed_at is not None

    @pytest.mark.asyncio
    async def test_close_is_write_once(self, session_factory, registry, sync_settings, db_session: Session):
        orchestrator = build(session_factory, registry, sync_settings)
        run_id = SyncRunRepository(db_session).start("all").id

        await orchestrator._close_run(run_id, "all", "success", 5, 0, [], utcnow())
        await orchestrator._close_run(run_id, "all", "failed", 0, 0, ["late"], utcnow())

        db_session.expire_all()
        stored = db_session.get(SyncRun, run_id)
        assert stored.status == "success"
        assert stored.records_synced == 5


class TestRecovery:

    def _open_run(self, db: Session, minutes_ago: int) -> str:
        run = SyncRunRepository(db).start("all")
        run.started_at = utcnow() - timedelta(minutes=minutes_ago)
        db.commit()
        return run.id

    @pytest.mark.asyncio
    async def test_recovers_stale_runs(self, session_factory, registry, sync_settings, db_session: Session):
        stale = self._open_run(db_session, 180)
        recent = self._open_run(db_session, 5)
        orchestrator = build(session_factory, registry, sync_settings)

        recovered = orchestrator.recover_abandoned_runs()

        assert recovered == 1
        db_session.expire_all()
        assert db_session.get(SyncRun, stale).status == "failed"
        assert db_session.get(SyncRun, stale).completed_at is not None
        assert db_session.get(SyncRun, recent).completed_at is None

    @pytest.mark.asyncio
    async def test_skips_runs_with_live_tasks(self, session_factory, registry, sync_settings, db_session: Session):
        stale = self._open_run(db_session, 180)
        registry.register(stale, asyncio.sleep(0.05))
        orchestrator = build(session_factory, registry, sync_settings)

        assert orchestrator.recover_abandoned_runs() == 0
        await registry.drain(timeout=1.0)


class TestStatusQueries:

    @pytest.mark.asyncio
    async def test_unknown_run(self, session_factory, registry, sync_settings):
        orchestrator = build(session_factory, registry, sync_settings)

        with pytest.raises(SyncRunNotFoundError):
            orchestrator.get_sync_status("does-not-exist")

    @pytest.mark.asyncio
    async def test_history_newest_first(self, session_factory, registry, sync_settings, db_session: Session):
        repo = SyncRunRepository(db_session)
        older = repo.start("directory")
        older.started_at = utcnow() - timedelta(hours=1)
        db_session.commit()
        newer = repo.start("devices")
        orchestrator = build(session_factory, registry, sync_settings)

        history = orchestrator.list_sync_history(limit=10)

        assert [h["id"] for h in history] == [newer.id, older.id]
