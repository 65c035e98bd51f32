"""Assignment reconciliation for one directory sync pass.

The directory can report the same device under several people when it holds
stale or duplicate registrations. After all people are processed, each
observed device gets exactly one owner:

- Candidates are ordered by registration date, newest first; the first wins.
- A changed owner closes the current history entry and opens a new one.
- Losing candidates get a non-current audit entry, once per device+employee.
- Assigned directory devices that were not observed at all are unassigned,
  unless their owner's data was incomplete this run or their own row
  failed to store.

Devices the directory has never registered (management-only) are left alone.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy.orm import Session

from app.core import metrics
from app.models import Device
from app.repositories import AssignmentHistoryRepository, DeviceRepository
from app.utils.timezone import utcnow

logger = logging.getLogger(__name__)


@dataclass
class DeviceClaim:
    """One person the directory reported as the device's registrant."""
    employee_id: str
    registered_date: Optional[datetime] = None
    employee_name: Optional[str] = None


@dataclass
class ReconcileResult:
    devices_processed: int = 0
    assigned: int = 0
    reassigned: int = 0
    unassigned: int = 0
    audit_entries: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'devices_processed': self.devices_processed,
            'assigned': self.assigned,
            'reassigned': self.reassigned,
            'unassigned': self.unassigned,
            'audit_entries': self.audit_entries,
            'failed': self.failed,
            'errors': list(self.errors),
        }


def rank_claims(claims: Iterable[DeviceClaim]) -> List[DeviceClaim]:
    """
    Order claims for winner selection, one claim per employee.

    Newest registration first; claims without a date sort last; employee id
    breaks ties so the order never depends on fetch order.
    """
    latest: Dict[str, DeviceClaim] = {}
    for claim in claims:
        seen = latest.get(claim.employee_id)
        if seen is None or (claim.registered_date or datetime.min) > (seen.registered_date or datetime.min):
            latest[claim.employee_id] = claim

    return sorted(
        latest.values(),
        key=lambda c: (c.registered_date or datetime.min, c.employee_id),
        reverse=True
    )


class Reconciler:
    """
    Resolves device ownership conflicts and maintains assignment history.

    Each device is committed on its own so one bad row does not undo the rest.
    """

    def __init__(self, db: Session, sync_run_id: Optional[str] = None):
        """
        Args:
            db: SQLAlchemy database session
            sync_run_id: Run recorded on history entries created by this pass
        """
        self.db = db
        self.sync_run_id = sync_run_id
        self.devices = DeviceRepository(db)
        self.history = AssignmentHistoryRepository(db)

    def reconcile(
        self,
        observations: Dict[str, List[DeviceClaim]],
        incomplete_employee_ids: Optional[Set[str]] = None,
        unresolved_device_ids: Optional[Set[str]] = None,
    ) -> ReconcileResult:
        """
        Apply one directory pass's observations.

        Args:
            observations: directory device id → every claim seen this run
            incomplete_employee_ids: Employees whose device listing failed this
                run; their current devices are not treated as unregistered
            unresolved_device_ids: Directory device ids seen this run whose
                device upsert failed; they keep their current owner

        Returns:
            ReconcileResult with counts and per-device errors
        """
        result = ReconcileResult()
        incomplete = incomplete_employee_ids or set()
        now = utcnow()

        devices = self.devices.find_by_directory_ids(list(observations.keys()))

        for directory_device_id, claims in observations.items():
            device = devices.get(directory_device_id)
            if device is None or not claims:
                # The device upsert failed earlier in the run and was already counted
                continue
            try:
                self._resolve_device(device, directory_device_id, claims, now, result)
                self.db.commit()
                result.devices_processed += 1
            except Exception as e:
                self.db.rollback()
                result.failed += 1
                result.errors.append(f"Reconcile {directory_device_id}: {e}")
                logger.error(f"Failed to reconcile device {directory_device_id}: {e}")

        seen = set(observations.keys()) | (unresolved_device_ids or set())
        self._unassign_unregistered(seen, incomplete, now, result)

        logger.info(
            f"Reconciliation complete: {result.devices_processed} devices, "
            f"{result.assigned} assigned, {result.reassigned} reassigned, "
            f"{result.unassigned} unassigned, {result.audit_entries} audit entries, "
            f"{result.failed} failed"
        )
        return result

    def _resolve_device(
        self,
        device: Device,
        directory_device_id: str,
        claims: List[DeviceClaim],
        now: datetime,
        result: ReconcileResult,
    ) -> None:
        ranked = rank_claims(claims)
        winner, losers = ranked[0], ranked[1:]

        if device.employee_id != winner.employee_id:
            previous = device.employee_id
            self.history.close_current(device.id, now)
            device.employee_id = winner.employee_id
            self.history.open(
                device_id=device.id,
                employee_id=winner.employee_id,
                when=now,
                registered_date=winner.registered_date,
                directory_device_id=directory_device_id,
                sync_run_id=self.sync_run_id,
            )
            if previous is None:
                result.assigned += 1
                metrics.record_assignment_change("assigned")
            else:
                result.reassigned += 1
                metrics.record_assignment_change("reassigned")
                logger.info(
                    f"Device {device.device_name} reassigned from {previous} to {winner.employee_id}"
                )
        else:
            self._ensure_current_entry(device, directory_device_id, winner, now)

        for loser in losers:
            if self.history.exists_for_pair(device.id, loser.employee_id):
                continue
            self.history.open(
                device_id=device.id,
                employee_id=loser.employee_id,
                when=now,
                registered_date=loser.registered_date,
                directory_device_id=directory_device_id,
                sync_run_id=self.sync_run_id,
                is_current=False,
            )
            result.audit_entries += 1
            metrics.record_assignment_change("audit")

    def _ensure_current_entry(
        self,
        device: Device,
        directory_device_id: str,
        winner: DeviceClaim,
        now: datetime,
    ) -> None:
        """Owner unchanged: keep exactly one current entry for the owner."""
        current = self.history.current_for_device(device.id)
        if current and all(entry.employee_id == winner.employee_id for entry in current):
            head, extra = current[0], current[1:]
            if winner.registered_date and head.registered_date != winner.registered_date:
                head.registered_date = winner.registered_date
            for entry in extra:
                entry.is_current = False
                entry.unassignment_date = now
            return

        if current:
            self.history.close_current(device.id, now)
        self.history.open(
            device_id=device.id,
            employee_id=winner.employee_id,
            when=now,
            registered_date=winner.registered_date,
            directory_device_id=directory_device_id,
            sync_run_id=self.sync_run_id,
        )

    def _unassign_unregistered(
        self,
        observed: Set[str],
        incomplete: Set[str],
        now: datetime,
        result: ReconcileResult,
    ) -> None:
        """Clear ownership of assigned directory devices that this pass did not see."""
        for device in self.devices.assigned_directory_devices():
            if device.directory_device_id in observed:
                continue
            if device.employee_id in incomplete:
                continue
            try:
                self.history.close_current(device.id, now)
                logger.info(
                    f"Device {device.device_name} no longer registered, unassigning from {device.employee_id}"
                )
                device.employee_id = None
                self.db.commit()
                result.unassigned += 1
                metrics.record_assignment_change("unassigned")
            except Exception as e:
                self.db.rollback()
                result.failed += 1
                result.errors.append(f"Unassign {device.directory_device_id}: {e}")
                logger.error(f"Failed to unassign device {device.directory_device_id}: {e}")
