"""
Assignment History Repository.

History rows are opened and closed, never deleted. At most one row per
device is current; close_current() closes every current row it finds so a
violated invariant heals on the next write instead of compounding.
"""
from datetime import datetime
from typing import List, Optional

from app.models import DeviceAssignmentHistory
from app.repositories.base import BaseRepository


class AssignmentHistoryRepository(BaseRepository[DeviceAssignmentHistory]):
    """Repository for device assignment history."""

    def __init__(self, db):
        """Initialize the assignment history repository."""
        super().__init__(DeviceAssignmentHistory, db)

    def current_for_device(self, device_id: str) -> List[DeviceAssignmentHistory]:
        """Current entries for a device, newest assignment first."""
        return self.db.query(DeviceAssignmentHistory).filter(
            DeviceAssignmentHistory.device_id == device_id,
            DeviceAssignmentHistory.is_current.is_(True)
        ).order_by(DeviceAssignmentHistory.assignment_date.desc()).all()

    def exists_for_pair(self, device_id: str, employee_id: str) -> bool:
        """Whether any entry, current or closed, exists for the device and employee."""
        return self.exists_where(
            DeviceAssignmentHistory.device_id == device_id,
            DeviceAssignmentHistory.employee_id == employee_id
        )

    def for_device(self, device_id: str) -> List[DeviceAssignmentHistory]:
        """Full history for a device, oldest first."""
        return self.db.query(DeviceAssignmentHistory).filter(
            DeviceAssignmentHistory.device_id == device_id
        ).order_by(DeviceAssignmentHistory.assignment_date).all()

    def open(
        self,
        device_id: str,
        employee_id: str,
        when: datetime,
        registered_date: Optional[datetime] = None,
        directory_device_id: Optional[str] = None,
        sync_run_id: Optional[str] = None,
        is_current: bool = True,
    ) -> DeviceAssignmentHistory:
        """
        Add a history entry (not committed).

        Non-current entries are audit records and are stamped closed at creation.
        """
        return self.create(
            device_id=device_id,
            employee_id=employee_id,
            directory_device_id=directory_device_id,
            assignment_date=when,
            unassignment_date=None if is_current else when,
            registered_date=registered_date,
            is_current=is_current,
            sync_run_id=sync_run_id,
        )

    def close_current(self, device_id: str, when: datetime) -> int:
        """
        Close every current entry for the device (not committed).

        Returns:
            Number of entries closed
        """
        return self.db.query(DeviceAssignmentHistory).filter(
            DeviceAssignmentHistory.device_id == device_id,
            DeviceAssignmentHistory.is_current.is_(True)
        ).update(
            {"is_current": False, "unassignment_date": when},
            synchronize_session="fetch"
        )
