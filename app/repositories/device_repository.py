"""
Device Repository for joined hardware records.

Each source has its own external id column. Lookups take the calling source
so the matcher can ask for "my id" without knowing column names.

Usage:
    repo = DeviceRepository(db)
    device = repo.find_by_external_id(MANAGEMENT, "1042")
    same_serial = repo.find_by_serial("HKXRGK2")
"""
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from app.models import Device, DeviceAssignmentHistory
from app.repositories.base import BaseRepository

DIRECTORY = "directory"
MANAGEMENT = "management"


def external_id_column(source: str):
    """Device column holding the given source's external id."""
    if source == DIRECTORY:
        return Device.directory_device_id
    if source == MANAGEMENT:
        return Device.management_device_id
    raise ValueError(f"Unknown device source: {source}")


class DeviceRepository(BaseRepository[Device]):
    """Repository for device data access."""

    def __init__(self, db):
        """Initialize the device repository."""
        super().__init__(Device, db)

    # ========================================================================
    # Matcher Lookups
    # ========================================================================

    def find_by_external_id(self, source: str, external_id: str) -> Optional[Device]:
        """Find a device by one source's external id."""
        if not external_id:
            return None
        return self.where_first(external_id_column(source) == str(external_id))

    def find_by_serial(self, serial: str) -> List[Device]:
        """
        Find devices whose stored serial equals the given one, ignoring case and padding.

        Args:
            serial: Normalized serial number

        Returns:
            All devices sharing the serial, in no particular order
        """
        if not serial:
            return []
        return self.where(func.upper(func.trim(Device.serial_number)) == serial.upper())

    def find_name_candidates(self, source: str, device_ids: Optional[List[str]] = None) -> List[Device]:
        """
        Devices that do not yet carry the given source's external id.

        Args:
            source: directory or management
            device_ids: Restrict to these devices (None means all)
        """
        criteria = [external_id_column(source).is_(None)]
        if device_ids is not None:
            criteria.append(Device.id.in_(device_ids))
        return self.where(*criteria)

    def name_candidate_names(self, source: str) -> List[Tuple[str, str]]:
        """(id, device_name) of every device without the source's external id."""
        rows = self.db.query(Device.id, Device.device_name).filter(
            external_id_column(source).is_(None)
        ).all()
        return [(row.id, row.device_name) for row in rows]

    # ========================================================================
    # Writes
    # ========================================================================

    def create_for_source(
        self,
        source: str,
        external_id: str,
        fields: Dict[str, Any]
    ) -> Tuple[Device, bool]:
        """
        Insert a device carrying a source external id and commit.

        If another worker inserted the same external id first, the unique
        constraint rejects this insert; the winner is returned instead so the
        caller can apply its fields as an update.

        Returns:
            Tuple of (device, created)
        """
        column = external_id_column(source)
        device = Device(**fields)
        setattr(device, column.key, str(external_id))
        self.db.add(device)
        try:
            self.db.commit()
            return device, True
        except IntegrityError:
            self.db.rollback()
            existing = self.find_by_external_id(source, external_id)
            if existing is None:
                raise
            return existing, False

    def has_history(self, device_id: str) -> bool:
        """Whether any assignment history references the device."""
        return bool(self.db.query(
            self.db.query(DeviceAssignmentHistory).filter(
                DeviceAssignmentHistory.device_id == device_id
            ).exists()
        ).scalar())

    # ========================================================================
    # Reconciliation Queries
    # ========================================================================

    def find_by_directory_ids(self, directory_device_ids: List[str]) -> Dict[str, Device]:
        """Map directory device id to device for the given ids."""
        if not directory_device_ids:
            return {}
        devices = self.where(Device.directory_device_id.in_(directory_device_ids))
        return {d.directory_device_id: d for d in devices}

    def assigned_directory_devices(self) -> List[Device]:
        """Devices the directory has registered and currently assigned to someone."""
        return self.where(
            Device.directory_device_id.isnot(None),
            Device.employee_id.isnot(None)
        )
