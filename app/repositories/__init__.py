"""
Repository layer for data access.

Usage:
    from app.repositories import DeviceRepository
    from app.core.database import SessionLocal

    db = SessionLocal()
    device_repo = DeviceRepository(db)
    devices = device_repo.find_by_serial("HKXRGK2")
    db.close()
"""

from app.repositories.base import BaseRepository
from app.repositories.employee_repository import EmployeeRepository
from app.repositories.device_repository import DeviceRepository
from app.repositories.assignment_history_repository import AssignmentHistoryRepository
from app.repositories.sync_run_repository import SyncRunRepository
from app.repositories.software_repository import SoftwareRepository

__all__ = [
    "BaseRepository",
    "EmployeeRepository",
    "DeviceRepository",
    "AssignmentHistoryRepository",
    "SyncRunRepository",
    "SoftwareRepository",
]
