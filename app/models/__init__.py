"""
Models Module

Usage:
    from app.models import Employee, Device, SyncRun
"""

from app.models.models import (
    Base,
    Employee,
    Device,
    DeviceAssignmentHistory,
    SyncRun,
    Software,
    DeviceSoftware,
)

__all__ = [
    "Base",
    "Employee",
    "Device",
    "DeviceAssignmentHistory",
    "SyncRun",
    "Software",
    "DeviceSoftware",
]
