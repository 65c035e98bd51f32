"""
Database models for the inventory sync engine.

Employees come from the identity directory, devices are joined from the
directory and the device management service, and every sync task or
orchestration leaves one SyncRun row behind.
"""
import uuid

from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Date, ForeignKey, Boolean, Text,
    Index, UniqueConstraint
)
from sqlalchemy.orm import relationship, declarative_base

from app.utils.timezone import utcnow

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


class Employee(Base):
    """Identity record keyed by the directory's immutable object id."""
    __tablename__ = "employees"

    id = Column(String(36), primary_key=True, default=new_id)
    directory_id = Column(String(64), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False)
    display_name = Column(String(255), nullable=False)
    first_name = Column(String(128), nullable=True)
    last_name = Column(String(128), nullable=True)
    job_title = Column(String(255), nullable=True)
    department = Column(String(255), nullable=True)
    office_location = Column(String(255), nullable=True)
    mobile_phone = Column(String(64), nullable=True)
    business_phone = Column(String(64), nullable=True)
    manager_directory_id = Column(String(64), nullable=True)  # Weak reference, looked up not owned
    manager_name = Column(String(255), nullable=True)
    employment_status = Column(String(16), nullable=False, default="active", index=True)  # active, terminated
    hire_date = Column(Date, nullable=True)
    termination_date = Column(Date, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    devices = relationship("Device", back_populates="employee", passive_deletes=True)


class Device(Base):
    """Hardware record joined across sources.

    directory_device_id is written only by directory sync, management_device_id
    only by device sync. employee_id is directory-owned.
    """
    __tablename__ = "devices"

    id = Column(String(36), primary_key=True, default=new_id)
    directory_device_id = Column(String(64), unique=True, nullable=True)
    management_device_id = Column(String(64), unique=True, nullable=True)
    employee_id = Column(String(36), ForeignKey("employees.id", ondelete="SET NULL"), nullable=True, index=True)
    device_name = Column(String(255), nullable=False)
    device_type = Column(String(64), nullable=False, default="Unknown")
    manufacturer = Column(String(255), nullable=True)
    model = Column(String(255), nullable=True)
    serial_number = Column(String(128), nullable=True, index=True)
    os_name = Column(String(128), nullable=True)
    os_version = Column(String(128), nullable=True)
    last_seen = Column(DateTime, nullable=True)
    status = Column(String(32), nullable=True)  # online, offline
    is_in_management = Column(Boolean, nullable=False, default=False)
    last_synced_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    employee = relationship("Employee", back_populates="devices")

    __table_args__ = (
        Index('ix_devices_device_name', 'device_name'),
    )


class DeviceAssignmentHistory(Base):
    """Audit trail of device ownership.

    At most one row per device has is_current=True. Rows are closed, never deleted.
    """
    __tablename__ = "device_assignment_history"

    id = Column(String(36), primary_key=True, default=new_id)
    device_id = Column(String(36), ForeignKey("devices.id", ondelete="CASCADE"), nullable=False)
    employee_id = Column(String(36), ForeignKey("employees.id", ondelete="CASCADE"), nullable=False)
    directory_device_id = Column(String(64), nullable=True)
    assignment_date = Column(DateTime, nullable=False, default=utcnow)
    unassignment_date = Column(DateTime, nullable=True)
    registered_date = Column(DateTime, nullable=True)
    is_current = Column(Boolean, nullable=False, default=True)
    sync_run_id = Column(String(36), ForeignKey("sync_runs.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index('ix_assignment_history_device_current', 'device_id', 'is_current'),
        Index('ix_assignment_history_device_employee', 'device_id', 'employee_id'),
    )


class SyncRun(Base):
    """One durable record per sync task or orchestration.

    Created as 'running' and closed exactly once to success, partial or failed.
    Child task runs started by an orchestration point at it via parent_run_id.
    """
    __tablename__ = "sync_runs"

    id = Column(String(36), primary_key=True, default=new_id)
    kind = Column(String(16), nullable=False, index=True)  # directory, devices, all
    status = Column(String(16), nullable=False, default="running", index=True)
    records_synced = Column(Integer, nullable=False, default=0)
    records_failed = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)
    parent_run_id = Column(String(36), ForeignKey("sync_runs.id", ondelete="SET NULL"), nullable=True, index=True)

    __table_args__ = (
        Index('ix_sync_runs_kind_started', 'kind', 'started_at'),
    )


class Software(Base):
    """Installed software product, one row per (name, version, publisher)."""
    __tablename__ = "software"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(512), nullable=False)
    version = Column(String(128), nullable=False, default="")
    publisher = Column(String(255), nullable=False, default="")
    normalized_name = Column(String(512), nullable=False, index=True)  # Grouping key across versions/editions
    architecture = Column(String(16), nullable=True)  # x64, x86, arm64
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint('name', 'version', 'publisher', name='uq_software_name_version_publisher'),
    )


class DeviceSoftware(Base):
    """Link between a device and software installed on it."""
    __tablename__ = "device_software"

    device_id = Column(String(36), ForeignKey("devices.id", ondelete="CASCADE"), primary_key=True)
    software_id = Column(String(36), ForeignKey("software.id", ondelete="CASCADE"), primary_key=True)
    install_date = Column(Date, nullable=True)
    last_synced_at = Column(DateTime, nullable=False, default=utcnow)
