"""Device sync: hardware enrichment from the device management service.

Flow:
1. List every managed device (failure here is task-fatal)
2. Process devices in parallel batches; each worker fetches hardware
   detail, then resolves and upserts the device in its own session on the
   store executor
3. Schedule a software inventory sync per device, without waiting for it

Ownership (employee_id) belongs to the directory. This task only writes the
fields in ENRICHMENT_FIELDS, so whatever owner a device has is carried
forward untouched.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from app.core.database import run_in_db_executor
from app.models import Device
from app.repositories import DeviceRepository
from app.repositories.device_repository import MANAGEMENT
from app.services.sync.adapters.management_client import ManagementClient
from app.services.sync.adapters.schemas import HardwareInfo, ManagedDevice
from app.services.sync.base_task import SessionFactory, SyncTask, TaskResult, chunked
from app.services.sync.exceptions import SourceUnavailableError
from app.services.sync.matchers.device_matcher import (
    RULE_EXTERNAL_ID, RULE_NAME, DeviceMatcher, DeviceObservation, NameCandidateIndex
)
from app.services.sync.utils.normalizer import normalize_serial
from app.utils.timezone import from_epoch_seconds, utcnow

logger = logging.getLogger(__name__)

# Columns device sync may write. employee_id is deliberately absent.
ENRICHMENT_FIELDS = frozenset({
    'device_name',
    'device_type',
    'manufacturer',
    'model',
    'serial_number',
    'os_name',
    'os_version',
    'last_seen',
    'status',
    'is_in_management',
    'last_synced_at',
})

# Scheduler for the software follow-up: (device_id, management_device_id) -> None
SoftwareScheduler = Callable[[str, str], None]


@dataclass
class DeviceOutcome:
    device_id: str
    created: bool
    rule: Optional[str]
    serial_mismatch: bool = False
    merged: bool = False


def enrichment_fields(managed: ManagedDevice, detail: HardwareInfo, serial: str) -> Dict:
    """Column values reported by the management service for one device."""
    system = detail.system
    os_info = detail.os
    fields = {
        'device_name': managed.name,
        'device_type': managed.node_class or 'Unknown',
        'manufacturer': system.manufacturer if system else None,
        'model': system.model if system else None,
        'os_name': os_info.name if os_info else None,
        'os_version': os_info.version if os_info else None,
        'last_seen': from_epoch_seconds(managed.last_contact),
        'status': None if managed.offline is None else ('offline' if managed.offline else 'online'),
        'is_in_management': True,
        'last_synced_at': utcnow(),
    }
    if serial:
        fields['serial_number'] = serial
    return fields


def apply_enrichment(device: Device, fields: Dict, keep_name: bool = False) -> None:
    """
    Write allowed enrichment fields onto a device.

    Args:
        device: Device to update
        fields: Candidate values; keys outside ENRICHMENT_FIELDS are ignored
        keep_name: Keep the existing device_name (directory-named devices)
    """
    for key, value in fields.items():
        if key not in ENRICHMENT_FIELDS:
            continue
        if key == 'device_name' and keep_name:
            continue
        if value is None and key in ('manufacturer', 'model', 'os_name', 'os_version', 'last_seen', 'status'):
            # Missing detail must not erase what another run recorded
            continue
        setattr(device, key, value)


class DeviceSyncTask(SyncTask):
    """
    Enriches devices from the management service.

    Usage:
        task = DeviceSyncTask(SessionLocal, ManagementClient(), schedule_software=scheduler)
        result = await task.run()
    """

    kind = "devices"

    def __init__(
        self,
        session_factory: SessionFactory,
        client: ManagementClient,
        batch_size: int = 10,
        schedule_software: Optional[SoftwareScheduler] = None,
    ):
        super().__init__(session_factory)
        self.client = client
        self.batch_size = batch_size
        self.schedule_software = schedule_software

    async def _sync(self, run_id: str, result: TaskResult) -> None:
        try:
            managed_devices = await self.client.list_all_devices()
        except Exception as e:
            raise SourceUnavailableError(self.client.source, str(e)) from e
        logger.info(f"Fetched {len(managed_devices)} devices from management service")

        name_index = NameCandidateIndex(MANAGEMENT)
        created = matched = mismatches = merged = 0
        for batch in chunked(managed_devices, self.batch_size):
            outcomes = await asyncio.gather(
                *(self._sync_device(managed, name_index) for managed in batch),
                return_exceptions=True
            )
            for managed, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    result.fail(f"Device {managed.name}: {outcome}")
                    logger.error(f"Failed to sync managed device {managed.id}: {outcome}")
                    continue
                result.records_synced += 1
                created += outcome.created
                matched += not outcome.created
                mismatches += outcome.serial_mismatch
                merged += outcome.merged

        result.details.update({
            'devices_created': created,
            'devices_matched': matched,
            'serial_mismatches': mismatches,
            'devices_merged': merged,
        })

    async def _sync_device(self, managed: ManagedDevice, name_index: NameCandidateIndex) -> DeviceOutcome:
        external_id = str(managed.id)
        detail = await self.client.get_device_detail(external_id)
        outcome = await run_in_db_executor(self._store, managed, detail, name_index)

        if self.schedule_software is not None:
            self.schedule_software(outcome.device_id, external_id)
        return outcome

    def _store(self, managed: ManagedDevice, detail: HardwareInfo, name_index: NameCandidateIndex) -> DeviceOutcome:
        db = self.session_factory()
        try:
            return self._upsert(db, managed, detail, name_index)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _upsert(
        self,
        db: Session,
        managed: ManagedDevice,
        detail: HardwareInfo,
        name_index: Optional[NameCandidateIndex] = None,
    ) -> DeviceOutcome:
        external_id = str(managed.id)
        serial = normalize_serial(detail.serial)
        fields = enrichment_fields(managed, detail, serial)
        observation = DeviceObservation(
            source=MANAGEMENT, external_id=external_id, name=managed.name, serial=serial
        )
        repo = DeviceRepository(db)

        match = DeviceMatcher(db, name_index=name_index).match(observation)
        if match is None:
            device, created = repo.create_for_source(MANAGEMENT, external_id, fields)
            if created:
                return DeviceOutcome(device_id=device.id, created=True, rule=None)
            apply_enrichment(device, fields, keep_name=device.directory_device_id is not None)
            db.commit()
            return DeviceOutcome(device_id=device.id, created=False, rule=RULE_EXTERNAL_ID)

        device = match.device
        outcome = DeviceOutcome(device_id=device.id, created=False, rule=match.rule)

        if match.rule == RULE_EXTERNAL_ID and device.directory_device_id is None and serial:
            twin = self._directory_twin(repo, serial, device)
            if twin is not None:
                logger.info(
                    f"Merging management-only device {device.id} into directory device {twin.id} "
                    f"(serial {serial})"
                )
                db.delete(device)
                db.flush()
                device = twin
                outcome.device_id = twin.id
                outcome.merged = True

        if match.rule == RULE_NAME and serial and device.serial_number:
            if normalize_serial(device.serial_number) != serial:
                # Name match is kept; non-conforming names are tolerated
                logger.warning(
                    f"Serial mismatch on name match for {managed.name}: "
                    f"stored {device.serial_number}, reported {serial}"
                )
                outcome.serial_mismatch = True

        device.management_device_id = external_id
        apply_enrichment(device, fields, keep_name=device.directory_device_id is not None)
        db.commit()
        return outcome

    @staticmethod
    def _directory_twin(repo: DeviceRepository, serial: str, device: Device) -> Optional[Device]:
        """Directory device with the same serial that a management-only row can fold into."""
        if repo.has_history(device.id):
            return None
        twins = [
            d for d in repo.find_by_serial(serial)
            if d.id != device.id
            and d.directory_device_id is not None
            and d.management_device_id is None
        ]
        if not twins:
            return None
        return max(twins, key=lambda d: (d.last_synced_at or d.created_at, d.id))
