"""Directory sync: people and the devices registered to them.

Flow:
1. Page through every person in the directory (failure here is task-fatal)
2. Fetch registered devices for people in parallel batches
3. Store each person on the store executor: upsert the employee, then each
   of their deduplicated devices via the matcher, in one session per person
4. Reconcile ownership once, over everything observed in the run

A person whose employee row or device listing failed is incomplete, and a
registration whose device row failed is unresolved. Reconciliation leaves
both alone, so an entity error never reads as a device leaving the directory.

Employees are created or updated, never deleted. Device ownership
(employee_id) is written only by the reconciliation pass.
"""
import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional, Set, Tuple, Union

from sqlalchemy.orm import Session

from app.core.database import run_in_db_executor
from app.models import Device, Employee
from app.repositories import DeviceRepository, EmployeeRepository
from app.repositories.device_repository import DIRECTORY
from app.services.sync.adapters.directory_client import DirectoryClient
from app.services.sync.adapters.schemas import DirectoryDevice, DirectoryPerson
from app.services.sync.base_task import SessionFactory, SyncTask, TaskResult, chunked
from app.services.sync.exceptions import SourceUnavailableError
from app.services.sync.matchers.device_matcher import DeviceMatcher, DeviceObservation, NameCandidateIndex
from app.services.sync.reconciler import DeviceClaim, ReconcileResult, Reconciler
from app.services.sync.utils.normalizer import extract_serial
from app.utils.timezone import parse_date, parse_iso_datetime, utcnow

logger = logging.getLogger(__name__)

ACTIVE = "active"
TERMINATED = "terminated"


def employee_fields(person: DirectoryPerson, existing: Optional[Employee], today: date) -> Dict:
    """
    Column values for an employee from a directory person.

    termination_date rules:
    - an existing value is always preserved
    - otherwise a disabled account gets its last sign-in day, or today
    - an enabled account without a stored date has none
    """
    enabled = person.account_enabled is not False

    termination_date = existing.termination_date if existing is not None else None
    if termination_date is None and not enabled:
        last_sign_in = None
        if person.sign_in_activity is not None:
            last_sign_in = parse_iso_datetime(person.sign_in_activity.last_sign_in_date_time)
        termination_date = last_sign_in.date() if last_sign_in else today

    manager = person.manager
    return {
        'email': person.email,
        'display_name': person.display_name or person.email,
        'first_name': person.given_name,
        'last_name': person.surname,
        'job_title': person.job_title,
        'department': person.department,
        'office_location': person.office_location,
        'mobile_phone': person.mobile_phone,
        'business_phone': person.business_phones[0] if person.business_phones else None,
        'manager_directory_id': manager.id if manager else None,
        'manager_name': manager.display_name if manager else None,
        'employment_status': ACTIVE if enabled else TERMINATED,
        'hire_date': parse_date(person.employee_hire_date) or parse_date(person.created_date_time),
        'termination_date': termination_date,
    }


def registration_key(device: DirectoryDevice) -> str:
    """Key that groups registrations of the same physical machine."""
    return (
        extract_serial(device.display_name)
        or device.device_id
        or (device.display_name or "").strip().lower()
        or device.id
    )


def registration_date(device: DirectoryDevice) -> Optional[datetime]:
    """When the person registered the device, falling back to its last sign-in."""
    return (
        parse_iso_datetime(device.registered_date_time)
        or parse_iso_datetime(device.approximate_last_sign_in_date_time)
    )


def latest_activity(device: DirectoryDevice) -> Optional[datetime]:
    """Latest of the registration and last sign-in timestamps."""
    stamps = [
        parse_iso_datetime(device.registered_date_time),
        parse_iso_datetime(device.approximate_last_sign_in_date_time),
    ]
    stamps = [s for s in stamps if s is not None]
    return max(stamps) if stamps else None


def dedupe_registrations(devices: List[DirectoryDevice]) -> List[DirectoryDevice]:
    """
    Keep one registration per physical machine.

    Preference: an active (managed) registration, then the latest timestamp.
    """
    chosen: Dict[str, DirectoryDevice] = {}
    for device in devices:
        key = registration_key(device)
        current = chosen.get(key)
        if current is None or _preference(device) > _preference(current):
            chosen[key] = device
    return list(chosen.values())


def _preference(device: DirectoryDevice):
    return (device.is_managed is not False, latest_activity(device) or datetime.min)


@dataclass
class PersonOutcome:
    """What storing one person and their registrations produced."""
    employee_id: Optional[str] = None
    stored: bool = False
    incomplete: bool = False
    claims: List[Tuple[str, DeviceClaim]] = field(default_factory=list)
    unresolved_devices: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class DirectorySyncTask(SyncTask):
    """
    Syncs employees and their registered devices from the directory.

    Usage:
        task = DirectorySyncTask(SessionLocal, DirectoryClient())
        result = await task.run()
    """

    kind = "directory"

    def __init__(
        self,
        session_factory: SessionFactory,
        client: DirectoryClient,
        batch_size: int = 10,
    ):
        super().__init__(session_factory)
        self.client = client
        self.batch_size = batch_size

    async def _sync(self, run_id: str, result: TaskResult) -> None:
        try:
            people = [person async for person in self.client.list_all_people()]
        except Exception as e:
            raise SourceUnavailableError(self.client.source, str(e)) from e
        logger.info(f"Fetched {len(people)} people from directory")

        observations: Dict[str, List[DeviceClaim]] = defaultdict(list)
        incomplete: Set[str] = set()
        unresolved: Set[str] = set()
        people_synced = devices_synced = 0
        name_index = NameCandidateIndex(DIRECTORY)

        for batch in chunked(people, self.batch_size):
            listings = await asyncio.gather(
                *(self.client.list_devices_for_person(person.id) for person in batch),
                return_exceptions=True
            )
            outcomes = await asyncio.gather(*(
                run_in_db_executor(self._store_person, person, listing, name_index)
                for person, listing in zip(batch, listings)
            ))
            for outcome in outcomes:
                for error in outcome.errors:
                    result.fail(error)
                if outcome.incomplete and outcome.employee_id:
                    incomplete.add(outcome.employee_id)
                unresolved.update(outcome.unresolved_devices)
                if outcome.stored:
                    result.records_synced += 1
                    people_synced += 1
                for external_id, claim in outcome.claims:
                    observations[external_id].append(claim)
                    result.records_synced += 1
                    devices_synced += 1

        reconciliation = await run_in_db_executor(
            self._reconcile, run_id, dict(observations), incomplete, unresolved
        )

        result.records_failed += reconciliation.failed
        result.errors.extend(reconciliation.errors)
        result.details.update({
            'people_synced': people_synced,
            'devices_synced': devices_synced,
            'reconciliation': reconciliation.to_dict(),
        })

    def _reconcile(
        self,
        run_id: str,
        observations: Dict[str, List[DeviceClaim]],
        incomplete: Set[str],
        unresolved: Set[str],
    ) -> ReconcileResult:
        db = self.session_factory()
        try:
            return Reconciler(db, sync_run_id=run_id).reconcile(observations, incomplete, unresolved)
        finally:
            db.close()

    def _store_person(
        self,
        person: DirectoryPerson,
        listing: Union[List[DirectoryDevice], BaseException],
        name_index: NameCandidateIndex,
    ) -> PersonOutcome:
        """Upsert one person's employee row and registered devices in a session of its own."""
        outcome = PersonOutcome()
        db = self.session_factory()
        try:
            employee = self._upsert_employee(db, person, outcome)
            if employee is None:
                return outcome
            outcome.stored = True

            if isinstance(listing, BaseException):
                outcome.incomplete = True
                outcome.errors.append(f"Devices for {person.email or person.id}: {listing}")
                logger.warning(f"Failed to list devices for {person.id}: {listing}")
                return outcome

            matcher = DeviceMatcher(db, name_index=name_index)
            for registration in dedupe_registrations(listing):
                self._upsert_device(db, matcher, employee, registration, outcome)
            return outcome
        finally:
            db.close()

    def _upsert_employee(self, db: Session, person: DirectoryPerson, outcome: PersonOutcome) -> Optional[Employee]:
        repo = EmployeeRepository(db)
        try:
            existing = repo.find_by_directory_id(person.id)
            fields = employee_fields(person, existing, utcnow().date())
            fields['last_synced_at'] = utcnow()
            employee, _ = repo.upsert_from_directory(person.id, fields)
            outcome.employee_id = employee.id
            return employee
        except Exception as e:
            db.rollback()
            outcome.errors.append(f"Employee {person.email or person.id}: {e}")
            logger.error(f"Failed to upsert employee {person.id}: {e}")

        # Keep the stored row's devices out of the unassignment pass
        stored = repo.find_by_directory_id(person.id)
        if stored is not None:
            outcome.employee_id = stored.id
            outcome.incomplete = True
        return None

    def _upsert_device(
        self,
        db: Session,
        matcher: DeviceMatcher,
        employee: Employee,
        registration: DirectoryDevice,
        outcome: PersonOutcome,
    ) -> bool:
        external_id = registration.external_id
        claim = DeviceClaim(
            employee_id=employee.id,
            registered_date=registration_date(registration),
            employee_name=employee.display_name,
        )
        observation = DeviceObservation(
            source=DIRECTORY,
            external_id=external_id,
            name=registration.display_name,
            serial=extract_serial(registration.display_name),
        )
        fields = {
            'device_name': registration.display_name or external_id,
            'os_name': registration.operating_system,
            'os_version': registration.operating_system_version,
            'last_synced_at': utcnow(),
        }
        if observation.normalized_serial:
            fields['serial_number'] = observation.normalized_serial

        try:
            match = matcher.match(observation)
            if match is not None:
                device = match.device
                _apply(device, fields)
                device.directory_device_id = external_id
                db.commit()
            else:
                device, created = DeviceRepository(db).create_for_source(
                    DIRECTORY, external_id, {**fields, 'device_type': 'Unknown'}
                )
                if not created:
                    _apply(device, fields)
                    db.commit()
        except Exception as e:
            db.rollback()
            outcome.unresolved_devices.append(external_id)
            outcome.errors.append(f"Device {registration.display_name or external_id}: {e}")
            logger.error(f"Failed to upsert directory device {external_id}: {e}")
            return False

        outcome.claims.append((external_id, claim))
        return True


def _apply(device: Device, fields: Dict) -> None:
    for key, value in fields.items():
        setattr(device, key, value)
