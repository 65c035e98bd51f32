"""Device matcher for joining observations from different sources.

Matching cascade (first hit wins, no fallthrough once matched):
1. The calling source's own external id
2. Normalized serial number, against devices from any source, skipping
   devices already bound to a different id of the calling source
3. Loose name match (equality or containment of punctuation-free keys),
   only against devices that do not yet carry the calling source's id

Serials are the most reliable cross-source key; display names get truncated
and reused, so they are the last resort.

When several devices satisfy rule 2 or 3, one already matched by both
sources beats a source-only device; after that the most recently synced
record wins, and the record id breaks any remaining tie.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from app.models import Device
from app.repositories.device_repository import (
    DeviceRepository, external_id_column
)
from app.services.sync.utils.normalizer import keys_match, name_key, names_match, normalize_serial

logger = logging.getLogger(__name__)

RULE_EXTERNAL_ID = "external_id"
RULE_SERIAL = "serial"
RULE_NAME = "name"


@dataclass
class DeviceObservation:
    """One sighting of a device reported by a source during a sync run."""
    source: str
    external_id: str
    name: Optional[str] = None
    serial: Optional[str] = None

    @property
    def normalized_serial(self) -> str:
        return normalize_serial(self.serial)


@dataclass
class DeviceMatch:
    """Matched device plus the rule that matched it."""
    device: Device
    rule: str
    candidates: int = 1


class NameCandidateIndex:
    """
    Name keys of devices lacking one source's id, loaded once per sync run.

    Rule 3 scans this in memory instead of reloading every candidate device
    for each observation. Workers share one index, so loading is locked.
    """

    def __init__(self, source: str):
        self.source = source
        self._keys: Optional[List[Tuple[str, str]]] = None
        self._lock = threading.Lock()

    def lookup(self, devices: DeviceRepository, name: Optional[str]) -> List[str]:
        """Ids of indexed devices whose name matches loosely."""
        key = name_key(name)
        if not key:
            return []
        with self._lock:
            if self._keys is None:
                self._keys = [
                    (device_id, name_key(device_name))
                    for device_id, device_name in devices.name_candidate_names(self.source)
                ]
                logger.debug(f"Indexed {len(self._keys)} name candidates for {self.source}")
            keys = self._keys
        return [device_id for device_id, candidate in keys if keys_match(key, candidate)]


class DeviceMatcher:
    """
    Resolves device observations to existing device records.

    Usage:
        matcher = DeviceMatcher(db)
        device = matcher.resolve(DeviceObservation("management", "1042", "ATL-HKXRGK2", "HKXRGK2"))
    """

    def __init__(self, db: Session, name_index: Optional[NameCandidateIndex] = None):
        """
        Initialize the device matcher.

        Args:
            db: SQLAlchemy database session
            name_index: Run-wide name candidates; without one, rule 3 loads
                the candidates from the store on every call
        """
        self.db = db
        self.devices = DeviceRepository(db)
        self.name_index = name_index

    def resolve(self, observation: DeviceObservation) -> Optional[Device]:
        """Existing device the observation identifies, or None."""
        match = self.match(observation)
        return match.device if match else None

    def match(self, observation: DeviceObservation) -> Optional[DeviceMatch]:
        """
        Run the matching cascade for one observation.

        Args:
            observation: Device sighting from the directory or management source

        Returns:
            DeviceMatch with the rule that fired, or None for a new device
        """
        # Rule 1: own external id
        device = self.devices.find_by_external_id(observation.source, observation.external_id)
        if device is not None:
            return DeviceMatch(device=device, rule=RULE_EXTERNAL_ID)

        # Rule 2: serial number
        serial = observation.normalized_serial
        if serial:
            candidates = [
                d for d in self.devices.find_by_serial(serial)
                if not self._bound_elsewhere(d, observation)
            ]
            if candidates:
                winner = self._pick(candidates)
                if len(candidates) > 1:
                    logger.info(
                        f"Serial {serial} matched {len(candidates)} devices, "
                        f"picked {winner.id} for {observation.source} {observation.external_id}"
                    )
                return DeviceMatch(device=winner, rule=RULE_SERIAL, candidates=len(candidates))

        # Rule 3: name, only against devices without this source's id
        if observation.name:
            candidates = self._name_candidates(observation)
            if candidates:
                winner = self._pick(candidates)
                return DeviceMatch(device=winner, rule=RULE_NAME, candidates=len(candidates))

        return None

    def _name_candidates(self, observation: DeviceObservation) -> List[Device]:
        if self.name_index is None:
            return [
                d for d in self.devices.find_name_candidates(observation.source)
                if names_match(observation.name, d.device_name)
            ]
        device_ids = self.name_index.lookup(self.devices, observation.name)
        if not device_ids:
            return []
        # The index may predate this run's own writes; recheck the source id in the store
        return self.devices.find_name_candidates(observation.source, device_ids)

    @staticmethod
    def _bound_elsewhere(device: Device, observation: DeviceObservation) -> bool:
        """Whether the device already carries a different id from the calling source."""
        current = getattr(device, external_id_column(observation.source).key)
        return current is not None and current != str(observation.external_id)

    @staticmethod
    def _pick(candidates: List[Device]) -> Device:
        """Deterministic tie-break: matched-by-both first, then latest sync, then id."""
        def rank(device: Device):
            both = device.directory_device_id is not None and device.management_device_id is not None
            return (both, device.last_synced_at or datetime.min, device.id)

        return max(candidates, key=rank)
