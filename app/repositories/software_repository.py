"""
Software Repository for installed software inventory.
"""
from datetime import date
from typing import Iterable, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from app.models import DeviceSoftware, Software
from app.repositories.base import BaseRepository
from app.utils.timezone import utcnow


class SoftwareRepository(BaseRepository[Software]):
    """Repository for software products and device links."""

    def __init__(self, db):
        """Initialize the software repository."""
        super().__init__(Software, db)

    def find_product(self, name: str, version: str, publisher: str) -> Optional[Software]:
        """Find a product by its natural key."""
        return self.where_first(
            Software.name == name,
            Software.version == version,
            Software.publisher == publisher
        )

    def upsert(
        self,
        name: str,
        version: str,
        publisher: str,
        normalized_name: str,
        architecture: Optional[str],
    ) -> Software:
        """
        Get or create a product by (name, version, publisher) and commit.

        A concurrent insert of the same product is resolved by returning the
        row that won.
        """
        existing = self.find_product(name, version, publisher)
        if existing is not None:
            return existing

        software = Software(
            name=name,
            version=version,
            publisher=publisher,
            normalized_name=normalized_name,
            architecture=architecture,
        )
        self.db.add(software)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.find_product(name, version, publisher)
            if existing is None:
                raise
            return existing
        return software

    def replace_device_links(
        self,
        device_id: str,
        links: Iterable[Tuple[str, Optional[date]]],
    ) -> int:
        """
        Replace a device's software links (not committed).

        Args:
            device_id: Device to relink
            links: (software_id, install_date) pairs; duplicates keep the first

        Returns:
            Number of links written
        """
        self.db.query(DeviceSoftware).filter(
            DeviceSoftware.device_id == device_id
        ).delete(synchronize_session=False)

        now = utcnow()
        seen = set()
        for software_id, install_date in links:
            if software_id in seen:
                continue
            seen.add(software_id)
            self.db.add(DeviceSoftware(
                device_id=device_id,
                software_id=software_id,
                install_date=install_date,
                last_synced_at=now,
            ))
        return len(seen)

    def links_for_device(self, device_id: str):
        """Software linked to a device."""
        return self.db.query(Software).join(
            DeviceSoftware, DeviceSoftware.software_id == Software.id
        ).filter(DeviceSoftware.device_id == device_id).all()
