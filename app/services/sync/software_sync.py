"""Software inventory sync for one managed device.

Runs as a fire-and-forget follow-up to a device upsert. The device's links
are replaced wholesale; products are shared across devices and grouped by
normalized name. A failure is logged and counted, never raised to the
device sync that scheduled it.
"""
import logging
from typing import List, Optional

from app.core import metrics
from app.core.database import run_in_db_executor
from app.repositories import SoftwareRepository
from app.services.sync.adapters.management_client import ManagementClient
from app.services.sync.adapters.schemas import InstalledSoftware
from app.services.sync.base_task import SessionFactory
from app.services.sync.utils.normalizer import extract_architecture, normalize_software_name
from app.utils.timezone import parse_date

logger = logging.getLogger(__name__)


class SoftwareSyncTask:
    """Replaces one device's installed-software links from the management service."""

    def __init__(self, session_factory: SessionFactory, client: ManagementClient):
        self.session_factory = session_factory
        self.client = client

    async def sync_device(self, device_id: str, management_device_id: str) -> Optional[int]:
        """
        Sync installed software for a device.

        Args:
            device_id: Internal device id
            management_device_id: The device's id in the management service

        Returns:
            Number of links written, or None if the sync failed
        """
        try:
            installed = await self.client.list_installed_software(management_device_id)
        except Exception as e:
            metrics.software_sync_failures_total.inc()
            logger.warning(f"Software listing failed for device {management_device_id}: {e}")
            return None

        return await run_in_db_executor(self._store_links, device_id, installed)

    def _store_links(self, device_id: str, installed: List[InstalledSoftware]) -> Optional[int]:
        db = self.session_factory()
        try:
            repo = SoftwareRepository(db)
            links = []
            for item in installed:
                name = (item.name or "").strip()
                if not name:
                    continue
                software = repo.upsert(
                    name=name,
                    version=(item.version or "").strip(),
                    publisher=(item.publisher or "").strip(),
                    normalized_name=normalize_software_name(name),
                    architecture=extract_architecture(name),
                )
                links.append((software.id, parse_date(item.install_date)))

            count = repo.replace_device_links(device_id, links)
            db.commit()
            logger.debug(f"Linked {count} software titles to device {device_id}")
            return count
        except Exception as e:
            db.rollback()
            metrics.software_sync_failures_total.inc()
            logger.warning(f"Software sync failed for device {device_id}: {e}")
            return None
        finally:
            db.close()
