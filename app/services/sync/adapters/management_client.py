"""
Device management service client (hardware and software inventory).

The region (us, eu, oc, ca) selects the tenant host unless an explicit
base URL is configured.
"""
from typing import List, Optional

import httpx

from app.core.config import settings
from app.services.sync.adapters.base_client import SourceClient, TokenProvider, static_token
from app.services.sync.adapters.schemas import HardwareInfo, InstalledSoftware, ManagedDevice


class ManagementClient(SourceClient):
    """Client for the device management service."""

    source = "management"

    def __init__(
        self,
        base_url: Optional[str] = None,
        token_provider: Optional[TokenProvider] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            base_url=base_url or settings.management_api_url,
            token_provider=token_provider or static_token(settings.MANAGEMENT_API_TOKEN),
            timeout=timeout or settings.HTTP_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def list_all_devices(self) -> List[ManagedDevice]:
        """Every device the service manages."""
        payload = await self._get_json("v2/devices")
        return [ManagedDevice.model_validate(item) for item in payload or []]

    async def get_device_detail(self, device_id: str) -> HardwareInfo:
        """Hardware detail (system and OS blocks) for one device."""
        payload = await self._get_json(f"v2/device/{device_id}")
        return HardwareInfo.model_validate(payload or {})

    async def list_installed_software(self, device_id: str) -> List[InstalledSoftware]:
        """Software installed on one device."""
        payload = await self._get_json(f"v2/device/{device_id}/software")
        return [InstalledSoftware.model_validate(item) for item in payload or []]
