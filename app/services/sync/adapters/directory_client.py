"""
Directory service client (people and their registered devices).

Pagination follows the service's "@odata.nextLink" cursor transparently:
list_all_people() is an async generator that yields people page by page.
"""
from typing import AsyncIterator, List, Optional

import httpx

from app.core.config import settings
from app.services.sync.adapters.base_client import SourceClient, TokenProvider, static_token
from app.services.sync.adapters.schemas import DirectoryDevice, DirectoryPerson

NEXT_LINK = "@odata.nextLink"

PERSON_FIELDS = [
    "id",
    "displayName",
    "givenName",
    "surname",
    "mail",
    "userPrincipalName",
    "jobTitle",
    "department",
    "officeLocation",
    "mobilePhone",
    "businessPhones",
    "accountEnabled",
    "employeeHireDate",
    "createdDateTime",
    "signInActivity",
]

DEVICE_FIELDS = [
    "id",
    "displayName",
    "deviceId",
    "operatingSystem",
    "operatingSystemVersion",
    "isManaged",
    "registeredDateTime",
    "approximateLastSignInDateTime",
]


class DirectoryClient(SourceClient):
    """Client for the identity directory."""

    source = "directory"

    def __init__(
        self,
        base_url: Optional[str] = None,
        token_provider: Optional[TokenProvider] = None,
        page_size: Optional[int] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            base_url=base_url or settings.DIRECTORY_API_BASE_URL,
            token_provider=token_provider or static_token(settings.DIRECTORY_API_TOKEN),
            timeout=timeout or settings.HTTP_TIMEOUT_SECONDS,
            transport=transport,
        )
        self.page_size = page_size or settings.DIRECTORY_PAGE_SIZE

    async def list_all_people(self) -> AsyncIterator[DirectoryPerson]:
        """Yield every person in the directory, following next-page links."""
        params = {
            "$select": ",".join(PERSON_FIELDS),
            "$expand": "manager($select=id,displayName)",
            "$top": self.page_size,
        }
        url: Optional[str] = "users"
        while url:
            payload = await self._get_json(url, params=params)
            for item in payload.get("value", []):
                yield DirectoryPerson.model_validate(item)
            url = payload.get(NEXT_LINK)
            params = None  # next links already carry the query

    async def list_devices_for_person(self, person_id: str) -> List[DirectoryDevice]:
        """All devices registered to one person."""
        devices: List[DirectoryDevice] = []
        params = {"$select": ",".join(DEVICE_FIELDS)}
        url: Optional[str] = f"users/{person_id}/registeredDevices"
        while url:
            payload = await self._get_json(url, params=params)
            devices.extend(DirectoryDevice.model_validate(item) for item in payload.get("value", []))
            url = payload.get(NEXT_LINK)
            params = None
        return devices
