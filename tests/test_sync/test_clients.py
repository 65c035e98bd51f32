"""Tests for the external source clients.

Test Strategy:
1. Directory paging follows next links until exhausted
2. Payloads parse into typed models (camelCase wire names)
3. Bearer tokens come from the token provider
4. Client errors (4xx other than 429) are not retried

Requests are served by httpx.MockTransport; nothing leaves the process.
"""
import httpx
import pytest

from app.services.sync.adapters.base_client import is_transient_error, static_token
from app.services.sync.adapters.directory_client import DirectoryClient
from app.services.sync.adapters.management_client import ManagementClient


def directory_client(handler) -> DirectoryClient:
    return DirectoryClient(
        base_url="https://directory.test/v1.0",
        token_provider=static_token("dir-token"),
        page_size=2,
        transport=httpx.MockTransport(handler),
    )


def management_client(handler) -> ManagementClient:
    return ManagementClient(
        base_url="https://management.test",
        token_provider=static_token("mgmt-token"),
        transport=httpx.MockTransport(handler),
    )


class TestDirectoryClient:

    @pytest.mark.asyncio
    async def test_follows_next_links(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if "page2" in str(request.url):
                return httpx.Response(200, json={"value": [{"id": "p3", "mail": "c@example.com"}]})
            return httpx.Response(200, json={
                "value": [
                    {"id": "p1", "mail": "a@example.com", "accountEnabled": True},
                    {"id": "p2", "userPrincipalName": "b@example.com", "accountEnabled": False},
                ],
                "@odata.nextLink": "https://directory.test/v1.0/users?page2",
            })

        client = directory_client(handler)
        people = [p async for p in client.list_all_people()]
        await client.close()

        assert [p.id for p in people] == ["p1", "p2", "p3"]
        assert people[1].email == "b@example.com"
        assert people[1].account_enabled is False
        assert requests[0].headers["Authorization"] == "Bearer dir-token"
        assert requests[0].url.params["$top"] == "2"
        assert "$top" not in requests[1].url.params

    @pytest.mark.asyncio
    async def test_lists_registered_devices(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1.0/users/p1/registeredDevices"
            return httpx.Response(200, json={"value": [{
                "id": "obj-1",
                "deviceId": "dev-1",
                "displayName": "atl-HKXRGK2",
                "registeredDateTime": "2024-02-01T09:00:00Z",
            }]})

        client = directory_client(handler)
        devices = await client.list_devices_for_person("p1")
        await client.close()

        assert devices[0].external_id == "dev-1"
        assert devices[0].registered_date_time == "2024-02-01T09:00:00Z"

    @pytest.mark.asyncio
    async def test_not_found_is_not_retried(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(404, json={"error": "not found"})

        client = directory_client(handler)
        with pytest.raises(httpx.HTTPStatusError):
            await client.list_devices_for_person("gone")
        await client.close()

        assert calls["n"] == 1


class TestManagementClient:

    @pytest.mark.asyncio
    async def test_parses_devices_and_detail(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"] == "Bearer mgmt-token"
            if request.url.path == "/v2/devices":
                return httpx.Response(200, json=[
                    {"id": 1042, "systemName": "DESKTOP-8F2K1", "nodeClass": "WINDOWS_WORKSTATION", "offline": False},
                ])
            if request.url.path == "/v2/device/1042":
                return httpx.Response(200, json={
                    "system": {"manufacturer": "Dell Inc.", "model": "Latitude 7440", "biosSerialNumber": " HKXRGK2 "},
                    "os": {"name": "Windows 11 Enterprise"},
                })
            if request.url.path == "/v2/device/1042/software":
                return httpx.Response(200, json=[{"name": "7-Zip 24.01 (x64)", "version": "24.01"}])
            return httpx.Response(404)

        client = management_client(handler)
        devices = await client.list_all_devices()
        detail = await client.get_device_detail("1042")
        software = await client.list_installed_software("1042")
        await client.close()

        assert devices[0].name == "DESKTOP-8F2K1"
        assert devices[0].node_class == "WINDOWS_WORKSTATION"
        assert detail.serial == "HKXRGK2"
        assert detail.system.model == "Latitude 7440"
        assert software[0].version == "24.01"

    def test_unnamed_device_gets_fallback_name(self):
        from app.services.sync.adapters.schemas import ManagedDevice

        assert ManagedDevice.model_validate({"id": 7}).name == "Device 7"


class TestTransientErrors:

    def _status_error(self, code: int) -> httpx.HTTPStatusError:
        request = httpx.Request("GET", "https://x.test")
        return httpx.HTTPStatusError("err", request=request, response=httpx.Response(code, request=request))

    def test_throttling_and_server_errors_are_transient(self):
        assert is_transient_error(self._status_error(429))
        assert is_transient_error(self._status_error(503))

    def test_client_errors_are_not(self):
        assert not is_transient_error(self._status_error(401))
        assert not is_transient_error(self._status_error(404))

    def test_network_errors_are_transient(self):
        assert is_transient_error(httpx.ConnectError("refused"))
        assert not is_transient_error(ValueError("bad"))
