"""Shared pytest fixtures for inventory-sync-api tests."""
import os

# Settings are read at import time; point them at an in-memory store first
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SYNC_SCHEDULE_ENABLED"] = "false"

from typing import AsyncGenerator, Dict, Generator, Iterable, List, Optional
from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy.orm import Session, sessionmaker
from httpx import AsyncClient, ASGITransport

from app.core.config import settings
from app.core.database import create_db_engine, init_db
from app.services.sync.adapters.schemas import (
    DirectoryDevice, DirectoryPerson, HardwareInfo, InstalledSoftware, ManagedDevice
)
from app.services.sync.run_registry import SyncTaskRegistry


# =============================================================================
# STORE
# =============================================================================

@pytest.fixture(scope="function")
def engine():
    """Fresh in-memory database per test, shared by every session of that test."""
    engine = create_db_engine("sqlite://")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    """Session factory bound to the test database (what tasks and the orchestrator receive)."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Session for arranging and asserting test data."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def registry() -> SyncTaskRegistry:
    return SyncTaskRegistry()


@pytest.fixture
def sync_settings():
    """Settings with timings shrunk for tests."""
    return settings.model_copy(update={
        "SYNC_BATCH_SIZE": 2,
        "SYNC_DIRECTORY_TIMEOUT_SECONDS": 2.0,
        "SYNC_DEVICE_TIMEOUT_SECONDS": 2.0,
        "SYNC_POLL_INTERVAL_SECONDS": 0.05,
        "SYNC_CLOSE_ATTEMPTS": 3,
        "SYNC_CLOSE_BACKOFF_SECONDS": 0.01,
        "SYNC_STALE_RUN_MINUTES": 120,
    })


# =============================================================================
# PAYLOAD BUILDERS
# =============================================================================

def make_person(
    person_id: str,
    email: Optional[str] = None,
    enabled: Optional[bool] = True,
    last_sign_in: Optional[str] = None,
    **extra,
) -> DirectoryPerson:
    """Directory person with sensible defaults."""
    data = {
        "id": person_id,
        "displayName": extra.pop("display_name", f"Person {person_id}"),
        "mail": email or f"{person_id}@example.com",
        "accountEnabled": enabled,
    }
    if last_sign_in:
        data["signInActivity"] = {"lastSignInDateTime": last_sign_in}
    data.update(extra)
    return DirectoryPerson.model_validate(data)


def make_registration(
    device_id: str,
    name: str,
    registered: Optional[str] = None,
    managed: Optional[bool] = True,
) -> DirectoryDevice:
    """Directory device registration."""
    return DirectoryDevice.model_validate({
        "id": f"obj-{device_id}",
        "deviceId": device_id,
        "displayName": name,
        "operatingSystem": "Windows",
        "operatingSystemVersion": "10.0.22631",
        "isManaged": managed,
        "registeredDateTime": registered,
    })


def make_managed(device_id, name: str, node_class: str = "WINDOWS_WORKSTATION") -> ManagedDevice:
    """Management service device listing entry."""
    return ManagedDevice.model_validate({
        "id": device_id,
        "systemName": name,
        "nodeClass": node_class,
        "offline": False,
        "lastContact": 1717200000.0,
    })


def make_detail(serial: Optional[str], manufacturer: str = "Dell Inc.", model: str = "Latitude 7440") -> HardwareInfo:
    """Hardware detail for a managed device."""
    return HardwareInfo.model_validate({
        "system": {"manufacturer": manufacturer, "model": model, "serialNumber": serial},
        "os": {"name": "Windows 11 Enterprise", "version": "23H2"},
    })


def make_software(name: str, version: str = "", publisher: str = "") -> InstalledSoftware:
    return InstalledSoftware.model_validate({"name": name, "version": version, "publisher": publisher})


# =============================================================================
# FAKE SOURCES
# =============================================================================

async def _iterate(items: Iterable):
    for item in items:
        yield item


def fake_directory_client(
    people: List[DirectoryPerson],
    devices: Optional[Dict[str, List[DirectoryDevice]]] = None,
    failing_people: Iterable[str] = (),
    unavailable: bool = False,
) -> Mock:
    """
    Directory client double.

    Args:
        people: People returned by list_all_people()
        devices: person id → registrations
        failing_people: Person ids whose device listing raises
        unavailable: list_all_people() raises immediately
    """
    devices = devices or {}
    failing = set(failing_people)
    client = Mock()
    client.source = "directory"

    def list_all_people():
        if unavailable:
            raise ConnectionError("directory unreachable")
        return _iterate(people)

    def list_devices_for_person(person_id):
        if person_id in failing:
            raise TimeoutError(f"device listing timed out for {person_id}")
        return devices.get(person_id, [])

    client.list_all_people = list_all_people
    client.list_devices_for_person = AsyncMock(side_effect=list_devices_for_person)
    client.close = AsyncMock()
    return client


def fake_management_client(
    managed: List[ManagedDevice],
    details: Optional[Dict[str, HardwareInfo]] = None,
    software: Optional[Dict[str, List[InstalledSoftware]]] = None,
    failing_details: Iterable[str] = (),
) -> Mock:
    """
    Management client double.

    Args:
        managed: Devices returned by list_all_devices()
        details: management id → hardware detail
        software: management id → installed software
        failing_details: Management ids whose detail lookup raises
    """
    details = details or {}
    software = software or {}
    failing = set(failing_details)
    client = Mock()
    client.source = "management"

    def get_device_detail(device_id):
        if device_id in failing:
            raise ConnectionError(f"detail lookup failed for {device_id}")
        return details.get(device_id, HardwareInfo())

    client.list_all_devices = AsyncMock(return_value=managed)
    client.get_device_detail = AsyncMock(side_effect=get_device_detail)
    client.list_installed_software = AsyncMock(side_effect=lambda device_id: software.get(device_id, []))
    client.close = AsyncMock()
    return client


# =============================================================================
# HTTP
# =============================================================================

@pytest.fixture(scope="function")
async def async_client() -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for the FastAPI app (lifespan not run; tests set app.state)."""
    from app.main import app

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as client:
        yield client

    for attr in ("orchestrator", "registry"):
        if hasattr(app.state, attr):
            delattr(app.state, attr)
