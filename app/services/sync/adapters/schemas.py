"""Typed projections of the external payloads the sync engine consumes.

Field names are snake_case in Python and camelCase on the wire. Unknown
fields are ignored so upstream additions never break parsing.
"""
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class SourceModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ============================================================================
# Directory service
# ============================================================================

class DirectoryManager(SourceModel):
    id: str
    display_name: Optional[str] = None


class SignInActivity(SourceModel):
    last_sign_in_date_time: Optional[str] = None


class DirectoryPerson(SourceModel):
    """A person as listed by the directory."""
    id: str
    display_name: Optional[str] = None
    given_name: Optional[str] = None
    surname: Optional[str] = None
    mail: Optional[str] = None
    user_principal_name: Optional[str] = None
    job_title: Optional[str] = None
    department: Optional[str] = None
    office_location: Optional[str] = None
    mobile_phone: Optional[str] = None
    business_phones: List[str] = Field(default_factory=list)
    account_enabled: Optional[bool] = None
    employee_hire_date: Optional[str] = None
    created_date_time: Optional[str] = None
    sign_in_activity: Optional[SignInActivity] = None
    manager: Optional[DirectoryManager] = None

    @property
    def email(self) -> Optional[str]:
        return self.mail or self.user_principal_name


class DirectoryDevice(SourceModel):
    """A device registered to a person in the directory."""
    id: str
    display_name: Optional[str] = None
    device_id: Optional[str] = None
    operating_system: Optional[str] = None
    operating_system_version: Optional[str] = None
    is_managed: Optional[bool] = None
    registered_date_time: Optional[str] = None
    approximate_last_sign_in_date_time: Optional[str] = None

    @property
    def external_id(self) -> str:
        """Directory device id, falling back to the object id."""
        return self.device_id or self.id


# ============================================================================
# Device management service
# ============================================================================

class ManagedDevice(SourceModel):
    """A device as listed by the management service."""
    id: Union[int, str]
    system_name: Optional[str] = None
    display_name: Optional[str] = None
    node_class: Optional[str] = None
    offline: Optional[bool] = None
    last_contact: Optional[float] = None

    @property
    def name(self) -> str:
        return self.system_name or self.display_name or f"Device {self.id}"


class SystemInfo(SourceModel):
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    serial_number: Optional[str] = None
    bios_serial_number: Optional[str] = None


class OperatingSystemInfo(SourceModel):
    name: Optional[str] = None
    version: Optional[str] = None
    build_number: Optional[str] = None


class HardwareInfo(SourceModel):
    """Hardware detail lookup for one managed device."""
    system: Optional[SystemInfo] = None
    os: Optional[OperatingSystemInfo] = None

    @property
    def serial(self) -> Optional[str]:
        if not self.system:
            return None
        serial = (self.system.serial_number or self.system.bios_serial_number or "").strip()
        return serial or None


class InstalledSoftware(SourceModel):
    """One software title installed on a managed device."""
    name: str
    version: Optional[str] = None
    publisher: Optional[str] = None
    install_date: Optional[str] = None
