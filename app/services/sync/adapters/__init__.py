"""Clients for the external sources.

Available clients:
- directory_client: People and their registered devices
- management_client: Managed devices, hardware detail and installed software

Payloads are parsed into the pydantic models in schemas.
"""
from app.services.sync.adapters.base_client import SourceClient, static_token
from app.services.sync.adapters.directory_client import DirectoryClient
from app.services.sync.adapters.management_client import ManagementClient

__all__ = [
    "SourceClient",
    "static_token",
    "DirectoryClient",
    "ManagementClient",
]
