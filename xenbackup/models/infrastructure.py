"""
Pool infrastructure models: hosts, interfaces and storage repositories.
"""
from typing import List

from pydantic import BaseModel, Field

from xenbackup.models.vm import Network, VirtualMachineConfig


class StorageRepository(BaseModel):
    """Storage repository (SR) that new disk images can be created in."""
    uuid: str
    name_label: str = ""
    name_description: str = ""
    type: str = ""
    physical_size: int = 0
    physical_utilisation: int = 0


class HostInterface(BaseModel):
    """Physical interface (PIF) of a host."""
    device: str = ""
    ip: str = ""
    currently_attached: bool = False


class Host(BaseModel):
    """Pool member with the VMs resident on it."""
    uuid: str
    hostname: str = ""
    address: str = ""
    interfaces: List[HostInterface] = Field(default_factory=list)
    vms: List[VirtualMachineConfig] = Field(default_factory=list)


__all__ = ["Host", "HostInterface", "Network", "StorageRepository"]
