"""
Data models package.
"""
from xenbackup.models.vm import (
    DiskImage,
    Network,
    NetworkAttachment,
    VirtualDisk,
    VirtualMachineConfig
)
from xenbackup.models.infrastructure import Host, HostInterface, StorageRepository
from xenbackup.models.backup import (
    BackupRecord,
    BackupSetDocument,
    BackupSetEntry,
    BackupType,
    make_set_id
)

__all__ = [
    # VM configuration
    "DiskImage",
    "Network",
    "NetworkAttachment",
    "VirtualDisk",
    "VirtualMachineConfig",
    # Infrastructure
    "Host",
    "HostInterface",
    "StorageRepository",
    # Backup sets
    "BackupRecord",
    "BackupSetDocument",
    "BackupSetEntry",
    "BackupType",
    "make_set_id",
]
