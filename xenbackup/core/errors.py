"""
Exception hierarchy for backup and restore operations.
"""
from typing import List, Optional


class BackupEngineError(Exception):
    """Base exception for backup engine operations."""
    pass


class ProtocolError(BackupEngineError):
    """Exception raised when a management call is rejected or the connection fails."""

    def __init__(self, message: str, details: Optional[List[str]] = None):
        super().__init__(message)
        self.details = list(details or [])

    def __str__(self) -> str:
        message = super().__str__()
        if self.details:
            return f"{message}: {' '.join(str(d) for d in self.details)}"
        return message


class DiskResolutionError(BackupEngineError):
    """Exception raised when a disk slot has no counterpart in the other generation."""
    pass


class MetadataError(BackupEngineError):
    """Exception raised when a registry or metadata document is missing or unparsable."""
    pass


class BackupSetNotFoundError(MetadataError):
    """Exception raised when a backup set id is not in the registry."""
    pass


class NoFullBackupError(MetadataError):
    """Exception raised when a differential operation has no full backup to anchor on."""
    pass


class TransferError(BackupEngineError):
    """Exception raised when a data-plane transfer fails."""
    pass


class SnapshotError(BackupEngineError):
    """Exception raised for snapshot create/destroy failures."""
    pass


class OperatorInputError(BackupEngineError):
    """Exception raised for an invalid operator selection."""
    pass


class StorageError(BackupEngineError):
    """Exception raised for backup storage layout violations."""
    pass
