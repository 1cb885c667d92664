"""
Backup set registry and per-backup metadata models.
"""
from typing import List, Optional
import enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from xenbackup.models.vm import VirtualMachineConfig

# Registry timestamps are local time, second resolution
DATE_FORMAT = "%Y%m%d%H%M%S"


class BackupType(str, enum.Enum):
    """Backup kind - full or differential."""
    FULL = "full"
    DIFF = "diff"


class BackupSetEntry(BaseModel):
    """One entry of the ``sets`` array in the registry document."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    set_id: str = Field(validation_alias=AliasChoices("set_id", "vm_name"))
    vm_uuid: str
    date: str
    type: BackupType
    # Full record a differential was exported against
    base_set_id: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def type_lowercase(cls, v):
        if isinstance(v, str):
            return v.lower()
        return v

    @property
    def is_full(self) -> bool:
        return self.type == BackupType.FULL


class BackupRecord(BackupSetEntry):
    """
    Registry entry plus the VM configuration captured for that generation.

    This is the content of ``{storage}/{set_id}/vm_meta.json``.
    """
    vm: VirtualMachineConfig

    def entry(self) -> BackupSetEntry:
        """Registry view of this record (drops the captured configuration)."""
        return BackupSetEntry.model_validate(self.model_dump(exclude={"vm"}))


class BackupSetDocument(BaseModel):
    """Top-level registry document: ``{"sets": [...]}`` in insertion order."""
    sets: List[BackupSetEntry] = Field(default_factory=list)


def make_set_id(vm_uuid: str, date: str) -> str:
    """Backup set identifier, also used as the snapshot name."""
    return f"{vm_uuid}_{date}"
