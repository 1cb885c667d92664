"""
VM configuration models captured at backup time and replayed at restore time.
"""
from typing import Any, Dict, List, Optional, Sequence

from pydantic import AliasChoices, BaseModel, Field, field_validator

# Ordinals used by older metadata documents
POWER_STATES = ("Halted", "Paused", "Running", "Suspended")
ON_NORMAL_EXIT = ("destroy", "restart")
ON_CRASH = (
    "destroy", "coredump_and_destroy", "restart",
    "coredump_and_restart", "preserve", "rename_restart"
)
VDI_TYPES = (
    "system", "user", "ephemeral", "suspend", "crashdump",
    "ha_statefile", "metadata", "redo_log", "rrd", "pvs_cache", "cbt_metadata"
)


def _pairs_to_dict(value: Any) -> Any:
    """Accept maps stored as [{"key": k, "value": v}, ...] as well as objects."""
    if isinstance(value, list):
        return {str(item["key"]): str(item.get("value", "")) for item in value}
    return value


def _enum_to_str(value: Any, names: Sequence[str] = ()) -> Any:
    """Older metadata stored enum values as integer ordinals."""
    if isinstance(value, int) and not isinstance(value, bool):
        if 0 <= value < len(names):
            return names[value]
        return str(value)
    return value


class Network(BaseModel):
    """A pool network a VIF is attached to."""
    uuid: str
    name_label: str = ""
    name_description: str = ""
    mtu: int = 1500
    bridge: str = ""
    managed: bool = True


class NetworkAttachment(BaseModel):
    """VIF record: a network interface of a VM."""
    uuid: str = ""
    device: str = ""
    mac: str = ""
    mtu: int = 1500
    network: Optional[Network] = None


class DiskImage(BaseModel):
    """
    VDI descriptor.

    ``ref`` is the opaque handle of the image at capture time. Every snapshot
    or clone produces new handles, so it is only meaningful within the
    backup/restore call that captured it and is never written to metadata.
    """
    uuid: str
    ref: str = Field("", validation_alias=AliasChoices("ref", "vdi"), exclude=True)
    name_label: str = ""
    name_description: str = ""
    virtual_size: int = 0
    physical_utilisation: int = 0
    type: str = "system"
    sharable: bool = False
    read_only: bool = False

    @field_validator("type", mode="before")
    @classmethod
    def type_as_str(cls, v):
        return _enum_to_str(v, VDI_TYPES)


class VirtualDisk(BaseModel):
    """VBD attachment plus the disk image behind it."""
    uuid: str = ""
    device: str = ""
    userdevice: str
    bootable: bool = False
    vdi: Optional[DiskImage] = None

    @field_validator("vdi", mode="before")
    @classmethod
    def drop_empty_image(cls, v):
        if isinstance(v, dict) and not v.get("uuid"):
            return None
        return v

    @field_validator("userdevice", mode="before")
    @classmethod
    def userdevice_as_str(cls, v):
        return _enum_to_str(v)


class VirtualMachineConfig(BaseModel):
    """Full VM configuration as captured from the pool."""
    uuid: str
    allowed_operations: List[str] = Field(default_factory=list)
    power_state: str = ""

    name_label: str = ""
    name_description: str = ""
    user_version: int = 1
    is_a_template: bool = False

    memory_overhead: int = 0
    memory_target: int = 0
    memory_static_max: int = 0
    memory_dynamic_max: int = 0
    memory_dynamic_min: int = 0
    memory_static_min: int = 0

    vcpus_params: Dict[str, str] = Field(default_factory=dict)
    vcpus_max: int = 1
    vcpus_at_startup: int = 1
    actions_after_shutdown: str = "destroy"
    actions_after_reboot: str = "restart"
    actions_after_crash: str = "restart"

    pv_bootloader: str = ""
    pv_kernel: str = ""
    pv_ramdisk: str = ""
    pv_args: str = ""
    pv_bootloader_args: str = ""
    pv_legacy_args: str = ""
    hvm_boot_policy: str = ""
    hvm_boot_params: Dict[str, str] = Field(default_factory=dict)
    hvm_shadow_multiplier: float = 1.0

    platform: Dict[str, str] = Field(default_factory=dict)
    other_config: Dict[str, str] = Field(default_factory=dict)

    vbds: List[VirtualDisk] = Field(default_factory=list)
    vifs: List[NetworkAttachment] = Field(default_factory=list)
    host_uuid: Optional[str] = None

    @field_validator(
        "vcpus_params", "hvm_boot_params", "platform", "other_config", mode="before"
    )
    @classmethod
    def maps_as_dict(cls, v):
        return _pairs_to_dict(v)

    @field_validator("power_state", mode="before")
    @classmethod
    def power_state_as_str(cls, v):
        return _enum_to_str(v, POWER_STATES)

    @field_validator("actions_after_shutdown", "actions_after_reboot", mode="before")
    @classmethod
    def normal_exit_as_str(cls, v):
        return _enum_to_str(v, ON_NORMAL_EXIT)

    @field_validator("actions_after_crash", mode="before")
    @classmethod
    def crash_action_as_str(cls, v):
        return _enum_to_str(v, ON_CRASH)

    @field_validator("allowed_operations", mode="before")
    @classmethod
    def operations_as_str(cls, v):
        if isinstance(v, list):
            return [_enum_to_str(op) for op in v]
        return v

    def disks(self) -> List[VirtualDisk]:
        """Attachments that carry a disk image, in attachment order."""
        return [vbd for vbd in self.vbds if vbd.vdi is not None]
