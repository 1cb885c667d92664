"""
Disk identity across VM generations.

Every snapshot or clone gives a disk a fresh VDI reference, so a disk is
matched between two generations of the same VM by its ``userdevice`` slot.
"""
import logging
from typing import Dict

from xenbackup.core.errors import DiskResolutionError
from xenbackup.models.vm import VirtualDisk, VirtualMachineConfig

logger = logging.getLogger(__name__)


def find_disk_by_userdevice(config: VirtualMachineConfig, userdevice: str) -> VirtualDisk:
    """
    Disk attachment occupying a slot, regardless of attachment order.

    Raises:
        DiskResolutionError: no disk, or more than one disk, in that slot
    """
    matches = [disk for disk in config.disks() if disk.userdevice == str(userdevice)]
    if not matches:
        raise DiskResolutionError(
            f"VM {config.uuid} has no disk in slot {userdevice}"
        )
    if len(matches) > 1:
        raise DiskResolutionError(
            f"VM {config.uuid} has {len(matches)} disks in slot {userdevice}"
        )
    return matches[0]


def resolve_base_vdi(config: VirtualMachineConfig, userdevice: str) -> str:
    """Current VDI reference of the disk in ``userdevice`` of ``config``."""
    disk = find_disk_by_userdevice(config, userdevice)
    if not disk.vdi.ref:
        raise DiskResolutionError(
            f"Disk in slot {userdevice} of VM {config.uuid} has no image reference"
        )
    logger.debug(f"Slot {userdevice} of VM {config.uuid} resolves to {disk.vdi.ref}")
    return disk.vdi.ref


def resolve_all(source: VirtualMachineConfig, target: VirtualMachineConfig) -> Dict[str, str]:
    """
    Map each disk slot of ``source`` to the VDI reference in the same slot of ``target``.

    Fails on the first slot without a counterpart.
    """
    return {
        disk.userdevice: resolve_base_vdi(target, disk.userdevice)
        for disk in source.disks()
    }
