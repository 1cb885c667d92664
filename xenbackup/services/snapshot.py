"""
VM snapshot lifecycle.
"""
import enum
import logging
from dataclasses import dataclass

from xenbackup.core.errors import ProtocolError, SnapshotError
from xenbackup.xenapi.client import NULL_REF, XenApiClient

logger = logging.getLogger(__name__)


class SnapshotState(str, enum.Enum):
    CREATED = "created"
    IN_USE = "in_use"
    DESTROYED = "destroyed"
    RETAINED = "retained"


@dataclass
class SnapshotHandle:
    """A snapshot owned by one backup operation."""
    ref: str
    name: str
    vm_ref: str
    state: SnapshotState = SnapshotState.CREATED


class SnapshotService:
    """Creates and tears down VM snapshots."""

    def __init__(self, client: XenApiClient):
        self.client = client

    def create_snapshot(self, vm_ref: str, name: str) -> SnapshotHandle:
        """
        Snapshot a VM.

        Raises:
            SnapshotError: the VM cannot be found or the snapshot was rejected
        """
        try:
            ref = self.client.vm_snapshot(vm_ref, name)
        except ProtocolError as e:
            raise SnapshotError(f"Failed to snapshot VM as {name}: {e}") from e
        logger.info(f"Created snapshot {name}")
        return SnapshotHandle(ref=ref, name=name, vm_ref=vm_ref)

    def mark_in_use(self, handle: SnapshotHandle):
        handle.state = SnapshotState.IN_USE

    def retain(self, handle: SnapshotHandle):
        handle.state = SnapshotState.RETAINED
        logger.info(f"Retaining snapshot {handle.name} as full backup anchor")

    def destroy_snapshot(self, handle: SnapshotHandle):
        """
        Destroy a snapshot with its disks.

        Each ``Disk`` attachment is destroyed before its VDI, then the snapshot
        VM itself. Other attachment kinds are left to VM.destroy. The first
        failing call aborts the teardown.

        Raises:
            SnapshotError: any destroy step failed
        """
        if handle.state == SnapshotState.DESTROYED:
            return
        try:
            record = self.client.vm_get_record(handle.ref)
            for vbd_ref in record.get("VBDs", []):
                vbd = self.client.vbd_get_record(vbd_ref)
                if vbd.get("type") != "Disk":
                    continue
                vdi_ref = vbd.get("VDI", NULL_REF)
                self.client.vbd_destroy(vbd_ref)
                if vdi_ref and vdi_ref != NULL_REF:
                    self.client.vdi_destroy(vdi_ref)
            self.client.vm_destroy(handle.ref)
        except ProtocolError as e:
            raise SnapshotError(f"Failed to destroy snapshot {handle.name}: {e}") from e
        handle.state = SnapshotState.DESTROYED
        logger.info(f"Destroyed snapshot {handle.name}")
