"""
VM restore from full and differential backup sets.
"""
import logging
from typing import Any, Dict, Optional, Tuple

from xenbackup.core.errors import MetadataError, ProtocolError
from xenbackup.models.backup import BackupRecord, BackupType
from xenbackup.models.vm import VirtualDisk, VirtualMachineConfig
from xenbackup.services.disk_identity import resolve_all
from xenbackup.services.inventory import InventoryService
from xenbackup.services.journal import SideEffectJournal
from xenbackup.services.registry import BackupSetRegistry
from xenbackup.services.storage import LocalBackupStorage
from xenbackup.services.transfer import TransferEngine
from xenbackup.xenapi.client import NULL_REF, XenApiClient

logger = logging.getLogger(__name__)

DEFAULT_NAME_TEMPLATE = "{name_label} (restored {set_id})"


def vm_create_record(vm: VirtualMachineConfig, name_label: str) -> Dict[str, Any]:
    """
    VM.create record replaying a captured configuration.

    XenAPI takes 64-bit integers as strings.
    """
    return {
        "name_label": name_label,
        "name_description": vm.name_description,
        "user_version": str(vm.user_version),
        "is_a_template": False,
        "affinity": NULL_REF,
        "memory_target": str(vm.memory_target),
        "memory_static_max": str(vm.memory_static_max),
        "memory_dynamic_max": str(vm.memory_dynamic_max),
        "memory_dynamic_min": str(vm.memory_dynamic_min),
        "memory_static_min": str(vm.memory_static_min),
        "VCPUs_params": dict(vm.vcpus_params),
        "VCPUs_max": str(vm.vcpus_max),
        "VCPUs_at_startup": str(vm.vcpus_at_startup),
        "actions_after_shutdown": vm.actions_after_shutdown,
        "actions_after_reboot": vm.actions_after_reboot,
        "actions_after_crash": vm.actions_after_crash,
        "PV_bootloader": vm.pv_bootloader,
        "PV_kernel": vm.pv_kernel,
        "PV_ramdisk": vm.pv_ramdisk,
        "PV_args": vm.pv_args,
        "PV_bootloader_args": vm.pv_bootloader_args,
        "PV_legacy_args": vm.pv_legacy_args,
        "HVM_boot_policy": vm.hvm_boot_policy,
        "HVM_boot_params": dict(vm.hvm_boot_params),
        "HVM_shadow_multiplier": vm.hvm_shadow_multiplier,
        "platform": dict(vm.platform),
        "PCI_bus": "",
        "other_config": dict(vm.other_config),
        "recommendations": "",
        "xenstore_data": {},
        "ha_always_run": False,
        "ha_restart_priority": "",
        "tags": [],
        "blocked_operations": {},
        "protection_policy": NULL_REF,
        "is_snapshot_from_vmpp": False,
        "appliance": NULL_REF,
        "start_delay": "0",
        "shutdown_delay": "0",
        "order": "0",
        "suspend_SR": NULL_REF,
        "version": "0",
        "generation_id": "",
        "hardware_platform_version": "0",
    }


def vdi_create_record(disk: VirtualDisk, sr_ref: str) -> Dict[str, Any]:
    image = disk.vdi
    return {
        "name_label": image.name_label,
        "name_description": image.name_description,
        "SR": sr_ref,
        "virtual_size": str(image.virtual_size),
        "type": image.type,
        "sharable": image.sharable,
        "read_only": image.read_only,
        "other_config": {},
        "xenstore_data": {},
        "sm_config": {},
        "tags": [],
    }


def vbd_create_record(disk: VirtualDisk, vm_ref: str, vdi_ref: str) -> Dict[str, Any]:
    return {
        "VM": vm_ref,
        "VDI": vdi_ref,
        "userdevice": disk.userdevice,
        "device": disk.device,
        "bootable": disk.bootable,
        "mode": "RW",
        "type": "Disk",
        "unpluggable": True,
        "empty": False,
        "other_config": {},
        "qos_algorithm_type": "",
        "qos_algorithm_params": {},
    }


class RestoreService:
    """Recreates VMs from backup sets."""

    def __init__(
        self,
        client: XenApiClient,
        storage: LocalBackupStorage,
        registry: BackupSetRegistry,
        transfer: TransferEngine,
        inventory: Optional[InventoryService] = None,
        import_endpoint: Optional[str] = None,
        name_template: str = DEFAULT_NAME_TEMPLATE,
        restore_vifs: bool = True,
        keep_mac: bool = False,
        rollback: bool = False,
        log_callback=None
    ):
        """
        Args:
            client: Logged-in management client
            storage: Backup set directory layout
            registry: Backup set registry
            transfer: Data-plane transfer engine
            inventory: VM capture service (created from client if omitted)
            import_endpoint: Data-plane endpoint for imports, defaults to the pool master
            name_template: Display name of restored VMs; may use
                           {name_label}, {set_id}, {vm_uuid} and {date}
            restore_vifs: Recreate captured network interfaces
            keep_mac: Reuse captured MAC addresses instead of letting the host
                      generate new ones (only safe when the source VM is gone)
            rollback: Destroy created objects when the restore fails
            log_callback: Optional callback(level, message, details)
        """
        self.client = client
        self.storage = storage
        self.registry = registry
        self.transfer = transfer
        self.inventory = inventory or InventoryService(client)
        self.import_endpoint = import_endpoint or client.url
        self.name_template = name_template
        self.restore_vifs = restore_vifs
        self.keep_mac = keep_mac
        self.rollback = rollback
        self.log_callback = log_callback

    def _log(self, level: str, message: str, details: dict = None):
        """Log to the module logger and forward to the callback (if set)."""
        log_method = getattr(logger, level.lower(), logger.info)
        log_method(message)

        if self.log_callback:
            try:
                self.log_callback(level, message, details)
            except Exception as e:
                logger.warning(f"Log callback failed: {e}")

    def restore_vm(self, set_id: str, sr_uuid: str) -> str:
        """
        Restore a backup set into a new VM.

        A Full set is restored directly. A Diff set first restores its anchor
        Full set, then merges each differencing image onto the restored disk
        in the same slot.

        Returns:
            UUID of the new VM
        """
        entry = self.registry.get(set_id)
        self._log("INFO", f"Restoring backup set {set_id} ({entry.type.value}) into SR {sr_uuid}")

        diff_record: Optional[BackupRecord] = None
        if entry.type == BackupType.DIFF:
            anchor_entry = self.registry.anchor_for(entry)
            self._log("INFO", f"Base of {set_id} is {anchor_entry.set_id}")
            full_record = self.storage.load_meta(anchor_entry.set_id)
            diff_record = self.storage.load_meta(set_id)
        else:
            full_record = self.storage.load_meta(set_id)

        # Nothing is created until every image is known to be present
        self._check_images(full_record)
        if diff_record is not None:
            self._check_images(diff_record)

        sr_ref = self.client.sr_get_by_uuid(sr_uuid)
        name = self.name_template.format(
            name_label=full_record.vm.name_label,
            set_id=set_id,
            vm_uuid=entry.vm_uuid,
            date=entry.date,
        )

        journal = SideEffectJournal(f"restore {set_id}")
        try:
            vm_ref, vm_uuid = self._restore_full(full_record, sr_ref, name, journal)
            if diff_record is not None:
                self._restore_diff(diff_record, vm_ref)
        except Exception as e:
            self._log("ERROR", f"Restore of {set_id} failed: {e}")
            leftovers = journal.unwind(rollback=self.rollback)
            if leftovers:
                self._log("WARNING", f"Restore of {set_id} left behind: {'; '.join(leftovers)}")
            raise

        self._log("INFO", f"Restored {set_id} as VM {name} ({vm_uuid})")
        return vm_uuid

    def _check_images(self, record: BackupRecord):
        for disk in record.vm.disks():
            path = self.storage.disk_image_path(record.set_id, disk.vdi.uuid)
            if not path.is_file():
                raise MetadataError(f"Disk image {path} of backup {record.set_id} is missing")

    def _restore_full(
        self,
        record: BackupRecord,
        sr_ref: str,
        name: str,
        journal: SideEffectJournal
    ) -> Tuple[str, str]:
        vm_ref = self.client.vm_create(vm_create_record(record.vm, name))
        journal.record(f"VM {name} ({vm_ref})", undo=lambda: self.client.vm_destroy(vm_ref))
        self._log("INFO", f"Created VM {name} from {record.set_id}")

        disks = record.vm.disks()
        for index, disk in enumerate(disks, start=1):
            vdi_ref = self.client.vdi_create(vdi_create_record(disk, sr_ref))
            journal.record(
                f"VDI for slot {disk.userdevice} ({vdi_ref})",
                undo=lambda ref=vdi_ref: self.client.vdi_destroy(ref)
            )
            vbd_ref = self.client.vbd_create(vbd_create_record(disk, vm_ref, vdi_ref))
            journal.record(
                f"VBD for slot {disk.userdevice} ({vbd_ref})",
                undo=lambda ref=vbd_ref: self.client.vbd_destroy(ref)
            )

            src = self.storage.disk_image_path(record.set_id, disk.vdi.uuid)
            self._log("INFO", f"Importing disk {index}/{len(disks)} (slot {disk.userdevice}) from {src}")
            self.transfer.import_vdi(self.import_endpoint, vdi_ref, src, disk_id=disk.vdi.uuid)

        if self.restore_vifs:
            self._restore_vifs(record.vm, vm_ref)

        vm_uuid = self.client.vm_get_record(vm_ref)["uuid"]
        return vm_ref, vm_uuid

    def _restore_vifs(self, vm: VirtualMachineConfig, vm_ref: str):
        """Recreate captured interfaces; VM.destroy removes them with the VM."""
        for vif in vm.vifs:
            if vif.network is None:
                continue
            try:
                network_ref = self.client.network_get_by_uuid(vif.network.uuid)
            except ProtocolError:
                self._log(
                    "WARNING",
                    f"Network {vif.network.name_label} ({vif.network.uuid}) not found, "
                    f"skipping interface {vif.device}"
                )
                continue
            self.client.vif_create({
                "device": vif.device,
                "network": network_ref,
                "VM": vm_ref,
                "MAC": vif.mac if self.keep_mac else "",
                "MTU": str(vif.mtu),
                "other_config": {},
                "qos_algorithm_type": "",
                "qos_algorithm_params": {},
            })
            self._log("DEBUG", f"Created VIF {vif.device} on network {vif.network.name_label}")

    def _restore_diff(self, record: BackupRecord, vm_ref: str):
        live = self.inventory.capture_vm(vm_ref, with_host=False)
        # Resolve every slot before merging anything
        targets = resolve_all(record.vm, live)
        disks = record.vm.disks()
        for index, disk in enumerate(disks, start=1):
            src = self.storage.disk_image_path(record.set_id, disk.vdi.uuid)
            self._log("INFO", f"Merging differential disk {index}/{len(disks)} (slot {disk.userdevice}) from {src}")
            self.transfer.import_vdi(
                self.import_endpoint, targets[disk.userdevice], src, disk_id=disk.vdi.uuid
            )
