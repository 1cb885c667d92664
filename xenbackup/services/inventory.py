"""
Pool inventory: VM configuration capture and host/SR/network listing.
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from xenbackup.core.errors import ProtocolError
from xenbackup.models.infrastructure import Host, HostInterface, StorageRepository
from xenbackup.models.vm import (
    DiskImage,
    Network,
    NetworkAttachment,
    VirtualDisk,
    VirtualMachineConfig
)
from xenbackup.services.metadata import atomic_write_text
from xenbackup.xenapi.client import NULL_REF, XenApiClient

logger = logging.getLogger(__name__)

VBD_TYPE_DISK = "Disk"
SKIPPED_SR_TYPES = ("iso", "udev")

# XenAPI VM record field -> VirtualMachineConfig field
_VM_FIELDS = {
    "uuid": "uuid",
    "allowed_operations": "allowed_operations",
    "power_state": "power_state",
    "name_label": "name_label",
    "name_description": "name_description",
    "user_version": "user_version",
    "is_a_template": "is_a_template",
    "memory_overhead": "memory_overhead",
    "memory_target": "memory_target",
    "memory_static_max": "memory_static_max",
    "memory_dynamic_max": "memory_dynamic_max",
    "memory_dynamic_min": "memory_dynamic_min",
    "memory_static_min": "memory_static_min",
    "VCPUs_params": "vcpus_params",
    "VCPUs_max": "vcpus_max",
    "VCPUs_at_startup": "vcpus_at_startup",
    "actions_after_shutdown": "actions_after_shutdown",
    "actions_after_reboot": "actions_after_reboot",
    "actions_after_crash": "actions_after_crash",
    "PV_bootloader": "pv_bootloader",
    "PV_kernel": "pv_kernel",
    "PV_ramdisk": "pv_ramdisk",
    "PV_args": "pv_args",
    "PV_bootloader_args": "pv_bootloader_args",
    "PV_legacy_args": "pv_legacy_args",
    "HVM_boot_policy": "hvm_boot_policy",
    "HVM_boot_params": "hvm_boot_params",
    "HVM_shadow_multiplier": "hvm_shadow_multiplier",
    "platform": "platform",
    "other_config": "other_config",
}


def is_regular_vm(record: Dict[str, Any]) -> bool:
    """True for guest VMs; false for templates, control domains and snapshots."""
    return not (
        record.get("is_a_template")
        or record.get("is_control_domain")
        or record.get("is_a_snapshot")
    )


class InventoryService:
    """Reads VM configurations and pool objects through the management client."""

    def __init__(self, client: XenApiClient):
        self.client = client

    def capture_vm(self, vm_ref: str, with_host: bool = True) -> VirtualMachineConfig:
        """
        Capture the configuration of a VM (or a snapshot) with its disks and VIFs.

        Only ``Disk`` attachments are captured. With ``with_host`` the resident
        host is looked up as well; a failure there is logged and ignored.
        """
        record = self.client.vm_get_record(vm_ref)
        data = {field: record[key] for key, field in _VM_FIELDS.items() if key in record}
        data["vbds"] = self._capture_disks(record.get("VBDs", []))
        data["vifs"] = self._capture_vifs(record.get("VIFs", []))

        if with_host:
            resident_on = record.get("resident_on", NULL_REF)
            if resident_on and resident_on != NULL_REF:
                try:
                    data["host_uuid"] = self.client.host_get_record(resident_on)["uuid"]
                except ProtocolError as e:
                    logger.warning(f"Failed to get host of VM {record.get('uuid')}: {e}")

        return VirtualMachineConfig.model_validate(data)

    def _capture_disks(self, vbd_refs: List[str]) -> List[VirtualDisk]:
        disks = []
        for vbd_ref in vbd_refs:
            vbd = self.client.vbd_get_record(vbd_ref)
            if vbd.get("type") != VBD_TYPE_DISK:
                continue
            image = None
            vdi_ref = vbd.get("VDI", NULL_REF)
            if vdi_ref and vdi_ref != NULL_REF:
                vdi = self.client.vdi_get_record(vdi_ref)
                image = DiskImage(
                    uuid=vdi["uuid"],
                    ref=vdi_ref,
                    name_label=vdi.get("name_label", ""),
                    name_description=vdi.get("name_description", ""),
                    virtual_size=vdi.get("virtual_size", 0),
                    physical_utilisation=vdi.get("physical_utilisation", 0),
                    type=vdi.get("type", "system"),
                    sharable=vdi.get("sharable", False),
                    read_only=vdi.get("read_only", False),
                )
            disks.append(VirtualDisk(
                uuid=vbd.get("uuid", ""),
                device=vbd.get("device", ""),
                userdevice=vbd.get("userdevice", ""),
                bootable=vbd.get("bootable", False),
                vdi=image,
            ))
        return disks

    def _capture_vifs(self, vif_refs: List[str]) -> List[NetworkAttachment]:
        vifs = []
        for vif_ref in vif_refs:
            vif = self.client.vif_get_record(vif_ref)
            network = None
            network_ref = vif.get("network", NULL_REF)
            if network_ref and network_ref != NULL_REF:
                network = self._network(self.client.network_get_record(network_ref))
            vifs.append(NetworkAttachment(
                uuid=vif.get("uuid", ""),
                device=vif.get("device", ""),
                mac=vif.get("MAC", ""),
                mtu=vif.get("MTU", 1500),
                network=network,
            ))
        return vifs

    @staticmethod
    def _network(record: Dict[str, Any]) -> Network:
        return Network(
            uuid=record["uuid"],
            name_label=record.get("name_label", ""),
            name_description=record.get("name_description", ""),
            mtu=record.get("MTU", 1500),
            bridge=record.get("bridge", ""),
            managed=record.get("managed", True),
        )

    def find_vm(self, vm_uuid: str) -> str:
        return self.client.vm_get_by_uuid(vm_uuid)

    def list_vms(self) -> List[VirtualMachineConfig]:
        """Guest VMs of the pool, sorted by name."""
        vms = []
        for ref, record in self.client.vm_get_all_records().items():
            if not is_regular_vm(record):
                continue
            vms.append(self.capture_vm(ref))
        return sorted(vms, key=lambda vm: vm.name_label)

    def host_interfaces(self, host_record: Dict[str, Any]) -> List[HostInterface]:
        interfaces = []
        for pif_ref in host_record.get("PIFs", []):
            pif = self.client.pif_get_record(pif_ref)
            interfaces.append(HostInterface(
                device=pif.get("device", ""),
                ip=pif.get("IP", ""),
                currently_attached=pif.get("currently_attached", False),
            ))
        return interfaces

    def host_endpoints(self, host_ref: str) -> List[str]:
        """Addresses of the currently attached interfaces of a host."""
        record = self.client.host_get_record(host_ref)
        return [
            iface.ip for iface in self.host_interfaces(record)
            if iface.currently_attached and iface.ip
        ]

    def list_hosts(self) -> List[Host]:
        """Pool hosts with their interfaces and resident guest VMs."""
        vms = self.list_vms()
        hosts = []
        for ref, record in self.client.host_get_all_records().items():
            hosts.append(Host(
                uuid=record["uuid"],
                hostname=record.get("hostname", ""),
                address=record.get("address", ""),
                interfaces=self.host_interfaces(record),
                vms=[vm for vm in vms if vm.host_uuid == record["uuid"]],
            ))
        return sorted(hosts, key=lambda h: h.hostname)

    def list_srs(self) -> List[StorageRepository]:
        """Storage repositories that can hold VM disks."""
        srs = []
        for record in self.client.sr_get_all_records().values():
            if record.get("type") in SKIPPED_SR_TYPES:
                continue
            srs.append(StorageRepository(
                uuid=record["uuid"],
                name_label=record.get("name_label", ""),
                name_description=record.get("name_description", ""),
                type=record.get("type", ""),
                physical_size=record.get("physical_size", 0),
                physical_utilisation=record.get("physical_utilisation", 0),
            ))
        return sorted(srs, key=lambda sr: sr.name_label)

    def list_networks(self) -> List[Network]:
        networks = [self._network(r) for r in self.client.network_get_all_records().values()]
        return sorted(networks, key=lambda n: n.name_label)

    def dump(self, path, hosts: Optional[List[Host]] = None) -> Path:
        """Write hosts (with VMs and disks) and SRs to a JSON document."""
        path = Path(path)
        if hosts is None:
            hosts = self.list_hosts()
        document = {
            "hosts": [h.model_dump(mode="json", exclude_none=True) for h in hosts],
            "srs": [sr.model_dump(mode="json") for sr in self.list_srs()],
        }
        atomic_write_text(path, json.dumps(document, indent=4))
        logger.info(f"Wrote inventory of {len(hosts)} host(s) to {path}")
        return path
