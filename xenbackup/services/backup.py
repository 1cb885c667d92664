"""
Full and differential VM backups.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from xenbackup.core.errors import (
    DiskResolutionError,
    MetadataError,
    NoFullBackupError,
    OperatorInputError,
    ProtocolError,
    SnapshotError
)
from xenbackup.models.backup import (
    DATE_FORMAT,
    BackupRecord,
    BackupType,
    make_set_id
)
from xenbackup.services.disk_identity import find_disk_by_userdevice
from xenbackup.services.inventory import InventoryService
from xenbackup.services.journal import SideEffectJournal
from xenbackup.services.registry import BackupSetRegistry
from xenbackup.services.snapshot import SnapshotService
from xenbackup.services.storage import LocalBackupStorage
from xenbackup.services.transfer import TransferEngine
from xenbackup.xenapi.client import NULL_REF, XenApiClient

logger = logging.getLogger(__name__)


class BackupService:
    """Drives full and differential backups of one VM at a time."""

    def __init__(
        self,
        client: XenApiClient,
        storage: LocalBackupStorage,
        registry: BackupSetRegistry,
        transfer: TransferEngine,
        inventory: Optional[InventoryService] = None,
        snapshots: Optional[SnapshotService] = None,
        log_callback=None,
        clock: Callable[[], datetime] = datetime.now,
        rollback: bool = False
    ):
        """
        Initialize the backup service.

        Args:
            client: Logged-in management client
            storage: Backup set directory layout
            registry: Backup set registry
            transfer: Data-plane transfer engine
            inventory: VM capture service (created from client if omitted)
            snapshots: Snapshot service (created from client if omitted)
            log_callback: Optional callback function for verbose logging.
                          Signature: callback(level: str, message: str, details: dict = None)
            clock: Returns the local time used for backup set ids
            rollback: On failure also remove the partial backup directory
        """
        self.client = client
        self.storage = storage
        self.registry = registry
        self.transfer = transfer
        self.inventory = inventory or InventoryService(client)
        self.snapshots = snapshots or SnapshotService(client)
        self.log_callback = log_callback
        self.clock = clock
        self.rollback = rollback

    def _log(self, level: str, message: str, details: dict = None):
        """
        Log a message to both the Python logger and the callback (if set).

        Args:
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            message: Human-readable log message
            details: Optional structured metadata
        """
        log_method = getattr(logger, level.lower(), logger.info)
        log_method(message)

        if self.log_callback:
            try:
                self.log_callback(level, message, details)
            except Exception as e:
                logger.warning(f"Log callback failed: {e}")

    def backup_full(
        self,
        vm_uuid: str,
        endpoint: Optional[str] = None,
        endpoint_index: Optional[int] = None,
        choose_endpoint: Optional[Callable[[Sequence[str]], int]] = None
    ) -> BackupRecord:
        """Snapshot a VM, export every disk and keep the snapshot as diff anchor."""
        return self._backup(BackupType.FULL, vm_uuid, endpoint, endpoint_index, choose_endpoint)

    def backup_diff(
        self,
        vm_uuid: str,
        endpoint: Optional[str] = None,
        endpoint_index: Optional[int] = None,
        choose_endpoint: Optional[Callable[[Sequence[str]], int]] = None
    ) -> BackupRecord:
        """
        Snapshot a VM and export each disk relative to the latest full backup.

        Differentials are always taken against the latest Full of the VM,
        never against a previous differential.
        """
        return self._backup(BackupType.DIFF, vm_uuid, endpoint, endpoint_index, choose_endpoint)

    def list_endpoints(self, vm_ref: str) -> List[str]:
        """
        Candidate data-plane addresses for exporting a VM's disks.

        These are the attached interface addresses of the host the VM has
        affinity for (or runs on). A VM bound to no host can only be exported
        through the pool master.
        """
        record = self.client.vm_get_record(vm_ref)
        host_ref = record.get("affinity", NULL_REF)
        if not host_ref or host_ref == NULL_REF:
            host_ref = record.get("resident_on", NULL_REF)
        if not host_ref or host_ref == NULL_REF:
            self._log("WARNING", f"VM {record.get('uuid')} has no affinity host, using pool master")
            return [self.client.url]
        return self.inventory.host_endpoints(host_ref)

    @staticmethod
    def select_endpoint(
        candidates: Sequence[str],
        endpoint: Optional[str] = None,
        endpoint_index: Optional[int] = None,
        choose_endpoint: Optional[Callable[[Sequence[str]], int]] = None
    ) -> str:
        """
        Pick one of the candidate endpoints.

        Raises:
            OperatorInputError: no candidates, or the selection is not one of them
        """
        if not candidates:
            raise OperatorInputError("Host has no attached network interface with an address")
        if endpoint is not None:
            if endpoint not in candidates:
                raise OperatorInputError(
                    f"Endpoint {endpoint} is not one of {', '.join(candidates)}"
                )
            return endpoint
        if endpoint_index is None and choose_endpoint is not None:
            endpoint_index = choose_endpoint(candidates)
        if endpoint_index is None:
            return candidates[0]
        if not isinstance(endpoint_index, int) or not 0 <= endpoint_index < len(candidates):
            raise OperatorInputError(
                f"Endpoint selection {endpoint_index!r} is out of range (0-{len(candidates) - 1})"
            )
        return candidates[endpoint_index]

    def _resolve_anchor_image(self, anchor: BackupRecord, userdevice: str) -> str:
        """Current reference of the anchor's disk image in a slot."""
        base_disk = find_disk_by_userdevice(anchor.vm, userdevice)
        try:
            return self.client.vdi_get_by_uuid(base_disk.vdi.uuid)
        except ProtocolError as e:
            raise DiskResolutionError(
                f"Base image {base_disk.vdi.uuid} (slot {userdevice}) of backup "
                f"{anchor.set_id} no longer exists"
            ) from e

    def _abandon(self, set_id: str, journal: SideEffectJournal, error: Exception):
        """Log a failed backup and undo what the journal allows."""
        self._log("ERROR", f"Backup {set_id} failed: {error}")
        leftovers = journal.unwind(rollback=self.rollback)
        if leftovers:
            self._log("WARNING", f"Backup {set_id} left behind: {'; '.join(leftovers)}")

    def _backup(
        self,
        backup_type: BackupType,
        vm_uuid: str,
        endpoint: Optional[str],
        endpoint_index: Optional[int],
        choose_endpoint: Optional[Callable[[Sequence[str]], int]]
    ) -> BackupRecord:
        is_diff = backup_type == BackupType.DIFF
        self._log("INFO", f"Starting {backup_type.value} backup of VM {vm_uuid}")

        anchor: Optional[BackupRecord] = None
        if is_diff:
            anchor_entry = self.registry.latest_full(vm_uuid)
            if anchor_entry is None:
                raise NoFullBackupError(f"No full backup of VM {vm_uuid} to diff against")
            anchor = self.storage.load_meta(anchor_entry.set_id)
            self._log("INFO", f"Differential base is {anchor.set_id}")

        vm_ref = self.inventory.find_vm(vm_uuid)
        selected = self.select_endpoint(
            self.list_endpoints(vm_ref), endpoint, endpoint_index, choose_endpoint
        )
        self._log("INFO", f"Exporting through {selected}")

        date = self.clock().strftime(DATE_FORMAT)
        set_id = make_set_id(vm_uuid, date)
        if any(e.set_id == set_id for e in self.registry.list()) or self.storage.set_dir(set_id).exists():
            raise MetadataError(f"Backup set {set_id} already exists")

        live = self.client.vm_get_record(vm_ref)

        journal = SideEffectJournal(set_id)
        handle = self.snapshots.create_snapshot(vm_ref, set_id)
        journal.record(
            f"snapshot {set_id} ({handle.ref})",
            undo=lambda: self.snapshots.destroy_snapshot(handle),
            always=True
        )

        try:
            self.snapshots.mark_in_use(handle)
            config = self.inventory.capture_vm(handle.ref, with_host=False)
            # Snapshots carry a generated name; records keep the VM's own
            config = config.model_copy(update={
                "name_label": live.get("name_label", ""),
                "name_description": live.get("name_description", ""),
            })
            disks = config.disks()

            # Resolve every base before the first byte is written
            bases: Dict[str, str] = {}
            if is_diff:
                for disk in disks:
                    bases[disk.userdevice] = self._resolve_anchor_image(anchor, disk.userdevice)

            set_dir = self.storage.create_set_dir(set_id)
            journal.record(
                f"backup directory {set_dir}",
                undo=lambda: self.storage.remove_set(set_id)
            )

            for index, disk in enumerate(disks, start=1):
                dest = self.storage.disk_image_path(set_id, disk.vdi.uuid)
                self._log(
                    "INFO",
                    f"Exporting disk {index}/{len(disks)} (slot {disk.userdevice}) to {dest}",
                    {"vdi_uuid": disk.vdi.uuid, "base": bool(bases)}
                )
                outcome = self.transfer.export_vdi(
                    selected,
                    disk.vdi.ref,
                    dest,
                    base_vdi_ref=bases.get(disk.userdevice),
                    disk_id=disk.vdi.uuid,
                    bytes_total=0 if is_diff else disk.vdi.virtual_size
                )
                self._log(
                    "DEBUG",
                    f"Exported {outcome.bytes_transferred} bytes for slot {disk.userdevice}"
                )

            record = BackupRecord(
                set_id=set_id,
                vm_uuid=vm_uuid,
                date=date,
                type=backup_type,
                base_set_id=anchor.set_id if is_diff else None,
                vm=config,
            )
            self.storage.write_meta(record)
        except Exception as e:
            self._abandon(set_id, journal, e)
            raise

        if is_diff:
            try:
                self.snapshots.destroy_snapshot(handle)
            except SnapshotError as e:
                self._log("ERROR", f"Backup {set_id} completed but its snapshot was not removed: {e}")
        else:
            self.snapshots.retain(handle)

        try:
            self.registry.append(record.entry())
        except Exception as e:
            self._abandon(set_id, journal, e)
            raise
        self._log("INFO", f"{backup_type.value.capitalize()} backup {set_id} completed", {"disks": len(disks)})
        return record
