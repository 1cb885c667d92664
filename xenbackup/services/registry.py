"""
Backup set registry.

The registry is a single JSON document holding every backup set in insertion
order. Each mutation loads the document, changes it and atomically replaces
the file. There is no locking: callers must not run two mutating operations
against the same registry at once.
"""
import logging
from pathlib import Path
from typing import List, Optional

from xenbackup.core.errors import (
    BackupSetNotFoundError,
    MetadataError,
    NoFullBackupError,
    StorageError
)
from xenbackup.models.backup import BackupSetDocument, BackupSetEntry, BackupType
from xenbackup.services import metadata
from xenbackup.services.storage import LocalBackupStorage

logger = logging.getLogger(__name__)

ALL_SETS = "all"


class BackupSetRegistry:
    """Ordered collection of backup set entries persisted as one document."""

    def __init__(self, path):
        self.path = Path(path)

    def load(self) -> BackupSetDocument:
        """
        Read the registry document.

        A missing file is an empty registry; an unreadable one is an error.
        """
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug(f"Registry {self.path} does not exist yet")
            return BackupSetDocument()
        except OSError as e:
            raise MetadataError(f"Cannot read registry {self.path}: {e}") from e
        return metadata.decode_registry(text, str(self.path))

    def save(self, document: BackupSetDocument):
        metadata.atomic_write_text(self.path, metadata.encode_registry(document))

    def list(self, vm_uuid: Optional[str] = None) -> List[BackupSetEntry]:
        entries = self.load().sets
        if vm_uuid is not None:
            entries = [e for e in entries if e.vm_uuid == vm_uuid]
        return entries

    def get(self, set_id: str) -> BackupSetEntry:
        for entry in self.load().sets:
            if entry.set_id == set_id:
                return entry
        raise BackupSetNotFoundError(f"Backup set {set_id} not found")

    def latest_full(self, vm_uuid: str, before: Optional[str] = None) -> Optional[BackupSetEntry]:
        """
        Most recently inserted Full entry for a VM.

        Args:
            vm_uuid: VM to look for
            before: Only consider entries inserted before this set id

        Returns:
            The entry, or None if the VM has no Full backup
        """
        entries = self.load().sets
        if before is not None:
            ids = [e.set_id for e in entries]
            if before in ids:
                entries = entries[:ids.index(before)]
        for entry in reversed(entries):
            if entry.vm_uuid == vm_uuid and entry.is_full:
                return entry
        return None

    def anchor_for(self, entry: BackupSetEntry) -> BackupSetEntry:
        """
        Full entry a differential was exported against.

        Uses the recorded ``base_set_id`` when present, otherwise the latest
        Full for the same VM inserted before the differential.
        """
        if entry.is_full:
            return entry
        if entry.base_set_id:
            try:
                anchor = self.get(entry.base_set_id)
            except BackupSetNotFoundError as e:
                raise NoFullBackupError(
                    f"Base backup {entry.base_set_id} of {entry.set_id} is missing"
                ) from e
            if not anchor.is_full:
                raise NoFullBackupError(
                    f"Base backup {anchor.set_id} of {entry.set_id} is not a full backup"
                )
            return anchor
        anchor = self.latest_full(entry.vm_uuid, before=entry.set_id)
        if anchor is None:
            raise NoFullBackupError(f"No full backup precedes {entry.set_id}")
        return anchor

    def dependents(self, set_id: str) -> List[BackupSetEntry]:
        """Differential entries anchored on the given Full entry."""
        result = []
        for entry in self.load().sets:
            if entry.type != BackupType.DIFF:
                continue
            try:
                anchor = self.anchor_for(entry)
            except NoFullBackupError:
                continue
            if anchor.set_id == set_id:
                result.append(entry)
        return result

    def append(self, entry: BackupSetEntry):
        document = self.load()
        if any(e.set_id == entry.set_id for e in document.sets):
            raise MetadataError(f"Backup set {entry.set_id} already exists")
        document.sets.append(entry)
        self.save(document)
        logger.info(f"Registered backup set {entry.set_id} ({entry.type.value})")

    def remove(self, set_ids: List[str]) -> List[BackupSetEntry]:
        """Drop entries by id; returns the removed entries."""
        document = self.load()
        removed = [e for e in document.sets if e.set_id in set_ids]
        document.sets = [e for e in document.sets if e.set_id not in set_ids]
        self.save(document)
        return removed

    def clear(self) -> List[BackupSetEntry]:
        document = self.load()
        removed = document.sets
        self.save(BackupSetDocument())
        return removed


def delete_backup_set(
    storage: LocalBackupStorage,
    registry: BackupSetRegistry,
    set_id: str,
    force: bool = False
) -> List[str]:
    """
    Delete one backup set, or every set when ``set_id`` is ``"all"``.

    Directory removal failures are logged and do not stop the registry
    update. A Full set that still anchors differentials is only deleted with
    ``force``.

    Returns:
        Ids of the deleted sets
    """
    if set_id == ALL_SETS:
        targets = [entry.set_id for entry in registry.list()]
        # Unregistered directories only when they hold set metadata
        for name in storage.list_set_dirs():
            if name not in targets and storage.has_meta(name):
                targets.append(name)
    else:
        entry = registry.get(set_id)
        if entry.is_full:
            dependents = registry.dependents(set_id)
            if dependents and not force:
                ids = ", ".join(d.set_id for d in dependents)
                raise MetadataError(
                    f"Backup set {set_id} is the base of differential sets {ids}; "
                    f"use force to delete it"
                )
        targets = [set_id]

    for target in targets:
        try:
            storage.remove_set(target)
        except StorageError as e:
            logger.error(f"Failed to remove backup set {target}: {e}")

    if set_id == ALL_SETS:
        registry.clear()
    else:
        registry.remove(targets)

    logger.info(f"Deleted {len(targets)} backup set(s)")
    return targets
