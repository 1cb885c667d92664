"""
Local filesystem layout of backup sets.

    {base_path}/backup_set.json
    {base_path}/{set_id}/vm_meta.json
    {base_path}/{set_id}/{vdi_uuid}.vhd
"""
import logging
import shutil
from pathlib import Path
from typing import List, Optional

from xenbackup.core.errors import StorageError
from xenbackup.models.backup import BackupRecord
from xenbackup.services import metadata

logger = logging.getLogger(__name__)

IMAGE_SUFFIX = ".vhd"


class LocalBackupStorage:
    """Backup set directories under a local base path."""

    def __init__(self, base_path, meta_file: str = "vm_meta.json"):
        self.base_path = Path(base_path)
        self.meta_file = meta_file

        # Create base directory if it doesn't exist
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, path: str) -> Path:
        """Get full filesystem path from relative path."""
        full_path = self.base_path / path
        # Ensure path is within base_path
        base = self.base_path.resolve()
        resolved = full_path.resolve()
        if resolved != base and base not in resolved.parents:
            raise StorageError(f"Path {path} is outside base path")
        return full_path

    def set_dir(self, set_id: str) -> Path:
        path = self._get_full_path(set_id)
        if path.resolve() == self.base_path.resolve():
            raise StorageError(f"Invalid backup set id: {set_id!r}")
        return path

    def create_set_dir(self, set_id: str) -> Path:
        path = self.set_dir(set_id)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def disk_image_path(self, set_id: str, vdi_uuid: str) -> Path:
        return self._get_full_path(f"{set_id}/{vdi_uuid}{IMAGE_SUFFIX}")

    def meta_path(self, set_id: str) -> Path:
        return self._get_full_path(f"{set_id}/{self.meta_file}")

    def write_meta(self, record: BackupRecord) -> Path:
        path = self.meta_path(record.set_id)
        metadata.write_record(path, record)
        return path

    def load_meta(self, set_id: str) -> BackupRecord:
        return metadata.read_record(self.meta_path(set_id))

    def list_set_dirs(self) -> List[str]:
        """Names of all per-set directories, sorted."""
        return sorted(p.name for p in self.base_path.iterdir() if p.is_dir())

    def has_meta(self, set_id: str) -> bool:
        """Whether a directory holds backup set metadata."""
        return self.meta_path(set_id).is_file()

    def remove_set(self, set_id: str) -> Optional[Path]:
        """
        Remove a backup set directory and everything in it.

        Returns:
            The removed path, or None if it did not exist

        Raises:
            StorageError: the directory could not be removed
        """
        path = self.set_dir(set_id)
        if not path.exists():
            return None
        try:
            shutil.rmtree(path)
        except OSError as e:
            raise StorageError(f"Failed to remove {path}: {e}") from e
        logger.info(f"Removed backup set directory {path}")
        return path
