"""
Transfer progress tracking for disk exports and imports.

Provides:
- Per-disk bytes streamed (updated by the stream thread)
- Per-disk task progress (updated by the poll loop)
- Transfer rate from recent samples
- Thread-safe updates and snapshots
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)


@dataclass
class DiskProgress:
    """Progress tracking for a single disk transfer."""
    disk_id: str
    direction: str  # 'export' or 'import'
    status: str = "pending"  # pending, transferring, completed, failed
    bytes_transferred: int = 0
    bytes_total: int = 0
    task_progress: float = 0.0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    _samples: List[tuple] = field(default_factory=list)  # (timestamp, bytes) for rate calc

    @property
    def percent(self) -> float:
        if self.bytes_total > 0:
            return min(100.0, (self.bytes_transferred / self.bytes_total) * 100)
        return min(100.0, self.task_progress * 100)

    @property
    def transfer_rate_bps(self) -> float:
        """Transfer rate in bytes per second over the last 10 seconds of samples."""
        now = time.time()
        recent = [(t, b) for t, b in self._samples if now - t < 10]
        if len(recent) < 2:
            recent = self._samples[-2:]

        if len(recent) < 2:
            return 0.0

        time_delta = recent[-1][0] - recent[0][0]
        bytes_delta = recent[-1][1] - recent[0][1]

        if time_delta <= 0:
            return 0.0

        return bytes_delta / time_delta

    def _start(self):
        if self.status == "pending":
            self.status = "transferring"
            self.started_at = datetime.now(timezone.utc)

    def add_bytes(self, count: int):
        self._start()
        self.bytes_transferred += count

        # Keep the last 20 samples
        self._samples.append((time.time(), self.bytes_transferred))
        if len(self._samples) > 20:
            self._samples = self._samples[-20:]

    def set_task_progress(self, value: float):
        self._start()
        self.task_progress = value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "disk_id": self.disk_id,
            "direction": self.direction,
            "status": self.status,
            "bytes_transferred": self.bytes_transferred,
            "bytes_total": self.bytes_total,
            "task_progress": round(self.task_progress, 3),
            "percent": round(self.percent, 1),
            "transfer_rate_bps": round(self.transfer_rate_bps),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
        }


class ProgressTracker:
    """
    Track progress of the disk transfers of one backup or restore.

    The stream thread and the control thread both update a disk, so every
    access goes through the tracker lock.
    """

    def __init__(self, operation: str = "transfer", progress_callback=None):
        """
        Args:
            operation: Label used in log messages (usually the set id)
            progress_callback: Optional callback(disk_id, bytes_transferred, task_progress)
        """
        self.operation = operation
        self.progress_callback = progress_callback
        self._lock = threading.Lock()
        self._disks: Dict[str, DiskProgress] = {}

    def start_disk(self, disk_id: str, direction: str, bytes_total: int = 0) -> DiskProgress:
        with self._lock:
            disk = DiskProgress(disk_id=disk_id, direction=direction, bytes_total=bytes_total)
            self._disks[disk_id] = disk
        logger.debug(f"{self.operation}: tracking {direction} of {disk_id}")
        return disk

    def _get_or_create(self, disk_id: str) -> DiskProgress:
        if disk_id not in self._disks:
            self._disks[disk_id] = DiskProgress(disk_id=disk_id, direction="export")
        return self._disks[disk_id]

    def add_bytes(self, disk_id: str, count: int):
        with self._lock:
            disk = self._get_or_create(disk_id)
            disk.add_bytes(count)
            snapshot = (disk.bytes_transferred, disk.task_progress)
        self._notify(disk_id, *snapshot)

    def set_task_progress(self, disk_id: str, value: float):
        with self._lock:
            disk = self._get_or_create(disk_id)
            disk.set_task_progress(value)
            snapshot = (disk.bytes_transferred, disk.task_progress)
        self._notify(disk_id, *snapshot)

    def mark_completed(self, disk_id: str):
        with self._lock:
            disk = self._get_or_create(disk_id)
            disk.status = "completed"
            disk.completed_at = datetime.now(timezone.utc)

    def mark_failed(self, disk_id: str, error: Optional[str] = None):
        with self._lock:
            disk = self._get_or_create(disk_id)
            disk.status = "failed"
            disk.error = error

    def get(self, disk_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            disk = self._disks.get(disk_id)
            return disk.to_dict() if disk else None

    def get_progress(self) -> Dict[str, Any]:
        """Snapshot of all disks plus totals."""
        with self._lock:
            disks = [d.to_dict() for d in self._disks.values()]
        return {
            "operation": self.operation,
            "bytes_transferred": sum(d["bytes_transferred"] for d in disks),
            "completed_disks": sum(1 for d in disks if d["status"] == "completed"),
            "total_disks": len(disks),
            "disks": disks,
        }

    def _notify(self, disk_id: str, bytes_transferred: int, task_progress: float):
        if not self.progress_callback:
            return
        try:
            self.progress_callback(disk_id, bytes_transferred, task_progress)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")
