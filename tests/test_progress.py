"""
Tests for transfer progress tracking.
"""

import pytest

from xenbackup.services.progress import DiskProgress, ProgressTracker


class TestDiskProgress:
    """Tests for DiskProgress."""

    def test_percent_from_bytes(self):
        disk = DiskProgress(disk_id="a", direction="export", bytes_total=200)
        disk.add_bytes(50)

        assert disk.percent == 25.0
        assert disk.status == "transferring"
        assert disk.started_at is not None

    def test_percent_from_task_without_total(self):
        disk = DiskProgress(disk_id="a", direction="export")
        disk.set_task_progress(0.4)

        assert disk.percent == pytest.approx(40.0)

    def test_percent_capped(self):
        disk = DiskProgress(disk_id="a", direction="import", bytes_total=10)
        disk.add_bytes(20)

        assert disk.percent == 100.0

    def test_rate_needs_two_samples(self):
        disk = DiskProgress(disk_id="a", direction="export")
        disk.add_bytes(10)

        assert disk.transfer_rate_bps == 0.0


class TestProgressTracker:
    """Tests for ProgressTracker."""

    def test_tracks_disks(self):
        tracker = ProgressTracker("set-1")
        tracker.start_disk("a", "export", 100)
        tracker.start_disk("b", "export", 100)
        tracker.add_bytes("a", 100)
        tracker.mark_completed("a")
        tracker.mark_failed("b", "HTTP 500")

        progress = tracker.get_progress()

        assert progress["operation"] == "set-1"
        assert progress["bytes_transferred"] == 100
        assert progress["completed_disks"] == 1
        assert progress["total_disks"] == 2
        assert tracker.get("b")["error"] == "HTTP 500"
        assert tracker.get("c") is None

    def test_callback(self):
        updates = []
        tracker = ProgressTracker(progress_callback=lambda *args: updates.append(args))
        tracker.start_disk("a", "export")
        tracker.add_bytes("a", 5)
        tracker.set_task_progress("a", 0.5)

        assert updates == [("a", 5, 0.0), ("a", 5, 0.5)]

    def test_callback_failure_logged(self, caplog):
        def broken(*args):
            raise RuntimeError("display gone")

        tracker = ProgressTracker(progress_callback=broken)
        tracker.add_bytes("a", 5)

        assert "Progress callback failed" in caplog.text
        assert tracker.get("a")["bytes_transferred"] == 5
