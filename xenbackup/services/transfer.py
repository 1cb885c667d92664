"""
Disk image transfer over the XenServer HTTP data-plane.

One transfer moves one VDI:

- a task is created so the host can report status and progress;
- the HTTP stream (GET ``/export_raw_vdi`` or PUT ``/import_raw_vdi``) runs on
  a worker thread;
- the calling thread polls the task until it leaves ``pending``, its progress
  passes the ceiling, or the stream fails;
- the stream is joined and the task destroyed.

Disks are transferred one at a time; the only concurrency is between the
stream and the poll loop of the same disk.
"""
import enum
import logging
import os
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlencode

import requests
from urllib3.exceptions import InsecureRequestWarning

from xenbackup.core.errors import BackupEngineError, ProtocolError, TransferError
from xenbackup.services.progress import ProgressTracker
from xenbackup.xenapi.client import XenApiClient

logger = logging.getLogger(__name__)

IMAGE_FORMAT = "vhd"
TASK_PENDING = "pending"
TASK_FAILED_STATES = ("failure", "cancelled")


class TransferDirection(str, enum.Enum):
    """Direction of a data-plane transfer, seen from the backup storage."""
    EXPORT = "export"
    IMPORT = "import"


@dataclass
class TransferOutcome:
    """Result of one disk transfer."""
    direction: TransferDirection
    disk_id: str
    path: Path
    bytes_transferred: int
    task_status: str
    task_progress: float
    duration: float


class _ProgressReader:
    """File wrapper that reports bytes read; ``__len__`` lets requests set Content-Length."""

    def __init__(self, fileobj, size: int, on_read: Callable[[int], None]):
        self._fileobj = fileobj
        self._size = size
        self._on_read = on_read

    def __len__(self) -> int:
        return self._size

    def read(self, size: int = -1) -> bytes:
        chunk = self._fileobj.read(size)
        if chunk:
            self._on_read(len(chunk))
        return chunk


class TransferEngine:
    """Runs VDI exports and imports with concurrent task polling."""

    def __init__(
        self,
        client: XenApiClient,
        http_session: Optional[requests.Session] = None,
        scheme: str = "http",
        poll_interval: float = 5.0,
        progress_ceiling: float = 0.95,
        chunk_size: int = 1024 * 1024,
        verify_ssl: bool = False,
        timeout: float = 30,
        sleep: Callable[[float], None] = time.sleep,
        tracker: Optional[ProgressTracker] = None
    ):
        """
        Args:
            client: Logged-in management client (tasks and session id)
            http_session: requests session for the data-plane
            scheme: Scheme prepended to endpoints given as bare addresses
            poll_interval: Seconds between task samples
            progress_ceiling: Task progress above which the poll loop stops waiting
            chunk_size: Bytes per read/write on the stream
            verify_ssl: Verify TLS certificates on the data-plane
            timeout: Connect timeout in seconds; reads never time out
            sleep: Sleep function used by the poll loop
            tracker: Progress tracker shared with the caller
        """
        self.client = client
        self.scheme = scheme
        self.poll_interval = poll_interval
        self.progress_ceiling = progress_ceiling
        self.chunk_size = chunk_size
        self.timeout = timeout
        self.sleep = sleep
        self.tracker = tracker or ProgressTracker()
        self.executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="vdi-stream")

        if http_session is None:
            http_session = requests.Session()
            http_session.verify = verify_ssl
        self.http = http_session
        if not verify_ssl:
            # Pool hosts usually serve self-signed certificates
            requests.packages.urllib3.disable_warnings(InsecureRequestWarning)

    def close(self):
        self.executor.shutdown(wait=True)
        self.http.close()

    def __enter__(self) -> "TransferEngine":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _base_url(self, endpoint: str) -> str:
        if "://" not in endpoint:
            endpoint = f"{self.scheme}://{endpoint}"
        return endpoint.rstrip("/")

    def build_url(
        self,
        endpoint: str,
        direction: TransferDirection,
        task_ref: str,
        vdi_ref: str,
        base_vdi_ref: Optional[str] = None
    ) -> str:
        """Data-plane URL for one transfer; ``base`` only applies to exports."""
        action = "export_raw_vdi" if direction == TransferDirection.EXPORT else "import_raw_vdi"
        params = [
            ("session_id", self.client.session_id),
            ("task_id", task_ref),
            ("vdi", vdi_ref),
            ("format", IMAGE_FORMAT),
        ]
        if base_vdi_ref and direction == TransferDirection.EXPORT:
            params.append(("base", base_vdi_ref))
        return f"{self._base_url(endpoint)}/{action}?{urlencode(params, safe=':')}"

    @staticmethod
    def redact(url: str) -> str:
        """URL with the session id hidden, for logging."""
        head, sep, query = url.partition("?")
        if not sep:
            return url
        parts = []
        for item in query.split("&"):
            key, _, value = item.partition("=")
            parts.append(f"{key}=***" if key == "session_id" else item)
        return f"{head}?{'&'.join(parts)}"

    def export_vdi(
        self,
        endpoint: str,
        vdi_ref: str,
        dest: Path,
        base_vdi_ref: Optional[str] = None,
        disk_id: Optional[str] = None,
        bytes_total: int = 0
    ) -> TransferOutcome:
        """
        Stream a VDI (or its delta against ``base_vdi_ref``) into ``dest``.

        A failed export leaves a truncated file behind.
        """
        return self._transfer(
            TransferDirection.EXPORT, endpoint, vdi_ref, Path(dest),
            base_vdi_ref=base_vdi_ref, disk_id=disk_id, bytes_total=bytes_total
        )

    def import_vdi(
        self,
        endpoint: str,
        vdi_ref: str,
        src: Path,
        disk_id: Optional[str] = None
    ) -> TransferOutcome:
        """
        Stream ``src`` into a VDI. A differencing image is merged onto the
        VDI's current content by the host.
        """
        src = Path(src)
        try:
            size = src.stat().st_size
        except OSError as e:
            raise TransferError(f"Cannot read image file {src}: {e}") from e
        return self._transfer(
            TransferDirection.IMPORT, endpoint, vdi_ref, src,
            disk_id=disk_id, bytes_total=size
        )

    def _transfer(
        self,
        direction: TransferDirection,
        endpoint: str,
        vdi_ref: str,
        path: Path,
        base_vdi_ref: Optional[str] = None,
        disk_id: Optional[str] = None,
        bytes_total: int = 0
    ) -> TransferOutcome:
        disk_id = disk_id or path.stem
        label = "export_raw_vdi" if direction == TransferDirection.EXPORT else "import_raw_vdi"
        started = time.monotonic()

        task_ref = self.client.task_create(label, f"{direction.value} {disk_id}")
        try:
            url = self.build_url(endpoint, direction, task_ref, vdi_ref, base_vdi_ref)
            logger.info(f"Starting {direction.value} of {disk_id}: {self.redact(url)}")
            self.tracker.start_disk(disk_id, direction.value, bytes_total)

            if direction == TransferDirection.EXPORT:
                future = self.executor.submit(self._stream_export, url, path, disk_id)
            else:
                future = self.executor.submit(self._stream_import, url, path, disk_id, bytes_total)

            try:
                self._wait_for_task(task_ref, disk_id, future)
            finally:
                # Never leave the stream thread running past this call
                stream_error = future.exception()

            if stream_error is not None:
                self.tracker.mark_failed(disk_id, str(stream_error))
                if isinstance(stream_error, BackupEngineError):
                    raise stream_error
                raise TransferError(f"{direction.value} of {disk_id} failed: {stream_error}") from stream_error

            status = self.client.task_get_status(task_ref)
            progress = self.client.task_get_progress(task_ref)
            if status in TASK_FAILED_STATES:
                error_info = self.client.task_get_error_info(task_ref)
                self.tracker.mark_failed(disk_id, f"task {status}")
                raise TransferError(
                    f"{direction.value} of {disk_id} ended with task status {status}: "
                    f"{' '.join(str(e) for e in error_info)}"
                )

            self.tracker.mark_completed(disk_id)
            transferred = future.result()
            duration = time.monotonic() - started
            rate = (self.tracker.get(disk_id) or {}).get("transfer_rate_bps", 0)
            logger.info(
                f"Finished {direction.value} of {disk_id}: {transferred} bytes "
                f"in {duration:.1f}s at {rate} B/s (task {status}, progress {progress:.2f})"
            )
            return TransferOutcome(
                direction=direction,
                disk_id=disk_id,
                path=path,
                bytes_transferred=transferred,
                task_status=status,
                task_progress=progress,
                duration=duration,
            )
        finally:
            self._destroy_task(task_ref)

    def _wait_for_task(self, task_ref: str, disk_id: str, future: Future):
        """
        Poll the task while it is pending.

        Task progress does not reliably reach 1.0 on every backend, so the loop
        also stops once progress passes the ceiling. It stops as well when the
        stream has already failed.
        """
        while True:
            status = self.client.task_get_status(task_ref)
            if status != TASK_PENDING:
                logger.debug(f"Task for {disk_id} left pending: {status}")
                return status

            progress = self.client.task_get_progress(task_ref)
            self.tracker.set_task_progress(disk_id, progress)
            logger.debug(f"Task progress for {disk_id}: {progress:.2f}")
            if progress > self.progress_ceiling:
                logger.debug(f"Task progress for {disk_id} passed {self.progress_ceiling}")
                return status

            if future.done() and future.exception() is not None:
                return status

            self.sleep(self.poll_interval)

    def _destroy_task(self, task_ref: str):
        try:
            self.client.task_destroy(task_ref)
        except ProtocolError as e:
            logger.warning(f"Failed to destroy task {task_ref}: {e}")

    def _stream_export(self, url: str, dest: Path, disk_id: str) -> int:
        written = 0
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            with self.http.get(url, stream=True, timeout=(self.timeout, None)) as response:
                if not 200 <= response.status_code < 300:
                    raise TransferError(
                        f"Export of {disk_id} failed with HTTP {response.status_code}"
                    )
                with open(dest, "wb") as f:
                    for chunk in response.iter_content(chunk_size=self.chunk_size):
                        if not chunk:
                            continue
                        f.write(chunk)
                        written += len(chunk)
                        self.tracker.add_bytes(disk_id, len(chunk))
                    f.flush()
                    os.fsync(f.fileno())
        except requests.RequestException as e:
            raise TransferError(f"Export of {disk_id} failed: {e}") from e
        except OSError as e:
            raise TransferError(f"Cannot write {dest}: {e}") from e
        return written

    def _stream_import(self, url: str, src: Path, disk_id: str, size: int) -> int:
        sent = [0]

        def on_read(count: int):
            sent[0] += count
            self.tracker.add_bytes(disk_id, count)

        try:
            with open(src, "rb") as f:
                body = _ProgressReader(f, size, on_read)
                response = self.http.put(url, data=body, timeout=(self.timeout, None))
                try:
                    if not 200 <= response.status_code < 300:
                        raise TransferError(
                            f"Import of {disk_id} failed with HTTP {response.status_code}"
                        )
                finally:
                    response.close()
        except requests.RequestException as e:
            raise TransferError(f"Import of {disk_id} failed: {e}") from e
        except OSError as e:
            raise TransferError(f"Cannot read {src}: {e}") from e
        return sent[0]
