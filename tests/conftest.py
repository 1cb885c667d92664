"""
Pytest configuration and shared fixtures for xen-backup tests.

The fake pool implements the XenAPI calls the engine makes, keeping VDI
content as a dict of block id -> data so exports, differencing exports and
imports can be checked end to end. The fake data-plane serves
``/export_raw_vdi`` and ``/import_raw_vdi`` against that content.
"""

import copy
import itertools
import json
import logging
import uuid
from datetime import datetime, timedelta
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qs, urlsplit

import pytest
import XenAPI

from xenbackup.core.config import Settings
from xenbackup.core.logging_handler import APP_LOGGER, get_memory_handler
from xenbackup.services.backup import BackupService
from xenbackup.services.registry import BackupSetRegistry
from xenbackup.services.restore import RestoreService
from xenbackup.services.storage import LocalBackupStorage
from xenbackup.services.transfer import TransferEngine
from xenbackup.xenapi.client import NULL_REF, XenApiClient

GIB = 1024 ** 3


# ==============================================================================
# Fake XenAPI pool
# ==============================================================================


class _Dispatcher:
    """Stands in for ``session.xenapi``: ``xenapi.VM.get_record(ref)``."""

    def __init__(self, pool: "FakePool", prefix: Optional[str] = None):
        self._pool = pool
        self._prefix = prefix

    def __getattr__(self, name: str):
        if name.startswith("__"):
            raise AttributeError(name)
        if self._prefix is None:
            if name == "login_with_password":
                return self._pool.login_with_password
            return _Dispatcher(self._pool, name)
        return self._pool.dispatch(f"{self._prefix}.{name}")


class FakeSession:
    """XenAPI.Session replacement bound to a fake pool."""

    def __init__(self, pool: "FakePool", url: str, ignore_ssl: bool = False):
        self.pool = pool
        self.url = url
        self.ignore_ssl = ignore_ssl
        self.xenapi = _Dispatcher(pool)

    @property
    def handle(self) -> str:
        return self.pool.session_ref


class FakePool:
    """In-memory XenServer pool."""

    def __init__(self):
        self._counter = itertools.count(1)
        self.session_ref = "OpaqueRef:session-1"
        self.logged_in = False
        self.vms: Dict[str, Dict[str, Any]] = {}
        self.vbds: Dict[str, Dict[str, Any]] = {}
        self.vdis: Dict[str, Dict[str, Any]] = {}
        self.vifs: Dict[str, Dict[str, Any]] = {}
        self.networks: Dict[str, Dict[str, Any]] = {}
        self.srs: Dict[str, Dict[str, Any]] = {}
        self.hosts: Dict[str, Dict[str, Any]] = {}
        self.pifs: Dict[str, Dict[str, Any]] = {}
        self.tasks: Dict[str, Dict[str, Any]] = {}
        # VDI ref -> {block id: data}
        self.content: Dict[str, Dict[str, str]] = {}
        self.calls: List[str] = []
        # method -> failure details raised on every call
        self.failures: Dict[str, List[str]] = {}

    # -- plumbing ----------------------------------------------------------

    def session_factory(self, url: str, ignore_ssl: bool = False) -> FakeSession:
        return FakeSession(self, url, ignore_ssl)

    def login_with_password(self, username, password, version, originator):
        if password != "secret":
            raise XenAPI.Failure(["SESSION_AUTHENTICATION_FAILED", username, "bad password"])
        self.logged_in = True
        return self.session_ref

    def dispatch(self, method: str) -> Callable:
        def call(*args):
            self.calls.append(method)
            if method in self.failures:
                raise XenAPI.Failure(list(self.failures[method]))
            return getattr(self, method.replace(".", "_"))(*args)
        return call

    def _ref(self, kind: str) -> str:
        return f"OpaqueRef:{kind}-{next(self._counter)}"

    @staticmethod
    def _get(table: Dict[str, Dict[str, Any]], cls: str, ref: str) -> Dict[str, Any]:
        if ref not in table:
            raise XenAPI.Failure(["HANDLE_INVALID", cls, ref])
        return table[ref]

    @staticmethod
    def _by_uuid(table: Dict[str, Dict[str, Any]], cls: str, value: str) -> str:
        for ref, record in table.items():
            if record["uuid"] == value:
                return ref
        raise XenAPI.Failure(["UUID_INVALID", cls, value])

    # -- builders ----------------------------------------------------------

    def add_host(self, hostname: str, addresses: List[str], detached: List[str] = ()) -> str:
        ref = self._ref("host")
        pif_refs = []
        for i, ip in enumerate(list(addresses) + list(detached)):
            pif_ref = self._ref("PIF")
            self.pifs[pif_ref] = {
                "uuid": str(uuid.uuid4()),
                "device": f"eth{i}",
                "IP": ip,
                "currently_attached": ip not in detached,
            }
            pif_refs.append(pif_ref)
        self.hosts[ref] = {
            "uuid": str(uuid.uuid4()),
            "hostname": hostname,
            "address": addresses[0] if addresses else "",
            "PIFs": pif_refs,
        }
        return ref

    def add_sr(self, name: str, sr_type: str = "lvm") -> str:
        ref = self._ref("SR")
        self.srs[ref] = {
            "uuid": str(uuid.uuid4()),
            "name_label": name,
            "name_description": "",
            "type": sr_type,
            "physical_size": str(500 * GIB),
            "physical_utilisation": str(100 * GIB),
        }
        return ref

    def add_network(self, name: str, bridge: str = "xenbr0") -> str:
        ref = self._ref("network")
        self.networks[ref] = {
            "uuid": str(uuid.uuid4()),
            "name_label": name,
            "name_description": "",
            "MTU": "1500",
            "bridge": bridge,
            "managed": True,
        }
        return ref

    def add_vm(self, name: str, host_ref: str = NULL_REF, **extra) -> str:
        ref = self._ref("VM")
        record = {
            "uuid": str(uuid.uuid4()),
            "name_label": name,
            "name_description": f"{name} description",
            "power_state": "Running",
            "allowed_operations": ["clean_shutdown", "snapshot"],
            "is_a_template": False,
            "is_control_domain": False,
            "is_a_snapshot": False,
            "user_version": "1",
            "memory_overhead": "11534336",
            "memory_target": str(2 * GIB),
            "memory_static_max": str(2 * GIB),
            "memory_dynamic_max": str(2 * GIB),
            "memory_dynamic_min": str(GIB),
            "memory_static_min": str(GIB),
            "VCPUs_params": {"weight": "256"},
            "VCPUs_max": "2",
            "VCPUs_at_startup": "2",
            "actions_after_shutdown": "destroy",
            "actions_after_reboot": "restart",
            "actions_after_crash": "restart",
            "PV_bootloader": "",
            "PV_kernel": "",
            "PV_ramdisk": "",
            "PV_args": "",
            "PV_bootloader_args": "",
            "PV_legacy_args": "",
            "HVM_boot_policy": "BIOS order",
            "HVM_boot_params": {"order": "cd"},
            "HVM_shadow_multiplier": 1.0,
            "platform": {"acpi": "1", "viridian": "true"},
            "other_config": {"base_template_name": "Other install media"},
            "VBDs": [],
            "VIFs": [],
            "affinity": host_ref,
            "resident_on": host_ref,
        }
        record.update(extra)
        self.vms[ref] = record
        return ref

    def add_disk(
        self,
        vm_ref: str,
        userdevice: str,
        size: int,
        blocks: Dict[str, str],
        sr_ref: Optional[str] = None,
        bootable: bool = False
    ) -> str:
        vdi_ref = self._ref("VDI")
        self.vdis[vdi_ref] = {
            "uuid": str(uuid.uuid4()),
            "name_label": f"{self.vms[vm_ref]['name_label']} disk {userdevice}",
            "name_description": "",
            "virtual_size": str(size),
            "physical_utilisation": str(size // 2),
            "type": "system",
            "sharable": False,
            "read_only": False,
            "SR": sr_ref or next(iter(self.srs), NULL_REF),
        }
        self.content[vdi_ref] = dict(blocks)
        self._attach(vm_ref, vdi_ref, userdevice, f"xvd{chr(ord('a') + int(userdevice))}", bootable, "Disk")
        return vdi_ref

    def add_cdrom(self, vm_ref: str, userdevice: str = "3") -> str:
        return self._attach(vm_ref, NULL_REF, userdevice, "xvdd", False, "CD")

    def add_vif(self, vm_ref: str, network_ref: str, device: str = "0", mac: str = "aa:bb:cc:dd:ee:01") -> str:
        ref = self._ref("VIF")
        self.vifs[ref] = {
            "uuid": str(uuid.uuid4()),
            "device": device,
            "MAC": mac,
            "MTU": "1500",
            "network": network_ref,
            "VM": vm_ref,
        }
        self.vms[vm_ref]["VIFs"].append(ref)
        return ref

    def _attach(self, vm_ref, vdi_ref, userdevice, device, bootable, vbd_type) -> str:
        ref = self._ref("VBD")
        self.vbds[ref] = {
            "uuid": str(uuid.uuid4()),
            "VM": vm_ref,
            "VDI": vdi_ref,
            "userdevice": userdevice,
            "device": device,
            "bootable": bootable,
            "type": vbd_type,
            "mode": "RW" if vbd_type == "Disk" else "RO",
        }
        self.vms[vm_ref]["VBDs"].append(ref)
        return ref

    # -- queries used by tests ---------------------------------------------

    def snapshots(self) -> List[Dict[str, Any]]:
        return [r for r in self.vms.values() if r["is_a_snapshot"]]

    def disk_content(self, vm_ref: str) -> Dict[str, Dict[str, str]]:
        """Disk content of a VM by userdevice slot."""
        result = {}
        for vbd_ref in self.vms[vm_ref]["VBDs"]:
            vbd = self.vbds[vbd_ref]
            if vbd["type"] == "Disk":
                result[vbd["userdevice"]] = dict(self.content[vbd["VDI"]])
        return result

    # -- session -----------------------------------------------------------

    def session_logout(self):
        self.logged_in = False

    # -- VM ----------------------------------------------------------------

    def VM_get_by_uuid(self, value):
        return self._by_uuid(self.vms, "VM", value)

    def VM_get_record(self, ref):
        return copy.deepcopy(self._get(self.vms, "VM", ref))

    def VM_get_all_records(self):
        return copy.deepcopy(self.vms)

    def VM_snapshot(self, ref, name):
        source = self._get(self.vms, "VM", ref)
        snap_ref = self._ref("VM")
        snap = copy.deepcopy(source)
        snap.update({
            "uuid": str(uuid.uuid4()),
            "name_label": name,
            "is_a_snapshot": True,
            "power_state": "Halted",
            "resident_on": NULL_REF,
            "VBDs": [],
            "VIFs": [],
        })
        self.vms[snap_ref] = snap
        for vbd_ref in source["VBDs"]:
            vbd = self.vbds[vbd_ref]
            vdi_ref = vbd["VDI"]
            if vdi_ref != NULL_REF:
                new_vdi = self._ref("VDI")
                self.vdis[new_vdi] = dict(self.vdis[vdi_ref], uuid=str(uuid.uuid4()))
                self.content[new_vdi] = dict(self.content[vdi_ref])
                vdi_ref = new_vdi
            self._attach(snap_ref, vdi_ref, vbd["userdevice"], vbd["device"], vbd["bootable"], vbd["type"])
        for vif_ref in source["VIFs"]:
            vif = self.vifs[vif_ref]
            self.add_vif(snap_ref, vif["network"], vif["device"], vif["MAC"])
        return snap_ref

    def VM_create(self, record):
        for key in ("name_label", "memory_static_max", "VCPUs_max", "HVM_boot_policy"):
            if key not in record:
                raise XenAPI.Failure(["FIELD_MISSING", key])
        ref = self._ref("VM")
        vm = copy.deepcopy(record)
        vm.update({
            "uuid": str(uuid.uuid4()),
            "power_state": "Halted",
            "allowed_operations": ["start"],
            "is_control_domain": False,
            "is_a_snapshot": False,
            "memory_overhead": "0",
            "VBDs": [],
            "VIFs": [],
            "resident_on": NULL_REF,
        })
        self.vms[ref] = vm
        return ref

    def VM_destroy(self, ref):
        vm = self._get(self.vms, "VM", ref)
        for vbd_ref in vm["VBDs"]:
            self.vbds.pop(vbd_ref, None)
        for vif_ref in vm["VIFs"]:
            self.vifs.pop(vif_ref, None)
        del self.vms[ref]

    # -- VBD / VDI / VIF ---------------------------------------------------

    def VBD_get_record(self, ref):
        return copy.deepcopy(self._get(self.vbds, "VBD", ref))

    def VBD_create(self, record):
        self._get(self.vms, "VM", record["VM"])
        self._get(self.vdis, "VDI", record["VDI"])
        return self._attach(
            record["VM"], record["VDI"], record["userdevice"], record.get("device", ""),
            record["bootable"], record["type"]
        )

    def VBD_destroy(self, ref):
        vbd = self._get(self.vbds, "VBD", ref)
        self.vms[vbd["VM"]]["VBDs"].remove(ref)
        del self.vbds[ref]

    def VDI_get_record(self, ref):
        return copy.deepcopy(self._get(self.vdis, "VDI", ref))

    def VDI_get_by_uuid(self, value):
        return self._by_uuid(self.vdis, "VDI", value)

    def VDI_create(self, record):
        self._get(self.srs, "SR", record["SR"])
        ref = self._ref("VDI")
        self.vdis[ref] = {
            "uuid": str(uuid.uuid4()),
            "name_label": record["name_label"],
            "name_description": record["name_description"],
            "virtual_size": str(int(record["virtual_size"])),
            "physical_utilisation": "0",
            "type": record["type"],
            "sharable": record["sharable"],
            "read_only": record["read_only"],
            "SR": record["SR"],
        }
        self.content[ref] = {}
        return ref

    def VDI_destroy(self, ref):
        self._get(self.vdis, "VDI", ref)
        del self.vdis[ref]
        self.content.pop(ref, None)

    def VIF_get_record(self, ref):
        return copy.deepcopy(self._get(self.vifs, "VIF", ref))

    def VIF_create(self, record):
        self._get(self.networks, "network", record["network"])
        # An empty MAC asks the host to generate one
        mac = record["MAC"] or "c2:00:00:00:00:%02x" % next(self._counter)
        return self.add_vif(record["VM"], record["network"], record["device"], mac)

    # -- pool objects ------------------------------------------------------

    def network_get_record(self, ref):
        return copy.deepcopy(self._get(self.networks, "network", ref))

    def network_get_all_records(self):
        return copy.deepcopy(self.networks)

    def network_get_by_uuid(self, value):
        return self._by_uuid(self.networks, "network", value)

    def SR_get_by_uuid(self, value):
        return self._by_uuid(self.srs, "SR", value)

    def SR_get_all_records(self):
        return copy.deepcopy(self.srs)

    def host_get_record(self, ref):
        return copy.deepcopy(self._get(self.hosts, "host", ref))

    def host_get_all_records(self):
        return copy.deepcopy(self.hosts)

    def PIF_get_record(self, ref):
        return copy.deepcopy(self._get(self.pifs, "PIF", ref))

    # -- tasks -------------------------------------------------------------

    def task_create(self, label, description):
        ref = self._ref("task")
        self.tasks[ref] = {"label": label, "status": "pending", "progress": 0.0, "error_info": []}
        return ref

    def task_get_status(self, ref):
        return self._get(self.tasks, "task", ref)["status"]

    def task_get_progress(self, ref):
        return self._get(self.tasks, "task", ref)["progress"]

    def task_get_error_info(self, ref):
        return list(self._get(self.tasks, "task", ref)["error_info"])

    def task_destroy(self, ref):
        self._get(self.tasks, "task", ref)
        del self.tasks[ref]


# ==============================================================================
# Fake data-plane
# ==============================================================================


class FakeResponse:
    """Subset of requests.Response used by the transfer engine."""

    def __init__(self, status_code: int = 200, body: bytes = b""):
        self.status_code = status_code
        self.body = body
        self.closed = False

    def iter_content(self, chunk_size: int = 1):
        for i in range(0, len(self.body), chunk_size):
            yield self.body[i:i + chunk_size]

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class FakeDataPlane:
    """
    requests.Session replacement serving export_raw_vdi / import_raw_vdi.

    Images are JSON documents ``{"delta": bool, "blocks": {...}}``. An export
    with ``base`` contains only the blocks that differ from the base VDI; an
    import of a delta merges onto the target, a full image replaces it.
    """

    def __init__(self, pool: FakePool):
        self.pool = pool
        self.requests: List[tuple] = []
        self.status_code = 200
        # (status, error_info) the task ends with instead of success
        self.task_outcome: Optional[tuple] = None

    def close(self):
        pass

    def _params(self, url: str) -> Dict[str, str]:
        query = parse_qs(urlsplit(url).query)
        params = {key: values[0] for key, values in query.items()}
        if params.get("session_id") != self.pool.session_ref:
            raise AssertionError(f"bad session in {url}")
        if params.get("format") != "vhd":
            raise AssertionError(f"bad format in {url}")
        return params

    def _finish_task(self, task_ref: str):
        task = self.pool.tasks[task_ref]
        if self.task_outcome:
            task["status"], task["error_info"] = self.task_outcome
        else:
            task["status"], task["progress"] = "success", 1.0

    def get(self, url: str, stream: bool = False, timeout=None) -> FakeResponse:
        self.requests.append(("GET", url))
        if self.status_code != 200:
            return FakeResponse(self.status_code)
        assert urlsplit(url).path == "/export_raw_vdi"
        params = self._params(url)
        blocks = dict(self.pool.content[params["vdi"]])
        base = params.get("base")
        if base:
            base_blocks = self.pool.content[base]
            blocks = {k: v for k, v in blocks.items() if base_blocks.get(k) != v}
        self._finish_task(params["task_id"])
        body = json.dumps({"delta": bool(base), "blocks": blocks}, sort_keys=True).encode()
        return FakeResponse(200, body)

    def put(self, url: str, data=None, timeout=None) -> FakeResponse:
        self.requests.append(("PUT", url))
        if self.status_code != 200:
            return FakeResponse(self.status_code)
        assert urlsplit(url).path == "/import_raw_vdi"
        params = self._params(url)
        chunks = []
        while True:
            chunk = data.read(7)
            if not chunk:
                break
            chunks.append(chunk)
        image = json.loads(b"".join(chunks))
        target = self.pool.content[params["vdi"]]
        if not image["delta"]:
            target.clear()
        target.update(image["blocks"])
        self._finish_task(params["task_id"])
        return FakeResponse(200)


class FakeClock:
    """Local time source that advances one minute per call."""

    def __init__(self, start: datetime = datetime(2024, 5, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now += timedelta(minutes=1)
        return current


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def reset_app_logger(monkeypatch, tmp_path):
    """Undo CLI logging setup and keep settings away from local config files."""
    monkeypatch.setenv("XENBACKUP_CONFIG", str(tmp_path / "absent-config.conf"))
    yield
    app_logger = logging.getLogger(APP_LOGGER)
    for handler in list(app_logger.handlers):
        if getattr(handler, "_xenbackup_handler", False):
            app_logger.removeHandler(handler)
    app_logger.propagate = True
    app_logger.setLevel(logging.NOTSET)
    get_memory_handler().clear()


@pytest.fixture
def pool() -> FakePool:
    return FakePool()


@pytest.fixture
def lab(pool):
    """
    A pool with one host, an SR, a network and VM ``web01``:
    slot 0 is a 2 GiB boot disk, slot 1 a 5 GiB data disk, plus a CD drive.
    """
    host_ref = pool.add_host("xs01", ["10.0.0.5", "192.168.1.5"], detached=["10.9.9.9"])
    sr_ref = pool.add_sr("Local storage")
    pool.add_sr("ISO library", sr_type="iso")
    network_ref = pool.add_network("Pool-wide network")
    vm_ref = pool.add_vm("web01", host_ref=host_ref)
    boot_vdi = pool.add_disk(vm_ref, "0", 2 * GIB, {"0": "mbr", "1": "root-a"}, bootable=True)
    data_vdi = pool.add_disk(vm_ref, "1", 5 * GIB, {"0": "data-a"})
    pool.add_cdrom(vm_ref)
    pool.add_vif(vm_ref, network_ref)
    return SimpleNamespace(
        host_ref=host_ref,
        sr_ref=sr_ref,
        sr_uuid=pool.srs[sr_ref]["uuid"],
        network_ref=network_ref,
        vm_ref=vm_ref,
        vm_uuid=pool.vms[vm_ref]["uuid"],
        boot_vdi=boot_vdi,
        data_vdi=data_vdi,
    )


@pytest.fixture
def client(pool):
    client = XenApiClient("https://pool-master", "root", "secret", session_factory=pool.session_factory)
    client.login()
    yield client
    client.logout()


@pytest.fixture
def data_plane(pool) -> FakeDataPlane:
    return FakeDataPlane(pool)


@pytest.fixture
def storage(tmp_path) -> LocalBackupStorage:
    return LocalBackupStorage(tmp_path / "backups")


@pytest.fixture
def registry(storage) -> BackupSetRegistry:
    return BackupSetRegistry(storage.base_path / "backup_set.json")


@pytest.fixture
def transfer(client, data_plane):
    engine = TransferEngine(client, http_session=data_plane, poll_interval=0.01)
    yield engine
    engine.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backup_service(client, storage, registry, transfer, clock) -> BackupService:
    return BackupService(client, storage, registry, transfer, clock=clock)


@pytest.fixture
def restore_service(client, storage, registry, transfer) -> RestoreService:
    return RestoreService(client, storage, registry, transfer)


@pytest.fixture
def app_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        XENSERVER_HOST="https://pool-master",
        XENSERVER_USERNAME="root",
        XENSERVER_PASSWORD="secret",
        STORAGE_DIR=str(tmp_path / "backups"),
        TASK_POLL_INTERVAL=0.01,
    )


@pytest.fixture
def read_image() -> Callable[[Any], Dict[str, Any]]:
    """Decode an image file written through the fake data-plane."""
    def read(path) -> Dict[str, Any]:
        with open(path, "rb") as f:
            return json.loads(f.read())
    return read


@pytest.fixture
def http_response() -> type:
    return FakeResponse
