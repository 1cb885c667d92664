"""
xen-backup command line.

Usage:
    xen-backup vms
    xen-backup srs
    xen-backup networks
    xen-backup sets
    xen-backup dump inventory.json
    xen-backup backup <vm_uuid> [--endpoint ADDR | --endpoint-index N]
    xen-backup backup-diff <vm_uuid> [--endpoint ADDR | --endpoint-index N]
    xen-backup restore <set_id> <sr_uuid>
    xen-backup rm <set_id|all> [--force]

Connection and storage settings come from the environment, .env or
config.conf (see xenbackup.core.config).
"""
import argparse
import logging
import sys
from typing import Any, Callable, List, Optional, Sequence

import requests

from xenbackup import __version__
from xenbackup.core.config import Settings, settings
from xenbackup.core.errors import BackupEngineError, OperatorInputError
from xenbackup.core.logging_handler import get_memory_handler, setup_logging
from xenbackup.services.backup import BackupService
from xenbackup.services.inventory import InventoryService
from xenbackup.services.progress import ProgressTracker
from xenbackup.services.registry import BackupSetRegistry, delete_backup_set
from xenbackup.services.restore import RestoreService
from xenbackup.services.storage import LocalBackupStorage
from xenbackup.services.transfer import TransferEngine
from xenbackup.xenapi.client import XenApiClient

logger = logging.getLogger(__name__)


class CommandContext:
    """Objects shared by the command handlers of one invocation."""

    def __init__(
        self,
        config: Settings,
        session_factory: Optional[Callable[..., Any]] = None,
        http_session: Optional[requests.Session] = None,
        prompt: Callable[[str], str] = input
    ):
        self.config = config
        self.session_factory = session_factory
        self.http_session = http_session
        self.prompt = prompt
        self.storage = LocalBackupStorage(config.storage_path, meta_file=config.VM_META_FILE)
        self.registry = BackupSetRegistry(config.backup_set_path)

    def connect(self) -> XenApiClient:
        client = XenApiClient(
            self.config.XENSERVER_HOST,
            self.config.XENSERVER_USERNAME,
            self.config.XENSERVER_PASSWORD,
            verify_ssl=self.config.XENSERVER_VERIFY_SSL,
            session_factory=self.session_factory,
        )
        client.login()
        return client

    def transfer_engine(self, client: XenApiClient) -> TransferEngine:
        tracker = ProgressTracker(progress_callback=_log_progress)
        return TransferEngine(
            client,
            http_session=self.http_session,
            scheme=self.config.DATA_PLANE_SCHEME,
            poll_interval=self.config.TASK_POLL_INTERVAL,
            progress_ceiling=self.config.TASK_PROGRESS_CEILING,
            chunk_size=self.config.HTTP_CHUNK_SIZE,
            verify_ssl=self.config.XENSERVER_VERIFY_SSL,
            timeout=self.config.HTTP_TIMEOUT,
            tracker=tracker,
        )

    def choose_endpoint(self, candidates: Sequence[str]) -> int:
        """Ask the operator which interface address to export through."""
        print("Available endpoints:")
        for i, address in enumerate(candidates):
            print(f"  {i}. {address}")
        answer = self.prompt("Select endpoint: ").strip()
        try:
            return int(answer)
        except ValueError as e:
            raise OperatorInputError(f"Invalid endpoint selection: {answer!r}") from e


def _log_progress(disk_id: str, bytes_transferred: int, task_progress: float):
    logger.debug(f"{disk_id}: {bytes_transferred // (1024 * 1024)} MiB, task {task_progress:.0%}")


def cmd_vms(ctx: CommandContext, args) -> int:
    with ctx.connect() as client:
        hosts = InventoryService(client).list_hosts()
    for host in hosts:
        print(f"Host {host.hostname} ({host.uuid}) {host.address}")
        for vm in host.vms:
            print(f"  {vm.uuid}  {vm.name_label}  [{vm.power_state}]")
            for disk in vm.disks():
                size_gib = disk.vdi.virtual_size / (1024 ** 3)
                print(f"      disk {disk.userdevice}: {disk.vdi.uuid} {size_gib:.1f} GiB")
    return 0


def cmd_srs(ctx: CommandContext, args) -> int:
    with ctx.connect() as client:
        srs = InventoryService(client).list_srs()
    for sr in srs:
        print(f"{sr.uuid}  {sr.name_label}  type={sr.type}  "
              f"used={sr.physical_utilisation}/{sr.physical_size}")
    return 0


def cmd_networks(ctx: CommandContext, args) -> int:
    with ctx.connect() as client:
        networks = InventoryService(client).list_networks()
    for network in networks:
        print(f"{network.uuid}  {network.name_label}  bridge={network.bridge}  mtu={network.mtu}")
    return 0


def cmd_sets(ctx: CommandContext, args) -> int:
    entries = ctx.registry.list(vm_uuid=args.vm)
    if not entries:
        print("No backup sets")
        return 0
    for entry in entries:
        base = f"  base={entry.base_set_id}" if entry.base_set_id else ""
        print(f"{entry.set_id}  {entry.type.value}  {entry.date}{base}")
    return 0


def cmd_dump(ctx: CommandContext, args) -> int:
    with ctx.connect() as client:
        path = InventoryService(client).dump(args.output)
    print(f"✓ Inventory written to {path}")
    return 0


def cmd_backup(ctx: CommandContext, args) -> int:
    with ctx.connect() as client:
        with ctx.transfer_engine(client) as transfer:
            service = BackupService(
                client, ctx.storage, ctx.registry, transfer,
                rollback=ctx.config.ROLLBACK_ON_FAILURE,
            )
            run = service.backup_diff if args.diff else service.backup_full
            choose = None
            if args.endpoint is None and args.endpoint_index is None and not args.first_endpoint:
                choose = ctx.choose_endpoint
            record = run(
                args.vm_uuid,
                endpoint=args.endpoint,
                endpoint_index=args.endpoint_index,
                choose_endpoint=choose,
            )
            summary = transfer.tracker.get_progress()
    print(f"✓ {record.type.value} backup {record.set_id} completed ({len(record.vm.disks())} disk(s))")
    print(f"  {summary['bytes_transferred']} bytes transferred")
    return 0


def cmd_restore(ctx: CommandContext, args) -> int:
    with ctx.connect() as client:
        with ctx.transfer_engine(client) as transfer:
            service = RestoreService(
                client, ctx.storage, ctx.registry, transfer,
                name_template=ctx.config.RESTORE_NAME_TEMPLATE,
                restore_vifs=ctx.config.RESTORE_VIFS,
                keep_mac=ctx.config.RESTORE_KEEP_MAC,
                rollback=ctx.config.ROLLBACK_ON_FAILURE,
            )
            vm_uuid = service.restore_vm(args.set_id, args.sr_uuid)
            summary = transfer.tracker.get_progress()
    print(f"✓ Restored {args.set_id} as VM {vm_uuid}")
    print(f"  {summary['completed_disks']} disk image(s), {summary['bytes_transferred']} bytes transferred")
    return 0


def cmd_rm(ctx: CommandContext, args) -> int:
    removed = delete_backup_set(ctx.storage, ctx.registry, args.set_id, force=args.force)
    print(f"✓ Removed {len(removed)} backup set(s)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="xen-backup",
        description="Full and differential backup/restore of XenServer VMs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("vms", help="List hosts and their VMs").set_defaults(func=cmd_vms)
    sub.add_parser("srs", help="List storage repositories").set_defaults(func=cmd_srs)
    sub.add_parser("networks", help="List networks").set_defaults(func=cmd_networks)

    p = sub.add_parser("sets", help="List backup sets")
    p.add_argument("--vm", help="Only sets of this VM uuid")
    p.set_defaults(func=cmd_sets)

    p = sub.add_parser("dump", help="Write hosts, VMs and SRs to a JSON file")
    p.add_argument("output", nargs="?", default="meta.json")
    p.set_defaults(func=cmd_dump)

    for name, diff in (("backup", False), ("backup-diff", True)):
        p = sub.add_parser(name, help=f"{'Differential' if diff else 'Full'} backup of a VM")
        p.add_argument("vm_uuid")
        group = p.add_mutually_exclusive_group()
        group.add_argument("--endpoint", help="Host interface address to export through")
        group.add_argument("--endpoint-index", type=int, help="Index into the host's interface addresses")
        group.add_argument("--first-endpoint", action="store_true",
                           help="Use the first attached interface without prompting")
        p.set_defaults(func=cmd_backup, diff=diff)

    p = sub.add_parser("restore", help="Restore a backup set into a new VM")
    p.add_argument("set_id")
    p.add_argument("sr_uuid", help="Storage repository for the new disks")
    p.set_defaults(func=cmd_restore)

    p = sub.add_parser("rm", help="Delete a backup set, or all of them")
    p.add_argument("set_id", help="Backup set id or 'all'")
    p.add_argument("--force", action="store_true",
                   help="Delete a full backup even if differentials depend on it")
    p.set_defaults(func=cmd_rm)

    return parser


def _print_failure_summary():
    logs = get_memory_handler().get_logs(limit=500)
    problems = [log for log in logs if log["level"] in ("WARNING", "ERROR", "CRITICAL")]
    if not problems:
        return
    print("Warnings and errors:", file=sys.stderr)
    for log in problems[-10:]:
        print(f"  [{log['level']}] {log['message']}", file=sys.stderr)


def main(
    argv: Optional[List[str]] = None,
    config: Optional[Settings] = None,
    session_factory: Optional[Callable[..., Any]] = None,
    http_session: Optional[requests.Session] = None,
    prompt: Callable[[str], str] = input
) -> int:
    args = build_parser().parse_args(argv)
    config = config or settings
    setup_logging(args.log_level or config.LOG_LEVEL, config.LOG_FORMAT, config.LOG_FILE)
    get_memory_handler().clear()
    logger.debug(
        f"Pool master {config.XENSERVER_HOST} as {config.XENSERVER_USERNAME}, "
        f"storage {config.storage_path}"
    )

    try:
        ctx = CommandContext(config, session_factory, http_session, prompt)
        return args.func(ctx, args)
    except BackupEngineError as e:
        print(f"✗ {e}", file=sys.stderr)
        _print_failure_summary()
        return 1


if __name__ == "__main__":
    sys.exit(main())
