"""
XenAPI management client.

Thin adapter over the ``XenAPI`` binding: one session per client, typed
wrappers for the calls the backup engine makes, and translation of every
remote failure into ``ProtocolError``.
"""
import logging
import xmlrpc.client
from typing import Any, Callable, Dict, List, Optional

import XenAPI

from xenbackup.core.errors import ProtocolError

logger = logging.getLogger(__name__)

NULL_REF = "OpaqueRef:NULL"
ORIGINATOR = "xen-backup"


class XenApiClient:
    """Session-scoped client for a XenServer pool master."""

    def __init__(
        self,
        url: str,
        username: str,
        password: Optional[str],
        verify_ssl: bool = False,
        session_factory: Optional[Callable[..., Any]] = None
    ):
        """
        Args:
            url: Pool master URL, e.g. https://xenserver.local
            username: Account used for login_with_password
            password: Account password
            verify_ssl: Verify the pool master's TLS certificate
            session_factory: Callable returning a XenAPI-compatible session,
                             defaults to XenAPI.Session
        """
        self.url = url
        self.username = username
        self.password = password
        self.verify_ssl = verify_ssl
        self._session_factory = session_factory or XenAPI.Session
        self._session = None

    def login(self):
        """Open a session on the pool master."""
        if self._session is not None:
            return
        logger.info(f"Connecting to {self.url} as {self.username}")
        try:
            session = self._session_factory(self.url, ignore_ssl=not self.verify_ssl)
            session.xenapi.login_with_password(
                self.username, self.password or "", "1.0", ORIGINATOR
            )
        except XenAPI.Failure as e:
            raise ProtocolError(f"Login to {self.url} failed", e.details) from e
        except (OSError, xmlrpc.client.Error) as e:
            raise ProtocolError(f"Cannot connect to {self.url}: {e}") from e
        self._session = session
        logger.debug(f"Logged in to {self.url}")

    def logout(self):
        """Close the session; errors are logged since the session is discarded anyway."""
        if self._session is None:
            return
        try:
            self._session.xenapi.session.logout()
        except (XenAPI.Failure, OSError, xmlrpc.client.Error) as e:
            logger.warning(f"Logout from {self.url} failed: {e}")
        finally:
            self._session = None

    def __enter__(self) -> "XenApiClient":
        self.login()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.logout()

    @property
    def session_id(self) -> str:
        """Opaque session reference, embedded in data-plane URLs."""
        return self._require_session().handle

    def _require_session(self):
        if self._session is None:
            raise ProtocolError("Not logged in")
        return self._session

    def call(self, method: str, *args) -> Any:
        """
        Invoke a XenAPI method by its dotted name, e.g. ``VM.get_record``.

        Raises:
            ProtocolError: the call was rejected or the connection failed
        """
        target = self._require_session().xenapi
        for part in method.split("."):
            target = getattr(target, part)
        try:
            return target(*args)
        except XenAPI.Failure as e:
            logger.debug(f"{method} failed: {e.details}")
            raise ProtocolError(f"{method} failed", e.details) from e
        except (OSError, xmlrpc.client.Error) as e:
            raise ProtocolError(f"{method} failed: {e}") from e

    # VM

    def vm_get_by_uuid(self, uuid: str) -> str:
        return self.call("VM.get_by_uuid", uuid)

    def vm_get_record(self, ref: str) -> Dict[str, Any]:
        return self.call("VM.get_record", ref)

    def vm_get_all_records(self) -> Dict[str, Dict[str, Any]]:
        return self.call("VM.get_all_records")

    def vm_snapshot(self, ref: str, name: str) -> str:
        return self.call("VM.snapshot", ref, name)

    def vm_create(self, record: Dict[str, Any]) -> str:
        return self.call("VM.create", record)

    def vm_destroy(self, ref: str):
        self.call("VM.destroy", ref)

    # VBD / VDI / VIF

    def vbd_get_record(self, ref: str) -> Dict[str, Any]:
        return self.call("VBD.get_record", ref)

    def vbd_create(self, record: Dict[str, Any]) -> str:
        return self.call("VBD.create", record)

    def vbd_destroy(self, ref: str):
        self.call("VBD.destroy", ref)

    def vdi_get_record(self, ref: str) -> Dict[str, Any]:
        return self.call("VDI.get_record", ref)

    def vdi_get_by_uuid(self, uuid: str) -> str:
        return self.call("VDI.get_by_uuid", uuid)

    def vdi_create(self, record: Dict[str, Any]) -> str:
        return self.call("VDI.create", record)

    def vdi_destroy(self, ref: str):
        self.call("VDI.destroy", ref)

    def vif_get_record(self, ref: str) -> Dict[str, Any]:
        return self.call("VIF.get_record", ref)

    def vif_create(self, record: Dict[str, Any]) -> str:
        return self.call("VIF.create", record)

    # Pool objects

    def network_get_record(self, ref: str) -> Dict[str, Any]:
        return self.call("network.get_record", ref)

    def network_get_all_records(self) -> Dict[str, Dict[str, Any]]:
        return self.call("network.get_all_records")

    def network_get_by_uuid(self, uuid: str) -> str:
        return self.call("network.get_by_uuid", uuid)

    def sr_get_by_uuid(self, uuid: str) -> str:
        return self.call("SR.get_by_uuid", uuid)

    def sr_get_all_records(self) -> Dict[str, Dict[str, Any]]:
        return self.call("SR.get_all_records")

    def host_get_record(self, ref: str) -> Dict[str, Any]:
        return self.call("host.get_record", ref)

    def host_get_all_records(self) -> Dict[str, Dict[str, Any]]:
        return self.call("host.get_all_records")

    def pif_get_record(self, ref: str) -> Dict[str, Any]:
        return self.call("PIF.get_record", ref)

    # Tasks

    def task_create(self, label: str, description: str = "") -> str:
        return self.call("task.create", label, description)

    def task_get_status(self, ref: str) -> str:
        return self.call("task.get_status", ref)

    def task_get_progress(self, ref: str) -> float:
        return float(self.call("task.get_progress", ref))

    def task_get_error_info(self, ref: str) -> List[str]:
        return self.call("task.get_error_info", ref)

    def task_destroy(self, ref: str):
        self.call("task.destroy", ref)
