import logging
from dataclasses import dataclass
from typing import Any

from pve_dashboard.clients.identity import CallerIdentity
from pve_dashboard.clients.proxmox import POWER_ACTIONS, proxmox_client_factory
from pve_dashboard.config import get_settings
from pve_dashboard.db import SessionLocal, session_scope
from pve_dashboard.errors import NotFoundError, ValidationError
from pve_dashboard.metrics import metrics
from pve_dashboard.models import ServerStatus
from pve_dashboard.repositories import get_server, update_server, write_event
from pve_dashboard.services.hosts import get_host
from pve_dashboard.services.provisioning import ClientFactory


logger = logging.getLogger(__name__)


@dataclass
class PowerResult:
    action: str
    vmid: int
    node: str
    status: str | None

    def to_payload(self) -> dict[str, Any]:
        return {
            "ok": True,
            "action": self.action,
            "vmid": self.vmid,
            "node": self.node,
            "status": self.status,
        }


async def power_action(
    server_id: int,
    action: str,
    caller: CallerIdentity,
    *,
    client_factory: ClientFactory = proxmox_client_factory,
) -> PowerResult:
    """Start, stop, shut down or reboot a guest that finished provisioning.

    Inactive hosts are still resolved so existing guests stay controllable.
    The task wait is short and its outcome is not fatal; the stored status
    is refreshed from the hypervisor when it can be read.
    """
    action = action.strip().lower()
    if action not in POWER_ACTIONS:
        raise ValidationError(
            f"serverId and valid action ({'|'.join(sorted(POWER_ACTIONS))}) are required"
        )

    async with SessionLocal() as session:
        server = await get_server(session, server_id)
        if server is None or server.owner_id != caller.id:
            raise NotFoundError("Server not found")
        if server.status == ServerStatus.FAILED.value or not server.vmid:
            raise ValidationError("Server has no provisioned guest")
        host = await get_host(session, server.location, require_active=False)

    node = server.node or host.node or ""
    settings = get_settings()
    metrics.inc("power_actions_total", action=action)
    async with client_factory(host) as client:
        auth = await client.authenticate()
        upid = await client.power_action(
            node, server.vmid, action, auth, {"timeout": 60}
        )
        if upid:
            try:
                await client.wait_for_task(node, upid, auth, settings.power_wait_sec)
            except Exception as exc:  # noqa: BLE001
                logger.info(
                    "power task not confirmed server_id=%s action=%s error=%s",
                    server_id,
                    action,
                    exc,
                )

        status: str | None = None
        try:
            current = await client.current_status(node, server.vmid, auth)
            status = current.get("status")
        except Exception as exc:  # noqa: BLE001
            logger.info("status read failed server_id=%s error=%s", server_id, exc)

    if status:
        try:
            async with session_scope() as session:
                await update_server(session, server_id, status=status)
                write_event(
                    session,
                    "server.power",
                    {"action": action, "status": status, "actor": caller.id},
                    server_id,
                )
        except Exception:  # noqa: BLE001
            logger.exception("power status update failed server_id=%s", server_id)

    return PowerResult(action=action, vmid=server.vmid, node=node, status=status)
