"""Provisioning orchestrator.

One call to :func:`provision_vm` walks a single guest through
``validating -> reserving_ip -> authenticating -> resolving_template ->
cloning -> configuring -> [resizing] -> starting -> finalizing``. The IP is
claimed by inserting the server record before any hypervisor call; every
failure between authentication and configuration rolls that record to
``failed``. Resize and start problems are logged and absorbed because the
guest already exists by then.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pve_dashboard.clients.proxmox import (
    AuthContext,
    ProxmoxClient,
    proxmox_client_factory,
)
from pve_dashboard.config import get_settings
from pve_dashboard.db import SessionLocal, session_scope
from pve_dashboard.errors import PersistenceError, ProvisioningFailed, ValidationError
from pve_dashboard.metrics import metrics
from pve_dashboard.models import ServerStatus
from pve_dashboard.repositories import update_server, write_event
from pve_dashboard.schemas import ProvisionRequest
from pve_dashboard.services.hosts import HostConfig, get_host
from pve_dashboard.services.ip_allocator import GuestSpec, Reservation, reserve_address
from pve_dashboard.services.templates import resolve_template
from pve_dashboard.state_machine import ProvisionStage, can_transition


logger = logging.getLogger(__name__)

CLOUD_INIT_USER = "ubuntu"
SSH_PORT = 22
ROOT_DISK = "scsi0"

ClientFactory = Callable[[HostConfig], ProxmoxClient]


@dataclass
class ProvisionResult:
    node: str
    vmid: int
    name: str
    ip: str
    os: str
    location: str
    cpu_cores: int
    memory_mb: int
    disk_gb: int | None
    status: str
    details: dict[str, Any] | None
    server_id: int
    saved: bool
    db_error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "ok": True,
            "node": self.node,
            "vmid": self.vmid,
            "name": self.name,
            "ip": self.ip,
            "os": self.os,
            "location": self.location,
            "specs": {
                "cpuCores": self.cpu_cores,
                "memoryMB": self.memory_mb,
                "diskGB": self.disk_gb,
            },
            "status": self.status,
            "details": self.details,
            "ssh": {"username": CLOUD_INIT_USER, "port": SSH_PORT},
            "db": {"saved": self.saved, "id": self.server_id, "error": self.db_error},
        }


@dataclass
class _Progress:
    stage: str = ProvisionStage.VALIDATING.value
    server_id: int | None = None
    vmid: int | None = None
    history: list[str] = field(default_factory=list)

    def advance(self, target: ProvisionStage) -> None:
        if not can_transition(self.stage, target.value):
            raise RuntimeError(f"illegal provisioning transition {self.stage} -> {target.value}")
        self.history.append(self.stage)
        self.stage = target.value
        logger.debug("provision stage server_id=%s stage=%s", self.server_id, self.stage)


def default_hostname() -> str:
    return f"vm-{int(time.time() * 1000)}"


def build_guest_config(
    host: HostConfig, request: ProvisionRequest, reservation: Reservation
) -> dict[str, Any]:
    return {
        "cores": request.cpu_cores,
        "memory": request.memory_mb,
        "onboot": 1,
        "ciuser": CLOUD_INIT_USER,
        "cipassword": request.ssh_password,
        "ide2": f"{host.storage}:cloudinit",
        "nameserver": host.nameservers,
        "net0": f"virtio={reservation.mac},bridge={host.bridge}",
        "ipconfig0": f"ip={reservation.ip}/32,gw={host.gateway_ip}",
    }


def _validate(request: ProvisionRequest, host: HostConfig) -> None:
    if not host.node:
        raise ValidationError(f"Missing node configuration for host {host.id}")
    if not host.gateway_ip:
        raise ValidationError(f"Missing gateway IP for host {host.id}")
    if request.disk_gb is not None and request.disk_gb < 0:
        raise ValidationError("diskGB must not be negative")


async def _mark_failed(progress: _Progress, exc: Exception) -> str | None:
    """Record the failure on the reservation; returns the write error if any."""
    if progress.server_id is None:
        return None
    message = f"{progress.stage}: {exc}"
    try:
        async with session_scope() as session:
            server = await update_server(
                session,
                progress.server_id,
                status=ServerStatus.FAILED.value,
                last_error=message,
                vmid=progress.vmid or 0,
            )
            if server is None:
                raise PersistenceError(f"server record {progress.server_id} not found")
            write_event(
                session,
                "server.failed",
                {"stage": progress.stage, "error": str(exc), "vmid": progress.vmid},
                progress.server_id,
            )
    except Exception as rollback_exc:  # noqa: BLE001
        logger.exception(
            "failed to mark server failed server_id=%s stage=%s",
            progress.server_id,
            progress.stage,
        )
        return str(rollback_exc)
    return None


async def provision_vm(
    request: ProvisionRequest,
    *,
    client_factory: ClientFactory = proxmox_client_factory,
) -> ProvisionResult:
    progress = _Progress()
    metrics.inc("provision_attempts_total")

    name = (request.hostname or "").strip() or default_hostname()
    if not request.ssh_password:
        raise ValidationError("sshPassword is required")
    async with SessionLocal() as session:
        host = await get_host(session, request.host_id)
    _validate(request, host)

    progress.advance(ProvisionStage.RESERVING_IP)
    reservation = await reserve_address(
        host,
        GuestSpec(
            name=name,
            os=request.os,
            cpu_cores=request.cpu_cores,
            memory_mb=request.memory_mb,
            disk_gb=request.disk_gb,
            owner_id=request.owner_id,
            owner_email=request.owner_email,
        ),
        requested_ip=request.ip_primary,
        requested_mac=request.mac,
    )
    progress.server_id = reservation.server_id

    client = client_factory(host)
    try:
        return await _drive(client, host, request, name, reservation, progress)
    finally:
        await client.aclose()


async def _drive(
    client: ProxmoxClient,
    host: HostConfig,
    request: ProvisionRequest,
    name: str,
    reservation: Reservation,
    progress: _Progress,
) -> ProvisionResult:
    settings = get_settings()
    node = host.node or ""

    try:
        progress.advance(ProvisionStage.AUTHENTICATING)
        auth = await client.authenticate()

        progress.advance(ProvisionStage.RESOLVING_TEMPLATE)
        template_vmid = await resolve_template(host, request.os, client, auth)

        progress.advance(ProvisionStage.CLONING)
        newid = await client.next_vmid(auth)
        upid = await client.clone_guest(
            node,
            template_vmid,
            newid=newid,
            name=name,
            storage=host.storage,
            auth=auth,
        )
        progress.vmid = newid
        await client.wait_for_task(node, upid, auth, settings.clone_timeout_sec)

        progress.advance(ProvisionStage.CONFIGURING)
        await client.configure_guest(
            node, newid, build_guest_config(host, request, reservation), auth
        )
    except asyncio.CancelledError:
        logger.warning(
            "provision cancelled server_id=%s host_id=%s stage=%s",
            progress.server_id,
            host.id,
            progress.stage,
        )
        await _mark_failed(progress, RuntimeError("provisioning cancelled"))
        metrics.inc("provision_failed_total", stage=progress.stage)
        raise
    except Exception as exc:  # noqa: BLE001
        failed_stage = progress.stage
        rollback_error = await _mark_failed(progress, exc)
        metrics.inc("provision_failed_total", stage=failed_stage)
        logger.warning(
            "provision failed server_id=%s host_id=%s stage=%s error=%s",
            progress.server_id,
            host.id,
            failed_stage,
            exc,
        )
        progress.advance(ProvisionStage.FAILED)
        raise ProvisioningFailed(
            stage=failed_stage,
            cause=exc,
            server_id=progress.server_id,
            rollback_error=rollback_error,
        ) from exc

    if request.disk_gb and request.disk_gb > 0:
        progress.advance(ProvisionStage.RESIZING)
        await _resize(client, node, newid, request.disk_gb, auth)

    progress.advance(ProvisionStage.STARTING)
    await _start(client, node, newid, auth, settings.start_timeout_sec)

    progress.advance(ProvisionStage.FINALIZING)
    details: dict[str, Any] | None = None
    try:
        details = await client.current_status(node, newid, auth) or None
    except Exception as exc:  # noqa: BLE001
        logger.info("status read after start failed vmid=%s error=%s", newid, exc)
    status = str((details or {}).get("status") or ServerStatus.STARTING.value)

    saved, db_error = await _finalize_record(progress, newid, status, details)
    progress.advance(ProvisionStage.SUCCEEDED)
    metrics.inc("provision_succeeded_total")
    logger.info(
        "provision succeeded server_id=%s vmid=%s ip=%s status=%s",
        progress.server_id,
        newid,
        reservation.ip,
        status,
    )
    return ProvisionResult(
        node=node,
        vmid=newid,
        name=name,
        ip=reservation.ip,
        os=request.os,
        location=host.id,
        cpu_cores=request.cpu_cores,
        memory_mb=request.memory_mb,
        disk_gb=request.disk_gb,
        status=status,
        details=details,
        server_id=reservation.server_id,
        saved=saved,
        db_error=db_error,
    )


async def _resize(
    client: ProxmoxClient, node: str, vmid: int, disk_gb: int, auth: AuthContext
) -> None:
    try:
        await client.resize_disk(
            node, vmid, disk=ROOT_DISK, size=f"+{disk_gb}G", auth=auth
        )
    except Exception as exc:  # noqa: BLE001
        metrics.inc("resize_failures_total")
        logger.warning("disk resize ignored vmid=%s size=+%sG error=%s", vmid, disk_gb, exc)


async def _start(
    client: ProxmoxClient, node: str, vmid: int, auth: AuthContext, timeout_sec: float
) -> None:
    try:
        upid = await client.power_action(node, vmid, "start", auth)
        if upid:
            await client.wait_for_task(node, upid, auth, timeout_sec)
    except Exception as exc:  # noqa: BLE001
        metrics.inc("start_wait_absorbed_total")
        logger.warning("guest start not confirmed vmid=%s error=%s", vmid, exc)


async def _finalize_record(
    progress: _Progress,
    vmid: int,
    status: str,
    details: dict[str, Any] | None,
) -> tuple[bool, str | None]:
    try:
        async with session_scope() as session:
            server = await update_server(
                session,
                progress.server_id,
                vmid=vmid,
                status=status,
                details=details,
            )
            if server is None:
                raise PersistenceError(f"server record {progress.server_id} not found")
            write_event(
                session,
                "server.provisioned",
                {"vmid": vmid, "status": status},
                progress.server_id,
            )
    except Exception as exc:  # noqa: BLE001
        logger.exception("final server update failed server_id=%s", progress.server_id)
        return False, str(exc)
    return True, None
