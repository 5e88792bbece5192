import logging

from fastapi import APIRouter, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.requests import Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pve_dashboard.auth import optional_caller, require_admin, require_caller
from pve_dashboard.clients.identity import CallerIdentity
from pve_dashboard.clients.proxmox import proxmox_client_factory
from pve_dashboard.db import get_db
from pve_dashboard.errors import (
    ConflictError,
    DashboardError,
    NotFoundError,
    ValidationError,
    serialize_error,
)
from pve_dashboard.metrics import metrics
from pve_dashboard.models import HostProfile, HostTemplate, IpPoolEntry
from pve_dashboard.repositories import (
    get_host_profile,
    get_server,
    list_host_profiles,
    list_servers,
    write_event,
)
from pve_dashboard.schemas import (
    HostCreate,
    HostRead,
    PoolEntryCreate,
    PowerRequest,
    ProvisionRequest,
    ServerRead,
    TemplateCreate,
)
from pve_dashboard.services.power import power_action
from pve_dashboard.services.provisioning import provision_vm


logger = logging.getLogger(__name__)
router = APIRouter()


def get_client_factory():
    return proxmox_client_factory


async def dashboard_error_handler(_request: Request, exc: DashboardError) -> JSONResponse:
    message = ConflictError.public_message if isinstance(exc, ConflictError) else str(exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": message, "errorDetails": serialize_error(exc)},
    )


async def request_validation_handler(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ())[1:])}: {err.get('msg')}"
        for err in exc.errors()
    )
    return JSONResponse(
        status_code=400,
        content={"ok": False, "error": problems or "invalid request"},
    )


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/metrics")
async def metrics_endpoint() -> dict[str, int]:
    return metrics.snapshot()


@router.post("/provision")
async def provision(
    req: ProvisionRequest,
    caller: CallerIdentity | None = Depends(optional_caller),
    client_factory=Depends(get_client_factory),
) -> dict:
    if caller is not None and not req.owner_id:
        req = req.model_copy(
            update={"owner_id": caller.id, "owner_email": req.owner_email or caller.email}
        )
    result = await provision_vm(req, client_factory=client_factory)
    return result.to_payload()


@router.get("/servers", response_model=list[ServerRead])
async def get_servers(
    caller: CallerIdentity = Depends(require_caller),
    db: AsyncSession = Depends(get_db),
) -> list[ServerRead]:
    servers = await list_servers(db, owner_id=caller.id)
    return [ServerRead.model_validate(server) for server in servers]


@router.post("/servers/power")
async def power(
    req: PowerRequest,
    caller: CallerIdentity = Depends(require_caller),
    client_factory=Depends(get_client_factory),
) -> dict:
    result = await power_action(
        req.server_id,
        req.action,
        caller,
        client_factory=client_factory,
    )
    return result.to_payload()


@router.get("/admin/hosts", response_model=list[HostRead])
async def admin_list_hosts(
    _admin: CallerIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> list[HostRead]:
    return [HostRead.model_validate(host) for host in await list_host_profiles(db)]


@router.post("/admin/hosts", response_model=HostRead)
async def admin_create_host(
    req: HostCreate,
    admin: CallerIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> HostRead:
    if not (req.token_id and req.token_secret) and not (req.username and req.password):
        raise ValidationError("token id/secret or username/password is required")
    host = HostProfile(**req.model_dump(), is_active=True)
    db.add(host)
    write_event(db, "host.created", {"host_id": req.id, "actor": admin.id})
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ValidationError(f"Host {req.id} already exists") from exc
    return HostRead.model_validate(host)


@router.post("/admin/hosts/{host_id}/deactivate")
async def admin_deactivate_host(
    host_id: str,
    admin: CallerIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict[str, bool]:
    host = await get_host_profile(db, host_id)
    if host is None:
        raise NotFoundError("Host not found")
    host.is_active = False
    write_event(db, "host.deactivated", {"host_id": host_id, "actor": admin.id})
    await db.commit()
    return {"ok": True}


@router.post("/admin/hosts/{host_id}/templates")
async def admin_add_template(
    host_id: str,
    req: TemplateCreate,
    _admin: CallerIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if await get_host_profile(db, host_id) is None:
        raise NotFoundError("Host not found")
    template = HostTemplate(host_id=host_id, name=req.name, vmid=req.vmid)
    db.add(template)
    await db.commit()
    return {"ok": True, "id": template.id}


@router.post("/admin/hosts/{host_id}/ip-pool")
async def admin_add_pool_entry(
    host_id: str,
    req: PoolEntryCreate,
    _admin: CallerIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if await get_host_profile(db, host_id) is None:
        raise NotFoundError("Host not found")
    entry = IpPoolEntry(host_id=host_id, ip=req.ip, mac=req.mac, pool=req.pool)
    db.add(entry)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ValidationError(f"{req.ip} is already in the pool of {host_id}") from exc
    return {"ok": True, "id": entry.id}


@router.delete("/admin/servers/{server_id}")
async def admin_delete_server(
    server_id: int,
    admin: CallerIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Drop a server record, releasing its IP for new reservations.

    The guest on the hypervisor, if any, is left untouched.
    """
    server = await get_server(db, server_id)
    if server is None:
        raise NotFoundError("Server not found")
    write_event(
        db,
        "server.deleted",
        {"ip": server.ip, "vmid": server.vmid, "status": server.status, "actor": admin.id},
        server_id,
    )
    await db.delete(server)
    await db.commit()
    logger.info("server record deleted server_id=%s ip=%s", server_id, server.ip)
    return {"ok": True, "released": server.ip}
