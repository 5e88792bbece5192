import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pve_dashboard.config import get_settings
from pve_dashboard.db import SessionLocal, session_scope
from pve_dashboard.errors import ConfigurationError, ConflictError, PersistenceError
from pve_dashboard.metrics import metrics
from pve_dashboard.models import ServerRecord, ServerStatus
from pve_dashboard.repositories import list_pool_entries, used_ips, write_event
from pve_dashboard.services.hosts import HostConfig


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolCandidate:
    ip: str
    mac: str | None


@dataclass
class GuestSpec:
    name: str
    os: str
    cpu_cores: int
    memory_mb: int
    disk_gb: int | None = None
    owner_id: str | None = None
    owner_email: str | None = None


@dataclass(frozen=True)
class Reservation:
    server_id: int
    ip: str
    mac: str


async def pool_for_host(session: AsyncSession, host: HostConfig) -> list[PoolCandidate]:
    entries = await list_pool_entries(session, host.id)
    if entries:
        return [PoolCandidate(ip=entry.ip, mac=entry.mac) for entry in entries]
    if host.legacy:
        return [
            PoolCandidate(ip=ip, mac=mac)
            for ip, mac in get_settings().legacy_pool_entries()
        ]
    return []


def choose_address(
    pool: list[PoolCandidate],
    used: set[str],
    *,
    requested_ip: str | None = None,
    requested_mac: str | None = None,
    fallback_mac: str | None = None,
) -> PoolCandidate:
    """Pick the address to claim: the caller's, else the first free pool entry."""
    if requested_ip:
        if requested_ip in used:
            raise ConflictError(ip=requested_ip)
        pool_mac = next((c.mac for c in pool if c.ip == requested_ip), None)
        ip = requested_ip
    else:
        free = [candidate for candidate in pool if candidate.ip not in used]
        if not free:
            raise ConflictError(
                f"IP already in use: no free address left ({len(pool)} in pool)"
            )
        ip = free[0].ip
        pool_mac = free[0].mac

    mac = requested_mac or pool_mac or fallback_mac
    if not mac:
        raise ConfigurationError(f"MAC address required for routed IP {ip}")
    return PoolCandidate(ip=ip, mac=mac)


async def reserve_address(
    host: HostConfig,
    spec: GuestSpec,
    *,
    requested_ip: str | None = None,
    requested_mac: str | None = None,
) -> Reservation:
    """Claim one address by inserting a `provisioning` server record.

    The unique constraint on ``servers.ip`` is what arbitrates concurrent
    requests; a lost race surfaces as ``ConflictError`` and is never retried
    with another address here.
    """
    async with SessionLocal() as session:
        used = await used_ips(session)
        pool = await pool_for_host(session, host)

    fallback_mac = get_settings().legacy_mac if host.legacy else None
    candidate = choose_address(
        pool,
        used,
        requested_ip=requested_ip,
        requested_mac=requested_mac,
        fallback_mac=fallback_mac,
    )

    record = ServerRecord(
        vmid=0,
        node=host.node or "",
        name=spec.name,
        ip=candidate.ip,
        mac=candidate.mac,
        os=spec.os,
        location=host.id,
        cpu_cores=spec.cpu_cores,
        memory_mb=spec.memory_mb,
        disk_gb=spec.disk_gb,
        status=ServerStatus.PROVISIONING.value,
        owner_id=spec.owner_id,
        owner_email=spec.owner_email,
    )
    try:
        async with session_scope() as session:
            session.add(record)
            await session.flush()
            write_event(
                session,
                "server.reserved",
                {"ip": candidate.ip, "host_id": host.id, "name": spec.name},
                record.id,
            )
    except IntegrityError as exc:
        metrics.inc("provision_conflicts_total")
        logger.info("ip reservation lost race ip=%s host_id=%s", candidate.ip, host.id)
        raise ConflictError(ip=candidate.ip) from exc
    except SQLAlchemyError as exc:
        raise PersistenceError(f"failed to reserve ip {candidate.ip}: {exc}") from exc

    logger.info(
        "ip reserved server_id=%s ip=%s host_id=%s",
        record.id,
        candidate.ip,
        host.id,
    )
    return Reservation(server_id=record.id, ip=candidate.ip, mac=candidate.mac or "")
