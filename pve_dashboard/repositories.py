import json
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pve_dashboard.models import (
    Event,
    HostProfile,
    HostTemplate,
    IpPoolEntry,
    ServerRecord,
    now_utc,
)


def write_event(
    session: AsyncSession,
    event_type: str,
    payload: dict,
    server_id: int | None = None,
) -> None:
    session.add(
        Event(
            server_id=server_id,
            event_type=event_type,
            payload_json=json.dumps(payload, sort_keys=True, default=str),
        )
    )


async def get_host_profile(session: AsyncSession, host_id: str) -> HostProfile | None:
    return await session.get(HostProfile, host_id)


async def list_host_profiles(session: AsyncSession) -> list[HostProfile]:
    result = await session.scalars(select(HostProfile).order_by(HostProfile.id.asc()))
    return list(result)


async def list_templates(session: AsyncSession, host_id: str) -> list[HostTemplate]:
    result = await session.scalars(
        select(HostTemplate)
        .where(HostTemplate.host_id == host_id)
        .order_by(HostTemplate.id.asc())
    )
    return list(result)


async def list_pool_entries(session: AsyncSession, host_id: str) -> list[IpPoolEntry]:
    result = await session.scalars(
        select(IpPoolEntry)
        .where(IpPoolEntry.host_id == host_id)
        .order_by(IpPoolEntry.id.asc())
    )
    return list(result)


async def used_ips(session: AsyncSession) -> set[str]:
    result = await session.scalars(select(ServerRecord.ip))
    return {ip for ip in result if ip}


async def get_server(session: AsyncSession, server_id: int) -> ServerRecord | None:
    return await session.get(ServerRecord, server_id)


async def list_servers(
    session: AsyncSession, owner_id: str | None = None
) -> list[ServerRecord]:
    query = select(ServerRecord)
    if owner_id:
        query = query.where(ServerRecord.owner_id == owner_id)
    result = await session.scalars(query.order_by(ServerRecord.created_at.desc()))
    return list(result)


async def update_server(
    session: AsyncSession, server_id: int, **fields: Any
) -> ServerRecord | None:
    server = await session.get(ServerRecord, server_id)
    if server is None:
        return None
    for key, value in fields.items():
        setattr(server, key, value)
    server.updated_at = now_utc()
    return server
