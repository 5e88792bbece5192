import pytest
from sqlalchemy import select

from pve_dashboard.clients.identity import CallerIdentity
from pve_dashboard.db import SessionLocal, session_scope
from pve_dashboard.errors import (
    AuthError,
    NotFoundError,
    ProvisioningFailed,
    ValidationError,
)
from pve_dashboard.metrics import metrics
from pve_dashboard.models import Event, HostProfile, ServerRecord
from pve_dashboard.schemas import ProvisionRequest
from pve_dashboard.services.power import power_action
from pve_dashboard.services.provisioning import provision_vm

from tests.fakes import FakeProxmox, factory_for


OWNER = CallerIdentity(id="u1", email="u1@example.test")


async def provisioned_server(seed_host) -> int:
    await seed_host("h1", pool=[("10.0.0.5", "aa:bb:cc:dd:ee:ff")])
    result = await provision_vm(
        ProvisionRequest(hostId="h1", sshPassword="pw", ownerId="u1", hostname="vm-a"),
        client_factory=factory_for(FakeProxmox(next_id=150)),
    )
    return result.server_id


async def test_stop_updates_status_and_writes_event(seed_host):
    server_id = await provisioned_server(seed_host)
    fake = FakeProxmox(status={"status": "stopped"})
    before = metrics.get("power_actions_total", action="stop")

    result = await power_action(server_id, "STOP", OWNER, client_factory=factory_for(fake))

    assert result.to_payload() == {
        "ok": True,
        "action": "stop",
        "vmid": 150,
        "node": "pve",
        "status": "stopped",
    }
    assert fake.called("power_action") == [("pve", 150, "stop")]
    assert fake.closed
    async with SessionLocal() as session:
        record = await session.get(ServerRecord, server_id)
        events = list(await session.scalars(select(Event.event_type).order_by(Event.id)))
    assert record.status == "stopped"
    assert events[-1] == "server.power"
    assert metrics.get("power_actions_total", action="stop") == before + 1


async def test_inactive_host_still_controls_existing_guest(seed_host):
    server_id = await provisioned_server(seed_host)
    async with session_scope() as session:
        host = await session.get(HostProfile, "h1")
        host.is_active = False

    result = await power_action(
        server_id, "reboot", OWNER, client_factory=factory_for(FakeProxmox())
    )
    assert result.status == "running"


async def test_unconfirmed_task_keeps_going(seed_host):
    server_id = await provisioned_server(seed_host)
    fake = FakeProxmox(fail={"wait_for_task": TimeoutError("slow")})

    result = await power_action(server_id, "start", OWNER, client_factory=factory_for(fake))

    assert result.status == "running"


async def test_rejects_unknown_action(seed_host):
    server_id = await provisioned_server(seed_host)
    with pytest.raises(ValidationError):
        await power_action(server_id, "suspend", OWNER, client_factory=factory_for(FakeProxmox()))


async def test_other_users_server_is_not_found(seed_host):
    server_id = await provisioned_server(seed_host)
    stranger = CallerIdentity(id="u2", email=None)
    with pytest.raises(NotFoundError):
        await power_action(server_id, "stop", stranger, client_factory=factory_for(FakeProxmox()))
    with pytest.raises(NotFoundError):
        await power_action(9999, "stop", OWNER, client_factory=factory_for(FakeProxmox()))


async def test_failed_server_cannot_be_powered(seed_host):
    await seed_host("h1", pool=[("10.0.0.5", "aa:bb:cc:dd:ee:ff")])
    with pytest.raises(ProvisioningFailed) as excinfo:
        await provision_vm(
            ProvisionRequest(hostId="h1", sshPassword="pw", ownerId="u1"),
            client_factory=factory_for(FakeProxmox(fail={"authenticate": AuthError("no")})),
        )

    with pytest.raises(ValidationError):
        await power_action(
            excinfo.value.server_id, "start", OWNER, client_factory=factory_for(FakeProxmox())
        )
